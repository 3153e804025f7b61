"""Resource model.

A single discoverable cloud object tracked for cluster teardown, together with
its blocking relationships and the callbacks that delete or describe it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Generic, Optional, TypeVar

T = TypeVar("T")

KEY_SEPARATOR = ":"


def resource_key(resource_type: str, resource_id: str) -> str:
    """Build the graph key for a resource.

    Args:
        resource_type: Resource type tag (e.g., "Instance")
        resource_id: Provider-unique identifier (e.g., "us-central1-a/node-1")

    Returns:
        Key in "type:id" format
    """
    return f"{resource_type}{KEY_SEPARATOR}{resource_id}"


@dataclass(eq=False)
class Resource(Generic[T]):
    """Resource entity.

    Represents one cloud object discovered for a cluster. The core only reads the
    identity, relationship and flag fields; ``obj`` is carried untouched to the
    provider callbacks.

    Relationships:
        - blocks: keys this resource prevents from being deleted while it exists
        - blocked: keys that must be gone before this resource can be deleted

    Validation rules:
        - resource_type and resource_id must be non-empty
        - resource_type must not contain ":"
        - group_deleter requires a non-empty group_key

    Attributes:
        resource_type: Type tag (e.g., "Instance", "Disk", "DNSRecord")
        resource_id: Provider-unique identifier, often "zone/name" or "name"
        name: Display name (not necessarily unique)
        obj: Provider payload passed through to the callbacks
        blocks: Keys of resources blocked by this one
        blocked: Keys of resources blocking this one
        done: True once deleted or known not to exist
        shared: True if the resource must never be deleted by this engine
        deleter: Single-resource deletion callback
        group_key: Key shared by resources deleted together
        group_deleter: Callback deleting all members of a group in one call
        dumper: Callback producing a structured summary for reports
    """

    resource_type: str
    resource_id: str
    name: str = ""
    obj: Optional[T] = None
    blocks: list[str] = field(default_factory=list)
    blocked: list[str] = field(default_factory=list)
    done: bool = False
    shared: bool = False
    deleter: Optional[Callable[[Resource[T]], None]] = None
    group_key: str = ""
    group_deleter: Optional[Callable[[list[Resource[T]]], None]] = None
    dumper: Optional[Callable[[Resource[T]], dict[str, Any]]] = None

    @property
    def key(self) -> str:
        """Graph key in "type:id" format."""
        return resource_key(self.resource_type, self.resource_id)

    @property
    def is_grouped(self) -> bool:
        """True if this resource is deleted through a group deleter."""
        return self.group_deleter is not None

    def validate(self) -> bool:
        """Validate resource invariants.

        Returns:
            True if validation passes

        Raises:
            ValueError: If any validation rule fails
        """
        if not self.resource_type:
            raise ValueError("Resource type is required")
        if KEY_SEPARATOR in self.resource_type:
            raise ValueError(f"Resource type cannot contain '{KEY_SEPARATOR}': {self.resource_type}")
        if not self.resource_id:
            raise ValueError(f"Resource ID is required for {self.resource_type}")
        if self.group_deleter is not None and not self.group_key:
            raise ValueError(f"Group deleter requires a group key: {self.key}")

        return True

    def dump(self) -> dict[str, Any]:
        """Produce a structured summary of the resource.

        Uses the provider dumper when one is set, otherwise a generic record.

        Returns:
            Dictionary describing the resource
        """
        if self.dumper is not None:
            return self.dumper(self)

        return {
            "type": self.resource_type,
            "id": self.resource_id,
            "name": self.name,
        }

    def __repr__(self) -> str:
        return f"Resource({self.key!r}, name={self.name!r}, done={self.done}, shared={self.shared})"
