"""Teardown error hierarchy."""

from __future__ import annotations

from typing import Optional, Union


class TeardownError(Exception):
    """Base class for all teardown errors."""


class DiscoveryError(TeardownError):
    """Resource discovery failed.

    Fatal: the graph would be incomplete, so no deletion is attempted.
    """

    def __init__(self, message: str, cloud: Optional[str] = None) -> None:
        self.cloud = cloud
        super().__init__(f"[{cloud}] {message}" if cloud else message)


class ResourceNotFoundError(TeardownError):
    """Resource no longer exists in the cloud.

    Deleters may raise this instead of returning; the scheduler treats it as a
    successful deletion.
    """


class DeleteError(TeardownError):
    """Deletion of a single resource failed.

    Attributes:
        key: Graph key of the resource
        cause: Underlying exception or message
        pass_number: Scheduler pass in which the failure happened
    """

    def __init__(self, key: str, cause: Union[BaseException, str], pass_number: int = 0) -> None:
        self.key = key
        self.cause = cause
        self.pass_number = pass_number
        super().__init__(f"error deleting {key}: {cause}")


class StalledError(TeardownError):
    """Scheduler reached a fixed point with resources still present.

    Attributes:
        residual_keys: Keys still present in the graph
        errors: Last error per key (keys without an entry were blocked)
    """

    def __init__(self, residual_keys: list[str], errors: dict[str, DeleteError]) -> None:
        self.residual_keys = residual_keys
        self.errors = errors
        super().__init__(
            f"not making progress deleting resources: {len(residual_keys)} remaining "
            f"({len(errors)} with errors)"
        )
