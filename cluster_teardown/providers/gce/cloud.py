"""GCE API access.

Wraps the Compute Engine and Cloud DNS discovery clients for one project and
region, with pagination, operation waiting and not-found handling.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Iterator, Optional

import googleapiclient.discovery
from googleapiclient.errors import HttpError

from .naming import last_component, parse_google_cloud_url

logger = logging.getLogger(__name__)

# Request parameter naming the object for each compute collection
COLLECTION_PARAMS = {
    "addresses": "address",
    "disks": "disk",
    "firewalls": "firewall",
    "forwardingRules": "forwardingRule",
    "instanceGroupManagers": "instanceGroupManager",
    "instanceTemplates": "instanceTemplate",
    "instances": "instance",
    "routers": "router",
    "routes": "route",
    "subnetworks": "subnetwork",
    "targetPools": "targetPool",
}

NOT_FOUND_OPERATION_CODES = {"RESOURCE_NOT_FOUND"}


class GCEOperationError(Exception):
    """A GCE operation finished with errors or did not finish in time."""


def is_not_found(error: BaseException) -> bool:
    """True if the error is an HTTP 404 from a Google API."""
    return isinstance(error, HttpError) and getattr(error.resp, "status", None) == 404


class GCECloud:
    """GCE clients for one project and region.

    googleapiclient service objects are not thread-safe, so each thread builds
    its own clients on first use.

    Attributes:
        project: GCP project ID
        region: Region the cluster lives in
        credentials: google.auth credentials (application default when None)
        operation_poll_interval: Seconds between operation status polls
        operation_timeout: Seconds to wait for an operation before failing
    """

    def __init__(
        self,
        project: str,
        region: str,
        credentials: Optional[Any] = None,
        operation_poll_interval: float = 2.0,
        operation_timeout: float = 600.0,
    ) -> None:
        self.project = project
        self.region = region
        self.credentials = credentials
        self.operation_poll_interval = operation_poll_interval
        self.operation_timeout = operation_timeout
        self._local = threading.local()

    @property
    def compute(self) -> Any:
        """Compute Engine v1 client for the calling thread."""
        return self._client("compute", "v1")

    @property
    def dns(self) -> Any:
        """Cloud DNS v1 client for the calling thread."""
        return self._client("dns", "v1")

    def _client(self, service_name: str, version: str) -> Any:
        clients = getattr(self._local, "clients", None)
        if clients is None:
            clients = self._local.clients = {}

        if service_name not in clients:
            clients[service_name] = googleapiclient.discovery.build(
                service_name,
                version,
                credentials=self.credentials,
                cache_discovery=False,
            )
        return clients[service_name]

    def paginate(
        self, collection: Any, method_name: str = "list", items_key: str = "items", **kwargs: Any
    ) -> Iterator[Any]:
        """Yield every item of a paginated list call.

        Pages are followed with the collection's ``<method>_next`` helper.

        Args:
            collection: API collection (e.g., compute.routes())
            method_name: List method on the collection ("list" or "aggregatedList")
            items_key: Response field holding the items
            **kwargs: Request parameters

        Yields:
            Items from every page
        """
        request = getattr(collection, method_name)(**kwargs)
        next_page = getattr(collection, f"{method_name}_next")

        while request is not None:
            response = request.execute()

            items = response.get(items_key, [])
            if isinstance(items, dict):
                # aggregatedList: scope name -> {"<collection>": [...]}
                for scoped in items.values():
                    yield scoped
            else:
                yield from items

            request = next_page(request, response)

    def delete_by_self_link(self, self_link: str) -> None:
        """Delete a compute object and wait for the operation.

        A missing object is treated as already deleted.

        Raises:
            ValueError: If the self link cannot be parsed or names an unknown collection
            HttpError: On API errors other than 404
            GCEOperationError: If the delete operation fails
        """
        url = parse_google_cloud_url(self_link)
        param = COLLECTION_PARAMS.get(url.collection)
        if param is None:
            raise ValueError(f"unsupported GCE collection {url.collection!r} in {self_link}")

        request_args = {"project": url.project, param: url.name}
        if url.zone:
            request_args["zone"] = url.zone
        elif url.region:
            request_args["region"] = url.region

        collection = getattr(self.compute, url.collection)()

        logger.debug(f"Deleting GCE {url.collection} {self_link}")
        try:
            operation = collection.delete(**request_args).execute()
        except HttpError as e:
            if is_not_found(e):
                logger.info(f"{url.collection} not found, assuming deleted: {self_link}")
                return
            raise

        self.wait_for_operation(operation)

    def wait_for_operation(self, operation: dict) -> None:
        """Block until a compute operation is DONE.

        Raises:
            GCEOperationError: If the operation reports errors (other than the
                target not existing) or exceeds the operation timeout
        """
        name = operation["name"]
        deadline = time.monotonic() + self.operation_timeout

        result = operation
        while result.get("status") != "DONE":
            if time.monotonic() >= deadline:
                raise GCEOperationError(f"timeout waiting for operation {name}")
            time.sleep(self.operation_poll_interval)
            result = self._operation_request(operation).execute()

        errors = result.get("error", {}).get("errors", [])
        if not errors:
            return

        if all(error.get("code") in NOT_FOUND_OPERATION_CODES for error in errors):
            logger.info(f"Operation {name} target not found, assuming deleted")
            return

        messages = "; ".join(f"{error.get('code')}: {error.get('message')}" for error in errors)
        raise GCEOperationError(f"operation {name} failed: {messages}")

    def wait_for_dns_change(self, managed_zone: str, change: dict) -> None:
        """Block until a Cloud DNS change is done.

        Raises:
            GCEOperationError: If the change is still pending after the operation timeout
        """
        change_id = change["id"]
        deadline = time.monotonic() + self.operation_timeout

        result = change
        while result.get("status") != "done":
            if time.monotonic() >= deadline:
                raise GCEOperationError(f"timeout waiting for DNS change {change_id} in zone {managed_zone}")
            time.sleep(self.operation_poll_interval)
            result = (
                self.dns.changes().get(project=self.project, managedZone=managed_zone, changeId=change_id).execute()
            )

    def _operation_request(self, operation: dict) -> Any:
        compute = self.compute
        name = operation["name"]

        if operation.get("zone"):
            zone = last_component(operation["zone"])
            return compute.zoneOperations().get(project=self.project, zone=zone, operation=name)
        if operation.get("region"):
            region = last_component(operation["region"])
            return compute.regionOperations().get(project=self.project, region=region, operation=name)
        return compute.globalOperations().get(project=self.project, operation=name)
