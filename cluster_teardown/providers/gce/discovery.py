"""GCE cluster resource discovery.

Finds the GCE objects owned by a cluster and turns them into Resources with
blocking relationships and deleters.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from googleapiclient.errors import HttpError

from ...models.resource import Resource, resource_key
from ...teardown.discovery import DiscoveryAdapter, ListFunction, PostListFunction
from ...teardown.errors import DiscoveryError
from ...teardown.graph import ResourceGraph
from .cloud import GCECloud, is_not_found
from .naming import (
    GCE_LABEL_CLUSTER_NAME,
    MAX_PREFIX_TOKENS,
    METADATA_CLUSTER_NAME,
    is_gossip_hostname,
    last_component,
    matches_cluster_name,
    parse_google_cloud_url,
    safe_cluster_name,
)

logger = logging.getLogger(__name__)

TYPE_INSTANCE = "Instance"
TYPE_INSTANCE_TEMPLATE = "InstanceTemplate"
TYPE_DISK = "Disk"
TYPE_INSTANCE_GROUP_MANAGER = "InstanceGroupManager"
TYPE_TARGET_POOL = "TargetPool"
TYPE_FIREWALL_RULE = "FirewallRule"
TYPE_FORWARDING_RULE = "ForwardingRule"
TYPE_ADDRESS = "Address"
TYPE_ROUTE = "Route"
TYPE_SUBNET = "Subnet"
TYPE_ROUTER = "Router"
TYPE_DNS_RECORD = "DNSRecord"

# DNS record prefixes created for a cluster
MANAGED_DNS_PREFIXES = ("api", "api.internal", "bastion")

# Cloud DNS change submissions per group before giving up
DNS_CHANGE_ATTEMPTS = 3

ROUTE_WARNING_NEXT_HOP_NOT_FOUND = "NEXT_HOP_INSTANCE_NOT_FOUND"


class GCEClusterDiscovery(DiscoveryAdapter):
    """Discovery adapter for clusters running on GCE.

    Zones of the target region and the cluster's instance templates are looked
    up once in prepare() and reused by every listing that needs them.

    Attributes:
        cloud: GCE clients for the project
        cluster_name: Name of the cluster being deleted
        region: Region to scan (defaults to the cloud's region)
        zones: Zones of the region, filled by prepare()
    """

    def __init__(self, cloud: GCECloud, cluster_name: str, region: Optional[str] = None) -> None:
        self.cloud = cloud
        self.cluster_name = cluster_name
        self.region = region or cloud.region
        self.zones: list[str] = []
        self._instance_templates: Optional[list[dict]] = None

    @property
    def cloud_name(self) -> str:
        return "gce"

    def prepare(self) -> None:
        """Resolve zones of the region and load the cluster's instance templates.

        Raises:
            DiscoveryError: If the region has no zones
        """
        compute = self.cloud.compute
        zones = []
        for zone in self.cloud.paginate(compute.zones(), project=self.cloud.project):
            if last_component(zone.get("region", "")) == self.region:
                zones.append(zone["name"])

        if not zones:
            raise DiscoveryError(f"unable to determine zones in region {self.region!r}", cloud=self.cloud_name)

        self.zones = sorted(zones)
        logger.info(f"Scanning zones: {', '.join(self.zones)}")

        self._instance_templates = self._find_instance_templates()

    def list_functions(self) -> list[ListFunction]:
        return [
            self.list_instance_templates,
            self.list_instance_group_managers_and_instances,
            self.list_target_pools,
            self.list_forwarding_rules,
            self.list_firewall_rules,
            self.list_disks,
            self.list_dns_records,
            self.list_addresses,
            self.list_subnets,
            self.list_routers,
        ]

    def post_list_functions(self) -> list[PostListFunction]:
        # Routes are matched against the instances found above
        return [self.list_routes]

    @property
    def instance_templates(self) -> list[dict]:
        if self._instance_templates is None:
            self._instance_templates = self._find_instance_templates()
        return self._instance_templates

    def _find_instance_templates(self) -> list[dict]:
        """Instance templates whose cluster-name metadata matches the cluster."""
        compute = self.cloud.compute
        cluster_name = self.cluster_name.strip()
        matches = []

        for template in self.cloud.paginate(compute.instanceTemplates(), project=self.cloud.project):
            items = template.get("properties", {}).get("metadata", {}).get("items", [])
            match = False
            for item in items:
                if item.get("key") != METADATA_CLUSTER_NAME:
                    continue
                if (item.get("value") or "").strip() == cluster_name:
                    match = True
                else:
                    match = False
                    break

            if match:
                matches.append(template)

        return matches

    def list_instance_templates(self) -> list[Resource]:
        resources = []
        for template in self.instance_templates:
            resources.append(
                Resource(
                    resource_type=TYPE_INSTANCE_TEMPLATE,
                    resource_id=template["name"],
                    name=template["name"],
                    obj=template,
                    deleter=self._delete_self_link,
                )
            )
            logger.debug(f"Found resource: {template['selfLink']}")
        return resources

    def list_instance_group_managers_and_instances(self) -> list[Resource]:
        """Managed instance groups built from cluster templates, and their instances.

        An instance group manager blocks its template. Instances do not block
        their manager.
        """
        compute = self.cloud.compute
        templates = {template["selfLink"]: template for template in self.instance_templates}
        resources = []

        for zone in self.zones:
            managers = self.cloud.paginate(
                compute.instanceGroupManagers(), project=self.cloud.project, zone=zone
            )
            for manager in managers:
                template = templates.get(manager.get("instanceTemplate", ""))
                if template is None:
                    logger.debug(f"Ignoring MIG with unmanaged InstanceTemplate: {manager.get('instanceTemplate')}")
                    continue

                resources.append(
                    Resource(
                        resource_type=TYPE_INSTANCE_GROUP_MANAGER,
                        resource_id=f"{zone}/{manager['name']}",
                        name=manager["name"],
                        obj=manager,
                        blocks=[resource_key(TYPE_INSTANCE_TEMPLATE, template["name"])],
                        deleter=self._delete_self_link,
                    )
                )
                logger.debug(f"Found resource: {manager['selfLink']}")

                resources.extend(self._list_managed_instances(manager, zone))

        return resources

    def _list_managed_instances(self, manager: dict, zone: str) -> list[Resource]:
        compute = self.cloud.compute
        response = compute.instanceGroupManagers().listManagedInstances(
            project=self.cloud.project, zone=zone, instanceGroupManager=manager["name"]
        ).execute()

        resources = []
        for managed in response.get("managedInstances", []):
            url = managed["instance"]
            name = last_component(url)
            resources.append(
                Resource(
                    resource_type=TYPE_INSTANCE,
                    resource_id=f"{zone}/{name}",
                    name=name,
                    obj=managed,
                    deleter=self._delete_instance,
                    dumper=dump_managed_instance,
                )
            )
        return resources

    def list_disks(self) -> list[Resource]:
        """Disks labelled with the cluster, blocked by the instances using them."""
        compute = self.cloud.compute
        cluster_tag = safe_cluster_name(self.cluster_name)
        resources = []

        for scoped in self.cloud.paginate(compute.disks(), "aggregatedList", project=self.cloud.project):
            for disk in scoped.get("disks", []):
                labels = disk.get("labels", {})
                if labels.get(GCE_LABEL_CLUSTER_NAME) != cluster_tag:
                    continue

                zone = last_component(disk.get("zone", ""))
                blocked = [
                    resource_key(TYPE_INSTANCE, f"{zone}/{last_component(user)}") for user in disk.get("users", [])
                ]

                resources.append(
                    Resource(
                        resource_type=TYPE_DISK,
                        resource_id=disk["name"],
                        name=disk["name"],
                        obj=disk,
                        blocked=blocked,
                        deleter=self._delete_self_link,
                    )
                )
                logger.debug(f"Found resource: {disk['selfLink']}")

        return resources

    def list_target_pools(self) -> list[Resource]:
        compute = self.cloud.compute
        pools = self.cloud.paginate(compute.targetPools(), project=self.cloud.project, region=self.region)
        return [
            self._named_resource(TYPE_TARGET_POOL, pool)
            for pool in pools
            if matches_cluster_name(pool["name"], self.cluster_name)
        ]

    def list_forwarding_rules(self) -> list[Resource]:
        """Forwarding rules, blocking their target pool and IP address."""
        compute = self.cloud.compute
        rules = self.cloud.paginate(compute.forwardingRules(), project=self.cloud.project, region=self.region)
        resources = []

        for rule in rules:
            if not matches_cluster_name(rule["name"], self.cluster_name):
                continue

            resource = self._named_resource(TYPE_FORWARDING_RULE, rule)
            if rule.get("target"):
                resource.blocks.append(resource_key(TYPE_TARGET_POOL, last_component(rule["target"])))
            if rule.get("IPAddress"):
                resource.blocks.append(resource_key(TYPE_ADDRESS, last_component(rule["IPAddress"])))
            resources.append(resource)

        return resources

    def list_firewall_rules(self) -> list[Resource]:
        """Firewall rules named for the cluster and targeting cluster tags."""
        compute = self.cloud.compute
        tag_prefix = safe_cluster_name(self.cluster_name) + "-"
        resources = []

        for rule in self.cloud.paginate(compute.firewalls(), project=self.cloud.project):
            if not matches_cluster_name(rule["name"], self.cluster_name, max_parts=MAX_PREFIX_TOKENS):
                continue

            if not any(tag.startswith(tag_prefix) for tag in rule.get("targetTags", [])):
                logger.debug(f"Skipping FirewallRule {rule['name']} without cluster target tags")
                continue

            resources.append(self._named_resource(TYPE_FIREWALL_RULE, rule))

        return resources

    def list_addresses(self) -> list[Resource]:
        compute = self.cloud.compute
        resources = []
        for address in self.cloud.paginate(compute.addresses(), project=self.cloud.project, region=self.region):
            if not matches_cluster_name(address["name"], self.cluster_name):
                logger.debug(f"Skipping Address with name {address['name']!r}")
                continue
            resources.append(self._named_resource(TYPE_ADDRESS, address))
        return resources

    def list_subnets(self) -> list[Resource]:
        """Subnets named for the cluster and referenced by a cluster template.

        Templates carry the cluster metadata, so they are the sanity check.
        """
        subnet_urls = set()
        for template in self.instance_templates:
            for interface in template.get("properties", {}).get("networkInterfaces", []):
                if interface.get("subnetwork"):
                    subnet_urls.add(interface["subnetwork"])

        compute = self.cloud.compute
        resources = []
        for subnet in self.cloud.paginate(compute.subnetworks(), project=self.cloud.project, region=self.region):
            if not matches_cluster_name(subnet["name"], self.cluster_name):
                logger.debug(f"Skipping Subnet with name {subnet['name']!r}")
                continue

            if subnet["selfLink"] not in subnet_urls:
                logger.warning(f"Skipping subnetwork {subnet['selfLink']} because it didn't match any instance template")
                continue

            resources.append(self._named_resource(TYPE_SUBNET, subnet))

        return resources

    def list_routers(self) -> list[Resource]:
        compute = self.cloud.compute
        resources = []
        for router in self.cloud.paginate(compute.routers(), project=self.cloud.project, region=self.region):
            if not matches_cluster_name(router["name"], self.cluster_name):
                logger.debug(f"Skipping Router with name {router['name']!r}")
                continue
            resources.append(self._named_resource(TYPE_ROUTER, router))
        return resources

    def list_routes(self, graph: ResourceGraph) -> list[Resource]:
        """Routes whose next hop is a cluster instance or no longer exists.

        Masters keep creating routes until they are terminated, so routes left
        behind after this listing are not caught.
        """
        instances = {resource.resource_id for resource in graph.all() if resource.resource_type == TYPE_INSTANCE}
        prefix = safe_cluster_name(self.cluster_name) + "-"
        compute = self.cloud.compute
        resources = []

        for route in self.cloud.paginate(compute.routes(), project=self.cloud.project):
            if not route["name"].startswith(prefix):
                continue

            remove = False
            for warning in route.get("warnings", []):
                if warning.get("code") == ROUTE_WARNING_NEXT_HOP_NOT_FOUND:
                    remove = True
                else:
                    logger.info(f"Unknown warning on route {route['name']!r}: {warning.get('code')!r}")

            next_hop = route.get("nextHopInstance")
            if next_hop:
                try:
                    url = parse_google_cloud_url(next_hop)
                except ValueError:
                    logger.warning(f"Error parsing URL for NextHopInstance={next_hop!r}")
                else:
                    if f"{url.zone}/{url.name}" in instances:
                        remove = True

            if remove:
                resources.append(self._named_resource(TYPE_ROUTE, route))

        return resources

    def list_dns_records(self) -> list[Resource]:
        """A records for the cluster API and bastion, grouped by managed zone."""
        if is_gossip_hostname(self.cluster_name):
            return []

        dns = self.cloud.dns
        cluster_dns_name = self.cluster_name + "."
        managed_names = {f"{prefix}.{cluster_dns_name}" for prefix in MANAGED_DNS_PREFIXES}
        resources = []

        for zone in self.cloud.paginate(dns.managedZones(), items_key="managedZones", project=self.cloud.project):
            if not cluster_dns_name.endswith(zone["dnsName"]):
                continue

            records = self.cloud.paginate(
                dns.resourceRecordSets(),
                items_key="rrsets",
                project=self.cloud.project,
                managedZone=zone["name"],
            )
            for record in records:
                if record.get("type") != "A" or record["name"] not in managed_names:
                    continue

                resources.append(
                    Resource(
                        resource_type=TYPE_DNS_RECORD,
                        resource_id=record["name"],
                        name=record["name"],
                        obj=record,
                        group_key=zone["name"],
                        group_deleter=self._delete_dns_records,
                    )
                )

        return resources

    def _named_resource(self, resource_type: str, item: dict) -> Resource:
        logger.debug(f"Found resource: {item.get('selfLink', item['name'])}")
        return Resource(
            resource_type=resource_type,
            resource_id=item["name"],
            name=item["name"],
            obj=item,
            deleter=self._delete_self_link,
        )

    def _delete_self_link(self, resource: Resource[dict]) -> None:
        logger.info(f"Deleting GCE {resource.resource_type} {resource.obj['selfLink']}")
        self.cloud.delete_by_self_link(resource.obj["selfLink"])

    def _delete_instance(self, resource: Resource[dict]) -> None:
        logger.info(f"Deleting GCE Instance {resource.obj['instance']}")
        self.cloud.delete_by_self_link(resource.obj["instance"])

    def _delete_dns_records(self, resources: list[Resource[dict]]) -> None:
        """Delete a zone's records in a single Cloud DNS change.

        Cloud DNS rejects the whole change with a 404 if any record in it is
        already gone. The zone is then re-read and the change resubmitted with
        the records that still exist.
        """
        zone_name = resources[0].group_key
        pending = list(resources)

        for attempt in range(1, DNS_CHANGE_ATTEMPTS + 1):
            change = {
                "kind": "dns#change",
                "deletions": [resource.obj for resource in pending],
            }

            logger.info(f"Deleting {len(pending)} DNS records in zone {zone_name}")
            try:
                result = (
                    self.cloud.dns.changes()
                    .create(project=self.cloud.project, managedZone=zone_name, body=change)
                    .execute()
                )
            except HttpError as e:
                if not is_not_found(e) or attempt == DNS_CHANGE_ATTEMPTS:
                    raise
                pending = self._existing_dns_records(zone_name, pending)
                if not pending:
                    logger.info(f"DNS records in zone {zone_name} already deleted")
                    return
                logger.info(f"Retrying DNS change with {len(pending)} records still in zone {zone_name}")
                continue

            self.cloud.wait_for_dns_change(zone_name, result)
            return

    def _existing_dns_records(self, zone_name: str, resources: list[Resource[dict]]) -> list[Resource[dict]]:
        """Resources whose record set is still in the zone (none if the zone is gone)."""
        try:
            records = self.cloud.paginate(
                self.cloud.dns.resourceRecordSets(),
                items_key="rrsets",
                project=self.cloud.project,
                managedZone=zone_name,
            )
            present = {(record["name"], record["type"]) for record in records}
        except HttpError as e:
            if is_not_found(e):
                logger.info(f"Managed zone {zone_name} not found, assuming its records are deleted")
                return []
            raise

        return [resource for resource in resources if (resource.obj["name"], resource.obj["type"]) in present]


def dump_managed_instance(resource: Resource[dict]) -> dict[str, Any]:
    """Summary of a managed instance for reports."""
    managed = resource.obj or {}
    zone, _, name = resource.resource_id.partition("/")
    return {
        "type": resource.resource_type,
        "id": resource.resource_id,
        "name": name or resource.name,
        "zone": zone,
        "status": managed.get("instanceStatus", ""),
        "current_action": managed.get("currentAction", ""),
        "url": managed.get("instance", ""),
    }
