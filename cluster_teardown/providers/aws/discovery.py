"""AWS cluster resource discovery.

Finds the EC2, ELBv2 and Route53 objects owned by a cluster. Ownership is
read from the cluster tags: "kubernetes.io/cluster/<name>" (value "owned" or
"shared") or the legacy "KubernetesCluster=<name>".
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Optional

from ...models.resource import Resource, resource_key
from ...teardown.discovery import DiscoveryAdapter, ListFunction
from .client import create_boto_client
from .deleter import (
    TYPE_DNS_RECORD,
    TYPE_ELASTIC_IP,
    TYPE_INSTANCE,
    TYPE_INTERNET_GATEWAY,
    TYPE_LOAD_BALANCER,
    TYPE_NAT_GATEWAY,
    TYPE_NETWORK_INTERFACE,
    TYPE_ROUTE_TABLE,
    TYPE_SECURITY_GROUP,
    TYPE_SUBNET,
    TYPE_TARGET_GROUP,
    TYPE_VOLUME,
    TYPE_VPC,
    ResourceDeleter,
)

logger = logging.getLogger(__name__)

CLUSTER_TAG_PREFIX = "kubernetes.io/cluster/"
LEGACY_CLUSTER_TAG = "KubernetesCluster"
SHARED_TAG_VALUE = "shared"

# DNS record prefixes created for a cluster
MANAGED_DNS_PREFIXES = ("api", "api.internal", "bastion")

# describe_tags accepts at most 20 ARNs per call
ELB_TAG_BATCH_SIZE = 20

GONE_INSTANCE_STATES = {"terminated"}
GONE_NAT_STATES = {"deleted"}


def tags_to_dict(tags: Optional[Iterable[dict]]) -> dict[str, str]:
    """Convert an AWS tag list to a dictionary."""
    return {tag["Key"]: tag.get("Value", "") for tag in tags or []}


class AWSClusterDiscovery(DiscoveryAdapter):
    """Discovery adapter for clusters running on AWS.

    Attributes:
        cluster_name: Name of the cluster being deleted
        region: AWS region
        aws_profile: AWS profile name (optional)
        deleter: Deletion strategies used as resource callbacks
    """

    def __init__(
        self,
        cluster_name: str,
        region: str,
        aws_profile: Optional[str] = None,
        deleter: Optional[ResourceDeleter] = None,
    ) -> None:
        self.cluster_name = cluster_name
        self.region = region
        self.aws_profile = aws_profile
        self.deleter = deleter or ResourceDeleter(region=region, aws_profile=aws_profile)
        self.ec2: Any = None
        self.elbv2: Any = None
        self.route53: Any = None

    @property
    def cloud_name(self) -> str:
        return "aws"

    @property
    def cluster_tag(self) -> str:
        return CLUSTER_TAG_PREFIX + self.cluster_name

    def prepare(self) -> None:
        # boto3 clients are thread-safe once created
        self.ec2 = create_boto_client("ec2", region_name=self.region, profile_name=self.aws_profile)
        self.elbv2 = create_boto_client("elbv2", region_name=self.region, profile_name=self.aws_profile)
        self.route53 = create_boto_client("route53", region_name=self.region, profile_name=self.aws_profile)

    def list_functions(self) -> list[ListFunction]:
        return [
            self.list_instances,
            self.list_volumes,
            self.list_network_interfaces,
            self.list_security_groups,
            self.list_subnets,
            self.list_route_tables,
            self.list_internet_gateways,
            self.list_nat_gateways,
            self.list_elastic_ips,
            self.list_vpcs,
            self.list_load_balancers,
            self.list_dns_records,
        ]

    def owner_filters(self) -> list[list[dict]]:
        """EC2 filter sets matching either cluster tag form."""
        return [
            [{"Name": "tag-key", "Values": [self.cluster_tag]}],
            [{"Name": f"tag:{LEGACY_CLUSTER_TAG}", "Values": [self.cluster_name]}],
        ]

    def is_shared(self, tags: dict[str, str]) -> bool:
        return tags.get(self.cluster_tag) == SHARED_TAG_VALUE

    def _describe(self, method: str, result_key: str, id_key: str, filter_param: str = "Filters") -> list[dict]:
        """Describe EC2 objects matching either cluster tag, de-duplicated by ID."""
        found: dict[str, dict] = {}

        for filters in self.owner_filters():
            if self.ec2.can_paginate(method):
                pages = self.ec2.get_paginator(method).paginate(**{filter_param: filters})
            else:
                pages = [getattr(self.ec2, method)(**{filter_param: filters})]

            for page in pages:
                for item in page.get(result_key, []):
                    found[item[id_key]] = item

        return [found[key] for key in sorted(found)]

    def _resource(self, resource_type: str, resource_id: str, item: dict, tags: dict[str, str]) -> Resource:
        logger.debug(f"Found resource: {resource_type} {resource_id}")
        return Resource(
            resource_type=resource_type,
            resource_id=resource_id,
            name=tags.get("Name", resource_id),
            obj=item,
            shared=self.is_shared(tags),
            deleter=self.deleter.delete,
        )

    def list_instances(self) -> list[Resource]:
        """Instances, blocking their subnet, VPC and security groups."""
        instances: dict[str, dict] = {}
        for filters in self.owner_filters():
            for page in self.ec2.get_paginator("describe_instances").paginate(Filters=filters):
                for reservation in page.get("Reservations", []):
                    for instance in reservation.get("Instances", []):
                        instances[instance["InstanceId"]] = instance

        resources = []
        for instance_id in sorted(instances):
            instance = instances[instance_id]
            resource = self._resource(TYPE_INSTANCE, instance_id, instance, tags_to_dict(instance.get("Tags")))

            if instance.get("State", {}).get("Name") in GONE_INSTANCE_STATES:
                resource.done = True

            if instance.get("SubnetId"):
                resource.blocks.append(resource_key(TYPE_SUBNET, instance["SubnetId"]))
            if instance.get("VpcId"):
                resource.blocks.append(resource_key(TYPE_VPC, instance["VpcId"]))
            for group in instance.get("SecurityGroups", []):
                resource.blocks.append(resource_key(TYPE_SECURITY_GROUP, group["GroupId"]))

            resources.append(resource)

        return resources

    def list_volumes(self) -> list[Resource]:
        """Volumes, blocked by the instances they are attached to."""
        resources = []
        for volume in self._describe("describe_volumes", "Volumes", "VolumeId"):
            resource = self._resource(TYPE_VOLUME, volume["VolumeId"], volume, tags_to_dict(volume.get("Tags")))
            for attachment in volume.get("Attachments", []):
                if attachment.get("InstanceId"):
                    resource.blocked.append(resource_key(TYPE_INSTANCE, attachment["InstanceId"]))
            resources.append(resource)
        return resources

    def list_network_interfaces(self) -> list[Resource]:
        """Network interfaces, blocking their subnet, VPC and security groups."""
        resources = []
        for eni in self._describe("describe_network_interfaces", "NetworkInterfaces", "NetworkInterfaceId"):
            resource = self._resource(
                TYPE_NETWORK_INTERFACE, eni["NetworkInterfaceId"], eni, tags_to_dict(eni.get("TagSet"))
            )

            if eni.get("SubnetId"):
                resource.blocks.append(resource_key(TYPE_SUBNET, eni["SubnetId"]))
            if eni.get("VpcId"):
                resource.blocks.append(resource_key(TYPE_VPC, eni["VpcId"]))
            for group in eni.get("Groups", []):
                resource.blocks.append(resource_key(TYPE_SECURITY_GROUP, group["GroupId"]))

            instance_id = eni.get("Attachment", {}).get("InstanceId")
            if instance_id:
                resource.blocked.append(resource_key(TYPE_INSTANCE, instance_id))

            resources.append(resource)
        return resources

    def list_security_groups(self) -> list[Resource]:
        resources = []
        for group in self._describe("describe_security_groups", "SecurityGroups", "GroupId"):
            if group.get("GroupName") == "default":
                continue
            resource = self._resource(TYPE_SECURITY_GROUP, group["GroupId"], group, tags_to_dict(group.get("Tags")))
            resource.name = group.get("GroupName", resource.name)
            if group.get("VpcId"):
                resource.blocks.append(resource_key(TYPE_VPC, group["VpcId"]))
            resources.append(resource)
        return resources

    def list_subnets(self) -> list[Resource]:
        resources = []
        for subnet in self._describe("describe_subnets", "Subnets", "SubnetId"):
            resource = self._resource(TYPE_SUBNET, subnet["SubnetId"], subnet, tags_to_dict(subnet.get("Tags")))
            resource.blocks.append(resource_key(TYPE_VPC, subnet["VpcId"]))
            resources.append(resource)
        return resources

    def list_route_tables(self) -> list[Resource]:
        """Route tables other than the main one, blocked by associated subnets."""
        resources = []
        for table in self._describe("describe_route_tables", "RouteTables", "RouteTableId"):
            associations = table.get("Associations", [])
            if any(association.get("Main") for association in associations):
                logger.debug(f"Skipping main route table {table['RouteTableId']}")
                continue

            resource = self._resource(TYPE_ROUTE_TABLE, table["RouteTableId"], table, tags_to_dict(table.get("Tags")))
            resource.blocks.append(resource_key(TYPE_VPC, table["VpcId"]))
            for association in associations:
                if association.get("SubnetId"):
                    resource.blocked.append(resource_key(TYPE_SUBNET, association["SubnetId"]))
            resources.append(resource)
        return resources

    def list_internet_gateways(self) -> list[Resource]:
        resources = []
        for gateway in self._describe("describe_internet_gateways", "InternetGateways", "InternetGatewayId"):
            resource = self._resource(
                TYPE_INTERNET_GATEWAY, gateway["InternetGatewayId"], gateway, tags_to_dict(gateway.get("Tags"))
            )
            for attachment in gateway.get("Attachments", []):
                if attachment.get("VpcId"):
                    resource.blocks.append(resource_key(TYPE_VPC, attachment["VpcId"]))
            resources.append(resource)
        return resources

    def list_nat_gateways(self) -> list[Resource]:
        """NAT gateways, blocking their subnet, VPC and elastic IPs."""
        resources = []
        for gateway in self._describe("describe_nat_gateways", "NatGateways", "NatGatewayId", filter_param="Filter"):
            resource = self._resource(
                TYPE_NAT_GATEWAY, gateway["NatGatewayId"], gateway, tags_to_dict(gateway.get("Tags"))
            )
            if gateway.get("State") in GONE_NAT_STATES:
                resource.done = True

            if gateway.get("SubnetId"):
                resource.blocks.append(resource_key(TYPE_SUBNET, gateway["SubnetId"]))
            if gateway.get("VpcId"):
                resource.blocks.append(resource_key(TYPE_VPC, gateway["VpcId"]))
            for address in gateway.get("NatGatewayAddresses", []):
                if address.get("AllocationId"):
                    resource.blocks.append(resource_key(TYPE_ELASTIC_IP, address["AllocationId"]))

            resources.append(resource)
        return resources

    def list_elastic_ips(self) -> list[Resource]:
        resources = []
        for address in self._describe("describe_addresses", "Addresses", "AllocationId"):
            resource = self._resource(
                TYPE_ELASTIC_IP, address["AllocationId"], address, tags_to_dict(address.get("Tags"))
            )
            resource.name = address.get("PublicIp", resource.name)
            resources.append(resource)
        return resources

    def list_vpcs(self) -> list[Resource]:
        return [
            self._resource(TYPE_VPC, vpc["VpcId"], vpc, tags_to_dict(vpc.get("Tags")))
            for vpc in self._describe("describe_vpcs", "Vpcs", "VpcId")
        ]

    def list_load_balancers(self) -> list[Resource]:
        """ELBv2 load balancers and target groups carrying a cluster tag.

        A load balancer blocks its subnets, security groups and VPC, and the
        target groups its listeners forward to.
        """
        balancers = {}
        for page in self.elbv2.get_paginator("describe_load_balancers").paginate():
            for balancer in page.get("LoadBalancers", []):
                balancers[balancer["LoadBalancerArn"]] = balancer

        groups = {}
        for page in self.elbv2.get_paginator("describe_target_groups").paginate():
            for group in page.get("TargetGroups", []):
                groups[group["TargetGroupArn"]] = group

        tags = self._elb_tags(list(balancers) + list(groups))
        resources = []

        for arn in sorted(balancers):
            if not self._owned(tags.get(arn, {})):
                continue
            balancer = balancers[arn]
            resource = self._resource(TYPE_LOAD_BALANCER, arn, balancer, tags.get(arn, {}))
            resource.name = balancer.get("LoadBalancerName", resource.name)
            for zone in balancer.get("AvailabilityZones", []):
                if zone.get("SubnetId"):
                    resource.blocks.append(resource_key(TYPE_SUBNET, zone["SubnetId"]))
            for group_id in balancer.get("SecurityGroups", []):
                resource.blocks.append(resource_key(TYPE_SECURITY_GROUP, group_id))
            if balancer.get("VpcId"):
                resource.blocks.append(resource_key(TYPE_VPC, balancer["VpcId"]))
            resources.append(resource)

        for arn in sorted(groups):
            if not self._owned(tags.get(arn, {})):
                continue
            group = groups[arn]
            resource = self._resource(TYPE_TARGET_GROUP, arn, group, tags.get(arn, {}))
            resource.name = group.get("TargetGroupName", resource.name)
            for balancer_arn in group.get("LoadBalancerArns", []):
                resource.blocked.append(resource_key(TYPE_LOAD_BALANCER, balancer_arn))
            resources.append(resource)

        return resources

    def _owned(self, tags: dict[str, str]) -> bool:
        return self.cluster_tag in tags or tags.get(LEGACY_CLUSTER_TAG) == self.cluster_name

    def _elb_tags(self, arns: list[str]) -> dict[str, dict[str, str]]:
        tags = {}
        for start in range(0, len(arns), ELB_TAG_BATCH_SIZE):
            batch = arns[start : start + ELB_TAG_BATCH_SIZE]
            response = self.elbv2.describe_tags(ResourceArns=batch)
            for description in response.get("TagDescriptions", []):
                tags[description["ResourceArn"]] = tags_to_dict(description.get("Tags"))
        return tags

    def list_dns_records(self) -> list[Resource]:
        """A records for the cluster API and bastion, grouped by hosted zone."""
        cluster_dns_name = self.cluster_name.rstrip(".") + "."
        managed_names = {f"{prefix}.{cluster_dns_name}" for prefix in MANAGED_DNS_PREFIXES}
        resources = []

        for page in self.route53.get_paginator("list_hosted_zones").paginate():
            for zone in page.get("HostedZones", []):
                if not cluster_dns_name.endswith(zone["Name"]):
                    continue

                zone_id = zone["Id"].split("/")[-1]
                record_pages = self.route53.get_paginator("list_resource_record_sets").paginate(HostedZoneId=zone_id)
                for record_page in record_pages:
                    for record in record_page.get("ResourceRecordSets", []):
                        if record.get("Type") != "A" or record["Name"] not in managed_names:
                            continue

                        resources.append(
                            Resource(
                                resource_type=TYPE_DNS_RECORD,
                                resource_id=f"{zone_id}/{record['Name']}",
                                name=record["Name"],
                                obj=record,
                                group_key=zone_id,
                                group_deleter=self.deleter.delete_dns_records,
                            )
                        )

        return resources
