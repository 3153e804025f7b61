"""AWS resource deletion strategies.

Maps cluster resource types to their deletion calls with not-found handling,
retry logic and waiters for asynchronous deletions.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Optional

from botocore.exceptions import ClientError

from ...models.resource import Resource
from .client import create_boto_client

logger = logging.getLogger(__name__)

TYPE_INSTANCE = "Instance"
TYPE_VOLUME = "Volume"
TYPE_NETWORK_INTERFACE = "NetworkInterface"
TYPE_SECURITY_GROUP = "SecurityGroup"
TYPE_SUBNET = "Subnet"
TYPE_ROUTE_TABLE = "RouteTable"
TYPE_INTERNET_GATEWAY = "InternetGateway"
TYPE_NAT_GATEWAY = "NatGateway"
TYPE_ELASTIC_IP = "ElasticIP"
TYPE_VPC = "VPC"
TYPE_LOAD_BALANCER = "LoadBalancer"
TYPE_TARGET_GROUP = "TargetGroup"
TYPE_DNS_RECORD = "DNSRecord"

NOT_FOUND_CODES = {
    "NoSuchEntity",
    "NoSuchHostedZone",
    "ResourceNotFoundException",
}

RETRYABLE_CODES = {"DependencyViolation", "ResourceInUse"}


def is_not_found(error: ClientError) -> bool:
    """True if a ClientError means the resource no longer exists."""
    code = error.response.get("Error", {}).get("Code", "")
    return code in NOT_FOUND_CODES or code.endswith("NotFound")


def is_missing_record(error: ClientError) -> bool:
    """True if Route53 rejected a change batch because a record to delete does not exist."""
    code = error.response.get("Error", {}).get("Code", "")
    message = error.response.get("Error", {}).get("Message", "")
    return code == "InvalidChangeBatch" and "not found" in message


class ResourceDeleter:
    """AWS resource deletion orchestrator.

    Provides the deleter callbacks attached to AWS resources. Each call blocks
    until AWS reports the deletion complete, so the scheduler can rely on the
    resource being gone when the callback returns. Dependency violations are
    retried with exponential backoff before the error reaches the scheduler.
    """

    # Deletion method mapping: resource_type -> (service, method, id_field)
    DELETION_METHODS = {
        TYPE_INSTANCE: ("ec2", "terminate_instances", "InstanceIds"),
        TYPE_VOLUME: ("ec2", "delete_volume", "VolumeId"),
        TYPE_NETWORK_INTERFACE: ("ec2", "delete_network_interface", "NetworkInterfaceId"),
        TYPE_SECURITY_GROUP: ("ec2", "delete_security_group", "GroupId"),
        TYPE_SUBNET: ("ec2", "delete_subnet", "SubnetId"),
        TYPE_ROUTE_TABLE: ("ec2", "delete_route_table", "RouteTableId"),
        TYPE_INTERNET_GATEWAY: ("ec2", "delete_internet_gateway", "InternetGatewayId"),
        TYPE_NAT_GATEWAY: ("ec2", "delete_nat_gateway", "NatGatewayId"),
        TYPE_ELASTIC_IP: ("ec2", "release_address", "AllocationId"),
        TYPE_VPC: ("ec2", "delete_vpc", "VpcId"),
        TYPE_LOAD_BALANCER: ("elbv2", "delete_load_balancer", "LoadBalancerArn"),
        TYPE_TARGET_GROUP: ("elbv2", "delete_target_group", "TargetGroupArn"),
    }

    # Waiters for deletions that complete asynchronously: resource_type -> (waiter, id_field)
    WAITERS = {
        TYPE_INSTANCE: ("instance_terminated", "InstanceIds"),
        TYPE_NAT_GATEWAY: ("nat_gateway_deleted", "NatGatewayIds"),
        TYPE_LOAD_BALANCER: ("load_balancers_deleted", "LoadBalancerArns"),
    }

    def __init__(
        self,
        region: Optional[str] = None,
        aws_profile: Optional[str] = None,
        max_retries: int = 3,
        waiter_delay: int = 5,
        waiter_max_attempts: int = 120,
    ):
        """Initialize resource deleter.

        Args:
            region: AWS region
            aws_profile: AWS profile name (optional)
            max_retries: Maximum number of retry attempts (default: 3)
            waiter_delay: Seconds between waiter polls (default: 5)
            waiter_max_attempts: Maximum waiter polls (default: 120)
        """
        self.region = region
        self.aws_profile = aws_profile
        self.max_retries = max_retries
        self.waiter_delay = waiter_delay
        self.waiter_max_attempts = waiter_max_attempts

    def delete(self, resource: Resource[dict]) -> None:
        """Deleter callback for a single AWS resource."""
        self.delete_resource(resource.resource_type, resource.resource_id, resource.obj)

    def delete_resource(self, resource_type: str, resource_id: str, obj: Optional[dict] = None) -> None:
        """Delete an AWS resource.

        Args:
            resource_type: Cluster resource type (e.g., "Instance")
            resource_id: Resource identifier (ID or ARN)
            obj: Describe output for the resource (optional)

        Raises:
            ValueError: If the resource type is not supported
            ClientError: If deletion fails after all retries
        """
        if resource_type not in self.DELETION_METHODS:
            raise ValueError(f"Unsupported resource type: {resource_type}")

        service, method, id_field = self.DELETION_METHODS[resource_type]

        for attempt in range(self.max_retries):
            try:
                self._attempt_deletion(service, method, id_field, resource_type, resource_id, obj or {})
                logger.info(f"Successfully deleted {resource_type}: {resource_id}")
                return

            except ClientError as e:
                error_code = e.response.get("Error", {}).get("Code", "Unknown")

                if error_code in RETRYABLE_CODES and attempt < self.max_retries - 1:
                    wait_time = 2**attempt  # Exponential backoff
                    logger.debug(
                        f"{error_code} for {resource_id}, "
                        f"retrying in {wait_time}s (attempt {attempt + 1}/{self.max_retries})"
                    )
                    time.sleep(wait_time)
                    continue

                raise

    def _attempt_deletion(
        self,
        service: str,
        method: str,
        id_field: str,
        resource_type: str,
        resource_id: str,
        obj: dict,
    ) -> None:
        """Attempt a single deletion operation.

        Missing resources count as deleted.
        """
        client = create_boto_client(
            service_name=service,
            region_name=self.region,
            profile_name=self.aws_profile,
        )

        try:
            if resource_type == TYPE_INTERNET_GATEWAY:
                self._detach_internet_gateway(client, resource_id, obj)
            elif resource_type == TYPE_SECURITY_GROUP:
                self._revoke_group_references(client, resource_id, obj)

            params = self._build_deletion_params(id_field, resource_id)
            getattr(client, method)(**params)

        except ClientError as e:
            if is_not_found(e):
                logger.info(f"Resource {resource_id} already deleted")
                return
            raise

        if resource_type in self.WAITERS:
            waiter_name, waiter_field = self.WAITERS[resource_type]
            logger.debug(f"Waiting for {resource_type} {resource_id} ({waiter_name})")
            client.get_waiter(waiter_name).wait(
                **{waiter_field: [resource_id]},
                WaiterConfig={"Delay": self.waiter_delay, "MaxAttempts": self.waiter_max_attempts},
            )

    def _build_deletion_params(self, id_field: str, resource_id: str) -> dict[str, Any]:
        # Plural form indicates list
        if id_field.endswith("s"):
            return {id_field: [resource_id]}
        return {id_field: resource_id}

    def _detach_internet_gateway(self, client: Any, gateway_id: str, obj: dict) -> None:
        for attachment in obj.get("Attachments", []):
            vpc_id = attachment.get("VpcId")
            if not vpc_id:
                continue
            logger.debug(f"Detaching {gateway_id} from {vpc_id}")
            try:
                client.detach_internet_gateway(InternetGatewayId=gateway_id, VpcId=vpc_id)
            except ClientError as e:
                code = e.response.get("Error", {}).get("Code", "")
                if code != "Gateway.NotAttached" and not is_not_found(e):
                    raise

    def _revoke_group_references(self, client: Any, group_id: str, obj: dict) -> None:
        """Remove ingress rules referencing other groups.

        Cluster security groups reference each other, which blocks deletion
        of every group in the set.
        """
        permissions = [permission for permission in obj.get("IpPermissions", []) if permission.get("UserIdGroupPairs")]
        if not permissions:
            return

        logger.debug(f"Revoking {len(permissions)} group-referencing rules on {group_id}")
        client.revoke_security_group_ingress(GroupId=group_id, IpPermissions=permissions)

    def delete_dns_records(self, resources: list[Resource[dict]]) -> None:
        """Group deleter for Route53 records of one hosted zone.

        All records are deleted in a single change batch, so either all or none
        are removed. Route53 rejects the whole batch if any record is already
        gone; the zone is then re-read and the batch resubmitted with the
        records that still exist.
        """
        hosted_zone_id = resources[0].group_key
        client = create_boto_client(
            service_name="route53",
            region_name=self.region,
            profile_name=self.aws_profile,
        )
        pending = list(resources)

        for attempt in range(1, self.max_retries + 1):
            changes = [{"Action": "DELETE", "ResourceRecordSet": resource.obj} for resource in pending]
            logger.info(f"Deleting {len(changes)} DNS records in hosted zone {hosted_zone_id}")

            try:
                response = client.change_resource_record_sets(
                    HostedZoneId=hosted_zone_id,
                    ChangeBatch={"Comment": "cluster teardown", "Changes": changes},
                )
            except ClientError as e:
                if is_not_found(e):
                    logger.info(f"Hosted zone {hosted_zone_id} not found, assuming its records are deleted")
                    return
                if not is_missing_record(e) or attempt == self.max_retries:
                    raise

                pending = self._existing_dns_records(client, hosted_zone_id, pending)
                if not pending:
                    logger.info(f"DNS records in {hosted_zone_id} already deleted")
                    return
                logger.info(f"Retrying change batch with {len(pending)} records still in {hosted_zone_id}")
                continue

            change_id = response.get("ChangeInfo", {}).get("Id")
            if change_id:
                client.get_waiter("resource_record_sets_changed").wait(
                    Id=change_id,
                    WaiterConfig={"Delay": self.waiter_delay, "MaxAttempts": self.waiter_max_attempts},
                )
            return

    def _existing_dns_records(
        self, client: Any, hosted_zone_id: str, resources: list[Resource[dict]]
    ) -> list[Resource[dict]]:
        """Resources whose record set is still in the hosted zone (none if the zone is gone)."""
        present = set()
        try:
            for page in client.get_paginator("list_resource_record_sets").paginate(HostedZoneId=hosted_zone_id):
                for record in page.get("ResourceRecordSets", []):
                    present.add((record["Name"], record["Type"]))
        except ClientError as e:
            if is_not_found(e):
                return []
            raise

        return [resource for resource in resources if (resource.obj["Name"], resource.obj["Type"]) in present]
