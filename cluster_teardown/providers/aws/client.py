"""boto3 client construction."""

from __future__ import annotations

from typing import Any, Optional

import boto3
from botocore.config import Config as BotoConfig

# Retries handled by botocore for throttling and transient errors
DEFAULT_RETRY_CONFIG = BotoConfig(retries={"max_attempts": 10, "mode": "standard"})


def create_boto_client(service_name: str, region_name: Optional[str] = None, profile_name: Optional[str] = None) -> Any:
    """Create a boto3 client.

    Args:
        service_name: AWS service name (e.g., "ec2")
        region_name: AWS region (optional, falls back to the profile default)
        profile_name: AWS profile name (optional)

    Returns:
        boto3 client for the service
    """
    session = boto3.Session(profile_name=profile_name, region_name=region_name)
    return session.client(service_name, config=DEFAULT_RETRY_CONFIG)
