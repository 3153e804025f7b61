"""GCE naming helpers.

Cluster-owned GCE objects are recognised by name: GCE does not allow dots in
names, so objects are named "<prefix>-<cluster name with dots as dashes>".
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

# Label carried by disks created for a cluster
GCE_LABEL_CLUSTER_NAME = "k8s-io-cluster-name"

# Instance template metadata key holding the cluster name
METADATA_CLUSTER_NAME = "cluster-name"

# Maximum number of "-" separated tokens in a name prefix
# Example: nodeport-external-to-node-ipv6
MAX_PREFIX_TOKENS = 5

GOSSIP_SUFFIX = ".k8s.local"


def safe_cluster_name(cluster_name: str) -> str:
    """Cluster name usable in GCE names, tags and labels."""
    return cluster_name.replace(".", "-")


def safe_object_name(name: str, cluster_name: str) -> str:
    """GCE object name for a cluster-owned object with the given prefix."""
    return safe_cluster_name(f"{name}-{cluster_name}")


def matches_cluster_name(name: str, cluster_name: str, max_parts: int = 1) -> bool:
    """Check if a name could have been generated for the cluster.

    Considers every prefix made of the first 1..max_parts hyphen-separated
    tokens of the name.

    Args:
        name: GCE object name
        cluster_name: Cluster name
        max_parts: Maximum number of prefix tokens to consider

    Returns:
        True if "<prefix>-<safe cluster name>" equals the name for some prefix
    """
    tokens = name.split("-")

    for i in range(1, max_parts + 1):
        if i > len(tokens):
            break

        prefix = "-".join(tokens[:i])
        if not prefix:
            continue
        if name == safe_object_name(prefix, cluster_name):
            return True

    return False


def is_gossip_hostname(name: str) -> bool:
    """True for clusters using gossip DNS, which have no cloud DNS records."""
    return name.rstrip(".").endswith(GOSSIP_SUFFIX)


def last_component(url: str) -> str:
    """Last path component of a GCE URL (usually the object name)."""
    return url.rstrip("/").rsplit("/", 1)[-1]


@dataclass
class GoogleCloudURL:
    """Parsed GCE self link.

    Attributes:
        project: Project ID
        collection: API collection (e.g., "disks", "targetPools")
        name: Object name
        zone: Zone for zonal objects
        region: Region for regional objects
    """

    project: str
    collection: str
    name: str
    zone: Optional[str] = None
    region: Optional[str] = None

    @property
    def is_global(self) -> bool:
        return self.zone is None and self.region is None


def parse_google_cloud_url(url: str) -> GoogleCloudURL:
    """Parse a GCE self link.

    Accepts full URLs (https://www.googleapis.com/compute/v1/projects/...) and
    relative paths starting at "projects/".

    Raises:
        ValueError: If the URL does not contain a project, collection and name
    """
    tokens = [token for token in url.split("/") if token]

    try:
        start = tokens.index("projects")
    except ValueError:
        raise ValueError(f"unable to parse GCE URL: {url!r}")

    tokens = tokens[start:]
    if len(tokens) < 4:
        raise ValueError(f"unable to parse GCE URL: {url!r}")

    zone = None
    region = None
    scope = tokens[2]
    if scope == "zones" and len(tokens) >= 6:
        zone = tokens[3]
    elif scope == "regions" and len(tokens) >= 6:
        region = tokens[3]
    elif scope != "global" and len(tokens) != 4:
        raise ValueError(f"unable to parse GCE URL: {url!r}")

    return GoogleCloudURL(
        project=tokens[1],
        collection=tokens[-2],
        name=tokens[-1],
        zone=zone,
        region=region,
    )
