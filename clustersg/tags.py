"""Tag keys and the ownership predicate for cluster security groups."""

from typing import Iterable, Mapping, Optional

NAME_TAG_KEY = "Name"
NAME_PREFIX = "sigs.k8s.io/cluster-api-provider-aws"
ROLE_TAG_KEY = f"{NAME_PREFIX}/role"
CLOUD_PROVIDER_TAG_PREFIX = "kubernetes.io/cluster"

RESOURCE_LIFECYCLE_OWNED = "owned"


def cluster_tag_key(cluster_name: str) -> str:
    """Tag key marking a resource as belonging to the cluster."""
    return f"{NAME_PREFIX}/cluster/{cluster_name}"


def cloud_provider_tag_key(cluster_name: str) -> str:
    """Legacy tag key the in-cluster cloud provider looks for."""
    return f"{CLOUD_PROVIDER_TAG_PREFIX}/{cluster_name}"


def build_tags(
    cluster_name: str,
    name: str,
    role: str,
    additional: Optional[Mapping[str, str]] = None,
) -> dict[str, str]:
    """Tags for a resource owned by the cluster.

    Additional tags never override the name, ownership and role tags.
    """
    tags = dict(additional or {})
    tags.update(
        {
            NAME_TAG_KEY: name,
            cluster_tag_key(cluster_name): RESOURCE_LIFECYCLE_OWNED,
            ROLE_TAG_KEY: role,
        }
    )
    return tags


def is_owned(tags: Mapping[str, str], cluster_name: str) -> bool:
    """Return True if the tags mark the resource as owned by the cluster."""
    return tags.get(cluster_tag_key(cluster_name)) == RESOURCE_LIFECYCLE_OWNED


def owned_filters(vpc_id: str, cluster_name: str) -> list[dict]:
    """EC2 describe filters matching the groups ``is_owned`` accepts."""
    return [
        {"Name": "vpc-id", "Values": [vpc_id]},
        {
            "Name": f"tag:{cluster_tag_key(cluster_name)}",
            "Values": [RESOURCE_LIFECYCLE_OWNED],
        },
    ]


def to_ec2_tags(tags: Mapping[str, str]) -> list[dict[str, str]]:
    """Convert a tag mapping to the EC2 list form, sorted by key."""
    return [{"Key": key, "Value": tags[key]} for key in sorted(tags)]


def from_ec2_tags(tags: Optional[Iterable[Mapping[str, str]]]) -> dict[str, str]:
    return {t["Key"]: t.get("Value", "") for t in tags or [] if "Key" in t}
