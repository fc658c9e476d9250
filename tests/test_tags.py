"""
Tests for tag construction and the ownership predicate.
"""

from clustersg.tags import (
    ROLE_TAG_KEY,
    build_tags,
    cloud_provider_tag_key,
    cluster_tag_key,
    from_ec2_tags,
    is_owned,
    owned_filters,
    to_ec2_tags,
)


class TestTagKeys:
    """Tests for tag key helpers."""

    def test_cluster_tag_key(self) -> None:
        """Should namespace the cluster name under the provider prefix."""
        assert cluster_tag_key("test-cluster") == (
            "sigs.k8s.io/cluster-api-provider-aws/cluster/test-cluster"
        )

    def test_cloud_provider_tag_key(self) -> None:
        """Should use the legacy kubernetes.io prefix."""
        assert cloud_provider_tag_key("test-cluster") == "kubernetes.io/cluster/test-cluster"

    def test_role_tag_key(self) -> None:
        assert ROLE_TAG_KEY == "sigs.k8s.io/cluster-api-provider-aws/role"


class TestBuildTags:
    """Tests for build_tags."""

    def test_standard_tags(self) -> None:
        """Should set the name, ownership and role tags."""
        assert build_tags("c", "c-node", "node") == {
            "Name": "c-node",
            cluster_tag_key("c"): "owned",
            ROLE_TAG_KEY: "node",
        }

    def test_additional_tags_do_not_override_standard_tags(self) -> None:
        """Should keep extra tags but never let them replace standard ones."""
        tags = build_tags("c", "c-node", "node", {"Name": "other", "team": "infra"})

        assert tags["Name"] == "c-node"
        assert tags["team"] == "infra"


class TestOwnership:
    """Tests for is_owned and owned_filters."""

    def test_owned(self) -> None:
        assert is_owned({cluster_tag_key("c"): "owned"}, "c")

    def test_shared_is_not_owned(self) -> None:
        """Should reject resources only shared with the cluster."""
        assert not is_owned({cluster_tag_key("c"): "shared"}, "c")

    def test_other_cluster_is_not_owned(self) -> None:
        """Should reject resources owned by a different cluster."""
        assert not is_owned({cluster_tag_key("other"): "owned"}, "c")

    def test_owned_filters(self) -> None:
        """Should filter by VPC and owned tag."""
        assert owned_filters("vpc-1", "c") == [
            {"Name": "vpc-id", "Values": ["vpc-1"]},
            {"Name": f"tag:{cluster_tag_key('c')}", "Values": ["owned"]},
        ]


class TestEc2TagConversion:
    """Tests for EC2 tag list conversion."""

    def test_to_ec2_tags_sorted_by_key(self) -> None:
        """Should emit tags in key order."""
        assert to_ec2_tags({"b": "2", "a": "1"}) == [
            {"Key": "a", "Value": "1"},
            {"Key": "b", "Value": "2"},
        ]

    def test_from_ec2_tags(self) -> None:
        """Should tolerate missing lists and values."""
        assert from_ec2_tags(None) == {}
        assert from_ec2_tags([{"Key": "a"}, {"Key": "b", "Value": "2"}]) == {"a": "", "b": "2"}
