"""
Shared pytest fixtures.

``FakeFirewallGroupAPI`` keeps security groups in memory and records every
call made against it, so tests can assert on the exact sequence of cloud
operations the engine issues.
"""

import copy
from typing import Any, Optional

import pytest

from clustersg.errors import DependencyError, NotFoundError
from clustersg.models import (
    ClusterNetworkStatus,
    ClusterSpec,
    IngressRule,
    NetworkSpec,
    SubnetSpec,
    VpcSpec,
)
from clustersg.rules import ip_permission_from_ingress_rule
from clustersg.services.ec2_gateway import DiscoveredGroup, FirewallGroupAPI

CLUSTER_NAME = "test-cluster"
VPC_ID = "vpc-securitygroups"


class FakeFirewallGroupAPI(FirewallGroupAPI):
    """In-memory FirewallGroupAPI that records calls."""

    def __init__(self, groups: Optional[list[DiscoveredGroup]] = None):
        self.groups: dict[str, DiscoveredGroup] = {g.id: g for g in groups or []}
        self.calls: list[tuple[str, Any]] = []
        self.failures: dict[str, Exception] = {}
        # Group name -> error raised when creating that group only
        self.create_failures: dict[str, Exception] = {}

    def _record(self, operation: str, argument: Any) -> None:
        self.calls.append((operation, argument))
        if operation in self.failures:
            raise self.failures[operation]

    def operations(self) -> list[str]:
        return [operation for operation, _ in self.calls]

    def calls_for(self, operation: str) -> list[Any]:
        return [argument for op, argument in self.calls if op == operation]

    def list_groups(self, vpc_id: str) -> list[DiscoveredGroup]:
        self._record("list_groups", vpc_id)
        return [copy.deepcopy(g) for g in self.groups.values() if g.vpc_id == vpc_id]

    def list_groups_paginated(self, filters: list[dict]) -> list[DiscoveredGroup]:
        self._record("list_groups_paginated", filters)
        matched = []
        for group in self.groups.values():
            if all(self._matches(group, f) for f in filters):
                matched.append(copy.deepcopy(group))
        return matched

    @staticmethod
    def _matches(group: DiscoveredGroup, flt: dict) -> bool:
        name = flt["Name"]
        if name == "vpc-id":
            return group.vpc_id in flt["Values"]
        if name.startswith("tag:"):
            return group.tags.get(name[len("tag:"):]) in flt["Values"]
        return True

    def describe_groups(self, group_ids: list[str]) -> list[DiscoveredGroup]:
        self._record("describe_groups", list(group_ids))
        return [copy.deepcopy(self.groups[i]) for i in group_ids if i in self.groups]

    def create_group(
        self, vpc_id: str, name: str, description: str, tags: dict[str, str]
    ) -> str:
        self._record(
            "create_group",
            {"vpc_id": vpc_id, "name": name, "description": description, "tags": dict(tags)},
        )
        if name in self.create_failures:
            raise self.create_failures[name]
        group_id = f"sg-{name}"
        self.groups[group_id] = DiscoveredGroup(
            id=group_id, name=name, vpc_id=vpc_id, tags=dict(tags)
        )
        return group_id

    def authorize_ingress(self, group_id: str, rules: list[IngressRule]) -> None:
        self._record("authorize_ingress", (group_id, list(rules)))
        if group_id not in self.groups:
            raise NotFoundError(
                f"AuthorizeSecurityGroupIngress failed for {group_id}",
                operation="AuthorizeSecurityGroupIngress",
                error_code="InvalidGroup.NotFound",
                resource_id=group_id,
            )
        self.groups[group_id].ip_permissions.extend(
            ip_permission_from_ingress_rule(rule) for rule in rules
        )

    def revoke_ingress(self, group_id: str, ip_permissions: list[dict[str, Any]]) -> None:
        self._record("revoke_ingress", (group_id, list(ip_permissions)))
        self.groups[group_id].ip_permissions = []

    def delete_group(self, group_id: str) -> None:
        self._record("delete_group", group_id)
        for other in self.groups.values():
            for permission in other.ip_permissions:
                for pair in permission.get("UserIdGroupPairs", []):
                    if pair["GroupId"] == group_id and other.id != group_id:
                        raise DependencyError(
                            f"DeleteSecurityGroup failed for {group_id}",
                            operation="DeleteSecurityGroup",
                            error_code="DependencyViolation",
                            resource_id=group_id,
                        )
        del self.groups[group_id]


@pytest.fixture
def fake_api() -> FakeFirewallGroupAPI:
    return FakeFirewallGroupAPI()


@pytest.fixture
def network_spec() -> NetworkSpec:
    return NetworkSpec(
        vpc=VpcSpec(id=VPC_ID, internet_gateway_id="igw-01"),
        subnets=[
            SubnetSpec(
                id="subnet-securitygroups-private",
                is_public=False,
                availability_zone="us-east-1a",
            ),
            SubnetSpec(
                id="subnet-securitygroups-public",
                is_public=True,
                nat_gateway_id="nat-01",
                availability_zone="us-east-1a",
            ),
        ],
    )


@pytest.fixture
def cluster(network_spec: NetworkSpec) -> ClusterSpec:
    return ClusterSpec(name=CLUSTER_NAME, network=network_spec)


@pytest.fixture
def status() -> ClusterNetworkStatus:
    return ClusterNetworkStatus()
