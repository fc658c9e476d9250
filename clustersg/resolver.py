import logging
from typing import Union

from clustersg.models import (
    ClusterSpec,
    GroupOverride,
    ManagedGroup,
    SecurityGroupRole,
)
from clustersg.tags import RESOURCE_LIFECYCLE_OWNED, build_tags, cloud_provider_tag_key

logger = logging.getLogger(__name__)


class GroupResolver:
    """Maps each role to an override or to the managed group that should exist."""

    def __init__(self, cluster: ClusterSpec):
        self.cluster = cluster

    @property
    def overrides(self) -> dict[SecurityGroupRole, str]:
        return self.cluster.network.security_group_overrides

    def group_name(self, role: SecurityGroupRole) -> str:
        return f"{self.cluster.name}-{role.value}"

    def group_description(self, role: SecurityGroupRole) -> str:
        return f"Kubernetes cluster {self.cluster.name}: {role.value}"

    def group_tags(self, role: SecurityGroupRole) -> dict[str, str]:
        """Tags for the managed group of a role.

        The cloud provider tag goes on the lb group only; the cloud provider
        cannot pick a group when more than one carries it.
        """
        additional = dict(self.cluster.additional_tags)
        provider_key = cloud_provider_tag_key(self.cluster.name)
        if role == SecurityGroupRole.LB:
            additional[provider_key] = RESOURCE_LIFECYCLE_OWNED
        elif additional.pop(provider_key, None) is not None:
            logger.debug(
                "Removing cloud provider tag from %s security group of cluster %s",
                role.value,
                self.cluster.name,
            )
        return build_tags(self.cluster.name, self.group_name(role), role.value, additional)

    def resolve(self, role: SecurityGroupRole) -> Union[GroupOverride, ManagedGroup]:
        override_id = self.overrides.get(role)
        if override_id:
            return GroupOverride(role=role, id=override_id)

        return ManagedGroup(
            role=role,
            name=self.group_name(role),
            description=self.group_description(role),
            tags=self.group_tags(role),
        )
