"""Deletion of the security groups a cluster owns.

Groups may reference each other in their ingress rules, and EC2 refuses to
delete a group that is still referenced. Every owned group therefore has its
ingress rules revoked before any group is deleted.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from clustersg.errors import CloudAPIError, InvalidTransitionError
from clustersg.models import ClusterNetworkStatus, ClusterSpec
from clustersg.services.ec2_gateway import FirewallGroupAPI
from clustersg.tags import is_owned, owned_filters

logger = logging.getLogger(__name__)


class TeardownState(str, Enum):
    """Progress of a single group through deletion."""

    DISCOVERED = "discovered"
    REVOKED = "revoked"
    DELETED = "deleted"


@dataclass
class GroupTeardown:
    """Deletion of one group: DISCOVERED -> REVOKED -> DELETED."""

    group_id: str
    name: str = ""
    ip_permissions: list[dict[str, Any]] = field(default_factory=list)
    state: TeardownState = TeardownState.DISCOVERED

    def revoke(self, api: FirewallGroupAPI) -> None:
        """Revoke every ingress permission of the group, if it has any."""
        if self.state != TeardownState.DISCOVERED:
            raise InvalidTransitionError(
                f"Cannot revoke security group {self.group_id} in state {self.state.value}"
            )
        if self.ip_permissions:
            api.revoke_ingress(self.group_id, self.ip_permissions)
            logger.info(
                "Revoked %d ingress permission(s) from security group %s",
                len(self.ip_permissions),
                self.group_id,
            )
        self.state = TeardownState.REVOKED

    def delete(self, api: FirewallGroupAPI) -> None:
        if self.state != TeardownState.REVOKED:
            raise InvalidTransitionError(
                f"Cannot delete security group {self.group_id} in state "
                f"{self.state.value}; its ingress rules must be revoked first"
            )
        api.delete_group(self.group_id)
        self.state = TeardownState.DELETED
        logger.info("Deleted security group %s (%s)", self.name, self.group_id)


class SecurityGroupTeardownService:
    """Deletes every security group tagged as owned by the cluster."""

    def __init__(
        self,
        cluster: ClusterSpec,
        status: ClusterNetworkStatus,
        api: FirewallGroupAPI,
    ):
        self.cluster = cluster
        self.status = status
        self.api = api

    def delete_all(self) -> list[GroupTeardown]:
        vpc_id = self.cluster.network.vpc.id
        if not vpc_id:
            logger.debug(
                "Skipping security group deletion for cluster %s, vpc id not set",
                self.cluster.name,
            )
            return []

        try:
            listed = self.api.list_groups_paginated(owned_filters(vpc_id, self.cluster.name))
        except CloudAPIError:
            logger.error(
                "Failed to list security groups owned by cluster %s in vpc %s",
                self.cluster.name,
                vpc_id,
            )
            raise

        owned = [group for group in listed if is_owned(group.tags, self.cluster.name)]
        if not owned:
            logger.debug("No security groups owned by cluster %s", self.cluster.name)
            return []

        described = self.api.describe_groups([group.id for group in owned])
        teardowns = [
            GroupTeardown(group_id=group.id, name=group.name, ip_permissions=group.ip_permissions)
            for group in described
        ]

        for teardown in teardowns:
            try:
                teardown.revoke(self.api)
            except CloudAPIError:
                logger.error(
                    "Failed to revoke ingress rules from security group %s of cluster %s",
                    teardown.group_id,
                    self.cluster.name,
                )
                raise

        for teardown in teardowns:
            try:
                teardown.delete(self.api)
            except CloudAPIError:
                logger.error(
                    "Failed to delete security group %s of cluster %s",
                    teardown.group_id,
                    self.cluster.name,
                )
                raise
            self._forget(teardown.group_id)

        return teardowns

    def _forget(self, group_id: str) -> None:
        for role, group in list(self.status.security_groups.items()):
            if group.id == group_id:
                del self.status.security_groups[role]
