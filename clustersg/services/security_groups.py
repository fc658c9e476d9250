import logging
from typing import Iterable, Optional

from clustersg.errors import CloudAPIError, ConfigurationError
from clustersg.models import (
    DEFAULT_ROLES,
    ClusterNetworkStatus,
    ClusterSpec,
    GroupOverride,
    IngressRule,
    ManagedGroup,
    SecurityGroup,
    SecurityGroupRole,
)
from clustersg.resolver import GroupResolver
from clustersg.rules import derive_ingress_rules, split_ingress_rule
from clustersg.services.ec2_gateway import DiscoveredGroup, FirewallGroupAPI

logger = logging.getLogger(__name__)


class SecurityGroupService:
    """Converges the cluster security groups to the network spec.

    Groups are created once: a group that already exists with ingress rules is
    left alone, its live rules are not compared against the derived ones.
    """

    def __init__(
        self,
        cluster: ClusterSpec,
        status: ClusterNetworkStatus,
        api: FirewallGroupAPI,
        roles: Optional[Iterable[SecurityGroupRole]] = None,
    ):
        self.cluster = cluster
        self.status = status
        self.api = api
        self.roles = list(roles) if roles is not None else list(DEFAULT_ROLES)
        self.resolver = GroupResolver(cluster)

    @property
    def vpc_id(self) -> str:
        return self.cluster.network.vpc.id

    def validate(self) -> None:
        """Overrides are only allowed with a VPC the cluster does not own."""
        if self.cluster.network.security_group_overrides and self.cluster.network.vpc.is_managed(
            self.cluster.name
        ):
            raise ConfigurationError(
                f'security group overrides provided for managed vpc "{self.cluster.name}"'
            )

    def reconcile(self) -> list[ManagedGroup]:
        """Resolve every role to a group, creating and authorizing missing ones.

        Each missing group is created and then authorized before the next
        role is processed. A managed group found without any ingress
        permissions is authorized as well; one with permissions is left alone.

        Returns the groups created by this pass.
        """
        logger.debug("Reconciling security groups for cluster %s", self.cluster.name)
        self.validate()

        discovered = self.api.list_groups(self.vpc_id)
        by_id = {group.id: group for group in discovered}
        by_name = {group.name: group for group in discovered}

        created: list[ManagedGroup] = []
        authorized: list[ManagedGroup] = []
        for role in self.roles:
            group = self.resolver.resolve(role)
            if isinstance(group, GroupOverride):
                self._record_override(group, by_id.get(group.id))
                continue

            existing = by_name.get(group.name) or self._known_group(role, by_id)
            if existing is not None:
                self._record_existing(role, existing)
                if existing.ip_permissions:
                    continue
                logger.debug(
                    "Security group %s (%s) for role %s has no ingress rules",
                    existing.name,
                    existing.id,
                    role.value,
                )
                group.id = existing.id
            else:
                self._create(group)
                created.append(group)

            self._authorize(group, derive_ingress_rules(role, self.cluster, self.status))
            authorized.append(group)

        # Built-in rules of earlier roles may name groups created later in the pass
        for group in authorized:
            self._authorize_missing(group)

        return created

    def _record_existing(self, role: SecurityGroupRole, existing: DiscoveredGroup) -> None:
        logger.debug(
            "Security group %s (%s) already exists for role %s",
            existing.name,
            existing.id,
            role.value,
        )
        self.status.security_groups[role] = SecurityGroup(
            id=existing.id,
            name=existing.name,
            ingress_rules=existing.ingress_rules,
            tags=existing.tags,
        )

    def _known_group(
        self, role: SecurityGroupRole, by_id: dict[str, DiscoveredGroup]
    ) -> Optional[DiscoveredGroup]:
        """Group recorded in the status by an earlier pass, if still present."""
        group_id = self.status.group_id(role)
        if group_id is None:
            return None
        return by_id.get(group_id)

    def _record_override(
        self, override: GroupOverride, existing: Optional[DiscoveredGroup]
    ) -> None:
        if existing is None:
            logger.warning(
                "Security group override %s for role %s not found in vpc %s",
                override.id,
                override.role.value,
                self.vpc_id,
            )
            self.status.security_groups[override.role] = SecurityGroup(id=override.id)
            return

        logger.debug(
            "Using security group override %s for role %s", override.id, override.role.value
        )
        self.status.security_groups[override.role] = SecurityGroup(
            id=existing.id,
            name=existing.name,
            ingress_rules=existing.ingress_rules,
            tags=existing.tags,
        )

    def _create(self, group: ManagedGroup) -> None:
        try:
            group_id = self.api.create_group(
                self.vpc_id, group.name, group.description, group.tags
            )
        except CloudAPIError:
            logger.error(
                "Failed to create security group %s for role %s in cluster %s",
                group.name,
                group.role.value,
                self.cluster.name,
            )
            raise

        group.id = group_id
        self.status.security_groups[group.role] = SecurityGroup(
            id=group_id, name=group.name, tags=dict(group.tags)
        )
        logger.info(
            "Created security group %s (%s) for role %s in vpc %s",
            group.name,
            group_id,
            group.role.value,
            self.vpc_id,
        )

    def _authorize_missing(self, group: ManagedGroup) -> None:
        """Authorize the sources resolved since the group was authorized."""
        granted = [r for rule in group.ingress_rules for r in split_ingress_rule(rule)]
        missing = [
            r
            for rule in derive_ingress_rules(group.role, self.cluster, self.status)
            for r in split_ingress_rule(rule)
            if r not in granted
        ]
        if missing:
            self._authorize(group, missing)

    def _authorize(self, group: ManagedGroup, rules: list[IngressRule]) -> None:
        if not rules:
            logger.debug("No ingress rules to authorize for security group %s", group.id)
            return

        try:
            self.api.authorize_ingress(group.id, rules)
        except CloudAPIError:
            logger.error(
                "Failed to authorize ingress rules on security group %s for role %s in cluster %s",
                group.id,
                group.role.value,
                self.cluster.name,
            )
            raise

        group.ingress_rules.extend(rules)
        self.status.security_groups[group.role].ingress_rules.extend(rules)
        logger.info(
            "Authorized %d ingress rule(s) on security group %s (%s)",
            len(rules),
            group.name,
            group.id,
        )
