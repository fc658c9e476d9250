"""Ingress rule derivation for each security group role.

Rules are computed from the cluster spec and the network status. The status
supplies the group IDs already resolved for other roles (peer resolution)
and the NAT gateway IPs discovered for the VPC.
"""

import logging
from typing import Any, Iterable, Mapping, Optional

from clustersg.errors import InvalidRoleReferenceError
from clustersg.models import (
    ClusterNetworkStatus,
    ClusterSpec,
    CniIngressRule,
    IngressRule,
    LoadBalancerScheme,
    LoadBalancerSpec,
    LoadBalancerType,
    SecurityGroupProtocol,
    SecurityGroupRole,
)

logger = logging.getLogger(__name__)

ANY_IPV4_CIDR_BLOCK = "0.0.0.0/0"
ANY_IPV6_CIDR_BLOCK = "::/0"

# Protocols EC2 rejects port ranges for
PORTLESS_PROTOCOLS = frozenset(
    {SecurityGroupProtocol.ALL.value, SecurityGroupProtocol.IP_IN_IP.value}
)

DEFAULT_CNI_INGRESS_RULES: list[CniIngressRule] = [
    CniIngressRule(
        description="bgp (calico)",
        protocol=SecurityGroupProtocol.TCP,
        from_port=179,
        to_port=179,
    ),
    CniIngressRule(
        description="IP-in-IP (calico)",
        protocol=SecurityGroupProtocol.IP_IN_IP,
        from_port=-1,
        to_port=65535,
    ),
]


def derive_ingress_rules(
    role: SecurityGroupRole,
    cluster: ClusterSpec,
    status: ClusterNetworkStatus,
) -> list[IngressRule]:
    """Return the ordered ingress rules a role's security group should carry."""
    if role == SecurityGroupRole.BASTION:
        return _bastion_rules()
    if role == SecurityGroupRole.APISERVER_LB:
        return _apiserver_lb_rules(cluster, status)
    if role == SecurityGroupRole.LB:
        return _lb_rules(cluster)
    if role == SecurityGroupRole.CONTROL_PLANE:
        return _control_plane_rules(cluster, status)
    if role == SecurityGroupRole.NODE:
        return _node_rules(cluster, status)
    raise ValueError(f"Unknown security group role: {role}")


def resolve_peer_sources(
    rules: Iterable[IngressRule],
    status: ClusterNetworkStatus,
    default_role: Optional[SecurityGroupRole] = None,
) -> list[IngressRule]:
    """Resolve ``source_security_group_roles`` into group IDs.

    Explicit IDs come first, followed by the IDs of the referenced roles in
    order. Rules with CIDR sources are returned without any group IDs added.
    A rule without any source gets the ``default_role`` group, if given.
    """
    output: list[IngressRule] = []
    for rule in rules:
        if rule.has_cidr_sources():
            output.append(
                rule.model_copy(update={"source_security_group_roles": []}, deep=True)
            )
            continue

        resolved: list[str] = []
        for source_role in rule.source_security_group_roles:
            group_id = status.group_id(source_role)
            if group_id is None:
                raise InvalidRoleReferenceError(
                    f"Invalid security group role {source_role.value!r} in rule "
                    f"{rule.description!r}: no security group resolved for it"
                )
            resolved.append(group_id)

        group_ids = list(rule.source_security_group_ids) + resolved
        if not group_ids and default_role is not None:
            default_id = status.group_id(default_role)
            if default_id is None:
                raise InvalidRoleReferenceError(
                    f"Rule {rule.description!r} has no source and no security group "
                    f"is resolved for role {default_role.value!r}"
                )
            group_ids = [default_id]

        output.append(
            rule.model_copy(
                update={
                    "source_security_group_ids": group_ids,
                    "source_security_group_roles": [],
                },
                deep=True,
            )
        )
    return output


def _peer_rule(
    description: str,
    protocol: str,
    from_port: int,
    to_port: int,
    roles: Iterable[SecurityGroupRole],
    status: ClusterNetworkStatus,
) -> Optional[IngressRule]:
    """Built-in rule sourced from other roles; unresolved roles are skipped."""
    group_ids: list[str] = []
    for role in roles:
        group_id = status.group_id(role)
        if group_id and group_id not in group_ids:
            group_ids.append(group_id)
    if not group_ids:
        logger.debug("Skipping rule %r, none of its source roles are resolved", description)
        return None
    return IngressRule(
        description=description,
        protocol=protocol,
        from_port=from_port,
        to_port=to_port,
        source_security_group_ids=group_ids,
    )


def _bastion_rules() -> list[IngressRule]:
    return [
        IngressRule(
            description="SSH",
            protocol=SecurityGroupProtocol.TCP,
            from_port=22,
            to_port=22,
            cidr_blocks=[ANY_IPV4_CIDR_BLOCK],
        )
    ]


def _apiserver_lb_rules(
    cluster: ClusterSpec, status: ClusterNetworkStatus
) -> list[IngressRule]:
    lb = cluster.control_plane_load_balancer or LoadBalancerSpec()
    vpc = cluster.network.vpc
    port = cluster.api_server_port
    ipv6 = vpc.is_ipv6_enabled()
    description = "Kubernetes API IPv6" if ipv6 else "Kubernetes API"

    rules: list[IngressRule] = []
    if lb.scheme == LoadBalancerScheme.INTERNAL:
        if ipv6 and vpc.ipv6.cidr_block:
            rules.append(
                IngressRule(
                    description=description,
                    protocol=SecurityGroupProtocol.TCP,
                    from_port=port,
                    to_port=port,
                    ipv6_cidr_blocks=[vpc.ipv6.cidr_block],
                )
            )
        elif not ipv6 and vpc.cidr_block:
            rules.append(
                IngressRule(
                    description=description,
                    protocol=SecurityGroupProtocol.TCP,
                    from_port=port,
                    to_port=port,
                    cidr_blocks=[vpc.cidr_block],
                )
            )
    else:
        for ip in status.nat_gateway_ips:
            rules.append(
                IngressRule(
                    description="Kubernetes API",
                    protocol=SecurityGroupProtocol.TCP,
                    from_port=port,
                    to_port=port,
                    cidr_blocks=[f"{ip}/32"],
                )
            )

    if lb.ingress_rules:
        rules.extend(resolve_peer_sources(lb.ingress_rules, status))
        return rules

    # Internal load balancers get the catch-all rule as well.
    if ipv6:
        rules.append(
            IngressRule(
                description=description,
                protocol=SecurityGroupProtocol.TCP,
                from_port=port,
                to_port=port,
                ipv6_cidr_blocks=[ANY_IPV6_CIDR_BLOCK],
            )
        )
    else:
        rules.append(
            IngressRule(
                description=description,
                protocol=SecurityGroupProtocol.TCP,
                from_port=port,
                to_port=port,
                cidr_blocks=[ANY_IPV4_CIDR_BLOCK],
            )
        )
    return rules


def _lb_rules(cluster: ClusterSpec) -> list[IngressRule]:
    """The lb group is handed to the in-cluster cloud provider.

    Only an NLB in front of the API server needs traffic let through here.
    """
    lb = cluster.control_plane_load_balancer
    if lb is None or lb.load_balancer_type != LoadBalancerType.NLB:
        return []

    vpc = cluster.network.vpc
    ipv4_blocks = [vpc.cidr_block] if vpc.cidr_block else []
    ipv6_blocks: list[str] = []
    if vpc.is_ipv6_enabled() and vpc.ipv6.cidr_block:
        ipv6_blocks = [vpc.ipv6.cidr_block]
    if lb.preserve_client_ip:
        ipv4_blocks = [ANY_IPV4_CIDR_BLOCK]
        if vpc.is_ipv6_enabled():
            ipv6_blocks = [ANY_IPV6_CIDR_BLOCK]

    if not ipv4_blocks and not ipv6_blocks:
        return []
    return [
        IngressRule(
            description="Allow NLB traffic to the control plane instances.",
            protocol=SecurityGroupProtocol.TCP,
            from_port=cluster.api_server_port,
            to_port=cluster.api_server_port,
            cidr_blocks=ipv4_blocks,
            ipv6_cidr_blocks=ipv6_blocks,
        )
    ]


def _cni_rules(cluster: ClusterSpec, status: ClusterNetworkStatus) -> list[IngressRule]:
    cni_rules = cluster.network.cni_ingress_rules
    if cni_rules is None:
        cni_rules = DEFAULT_CNI_INGRESS_RULES
    rules = []
    for cni_rule in cni_rules:
        rule = _peer_rule(
            cni_rule.description,
            cni_rule.protocol,
            cni_rule.from_port,
            cni_rule.to_port,
            [SecurityGroupRole.CONTROL_PLANE, SecurityGroupRole.NODE],
            status,
        )
        if rule is not None:
            rules.append(rule)
    return rules


def _bastion_ssh_rule(
    cluster: ClusterSpec, status: ClusterNetworkStatus
) -> Optional[IngressRule]:
    if not cluster.bastion.enabled:
        return None
    return _peer_rule(
        "SSH",
        SecurityGroupProtocol.TCP.value,
        22,
        22,
        [SecurityGroupRole.BASTION],
        status,
    )


def _control_plane_rules(
    cluster: ClusterSpec, status: ClusterNetworkStatus
) -> list[IngressRule]:
    tcp = SecurityGroupProtocol.TCP.value
    candidates = [
        _peer_rule(
            "Kubernetes API",
            tcp,
            cluster.api_server_port,
            cluster.api_server_port,
            [
                SecurityGroupRole.APISERVER_LB,
                SecurityGroupRole.CONTROL_PLANE,
                SecurityGroupRole.NODE,
            ],
            status,
        ),
        _peer_rule("etcd", tcp, 2379, 2379, [SecurityGroupRole.CONTROL_PLANE], status),
        _peer_rule("etcd peer", tcp, 2380, 2380, [SecurityGroupRole.CONTROL_PLANE], status),
        _bastion_ssh_rule(cluster, status),
    ]
    rules = [rule for rule in candidates if rule is not None]
    rules.extend(_cni_rules(cluster, status))
    rules.extend(
        resolve_peer_sources(
            cluster.network.additional_control_plane_ingress_rules,
            status,
            default_role=SecurityGroupRole.CONTROL_PLANE,
        )
    )
    return rules


def _node_rules(cluster: ClusterSpec, status: ClusterNetworkStatus) -> list[IngressRule]:
    candidates = [
        _peer_rule(
            "Kubelet API",
            SecurityGroupProtocol.TCP.value,
            10250,
            10250,
            # node to node is needed by metrics-server
            [SecurityGroupRole.CONTROL_PLANE, SecurityGroupRole.NODE],
            status,
        ),
        _bastion_ssh_rule(cluster, status),
    ]
    rules = [rule for rule in candidates if rule is not None]
    rules.extend(_cni_rules(cluster, status))
    return rules


def ingress_rules_from_ip_permission(permission: Mapping[str, Any]) -> list[IngressRule]:
    """Split an EC2 IpPermission into one rule per source.

    Every IPv4 range, IPv6 range and group pair becomes its own rule with its
    own description, so differently described sources are never merged.
    """
    common = {
        "protocol": permission.get("IpProtocol", SecurityGroupProtocol.ALL.value),
        "from_port": permission.get("FromPort", 0),
        "to_port": permission.get("ToPort", 0),
    }
    rules: list[IngressRule] = []
    for ip_range in permission.get("IpRanges") or []:
        rules.append(
            IngressRule(
                description=ip_range.get("Description", ""),
                cidr_blocks=[ip_range["CidrIp"]],
                **common,
            )
        )
    for ip_range in permission.get("Ipv6Ranges") or []:
        rules.append(
            IngressRule(
                description=ip_range.get("Description", ""),
                ipv6_cidr_blocks=[ip_range["CidrIpv6"]],
                **common,
            )
        )
    for pair in permission.get("UserIdGroupPairs") or []:
        rules.append(
            IngressRule(
                description=pair.get("Description", ""),
                source_security_group_ids=[pair["GroupId"]],
                **common,
            )
        )
    return rules


def split_ingress_rule(rule: IngressRule) -> list[IngressRule]:
    """One rule per source, the granularity EC2 stores permissions at."""
    common = {
        "description": rule.description,
        "protocol": rule.protocol,
        "from_port": rule.from_port,
        "to_port": rule.to_port,
    }
    rules = [IngressRule(cidr_blocks=[cidr], **common) for cidr in rule.cidr_blocks]
    rules.extend(IngressRule(ipv6_cidr_blocks=[cidr], **common) for cidr in rule.ipv6_cidr_blocks)
    rules.extend(
        IngressRule(source_security_group_ids=[group_id], **common)
        for group_id in rule.source_security_group_ids
    )
    return rules


def _described(entry: dict[str, str], description: str) -> dict[str, str]:
    if description:
        entry["Description"] = description
    return entry


def ip_permission_from_ingress_rule(rule: IngressRule) -> dict[str, Any]:
    """Build the EC2 IpPermission for a resolved rule."""
    permission: dict[str, Any] = {"IpProtocol": rule.protocol}
    if rule.protocol not in PORTLESS_PROTOCOLS:
        permission["FromPort"] = rule.from_port
        permission["ToPort"] = rule.to_port

    if rule.cidr_blocks:
        permission["IpRanges"] = [
            _described({"CidrIp": cidr}, rule.description) for cidr in rule.cidr_blocks
        ]
    if rule.ipv6_cidr_blocks:
        permission["Ipv6Ranges"] = [
            _described({"CidrIpv6": cidr}, rule.description)
            for cidr in rule.ipv6_cidr_blocks
        ]
    if rule.source_security_group_ids:
        permission["UserIdGroupPairs"] = [
            _described({"GroupId": group_id}, rule.description)
            for group_id in rule.source_security_group_ids
        ]
    return permission
