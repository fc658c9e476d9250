import ipaddress
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from clustersg.tags import RESOURCE_LIFECYCLE_OWNED, cluster_tag_key


class SecurityGroupRole(str, Enum):
    """Purpose of a cluster security group."""

    BASTION = "bastion"
    APISERVER_LB = "apiserver-lb"
    LB = "lb"
    CONTROL_PLANE = "controlplane"
    NODE = "node"


DEFAULT_ROLES: list[SecurityGroupRole] = [
    SecurityGroupRole.BASTION,
    SecurityGroupRole.APISERVER_LB,
    SecurityGroupRole.LB,
    SecurityGroupRole.CONTROL_PLANE,
    SecurityGroupRole.NODE,
]


class SecurityGroupProtocol(str, Enum):
    """IP protocol of an ingress rule, as EC2 spells it."""

    ALL = "-1"
    IP_IN_IP = "4"
    TCP = "tcp"
    UDP = "udp"
    ICMP = "icmp"
    ICMPV6 = "58"


class LoadBalancerScheme(str, Enum):
    """Scheme of the control plane load balancer."""

    INTERNET_FACING = "internet-facing"
    INTERNAL = "internal"


class LoadBalancerType(str, Enum):
    """Type of the control plane load balancer."""

    CLASSIC = "classic"
    ELB = "elb"
    ALB = "alb"
    NLB = "nlb"


class IngressRule(BaseModel):
    """A single ingress permission: protocol, port range and allowed sources."""

    description: str = ""
    protocol: str = SecurityGroupProtocol.TCP.value
    from_port: int = 0
    to_port: int = 0
    cidr_blocks: list[str] = Field(default_factory=list)
    ipv6_cidr_blocks: list[str] = Field(default_factory=list)
    source_security_group_ids: list[str] = Field(default_factory=list)
    # Resolved into source_security_group_ids during derivation
    source_security_group_roles: list[SecurityGroupRole] = Field(default_factory=list)

    @field_validator("protocol", mode="before")
    @classmethod
    def normalize_protocol(cls, v: object) -> object:
        if isinstance(v, SecurityGroupProtocol):
            return v.value
        return v

    def has_cidr_sources(self) -> bool:
        return bool(self.cidr_blocks or self.ipv6_cidr_blocks)


class CniIngressRule(BaseModel):
    """A rule the CNI plugin needs between control plane and nodes."""

    description: str
    protocol: str
    from_port: int
    to_port: int

    @field_validator("protocol", mode="before")
    @classmethod
    def normalize_protocol(cls, v: object) -> object:
        if isinstance(v, SecurityGroupProtocol):
            return v.value
        return v


class IPv6Config(BaseModel):
    """IPv6 settings of a VPC."""

    cidr_block: str = ""
    pool_id: Optional[str] = None


class VpcSpec(BaseModel):
    """VPC the cluster lives in."""

    id: str = ""
    cidr_block: str = ""
    ipv6: Optional[IPv6Config] = None
    internet_gateway_id: Optional[str] = None
    tags: dict[str, str] = Field(default_factory=dict)

    @field_validator("cidr_block")
    @classmethod
    def validate_vpc_cidr(cls, v: str) -> str:
        if not v:
            return v
        try:
            ipaddress.ip_network(v, strict=False)
        except ValueError as e:
            raise ValueError(f"Invalid VPC CIDR block: {e}") from e
        return v

    def is_ipv6_enabled(self) -> bool:
        return self.ipv6 is not None

    def is_managed(self, cluster_name: str) -> bool:
        """True when the VPC was created for this cluster."""
        return self.tags.get(cluster_tag_key(cluster_name)) == RESOURCE_LIFECYCLE_OWNED


class SubnetSpec(BaseModel):
    """A subnet of the cluster VPC."""

    id: str = ""
    cidr_block: str = ""
    availability_zone: str = ""
    is_public: bool = False
    nat_gateway_id: Optional[str] = None
    tags: dict[str, str] = Field(default_factory=dict)


class LoadBalancerSpec(BaseModel):
    """Control plane load balancer settings relevant to its security group."""

    scheme: LoadBalancerScheme = LoadBalancerScheme.INTERNET_FACING
    load_balancer_type: LoadBalancerType = LoadBalancerType.CLASSIC
    ingress_rules: list[IngressRule] = Field(default_factory=list)
    preserve_client_ip: bool = False


class BastionSpec(BaseModel):
    """Bastion host settings."""

    enabled: bool = False


class NetworkSpec(BaseModel):
    """Desired network configuration of a cluster."""

    vpc: VpcSpec = Field(default_factory=VpcSpec)
    subnets: list[SubnetSpec] = Field(default_factory=list)
    security_group_overrides: dict[SecurityGroupRole, str] = Field(default_factory=dict)
    additional_control_plane_ingress_rules: list[IngressRule] = Field(default_factory=list)
    # None means the Calico defaults
    cni_ingress_rules: Optional[list[CniIngressRule]] = None


class ClusterSpec(BaseModel):
    """Read-only topology snapshot of the cluster being reconciled."""

    name: str = Field(..., min_length=1)
    network: NetworkSpec = Field(default_factory=NetworkSpec)
    control_plane_load_balancer: Optional[LoadBalancerSpec] = None
    bastion: BastionSpec = Field(default_factory=BastionSpec)
    additional_tags: dict[str, str] = Field(default_factory=dict)
    api_server_port: int = 6443


class ManagedGroup(BaseModel):
    """A security group this engine creates, tags and deletes."""

    role: SecurityGroupRole
    id: str = ""
    name: str
    description: str
    tags: dict[str, str] = Field(default_factory=dict)
    ingress_rules: list[IngressRule] = Field(default_factory=list)


class GroupOverride(BaseModel):
    """An externally owned security group used in place of a managed one."""

    role: SecurityGroupRole
    id: str


class SecurityGroup(BaseModel):
    """Security group recorded in the cluster network status."""

    id: str
    name: str = ""
    ingress_rules: list[IngressRule] = Field(default_factory=list)
    tags: dict[str, str] = Field(default_factory=dict)


class ClusterNetworkStatus(BaseModel):
    """Discovered network state, read back by later reconciliation passes."""

    security_groups: dict[SecurityGroupRole, SecurityGroup] = Field(default_factory=dict)
    nat_gateway_ips: list[str] = Field(default_factory=list)

    def group_id(self, role: SecurityGroupRole) -> Optional[str]:
        group = self.security_groups.get(role)
        if group is None or not group.id:
            return None
        return group.id
