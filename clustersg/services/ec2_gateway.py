"""Firewall group API consumed by the engine, and its EC2 implementation."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError

from clustersg.errors import CloudAPIError, ConfigurationError, error_class_for_code
from clustersg.models import IngressRule
from clustersg.rules import ingress_rules_from_ip_permission, ip_permission_from_ingress_rule
from clustersg.settings import Settings, get_settings
from clustersg.tags import from_ec2_tags, to_ec2_tags

logger = logging.getLogger(__name__)

SECURITY_GROUP_RESOURCE_TYPE = "security-group"


@dataclass
class DiscoveredGroup:
    """A security group as returned by the cloud."""

    id: str
    name: str = ""
    vpc_id: str = ""
    tags: dict[str, str] = field(default_factory=dict)
    ip_permissions: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_ec2(cls, data: dict[str, Any]) -> "DiscoveredGroup":
        return cls(
            id=data["GroupId"],
            name=data.get("GroupName", ""),
            vpc_id=data.get("VpcId", ""),
            tags=from_ec2_tags(data.get("Tags")),
            ip_permissions=list(data.get("IpPermissions") or []),
        )

    @property
    def ingress_rules(self) -> list[IngressRule]:
        rules: list[IngressRule] = []
        for permission in self.ip_permissions:
            rules.extend(ingress_rules_from_ip_permission(permission))
        return rules


class FirewallGroupAPI(ABC):

    @abstractmethod
    def list_groups(self, vpc_id: str) -> list[DiscoveredGroup]:
        """List the groups of a VPC in a single call."""
        pass

    @abstractmethod
    def list_groups_paginated(self, filters: list[dict]) -> list[DiscoveredGroup]:
        """List every group matching the filters, across all pages."""
        pass

    @abstractmethod
    def describe_groups(self, group_ids: list[str]) -> list[DiscoveredGroup]:
        """Describe groups by ID, including their ingress permissions."""
        pass

    @abstractmethod
    def create_group(
        self, vpc_id: str, name: str, description: str, tags: dict[str, str]
    ) -> str:
        """Create a group and return its ID."""
        pass

    @abstractmethod
    def authorize_ingress(self, group_id: str, rules: list[IngressRule]) -> None:
        """Authorize resolved ingress rules on a group."""
        pass

    @abstractmethod
    def revoke_ingress(self, group_id: str, ip_permissions: list[dict[str, Any]]) -> None:
        """Revoke raw ingress permissions from a group."""
        pass

    @abstractmethod
    def delete_group(self, group_id: str) -> None:
        """Delete a group."""
        pass


class Ec2FirewallGroupAPI(FirewallGroupAPI):
    """FirewallGroupAPI backed by a boto3 EC2 client."""

    def __init__(self, client: Any):
        self._client = client

    def _call(
        self,
        operation: str,
        resource_id: Optional[str],
        fn: Callable[..., Any],
        **kwargs: Any,
    ) -> Any:
        try:
            return fn(**kwargs)
        except ClientError as e:
            error = e.response.get("Error", {})
            code = error.get("Code", "Unknown")
            message = error.get("Message", str(e))
            raise error_class_for_code(code)(
                f"{operation} failed for {resource_id or 'security groups'}: {code} - {message}",
                operation=operation,
                error_code=code,
                resource_id=resource_id,
            ) from e
        except BotoCoreError as e:
            raise CloudAPIError(
                f"{operation} failed for {resource_id or 'security groups'}: {e}",
                operation=operation,
                resource_id=resource_id,
            ) from e

    def list_groups(self, vpc_id: str) -> list[DiscoveredGroup]:
        response = self._call(
            "DescribeSecurityGroups",
            vpc_id,
            self._client.describe_security_groups,
            Filters=[{"Name": "vpc-id", "Values": [vpc_id]}],
        )
        return [DiscoveredGroup.from_ec2(sg) for sg in response.get("SecurityGroups", [])]

    def list_groups_paginated(self, filters: list[dict]) -> list[DiscoveredGroup]:
        def collect() -> list[DiscoveredGroup]:
            groups: list[DiscoveredGroup] = []
            paginator = self._client.get_paginator("describe_security_groups")
            for page in paginator.paginate(Filters=filters):
                groups.extend(DiscoveredGroup.from_ec2(sg) for sg in page.get("SecurityGroups", []))
            return groups

        return self._call("DescribeSecurityGroups", None, collect)

    def describe_groups(self, group_ids: list[str]) -> list[DiscoveredGroup]:
        response = self._call(
            "DescribeSecurityGroups",
            ", ".join(group_ids),
            self._client.describe_security_groups,
            GroupIds=group_ids,
        )
        return [DiscoveredGroup.from_ec2(sg) for sg in response.get("SecurityGroups", [])]

    def create_group(
        self, vpc_id: str, name: str, description: str, tags: dict[str, str]
    ) -> str:
        response = self._call(
            "CreateSecurityGroup",
            name,
            self._client.create_security_group,
            VpcId=vpc_id,
            GroupName=name,
            Description=description,
            TagSpecifications=[
                {
                    "ResourceType": SECURITY_GROUP_RESOURCE_TYPE,
                    "Tags": to_ec2_tags(tags),
                }
            ],
        )
        return response["GroupId"]

    def authorize_ingress(self, group_id: str, rules: list[IngressRule]) -> None:
        self._call(
            "AuthorizeSecurityGroupIngress",
            group_id,
            self._client.authorize_security_group_ingress,
            GroupId=group_id,
            IpPermissions=[ip_permission_from_ingress_rule(rule) for rule in rules],
        )

    def revoke_ingress(self, group_id: str, ip_permissions: list[dict[str, Any]]) -> None:
        self._call(
            "RevokeSecurityGroupIngress",
            group_id,
            self._client.revoke_security_group_ingress,
            GroupId=group_id,
            IpPermissions=ip_permissions,
        )

    def delete_group(self, group_id: str) -> None:
        self._call(
            "DeleteSecurityGroup",
            group_id,
            self._client.delete_security_group,
            GroupId=group_id,
        )


def create_ec2_client(settings: Optional[Settings] = None) -> Any:
    """Build an EC2 client, assuming the configured role when one is set.

    Without a role ARN the default credential chain is used (env vars,
    instance profile, IRSA).
    """
    settings = settings or get_settings()
    config = Config(
        connect_timeout=settings.aws_connect_timeout,
        read_timeout=settings.aws_read_timeout,
        retries={"mode": "standard", "total_max_attempts": settings.aws_max_attempts},
    )

    if not settings.aws_role_arn:
        return boto3.client("ec2", region_name=settings.aws_region, config=config)

    try:
        sts = boto3.client("sts", region_name=settings.aws_region)
        assume_kwargs: dict[str, Any] = {
            "RoleArn": settings.aws_role_arn,
            "RoleSessionName": settings.aws_role_session_name,
            "DurationSeconds": 900,
        }
        if settings.aws_external_id:
            assume_kwargs["ExternalId"] = settings.aws_external_id
        assumed = sts.assume_role(**assume_kwargs)
    except NoCredentialsError as e:
        raise ConfigurationError(
            f"Failed to locate AWS credentials: {e}. "
            "Use env vars, IAM role (EC2/IRSA), or other default provider chain."
        ) from e
    except ClientError as e:
        raise ConfigurationError(f"Failed to assume role {settings.aws_role_arn}: {e}") from e

    creds = assumed["Credentials"]
    logger.debug("Assumed role %s for EC2 access", settings.aws_role_arn)
    return boto3.client(
        "ec2",
        region_name=settings.aws_region,
        aws_access_key_id=creds["AccessKeyId"],
        aws_secret_access_key=creds["SecretAccessKey"],
        aws_session_token=creds["SessionToken"],
        config=config,
    )
