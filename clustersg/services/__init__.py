from clustersg.services.ec2_gateway import Ec2FirewallGroupAPI, FirewallGroupAPI
from clustersg.services.security_groups import SecurityGroupService
from clustersg.services.teardown import SecurityGroupTeardownService

__all__ = [
    "FirewallGroupAPI",
    "Ec2FirewallGroupAPI",
    "SecurityGroupService",
    "SecurityGroupTeardownService",
]
