"""Exceptions raised by the security group engine."""

from typing import Optional


class SecurityGroupError(Exception):
    """Base exception for security group reconciliation."""

    pass


class ConfigurationError(SecurityGroupError):
    """Raised when the cluster network configuration cannot be reconciled.

    Never retried; the caller has to fix the cluster spec.
    """

    pass


class InvalidRoleReferenceError(SecurityGroupError):
    """Raised when a rule references a role that has no resolved group."""

    pass


class InvalidTransitionError(SecurityGroupError):
    """Raised when a group teardown step is attempted out of order."""

    pass


class CloudAPIError(SecurityGroupError):
    """An EC2 API call failed."""

    def __init__(
        self,
        message: str,
        operation: str,
        error_code: Optional[str] = None,
        resource_id: Optional[str] = None,
    ):
        self.operation = operation
        self.error_code = error_code
        self.resource_id = resource_id
        super().__init__(message)


class DependencyError(CloudAPIError):
    """The call failed because of a dependent resource (e.g. a group still in use)."""

    pass


class NotFoundError(CloudAPIError):
    """The group or VPC referenced by the call does not exist."""

    pass


DEPENDENCY_ERROR_CODES = frozenset(
    {
        "DependencyViolation",
        "FailedDependency",
    }
)

NOT_FOUND_ERROR_CODES = frozenset(
    {
        "InvalidGroup.NotFound",
        "InvalidGroupId.NotFound",
        "InvalidVpcID.NotFound",
        "InvalidPermission.NotFound",
    }
)


def error_class_for_code(error_code: Optional[str]) -> type[CloudAPIError]:
    """Map an EC2 error code to the exception type it is raised as."""
    if error_code in DEPENDENCY_ERROR_CODES:
        return DependencyError
    if error_code in NOT_FOUND_ERROR_CODES:
        return NotFoundError
    return CloudAPIError
