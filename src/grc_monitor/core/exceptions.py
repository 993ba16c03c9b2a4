"""
Core Exceptions
================

Custom exceptions for the application following clean architecture principles.

These exceptions define domain-specific errors that can be caught and handled
appropriately at the application boundaries.
"""

from typing import Optional


class ApplicationException(Exception):
    """Base exception for all application errors."""

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class DomainException(ApplicationException):
    """Base exception for domain logic violations."""


class RepositoryException(ApplicationException):
    """Base exception for repository/data access errors."""


class ValidationException(ApplicationException):
    """Exception for validation errors."""


class ConfigurationException(ValidationException):
    """A test or rule definition that cannot be scheduled or executed."""


class ResourceNotFoundException(ApplicationException):
    """Exception when a requested resource is not found."""

    def __init__(
        self,
        resource_type: str,
        resource_id: Optional[str] = None,
        details: Optional[dict] = None
    ):
        self.resource_type = resource_type
        self.resource_id = resource_id
        message = f"{resource_type}"
        if resource_id:
            message += f" with id '{resource_id}'"
        message += " not found"
        super().__init__(message, details)


class InvalidTransitionException(DomainException):
    """Exception raised when a lifecycle transition is not allowed."""

    def __init__(
        self,
        entity: str,
        from_status: str,
        to_status: str,
        details: Optional[dict] = None
    ):
        self.entity = entity
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Cannot transition {entity} from '{from_status}' to '{to_status}'",
            details or {"from": from_status, "to": to_status}
        )


class ConflictException(DomainException):
    """Exception raised when an operation collides with existing state."""


class RunInProgressException(ConflictException):
    """Exception raised when a tenant already has a pending or running test run."""

    def __init__(self, tenant_id: str, details: Optional[dict] = None):
        self.tenant_id = tenant_id
        super().__init__(
            "A test run is already in progress for this organization",
            details or {"tenant_id": tenant_id}
        )


class ExternalServiceException(ApplicationException):
    """Base exception for external service failures."""

    def __init__(
        self,
        service_name: str,
        message: str,
        details: Optional[dict] = None
    ):
        self.service_name = service_name
        super().__init__(f"{service_name}: {message}", details)


class DeliveryException(ExternalServiceException):
    """Exception for alert delivery channel failures."""

    def __init__(self, channel: str, message: str, details: Optional[dict] = None):
        self.channel = channel
        super().__init__(f"Delivery[{channel}]", message, details)
