"""Custom exception classes for the SeaweedFS service broker."""

from typing import Optional, Dict, Any
from enum import Enum


class ErrorCode(str, Enum):
    """Error codes returned in Open Service Broker error bodies."""

    # General errors
    INTERNAL_ERROR = "InternalError"
    BAD_REQUEST = "BadRequest"
    NOT_FOUND = "NotFound"
    METHOD_NOT_ALLOWED = "MethodNotAllowed"
    CONFIGURATION_ERROR = "ConfigurationError"

    # Protocol preconditions
    UNAUTHORIZED = "Unauthorized"
    MISSING_API_VERSION = "MissingAPIVersion"
    ASYNC_REQUIRED = "AsyncRequired"
    CONCURRENCY_ERROR = "ConcurrencyError"

    # Catalog errors
    INVALID_PLAN = "InvalidPlan"

    # Instance and binding state
    INSTANCE_NOT_FOUND = "InstanceNotFound"
    INSTANCE_NOT_READY = "InstanceNotReady"
    BINDING_NOT_FOUND = "BindingNotFound"
    BINDINGS_EXIST = "BindingsExist"
    CONFLICT = "Conflict"

    # Infrastructure errors
    STORE_ERROR = "StoreError"
    PROVISION_ERROR = "ProvisionError"
    BIND_ERROR = "BindError"
    DEPLOYMENT_ERROR = "DeploymentError"
    IAM_ERROR = "IAMError"
    STORAGE_BACKEND_ERROR = "StorageBackendError"
    CREDHUB_ERROR = "CredHubError"


class BrokerError(Exception):
    """Base exception class for the broker."""

    status_code = 500

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        status_code: Optional[int] = None
    ):
        """Initialize the exception.

        Args:
            message: Human-readable error message
            error_code: Specific error code for the failure
            details: Additional context about the error
            cause: The underlying exception that caused this error
            status_code: HTTP status override for the API layer
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        self.cause = cause
        if status_code is not None:
            self.status_code = status_code

    def to_response(self) -> Dict[str, Any]:
        """Convert exception to an OSB error body."""
        return {
            'error': self.error_code.value,
            'description': self.message
        }

    def __str__(self) -> str:
        base_str = self.message

        if self.cause:
            base_str += f" [caused by: {self.cause}]"

        return base_str


class ValidationError(BrokerError):
    """Malformed or invalid request."""

    status_code = 400

    def __init__(self, message: str, field: Optional[str] = None):
        details = {}
        if field:
            details['field'] = field

        super().__init__(
            message=message,
            error_code=ErrorCode.BAD_REQUEST,
            details=details
        )


class ConfigurationError(BrokerError):
    """Exception for configuration-related errors."""

    def __init__(self, message: str, config_key: Optional[str] = None):
        details = {}
        if config_key:
            details['config_key'] = config_key

        super().__init__(
            message=message,
            error_code=ErrorCode.CONFIGURATION_ERROR,
            details=details
        )


class AuthenticationError(BrokerError):
    """Missing or invalid basic-auth credentials."""

    status_code = 401

    def __init__(self, message: str = "Invalid or missing credentials"):
        super().__init__(message=message, error_code=ErrorCode.UNAUTHORIZED)


class MissingAPIVersionError(BrokerError):
    """The broker API version header was not sent."""

    status_code = 412

    def __init__(self, header: str):
        super().__init__(
            message=f"{header} header is required",
            error_code=ErrorCode.MISSING_API_VERSION
        )


class PlanNotFoundError(BrokerError):
    """Unknown service or plan ID."""

    status_code = 400

    def __init__(self, service_id: str, plan_id: str):
        super().__init__(
            message="Unknown service or plan ID",
            error_code=ErrorCode.INVALID_PLAN,
            details={'service_id': service_id, 'plan_id': plan_id}
        )


class AsyncRequiredError(BrokerError):
    """The plan only supports asynchronous operations."""

    status_code = 422

    def __init__(self, operation: str = "provisioning"):
        super().__init__(
            message=f"This plan requires asynchronous {operation}",
            error_code=ErrorCode.ASYNC_REQUIRED
        )


class ConcurrencyError(BrokerError):
    """Another operation is in progress for the same instance."""

    status_code = 422

    def __init__(self, instance_id: str, message: Optional[str] = None):
        super().__init__(
            message=message or f"Another operation is in progress for instance {instance_id}",
            error_code=ErrorCode.CONCURRENCY_ERROR,
            details={'instance_id': instance_id}
        )


class InstanceNotFoundError(BrokerError):
    """Service instance does not exist (read operations)."""

    status_code = 404

    def __init__(self, instance_id: str):
        super().__init__(
            message="Service instance not found",
            error_code=ErrorCode.INSTANCE_NOT_FOUND,
            details={'instance_id': instance_id}
        )


class InstanceGoneError(InstanceNotFoundError):
    """Service instance does not exist (mutating operations and polling)."""

    status_code = 410


class InstanceNotReadyError(BrokerError):
    """Service instance has not finished provisioning."""

    status_code = 422

    def __init__(self, instance_id: str):
        super().__init__(
            message="Service instance is not ready",
            error_code=ErrorCode.INSTANCE_NOT_READY,
            details={'instance_id': instance_id}
        )


class BindingNotFoundError(BrokerError):
    """Service binding does not exist (read operations)."""

    status_code = 404

    def __init__(self, binding_id: str):
        super().__init__(
            message="Service binding not found",
            error_code=ErrorCode.BINDING_NOT_FOUND,
            details={'binding_id': binding_id}
        )


class BindingGoneError(BindingNotFoundError):
    """Service binding does not exist (unbind)."""

    status_code = 410


class BindingConflictError(BrokerError):
    """Binding ID already used for a different instance."""

    status_code = 409

    def __init__(self, binding_id: str):
        super().__init__(
            message=f"Service binding {binding_id} already exists for another instance",
            error_code=ErrorCode.CONFLICT,
            details={'binding_id': binding_id}
        )


class BindingsExistError(BrokerError):
    """Instance still has bindings and cannot be deprovisioned."""

    status_code = 400

    def __init__(self, instance_id: str, count: int):
        super().__init__(
            message="Cannot deprovision instance with active bindings",
            error_code=ErrorCode.BINDINGS_EXIST,
            details={'instance_id': instance_id, 'bindings': count}
        )


class InvalidStateTransition(BrokerError):
    """Illegal instance lifecycle transition."""

    def __init__(self, current: str, requested: str):
        super().__init__(
            message=f"Invalid state transition from {current} to {requested}",
            error_code=ErrorCode.INTERNAL_ERROR,
            details={'current': current, 'requested': requested}
        )


class StoreError(BrokerError):
    """State store read or write failure."""

    def __init__(self, message: str, cause: Optional[Exception] = None):
        super().__init__(message=message, error_code=ErrorCode.STORE_ERROR, cause=cause)


class ProvisionError(BrokerError):
    """Provisioning a shared bucket failed."""

    def __init__(self, message: str, cause: Optional[Exception] = None):
        super().__init__(message=message, error_code=ErrorCode.PROVISION_ERROR, cause=cause)


class BindError(BrokerError):
    """Issuing binding credentials failed."""

    def __init__(self, message: str, cause: Optional[Exception] = None):
        super().__init__(message=message, error_code=ErrorCode.BIND_ERROR, cause=cause)


class DeploymentError(BrokerError):
    """Deployment orchestrator call, task failure, cancellation or timeout.

    Task failures and timeouts are distinguished by message text only.
    """

    def __init__(self, message: str, status: Optional[int] = None,
                 cause: Optional[Exception] = None):
        details = {}
        if status is not None:
            details['status'] = status

        super().__init__(
            message=message,
            error_code=ErrorCode.DEPLOYMENT_ERROR,
            details=details,
            cause=cause
        )


class IAMError(BrokerError):
    """Identity API request failure."""

    def __init__(self, message: str, code: Optional[str] = None,
                 status: Optional[int] = None, cause: Optional[Exception] = None):
        details = {}
        if code:
            details['code'] = code
        if status is not None:
            details['status'] = status

        super().__init__(
            message=message,
            error_code=ErrorCode.IAM_ERROR,
            details=details,
            cause=cause
        )


class StorageBackendError(BrokerError):
    """S3 bucket operation failure."""

    def __init__(self, message: str, bucket: Optional[str] = None,
                 cause: Optional[Exception] = None):
        details = {}
        if bucket:
            details['bucket'] = bucket

        super().__init__(
            message=message,
            error_code=ErrorCode.STORAGE_BACKEND_ERROR,
            details=details,
            cause=cause
        )


class CredHubError(BrokerError):
    """Secret vault request failure."""

    def __init__(self, message: str, cause: Optional[Exception] = None):
        super().__init__(message=message, error_code=ErrorCode.CREDHUB_ERROR, cause=cause)
