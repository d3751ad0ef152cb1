"""
Consolidated exception system with error codes, context, and correlation support.

This module provides the exception hierarchy for the credential lifecycle
engine. Every error carries a standardized code, an HTTP-style status for the
transport layer that wraps the engine, and a context dictionary. Errors log
themselves on construction, so calling code only adds operation context.

Engine taxonomy:
- LockContentionError: cluster lock held beyond the bounded wait (retryable)
- AdapterUnavailableError: registry unreachable or 5xx after retries (retryable)
- AdapterRejectedError: registry returned a permanent error (not retryable)
- NotFoundError: cluster, rotation, credential or external account absent
- ConflictAlreadyExistsError: create collided with an existing external account
- RotationConflictError: an active rotation already exists for the cluster
- InvariantViolationError: inconsistent state detected (fatal, never retried)
"""

import threading
import traceback
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

_thread_local = threading.local()


class ErrorCode(str, Enum):
    """Standardized error codes."""

    # System errors (1xxx)
    INTERNAL_ERROR = "1000"
    DATABASE_ERROR = "1001"
    CONNECTION_ERROR = "1002"
    CONFIGURATION_ERROR = "1003"
    TIMEOUT_ERROR = "1004"

    # Validation errors (2xxx)
    VALIDATION_FAILED = "2000"
    INVALID_FORMAT = "2001"
    MISSING_REQUIRED = "2002"

    # Resource errors (3xxx)
    NOT_FOUND = "3000"
    DUPLICATE = "3001"
    CONFLICT = "3002"
    LOCKED = "3003"

    # Business logic errors (4xxx)
    BUSINESS_RULE_VIOLATION = "4000"
    INVALID_STATE_TRANSITION = "4001"
    INVARIANT_VIOLATION = "4005"

    # External service errors (5xxx)
    ADAPTER_ERROR = "5000"
    ADAPTER_UNAVAILABLE = "5001"
    ADAPTER_REJECTED = "5002"
    EXTERNAL_API_ERROR = "5003"


class BaseError(Exception):
    """Base exception with context, error codes, logging, and error chaining."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        cause: Optional[Exception] = None,
        **context: Any,
    ):
        """
        Initialize base error with rich context.

        Args:
            message: Human-readable error message
            error_code: Standardized error code from ErrorCode enum
            status_code: HTTP status code for API responses
            cause: Original exception that caused this error
            **context: Additional context information
        """
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc).isoformat()
        self.error_id = str(uuid.uuid4())
        self.context = context

        correlation_id = get_correlation_id()
        if correlation_id:
            self.context["correlation_id"] = correlation_id

        self.context["error_id"] = self.error_id

        if cause:
            self.context["cause"] = {
                "type": type(cause).__name__,
                "message": str(cause),
                "traceback": traceback.format_exception(type(cause), cause, cause.__traceback__),
            }

        self._log_error()

        super().__init__(message)

    def _log_error(self) -> None:
        """Log error with appropriate level based on status code."""
        # Lazy import, the logger module imports config which imports constants only
        from .utils.logger import get_logger

        logger = get_logger()

        log_data = {
            "error_id": self.error_id,
            "error_code": self.error_code.value,
            "status_code": self.status_code,
            "error_message": self.message,
            "timestamp": self.timestamp,
            "context": {k: v for k, v in self.context.items() if k not in ["cause", "traceback"]},
        }

        if "correlation_id" in self.context:
            log_data["correlation_id"] = self.context["correlation_id"]

        if self.status_code >= 500:
            logger.error(f"Error {self.error_code.value}: {self.message}", extra=log_data)
        elif self.status_code >= 400:
            logger.warning(f"Client error {self.error_code.value}: {self.message}", extra=log_data)
        else:
            logger.info(f"Error {self.error_code.value}: {self.message}", extra=log_data)

    @property
    def retryable(self) -> bool:
        """Whether the caller may retry the failed operation."""
        return False

    def to_dict(
        self, include_cause: bool = False, include_traceback: bool = False
    ) -> Dict[str, Any]:
        """
        Convert to dict for API responses.

        Args:
            include_cause: Include cause information (useful for debugging)
            include_traceback: Include full traceback (only in debug mode)

        Returns:
            Dictionary representation suitable for JSON serialization
        """
        result: Dict[str, Any] = {
            "error": {
                "id": self.error_id,
                "code": self.error_code.value,
                "message": self.message,
                "retryable": self.retryable,
                "timestamp": self.timestamp,
                "context": {
                    k: v
                    for k, v in self.context.items()
                    if k not in ["cause", "error_id", "correlation_id"]
                },
            }
        }

        if "correlation_id" in self.context:
            result["error"]["correlation_id"] = self.context["correlation_id"]

        if include_cause and "cause" in self.context:
            result["error"]["cause"] = {
                "type": self.context["cause"]["type"],
                "message": self.context["cause"]["message"],
            }
            if include_traceback:
                result["error"]["cause"]["traceback"] = self.context["cause"]["traceback"]

        return result

    def add_context(self, **kwargs: Any) -> "BaseError":
        """
        Add additional context to the error (fluent interface).

        Returns:
            Self for method chaining
        """
        self.context.update(kwargs)
        return self

    @property
    def error_chain(self) -> List[Exception]:
        """Get the full chain of errors."""
        chain: List[Exception] = [self]
        current = self.cause
        while current:
            chain.append(current)
            current = getattr(current, "cause", None)
        return chain


# Layer-specific base exceptions
class RepositoryError(BaseError):
    """Persistence layer errors."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.DATABASE_ERROR,
        status_code: int = 500,
        cause: Optional[Exception] = None,
        **context,
    ):
        super().__init__(message, error_code, status_code, cause, **context)


class ServiceError(BaseError):
    """Service layer errors."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        operation: Optional[str] = None,
        cause: Optional[Exception] = None,
        **context,
    ):
        if operation:
            context["operation"] = operation
        super().__init__(message, error_code, 500, cause, **context)


class ValidationError(BaseError):
    """Validation errors."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        error_code: ErrorCode = ErrorCode.VALIDATION_FAILED,
        cause: Optional[Exception] = None,
        **context,
    ):
        if field:
            context["field"] = field
        super().__init__(message, error_code, 400, cause, **context)


class NameFormatError(ValidationError):
    """An external account name does not have the expected shape."""

    def __init__(self, message: str, value: Optional[str] = None, **context):
        super().__init__(
            message,
            field="external_name",
            error_code=ErrorCode.INVALID_FORMAT,
            value=value,
            **context,
        )


class ExternalServiceError(BaseError):
    """External registry integration errors."""

    def __init__(
        self,
        message: str,
        service_name: str,
        error_code: ErrorCode = ErrorCode.EXTERNAL_API_ERROR,
        status_code: int = 502,
        cause: Optional[Exception] = None,
        **context,
    ):
        context["service_name"] = service_name
        super().__init__(message, error_code, status_code, cause, **context)


class AdapterUnavailableError(ExternalServiceError):
    """Registry unreachable, timing out or answering 5xx after bounded retries."""

    def __init__(self, message: str, service_name: str, cause: Optional[Exception] = None, **context):
        super().__init__(
            message,
            service_name=service_name,
            error_code=ErrorCode.ADAPTER_UNAVAILABLE,
            status_code=503,
            cause=cause,
            **context,
        )

    @property
    def retryable(self) -> bool:
        return True


class AdapterRejectedError(ExternalServiceError):
    """Registry returned a permanent error for the request."""

    def __init__(self, message: str, service_name: str, cause: Optional[Exception] = None, **context):
        super().__init__(
            message,
            service_name=service_name,
            error_code=ErrorCode.ADAPTER_REJECTED,
            status_code=502,
            cause=cause,
            **context,
        )


class ConflictAlreadyExistsError(ExternalServiceError):
    """External account create collided with an existing account."""

    def __init__(self, message: str, service_name: str, **context):
        super().__init__(
            message,
            service_name=service_name,
            error_code=ErrorCode.DUPLICATE,
            status_code=409,
            **context,
        )


class NotFoundError(RepositoryError):
    """Requested cluster, rotation, credential or external account is absent."""

    def __init__(self, message: str, cause: Optional[Exception] = None, **context):
        super().__init__(
            message, error_code=ErrorCode.NOT_FOUND, status_code=404, cause=cause, **context
        )


class LockContentionError(BaseError):
    """Another operation holds the lock past the bounded wait."""

    def __init__(self, message: str, lock_key: str, **context):
        super().__init__(
            message, error_code=ErrorCode.LOCKED, status_code=409, lock_key=lock_key, **context
        )

    @property
    def retryable(self) -> bool:
        return True


class RotationConflictError(BaseError):
    """An active rotation already exists for the cluster."""

    def __init__(self, message: str, cluster_id: str, **context):
        super().__init__(
            message,
            error_code=ErrorCode.CONFLICT,
            status_code=409,
            cluster_id=cluster_id,
            **context,
        )


class InvariantViolationError(BaseError):
    """Inconsistent engine state; the operation aborts and is not retried."""

    def __init__(self, message: str, **context):
        super().__init__(
            message, error_code=ErrorCode.INVARIANT_VIOLATION, status_code=500, **context
        )


# Factory functions for common error patterns
def not_found(resource_type: str, cause: Optional[Exception] = None, **identifiers) -> NotFoundError:
    """
    Factory for not found errors.

    Args:
        resource_type: Type of resource (e.g., 'RotationRequest', 'Cluster')
        cause: Original exception if any
        **identifiers: Resource identifiers (e.g., rotation_id='123')

    Returns:
        Configured NotFoundError instance
    """
    id_parts = [f"{k}={v}" for k, v in identifiers.items()]
    message = f"{resource_type} not found"
    if id_parts:
        message += f": {', '.join(id_parts)}"

    return NotFoundError(message, cause=cause, resource_type=resource_type, **identifiers)


def validation_failed(
    field: str, value: Any, reason: str, cause: Optional[Exception] = None
) -> ValidationError:
    """
    Factory for validation errors.

    Args:
        field: Field that failed validation
        value: The invalid value
        reason: Why validation failed
        cause: Original exception if any

    Returns:
        Configured ValidationError instance
    """
    return ValidationError(
        f"Validation failed for {field}: {reason}",
        field=field,
        error_code=ErrorCode.VALIDATION_FAILED,
        cause=cause,
        value=str(value),
        reason=reason,
    )


# Correlation ID management
def set_correlation_id(correlation_id: str) -> None:
    """Set the correlation ID for the current thread."""
    _thread_local.correlation_id = correlation_id


def get_correlation_id() -> Optional[str]:
    """Get the current thread's correlation ID."""
    return getattr(_thread_local, "correlation_id", None)


def clear_correlation_id() -> None:
    """Clear the current thread's correlation ID."""
    if hasattr(_thread_local, "correlation_id"):
        delattr(_thread_local, "correlation_id")
