"""
Custom exception classes for casecore.

This module defines the exception hierarchy used by the side-effect and
soft-delete core:
- Standardized error codes with HTTP status mapping
- Structured error information with context
- Convenience raisers for the common failure modes
"""

import traceback
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    """
    Standardized error codes for casecore.
    """

    # Configuration Errors (1xxx)
    CONFIG_VALIDATION_FAILED = "1001"
    CONFIG_INVALID_VALUE = "1004"

    # Database Errors (2xxx)
    DATABASE_CONNECTION_ERROR = "2001"
    DATABASE_OPERATION_FAILED = "2002"

    # Transaction Errors (3xxx)
    TRANSACTION_REQUIRED = "3001"
    TRANSACTION_UNAVAILABLE = "3002"

    # Soft Delete Errors (4xxx)
    SOFT_DELETE_FILTER_FORBIDDEN = "4001"
    ENTITY_NOT_FOUND = "4002"
    RESTORE_PARENT_DELETED = "4003"
    DELETE_BLOCKED_IN_USE = "4004"
    ENTITY_KIND_UNKNOWN = "4005"

    # Audit Errors (5xxx)
    AUDIT_IMMUTABLE = "5001"


class BaseCustomException(Exception):
    """
    Base exception class for all custom exceptions in casecore.

    Provides common functionality for error tracking, context preservation,
    and structured error information.
    """

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        details: Optional[Dict[str, Any]] = None,
        http_status_code: int = 500,
        correlation_id: Optional[str] = None,
        user_message: Optional[str] = None
    ):
        """
        Initialize base exception with structured error information.

        Args:
            message: Technical error message for developers
            error_code: Standardized error code for identification
            details: Additional context and debugging information
            http_status_code: HTTP status code for API responses
            correlation_id: Request correlation ID for tracking
            user_message: User-friendly error message for display
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        self.http_status_code = http_status_code
        self.correlation_id = correlation_id
        self.user_message = user_message or self._generate_user_message()
        self.traceback_info = traceback.format_exc()

    def _generate_user_message(self) -> str:
        """Generate a user-friendly error message based on the error code."""
        user_messages = {
            ErrorCode.DATABASE_CONNECTION_ERROR: "Unable to connect to the database. Please try again later.",
            ErrorCode.TRANSACTION_UNAVAILABLE: "The service cannot accept changes right now. Please try again later.",
            ErrorCode.ENTITY_NOT_FOUND: "The requested record could not be found.",
            ErrorCode.RESTORE_PARENT_DELETED: "This record cannot be restored while its parent is deleted.",
            ErrorCode.DELETE_BLOCKED_IN_USE: "This record is in use and cannot be deleted.",
            ErrorCode.AUDIT_IMMUTABLE: "Audit entries cannot be changed.",
        }
        return user_messages.get(self.error_code, "An unexpected error occurred. Please contact support.")

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for JSON serialization."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "user_message": self.user_message,
            "details": self.details,
            "http_status_code": self.http_status_code,
            "correlation_id": self.correlation_id,
        }

    def add_context(self, key: str, value: Any) -> None:
        """Add additional context to the exception details."""
        self.details[key] = value

    def __str__(self) -> str:
        return f"[{self.error_code.value}] {self.message}"


class ConfigurationError(BaseCustomException):
    """Exception raised for configuration-related errors."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.CONFIG_VALIDATION_FAILED,
        config_section: Optional[str] = None,
        config_key: Optional[str] = None,
        **kwargs
    ):
        details = {
            "config_section": config_section,
            "config_key": config_key,
        }
        super().__init__(
            message=message,
            error_code=error_code,
            details=details,
            http_status_code=400,
            **kwargs
        )


class DatabaseError(BaseCustomException):
    """Exception raised for database-related errors."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.DATABASE_OPERATION_FAILED,
        database_type: Optional[str] = None,
        collection_name: Optional[str] = None,
        operation: Optional[str] = None,
        **kwargs
    ):
        details = {
            "database_type": database_type,
            "collection_name": collection_name,
            "operation": operation,
        }
        super().__init__(
            message=message,
            error_code=error_code,
            details=details,
            http_status_code=500,
            **kwargs
        )


class TransactionError(BaseCustomException):
    """Exception raised when a write cannot run inside a transaction."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.TRANSACTION_REQUIRED,
        request_id: Optional[str] = None,
        **kwargs
    ):
        status_map = {
            ErrorCode.TRANSACTION_REQUIRED: 500,
            ErrorCode.TRANSACTION_UNAVAILABLE: 503,
        }
        super().__init__(
            message=message,
            error_code=error_code,
            details={"request_id": request_id},
            http_status_code=status_map.get(error_code, 500),
            **kwargs
        )


class SoftDeleteError(BaseCustomException):
    """Exception raised for soft delete misuse and guarded transitions."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.ENTITY_NOT_FOUND,
        entity_kind: Optional[str] = None,
        entity_id: Optional[str] = None,
        **kwargs
    ):
        details = {
            "entity_kind": entity_kind,
            "entity_id": entity_id,
        }

        status_map = {
            ErrorCode.SOFT_DELETE_FILTER_FORBIDDEN: 500,
            ErrorCode.ENTITY_NOT_FOUND: 404,
            ErrorCode.RESTORE_PARENT_DELETED: 409,
            ErrorCode.DELETE_BLOCKED_IN_USE: 409,
            ErrorCode.ENTITY_KIND_UNKNOWN: 400,
        }

        super().__init__(
            message=message,
            error_code=error_code,
            details=details,
            http_status_code=status_map.get(error_code, 400),
            **kwargs
        )


class AuditImmutableError(BaseCustomException):
    """Exception raised on any attempt to change a written audit entry."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.AUDIT_IMMUTABLE,
            details={"operation": operation},
            http_status_code=405,
            **kwargs
        )


def get_exception_response_data(exception: BaseCustomException) -> Dict[str, Any]:
    """
    Build the JSON body returned to API clients for a custom exception.

    Args:
        exception: Raised custom exception

    Returns:
        Serializable error payload
    """
    return {
        "error": {
            "code": exception.error_code.value,
            "message": exception.user_message,
            "details": exception.details,
            "correlation_id": exception.correlation_id,
        }
    }


def raise_database_error(
    message: str,
    database_type: Optional[str] = None,
    collection_name: Optional[str] = None,
    operation: Optional[str] = None,
    error_code: ErrorCode = ErrorCode.DATABASE_OPERATION_FAILED,
    **kwargs
) -> None:
    """Raise a database error with context."""
    raise DatabaseError(
        message=message,
        error_code=error_code,
        database_type=database_type,
        collection_name=collection_name,
        operation=operation,
        **kwargs
    )


def raise_soft_delete_error(
    message: str,
    entity_kind: Optional[str] = None,
    entity_id: Optional[str] = None,
    error_code: ErrorCode = ErrorCode.ENTITY_NOT_FOUND,
    **kwargs
) -> None:
    """Raise a soft delete error with context."""
    raise SoftDeleteError(
        message=message,
        error_code=error_code,
        entity_kind=entity_kind,
        entity_id=entity_id,
        **kwargs
    )


def raise_transaction_required(request_id: Optional[str] = None) -> None:
    """Raise the error for a write attempted outside a transaction."""
    raise TransactionError(
        "Mutation attempted without active transaction",
        error_code=ErrorCode.TRANSACTION_REQUIRED,
        request_id=request_id
    )


def raise_manual_deleted_filter(entity_kind: Optional[str] = None) -> None:
    """Raise the error for a literal deleted_at filter without include_deleted."""
    raise_soft_delete_error(
        "Manual deleted_at filters are forbidden; use include_deleted() or only_deleted()",
        entity_kind=entity_kind,
        error_code=ErrorCode.SOFT_DELETE_FILTER_FORBIDDEN
    )
