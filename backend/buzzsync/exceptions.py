"""
BuzzSync Backend — Custom Exception Hierarchy
===============================================

What:  Application-specific exceptions for every failure the data-access core
       can report.
How:   Each exception carries a human-readable message, a context dict and a
       stable `kind` string. Global handlers (registered in main.py) turn them
       into `{error, message, details, request_id}` JSON responses.

Exception Hierarchy:
    BuzzSyncError (base)
    ├── ValidationError          → 400 Bad Request
    ├── Unauthorized             → 401 Unauthorized
    ├── PermissionDenied         → 403 Forbidden
    ├── ForbiddenOperation       → 403 Forbidden (statement outside the allow-list)
    ├── NotFoundError            → 404 Not Found
    ├── StorageError             → 500 Internal Server Error
    │   └── DeadlineExceeded     → 504 Gateway Timeout
    ├── PoolExhausted            → 503 Service Unavailable (retryable)
    ├── IdentityServiceError     → 503 Service Unavailable
    └── CircuitBreakerOpenError  → 503 Service Unavailable

Propagation policy:
    ValidationError and ForbiddenOperation are always raised before any
    statement reaches storage. StorageError raised from inside a transaction
    is only raised after the rollback has been issued. PoolExhausted is never
    retried internally; callers decide.
"""

from typing import Any, Dict, Optional


class BuzzSyncError(Exception):
    """
    Base exception for all BuzzSync application errors.

    Attributes:
        kind:     Stable machine-readable error code (safe for clients to switch on)
        message:  User-facing error description
        context:  Structured details; handlers decide what reaches the response
    """

    kind = "internal_error"

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.context = context or {}
        super().__init__(self.message)


class ValidationError(BuzzSyncError):
    """
    Raised when client input fails validation.

    When:    Missing or unparseable `since`, unknown resource kind, half a
             coordinate pair, malformed transaction entries.
    HTTP:    400 Bad Request
    """

    kind = "validation_error"

    def __init__(
        self,
        message: str = "Validation failed",
        field: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if field:
            ctx["field"] = field
        super().__init__(message=message, context=ctx)
        self.field = field


class Unauthorized(BuzzSyncError):
    """
    Raised when a request that needs an identity has none, or the identity
    provider rejects the forwarded credentials.

    HTTP:    401 Unauthorized
    """

    kind = "unauthorized"

    def __init__(
        self,
        message: str = "Authentication required",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class PermissionDenied(BuzzSyncError):
    """
    Raised when a resolved identity lacks the role an endpoint needs.

    HTTP:    403 Forbidden
    """

    kind = "permission_denied"

    def __init__(
        self,
        message: str = "You do not have permission to perform this action",
        required_role: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if required_role:
            ctx["required_role"] = required_role
        super().__init__(message=message, context=ctx)


class ForbiddenOperation(BuzzSyncError):
    """
    Raised when a submitted statement does not classify as SELECT, INSERT or
    UPDATE (or packs several statements into one entry).

    The whole batch is rejected and nothing is executed.
    HTTP:    403 Forbidden

    Example response:
        {
            "error": "forbidden_operation",
            "message": "Operation 1 is a 'delete' statement; only select, insert, update are allowed",
            "details": {"operation_index": 1, "keyword": "delete"}
        }
    """

    kind = "forbidden_operation"

    def __init__(
        self,
        message: str = "Operation is not allowed",
        operation_index: Optional[int] = None,
        keyword: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if operation_index is not None:
            ctx["operation_index"] = operation_index
        if keyword is not None:
            ctx["keyword"] = keyword
        super().__init__(message=message, context=ctx)
        self.operation_index = operation_index
        self.keyword = keyword


class NotFoundError(BuzzSyncError):
    """
    Raised when a referenced venue or resource does not exist.

    HTTP:    404 Not Found
    """

    kind = "not_found"

    def __init__(
        self,
        resource: str = "resource",
        resource_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = f"The requested {resource} was not found"
        if resource_id:
            message = f"{resource} with ID '{resource_id}' was not found"
        ctx = context or {}
        ctx["resource"] = resource
        if resource_id:
            ctx["resource_id"] = resource_id
        super().__init__(message=message, context=ctx)


class StorageError(BuzzSyncError):
    """
    Raised when statement execution fails, including constraint violations.

    When raised from a transaction batch, the rollback has already been
    issued and `failed_index` names the operation that broke it.
    HTTP:    500 Internal Server Error

    Security Note:
        Only the failing index, rollback flag and the driver exception class
        name are returned. Statement text and driver messages are logged
        server-side only.
    """

    kind = "storage_error"

    def __init__(
        self,
        message: str = "A storage error occurred. Please try again later.",
        failed_index: Optional[int] = None,
        rolled_back: Optional[bool] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if failed_index is not None:
            ctx["failed_index"] = failed_index
        if rolled_back is not None:
            ctx["rolled_back"] = rolled_back
        super().__init__(message=message, context=ctx)
        self.failed_index = failed_index
        self.rolled_back = rolled_back


class DeadlineExceeded(StorageError):
    """
    Raised when a batch runs past its deadline. The in-flight transaction is
    rolled back and the connection is back in the pool.

    HTTP:    504 Gateway Timeout
    """

    kind = "deadline_exceeded"

    def __init__(
        self,
        timeout_seconds: float,
        failed_index: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        ctx["timeout_seconds"] = timeout_seconds
        super().__init__(
            message=(
                f"The operation did not finish within {timeout_seconds:g} seconds "
                "and was rolled back."
            ),
            failed_index=failed_index,
            rolled_back=True,
            context=ctx,
        )
        self.timeout_seconds = timeout_seconds


class PoolExhausted(BuzzSyncError):
    """
    Raised when no storage connection frees up within the pool timeout.

    Retryable: the response carries a Retry-After header.
    HTTP:    503 Service Unavailable
    """

    kind = "pool_exhausted"

    def __init__(
        self,
        timeout_seconds: float,
        max_size: Optional[int] = None,
        retry_after: int = 1,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        ctx["timeout_seconds"] = timeout_seconds
        ctx["retry_after"] = retry_after
        if max_size is not None:
            ctx["max_size"] = max_size
        super().__init__(
            message=(
                "All storage connections are busy. "
                f"Please retry in about {retry_after} second(s)."
            ),
            context=ctx,
        )
        self.retry_after = retry_after


class IdentityServiceError(BuzzSyncError):
    """
    Raised when the external identity provider cannot be reached after retries.

    HTTP:    503 Service Unavailable
    """

    kind = "identity_service_error"

    def __init__(
        self,
        message: str = "The identity service is temporarily unavailable",
        retry_after: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if retry_after:
            ctx["retry_after"] = retry_after
        super().__init__(message=message, context=ctx)
        self.retry_after = retry_after


class CircuitBreakerOpenError(BuzzSyncError):
    """
    Raised when the identity provider circuit breaker is OPEN.

    CLOSED → (threshold consecutive failures) → OPEN → (recovery timeout)
    → HALF_OPEN → one trial call → CLOSED or back to OPEN.
    HTTP:    503 Service Unavailable
    """

    kind = "service_unavailable"

    def __init__(
        self,
        recovery_time: int = 30,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = (
            "The identity service is temporarily unavailable due to repeated failures. "
            f"Please retry in approximately {recovery_time} seconds."
        )
        ctx = context or {}
        ctx["recovery_time"] = recovery_time
        super().__init__(message=message, context=ctx)
        self.recovery_time = recovery_time
