"""
Base exception classes for application-wide error handling.

Every domain error raised by the payment core derives from
BaseApplicationError so that views, Celery tasks and the admin can treat
failures uniformly:
- Human-readable message for logs and API clients
- Machine-readable error code for portal/client branching
- Structured details for debugging (ids, amounts, states)
- HTTP status hint used by the API layer

Exception Hierarchy:
    BaseApplicationError (base, 500)
    └── ConflictError - State conflicts, duplicates, lock contention (409)

Domain apps subclass these (see payments.exceptions).

Usage:
    from core.exceptions import ConflictError

    raise ConflictError(
        f"Invoice {invoice_id} is locked",
        error_code="LOCK_ACQUISITION_FAILED",
        details={"invoice_id": str(invoice_id)},
    )

    try:
        ...
    except BaseApplicationError as e:
        return Response(e.to_dict(), status=e.status_code)

Note:
    These exceptions are for domain/business logic errors.
    DRF handles API-layer exceptions (serialization, authentication, etc.).
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import Any


class BaseApplicationError(Exception):
    """
    Base exception for all application-specific errors.

    Attributes:
        message: Human-readable error description
        error_code: Machine-readable code for client-side handling
        details: Additional error context (ids, amounts, states)
        status_code: HTTP status the API layer responds with

    Example:
        try:
            orchestrator.charge(...)
        except BaseApplicationError as e:
            logger.warning("Charge rejected: %s", e.error_code)
            return Response(e.to_dict(), status=e.status_code)
    """

    default_error_code: str = "APPLICATION_ERROR"
    status_code: int = 500

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        """
        Initialize the exception.

        Args:
            message: Human-readable error description
            error_code: Machine-readable error code (defaults to class default)
            details: Additional error context
        """
        self.message = message
        self.error_code = error_code or self.default_error_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """
        Convert exception to dictionary for API response.

        Returns:
            Dict with error, error_code, and (when present) details keys

        Example:
            {
                "error": "Invoice not found",
                "error_code": "INVOICE_NOT_FOUND",
                "details": {"invoice_id": "..."}
            }
        """
        result: dict[str, Any] = {
            "error": self.message,
            "error_code": self.error_code,
        }
        if self.details:
            result["details"] = self.details
        return result

    def __str__(self) -> str:
        """Return string representation with error code."""
        return f"[{self.error_code}] {self.message}"

    def __repr__(self) -> str:
        """Return detailed representation for debugging."""
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"error_code={self.error_code!r}, "
            f"details={self.details!r})"
        )


class ConflictError(BaseApplicationError):
    """
    Raised when an operation conflicts with current resource state.

    Use for:
    - Reused idempotency keys with a different request
    - Concurrent modification conflicts
    - Invalid state transitions
    - Lock contention

    Note:
        HTTP 409 Conflict is the appropriate status for these errors.
    """

    default_error_code: str = "CONFLICT"
    status_code: int = 409
