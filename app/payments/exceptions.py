"""
Payment-specific exceptions for payment operations.

Every gateway's failures are normalized into one taxonomy before they reach
the reconciler or ledger, so callers branch on the class (and its
is_retryable flag), never on gateway-specific codes.

Exception Hierarchy:
    PaymentError (base for payment domain)
    ├── PaymentNotFoundError - Invoice/payment/refund lookup failures (404)
    │   └── GatewayNotAvailableError - Unknown or disabled gateway (404)
    ├── PaymentValidationError - Request validation failures (400)
    │   ├── InvoiceNotPayableError - Draft/cancelled/settled invoice
    │   ├── AmountExceedsBalanceError - Overpayment rejected
    │   └── AmountExceedsRefundableError - Over-refund rejected
    ├── PaymentProcessingError - Gateway call failures
    │   └── GatewayError - Normalized gateway failure (is_retryable)
    │       ├── CardDeclinedError - Declined (permanent, 402)
    │       ├── InsufficientFundsError - Insufficient funds (permanent, 402)
    │       ├── GatewayInvalidRequestError - Rejected request (permanent, 400)
    │       └── GatewayUnavailableError - Timeout/5xx/rate limit (transient, 503)
    ├── WebhookError - Inbound callback problems (400)
    │   ├── InvalidSignatureError - Signature verification failed
    │   └── WebhookParseError - Payload could not be normalized
    └── PaymentIntegrityError - Must be parked for manual review (409)
        └── InvalidTransitionError - Illegal payment/refund state change

    IdempotencyKeyReusedError - Same key, different request (inherits ConflictError)
    ChargeAlreadySubmittedError - Cancel after gateway submission (inherits ConflictError)
    LockAcquisitionError - Distributed lock timeout (inherits ConflictError)

Ledger exceptions (LedgerIntegrityError, LedgerLockTimeoutError) live in
payments.ledger.exceptions and extend this hierarchy.

Usage:
    from payments.exceptions import GatewayError, GatewayUnavailableError

    try:
        result = adapter.charge(request)
    except GatewayUnavailableError:
        # transient: retry with backoff
        ...
    except GatewayError as e:
        # permanent: fail the payment with e.failure_code
        ...
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from core.exceptions import BaseApplicationError, ConflictError

if TYPE_CHECKING:
    from typing import Any


# =============================================================================
# Payment Domain Exceptions
# =============================================================================


class PaymentError(BaseApplicationError):
    """
    Base exception for all payment operations.

    All payment-specific exceptions inherit from this class,
    which itself inherits from BaseApplicationError for
    consistent API error responses.
    """

    default_error_code: str = "PAYMENT_ERROR"
    status_code: int = 400


class PaymentNotFoundError(PaymentError):
    """
    Raised when a payment entity cannot be found.

    Use for:
    - Invoice lookup fails
    - Payment lookup fails
    - RefundRecord or archived gateway event lookup fails

    Example:
        invoice = Invoice.objects.filter(id=invoice_id).first()
        if not invoice:
            raise PaymentNotFoundError(
                f"Invoice {invoice_id} not found",
                error_code="INVOICE_NOT_FOUND",
                details={"invoice_id": str(invoice_id)},
            )
    """

    default_error_code: str = "PAYMENT_NOT_FOUND"
    status_code: int = 404


class GatewayNotAvailableError(PaymentNotFoundError):
    """Raised for an unknown gateway name or a gateway disabled in config."""

    default_error_code: str = "GATEWAY_NOT_AVAILABLE"


class PaymentValidationError(PaymentError):
    """
    Raised when payment validation fails.

    Use for:
    - Non-positive amounts
    - Currency mismatches with the invoice
    - Missing gateway-specific fields (phone number for mobile money)

    These are rejected synchronously and never retried.
    """

    default_error_code: str = "PAYMENT_VALIDATION_ERROR"


class InvoiceNotPayableError(PaymentValidationError):
    """Raised when an invoice is draft, cancelled or already settled."""

    default_error_code: str = "INVOICE_NOT_PAYABLE"


class AmountExceedsBalanceError(PaymentValidationError):
    """
    Raised when a charge amount is greater than the invoice balance due.

    Overpayment is rejected before any Payment row is created.
    """

    default_error_code: str = "AMOUNT_EXCEEDS_BALANCE"


class AmountExceedsRefundableError(PaymentValidationError):
    """
    Raised when a refund amount is greater than what remains refundable.

    Refundable = payment amount - sum of prior non-failed refunds.
    """

    default_error_code: str = "AMOUNT_EXCEEDS_REFUNDABLE"


class PaymentProcessingError(PaymentError):
    """Raised when payment processing at a gateway fails."""

    default_error_code: str = "PAYMENT_PROCESSING_ERROR"


# =============================================================================
# Gateway Exceptions
# =============================================================================


class GatewayError(PaymentProcessingError):
    """
    Base exception for all normalized gateway failures.

    Provides common attributes for gateway error handling:
    - gateway: Gateway name (stripe, paypal, clickpesa)
    - gateway_code: The gateway's own error/decline code
    - failure_code: Normalized failure reason stored on the Payment
    - is_retryable: Whether the operation can be retried

    Use is_retryable to determine retry behavior:
    - True: Transient error, safe to retry with backoff
    - False: Permanent error, do not retry
    """

    default_error_code: str = "GATEWAY_ERROR"
    default_failure_code: str = "gateway_error"
    is_retryable: bool = False

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        gateway: str | None = None,
        gateway_code: str | None = None,
        failure_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        details = details or {}
        if gateway:
            details["gateway"] = gateway
        if gateway_code:
            details["gateway_code"] = gateway_code
        super().__init__(message, error_code=error_code, details=details)
        self.gateway = gateway
        self.gateway_code = gateway_code
        self.failure_code = failure_code or self.default_failure_code


# -----------------------------------------------------------------------------
# Permanent Errors (do not retry)
# -----------------------------------------------------------------------------


class CardDeclinedError(GatewayError):
    """
    Payment method was declined by the issuer or wallet.

    This is a permanent error - do not retry with the same method.
    failure_code is one of card_declined or expired_card.
    """

    default_error_code: str = "CARD_DECLINED"
    default_failure_code: str = "card_declined"
    status_code: int = 402


class InsufficientFundsError(GatewayError):
    """
    Insufficient funds on the payment method.

    Separate from CardDeclinedError for clearer customer messaging.
    User action is required before retry can succeed.
    """

    default_error_code: str = "INSUFFICIENT_FUNDS"
    default_failure_code: str = "insufficient_funds"
    status_code: int = 402


class GatewayInvalidRequestError(GatewayError):
    """
    The gateway rejected the request itself.

    Possible causes:
    - Unsupported currency or amount below the gateway minimum
    - Missing required parameters
    - Operation not allowed (e.g., refund greater than captured amount)

    Note:
        When raised by a gateway call this usually indicates a bug in our
        request building, not a user error.
    """

    default_error_code: str = "GATEWAY_INVALID_REQUEST"
    default_failure_code: str = "invalid_request"
    status_code: int = 400


# -----------------------------------------------------------------------------
# Transient Errors (safe to retry with backoff)
# -----------------------------------------------------------------------------


class GatewayUnavailableError(GatewayError):
    """
    Gateway is temporarily unavailable.

    This covers network failures, timeouts, 5xx responses and rate limits.

    IMPORTANT: On timeout the operation may have succeeded on the gateway's
    side. Retries reuse the same idempotency token so the gateway returns
    the original result instead of charging twice.
    """

    default_error_code: str = "GATEWAY_UNAVAILABLE"
    default_failure_code: str = "gateway_unavailable"
    is_retryable: bool = True
    status_code: int = 503


# =============================================================================
# Webhook Exceptions
# =============================================================================


class WebhookError(PaymentError):
    """Base exception for inbound gateway callbacks."""

    default_error_code: str = "WEBHOOK_ERROR"


class InvalidSignatureError(WebhookError):
    """
    Raised when a webhook signature cannot be verified.

    The event is discarded and logged; the payload is never parsed.
    """

    default_error_code: str = "INVALID_SIGNATURE"


class WebhookParseError(WebhookError):
    """
    Raised when a verified payload cannot be normalized into a GatewayEvent.

    The gateway receives a non-2xx response and redelivers later.
    """

    default_error_code: str = "WEBHOOK_PARSE_ERROR"


# =============================================================================
# Integrity Exceptions (parked for manual review)
# =============================================================================


class PaymentIntegrityError(PaymentError):
    """
    Base exception for violations that must never auto-correct.

    The webhook ingestor parks events raising these errors instead of
    letting the gateway retry them forever.
    """

    default_error_code: str = "PAYMENT_INTEGRITY_ERROR"
    status_code: int = 409


class InvalidTransitionError(PaymentIntegrityError):
    """
    Raised when a state machine transition is not allowed.

    Wraps django-fsm's TransitionNotAllowed to provide our standard error
    format with additional context.

    Example:
        try:
            payment.complete()
        except TransitionNotAllowed:
            raise InvalidTransitionError(
                f"Cannot complete payment from '{payment.status}'",
                details={"current_state": payment.status, "target_state": "completed"},
            )
    """

    default_error_code: str = "INVALID_STATE_TRANSITION"


# =============================================================================
# Concurrency & Idempotency Exceptions
# =============================================================================


class IdempotencyKeyReusedError(ConflictError):
    """
    Raised when a client request id is reused for a different request.

    The stored fingerprint (invoice, amount, currency, gateway) does not
    match the incoming request.
    """

    default_error_code: str = "IDEMPOTENCY_KEY_REUSED"


class ChargeAlreadySubmittedError(ConflictError):
    """
    Raised when cancelling a charge that was already sent to the gateway.

    The gateway result is still applied when it arrives; the caller must
    issue a refund instead.
    """

    default_error_code: str = "CHARGE_ALREADY_SUBMITTED"


class LockAcquisitionError(ConflictError):
    """
    Raised when a distributed lock cannot be acquired.

    Example:
        lock = DistributedLock("refund:payment:123", ttl=60, timeout=10)
        with lock:
            ...
    """

    default_error_code: str = "LOCK_ACQUISITION_FAILED"


# =============================================================================
# Exports
# =============================================================================

__all__ = [
    # Payment domain
    "PaymentError",
    "PaymentNotFoundError",
    "GatewayNotAvailableError",
    "PaymentValidationError",
    "InvoiceNotPayableError",
    "AmountExceedsBalanceError",
    "AmountExceedsRefundableError",
    "PaymentProcessingError",
    # Gateway
    "GatewayError",
    "CardDeclinedError",
    "InsufficientFundsError",
    "GatewayInvalidRequestError",
    "GatewayUnavailableError",
    # Webhooks
    "WebhookError",
    "InvalidSignatureError",
    "WebhookParseError",
    # Integrity
    "PaymentIntegrityError",
    "InvalidTransitionError",
    # Concurrency & idempotency
    "IdempotencyKeyReusedError",
    "ChargeAlreadySubmittedError",
    "LockAcquisitionError",
]
