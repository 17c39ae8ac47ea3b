"""
Ledger-specific exceptions for invoice balance bookkeeping.

Exception Hierarchy:
    LedgerError (base, extends PaymentError)
    ├── LedgerIntegrityError - Mutation would break a balance invariant (parked)
    └── LedgerLockTimeoutError - Invoice lock not acquired (transient)

Usage:
    from payments.ledger.exceptions import LedgerIntegrityError

    if amount > invoice.balance_due:
        raise LedgerIntegrityError(
            "Settlement would make balance_due negative",
            details={"invoice_id": str(invoice.id), "amount": str(amount)},
        )
"""

from __future__ import annotations

from payments.exceptions import PaymentError, PaymentIntegrityError


class LedgerError(PaymentError):
    """
    Base exception for all ledger operations.

    Example:
        try:
            Ledger.credit_payment(invoice, payment)
        except LedgerError as e:
            logger.error("Ledger operation failed: %s", e)
    """

    default_error_code: str = "LEDGER_ERROR"


class LedgerIntegrityError(LedgerError, PaymentIntegrityError):
    """
    Raised when a ledger mutation would violate a balance invariant.

    Use for:
    - Settlement exceeding balance_due (negative balance)
    - Refund exceeding the invoice's paid amount
    - Settling against a cancelled invoice
    - Currency mismatch between payment and invoice

    Never auto-corrected: the triggering event is parked for review.
    """

    default_error_code: str = "LEDGER_INTEGRITY_ERROR"


class LedgerLockTimeoutError(LedgerError):
    """
    Raised when the per-invoice lock cannot be acquired in bounded attempts.

    Transient: webhook deliveries get a 503 and are redelivered by the
    gateway; API callers can retry with the same client request id.
    """

    default_error_code: str = "LEDGER_LOCK_TIMEOUT"
    status_code: int = 503
    is_retryable: bool = True
