"""
Ledger - Append-only invoice balance bookkeeping.

Every change to Invoice.paid_amount/balance_due is made here, under the
per-invoice row lock, and journaled as a LedgerEntry with a unique
idempotency key.

Public API:
    Models:
        LedgerEntry - Journal row per balance mutation

    Service (import from payments.ledger.services):
        Ledger - run_in_invoice_lock, credit_payment, debit_refund,
                 recompute_status, audit_invoice

    Types (import from payments.ledger.types):
        LedgerMutation - Parameters for one journaled mutation
        LedgerAudit - Result of replaying an invoice's journal

    Exceptions:
        LedgerError - Base exception for ledger operations
        LedgerIntegrityError - Mutation would break an invariant (parked)
        LedgerLockTimeoutError - Invoice lock not acquired (transient)

Note:
    The service module is not imported here: it depends on payments.models,
    which itself imports LedgerEntry from this package.
"""

from .exceptions import LedgerError, LedgerIntegrityError, LedgerLockTimeoutError
from .models import LedgerEntry

__all__ = [
    "LedgerEntry",
    "LedgerError",
    "LedgerIntegrityError",
    "LedgerLockTimeoutError",
]
