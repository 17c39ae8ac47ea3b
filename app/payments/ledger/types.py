"""
Data types for ledger operations.

Types:
    LedgerMutation: Parameters for one journaled balance mutation
    LedgerAudit: Result of replaying an invoice's journal

Usage:
    from payments.ledger.types import LedgerMutation

    mutation = LedgerMutation(
        entry_type=LedgerEntryType.CHARGE_SETTLED,
        amount=payment.amount,
        idempotency_key=f"charge:{payment.id}",
        payment_id=payment.id,
    )
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from decimal import Decimal

from payments.state_machines import LedgerEntryType


@dataclass
class LedgerMutation:
    """
    Parameters for one journaled balance mutation.

    Required Attributes:
        entry_type: charge_settled or refund_settled
        amount: Positive amount in major units
        idempotency_key: Unique key to prevent duplicate entries
        payment_id: Charge payment the mutation belongs to

    Optional Attributes:
        refund_record_id: Refund the mutation belongs to
    """

    entry_type: str
    amount: Decimal
    idempotency_key: str
    payment_id: uuid.UUID
    refund_record_id: uuid.UUID | None = None

    def __post_init__(self) -> None:
        """Validate params after initialization."""
        if self.amount <= 0:
            raise ValueError("amount must be positive")
        if not self.idempotency_key:
            raise ValueError("idempotency_key is required")
        if self.entry_type == LedgerEntryType.REFUND_SETTLED and not self.refund_record_id:
            raise ValueError("refund_record_id is required for refund entries")

    @property
    def signed_amount(self) -> Decimal:
        if self.entry_type == LedgerEntryType.REFUND_SETTLED:
            return -self.amount
        return self.amount


@dataclass
class LedgerAudit:
    """
    Result of replaying an invoice's journal.

    Attributes:
        invoice_id: Audited invoice
        journal_paid_amount: paid_amount recomputed from the journal
        recorded_paid_amount: paid_amount stored on the invoice
        settled_payments_amount: Completed charges minus completed refunds
        entry_count: Number of journal entries
    """

    invoice_id: uuid.UUID
    journal_paid_amount: Decimal
    recorded_paid_amount: Decimal
    settled_payments_amount: Decimal
    entry_count: int

    @property
    def is_consistent(self) -> bool:
        return (
            self.journal_paid_amount == self.recorded_paid_amount
            == self.settled_payments_amount
        )
