"""
Ledger service layer for invoice balances.

All writes to Invoice.paid_amount/balance_due go through this service. Each
write happens under the per-invoice row lock, is validated against the
balance invariants, and is journaled as a LedgerEntry whose unique
idempotency key makes re-application a no-op.

Lock order:
    invoice -> payment -> refund record. run_in_invoice_lock always takes
    the invoice first; callers lock payment/refund rows inside the callback.

Usage:
    from payments.ledger.services import ledger

    def settle(invoice):
        payment = Payment.objects.select_for_update().get(id=payment_id)
        ledger.credit_payment(invoice, payment)
        return payment

    ledger.run_in_invoice_lock(invoice_id, settle)
"""

from __future__ import annotations

import logging
import random
import time
from decimal import Decimal
from typing import TYPE_CHECKING, Callable, TypeVar

from django.db import IntegrityError, OperationalError, transaction
from django.db.models import Sum
from django.utils import timezone

from payments.exceptions import PaymentNotFoundError
from payments.models import Invoice, LedgerEntry, Payment, RefundRecord
from payments.state_machines import (
    InvoiceStatus,
    LedgerEntryType,
    PaymentStatus,
    PaymentType,
    RefundStatus,
)

from .exceptions import LedgerIntegrityError, LedgerLockTimeoutError
from .types import LedgerAudit, LedgerMutation

if TYPE_CHECKING:
    import uuid

T = TypeVar("T")

logger = logging.getLogger(__name__)

# Base delay (seconds) between invoice lock attempts
LOCK_RETRY_BASE_DELAY = 0.05
LOCK_RETRY_MAX_DELAY = 1.0

SETTLED_CHARGE_STATUSES = (
    PaymentStatus.COMPLETED,
    PaymentStatus.PARTIALLY_REFUNDED,
    PaymentStatus.REFUNDED,
)


class LedgerService:
    """
    Service class for ledger operations.

    Key features:
    - Per-invoice serialization via SELECT ... FOR UPDATE NOWAIT with
      bounded, jittered retries
    - Idempotency via unique journal keys (safe to re-apply)
    - Invariant checks before every mutation (never negative balances)
    - Status recomputation from the new balance

    All methods are static - no instance state is maintained.
    """

    # ==========================================================================
    # Locking
    # ==========================================================================

    @staticmethod
    def run_in_invoice_lock(
        invoice_id: uuid.UUID,
        fn: Callable[[Invoice], T],
        attempts: int = 5,
    ) -> T:
        """
        Run fn(invoice) inside a transaction holding the invoice row lock.

        The lock is requested with NOWAIT; contention raises immediately and
        is retried with exponential backoff plus jitter, so no worker blocks
        indefinitely on a hot invoice.

        Args:
            invoice_id: Invoice to lock
            fn: Callback receiving the locked invoice
            attempts: Maximum lock attempts

        Returns:
            Whatever fn returns

        Raises:
            PaymentNotFoundError: If the invoice does not exist
            LedgerLockTimeoutError: If the lock is not acquired in time
        """
        for attempt in range(1, attempts + 1):
            try:
                with transaction.atomic():
                    invoice = Invoice.objects.select_for_update(nowait=True).get(
                        pk=invoice_id
                    )
                    return fn(invoice)
            except Invoice.DoesNotExist as exc:
                raise PaymentNotFoundError(
                    f"Invoice {invoice_id} not found",
                    error_code="INVOICE_NOT_FOUND",
                    details={"invoice_id": str(invoice_id)},
                ) from exc
            except OperationalError as exc:
                if attempt == attempts:
                    logger.error(
                        "Invoice lock not acquired",
                        extra={"invoice_id": str(invoice_id), "attempts": attempts},
                    )
                    raise LedgerLockTimeoutError(
                        f"Could not lock invoice {invoice_id} after {attempts} attempts",
                        details={"invoice_id": str(invoice_id), "attempts": attempts},
                    ) from exc
                delay = min(LOCK_RETRY_BASE_DELAY * (2 ** (attempt - 1)), LOCK_RETRY_MAX_DELAY)
                delay += random.uniform(0, delay * 0.25)
                logger.info(
                    "Invoice lock busy, retrying",
                    extra={
                        "invoice_id": str(invoice_id),
                        "attempt": attempt,
                        "delay_s": round(delay, 3),
                    },
                )
                time.sleep(delay)
        raise AssertionError("unreachable")

    # ==========================================================================
    # Mutations
    # ==========================================================================

    @staticmethod
    def credit_payment(invoice: Invoice, payment: Payment) -> LedgerEntry:
        """
        Credit a settled charge to its invoice.

        paid_amount grows by the gross Payment.amount (not net_amount).
        Must be called with the invoice locked (run_in_invoice_lock).

        Args:
            invoice: Locked invoice
            payment: Completed charge payment

        Returns:
            The journal entry (the existing one if already credited)

        Raises:
            LedgerIntegrityError: Cancelled invoice, currency mismatch or
                settlement exceeding balance_due
        """
        if payment.invoice_id != invoice.id:
            raise LedgerIntegrityError(
                "Payment does not belong to invoice",
                details={"invoice_id": str(invoice.id), "payment_id": str(payment.id)},
            )
        if payment.currency != invoice.currency:
            raise LedgerIntegrityError(
                "Payment currency does not match invoice currency",
                details={
                    "invoice_currency": invoice.currency,
                    "payment_currency": payment.currency,
                },
            )
        mutation = LedgerMutation(
            entry_type=LedgerEntryType.CHARGE_SETTLED,
            amount=payment.amount,
            idempotency_key=f"charge:{payment.id}",
            payment_id=payment.id,
        )
        return LedgerService._apply(invoice, mutation)

    @staticmethod
    def debit_refund(invoice: Invoice, refund: RefundRecord) -> LedgerEntry:
        """
        Debit a settled refund from its invoice.

        Must be called with the invoice locked (run_in_invoice_lock).

        Args:
            invoice: Locked invoice
            refund: Completed refund record

        Returns:
            The journal entry (the existing one if already debited)

        Raises:
            LedgerIntegrityError: Refund exceeding the invoice's paid amount
        """
        mutation = LedgerMutation(
            entry_type=LedgerEntryType.REFUND_SETTLED,
            amount=refund.amount,
            idempotency_key=f"refund:{refund.id}",
            payment_id=refund.refund_parent_id,
            refund_record_id=refund.id,
        )
        return LedgerService._apply(invoice, mutation)

    @staticmethod
    def _apply(invoice: Invoice, mutation: LedgerMutation) -> LedgerEntry:
        """Validate, journal and apply one mutation to a locked invoice."""
        existing = LedgerEntry.objects.filter(
            idempotency_key=mutation.idempotency_key
        ).first()
        if existing:
            logger.info(
                "Ledger mutation already applied",
                extra={"idempotency_key": mutation.idempotency_key},
            )
            return existing

        details = {
            "invoice_id": str(invoice.id),
            "amount": str(mutation.amount),
            "paid_amount": str(invoice.paid_amount),
            "balance_due": str(invoice.balance_due),
            "idempotency_key": mutation.idempotency_key,
        }
        if mutation.entry_type == LedgerEntryType.CHARGE_SETTLED:
            if invoice.status == InvoiceStatus.CANCELLED:
                raise LedgerIntegrityError(
                    "Cannot settle a charge against a cancelled invoice",
                    details=details,
                )
            if mutation.amount > invoice.balance_due:
                raise LedgerIntegrityError(
                    "Settlement would make balance_due negative",
                    details=details,
                )
        elif mutation.amount > invoice.paid_amount:
            raise LedgerIntegrityError(
                "Refund exceeds the invoice's paid amount",
                details=details,
            )

        new_paid = invoice.paid_amount + mutation.signed_amount
        new_balance = invoice.total_amount - new_paid

        try:
            with transaction.atomic():
                entry = LedgerEntry.objects.create(
                    invoice=invoice,
                    entry_type=mutation.entry_type,
                    amount=mutation.amount,
                    currency=invoice.currency,
                    paid_amount_after=new_paid,
                    balance_due_after=new_balance,
                    payment_id=mutation.payment_id,
                    refund_record_id=mutation.refund_record_id,
                    idempotency_key=mutation.idempotency_key,
                )
        except IntegrityError:
            # Another writer journaled the same key first
            existing = LedgerEntry.objects.filter(
                idempotency_key=mutation.idempotency_key
            ).first()
            if existing:
                return existing
            raise

        invoice.paid_amount = new_paid
        LedgerService.recompute_status(invoice)
        invoice.save()

        logger.info(
            "Ledger mutation applied",
            extra={
                "invoice_id": str(invoice.id),
                "entry_type": mutation.entry_type,
                "amount": str(mutation.amount),
                "paid_amount": str(invoice.paid_amount),
                "balance_due": str(invoice.balance_due),
                "status": invoice.status,
            },
        )
        return entry

    @staticmethod
    def recompute_status(invoice: Invoice) -> None:
        """
        Derive balance_due and the ledger-owned status from paid_amount.

        - balance 0: PAID (paid_date set on first payoff)
        - paid > 0 with balance left: PARTIAL
        - nothing paid: SENT (reopened)

        Note: Does not save - caller must save after calling.
        """
        invoice.balance_due = invoice.total_amount - invoice.paid_amount
        if invoice.balance_due == 0 and invoice.paid_amount > 0:
            invoice.status = InvoiceStatus.PAID
            if invoice.paid_date is None:
                invoice.paid_date = timezone.now()
        elif invoice.paid_amount > 0:
            invoice.status = InvoiceStatus.PARTIAL
            invoice.paid_date = None
        else:
            invoice.status = InvoiceStatus.SENT
            invoice.paid_date = None

    # ==========================================================================
    # Queries
    # ==========================================================================

    @staticmethod
    def get_entries(invoice_id: uuid.UUID) -> list[LedgerEntry]:
        """Return the invoice journal in application order."""
        return list(LedgerEntry.objects.filter(invoice_id=invoice_id).order_by("created_at"))

    @staticmethod
    def audit_invoice(invoice: Invoice) -> LedgerAudit:
        """
        Replay an invoice's journal and compare it with stored balances.

        Three figures must agree: the journal sum, the stored
        paid_amount, and settled charges minus completed refunds.

        Returns:
            LedgerAudit with the three figures
        """
        entries = LedgerEntry.objects.filter(invoice=invoice)
        journal = Decimal("0")
        count = 0
        for entry in entries:
            journal += entry.signed_amount
            count += 1

        charged = Payment.objects.filter(
            invoice=invoice,
            status__in=SETTLED_CHARGE_STATUSES,
        ).exclude(payment_type=PaymentType.REFUND).aggregate(total=Sum("amount"))[
            "total"
        ] or Decimal("0")
        refunded = RefundRecord.objects.filter(
            refund_parent__invoice=invoice,
            status=RefundStatus.COMPLETED,
        ).aggregate(total=Sum("amount"))["total"] or Decimal("0")

        audit = LedgerAudit(
            invoice_id=invoice.id,
            journal_paid_amount=journal,
            recorded_paid_amount=invoice.paid_amount,
            settled_payments_amount=charged - refunded,
            entry_count=count,
        )
        if not audit.is_consistent:
            logger.error(
                "Invoice ledger mismatch",
                extra={
                    "invoice_id": str(invoice.id),
                    "journal_paid_amount": str(audit.journal_paid_amount),
                    "recorded_paid_amount": str(audit.recorded_paid_amount),
                    "settled_payments_amount": str(audit.settled_payments_amount),
                },
            )
        return audit


# Singleton instance for convenient access
ledger = LedgerService()
