"""
Ledger journal for invoice balances.

Invoice.paid_amount and Invoice.balance_due are the running balance; the
LedgerEntry journal records every mutation that produced them. Each entry
is keyed by a unique idempotency key (charge:<payment id>,
refund:<refund id>) so a settlement can never be applied twice, and
carries the balance snapshot it produced so audits can replay the journal.

Usage:
    from payments.ledger.models import LedgerEntry

    LedgerEntry.objects.filter(invoice=invoice).order_by("created_at")
"""

from __future__ import annotations

from django.db import models
from django.db.models import Q

from core.model_mixins import UUIDPrimaryKeyMixin

from payments.state_machines import LedgerEntryType


class LedgerEntry(UUIDPrimaryKeyMixin, models.Model):
    """
    An append-only record of one invoice balance mutation.

    Entries are immutable once created - corrections are made by new
    settlements (refunds), never by editing history.

    Fields:
        invoice: Invoice whose balance changed
        entry_type: charge_settled or refund_settled
        amount: Absolute amount of the mutation (always positive)
        currency: ISO 4217 currency code
        paid_amount_after/balance_due_after: Invoice snapshot after the entry
        payment: Charge payment the entry belongs to
        refund_record: Refund the entry belongs to (refund entries)
        idempotency_key: Unique key to prevent duplicate entries

    Constraints:
        - amount must be positive
        - idempotency_key must be unique
    """

    created_at = models.DateTimeField(
        auto_now_add=True,
        db_index=True,
        help_text="Timestamp when this entry was recorded",
    )

    invoice = models.ForeignKey(
        "payments.Invoice",
        on_delete=models.PROTECT,
        related_name="ledger_entries",
        help_text="Invoice whose balance changed",
    )
    entry_type = models.CharField(
        max_length=30,
        choices=LedgerEntryType.choices,
        help_text="Category of this entry",
    )
    amount = models.DecimalField(
        max_digits=14,
        decimal_places=2,
        help_text="Amount of the mutation (always positive)",
    )
    currency = models.CharField(
        max_length=3,
        help_text="ISO 4217 currency code",
    )
    paid_amount_after = models.DecimalField(
        max_digits=14,
        decimal_places=2,
        help_text="Invoice paid_amount after this entry",
    )
    balance_due_after = models.DecimalField(
        max_digits=14,
        decimal_places=2,
        help_text="Invoice balance_due after this entry",
    )
    payment = models.ForeignKey(
        "payments.Payment",
        on_delete=models.PROTECT,
        related_name="ledger_entries",
        help_text="Charge payment this entry belongs to",
    )
    refund_record = models.ForeignKey(
        "payments.RefundRecord",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="ledger_entries",
        help_text="Refund this entry belongs to",
    )
    idempotency_key = models.CharField(
        max_length=255,
        unique=True,
        help_text="Unique key to prevent duplicate entries",
    )

    class Meta:
        ordering = ["created_at"]
        verbose_name = "Ledger Entry"
        verbose_name_plural = "Ledger Entries"
        indexes = [
            models.Index(fields=["invoice", "created_at"], name="ledger_invoice_created_idx"),
            models.Index(fields=["entry_type"], name="ledger_entry_type_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(amount__gt=0),
                name="ledger_entry_amount_positive",
            ),
            models.CheckConstraint(
                condition=Q(balance_due_after__gte=0),
                name="ledger_entry_balance_non_negative",
            ),
        ]

    def __str__(self) -> str:
        """Return string representation."""
        return f"{self.get_entry_type_display()}: {self.amount} {self.currency}"

    @property
    def signed_amount(self):
        """Amount as applied to paid_amount (refunds are negative)."""
        if self.entry_type == LedgerEntryType.REFUND_SETTLED:
            return -self.amount
        return self.amount

    def save(self, *args, **kwargs):
        if not self._state.adding:
            from payments.ledger.exceptions import LedgerIntegrityError

            raise LedgerIntegrityError(
                "Ledger entries are append-only",
                details={"entry_id": str(self.pk)},
            )
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        from payments.ledger.exceptions import LedgerIntegrityError

        raise LedgerIntegrityError(
            "Ledger entries are append-only",
            details={"entry_id": str(self.pk)},
        )
