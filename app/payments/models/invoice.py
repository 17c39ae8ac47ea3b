"""
Invoice model: the amount a customer owes.

Invoices are created by billing logic outside the payments core. Inside the
core they are mutated only by the ledger (payments.ledger.services), which
credits settled charges and debits settled refunds under a row lock.

Usage:
    from payments.models import Invoice
    from payments.state_machines import InvoiceStatus

    invoice = Invoice.objects.create(
        customer_id=customer_id,
        currency="USD",
        subtotal=Decimal("90.00"),
        tax_amount=Decimal("10.00"),
        total_amount=Decimal("100.00"),
        status=InvoiceStatus.SENT,
    )
    invoice.invoice_number  # "INV-2026-000001"
    invoice.balance_due     # Decimal("100.00")
"""

from __future__ import annotations

from decimal import Decimal

from django.db import models
from django.db.models import F, Q

from core.exceptions import ConflictError
from core.model_mixins import MetadataMixin, UUIDPrimaryKeyMixin
from core.models import BaseModel, VersionedModel

from payments.numbering import SequentialNumberMixin
from payments.state_machines import InvoiceStatus

MONEY_FIELD = {"max_digits": 14, "decimal_places": 2}


class Invoice(
    UUIDPrimaryKeyMixin,
    SequentialNumberMixin,
    MetadataMixin,
    VersionedModel,
    BaseModel,
):
    """
    An amount owed by a customer.

    Invariants (enforced on save and by DB check constraints):
        balance_due = total_amount - paid_amount
        balance_due >= 0
        paid_amount >= 0

    Status:
        PAID, PARTIAL and SENT (reopened after refunds) are owned by the
        ledger. DRAFT, VIEWED, OVERDUE and CANCELLED belong to billing
        workflows. Invoices are never deleted; use cancel().

    Fields:
        invoice_number: INV-YYYY-NNNNNN, assigned on first save
        customer_id: Customer owning the invoice (identity lives elsewhere)
        currency: ISO 4217 currency code (uppercase)
        exchange_rate: Rate to the reporting currency, stored as given
        subtotal/tax_amount/total_amount: Billing amounts, stored as given
        paid_amount: Sum of settled charges minus settled refunds
        balance_due: total_amount - paid_amount
        due_date: Payment due date
        paid_date: When the balance first reached zero
        version: Row version, bumped on every save
    """

    number_field = "invoice_number"
    number_prefix = "INV"

    # ==========================================================================
    # Identification
    # ==========================================================================

    invoice_number = models.CharField(
        max_length=32,
        unique=True,
        blank=True,
        help_text="Sequential invoice number (INV-YYYY-NNNNNN)",
    )

    customer_id = models.UUIDField(
        db_index=True,
        help_text="Customer the invoice is billed to",
    )

    # ==========================================================================
    # Amount & Currency
    # ==========================================================================

    currency = models.CharField(
        max_length=3,
        default="USD",
        help_text="ISO 4217 currency code (uppercase)",
    )

    exchange_rate = models.DecimalField(
        max_digits=18,
        decimal_places=8,
        default=Decimal("1"),
        help_text="Exchange rate to the reporting currency (stored as given)",
    )

    subtotal = models.DecimalField(
        **MONEY_FIELD,
        default=Decimal("0"),
        help_text="Amount before tax",
    )

    tax_amount = models.DecimalField(
        **MONEY_FIELD,
        default=Decimal("0"),
        help_text="Tax amount (stored as given)",
    )

    total_amount = models.DecimalField(
        **MONEY_FIELD,
        help_text="Total amount owed",
    )

    paid_amount = models.DecimalField(
        **MONEY_FIELD,
        default=Decimal("0"),
        help_text="Settled charges minus settled refunds",
    )

    balance_due = models.DecimalField(
        **MONEY_FIELD,
        default=Decimal("0"),
        help_text="total_amount - paid_amount (never negative)",
    )

    # ==========================================================================
    # Status & Dates
    # ==========================================================================

    status = models.CharField(
        max_length=20,
        choices=InvoiceStatus.choices,
        default=InvoiceStatus.DRAFT,
        db_index=True,
        help_text="Invoice status",
    )

    due_date = models.DateField(
        null=True,
        blank=True,
        help_text="Payment due date",
    )

    paid_date = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the balance first reached zero",
    )

    # ==========================================================================
    # Meta & Methods
    # ==========================================================================

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Invoice"
        verbose_name_plural = "Invoices"
        indexes = [
            models.Index(fields=["customer_id", "status"], name="invoice_customer_status_idx"),
            models.Index(fields=["status", "due_date"], name="invoice_status_due_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(total_amount__gte=0),
                name="invoice_total_non_negative",
            ),
            models.CheckConstraint(
                condition=Q(paid_amount__gte=0),
                name="invoice_paid_non_negative",
            ),
            models.CheckConstraint(
                condition=Q(balance_due__gte=0),
                name="invoice_balance_non_negative",
            ),
            models.CheckConstraint(
                condition=Q(balance_due=F("total_amount") - F("paid_amount")),
                name="invoice_balance_matches_paid",
            ),
        ]

    def __str__(self) -> str:
        """Return string representation with number, status and balance."""
        return (
            f"Invoice({self.invoice_number}, {self.status}, "
            f"{self.balance_due} {self.currency} due)"
        )

    def save(self, *args, **kwargs):
        """Normalize currency and keep balance_due derived from paid_amount."""
        self.currency = (self.currency or "").upper()
        self.balance_due = Decimal(self.total_amount) - Decimal(self.paid_amount)
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ConflictError(
            "Invoices are never deleted; cancel the invoice instead",
            error_code="INVOICE_DELETE_FORBIDDEN",
            details={"invoice_id": str(self.pk)},
        )

    # ==========================================================================
    # Properties
    # ==========================================================================

    @property
    def is_payable(self) -> bool:
        """Whether the invoice accepts new charges."""
        if self.status in (
            InvoiceStatus.DRAFT,
            InvoiceStatus.CANCELLED,
            InvoiceStatus.PAID,
        ):
            return False
        return self.balance_due > 0

    # ==========================================================================
    # Helper Methods
    # ==========================================================================

    def cancel(self) -> None:
        """
        Cancel an invoice that has nothing paid against it.

        Raises:
            ConflictError: If any amount is paid

        Note: Does not save - caller must save after calling.
        """
        if self.paid_amount > 0:
            raise ConflictError(
                "Cannot cancel an invoice with settled payments",
                error_code="INVOICE_HAS_PAYMENTS",
                details={
                    "invoice_id": str(self.pk),
                    "paid_amount": str(self.paid_amount),
                },
            )
        self.status = InvoiceStatus.CANCELLED
