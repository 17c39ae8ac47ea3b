"""
Payment model: one attempt to collect money against an invoice.

Payments are created by the PaymentOrchestrator in PENDING. Every later
status change goes through the Reconciler, which applies normalized gateway
events (webhooks and synchronous gateway responses alike) under the invoice
lock.

Usage:
    from payments.models import Payment
    from payments.state_machines import PaymentStatus

    payment.start_processing()  # pending -> processing
    payment.complete()          # processing -> completed
    payment.save()

    payment.refund_partial(Decimal("40.00"))  # completed -> partially_refunded
    payment.save()

Note:
    status is a protected FSMField. Reload payments with
    Payment.objects.get() rather than refresh_from_db().
"""

from __future__ import annotations

from decimal import Decimal

from django.db import models
from django.db.models import Q
from django.utils import timezone

from django_fsm import FSMField, transition

from core.model_mixins import MetadataMixin, UUIDPrimaryKeyMixin
from core.models import BaseModel, VersionedModel

from payments.numbering import SequentialNumberMixin
from payments.state_machines import GatewayName, PaymentStatus, PaymentType

MONEY_FIELD = {"max_digits": 14, "decimal_places": 2}

TERMINAL_STATUSES = (PaymentStatus.FAILED, PaymentStatus.REFUNDED)
REFUNDABLE_STATUSES = (PaymentStatus.COMPLETED, PaymentStatus.PARTIALLY_REFUNDED)


class Payment(
    UUIDPrimaryKeyMixin,
    SequentialNumberMixin,
    MetadataMixin,
    VersionedModel,
    BaseModel,
):
    """
    One attempt to collect money against an invoice.

    Uses django-fsm for state machine management; concurrent updates
    serialize on row locks and the version field counts writes.

    State Flow:
        PENDING -> PROCESSING -> COMPLETED
        PENDING -> PROCESSING -> FAILED
        PENDING -> FAILED

    Refund Flow:
        COMPLETED/PARTIALLY_REFUNDED -> PARTIALLY_REFUNDED/REFUNDED

    Reversal rows:
        A completed refund produces a Payment with payment_type=REFUND,
        status=COMPLETED and refund_parent pointing at the charge it
        reverses. Reversal rows never pass through the state machine.

    Fields:
        payment_number: PAY-YYYY-NNNNNN, assigned on first save
        invoice: Invoice being paid
        amount: Gross amount charged (credited to the invoice in full)
        fee_amount: Gateway fee (provisional until fee.updated arrives)
        surcharge_amount: Fee passed on to the customer, if configured
        net_amount: amount - fee_amount (computed on save)
        gateway/gateway_transaction_id: Gateway and its transaction id,
            unique per gateway once assigned
        gateway_payment_id: Secondary gateway reference (capture, receipt)
        client_request_id: Caller's idempotency key for the charge request
        submitted_at: When the charge was handed to the gateway
        refunded_amount: Sum of completed refunds
    """

    number_field = "payment_number"
    number_prefix = "PAY"

    # ==========================================================================
    # Relationships
    # ==========================================================================

    invoice = models.ForeignKey(
        "payments.Invoice",
        on_delete=models.PROTECT,
        related_name="payments",
        help_text="Invoice this payment is applied to",
    )

    refund_parent = models.ForeignKey(
        "self",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="reversals",
        help_text="Charge reversed by this refund row (refund rows only)",
    )

    customer_id = models.UUIDField(
        db_index=True,
        help_text="Customer making the payment",
    )

    # ==========================================================================
    # Identification
    # ==========================================================================

    payment_number = models.CharField(
        max_length=32,
        unique=True,
        blank=True,
        help_text="Sequential payment number (PAY-YYYY-NNNNNN)",
    )

    client_request_id = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        help_text="Caller-supplied idempotency key of the charge request",
    )

    payment_type = models.CharField(
        max_length=20,
        choices=PaymentType.choices,
        default=PaymentType.FULL,
        help_text="Full/partial charge or refund reversal",
    )

    method = models.CharField(
        max_length=50,
        blank=True,
        default="",
        help_text="Payment method (card, paypal, mobile_money)",
    )

    # ==========================================================================
    # Amount & Currency
    # ==========================================================================

    currency = models.CharField(
        max_length=3,
        help_text="ISO 4217 currency code (uppercase)",
    )

    exchange_rate = models.DecimalField(
        max_digits=18,
        decimal_places=8,
        default=Decimal("1"),
        help_text="Exchange rate copied from the invoice",
    )

    amount = models.DecimalField(
        **MONEY_FIELD,
        help_text="Gross amount applied to the invoice",
    )

    fee_amount = models.DecimalField(
        **MONEY_FIELD,
        default=Decimal("0"),
        help_text="Gateway fee",
    )

    surcharge_amount = models.DecimalField(
        **MONEY_FIELD,
        default=Decimal("0"),
        help_text="Gateway fee charged to the customer on top of amount",
    )

    net_amount = models.DecimalField(
        **MONEY_FIELD,
        default=Decimal("0"),
        help_text="amount - fee_amount",
    )

    refunded_amount = models.DecimalField(
        **MONEY_FIELD,
        default=Decimal("0"),
        help_text="Sum of completed refunds",
    )

    # ==========================================================================
    # State
    # ==========================================================================

    status = FSMField(
        default=PaymentStatus.PENDING,
        choices=PaymentStatus.choices,
        db_index=True,
        protected=True,  # Prevent direct assignment outside transitions
        help_text="Current payment status (managed by FSM)",
    )

    # ==========================================================================
    # Gateway Integration
    # ==========================================================================

    gateway = models.CharField(
        max_length=20,
        choices=GatewayName.choices,
        help_text="Gateway processing this payment",
    )

    gateway_transaction_id = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        db_index=True,
        help_text="Gateway transaction id (pi_xxx, PayPal order id, ClickPesa id)",
    )

    gateway_payment_id = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        db_index=True,
        help_text="Secondary gateway reference (capture id, order reference)",
    )

    gateway_response = models.JSONField(
        default=dict,
        blank=True,
        help_text="Last raw gateway response for this payment",
    )

    # ==========================================================================
    # State Timestamps
    # ==========================================================================

    submitted_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the charge was handed to the gateway",
    )

    processed_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the payment completed",
    )

    failed_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the payment failed",
    )

    refunded_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the last refund completed",
    )

    # ==========================================================================
    # Error Info
    # ==========================================================================

    failure_code = models.CharField(
        max_length=50,
        null=True,
        blank=True,
        help_text="Normalized failure code (card_declined, insufficient_funds, ...)",
    )

    failure_reason = models.TextField(
        null=True,
        blank=True,
        help_text="Human-readable failure reason",
    )

    # ==========================================================================
    # Meta & Methods
    # ==========================================================================

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Payment"
        verbose_name_plural = "Payments"
        indexes = [
            models.Index(fields=["invoice", "status"], name="payment_invoice_status_idx"),
            models.Index(fields=["customer_id", "created_at"], name="payment_customer_created_idx"),
            models.Index(fields=["gateway", "status"], name="payment_gateway_status_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(amount__gt=0),
                name="payment_amount_positive",
            ),
            models.CheckConstraint(
                condition=Q(fee_amount__gte=0),
                name="payment_fee_non_negative",
            ),
            models.CheckConstraint(
                condition=Q(refunded_amount__gte=0)
                & Q(refunded_amount__lte=models.F("amount")),
                name="payment_refunded_within_amount",
            ),
            models.UniqueConstraint(
                fields=["gateway", "gateway_transaction_id"],
                condition=Q(gateway_transaction_id__isnull=False),
                name="unique_gateway_transaction",
            ),
            models.UniqueConstraint(
                fields=["client_request_id"],
                condition=Q(client_request_id__isnull=False),
                name="unique_payment_client_request",
            ),
        ]

    def __str__(self) -> str:
        """Return string representation with number, status and amount."""
        return f"Payment({self.payment_number}, {self.status}, {self.amount} {self.currency})"

    def save(self, *args, **kwargs):
        """Keep net_amount derived from amount and fee_amount."""
        self.currency = (self.currency or "").upper()
        self.net_amount = Decimal(self.amount) - Decimal(self.fee_amount or 0)
        super().save(*args, **kwargs)

    # ==========================================================================
    # Properties
    # ==========================================================================

    @property
    def is_reversal(self) -> bool:
        """Whether this row records a completed refund."""
        return self.payment_type == PaymentType.REFUND

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_refundable(self) -> bool:
        return not self.is_reversal and self.status in REFUNDABLE_STATUSES

    @property
    def refundable_amount(self) -> Decimal:
        """
        Amount still available for new refunds.

        Counts every refund that has not failed (requested refunds are
        reserved), not only completed ones.
        """
        from payments.state_machines import RefundStatus

        reserved = self.refund_records.exclude(status=RefundStatus.FAILED).aggregate(
            total=models.Sum("amount")
        )["total"] or Decimal("0")
        return self.amount - reserved

    # ==========================================================================
    # State Transitions (django-fsm)
    # ==========================================================================

    @transition(
        field=status,
        source=PaymentStatus.PENDING,
        target=PaymentStatus.PROCESSING,
    )
    def start_processing(self):
        """
        Gateway accepted the charge and is processing it.

        Transition: PENDING -> PROCESSING
        """
        pass

    @transition(
        field=status,
        source=PaymentStatus.PROCESSING,
        target=PaymentStatus.COMPLETED,
    )
    def complete(self):
        """
        Gateway confirmed the charge.

        Transition: PROCESSING -> COMPLETED

        The reconciler credits the invoice ledger in the same transaction.
        """
        self.processed_at = timezone.now()

    @transition(
        field=status,
        source=[PaymentStatus.PENDING, PaymentStatus.PROCESSING],
        target=PaymentStatus.FAILED,
    )
    def fail(self, code: str | None = None, reason: str | None = None):
        """
        Mark payment as failed.

        Transition: PENDING/PROCESSING -> FAILED

        Args:
            code: Normalized failure code
            reason: Human-readable failure reason
        """
        self.failed_at = timezone.now()
        self.failure_code = code
        self.failure_reason = reason

    @transition(
        field=status,
        source=list(REFUNDABLE_STATUSES),
        target=PaymentStatus.PARTIALLY_REFUNDED,
    )
    def refund_partial(self, amount: Decimal):
        """
        Record a completed refund that leaves part of the payment in place.

        Transition: COMPLETED/PARTIALLY_REFUNDED -> PARTIALLY_REFUNDED
        """
        self.refunded_amount = self.refunded_amount + amount
        self.refunded_at = timezone.now()

    @transition(
        field=status,
        source=list(REFUNDABLE_STATUSES),
        target=PaymentStatus.REFUNDED,
    )
    def refund_full(self, amount: Decimal):
        """
        Record the completed refund that returns the whole payment.

        Transition: COMPLETED/PARTIALLY_REFUNDED -> REFUNDED
        """
        self.refunded_amount = self.refunded_amount + amount
        self.refunded_at = timezone.now()
