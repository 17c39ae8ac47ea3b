"""
RefundRecord model for tracking money returned to customers.

A RefundRecord represents money going back to the customer from a
completed payment. One Payment can have many RefundRecords (partial
refunds). Records are created in REQUESTED by the RefundProcessor, or by
the Reconciler when a gateway reports a refund the core did not initiate,
and finalized only by the Reconciler.

Usage:
    from payments.models import RefundRecord
    from payments.state_machines import RefundStatus

    refund = RefundRecord.objects.create(
        refund_parent=payment,
        amount=Decimal("40.00"),
        currency=payment.currency,
        reason="Shipment cancelled",
    )

    # After the gateway confirms (Reconciler only)
    refund.complete(gateway_refund_id="re_123")
    refund.save()
"""

from __future__ import annotations

from decimal import Decimal

from django.conf import settings
from django.db import models
from django.db.models import Q
from django.utils import timezone

from django_fsm import FSMField, transition

from core.model_mixins import MetadataMixin, UUIDPrimaryKeyMixin
from core.models import BaseModel, VersionedModel

from payments.state_machines import RefundStatus


class RefundRecord(UUIDPrimaryKeyMixin, MetadataMixin, VersionedModel, BaseModel):
    """
    Represents money returned to a customer.

    State Flow:
        REQUESTED -> COMPLETED
        REQUESTED -> FAILED

    Fields:
        refund_parent: Payment being refunded
        amount: Refund amount in major units
        currency: ISO 4217 currency code
        reason: Customer/admin-facing refund reason
        status: Current FSM state
        gateway_refund_id: Gateway refund id (re_xxx, PayPal refund id)
        reversal_payment: Reversal Payment row created on completion
        requested_by: User who requested the refund (None for gateway-initiated)
        version: Row version, bumped on every save
    """

    # ==========================================================================
    # Relationships
    # ==========================================================================

    refund_parent = models.ForeignKey(
        "payments.Payment",
        on_delete=models.PROTECT,
        related_name="refund_records",
        help_text="Payment being refunded",
    )

    reversal_payment = models.OneToOneField(
        "payments.Payment",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="reversal_of",
        help_text="Refund-type Payment row created when the refund completes",
    )

    requested_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="refund_requests",
        help_text="User who requested the refund",
    )

    # ==========================================================================
    # Amount & Reason
    # ==========================================================================

    amount = models.DecimalField(
        max_digits=14,
        decimal_places=2,
        help_text="Refund amount",
    )

    currency = models.CharField(
        max_length=3,
        help_text="ISO 4217 currency code (uppercase)",
    )

    reason = models.TextField(
        blank=True,
        default="",
        help_text="Reason for the refund",
    )

    # ==========================================================================
    # State
    # ==========================================================================

    status = FSMField(
        default=RefundStatus.REQUESTED,
        choices=RefundStatus.choices,
        db_index=True,
        protected=True,
        help_text="Current refund status (managed by FSM)",
    )

    gateway_refund_id = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        unique=True,
        help_text="Gateway refund id",
    )

    # ==========================================================================
    # Timestamps & Error Info
    # ==========================================================================

    completed_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the gateway confirmed the refund",
    )

    failed_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the refund failed",
    )

    failure_reason = models.TextField(
        null=True,
        blank=True,
        help_text="Failure details if the refund failed",
    )

    # ==========================================================================
    # Meta & Methods
    # ==========================================================================

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Refund"
        verbose_name_plural = "Refunds"
        indexes = [
            models.Index(fields=["refund_parent", "status"], name="refund_parent_status_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(amount__gt=0),
                name="refund_amount_positive",
            ),
        ]

    def __str__(self) -> str:
        """Return string representation with ID, status and amount."""
        return f"RefundRecord({self.id}, {self.status}, {self.amount} {self.currency})"

    def save(self, *args, **kwargs):
        self.currency = (self.currency or "").upper()
        self.amount = Decimal(self.amount)
        super().save(*args, **kwargs)

    # ==========================================================================
    # State Transitions (django-fsm)
    # ==========================================================================

    @transition(
        field=status,
        source=RefundStatus.REQUESTED,
        target=RefundStatus.COMPLETED,
    )
    def complete(self, gateway_refund_id: str | None = None):
        """
        Mark refund as completed.

        Transition: REQUESTED -> COMPLETED
        """
        if gateway_refund_id:
            self.gateway_refund_id = gateway_refund_id
        self.completed_at = timezone.now()

    @transition(
        field=status,
        source=RefundStatus.REQUESTED,
        target=RefundStatus.FAILED,
    )
    def fail(self, reason: str | None = None):
        """
        Mark refund as failed.

        Transition: REQUESTED -> FAILED

        The ledger is not touched; the amount becomes refundable again.
        """
        self.failed_at = timezone.now()
        self.failure_reason = reason

    # ==========================================================================
    # Properties
    # ==========================================================================

    @property
    def is_complete(self) -> bool:
        return self.status == RefundStatus.COMPLETED

    @property
    def is_pending(self) -> bool:
        return self.status == RefundStatus.REQUESTED
