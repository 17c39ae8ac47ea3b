"""
GatewayEventRecord model: archive of every normalized gateway event.

Each webhook delivery (and each synchronous gateway response, which is fed
through the same reconciliation path) is archived once per
(gateway, gateway_event_id). The normalized fields are written on insert
and never changed; only processing bookkeeping (status, attempts, park
reason) moves.

Usage:
    from payments.models import GatewayEventRecord
    from payments.state_machines import GatewayEventStatus

    record, created = GatewayEventRecord.objects.get_or_create(
        gateway="stripe",
        gateway_event_id="evt_123",
        defaults={...},
    )
    record.mark_processing()
    record.save()
"""

from __future__ import annotations

from django.db import models
from django.utils import timezone

from core.model_mixins import UUIDPrimaryKeyMixin
from core.models import BaseModel

from payments.state_machines import (
    GatewayEventSource,
    GatewayEventStatus,
    GatewayEventType,
    GatewayName,
)


class GatewayEventRecord(UUIDPrimaryKeyMixin, BaseModel):
    """
    Archived gateway event for idempotent processing and audit.

    Processing Flow:
        1. Signature verified, payload parsed into a GatewayEvent
        2. Record inserted (or fetched) by (gateway, gateway_event_id)
        3. attempt_count incremented; too many attempts -> PARKED
        4. Reconciler applies the event -> APPLIED
        5. Integrity violation -> PARKED for manual review
        6. Transient failure -> FAILED, gateway redelivers later

    Fields:
        gateway/gateway_event_id: Unique event identity
        event_type: Normalized event type
        gateway_transaction_id/gateway_refund_id: Gateway references
        merchant_reference: Our reference echoed back (order reference)
        amount/currency: Amount reported by the gateway
        fee_amount: Authoritative fee (fee.updated only)
        requires_capture: Approved order still waiting for capture
        payload: Decoded payload
        raw_body: Raw request body, kept for replay after manual review
        payload_hash: sha256 of the raw body
        source: webhook, synchronous response or manual confirmation
        status/attempt_count/park_reason/error_message: Processing bookkeeping
        payment: Payment the event resolved to
    """

    # ==========================================================================
    # Event Identification
    # ==========================================================================

    gateway = models.CharField(
        max_length=20,
        choices=GatewayName.choices,
        help_text="Gateway that produced the event",
    )

    gateway_event_id = models.CharField(
        max_length=255,
        help_text="Gateway event id (unique per gateway)",
    )

    event_type = models.CharField(
        max_length=50,
        choices=GatewayEventType.choices,
        db_index=True,
        help_text="Normalized event type",
    )

    source = models.CharField(
        max_length=20,
        choices=GatewayEventSource.choices,
        default=GatewayEventSource.WEBHOOK,
        help_text="Where the event came from",
    )

    # ==========================================================================
    # Normalized Fields (immutable)
    # ==========================================================================

    gateway_transaction_id = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        db_index=True,
        help_text="Gateway transaction id the event refers to",
    )

    gateway_refund_id = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        help_text="Gateway refund id (refund events)",
    )

    gateway_payment_id = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        help_text="Secondary gateway reference (capture id, order reference)",
    )

    merchant_reference = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        help_text="Merchant reference echoed by the gateway",
    )

    amount = models.DecimalField(
        max_digits=14,
        decimal_places=2,
        null=True,
        blank=True,
        help_text="Amount reported by the gateway",
    )

    currency = models.CharField(
        max_length=3,
        blank=True,
        default="",
        help_text="ISO 4217 currency code",
    )

    fee_amount = models.DecimalField(
        max_digits=14,
        decimal_places=2,
        null=True,
        blank=True,
        help_text="Authoritative gateway fee (fee.updated)",
    )

    requires_capture = models.BooleanField(
        default=False,
        help_text="Approved order still waiting for capture",
    )

    failure_code = models.CharField(
        max_length=50,
        null=True,
        blank=True,
        help_text="Normalized failure code (failure events)",
    )

    failure_message = models.TextField(
        null=True,
        blank=True,
        help_text="Gateway failure message (failure events)",
    )

    received_at = models.DateTimeField(
        default=timezone.now,
        help_text="When the event was received",
    )

    # ==========================================================================
    # Payload
    # ==========================================================================

    payload = models.JSONField(
        default=dict,
        blank=True,
        help_text="Decoded payload",
    )

    raw_body = models.TextField(
        blank=True,
        default="",
        help_text="Raw request body (webhooks only)",
    )

    payload_hash = models.CharField(
        max_length=64,
        help_text="sha256 of the raw body",
    )

    # ==========================================================================
    # Processing Status
    # ==========================================================================

    status = models.CharField(
        max_length=20,
        choices=GatewayEventStatus.choices,
        default=GatewayEventStatus.RECEIVED,
        db_index=True,
        help_text="Current processing status",
    )

    attempt_count = models.PositiveSmallIntegerField(
        default=0,
        help_text="Number of processing attempts",
    )

    processed_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the event was applied or parked",
    )

    park_reason = models.TextField(
        null=True,
        blank=True,
        help_text="Why the event needs manual review",
    )

    error_message = models.TextField(
        null=True,
        blank=True,
        help_text="Last processing error",
    )

    payment = models.ForeignKey(
        "payments.Payment",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="gateway_events",
        help_text="Payment the event resolved to",
    )

    # ==========================================================================
    # Meta & Methods
    # ==========================================================================

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Gateway Event"
        verbose_name_plural = "Gateway Events"
        indexes = [
            models.Index(fields=["status", "created_at"], name="gw_event_status_created_idx"),
            models.Index(fields=["gateway", "gateway_transaction_id"], name="gw_event_gateway_txn_idx"),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=["gateway", "gateway_event_id"],
                name="unique_gateway_event",
            ),
        ]

    def __str__(self) -> str:
        """Return string representation with gateway, event id and type."""
        return f"GatewayEventRecord({self.gateway}/{self.gateway_event_id}, {self.event_type})"

    @classmethod
    def archive(cls, event, source: str = GatewayEventSource.WEBHOOK, raw_body: str = ""):
        """
        Insert the archive row for a normalized event, or fetch the existing one.

        Normalized fields are only written on insert.

        Returns:
            (record, created)
        """
        return cls.objects.get_or_create(
            gateway=event.gateway,
            gateway_event_id=event.event_id,
            defaults={
                "event_type": event.event_type,
                "source": source,
                "gateway_transaction_id": event.gateway_transaction_id,
                "gateway_refund_id": event.gateway_refund_id,
                "gateway_payment_id": event.gateway_payment_id,
                "merchant_reference": event.merchant_reference,
                "amount": event.amount,
                "currency": event.currency or "",
                "fee_amount": event.fee_amount,
                "requires_capture": event.requires_capture,
                "failure_code": event.failure_code,
                "failure_message": event.failure_message,
                "received_at": event.received_at,
                "payload": event.raw,
                "raw_body": raw_body,
                "payload_hash": event.payload_hash,
            },
        )

    # ==========================================================================
    # Properties
    # ==========================================================================

    @property
    def dedupe_key(self) -> str:
        return f"{self.gateway}/{self.gateway_event_id}"

    @property
    def is_applied(self) -> bool:
        return self.status == GatewayEventStatus.APPLIED

    @property
    def is_parked(self) -> bool:
        return self.status == GatewayEventStatus.PARKED

    # ==========================================================================
    # Helper Methods
    # ==========================================================================

    def mark_processing(self) -> None:
        """
        Mark event as being processed and count the attempt.

        Note: Does not save - caller must save after calling.
        """
        self.status = GatewayEventStatus.PROCESSING
        self.attempt_count += 1

    def mark_applied(self, payment=None) -> None:
        """
        Mark event as successfully applied.

        Note: Does not save - caller must save after calling.
        """
        self.status = GatewayEventStatus.APPLIED
        self.processed_at = timezone.now()
        self.error_message = None
        if payment is not None:
            self.payment = payment

    def mark_parked(self, reason: str) -> None:
        """
        Park the event for manual review.

        Note: Does not save - caller must save after calling.
        """
        self.status = GatewayEventStatus.PARKED
        self.processed_at = timezone.now()
        self.park_reason = reason

    def mark_failed(self, error_message: str) -> None:
        """
        Mark event as failed with error message.

        Note: Does not save - caller must save after calling.
        """
        self.status = GatewayEventStatus.FAILED
        self.error_message = error_message

    def to_event(self):
        """Rebuild the normalized GatewayEvent from the archived fields."""
        from payments.types import GatewayEvent

        return GatewayEvent(
            event_id=self.gateway_event_id,
            event_type=GatewayEventType(self.event_type),
            gateway=GatewayName(self.gateway),
            gateway_transaction_id=self.gateway_transaction_id,
            amount=self.amount,
            currency=self.currency,
            payload_hash=self.payload_hash,
            received_at=self.received_at,
            gateway_refund_id=self.gateway_refund_id,
            gateway_payment_id=self.gateway_payment_id,
            merchant_reference=self.merchant_reference,
            failure_code=self.failure_code,
            failure_message=self.failure_message,
            fee_amount=self.fee_amount,
            requires_capture=self.requires_capture,
            raw=self.payload,
        )
