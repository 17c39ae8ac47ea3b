"""
State enums for payment models.

This module defines the state enums used by payment models with django-fsm,
plus the closed vocabularies shared by adapters, the webhook ingestor and
the reconciler. These are Django TextChoices for database storage and admin
integration.

State Machines Overview:

Payment States:
    pending → processing → completed
    pending → processing → failed
    pending → failed
    completed → refunded / partially_refunded
    partially_refunded → partially_refunded / refunded

RefundRecord States:
    requested → completed
    requested → failed

Invoice Status (driven by the ledger, not an FSM):
    draft → sent → viewed → partial → paid
    sent/viewed/partial → overdue
    any unpaid status → cancelled
"""

from django.db import models


class PaymentStatus(models.TextChoices):
    """
    States for the Payment model lifecycle.

    Terminal states: FAILED, REFUNDED
    COMPLETED and PARTIALLY_REFUNDED only move forward through refunds.

    State Flow:
        PENDING → PROCESSING → COMPLETED
        PENDING → PROCESSING → FAILED
        PENDING → FAILED

    Refund Flow:
        COMPLETED → REFUNDED / PARTIALLY_REFUNDED
        PARTIALLY_REFUNDED → PARTIALLY_REFUNDED / REFUNDED
    """

    PENDING = "pending", "Pending"
    PROCESSING = "processing", "Processing"
    COMPLETED = "completed", "Completed"
    FAILED = "failed", "Failed"
    REFUNDED = "refunded", "Refunded"
    PARTIALLY_REFUNDED = "partially_refunded", "Partially Refunded"


class InvoiceStatus(models.TextChoices):
    """
    Status of an Invoice.

    PAID, PARTIAL and SENT (reopened after refunds) are set by the ledger.
    The remaining statuses belong to billing workflows outside the core.
    """

    DRAFT = "draft", "Draft"
    SENT = "sent", "Sent"
    VIEWED = "viewed", "Viewed"
    PARTIAL = "partial", "Partially Paid"
    PAID = "paid", "Paid"
    OVERDUE = "overdue", "Overdue"
    CANCELLED = "cancelled", "Cancelled"


class RefundStatus(models.TextChoices):
    """
    States for the RefundRecord model lifecycle.

    State Flow:
        REQUESTED → COMPLETED
        REQUESTED → FAILED
    """

    REQUESTED = "requested", "Requested"
    COMPLETED = "completed", "Completed"
    FAILED = "failed", "Failed"


class PaymentType(models.TextChoices):
    """Kind of money movement a Payment row represents."""

    FULL = "full", "Full"
    PARTIAL = "partial", "Partial"
    REFUND = "refund", "Refund"


class GatewayName(models.TextChoices):
    """
    Closed set of supported payment gateways.

    Adding a gateway means adding a member here and an adapter class in
    payments.adapters.registry.
    """

    STRIPE = "stripe", "Stripe"
    PAYPAL = "paypal", "PayPal"
    CLICKPESA = "clickpesa", "ClickPesa"


class GatewayEventType(models.TextChoices):
    """Normalized event types produced by adapters."""

    CHARGE_PROCESSING = "charge.processing", "Charge Processing"
    CHARGE_SUCCEEDED = "charge.succeeded", "Charge Succeeded"
    CHARGE_FAILED = "charge.failed", "Charge Failed"
    REFUND_SUCCEEDED = "refund.succeeded", "Refund Succeeded"
    REFUND_FAILED = "refund.failed", "Refund Failed"
    FEE_UPDATED = "fee.updated", "Fee Updated"


class GatewayEventStatus(models.TextChoices):
    """
    Processing status of an archived gateway event.

    Flow:
        RECEIVED → PROCESSING → APPLIED
        RECEIVED → PROCESSING → FAILED → PROCESSING (gateway redelivery)
        RECEIVED/PROCESSING → PARKED (manual review)
    """

    RECEIVED = "received", "Received"
    PROCESSING = "processing", "Processing"
    APPLIED = "applied", "Applied"
    PARKED = "parked", "Parked"
    FAILED = "failed", "Failed"


class GatewayEventSource(models.TextChoices):
    """Where a gateway event came from."""

    WEBHOOK = "webhook", "Webhook"
    SYNC = "sync", "Synchronous Response"
    MANUAL = "manual", "Manual Confirmation"


class LedgerEntryType(models.TextChoices):
    """Kinds of ledger mutations."""

    CHARGE_SETTLED = "charge_settled", "Charge Settled"
    REFUND_SETTLED = "refund_settled", "Refund Settled"
