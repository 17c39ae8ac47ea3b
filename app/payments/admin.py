"""
Payment admin configuration.

Registers the payments core models with the Django admin. Money-moving
state is read-only here: status changes go through the services, which
the admin actions call (replay a parked gateway event, resubmit or
manually confirm a refund).
"""

from django.contrib import admin, messages

from core.exceptions import BaseApplicationError
from payments.ledger.admin import LedgerEntryAdmin
from payments.models import (
    GatewayEventRecord,
    IdempotencyRecord,
    Invoice,
    Payment,
    RefundRecord,
)
from payments.services import RefundProcessor
from payments.state_machines import GatewayEventStatus, RefundStatus
from payments.webhooks import WebhookIngestor

__all__ = [
    "GatewayEventRecordAdmin",
    "IdempotencyRecordAdmin",
    "InvoiceAdmin",
    "LedgerEntryAdmin",
    "PaymentAdmin",
    "RefundRecordAdmin",
]


@admin.register(Invoice)
class InvoiceAdmin(admin.ModelAdmin):
    """
    Admin configuration for Invoice.

    Balances are owned by the ledger and shown read-only.
    """

    list_display = [
        "invoice_number",
        "customer_id",
        "status",
        "total_amount",
        "paid_amount",
        "balance_due",
        "currency",
        "due_date",
        "created_at",
    ]
    list_filter = ["status", "currency", "created_at"]
    search_fields = ["id", "invoice_number", "customer_id"]
    readonly_fields = [
        "id",
        "invoice_number",
        "paid_amount",
        "balance_due",
        "paid_date",
        "created_at",
        "updated_at",
        "version",
    ]
    date_hierarchy = "created_at"
    ordering = ["-created_at"]

    fieldsets = (
        (
            None,
            {
                "fields": ("id", "invoice_number", "customer_id", "status"),
            },
        ),
        (
            "Amounts",
            {
                "fields": (
                    "currency",
                    "exchange_rate",
                    "subtotal",
                    "tax_amount",
                    "total_amount",
                    "paid_amount",
                    "balance_due",
                ),
            },
        ),
        (
            "Dates",
            {
                "fields": ("due_date", "paid_date"),
            },
        ),
        (
            "Metadata",
            {
                "fields": ("metadata", "version"),
                "classes": ("collapse",),
            },
        ),
        (
            "Timestamps",
            {
                "fields": ("created_at", "updated_at"),
            },
        ),
    )

    def has_delete_permission(self, request, obj=None) -> bool:
        """Invoices are cancelled, never deleted."""
        return False


class RefundRecordInline(admin.TabularInline):
    """Refunds issued against a payment."""

    model = RefundRecord
    fk_name = "refund_parent"
    fields = ["id", "amount", "status", "gateway_refund_id", "created_at"]
    readonly_fields = fields
    extra = 0
    can_delete = False
    show_change_link = True

    def has_add_permission(self, request, obj=None) -> bool:
        return False


@admin.register(Payment)
class PaymentAdmin(admin.ModelAdmin):
    """
    Admin configuration for Payment.

    Provides visibility into payments and their states.
    State changes should be made through the service layer, not admin.
    """

    list_display = [
        "payment_number",
        "invoice",
        "payment_type",
        "amount_display",
        "status",
        "gateway",
        "gateway_transaction_id",
        "created_at",
    ]
    list_filter = ["status", "payment_type", "gateway", "currency", "created_at"]
    search_fields = [
        "id",
        "payment_number",
        "client_request_id",
        "gateway_transaction_id",
        "gateway_payment_id",
        "invoice__invoice_number",
    ]
    readonly_fields = [
        "id",
        "payment_number",
        "invoice",
        "refund_parent",
        "customer_id",
        "client_request_id",
        "payment_type",
        "method",
        "status",
        "amount",
        "fee_amount",
        "surcharge_amount",
        "net_amount",
        "refunded_amount",
        "currency",
        "exchange_rate",
        "gateway",
        "gateway_transaction_id",
        "gateway_payment_id",
        "gateway_response",
        "submitted_at",
        "processed_at",
        "failed_at",
        "refunded_at",
        "failure_code",
        "failure_reason",
        "created_at",
        "updated_at",
        "version",
    ]
    date_hierarchy = "created_at"
    ordering = ["-created_at"]
    inlines = [RefundRecordInline]

    fieldsets = (
        (
            None,
            {
                "fields": (
                    "id",
                    "payment_number",
                    "invoice",
                    "customer_id",
                    "status",
                    "payment_type",
                    "refund_parent",
                ),
            },
        ),
        (
            "Amount",
            {
                "fields": (
                    "amount",
                    "fee_amount",
                    "surcharge_amount",
                    "net_amount",
                    "refunded_amount",
                    "currency",
                    "exchange_rate",
                ),
            },
        ),
        (
            "Gateway",
            {
                "fields": (
                    "gateway",
                    "method",
                    "client_request_id",
                    "gateway_transaction_id",
                    "gateway_payment_id",
                    "gateway_response",
                ),
            },
        ),
        (
            "State Timestamps",
            {
                "fields": (
                    "submitted_at",
                    "processed_at",
                    "failed_at",
                    "refunded_at",
                ),
                "classes": ("collapse",),
            },
        ),
        (
            "Failure Info",
            {
                "fields": ("failure_code", "failure_reason"),
                "classes": ("collapse",),
            },
        ),
        (
            "Metadata",
            {
                "fields": ("metadata", "version"),
                "classes": ("collapse",),
            },
        ),
        (
            "Timestamps",
            {
                "fields": ("created_at", "updated_at"),
            },
        ),
    )

    def amount_display(self, obj: Payment) -> str:
        """Display the amount with its currency."""
        return f"{obj.amount} {obj.currency}"

    amount_display.short_description = "Amount"

    def has_add_permission(self, request) -> bool:
        """Payments are created by the orchestrator only."""
        return False

    def has_delete_permission(self, request, obj=None) -> bool:
        """Disable delete for payments (audit trail)."""
        return False


@admin.register(RefundRecord)
class RefundRecordAdmin(admin.ModelAdmin):
    """
    Admin configuration for RefundRecord.

    Actions:
        retry_refunds: Resubmit refunds left REQUESTED by a gateway outage
        confirm_manual_refunds: Complete refunds processed in a gateway
            dashboard (ClickPesa)
    """

    list_display = [
        "id",
        "refund_parent",
        "amount_display",
        "status",
        "gateway_refund_id",
        "requested_by",
        "created_at",
    ]
    list_filter = ["status", "currency", "created_at"]
    search_fields = [
        "id",
        "gateway_refund_id",
        "refund_parent__payment_number",
        "refund_parent__gateway_transaction_id",
    ]
    readonly_fields = [
        "id",
        "refund_parent",
        "reversal_payment",
        "requested_by",
        "amount",
        "currency",
        "reason",
        "status",
        "gateway_refund_id",
        "completed_at",
        "failed_at",
        "failure_reason",
        "created_at",
        "updated_at",
        "version",
    ]
    date_hierarchy = "created_at"
    ordering = ["-created_at"]
    actions = ["retry_refunds", "confirm_manual_refunds"]

    fieldsets = (
        (
            None,
            {
                "fields": ("id", "refund_parent", "reversal_payment", "status"),
            },
        ),
        (
            "Refund Details",
            {
                "fields": ("amount", "currency", "reason", "requested_by", "gateway_refund_id"),
            },
        ),
        (
            "State Timestamps",
            {
                "fields": ("completed_at", "failed_at", "failure_reason"),
                "classes": ("collapse",),
            },
        ),
        (
            "Metadata",
            {
                "fields": ("metadata", "version"),
                "classes": ("collapse",),
            },
        ),
        (
            "Timestamps",
            {
                "fields": ("created_at", "updated_at"),
            },
        ),
    )

    def amount_display(self, obj: RefundRecord) -> str:
        """Display the amount with its currency."""
        return f"{obj.amount} {obj.currency}"

    amount_display.short_description = "Amount"

    @admin.action(description="Resubmit selected requested refunds to the gateway")
    def retry_refunds(self, request, queryset):
        """Resubmit refunds still in REQUESTED with their original token."""
        processor = RefundProcessor()
        submitted = 0
        for refund in queryset.filter(status=RefundStatus.REQUESTED):
            try:
                outcome = processor.retry(refund.id)
            except BaseApplicationError as e:
                self.message_user(request, f"Refund {refund.id}: {e.message}", messages.ERROR)
                continue
            if outcome.error is not None:
                self.message_user(
                    request,
                    f"Refund {refund.id}: {outcome.error.message}",
                    messages.WARNING,
                )
                continue
            submitted += 1
        self.message_user(request, f"Resubmitted {submitted} refunds.")

    @admin.action(description="Confirm selected refunds as processed manually")
    def confirm_manual_refunds(self, request, queryset):
        """Complete refunds an operator already paid out in the gateway dashboard."""
        processor = RefundProcessor()
        confirmed = 0
        for refund in queryset:
            result = processor.confirm_manual_refund(refund.id)
            if result:
                confirmed += 1
            else:
                self.message_user(
                    request,
                    f"Refund {refund.id}: {result.error} ({result.error_code})",
                    messages.ERROR,
                )
        self.message_user(request, f"Confirmed {confirmed} refunds.")

    def has_add_permission(self, request) -> bool:
        """Refunds are requested through the API."""
        return False

    def has_delete_permission(self, request, obj=None) -> bool:
        """Disable delete for refunds (audit trail)."""
        return False


@admin.register(GatewayEventRecord)
class GatewayEventRecordAdmin(admin.ModelAdmin):
    """
    Admin configuration for GatewayEventRecord.

    Archived events are immutable. Parked events are reviewed here and
    re-applied with the replay action once the cause is fixed.
    """

    list_display = [
        "gateway_event_id",
        "gateway",
        "event_type",
        "source",
        "status",
        "attempt_count",
        "payment",
        "received_at",
    ]
    list_filter = ["gateway", "event_type", "source", "status", "received_at"]
    search_fields = [
        "id",
        "gateway_event_id",
        "gateway_transaction_id",
        "gateway_refund_id",
        "merchant_reference",
    ]
    readonly_fields = [field.name for field in GatewayEventRecord._meta.fields]
    date_hierarchy = "received_at"
    ordering = ["-created_at"]
    actions = ["replay_events"]

    fieldsets = (
        (
            None,
            {
                "fields": ("id", "gateway", "gateway_event_id", "event_type", "source"),
            },
        ),
        (
            "Normalized Event",
            {
                "fields": (
                    "gateway_transaction_id",
                    "gateway_refund_id",
                    "gateway_payment_id",
                    "merchant_reference",
                    "amount",
                    "currency",
                    "fee_amount",
                    "failure_code",
                    "failure_message",
                    "received_at",
                ),
            },
        ),
        (
            "Processing",
            {
                "fields": (
                    "status",
                    "attempt_count",
                    "processed_at",
                    "park_reason",
                    "error_message",
                    "payment",
                ),
            },
        ),
        (
            "Payload",
            {
                "fields": ("payload", "raw_body", "payload_hash"),
                "classes": ("collapse",),
            },
        ),
        (
            "Timestamps",
            {
                "fields": ("created_at", "updated_at"),
            },
        ),
    )

    @admin.action(description="Replay selected events")
    def replay_events(self, request, queryset):
        """Re-apply parked or failed events through the reconciler."""
        ingestor = WebhookIngestor()
        applied = 0
        for record in queryset.exclude(status=GatewayEventStatus.APPLIED):
            result = ingestor.replay(record.id)
            if result:
                applied += 1
            else:
                self.message_user(
                    request,
                    f"{record.gateway}/{record.gateway_event_id}: "
                    f"{result.error} ({result.error_code})",
                    messages.ERROR,
                )
        self.message_user(request, f"Replayed {applied} events.")

    def has_add_permission(self, request) -> bool:
        """Disable adding events through admin."""
        return False

    def has_delete_permission(self, request, obj=None) -> bool:
        """Disable delete for gateway events (audit trail)."""
        return False


@admin.register(IdempotencyRecord)
class IdempotencyRecordAdmin(admin.ModelAdmin):
    """Read-only view of deduplication keys."""

    list_display = ["key", "scope", "expires_at", "created_at"]
    list_filter = ["scope"]
    search_fields = ["key"]
    readonly_fields = ["id", "key", "scope", "outcome", "request_fingerprint", "expires_at", "created_at", "updated_at"]
    ordering = ["-created_at"]

    def has_add_permission(self, request) -> bool:
        return False

    def has_change_permission(self, request, obj=None) -> bool:
        return False
