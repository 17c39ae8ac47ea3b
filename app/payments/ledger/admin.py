"""
Django admin configuration for the invoice ledger journal.

Ledger entries are append-only: the admin lists and shows them but
offers no add, change or delete.
"""

from django.contrib import admin

from .models import LedgerEntry


@admin.register(LedgerEntry)
class LedgerEntryAdmin(admin.ModelAdmin):
    """
    Admin configuration for LedgerEntry.

    Entries are immutable once created - this admin is read-only.
    """

    list_display = [
        "created_at",
        "invoice",
        "entry_type",
        "signed_amount_display",
        "currency",
        "paid_amount_after",
        "balance_due_after",
        "idempotency_key",
    ]
    list_filter = ["entry_type", "currency", "created_at"]
    search_fields = [
        "id",
        "idempotency_key",
        "invoice__invoice_number",
        "payment__payment_number",
    ]
    readonly_fields = [
        "id",
        "created_at",
        "invoice",
        "entry_type",
        "amount",
        "currency",
        "paid_amount_after",
        "balance_due_after",
        "payment",
        "refund_record",
        "idempotency_key",
    ]
    date_hierarchy = "created_at"
    ordering = ["-created_at"]

    fieldsets = (
        (
            None,
            {
                "fields": ("id", "invoice", "entry_type", "idempotency_key"),
            },
        ),
        (
            "Amount",
            {
                "fields": ("amount", "currency", "paid_amount_after", "balance_due_after"),
            },
        ),
        (
            "Source",
            {
                "fields": ("payment", "refund_record"),
            },
        ),
        (
            "Timestamps",
            {
                "fields": ("created_at",),
            },
        ),
    )

    def signed_amount_display(self, obj: LedgerEntry) -> str:
        """Show refunds as negative amounts."""
        return f"{obj.signed_amount:+}"

    signed_amount_display.short_description = "Amount"

    def has_add_permission(self, request) -> bool:
        """Entries are written by the ledger only."""
        return False

    def has_change_permission(self, request, obj=None) -> bool:
        """Entries are immutable."""
        return False

    def has_delete_permission(self, request, obj=None) -> bool:
        """Entries are immutable."""
        return False
