import decimal
import uuid

import django.db.models.deletion
import django.utils.timezone
import django_fsm
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Invoice",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, help_text="Unique identifier for this record", primary_key=True, serialize=False)),
                ("metadata", models.JSONField(blank=True, default=dict, help_text="Arbitrary JSON metadata for extensibility")),
                ("version", models.PositiveIntegerField(default=1, help_text="Row version - incremented on each save")),
                ("created_at", models.DateTimeField(auto_now_add=True, db_index=True, help_text="Timestamp when this record was created")),
                ("updated_at", models.DateTimeField(auto_now=True, help_text="Timestamp when this record was last modified")),
                ("invoice_number", models.CharField(blank=True, help_text="Sequential invoice number (INV-YYYY-NNNNNN)", max_length=32, unique=True)),
                ("customer_id", models.UUIDField(db_index=True, help_text="Customer the invoice is billed to")),
                ("currency", models.CharField(default="USD", help_text="ISO 4217 currency code (uppercase)", max_length=3)),
                ("exchange_rate", models.DecimalField(decimal_places=8, default=decimal.Decimal("1"), help_text="Exchange rate to the reporting currency (stored as given)", max_digits=18)),
                ("subtotal", models.DecimalField(decimal_places=2, default=decimal.Decimal("0"), help_text="Amount before tax", max_digits=14)),
                ("tax_amount", models.DecimalField(decimal_places=2, default=decimal.Decimal("0"), help_text="Tax amount (stored as given)", max_digits=14)),
                ("total_amount", models.DecimalField(decimal_places=2, help_text="Total amount owed", max_digits=14)),
                ("paid_amount", models.DecimalField(decimal_places=2, default=decimal.Decimal("0"), help_text="Settled charges minus settled refunds", max_digits=14)),
                ("balance_due", models.DecimalField(decimal_places=2, default=decimal.Decimal("0"), help_text="total_amount - paid_amount (never negative)", max_digits=14)),
                ("status", models.CharField(choices=[("draft", "Draft"), ("sent", "Sent"), ("viewed", "Viewed"), ("partial", "Partially Paid"), ("paid", "Paid"), ("overdue", "Overdue"), ("cancelled", "Cancelled")], db_index=True, default="draft", help_text="Invoice status", max_length=20)),
                ("due_date", models.DateField(blank=True, help_text="Payment due date", null=True)),
                ("paid_date", models.DateTimeField(blank=True, help_text="When the balance first reached zero", null=True)),
            ],
            options={
                "verbose_name": "Invoice",
                "verbose_name_plural": "Invoices",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["customer_id", "status"], name="invoice_customer_status_idx"),
                    models.Index(fields=["status", "due_date"], name="invoice_status_due_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(condition=models.Q(("total_amount__gte", 0)), name="invoice_total_non_negative"),
                    models.CheckConstraint(condition=models.Q(("paid_amount__gte", 0)), name="invoice_paid_non_negative"),
                    models.CheckConstraint(condition=models.Q(("balance_due__gte", 0)), name="invoice_balance_non_negative"),
                    models.CheckConstraint(
                        condition=models.Q(balance_due=models.F("total_amount") - models.F("paid_amount")),
                        name="invoice_balance_matches_paid",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="Payment",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, help_text="Unique identifier for this record", primary_key=True, serialize=False)),
                ("metadata", models.JSONField(blank=True, default=dict, help_text="Arbitrary JSON metadata for extensibility")),
                ("version", models.PositiveIntegerField(default=1, help_text="Row version - incremented on each save")),
                ("created_at", models.DateTimeField(auto_now_add=True, db_index=True, help_text="Timestamp when this record was created")),
                ("updated_at", models.DateTimeField(auto_now=True, help_text="Timestamp when this record was last modified")),
                ("customer_id", models.UUIDField(db_index=True, help_text="Customer making the payment")),
                ("payment_number", models.CharField(blank=True, help_text="Sequential payment number (PAY-YYYY-NNNNNN)", max_length=32, unique=True)),
                ("client_request_id", models.CharField(blank=True, help_text="Caller-supplied idempotency key of the charge request", max_length=255, null=True)),
                ("payment_type", models.CharField(choices=[("full", "Full"), ("partial", "Partial"), ("refund", "Refund")], default="full", help_text="Full/partial charge or refund reversal", max_length=20)),
                ("method", models.CharField(blank=True, default="", help_text="Payment method (card, paypal, mobile_money)", max_length=50)),
                ("currency", models.CharField(help_text="ISO 4217 currency code (uppercase)", max_length=3)),
                ("exchange_rate", models.DecimalField(decimal_places=8, default=decimal.Decimal("1"), help_text="Exchange rate copied from the invoice", max_digits=18)),
                ("amount", models.DecimalField(decimal_places=2, help_text="Gross amount applied to the invoice", max_digits=14)),
                ("fee_amount", models.DecimalField(decimal_places=2, default=decimal.Decimal("0"), help_text="Gateway fee", max_digits=14)),
                ("surcharge_amount", models.DecimalField(decimal_places=2, default=decimal.Decimal("0"), help_text="Gateway fee charged to the customer on top of amount", max_digits=14)),
                ("net_amount", models.DecimalField(decimal_places=2, default=decimal.Decimal("0"), help_text="amount - fee_amount", max_digits=14)),
                ("refunded_amount", models.DecimalField(decimal_places=2, default=decimal.Decimal("0"), help_text="Sum of completed refunds", max_digits=14)),
                ("status", django_fsm.FSMField(choices=[("pending", "Pending"), ("processing", "Processing"), ("completed", "Completed"), ("failed", "Failed"), ("refunded", "Refunded"), ("partially_refunded", "Partially Refunded")], db_index=True, default="pending", help_text="Current payment status (managed by FSM)", max_length=50, protected=True)),
                ("gateway", models.CharField(choices=[("stripe", "Stripe"), ("paypal", "PayPal"), ("clickpesa", "ClickPesa")], help_text="Gateway processing this payment", max_length=20)),
                ("gateway_transaction_id", models.CharField(blank=True, db_index=True, help_text="Gateway transaction id (pi_xxx, PayPal order id, ClickPesa id)", max_length=255, null=True)),
                ("gateway_payment_id", models.CharField(blank=True, db_index=True, help_text="Secondary gateway reference (capture id, order reference)", max_length=255, null=True)),
                ("gateway_response", models.JSONField(blank=True, default=dict, help_text="Last raw gateway response for this payment")),
                ("submitted_at", models.DateTimeField(blank=True, help_text="When the charge was handed to the gateway", null=True)),
                ("processed_at", models.DateTimeField(blank=True, help_text="When the payment completed", null=True)),
                ("failed_at", models.DateTimeField(blank=True, help_text="When the payment failed", null=True)),
                ("refunded_at", models.DateTimeField(blank=True, help_text="When the last refund completed", null=True)),
                ("failure_code", models.CharField(blank=True, help_text="Normalized failure code (card_declined, insufficient_funds, ...)", max_length=50, null=True)),
                ("failure_reason", models.TextField(blank=True, help_text="Human-readable failure reason", null=True)),
                ("invoice", models.ForeignKey(help_text="Invoice this payment is applied to", on_delete=django.db.models.deletion.PROTECT, related_name="payments", to="payments.invoice")),
                ("refund_parent", models.ForeignKey(blank=True, help_text="Charge reversed by this refund row (refund rows only)", null=True, on_delete=django.db.models.deletion.PROTECT, related_name="reversals", to="payments.payment")),
            ],
            options={
                "verbose_name": "Payment",
                "verbose_name_plural": "Payments",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["invoice", "status"], name="payment_invoice_status_idx"),
                    models.Index(fields=["customer_id", "created_at"], name="payment_customer_created_idx"),
                    models.Index(fields=["gateway", "status"], name="payment_gateway_status_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(condition=models.Q(("amount__gt", 0)), name="payment_amount_positive"),
                    models.CheckConstraint(condition=models.Q(("fee_amount__gte", 0)), name="payment_fee_non_negative"),
                    models.CheckConstraint(
                        condition=models.Q(("refunded_amount__gte", 0), ("refunded_amount__lte", models.F("amount"))),
                        name="payment_refunded_within_amount",
                    ),
                    models.UniqueConstraint(
                        condition=models.Q(("gateway_transaction_id__isnull", False)),
                        fields=("gateway", "gateway_transaction_id"),
                        name="unique_gateway_transaction",
                    ),
                    models.UniqueConstraint(
                        condition=models.Q(("client_request_id__isnull", False)),
                        fields=("client_request_id",),
                        name="unique_payment_client_request",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="RefundRecord",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, help_text="Unique identifier for this record", primary_key=True, serialize=False)),
                ("metadata", models.JSONField(blank=True, default=dict, help_text="Arbitrary JSON metadata for extensibility")),
                ("version", models.PositiveIntegerField(default=1, help_text="Row version - incremented on each save")),
                ("created_at", models.DateTimeField(auto_now_add=True, db_index=True, help_text="Timestamp when this record was created")),
                ("updated_at", models.DateTimeField(auto_now=True, help_text="Timestamp when this record was last modified")),
                ("amount", models.DecimalField(decimal_places=2, help_text="Refund amount", max_digits=14)),
                ("currency", models.CharField(help_text="ISO 4217 currency code (uppercase)", max_length=3)),
                ("reason", models.TextField(blank=True, default="", help_text="Reason for the refund")),
                ("status", django_fsm.FSMField(choices=[("requested", "Requested"), ("completed", "Completed"), ("failed", "Failed")], db_index=True, default="requested", help_text="Current refund status (managed by FSM)", max_length=50, protected=True)),
                ("gateway_refund_id", models.CharField(blank=True, help_text="Gateway refund id", max_length=255, null=True, unique=True)),
                ("completed_at", models.DateTimeField(blank=True, help_text="When the gateway confirmed the refund", null=True)),
                ("failed_at", models.DateTimeField(blank=True, help_text="When the refund failed", null=True)),
                ("failure_reason", models.TextField(blank=True, help_text="Failure details if the refund failed", null=True)),
                ("refund_parent", models.ForeignKey(help_text="Payment being refunded", on_delete=django.db.models.deletion.PROTECT, related_name="refund_records", to="payments.payment")),
                ("reversal_payment", models.OneToOneField(blank=True, help_text="Refund-type Payment row created when the refund completes", null=True, on_delete=django.db.models.deletion.PROTECT, related_name="reversal_of", to="payments.payment")),
                ("requested_by", models.ForeignKey(blank=True, help_text="User who requested the refund", null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="refund_requests", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "verbose_name": "Refund",
                "verbose_name_plural": "Refunds",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["refund_parent", "status"], name="refund_parent_status_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(condition=models.Q(("amount__gt", 0)), name="refund_amount_positive"),
                ],
            },
        ),
        migrations.CreateModel(
            name="GatewayEventRecord",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, help_text="Unique identifier for this record", primary_key=True, serialize=False)),
                ("created_at", models.DateTimeField(auto_now_add=True, db_index=True, help_text="Timestamp when this record was created")),
                ("updated_at", models.DateTimeField(auto_now=True, help_text="Timestamp when this record was last modified")),
                ("gateway", models.CharField(choices=[("stripe", "Stripe"), ("paypal", "PayPal"), ("clickpesa", "ClickPesa")], help_text="Gateway that produced the event", max_length=20)),
                ("gateway_event_id", models.CharField(help_text="Gateway event id (unique per gateway)", max_length=255)),
                ("event_type", models.CharField(choices=[("charge.processing", "Charge Processing"), ("charge.succeeded", "Charge Succeeded"), ("charge.failed", "Charge Failed"), ("refund.succeeded", "Refund Succeeded"), ("refund.failed", "Refund Failed"), ("fee.updated", "Fee Updated")], db_index=True, help_text="Normalized event type", max_length=50)),
                ("source", models.CharField(choices=[("webhook", "Webhook"), ("sync", "Synchronous Response"), ("manual", "Manual Confirmation")], default="webhook", help_text="Where the event came from", max_length=20)),
                ("gateway_transaction_id", models.CharField(blank=True, db_index=True, help_text="Gateway transaction id the event refers to", max_length=255, null=True)),
                ("gateway_refund_id", models.CharField(blank=True, help_text="Gateway refund id (refund events)", max_length=255, null=True)),
                ("gateway_payment_id", models.CharField(blank=True, help_text="Secondary gateway reference (capture id, order reference)", max_length=255, null=True)),
                ("merchant_reference", models.CharField(blank=True, help_text="Merchant reference echoed by the gateway", max_length=255, null=True)),
                ("amount", models.DecimalField(blank=True, decimal_places=2, help_text="Amount reported by the gateway", max_digits=14, null=True)),
                ("currency", models.CharField(blank=True, default="", help_text="ISO 4217 currency code", max_length=3)),
                ("fee_amount", models.DecimalField(blank=True, decimal_places=2, help_text="Authoritative gateway fee (fee.updated)", max_digits=14, null=True)),
                ("failure_code", models.CharField(blank=True, help_text="Normalized failure code (failure events)", max_length=50, null=True)),
                ("failure_message", models.TextField(blank=True, help_text="Gateway failure message (failure events)", null=True)),
                ("received_at", models.DateTimeField(default=django.utils.timezone.now, help_text="When the event was received")),
                ("payload", models.JSONField(blank=True, default=dict, help_text="Decoded payload")),
                ("raw_body", models.TextField(blank=True, default="", help_text="Raw request body (webhooks only)")),
                ("payload_hash", models.CharField(help_text="sha256 of the raw body", max_length=64)),
                ("status", models.CharField(choices=[("received", "Received"), ("processing", "Processing"), ("applied", "Applied"), ("parked", "Parked"), ("failed", "Failed")], db_index=True, default="received", help_text="Current processing status", max_length=20)),
                ("attempt_count", models.PositiveSmallIntegerField(default=0, help_text="Number of processing attempts")),
                ("processed_at", models.DateTimeField(blank=True, help_text="When the event was applied or parked", null=True)),
                ("park_reason", models.TextField(blank=True, help_text="Why the event needs manual review", null=True)),
                ("error_message", models.TextField(blank=True, help_text="Last processing error", null=True)),
                ("payment", models.ForeignKey(blank=True, help_text="Payment the event resolved to", null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="gateway_events", to="payments.payment")),
            ],
            options={
                "verbose_name": "Gateway Event",
                "verbose_name_plural": "Gateway Events",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["status", "created_at"], name="gw_event_status_created_idx"),
                    models.Index(fields=["gateway", "gateway_transaction_id"], name="gw_event_gateway_txn_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(fields=("gateway", "gateway_event_id"), name="unique_gateway_event"),
                ],
            },
        ),
        migrations.CreateModel(
            name="IdempotencyRecord",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, help_text="Unique identifier for this record", primary_key=True, serialize=False)),
                ("created_at", models.DateTimeField(auto_now_add=True, db_index=True, help_text="Timestamp when this record was created")),
                ("updated_at", models.DateTimeField(auto_now=True, help_text="Timestamp when this record was last modified")),
                ("key", models.CharField(help_text="Deduplication key", max_length=255, unique=True)),
                ("scope", models.CharField(db_index=True, help_text="Key family (webhook, charge)", max_length=20)),
                ("outcome", models.JSONField(blank=True, default=dict, help_text="Outcome produced the first time the key was seen")),
                ("request_fingerprint", models.CharField(blank=True, default="", help_text="sha256 of the originating request", max_length=64)),
                ("expires_at", models.DateTimeField(db_index=True, help_text="When the record may be purged")),
            ],
            options={
                "verbose_name": "Idempotency Record",
                "verbose_name_plural": "Idempotency Records",
                "ordering": ["-created_at"],
            },
        ),
        migrations.CreateModel(
            name="LedgerEntry",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, help_text="Unique identifier for this record", primary_key=True, serialize=False)),
                ("created_at", models.DateTimeField(auto_now_add=True, db_index=True, help_text="Timestamp when this entry was recorded")),
                ("entry_type", models.CharField(choices=[("charge_settled", "Charge Settled"), ("refund_settled", "Refund Settled")], help_text="Category of this entry", max_length=30)),
                ("amount", models.DecimalField(decimal_places=2, help_text="Amount of the mutation (always positive)", max_digits=14)),
                ("currency", models.CharField(help_text="ISO 4217 currency code", max_length=3)),
                ("paid_amount_after", models.DecimalField(decimal_places=2, help_text="Invoice paid_amount after this entry", max_digits=14)),
                ("balance_due_after", models.DecimalField(decimal_places=2, help_text="Invoice balance_due after this entry", max_digits=14)),
                ("idempotency_key", models.CharField(help_text="Unique key to prevent duplicate entries", max_length=255, unique=True)),
                ("invoice", models.ForeignKey(help_text="Invoice whose balance changed", on_delete=django.db.models.deletion.PROTECT, related_name="ledger_entries", to="payments.invoice")),
                ("payment", models.ForeignKey(help_text="Charge payment this entry belongs to", on_delete=django.db.models.deletion.PROTECT, related_name="ledger_entries", to="payments.payment")),
                ("refund_record", models.ForeignKey(blank=True, help_text="Refund this entry belongs to", null=True, on_delete=django.db.models.deletion.PROTECT, related_name="ledger_entries", to="payments.refundrecord")),
            ],
            options={
                "verbose_name": "Ledger Entry",
                "verbose_name_plural": "Ledger Entries",
                "ordering": ["created_at"],
                "indexes": [
                    models.Index(fields=["invoice", "created_at"], name="ledger_invoice_created_idx"),
                    models.Index(fields=["entry_type"], name="ledger_entry_type_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(condition=models.Q(("amount__gt", 0)), name="ledger_entry_amount_positive"),
                    models.CheckConstraint(condition=models.Q(("balance_due_after__gte", 0)), name="ledger_entry_balance_non_negative"),
                ],
            },
        ),
    ]
