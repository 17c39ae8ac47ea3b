"""
DRF serializers for the payments API.

This module provides serializers for:
- Charge requests and payment responses
- Refund requests and refund record responses

Related files:
    - views.py: Payment API views
    - services/: PaymentOrchestrator, RefundProcessor

Usage:
    serializer = ChargeRequestSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
"""

from __future__ import annotations

from drf_spectacular.utils import OpenApiExample, extend_schema_serializer
from rest_framework import serializers

from payments.models import Payment, RefundRecord
from payments.state_machines import GatewayName


# =============================================================================
# Request Serializers
# =============================================================================


class ChargeRequestSerializer(serializers.Serializer):
    """
    Input for POST /api/v1/payments/.

    Amount precision is validated against the currency by the orchestrator
    (USD 2 decimals, TZS/JPY 0).
    """

    invoice_id = serializers.UUIDField(help_text="Invoice being paid")
    amount = serializers.DecimalField(
        max_digits=14,
        decimal_places=4,
        help_text="Amount in major units",
    )
    currency = serializers.CharField(
        min_length=3,
        max_length=3,
        help_text="ISO 4217 currency code; must match the invoice",
    )
    gateway = serializers.ChoiceField(
        choices=GatewayName.choices,
        required=False,
        help_text="Gateway to charge through (default gateway when omitted)",
    )
    client_request_id = serializers.CharField(
        max_length=255,
        help_text="Idempotency key; retries with the same value never charge twice",
    )
    payment_method = serializers.CharField(
        max_length=255,
        required=False,
        help_text="Gateway payment method reference (cards)",
    )
    phone_number = serializers.CharField(
        max_length=20,
        required=False,
        help_text="Mobile money phone number",
    )
    description = serializers.CharField(
        max_length=255,
        required=False,
        help_text="Statement description",
    )

    def validate_currency(self, value: str) -> str:
        return value.upper()


class RefundRequestSerializer(serializers.Serializer):
    """Input for POST /api/v1/payments/{id}/refunds/."""

    amount = serializers.DecimalField(
        max_digits=14,
        decimal_places=4,
        required=False,
        help_text="Refund amount (remaining refundable amount when omitted)",
    )
    reason = serializers.CharField(
        required=False,
        allow_blank=True,
        default="",
        help_text="Reason for the refund",
    )


# =============================================================================
# Response Serializers
# =============================================================================


@extend_schema_serializer(
    examples=[
        OpenApiExample(
            "Completed card payment",
            value={
                "payment_id": "a1b2c3d4-e5f6-7890-abcd-ef1234567890",
                "payment_number": "PAY-2024-000042",
                "invoice_id": "b2c3d4e5-f6a7-8901-bcde-f12345678901",
                "invoice_number": "INV-2024-000017",
                "status": "completed",
                "payment_type": "full",
                "method": "card",
                "amount": "100.00",
                "fee_amount": "3.20",
                "surcharge_amount": "0.00",
                "net_amount": "96.80",
                "refunded_amount": "0.00",
                "currency": "USD",
                "gateway": "stripe",
                "gateway_transaction_id": "pi_3Nx",
                "failure_code": None,
                "failure_reason": None,
                "submitted_at": "2024-01-15T10:30:00Z",
                "processed_at": "2024-01-15T10:30:02Z",
                "failed_at": None,
                "refunded_at": None,
                "created_at": "2024-01-15T10:30:00Z",
            },
            response_only=True,
        ),
    ]
)
class PaymentSerializer(serializers.ModelSerializer):
    """Read-only representation of a Payment."""

    payment_id = serializers.UUIDField(source="id", read_only=True)
    invoice_id = serializers.UUIDField(read_only=True)
    invoice_number = serializers.CharField(source="invoice.invoice_number", read_only=True)

    class Meta:
        """Serializer metadata."""

        model = Payment
        fields = [
            "payment_id",
            "payment_number",
            "invoice_id",
            "invoice_number",
            "status",
            "payment_type",
            "method",
            "amount",
            "fee_amount",
            "surcharge_amount",
            "net_amount",
            "refunded_amount",
            "currency",
            "gateway",
            "gateway_transaction_id",
            "failure_code",
            "failure_reason",
            "submitted_at",
            "processed_at",
            "failed_at",
            "refunded_at",
            "created_at",
        ]
        read_only_fields = fields


class ChargeResponseSerializer(PaymentSerializer):
    """Payment plus the charge-specific fields returned by POST /payments/."""

    redirect_url = serializers.SerializerMethodField(
        help_text="Approval URL for wallet payments (PayPal)"
    )
    replayed = serializers.SerializerMethodField(
        help_text="True when answered from an earlier request with the same client_request_id"
    )

    class Meta(PaymentSerializer.Meta):
        fields = PaymentSerializer.Meta.fields + ["redirect_url", "replayed"]
        read_only_fields = fields

    def get_redirect_url(self, obj) -> str | None:
        return self.context.get("redirect_url")

    def get_replayed(self, obj) -> bool:
        return bool(self.context.get("replayed", False))


class RefundRecordSerializer(serializers.ModelSerializer):
    """Read-only representation of a RefundRecord."""

    refund_id = serializers.UUIDField(source="id", read_only=True)
    payment_id = serializers.UUIDField(source="refund_parent_id", read_only=True)

    class Meta:
        """Serializer metadata."""

        model = RefundRecord
        fields = [
            "refund_id",
            "payment_id",
            "amount",
            "currency",
            "reason",
            "status",
            "gateway_refund_id",
            "failure_reason",
            "completed_at",
            "failed_at",
            "created_at",
        ]
        read_only_fields = fields
