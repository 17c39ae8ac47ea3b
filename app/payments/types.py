"""
Data types shared by gateway adapters and payment services.

Types:
    SyncStatus: Outcome class of a synchronous gateway call
    ChargeRequest / ChargeResult: Input/output of GatewayAdapter.charge
    RefundRequest / RefundResult: Input/output of GatewayAdapter.refund
    GatewayEvent: Normalized gateway event (webhook or synchronous result)

Usage:
    from payments.types import ChargeRequest

    request = ChargeRequest(
        payment_id=payment.id,
        invoice_id=invoice.id,
        amount=Decimal("100.00"),
        currency="USD",
        idempotency_token="charge:inv:req-1:ab12cd34",
        payment_method="pm_card_visa",
    )
"""

from __future__ import annotations

import hashlib
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from django.utils import timezone

from payments.state_machines import GatewayEventType, GatewayName


class SyncStatus(str, Enum):
    """
    Outcome class of a synchronous gateway call.

    SUCCEEDED: Money moved; apply immediately
    PENDING: Accepted, the outcome arrives by webhook
    FAILED: Gateway reported a failure without raising
    """

    SUCCEEDED = "succeeded"
    PENDING = "pending"
    FAILED = "failed"


def hash_payload(raw: bytes | str) -> str:
    """Return the sha256 hex digest of a payload."""
    if isinstance(raw, str):
        raw = raw.encode("utf-8")
    return hashlib.sha256(raw).hexdigest()


@dataclass
class ChargeRequest:
    """
    Parameters for charging through a gateway.

    Required Attributes:
        payment_id: Payment row the charge belongs to
        invoice_id: Invoice being paid
        amount: Amount in major units (including any surcharge)
        currency: ISO 4217 currency code
        idempotency_token: Token derived from (invoice_id, client_request_id)

    Optional Attributes:
        customer_id: Customer paying
        payment_method: Gateway payment method reference (pm_xxx)
        phone_number: Mobile money phone number
        description: Statement description
        metadata: Extra metadata forwarded to the gateway
    """

    payment_id: uuid.UUID
    invoice_id: uuid.UUID
    amount: Decimal
    currency: str
    idempotency_token: str
    customer_id: uuid.UUID | None = None
    payment_method: str | None = None
    phone_number: str | None = None
    description: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Validate params after initialization."""
        if self.amount <= 0:
            raise ValueError("amount must be positive")
        if not self.idempotency_token:
            raise ValueError("idempotency_token is required")
        self.currency = self.currency.upper()


@dataclass
class ChargeResult:
    """
    Normalized result of GatewayAdapter.charge.

    Attributes:
        gateway_transaction_id: Gateway transaction id
        sync_status: SUCCEEDED, PENDING or FAILED
        gateway_payment_id: Secondary reference (capture id, order reference)
        failure_code/failure_message: Populated when sync_status is FAILED
        fee_amount: Fee reported by the gateway, when known
        redirect_url: Approval URL for wallet flows (PayPal)
        raw: Raw gateway response
    """

    gateway_transaction_id: str
    sync_status: SyncStatus
    gateway_payment_id: str | None = None
    failure_code: str | None = None
    failure_message: str | None = None
    fee_amount: Decimal | None = None
    redirect_url: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class RefundRequest:
    """
    Parameters for refunding through a gateway.

    Required Attributes:
        refund_id: RefundRecord the refund belongs to
        gateway_transaction_id: Transaction being refunded
        amount: Refund amount in major units
        currency: ISO 4217 currency code
        idempotency_token: Token derived from the refund record

    Optional Attributes:
        gateway_payment_id: Secondary reference (PayPal capture id)
        reason: Refund reason
    """

    refund_id: uuid.UUID
    gateway_transaction_id: str
    amount: Decimal
    currency: str
    idempotency_token: str
    gateway_payment_id: str | None = None
    reason: str | None = None

    def __post_init__(self) -> None:
        """Validate params after initialization."""
        if self.amount <= 0:
            raise ValueError("amount must be positive")
        if not self.gateway_transaction_id:
            raise ValueError("gateway_transaction_id is required")
        self.currency = self.currency.upper()


@dataclass
class RefundResult:
    """
    Normalized result of GatewayAdapter.refund.

    Attributes:
        gateway_refund_id: Gateway refund id (None for manual refunds)
        sync_status: SUCCEEDED, PENDING or FAILED
        failure_message: Populated when sync_status is FAILED
        raw: Raw gateway response
    """

    gateway_refund_id: str | None
    sync_status: SyncStatus
    failure_message: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class GatewayEvent:
    """
    Normalized gateway event.

    Webhooks are parsed into GatewayEvents by adapters; synchronous gateway
    responses are converted into GatewayEvents by the orchestrator and
    refund processor, so the Reconciler has a single input type.

    Attributes:
        event_id: Gateway event id (unique per gateway)
        event_type: Normalized event type
        gateway: Gateway that produced the event
        gateway_transaction_id: Transaction the event refers to
        amount/currency: Amount reported by the gateway
        payload_hash: sha256 of the raw payload
        received_at: When the event was received
        gateway_refund_id: Refund id (refund events)
        gateway_payment_id: Secondary reference (capture id, order reference)
        merchant_reference: Our reference echoed by the gateway
        failure_code/failure_message: Failure details (failure events)
        fee_amount: Authoritative fee (fee.updated)
        requires_capture: Buyer approved an order that must still be captured
        raw: Decoded payload
    """

    event_id: str
    event_type: GatewayEventType
    gateway: GatewayName
    gateway_transaction_id: str | None
    amount: Decimal | None
    currency: str
    payload_hash: str
    received_at: datetime = field(default_factory=timezone.now)
    gateway_refund_id: str | None = None
    gateway_payment_id: str | None = None
    merchant_reference: str | None = None
    failure_code: str | None = None
    failure_message: str | None = None
    fee_amount: Decimal | None = None
    requires_capture: bool = False
    raw: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def dedupe_key(self) -> str:
        return f"{self.gateway}/{self.event_id}"
