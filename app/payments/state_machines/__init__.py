"""
State machine enums and helpers for payment models.

This module defines the state enums used by payment models with django-fsm
and the closed vocabularies (gateways, event types) shared across the app.
"""

from payments.state_machines.states import (
    GatewayEventSource,
    GatewayEventStatus,
    GatewayEventType,
    GatewayName,
    InvoiceStatus,
    LedgerEntryType,
    PaymentStatus,
    PaymentType,
    RefundStatus,
)

__all__ = [
    "GatewayEventSource",
    "GatewayEventStatus",
    "GatewayEventType",
    "GatewayName",
    "InvoiceStatus",
    "LedgerEntryType",
    "PaymentStatus",
    "PaymentType",
    "RefundStatus",
]
