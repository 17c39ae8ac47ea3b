"""
Payment domain models.

This module contains all payment-related models:
- Invoice: Amount owed by a customer (balance owned by the ledger)
- Payment: One attempt to collect money against an invoice
- RefundRecord: Money returned from a completed payment
- GatewayEventRecord: Archive of normalized gateway events
- IdempotencyRecord: Durable deduplication key -> outcome cache
- LedgerEntry: Append-only journal of invoice balance mutations
"""

from payments.ledger.models import LedgerEntry
from payments.models.gateway_event import GatewayEventRecord
from payments.models.idempotency import IdempotencyRecord
from payments.models.invoice import Invoice
from payments.models.payment import Payment
from payments.models.refund import RefundRecord

__all__ = [
    "GatewayEventRecord",
    "IdempotencyRecord",
    "Invoice",
    "LedgerEntry",
    "Payment",
    "RefundRecord",
]
