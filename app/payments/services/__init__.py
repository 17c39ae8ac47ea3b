"""
Payment services.

This module provides:
- PaymentOrchestrator: Entry point for charging invoices
- RefundProcessor: Issues refunds against completed payments
- Reconciler: Applies normalized gateway events to payments and invoices
- IdempotencyStore: Durable key -> outcome deduplication

Usage:
    from payments.services import PaymentOrchestrator, RefundProcessor

    outcome = PaymentOrchestrator().charge(
        invoice_id=invoice.id,
        amount=Decimal("100.00"),
        currency="USD",
        client_request_id="req-1",
    )

    outcome = RefundProcessor().refund(
        payment_id=outcome.payment.id,
        amount=Decimal("25.00"),
        reason="Damaged shipment",
    )
"""

from payments.services.idempotency import IdempotencyStore
from payments.services.payment_orchestrator import ChargeOutcome, PaymentOrchestrator
from payments.services.reconciler import ReconcileResult, Reconciler
from payments.services.refund_processor import RefundOutcome, RefundProcessor

__all__ = [
    "ChargeOutcome",
    "IdempotencyStore",
    "PaymentOrchestrator",
    "ReconcileResult",
    "Reconciler",
    "RefundOutcome",
    "RefundProcessor",
]
