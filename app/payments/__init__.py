"""
Payments app: the payment core of the logistics billing platform.

This app handles:
- Charging invoices through pluggable gateways (Stripe, PayPal, ClickPesa)
- Verifying, deduplicating and applying gateway webhooks
- Payment and refund state machines
- Invoice balance bookkeeping (ledger)
- Refunds, including manual mobile money refunds

Usage:
    from payments.services import PaymentOrchestrator, RefundProcessor

    outcome = PaymentOrchestrator().charge(
        invoice_id=invoice.id,
        amount=Decimal("100.00"),
        currency="USD",
        client_request_id="req-1",
    )
"""
