"""
Tests for payments app.

This package contains test modules for:
- test_models.py / test_state_transitions.py: Models and FSM transitions
- test_payment_orchestrator.py: Charge flow
- test_reconciler.py / test_ledger.py: Event application and ledger
- test_webhook_ingestor.py / test_webhook_views.py: Webhook intake
- test_refund_processor.py: Refunds
- test_views.py: API endpoint tests

Adapter tests live in payments/adapters/tests/.

Usage:
    pytest payments/tests/
    pytest payments/tests/test_views.py
"""
