"""
Pytest fixtures for payment tests.

This module provides fixtures for creating payment-related test data.
Fixtures are designed to provide objects in various states for testing
state transitions and business logic.

Gateway SDKs and HTTP calls are never reached: tests patch the adapter
methods (or stripe/requests) they exercise. Redis is replaced by a mock
so DistributedLock always acquires, and backoff sleeps are skipped.

Usage:
    def test_refund_reopens_invoice(completed_payment):
        outcome = RefundProcessor().refund(completed_payment.id)
        ...
"""

import hashlib
import hmac
import json
import time
import uuid
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest
from django.core.cache import cache
from django.utils import timezone
from rest_framework.test import APIClient

from payments.conf import PaymentsConfig
from payments.models import Payment
from payments.services.reconciler import Reconciler
from payments.state_machines import GatewayEventType, PaymentStatus
from payments.tests.factories import (
    GatewayEventFactory,
    InvoiceFactory,
    PaymentFactory,
    UserFactory,
)


# =============================================================================
# Infrastructure Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def mock_redis():
    """Replace the Redis connection used by DistributedLock."""
    redis = MagicMock()
    redis.set.return_value = True
    redis.eval.return_value = 1
    with patch("payments.locks.get_redis_connection", return_value=redis):
        yield redis


@pytest.fixture(autouse=True)
def no_backoff_sleep():
    """Skip real sleeps in gateway retries, lock polling and ledger backoff."""
    with patch("payments.adapters.base.time.sleep") as sleep:
        yield sleep


@pytest.fixture(autouse=True)
def clear_cache():
    """Gateway tokens are cached; start every test with an empty cache."""
    cache.clear()
    yield
    cache.clear()


@pytest.fixture
def payments_config():
    """PaymentsConfig built from the test settings."""
    return PaymentsConfig.from_settings()


# =============================================================================
# User and API Client Fixtures
# =============================================================================


@pytest.fixture
def user(db):
    """Create a portal user."""
    return UserFactory()


@pytest.fixture
def api_client():
    """Unauthenticated DRF test client."""
    return APIClient()


@pytest.fixture
def authenticated_client(api_client, user):
    """DRF test client authenticated as the portal user."""
    api_client.force_authenticate(user=user)
    return api_client


# =============================================================================
# Invoice Fixtures
# =============================================================================


@pytest.fixture
def invoice(db):
    """Create a sent $100 USD invoice."""
    return InvoiceFactory()


@pytest.fixture
def tzs_invoice(db):
    """Create a sent TZS 50,000 invoice for mobile money tests."""
    return InvoiceFactory(
        currency="TZS",
        subtotal=Decimal("50000"),
        tax_amount=Decimal("0"),
        total_amount=Decimal("50000"),
    )


# =============================================================================
# Payment State Fixtures
# =============================================================================


@pytest.fixture
def pending_payment(db, invoice):
    """Create a submitted PENDING Stripe payment for the full invoice."""
    return PaymentFactory(
        invoice=invoice,
        gateway_transaction_id="pi_test_pending",
        submitted_at=timezone.now(),
    )


@pytest.fixture
def processing_payment(db, invoice):
    """Create a PROCESSING Stripe payment for the full invoice."""
    return PaymentFactory(
        invoice=invoice,
        status=PaymentStatus.PROCESSING,
        gateway_transaction_id="pi_test_processing",
        submitted_at=timezone.now(),
    )


@pytest.fixture
def completed_payment(db, invoice, payments_config):
    """
    Create a COMPLETED payment that paid the invoice in full.

    Completed through the reconciler so the invoice balance and the
    ledger journal agree.
    """
    payment = PaymentFactory(
        invoice=invoice,
        gateway_transaction_id="pi_test_completed",
        gateway_payment_id="ch_test_completed",
        submitted_at=timezone.now(),
    )
    Reconciler(payments_config).apply(
        GatewayEventFactory(payment=payment, event_type=GatewayEventType.CHARGE_SUCCEEDED)
    )
    return Payment.objects.get(pk=payment.pk)


# =============================================================================
# Webhook Fixtures
# =============================================================================


STRIPE_WEBHOOK_SECRET = "whsec_test_secret"


def sign_stripe_payload(body: bytes, secret: str = STRIPE_WEBHOOK_SECRET, timestamp=None) -> str:
    """Build a Stripe-Signature header value for a raw body."""
    timestamp = int(timestamp if timestamp is not None else time.time())
    signed = f"{timestamp}.{body.decode()}".encode()
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


@pytest.fixture
def stripe_event():
    """
    Build a raw Stripe payment_intent event body.

    Usage:
        body = stripe_event("payment_intent.succeeded", pending_payment)
    """

    def build(event_type, payment=None, event_id="evt_test_1", **overrides):
        intent = {
            "id": payment.gateway_transaction_id if payment else "pi_unknown",
            "object": "payment_intent",
            "amount": int(payment.amount * 100) if payment else 10000,
            "currency": (payment.currency if payment else "USD").lower(),
            "status": event_type.rsplit(".", 1)[-1],
            "latest_charge": "ch_test_1",
            "metadata": {"payment_id": str(payment.id) if payment else str(uuid.uuid4())},
        }
        intent.update(overrides)
        return json.dumps(
            {
                "id": event_id,
                "object": "event",
                "type": event_type,
                "data": {"object": intent},
            }
        ).encode()

    return build


@pytest.fixture
def stripe_signature():
    """Sign a raw body with the test Stripe webhook secret."""
    return sign_stripe_payload
