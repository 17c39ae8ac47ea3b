"""
Pytest fixtures for gateway adapter tests.

This module provides fixtures for testing the adapters, including mock
Stripe objects, mock HTTP responses for the REST gateways, error
conditions, and request data.

Sections:
    - Adapter Fixtures
    - Request Fixtures
    - Mock Stripe Fixtures
    - Mock HTTP Fixtures
    - Stripe Error Fixtures
"""

import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
import stripe
from django.core.cache import cache

from payments.adapters import ClickPesaAdapter, PayPalAdapter, StripeAdapter
from payments.conf import PaymentsConfig
from payments.types import ChargeRequest, RefundRequest


@pytest.fixture(autouse=True)
def clear_token_cache():
    """PayPal and ClickPesa cache access tokens between calls."""
    cache.clear()
    yield
    cache.clear()


@pytest.fixture(autouse=True)
def no_sleep():
    with patch("payments.adapters.base.time.sleep") as sleep:
        yield sleep


# =============================================================================
# Adapter Fixtures
# =============================================================================


@pytest.fixture
def payments_config():
    return PaymentsConfig.from_settings()


@pytest.fixture
def stripe_adapter(payments_config):
    return StripeAdapter(payments_config.gateway("stripe"), payments_config)


@pytest.fixture
def paypal_adapter(payments_config):
    return PayPalAdapter(payments_config.gateway("paypal"), payments_config)


@pytest.fixture
def clickpesa_adapter(payments_config):
    return ClickPesaAdapter(payments_config.gateway("clickpesa"), payments_config)


# =============================================================================
# Request Fixtures
# =============================================================================


@pytest.fixture
def charge_request():
    """Build a ChargeRequest; defaults to $100.00 USD by card."""

    def _create(**overrides) -> ChargeRequest:
        params = {
            "payment_id": uuid.uuid4(),
            "invoice_id": uuid.uuid4(),
            "amount": Decimal("100.00"),
            "currency": "USD",
            "idempotency_token": f"charge:{uuid.uuid4()}:req-1:1:abcd1234",
            "payment_method": "pm_card_visa",
        }
        params.update(overrides)
        return ChargeRequest(**params)

    return _create


@pytest.fixture
def refund_request():
    """Build a RefundRequest; defaults to $40.00 USD."""

    def _create(**overrides) -> RefundRequest:
        params = {
            "refund_id": uuid.uuid4(),
            "gateway_transaction_id": "pi_test123456",
            "amount": Decimal("40.00"),
            "currency": "USD",
            "idempotency_token": f"refund:{uuid.uuid4()}:1:abcd1234",
        }
        params.update(overrides)
        return RefundRequest(**params)

    return _create


# =============================================================================
# Mock Stripe Fixtures
# =============================================================================


@dataclass
class MockStripeObject:
    """Mock Stripe API object with attribute, get() and to_dict support."""

    data: dict[str, Any]

    def __getattr__(self, name: str) -> Any:
        if name == "data":
            return self.__dict__["data"]
        return self.data.get(name)

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

    def to_dict(self) -> dict[str, Any]:
        return self.data


@pytest.fixture
def mock_payment_intent():
    """Create a mock PaymentIntent response."""

    def _create(
        id: str = "pi_test123456",
        status: str = "succeeded",
        amount: int = 10000,
        currency: str = "usd",
        **extra,
    ) -> MockStripeObject:
        return MockStripeObject(
            {
                "id": id,
                "object": "payment_intent",
                "status": status,
                "amount": amount,
                "currency": currency,
                "latest_charge": "ch_test123456" if status == "succeeded" else None,
                **extra,
            }
        )

    return _create


@pytest.fixture
def mock_refund():
    """Create a mock Refund response."""

    def _create(
        id: str = "re_test123456",
        status: str = "succeeded",
        amount: int = 4000,
        **extra,
    ) -> MockStripeObject:
        return MockStripeObject(
            {
                "id": id,
                "object": "refund",
                "status": status,
                "amount": amount,
                "currency": "usd",
                "payment_intent": "pi_test123456",
                **extra,
            }
        )

    return _create


@pytest.fixture
def mock_stripe_payment_intent(mock_payment_intent):
    """Mock stripe.PaymentIntent API."""
    with patch("stripe.PaymentIntent") as mock:
        mock.create.return_value = mock_payment_intent()
        yield mock


@pytest.fixture
def mock_stripe_refund(mock_refund):
    """Mock stripe.Refund API."""
    with patch("stripe.Refund") as mock:
        mock.create.return_value = mock_refund()
        yield mock


# =============================================================================
# Mock HTTP Fixtures
# =============================================================================


def make_response(status_code: int = 200, json_data: Any = None) -> MagicMock:
    """Build a requests.Response stand-in."""
    response = MagicMock()
    response.status_code = status_code
    if json_data is None:
        response.json.side_effect = ValueError("No JSON object could be decoded")
    else:
        response.json.return_value = json_data
    return response


@pytest.fixture
def mock_http():
    """
    Patch requests.request as used by GatewayAdapter._http.

    Set side_effect to a list of make_response(...) values, one per call.
    """
    with patch("payments.adapters.base.requests.request") as request:
        yield request


# =============================================================================
# Stripe Error Fixtures
# =============================================================================


@pytest.fixture
def card_error():
    """Create a Stripe CardError."""

    def _create(
        message: str = "Your card was declined.",
        code: str = "card_declined",
        decline_code: str | None = "generic_decline",
    ) -> stripe.CardError:
        error = stripe.CardError(message=message, param=None, code=code)
        error.decline_code = decline_code
        return error

    return _create


@pytest.fixture
def invalid_request_error():
    return stripe.InvalidRequestError(
        message="No such payment_intent: 'pi_missing'",
        param="payment_intent",
        code="resource_missing",
    )


@pytest.fixture
def rate_limit_error():
    return stripe.RateLimitError(message="Too many requests hit the API too quickly.")


@pytest.fixture
def api_connection_error():
    return stripe.APIConnectionError(message="Could not connect to Stripe.")


@pytest.fixture
def api_error():
    return stripe.APIError(message="Something went wrong on Stripe's end.")


@pytest.fixture
def authentication_error():
    return stripe.AuthenticationError(message="Invalid API Key provided.")
