"""
Tests for the shared adapter helpers and the adapter registry.
"""

from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from django.http import HttpRequest

from payments.adapters import (
    ClickPesaAdapter,
    IdempotencyKeyGenerator,
    StripeAdapter,
    backoff_delay,
    call_with_retries,
    get_adapter,
    is_retryable_gateway_error,
)
from payments.adapters.base import get_header
from payments.conf import PaymentsConfig
from payments.exceptions import (
    CardDeclinedError,
    GatewayInvalidRequestError,
    GatewayNotAvailableError,
    GatewayUnavailableError,
)


class TestIdempotencyKeyGenerator:
    def test_format(self):
        key = IdempotencyKeyGenerator.generate("charge", "inv-1:req-1")

        operation, invoice, request_id, attempt, digest = key.split(":")
        assert (operation, invoice, request_id, attempt) == ("charge", "inv-1", "req-1", "1")
        assert len(digest) == 8

    def test_deterministic(self):
        assert IdempotencyKeyGenerator.generate("refund", "r-1") == (
            IdempotencyKeyGenerator.generate("refund", "r-1")
        )

    def test_attempt_changes_key(self):
        assert IdempotencyKeyGenerator.generate("refund", "r-1", attempt=1) != (
            IdempotencyKeyGenerator.generate("refund", "r-1", attempt=2)
        )


class TestRetryHelpers:
    """Tests for backoff_delay and call_with_retries."""

    def test_backoff_grows_with_jitter(self):
        for attempt, base in [(0, 1.0), (1, 2.0), (2, 4.0)]:
            delay = backoff_delay(attempt)
            assert base <= delay <= base * 1.25

    def test_backoff_is_capped(self):
        assert backoff_delay(20, max_delay=60.0) <= 75.0

    def test_retryable_classification(self):
        assert is_retryable_gateway_error(GatewayUnavailableError("timeout"))
        assert not is_retryable_gateway_error(CardDeclinedError("declined"))
        assert not is_retryable_gateway_error(ValueError("boom"))

    def test_returns_first_success(self, no_sleep):
        fn = MagicMock(return_value="ok")

        assert call_with_retries(fn, attempts=3) == "ok"
        assert fn.call_count == 1
        no_sleep.assert_not_called()

    def test_retries_transient_failures(self, no_sleep):
        fn = MagicMock(side_effect=[GatewayUnavailableError("timeout"), "ok"])

        assert call_with_retries(fn, attempts=3) == "ok"
        assert fn.call_count == 2
        assert no_sleep.call_count == 1

    def test_gives_up_after_attempts(self, no_sleep):
        fn = MagicMock(side_effect=GatewayUnavailableError("timeout"))

        with pytest.raises(GatewayUnavailableError):
            call_with_retries(fn, attempts=3)

        assert fn.call_count == 3
        assert no_sleep.call_count == 2

    def test_permanent_failure_is_not_retried(self, no_sleep):
        fn = MagicMock(side_effect=CardDeclinedError("declined"))

        with pytest.raises(CardDeclinedError):
            call_with_retries(fn, attempts=3)

        assert fn.call_count == 1

    def test_non_gateway_errors_propagate(self, no_sleep):
        fn = MagicMock(side_effect=KeyError("payment_id"))

        with pytest.raises(KeyError):
            call_with_retries(fn, attempts=3)

        assert fn.call_count == 1


class TestGetHeader:
    def test_plain_dict_is_case_insensitive(self):
        assert get_header({"stripe-signature": "sig"}, "Stripe-Signature") == "sig"
        assert get_header({"Other": "x"}, "Stripe-Signature") is None

    def test_django_headers(self):
        request = HttpRequest()
        request.META["HTTP_X_CLICKPESA_SIGNATURE"] = "abc"

        assert get_header(request.headers, "X-ClickPesa-Signature") == "abc"


class TestValidateCharge:
    """Tests for GatewayAdapter.validate_charge."""

    def test_accepts_valid_charge(self, stripe_adapter, charge_request):
        stripe_adapter.validate_charge(charge_request())

    def test_unsupported_currency(self, stripe_adapter, charge_request):
        with pytest.raises(GatewayInvalidRequestError) as exc_info:
            stripe_adapter.validate_charge(charge_request(currency="TZS"))

        assert exc_info.value.details["currency"] == "TZS"

    def test_below_minimum(self, stripe_adapter, charge_request):
        with pytest.raises(GatewayInvalidRequestError) as exc_info:
            stripe_adapter.validate_charge(charge_request(amount=Decimal("0.49")))

        assert exc_info.value.details["minimum_amount"] == "0.50"

    def test_calculate_fee_uses_currency_precision(self, clickpesa_adapter):
        assert clickpesa_adapter.calculate_fee(Decimal("10000"), "TZS") == Decimal("200")
        assert clickpesa_adapter.format_amount(Decimal("10000"), "TZS") == "10000"


class TestRegistry:
    def test_builds_configured_adapter(self, payments_config):
        adapter = get_adapter("Stripe", payments_config)

        assert isinstance(adapter, StripeAdapter)
        assert adapter.config.credential("secret_key") == "sk_test_dummy"
        assert adapter.timeout == payments_config.gateway_timeout_seconds

    def test_clickpesa(self, payments_config):
        adapter = get_adapter("clickpesa", payments_config)

        assert isinstance(adapter, ClickPesaAdapter)
        assert adapter.minimum_amount == Decimal("1000")

    def test_unknown_gateway(self, payments_config):
        with pytest.raises(GatewayNotAvailableError) as exc_info:
            get_adapter("bitcoin", payments_config)

        assert exc_info.value.status_code == 404

    def test_disabled_gateway(self):
        config = PaymentsConfig.from_settings({"gateways": {"paypal": {"enabled": False}}})

        with pytest.raises(GatewayNotAvailableError):
            get_adapter("paypal", config)
