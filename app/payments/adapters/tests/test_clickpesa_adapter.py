"""
Tests for ClickPesa adapter.
"""

import json
from decimal import Decimal

import pytest
from django.core.cache import cache

from payments.adapters.clickpesa_adapter import (
    compute_checksum,
    normalize_phone_number,
    order_reference_for,
)
from payments.adapters.tests.conftest import make_response
from payments.exceptions import (
    GatewayInvalidRequestError,
    GatewayUnavailableError,
    InsufficientFundsError,
    WebhookParseError,
)
from payments.state_machines import GatewayEventType
from payments.types import SyncStatus

API_URL = "https://api.clickpesa.com/third-parties"
CHECKSUM_KEY = "clickpesa-checksum"


def token_response():
    return make_response(200, {"success": True, "token": "Bearer cp-token"})


def preview_response():
    return make_response(200, {"activeMethods": [{"name": "M-PESA", "status": "AVAILABLE"}]})


@pytest.fixture
def mobile_charge(charge_request):
    def _create(**overrides):
        params = {
            "amount": Decimal("50000"),
            "currency": "TZS",
            "payment_method": None,
            "phone_number": "0712 345 678",
        }
        params.update(overrides)
        return charge_request(**params)

    return _create


def callback(status="SUCCESS", **extra):
    return {
        "id": "LIVE-CP-0001",
        "status": status,
        "orderReference": "CPA1B2C3D4E5F6A7B8C9D0",
        "collectedAmount": "50000",
        "collectedCurrency": "TZS",
        **extra,
    }


class TestHelpers:
    @pytest.mark.parametrize(
        "phone",
        ["+255 712 345 678", "0712345678", "712345678", "255712345678"],
    )
    def test_normalize_phone_number(self, phone):
        assert normalize_phone_number(phone) == "255712345678"

    def test_order_reference_is_deterministic(self):
        first = order_reference_for("charge:inv:req-1:1:abcd1234")

        assert first == order_reference_for("charge:inv:req-1:1:abcd1234")
        assert first != order_reference_for("charge:inv:req-2:1:abcd1234")
        assert first.startswith("CP")
        assert first.isalnum()
        assert len(first) == 22

    def test_checksum_ignores_key_order_and_checksum_field(self):
        payload = {"b": "2", "a": "1", "checksum": "stale"}

        assert compute_checksum(payload, CHECKSUM_KEY) == compute_checksum(
            {"a": "1", "b": "2"}, CHECKSUM_KEY
        )
        assert compute_checksum(payload, CHECKSUM_KEY) != compute_checksum(payload, "other")


class TestClickPesaValidation:
    def test_accepts_local_number(self, clickpesa_adapter, mobile_charge):
        clickpesa_adapter.validate_charge(mobile_charge())

    def test_rejects_missing_phone(self, clickpesa_adapter, mobile_charge):
        with pytest.raises(GatewayInvalidRequestError, match="phone number"):
            clickpesa_adapter.validate_charge(mobile_charge(phone_number=None))

    def test_rejects_malformed_phone(self, clickpesa_adapter, mobile_charge):
        with pytest.raises(GatewayInvalidRequestError, match="Invalid mobile money"):
            clickpesa_adapter.validate_charge(mobile_charge(phone_number="12345"))

    def test_rejects_below_minimum(self, clickpesa_adapter, mobile_charge):
        with pytest.raises(GatewayInvalidRequestError, match="minimum"):
            clickpesa_adapter.validate_charge(mobile_charge(amount=Decimal("500")))


class TestClickPesaCharge:
    """Tests for ClickPesaAdapter.charge."""

    def test_previews_then_sends_ussd_push(self, clickpesa_adapter, mobile_charge, mock_http):
        mock_http.side_effect = [
            token_response(),
            preview_response(),
            make_response(200, {"id": "LIVE-CP-0001", "status": "PROCESSING"}),
        ]
        request = mobile_charge()
        order_reference = order_reference_for(request.idempotency_token)

        result = clickpesa_adapter.charge(request)

        assert result.sync_status == SyncStatus.PENDING
        assert result.gateway_transaction_id == "LIVE-CP-0001"
        assert result.gateway_payment_id == order_reference

        token_call, preview_call, push_call = mock_http.call_args_list
        assert token_call.args == ("POST", f"{API_URL}/generate-token")
        assert token_call.kwargs["headers"]["api-key"] == "clickpesa-key"
        assert preview_call.args == ("POST", f"{API_URL}/payments/preview-ussd-push-request")
        assert push_call.args == ("POST", f"{API_URL}/payments/initiate-ussd-push-request")
        assert push_call.kwargs["headers"]["Authorization"] == "Bearer cp-token"

        fields = {
            "amount": "50000",
            "currency": "TZS",
            "orderReference": order_reference,
            "phoneNumber": "255712345678",
        }
        expected = {**fields, "checksum": compute_checksum(fields, CHECKSUM_KEY)}
        assert preview_call.kwargs["json"] == expected
        assert push_call.kwargs["json"] == expected

    def test_checksum_signs_request_fields(self, clickpesa_adapter, mobile_charge, mock_http):
        mock_http.side_effect = [
            token_response(),
            preview_response(),
            make_response(200, {"id": "LIVE-CP-0001", "status": "PROCESSING"}),
        ]

        clickpesa_adapter.charge(mobile_charge())

        body = mock_http.call_args.kwargs["json"]
        tampered = {**body, "amount": "1"}
        assert body["checksum"] == compute_checksum(body, CHECKSUM_KEY)
        assert body["checksum"] != compute_checksum(tampered, CHECKSUM_KEY)

    def test_rejected_preview_stops_push(self, clickpesa_adapter, mobile_charge, mock_http):
        mock_http.side_effect = [
            token_response(),
            make_response(400, {"message": "Phone number not registered for mobile money"}),
        ]

        with pytest.raises(GatewayInvalidRequestError):
            clickpesa_adapter.charge(mobile_charge())

        assert mock_http.call_count == 2

    def test_token_is_reused(self, clickpesa_adapter, mobile_charge, mock_http):
        mock_http.side_effect = [
            token_response(),
            preview_response(),
            make_response(200, {"id": "LIVE-CP-0001", "status": "PROCESSING"}),
            preview_response(),
            make_response(200, {"id": "LIVE-CP-0002", "status": "PROCESSING"}),
        ]

        clickpesa_adapter.charge(mobile_charge())
        clickpesa_adapter.charge(mobile_charge())

        generate_calls = [
            call for call in mock_http.call_args_list if call.args[1].endswith("/generate-token")
        ]
        assert len(generate_calls) == 1
        assert mock_http.call_count == 5

    def test_refused_push_fails(self, clickpesa_adapter, mobile_charge, mock_http):
        mock_http.side_effect = [
            token_response(),
            preview_response(),
            make_response(200, {"id": "LIVE-CP-0001", "status": "FAILED", "message": "Rejected"}),
        ]

        result = clickpesa_adapter.charge(mobile_charge())

        assert result.sync_status == SyncStatus.FAILED
        assert result.failure_code == "card_declined"
        assert result.failure_message == "Rejected"

    def test_insufficient_funds(self, clickpesa_adapter, mobile_charge, mock_http):
        mock_http.side_effect = [
            token_response(),
            make_response(400, {"message": "Insufficient balance in wallet"}),
        ]

        with pytest.raises(InsufficientFundsError):
            clickpesa_adapter.charge(mobile_charge())

    def test_invalid_request(self, clickpesa_adapter, mobile_charge, mock_http):
        mock_http.side_effect = [
            token_response(),
            make_response(400, {"message": "Order reference already used"}),
        ]

        with pytest.raises(GatewayInvalidRequestError) as exc_info:
            clickpesa_adapter.charge(mobile_charge())

        assert exc_info.value.gateway_code == "http_400"

    def test_rejected_token_clears_cache(self, clickpesa_adapter, mobile_charge, mock_http):
        mock_http.side_effect = [token_response(), make_response(401)]

        with pytest.raises(GatewayUnavailableError):
            clickpesa_adapter.charge(mobile_charge())

        assert cache.get(clickpesa_adapter.token_cache_key) is None

    def test_rejected_credentials(self, clickpesa_adapter, mobile_charge, mock_http):
        mock_http.side_effect = [make_response(401, {"message": "Unauthorized"})]

        with pytest.raises(GatewayInvalidRequestError) as exc_info:
            clickpesa_adapter.charge(mobile_charge())

        assert exc_info.value.gateway_code == "authentication_error"


class TestClickPesaStatusQuery:
    """Tests for ClickPesaAdapter.query_charge."""

    def test_successful_collection(self, clickpesa_adapter, mock_http):
        mock_http.side_effect = [token_response(), make_response(200, [callback("SUCCESS")])]

        result = clickpesa_adapter.query_charge("CPA1B2C3D4E5F6A7B8C9D0")

        assert result.sync_status == SyncStatus.SUCCEEDED
        assert result.gateway_transaction_id == "LIVE-CP-0001"
        assert result.gateway_payment_id == "CPA1B2C3D4E5F6A7B8C9D0"
        method, url = mock_http.call_args.args
        assert (method, url) == ("GET", f"{API_URL}/payments/querying-for-payments")
        assert mock_http.call_args.kwargs["params"] == {"orderReference": "CPA1B2C3D4E5F6A7B8C9D0"}

    def test_failed_collection(self, clickpesa_adapter, mock_http):
        record = callback("FAILED", errorMessage="Insufficient balance")
        mock_http.side_effect = [token_response(), make_response(200, [record])]

        result = clickpesa_adapter.query_charge("CPA1B2C3D4E5F6A7B8C9D0")

        assert result.sync_status == SyncStatus.FAILED
        assert result.failure_code == "insufficient_funds"
        assert result.failure_message == "Insufficient balance"

    @pytest.mark.parametrize("body", [[callback("PROCESSING")], [], {}])
    def test_unsettled_or_unknown_is_pending(self, clickpesa_adapter, mock_http, body):
        mock_http.side_effect = [token_response(), make_response(200, body)]

        result = clickpesa_adapter.query_charge("CPA1B2C3D4E5F6A7B8C9D0")

        assert result.sync_status == SyncStatus.PENDING
        assert result.gateway_payment_id == "CPA1B2C3D4E5F6A7B8C9D0"

    def test_query_error_raises(self, clickpesa_adapter, mock_http):
        mock_http.side_effect = [token_response(), make_response(404, {"message": "Not found"})]

        with pytest.raises(GatewayInvalidRequestError):
            clickpesa_adapter.query_charge("CPA1B2C3D4E5F6A7B8C9D0")


class TestClickPesaRefund:
    def test_refund_is_manual(self, clickpesa_adapter, refund_request, mock_http):
        result = clickpesa_adapter.refund(
            refund_request(amount=Decimal("10000"), currency="TZS")
        )

        assert result.sync_status == SyncStatus.PENDING
        assert result.gateway_refund_id is None
        assert result.raw == {"manual": True}
        mock_http.assert_not_called()


class TestClickPesaWebhooks:
    """Tests for checksum verification and callback parsing."""

    def test_valid_checksum(self, clickpesa_adapter):
        payload = callback()
        body = json.dumps(payload).encode()

        assert clickpesa_adapter.verify_webhook_signature(
            body, compute_checksum(payload, CHECKSUM_KEY), CHECKSUM_KEY
        )

    def test_tampered_payload(self, clickpesa_adapter):
        checksum = compute_checksum(callback(), CHECKSUM_KEY)
        body = json.dumps(callback(collectedAmount="1")).encode()

        assert not clickpesa_adapter.verify_webhook_signature(body, checksum, CHECKSUM_KEY)

    def test_non_object_body(self, clickpesa_adapter):
        assert not clickpesa_adapter.verify_webhook_signature(b"[]", "abc", CHECKSUM_KEY)

    def test_success_callback(self, clickpesa_adapter):
        event = clickpesa_adapter.parse_webhook(json.dumps(callback()).encode())

        assert event.event_id == "LIVE-CP-0001:SUCCESS"
        assert event.event_type == GatewayEventType.CHARGE_SUCCEEDED
        assert event.gateway_transaction_id == "LIVE-CP-0001"
        assert event.gateway_payment_id == "CPA1B2C3D4E5F6A7B8C9D0"
        assert event.amount == Decimal("50000")
        assert event.currency == "TZS"

    def test_each_status_is_a_distinct_event(self, clickpesa_adapter):
        processing = clickpesa_adapter.parse_webhook(
            json.dumps(callback(status="PROCESSING")).encode()
        )
        succeeded = clickpesa_adapter.parse_webhook(json.dumps(callback()).encode())

        assert processing.event_type == GatewayEventType.CHARGE_PROCESSING
        assert processing.event_id != succeeded.event_id

    @pytest.mark.parametrize(
        "message,failure_code",
        [
            ("Insufficient balance", "insufficient_funds"),
            ("Customer cancelled", "card_declined"),
        ],
    )
    def test_failed_callback(self, clickpesa_adapter, message, failure_code):
        body = json.dumps(callback(status="FAILED", errorMessage=message)).encode()

        event = clickpesa_adapter.parse_webhook(body)

        assert event.event_type == GatewayEventType.CHARGE_FAILED
        assert event.failure_code == failure_code
        assert event.failure_message == message

    def test_unknown_status(self, clickpesa_adapter):
        body = json.dumps(callback(status="REVERSED")).encode()

        assert clickpesa_adapter.parse_webhook(body) is None

    @pytest.mark.parametrize(
        "body",
        [b"not json", b'{"status": "SUCCESS"}', b'{"id": "1", "status": "SUCCESS", "collectedAmount": "abc"}'],
    )
    def test_malformed_callback(self, clickpesa_adapter, body):
        with pytest.raises(WebhookParseError):
            clickpesa_adapter.parse_webhook(body)
