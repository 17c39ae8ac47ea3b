"""
ClickPesa adapter for mobile money (USSD push) payments.

The customer confirms the charge on their phone, so charge() returns
PENDING and the outcome arrives by webhook. query_charge() looks the
collection up when that webhook is lost. ClickPesa has no idempotency
header: the order reference is derived deterministically from the
idempotency token, and ClickPesa rejects a reused order reference, which
gives the same protection.

Refunds are not available through the API. refund() records the request
and returns PENDING; an operator completes it in the ClickPesa dashboard
and confirms it with RefundProcessor.confirm_manual_refund.

Checksum:
    HMAC-SHA256 (checksum key) over the payload values concatenated in
    key-sorted order. Outgoing push requests carry it in a "checksum"
    field; callbacks send it as X-ClickPesa-Signature.

Webhook status mapping:
    SUCCESS, COMPLETED    -> charge.succeeded
    FAILED, CANCELLED     -> charge.failed
    PROCESSING, PENDING   -> charge.processing
"""

from __future__ import annotations

import hashlib
import hmac
import json
import re
from typing import TYPE_CHECKING, Any

from django.core.cache import cache

from payments.exceptions import (
    GatewayInvalidRequestError,
    GatewayUnavailableError,
    InsufficientFundsError,
    WebhookParseError,
)
from payments.fees import CLICKPESA_FEES
from payments.money import to_decimal
from payments.state_machines import GatewayEventType, GatewayName
from payments.types import (
    ChargeResult,
    GatewayEvent,
    RefundResult,
    SyncStatus,
    hash_payload,
)

from .base import GatewayAdapter

if TYPE_CHECKING:
    import requests

    from payments.types import ChargeRequest, RefundRequest

DEFAULT_API_URL = "https://api.clickpesa.com/third-parties"

# ClickPesa tokens are valid for one hour
TOKEN_CACHE_SECONDS = 50 * 60

COUNTRY_CODE = "255"
PHONE_PATTERN = re.compile(r"^255\d{9}$")

STATUS_MAP = {
    "SUCCESS": GatewayEventType.CHARGE_SUCCEEDED,
    "COMPLETED": GatewayEventType.CHARGE_SUCCEEDED,
    "FAILED": GatewayEventType.CHARGE_FAILED,
    "CANCELLED": GatewayEventType.CHARGE_FAILED,
    "PROCESSING": GatewayEventType.CHARGE_PROCESSING,
    "PENDING": GatewayEventType.CHARGE_PROCESSING,
}


def normalize_phone_number(phone: str) -> str:
    """
    Normalize a Tanzanian mobile number to the 255XXXXXXXXX form.

    Examples:
        "+255 712 345 678" -> "255712345678"
        "0712345678"       -> "255712345678"
        "712345678"        -> "255712345678"
    """
    digits = re.sub(r"\D", "", phone or "")
    if digits.startswith(COUNTRY_CODE):
        return digits
    if digits.startswith("0"):
        return COUNTRY_CODE + digits[1:]
    return COUNTRY_CODE + digits


def order_reference_for(idempotency_token: str) -> str:
    """Alphanumeric order reference derived from an idempotency token."""
    digest = hashlib.sha256(idempotency_token.encode()).hexdigest()[:20].upper()
    return f"CP{digest}"


def compute_checksum(payload: dict[str, Any], key: str) -> str:
    """HMAC-SHA256 over the payload values in key-sorted order."""
    parts = []
    for name in sorted(payload):
        if name == "checksum":
            continue
        value = payload[name]
        if isinstance(value, (dict, list)):
            value = json.dumps(value, separators=(",", ":"), sort_keys=True)
        elif value is None:
            value = ""
        parts.append(str(value))
    return hmac.new(key.encode(), "".join(parts).encode(), hashlib.sha256).hexdigest()


class ClickPesaAdapter(GatewayAdapter):
    """
    Adapter for the ClickPesa collection API.

    Credentials (GatewayConfig.credentials):
        client_id: Application client id
        api_key: Application API key

    GatewayConfig.webhook_secret is the checksum key.
    """

    name = GatewayName.CLICKPESA
    method = "mobile_money"
    supported_currencies = ("TZS", "USD")
    fee_schedule = CLICKPESA_FEES
    signature_header = "X-ClickPesa-Signature"
    requires_phone_number = True
    supports_status_query = True

    # =========================================================================
    # Configuration
    # =========================================================================

    @property
    def base_url(self) -> str:
        return (self.config.api_url or DEFAULT_API_URL).rstrip("/")

    @property
    def token_cache_key(self) -> str:
        return f"payments:clickpesa:token:{self.config.credential('client_id')}"

    def get_token(self) -> str:
        """
        Return an authorization token, cached for 50 minutes.

        Raises:
            GatewayInvalidRequestError: Credentials rejected
            GatewayUnavailableError: ClickPesa unreachable
        """
        token = cache.get(self.token_cache_key)
        if token:
            return token

        response = self._http(
            "POST",
            f"{self.base_url}/generate-token",
            {"operation": "generate_token", "gateway": self.name},
            headers={
                "client-id": self.config.credential("client_id"),
                "api-key": self.config.credential("api_key"),
            },
        )
        body = self._json(response)
        if response.status_code != 200 or not body.get("token"):
            self.get_logger().critical(
                "ClickPesa authentication failed - check API credentials",
                extra={"gateway": self.name, "http_status": response.status_code},
            )
            raise GatewayInvalidRequestError(
                "ClickPesa authentication failed",
                gateway=self.name,
                gateway_code="authentication_error",
            )

        token = body["token"]
        cache.set(self.token_cache_key, token, timeout=TOKEN_CACHE_SECONDS)
        return token

    # =========================================================================
    # Validation
    # =========================================================================

    def validate_charge(self, request: ChargeRequest) -> None:
        """Base checks plus a well-formed Tanzanian mobile number."""
        super().validate_charge(request)
        phone = normalize_phone_number(request.phone_number)
        if not PHONE_PATTERN.match(phone):
            raise GatewayInvalidRequestError(
                "Invalid mobile money phone number",
                gateway=self.name,
                details={"field": "phone_number"},
            )

    # =========================================================================
    # Charges
    # =========================================================================

    def charge(self, request: ChargeRequest) -> ChargeResult:
        """
        Preview, then send a USSD push to the customer's phone.

        The request body carries a checksum over its fields, keyed with the
        checksum key. ClickPesa validates the push in the preview call
        before anything reaches the customer.

        Returns:
            ChargeResult in PENDING (or FAILED if ClickPesa refuses the push)
        """
        order_reference = order_reference_for(request.idempotency_token)
        amount = self.format_amount(request.amount, request.currency)
        payload = {
            "amount": amount,
            "currency": request.currency,
            "orderReference": order_reference,
            "phoneNumber": normalize_phone_number(request.phone_number),
        }
        if self.config.webhook_secret:
            payload["checksum"] = compute_checksum(payload, self.config.webhook_secret)

        log_context = {
            "gateway": self.name,
            "payment_id": str(request.payment_id),
            "amount": amount,
            "currency": request.currency,
            "order_reference": order_reference,
            "idempotency_key": request.idempotency_token,
        }

        preview = self._http(
            "POST",
            f"{self.base_url}/payments/preview-ussd-push-request",
            {**log_context, "operation": "preview_ussd_push"},
            json=payload,
            headers=self._headers(),
        )
        self._json_or_raise(preview, "preview_ussd_push")

        response = self._http(
            "POST",
            f"{self.base_url}/payments/initiate-ussd-push-request",
            {**log_context, "operation": "initiate_ussd_push"},
            json=payload,
            headers=self._headers(),
        )
        data = self._json_or_raise(response, "initiate_ussd_push")

        return self._charge_result(data, order_reference)

    def query_charge(self, gateway_payment_id: str) -> ChargeResult:
        """
        Look up a collection by order reference.

        Used when the callback for a USSD push never arrived.
        """
        response = self._http(
            "GET",
            f"{self.base_url}/payments/querying-for-payments",
            {
                "operation": "query_payment",
                "gateway": self.name,
                "order_reference": gateway_payment_id,
            },
            params={"orderReference": gateway_payment_id},
            headers=self._headers(),
        )
        if not 200 <= response.status_code < 300:
            self._json_or_raise(response, "query_payment")

        try:
            body = response.json()
        except ValueError:
            body = {}
        records = body if isinstance(body, list) else [body]
        record = records[0] if records and isinstance(records[0], dict) else {}
        return self._charge_result(record, gateway_payment_id)

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": self.get_token(),
            "Content-Type": "application/json",
        }

    def _charge_result(self, data: dict[str, Any], order_reference: str) -> ChargeResult:
        """Map a ClickPesa collection record to a ChargeResult."""
        status = (data.get("status") or "PROCESSING").upper()
        event_type = STATUS_MAP.get(status, GatewayEventType.CHARGE_PROCESSING)
        common = {
            "gateway_transaction_id": data.get("id") or order_reference,
            "gateway_payment_id": data.get("orderReference") or order_reference,
            "raw": data,
        }
        if event_type == GatewayEventType.CHARGE_SUCCEEDED:
            return ChargeResult(sync_status=SyncStatus.SUCCEEDED, **common)
        if event_type == GatewayEventType.CHARGE_FAILED:
            message = (
                data.get("message")
                or data.get("errorMessage")
                or "Mobile money push failed"
            )
            return ChargeResult(
                sync_status=SyncStatus.FAILED,
                failure_code=(
                    "insufficient_funds" if "insufficient" in message.lower() else "card_declined"
                ),
                failure_message=message,
                **common,
            )
        return ChargeResult(sync_status=SyncStatus.PENDING, **common)

    # =========================================================================
    # Refunds
    # =========================================================================

    def refund(self, request: RefundRequest) -> RefundResult:
        """
        Record a refund for manual processing.

        ClickPesa offers no refund API; the refund stays pending until an
        operator confirms it.
        """
        self.get_logger().info(
            "ClickPesa refund requires manual processing",
            extra={
                "operation": "refund",
                "gateway": self.name,
                "refund_id": str(request.refund_id),
                "gateway_transaction_id": request.gateway_transaction_id,
                "amount": str(request.amount),
                "currency": request.currency,
            },
        )
        return RefundResult(
            gateway_refund_id=None,
            sync_status=SyncStatus.PENDING,
            raw={"manual": True},
        )

    # =========================================================================
    # Webhooks
    # =========================================================================

    def verify_webhook_signature(
        self,
        raw_body: bytes,
        signature_header: str | None,
        secret: str,
    ) -> bool:
        """Recompute the checksum and compare in constant time."""
        if not signature_header or not secret:
            return False
        try:
            payload = json.loads(raw_body)
        except ValueError:
            return False
        if not isinstance(payload, dict):
            return False
        expected = compute_checksum(payload, secret)
        return hmac.compare_digest(expected, signature_header.strip().lower())

    def parse_webhook(self, raw_body: bytes) -> GatewayEvent | None:
        """
        Normalize a ClickPesa payment callback.

        The event id is synthesized as "<transaction id>:<status>" since
        ClickPesa sends no event id; each status change is one event.

        Raises:
            WebhookParseError: Missing id/status or bad amount
        """
        try:
            data = json.loads(raw_body)
            transaction_id = str(data["id"])
            status = str(data["status"]).upper()
            amount = data.get("collectedAmount")
            amount = to_decimal(str(amount)) if amount not in (None, "") else None
        except (ValueError, KeyError, TypeError, ArithmeticError) as e:
            raise WebhookParseError(
                "Malformed ClickPesa callback",
                details={"gateway": self.name, "error": str(e)},
            ) from e

        event_type = STATUS_MAP.get(status)
        if event_type is None:
            return None

        failure_code = None
        failure_message = None
        if event_type == GatewayEventType.CHARGE_FAILED:
            failure_message = data.get("errorMessage") or f"Payment {status.lower()}"
            failure_code = (
                "insufficient_funds"
                if "insufficient" in failure_message.lower()
                else "card_declined"
            )

        return GatewayEvent(
            event_id=f"{transaction_id}:{status}",
            event_type=event_type,
            gateway=self.name,
            gateway_transaction_id=transaction_id,
            amount=amount,
            currency=(data.get("collectedCurrency") or "").upper(),
            payload_hash=hash_payload(raw_body),
            gateway_payment_id=data.get("orderReference"),
            merchant_reference=data.get("orderReference"),
            failure_code=failure_code,
            failure_message=failure_message,
            raw=data,
        )

    # =========================================================================
    # Error Handling
    # =========================================================================

    @staticmethod
    def _json(response: requests.Response) -> dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}

    def _json_or_raise(self, response: requests.Response, operation: str) -> dict[str, Any]:
        """
        Return the JSON body of a 2xx response or raise the mapped error.

        Raises:
            InsufficientFundsError: Wallet balance too low
            GatewayUnavailableError: Token rejected (cache cleared for retry)
            GatewayInvalidRequestError: Any other 4xx
        """
        body = self._json(response)
        if 200 <= response.status_code < 300:
            return body

        message = body.get("message") or f"ClickPesa rejected {operation}"
        log_context = {
            "operation": operation,
            "gateway": self.name,
            "http_status": response.status_code,
            "clickpesa_message": message,
        }

        if response.status_code == 401:
            cache.delete(self.token_cache_key)
            self.get_logger().warning("ClickPesa token rejected", extra=log_context)
            raise GatewayUnavailableError(
                "ClickPesa token rejected. Please retry.",
                gateway=self.name,
                gateway_code="token_rejected",
            )

        if "insufficient" in message.lower():
            self.get_logger().warning("ClickPesa reported insufficient funds", extra=log_context)
            raise InsufficientFundsError(
                message,
                gateway=self.name,
                gateway_code="insufficient_funds",
            )

        self.get_logger().error("Invalid request to ClickPesa", extra=log_context)
        raise GatewayInvalidRequestError(
            message,
            gateway=self.name,
            gateway_code=f"http_{response.status_code}",
        )
