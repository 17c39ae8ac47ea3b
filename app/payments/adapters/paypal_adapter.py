"""
PayPal adapter for wallet payments (REST API, Orders v2).

Charges create an order that the buyer approves on PayPal, so charge()
returns PENDING with the approval URL. CHECKOUT.ORDER.APPROVED marks the
event requires_capture; the Reconciler then schedules capture(), which
captures the order and settles the payment. Refunds go through the capture
(/v2/payments/captures/{id}/refund).

Webhook signatures cannot be checked locally: the transmission headers are
posted back to PayPal's verify-webhook-signature endpoint together with
our webhook id (GatewayConfig.webhook_secret).

Webhook mapping:
    CHECKOUT.ORDER.APPROVED     -> charge.processing
    PAYMENT.CAPTURE.PENDING     -> charge.processing
    PAYMENT.CAPTURE.COMPLETED   -> charge.succeeded
    PAYMENT.CAPTURE.DENIED      -> charge.failed
    PAYMENT.CAPTURE.DECLINED    -> charge.failed
    PAYMENT.CAPTURE.REFUNDED    -> refund.succeeded
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any, Mapping

from django.core.cache import cache

from payments.exceptions import (
    CardDeclinedError,
    GatewayInvalidRequestError,
    GatewayUnavailableError,
    WebhookParseError,
)
from payments.fees import PAYPAL_FEES
from payments.money import to_decimal
from payments.state_machines import GatewayEventType, GatewayName
from payments.types import (
    ChargeResult,
    GatewayEvent,
    RefundResult,
    SyncStatus,
    hash_payload,
)

from .base import GatewayAdapter, get_header

if TYPE_CHECKING:
    import requests

    from payments.types import ChargeRequest, RefundRequest

SANDBOX_API_URL = "https://api-m.sandbox.paypal.com"
LIVE_API_URL = "https://api-m.paypal.com"

# Refresh the cached token this many seconds before PayPal expires it
TOKEN_EXPIRY_MARGIN_SECONDS = 60

TRANSMISSION_HEADERS = {
    "transmission_id": "PAYPAL-TRANSMISSION-ID",
    "transmission_time": "PAYPAL-TRANSMISSION-TIME",
    "transmission_sig": "PAYPAL-TRANSMISSION-SIG",
    "cert_url": "PAYPAL-CERT-URL",
    "auth_algo": "PAYPAL-AUTH-ALGO",
}

EVENT_MAP = {
    "CHECKOUT.ORDER.APPROVED": GatewayEventType.CHARGE_PROCESSING,
    "PAYMENT.CAPTURE.PENDING": GatewayEventType.CHARGE_PROCESSING,
    "PAYMENT.CAPTURE.COMPLETED": GatewayEventType.CHARGE_SUCCEEDED,
    "PAYMENT.CAPTURE.DENIED": GatewayEventType.CHARGE_FAILED,
    "PAYMENT.CAPTURE.DECLINED": GatewayEventType.CHARGE_FAILED,
    "PAYMENT.CAPTURE.REFUNDED": GatewayEventType.REFUND_SUCCEEDED,
}

CAPTURE_STATUS_MAP = {
    "COMPLETED": SyncStatus.SUCCEEDED,
    "PENDING": SyncStatus.PENDING,
    "DECLINED": SyncStatus.FAILED,
    "FAILED": SyncStatus.FAILED,
}

REFUND_STATUS_MAP = {
    "COMPLETED": SyncStatus.SUCCEEDED,
    "PENDING": SyncStatus.PENDING,
    "FAILED": SyncStatus.FAILED,
    "CANCELLED": SyncStatus.FAILED,
}

# Issues PayPal reports for declined funding sources
DECLINE_ISSUES = ("INSTRUMENT_DECLINED", "PAYER_CANNOT_PAY", "TRANSACTION_REFUSED")


def _link(resource: dict[str, Any], rel: str) -> str | None:
    for link in resource.get("links") or []:
        if link.get("rel") == rel:
            return link.get("href")
    return None


class PayPalAdapter(GatewayAdapter):
    """
    Adapter for the PayPal REST API.

    Credentials (GatewayConfig.credentials):
        client_id: REST app client id
        client_secret: REST app secret

    Options (GatewayConfig.options):
        return_url / cancel_url: Buyer approval redirects
    """

    name = GatewayName.PAYPAL
    method = "paypal"
    supported_currencies = ("USD", "EUR", "GBP", "CAD", "AUD")
    fee_schedule = PAYPAL_FEES
    signature_header = "PAYPAL-TRANSMISSION-SIG"
    supports_capture = True

    # =========================================================================
    # Configuration
    # =========================================================================

    @property
    def base_url(self) -> str:
        if self.config.api_url:
            return self.config.api_url.rstrip("/")
        return LIVE_API_URL if self.config.is_live else SANDBOX_API_URL

    @property
    def token_cache_key(self) -> str:
        return f"payments:paypal:token:{self.config.mode}:{self.config.credential('client_id')}"

    def get_access_token(self) -> str:
        """
        Return an OAuth access token, cached until shortly before expiry.

        Raises:
            GatewayInvalidRequestError: Credentials rejected
            GatewayUnavailableError: PayPal unreachable
        """
        token = cache.get(self.token_cache_key)
        if token:
            return token

        response = self._http(
            "POST",
            f"{self.base_url}/v1/oauth2/token",
            {"operation": "oauth_token", "gateway": self.name},
            auth=(
                self.config.credential("client_id"),
                self.config.credential("client_secret"),
            ),
            data={"grant_type": "client_credentials"},
            headers={"Accept": "application/json"},
        )
        if response.status_code != 200:
            self.get_logger().critical(
                "PayPal authentication failed - check client credentials",
                extra={"gateway": self.name, "http_status": response.status_code},
            )
            raise GatewayInvalidRequestError(
                "PayPal authentication failed",
                gateway=self.name,
                gateway_code="authentication_error",
            )

        body = response.json()
        token = body["access_token"]
        expires_in = int(body.get("expires_in", 3600))
        cache.set(
            self.token_cache_key,
            token,
            timeout=max(expires_in - TOKEN_EXPIRY_MARGIN_SECONDS, 60),
        )
        return token

    def _headers(self, request_id: str | None = None) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.get_access_token()}",
            "Content-Type": "application/json",
            "Prefer": "return=representation",
        }
        if request_id:
            headers["PayPal-Request-Id"] = request_id
        return headers

    # =========================================================================
    # Charges
    # =========================================================================

    def charge(self, request: ChargeRequest) -> ChargeResult:
        """
        Create a PayPal order awaiting buyer approval.

        Returns:
            ChargeResult in PENDING with redirect_url set to the approval link
        """
        amount = self.format_amount(request.amount, request.currency)
        purchase_unit: dict[str, Any] = {
            "reference_id": str(request.payment_id),
            "custom_id": str(request.payment_id),
            "invoice_id": str(request.invoice_id),
            "amount": {"currency_code": request.currency, "value": amount},
        }
        if request.description:
            purchase_unit["description"] = request.description[:127]

        body = {
            "intent": "CAPTURE",
            "purchase_units": [purchase_unit],
            "payment_source": {
                "paypal": {
                    "experience_context": {
                        "return_url": self.config.options.get("return_url", ""),
                        "cancel_url": self.config.options.get("cancel_url", ""),
                        "user_action": "PAY_NOW",
                    }
                }
            },
        }

        response = self._http(
            "POST",
            f"{self.base_url}/v2/checkout/orders",
            {
                "operation": "create_order",
                "gateway": self.name,
                "payment_id": str(request.payment_id),
                "amount": amount,
                "currency": request.currency,
                "idempotency_key": request.idempotency_token,
            },
            json=body,
            headers=self._headers(request.idempotency_token),
        )
        data = self._json_or_raise(response, "create_order")

        status = data.get("status")
        redirect_url = _link(data, "payer-action") or _link(data, "approve")
        if status == "VOIDED":
            return ChargeResult(
                gateway_transaction_id=data["id"],
                sync_status=SyncStatus.FAILED,
                failure_code="card_declined",
                failure_message="PayPal order was voided",
                raw=data,
            )
        return ChargeResult(
            gateway_transaction_id=data["id"],
            sync_status=SyncStatus.PENDING,
            redirect_url=redirect_url,
            raw=data,
        )

    def capture(self, gateway_transaction_id: str, idempotency_token: str) -> ChargeResult:
        """
        Capture an order the buyer approved.

        PayPal-Request-Id makes the call idempotent: a repeated capture with
        the same token returns the original capture instead of a new one.

        Returns:
            ChargeResult; gateway_payment_id is the capture id
        """
        response = self._http(
            "POST",
            f"{self.base_url}/v2/checkout/orders/{gateway_transaction_id}/capture",
            {
                "operation": "capture_order",
                "gateway": self.name,
                "order_id": gateway_transaction_id,
                "idempotency_key": idempotency_token,
            },
            json={},
            headers=self._headers(idempotency_token),
        )
        data = self._json_or_raise(response, "capture_order")

        units = data.get("purchase_units") or [{}]
        captures = (units[0].get("payments") or {}).get("captures") or [{}]
        capture = captures[0]
        sync_status = CAPTURE_STATUS_MAP.get(capture.get("status"), SyncStatus.PENDING)

        failure_code = None
        failure_message = None
        if sync_status == SyncStatus.FAILED:
            failure_code = "card_declined"
            failure_message = (capture.get("status_details") or {}).get(
                "reason", "PayPal capture declined"
            )
        return ChargeResult(
            gateway_transaction_id=data.get("id") or gateway_transaction_id,
            sync_status=sync_status,
            gateway_payment_id=capture.get("id"),
            failure_code=failure_code,
            failure_message=failure_message,
            raw=data,
        )

    # =========================================================================
    # Refunds
    # =========================================================================

    def refund(self, request: RefundRequest) -> RefundResult:
        """
        Refund a capture.

        The capture id is the payment's gateway_payment_id, recorded when
        the order was captured. PayPal refunds captures, never orders.

        Raises:
            GatewayInvalidRequestError: The payment has no capture id
        """
        capture_id = request.gateway_payment_id
        if not capture_id:
            raise GatewayInvalidRequestError(
                "PayPal payment has no capture to refund",
                gateway=self.name,
                gateway_code="capture_missing",
                details={"order_id": request.gateway_transaction_id},
            )
        amount = self.format_amount(request.amount, request.currency)
        body: dict[str, Any] = {
            "amount": {"currency_code": request.currency, "value": amount},
            "custom_id": str(request.refund_id),
        }
        if request.reason:
            body["note_to_payer"] = request.reason[:255]

        response = self._http(
            "POST",
            f"{self.base_url}/v2/payments/captures/{capture_id}/refund",
            {
                "operation": "refund_capture",
                "gateway": self.name,
                "refund_id": str(request.refund_id),
                "capture_id": capture_id,
                "amount": amount,
                "idempotency_key": request.idempotency_token,
            },
            json=body,
            headers=self._headers(request.idempotency_token),
        )
        data = self._json_or_raise(response, "refund_capture")

        sync_status = REFUND_STATUS_MAP.get(data.get("status"), SyncStatus.PENDING)
        failure_message = None
        if sync_status == SyncStatus.FAILED:
            failure_message = (data.get("status_details") or {}).get(
                "reason", "Refund failed"
            )
        return RefundResult(
            gateway_refund_id=data.get("id"),
            sync_status=sync_status,
            failure_message=failure_message,
            raw=data,
        )

    # =========================================================================
    # Webhooks
    # =========================================================================

    def extract_signature(self, headers: Mapping[str, str]) -> str | None:
        """
        Pack the PayPal transmission headers into one JSON string.

        Returns None when any header is missing.
        """
        values = {}
        for field_name, header in TRANSMISSION_HEADERS.items():
            value = get_header(headers, header)
            if not value:
                return None
            values[field_name] = value
        return json.dumps(values, sort_keys=True)

    def verify_webhook_signature(
        self,
        raw_body: bytes,
        signature_header: str | None,
        secret: str,
    ) -> bool:
        """
        Ask PayPal to verify the transmission.

        Raises:
            GatewayUnavailableError: PayPal could not be reached; the
                delivery is answered with 503 and redelivered
        """
        if not signature_header or not secret:
            return False
        try:
            transmission = json.loads(signature_header)
            webhook_event = json.loads(raw_body)
        except ValueError:
            return False

        response = self._http(
            "POST",
            f"{self.base_url}/v1/notifications/verify-webhook-signature",
            {"operation": "verify_webhook_signature", "gateway": self.name},
            json={**transmission, "webhook_id": secret, "webhook_event": webhook_event},
            headers=self._headers(),
        )
        if response.status_code != 200:
            self.get_logger().warning(
                "PayPal rejected the verification request",
                extra={"gateway": self.name, "http_status": response.status_code},
            )
            return False
        return response.json().get("verification_status") == "SUCCESS"

    def parse_webhook(self, raw_body: bytes) -> GatewayEvent | None:
        """
        Normalize a PayPal webhook event.

        Raises:
            WebhookParseError: Body is not a PayPal event
        """
        try:
            data = json.loads(raw_body)
            event_id = data["id"]
            paypal_type = data["event_type"]
            resource = data["resource"]
        except (ValueError, KeyError, TypeError) as e:
            raise WebhookParseError(
                "Malformed PayPal event",
                details={"gateway": self.name, "error": str(e)},
            ) from e

        event_type = EVENT_MAP.get(paypal_type)
        if event_type is None:
            return None

        amount_data = resource.get("amount") or {}
        if paypal_type == "CHECKOUT.ORDER.APPROVED":
            units = resource.get("purchase_units") or [{}]
            amount_data = units[0].get("amount") or {}

        amount = amount_data.get("value")
        common = {
            "event_id": event_id,
            "event_type": event_type,
            "gateway": self.name,
            "amount": to_decimal(amount) if amount is not None else None,
            "currency": (amount_data.get("currency_code") or "").upper(),
            "payload_hash": hash_payload(raw_body),
            "raw": data,
        }

        if paypal_type == "CHECKOUT.ORDER.APPROVED":
            return GatewayEvent(
                gateway_transaction_id=resource.get("id"),
                requires_capture=True,
                **common,
            )

        if event_type == GatewayEventType.REFUND_SUCCEEDED:
            # Refund resources link back to the capture with rel="up"
            up = _link(resource, "up") or ""
            capture_id = up.rstrip("/").rsplit("/", 1)[-1] if up else None
            return GatewayEvent(
                gateway_transaction_id=None,
                gateway_refund_id=resource.get("id"),
                gateway_payment_id=capture_id,
                merchant_reference=resource.get("custom_id"),
                **common,
            )

        related = (resource.get("supplementary_data") or {}).get("related_ids") or {}
        failure_code = None
        failure_message = None
        if event_type == GatewayEventType.CHARGE_FAILED:
            failure_code = "card_declined"
            failure_message = (resource.get("status_details") or {}).get(
                "reason", "PayPal capture denied"
            )
        return GatewayEvent(
            gateway_transaction_id=related.get("order_id"),
            gateway_payment_id=resource.get("id"),
            merchant_reference=resource.get("custom_id"),
            failure_code=failure_code,
            failure_message=failure_message,
            **common,
        )

    # =========================================================================
    # Error Handling
    # =========================================================================

    def _json_or_raise(self, response: requests.Response, operation: str) -> dict[str, Any]:
        """
        Return the JSON body of a 2xx response or raise the mapped error.

        Raises:
            CardDeclinedError: Funding source declined (422)
            GatewayInvalidRequestError: Any other 4xx
        """
        if 200 <= response.status_code < 300:
            return response.json()

        try:
            body = response.json()
        except ValueError:
            body = {}
        issues = [detail.get("issue") for detail in body.get("details") or []]
        log_context = {
            "operation": operation,
            "gateway": self.name,
            "http_status": response.status_code,
            "paypal_name": body.get("name"),
            "issues": issues,
        }

        if any(issue in DECLINE_ISSUES for issue in issues):
            self.get_logger().warning("PayPal declined the payment", extra=log_context)
            raise CardDeclinedError(
                body.get("message") or "PayPal declined the payment",
                gateway=self.name,
                gateway_code=next(i for i in issues if i in DECLINE_ISSUES),
            )

        if response.status_code == 401:
            # Token revoked or expired early; the next call re-authenticates
            cache.delete(self.token_cache_key)
            raise GatewayUnavailableError(
                "PayPal token rejected. Please retry.",
                gateway=self.name,
                gateway_code="token_rejected",
            )

        self.get_logger().error("Invalid request to PayPal", extra=log_context)
        raise GatewayInvalidRequestError(
            body.get("message") or f"PayPal rejected {operation}",
            gateway=self.name,
            gateway_code=body.get("name") or f"http_{response.status_code}",
            details={"issues": issues},
        )
