"""
Stripe adapter for card payments.

Charges are PaymentIntents created with confirm=True, so the outcome is
usually known synchronously. Amounts travel to Stripe in minor units
(cents; whole yen for JPY). Webhooks are signed with a timestamped HMAC
in the Stripe-Signature header.

Features:
- Per-request API key from GatewayConfig (no global key mutation)
- Configurable timeouts on all API calls
- Automatic error translation to the GatewayError taxonomy
- Structured logging with timing metrics
- Idempotency tokens forwarded natively (Idempotency-Key)

Webhook mapping:
    payment_intent.processing       -> charge.processing
    payment_intent.succeeded        -> charge.succeeded
    payment_intent.payment_failed   -> charge.failed
    refund.* / charge.refund.updated (status succeeded/failed)
                                    -> refund.succeeded / refund.failed
    charge.updated (expanded balance_transaction with fee)
                                    -> fee.updated

Usage:
    adapter = StripeAdapter(payments_config.gateway("stripe"), payments_config)
    result = adapter.charge(request)
    if result.sync_status == SyncStatus.SUCCEEDED:
        ...
"""

from __future__ import annotations

import json
import time
from decimal import Decimal
from typing import TYPE_CHECKING, Any

import stripe

from payments.exceptions import (
    CardDeclinedError,
    GatewayInvalidRequestError,
    GatewayUnavailableError,
    InsufficientFundsError,
    WebhookParseError,
)
from payments.fees import STRIPE_FEES
from payments.money import from_minor_units, to_minor_units
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
    from payments.types import ChargeRequest, RefundRequest

# Signature timestamp tolerance in seconds
WEBHOOK_TOLERANCE_SECONDS = 300

INTENT_STATUS_MAP = {
    "succeeded": SyncStatus.SUCCEEDED,
    "processing": SyncStatus.PENDING,
    "requires_action": SyncStatus.PENDING,
    "requires_capture": SyncStatus.PENDING,
    "requires_confirmation": SyncStatus.PENDING,
    "requires_payment_method": SyncStatus.FAILED,
    "canceled": SyncStatus.FAILED,
}

REFUND_STATUS_MAP = {
    "succeeded": SyncStatus.SUCCEEDED,
    "pending": SyncStatus.PENDING,
    "requires_action": SyncStatus.PENDING,
    "failed": SyncStatus.FAILED,
    "canceled": SyncStatus.FAILED,
}

INTENT_EVENT_MAP = {
    "payment_intent.processing": GatewayEventType.CHARGE_PROCESSING,
    "payment_intent.succeeded": GatewayEventType.CHARGE_SUCCEEDED,
    "payment_intent.payment_failed": GatewayEventType.CHARGE_FAILED,
}

REFUND_EVENTS = (
    "refund.created",
    "refund.updated",
    "refund.failed",
    "charge.refund.updated",
)

# Stripe reasons accepted by the Refund API; anything else goes to metadata
STRIPE_REFUND_REASONS = ("duplicate", "fraudulent", "requested_by_customer")


def normalize_failure_code(code: str | None, decline_code: str | None) -> str:
    """Map Stripe decline/error codes onto the fixed failure code set."""
    if decline_code == "insufficient_funds" or code == "insufficient_funds":
        return "insufficient_funds"
    if decline_code == "expired_card" or code == "expired_card":
        return "expired_card"
    return "card_declined"


class StripeAdapter(GatewayAdapter):
    """
    Adapter for Stripe API operations.

    Credentials (GatewayConfig.credentials):
        secret_key: Stripe secret API key
        publishable_key: Not used server-side

    GatewayConfig.webhook_secret is the endpoint signing secret (whsec_...).
    """

    name = GatewayName.STRIPE
    method = "card"
    supported_currencies = ("USD", "EUR", "GBP", "CAD", "AUD", "JPY")
    fee_schedule = STRIPE_FEES
    signature_header = "Stripe-Signature"

    # =========================================================================
    # Configuration
    # =========================================================================

    def _request_options(self) -> dict[str, Any]:
        """Per-request options: API key and HTTP client with our timeout."""
        stripe.default_http_client = stripe.RequestsClient(timeout=self.timeout)
        return {"api_key": self.config.credential("secret_key")}

    # =========================================================================
    # Charges
    # =========================================================================

    def charge(self, request: ChargeRequest) -> ChargeResult:
        """
        Create and confirm a PaymentIntent.

        Args:
            request: Charge parameters (amount in major units)

        Returns:
            ChargeResult with SUCCEEDED, PENDING (processing or 3DS) or
            FAILED (requires_payment_method/canceled)

        Raises:
            CardDeclinedError: Card was declined
            InsufficientFundsError: Insufficient funds
            GatewayInvalidRequestError: Invalid parameters
            GatewayUnavailableError: Stripe unavailable or timed out
        """
        logger = self.get_logger()
        decimals = self.decimals_for(request.currency)

        log_context = {
            "operation": "create_payment_intent",
            "payment_id": str(request.payment_id),
            "amount": str(request.amount),
            "currency": request.currency,
            "idempotency_key": request.idempotency_token,
        }

        start_time = time.time()
        logger.info("Starting Stripe operation", extra=log_context)

        params: dict[str, Any] = {
            "amount": to_minor_units(request.amount, decimals),
            "currency": request.currency.lower(),
            "confirm": True,
            "automatic_payment_methods": {"enabled": True, "allow_redirects": "never"},
            "metadata": {
                **request.metadata,
                "payment_id": str(request.payment_id),
                "invoice_id": str(request.invoice_id),
            },
        }
        if request.payment_method:
            params["payment_method"] = request.payment_method
        if request.description:
            params["description"] = request.description

        try:
            intent = stripe.PaymentIntent.create(
                idempotency_key=request.idempotency_token,
                **params,
                **self._request_options(),
            )
        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            self._handle_stripe_error(e, log_context, duration_ms)
            raise

        duration_ms = (time.time() - start_time) * 1000
        logger.info(
            "Stripe operation completed",
            extra={
                **log_context,
                "payment_intent_id": intent.id,
                "status": intent.status,
                "duration_ms": duration_ms,
            },
        )

        sync_status = INTENT_STATUS_MAP.get(intent.status, SyncStatus.PENDING)
        failure_code = None
        failure_message = None
        if sync_status == SyncStatus.FAILED:
            error = intent.get("last_payment_error") or {}
            failure_code = normalize_failure_code(
                error.get("code"), error.get("decline_code")
            )
            failure_message = error.get("message") or f"Payment {intent.status}"

        redirect_url = None
        next_action = intent.get("next_action") or {}
        if next_action.get("redirect_to_url"):
            redirect_url = next_action["redirect_to_url"].get("url")

        return ChargeResult(
            gateway_transaction_id=intent.id,
            sync_status=sync_status,
            gateway_payment_id=intent.get("latest_charge"),
            failure_code=failure_code,
            failure_message=failure_message,
            redirect_url=redirect_url,
            raw=intent.to_dict(),
        )

    # =========================================================================
    # Refunds
    # =========================================================================

    def refund(self, request: RefundRequest) -> RefundResult:
        """
        Create a refund for a PaymentIntent.

        Raises:
            GatewayInvalidRequestError: Refund not possible
            GatewayUnavailableError: Stripe unavailable or timed out
        """
        logger = self.get_logger()
        decimals = self.decimals_for(request.currency)

        log_context = {
            "operation": "create_refund",
            "refund_id": str(request.refund_id),
            "payment_intent_id": request.gateway_transaction_id,
            "amount": str(request.amount),
            "idempotency_key": request.idempotency_token,
        }

        start_time = time.time()
        logger.info("Starting Stripe operation", extra=log_context)

        refund_params: dict[str, Any] = {
            "payment_intent": request.gateway_transaction_id,
            "amount": to_minor_units(request.amount, decimals),
            "metadata": {"refund_id": str(request.refund_id)},
        }
        if request.reason in STRIPE_REFUND_REASONS:
            refund_params["reason"] = request.reason
        elif request.reason:
            refund_params["metadata"]["reason"] = request.reason[:500]

        try:
            refund = stripe.Refund.create(
                idempotency_key=request.idempotency_token,
                **refund_params,
                **self._request_options(),
            )
        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            self._handle_stripe_error(e, log_context, duration_ms)
            raise

        duration_ms = (time.time() - start_time) * 1000
        logger.info(
            "Stripe operation completed",
            extra={
                **log_context,
                "stripe_refund_id": refund.id,
                "status": refund.status,
                "duration_ms": duration_ms,
            },
        )

        sync_status = REFUND_STATUS_MAP.get(refund.status, SyncStatus.PENDING)
        return RefundResult(
            gateway_refund_id=refund.id,
            sync_status=sync_status,
            failure_message=(
                refund.get("failure_reason") or f"Refund {refund.status}"
                if sync_status == SyncStatus.FAILED
                else None
            ),
            raw=refund.to_dict(),
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
        """Verify the timestamped HMAC in the Stripe-Signature header."""
        if not signature_header or not secret:
            return False
        try:
            payload = raw_body.decode("utf-8") if isinstance(raw_body, bytes) else raw_body
            stripe.WebhookSignature.verify_header(
                payload,
                signature_header,
                secret,
                tolerance=WEBHOOK_TOLERANCE_SECONDS,
            )
        except (UnicodeDecodeError, stripe.SignatureVerificationError) as e:
            self.get_logger().warning(
                "Stripe signature verification failed",
                extra={"gateway": self.name, "error": str(e)},
            )
            return False
        return True

    def parse_webhook(self, raw_body: bytes) -> GatewayEvent | None:
        """
        Normalize a Stripe event.

        Raises:
            WebhookParseError: Body is not a Stripe event object
        """
        try:
            data = json.loads(raw_body)
            event_id = data["id"]
            event_type = data["type"]
            obj = data["data"]["object"]
        except (ValueError, KeyError, TypeError) as e:
            raise WebhookParseError(
                "Malformed Stripe event",
                details={"gateway": self.name, "error": str(e)},
            ) from e

        payload_hash = hash_payload(raw_body)

        if event_type in INTENT_EVENT_MAP:
            return self._parse_intent_event(
                event_id, INTENT_EVENT_MAP[event_type], obj, payload_hash, data
            )
        if event_type in REFUND_EVENTS:
            return self._parse_refund_event(event_id, event_type, obj, payload_hash, data)
        if event_type == "charge.updated":
            return self._parse_fee_event(event_id, obj, payload_hash, data)
        return None

    def _amount(self, minor: int | None, currency: str) -> Decimal | None:
        if minor is None:
            return None
        return from_minor_units(int(minor), self.decimals_for(currency))

    def _parse_intent_event(
        self,
        event_id: str,
        event_type: GatewayEventType,
        obj: dict[str, Any],
        payload_hash: str,
        data: dict[str, Any],
    ) -> GatewayEvent:
        currency = (obj.get("currency") or "").upper()
        minor = obj.get("amount_received") or obj.get("amount")
        metadata = obj.get("metadata") or {}

        failure_code = None
        failure_message = None
        if event_type == GatewayEventType.CHARGE_FAILED:
            error = obj.get("last_payment_error") or {}
            failure_code = normalize_failure_code(
                error.get("code"), error.get("decline_code")
            )
            failure_message = error.get("message") or "Payment failed"

        return GatewayEvent(
            event_id=event_id,
            event_type=event_type,
            gateway=self.name,
            gateway_transaction_id=obj.get("id"),
            amount=self._amount(minor, currency),
            currency=currency,
            payload_hash=payload_hash,
            gateway_payment_id=obj.get("latest_charge"),
            merchant_reference=metadata.get("payment_id"),
            failure_code=failure_code,
            failure_message=failure_message,
            raw=data,
        )

    def _parse_refund_event(
        self,
        event_id: str,
        stripe_type: str,
        obj: dict[str, Any],
        payload_hash: str,
        data: dict[str, Any],
    ) -> GatewayEvent | None:
        status = obj.get("status")
        if stripe_type == "refund.failed" or status in ("failed", "canceled"):
            event_type = GatewayEventType.REFUND_FAILED
        elif status == "succeeded":
            event_type = GatewayEventType.REFUND_SUCCEEDED
        else:
            # pending refunds are finalized by a later event
            return None

        currency = (obj.get("currency") or "").upper()
        return GatewayEvent(
            event_id=event_id,
            event_type=event_type,
            gateway=self.name,
            gateway_transaction_id=obj.get("payment_intent"),
            amount=self._amount(obj.get("amount"), currency),
            currency=currency,
            payload_hash=payload_hash,
            gateway_refund_id=obj.get("id"),
            gateway_payment_id=obj.get("charge"),
            merchant_reference=(obj.get("metadata") or {}).get("refund_id"),
            failure_message=(
                obj.get("failure_reason") or "Refund failed"
                if event_type == GatewayEventType.REFUND_FAILED
                else None
            ),
            raw=data,
        )

    def _parse_fee_event(
        self,
        event_id: str,
        obj: dict[str, Any],
        payload_hash: str,
        data: dict[str, Any],
    ) -> GatewayEvent | None:
        balance_transaction = obj.get("balance_transaction")
        if not isinstance(balance_transaction, dict) or balance_transaction.get("fee") is None:
            return None
        # Fees are reported in the settlement currency of the balance transaction
        currency = (balance_transaction.get("currency") or obj.get("currency") or "").upper()
        return GatewayEvent(
            event_id=event_id,
            event_type=GatewayEventType.FEE_UPDATED,
            gateway=self.name,
            gateway_transaction_id=obj.get("payment_intent"),
            amount=self._amount(obj.get("amount"), (obj.get("currency") or "").upper()),
            currency=(obj.get("currency") or "").upper(),
            payload_hash=payload_hash,
            gateway_payment_id=obj.get("id"),
            fee_amount=self._amount(balance_transaction["fee"], currency),
            raw=data,
        )

    # =========================================================================
    # Error Handling
    # =========================================================================

    def _handle_stripe_error(
        self,
        error: Exception,
        log_context: dict[str, Any],
        duration_ms: float,
    ) -> None:
        """
        Translate Stripe exceptions to the gateway error taxonomy.

        Raises:
            InsufficientFundsError: Insufficient funds
            CardDeclinedError: Card declined or expired
            GatewayInvalidRequestError: Invalid request or authentication
            GatewayUnavailableError: Rate limit, connection, 5xx or unknown
        """
        logger = self.get_logger()
        log_context = {**log_context, "duration_ms": duration_ms}

        if isinstance(error, stripe.CardError):
            decline_code = getattr(error, "decline_code", None) or getattr(
                getattr(error, "error", None), "decline_code", None
            )
            logger.warning(
                "Card error from Stripe",
                extra={**log_context, "decline_code": decline_code},
            )
            failure_code = normalize_failure_code(error.code, decline_code)
            message = str(error.user_message or error)

            if failure_code == "insufficient_funds":
                raise InsufficientFundsError(
                    message,
                    gateway=self.name,
                    gateway_code=decline_code or error.code,
                ) from error

            raise CardDeclinedError(
                message,
                gateway=self.name,
                gateway_code=decline_code or error.code,
                failure_code=failure_code,
            ) from error

        elif isinstance(error, stripe.InvalidRequestError):
            logger.error(
                "Invalid request to Stripe",
                extra={**log_context, "stripe_code": error.code},
            )
            raise GatewayInvalidRequestError(
                str(error.user_message or error),
                gateway=self.name,
                gateway_code=error.code,
            ) from error

        elif isinstance(error, stripe.RateLimitError):
            logger.warning("Rate limited by Stripe", extra=log_context)
            raise GatewayUnavailableError(
                "Stripe rate limit exceeded. Please retry.",
                gateway=self.name,
                gateway_code="rate_limit",
            ) from error

        elif isinstance(error, stripe.APIConnectionError):
            logger.error("Connection error to Stripe", extra=log_context, exc_info=True)
            raise GatewayUnavailableError(
                "Could not connect to Stripe. Please retry.",
                gateway=self.name,
                gateway_code="api_connection_error",
            ) from error

        elif isinstance(error, stripe.AuthenticationError):
            logger.critical(
                "Stripe authentication failed - check API key",
                extra=log_context,
            )
            raise GatewayInvalidRequestError(
                "Stripe authentication failed",
                gateway=self.name,
                gateway_code="authentication_error",
            ) from error

        elif isinstance(error, stripe.APIError):
            logger.error("Stripe API error", extra=log_context, exc_info=True)
            raise GatewayUnavailableError(
                "Stripe service error. Please retry.",
                gateway=self.name,
                gateway_code="api_error",
            ) from error

        else:
            logger.error(
                f"Unexpected error from Stripe: {type(error).__name__}",
                extra=log_context,
                exc_info=True,
            )
            raise GatewayUnavailableError(
                f"Unexpected Stripe error: {error}",
                gateway=self.name,
                gateway_code="unknown_error",
            ) from error
