"""
Gateway adapter contract and shared retry helpers.

Every gateway (card processor, wallet, mobile money) is wrapped by a
GatewayAdapter subclass. Adapters own all gateway quirks: currency support,
minimum amounts, amount units, signature schemes and error vocabularies.
Nothing gateway-specific leaks past this layer; callers only see
ChargeResult, RefundResult, GatewayEvent and the GatewayError taxonomy.

Usage:
    from payments.adapters import get_adapter

    adapter = get_adapter(GatewayName.STRIPE, payments_config)
    adapter.validate_charge(request)
    result = call_with_retries(
        lambda: adapter.charge(request),
        attempts=payments_config.gateway_max_retries,
    )
"""

from __future__ import annotations

import hashlib
import logging
import random
import time
import uuid
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Callable, Mapping, TypeVar

import requests
from django.conf import settings

from payments.exceptions import (
    GatewayError,
    GatewayInvalidRequestError,
    GatewayUnavailableError,
)
from payments.fees import FeeSchedule
from payments.money import ZERO, quantize

if TYPE_CHECKING:
    from payments.conf import GatewayConfig, PaymentsConfig
    from payments.state_machines import GatewayName
    from payments.types import (
        ChargeRequest,
        ChargeResult,
        GatewayEvent,
        RefundRequest,
        RefundResult,
    )

T = TypeVar("T")


# =============================================================================
# Idempotency Key Generation
# =============================================================================


class IdempotencyKeyGenerator:
    """
    Generates deterministic idempotency tokens for gateway calls.

    Format: {operation}:{entity_id}:{attempt}:{hash}

    The hash component (keyed with SECRET_KEY) keeps tokens unguessable
    while the readable prefix keeps them debuggable in gateway dashboards.
    The same inputs always produce the same token, so a retried call is
    recognized by the gateway as the original one.

    Example:
        key = IdempotencyKeyGenerator.generate(
            operation="charge",
            entity_id=f"{invoice_id}:{client_request_id}",
        )
        # Result: "charge:550e8400-...:req-1:1:a1b2c3d4"
    """

    @staticmethod
    def generate(
        operation: str,
        entity_id: uuid.UUID | str,
        attempt: int = 1,
    ) -> str:
        """
        Generate an idempotency token.

        Args:
            operation: Gateway operation (charge, refund)
            entity_id: Domain identity of the operation
            attempt: Attempt number for deliberately distinct retries

        Returns:
            Formatted idempotency token
        """
        entity_str = str(entity_id)
        hash_input = f"{operation}:{entity_str}:{attempt}:{settings.SECRET_KEY}"
        short_hash = hashlib.sha256(hash_input.encode()).hexdigest()[:8]

        return f"{operation}:{entity_str}:{attempt}:{short_hash}"


# =============================================================================
# Retry Logic Helpers
# =============================================================================


def is_retryable_gateway_error(error: Exception) -> bool:
    """
    Check if a gateway error is transient.

    Only GatewayUnavailableError (timeouts, 5xx, rate limits) is retried.
    Declines and invalid requests are permanent.
    """
    if isinstance(error, GatewayError):
        return getattr(error, "is_retryable", False)
    return False


def backoff_delay(attempt: int, base: float = 1.0, max_delay: float = 60.0) -> float:
    """
    Calculate exponential backoff delay with jitter.

    Args:
        attempt: Current attempt number (0-indexed)
        base: Base delay in seconds (default: 1.0)
        max_delay: Maximum delay in seconds (default: 60.0)

    Returns:
        Delay in seconds with jitter (0-25% of calculated delay)

    Example:
        # Attempt 0: 1.0 - 1.25 seconds
        # Attempt 1: 2.0 - 2.5 seconds
        # Attempt 2: 4.0 - 5.0 seconds
        delay = backoff_delay(attempt=2)
    """
    delay = min(base * (2**attempt), max_delay)
    jitter = delay * random.uniform(0, 0.25)
    return delay + jitter


def call_with_retries(
    fn: Callable[[], T],
    attempts: int = 3,
    base_delay: float = 0.5,
    log_context: dict[str, Any] | None = None,
) -> T:
    """
    Call fn, retrying only transient gateway failures.

    Args:
        fn: Zero-argument callable performing the gateway call
        attempts: Maximum number of calls
        base_delay: Base delay passed to backoff_delay
        log_context: Extra logging context

    Returns:
        Whatever fn returns

    Raises:
        GatewayUnavailableError: If every attempt failed transiently
        GatewayError: Permanent failures, raised on first occurrence
    """
    logger = logging.getLogger(__name__)
    attempts = max(attempts, 1)
    for attempt in range(attempts):
        try:
            return fn()
        except GatewayError as exc:
            if not is_retryable_gateway_error(exc) or attempt == attempts - 1:
                raise
            delay = backoff_delay(attempt, base=base_delay)
            logger.warning(
                "Transient gateway failure, retrying",
                extra={
                    **(log_context or {}),
                    "attempt": attempt + 1,
                    "max_attempts": attempts,
                    "delay_s": round(delay, 3),
                    "error_code": exc.error_code,
                },
            )
            time.sleep(delay)
    raise AssertionError("unreachable")


def get_header(headers: Mapping[str, str], name: str) -> str | None:
    """Case-insensitive header lookup for plain dicts and HttpHeaders."""
    value = headers.get(name)
    if value is not None:
        return value
    lowered = name.lower()
    for key, candidate in headers.items():
        if key.lower() == lowered:
            return candidate
    return None


# =============================================================================
# Gateway Adapter Contract
# =============================================================================


class GatewayAdapter(ABC):
    """
    Base class for gateway adapters.

    Subclasses declare:
        name: GatewayName served by the adapter
        method: Payment method recorded on payments (card, paypal, ...)
        supported_currencies: ISO 4217 codes the gateway accepts
        fee_schedule: Fee schedule used for provisional fees
        signature_header: Header carrying the webhook signature
        requires_phone_number: Mobile money gateways need a phone number
        supports_capture: Approved charges must be captured with capture()
        supports_status_query: query_charge() can settle charges whose
            callback never arrived

    Adapters are constructed with their GatewayConfig (credentials, mode,
    minimum amount) and the PaymentsConfig (timeouts, currency precision).
    They hold no mutable state and are safe to share between threads.
    """

    name: GatewayName
    supported_currencies: tuple[str, ...] = ()
    fee_schedule: FeeSchedule = FeeSchedule()
    method: str = ""
    signature_header: str = ""
    requires_phone_number: bool = False
    supports_capture: bool = False
    supports_status_query: bool = False

    def __init__(
        self,
        config: GatewayConfig,
        payments_config: PaymentsConfig | None = None,
    ):
        self.config = config
        self.payments_config = payments_config
        self.timeout = payments_config.gateway_timeout_seconds if payments_config else 10

    @classmethod
    def get_logger(cls) -> logging.Logger:
        return logging.getLogger(cls.__module__)

    # =========================================================================
    # Gateway Operations
    # =========================================================================

    @abstractmethod
    def charge(self, request: ChargeRequest) -> ChargeResult:
        """
        Submit a charge to the gateway.

        Raises:
            CardDeclinedError / InsufficientFundsError: Permanent declines
            GatewayInvalidRequestError: Gateway rejected the request
            GatewayUnavailableError: Transient failure (safe to retry with
                the same idempotency token)
        """

    @abstractmethod
    def refund(self, request: RefundRequest) -> RefundResult:
        """Submit a refund to the gateway. Raises the same taxonomy as charge."""

    @abstractmethod
    def verify_webhook_signature(
        self,
        raw_body: bytes,
        signature_header: str | None,
        secret: str,
    ) -> bool:
        """Return True when the callback was signed by the gateway."""

    @abstractmethod
    def parse_webhook(self, raw_body: bytes) -> GatewayEvent | None:
        """
        Normalize a verified callback into a GatewayEvent.

        Returns:
            GatewayEvent, or None for event types the core does not consume

        Raises:
            WebhookParseError: If the payload is malformed
        """

    def capture(self, gateway_transaction_id: str, idempotency_token: str) -> ChargeResult:
        """
        Capture a charge the buyer approved (wallet flows).

        Only gateways with supports_capture implement this.
        """
        raise GatewayInvalidRequestError(
            f"{self.name} does not support capturing approved charges",
            gateway=self.name,
            gateway_code="capture_unsupported",
        )

    def query_charge(self, gateway_payment_id: str) -> ChargeResult:
        """
        Ask the gateway for the current outcome of a charge.

        Only gateways with supports_status_query implement this.
        """
        raise GatewayInvalidRequestError(
            f"{self.name} does not support charge status queries",
            gateway=self.name,
            gateway_code="status_query_unsupported",
        )

    # =========================================================================
    # Supporting Members
    # =========================================================================

    @property
    def minimum_amount(self) -> Decimal:
        return self.config.minimum_amount

    def extract_signature(self, headers: Mapping[str, str]) -> str | None:
        """Pull the signature value out of the request headers."""
        return get_header(headers, self.signature_header)

    def decimals_for(self, currency: str) -> int:
        if self.payments_config is None:
            return 2
        return self.payments_config.decimals_for(currency)

    def calculate_fee(self, amount, currency: str, decimals: int | None = None) -> Decimal:
        """Provisional gateway fee for a gross amount, in major units."""
        if decimals is None:
            decimals = self.decimals_for(currency)
        return self.fee_schedule.calculate(amount, currency, decimals)

    def validate_charge(self, request: ChargeRequest) -> None:
        """
        Apply gateway-specific checks before any Payment row exists.

        Raises:
            GatewayInvalidRequestError: Unsupported currency, amount below
                the gateway minimum, or a missing required field
        """
        if request.currency not in self.supported_currencies:
            raise GatewayInvalidRequestError(
                f"{self.name} does not support currency {request.currency}",
                gateway=self.name,
                details={
                    "currency": request.currency,
                    "supported_currencies": list(self.supported_currencies),
                },
            )
        if self.minimum_amount > ZERO and request.amount < self.minimum_amount:
            raise GatewayInvalidRequestError(
                f"Amount is below the {self.name} minimum of {self.minimum_amount}",
                gateway=self.name,
                details={
                    "amount": str(request.amount),
                    "minimum_amount": str(self.minimum_amount),
                },
            )
        if self.requires_phone_number and not request.phone_number:
            raise GatewayInvalidRequestError(
                f"{self.name} requires a phone number",
                gateway=self.name,
                details={"field": "phone_number"},
            )

    def format_amount(self, amount, currency: str) -> str:
        """Major-unit amount as a string at the currency precision."""
        return str(quantize(amount, self.decimals_for(currency)))

    # =========================================================================
    # HTTP Helper (REST gateways)
    # =========================================================================

    def _http(
        self,
        method: str,
        url: str,
        log_context: dict[str, Any],
        **kwargs,
    ) -> requests.Response:
        """
        Perform an HTTP call with timeout, logging and transient-error mapping.

        Timeouts, connection failures, 429 and 5xx responses raise
        GatewayUnavailableError. Other non-2xx responses are returned to the
        caller for gateway-specific translation.
        """
        logger = self.get_logger()
        start_time = time.time()
        logger.info("Starting gateway operation", extra=log_context)
        try:
            response = requests.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as exc:
            duration_ms = (time.time() - start_time) * 1000
            logger.error(
                "Connection error to gateway",
                extra={**log_context, "duration_ms": duration_ms},
                exc_info=True,
            )
            raise GatewayUnavailableError(
                f"Could not reach {self.name}. Please retry.",
                gateway=self.name,
                gateway_code="connection_error",
            ) from exc

        duration_ms = (time.time() - start_time) * 1000
        if response.status_code == 429 or response.status_code >= 500:
            logger.error(
                "Gateway unavailable",
                extra={
                    **log_context,
                    "http_status": response.status_code,
                    "duration_ms": duration_ms,
                },
            )
            raise GatewayUnavailableError(
                f"{self.name} service error. Please retry.",
                gateway=self.name,
                gateway_code=f"http_{response.status_code}",
            )

        logger.info(
            "Gateway operation completed",
            extra={
                **log_context,
                "http_status": response.status_code,
                "duration_ms": duration_ms,
            },
        )
        return response
