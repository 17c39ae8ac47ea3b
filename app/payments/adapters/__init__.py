"""
Gateway adapters.

One adapter per gateway behind the GatewayAdapter contract:

    StripeAdapter     card payments (synchronous outcome)
    PayPalAdapter     wallet payments (buyer approval, webhook outcome)
    ClickPesaAdapter  mobile money (USSD push, webhook outcome)

All external payment API calls go through these adapters to ensure
consistent error handling, timeouts, idempotency, and observability.

Usage:
    from payments.adapters import get_adapter

    adapter = get_adapter("stripe", payments_config)
    result = adapter.charge(request)
"""

from payments.adapters.base import (
    GatewayAdapter,
    IdempotencyKeyGenerator,
    backoff_delay,
    call_with_retries,
    is_retryable_gateway_error,
)
from payments.adapters.clickpesa_adapter import ClickPesaAdapter
from payments.adapters.paypal_adapter import PayPalAdapter
from payments.adapters.registry import ADAPTERS, get_adapter
from payments.adapters.stripe_adapter import StripeAdapter

__all__ = [
    "ADAPTERS",
    "ClickPesaAdapter",
    "GatewayAdapter",
    "IdempotencyKeyGenerator",
    "PayPalAdapter",
    "StripeAdapter",
    "backoff_delay",
    "call_with_retries",
    "get_adapter",
    "is_retryable_gateway_error",
]
