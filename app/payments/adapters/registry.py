"""
Adapter registry keyed by the closed GatewayName enum.

Adding a gateway means adding a GatewayName member, an adapter class and
an entry here; nothing is discovered by reflection.

Usage:
    from payments.adapters.registry import get_adapter

    adapter = get_adapter("stripe", payments_config)
"""

from __future__ import annotations

from payments.conf import PaymentsConfig
from payments.exceptions import GatewayNotAvailableError
from payments.state_machines import GatewayName

from .base import GatewayAdapter
from .clickpesa_adapter import ClickPesaAdapter
from .paypal_adapter import PayPalAdapter
from .stripe_adapter import StripeAdapter

ADAPTERS: dict[GatewayName, type[GatewayAdapter]] = {
    GatewayName.STRIPE: StripeAdapter,
    GatewayName.PAYPAL: PayPalAdapter,
    GatewayName.CLICKPESA: ClickPesaAdapter,
}


def get_adapter(
    name: str,
    payments_config: PaymentsConfig | None = None,
) -> GatewayAdapter:
    """
    Build the adapter for an enabled gateway.

    Args:
        name: Gateway name (case-insensitive)
        payments_config: Payments configuration (read from settings if omitted)

    Returns:
        Adapter constructed with the gateway's GatewayConfig

    Raises:
        GatewayNotAvailableError: Unknown, unregistered or disabled gateway
    """
    payments_config = payments_config or PaymentsConfig.from_settings()
    try:
        gateway = GatewayName((name or "").lower())
    except ValueError as exc:
        raise GatewayNotAvailableError(
            f"Gateway '{name}' is not available",
            details={"gateway": name},
        ) from exc

    adapter_class = ADAPTERS.get(gateway)
    if adapter_class is None:
        raise GatewayNotAvailableError(
            f"Gateway '{name}' has no adapter",
            details={"gateway": name},
        )
    return adapter_class(payments_config.gateway(gateway.value), payments_config)
