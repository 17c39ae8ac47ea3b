"""
Typed payments configuration.

settings.PAYMENTS is read once into a frozen PaymentsConfig which services
and adapters receive through their constructors. Nothing below the view
layer reads django.conf.settings directly.

Usage:
    from payments.conf import PaymentsConfig

    config = PaymentsConfig.from_settings()
    stripe_config = config.gateway("stripe")
    amount = config.quantize(Decimal("10.005"), "USD")  # Decimal("10.01")
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import TYPE_CHECKING

from django.conf import settings

from payments.exceptions import GatewayNotAvailableError
from payments.money import quantize, to_decimal

if TYPE_CHECKING:
    from typing import Any

DEFAULT_CURRENCY_DECIMALS = 2


@dataclass(frozen=True)
class GatewayConfig:
    """
    Configuration for a single gateway.

    Attributes:
        name: Gateway name (matches GatewayName)
        enabled: Whether the gateway accepts charges and webhooks
        credentials: API keys/secrets (shape depends on the gateway)
        webhook_secret: Secret (or PayPal webhook id) for callback verification
        mode: "sandbox" or "live"
        api_url: Base API URL override
        currency: Default currency for the gateway
        minimum_amount: Smallest chargeable amount in major units
        options: Remaining gateway-specific settings (return URLs, etc.)
    """

    name: str
    enabled: bool = False
    credentials: dict[str, str] = field(default_factory=dict)
    webhook_secret: str = ""
    mode: str = "sandbox"
    api_url: str = ""
    currency: str = ""
    minimum_amount: Decimal = Decimal("0")
    options: dict[str, Any] = field(default_factory=dict)

    @property
    def is_live(self) -> bool:
        return self.mode == "live"

    def credential(self, key: str) -> str:
        return self.credentials.get(key, "")

    @classmethod
    def from_dict(cls, name: str, data: dict[str, Any]) -> GatewayConfig:
        known = {
            "enabled",
            "credentials",
            "webhook_secret",
            "mode",
            "api_url",
            "currency",
            "minimum_amount",
        }
        return cls(
            name=name,
            enabled=bool(data.get("enabled", False)),
            credentials=dict(data.get("credentials") or {}),
            webhook_secret=data.get("webhook_secret") or "",
            mode=data.get("mode") or "sandbox",
            api_url=data.get("api_url") or "",
            currency=(data.get("currency") or "").upper(),
            minimum_amount=to_decimal(data.get("minimum_amount") or "0"),
            options={k: v for k, v in data.items() if k not in known},
        )


@dataclass(frozen=True)
class PaymentsConfig:
    """
    Configuration for the payments core.

    Attributes:
        default_gateway: Gateway used when a request names none
        gateways: Per-gateway configuration keyed by gateway name
        currency_decimals: Precision per ISO 4217 currency code
        charge_customer_fees: Add the gateway fee to the charged amount
        verify_signatures: Verify webhook signatures (disable only locally)
        webhook_max_retries: Deliveries of one event before it is parked
        gateway_timeout_seconds: Per-call gateway timeout
        gateway_max_retries: Attempts for transient gateway failures
        ledger_lock_attempts: Attempts to take the invoice lock
        idempotency_retention_days: Lifetime of idempotency records
    """

    default_gateway: str = "stripe"
    gateways: dict[str, GatewayConfig] = field(default_factory=dict)
    currency_decimals: dict[str, int] = field(default_factory=dict)
    charge_customer_fees: bool = False
    verify_signatures: bool = True
    webhook_max_retries: int = 3
    gateway_timeout_seconds: int = 10
    gateway_max_retries: int = 3
    ledger_lock_attempts: int = 5
    idempotency_retention_days: int = 60

    @classmethod
    def from_settings(cls, data: dict[str, Any] | None = None) -> PaymentsConfig:
        """
        Build the config from settings.PAYMENTS (or an explicit dict).

        Args:
            data: Optional dict with the settings.PAYMENTS shape

        Returns:
            Frozen PaymentsConfig
        """
        if data is None:
            data = getattr(settings, "PAYMENTS", {})
        fees = data.get("fees") or {}
        webhooks = data.get("webhooks") or {}
        return cls(
            default_gateway=data.get("default_gateway", "stripe"),
            gateways={
                name: GatewayConfig.from_dict(name, gateway_data)
                for name, gateway_data in (data.get("gateways") or {}).items()
            },
            currency_decimals={
                code.upper(): int(places)
                for code, places in (data.get("currency_decimals") or {}).items()
            },
            charge_customer_fees=bool(fees.get("charge_customer", False)),
            verify_signatures=bool(webhooks.get("verify_signatures", True)),
            webhook_max_retries=int(webhooks.get("max_retries", 3)),
            gateway_timeout_seconds=int(data.get("gateway_timeout_seconds", 10)),
            gateway_max_retries=int(data.get("gateway_max_retries", 3)),
            ledger_lock_attempts=int(data.get("ledger_lock_attempts", 5)),
            idempotency_retention_days=int(data.get("idempotency_retention_days", 60)),
        )

    def gateway(self, name: str) -> GatewayConfig:
        """
        Return the configuration of an enabled gateway.

        Raises:
            GatewayNotAvailableError: If the gateway is unknown or disabled
        """
        gateway_config = self.gateways.get(name)
        if gateway_config is None or not gateway_config.enabled:
            raise GatewayNotAvailableError(
                f"Gateway '{name}' is not available",
                details={"gateway": name},
            )
        return gateway_config

    def decimals_for(self, currency: str) -> int:
        return self.currency_decimals.get(currency.upper(), DEFAULT_CURRENCY_DECIMALS)

    def quantize(self, amount, currency: str) -> Decimal:
        """Round an amount half-up to the currency's precision."""
        return quantize(amount, self.decimals_for(currency))
