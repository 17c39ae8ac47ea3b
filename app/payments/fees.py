"""
Gateway fee schedules.

Each adapter declares a FeeSchedule. The fee is computed on the gross
amount and rounded half-up to the currency precision:

    Stripe:    2.9% + 0.30
    PayPal:    2.9% + 0.30 (USD), 4.4% + 0.30 otherwise
    ClickPesa: TZS tiers 0% (<= 1,000), 2% (<= 10,000), 3% (<= 50,000),
               3.5% above; 3.5% for other currencies

Fees recorded at charge time are provisional; an authoritative
fee.updated event from the gateway replaces them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

from payments.money import ZERO, quantize, to_decimal

HUNDRED = Decimal("100")


@dataclass(frozen=True)
class FeeTier:
    """Percentage applied to amounts up to and including upper_bound."""

    upper_bound: Decimal
    percent: Decimal


@dataclass(frozen=True)
class FeeSchedule:
    """
    Percentage plus fixed fee, with optional international and tiered rates.

    Attributes:
        percent: Base percentage
        fixed: Fixed fee in major units
        international_percent: Percentage for currencies outside home_currencies
        home_currencies: Currencies charged at the base percentage
        tiers: Per-currency ascending tiers (amount bands)
        tier_overflow_percent: Percentage above the last tier
    """

    percent: Decimal = ZERO
    fixed: Decimal = ZERO
    international_percent: Decimal | None = None
    home_currencies: tuple[str, ...] = ()
    tiers: dict[str, tuple[FeeTier, ...]] = field(default_factory=dict)
    tier_overflow_percent: Decimal | None = None

    def rate_for(self, amount: Decimal, currency: str) -> tuple[Decimal, Decimal]:
        """Return (percent, fixed) applicable to the amount and currency."""
        currency = currency.upper()
        tiers = self.tiers.get(currency)
        if tiers:
            for tier in tiers:
                if amount <= tier.upper_bound:
                    return tier.percent, self.fixed
            return (self.tier_overflow_percent or self.percent), self.fixed
        if (
            self.international_percent is not None
            and self.home_currencies
            and currency not in self.home_currencies
        ):
            return self.international_percent, self.fixed
        return self.percent, self.fixed

    def calculate(self, amount, currency: str, decimals: int = 2) -> Decimal:
        """
        Calculate the fee for a gross amount.

        Args:
            amount: Gross amount in major units
            currency: ISO 4217 currency code
            decimals: Currency precision used for rounding

        Returns:
            Fee rounded half-up to the currency precision
        """
        amount = to_decimal(amount)
        if amount <= ZERO:
            return quantize(ZERO, decimals)
        percent, fixed = self.rate_for(amount, currency)
        if percent == ZERO:
            return quantize(ZERO, decimals)
        return quantize(amount * percent / HUNDRED + fixed, decimals)


STRIPE_FEES = FeeSchedule(percent=Decimal("2.9"), fixed=Decimal("0.30"))

PAYPAL_FEES = FeeSchedule(
    percent=Decimal("2.9"),
    fixed=Decimal("0.30"),
    international_percent=Decimal("4.4"),
    home_currencies=("USD",),
)

CLICKPESA_FEES = FeeSchedule(
    percent=Decimal("3.5"),
    tiers={
        "TZS": (
            FeeTier(Decimal("1000"), Decimal("0")),
            FeeTier(Decimal("10000"), Decimal("2")),
            FeeTier(Decimal("50000"), Decimal("3")),
        ),
    },
    tier_overflow_percent=Decimal("3.5"),
)
