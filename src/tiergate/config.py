"""Tiergate configuration: plain frozen dataclasses, no pydantic.

The host process constructs a ``GateConfig`` once at startup (see
``tiergate.server.config_from_env``) and passes it explicitly to every
component. Nothing in the package reads environment variables directly.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from types import MappingProxyType
from typing import Mapping

from tiergate.constants import (
    DEFAULT_FACILITATOR_URL,
    LEDGER_WINDOW,
    MAX_TIMEOUT_SECONDS,
    Tier,
)


@dataclass(frozen=True)
class AcceptedAsset:
    """An asset a paid tier can be settled in.

    ``rate`` converts one currency unit of the price table into whole units
    of this asset; ``decimals`` is the asset's minor-unit exponent
    (6 for micro-STX, 8 for sats).
    """

    symbol: str
    decimals: int = 6
    rate: Decimal = Decimal("1")


@dataclass(frozen=True)
class TierSpec:
    """Price (currency units) and token limit for one tier.

    ``pay_to`` and ``assets`` override the service-wide payee and accepted
    assets for this tier only; ``None`` keeps the service-wide value.
    """

    price_text: Decimal
    price_image: Decimal
    token_limit: int
    requires_payment: bool = False
    pay_to: str | None = None
    assets: tuple[AcceptedAsset, ...] | None = None

    def price(self, has_image: bool) -> Decimal:
        return self.price_image if has_image else self.price_text


DEFAULT_TIERS: Mapping[Tier, TierSpec] = MappingProxyType({
    Tier.STANDARD: TierSpec(Decimal("0.01"), Decimal("0.02"), 500),
    Tier.ADVANCED: TierSpec(Decimal("0.02"), Decimal("0.04"), 2000),
    Tier.PREMIUM: TierSpec(Decimal("0.03"), Decimal("0.06"), 5000, requires_payment=True),
    Tier.ENTERPRISE: TierSpec(Decimal("0.05"), Decimal("0.10"), 10000, requires_payment=True),
})


@dataclass(frozen=True)
class GateConfig:
    pay_to: str = ""
    network: str = "testnet"
    facilitator_url: str = DEFAULT_FACILITATOR_URL
    base_url: str = "http://localhost:8000"
    service_name: str = "Vision AI Analysis Service"
    service_image: str | None = None
    currency: str = "STX"
    tiers: Mapping[Tier, TierSpec] = field(default_factory=lambda: DEFAULT_TIERS)
    accepted_assets: tuple[AcceptedAsset, ...] = (AcceptedAsset("STX"),)
    max_timeout_seconds: int = MAX_TIMEOUT_SECONDS
    daily_limit: Decimal = Decimal("0.5")  # shown in analytics, never enforced
    min_quality_score: float = 0.60  # analytics only
    ledger_window: int = LEDGER_WINDOW
    ledger_path: str | None = None  # None = in-memory ledger
    gemini_api_key: str | None = None
    gemini_model: str = "gemini-2.0-flash"
    inference_timeout_seconds: float = float(MAX_TIMEOUT_SECONDS)

    def __post_init__(self) -> None:
        missing = [t.value for t in Tier if t not in self.tiers]
        if missing:
            raise ValueError(f"Tier table is missing: {', '.join(missing)}")
        if not self.accepted_assets:
            raise ValueError("At least one accepted asset is required.")

        previous: TierSpec | None = None
        for tier in Tier.by_rank():
            spec = self.tiers[tier]
            if spec.price_text < 0 or spec.token_limit <= 0:
                raise ValueError(f"Tier {tier.value}: prices must be >= 0 and token limit > 0")
            if spec.price_image < spec.price_text:
                raise ValueError(f"Tier {tier.value}: image price is below text price")
            if previous is not None and not (
                spec.price_text > previous.price_text
                and spec.price_image > previous.price_image
                and spec.token_limit > previous.token_limit
            ):
                raise ValueError(
                    f"Tier {tier.value}: price and token limit must increase with tier rank"
                )
            if spec.assets is not None and not spec.assets:
                raise ValueError(f"Tier {tier.value}: asset override must not be empty")
            previous = spec

        # Freeze a caller-supplied dict so the config stays immutable.
        if not isinstance(self.tiers, MappingProxyType):
            object.__setattr__(self, "tiers", MappingProxyType(dict(self.tiers)))

    def tier_spec(self, tier: Tier) -> TierSpec:
        return self.tiers[tier]

    def pay_to_for(self, tier: Tier) -> str:
        return self.tiers[tier].pay_to or self.pay_to

    def assets_for(self, tier: Tier) -> tuple[AcceptedAsset, ...]:
        return self.tiers[tier].assets or self.accepted_assets
