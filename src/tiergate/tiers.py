"""Complexity score → tier, and tier → price / token limit lookups."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from tiergate.classifier import classify
from tiergate.config import GateConfig
from tiergate.constants import Tier

_SCORE_TO_TIER: dict[int, Tier] = {
    4: Tier.ENTERPRISE,
    3: Tier.PREMIUM,
    2: Tier.ADVANCED,
}


@dataclass(frozen=True)
class TierSelection:
    tier: Tier
    complexity: int
    has_image: bool


class TierResolver:
    """Pure lookups into the configured tier table."""

    def __init__(self, config: GateConfig) -> None:
        self._config = config

    @staticmethod
    def resolve(score: int) -> Tier:
        return _SCORE_TO_TIER.get(score, Tier.STANDARD)

    def price_of(self, tier: Tier, has_image: bool) -> Decimal:
        return self._config.tier_spec(tier).price(has_image)

    def token_limit_of(self, tier: Tier) -> int:
        return self._config.tier_spec(tier).token_limit

    def requires_payment(self, tier: Tier) -> bool:
        return self._config.tier_spec(tier).requires_payment

    def select(
        self, question: str, has_image: bool, floor: Tier | None = None,
    ) -> TierSelection:
        """Classify and resolve a tier, raised to ``floor`` when given.

        ``floor`` is the minimum tier of the endpoint the request arrived on
        (e.g. ``/analyze-enterprise`` always serves enterprise).
        """
        complexity = classify(question, has_image)
        tier = self.resolve(complexity)
        if floor is not None and floor.rank > tier.rank:
            tier = floor
        return TierSelection(tier=tier, complexity=complexity, has_image=has_image)
