"""Constants for tiered x402 payment gating."""

from __future__ import annotations

from enum import Enum


X402_VERSION = 2
PAYMENT_SCHEME = "exact"
MAX_TIMEOUT_SECONDS = 300  # protocol bound for verification and inference
PAYMENT_HEADER = "X-PAYMENT"
PAYMENT_RESPONSE_HEADER = "X-PAYMENT-RESPONSE"
DEFAULT_FACILITATOR_URL = "https://facilitator.stacksx402.com"
LEDGER_WINDOW = 100  # recent transactions kept for display


class Tier(str, Enum):
    """Service levels, ordered by rank."""

    STANDARD = "standard"
    ADVANCED = "advanced"
    PREMIUM = "premium"
    ENTERPRISE = "enterprise"

    @property
    def rank(self) -> int:
        return _RANKS[self]

    @classmethod
    def parse(cls, name: str) -> Tier:
        """Look up a tier by name (case-insensitive). Raises ValueError."""
        try:
            return cls(str(name).strip().lower())
        except ValueError:
            valid = ", ".join(t.value for t in cls)
            raise ValueError(f"Unknown tier '{name}'. Use one of: {valid}") from None

    @classmethod
    def by_rank(cls) -> list[Tier]:
        return sorted(cls, key=lambda t: t.rank)


_RANKS: dict[Tier, int] = {
    Tier.STANDARD: 1,
    Tier.ADVANCED: 2,
    Tier.PREMIUM: 3,
    Tier.ENTERPRISE: 4,
}
