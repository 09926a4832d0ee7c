"""x402 payment challenges, service discovery and payment display helpers.

Everything here is a pure function of ``GateConfig`` and the request's tier,
so the challenge issued in the probe phase is byte-identical to the one the
resubmitted request is verified against.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from tiergate.config import AcceptedAsset, GateConfig
from tiergate.constants import PAYMENT_SCHEME, X402_VERSION, Tier
from tiergate.tiers import TierResolver


# ---------------------------------------------------------------------------
# Amount conversion
# ---------------------------------------------------------------------------

# Default ceiling: 1,000 whole units. A single request priced above this is
# almost certainly a unit mismatch (minor units passed as whole units).
_MINOR_UNITS_MAX_WHOLE = 1_000


def to_minor_units(amount: Decimal, decimals: int = 6, *, max_whole: int = _MINOR_UNITS_MAX_WHOLE) -> int:
    """Convert a whole-unit amount to integer minor units (half-up rounding).

    Raises ValueError on negative amounts or amounts above *max_whole*.
    """
    amount = Decimal(amount)
    if amount < 0:
        raise ValueError(f"amount must be non-negative, got {amount}")
    if amount > max_whole:
        raise ValueError(f"amount ({amount}) exceeds ceiling ({max_whole:,})")
    scaled = amount.scaleb(decimals).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(scaled)


def format_amount(amount: Decimal, symbol: str = "STX") -> str:
    """Format for display: ``0.050000 STX``."""
    return f"{Decimal(amount):.6f} {symbol}"


# ---------------------------------------------------------------------------
# Output schema
# ---------------------------------------------------------------------------

_INPUT_FIELDS: dict[str, dict[str, Any]] = {
    "question": {
        "type": "string",
        "required": True,
        "description": "Question or prompt for analysis",
    },
    "imageBase64": {
        "type": "string",
        "required": False,
        "description": "Base64 encoded image (optional)",
    },
}

_ENVELOPE_FIELDS: dict[str, str] = {
    "success": "boolean",
    "service": "string",
    "question": "string",
    "tier": "string",
    "analysis": "string",
    "complexity_level": "number",
    "processing_time_ms": "number",
    "model": "string",
    "accuracy": "number",
    "qualityScore": "number",
    "cost_paid": "string",
    "shouldCharge": "boolean",
    "estimatedTokens": "number",
    "tokenLimit": "number",
    "timestamp": "string",
}

_PAYMENT_FIELDS: dict[str, str] = {
    "transaction": "string",
    "payer": "string",
    "network": "string",
    "asset": "string",
    "settled": "boolean",
}


def output_schema(paid: bool) -> dict[str, Any]:
    """Describe the request body and response envelope of an analyze endpoint."""
    output: dict[str, Any] = {name: {"type": t} for name, t in _ENVELOPE_FIELDS.items()}
    if paid:
        output["payment"] = {
            "type": "object",
            "properties": {name: {"type": t} for name, t in _PAYMENT_FIELDS.items()},
        }
    return {
        "input": {
            "type": "request",
            "method": "POST",
            "bodyType": "json",
            "bodyFields": {name: dict(spec) for name, spec in _INPUT_FIELDS.items()},
        },
        "output": output,
    }


# ---------------------------------------------------------------------------
# PaymentChallenge
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PaymentChallenge:
    """One accepted way to pay for one request attempt."""

    network: str
    asset: str
    amount_minor_units: int
    pay_to: str
    resource_url: str
    facilitator_url: str
    max_timeout_seconds: int
    description: str = ""
    mime_type: str = "application/json"
    scheme: str = PAYMENT_SCHEME
    output_schema: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    def to_accepts(self) -> dict[str, Any]:
        """Render as an x402 ``accepts`` entry."""
        return {
            "scheme": self.scheme,
            "network": self.network,
            "maxAmountRequired": str(self.amount_minor_units),
            "resource": self.resource_url,
            "description": self.description,
            "mimeType": self.mime_type,
            "payTo": self.pay_to,
            "maxTimeoutSeconds": self.max_timeout_seconds,
            "asset": self.asset,
            "outputSchema": self.output_schema,
        }


# ---------------------------------------------------------------------------
# ChallengeIssuer
# ---------------------------------------------------------------------------

_ENDPOINTS: dict[Tier, str] = {
    Tier.STANDARD: "/analyze",
    Tier.ADVANCED: "/analyze",
    Tier.PREMIUM: "/analyze-premium",
    Tier.ENTERPRISE: "/analyze-enterprise",
}


def describe(tier: Tier, has_image: bool) -> str:
    suffix = " (with image)" if has_image else ""
    return f"Vision AI Analysis - {tier.value.upper()} Tier{suffix}"


class ChallengeIssuer:
    """Builds payment challenges and discovery documents from config."""

    def __init__(self, config: GateConfig, resolver: TierResolver | None = None) -> None:
        self._config = config
        self._resolver = resolver or TierResolver(config)

    def endpoint_for(self, tier: Tier) -> str:
        return _ENDPOINTS[tier]

    def resource_url(self, tier: Tier) -> str:
        return self._config.base_url.rstrip("/") + self.endpoint_for(tier)

    def _challenge(
        self, tier: Tier, asset: AcceptedAsset, amount: Decimal, description: str,
    ) -> PaymentChallenge:
        return PaymentChallenge(
            network=self._config.network,
            asset=asset.symbol,
            amount_minor_units=to_minor_units(amount * asset.rate, asset.decimals),
            pay_to=self._config.pay_to_for(tier),
            resource_url=self.resource_url(tier),
            facilitator_url=self._config.facilitator_url,
            max_timeout_seconds=self._config.max_timeout_seconds,
            description=description,
            output_schema=output_schema(self._resolver.requires_payment(tier)),
        )

    def challenges_for(self, tier: Tier, has_image: bool) -> list[PaymentChallenge]:
        """One challenge per accepted asset for a paid tier.

        Raises ValueError for tiers that are served without payment.
        """
        if not self._resolver.requires_payment(tier):
            raise ValueError(f"Tier {tier.value} does not require payment")
        amount = self._resolver.price_of(tier, has_image)
        description = describe(tier, has_image)
        return [
            self._challenge(tier, asset, amount, description)
            for asset in self._config.assets_for(tier)
        ]

    def payment_required_body(
        self, challenges: list[PaymentChallenge], error: str | None = None,
    ) -> dict[str, Any]:
        """The 402 body: the ``accepts`` list plus the first challenge flattened."""
        if not challenges:
            raise ValueError("A payment-required body needs at least one challenge")
        first = challenges[0]
        return {
            "x402Version": X402_VERSION,
            "error": error or "Payment required",
            "accepts": [c.to_accepts() for c in challenges],
            "scheme": first.scheme,
            "network": first.network,
            "asset": first.asset,
            "maxAmountRequired": str(first.amount_minor_units),
            "payTo": first.pay_to,
            "facilitatorUrl": first.facilitator_url,
            "maxTimeoutSeconds": first.max_timeout_seconds,
        }

    def registration(self) -> dict[str, Any]:
        """Service-discovery document for ``GET /register``.

        Lists the image-aware (maximum) price of every tier in every
        accepted asset. Free tiers are listed for discovery; they never
        issue a 402.
        """
        accepts: list[dict[str, Any]] = []
        for tier in Tier.by_rank():
            amount = self._resolver.price_of(tier, has_image=True)
            paid = self._resolver.requires_payment(tier)
            label = "payment required" if paid else "no payment required"
            for asset in self._config.assets_for(tier):
                challenge = self._challenge(
                    tier, asset, amount,
                    f"{tier.value.capitalize()} Vision AI Analysis ({label})",
                )
                accepts.append(challenge.to_accepts())

        doc: dict[str, Any] = {
            "x402Version": X402_VERSION,
            "name": self._config.service_name,
            "accepts": accepts,
        }
        if self._config.service_image:
            doc["image"] = self._config.service_image
        return doc

    def payment_details(self, tier: Tier, has_image: bool) -> dict[str, Any]:
        """Display helper for ``POST /get-payment-details``. No side effects."""
        amount = self._resolver.price_of(tier, has_image)
        primary = self._config.assets_for(tier)[0]
        return {
            "success": True,
            "tier": tier.value,
            "hasImage": has_image,
            "amount": float(amount),
            "formattedAmount": format_amount(amount, self._config.currency),
            "microAmount": str(to_minor_units(amount * primary.rate, primary.decimals)),
            "asset": primary.symbol,
            "payTo": self._config.pay_to_for(tier),
            "network": self._config.network,
            "facilitatorUrl": self._config.facilitator_url,
            "requiresPayment": self._resolver.requires_payment(tier),
            "description": describe(tier, has_image),
        }
