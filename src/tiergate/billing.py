"""Charge decision: payment-before-delivery for paid tiers, free otherwise."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from tiergate.config import TierSpec


@dataclass(frozen=True)
class BillingDecision:
    charged: bool
    amount: Decimal
    quality: float


def decide(
    spec: TierSpec, has_receipt: bool, quality: float, has_image: bool,
) -> BillingDecision:
    """Decide whether a completed request is charged, and for how much.

    Free tiers are never charged; quality is recorded for analytics only.
    Paid tiers are charged the table price once a verified receipt exists,
    whatever the quality: the payment was collected before inference and
    is not refunded. Reaching billing on a paid tier without a receipt is
    a pipeline bug.
    """
    if not spec.requires_payment:
        return BillingDecision(charged=False, amount=Decimal("0"), quality=quality)
    if not has_receipt:
        raise ValueError("Paid tier reached billing without a verified receipt")
    return BillingDecision(charged=True, amount=spec.price(has_image), quality=quality)


def meets_quality_bar(quality: float, minimum: float) -> bool:
    """Display-only flag; never feeds back into ``decide``."""
    return quality >= minimum
