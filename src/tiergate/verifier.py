"""Payment verification against an x402 facilitator.

Defines the ``PaymentVerifier`` Protocol the pipeline depends on and the
facilitator-backed implementation. Receipts only ever come from here.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from tiergate.errors import PaymentReplayError, PaymentVerificationError
from tiergate.facilitator import (
    FacilitatorClient,
    FacilitatorAuthError,
    FacilitatorError,
    FacilitatorRejectedError,
    FacilitatorTimeoutError,
)
from tiergate.replay import ReplayGuard, fingerprint
from tiergate.x402 import PaymentChallenge

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentReceipt:
    """Proof that a payment for one request attempt was verified and settled."""

    transaction_id: str
    payer: str
    network: str
    asset: str
    verified: bool = True
    settlement: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    def to_payment_block(self) -> dict[str, Any]:
        return {
            "transaction": self.transaction_id,
            "payer": self.payer,
            "network": self.network,
            "asset": self.asset,
            "settled": self.verified,
        }


@runtime_checkable
class PaymentVerifier(Protocol):
    """Validates a payment credential for one of the issued challenges.

    Returns a verified receipt or raises ``PaymentVerificationError``.
    Implementations must not retry a call whose outcome is unknown.
    """

    async def verify(
        self, credential: str, challenges: list[PaymentChallenge],
    ) -> PaymentReceipt: ...


def decode_payment_header(value: str) -> dict[str, Any]:
    """Decode an ``X-PAYMENT`` header (base64-encoded JSON object)."""
    try:
        raw = base64.b64decode(value.strip(), validate=True)
        payload = json.loads(raw)
    except (binascii.Error, ValueError) as exc:
        raise PaymentVerificationError(
            "Payment header is not valid base64-encoded JSON.", reason="malformed_header",
        ) from exc
    if not isinstance(payload, dict):
        raise PaymentVerificationError(
            "Payment header must encode a JSON object.", reason="malformed_header",
        )
    return payload


def encode_payment_response(settlement: dict[str, Any]) -> str:
    """Encode a settlement result for the ``X-PAYMENT-RESPONSE`` header."""
    return base64.b64encode(json.dumps(settlement, sort_keys=True).encode()).decode()


def _select_challenge(
    payload: dict[str, Any], challenges: list[PaymentChallenge],
) -> PaymentChallenge:
    """Pick the challenge the payload claims to pay; default to the first."""
    inner = payload.get("payload") if isinstance(payload.get("payload"), dict) else {}
    asset = payload.get("asset") or inner.get("asset")
    if not asset:
        return challenges[0]
    for challenge in challenges:
        if challenge.asset == asset:
            return challenge
    accepted = ", ".join(c.asset for c in challenges)
    raise PaymentVerificationError(
        f"Asset '{asset}' is not accepted. Accepted: {accepted}", reason="unsupported_asset",
    )


class FacilitatorVerifier:
    """``PaymentVerifier`` backed by a facilitator's /verify and /settle calls."""

    def __init__(self, client: FacilitatorClient, replay_guard: ReplayGuard | None = None) -> None:
        self._client = client
        self._guard = replay_guard or ReplayGuard()

    async def verify(
        self, credential: str, challenges: list[PaymentChallenge],
    ) -> PaymentReceipt:
        if not challenges:
            raise ValueError("verify() needs at least one challenge")

        key = f"credential:{fingerprint(credential)}"
        if self._guard.seen(key):
            raise PaymentReplayError(
                "This payment credential was already used.", reason="replay",
            )

        payload = decode_payment_header(credential)
        challenge = _select_challenge(payload, challenges)
        requirements = challenge.to_accepts()

        try:
            verification = await self._client.verify(payload, requirements)
        except FacilitatorTimeoutError as exc:
            raise PaymentVerificationError(
                f"Facilitator timed out during verification: {exc}",
                reason="timeout", status_code=504,
            ) from exc
        except FacilitatorError as exc:
            raise PaymentVerificationError(
                f"Facilitator error: {exc}", reason="facilitator_error",
            ) from exc

        if not verification.get("isValid"):
            reason = verification.get("invalidReason") or "invalid_payment"
            logger.warning("Payment %s rejected by facilitator: %s", fingerprint(credential), reason)
            raise PaymentVerificationError(f"Payment rejected: {reason}", reason=reason)

        try:
            settlement = await self._client.settle(payload, requirements)
        except FacilitatorTimeoutError as exc:
            # The payment may have been broadcast. Surface it; the client must
            # resubmit explicitly.
            logger.error(
                "Settlement timed out for payment %s; state unknown.", fingerprint(credential),
            )
            raise PaymentVerificationError(
                f"Facilitator timed out during settlement; payment state unknown: {exc}",
                reason="settlement_unknown", status_code=504,
            ) from exc
        except (FacilitatorRejectedError, FacilitatorAuthError) as exc:
            raise PaymentVerificationError(
                f"Facilitator error: {exc}", reason="facilitator_error",
            ) from exc
        except FacilitatorError as exc:
            # Connection drops and 5xx replies after the broadcast request
            # leave the payment state unknown, same as a timeout.
            logger.error(
                "Settlement failed for payment %s; state unknown: %s", fingerprint(credential), exc,
            )
            raise PaymentVerificationError(
                f"Facilitator failed during settlement; payment state unknown: {exc}",
                reason="settlement_unknown", status_code=502,
            ) from exc

        transaction_id = settlement.get("transaction") or ""
        if not settlement.get("success") or not transaction_id:
            reason = settlement.get("errorReason") or "settlement_failed"
            raise PaymentVerificationError(f"Settlement failed: {reason}", reason=reason)

        if not self._guard.check_and_record(f"tx:{transaction_id}"):
            raise PaymentReplayError(
                f"Transaction {transaction_id} already authorized a request.", reason="replay",
            )
        self._guard.check_and_record(key)

        return PaymentReceipt(
            transaction_id=transaction_id,
            payer=settlement.get("payer") or verification.get("payer") or "",
            network=settlement.get("network") or challenge.network,
            asset=challenge.asset,
            verified=True,
            settlement=settlement,
        )

    async def close(self) -> None:
        """Close the facilitator client."""
        await self._client.close()
