"""Per-request orchestration: classify, gate on payment, analyze, score, bill, record.

One pipeline serves every tier. Paid tiers follow a two-phase protocol with
no server-side session between the phases: a request without a credential
halts at the payment checkpoint (402); the client resubmits the same
request with an ``X-PAYMENT`` credential and it is processed from scratch.

State machine::

    received → classified → analyzing                      (free tiers)
    received → classified → awaiting_payment → payment_verified → analyzing
    analyzing → scored → billed → completed

Terminal non-success states: rejected (ValidationError), payment_required
(PaymentRequiredError), upstream_failed (PaymentVerificationError or
UpstreamInferenceError). Failed requests are never billed or recorded.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable

from tiergate.billing import decide, meets_quality_bar
from tiergate.config import GateConfig, TierSpec
from tiergate.constants import Tier
from tiergate.errors import (
    PaymentRequiredError,
    PaymentVerificationError,
    UpstreamInferenceError,
    ValidationError,
)
from tiergate.inference import InferenceProvider
from tiergate.ledger import Transaction, utc_now
from tiergate.ledger_service import TransactionLedger
from tiergate.quality import score_quality
from tiergate.replay import fingerprint
from tiergate.tiers import TierResolver, TierSelection
from tiergate.verifier import PaymentReceipt, PaymentVerifier, encode_payment_response
from tiergate.x402 import ChallengeIssuer, PaymentChallenge, format_amount

logger = logging.getLogger(__name__)


class PipelineState(str, Enum):
    RECEIVED = "received"
    CLASSIFIED = "classified"
    AWAITING_PAYMENT = "awaiting_payment"
    PAYMENT_VERIFIED = "payment_verified"
    ANALYZING = "analyzing"
    SCORED = "scored"
    BILLED = "billed"
    COMPLETED = "completed"
    REJECTED = "rejected"
    PAYMENT_REQUIRED = "payment_required"
    UPSTREAM_FAILED = "upstream_failed"


def terminal_state(exc: BaseException) -> PipelineState:
    """Map a pipeline exception to the terminal state it represents."""
    if isinstance(exc, ValidationError):
        return PipelineState.REJECTED
    if isinstance(exc, PaymentRequiredError):
        return PipelineState.PAYMENT_REQUIRED
    return PipelineState.UPSTREAM_FAILED


@dataclass(frozen=True)
class AnalysisRequest:
    question: str | None
    image_base64: str | None = None

    @property
    def has_image(self) -> bool:
        return bool(self.image_base64 and self.image_base64.strip())


@dataclass
class PipelineOutcome:
    """A completed request: the response envelope and what was recorded."""

    body: dict[str, Any]
    transaction: Transaction
    receipt: PaymentReceipt | None = None
    states: list[PipelineState] = field(default_factory=list)

    @property
    def state(self) -> PipelineState:
        return self.states[-1] if self.states else PipelineState.RECEIVED

    @property
    def payment_response_header(self) -> str | None:
        if self.receipt is None:
            return None
        return encode_payment_response(self.receipt.settlement or self.receipt.to_payment_block())


def _service_name(tier: Tier, spec: TierSpec) -> str:
    if not spec.requires_payment:
        return "vision_analysis"
    return f"vision_analysis_{tier.value}"


class RequestPipeline:
    """Tier-polymorphic request handler with injected collaborators."""

    def __init__(
        self,
        config: GateConfig,
        verifier: PaymentVerifier,
        provider: InferenceProvider,
        ledger: TransactionLedger,
    ) -> None:
        self._config = config
        self._verifier = verifier
        self._provider = provider
        self._ledger = ledger
        self._resolver = TierResolver(config)
        self._issuer = ChallengeIssuer(config, self._resolver)
        # Shielded work still running after its caller was cancelled.
        self._detached: set[asyncio.Task] = set()

    @property
    def config(self) -> GateConfig:
        return self._config

    @property
    def issuer(self) -> ChallengeIssuer:
        return self._issuer

    @property
    def ledger(self) -> TransactionLedger:
        return self._ledger

    # -- validation and classification ----------------------------------------

    @staticmethod
    def _validate(request: AnalysisRequest) -> str:
        question = request.question
        if not isinstance(question, str) or not question.strip():
            raise ValidationError("Question required")
        if request.image_base64 is not None and not isinstance(request.image_base64, str):
            raise ValidationError("imageBase64 must be a base64 string")
        return question

    def _select(self, request: AnalysisRequest, floor: Tier | None) -> TierSelection:
        question = self._validate(request)
        return self._resolver.select(question, request.has_image, floor=floor)

    def probe(self, request: AnalysisRequest, floor: Tier | None = None) -> dict[str, Any]:
        """Classification and pricing only. Never bills, never challenges."""
        selection = self._select(request, floor)
        tier = selection.tier
        return {
            "success": True,
            "selectedTier": tier.value,
            "complexity": selection.complexity,
            "hasImage": selection.has_image,
            "estimatedCost": float(self._resolver.price_of(tier, selection.has_image)),
            "requiresPayment": self._resolver.requires_payment(tier),
            "tokenLimit": self._resolver.token_limit_of(tier),
            "endpoint": self._issuer.endpoint_for(tier),
        }

    # -- full run -------------------------------------------------------------

    async def run(
        self,
        request: AnalysisRequest,
        credential: str | None = None,
        floor: Tier | None = None,
    ) -> PipelineOutcome:
        """Process one request end to end.

        Raises ``ValidationError``, ``PaymentRequiredError``,
        ``PaymentVerificationError`` or ``UpstreamInferenceError``; none of
        them is retried here.
        """
        states = [PipelineState.RECEIVED]
        selection = self._select(request, floor)
        states.append(PipelineState.CLASSIFIED)
        spec = self._config.tier_spec(selection.tier)
        logger.info(
            "Request classified: complexity=%d tier=%s image=%s",
            selection.complexity, selection.tier.value, selection.has_image,
        )

        if not spec.requires_payment:
            return await self._shielded(self._complete(request, selection, spec, None, states))

        challenges = self._issuer.challenges_for(selection.tier, selection.has_image)
        if not credential:
            logger.info("Payment required for %s tier.", selection.tier.value)
            raise PaymentRequiredError(self._issuer.payment_required_body(challenges))

        # From here on money may move; a caller disconnect must not cancel
        # verification, inference or billing.
        return await self._shielded(
            self._pay_and_complete(request, selection, spec, credential, challenges, states)
        )

    async def _shielded(self, coro: Awaitable[PipelineOutcome]) -> PipelineOutcome:
        task = asyncio.ensure_future(coro)
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            self._detached.add(task)
            task.add_done_callback(self._report_detached)
            raise

    def _report_detached(self, task: asyncio.Task) -> None:
        self._detached.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Request failed after the caller was cancelled: %s", exc, exc_info=exc,
            )
        else:
            logger.info(
                "Request completed after the caller was cancelled (transaction %s).",
                task.result().transaction.id,
            )

    async def _pay_and_complete(
        self,
        request: AnalysisRequest,
        selection: TierSelection,
        spec: TierSpec,
        credential: str,
        challenges: list[PaymentChallenge],
        states: list[PipelineState],
    ) -> PipelineOutcome:
        states.append(PipelineState.AWAITING_PAYMENT)
        try:
            receipt = await self._verifier.verify(credential, challenges)
        except PaymentVerificationError as exc:
            logger.warning(
                "Payment %s not verified: %s", fingerprint(credential), exc.message,
            )
            if exc.challenge is None:
                exc.challenge = self._issuer.payment_required_body(challenges, error=exc.message)
            raise
        if not receipt.verified or not receipt.transaction_id:
            raise PaymentVerificationError(
                "Payment verifier returned an unverified receipt.",
                reason="unverified",
                challenge=self._issuer.payment_required_body(challenges),
            )
        states.append(PipelineState.PAYMENT_VERIFIED)
        return await self._complete(request, selection, spec, receipt, states)

    async def _complete(
        self,
        request: AnalysisRequest,
        selection: TierSelection,
        spec: TierSpec,
        receipt: PaymentReceipt | None,
        states: list[PipelineState],
    ) -> PipelineOutcome:
        question = request.question or ""
        tier = selection.tier

        states.append(PipelineState.ANALYZING)
        try:
            result = await self._provider.analyze(
                question,
                request.image_base64 if selection.has_image else None,
                max_tokens=spec.token_limit,
            )
        except UpstreamInferenceError as exc:
            if receipt is not None:
                # Documented gap: the collected payment is reported, not reversed.
                logger.error(
                    "Inference failed after payment %s settled (%s tier): %s",
                    receipt.transaction_id, tier.value, exc.message,
                )
                exc.payment = {**receipt.to_payment_block(), "status": "completed", "refunded": False}
            else:
                logger.warning("Inference failed (%s tier): %s", tier.value, exc.message)
            raise

        quality = score_quality(result.text, question, selection.has_image)
        states.append(PipelineState.SCORED)

        decision = decide(spec, receipt is not None, quality, selection.has_image)
        states.append(PipelineState.BILLED)

        tx, _ = await self._ledger.record(
            tier.value, decision.amount, decision.charged, quality,
        )
        states.append(PipelineState.COMPLETED)

        list_price = spec.price(selection.has_image)
        display_quality = round(quality, 2)
        body: dict[str, Any] = {
            "success": True,
            "service": _service_name(tier, spec),
            "question": question,
            "tier": tier.value,
            "analysis": result.text,
            "complexity_level": selection.complexity,
            "processing_time_ms": result.processing_time_ms,
            "model": result.model,
            "accuracy": display_quality,
            "qualityScore": display_quality,
            "meetsQualityBar": meets_quality_bar(quality, self._config.min_quality_score),
            "cost_paid": format_amount(decision.amount, self._config.currency),
            "listPrice": format_amount(list_price, self._config.currency),
            "shouldCharge": decision.charged,
            "estimatedTokens": result.estimated_tokens,
            "tokenLimit": spec.token_limit,
            "transactionId": tx.id,
            "timestamp": utc_now().isoformat(),
        }
        if receipt is not None:
            body["payment"] = receipt.to_payment_block()

        return PipelineOutcome(body=body, transaction=tx, receipt=receipt, states=states)

    async def close(self) -> None:
        """Close the verifier's and provider's HTTP clients, where they own one."""
        for collaborator in (self._verifier, self._provider):
            close = getattr(collaborator, "close", None)
            if close is not None:
                await close()


__all__ = [
    "AnalysisRequest",
    "PipelineOutcome",
    "PipelineState",
    "RequestPipeline",
    "terminal_state",
]
