"""HTTP surface: FastAPI app factory, env-driven config and the process entry point.

Routes::

    POST /analyze-info          classification and price, no billing
    POST /analyze               standard/advanced free; paid tiers answer 402
    POST /analyze-premium       premium floor, payment required
    POST /analyze-enterprise    enterprise floor, payment required
    GET  /register              x402 service discovery
    POST /get-payment-details   price display helper
    GET  /health
    GET  /ledger/summary        read-only analytics
    GET  /ledger/transactions

Every route is also served under the legacy ``/vision`` prefix.
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from dataclasses import replace
from decimal import Decimal, InvalidOperation
from typing import Any, AsyncIterator, Mapping

from fastapi import APIRouter, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from tiergate import __version__
from tiergate.backends import MemoryLedgerBackend, SqliteLedgerBackend
from tiergate.config import DEFAULT_TIERS, AcceptedAsset, GateConfig, TierSpec
from tiergate.constants import (
    DEFAULT_FACILITATOR_URL,
    PAYMENT_HEADER,
    PAYMENT_RESPONSE_HEADER,
    Tier,
)
from tiergate.errors import GateError, PaymentRequiredError, ValidationError
from tiergate.facilitator import FacilitatorClient
from tiergate.inference import GeminiProvider
from tiergate.ledger import utc_now
from tiergate.ledger_service import TransactionLedger
from tiergate.pipeline import (
    AnalysisRequest,
    PipelineOutcome,
    PipelineState,
    RequestPipeline,
    terminal_state,
)
from tiergate.verifier import FacilitatorVerifier

logger = logging.getLogger(__name__)

LEGACY_PREFIX = "/vision"


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------


class AnalyzeBody(BaseModel):
    # Optional here so a missing question is reported as a 400, not a 422.
    question: str | None = None
    imageBase64: str | None = None

    def to_request(self) -> AnalysisRequest:
        return AnalysisRequest(question=self.question, image_base64=self.imageBase64)


class PaymentDetailsBody(BaseModel):
    tier: str | None = None
    hasImage: bool = False


# ---------------------------------------------------------------------------
# Configuration from the environment
# ---------------------------------------------------------------------------


def _first(env: Mapping[str, str], *names: str, default: str | None = None) -> str | None:
    for name in names:
        value = env.get(name)
        if value:
            return value
    return default


_ASSET_DECIMALS = {"STX": 6, "sBTC": 8}


def _decimal(env: Mapping[str, str], name: str, default: str) -> Decimal:
    raw = _first(env, name, default=default)
    try:
        return Decimal(raw)
    except InvalidOperation:
        raise ValueError(f"{name} is not a number: {raw!r}") from None


def _tier_overrides(env: Mapping[str, str]) -> dict[Tier, TierSpec]:
    """Apply per-tier payee and asset variables to the default tier table.

    ``TIERGATE_<TIER>_PAY_TO`` (legacy ``WALLET_<TIER>``) sets the payee;
    ``TIERGATE_<TIER>_ASSET`` with optional ``_DECIMALS`` and ``_RATE``
    replaces the accepted assets for that tier.
    """
    tiers = dict(DEFAULT_TIERS)
    for tier in (Tier.PREMIUM, Tier.ENTERPRISE):
        prefix = f"TIERGATE_{tier.value.upper()}"
        pay_to = _first(env, f"{prefix}_PAY_TO", f"WALLET_{tier.value.upper()}")
        symbol = _first(env, f"{prefix}_ASSET")
        assets = None
        if symbol:
            raw_decimals = _first(
                env, f"{prefix}_ASSET_DECIMALS", default=str(_ASSET_DECIMALS.get(symbol, 6)),
            )
            if not raw_decimals.isdigit():
                raise ValueError(f"{prefix}_ASSET_DECIMALS is not an integer: {raw_decimals!r}")
            assets = (AcceptedAsset(
                symbol,
                decimals=int(raw_decimals),
                rate=_decimal(env, f"{prefix}_ASSET_RATE", "1"),
            ),)
        if pay_to or assets:
            tiers[tier] = replace(tiers[tier], pay_to=pay_to, assets=assets)
    return tiers


def config_from_env(environ: Mapping[str, str] | None = None) -> GateConfig:
    """Build a GateConfig from ``TIERGATE_*`` variables or their legacy names.

    Raises ValueError on an unparseable number.
    """
    env = os.environ if environ is None else environ

    return GateConfig(
        pay_to=_first(env, "TIERGATE_PAY_TO", "SERVER_ADDRESS", "WALLET_PREMIUM", default=""),
        network=_first(env, "TIERGATE_NETWORK", "NETWORK", default="testnet"),
        facilitator_url=_first(
            env, "TIERGATE_FACILITATOR_URL", "FACILITATOR_URL", default=DEFAULT_FACILITATOR_URL,
        ),
        base_url=_first(env, "TIERGATE_BASE_URL", "BASE_URL", default="http://localhost:8000"),
        service_name=_first(
            env, "TIERGATE_SERVICE_NAME", "SERVICE_NAME", default="Vision AI Analysis Service",
        ),
        service_image=_first(env, "TIERGATE_SERVICE_IMAGE", "SERVICE_IMAGE"),
        tiers=_tier_overrides(env),
        daily_limit=_decimal(env, "TIERGATE_DAILY_LIMIT", "0.5"),
        ledger_path=_first(env, "TIERGATE_LEDGER_PATH"),
        gemini_api_key=_first(env, "TIERGATE_GEMINI_API_KEY", "GEMINI_API_KEY"),
        gemini_model=_first(env, "TIERGATE_GEMINI_MODEL", default="gemini-2.0-flash"),
        inference_timeout_seconds=float(
            _first(env, "TIERGATE_INFERENCE_TIMEOUT", default="300")
        ),
    )


def build_pipeline(config: GateConfig) -> RequestPipeline:
    """Wire the production collaborators: facilitator, Gemini and a ledger backend."""
    facilitator = FacilitatorClient(config.facilitator_url, config.max_timeout_seconds)
    verifier = FacilitatorVerifier(facilitator)
    provider = GeminiProvider(
        config.gemini_api_key,
        model=config.gemini_model,
        timeout_seconds=config.inference_timeout_seconds,
    )
    if config.ledger_path:
        backend = SqliteLedgerBackend(config.ledger_path)
    else:
        backend = MemoryLedgerBackend(window=config.ledger_window)
    ledger = TransactionLedger(backend, window=config.ledger_window)
    return RequestPipeline(config, verifier, provider, ledger)


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


def _outcome_response(outcome: PipelineOutcome) -> JSONResponse:
    headers = {}
    settlement = outcome.payment_response_header
    if settlement is not None:
        headers[PAYMENT_RESPONSE_HEADER] = settlement
    return JSONResponse(content=outcome.body, headers=headers)


def create_router(pipeline: RequestPipeline) -> APIRouter:
    """Return an APIRouter serving every endpoint of one pipeline."""
    router = APIRouter()
    config = pipeline.config

    async def _run(body: AnalyzeBody, credential: str | None, floor: Tier | None) -> JSONResponse:
        outcome = await pipeline.run(body.to_request(), credential=credential, floor=floor)
        return _outcome_response(outcome)

    @router.post("/analyze-info")
    async def analyze_info(body: AnalyzeBody) -> dict[str, Any]:
        return pipeline.probe(body.to_request())

    @router.post("/analyze")
    async def analyze(
        body: AnalyzeBody,
        x_payment: str | None = Header(default=None, alias=PAYMENT_HEADER),
    ) -> JSONResponse:
        return await _run(body, x_payment, None)

    @router.post("/analyze-premium")
    async def analyze_premium(
        body: AnalyzeBody,
        x_payment: str | None = Header(default=None, alias=PAYMENT_HEADER),
    ) -> JSONResponse:
        return await _run(body, x_payment, Tier.PREMIUM)

    @router.post("/analyze-enterprise")
    async def analyze_enterprise(
        body: AnalyzeBody,
        x_payment: str | None = Header(default=None, alias=PAYMENT_HEADER),
    ) -> JSONResponse:
        return await _run(body, x_payment, Tier.ENTERPRISE)

    @router.get("/register")
    async def register() -> dict[str, Any]:
        return pipeline.issuer.registration()

    @router.post("/get-payment-details")
    async def get_payment_details(body: PaymentDetailsBody) -> dict[str, Any]:
        if not body.tier:
            raise ValidationError("Valid tier required")
        try:
            tier = Tier.parse(body.tier)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        return pipeline.issuer.payment_details(tier, body.hasImage)

    @router.get("/health")
    async def health() -> dict[str, Any]:
        return {
            "status": "healthy",
            "service": config.service_name,
            "version": __version__,
            "network": config.network,
            "payTo": config.pay_to,
            "facilitatorUrl": config.facilitator_url,
            "ledger": pipeline.ledger.health(),
            "timestamp": utc_now().isoformat(),
        }

    @router.get("/ledger/summary")
    async def ledger_summary() -> dict[str, Any]:
        return await pipeline.ledger.summary(daily_limit=config.daily_limit)

    @router.get("/ledger/transactions")
    async def ledger_transactions(
        limit: int = Query(default=20, ge=1, le=config.ledger_window),
    ) -> dict[str, Any]:
        transactions = await pipeline.ledger.recent(limit)
        return {
            "success": True,
            "count": len(transactions),
            "transactions": [tx.to_dict() for tx in transactions],
        }

    return router


async def _gate_error_handler(request: Request, exc: GateError) -> JSONResponse:
    state = terminal_state(exc)
    if isinstance(exc, PaymentRequiredError):
        logger.debug("%s %s -> %s", request.method, request.url.path, state.value)
    else:
        logger.info(
            "%s %s -> %s (%d): %s",
            request.method, request.url.path, state.value, exc.status_code, exc.message,
        )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def _request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    if errors:
        first = errors[0]
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{location}: {first.get('msg')}" if location else str(first.get("msg"))
    else:
        message = "Malformed request"
    logger.info(
        "%s %s -> %s (400): %s",
        request.method, request.url.path, PipelineState.REJECTED.value, message,
    )
    error = ValidationError(f"Invalid request: {message}")
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


async def _unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500, content={"success": False, "error": "Internal server error"},
    )


def create_app(config: GateConfig, pipeline: RequestPipeline | None = None) -> FastAPI:
    """Build the FastAPI app.

    When ``pipeline`` is omitted the production collaborators are built from
    ``config`` and closed on shutdown; a caller-supplied pipeline is left
    open.
    """
    owned = pipeline is None
    if pipeline is None:
        pipeline = build_pipeline(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info(
            "%s listening (network=%s, facilitator=%s).",
            config.service_name, config.network, config.facilitator_url,
        )
        unpaid = [
            tier.value for tier in Tier
            if config.tier_spec(tier).requires_payment and not config.pay_to_for(tier)
        ]
        if unpaid:
            logger.warning(
                "No pay-to address configured for %s; those tiers cannot settle.",
                ", ".join(unpaid),
            )
        yield
        if owned:
            await pipeline.close()

    app = FastAPI(title=config.service_name, version=__version__, lifespan=lifespan)
    app.add_exception_handler(GateError, _gate_error_handler)
    app.add_exception_handler(RequestValidationError, _request_validation_handler)
    app.add_exception_handler(Exception, _unexpected_error_handler)
    router = create_router(pipeline)
    app.include_router(router)
    app.include_router(router, prefix=LEGACY_PREFIX)
    app.state.pipeline = pipeline
    return app


def main() -> None:
    """Console entry point: ``tiergate-server``."""
    import uvicorn
    from dotenv import load_dotenv

    load_dotenv()
    logging.basicConfig(
        level=os.environ.get("TIERGATE_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    config = config_from_env()
    app = create_app(config)
    uvicorn.run(
        app,
        host=os.environ.get("TIERGATE_HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", 8000)),
    )


if __name__ == "__main__":
    main()
