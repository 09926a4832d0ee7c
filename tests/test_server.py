"""Tests for the FastAPI surface and env-driven configuration."""

import base64
import dataclasses
import json
from decimal import Decimal
from unittest.mock import AsyncMock

import httpx
import pytest
from fastapi.testclient import TestClient

from tiergate.backends import MemoryLedgerBackend
from tiergate.config import DEFAULT_TIERS, AcceptedAsset, GateConfig
from tiergate.constants import Tier
from tiergate.errors import PaymentVerificationError, UpstreamInferenceError
from tiergate.facilitator import FacilitatorClient
from tiergate.inference import AnalysisResult
from tiergate.ledger_service import TransactionLedger
from tiergate.pipeline import RequestPipeline
from tiergate.server import build_pipeline, config_from_env, create_app
from tiergate.verifier import FacilitatorVerifier, PaymentReceipt

SIMPLE = "What is the capital of France?"
EXPLAIN = "Explain why Ankara is the capital of Turkey"


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


def _config() -> GateConfig:
    return GateConfig(
        pay_to="ST1PAYTO",
        base_url="https://api.example.com",
        service_name="Vision Test",
    )


def _verifier(error: Exception | None = None):
    verifier = AsyncMock()
    if error is not None:
        verifier.verify = AsyncMock(side_effect=error)
    else:
        verifier.verify = AsyncMock(return_value=PaymentReceipt(
            transaction_id="0xtx1",
            payer="SP1PAYER",
            network="testnet",
            asset="STX",
            settlement={"success": True, "transaction": "0xtx1"},
        ))
    return verifier


def _provider(error: Exception | None = None):
    provider = AsyncMock()
    if error is not None:
        provider.analyze = AsyncMock(side_effect=error)
    else:
        provider.analyze = AsyncMock(return_value=AnalysisResult(
            text="Ankara is the capital of Turkey.",
            processing_time_ms=5,
            estimated_tokens=8,
            model="fake-model",
        ))
    return provider


def _client(verifier=None, provider=None) -> TestClient:
    config = _config()
    pipeline = RequestPipeline(
        config,
        verifier or _verifier(),
        provider or _provider(),
        TransactionLedger(MemoryLedgerBackend(), window=config.ledger_window),
    )
    return TestClient(create_app(config, pipeline=pipeline))


# ---------------------------------------------------------------------------
# Analyze endpoints
# ---------------------------------------------------------------------------


class TestAnalyze:
    def test_free_question(self) -> None:
        resp = _client().post("/analyze", json={"question": SIMPLE})
        assert resp.status_code == 200
        body = resp.json()
        assert body["tier"] == "standard"
        assert body["shouldCharge"] is False
        assert "x-payment-response" not in resp.headers

    def test_paid_question_without_payment(self) -> None:
        resp = _client().post("/analyze", json={"question": EXPLAIN})
        assert resp.status_code == 402
        body = resp.json()
        assert body["x402Version"] == 2
        assert body["accepts"][0]["maxAmountRequired"] == "30000"
        assert body["payTo"] == "ST1PAYTO"

    def test_paid_question_with_payment(self) -> None:
        verifier = _verifier()
        resp = _client(verifier=verifier).post(
            "/analyze", json={"question": EXPLAIN}, headers={"X-PAYMENT": "cred"},
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["tier"] == "premium"
        assert body["payment"]["transaction"] == "0xtx1"
        settlement = json.loads(base64.b64decode(resp.headers["X-PAYMENT-RESPONSE"]))
        assert settlement["transaction"] == "0xtx1"
        assert verifier.verify.call_args[0][0] == "cred"

    def test_premium_endpoint_floor(self) -> None:
        resp = _client().post("/analyze-premium", json={"question": SIMPLE})
        assert resp.status_code == 402
        assert resp.json()["accepts"][0]["resource"] == "https://api.example.com/analyze-premium"

    def test_enterprise_challenge_uses_tier_payee(self) -> None:
        tiers = dict(DEFAULT_TIERS)
        tiers[Tier.ENTERPRISE] = dataclasses.replace(
            tiers[Tier.ENTERPRISE],
            pay_to="ST1ENTERPRISE",
            assets=(AcceptedAsset("sBTC", decimals=8, rate=Decimal("0.001")),),
        )
        config = GateConfig(pay_to="ST1PAYTO", base_url="https://api.example.com", tiers=tiers)
        pipeline = RequestPipeline(
            config, _verifier(), _provider(),
            TransactionLedger(MemoryLedgerBackend(), window=config.ledger_window),
        )
        resp = TestClient(create_app(config, pipeline=pipeline)).post(
            "/analyze-enterprise", json={"question": SIMPLE},
        )
        assert resp.status_code == 402
        body = resp.json()
        assert body["payTo"] == "ST1ENTERPRISE"
        assert body["asset"] == "sBTC"
        assert body["maxAmountRequired"] == "5000"

    def test_enterprise_endpoint_with_image(self) -> None:
        resp = _client().post(
            "/analyze-enterprise",
            json={"question": SIMPLE, "imageBase64": "aGVsbG8="},
            headers={"X-PAYMENT": "cred"},
        )
        assert resp.status_code == 200
        assert resp.json()["cost_paid"] == "0.100000 STX"

    def test_missing_question(self) -> None:
        resp = _client().post("/analyze", json={})
        assert resp.status_code == 400
        assert resp.json() == {"success": False, "error": "Question required"}

    def test_payment_rejected(self) -> None:
        error = PaymentVerificationError("Payment rejected: expired", reason="expired")
        resp = _client(verifier=_verifier(error)).post(
            "/analyze-premium", json={"question": EXPLAIN}, headers={"X-PAYMENT": "cred"},
        )
        assert resp.status_code == 402
        body = resp.json()
        assert body["reason"] == "expired"
        assert body["accepts"]

    def test_upstream_failure_after_payment(self) -> None:
        error = UpstreamInferenceError("Inference quota exceeded.", reason="quota")
        client = _client(provider=_provider(error))
        resp = client.post(
            "/analyze-premium", json={"question": EXPLAIN}, headers={"X-PAYMENT": "cred"},
        )
        assert resp.status_code == 502
        assert resp.json()["payment"]["transaction"] == "0xtx1"
        summary = client.get("/ledger/summary").json()
        assert summary["allTime"]["requests"] == 0

    def test_wrongly_typed_question(self) -> None:
        resp = _client().post("/analyze", json={"question": 123})
        assert resp.status_code == 400
        body = resp.json()
        assert body["success"] is False
        assert "question" in body["error"]
        assert "detail" not in body

    def test_malformed_json_body(self) -> None:
        resp = _client().post(
            "/analyze", content=b"{not json", headers={"Content-Type": "application/json"},
        )
        assert resp.status_code == 400
        assert resp.json()["success"] is False

    def test_settlement_disconnect_returns_challenge(self) -> None:
        facilitator = FacilitatorClient("https://facilitator.example.com")
        facilitator._client.request = AsyncMock(side_effect=[
            httpx.Response(
                status_code=200,
                json={"isValid": True, "payer": "SP1PAYER"},
                request=httpx.Request("POST", "https://facilitator.example.com/verify"),
            ),
            httpx.RemoteProtocolError("Server disconnected without sending a response."),
        ])
        credential = base64.b64encode(json.dumps({
            "x402Version": 2, "scheme": "exact", "network": "testnet",
            "payload": {"transaction": "0xsigned"},
        }).encode()).decode()
        client = _client(verifier=FacilitatorVerifier(facilitator))
        resp = client.post(
            "/analyze-premium", json={"question": EXPLAIN}, headers={"X-PAYMENT": credential},
        )
        assert resp.status_code == 502
        body = resp.json()
        assert body["reason"] == "settlement_unknown"
        assert body["accepts"][0]["payTo"] == "ST1PAYTO"
        assert client.get("/ledger/summary").json()["allTime"]["requests"] == 0

    def test_legacy_prefix(self) -> None:
        resp = _client().post("/vision/analyze", json={"question": SIMPLE})
        assert resp.status_code == 200
        assert resp.json()["tier"] == "standard"


class TestAnalyzeInfo:
    def test_probe(self) -> None:
        resp = _client().post("/analyze-info", json={"question": EXPLAIN, "imageBase64": "aGVsbG8="})
        assert resp.status_code == 200
        body = resp.json()
        assert body["selectedTier"] == "premium"
        assert body["estimatedCost"] == 0.06
        assert body["requiresPayment"] is True

    def test_probe_validates(self) -> None:
        resp = _client().post("/analyze-info", json={"question": "  "})
        assert resp.status_code == 400


# ---------------------------------------------------------------------------
# Discovery, display and analytics
# ---------------------------------------------------------------------------


class TestDiscovery:
    def test_register(self) -> None:
        resp = _client().get("/register")
        assert resp.status_code == 200
        body = resp.json()
        assert body["name"] == "Vision Test"
        assert len(body["accepts"]) == 4

    def test_payment_details(self) -> None:
        resp = _client().post("/get-payment-details", json={"tier": "premium", "hasImage": True})
        assert resp.status_code == 200
        body = resp.json()
        assert body["amount"] == 0.06
        assert body["formattedAmount"] == "0.060000 STX"
        assert body["microAmount"] == "60000"

    def test_payment_details_requires_tier(self) -> None:
        resp = _client().post("/get-payment-details", json={"hasImage": True})
        assert resp.status_code == 400
        assert resp.json() == {"success": False, "error": "Valid tier required"}

    def test_payment_details_unknown_tier(self) -> None:
        resp = _client().post("/get-payment-details", json={"tier": "platinum"})
        assert resp.status_code == 400
        assert "Unknown tier" in resp.json()["error"]

    def test_health(self) -> None:
        resp = _client().get("/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "healthy"
        assert body["ledger"]["backend"] == "MemoryLedgerBackend"


class TestLedgerRoutes:
    def test_summary_after_requests(self) -> None:
        client = _client()
        client.post("/analyze", json={"question": SIMPLE})
        client.post("/analyze-premium", json={"question": EXPLAIN}, headers={"X-PAYMENT": "cred"})
        body = client.get("/ledger/summary").json()
        assert body["today"]["requestsToday"] == 2
        assert body["today"]["chargedRequests"] == 1
        assert body["today"]["totalSpent"] == "0.03"
        assert body["dailyLimit"]["enforced"] is False

    def test_transactions(self) -> None:
        client = _client()
        client.post("/analyze", json={"question": SIMPLE})
        body = client.get("/ledger/transactions", params={"limit": 5}).json()
        assert body["count"] == 1
        assert body["transactions"][0]["status"] == "free"

    def test_transactions_limit_validated(self) -> None:
        resp = _client().get("/ledger/transactions", params={"limit": 0})
        assert resp.status_code == 400
        assert resp.json()["success"] is False
        assert "limit" in resp.json()["error"]


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class TestConfigFromEnv:
    def test_defaults(self) -> None:
        config = config_from_env({})
        assert config.pay_to == ""
        assert config.network == "testnet"
        assert config.facilitator_url == "https://facilitator.stacksx402.com"
        assert config.ledger_path is None

    def test_legacy_names(self) -> None:
        config = config_from_env({
            "SERVER_ADDRESS": "ST1LEGACY",
            "NETWORK": "mainnet",
            "FACILITATOR_URL": "https://f.example.com",
            "BASE_URL": "https://api.example.com",
            "SERVICE_NAME": "Legacy",
            "SERVICE_IMAGE": "https://img.example.com/x.png",
            "GEMINI_API_KEY": "g-key",
        })
        assert config.pay_to == "ST1LEGACY"
        assert config.network == "mainnet"
        assert config.facilitator_url == "https://f.example.com"
        assert config.base_url == "https://api.example.com"
        assert config.service_name == "Legacy"
        assert config.service_image == "https://img.example.com/x.png"
        assert config.gemini_api_key == "g-key"

    def test_prefixed_names_win(self) -> None:
        config = config_from_env({
            "SERVER_ADDRESS": "ST1LEGACY",
            "TIERGATE_PAY_TO": "ST1NEW",
            "TIERGATE_DAILY_LIMIT": "2.5",
        })
        assert config.pay_to == "ST1NEW"
        assert config.daily_limit == Decimal("2.5")

    def test_tier_wallets_and_enterprise_asset(self) -> None:
        config = config_from_env({
            "SERVER_ADDRESS": "ST1SERVER",
            "WALLET_PREMIUM": "ST1PREMIUM",
            "WALLET_ENTERPRISE": "ST1ENTERPRISE",
            "TIERGATE_ENTERPRISE_ASSET": "sBTC",
            "TIERGATE_ENTERPRISE_ASSET_RATE": "0.001",
        })
        assert config.pay_to == "ST1SERVER"
        assert config.pay_to_for(Tier.PREMIUM) == "ST1PREMIUM"
        assert config.pay_to_for(Tier.ENTERPRISE) == "ST1ENTERPRISE"
        [asset] = config.assets_for(Tier.ENTERPRISE)
        assert asset.symbol == "sBTC"
        assert asset.decimals == 8
        assert asset.rate == Decimal("0.001")
        assert config.assets_for(Tier.PREMIUM)[0].symbol == "STX"

    def test_premium_wallet_is_legacy_fallback_payee(self) -> None:
        config = config_from_env({"WALLET_PREMIUM": "ST1PREMIUM"})
        assert config.pay_to == "ST1PREMIUM"
        assert config.pay_to_for(Tier.ENTERPRISE) == "ST1PREMIUM"

    def test_bad_asset_decimals(self) -> None:
        with pytest.raises(ValueError, match="ASSET_DECIMALS"):
            config_from_env({"TIERGATE_ENTERPRISE_ASSET": "sBTC", "TIERGATE_ENTERPRISE_ASSET_DECIMALS": "x"})

    def test_bad_daily_limit(self) -> None:
        with pytest.raises(ValueError, match="TIERGATE_DAILY_LIMIT"):
            config_from_env({"TIERGATE_DAILY_LIMIT": "lots"})


class TestBuildPipeline:
    def test_memory_backend_by_default(self) -> None:
        pipeline = build_pipeline(_config())
        assert pipeline.ledger.health()["backend"] == "MemoryLedgerBackend"

    def test_sqlite_backend_with_path(self, tmp_path) -> None:
        config = GateConfig(ledger_path=str(tmp_path / "ledger.db"))
        pipeline = build_pipeline(config)
        assert pipeline.ledger.health()["backend"] == "SqliteLedgerBackend"
        assert (tmp_path / "ledger.db").exists()

    def test_owned_pipeline_app_starts(self) -> None:
        with TestClient(create_app(_config())) as client:
            assert client.get("/health").status_code == 200
