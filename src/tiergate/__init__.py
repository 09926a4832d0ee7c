"""Tiergate: tiered, quality-scored AI inference behind x402 payments.

Free tiers are answered directly; paid tiers answer 402 until the client
resubmits with a verified payment credential.
"""

__version__ = "0.1.0"

from tiergate.config import GateConfig, TierSpec, AcceptedAsset
from tiergate.constants import Tier, X402_VERSION, PAYMENT_HEADER, PAYMENT_RESPONSE_HEADER
from tiergate.errors import (
    GateError,
    ValidationError,
    PaymentRequiredError,
    PaymentVerificationError,
    PaymentReplayError,
    UpstreamInferenceError,
)
from tiergate.classifier import classify
from tiergate.tiers import TierResolver, TierSelection
from tiergate.x402 import ChallengeIssuer, PaymentChallenge
from tiergate.facilitator import FacilitatorClient, FacilitatorError
from tiergate.verifier import PaymentReceipt, PaymentVerifier, FacilitatorVerifier
from tiergate.inference import InferenceProvider, GeminiProvider, AnalysisResult
from tiergate.quality import score_quality
from tiergate.billing import BillingDecision, decide
from tiergate.ledger import Transaction, DailyStats
from tiergate.ledger_backend import LedgerBackend
from tiergate.ledger_service import TransactionLedger
from tiergate.backends import MemoryLedgerBackend, SqliteLedgerBackend
from tiergate.pipeline import AnalysisRequest, PipelineOutcome, PipelineState, RequestPipeline

__all__ = [
    "GateConfig",
    "TierSpec",
    "AcceptedAsset",
    "Tier",
    "X402_VERSION",
    "PAYMENT_HEADER",
    "PAYMENT_RESPONSE_HEADER",
    "GateError",
    "ValidationError",
    "PaymentRequiredError",
    "PaymentVerificationError",
    "PaymentReplayError",
    "UpstreamInferenceError",
    "classify",
    "TierResolver",
    "TierSelection",
    "ChallengeIssuer",
    "PaymentChallenge",
    "FacilitatorClient",
    "FacilitatorError",
    "PaymentReceipt",
    "PaymentVerifier",
    "FacilitatorVerifier",
    "InferenceProvider",
    "GeminiProvider",
    "AnalysisResult",
    "score_quality",
    "BillingDecision",
    "decide",
    "Transaction",
    "DailyStats",
    "LedgerBackend",
    "TransactionLedger",
    "MemoryLedgerBackend",
    "SqliteLedgerBackend",
    "AnalysisRequest",
    "PipelineOutcome",
    "PipelineState",
    "RequestPipeline",
]
