"""Inference provider boundary and the Gemini REST implementation.

Self-contained: uses raw httpx against the Generative Language API, no
Google SDK. One blocking call per request, never retried.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import httpx

from tiergate.constants import MAX_TIMEOUT_SECONDS
from tiergate.errors import UpstreamInferenceError

logger = logging.getLogger(__name__)

_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"


def estimate_tokens(text: str) -> int:
    """Rough token estimate: four characters per token, rounded up."""
    return math.ceil(len(text) / 4)


@dataclass(frozen=True)
class AnalysisResult:
    text: str
    processing_time_ms: int
    estimated_tokens: int
    model: str = ""


@runtime_checkable
class InferenceProvider(Protocol):
    """Answers a question, optionally about an image.

    Raises ``UpstreamInferenceError`` when the provider is unreachable, the
    credential is invalid, the quota is exhausted or the reply is empty.
    """

    async def analyze(
        self, question: str, image_base64: str | None = None, *, max_tokens: int | None = None,
    ) -> AnalysisResult: ...


class GeminiProvider:
    """``InferenceProvider`` backed by ``models/{model}:generateContent``."""

    def __init__(
        self,
        api_key: str | None,
        model: str = "gemini-2.0-flash",
        timeout_seconds: float = MAX_TIMEOUT_SECONDS,
    ) -> None:
        self._api_key = api_key or ""
        self._model = model
        self._client = httpx.AsyncClient(
            base_url=_BASE_URL,
            timeout=httpx.Timeout(connect=10.0, read=timeout_seconds, write=30.0, pool=5.0),
        )
        if not self._api_key:
            logger.warning("Gemini API key not set; inference calls will fail.")

    @property
    def model(self) -> str:
        return self._model

    @staticmethod
    def _build_body(
        question: str, image_base64: str | None, max_tokens: int | None,
    ) -> dict[str, Any]:
        parts: list[dict[str, Any]] = []
        if image_base64:
            parts.append({"inline_data": {"mime_type": "image/jpeg", "data": image_base64}})
        parts.append({"text": question})
        body: dict[str, Any] = {"contents": [{"role": "user", "parts": parts}]}
        if max_tokens:
            body["generationConfig"] = {"maxOutputTokens": max_tokens}
        return body

    @staticmethod
    def _extract_text(data: dict[str, Any]) -> str:
        chunks: list[str] = []
        for candidate in data.get("candidates") or []:
            content = candidate.get("content") or {}
            for part in content.get("parts") or []:
                text = part.get("text")
                if text:
                    chunks.append(text)
            if chunks:
                break
        return "".join(chunks)

    async def analyze(
        self, question: str, image_base64: str | None = None, *, max_tokens: int | None = None,
    ) -> AnalysisResult:
        if not self._api_key:
            raise UpstreamInferenceError("Inference API key is not configured.", reason="auth")

        start = time.monotonic()
        try:
            response = await self._client.post(
                f"/models/{self._model}:generateContent",
                params={"key": self._api_key},
                json=self._build_body(question, image_base64, max_tokens),
            )
        except httpx.TimeoutException as exc:
            raise UpstreamInferenceError(f"Inference timed out: {exc}", reason="timeout") from exc
        except httpx.HTTPError as exc:
            raise UpstreamInferenceError(
                f"Inference provider unreachable: {exc}", reason="unavailable",
            ) from exc

        if response.status_code in (401, 403):
            raise UpstreamInferenceError("Inference API key was rejected.", reason="auth")
        if response.status_code == 429:
            raise UpstreamInferenceError("Inference quota exceeded.", reason="quota")
        if response.status_code >= 400:
            logger.warning(
                "Inference provider returned %d: %s", response.status_code, response.text[:200],
            )
            raise UpstreamInferenceError(
                f"Inference provider error (HTTP {response.status_code}).", reason="upstream",
            )

        try:
            data = response.json()
        except ValueError as exc:
            logger.warning("Inference provider returned a non-JSON body: %s", response.text[:200])
            raise UpstreamInferenceError(
                "Inference provider returned an unreadable response.", reason="upstream",
            ) from exc
        if not isinstance(data, dict):
            raise UpstreamInferenceError(
                "Inference provider returned an unexpected response shape.", reason="upstream",
            )
        try:
            text = self._extract_text(data)
        except (AttributeError, TypeError) as exc:
            raise UpstreamInferenceError(
                "Inference provider returned an unexpected response shape.", reason="upstream",
            ) from exc
        if not text.strip():
            raise UpstreamInferenceError(
                "Empty response from inference provider.", reason="empty_response",
            )

        elapsed_ms = int((time.monotonic() - start) * 1000)
        return AnalysisResult(
            text=text,
            processing_time_ms=elapsed_ms,
            estimated_tokens=estimate_tokens(text),
            model=self._model,
        )

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
