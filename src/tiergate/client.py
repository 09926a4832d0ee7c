"""Auto-pay client for tiergate endpoints.

Posts a question; on a 402 hands the first ``accepts`` entry to a signer
(an external wallet that returns an ``X-PAYMENT`` credential) and resubmits
once. Any further failure is raised to the caller.
"""

from __future__ import annotations

import inspect
import logging
from typing import Any, Awaitable, Callable, Union

import httpx

from tiergate.constants import MAX_TIMEOUT_SECONDS, PAYMENT_HEADER

logger = logging.getLogger(__name__)

Signer = Callable[[dict[str, Any]], Union[str, Awaitable[str]]]


class GateClientError(Exception):
    """Non-2xx response from a tiergate server."""

    def __init__(self, status_code: int, body: Any) -> None:
        message = body.get("error") if isinstance(body, dict) else None
        super().__init__(f"HTTP {status_code}: {message or body}")
        self.status_code = status_code
        self.body = body


def _body_of(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


class GateClient:
    """Async client that pays for premium and enterprise answers on demand."""

    def __init__(
        self,
        base_url: str,
        signer: Signer | None = None,
        timeout: float = MAX_TIMEOUT_SECONDS,
    ) -> None:
        self._signer = signer
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(connect=10.0, read=timeout, write=30.0, pool=5.0),
        )

    async def _sign(self, accepts: dict[str, Any]) -> str:
        result = self._signer(accepts)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def analyze(
        self,
        question: str,
        image_base64: str | None = None,
        endpoint: str = "/analyze",
    ) -> dict[str, Any]:
        """Ask a question, paying once if the server demands it.

        Raises GateClientError on any non-2xx final response.
        """
        payload: dict[str, Any] = {"question": question}
        if image_base64:
            payload["imageBase64"] = image_base64

        response = await self._client.post(endpoint, json=payload)
        if response.status_code == 402 and self._signer is not None:
            challenge = _body_of(response)
            accepts = challenge.get("accepts") if isinstance(challenge, dict) else None
            if not accepts:
                raise GateClientError(402, challenge)
            logger.info(
                "Paying %s %s for %s.",
                accepts[0].get("maxAmountRequired"), accepts[0].get("asset"), endpoint,
            )
            credential = await self._sign(accepts[0])
            response = await self._client.post(
                endpoint, json=payload, headers={PAYMENT_HEADER: credential},
            )

        if response.status_code >= 400:
            raise GateClientError(response.status_code, _body_of(response))
        return response.json()

    async def payment_details(self, tier: str, has_image: bool = False) -> dict[str, Any]:
        response = await self._client.post(
            "/get-payment-details", json={"tier": tier, "hasImage": has_image},
        )
        if response.status_code >= 400:
            raise GateClientError(response.status_code, _body_of(response))
        return response.json()

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> GateClient:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()
