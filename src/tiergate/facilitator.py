"""Async HTTP client for an x402 payment facilitator."""

from __future__ import annotations

from typing import Any

import httpx

from tiergate.constants import MAX_TIMEOUT_SECONDS, X402_VERSION


# ---------------------------------------------------------------------------
# Exception hierarchy
# ---------------------------------------------------------------------------


class FacilitatorError(Exception):
    """Base exception for facilitator operations."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class FacilitatorAuthError(FacilitatorError):
    """401/403: the facilitator refused this server."""


class FacilitatorRejectedError(FacilitatorError):
    """400/402/422: the payment payload or requirements were rejected."""


class FacilitatorServerError(FacilitatorError):
    """5xx: server-side error."""


class FacilitatorConnectionError(FacilitatorError):
    """Network, DNS or connection-level protocol failure."""


class FacilitatorTimeoutError(FacilitatorError):
    """Request timeout. Payment state is unknown; never retried silently."""


# ---------------------------------------------------------------------------
# Status code → exception mapping
# ---------------------------------------------------------------------------

_STATUS_MAP: dict[int, type[FacilitatorError]] = {
    400: FacilitatorRejectedError,
    401: FacilitatorAuthError,
    402: FacilitatorRejectedError,
    403: FacilitatorAuthError,
    422: FacilitatorRejectedError,
}


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class FacilitatorClient:
    """Async client for the x402 facilitator ``/verify`` and ``/settle`` API.

    Constructor accepts explicit params: no env-var loading. The read
    timeout is the protocol's ``maxTimeoutSeconds`` bound.
    """

    def __init__(self, base_url: str, timeout_seconds: float = MAX_TIMEOUT_SECONDS) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={"Content-Type": "application/json"},
            timeout=httpx.Timeout(connect=5.0, read=timeout_seconds, write=10.0, pool=5.0),
        )

    # -- internal request dispatcher -----------------------------------------

    async def _request(
        self,
        method: str,
        endpoint: str,
        json_data: dict[str, Any] | None = None,
    ) -> Any:
        """Send a request and map errors to the facilitator exception hierarchy."""
        try:
            response = await self._client.request(method, endpoint, json=json_data)
        except httpx.ConnectError as exc:
            raise FacilitatorConnectionError(str(exc)) from exc
        except httpx.TimeoutException as exc:
            raise FacilitatorTimeoutError(str(exc)) from exc
        except httpx.HTTPError as exc:
            raise FacilitatorConnectionError(str(exc)) from exc

        if response.status_code >= 400:
            body = response.text
            exc_cls = _STATUS_MAP.get(response.status_code)
            if exc_cls is not None:
                raise exc_cls(body, status_code=response.status_code)
            if response.status_code >= 500:
                raise FacilitatorServerError(body, status_code=response.status_code)
            raise FacilitatorError(body, status_code=response.status_code)

        try:
            data = response.json()
        except ValueError as exc:
            raise FacilitatorServerError(
                f"Non-JSON response: {response.text[:200]}", status_code=response.status_code,
            ) from exc
        if not isinstance(data, dict):
            raise FacilitatorServerError(
                "Unexpected response shape.", status_code=response.status_code,
            )
        return data

    @staticmethod
    def _envelope(
        payment_payload: dict[str, Any], requirements: dict[str, Any],
    ) -> dict[str, Any]:
        return {
            "x402Version": payment_payload.get("x402Version", X402_VERSION),
            "paymentPayload": payment_payload,
            "paymentRequirements": requirements,
        }

    # -- public API methods ---------------------------------------------------

    async def verify(
        self, payment_payload: dict[str, Any], requirements: dict[str, Any],
    ) -> dict[str, Any]:
        """POST /verify: check a signed payment against the requirements.

        Returns ``{"isValid": bool, "invalidReason": str | None, "payer": str}``.
        """
        return await self._request(
            "POST", "/verify", json_data=self._envelope(payment_payload, requirements)
        )

    async def settle(
        self, payment_payload: dict[str, Any], requirements: dict[str, Any],
    ) -> dict[str, Any]:
        """POST /settle: broadcast the payment.

        Returns ``{"success": bool, "errorReason": str | None,
        "transaction": str, "network": str, "payer": str}``.
        """
        return await self._request(
            "POST", "/settle", json_data=self._envelope(payment_payload, requirements)
        )

    async def supported(self) -> dict[str, Any]:
        """GET /supported: schemes and networks the facilitator handles."""
        return await self._request("GET", "/supported")

    # -- lifecycle ------------------------------------------------------------

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> FacilitatorClient:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()
