"""Tests for the auto-pay GateClient."""

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from tiergate.client import GateClient, GateClientError

_ACCEPTS = {"scheme": "exact", "maxAmountRequired": "30000", "asset": "STX", "payTo": "ST1"}


def _mock_response(status: int = 200, json_data: dict | None = None) -> httpx.Response:
    return httpx.Response(
        status_code=status,
        json=json_data or {},
        request=httpx.Request("POST", "https://api.example.com/analyze"),
    )


def _challenge() -> httpx.Response:
    return _mock_response(402, {"x402Version": 2, "accepts": [_ACCEPTS]})


class TestGateClient:
    @pytest.mark.asyncio
    async def test_free_answer(self) -> None:
        signer = MagicMock()
        client = GateClient("https://api.example.com/", signer)
        client._client.post = AsyncMock(return_value=_mock_response(200, {"tier": "standard"}))
        result = await client.analyze("hi")
        assert result == {"tier": "standard"}
        signer.assert_not_called()
        client._client.post.assert_awaited_once_with("/analyze", json={"question": "hi"})

    @pytest.mark.asyncio
    async def test_pays_once_after_402(self) -> None:
        signer = MagicMock(return_value="cred")
        client = GateClient("https://api.example.com", signer)
        client._client.post = AsyncMock(side_effect=[
            _challenge(), _mock_response(200, {"tier": "premium", "shouldCharge": True}),
        ])
        result = await client.analyze("Explain why", image_base64="aGVsbG8=",
                                      endpoint="/analyze-premium")

        assert result["shouldCharge"] is True
        signer.assert_called_once_with(_ACCEPTS)
        second = client._client.post.call_args_list[1]
        assert second[0] == ("/analyze-premium",)
        assert second[1]["json"] == {"question": "Explain why", "imageBase64": "aGVsbG8="}
        assert second[1]["headers"] == {"X-PAYMENT": "cred"}

    @pytest.mark.asyncio
    async def test_async_signer(self) -> None:
        signer = AsyncMock(return_value="cred")
        client = GateClient("https://api.example.com", signer)
        client._client.post = AsyncMock(side_effect=[_challenge(), _mock_response(200, {})])
        await client.analyze("Explain why")
        signer.assert_awaited_once_with(_ACCEPTS)

    @pytest.mark.asyncio
    async def test_second_402_is_not_retried(self) -> None:
        signer = MagicMock(return_value="cred")
        client = GateClient("https://api.example.com", signer)
        client._client.post = AsyncMock(side_effect=[_challenge(), _challenge()])
        with pytest.raises(GateClientError) as exc_info:
            await client.analyze("Explain why")
        assert exc_info.value.status_code == 402
        assert client._client.post.await_count == 2

    @pytest.mark.asyncio
    async def test_402_without_signer(self) -> None:
        client = GateClient("https://api.example.com")
        client._client.post = AsyncMock(return_value=_challenge())
        with pytest.raises(GateClientError) as exc_info:
            await client.analyze("Explain why")
        assert exc_info.value.body["accepts"] == [_ACCEPTS]

    @pytest.mark.asyncio
    async def test_402_without_accepts(self) -> None:
        signer = MagicMock()
        client = GateClient("https://api.example.com", signer)
        client._client.post = AsyncMock(return_value=_mock_response(402, {"error": "nope"}))
        with pytest.raises(GateClientError, match="nope"):
            await client.analyze("Explain why")
        signer.assert_not_called()

    @pytest.mark.asyncio
    async def test_error_status(self) -> None:
        client = GateClient("https://api.example.com")
        client._client.post = AsyncMock(
            return_value=_mock_response(502, {"success": False, "error": "quota"})
        )
        with pytest.raises(GateClientError, match="HTTP 502: quota") as exc_info:
            await client.analyze("hi")
        assert exc_info.value.body["error"] == "quota"

    @pytest.mark.asyncio
    async def test_payment_details(self) -> None:
        client = GateClient("https://api.example.com")
        client._client.post = AsyncMock(return_value=_mock_response(200, {"amount": 0.06}))
        result = await client.payment_details("premium", has_image=True)
        assert result == {"amount": 0.06}
        client._client.post.assert_awaited_once_with(
            "/get-payment-details", json={"tier": "premium", "hasImage": True},
        )

    @pytest.mark.asyncio
    async def test_context_manager_closes(self) -> None:
        async with GateClient("https://api.example.com") as client:
            pass
        assert client._client.is_closed
