"""Request-level error taxonomy.

Every error is local to one request and is rendered by the HTTP layer as
``{"success": false, "error": <message>, **extra}`` with ``status_code``.
None of them is retried by the pipeline.
"""

from __future__ import annotations

from typing import Any


class GateError(Exception):
    """Base exception for pipeline failures and protocol checkpoints."""

    status_code: int = 500

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> dict[str, Any]:
        return {"success": False, "error": self.message}


class ValidationError(GateError):
    """400: malformed input, rejected before any external call."""

    status_code = 400


class PaymentRequiredError(GateError):
    """402: not a failure: the challenge the client must pay before resubmitting.

    ``body`` is the full x402 payment-required document.
    """

    status_code = 402

    def __init__(self, body: dict[str, Any], message: str = "Payment required") -> None:
        super().__init__(message)
        self.body = body

    def to_dict(self) -> dict[str, Any]:
        return dict(self.body)


class PaymentVerificationError(GateError):
    """402: the facilitator rejected the credential or could not be reached.

    ``reason`` is the facilitator's reason verbatim. ``challenge`` (the same
    payment-required body) lets the client restart the payment flow.
    """

    status_code = 402

    def __init__(
        self,
        message: str,
        *,
        reason: str | None = None,
        challenge: dict[str, Any] | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, status_code=status_code)
        self.reason = reason
        self.challenge = challenge

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"success": False, "error": self.message}
        if self.reason:
            body["reason"] = self.reason
        if self.challenge is not None:
            body.update({k: v for k, v in self.challenge.items() if k != "error"})
        return body


class PaymentReplayError(PaymentVerificationError):
    """409: the credential or its settled transaction was already used."""

    status_code = 409


class UpstreamInferenceError(GateError):
    """502: the inference provider failed (auth, quota, timeout, empty reply).

    When a paid tier already settled, ``payment`` describes the collected
    payment; it is reported but never reversed.
    """

    status_code = 502

    def __init__(
        self,
        message: str,
        *,
        reason: str = "upstream",
        payment: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.reason = reason
        self.payment = payment

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "success": False,
            "error": self.message,
            "reason": self.reason,
        }
        if self.payment is not None:
            body["payment"] = self.payment
        return body
