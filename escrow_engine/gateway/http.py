from __future__ import annotations

import logging
from dataclasses import dataclass, field

import httpx

from escrow_engine.core.config import settings
from escrow_engine.gateway.base import (
    AccountCapability,
    GatewayError,
    GatewayValidationError,
    PermanentGatewayError,
    TransientGatewayError,
)

log = logging.getLogger("gateway.http")

# Structured decline / error codes reported by the processor, grouped by
# whether retrying the identical request can ever succeed.
TRANSIENT_CODES = frozenset(
    {
        "processing_error",
        "try_again_later",
        "too_many_attempts",
        "rate_limit",
        "lock_timeout",
        "api_connection_error",
    }
)
PERMANENT_CODES = frozenset(
    {
        "card_declined",
        "generic_decline",
        "do_not_honor",
        "insufficient_funds",
        "transaction_not_allowed",
        "fraudulent",
        "stolen_card",
        "lost_card",
        "merchant_blacklist",
        "pickup_card",
        "restricted_card",
        "account_closed",
        "payouts_not_allowed",
        "charge_already_refunded",
    }
)
VALIDATION_CODES = frozenset(
    {
        "amount_too_small",
        "amount_too_large",
        "invalid_amount",
        "resource_missing",
        "idempotency_key_in_use",
        "parameter_invalid",
    }
)


def _truncate(s: str, n: int = 200) -> str:
    s = s or ""
    return s if len(s) <= n else s[:n] + "…"


def classify_response(status_code: int, code: str | None, message: str) -> GatewayError:
    """Map a failed HTTP response to a typed gateway error.

    The structured code wins over the status; message text is never inspected.
    """

    if code in TRANSIENT_CODES:
        return TransientGatewayError(message, code=code)
    if code in PERMANENT_CODES:
        return PermanentGatewayError(message, code=code)
    if code in VALIDATION_CODES:
        return GatewayValidationError(message, code=code)

    if status_code == 429 or status_code >= 500 or status_code == 408:
        return TransientGatewayError(message, code=code)
    if status_code in (400, 404, 422):
        return GatewayValidationError(message, code=code)
    return PermanentGatewayError(message, code=code)


@dataclass
class HttpGatewayAdapter:
    """Adapter for a processor exposing a small JSON API.

    POST /holds, POST /transfers, POST /refunds return {"id": ...};
    GET /accounts/{id} returns {"payouts_enabled", "charges_enabled"}.
    Errors come back as {"error": {"code", "message"}}. The idempotency key
    travels in the Idempotency-Key header.
    """

    kind: str = "http"
    base_url: str = field(default_factory=lambda: settings.GATEWAY_API_BASE)
    api_key: str | None = field(default_factory=lambda: settings.GATEWAY_API_KEY)
    timeout_s: float = field(default_factory=lambda: settings.GATEWAY_TIMEOUT_S)
    transport: httpx.BaseTransport | None = None

    def __post_init__(self) -> None:
        headers = {"User-Agent": settings.APP_NAME, "Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        self._client = httpx.Client(
            base_url=self.base_url.rstrip("/"),
            headers=headers,
            timeout=self.timeout_s,
            transport=self.transport,
        )

    def close(self) -> None:
        self._client.close()

    def create_hold(self, *, amount: int, idempotency_key: str) -> str:
        return self._post_for_id("/holds", {"amount": amount}, idempotency_key)

    def transfer(self, *, destination_account: str, amount: int, idempotency_key: str) -> str:
        return self._post_for_id("/transfers", {"destination": destination_account, "amount": amount}, idempotency_key)

    def refund(self, *, hold_ref: str, amount: int, idempotency_key: str) -> str:
        return self._post_for_id("/refunds", {"hold_ref": hold_ref, "amount": amount}, idempotency_key)

    def get_account_capability(self, account_id: str) -> AccountCapability:
        data = self._request("GET", f"/accounts/{account_id}")
        return AccountCapability(
            payout_enabled=bool(data.get("payouts_enabled")),
            charges_enabled=bool(data.get("charges_enabled")),
        )

    def _post_for_id(self, path: str, body: dict, idempotency_key: str) -> str:
        data = self._request("POST", path, json=body, headers={"Idempotency-Key": idempotency_key})
        ref = data.get("id")
        if not ref:
            # The processor accepted the call but did not say what it created.
            raise TransientGatewayError(f"gateway response without id for {path}", code="missing_id")
        return str(ref)

    def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            resp = self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientGatewayError(f"timeout:{path}:{type(e).__name__}", code="timeout") from e
        except httpx.TransportError as e:
            raise TransientGatewayError(f"transport:{path}:{type(e).__name__}", code="network") from e

        if resp.status_code >= 400:
            code = None
            message = f"gateway_http_{resp.status_code}"
            try:
                err = (resp.json() or {}).get("error") or {}
                code = err.get("code")
                message = f"{message}:{_truncate(str(err.get('message') or ''))}"
            except ValueError:
                message = f"{message}:{_truncate(resp.text)}"
            error = classify_response(resp.status_code, code, message)
            log.warning("Gateway %s %s failed kind=%s code=%s", method, path, error.kind, code)
            raise error

        try:
            return resp.json()
        except ValueError as e:
            raise TransientGatewayError(f"non-json response from {path}", code="bad_response") from e
