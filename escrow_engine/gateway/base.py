from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Protocol

ErrorKind = Literal["transient", "permanent", "validation"]


class GatewayError(Exception):
    """Gateway call failed. `kind` tells the relay whether a retry can help."""

    kind: ErrorKind = "permanent"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code

    @property
    def retryable(self) -> bool:
        return self.kind == "transient"


class TransientGatewayError(GatewayError):
    """Network failure, timeout, rate limit or 5xx."""

    kind: ErrorKind = "transient"


class PermanentGatewayError(GatewayError):
    """Declined, fraud, closed account: the same call will never succeed."""

    kind: ErrorKind = "permanent"


class GatewayValidationError(GatewayError):
    """The gateway rejected the request shape (bad amount, unknown reference)."""

    kind: ErrorKind = "validation"


@dataclass(frozen=True)
class AccountCapability:
    payout_enabled: bool
    charges_enabled: bool


class PaymentGateway(Protocol):
    kind: str

    def create_hold(self, *, amount: int, idempotency_key: str) -> str: ...

    def transfer(self, *, destination_account: str, amount: int, idempotency_key: str) -> str: ...

    def refund(self, *, hold_ref: str, amount: int, idempotency_key: str) -> str: ...

    def get_account_capability(self, account_id: str) -> AccountCapability: ...
