from __future__ import annotations

import logging
import threading
from collections import defaultdict, deque
from dataclasses import dataclass, field

from escrow_engine.gateway.base import AccountCapability, GatewayError, GatewayValidationError
from escrow_engine.util.ids import new_uuid

log = logging.getLogger("gateway.fake")


@dataclass
class FakeGatewayAdapter:
    """In-memory gateway for local runs and tests.

    Honors idempotency keys the way a real processor does: a repeated key with
    the same parameters returns the original reference without executing again;
    a repeated key with different parameters is rejected. Failures can be
    scripted per operation with `fail_next`.
    """

    kind: str = "fake"
    min_amount: int = 1

    calls: list[tuple[str, dict]] = field(default_factory=list)
    executed: list[tuple[str, dict]] = field(default_factory=list)
    capabilities: dict[str, AccountCapability] = field(default_factory=dict)

    _results: dict[str, tuple[str, dict, str]] = field(default_factory=dict)
    _failures: dict[str, deque] = field(default_factory=lambda: defaultdict(deque))
    _lock: threading.Lock = field(default_factory=threading.Lock)

    # --- scripting -----------------------------------------------------

    def fail_next(self, operation: str, error: GatewayError, *, times: int = 1) -> None:
        for _ in range(times):
            self._failures[operation].append(error)

    def set_capability(self, account_id: str, *, payout_enabled: bool = True, charges_enabled: bool = True) -> None:
        self.capabilities[account_id] = AccountCapability(payout_enabled=payout_enabled, charges_enabled=charges_enabled)

    def executed_count(self, operation: str) -> int:
        return sum(1 for op, _ in self.executed if op == operation)

    # --- contract ------------------------------------------------------

    def create_hold(self, *, amount: int, idempotency_key: str) -> str:
        return self._call("create_hold", "hold", idempotency_key, {"amount": amount})

    def transfer(self, *, destination_account: str, amount: int, idempotency_key: str) -> str:
        return self._call("transfer", "tr", idempotency_key, {"destination_account": destination_account, "amount": amount})

    def refund(self, *, hold_ref: str, amount: int, idempotency_key: str) -> str:
        return self._call("refund", "re", idempotency_key, {"hold_ref": hold_ref, "amount": amount})

    def get_account_capability(self, account_id: str) -> AccountCapability:
        self.calls.append(("get_account_capability", {"account_id": account_id}))
        return self.capabilities.get(account_id, AccountCapability(payout_enabled=True, charges_enabled=True))

    def _call(self, operation: str, prefix: str, idempotency_key: str, params: dict) -> str:
        with self._lock:
            self.calls.append((operation, dict(params, idempotency_key=idempotency_key)))

            queued = self._failures.get(operation)
            if queued:
                raise queued.popleft()

            cached = self._results.get(idempotency_key)
            if cached is not None:
                cached_op, cached_params, ref = cached
                if cached_op != operation or cached_params != params:
                    raise GatewayValidationError(
                        "Idempotency key reused with different parameters", code="idempotency_key_in_use"
                    )
                log.info("%s replayed for key=%s -> %s", operation, idempotency_key, ref)
                return ref

            if params["amount"] < self.min_amount:
                raise GatewayValidationError(f"amount below minimum ({self.min_amount})", code="amount_too_small")

            ref = f"{prefix}_{new_uuid().replace('-', '')[:24]}"
            self._results[idempotency_key] = (operation, params, ref)
            self.executed.append((operation, dict(params, idempotency_key=idempotency_key)))
            return ref
