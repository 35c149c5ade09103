from __future__ import annotations

from functools import lru_cache

from escrow_engine.core.config import settings
from escrow_engine.gateway.base import PaymentGateway
from escrow_engine.gateway.fake import FakeGatewayAdapter
from escrow_engine.gateway.http import HttpGatewayAdapter


def build_gateway(kind: str) -> PaymentGateway:
    if kind == "fake":
        return FakeGatewayAdapter(min_amount=settings.MIN_CHARGE_AMOUNT)
    if kind == "http":
        return HttpGatewayAdapter()
    raise ValueError(f"No payment gateway adapter for kind={kind}")


@lru_cache(maxsize=1)
def get_gateway() -> PaymentGateway:
    """Process-wide adapter selected by PAYMENT_GATEWAY."""
    return build_gateway(settings.PAYMENT_GATEWAY)
