from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal


@dataclass(frozen=True)
class FeeSplit:
    platform_fee: int
    payout: int


def round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def split_platform_fee(amount: int, fee_rate: Decimal) -> FeeSplit:
    """platform_fee + payout == amount, always, in whole minor units."""

    if amount < 0:
        raise ValueError("amount must be non-negative")
    fee = round_half_up(Decimal(amount) * Decimal(fee_rate))
    return FeeSplit(platform_fee=fee, payout=amount - fee)


def percentage_of(amount: int, percentage: Decimal | int) -> int:
    return round_half_up(Decimal(amount) * Decimal(percentage) / Decimal(100))
