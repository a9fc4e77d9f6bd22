from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

MONEY_QUANTUM = Decimal("0.01")


def as_percentage(ratio: float) -> float:
    return round(ratio * 100, 2)


def round_ratio(value: float, places: int = 4) -> float:
    return round(value, places)


def quantize_money(value: Decimal | int | float | None) -> Decimal:
    if value is None:
        return Decimal("0.00")
    return Decimal(str(value)).quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


def round_days(value: float) -> int:
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def round_hours(value: float) -> float:
    return round(value, 2)
