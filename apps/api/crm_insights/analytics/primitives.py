from __future__ import annotations

import math
from collections.abc import Iterable
from datetime import date, datetime
from decimal import Decimal

ZERO = Decimal("0")


def _ratio(numerator: float | int | Decimal, denominator: float | int | Decimal) -> float:
    if not denominator or denominator <= 0:
        return 0.0
    value = float(numerator) / float(denominator)
    if math.isnan(value) or math.isinf(value):
        return 0.0
    return min(max(value, 0.0), 1.0)


def conversion_rate(total: int, won: int) -> float:
    return _ratio(won, total)


def win_rate(won: int, lost: int) -> float:
    return _ratio(won, won + lost)


def stage_conversion(current_count: int, next_count: int) -> float:
    # not clamped: a later stage can hold more deals than the one before it
    if current_count <= 0:
        return 0.0
    return next_count / current_count


def average_deal_size(sum_won: Decimal | None, count_won: int) -> Decimal:
    if count_won <= 0 or sum_won is None:
        return ZERO
    return Decimal(sum_won) / Decimal(count_won)


def weighted_forecast(amount: Decimal | None, probability: int | None) -> Decimal:
    if amount is None or probability is None:
        return ZERO
    return Decimal(amount) * Decimal(probability) / Decimal(100)


def sales_cycle_days(created_at: datetime | date, close_date: datetime | date | None) -> int | None:
    if close_date is None:
        return None
    if isinstance(created_at, datetime) and not isinstance(close_date, datetime):
        created_at = created_at.date()
    elif isinstance(close_date, datetime) and not isinstance(created_at, datetime):
        close_date = close_date.date()
    delta = close_date - created_at
    return math.floor(delta.total_seconds() / 86400)


def average_sales_cycle(cycles: Iterable[int | None]) -> float:
    present = [cycle for cycle in cycles if cycle is not None]
    if not present:
        return 0.0
    return sum(present) / len(present)


def average(values: Iterable[float | int | Decimal]) -> float:
    items = [float(value) for value in values]
    if not items:
        return 0.0
    return sum(items) / len(items)


def share(part: Decimal | int | float, whole: Decimal | int | float) -> float:
    return _ratio(part, whole)


def growth_rate(current: Decimal, previous: Decimal) -> float:
    if previous <= 0:
        return 0.0
    return float((Decimal(current) - Decimal(previous)) / Decimal(previous))
