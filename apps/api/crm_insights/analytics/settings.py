from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, fields
from datetime import datetime, timezone
from decimal import Decimal

from crm_insights.core.config import Settings

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class AnalyticsSettings:
    """Tunable thresholds read by the analytics engines.

    Defaults mirror ``Settings``; tests construct this directly instead of going
    through the environment.
    """

    velocity_lookback_days: int = 30
    funnel_bottleneck_threshold: float = 0.5
    forecast_commit_probability: int = 70
    forecast_max_months: int = 24
    risk_low_engagement_days: int = 30
    risk_no_engagement_days: int = 90
    risk_lost_deal_window_days: int = 90
    segment_strategic_revenue: Decimal = Decimal("100000000")
    segment_key_account_revenue: Decimal = Decimal("50000000")
    segment_growth_revenue: Decimal = Decimal("10000000")
    lifecycle_new_years: int = 1
    lifecycle_growing_years: int = 3
    health_engagement_window_days: int = 90
    health_neutral_factor_score: int = 50
    stalled_opportunity_days: int = 60
    decision_maker_keywords: tuple[str, ...] = ("CEO", "Chief", "Director", "VP", "President", "Head")

    @classmethod
    def from_settings(cls, settings: Settings) -> AnalyticsSettings:
        values = {}
        for item in fields(cls):
            value = getattr(settings, item.name)
            if isinstance(value, list):
                value = tuple(value)
            elif item.name.startswith("segment_"):
                value = Decimal(value)
            values[item.name] = value
        return cls(**values)
