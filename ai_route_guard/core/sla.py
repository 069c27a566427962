"""
SLA drift detection between two comparison periods.

Compares current vs. previous period latency and error rate, classifies
SLA risk and produces a normalized performance drift score in [0, 1].
All functions are pure and total.
"""

from dataclasses import dataclass
from datetime import date, timedelta
from typing import Dict, List, Sequence, Tuple

from ai_route_guard.config.loader import ForecastConfig
from ai_route_guard.storage.models import DailyPerformance

from .forecast import RiskLevel

_DEFAULTS = ForecastConfig()


@dataclass(frozen=True)
class SlaTrendResult:
    """Derived SLA trend of a scope or provider."""
    latency_drift: float
    error_rate_trend: float
    sla_risk_level: RiskLevel
    performance_drift_score: float


@dataclass(frozen=True)
class PeriodSummary:
    """Daily latencies and mean error rate of one comparison period."""
    latencies: List[float]
    error_rate: float


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values)


def _clamp01(value: float) -> float:
    return max(0.0, min(1.0, value))


def compute_latency_drift(current: Sequence[float], previous: Sequence[float]) -> float:
    """Relative change of mean latency: (mean(current) - mean(previous)) / mean(previous).

    Returns 0 when either period is empty or the previous mean is not positive.
    """
    if not current or not previous:
        return 0.0
    previous_mean = _mean(previous)
    if previous_mean <= 0:
        return 0.0
    return (_mean(current) - previous_mean) / previous_mean


def compute_error_rate_trend(current_rate: float, previous_rate: float) -> float:
    return current_rate - previous_rate


def compute_sla_risk_level(
    latency_drift: float,
    error_trend: float,
    config: ForecastConfig = _DEFAULTS,
) -> RiskLevel:
    """Classify SLA risk; either signal alone can raise the level."""
    if latency_drift > config.latency_drift_high or error_trend > config.error_trend_high:
        return RiskLevel.HIGH
    if latency_drift > config.latency_drift_medium or error_trend > config.error_trend_medium:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def compute_performance_drift_score(
    latency_drift: float,
    error_trend: float,
    config: ForecastConfig = _DEFAULTS,
) -> float:
    """Weighted drift magnitude in [0, 1]; latency counts more than errors."""
    normalized_latency = _clamp01(abs(latency_drift) / config.latency_drift_normalizer)
    normalized_error = _clamp01(abs(error_trend) / config.error_trend_normalizer)
    return _clamp01(
        config.latency_drift_weight * normalized_latency
        + config.error_trend_weight * normalized_error
    )


def compute_sla_trend(
    current_latencies: Sequence[float],
    previous_latencies: Sequence[float],
    current_error_rate: float,
    previous_error_rate: float,
    config: ForecastConfig = _DEFAULTS,
) -> SlaTrendResult:
    """Full SLA trend analysis of two periods."""
    latency_drift = compute_latency_drift(current_latencies, previous_latencies)
    error_trend = compute_error_rate_trend(current_error_rate, previous_error_rate)
    return SlaTrendResult(
        latency_drift=latency_drift,
        error_rate_trend=error_trend,
        sla_risk_level=compute_sla_risk_level(latency_drift, error_trend, config),
        performance_drift_score=compute_performance_drift_score(latency_drift, error_trend, config),
    )


NEUTRAL_SLA_TREND = SlaTrendResult(
    latency_drift=0.0,
    error_rate_trend=0.0,
    sla_risk_level=RiskLevel.LOW,
    performance_drift_score=0.0,
)


def summarize_period(rows: Sequence[DailyPerformance]) -> PeriodSummary:
    """Latency series and mean error rate of a period (0 if empty)."""
    latencies = [row.avg_latency for row in rows]
    error_rate = _mean([row.error_rate for row in rows]) if rows else 0.0
    return PeriodSummary(latencies=latencies, error_rate=error_rate)


def split_periods(
    rows: Sequence[DailyPerformance],
    as_of: date,
    period_days: int = _DEFAULTS.comparison_period_days,
) -> Tuple[List[DailyPerformance], List[DailyPerformance]]:
    """Split history into (current, previous) periods ending at ``as_of``.

    The current period is the ``period_days`` days up to and including
    ``as_of``; the previous period is the same length just before it.
    Rows outside both periods are dropped.
    """
    current_start = as_of - timedelta(days=period_days - 1)
    previous_start = current_start - timedelta(days=period_days)
    current, previous = [], []
    for row in rows:
        if current_start <= row.day <= as_of:
            current.append(row)
        elif previous_start <= row.day < current_start:
            previous.append(row)
    return current, previous


def trend_for_rows(
    rows: Sequence[DailyPerformance],
    as_of: date,
    config: ForecastConfig = _DEFAULTS,
) -> SlaTrendResult:
    """SLA trend of a set of daily performance rows."""
    current, previous = split_periods(rows, as_of, config.comparison_period_days)
    cur = summarize_period(current)
    prev = summarize_period(previous)
    return compute_sla_trend(cur.latencies, prev.latencies, cur.error_rate, prev.error_rate, config)


def trends_by_provider(
    rows: Sequence[DailyPerformance],
    as_of: date,
    config: ForecastConfig = _DEFAULTS,
) -> Dict[str, SlaTrendResult]:
    """SLA trend of each provider found in the history."""
    grouped: Dict[str, List[DailyPerformance]] = {}
    for row in rows:
        grouped.setdefault(row.provider, []).append(row)
    return {
        provider: trend_for_rows(provider_rows, as_of, config)
        for provider, provider_rows in sorted(grouped.items())
    }
