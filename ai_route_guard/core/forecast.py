"""
Cost forecasting from a rolling daily cost history.

Every function here is total over finite numeric input: empty histories,
zero budgets and negative daily costs (credits, refunds) resolve to
documented neutral values instead of raising. Identical inputs always
produce identical outputs.
"""

import math
from dataclasses import dataclass
from enum import Enum
from typing import Sequence, Tuple

from ai_route_guard.config.loader import ForecastConfig

_DEFAULTS = ForecastConfig()


class RiskLevel(Enum):
    """Budget or SLA risk classification."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _RISK_ORDER[self]


_RISK_ORDER = {RiskLevel.LOW: 0, RiskLevel.MEDIUM: 1, RiskLevel.HIGH: 2}


def max_risk(*levels: RiskLevel) -> RiskLevel:
    """The worst of several risk levels (LOW if none given)."""
    return max(levels, key=lambda level: level.rank, default=RiskLevel.LOW)


@dataclass(frozen=True)
class ForecastResult:
    """Derived forecast of a scope; recomputed, never the source of truth."""
    burn_rate: float
    projected_monthly_cost: float
    smoothed_daily_cost: float
    budget_risk: RiskLevel


def _finite(values: Sequence[float]) -> list:
    return [float(v) if math.isfinite(v) else 0.0 for v in values]


def compute_burn_rate(
    daily_costs: Sequence[float],
    config: ForecastConfig = _DEFAULTS,
) -> Tuple[float, float]:
    """Average daily spend over the trailing window and its monthly projection.

    Args:
        daily_costs: Chronological daily costs
        config: Window length and days per month

    Returns:
        (burn_rate, projected_monthly_cost); (0, 0) for an empty history
    """
    if not daily_costs:
        return 0.0, 0.0
    window = _finite(daily_costs)[-config.burn_window_days:]
    # Divide before summing so extreme finite values cannot overflow.
    burn_rate = sum(value / len(window) for value in window)
    return burn_rate, burn_rate * config.days_per_month


def exponential_smoothing(daily_costs: Sequence[float], alpha: float = _DEFAULTS.smoothing_alpha) -> float:
    """smoothed = alpha * x_i + (1 - alpha) * smoothed, seeded with the first value."""
    if not daily_costs:
        return 0.0
    values = _finite(daily_costs)
    smoothed = values[0]
    for value in values[1:]:
        smoothed = alpha * value + (1 - alpha) * smoothed
    return smoothed


def compute_budget_risk(
    projected_monthly_cost: float,
    monthly_budget: float,
    config: ForecastConfig = _DEFAULTS,
) -> RiskLevel:
    """Classify projected spend against the monthly budget.

    A budget of zero or less means no budget is configured: LOW.
    """
    if not monthly_budget > 0:
        return RiskLevel.LOW
    ratio = projected_monthly_cost / monthly_budget
    if ratio > config.budget_high_threshold:
        return RiskLevel.HIGH
    if ratio > config.budget_medium_threshold:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def compute_cost_forecast(
    daily_costs: Sequence[float],
    monthly_budget: float,
    config: ForecastConfig = _DEFAULTS,
) -> ForecastResult:
    """Full cost forecast: burn rate, smoothed daily cost and budget risk."""
    burn_rate, projected = compute_burn_rate(daily_costs, config)
    return ForecastResult(
        burn_rate=burn_rate,
        projected_monthly_cost=projected,
        smoothed_daily_cost=exponential_smoothing(daily_costs, config.smoothing_alpha),
        budget_risk=compute_budget_risk(projected, monthly_budget, config),
    )
