"""
Forecast-driven routing adjustments.

Maps budget risk, SLA risk and drift into weight multipliers, a provider
penalty and posterior decay. The three mappings are independent and all
apply at once. Budget enforcement works from actual month-to-date spend
rather than the forecast.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Tuple

from ai_route_guard.config.loader import ForecastConfig

from .forecast import RiskLevel
from .weights import MODE_WEIGHTS, RoutingMode, RoutingWeights

_DEFAULTS = ForecastConfig()


@dataclass(frozen=True)
class ForecastAdjustments:
    """Adjustments consumed by the scorer and the posterior store."""
    cost_weight_multiplier: float = 1.0
    provider_penalty: float = 1.0
    exploration_boost: bool = False
    ts_alpha_decay: float = 1.0
    ts_beta_decay: float = 1.0

    def __post_init__(self):
        if self.cost_weight_multiplier < 1:
            raise ValueError("cost_weight_multiplier must be >= 1")
        for name in ("provider_penalty", "ts_alpha_decay", "ts_beta_decay"):
            value = getattr(self, name)
            if not 0 < value <= 1:
                raise ValueError(f"{name} must be in (0, 1]")


NEUTRAL_ADJUSTMENTS = ForecastAdjustments()


def compute_forecast_adjustments(
    budget_risk: RiskLevel,
    sla_risk_level: RiskLevel,
    drift_score: float,
    config: ForecastConfig = _DEFAULTS,
) -> ForecastAdjustments:
    """Translate forecast signals into routing adjustments.

    - Budget risk raises the cost weight: full boost on HIGH, half on MEDIUM.
    - SLA risk dampens penalized providers: full penalty on HIGH, half on MEDIUM.
    - Drift above the threshold decays both Beta parameters and flags exploration.
    """
    cost_weight_multiplier = 1.0
    if budget_risk == RiskLevel.HIGH:
        cost_weight_multiplier = config.cost_weight_boost
    elif budget_risk == RiskLevel.MEDIUM:
        cost_weight_multiplier = 1.0 + (config.cost_weight_boost - 1.0) * 0.5

    provider_penalty = 1.0
    if sla_risk_level == RiskLevel.HIGH:
        provider_penalty = config.sla_penalty
    elif sla_risk_level == RiskLevel.MEDIUM:
        provider_penalty = 1.0 - (1.0 - config.sla_penalty) * 0.5

    exploration_boost = drift_score > config.drift_exploration_threshold
    decay = config.exploration_decay if exploration_boost else 1.0

    return ForecastAdjustments(
        cost_weight_multiplier=cost_weight_multiplier,
        provider_penalty=provider_penalty,
        exploration_boost=exploration_boost,
        ts_alpha_decay=decay,
        ts_beta_decay=decay,
    )


def apply_forecast_cost_adjustment(weights: RoutingWeights, multiplier: float) -> RoutingWeights:
    """Scale the cost weight and renormalize all five weights to sum to 1.

    A multiplier of exactly 1.0 returns the weights unchanged.
    """
    if multiplier == 1.0:
        return weights
    boosted = RoutingWeights(
        w_quality=weights.w_quality,
        w_latency=weights.w_latency,
        w_stability=weights.w_stability,
        w_cost=weights.w_cost * multiplier,
        w_confidence=weights.w_confidence,
    )
    return boosted.normalized()


class BudgetState(Enum):
    """Month-to-date spend of a scope against its monthly budget."""
    NO_CONFIG = "no_config"
    UNDER_LIMIT = "under_limit"
    SOFT_LIMIT = "soft_limit"
    HARD_LIMIT = "hard_limit"


def apply_budget_adjustment(
    weights: RoutingWeights,
    monthly_budget: float,
    month_to_date_cost: float,
    config: ForecastConfig = _DEFAULTS,
) -> Tuple[RoutingWeights, BudgetState]:
    """Enforce the monthly budget on a scope's weights.

    Spend at or over the budget switches to the cost_saver preset. Spend
    above ``budget_soft_limit`` of the budget boosts the cost weight by
    ``soft_limit_cost_boost``. A scope without a budget is left alone.

    Returns:
        (weights, budget state)
    """
    if monthly_budget <= 0:
        return weights, BudgetState.NO_CONFIG
    if month_to_date_cost >= monthly_budget:
        return MODE_WEIGHTS[RoutingMode.COST_SAVER], BudgetState.HARD_LIMIT
    if month_to_date_cost / monthly_budget > config.budget_soft_limit:
        boosted = apply_forecast_cost_adjustment(weights, config.soft_limit_cost_boost)
        return boosted, BudgetState.SOFT_LIMIT
    return weights, BudgetState.UNDER_LIMIT
