"""
Online statistics for provider arms.

Folds each completed call into an arm's exponential moving averages and
Bayesian posteriors.
"""

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional, Tuple

from ai_route_guard.config.loader import TrackerConfig
from ai_route_guard.storage.models import ArmKey, ProviderArm


@dataclass(frozen=True)
class CallOutcome:
    """Telemetry reported by the caller after each provider call.

    ``cost_per_1k`` is None when the call was never priced, as for a
    request that failed before any usage was reported. Such a call still
    updates the success and latency posteriors but leaves cost untouched.
    """
    success: bool
    latency_ms: float
    quality_score: float
    cost_per_1k: Optional[float]
    cost: float = 0.0

    def __post_init__(self):
        """Validate telemetry values."""
        if self.latency_ms < 0:
            raise ValueError("latency_ms cannot be negative")
        if not 0 <= self.quality_score <= 1:
            raise ValueError("quality_score must be between 0 and 1")
        if self.cost_per_1k is not None and self.cost_per_1k < 0:
            raise ValueError("cost_per_1k cannot be negative")


def compute_ewma(old: float, observed: float, smoothing: float) -> float:
    """new = smoothing * observed + (1 - smoothing) * old"""
    return smoothing * observed + (1 - smoothing) * old


def welford_update(
    mean: float,
    variance: float,
    count: int,
    observed: float,
    floor: float,
) -> Tuple[float, float]:
    """Incremental mean/variance update (Welford's method).

    ``variance`` is the population variance over ``count`` prior
    observations. The result is floored so the Gaussian posterior never
    degenerates.

    Args:
        mean: Current mean
        variance: Current population variance
        count: Number of observations folded in so far
        observed: New observation
        floor: Minimum variance returned

    Returns:
        (new_mean, new_variance)
    """
    if count <= 0:
        return observed, floor

    n = count + 1
    delta = observed - mean
    new_mean = mean + delta / n
    m2 = variance * count + delta * (observed - new_mean)
    return new_mean, max(floor, m2 / n)


def record_outcome(
    arm: Optional[ProviderArm],
    outcome: CallOutcome,
    now: datetime,
    config: TrackerConfig = TrackerConfig(),
    key: Optional[ArmKey] = None,
) -> ProviderArm:
    """Fold one call outcome into an arm.

    A missing arm is created with neutral priors (alpha = beta = 1)
    rather than failing. On the first observation the moving averages
    and Gaussian means are seeded with the observed values.

    Args:
        arm: Current arm snapshot, or None if never seen
        outcome: Call telemetry
        now: Completion time, stored as ``last_call_at``
        config: Smoothing factor and variance floors
        key: Identity used when ``arm`` is None

    Returns:
        Updated arm (a new instance)

    Raises:
        ValueError: If both ``arm`` and ``key`` are None
    """
    if arm is None:
        if key is None:
            raise ValueError("key is required to create a missing arm")
        arm = ProviderArm.neutral(key)

    success_value = 1.0 if outcome.success else 0.0
    first = arm.sample_count == 0

    if first:
        ewma_latency = outcome.latency_ms
        ewma_quality = outcome.quality_score
        ewma_success = success_value
    else:
        smoothing = config.ewma_smoothing
        ewma_latency = compute_ewma(arm.ewma_latency_ms, outcome.latency_ms, smoothing)
        ewma_quality = compute_ewma(arm.ewma_quality, outcome.quality_score, smoothing)
        ewma_success = compute_ewma(arm.ewma_success_rate, success_value, smoothing)

    latency_mean, latency_variance = welford_update(
        arm.ts_latency_mean,
        arm.ts_latency_variance,
        arm.sample_count,
        outcome.latency_ms,
        config.latency_variance_floor,
    )

    # Cost statistics count priced calls only.
    ewma_cost = arm.ewma_cost_per_1k
    cost_mean, cost_variance = arm.ts_cost_mean, arm.ts_cost_variance
    cost_count = arm.cost_sample_count
    if outcome.cost_per_1k is not None:
        if cost_count == 0:
            ewma_cost = outcome.cost_per_1k
        else:
            ewma_cost = compute_ewma(arm.ewma_cost_per_1k, outcome.cost_per_1k, config.ewma_smoothing)
        cost_mean, cost_variance = welford_update(
            arm.ts_cost_mean,
            arm.ts_cost_variance,
            cost_count,
            outcome.cost_per_1k,
            config.cost_variance_floor,
        )
        cost_count += 1

    return replace(
        arm,
        ts_alpha=arm.ts_alpha + (1 if outcome.success else 0),
        ts_beta=arm.ts_beta + (0 if outcome.success else 1),
        ts_latency_mean=latency_mean,
        ts_latency_variance=latency_variance,
        ts_cost_mean=cost_mean,
        ts_cost_variance=cost_variance,
        ewma_latency_ms=ewma_latency,
        ewma_quality=min(1.0, max(0.0, ewma_quality)),
        ewma_success_rate=min(1.0, max(0.0, ewma_success)),
        ewma_cost_per_1k=ewma_cost,
        sample_count=arm.sample_count + 1,
        cost_sample_count=cost_count,
        last_call_at=now,
        active=True,
    )
