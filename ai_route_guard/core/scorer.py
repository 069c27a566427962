"""
Composite scoring and Thompson sampling over provider arms.

Each candidate arm gets one composite score from five criteria:

    score = w_quality    * quality
          + w_latency    * (1 - normalized latency)
          + w_stability  * stability
          + w_cost       * (1 - normalized cost)
          + w_confidence * min(1, sample_count / N0)

Latency and cost are normalized against the candidate set, so the
criteria are relative. Arms under an active penalty keep competing with a
dampened score; routing always returns a provider unless the candidate
list itself is empty.
"""

import random
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, Iterable, List, Optional

from ai_route_guard.config.loader import ScorerConfig
from ai_route_guard.storage.models import PENALTY_SOURCE_AUTO, Penalty, ProviderArm

from .adjustments import NEUTRAL_ADJUSTMENTS, ForecastAdjustments
from .weights import RoutingWeights

# Fixed criteria for the hybrid strategy, which ignores scope weights.
HYBRID_WEIGHTS = {"quality": 0.40, "success": 0.30, "latency": 0.20, "cost": 0.10}
HYBRID_LATENCY_CAP_MS = 5000.0
HYBRID_COST_CAP = 0.01


class RoutingStrategy(Enum):
    """How arms are scored."""
    HYBRID = "hybrid"
    COST_AWARE = "cost_aware"
    THOMPSON = "thompson"


class NoAvailableProvider(Exception):
    """Raised when routing is asked to choose from no candidates."""
    def __init__(self, message: str = "No candidate providers available", scope: Optional[str] = None):
        super().__init__(message)
        self.scope = scope


@dataclass(frozen=True)
class ScoreBreakdown:
    """Per-arm components of one routing decision."""
    arm_id: str
    final_score: float
    raw_score: float
    quality: float
    success_sample: float
    latency_score: float
    stability: float
    cost_score: float
    confidence: float
    penalty_multiplier: float


@dataclass(frozen=True)
class RoutingDecision:
    """Outcome of scoring a candidate set."""
    selected: str
    ranked: List[str]
    breakdown: List[ScoreBreakdown]
    strategy: RoutingStrategy
    penalty_applied: bool
    diversity_triggered: bool = False


def clamp01(value: float) -> float:
    return max(0.0, min(1.0, value))


def sample_beta(alpha: float, beta: float, rng: random.Random) -> float:
    """Draw from Beta(alpha, beta); parameters are floored to stay proper."""
    return clamp01(rng.betavariate(max(alpha, 1e-3), max(beta, 1e-3)))


def sample_gaussian(mean: float, variance: float, rng: random.Random) -> float:
    """Draw from N(mean, variance), clamped at zero (latency and cost)."""
    sigma = max(variance, 1e-10) ** 0.5
    return max(0.0, rng.gauss(mean, sigma))


def relative_goodness(values: List[float], floor: float) -> List[float]:
    """Map lower-is-better values onto [0, 1] goodness against their max."""
    if not values:
        return []
    ceiling = max(max(values), floor)
    return [clamp01(1 - max(v, 0.0) / ceiling) for v in values]


def confidence_score(sample_count: int, saturation: int) -> float:
    return min(1.0, sample_count / saturation)


def hybrid_score(arm: ProviderArm) -> float:
    """Fixed-weight score from moving averages, neutral for unseen arms."""
    if arm.sample_count == 0:
        return 0.5
    return (
        HYBRID_WEIGHTS["quality"] * clamp01(arm.ewma_quality)
        + HYBRID_WEIGHTS["success"] * clamp01(arm.ewma_success_rate)
        + HYBRID_WEIGHTS["latency"] * clamp01(1 - arm.ewma_latency_ms / HYBRID_LATENCY_CAP_MS)
        + HYBRID_WEIGHTS["cost"] * clamp01(1 - arm.ewma_cost_per_1k / HYBRID_COST_CAP)
    )


def penalty_factor(penalty: Penalty, adjustments: ForecastAdjustments = NEUTRAL_ADJUSTMENTS) -> float:
    """Score multiplier of one penalty.

    Operator penalties are scaled by the scope's forecast provider penalty.
    Automatic SLA penalties were created from that same factor, so they
    apply as stored.
    """
    if penalty.source == PENALTY_SOURCE_AUTO:
        return penalty.multiplier
    return adjustments.provider_penalty * penalty.multiplier


def penalty_index(
    penalties: Iterable[Penalty],
    now: datetime,
    adjustments: ForecastAdjustments = NEUTRAL_ADJUSTMENTS,
) -> Dict[str, Penalty]:
    """Strongest active penalty per arm id; expired penalties are ignored."""
    index: Dict[str, Penalty] = {}
    for penalty in penalties:
        if not penalty.is_active(now):
            continue
        current = index.get(penalty.arm_id)
        if current is None or penalty_factor(penalty, adjustments) < penalty_factor(current, adjustments):
            index[penalty.arm_id] = penalty
    return index


def select_provider(
    arms: List[ProviderArm],
    weights: RoutingWeights,
    penalties: Iterable[Penalty] = (),
    adjustments: ForecastAdjustments = NEUTRAL_ADJUSTMENTS,
    rng: Optional[random.Random] = None,
    now: Optional[datetime] = None,
    config: ScorerConfig = ScorerConfig(),
    strategy: RoutingStrategy = RoutingStrategy.THOMPSON,
    diversity: bool = False,
) -> RoutingDecision:
    """Score every candidate arm and pick the best one.

    The work is one pass over the candidates plus a sort; no history is
    read here, so it is safe on the request path.

    Args:
        arms: Snapshot of every candidate arm
        weights: Scope weights (already forecast-adjusted)
        penalties: Penalties to consider; expired ones are ignored
        adjustments: Latest forecast adjustments of the scope
        rng: Random source for posterior sampling
        now: Evaluation time for penalty expiry
        config: Scoring constants
        strategy: Scoring strategy
        diversity: One provider dominates recent traffic; pick at random
            among the top ``config.diversity_top_k`` instead of the best

    Returns:
        RoutingDecision with every candidate ranked best-first; ties
        are broken by ascending arm id. Under the diversity guard the
        selection may differ from ``ranked[0]``.

    Raises:
        NoAvailableProvider: If ``arms`` is empty
    """
    if not arms:
        raise NoAvailableProvider()

    rng = rng or random.Random()
    now = now or datetime.now()
    weights = weights.normalized()
    active_penalties = penalty_index(penalties, now, adjustments)

    if strategy == RoutingStrategy.THOMPSON:
        success_samples = [sample_beta(a.ts_alpha, a.ts_beta, rng) for a in arms]
        latency_samples = [sample_gaussian(a.ts_latency_mean, a.ts_latency_variance, rng) for a in arms]
        cost_samples = [sample_gaussian(a.ts_cost_mean, a.ts_cost_variance, rng) for a in arms]
    else:
        success_samples = [a.success_mean for a in arms]
        latency_samples = [max(0.0, a.ewma_latency_ms) for a in arms]
        cost_samples = [max(0.0, a.ewma_cost_per_1k) for a in arms]

    latency_scores = relative_goodness(latency_samples, config.latency_floor)
    cost_scores = relative_goodness(cost_samples, config.cost_floor)
    max_variance = max(a.ts_latency_variance for a in arms)

    breakdown = []
    for i, arm in enumerate(arms):
        normalized_variance = arm.ts_latency_variance / max_variance if max_variance > 0 else 0.0
        stability = success_samples[i] * clamp01(1 - normalized_variance)
        confidence = confidence_score(arm.sample_count, config.confidence_saturation)

        if strategy == RoutingStrategy.HYBRID:
            raw = hybrid_score(arm)
        else:
            raw = (
                weights.w_quality * clamp01(arm.ewma_quality)
                + weights.w_latency * latency_scores[i]
                + weights.w_stability * stability
                + weights.w_cost * cost_scores[i]
                + weights.w_confidence * confidence
            )

        penalty = active_penalties.get(arm.arm_id)
        multiplier = penalty_factor(penalty, adjustments) if penalty else 1.0

        breakdown.append(ScoreBreakdown(
            arm_id=arm.arm_id,
            final_score=raw * multiplier,
            raw_score=raw,
            quality=clamp01(arm.ewma_quality),
            success_sample=success_samples[i],
            latency_score=latency_scores[i],
            stability=stability,
            cost_score=cost_scores[i],
            confidence=confidence,
            penalty_multiplier=multiplier,
        ))

    breakdown.sort(key=lambda s: (-s.final_score, s.arm_id))
    ranked = [s.arm_id for s in breakdown]

    selected = ranked[0]
    if diversity and len(ranked) > 1:
        top = min(config.diversity_top_k, len(ranked))
        selected = ranked[int(rng.random() * top)]

    return RoutingDecision(
        selected=selected,
        ranked=ranked,
        breakdown=breakdown,
        strategy=strategy,
        penalty_applied=any(s.penalty_multiplier < 1.0 for s in breakdown),
        diversity_triggered=diversity,
    )
