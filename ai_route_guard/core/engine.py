"""
Routing engine orchestration.

Two paths meet here:

- the request path (``route``, ``select_provider``, ``record_outcome``),
  which only reads the latest published ``ScopeSnapshot`` and per-arm
  snapshots and never waits on a forecast;
- the scheduled path (``recompute_forecast``, ``aggregate_daily``), which
  reads recent history, derives forecast and drift signals, writes back
  decay and automatic penalties, then publishes a new snapshot.

Publishing a snapshot is a single dict assignment of an immutable value,
so a concurrent router sees either the previous snapshot or the new one.
Snapshots older than ``scorer.snapshot_ttl_seconds`` are rebuilt on the
next route, which is how writes made by another process sharing the
database (governance, forecasts) reach this engine.
"""

import logging
import random
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

from ai_route_guard.config.loader import EngineConfig
from ai_route_guard.storage.models import (
    PENALTY_SOURCE_AUTO,
    ArmKey,
    CallEvent,
    DailyPerformance,
    Penalty,
    ProviderArm,
    ScopeConfig,
)
from ai_route_guard.storage.repository import RoutingRepository

from .adjustments import (
    NEUTRAL_ADJUSTMENTS,
    BudgetState,
    ForecastAdjustments,
    apply_budget_adjustment,
    apply_forecast_cost_adjustment,
    compute_forecast_adjustments,
)
from .forecast import ForecastResult, RiskLevel, compute_cost_forecast, max_risk
from .posterior import PosteriorStore
from .scorer import NoAvailableProvider, RoutingDecision, RoutingStrategy, select_provider
from .sla import SlaTrendResult, trend_for_rows, trends_by_provider
from .statistics import CallOutcome
from .weights import RoutingWeights, weights_for_mode

_log = logging.getLogger(__name__)

Candidate = Union[str, ArmKey]

AUTO_PENALTY_SOURCE = PENALTY_SOURCE_AUTO
AUTO_PENALTY_REASON = "sla_drift"


@dataclass(frozen=True)
class ScopeSnapshot:
    """Everything the scorer needs for one scope, published atomically."""
    scope: str
    weights: RoutingWeights
    adjustments: ForecastAdjustments
    strategy: RoutingStrategy
    routing_mode: str
    monthly_budget: float = 0.0
    penalties: Tuple[Penalty, ...] = ()
    budget_state: BudgetState = BudgetState.NO_CONFIG
    month_to_date_cost: float = 0.0
    diversity_triggered: bool = False
    built_at: Optional[datetime] = None


@dataclass(frozen=True)
class ForecastReport:
    """Result of one scheduled recomputation of a scope."""
    scope: str
    as_of: date
    forecast: ForecastResult
    sla: SlaTrendResult
    adjustments: ForecastAdjustments
    overall_risk: RiskLevel
    weights: RoutingWeights
    provider_trends: Dict[str, SlaTrendResult] = field(default_factory=dict)
    decayed_arms: int = 0
    auto_penalties: List[Penalty] = field(default_factory=list)


def adjustments_from_state(state: Optional[Dict]) -> ForecastAdjustments:
    """Rebuild adjustments from a persisted forecast row (neutral if none)."""
    if not state:
        return NEUTRAL_ADJUSTMENTS
    return ForecastAdjustments(
        cost_weight_multiplier=state["cost_weight_multiplier"],
        provider_penalty=state["provider_penalty"],
        exploration_boost=bool(state["exploration_boost"]),
        ts_alpha_decay=state["ts_alpha_decay"],
        ts_beta_decay=state["ts_beta_decay"],
    )


class RoutingEngine:
    """Adaptive provider router backed by a routing repository.

    Example:
        engine = RoutingEngine(get_repository())
        provider = engine.select_provider(["openai::gpt-4o-mini", "openai::gpt-4o"], "support")
        engine.record_outcome(provider, CallOutcome(True, 820.0, 0.9, 0.0006), "support")
    """

    def __init__(
        self,
        repository: RoutingRepository,
        config: Optional[EngineConfig] = None,
        rng: Optional[random.Random] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.repository = repository
        self.config = config or EngineConfig()
        self.store = PosteriorStore(repository, self.config.tracker)
        self._rng = rng or random.Random()
        self._clock = clock or datetime.now
        self._scopes: Dict[str, ScopeSnapshot] = {}

    def now(self) -> datetime:
        return self._clock()

    # ── Scope snapshots ─────────────────────────────────────────────

    def scope_config(self, scope: str, conn=None) -> ScopeConfig:
        """Stored settings of a scope, or the configured defaults."""
        stored = self.repository.get_scope_config(scope, conn=conn)
        if stored is not None:
            return stored
        return ScopeConfig(
            scope=scope,
            routing_strategy=self.config.default_strategy,
            routing_mode=self.config.default_routing_mode,
        )

    def refresh_scope(self, scope: str) -> ScopeSnapshot:
        """Rebuild a scope's snapshot from the repository and publish it.

        Weights always start from the scope's base mode weights, then get
        budget enforcement and the latest forecast cost multiplier applied
        once each, so repeated refreshes never compound.
        """
        now = self.now()
        settings = self.scope_config(scope)
        adjustments = adjustments_from_state(self.repository.get_forecast_state(scope))

        month_start = datetime(now.year, now.month, 1)
        month_to_date = self.repository.cost_since(scope, month_start)
        weights, budget_state = apply_budget_adjustment(
            weights_for_mode(settings.routing_mode),
            settings.monthly_budget,
            month_to_date,
            self.config.forecast,
        )
        if budget_state == BudgetState.HARD_LIMIT:
            _log.warning(
                "Scope %s reached its monthly budget (%.4f of %.4f); routing for cost",
                scope, month_to_date, settings.monthly_budget,
            )

        snapshot = ScopeSnapshot(
            scope=scope,
            weights=apply_forecast_cost_adjustment(weights, adjustments.cost_weight_multiplier),
            adjustments=adjustments,
            strategy=RoutingStrategy(settings.routing_strategy),
            routing_mode=settings.routing_mode,
            monthly_budget=settings.monthly_budget,
            penalties=tuple(self.repository.active_penalties(now, scope)),
            budget_state=budget_state,
            month_to_date_cost=month_to_date,
            diversity_triggered=self._traffic_concentrated(scope, now),
            built_at=now,
        )
        self._scopes[scope] = snapshot
        return snapshot

    def _traffic_concentrated(self, scope: str, now: datetime) -> bool:
        """Whether one arm took more than the usage threshold of recent calls."""
        sc = self.config.scorer
        counts = self.repository.arm_call_counts(
            scope, now - timedelta(hours=sc.diversity_window_hours)
        )
        total = sum(counts.values())
        if total < sc.diversity_min_calls:
            return False
        return max(counts.values()) / total > sc.diversity_usage_threshold

    def snapshot(self, scope: str) -> ScopeSnapshot:
        """Latest published snapshot, rebuilt once it is older than the TTL."""
        snapshot = self._scopes.get(scope)
        ttl = timedelta(seconds=self.config.scorer.snapshot_ttl_seconds)
        if snapshot is None or snapshot.built_at is None or self.now() - snapshot.built_at >= ttl:
            snapshot = self.refresh_scope(scope)
        return snapshot

    def forecast_adjustments(self, scope: str) -> ForecastAdjustments:
        """Adjustments currently in effect for a scope."""
        snapshot = self._scopes.get(scope)
        return snapshot.adjustments if snapshot is not None else NEUTRAL_ADJUSTMENTS

    # ── Request path ────────────────────────────────────────────────

    def _keys(self, candidates: Sequence[Candidate], scope: str) -> List[ArmKey]:
        keys = []
        for candidate in candidates:
            if isinstance(candidate, ArmKey):
                keys.append(ArmKey(candidate.provider, candidate.model, scope))
            else:
                keys.append(ArmKey.parse(candidate, scope))
        return keys

    def route(self, candidates: Sequence[Candidate], scope: str = "global") -> RoutingDecision:
        """Score the candidates of a scope and rank them.

        Raises:
            NoAvailableProvider: If no active candidate is left
        """
        keys = self._keys(candidates, scope)
        arms = [arm for arm in self.store.snapshots(keys) if arm.active]
        if not arms:
            raise NoAvailableProvider(f"No candidate providers available in scope '{scope}'", scope=scope)

        snapshot = self.snapshot(scope)
        decision = select_provider(
            arms,
            snapshot.weights,
            penalties=snapshot.penalties,
            adjustments=snapshot.adjustments,
            rng=self._rng,
            now=self.now(),
            config=self.config.scorer,
            strategy=snapshot.strategy,
            diversity=snapshot.diversity_triggered,
        )
        _log.debug(
            "Routed scope %s to %s (%s, %d candidates%s)",
            scope, decision.selected, decision.strategy.value, len(arms),
            ", diversity guard" if decision.diversity_triggered else "",
        )
        return decision

    def select_provider(self, candidates: Sequence[Candidate], scope: str = "global") -> str:
        """Arm id of the best candidate."""
        return self.route(candidates, scope).selected

    def record_outcome(self, provider_id: str, outcome: CallOutcome, scope: str = "global") -> ProviderArm:
        """Fold a completed call into its arm and append it to the event ledger."""
        key = ArmKey.parse(provider_id, scope)
        now = self.now()
        arm = self.store.record_outcome(key, outcome, now)
        self.repository.insert_call_event(CallEvent(
            timestamp=now,
            scope=scope,
            provider=key.provider,
            model=key.model,
            success=outcome.success,
            latency_ms=outcome.latency_ms,
            cost=outcome.cost,
            cost_per_1k=outcome.cost_per_1k,
        ))
        return arm

    # ── Scheduled path ──────────────────────────────────────────────

    def aggregate_daily(self, target_date: date) -> Dict[str, float]:
        """Roll one day of call events into cost and performance history.

        Re-running for the same day replaces the earlier rows.

        Returns:
            Total cost per aggregated scope
        """
        events = self.repository.call_events_for_day(target_date)
        costs: Dict[str, float] = defaultdict(float)
        calls: Dict[Tuple[str, str], List[CallEvent]] = defaultdict(list)
        for event in events:
            costs[event.scope] += event.cost
            calls[(event.scope, event.provider)].append(event)

        with self.repository.transaction() as conn:
            for scope, cost in costs.items():
                self.repository.upsert_daily_cost(scope, target_date, cost, conn=conn)
            for (scope, provider), provider_events in calls.items():
                total = len(provider_events)
                failures = sum(1 for e in provider_events if not e.success)
                self.repository.upsert_daily_performance(scope, DailyPerformance(
                    day=target_date,
                    provider=provider,
                    avg_latency=sum(e.latency_ms for e in provider_events) / total,
                    error_rate=failures / total,
                    total_calls=total,
                ), conn=conn)

        _log.info("Aggregated %d call events for %s", len(events), target_date.isoformat())
        return dict(costs)

    def recompute_forecast(self, scope: str = "global", as_of: Optional[date] = None) -> ForecastReport:
        """Recompute forecast, drift and adjustments of a scope and publish them.

        Reads two comparison periods of history ending at ``as_of``; the cost
        forecast uses only its trailing burn window.
        """
        fc = self.config.forecast
        now = self.now()
        as_of = as_of or now.date()
        since = as_of - timedelta(days=2 * fc.comparison_period_days - 1)

        settings = self.scope_config(scope)
        daily_costs = [row.cost for row in self.repository.cost_history(scope, since, as_of)]
        forecast = compute_cost_forecast(daily_costs, settings.monthly_budget, fc)

        performance = self.repository.performance_history(scope, since, as_of)
        sla = trend_for_rows(performance, as_of, fc)
        adjustments = compute_forecast_adjustments(
            forecast.budget_risk, sla.sla_risk_level, sla.performance_drift_score, fc
        )

        self.repository.save_forecast_state(scope, {
            "burn_rate": forecast.burn_rate,
            "projected_monthly_cost": forecast.projected_monthly_cost,
            "smoothed_daily_cost": forecast.smoothed_daily_cost,
            "budget_risk": forecast.budget_risk.value,
            "latency_drift": sla.latency_drift,
            "error_rate_trend": sla.error_rate_trend,
            "sla_risk_level": sla.sla_risk_level.value,
            "performance_drift_score": sla.performance_drift_score,
            "cost_weight_multiplier": adjustments.cost_weight_multiplier,
            "provider_penalty": adjustments.provider_penalty,
            "exploration_boost": 1 if adjustments.exploration_boost else 0,
            "ts_alpha_decay": adjustments.ts_alpha_decay,
            "ts_beta_decay": adjustments.ts_beta_decay,
        }, now)

        decayed = 0
        if adjustments.exploration_boost:
            decayed = self.store.apply_decay_to_scope(
                scope, adjustments.ts_alpha_decay, adjustments.ts_beta_decay
            )

        provider_trends = trends_by_provider(performance, as_of, fc)
        auto_penalties = self._apply_auto_penalties(scope, provider_trends, now)

        snapshot = self.refresh_scope(scope)
        overall = max_risk(forecast.budget_risk, sla.sla_risk_level)
        _log.info(
            "Forecast for scope %s: burn %.4f/day, budget risk %s, SLA risk %s, drift %.3f",
            scope, forecast.burn_rate, forecast.budget_risk.value,
            sla.sla_risk_level.value, sla.performance_drift_score,
        )
        return ForecastReport(
            scope=scope,
            as_of=as_of,
            forecast=forecast,
            sla=sla,
            adjustments=adjustments,
            overall_risk=overall,
            weights=snapshot.weights,
            provider_trends=provider_trends,
            decayed_arms=decayed,
            auto_penalties=auto_penalties,
        )

    def _apply_auto_penalties(
        self,
        scope: str,
        provider_trends: Dict[str, SlaTrendResult],
        now: datetime,
    ) -> List[Penalty]:
        """Penalize every arm of a provider whose own SLA risk is high.

        An arm that already carries an active automatic penalty is skipped.
        """
        fc = self.config.forecast
        drifting = {
            provider for provider, trend in provider_trends.items()
            if trend.sla_risk_level == RiskLevel.HIGH
        }
        if not drifting:
            return []

        already = {
            p.arm_id for p in self.repository.active_penalties(now, scope)
            if p.source == AUTO_PENALTY_SOURCE
        }
        created = []
        for arm in self.store.arms_in_scope(scope):
            if arm.key.provider not in drifting or arm.arm_id in already:
                continue
            penalty = Penalty(
                penalty_id=uuid.uuid4().hex,
                provider=arm.key.provider,
                model=arm.key.model,
                scope=scope,
                reason=AUTO_PENALTY_REASON,
                expires_at=now + timedelta(minutes=fc.auto_penalty_minutes),
                multiplier=fc.sla_penalty,
                source=AUTO_PENALTY_SOURCE,
                created_at=now,
            )
            self.repository.insert_penalty(penalty)
            created.append(penalty)
            _log.info("Penalized %s in scope %s for SLA drift", arm.arm_id, scope)
        return created
