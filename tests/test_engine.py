"""
Integration tests for the routing engine.

Tests request-time routing, outcome recording, daily aggregation and
scheduled forecast recomputation against a temporary database.
"""

import os
import random
import shutil
import tempfile
from datetime import datetime, timedelta

import pytest

from ai_route_guard.config.loader import EngineConfig, ScorerConfig
from ai_route_guard.core.adjustments import NEUTRAL_ADJUSTMENTS, BudgetState
from ai_route_guard.core.engine import AUTO_PENALTY_SOURCE, RoutingEngine
from ai_route_guard.core.forecast import RiskLevel
from ai_route_guard.core.governance import GovernanceService
from ai_route_guard.core.scorer import NoAvailableProvider, RoutingStrategy
from ai_route_guard.core.statistics import CallOutcome
from ai_route_guard.core.weights import MODE_WEIGHTS, RoutingMode
from ai_route_guard.storage.models import ArmKey, CallEvent, DailyPerformance, ScopeConfig
from ai_route_guard.storage.repository import RoutingRepository, initialize_schema

NOW = datetime(2026, 3, 15, 12, 0, 0)
TODAY = NOW.date()
SCOPE = "support"


def _outcome(success: bool = True, latency_ms: float = 500.0, cost: float = 0.0) -> CallOutcome:
    return CallOutcome(
        success=success,
        latency_ms=latency_ms,
        quality_score=0.8 if success else 0.0,
        cost_per_1k=0.002,
        cost=cost,
    )


class TestRoutingEngine:
    """Test the request path."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.repository = RoutingRepository(self.db_path)
        self.engine = RoutingEngine(self.repository, rng=random.Random(5), clock=lambda: NOW)

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_empty_candidates_raise(self):
        with pytest.raises(NoAvailableProvider) as excinfo:
            self.engine.select_provider([], SCOPE)
        assert excinfo.value.scope == SCOPE

    def test_selects_one_of_the_candidates(self):
        candidates = ["openai::gpt-4o", "openai::gpt-4o-mini"]
        assert self.engine.select_provider(candidates, SCOPE) in candidates

    def test_bare_provider_maps_to_default_model(self):
        assert self.engine.select_provider(["openai"], SCOPE) == "openai::default"

    def test_deactivated_candidates_are_unavailable(self):
        self.engine.record_outcome("openai::gpt-4o", _outcome(), SCOPE)
        self.engine.store.deactivate(ArmKey("openai", "gpt-4o", SCOPE))

        with pytest.raises(NoAvailableProvider):
            self.engine.route(["openai::gpt-4o"], SCOPE)

    def test_record_outcome_updates_arm_and_ledger(self):
        arm = self.engine.record_outcome("openai::gpt-4o", _outcome(cost=0.25), SCOPE)

        assert arm.ts_alpha == 2.0
        assert arm.last_call_at == NOW
        events = self.repository.call_events_for_day(TODAY)
        assert len(events) == 1
        assert events[0].scope == SCOPE
        assert events[0].model == "gpt-4o"
        assert events[0].cost == 0.25

    def test_default_snapshot(self):
        """Verify an unconfigured scope routes with the default settings."""
        assert self.engine.forecast_adjustments(SCOPE) == NEUTRAL_ADJUSTMENTS

        snapshot = self.engine.snapshot(SCOPE)

        assert snapshot.strategy == RoutingStrategy.THOMPSON
        assert snapshot.weights == MODE_WEIGHTS[RoutingMode.BALANCED]
        assert snapshot.adjustments == NEUTRAL_ADJUSTMENTS

    def test_scope_settings_drive_snapshot(self):
        self.repository.save_scope_config(ScopeConfig(
            scope=SCOPE, monthly_budget=10.0, routing_strategy="hybrid", routing_mode="cost_saver"
        ))
        snapshot = self.engine.refresh_scope(SCOPE)

        assert snapshot.strategy == RoutingStrategy.HYBRID
        assert snapshot.weights == MODE_WEIGHTS[RoutingMode.COST_SAVER]
        assert self.engine.route(["a::x", "b::y"], SCOPE).strategy == RoutingStrategy.HYBRID

    def test_learns_to_prefer_reliable_arm(self):
        for _ in range(60):
            self.engine.record_outcome("good::m", _outcome(latency_ms=400.0), SCOPE)
            self.engine.record_outcome("bad::m", _outcome(success=False, latency_ms=4000.0), SCOPE)

        picks = [self.engine.select_provider(["bad::m", "good::m"], SCOPE) for _ in range(20)]
        assert picks.count("good::m") == 20

    def test_hard_budget_limit_switches_to_cost_saver(self):
        self.repository.save_scope_config(ScopeConfig(
            scope=SCOPE, monthly_budget=1.0, routing_mode="performance"
        ))
        self.engine.record_outcome("openai::gpt-4o", _outcome(cost=1.0), SCOPE)

        snapshot = self.engine.refresh_scope(SCOPE)

        assert snapshot.budget_state == BudgetState.HARD_LIMIT
        assert snapshot.month_to_date_cost == pytest.approx(1.0)
        assert snapshot.weights == MODE_WEIGHTS[RoutingMode.COST_SAVER]

    def test_soft_budget_limit_boosts_cost_weight(self):
        self.repository.save_scope_config(ScopeConfig(
            scope=SCOPE, monthly_budget=10.0, routing_mode="performance"
        ))
        self.engine.record_outcome("openai::gpt-4o", _outcome(cost=9.0), SCOPE)

        snapshot = self.engine.refresh_scope(SCOPE)

        assert snapshot.budget_state == BudgetState.SOFT_LIMIT
        assert snapshot.weights.w_cost == pytest.approx(0.075 / 1.025)
        assert snapshot.weights.total() == pytest.approx(1.0)

    def test_spend_before_this_month_is_ignored(self):
        self.repository.save_scope_config(ScopeConfig(scope=SCOPE, monthly_budget=1.0))
        self.repository.insert_call_event(CallEvent(
            timestamp=datetime(2026, 2, 28, 23, 0, 0),
            scope=SCOPE,
            provider="openai",
            model="gpt-4o",
            success=True,
            latency_ms=500.0,
            cost=5.0,
            cost_per_1k=0.002,
        ))

        snapshot = self.engine.refresh_scope(SCOPE)

        assert snapshot.budget_state == BudgetState.UNDER_LIMIT
        assert snapshot.month_to_date_cost == 0.0
        assert snapshot.weights == MODE_WEIGHTS[RoutingMode.BALANCED]

    def test_unbudgeted_scope_has_no_budget_state(self):
        self.engine.record_outcome("openai::gpt-4o", _outcome(cost=50.0), SCOPE)
        assert self.engine.refresh_scope(SCOPE).budget_state == BudgetState.NO_CONFIG

    def test_diversity_guard_spreads_monopolized_traffic(self):
        """Verify one arm taking nearly all recent calls opens the top three."""
        for _ in range(25):
            self.engine.record_outcome("a::m", _outcome(), SCOPE)

        decisions = [self.engine.route(["a::m", "b::m", "c::m", "d::m"], SCOPE) for _ in range(30)]

        assert all(d.diversity_triggered for d in decisions)
        assert all(d.selected in d.ranked[:3] for d in decisions)
        assert len({d.selected for d in decisions}) > 1

    def test_diversity_guard_needs_enough_calls(self):
        for _ in range(10):
            self.engine.record_outcome("a::m", _outcome(), SCOPE)

        decision = self.engine.route(["a::m", "b::m"], SCOPE)

        assert decision.diversity_triggered is False
        assert decision.selected == decision.ranked[0]

    def test_balanced_traffic_does_not_trigger_diversity(self):
        for _ in range(15):
            self.engine.record_outcome("a::m", _outcome(), SCOPE)
            self.engine.record_outcome("b::m", _outcome(), SCOPE)

        assert self.engine.snapshot(SCOPE).diversity_triggered is False


class TestSnapshotRefresh:
    """Test that writes from another engine reach a running one."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.now = NOW
        self.server = RoutingEngine(
            RoutingRepository(self.db_path), rng=random.Random(5), clock=lambda: self.now
        )
        admin = RoutingEngine(RoutingRepository(self.db_path), clock=lambda: self.now)
        self.governance = GovernanceService(
            admin.repository, admin.store, engine=admin, clock=lambda: self.now
        )

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_penalty_from_other_engine_applies_after_ttl(self):
        candidates = ["openai::gpt-4o", "openai::gpt-4o-mini"]
        assert self.server.route(candidates, SCOPE).penalty_applied is False

        self.governance.apply_penalty(ArmKey("openai", "gpt-4o", SCOPE), 60, "outage", "ops")

        self.now = NOW + timedelta(seconds=1)
        assert self.server.route(candidates, SCOPE).penalty_applied is False

        self.now = NOW + timedelta(seconds=6)
        decision = self.server.route(candidates, SCOPE)
        assert decision.penalty_applied is True
        penalized = {s.arm_id: s.penalty_multiplier for s in decision.breakdown}
        assert penalized["openai::gpt-4o"] < 1.0

    def test_strategy_switch_from_other_engine_applies_after_ttl(self):
        self.server.route(["a::x", "b::y"], SCOPE)

        self.governance.switch_strategy(SCOPE, "hybrid", "ops")
        self.now = NOW + timedelta(seconds=10)

        assert self.server.route(["a::x", "b::y"], SCOPE).strategy == RoutingStrategy.HYBRID

    def test_zero_ttl_always_rebuilds(self):
        config = EngineConfig(scorer=ScorerConfig(snapshot_ttl_seconds=0))
        engine = RoutingEngine(RoutingRepository(self.db_path), config=config, clock=lambda: self.now)
        engine.route(["a::x"], SCOPE)

        self.governance.update_budget(SCOPE, 25.0, "finance")

        assert engine.snapshot(SCOPE).monthly_budget == 25.0


class TestDailyAggregation:
    """Test rolling call events into history."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.repository = RoutingRepository(self.db_path)
        self.engine = RoutingEngine(self.repository, rng=random.Random(5), clock=lambda: NOW)

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_aggregates_cost_and_performance(self):
        self.engine.record_outcome("openai::gpt-4o", _outcome(latency_ms=400.0, cost=0.5), SCOPE)
        self.engine.record_outcome("openai::gpt-4o-mini", _outcome(latency_ms=600.0, cost=0.5), SCOPE)
        self.engine.record_outcome("anthropic::haiku", _outcome(success=False, latency_ms=900.0), SCOPE)

        totals = self.engine.aggregate_daily(TODAY)

        assert totals == {SCOPE: 1.0}
        assert [c.cost for c in self.repository.cost_history(SCOPE)] == [1.0]
        rows = {r.provider: r for r in self.repository.performance_history(SCOPE)}
        assert rows["openai"].avg_latency == pytest.approx(500.0)
        assert rows["openai"].error_rate == 0.0
        assert rows["openai"].total_calls == 2
        assert rows["anthropic"].error_rate == 1.0

    def test_rerun_replaces_rows(self):
        """Verify aggregation is idempotent per day."""
        self.engine.record_outcome("openai::gpt-4o", _outcome(cost=0.5), SCOPE)

        self.engine.aggregate_daily(TODAY)
        self.engine.aggregate_daily(TODAY)

        assert len(self.repository.cost_history(SCOPE)) == 1
        assert len(self.repository.performance_history(SCOPE)) == 1

    def test_day_without_calls(self):
        assert self.engine.aggregate_daily(TODAY - timedelta(days=3)) == {}


class TestRecomputeForecast:
    """Test the scheduled recomputation."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.repository = RoutingRepository(self.db_path)
        self.engine = RoutingEngine(self.repository, rng=random.Random(5), clock=lambda: NOW)

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _seed_costs(self, costs):
        for offset, cost in enumerate(reversed(costs)):
            self.repository.upsert_daily_cost(SCOPE, TODAY - timedelta(days=offset), cost)

    def _seed_latency(self, provider: str, previous: float, current: float):
        for offset in range(14):
            self.repository.upsert_daily_performance(SCOPE, DailyPerformance(
                day=TODAY - timedelta(days=offset),
                provider=provider,
                avg_latency=current if offset < 7 else previous,
                error_rate=0.0,
                total_calls=50,
            ))

    def test_no_history_is_neutral(self):
        report = self.engine.recompute_forecast(SCOPE)

        assert report.forecast.burn_rate == 0.0
        assert report.forecast.budget_risk == RiskLevel.LOW
        assert report.sla.sla_risk_level == RiskLevel.LOW
        assert report.overall_risk == RiskLevel.LOW
        assert report.adjustments == NEUTRAL_ADJUSTMENTS
        assert report.auto_penalties == []

    def test_budget_pressure_boosts_cost_weight(self):
        self.repository.save_scope_config(ScopeConfig(scope=SCOPE, monthly_budget=100.0))
        self._seed_costs([50.0, 55.0, 60.0, 65.0, 70.0, 75.0, 80.0])

        report = self.engine.recompute_forecast(SCOPE)

        assert report.forecast.burn_rate == pytest.approx(65.0)
        assert report.forecast.budget_risk == RiskLevel.HIGH
        assert report.overall_risk == RiskLevel.HIGH
        assert report.adjustments.cost_weight_multiplier == pytest.approx(1.25)
        assert report.weights.w_cost == pytest.approx(0.25 / 1.05)
        assert self.engine.forecast_adjustments(SCOPE).cost_weight_multiplier == pytest.approx(1.25)

        state = self.repository.get_forecast_state(SCOPE)
        assert state["budget_risk"] == "high"
        assert state["projected_monthly_cost"] == pytest.approx(1950.0)

    def test_repeated_recompute_does_not_compound_weights(self):
        self.repository.save_scope_config(ScopeConfig(scope=SCOPE, monthly_budget=100.0))
        self._seed_costs([80.0] * 7)

        first = self.engine.recompute_forecast(SCOPE)
        second = self.engine.recompute_forecast(SCOPE)

        assert first.weights == second.weights
        assert second.weights.total() == pytest.approx(1.0)

    def test_drift_decays_posteriors_and_penalizes_provider(self):
        for _ in range(20):
            self.engine.record_outcome("openai::gpt-4o", _outcome(), SCOPE)
            self.engine.record_outcome("anthropic::haiku", _outcome(), SCOPE)
        self._seed_latency("openai", previous=100.0, current=200.0)
        self._seed_latency("anthropic", previous=100.0, current=100.0)

        report = self.engine.recompute_forecast(SCOPE, TODAY)

        assert report.provider_trends["openai"].sla_risk_level == RiskLevel.HIGH
        assert report.adjustments.exploration_boost is True
        assert report.decayed_arms == 2
        assert self.repository.get_arm(ArmKey("openai", "gpt-4o", SCOPE)).ts_alpha == pytest.approx(21 * 0.95)

        assert [p.arm_id for p in report.auto_penalties] == ["openai::gpt-4o"]
        penalty = report.auto_penalties[0]
        assert penalty.source == AUTO_PENALTY_SOURCE
        assert penalty.reason == "sla_drift"
        assert penalty.multiplier == pytest.approx(0.8)

        decision = self.engine.route(["openai::gpt-4o", "anthropic::haiku"], SCOPE)
        penalized = {s.arm_id: s.penalty_multiplier for s in decision.breakdown}
        assert penalized["openai::gpt-4o"] == pytest.approx(0.8)
        assert penalized["anthropic::haiku"] == 1.0

    def test_auto_penalties_are_not_duplicated(self):
        self.engine.record_outcome("openai::gpt-4o", _outcome(), SCOPE)
        self._seed_latency("openai", previous=100.0, current=200.0)

        first = self.engine.recompute_forecast(SCOPE)
        second = self.engine.recompute_forecast(SCOPE)

        assert len(first.auto_penalties) == 1
        assert second.auto_penalties == []
        assert len(self.repository.active_penalties(NOW, SCOPE)) == 1
