"""
Unit tests for forecast adjustments and routing weights.

Tests the risk-to-adjustment mapping and cost weight renormalization.
"""

import pytest

from ai_route_guard.config.loader import ForecastConfig
from ai_route_guard.core.adjustments import (
    NEUTRAL_ADJUSTMENTS,
    BudgetState,
    ForecastAdjustments,
    apply_budget_adjustment,
    apply_forecast_cost_adjustment,
    compute_forecast_adjustments,
)
from ai_route_guard.core.forecast import RiskLevel
from ai_route_guard.core.weights import MODE_WEIGHTS, RoutingMode, RoutingWeights, weights_for_mode

BALANCED = MODE_WEIGHTS[RoutingMode.BALANCED]


class TestComputeForecastAdjustments:
    """Test mapping forecast signals to adjustments."""

    def test_all_high(self):
        """Verify every mapping applies at once."""
        adj = compute_forecast_adjustments(RiskLevel.HIGH, RiskLevel.HIGH, 0.9)

        assert adj.cost_weight_multiplier > 1
        assert adj.cost_weight_multiplier == pytest.approx(1.25)
        assert adj.provider_penalty < 1
        assert adj.provider_penalty == pytest.approx(0.8)
        assert adj.exploration_boost is True
        assert adj.ts_alpha_decay == pytest.approx(0.95)
        assert adj.ts_beta_decay == pytest.approx(0.95)

    def test_all_low_is_neutral(self):
        assert compute_forecast_adjustments(RiskLevel.LOW, RiskLevel.LOW, 0.1) == NEUTRAL_ADJUSTMENTS

    def test_medium_is_halfway(self):
        adj = compute_forecast_adjustments(RiskLevel.MEDIUM, RiskLevel.MEDIUM, 0.0)

        assert adj.cost_weight_multiplier == pytest.approx(1.125)
        assert adj.provider_penalty == pytest.approx(0.9)

    def test_drift_threshold_is_strict(self):
        adj = compute_forecast_adjustments(RiskLevel.LOW, RiskLevel.LOW, 0.5)

        assert adj.exploration_boost is False
        assert adj.ts_alpha_decay == 1.0

    def test_mappings_are_independent(self):
        adj = compute_forecast_adjustments(RiskLevel.HIGH, RiskLevel.LOW, 0.0)

        assert adj.cost_weight_multiplier == pytest.approx(1.25)
        assert adj.provider_penalty == 1.0
        assert adj.exploration_boost is False


class TestApplyForecastCostAdjustment:
    """Test cost weight boost and renormalization."""

    def test_neutral_multiplier_is_noop(self):
        assert apply_forecast_cost_adjustment(BALANCED, 1.0) is BALANCED

    @pytest.mark.parametrize("multiplier", [1.125, 1.25, 2.0, 10.0])
    def test_weights_sum_to_one(self, multiplier):
        adjusted = apply_forecast_cost_adjustment(BALANCED, multiplier)
        assert adjusted.total() == pytest.approx(1.0)

    @pytest.mark.parametrize("multiplier", [1.25, 3.0])
    def test_other_weights_keep_their_ratios(self, multiplier):
        adjusted = apply_forecast_cost_adjustment(BALANCED, multiplier)
        others = [adjusted.w_quality, adjusted.w_latency, adjusted.w_stability, adjusted.w_confidence]

        for value in others:
            assert value == pytest.approx(others[0])
        assert adjusted.w_cost > BALANCED.w_cost

    def test_boosted_cost_weight(self):
        adjusted = apply_forecast_cost_adjustment(BALANCED, 1.25)
        assert adjusted.w_cost == pytest.approx(0.25 / 1.05)

    def test_uneven_ratios_preserved(self):
        weights = MODE_WEIGHTS[RoutingMode.PERFORMANCE]
        adjusted = apply_forecast_cost_adjustment(weights, 1.25)

        assert adjusted.w_quality / adjusted.w_latency == pytest.approx(weights.w_quality / weights.w_latency)


class TestApplyBudgetAdjustment:
    """Test month-to-date budget enforcement."""

    def test_no_budget_leaves_weights(self):
        weights, state = apply_budget_adjustment(BALANCED, 0.0, 500.0)
        assert weights is BALANCED
        assert state == BudgetState.NO_CONFIG

    def test_under_limit(self):
        weights, state = apply_budget_adjustment(BALANCED, 100.0, 80.0)
        assert weights is BALANCED
        assert state == BudgetState.UNDER_LIMIT

    def test_soft_limit_boosts_cost(self):
        weights, state = apply_budget_adjustment(BALANCED, 100.0, 81.0)

        assert state == BudgetState.SOFT_LIMIT
        assert weights.w_cost == pytest.approx(0.30 / 1.10)
        assert weights.total() == pytest.approx(1.0)

    @pytest.mark.parametrize("spent", [100.0, 250.0])
    def test_hard_limit_forces_cost_saver(self, spent):
        weights, state = apply_budget_adjustment(MODE_WEIGHTS[RoutingMode.PERFORMANCE], 100.0, spent)

        assert state == BudgetState.HARD_LIMIT
        assert weights == MODE_WEIGHTS[RoutingMode.COST_SAVER]

    def test_thresholds_come_from_config(self):
        config = ForecastConfig(budget_soft_limit=0.5, soft_limit_cost_boost=2.0)
        weights, state = apply_budget_adjustment(BALANCED, 100.0, 60.0, config)

        assert state == BudgetState.SOFT_LIMIT
        assert weights.w_cost == pytest.approx(0.40 / 1.20)


class TestForecastAdjustments:
    """Test adjustment validation."""

    def test_penalty_must_be_positive(self):
        with pytest.raises(ValueError, match="provider_penalty"):
            ForecastAdjustments(provider_penalty=0.0)

    def test_cost_multiplier_below_one_rejected(self):
        with pytest.raises(ValueError, match="cost_weight_multiplier"):
            ForecastAdjustments(cost_weight_multiplier=0.5)


class TestRoutingWeights:
    """Test routing weights and mode presets."""

    @pytest.mark.parametrize("mode", list(RoutingMode))
    def test_presets_sum_to_one(self, mode):
        assert MODE_WEIGHTS[mode].total() == pytest.approx(1.0)

    def test_negative_weight_rejected(self):
        with pytest.raises(ValueError, match="w_cost"):
            RoutingWeights(0.5, 0.5, 0.0, -0.1, 0.1)

    def test_all_zero_normalizes_to_balanced(self):
        assert RoutingWeights(0.0, 0.0, 0.0, 0.0, 0.0).normalized() == BALANCED

    def test_unknown_mode_rejected(self):
        with pytest.raises(ValueError, match="routing mode"):
            weights_for_mode("turbo")

    def test_mode_lookup(self):
        assert weights_for_mode("cost_saver").w_cost == 0.40
