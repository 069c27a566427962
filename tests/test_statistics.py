"""
Unit tests for online statistics.

Tests EWMA updates, Welford variance and Beta-Bernoulli posterior updates.
"""

from datetime import datetime

import pytest

from ai_route_guard.config.loader import TrackerConfig
from ai_route_guard.core.statistics import (
    CallOutcome,
    compute_ewma,
    record_outcome,
    welford_update,
)
from ai_route_guard.storage.models import ArmKey, ProviderArm

NOW = datetime(2026, 1, 15, 12, 0, 0)
KEY = ArmKey(provider="openai", model="gpt-4o-mini", scope="support")


def _success(latency_ms: float = 800.0, quality: float = 0.9, cost_per_1k: float = 0.0006) -> CallOutcome:
    return CallOutcome(success=True, latency_ms=latency_ms, quality_score=quality, cost_per_1k=cost_per_1k)


class TestComputeEwma:
    """Test exponential moving average."""

    def test_weighted_blend(self):
        """Verify new = a * observed + (1 - a) * old."""
        assert compute_ewma(100.0, 200.0, 0.2) == pytest.approx(120.0)

    def test_full_smoothing_returns_observation(self):
        assert compute_ewma(5.0, 9.0, 1.0) == 9.0


class TestWelfordUpdate:
    """Test incremental mean/variance estimation."""

    def test_first_observation_seeds_mean(self):
        """Verify the first observation replaces the prior."""
        assert welford_update(0.0, 1.0, 0, 250.0, 0.01) == (250.0, 0.01)

    def test_matches_population_statistics(self):
        """Verify folding a sequence gives its mean and population variance."""
        mean, variance, count = 0.0, 1.0, 0
        for value in [100.0, 200.0, 300.0, 400.0]:
            mean, variance = welford_update(mean, variance, count, value, 0.01)
            count += 1

        assert mean == pytest.approx(250.0)
        assert variance == pytest.approx(12500.0, abs=0.1)

    def test_variance_never_below_floor(self):
        """Verify identical observations keep the floor variance."""
        mean, variance, count = 0.0, 1.0, 0
        for _ in range(5):
            mean, variance = welford_update(mean, variance, count, 5.0, 0.01)
            count += 1

        assert mean == pytest.approx(5.0)
        assert variance == 0.01


class TestRecordOutcome:
    """Test folding call outcomes into arms."""

    def test_missing_arm_is_created_with_neutral_priors(self):
        """Verify a never-seen arm is auto-created instead of failing."""
        arm = record_outcome(None, _success(), NOW, key=KEY)

        assert arm.key == KEY
        assert arm.ts_alpha == 2.0
        assert arm.ts_beta == 1.0
        assert arm.sample_count == 1
        assert arm.last_call_at == NOW

    def test_missing_arm_without_key_raises(self):
        with pytest.raises(ValueError, match="key is required"):
            record_outcome(None, _success(), NOW)

    def test_failure_increments_beta(self):
        """Verify failures update the Beta posterior's beta parameter."""
        failure = CallOutcome(success=False, latency_ms=3000.0, quality_score=0.0, cost_per_1k=0.0)
        arm = record_outcome(ProviderArm.neutral(KEY), failure, NOW)

        assert arm.ts_alpha == 1.0
        assert arm.ts_beta == 2.0
        assert arm.ewma_success_rate == 0.0

    def test_unpriced_failure_skips_cost_statistics(self):
        arm = record_outcome(ProviderArm.neutral(KEY), _success(cost_per_1k=0.0006), NOW)
        failure = CallOutcome(success=False, latency_ms=3000.0, quality_score=0.0, cost_per_1k=None)
        arm = record_outcome(arm, failure, NOW)

        assert arm.sample_count == 2
        assert arm.cost_sample_count == 1
        assert arm.ewma_cost_per_1k == 0.0006
        assert arm.ts_cost_mean == 0.0006
        assert arm.ts_latency_mean == pytest.approx(1900.0)

    def test_first_priced_call_seeds_cost_after_failures(self):
        """Verify cost is seeded by the first priced call, not the first call."""
        failure = CallOutcome(success=False, latency_ms=3000.0, quality_score=0.0, cost_per_1k=None)
        arm = record_outcome(ProviderArm.neutral(KEY), failure, NOW)
        arm = record_outcome(arm, _success(cost_per_1k=0.002), NOW)

        assert arm.ewma_cost_per_1k == 0.002
        assert arm.ts_cost_mean == 0.002
        assert arm.cost_sample_count == 1

    def test_first_observation_seeds_moving_averages(self):
        arm = record_outcome(ProviderArm.neutral(KEY), _success(latency_ms=800.0), NOW)

        assert arm.ewma_latency_ms == 800.0
        assert arm.ewma_quality == 0.9
        assert arm.ewma_success_rate == 1.0
        assert arm.ewma_cost_per_1k == 0.0006
        assert arm.ts_latency_mean == 800.0

    def test_later_observations_are_smoothed(self):
        """Verify the configured smoothing factor is applied after the first call."""
        arm = record_outcome(ProviderArm.neutral(KEY), _success(latency_ms=800.0), NOW)
        arm = record_outcome(arm, _success(latency_ms=1200.0), NOW, TrackerConfig(ewma_smoothing=0.2))

        assert arm.ewma_latency_ms == pytest.approx(960.0)
        assert arm.ts_latency_mean == pytest.approx(1000.0)
        assert arm.sample_count == 2

    def test_repeated_successes_grow_alpha_only(self):
        """Verify N successes give alpha = 1 + N and beta = 1."""
        arm = ProviderArm.neutral(KEY)
        for _ in range(200):
            arm = record_outcome(arm, _success(), NOW)

        assert arm.ts_alpha == 201.0
        assert arm.ts_beta == 1.0
        assert arm.success_mean > 0.99

    def test_returns_new_instance(self):
        """Verify snapshots are never mutated in place."""
        original = ProviderArm.neutral(KEY)
        updated = record_outcome(original, _success(), NOW)

        assert updated is not original
        assert original.sample_count == 0
        assert original.ts_alpha == 1.0

    def test_latency_variance_stays_positive(self):
        arm = ProviderArm.neutral(KEY)
        for latency in [500.0, 500.0, 10.0, 90000.0, 0.0]:
            arm = record_outcome(arm, _success(latency_ms=latency), NOW)
            assert arm.ts_latency_variance > 0
            assert arm.ts_cost_variance > 0


class TestCallOutcome:
    """Test telemetry validation."""

    def test_negative_latency_rejected(self):
        with pytest.raises(ValueError, match="latency_ms"):
            CallOutcome(success=True, latency_ms=-1.0, quality_score=0.5, cost_per_1k=0.0)

    def test_quality_out_of_range_rejected(self):
        with pytest.raises(ValueError, match="quality_score"):
            CallOutcome(success=True, latency_ms=10.0, quality_score=1.5, cost_per_1k=0.0)

    def test_negative_cost_rejected(self):
        with pytest.raises(ValueError, match="cost_per_1k"):
            CallOutcome(success=True, latency_ms=10.0, quality_score=0.5, cost_per_1k=-0.1)
