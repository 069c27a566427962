"""
Bandit posterior store.

Keeps the latest immutable snapshot of every arm in memory, backed by the
routing repository. Writers are serialized per arm; readers never lock.
"""

import logging
import threading
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

from ai_route_guard.config.loader import TrackerConfig
from ai_route_guard.storage.models import ArmKey, ProviderArm
from ai_route_guard.storage.repository import RoutingRepository

from .statistics import CallOutcome, record_outcome

_log = logging.getLogger(__name__)

MIN_BETA_PARAM = 1.0


def clamp_beta_param(value: float) -> float:
    """Keep a Beta parameter at or above 1 so the posterior stays proper."""
    return max(MIN_BETA_PARAM, value)


def decay_posterior(arm: ProviderArm, alpha_decay: float, beta_decay: float) -> ProviderArm:
    """Shrink historical confidence to encourage exploration.

    alpha *= alpha_decay, beta *= beta_decay, then both re-clamped to >= 1.

    Raises:
        ValueError: If a decay factor is outside (0, 1]
    """
    for name, factor in (("alpha_decay", alpha_decay), ("beta_decay", beta_decay)):
        if not 0 < factor <= 1:
            raise ValueError(f"{name} must be in (0, 1]")
    if alpha_decay == 1.0 and beta_decay == 1.0:
        return arm
    return replace(
        arm,
        ts_alpha=clamp_beta_param(arm.ts_alpha * alpha_decay),
        ts_beta=clamp_beta_param(arm.ts_beta * beta_decay),
    )


def reset_posterior(arm: ProviderArm) -> ProviderArm:
    """Full prior reset. Moving averages and sample count are kept."""
    return replace(
        arm,
        ts_alpha=1.0,
        ts_beta=1.0,
        ts_latency_mean=0.0,
        ts_latency_variance=1.0,
        ts_cost_mean=0.0,
        ts_cost_variance=1.0,
    )


class PosteriorStore:
    """Per-arm state with single-writer updates and snapshot reads.

    The snapshot map is replaced entry by entry with immutable arms, so a
    scorer reading concurrently sees either the old or the new arm, never
    a partially updated one.
    """

    def __init__(self, repository: RoutingRepository, config: TrackerConfig = TrackerConfig()):
        self.repository = repository
        self.config = config
        self._snapshots: Dict[ArmKey, ProviderArm] = {}
        self._locks: Dict[ArmKey, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    def load(self, scope: Optional[str] = None) -> int:
        """Warm the snapshot cache from the repository.

        Returns:
            Number of arms loaded
        """
        arms = self.repository.list_arms(scope=scope, active_only=False)
        for arm in arms:
            self._snapshots[arm.key] = arm
        return len(arms)

    def lock_for(self, key: ArmKey) -> threading.RLock:
        """The write lock owning one arm.

        Reentrant, so a caller that must hold the arm across a wider
        transaction can take it first and still go through ``update``.
        Take it before opening a database transaction, never after.
        """
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    def snapshot(self, key: ArmKey) -> Optional[ProviderArm]:
        """Latest published arm, falling back to the repository once."""
        arm = self._snapshots.get(key)
        if arm is None:
            arm = self.repository.get_arm(key)
            if arm is not None:
                self._snapshots[key] = arm
        return arm

    def snapshots(self, keys: Iterable[ArmKey]) -> List[ProviderArm]:
        """Snapshot of each key; unseen keys get neutral priors (not persisted)."""
        result = []
        for key in keys:
            arm = self.snapshot(key)
            result.append(arm if arm is not None else ProviderArm.neutral(key))
        return result

    def arms_in_scope(self, scope: str) -> List[ProviderArm]:
        return self.repository.list_arms(scope=scope)

    def update(
        self,
        key: ArmKey,
        mutate: Callable[[Optional[ProviderArm]], ProviderArm],
        conn=None,
    ) -> ProviderArm:
        """Serialized read-modify-write of one arm.

        Args:
            key: Arm to update
            mutate: Pure function from the current arm (or None) to the new arm
            conn: Optional open transaction to persist through

        Returns:
            The arm as persisted and published
        """
        with self.lock_for(key):
            current = self.repository.get_arm(key, conn=conn)
            updated = mutate(current)
            self.repository.save_arm(updated, conn=conn)
            self._snapshots[key] = updated
            return updated

    def record_outcome(self, key: ArmKey, outcome: CallOutcome, now: datetime) -> ProviderArm:
        """Fold a call outcome into the arm, creating it on first sight."""
        return self.update(
            key, lambda arm: record_outcome(arm, outcome, now, self.config, key=key)
        )

    def apply_decay(self, key: ArmKey, alpha_decay: float, beta_decay: float) -> Optional[ProviderArm]:
        """Decay one arm's Beta posterior. Unknown arms are left alone."""
        if self.snapshot(key) is None:
            return None
        return self.update(
            key,
            lambda arm: decay_posterior(arm or ProviderArm.neutral(key), alpha_decay, beta_decay),
        )

    def apply_decay_to_scope(self, scope: str, alpha_decay: float, beta_decay: float) -> int:
        """Decay every active arm in a scope.

        Returns:
            Number of arms decayed
        """
        if alpha_decay == 1.0 and beta_decay == 1.0:
            return 0
        count = 0
        for arm in self.arms_in_scope(scope):
            self.apply_decay(arm.key, alpha_decay, beta_decay)
            count += 1
        _log.debug("Decayed %d arm posteriors in scope %s", count, scope)
        return count

    def reset(self, key: ArmKey, conn=None) -> ProviderArm:
        """Reset an arm's posteriors to the neutral prior.

        Raises:
            KeyError: If the arm has never been observed
        """
        def _reset(arm: Optional[ProviderArm]) -> ProviderArm:
            if arm is None:
                raise KeyError(key.arm_id)
            return reset_posterior(arm)

        return self.update(key, _reset, conn=conn)

    def deactivate(self, key: ArmKey) -> Optional[ProviderArm]:
        """Stop routing to an arm without deleting its history."""
        if self.snapshot(key) is None:
            return None
        return self.update(key, lambda arm: replace(arm, active=False))

    def discard(self, key: ArmKey) -> None:
        """Drop a cached snapshot so the next read goes to the repository."""
        self._snapshots.pop(key, None)
