"""
Governance control surface.

Operator actions that overwrite routing state outside the request path.
Each write runs under one governance lock and commits its state change
together with an audit log entry in a single transaction: both land or
neither does. Input is validated before anything is written.
"""

import logging
import math
import threading
import uuid
from dataclasses import asdict, replace
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from ai_route_guard.config.loader import VALID_ROUTING_MODES, VALID_STRATEGIES, ScorerConfig
from ai_route_guard.storage.models import ArmKey, AuditLogEntry, Penalty, ProviderArm, ScopeConfig
from ai_route_guard.storage.repository import RoutingRepository

from .posterior import PosteriorStore

_log = logging.getLogger(__name__)


class GovernanceError(ValueError):
    """Rejected governance input. Nothing was written."""


def _posterior_payload(arm: ProviderArm) -> dict:
    return {
        "ts_alpha": arm.ts_alpha,
        "ts_beta": arm.ts_beta,
        "ts_latency_mean": arm.ts_latency_mean,
        "ts_latency_variance": arm.ts_latency_variance,
        "ts_cost_mean": arm.ts_cost_mean,
        "ts_cost_variance": arm.ts_cost_variance,
    }


def _penalty_payload(penalty: Penalty) -> dict:
    payload = asdict(penalty)
    payload["expires_at"] = penalty.expires_at.isoformat()
    payload["created_at"] = penalty.created_at.isoformat() if penalty.created_at else None
    return payload


class GovernanceService:
    """Audited operator actions on routing state.

    Authorization is the caller's responsibility; ``actor_id`` is recorded
    as given.
    """

    def __init__(
        self,
        repository: RoutingRepository,
        store: PosteriorStore,
        engine=None,
        clock: Optional[Callable[[], datetime]] = None,
        config: ScorerConfig = ScorerConfig(),
    ):
        self.repository = repository
        self.store = store
        self.engine = engine
        self.config = config
        self._clock = clock or datetime.now
        self._lock = threading.Lock()

    def _audit(self, conn, action: str, actor_id: str, scope: Optional[str], payload: dict) -> AuditLogEntry:
        entry = AuditLogEntry(
            action=action,
            actor_id=actor_id,
            timestamp=self._clock(),
            payload=payload,
            scope=scope,
        )
        self.repository.insert_audit_entry(entry, conn=conn)
        return entry

    def _scope_config(self, scope: str, conn) -> ScopeConfig:
        if self.engine is not None:
            return self.engine.scope_config(scope, conn=conn)
        stored = self.repository.get_scope_config(scope, conn=conn)
        return stored if stored is not None else ScopeConfig(scope=scope)

    def _refresh(self, scope: str) -> None:
        if self.engine is not None:
            self.engine.refresh_scope(scope)

    @staticmethod
    def _require_actor(actor_id: str) -> None:
        if not actor_id or not str(actor_id).strip():
            raise GovernanceError("actor_id is required")

    # ── Writes ──────────────────────────────────────────────────────

    def switch_strategy(self, scope: str, strategy: str, actor_id: str) -> ScopeConfig:
        """Change the routing strategy of a scope.

        Raises:
            GovernanceError: If the strategy is not hybrid, cost_aware or thompson
        """
        self._require_actor(actor_id)
        if not isinstance(strategy, str) or strategy not in VALID_STRATEGIES:
            _log.warning("Rejected strategy %r for scope %s", strategy, scope)
            raise GovernanceError(
                f"Invalid strategy '{strategy}'. Must be one of: {list(VALID_STRATEGIES)}"
            )

        with self._lock:
            with self.repository.transaction() as conn:
                previous = self._scope_config(scope, conn)
                updated = replace(previous, routing_strategy=strategy)
                self.repository.save_scope_config(updated, conn=conn)
                self._audit(conn, "switch_strategy", actor_id, scope, {
                    "previous_strategy": previous.routing_strategy,
                    "new_strategy": strategy,
                })
            self._refresh(scope)

        _log.info("Scope %s switched to %s by %s", scope, strategy, actor_id)
        return updated

    def reset_posterior(self, key: ArmKey, actor_id: str) -> ProviderArm:
        """Reset an arm's posteriors to the neutral prior.

        Raises:
            GovernanceError: If the arm has never been observed
        """
        self._require_actor(actor_id)
        # Arm lock before the write transaction, the same order the request path uses.
        with self._lock, self.store.lock_for(key):
            try:
                with self.repository.transaction() as conn:
                    previous = self.repository.get_arm(key, conn=conn)
                    if previous is None:
                        _log.warning("Rejected posterior reset of unknown arm %s", key.arm_id)
                        raise GovernanceError(f"Unknown arm '{key.arm_id}' in scope '{key.scope}'")
                    arm = self.store.reset(key, conn=conn)
                    self._audit(conn, "reset_posterior", actor_id, key.scope, {
                        "arm_id": key.arm_id,
                        "previous": _posterior_payload(previous),
                        "new": _posterior_payload(arm),
                    })
            except Exception:
                # The cached snapshot may already show the rolled-back reset.
                self.store.discard(key)
                raise

        _log.info("Posterior of %s in scope %s reset by %s", key.arm_id, key.scope, actor_id)
        return arm

    def apply_penalty(
        self,
        key: ArmKey,
        duration_minutes: int,
        reason: str,
        actor_id: str,
        multiplier: Optional[float] = None,
    ) -> Penalty:
        """Dampen an arm's score until ``now + duration_minutes``.

        Raises:
            GovernanceError: If the duration is not positive or the multiplier
                is outside (0, 1]
        """
        self._require_actor(actor_id)
        if isinstance(duration_minutes, bool) or not isinstance(duration_minutes, (int, float)) \
                or not math.isfinite(duration_minutes) or duration_minutes <= 0:
            _log.warning("Rejected penalty duration %r for %s", duration_minutes, key.arm_id)
            raise GovernanceError("Penalty duration must be a positive number of minutes")
        if multiplier is None:
            multiplier = self.config.default_penalty_multiplier
        if not 0 < multiplier <= 1:
            raise GovernanceError("Penalty multiplier must be in (0, 1]")

        now = self._clock()
        penalty = Penalty(
            penalty_id=uuid.uuid4().hex,
            provider=key.provider,
            model=key.model,
            scope=key.scope,
            reason=reason or "manual",
            expires_at=now + timedelta(minutes=duration_minutes),
            multiplier=multiplier,
            source="governance",
            created_at=now,
        )

        with self._lock:
            with self.repository.transaction() as conn:
                self.repository.insert_penalty(penalty, conn=conn)
                self._audit(conn, "apply_penalty", actor_id, key.scope, {
                    "penalty": _penalty_payload(penalty),
                    "duration_minutes": duration_minutes,
                })
            self._refresh(key.scope)

        _log.info(
            "Penalty %s on %s in scope %s until %s by %s",
            penalty.penalty_id, key.arm_id, key.scope, penalty.expires_at.isoformat(), actor_id,
        )
        return penalty

    def clear_penalty(self, penalty_id: str, actor_id: str) -> Penalty:
        """Remove a penalty immediately, expired or not.

        Raises:
            GovernanceError: If no penalty has this id
        """
        self._require_actor(actor_id)
        with self._lock:
            existing = self.repository.get_penalty(penalty_id)
            if existing is None:
                _log.warning("Rejected clear of unknown penalty %s", penalty_id)
                raise GovernanceError(f"Unknown penalty '{penalty_id}'")
            with self.repository.transaction() as conn:
                self.repository.delete_penalty(penalty_id, conn=conn)
                self._audit(conn, "clear_penalty", actor_id, existing.scope, {
                    "penalty": _penalty_payload(existing),
                })
            self._refresh(existing.scope)

        _log.info("Penalty %s cleared by %s", penalty_id, actor_id)
        return existing

    def update_budget(
        self,
        scope: str,
        amount: float,
        actor_id: str,
        routing_mode: Optional[str] = None,
    ) -> ScopeConfig:
        """Set the monthly budget of a scope, and optionally its routing mode.

        Raises:
            GovernanceError: If the amount is not a positive finite number or
                the routing mode is unknown
        """
        self._require_actor(actor_id)
        if isinstance(amount, bool) or not isinstance(amount, (int, float)) \
                or not math.isfinite(amount) or amount <= 0:
            _log.warning("Rejected budget %r for scope %s", amount, scope)
            raise GovernanceError("Budget must be a positive number")
        if routing_mode is not None and routing_mode not in VALID_ROUTING_MODES:
            raise GovernanceError(
                f"Invalid routing mode '{routing_mode}'. Must be one of: {list(VALID_ROUTING_MODES)}"
            )

        with self._lock:
            with self.repository.transaction() as conn:
                previous = self._scope_config(scope, conn)
                updated = replace(
                    previous,
                    monthly_budget=float(amount),
                    routing_mode=routing_mode or previous.routing_mode,
                )
                self.repository.save_scope_config(updated, conn=conn)
                self._audit(conn, "update_budget", actor_id, scope, {
                    "previous_budget": previous.monthly_budget,
                    "new_budget": updated.monthly_budget,
                    "previous_routing_mode": previous.routing_mode,
                    "new_routing_mode": updated.routing_mode,
                })
            self._refresh(scope)

        _log.info("Budget of scope %s set to %.2f by %s", scope, updated.monthly_budget, actor_id)
        return updated

    # ── Reads ───────────────────────────────────────────────────────

    def list_penalties(self, scope: Optional[str] = None) -> List[Penalty]:
        """Penalties still in effect."""
        return self.repository.active_penalties(self._clock(), scope)

    def audit_log(self, limit: int = 50, scope: Optional[str] = None) -> List[AuditLogEntry]:
        return self.repository.audit_log(limit=limit, scope=scope)
