"""
Repository pattern for data access.

Handles database operations and persistence of routing state.
Per-arm rows are upserted atomically; governance writes share one
transaction with their audit entry through ``RoutingRepository.transaction``.
"""

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import date, datetime
from typing import Any, Dict, Iterator, List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import (
    ArmKey,
    AuditLogEntry,
    CallEvent,
    DailyCost,
    DailyPerformance,
    Penalty,
    ProviderArm,
    ScopeConfig,
)

_log = logging.getLogger(__name__)

_ARM_COLUMNS = (
    "provider, model, scope, ts_alpha, ts_beta, ts_latency_mean, "
    "ts_latency_variance, ts_cost_mean, ts_cost_variance, ewma_latency_ms, "
    "ewma_quality, ewma_success_rate, ewma_cost_per_1k, sample_count, "
    "last_call_at, active, cost_sample_count"
)

_PENALTY_COLUMNS = (
    "penalty_id, provider, model, scope, reason, expires_at, multiplier, "
    "source, created_at"
)

_FORECAST_COLUMNS = (
    "burn_rate", "projected_monthly_cost", "smoothed_daily_cost", "budget_risk",
    "latency_drift", "error_rate_trend", "sla_risk_level",
    "performance_drift_score", "cost_weight_multiplier", "provider_penalty",
    "exploration_boost", "ts_alpha_decay", "ts_beta_decay",
)

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS provider_arm (
        provider TEXT NOT NULL,
        model TEXT NOT NULL,
        scope TEXT NOT NULL,
        ts_alpha REAL NOT NULL DEFAULT 1,
        ts_beta REAL NOT NULL DEFAULT 1,
        ts_latency_mean REAL NOT NULL DEFAULT 0,
        ts_latency_variance REAL NOT NULL DEFAULT 1,
        ts_cost_mean REAL NOT NULL DEFAULT 0,
        ts_cost_variance REAL NOT NULL DEFAULT 1,
        ewma_latency_ms REAL NOT NULL DEFAULT 0,
        ewma_quality REAL NOT NULL DEFAULT 0,
        ewma_success_rate REAL NOT NULL DEFAULT 0,
        ewma_cost_per_1k REAL NOT NULL DEFAULT 0,
        sample_count INTEGER NOT NULL DEFAULT 0,
        last_call_at TEXT,
        active INTEGER NOT NULL DEFAULT 1,
        cost_sample_count INTEGER NOT NULL DEFAULT 0,
        PRIMARY KEY (provider, model, scope)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS provider_penalty (
        penalty_id TEXT PRIMARY KEY,
        provider TEXT NOT NULL,
        model TEXT NOT NULL,
        scope TEXT NOT NULL,
        reason TEXT NOT NULL,
        expires_at TEXT NOT NULL,
        multiplier REAL NOT NULL,
        source TEXT NOT NULL,
        created_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS cost_history (
        scope TEXT NOT NULL,
        day TEXT NOT NULL,
        cost REAL NOT NULL,
        PRIMARY KEY (scope, day)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS performance_history (
        scope TEXT NOT NULL,
        day TEXT NOT NULL,
        provider TEXT NOT NULL,
        avg_latency REAL NOT NULL,
        error_rate REAL NOT NULL,
        total_calls INTEGER NOT NULL DEFAULT 0,
        PRIMARY KEY (scope, day, provider)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS call_event (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        timestamp TEXT NOT NULL,
        scope TEXT NOT NULL,
        provider TEXT NOT NULL,
        model TEXT NOT NULL,
        success INTEGER NOT NULL,
        latency_ms REAL NOT NULL,
        cost REAL NOT NULL,
        cost_per_1k REAL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS scope_config (
        scope TEXT PRIMARY KEY,
        monthly_budget REAL NOT NULL DEFAULT 0,
        routing_strategy TEXT NOT NULL DEFAULT 'thompson',
        routing_mode TEXT NOT NULL DEFAULT 'balanced'
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS forecast_state (
        scope TEXT PRIMARY KEY,
        burn_rate REAL NOT NULL,
        projected_monthly_cost REAL NOT NULL,
        smoothed_daily_cost REAL NOT NULL,
        budget_risk TEXT NOT NULL,
        latency_drift REAL NOT NULL,
        error_rate_trend REAL NOT NULL,
        sla_risk_level TEXT NOT NULL,
        performance_drift_score REAL NOT NULL,
        cost_weight_multiplier REAL NOT NULL,
        provider_penalty REAL NOT NULL,
        exploration_boost INTEGER NOT NULL,
        ts_alpha_decay REAL NOT NULL,
        ts_beta_decay REAL NOT NULL,
        last_updated TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS governance_audit_log (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        action TEXT NOT NULL,
        actor_id TEXT NOT NULL,
        timestamp TEXT NOT NULL,
        scope TEXT,
        payload TEXT NOT NULL
    )
    """,
]


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create every routing table that does not exist yet.

    ``call_event``, ``cost_history`` and ``governance_audit_log`` are
    append-only ledgers; cost history is keyed per (scope, day) so that
    re-running a daily aggregation replaces rather than duplicates.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        for statement in _SCHEMA:
            conn.execute(statement)
    finally:
        conn.close()


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _row_to_arm(row) -> ProviderArm:
    return ProviderArm(
        key=ArmKey(provider=row[0], model=row[1], scope=row[2]),
        ts_alpha=row[3],
        ts_beta=row[4],
        ts_latency_mean=row[5],
        ts_latency_variance=row[6],
        ts_cost_mean=row[7],
        ts_cost_variance=row[8],
        ewma_latency_ms=row[9],
        ewma_quality=row[10],
        ewma_success_rate=row[11],
        ewma_cost_per_1k=row[12],
        sample_count=row[13],
        last_call_at=_parse_dt(row[14]),
        active=bool(row[15]),
        cost_sample_count=row[16],
    )


def _row_to_penalty(row) -> Penalty:
    return Penalty(
        penalty_id=row[0],
        provider=row[1],
        model=row[2],
        scope=row[3],
        reason=row[4],
        expires_at=datetime.fromisoformat(row[5]),
        multiplier=row[6],
        source=row[7],
        created_at=_parse_dt(row[8]),
    )


class RoutingRepository:
    """Repository for routing state, history and the governance audit trail.

    Every public method accepts an optional ``conn``; when given, the call
    joins that connection's open transaction instead of opening its own.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    @contextmanager
    def _connection(self, conn: Optional[sqlite3.Connection] = None) -> Iterator[sqlite3.Connection]:
        if conn is not None:
            yield conn
            return
        own = get_connection(self.db_path)
        try:
            yield own
        finally:
            own.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run several writes atomically: all commit or all roll back."""
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except Exception:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    # ── Arms ────────────────────────────────────────────────────────

    def get_arm(self, key: ArmKey, conn: Optional[sqlite3.Connection] = None) -> Optional[ProviderArm]:
        with self._connection(conn) as c:
            row = c.execute(
                f"SELECT {_ARM_COLUMNS} FROM provider_arm "
                "WHERE provider = ? AND model = ? AND scope = ?",
                (key.provider, key.model, key.scope),
            ).fetchone()
        return _row_to_arm(row) if row else None

    def list_arms(
        self,
        scope: Optional[str] = None,
        active_only: bool = True,
        conn: Optional[sqlite3.Connection] = None,
    ) -> List[ProviderArm]:
        """List arms, optionally restricted to one scope.

        Returns:
            Arms ordered by (scope, provider, model)
        """
        query = f"SELECT {_ARM_COLUMNS} FROM provider_arm"
        conditions = []
        params: List[Any] = []
        if scope is not None:
            conditions.append("scope = ?")
            params.append(scope)
        if active_only:
            conditions.append("active = 1")
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY scope, provider, model"
        with self._connection(conn) as c:
            return [_row_to_arm(row) for row in c.execute(query, params).fetchall()]

    def save_arm(self, arm: ProviderArm, conn: Optional[sqlite3.Connection] = None) -> None:
        """Insert or replace the full row of one arm."""
        with self._connection(conn) as c:
            c.execute(
                f"INSERT OR REPLACE INTO provider_arm ({_ARM_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    arm.key.provider,
                    arm.key.model,
                    arm.key.scope,
                    arm.ts_alpha,
                    arm.ts_beta,
                    arm.ts_latency_mean,
                    arm.ts_latency_variance,
                    arm.ts_cost_mean,
                    arm.ts_cost_variance,
                    arm.ewma_latency_ms,
                    arm.ewma_quality,
                    arm.ewma_success_rate,
                    arm.ewma_cost_per_1k,
                    arm.sample_count,
                    _iso(arm.last_call_at),
                    1 if arm.active else 0,
                    arm.cost_sample_count,
                ),
            )

    # ── Penalties ───────────────────────────────────────────────────

    def insert_penalty(self, penalty: Penalty, conn: Optional[sqlite3.Connection] = None) -> None:
        with self._connection(conn) as c:
            c.execute(
                f"INSERT INTO provider_penalty ({_PENALTY_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    penalty.penalty_id,
                    penalty.provider,
                    penalty.model,
                    penalty.scope,
                    penalty.reason,
                    penalty.expires_at.isoformat(),
                    penalty.multiplier,
                    penalty.source,
                    _iso(penalty.created_at),
                ),
            )

    def get_penalty(self, penalty_id: str, conn: Optional[sqlite3.Connection] = None) -> Optional[Penalty]:
        with self._connection(conn) as c:
            row = c.execute(
                f"SELECT {_PENALTY_COLUMNS} FROM provider_penalty WHERE penalty_id = ?",
                (penalty_id,),
            ).fetchone()
        return _row_to_penalty(row) if row else None

    def delete_penalty(self, penalty_id: str, conn: Optional[sqlite3.Connection] = None) -> bool:
        """Remove a penalty regardless of expiry.

        Returns:
            True if a row was deleted
        """
        with self._connection(conn) as c:
            cursor = c.execute(
                "DELETE FROM provider_penalty WHERE penalty_id = ?", (penalty_id,)
            )
            return cursor.rowcount > 0

    def active_penalties(
        self,
        now: datetime,
        scope: Optional[str] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> List[Penalty]:
        """Penalties whose expiry is not yet reached, newest expiry first."""
        query = f"SELECT {_PENALTY_COLUMNS} FROM provider_penalty WHERE expires_at >= ?"
        params: List[Any] = [now.isoformat()]
        if scope is not None:
            query += " AND scope = ?"
            params.append(scope)
        query += " ORDER BY expires_at DESC"
        with self._connection(conn) as c:
            return [_row_to_penalty(row) for row in c.execute(query, params).fetchall()]

    # ── Cost & performance history ──────────────────────────────────

    def upsert_daily_cost(
        self, scope: str, day: date, cost: float, conn: Optional[sqlite3.Connection] = None
    ) -> None:
        with self._connection(conn) as c:
            c.execute(
                "INSERT OR REPLACE INTO cost_history (scope, day, cost) VALUES (?, ?, ?)",
                (scope, day.isoformat(), cost),
            )

    def cost_history(
        self,
        scope: str,
        since: Optional[date] = None,
        until: Optional[date] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> List[DailyCost]:
        """Cost history of a scope in chronological order."""
        query = "SELECT day, cost FROM cost_history WHERE scope = ?"
        params: List[Any] = [scope]
        if since is not None:
            query += " AND day >= ?"
            params.append(since.isoformat())
        if until is not None:
            query += " AND day <= ?"
            params.append(until.isoformat())
        query += " ORDER BY day ASC"
        with self._connection(conn) as c:
            return [
                DailyCost(day=date.fromisoformat(row[0]), cost=row[1])
                for row in c.execute(query, params).fetchall()
            ]

    def upsert_daily_performance(
        self, scope: str, row: DailyPerformance, conn: Optional[sqlite3.Connection] = None
    ) -> None:
        with self._connection(conn) as c:
            c.execute(
                "INSERT OR REPLACE INTO performance_history "
                "(scope, day, provider, avg_latency, error_rate, total_calls) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    scope,
                    row.day.isoformat(),
                    row.provider,
                    row.avg_latency,
                    row.error_rate,
                    row.total_calls,
                ),
            )

    def performance_history(
        self,
        scope: str,
        since: Optional[date] = None,
        until: Optional[date] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> List[DailyPerformance]:
        query = (
            "SELECT day, provider, avg_latency, error_rate, total_calls "
            "FROM performance_history WHERE scope = ?"
        )
        params: List[Any] = [scope]
        if since is not None:
            query += " AND day >= ?"
            params.append(since.isoformat())
        if until is not None:
            query += " AND day <= ?"
            params.append(until.isoformat())
        query += " ORDER BY day ASC, provider ASC"
        with self._connection(conn) as c:
            return [
                DailyPerformance(
                    day=date.fromisoformat(row[0]),
                    provider=row[1],
                    avg_latency=row[2],
                    error_rate=row[3],
                    total_calls=row[4],
                )
                for row in c.execute(query, params).fetchall()
            ]

    def insert_call_event(self, event: CallEvent, conn: Optional[sqlite3.Connection] = None) -> None:
        """Append one completed call to the event ledger."""
        with self._connection(conn) as c:
            c.execute(
                "INSERT INTO call_event "
                "(timestamp, scope, provider, model, success, latency_ms, cost, cost_per_1k) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    event.timestamp.isoformat(),
                    event.scope,
                    event.provider,
                    event.model,
                    1 if event.success else 0,
                    event.latency_ms,
                    event.cost,
                    event.cost_per_1k,
                ),
            )

    def call_events_for_day(self, day: date, conn: Optional[sqlite3.Connection] = None) -> List[CallEvent]:
        start = datetime.combine(day, datetime.min.time()).isoformat()
        end = datetime.combine(day, datetime.max.time()).isoformat()
        with self._connection(conn) as c:
            rows = c.execute(
                "SELECT timestamp, scope, provider, model, success, latency_ms, cost, cost_per_1k "
                "FROM call_event WHERE timestamp >= ? AND timestamp <= ? ORDER BY id ASC",
                (start, end),
            ).fetchall()
        return [
            CallEvent(
                timestamp=datetime.fromisoformat(row[0]),
                scope=row[1],
                provider=row[2],
                model=row[3],
                success=bool(row[4]),
                latency_ms=row[5],
                cost=row[6],
                cost_per_1k=row[7],
            )
            for row in rows
        ]

    def arm_call_counts(
        self, scope: str, since: datetime, conn: Optional[sqlite3.Connection] = None
    ) -> Dict[str, int]:
        """Number of recorded calls per arm id of a scope since ``since``."""
        with self._connection(conn) as c:
            rows = c.execute(
                "SELECT provider, model, COUNT(*) FROM call_event "
                "WHERE scope = ? AND timestamp >= ? GROUP BY provider, model ORDER BY provider, model",
                (scope, since.isoformat()),
            ).fetchall()
        return {ArmKey(row[0], row[1], scope).arm_id: row[2] for row in rows}

    def cost_since(self, scope: str, since: datetime, conn: Optional[sqlite3.Connection] = None) -> float:
        """Total recorded spend of a scope since ``since``."""
        with self._connection(conn) as c:
            row = c.execute(
                "SELECT COALESCE(SUM(cost), 0) FROM call_event WHERE scope = ? AND timestamp >= ?",
                (scope, since.isoformat()),
            ).fetchone()
        return float(row[0])

    # ── Scope configuration ─────────────────────────────────────────

    def get_scope_config(self, scope: str, conn: Optional[sqlite3.Connection] = None) -> Optional[ScopeConfig]:
        with self._connection(conn) as c:
            row = c.execute(
                "SELECT scope, monthly_budget, routing_strategy, routing_mode "
                "FROM scope_config WHERE scope = ?",
                (scope,),
            ).fetchone()
        if not row:
            return None
        return ScopeConfig(
            scope=row[0], monthly_budget=row[1], routing_strategy=row[2], routing_mode=row[3]
        )

    def save_scope_config(self, config: ScopeConfig, conn: Optional[sqlite3.Connection] = None) -> None:
        with self._connection(conn) as c:
            c.execute(
                "INSERT OR REPLACE INTO scope_config "
                "(scope, monthly_budget, routing_strategy, routing_mode) VALUES (?, ?, ?, ?)",
                (config.scope, config.monthly_budget, config.routing_strategy, config.routing_mode),
            )

    # ── Forecast state ──────────────────────────────────────────────

    def save_forecast_state(
        self,
        scope: str,
        values: Dict[str, Any],
        last_updated: datetime,
        conn: Optional[sqlite3.Connection] = None,
    ) -> None:
        """Upsert the derived forecast row of a scope.

        Args:
            scope: Routing scope
            values: Mapping with every forecast column
            last_updated: Time of the recomputation
        """
        missing = [name for name in _FORECAST_COLUMNS if name not in values]
        if missing:
            raise ValueError(f"Missing forecast values: {missing}")
        columns = ", ".join(("scope",) + _FORECAST_COLUMNS + ("last_updated",))
        placeholders = ", ".join("?" for _ in range(len(_FORECAST_COLUMNS) + 2))
        params = [scope] + [values[name] for name in _FORECAST_COLUMNS] + [last_updated.isoformat()]
        with self._connection(conn) as c:
            c.execute(
                f"INSERT OR REPLACE INTO forecast_state ({columns}) VALUES ({placeholders})",
                params,
            )

    def get_forecast_state(self, scope: str, conn: Optional[sqlite3.Connection] = None) -> Optional[Dict[str, Any]]:
        columns = ", ".join(_FORECAST_COLUMNS + ("last_updated",))
        with self._connection(conn) as c:
            row = c.execute(
                f"SELECT {columns} FROM forecast_state WHERE scope = ?", (scope,)
            ).fetchone()
        if not row:
            return None
        state = dict(zip(_FORECAST_COLUMNS + ("last_updated",), row))
        state["exploration_boost"] = bool(state["exploration_boost"])
        state["last_updated"] = datetime.fromisoformat(state["last_updated"])
        return state

    # ── Audit log ───────────────────────────────────────────────────

    def insert_audit_entry(self, entry: AuditLogEntry, conn: Optional[sqlite3.Connection] = None) -> None:
        """Append one governance action. Rows are never updated or deleted."""
        with self._connection(conn) as c:
            c.execute(
                "INSERT INTO governance_audit_log (action, actor_id, timestamp, scope, payload) "
                "VALUES (?, ?, ?, ?, ?)",
                (
                    entry.action,
                    entry.actor_id,
                    entry.timestamp.isoformat(),
                    entry.scope,
                    json.dumps(entry.payload, sort_keys=True, default=str),
                ),
            )

    def audit_log(
        self,
        limit: int = 50,
        scope: Optional[str] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> List[AuditLogEntry]:
        """Most recent audit entries first."""
        query = "SELECT action, actor_id, timestamp, scope, payload FROM governance_audit_log"
        params: List[Any] = []
        if scope is not None:
            query += " WHERE scope = ?"
            params.append(scope)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        with self._connection(conn) as c:
            rows = c.execute(query, params).fetchall()
        return [
            AuditLogEntry(
                action=row[0],
                actor_id=row[1],
                timestamp=datetime.fromisoformat(row[2]),
                scope=row[3],
                payload=json.loads(row[4]),
            )
            for row in rows
        ]


# Global repository instance
_default_repository: Optional[RoutingRepository] = None


def get_repository(db_path: str = DEFAULT_DB_PATH) -> RoutingRepository:
    """Get a repository instance.

    This function provides a singleton instance of the RoutingRepository.

    Args:
        db_path: Path to SQLite database file

    Returns:
        An instance of RoutingRepository
    """
    global _default_repository
    if _default_repository is None:
        _default_repository = RoutingRepository(db_path)
        _log.debug("Using routing database at %s", db_path)
    return _default_repository
