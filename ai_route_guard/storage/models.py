"""
Data models for storage layer.

Defines the persisted entities of the routing engine: bandit arms,
penalties, cost and performance history, scope settings and the
governance audit trail.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, Optional

PENALTY_SOURCE_GOVERNANCE = "governance"
PENALTY_SOURCE_AUTO = "auto"


@dataclass(frozen=True)
class ArmKey:
    """Identity of one routable (provider, model) pair within a scope."""
    provider: str
    model: str
    scope: str = "global"

    @property
    def arm_id(self) -> str:
        """Stable identifier used for ranking tie-breaks and lookups."""
        return f"{self.provider}::{self.model}"

    @classmethod
    def parse(cls, arm_id: str, scope: str = "global") -> "ArmKey":
        """Build a key from an ``provider::model`` identifier.

        A bare provider name is accepted and maps to the ``default`` model.
        """
        if not arm_id or not arm_id.strip():
            raise ValueError("arm id cannot be empty")
        provider, sep, model = arm_id.partition("::")
        if not provider:
            raise ValueError(f"Invalid arm id: {arm_id}")
        return cls(provider=provider, model=model if sep else "default", scope=scope)


@dataclass(frozen=True)
class ProviderArm:
    """Online statistics and bandit posteriors for one arm.

    Instances are immutable snapshots; every update produces a new
    instance so readers never observe a half-written arm.
    """
    key: ArmKey
    ts_alpha: float = 1.0
    ts_beta: float = 1.0
    ts_latency_mean: float = 0.0
    ts_latency_variance: float = 1.0
    ts_cost_mean: float = 0.0
    ts_cost_variance: float = 1.0
    ewma_latency_ms: float = 0.0
    ewma_quality: float = 0.0
    ewma_success_rate: float = 0.0
    ewma_cost_per_1k: float = 0.0
    sample_count: int = 0
    last_call_at: Optional[datetime] = None
    active: bool = True
    cost_sample_count: int = 0

    def __post_init__(self):
        """Validate posterior parameters and counters."""
        if self.ts_alpha <= 0 or self.ts_beta <= 0:
            raise ValueError("Beta posterior parameters must be > 0")
        if self.ts_latency_variance < 0 or self.ts_cost_variance < 0:
            raise ValueError("posterior variance cannot be negative")
        if self.sample_count < 0 or self.cost_sample_count < 0:
            raise ValueError("sample counts cannot be negative")

    @classmethod
    def neutral(cls, key: ArmKey) -> "ProviderArm":
        """Arm with uninformative priors, used on first sight of a pair."""
        return cls(key=key)

    @property
    def arm_id(self) -> str:
        return self.key.arm_id

    @property
    def success_mean(self) -> float:
        """Mean of the Beta success posterior."""
        return self.ts_alpha / (self.ts_alpha + self.ts_beta)


@dataclass(frozen=True)
class Penalty:
    """Temporary score dampening applied to an arm until ``expires_at``."""
    penalty_id: str
    provider: str
    model: str
    scope: str
    reason: str
    expires_at: datetime
    multiplier: float = 0.7
    source: str = PENALTY_SOURCE_GOVERNANCE
    created_at: Optional[datetime] = None

    def __post_init__(self):
        if not 0 < self.multiplier <= 1:
            raise ValueError("penalty multiplier must be in (0, 1]")

    @property
    def arm_id(self) -> str:
        return f"{self.provider}::{self.model}"

    def is_active(self, now: datetime) -> bool:
        """Expired penalties are treated as absent."""
        return now <= self.expires_at


@dataclass(frozen=True)
class DailyCost:
    """One entry of a scope's cost history."""
    day: date
    cost: float


@dataclass(frozen=True)
class DailyPerformance:
    """Aggregated latency and error rate of one provider for one day."""
    day: date
    provider: str
    avg_latency: float
    error_rate: float
    total_calls: int = 0


@dataclass(frozen=True)
class CallEvent:
    """Immutable record of one completed provider call.

    Append-only; the daily aggregation reads these to build the cost and
    performance history.
    ``cost_per_1k`` is None for calls that were never priced (failures).
    """
    timestamp: datetime
    scope: str
    provider: str
    model: str
    success: bool
    latency_ms: float
    cost: float
    cost_per_1k: Optional[float] = None


@dataclass(frozen=True)
class ScopeConfig:
    """Routing settings owned by one scope (tenant or feature)."""
    scope: str
    monthly_budget: float = 0.0
    routing_strategy: str = "thompson"
    routing_mode: str = "balanced"


@dataclass(frozen=True)
class AuditLogEntry:
    """Immutable record of a governance action.

    Written in the same transaction as the state change it describes.
    """
    action: str
    actor_id: str
    timestamp: datetime
    payload: Dict[str, Any] = field(default_factory=dict)
    scope: Optional[str] = None
