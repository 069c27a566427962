"""
Routing weights for multi-criteria provider scoring.

Weights are owned per routing scope and always sum to 1.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict


class RoutingMode(Enum):
    """Preset weightings a scope can route with."""
    PERFORMANCE = "performance"
    BALANCED = "balanced"
    COST_SAVER = "cost_saver"


@dataclass(frozen=True)
class RoutingWeights:
    """Relative importance of each scoring criterion."""
    w_quality: float
    w_latency: float
    w_stability: float
    w_cost: float
    w_confidence: float

    def __post_init__(self):
        """Validate weights are non-negative."""
        for name, value in self.as_dict().items():
            if value < 0:
                raise ValueError(f"{name} cannot be negative")

    def as_dict(self) -> Dict[str, float]:
        return {
            "w_quality": self.w_quality,
            "w_latency": self.w_latency,
            "w_stability": self.w_stability,
            "w_cost": self.w_cost,
            "w_confidence": self.w_confidence,
        }

    def total(self) -> float:
        return sum(self.as_dict().values())

    def normalized(self) -> "RoutingWeights":
        """Scale every weight by the same denominator so they sum to 1.

        All-zero weights fall back to the balanced preset.
        """
        total = self.total()
        if total <= 0:
            return MODE_WEIGHTS[RoutingMode.BALANCED]
        return RoutingWeights(**{name: value / total for name, value in self.as_dict().items()})


MODE_WEIGHTS: Dict[RoutingMode, RoutingWeights] = {
    RoutingMode.PERFORMANCE: RoutingWeights(0.45, 0.20, 0.20, 0.05, 0.10),
    RoutingMode.BALANCED: RoutingWeights(0.20, 0.20, 0.20, 0.20, 0.20),
    RoutingMode.COST_SAVER: RoutingWeights(0.25, 0.15, 0.10, 0.40, 0.10),
}


def weights_for_mode(mode: str) -> RoutingWeights:
    """Preset weights for a routing mode name.

    Raises:
        ValueError: If the mode is unknown
    """
    try:
        return MODE_WEIGHTS[RoutingMode(mode)]
    except ValueError:
        valid = [m.value for m in RoutingMode]
        raise ValueError(f"routing mode must be one of: {valid}")
