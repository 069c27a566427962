"""
Configuration management and loading.

Holds every tuning knob of the routing engine as a named, overridable
value and loads overrides from a YAML file with strict validation.
"""

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict

import yaml

VALID_STRATEGIES = ("hybrid", "cost_aware", "thompson")
VALID_ROUTING_MODES = ("performance", "balanced", "cost_saver")


def _require_fraction(name: str, value: float, allow_zero: bool = False) -> None:
    low_ok = value >= 0 if allow_zero else value > 0
    if not (low_ok and value <= 1):
        bound = "[0, 1]" if allow_zero else "(0, 1]"
        raise ValueError(f"{name} must be in {bound}")


@dataclass(frozen=True)
class TrackerConfig:
    """Online statistics settings."""
    ewma_smoothing: float = 0.2
    latency_variance_floor: float = 0.01
    cost_variance_floor: float = 0.0001

    def __post_init__(self):
        _require_fraction("ewma_smoothing", self.ewma_smoothing)
        if self.latency_variance_floor <= 0:
            raise ValueError("latency_variance_floor must be > 0")
        if self.cost_variance_floor <= 0:
            raise ValueError("cost_variance_floor must be > 0")


@dataclass(frozen=True)
class ScorerConfig:
    """Composite scoring settings."""
    confidence_saturation: int = 100
    latency_floor: float = 1.0
    cost_floor: float = 0.0001
    default_penalty_multiplier: float = 0.7
    default_penalty_minutes: int = 10
    snapshot_ttl_seconds: float = 5.0
    diversity_usage_threshold: float = 0.95
    diversity_window_hours: int = 24
    diversity_min_calls: int = 20
    diversity_top_k: int = 3

    def __post_init__(self):
        if self.confidence_saturation <= 0:
            raise ValueError("confidence_saturation must be > 0")
        if self.latency_floor <= 0:
            raise ValueError("latency_floor must be > 0")
        if self.cost_floor <= 0:
            raise ValueError("cost_floor must be > 0")
        _require_fraction("default_penalty_multiplier", self.default_penalty_multiplier)
        if self.default_penalty_minutes <= 0:
            raise ValueError("default_penalty_minutes must be > 0")
        if self.snapshot_ttl_seconds < 0:
            raise ValueError("snapshot_ttl_seconds cannot be negative")
        _require_fraction("diversity_usage_threshold", self.diversity_usage_threshold)
        if self.diversity_window_hours <= 0:
            raise ValueError("diversity_window_hours must be > 0")
        if self.diversity_min_calls <= 0:
            raise ValueError("diversity_min_calls must be > 0")
        if self.diversity_top_k < 1:
            raise ValueError("diversity_top_k must be >= 1")


@dataclass(frozen=True)
class ForecastConfig:
    """Cost forecast, SLA drift and adjustment thresholds."""
    burn_window_days: int = 7
    days_per_month: int = 30
    smoothing_alpha: float = 0.3
    budget_high_threshold: float = 0.9
    budget_medium_threshold: float = 0.7
    latency_drift_high: float = 0.30
    latency_drift_medium: float = 0.15
    error_trend_high: float = 0.10
    latency_drift_normalizer: float = 0.5
    error_trend_normalizer: float = 0.2
    latency_drift_weight: float = 0.6
    error_trend_weight: float = 0.4
    cost_weight_boost: float = 1.25
    sla_penalty: float = 0.8
    exploration_decay: float = 0.95
    drift_exploration_threshold: float = 0.5
    comparison_period_days: int = 7
    auto_penalty_minutes: int = 1440
    budget_soft_limit: float = 0.8
    soft_limit_cost_boost: float = 1.5

    def __post_init__(self):
        if self.burn_window_days <= 0:
            raise ValueError("burn_window_days must be > 0")
        if self.days_per_month <= 0:
            raise ValueError("days_per_month must be > 0")
        if self.comparison_period_days <= 0:
            raise ValueError("comparison_period_days must be > 0")
        if self.auto_penalty_minutes <= 0:
            raise ValueError("auto_penalty_minutes must be > 0")
        _require_fraction("smoothing_alpha", self.smoothing_alpha)
        if not 0 < self.budget_medium_threshold < self.budget_high_threshold:
            raise ValueError("budget thresholds must satisfy 0 < medium < high")
        if not 0 < self.latency_drift_medium < self.latency_drift_high:
            raise ValueError("latency drift thresholds must satisfy 0 < medium < high")
        if self.error_trend_high <= 0:
            raise ValueError("error_trend_high must be > 0")
        if self.latency_drift_normalizer <= 0 or self.error_trend_normalizer <= 0:
            raise ValueError("drift normalizers must be > 0")
        if self.latency_drift_weight < 0 or self.error_trend_weight < 0:
            raise ValueError("drift weights cannot be negative")
        if self.cost_weight_boost < 1:
            raise ValueError("cost_weight_boost must be >= 1")
        if self.soft_limit_cost_boost < 1:
            raise ValueError("soft_limit_cost_boost must be >= 1")
        _require_fraction("budget_soft_limit", self.budget_soft_limit)
        _require_fraction("sla_penalty", self.sla_penalty)
        _require_fraction("exploration_decay", self.exploration_decay)
        _require_fraction("drift_exploration_threshold", self.drift_exploration_threshold, allow_zero=True)

    @property
    def error_trend_medium(self) -> float:
        """The medium error-rate threshold is half the high one."""
        return self.error_trend_high / 2


@dataclass(frozen=True)
class EngineConfig:
    """Complete routing engine configuration."""
    tracker: TrackerConfig = field(default_factory=TrackerConfig)
    scorer: ScorerConfig = field(default_factory=ScorerConfig)
    forecast: ForecastConfig = field(default_factory=ForecastConfig)
    default_strategy: str = "thompson"
    default_routing_mode: str = "balanced"

    def __post_init__(self):
        if self.default_strategy not in VALID_STRATEGIES:
            raise ValueError(f"default_strategy must be one of: {list(VALID_STRATEGIES)}")
        if self.default_routing_mode not in VALID_ROUTING_MODES:
            raise ValueError(f"default_routing_mode must be one of: {list(VALID_ROUTING_MODES)}")


_SECTIONS = {
    "tracker": TrackerConfig,
    "scorer": ScorerConfig,
    "forecast": ForecastConfig,
}


def load_engine_config(path: str) -> EngineConfig:
    """Load and validate engine configuration from YAML file.

    Every section is optional; omitted values keep their defaults.
    Unknown keys are rejected so a typo never silently falls back to a
    default threshold.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated EngineConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Engine config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    allowed_top_keys = set(_SECTIONS) | {"default_strategy", "default_routing_mode"}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    sections = {}
    for name, section_cls in _SECTIONS.items():
        data = raw_config.get(name, {})
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ValueError(f"'{name}' must be a dictionary")
        sections[name] = _parse_section(section_cls, data, name)

    extras: Dict[str, Any] = {}
    for key in ("default_strategy", "default_routing_mode"):
        if key in raw_config:
            value = raw_config[key]
            if not isinstance(value, str):
                raise ValueError(f"'{key}' must be a string")
            extras[key] = value.lower()

    return EngineConfig(**sections, **extras)


def _parse_section(section_cls, data: Dict, path: str):
    """Parse one configuration section into its dataclass.

    Args:
        section_cls: Dataclass describing the section
        data: Raw section values
        path: Path for error messages

    Raises:
        ValueError: If a key is unknown or a value has the wrong type
    """
    known = {f.name: f for f in fields(section_cls)}
    unknown_keys = set(data.keys()) - set(known)
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    values = {}
    for key, value in data.items():
        expected = known[key].type
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(f"'{key}' in {path} must be a number")
        if expected in (int, "int"):
            if int(value) != value:
                raise ValueError(f"'{key}' in {path} must be an integer")
            value = int(value)
        else:
            value = float(value)
        values[key] = value
    return section_cls(**values)
