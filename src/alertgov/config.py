"""Configuration for the governance engine.

Settings come from three layers, later ones winning:

1. dataclass defaults below
2. an optional YAML file (``ALERTGOV_CONFIG`` or an explicit path)
3. ``ALERTGOV_*`` environment variables for the operational knobs
"""
from __future__ import annotations

import dataclasses
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from alertgov.errors import ConfigError

logger = logging.getLogger(__name__)


@dataclass
class RobustConfig:
    """Per-group median/MAD dynamic thresholds"""
    enabled: bool = True
    history_size: int = 30
    min_samples: int = 8
    k_high: float = 1.2
    k_low: float = 0.4
    epsilon_mad: float = 0.01
    min_consecutive_above_high: int = 2


@dataclass
class SuppressionConfig:
    enter: float = 0.65
    exit: float = 0.45
    # minimum dwell time in a state before the next flip; 0 disables
    cooldown_ms: int = 0
    min_volume: int = 5
    stable_recovery_windows: int = 3
    escalation_block_threshold: float = 0.6
    allow_suppress_critical: bool = False
    recovery_ack_rate_jump: float = 0.3
    re_noise_window_ms: int = 20 * 60 * 1000
    # alerts last seen inside this window feed each cycle's group signals
    signal_window_ms: int = 60 * 60 * 1000
    transitions_limit: int = 1000
    robust: RobustConfig = field(default_factory=RobustConfig)


@dataclass
class TuningTargets:
    ack_rate: float = 0.85
    escalation_effectiveness: float = 0.7
    false_suppression_rate: float = 0.10
    suspected_false_rate: float = 0.15
    re_noise_rate: float = 0.20


@dataclass
class TuningConfig:
    min_weight: float = 0.05
    max_weight: float = 0.6
    adjust_factor: float = 0.2
    max_delta: float = 0.05
    deadband: float = 0.03
    cooldown_cycles: int = 3
    max_cycle_drift: float = 0.15
    outlier_mad_k: float = 4.0
    history_size: int = 60
    convergence_window: int = 6
    convergence_threshold: float = 0.015
    stable_freeze_cycles: int = 6
    severe_deviation_threshold: float = 0.12
    min_freeze_hold_cycles: int = 10
    targets: TuningTargets = field(default_factory=TuningTargets)


@dataclass
class PersistencePolicyConfig:
    version: str = "v1"
    debounce_cooldown_every: int = 5
    snapshot_every: int = 10
    snapshot_min_changed: int = 3
    snapshot_relative_change: float = 0.25
    timeout_s: float = 10.0
    window_size: int = 50
    min_samples: int = 10
    disable_ratio: float = 0.6
    enable_ratio: float = 0.2


@dataclass
class RunnerConfig:
    interval_ms: int = 60_000
    warmup_cycles: int = 2
    log_limit: int = 200
    metrics_timeout_s: float = 5.0
    persistence: PersistencePolicyConfig = field(default_factory=PersistencePolicyConfig)


@dataclass
class AlertStoreConfig:
    cooldown_ms: int = 30_000
    purge_days: int = 30
    max_query_limit: int = 500


@dataclass
class AckConfig:
    default_window_ms: int = 60 * 60 * 1000
    max_window_ms: int = 30 * 24 * 60 * 60 * 1000
    critical_stale_ms: int = 15 * 60 * 1000


@dataclass
class GovernanceConfig:
    window: int = 120
    slope_warn: float = 0.0015
    slope_critical: float = 0.003
    min_samples: int = 12
    vol_momentum_threshold: float = 0.8
    anomaly_cluster_k: int = 2
    anomaly_cluster_critical_k: int = 4
    anomaly_recent_window: int = 10
    tiny_slope: float = 0.0002
    smoothing_high: float = 0.25
    plateau_vol_momentum_ceil: float = 0.1
    reversal_delta_min: float = 0.003
    anomaly_threshold: float = 2.5
    anomaly_baseline_window: int = 5
    ma_window: int = 5
    snapshot_retention_days: int = 90


@dataclass
class PolicyConfig:
    enabled: bool = True
    interval_ms: int = 5 * 60 * 1000
    min_confidence: float = 0.7
    max_change: float = 0.15
    max_risk: float = 0.7
    human_override: bool = False
    measurement_window_ms: int = 30 * 60 * 1000
    max_decisions_per_domain: int = 50
    history_limit: int = 100


@dataclass
class DatabaseConfig:
    url: Optional[str] = None
    echo: bool = False


@dataclass
class Settings:
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    suppression: SuppressionConfig = field(default_factory=SuppressionConfig)
    tuning: TuningConfig = field(default_factory=TuningConfig)
    runner: RunnerConfig = field(default_factory=RunnerConfig)
    alert_store: AlertStoreConfig = field(default_factory=AlertStoreConfig)
    acks: AckConfig = field(default_factory=AckConfig)
    governance: GovernanceConfig = field(default_factory=GovernanceConfig)
    policy: PolicyConfig = field(default_factory=PolicyConfig)

    def validate(self) -> "Settings":
        s = self.suppression
        for name in ("enter", "exit"):
            v = getattr(s, name)
            if not 0.0 <= v <= 1.0:
                raise ConfigError(f"suppression.{name} must be within [0, 1], got {v}")
        if not s.exit < s.enter:
            raise ConfigError(f"suppression.exit ({s.exit}) must be strictly below suppression.enter ({s.enter})")
        if self.runner.interval_ms <= 0:
            raise ConfigError("runner.interval_ms must be positive")
        if self.runner.warmup_cycles < 0:
            raise ConfigError("runner.warmup_cycles must be >= 0")
        if not 1 <= self.runner.log_limit <= 200:
            raise ConfigError("runner.log_limit must be within [1, 200]")
        p = self.runner.persistence
        if p.debounce_cooldown_every < 1:
            raise ConfigError("runner.persistence.debounce_cooldown_every must be >= 1")
        if not p.enable_ratio < p.disable_ratio:
            raise ConfigError("runner.persistence.enable_ratio must be below disable_ratio")
        t = self.tuning
        if not 0 < t.min_weight < t.max_weight <= 1:
            raise ConfigError("tuning weight bounds must satisfy 0 < min_weight < max_weight <= 1")
        if s.signal_window_ms <= 0:
            raise ConfigError("suppression.signal_window_ms must be positive")
        if self.alert_store.cooldown_ms < 0:
            raise ConfigError("alert_store.cooldown_ms must be >= 0")
        return self

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


# env var -> dotted settings path
ENV_OVERRIDES: Dict[str, str] = {
    "ALERTGOV_DB_URL": "database.url",
    "ALERTGOV_DB_ECHO": "database.echo",
    "ALERTGOV_INTERVAL_MS": "runner.interval_ms",
    "ALERTGOV_WARMUP_CYCLES": "runner.warmup_cycles",
    "ALERTGOV_LOG_LIMIT": "runner.log_limit",
    "ALERTGOV_DEBOUNCE_COOLDOWN_EVERY": "runner.persistence.debounce_cooldown_every",
    "ALERTGOV_WEIGHTS_VERSION": "runner.persistence.version",
    "ALERTGOV_SUPPRESSION_ENTER": "suppression.enter",
    "ALERTGOV_SUPPRESSION_EXIT": "suppression.exit",
    "ALERTGOV_SUPPRESSION_COOLDOWN_MS": "suppression.cooldown_ms",
    "ALERTGOV_ALERT_COOLDOWN_MS": "alert_store.cooldown_ms",
    "ALERTGOV_ALERT_PURGE_DAYS": "alert_store.purge_days",
    "ALERTGOV_POLICY_ENABLED": "policy.enabled",
    "ALERTGOV_POLICY_MIN_CONFIDENCE": "policy.min_confidence",
    "ALERTGOV_POLICY_INTERVAL_MS": "policy.interval_ms",
}

_TRUE = {"1", "true", "yes", "on"}


def _coerce(current: Any, raw: Any, path: str) -> Any:
    if isinstance(current, bool):
        if isinstance(raw, bool):
            return raw
        return str(raw).strip().lower() in _TRUE
    try:
        if isinstance(current, int):
            return int(raw)
        if isinstance(current, float):
            return float(raw)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"invalid value for {path}: {raw!r}") from e
    return None if raw is None else str(raw)


def _apply_mapping(target: Any, data: Mapping[str, Any], prefix: str = "") -> None:
    names = {f.name for f in dataclasses.fields(target)}
    for key, value in data.items():
        path = f"{prefix}{key}"
        if key not in names:
            logger.warning(f"Ignoring unknown config key: {path}")
            continue
        current = getattr(target, key)
        if dataclasses.is_dataclass(current):
            if not isinstance(value, Mapping):
                raise ConfigError(f"{path} must be a mapping")
            _apply_mapping(current, value, prefix=f"{path}.")
        else:
            setattr(target, key, _coerce(current, value, path))


def _set_path(settings: Settings, dotted: str, raw: str) -> None:
    parts = dotted.split(".")
    target: Any = settings
    for p in parts[:-1]:
        target = getattr(target, p)
    setattr(target, parts[-1], _coerce(getattr(target, parts[-1]), raw, dotted))


def load_settings(
    path: Optional[str | Path] = None,
    env: Optional[Mapping[str, str]] = None,
) -> Settings:
    """Build validated Settings from defaults, YAML and environment"""
    env = os.environ if env is None else env
    settings = Settings()

    config_path = path or env.get("ALERTGOV_CONFIG")
    if config_path:
        p = Path(config_path)
        if p.exists():
            with p.open("r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
            if not isinstance(data, Mapping):
                raise ConfigError(f"config file {p} must contain a mapping")
            _apply_mapping(settings, data)
            logger.info(f"Loaded configuration from {p}")
        else:
            logger.warning(f"Config file not found, using defaults: {p}")

    for var, dotted in ENV_OVERRIDES.items():
        raw = env.get(var)
        if raw is not None and raw != "":
            _set_path(settings, dotted, raw)

    return settings.validate()
