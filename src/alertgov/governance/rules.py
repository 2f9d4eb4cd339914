"""
Governance rule engine: turns weight trends into alerts
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, fields, replace
from typing import Any, Dict, List, Mapping, Optional

from alertgov.alerts.store import AlertInput, AlertStore
from alertgov.config import GovernanceConfig
from alertgov.db import utcnow
from alertgov.governance.snapshots import WeightSnapshotStore
from alertgov.governance.trends import StrategyTrend, compute_trends
from alertgov.metrics import governance_metrics as gm

logger = logging.getLogger(__name__)


def _sign(x: Optional[float]) -> int:
    if not x:
        return 0
    return 1 if x > 0 else -1


@dataclass
class RuleAlert:
    code: str
    severity: str
    message: str
    rationale: Dict[str, Any]

    def to_input(self) -> AlertInput:
        return AlertInput(code=self.code, severity=self.severity, message=self.message, rationale=self.rationale)

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "severity": self.severity, "message": self.message, "rationale": self.rationale}


def trend_breakout(t: StrategyTrend, o: GovernanceConfig) -> Optional[RuleAlert]:
    if t.sample_count < o.min_samples or t.lr_slope is None or abs(t.lr_slope) < o.slope_warn:
        return None
    severity = "critical" if abs(t.lr_slope) >= o.slope_critical else "warn"
    return RuleAlert("TrendBreakout", severity, f"Breakout slope={t.lr_slope}", {
        "lr_slope": t.lr_slope,
        "simple_slope": t.simple_slope,
        "sample_count": t.sample_count,
        "thresholds": {"warn": o.slope_warn, "critical": o.slope_critical},
    })


def volatility_surge(t: StrategyTrend, o: GovernanceConfig) -> Optional[RuleAlert]:
    if t.volatility_momentum is None or t.volatility_momentum < o.vol_momentum_threshold:
        return None
    return RuleAlert("VolatilitySurge", "warn", f"Volatility momentum={t.volatility_momentum}", {
        "volatility_momentum": t.volatility_momentum,
        "threshold": o.vol_momentum_threshold,
    })


def anomaly_cluster(t: StrategyTrend, o: GovernanceConfig) -> Optional[RuleAlert]:
    recent = [a for a in t.anomalies if a.index >= t.sample_count - o.anomaly_recent_window]
    if len(recent) < o.anomaly_cluster_k:
        return None
    severity = "critical" if len(recent) >= o.anomaly_cluster_critical_k else "warn"
    return RuleAlert("AnomalyCluster", severity, f"Anomaly cluster size={len(recent)}", {
        "recent_size": len(recent),
        "window": o.anomaly_recent_window,
        "thresholds": {"k": o.anomaly_cluster_k, "critical": o.anomaly_cluster_critical_k},
    })


def stability_plateau(t: StrategyTrend, o: GovernanceConfig) -> Optional[RuleAlert]:
    if t.sample_count < o.min_samples or t.lr_slope is None or abs(t.lr_slope) >= o.tiny_slope:
        return None
    if (t.smoothing_reduction_ratio or 0.0) < o.smoothing_high:
        return None
    if (t.volatility_momentum or 0.0) > o.plateau_vol_momentum_ceil:
        return None
    return RuleAlert("StabilityPlateau", "info", "Plateau (lr_slope near 0)", {
        "lr_slope": t.lr_slope,
        "smoothing_reduction_ratio": t.smoothing_reduction_ratio,
        "volatility_momentum": t.volatility_momentum,
        "thresholds": {"tiny_slope": o.tiny_slope, "smoothing_high": o.smoothing_high},
    })


def reversal_risk(t: StrategyTrend, o: GovernanceConfig) -> Optional[RuleAlert]:
    s_slope, s_delta = _sign(t.lr_slope), _sign(t.delta_weight)
    if s_slope == 0 or s_delta == 0 or s_slope == s_delta or abs(t.delta_weight) < o.reversal_delta_min:
        return None
    return RuleAlert("ReversalRisk", "warn", f"Reversal risk: slope={t.lr_slope} delta_weight={t.delta_weight}", {
        "lr_slope": t.lr_slope,
        "delta_weight": t.delta_weight,
        "thresholds": {"reversal_delta_min": o.reversal_delta_min},
    })


RULES = (trend_breakout, volatility_surge, anomaly_cluster, stability_plateau, reversal_risk)


class GovernanceRuleEngine:
    def __init__(
        self,
        snapshots: WeightSnapshotStore,
        alert_store: Optional[AlertStore] = None,
        config: Optional[GovernanceConfig] = None,
    ):
        self.snapshots = snapshots
        self.alert_store = alert_store
        self.config = config or GovernanceConfig()

    def _options(self, overrides: Optional[Mapping[str, Any]]) -> GovernanceConfig:
        if not overrides:
            return self.config
        known = {f.name for f in fields(GovernanceConfig)}
        unknown = set(overrides) - known
        if unknown:
            logger.warning(f"Ignoring unknown governance options: {sorted(unknown)}")
        return replace(self.config, **{k: v for k, v in overrides.items() if k in known and v is not None})

    @gm.observe_duration(gm.governance_evaluation_duration)
    def evaluate(
        self,
        options: Optional[Mapping[str, Any]] = None,
        strategy: Optional[str] = None,
        persist: bool = False,
        context: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Evaluate every rule against each strategy's recent snapshots.

        With ``persist`` the alerts go through the alert store (dedup and
        suppression apply); the report always lists them all.
        """
        opts = self._options(options)
        rows = self.snapshots.list(strategy=strategy, limit=opts.window)
        trends = compute_trends(
            rows,
            ma_window=opts.ma_window,
            anomaly_threshold=opts.anomaly_threshold,
            anomaly_baseline_window=opts.anomaly_baseline_window,
        )
        generated_at = utcnow()
        report: Dict[str, Any] = {
            "window": opts.window,
            "generated_at": generated_at.isoformat(),
            "strategies": {},
            "summary": {"total_alerts": 0, "by_severity": {"info": 0, "warn": 0, "critical": 0}},
        }
        for name, trend in trends.items():
            alerts: List[RuleAlert] = [a for a in (rule(trend, opts) for rule in RULES) if a is not None]
            entry: Dict[str, Any] = {"alerts": [a.to_dict() for a in alerts], "metrics": trend.to_dict()}
            for a in alerts:
                report["summary"]["total_alerts"] += 1
                report["summary"]["by_severity"][a.severity] += 1
            if persist and alerts:
                if self.alert_store is None:
                    logger.warning("Governance alerts not persisted: no alert store configured")
                else:
                    outcome = self.alert_store.persist(
                        [a.to_input() for a in alerts],
                        strategy=name,
                        generated_at=generated_at,
                        context=context,
                    )
                    entry["persisted"] = outcome.to_dict()
            report["strategies"][name] = entry
        logger.info(f"Governance evaluated {len(trends)} strategies: {report['summary']['total_alerts']} alerts")
        return report
