from __future__ import annotations

from datetime import datetime, timedelta

import numpy as np
import pytest

from alertgov.alerts.store import AlertStore
from alertgov.config import AlertStoreConfig, GovernanceConfig
from alertgov.governance.rules import (
    GovernanceRuleEngine,
    anomaly_cluster,
    reversal_risk,
    stability_plateau,
    trend_breakout,
    volatility_surge,
)
from alertgov.governance.snapshots import WeightSnapshotStore
from alertgov.governance.trends import AnomalyPoint, StrategyTrend, compute_trends, lr_slope, moving_average, strategy_trend

T0 = datetime(2024, 5, 1, 0, 0, 0)


def _rows(weights, spreads=None):
    spreads = spreads or [0.0] * len(weights)
    return [{"weight": w, "spread": s, "captured_at": None} for w, s in zip(weights, spreads)]


def test_lr_slope_of_line():
    assert lr_slope(np.array([1.0, 1.5, 2.0, 2.5])) == pytest.approx(0.5)
    assert lr_slope(np.array([1.0])) is None


def test_moving_average_is_trailing():
    out = moving_average(np.array([1.0, 2.0, 3.0, 4.0]), 2)
    assert list(out) == [1.0, 1.5, 2.5, 3.5]


def test_strategy_trend_metrics():
    t = strategy_trend(_rows([0.1, 0.2, 0.3, 0.4, 0.5], [0.0, 0.0, 0.1, 0.1, 0.1]), ma_window=3)
    assert t.sample_count == 5
    assert t.simple_slope == pytest.approx(0.1)
    assert t.lr_slope == pytest.approx(0.1)
    # last minus mean of the three before it
    assert t.delta_weight == pytest.approx(0.5 - 0.3)
    assert t.volatility_momentum == pytest.approx(0.1)
    assert t.smoothing_reduction_ratio > 0


def test_anomalies_on_flat_baseline_and_spike():
    t = strategy_trend(_rows([0.2, 0.2, 0.2, 0.2, 0.5, 0.2]), anomaly_baseline_window=4, anomaly_threshold=2.5)
    assert [a.index for a in t.anomalies] == [4]
    assert t.anomalies[0].z_score == 0.0


def test_compute_trends_groups_newest_first_input():
    snaps = [
        {"strategy": "a", "weight": 0.3, "spread": None, "captured_at": "t3"},
        {"strategy": "b", "weight": 0.9, "spread": None, "captured_at": "t2"},
        {"strategy": "a", "weight": 0.1, "spread": None, "captured_at": "t1"},
    ]
    trends = compute_trends(snaps)
    assert set(trends) == {"a", "b"}
    assert trends["a"].simple_slope == pytest.approx(0.2)
    assert trends["b"].sample_count == 1


def test_rules_fire_on_crafted_trends():
    o = GovernanceConfig(min_samples=5)
    steep = StrategyTrend(sample_count=10, lr_slope=0.004, delta_weight=0.01)
    assert trend_breakout(steep, o).severity == "critical"
    assert trend_breakout(StrategyTrend(sample_count=10, lr_slope=0.002), o).severity == "warn"
    assert trend_breakout(StrategyTrend(sample_count=3, lr_slope=0.01), o) is None

    assert volatility_surge(StrategyTrend(sample_count=10, volatility_momentum=0.9), o).code == "VolatilitySurge"
    assert volatility_surge(StrategyTrend(sample_count=10, volatility_momentum=0.1), o) is None

    cluster = StrategyTrend(sample_count=10, anomalies=[AnomalyPoint(i, 0.5, 3.0) for i in (6, 7, 8, 9)])
    assert anomaly_cluster(cluster, o).severity == "critical"

    plateau = StrategyTrend(sample_count=10, lr_slope=0.0001, smoothing_reduction_ratio=0.5, volatility_momentum=0.0)
    assert stability_plateau(plateau, o).severity == "info"

    flip = StrategyTrend(sample_count=10, lr_slope=0.002, delta_weight=-0.01)
    assert reversal_risk(flip, o).code == "ReversalRisk"
    assert reversal_risk(steep, o) is None


def test_snapshot_store_orders_newest_first_and_purges(database):
    store = WeightSnapshotStore(database)
    for i in range(3):
        store.record("s1", 0.1 * i, captured_at=T0 + timedelta(hours=i))
    store.record("s2", 0.5, captured_at=T0 - timedelta(days=100))
    rows = store.list(strategy="s1")
    assert [r["weight"] for r in rows] == pytest.approx([0.2, 0.1, 0.0])
    assert rows[0]["captured_at"] == (T0 + timedelta(hours=2)).isoformat()
    assert store.purge_older_than(days=90, now=T0) == 1
    assert store.list(strategy="s2") == []


def test_rule_engine_evaluate_and_persist(database):
    snapshots = WeightSnapshotStore(database)
    alerts = AlertStore(database, AlertStoreConfig(cooldown_ms=60_000))
    engine = GovernanceRuleEngine(snapshots, alerts, GovernanceConfig(min_samples=12))
    for i in range(15):
        snapshots.record("momentum", 0.2 + 0.005 * i, spread=0.01, captured_at=T0 + timedelta(minutes=i))

    report = engine.evaluate(options={"slope_warn": 0.002, "slope_critical": 0.004, "nonsense": 1}, persist=True)
    entry = report["strategies"]["momentum"]
    codes = {a["code"]: a["severity"] for a in entry["alerts"]}
    assert codes["TrendBreakout"] == "critical"
    assert report["summary"]["by_severity"]["critical"] >= 1
    assert entry["persisted"]["added"] == len(entry["alerts"])
    assert entry["metrics"]["sample_count"] == 15

    # evaluating again inside the cooldown collapses instead of duplicating
    again = engine.evaluate(options={"slope_warn": 0.002, "slope_critical": 0.004}, persist=True)
    assert again["strategies"]["momentum"]["persisted"]["added"] == 0
    assert len(alerts.query(code="TrendBreakout")) == 1


def test_rule_engine_without_data(database):
    engine = GovernanceRuleEngine(WeightSnapshotStore(database))
    report = engine.evaluate(persist=True)
    assert report["strategies"] == {}
    assert report["summary"]["total_alerts"] == 0
