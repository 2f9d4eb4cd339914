"""
Whole-engine scenarios: snapshots -> rules -> alerts -> acks -> metrics
"""
from __future__ import annotations

import math
from datetime import timedelta

import pytest

from alertgov.db import utcnow
from alertgov.engine import build_engine
from alertgov.policy.engine import Decision, PolicyDomain
from alertgov.providers import StaticMetricsProvider

pytestmark = pytest.mark.integration


@pytest.fixture
def engine(settings):
    eng = build_engine(settings)
    yield eng
    eng.close()


def test_breakout_becomes_critical_alert_and_feeds_ack_metrics(engine):
    start = utcnow() - timedelta(hours=1)
    for i in range(20):
        engine.snapshots.record("carry", 0.30 + 0.005 * i, spread=0.02, captured_at=start + timedelta(minutes=i))
        engine.snapshots.record("value", 0.25, spread=0.02, captured_at=start + timedelta(minutes=i))

    report = engine.governance.evaluate(options={"slope_warn": 0.002, "slope_critical": 0.004}, persist=True)
    carry = {a["code"]: a for a in report["strategies"]["carry"]["alerts"]}
    assert carry["TrendBreakout"]["severity"] == "critical"
    assert "TrendBreakout" not in {a["code"] for a in report["strategies"]["value"]["alerts"]}

    stored = engine.alert_store.query(strategy="carry", code="TrendBreakout", include_ack=True)
    assert len(stored) == 1 and stored[0]["ack"] is None

    engine.ledger.ack(stored[0]["id"], actor="oncall")
    m = engine.ledger.metrics(include_severity_breakdown=True)
    assert m["by_severity"]["critical"]["acked"] == 1
    assert engine.ledger.timely_ack_rate() == 1.0


def test_engine_without_durable_store_still_serves_alerts(settings):
    settings.database.url = None
    eng = build_engine(settings)
    try:
        assert not eng.persistence.available
        assert eng.alert_database.is_configured
        out = eng.alert_store.persist([{"code": "VolatilitySurge", "severity": "warn", "message": "m"}])
        assert out.added == 1
        assert eng.persistence.save_suppression_states([{"dedup_group": "x"}]).reason == "NO_DB"
    finally:
        eng.close()


@pytest.mark.asyncio
async def test_runner_scores_ingested_groups_and_suppresses_noise(settings):
    settings.alert_store.cooldown_ms = 0
    eng = build_engine(settings)
    group = "s|X|noisy"
    try:
        out = eng.alert_store.persist([{"code": "X", "severity": "warn", "message": "noisy"}] * 50, strategy="s")
        assert out.added == 50 and len(out.surfaced) == 50
        assert eng.suppression.get_suppression_state(group)["noise_score"] == 0.0

        await eng.runner.run_once()
        await eng.runner.drain()

        state = eng.suppression.get_suppression_state(group)
        # unacked, fully duplicated, high volume: scored above the enter threshold
        assert state["state"] == "SUPPRESSED"
        assert state["noise_score"] >= settings.suppression.enter
        assert state["last_volume"] == 50
        assert eng.suppression.get_recent_transitions()[-1]["new_state"] == "SUPPRESSED"
        assert eng.runner.get_logs(1)[0]["scored_groups"] == 1

        more = eng.alert_store.persist([{"code": "X", "severity": "warn", "message": "noisy"}], strategy="s")
        assert more.added == 1 and more.surfaced == []
        assert eng.suppression.get_suppression_state(group)["suppressed_count"] == 1

        for _ in range(11):
            await eng.runner.run_once()
            await eng.runner.drain()
        assert eng.suppression.get_suppression_state(group)["noise_score"] > 0.0
        assert all(entry["scored_groups"] == 1 for entry in eng.runner.get_logs(12))
    finally:
        eng.close()


@pytest.mark.asyncio
async def test_acked_group_is_not_suppressed(settings):
    settings.alert_store.cooldown_ms = 0
    eng = build_engine(settings)
    try:
        ids = eng.alert_store.persist([{"code": "Y", "severity": "warn", "message": "real"}] * 10, strategy="s").ids
        for alert_id in ids:
            eng.ledger.ack(alert_id, actor="oncall")
        await eng.runner.run_once()
        await eng.runner.drain()
        state = eng.suppression.get_suppression_state("s|Y|real")
        assert state["state"] == "ACTIVE"
        assert state["noise_score"] < settings.suppression.enter
    finally:
        eng.close()


@pytest.mark.asyncio
async def test_policy_cycle_drives_live_subsystems(settings, on_target_metrics):
    eng = build_engine(settings, provider=StaticMetricsProvider(on_target_metrics))
    try:
        for _ in range(2):
            await eng.runner.run_once()
            await eng.runner.drain()
        # push failure ratio over the persistence policy trigger
        for ok in (False, False, False, True):
            eng.runner.record_persistence_outcome(ok)
        before = eng.runner.debounce_every

        out = await eng.policy.perform_evaluation_cycle()
        assert out["errors"] == []
        assert out["metrics"]["failure_ratio"] == pytest.approx(0.75)
        # a single sample is not enough confidence for the persistence domain
        assert out["analysis"]["decisions"] == []

        decision = Decision(
            domain=PolicyDomain.PERSISTENCE_POLICY,
            metric="failure_ratio",
            value=0.75,
            threshold=0.2,
            adjustment=0.5,
            confidence=0.9,
            action="increase_debounce_cooldown",
            expected_impact="",
        )
        assert eng.policy.execute(decision) == {"debounce_every": math.ceil(before * 1.5)}
        assert eng.runner.get_persistence_window()["debounce_every"] == math.ceil(before * 1.5)
    finally:
        eng.close()
