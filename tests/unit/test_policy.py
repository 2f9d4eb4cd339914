from __future__ import annotations

import asyncio
from datetime import datetime, timedelta

import pytest

from alertgov.config import PolicyConfig, RobustConfig, SuppressionConfig
from alertgov.policy.engine import (
    AutoPolicyEngine,
    Decision,
    PolicyDomain,
    PolicyMetrics,
    estimate_confidence,
    recognize_patterns,
)
from alertgov.policy.integration import AutoPolicyIntegration
from alertgov.suppression.state_machine import SuppressionStateMachine

T0 = datetime(2024, 6, 1, 8, 0, 0)


def _engine(**kw) -> AutoPolicyEngine:
    cfg = dict(min_confidence=0.3, max_risk=0.9)
    cfg.update(kw)
    return AutoPolicyEngine(PolicyConfig(**cfg))


def _decision(domain=PolicyDomain.SUPPRESSION_TUNING, adjustment=-0.15, confidence=0.8, risk=0.2) -> Decision:
    return Decision(
        domain=domain,
        metric="false_positive_rate",
        value=0.2,
        threshold=0.05,
        adjustment=adjustment,
        confidence=confidence,
        action="reduce_suppression_aggressiveness",
        expected_impact="",
        risk_score=risk,
    )


def test_confidence_blend():
    assert estimate_confidence(100, 0.0, 1.0) == pytest.approx(1.0)
    assert estimate_confidence(0, 0.0, 0.5) == pytest.approx(0.45)


def test_pattern_recognition():
    history = [PolicyMetrics(re_noise_rate=r) for r in (0.1, 0.1, 0.4, 0.5)]
    p = recognize_patterns(history)
    assert p["trend"] == "degrading"
    assert "high_renoise_rate" in p["anomalies"]
    assert recognize_patterns(history[:2])["trend"] == "stable"


def test_analyze_proposes_per_breached_domain():
    engine = _engine()
    current = PolicyMetrics(re_noise_rate=0.5, false_positive_rate=0.2, escalation_effectiveness=0.9)
    analysis = engine.analyze_and_decide(current, [current] * 60)
    by_domain = {d.domain: d for d in analysis.decisions}
    # confidence 0.24 + 0.3 + 0.15 = 0.69; escalation and failure ratio are on target
    assert set(by_domain) == {PolicyDomain.WEIGHT_NUDGING, PolicyDomain.SUPPRESSION_TUNING}
    assert by_domain[PolicyDomain.WEIGHT_NUDGING].adjustment == pytest.approx(-0.1)
    assert by_domain[PolicyDomain.SUPPRESSION_TUNING].adjustment == pytest.approx(-0.15)


def test_disabled_engine_decides_nothing():
    engine = _engine(enabled=False)
    analysis = engine.analyze_and_decide(PolicyMetrics(re_noise_rate=0.9), [])
    assert analysis.decisions == [] and analysis.risk_assessment == "disabled"


@pytest.mark.parametrize("kwargs, reason", [
    ({"confidence": 0.1}, "insufficient_confidence"),
    ({"risk": 0.95}, "risk_too_high"),
    ({"adjustment": -0.4}, "adjustment_too_large"),
])
def test_safety_validator_reasons(kwargs, reason):
    ok, reasons = _engine().apply_decision(_decision(**kwargs), now=T0)
    assert not ok and reason in reasons


def test_human_override_blocks_everything():
    ok, reasons = _engine(human_override=True).apply_decision(_decision(), now=T0)
    assert not ok and reasons == ["human_override_active"]


def test_domain_cooldown_and_outcome_evaluation():
    engine = _engine(measurement_window_ms=60_000)
    assert engine.apply_decision(_decision(), now=T0) == (True, [])
    ok, reasons = engine.apply_decision(_decision(), now=T0 + timedelta(minutes=5))
    assert not ok and reasons == ["cooldown_active"]

    assert engine.evaluate_outcomes(PolicyMetrics(false_positive_rate=0.1), now=T0 + timedelta(seconds=30))["evaluations"] == []
    out = engine.evaluate_outcomes(PolicyMetrics(false_positive_rate=0.1), now=T0 + timedelta(minutes=2))
    assert out["evaluations"][0]["success"] is True
    assert out["success_rate"] == 1.0
    assert engine.recent_decisions()[0]["impact"] == {"false_positive_rate": pytest.approx(-0.1)}


def test_success_rate_defaults_to_half():
    assert _engine().success_rate() == 0.5


def test_integration_executes_on_live_state_machine():
    sm = SuppressionStateMachine(SuppressionConfig(robust=RobustConfig(enabled=False)))
    integration = AutoPolicyIntegration(_engine(), suppression=sm)
    enter_before, _ = sm.base_thresholds()
    result = integration.execute(_decision(adjustment=-0.15))
    assert result["aggressiveness"] == pytest.approx(-0.15)
    assert sm.base_thresholds()[0] > enter_before

    # no runner wired: weight nudging is simulated
    assert integration.execute(_decision(domain=PolicyDomain.WEIGHT_NUDGING, adjustment=-0.1)) == {"simulated": True}


@pytest.mark.asyncio
async def test_evaluation_cycle_reports_without_raising():
    integration = AutoPolicyIntegration(_engine())
    out = await integration.perform_evaluation_cycle()
    assert out["errors"] == []
    assert out["metrics"]["re_noise_rate"] == 0.0
    assert out["applied"] == 0
    assert integration.get_status()["history_size"] == 1


@pytest.mark.asyncio
async def test_policy_loop_survives_a_failing_cycle(monkeypatch):
    engine = _engine(interval_ms=10)
    integration = AutoPolicyIntegration(engine)
    calls = {"n": 0}
    real = engine.analyze_and_decide

    def flaky(current, history):
        calls["n"] += 1
        if calls["n"] == 1:
            raise RuntimeError("analysis exploded")
        return real(current, history)

    monkeypatch.setattr(engine, "analyze_and_decide", flaky)
    await integration.start()
    try:
        for _ in range(200):
            await asyncio.sleep(0.01)
            if integration.last_evaluation_at is not None:
                break
        status = integration.get_status()
    finally:
        await integration.stop()

    assert calls["n"] >= 2
    assert status["running"] is True
    assert status["last_error"] == "analysis exploded"
    assert status["last_evaluation_at"] is not None
