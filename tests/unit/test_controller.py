from __future__ import annotations

from alertgov.config import TuningConfig
from alertgov.tuning.controller import AdaptiveWeightController
from alertgov.types import DEFAULT_WEIGHTS, AggregatedMetrics, ReasonCode


def _metrics(**kw) -> AggregatedMetrics:
    base = dict(
        ack_rate=0.85,
        escalation_effectiveness=0.7,
        false_suppression_rate=0.10,
        suspected_false_rate=0.15,
        re_noise_rate=0.20,
    )
    base.update(kw)
    return AggregatedMetrics(**base)


def test_warmup_cycles_only_record():
    c = AdaptiveWeightController(warmup_cycles=2)
    for _ in range(2):
        r = c.compute_adjustment(_metrics(ack_rate=0.3))
        assert r.reason == ReasonCode.WARMUP and not r.adjusted
    r = c.compute_adjustment(_metrics(ack_rate=0.3))
    assert r.reason == ReasonCode.APPLIED and r.adjusted


def test_low_ack_rate_raises_w1_within_bounds():
    cfg = TuningConfig()
    c = AdaptiveWeightController(cfg)
    r = c.compute_adjustment(_metrics(ack_rate=0.5))
    assert r.adjusted
    assert r.weights.w1 > DEFAULT_WEIGHTS.w1
    assert r.weights.is_normalized()
    assert all(cfg.min_weight - 1e-9 <= v <= cfg.max_weight + 1e-9 for v in r.weights.as_tuple())
    assert sum(abs(d) for d in r.deltas.values()) <= cfg.max_cycle_drift + 1e-9


def test_re_noise_above_target_raises_volume_and_dedup_weights():
    c = AdaptiveWeightController()
    r = c.compute_adjustment(_metrics(re_noise_rate=0.6))
    assert r.adjusted
    assert r.deltas["w3"] > 0 and r.deltas["w4"] > 0
    assert r.deltas["w1"] == 0 and r.deltas["w2"] == 0
    assert r.weights.w3 > DEFAULT_WEIGHTS.w3 and r.weights.w4 > DEFAULT_WEIGHTS.w4

    # below target is not a reason to move anything
    assert AdaptiveWeightController().compute_adjustment(_metrics(re_noise_rate=0.05)).reason == ReasonCode.COOLDOWN


def test_deadband_means_cooldown():
    c = AdaptiveWeightController()
    r = c.compute_adjustment(_metrics(ack_rate=0.84))
    assert r.reason == ReasonCode.COOLDOWN
    assert r.errs["ack_rate"] == 0.0
    assert r.weights == DEFAULT_WEIGHTS


def test_cooldown_after_adjustment_unless_severe():
    c = AdaptiveWeightController(TuningConfig(cooldown_cycles=3))
    assert c.compute_adjustment(_metrics(ack_rate=0.78)).adjusted
    assert c.compute_adjustment(_metrics(ack_rate=0.78)).reason == ReasonCode.COOLDOWN
    # severe deviation bypasses the cooldown
    assert c.compute_adjustment(_metrics(ack_rate=0.5)).adjusted
    # but never two severe bypasses in a row
    assert c.compute_adjustment(_metrics(ack_rate=0.5)).reason == ReasonCode.COOLDOWN


def test_freeze_after_stable_cycles_and_unfreeze_on_severe():
    cfg = TuningConfig(stable_freeze_cycles=3)
    c = AdaptiveWeightController(cfg)
    reasons = [c.compute_adjustment(_metrics()).reason for _ in range(3)]
    assert reasons == [ReasonCode.COOLDOWN, ReasonCode.COOLDOWN, ReasonCode.FREEZE]
    assert c.freeze_active

    # mild deviation before the hold time keeps the freeze
    assert c.compute_adjustment(_metrics(ack_rate=0.78)).reason == ReasonCode.FREEZE
    r = c.compute_adjustment(_metrics(ack_rate=0.4))
    assert not c.freeze_active
    assert r.adjusted


def test_export_and_restore_state():
    c = AdaptiveWeightController()
    c.compute_adjustment(_metrics(ack_rate=0.5))
    state = c.export_state()

    fresh = AdaptiveWeightController()
    assert fresh.restore_persistence(state)
    assert fresh.state.cycle == 1
    assert fresh.state.last_adjustment_cycle == 1
    assert abs(fresh.current_weights.w1 - c.current_weights.w1) < 1e-9


def test_restore_ignores_unusable_weights():
    c = AdaptiveWeightController()
    assert c.restore_persistence({"w1": None, "cycle": 7, "freeze_active": True, "freeze_since_cycle": 5})
    assert c.current_weights == DEFAULT_WEIGHTS
    assert c.state.cycle == 7
    assert c.freeze_active and c.state.freeze_since_cycle == 5
    assert c.restore_persistence(None) is False


def test_nudge_moves_toward_initial_and_lifts_freeze():
    c = AdaptiveWeightController()
    for _ in range(3):
        c.compute_adjustment(_metrics(ack_rate=0.4))
    drifted = c.current_weights
    c.state.freeze_active = True
    w = c.nudge(-0.5)
    assert not c.freeze_active
    assert abs(w.w1 - DEFAULT_WEIGHTS.w1) < abs(drifted.w1 - DEFAULT_WEIGHTS.w1)
    assert w.is_normalized()
