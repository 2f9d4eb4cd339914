from __future__ import annotations

import math

import pytest

from alertgov.config import Settings, load_settings
from alertgov.errors import ConfigError, InvalidWeightsError
from alertgov.types import DEFAULT_WEIGHTS, AggregatedMetrics, Rationale, ReasonCode, WeightVector


def test_default_weights_are_normalized():
    assert DEFAULT_WEIGHTS.is_normalized()
    assert DEFAULT_WEIGHTS.as_dict()["w1"] == 0.3


def test_normalize_clamps_and_rescales():
    w = WeightVector.normalize([2.0, 0.0, -1.0, 1.0, 1.0], floor=0.05, ceil=0.6)
    assert w.is_normalized()
    assert all(v > 0 for v in w.as_tuple())
    # the clamped large value is still the largest component
    assert w.w1 == max(w.as_tuple())


@pytest.mark.parametrize("values", [
    [math.nan, 0.2, 0.2, 0.2, 0.2],
    [0.0, 0.0, 0.0, 0.0, 0.0],
    [0.5, 0.5],
])
def test_normalize_rejects_unusable_vectors(values):
    with pytest.raises(InvalidWeightsError):
        WeightVector.normalize(values)


def test_aggregated_metrics_from_mapping_clamps_and_defaults():
    m = AggregatedMetrics.from_mapping({"ack_rate": 1.7, "re_noise_rate": "bad"})
    assert m.ack_rate == 1.0
    assert m.re_noise_rate == AggregatedMetrics.defaults().re_noise_rate
    assert m.escalation_effectiveness == 0.5
    assert m.degraded is False


def test_rationale_round_trip_and_unknown_code():
    r = Rationale(ReasonCode.FREEZE, {"errs": {"ack_rate": 0.0}})
    assert Rationale.from_dict(r.to_dict()) == r
    assert Rationale.from_dict({"code": "exploded"}) is None
    assert Rationale.from_dict(None) is None


def test_settings_reject_inverted_thresholds():
    s = Settings()
    s.suppression.enter = 0.4
    s.suppression.exit = 0.5
    with pytest.raises(ConfigError):
        s.validate()


def test_load_settings_layers_yaml_and_env(tmp_path):
    cfg = tmp_path / "alertgov.yaml"
    cfg.write_text(
        "suppression:\n  enter: 0.7\n  exit: 0.4\nrunner:\n  persistence:\n    snapshot_every: 4\nbogus: 1\n",
        encoding="utf-8",
    )
    s = load_settings(cfg, env={"ALERTGOV_SUPPRESSION_EXIT": "0.35", "ALERTGOV_POLICY_ENABLED": "no"})
    assert s.suppression.enter == 0.7
    assert s.suppression.exit == 0.35
    assert s.runner.persistence.snapshot_every == 4
    assert s.policy.enabled is False
    assert s.database.url is None


def test_load_settings_bad_env_value():
    with pytest.raises(ConfigError):
        load_settings(env={"ALERTGOV_INTERVAL_MS": "soon"})
