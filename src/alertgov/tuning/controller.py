"""Adaptive weight tuning controller.

Proposes a new noise-score weight vector from aggregated operational
metrics, or explains why none is proposed. The controller never touches
live state: the runner applies and persists whatever it returns.

Safeguards, in evaluation order:

* warm-up: the first ``warmup_cycles`` cycles after start only record history
* freeze: after ``stable_freeze_cycles`` consecutive zero-error cycles the
  controller stops proposing changes until a deviation reappears and the
  freeze has been held ``min_freeze_hold_cycles``
* cooldown: nothing is proposed when every error is inside the dead-band,
  or for ``cooldown_cycles`` after an adjustment unless a severe deviation
  shows up (never two severe bypasses in a row)
"""
from __future__ import annotations

import logging
import math
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Mapping, Optional

import numpy as np

from alertgov.config import TuningConfig
from alertgov.db import utcnow
from alertgov.errors import InvalidWeightsError
from alertgov.types import DEFAULT_WEIGHTS, WEIGHT_KEYS, AggregatedMetrics, Rationale, ReasonCode, WeightVector

logger = logging.getLogger(__name__)

METRIC_KEYS = (
    "ack_rate",
    "escalation_effectiveness",
    "false_suppression_rate",
    "suspected_false_rate",
    "re_noise_rate",
)
# -1: higher is better, +1: lower is better
DIRECTIONS = {
    "ack_rate": -1,
    "escalation_effectiveness": -1,
    "false_suppression_rate": 1,
    "suspected_false_rate": 1,
    "re_noise_rate": 1,
}
MIN_OUTLIER_HISTORY = 5


@dataclass
class ControllerState:
    freeze_active: bool = False
    freeze_since_cycle: Optional[int] = None
    last_adjustment_cycle: Optional[int] = None
    cycle: int = 0
    consecutive_zero_error_cycles: int = 0
    last_severe_adjustment_cycle: Optional[int] = None


@dataclass
class AdjustmentResult:
    adjusted: bool
    weights: WeightVector
    reason: ReasonCode
    errs: Dict[str, float]
    skip: Dict[str, bool] = field(default_factory=dict)
    deltas: Dict[str, float] = field(default_factory=dict)
    cycle: int = 0

    @property
    def rationale(self) -> Rationale:
        return Rationale(
            code=self.reason,
            extra={
                "errs": {k: round(v, 6) for k, v in self.errs.items()},
                "deltas": {k: round(v, 6) for k, v in self.deltas.items()},
                "skip": {k: v for k, v in self.skip.items() if v},
            },
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "adjusted": self.adjusted,
            "weights": self.weights.as_dict(),
            "reason": self.reason.value,
            "errs": dict(self.errs),
            "skip": dict(self.skip),
            "deltas": dict(self.deltas),
            "cycle": self.cycle,
        }


class AdaptiveWeightController:
    def __init__(
        self,
        config: Optional[TuningConfig] = None,
        initial: WeightVector = DEFAULT_WEIGHTS,
        warmup_cycles: int = 0,
        log_limit: int = 200,
    ):
        self.config = config or TuningConfig()
        self.initial = initial
        self.warmup_cycles = max(0, int(warmup_cycles))
        self.state = ControllerState()
        self._weights = initial
        self._history: Deque[Dict[str, Dict[str, float]]] = deque(maxlen=self.config.history_size)
        self._logs: Deque[Dict[str, Any]] = deque(maxlen=log_limit)
        self._cycles_since_start = 0

    @property
    def current_weights(self) -> WeightVector:
        return self._weights

    @property
    def freeze_active(self) -> bool:
        return self.state.freeze_active

    # ---------------------------------------------------------------- helpers

    def _errors(self, metrics: AggregatedMetrics) -> Dict[str, float]:
        targets = self.config.targets
        errs: Dict[str, float] = {}
        for key in METRIC_KEYS:
            raw = DIRECTIONS[key] * (getattr(metrics, key) - getattr(targets, key))
            errs[key] = 0.0 if abs(raw) < self.config.deadband else raw
        return errs

    def _outliers(self, metrics: AggregatedMetrics) -> Dict[str, bool]:
        skip = {k: False for k in METRIC_KEYS}
        if len(self._history) < MIN_OUTLIER_HISTORY:
            return skip
        for key in METRIC_KEYS:
            series = np.asarray([h["metrics"][key] for h in self._history], dtype=float)
            median = float(np.median(series))
            mad = max(float(np.median(np.abs(series - median))), 1e-6)
            skip[key] = abs(getattr(metrics, key) - median) > self.config.outlier_mad_k * mad
        return skip

    def _record(self, metrics: AggregatedMetrics, errs: Dict[str, float]) -> None:
        self._history.append({"metrics": {k: getattr(metrics, k) for k in METRIC_KEYS}, "errors": dict(errs)})

    def _mean_abs_error(self, entries: List[Dict[str, Dict[str, float]]]) -> float:
        if not entries:
            return math.inf
        per_entry = [sum(abs(e) for e in h["errors"].values()) / max(1, len(h["errors"])) for h in entries]
        return sum(per_entry) / len(per_entry)

    def _converged(self) -> bool:
        recent = list(self._history)[-self.config.convergence_window:]
        if len(recent) < self.config.stable_freeze_cycles:
            return False
        if self._mean_abs_error(recent) > self.config.convergence_threshold:
            return False
        tail = recent[-self.config.stable_freeze_cycles:]
        return all(self._mean_abs_error([h]) <= self.config.convergence_threshold for h in tail)

    def _enter_freeze(self) -> None:
        self.state.freeze_active = True
        self.state.freeze_since_cycle = self.state.cycle
        logger.info(f"Weight controller frozen at cycle {self.state.cycle}")

    def _result(self, reason: ReasonCode, errs: Dict[str, float], skip: Optional[Dict[str, bool]] = None) -> AdjustmentResult:
        return AdjustmentResult(
            adjusted=False,
            weights=self._weights,
            reason=reason,
            errs=errs,
            skip=skip or {},
            cycle=self.state.cycle,
        )

    # ---------------------------------------------------------------- compute

    def compute_adjustment(self, metrics: AggregatedMetrics) -> AdjustmentResult:
        cfg = self.config
        st = self.state
        st.cycle += 1
        self._cycles_since_start += 1
        errs = self._errors(metrics)

        if self._cycles_since_start <= self.warmup_cycles:
            self._record(metrics, errs)
            return self._result(ReasonCode.WARMUP, errs)

        all_zero = all(e == 0 for e in errs.values())
        st.consecutive_zero_error_cycles = st.consecutive_zero_error_cycles + 1 if all_zero else 0

        if not st.freeze_active and st.consecutive_zero_error_cycles >= cfg.stable_freeze_cycles:
            self._record(metrics, errs)
            self._enter_freeze()
            return self._result(ReasonCode.FREEZE, errs)

        severe = any(abs(e) > cfg.severe_deviation_threshold for e in errs.values())

        if st.freeze_active:
            held = st.cycle - (st.freeze_since_cycle or 0) >= cfg.min_freeze_hold_cycles
            if (held and not all_zero) or severe:
                logger.info(f"Weight controller unfrozen at cycle {st.cycle}: deviation {errs}")
                st.freeze_active = False
                st.freeze_since_cycle = None
            else:
                self._record(metrics, errs)
                return self._result(ReasonCode.FREEZE, errs)

        if severe and st.last_severe_adjustment_cycle is not None and st.cycle - st.last_severe_adjustment_cycle == 1:
            severe = False

        if all_zero:
            self._record(metrics, errs)
            return self._result(ReasonCode.COOLDOWN, errs)

        since_adjust = math.inf if st.last_adjustment_cycle is None else st.cycle - st.last_adjustment_cycle
        if not severe and since_adjust < cfg.cooldown_cycles:
            self._record(metrics, errs)
            if self._converged():
                self._enter_freeze()
                return self._result(ReasonCode.FREEZE, errs)
            return self._result(ReasonCode.COOLDOWN, errs)

        skip = self._outliers(metrics)
        deltas = self._deltas(errs, skip)
        l1 = sum(abs(d) for d in deltas.values())
        if l1 == 0:
            self._record(metrics, errs)
            return self._result(ReasonCode.COOLDOWN, errs, skip)

        old = self._weights
        proposed = [getattr(old, k) + deltas[k] for k in WEIGHT_KEYS]
        new = WeightVector.normalize(proposed, floor=cfg.min_weight, ceil=cfg.max_weight)

        st.last_adjustment_cycle = st.cycle
        if any(abs(e) > cfg.severe_deviation_threshold for e in errs.values()):
            st.last_severe_adjustment_cycle = st.cycle
        self._weights = new
        self._record(metrics, errs)
        if self._converged():
            self._enter_freeze()

        self._logs.append({
            "ts": utcnow().isoformat(),
            "cycle": st.cycle,
            "old": old.as_dict(),
            "deltas": deltas,
            "applied": new.as_dict(),
            "errs": errs,
            "skip": skip,
        })
        logger.info(f"Weights adjusted at cycle {st.cycle}: {new.as_dict()}")
        return AdjustmentResult(
            adjusted=True,
            weights=new,
            reason=ReasonCode.APPLIED,
            errs=errs,
            skip=skip,
            deltas=deltas,
            cycle=st.cycle,
        )

    def _deltas(self, errs: Dict[str, float], skip: Dict[str, bool]) -> Dict[str, float]:
        cfg = self.config
        deltas = {k: 0.0 for k in WEIGHT_KEYS}

        def clamp(v: float) -> float:
            return max(-cfg.max_delta, min(cfg.max_delta, v))

        def push(key: str, err: float) -> None:
            if err:
                deltas[key] += clamp(cfg.adjust_factor * err)

        if not skip["ack_rate"]:
            push("w1", errs["ack_rate"])
        if not skip["suspected_false_rate"]:
            push("w2", errs["suspected_false_rate"])
        if not skip["escalation_effectiveness"]:
            push("w5", errs["escalation_effectiveness"])

        fs_err = errs["false_suppression_rate"]
        if not skip["false_suppression_rate"] and fs_err:
            # too many false suppressions: lean off noise-driving weights toward escalation
            reduce = cfg.adjust_factor * fs_err
            deltas["w2"] -= clamp(reduce * 0.5)
            deltas["w3"] -= clamp(reduce * 0.2)
            deltas["w4"] -= clamp(reduce * 0.3)
            deltas["w5"] += clamp(reduce * 0.4)

        sf_err = errs["suspected_false_rate"]
        if not skip["suspected_false_rate"] and sf_err > 0:
            deltas["w4"] += clamp(cfg.adjust_factor * sf_err * 0.2)

        rn_err = errs["re_noise_rate"]
        if not skip["re_noise_rate"] and rn_err > 0:
            # groups re-entering soon after exit: weight the persistent noise signals
            deltas["w3"] += clamp(cfg.adjust_factor * rn_err * 0.5)
            deltas["w4"] += clamp(cfg.adjust_factor * rn_err * 0.5)

        l1 = sum(abs(d) for d in deltas.values())
        if l1 > cfg.max_cycle_drift:
            scale = cfg.max_cycle_drift / l1
            deltas = {k: d * scale for k, d in deltas.items()}
        return deltas

    # ------------------------------------------------------------ policy hook

    def nudge(self, adjustment: float) -> WeightVector:
        """Pull the weights toward their initial vector by ``|adjustment|``.

        Counts as an adjustment for cooldown purposes and lifts a freeze.
        """
        frac = min(1.0, abs(float(adjustment)))
        current = self._weights
        target = self.initial
        proposed = [getattr(current, k) + frac * (getattr(target, k) - getattr(current, k)) for k in WEIGHT_KEYS]
        self._weights = WeightVector.normalize(proposed, floor=self.config.min_weight, ceil=self.config.max_weight)
        self.state.last_adjustment_cycle = self.state.cycle
        self.state.freeze_active = False
        self.state.freeze_since_cycle = None
        self._logs.append({
            "ts": utcnow().isoformat(),
            "cycle": self.state.cycle,
            "nudge": frac,
            "old": current.as_dict(),
            "applied": self._weights.as_dict(),
        })
        return self._weights

    # ------------------------------------------------------------ persistence

    def restore_persistence(self, row: Any) -> bool:
        """Rebuild weights and safety state from one persisted row.

        Accepts a mapping or a WeightsLatest object. Weights are renormalized;
        unusable weights leave the current vector in place.
        """
        if row is None:
            return False

        def get(name: str) -> Any:
            if isinstance(row, Mapping):
                return row.get(name)
            return getattr(row, name, None)

        try:
            self._weights = WeightVector.normalize(float(get(k)) for k in WEIGHT_KEYS)
        except (InvalidWeightsError, TypeError, ValueError) as e:
            logger.warning(f"Persisted weights unusable, keeping current: {e}")

        st = self.state
        if get("freeze_active"):
            st.freeze_active = True
            st.freeze_since_cycle = _opt_int(get("freeze_since_cycle")) or 0
        else:
            st.freeze_active = False
            st.freeze_since_cycle = None
        last_adj = _opt_int(get("last_adjustment_cycle"))
        if last_adj is not None:
            st.last_adjustment_cycle = last_adj
        cycle = _opt_int(get("cycle"))
        if cycle is not None:
            st.cycle = cycle
        zero = _opt_int(get("consecutive_zero_error_cycles"))
        if zero is not None:
            st.consecutive_zero_error_cycles = zero
        self._logs.append({
            "ts": utcnow().isoformat(),
            "restore": True,
            "weights": self._weights.as_dict(),
            "freeze": st.freeze_active,
        })
        logger.info(f"Controller restored: cycle={st.cycle} freeze={st.freeze_active}")
        return True

    def export_state(self) -> Dict[str, Any]:
        st = self.state
        return {
            **self._weights.as_dict(),
            "freeze_active": st.freeze_active,
            "freeze_since_cycle": st.freeze_since_cycle,
            "last_adjustment_cycle": st.last_adjustment_cycle,
            "cycle": st.cycle,
            "consecutive_zero_error_cycles": st.consecutive_zero_error_cycles,
        }

    def get_logs(self) -> List[Dict[str, Any]]:
        return list(self._logs)


def _opt_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
