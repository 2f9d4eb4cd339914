"""Noise-aware suppression state machine.

Each dedup group is either ACTIVE (alerts are surfaced) or SUPPRESSED
(alerts are collapsed into counters). Groups move between the two states
on a per-cycle noise score with hysteresis:

* ACTIVE -> SUPPRESSED when ``score >= enter``
* SUPPRESSED -> ACTIVE when ``score <= exit``, where ``exit < enter``

Noise score (weighted sum, clamped to [0, 1] and rounded to 4 places)::

    w1 * (1 - ack_rate)
  + w2 * suspected_false_rate
  + w3 * volume / max(volume, 5 * min_volume, 1)
  + w4 * (1 - dedup_ratio)
  + w5 * (1 - escalation_effectiveness)

Once a group has enough score history its thresholds follow a robust
median + k * MAD band which is recorded on the group. A group that stayed
above the enter threshold for ``min_consecutive_above_high`` cycles while
suppressed needs ``stable_recovery_windows`` quiet cycles before it may
re-open, instead of one.

Weights are supplied from outside through ``set_weights``; the state
machine never tunes them itself.
"""
from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Deque, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

import numpy as np

from alertgov.config import SuppressionConfig
from alertgov.db import coerce_datetime, utcnow
from alertgov.errors import InvalidWeightsError
from alertgov.metrics import governance_metrics as gm
from alertgov.types import DEFAULT_WEIGHTS, WeightVector

logger = logging.getLogger(__name__)

ACTIVE = "ACTIVE"
SUPPRESSED = "SUPPRESSED"
STATES = (ACTIVE, SUPPRESSED)

MIN_WEIGHT = 1e-4
MIN_THRESHOLD_GAP = 0.01
MAX_THRESHOLD_OFFSET = 0.2
MAX_AGGRESSIVENESS = 0.5
AGGRESSIVENESS_SPAN = 0.2


@dataclass
class GroupSignals:
    """Per-group inputs of one scoring cycle"""
    ack_rate: float = 0.0
    suspected_false_rate: float = 0.0
    volume: Optional[int] = None
    dedup_ratio: float = 1.0
    escalation_effectiveness: float = 0.0
    severity: Optional[str] = None


@dataclass
class AlertGroup:
    dedup_group: str
    state: str = ACTIVE
    noise_score: float = 0.0
    noise_score_enter: Optional[float] = None
    noise_score_exit: Optional[float] = None
    suppressed_count: int = 0
    last_volume: int = 0
    severity_scope: Set[str] = field(default_factory=set)
    strategy: str = "static"
    last_state_change_at: Optional[datetime] = None
    last_suppression_start: Optional[datetime] = None
    consecutive_stable: int = 0
    robust_high_streak: int = 0
    dynamic_thresholds: Optional[Dict[str, float]] = None
    # runtime only
    pending_volume: int = 0
    quiet_streak: int = 0
    recovered_at: Optional[datetime] = None
    score_history: Deque[float] = field(default_factory=lambda: deque(maxlen=30))
    ack_inside: List[float] = field(default_factory=list)
    ack_after_exit: List[float] = field(default_factory=list)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "dedup_group": self.dedup_group,
            "state": self.state,
            "noise_score": self.noise_score,
            "noise_score_enter": self.noise_score_enter,
            "noise_score_exit": self.noise_score_exit,
            "suppressed_count": self.suppressed_count,
            "last_volume": self.last_volume,
            "severity_scope": sorted(self.severity_scope),
            "strategy": self.strategy,
            "last_state_change_at": self.last_state_change_at,
            "last_suppression_start": self.last_suppression_start,
            "consecutive_stable": self.consecutive_stable,
            "dynamic_thresholds": dict(self.dynamic_thresholds) if self.dynamic_thresholds else None,
            "robust_high_streak": self.robust_high_streak,
        }


@dataclass
class Transition:
    dedup_group: str
    prev_state: str
    new_state: str
    reason: str
    noise_score: float
    enter: float
    exit: float
    changed_at: datetime
    duration_ms: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dedup_group": self.dedup_group,
            "prev_state": self.prev_state,
            "new_state": self.new_state,
            "reason": self.reason,
            "noise_score": self.noise_score,
            "enter": self.enter,
            "exit": self.exit,
            "changed_at": self.changed_at.isoformat(),
            "duration_ms": self.duration_ms,
        }


@dataclass
class GroupEvaluation:
    dedup_group: str
    state: str
    noise_score: float
    enter: float
    exit: float
    blocked: bool = False
    transition: Optional[Transition] = None


def compute_noise_score(weights: WeightVector, signals: GroupSignals, volume: int, min_volume: int) -> float:
    v_norm = volume / max(volume, min_volume * 5, 1) if volume > 0 else 0.0
    raw = (
        weights.w1 * (1 - _unit(signals.ack_rate))
        + weights.w2 * _unit(signals.suspected_false_rate)
        + weights.w3 * v_norm
        + weights.w4 * (1 - _unit(signals.dedup_ratio))
        + weights.w5 * (1 - _unit(signals.escalation_effectiveness))
    )
    return round(min(1.0, max(0.0, raw)), 4)


def _unit(v: Any) -> float:
    try:
        f = float(v)
    except (TypeError, ValueError):
        return 0.0
    if f != f:
        return 0.0
    return min(1.0, max(0.0, f))


def _ordered(enter: float, exit_: float) -> Tuple[float, float]:
    """Clamp both thresholds into [0, 1] keeping exit strictly below enter"""
    enter = min(1.0, max(MIN_THRESHOLD_GAP, enter))
    exit_ = min(1.0, max(0.0, exit_))
    if exit_ >= enter:
        exit_ = max(0.0, enter - MIN_THRESHOLD_GAP)
    return enter, exit_


def _median_mad(values: Sequence[float]) -> Tuple[float, float]:
    arr = np.asarray(values, dtype=float)
    median = float(np.median(arr))
    mad = float(np.median(np.abs(arr - median)))
    return median, mad


class SuppressionStateMachine:
    """Per-group ACTIVE/SUPPRESSED state with hysteresis.

    All public methods take the internal lock; the ingestion path and the
    runner's weight application share one writer domain.
    """

    def __init__(self, config: Optional[SuppressionConfig] = None, weights: WeightVector = DEFAULT_WEIGHTS):
        self.config = config or SuppressionConfig()
        if not self.config.exit < self.config.enter:
            raise ValueError("exit threshold must be strictly below enter threshold")
        self._lock = threading.RLock()
        self._groups: Dict[str, AlertGroup] = {}
        self._weights = weights
        self._threshold_offset = 0.0
        self._aggressiveness = 0.0
        self._transitions: Deque[Transition] = deque(maxlen=self.config.transitions_limit)
        self._recent_exits: Deque[Tuple[str, datetime]] = deque(maxlen=300)
        self._recent_reentries: Deque[Tuple[str, datetime, float]] = deque(maxlen=300)
        self._suppress_exit_count = 0
        self._false_suppress_count = 0
        self._total_volume = 0
        self._suppressed_volume = 0

    # ------------------------------------------------------------------ weights

    @property
    def weights(self) -> WeightVector:
        with self._lock:
            return self._weights

    def set_weights(self, vector: WeightVector | Mapping[str, float] | Iterable[float]) -> bool:
        """Apply an externally computed weight vector.

        Each component is clamped to [1e-4, 1] and the vector renormalized
        to sum to 1. Vectors with nothing usable (NaN, all zero) are rejected
        and the current weights kept. Returns True when applied.
        """
        try:
            if isinstance(vector, WeightVector):
                values: Iterable[float] = vector.as_tuple()
            elif isinstance(vector, Mapping):
                values = [vector[k] for k in ("w1", "w2", "w3", "w4", "w5")]
            else:
                values = list(vector)
            normalized = WeightVector.normalize(values, floor=MIN_WEIGHT, ceil=1.0)
        except (InvalidWeightsError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"Rejected weight vector {vector!r}: {e}")
            return False
        with self._lock:
            self._weights = normalized
        gm.record_weights(normalized.as_dict())
        return True

    # --------------------------------------------------------------- thresholds

    def base_thresholds(self) -> Tuple[float, float]:
        """Static thresholds after auto-policy offsets"""
        with self._lock:
            enter = self.config.enter + self._threshold_offset - self._aggressiveness * AGGRESSIVENESS_SPAN
            exit_ = self.config.exit + self._threshold_offset
            return _ordered(enter, exit_)

    def adjust_thresholds(self, delta: float) -> Dict[str, float]:
        """Shift both thresholds by ``delta``; positive means suppress less"""
        with self._lock:
            self._threshold_offset = min(MAX_THRESHOLD_OFFSET, max(-MAX_THRESHOLD_OFFSET, self._threshold_offset + delta))
            enter, exit_ = self.base_thresholds()
            logger.info(f"Suppression thresholds adjusted by {delta:+.4f}: enter={enter:.4f} exit={exit_:.4f}")
            return {"enter": enter, "exit": exit_, "offset": self._threshold_offset}

    def adjust_aggressiveness(self, delta: float) -> Dict[str, float]:
        """Raise (positive) or lower (negative) how readily groups are suppressed"""
        with self._lock:
            self._aggressiveness = min(MAX_AGGRESSIVENESS, max(-MAX_AGGRESSIVENESS, self._aggressiveness + delta))
            enter, exit_ = self.base_thresholds()
            logger.info(f"Suppression aggressiveness now {self._aggressiveness:+.4f}: enter={enter:.4f}")
            return {"enter": enter, "exit": exit_, "aggressiveness": self._aggressiveness}

    def _effective_thresholds(self, g: AlertGroup) -> Tuple[float, float, bool]:
        static_enter, static_exit = self.base_thresholds()
        robust = self.config.robust
        if robust.enabled and g.dynamic_thresholds:
            enter, exit_ = _ordered(g.dynamic_thresholds["high"], g.dynamic_thresholds["low"])
            return enter, exit_, enter < static_enter
        return static_enter, static_exit, False

    def _update_dynamic_thresholds(self, g: AlertGroup) -> None:
        robust = self.config.robust
        if not robust.enabled or len(g.score_history) < robust.min_samples:
            return
        history = list(g.score_history)
        median, mad = _median_mad(history)
        mad = max(mad, robust.epsilon_mad)
        static_enter, _ = self.base_thresholds()
        last5 = history[-5:]
        drift_up = len(last5) == 5 and all(b >= a for a, b in zip(last5, last5[1:]))
        floor = static_enter * (0.7 if drift_up else 0.85)
        high = max(min(1.0, median + robust.k_high * mad), floor)
        low = min(1.0, max(0.0, median + robust.k_low * mad))
        high, low = _ordered(high, low)
        g.dynamic_thresholds = {"high": high, "low": low, "median": median, "mad": mad}
        g.strategy = "robust"

    # ------------------------------------------------------------------ groups

    def _new_group(self, dedup_group: str) -> AlertGroup:
        enter, exit_ = self.base_thresholds()
        g = AlertGroup(
            dedup_group=dedup_group,
            noise_score_enter=enter,
            noise_score_exit=exit_,
            score_history=deque(maxlen=self.config.robust.history_size),
        )
        self._groups[dedup_group] = g
        return g

    def _group(self, dedup_group: str) -> AlertGroup:
        g = self._groups.get(dedup_group)
        if g is None:
            g = self._new_group(dedup_group)
        return g

    def get_suppression_state(self, dedup_group: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            g = self._groups.get(dedup_group)
            return g.snapshot() if g else None

    def group_count(self) -> int:
        with self._lock:
            return len(self._groups)

    def reset(self) -> None:
        """Drop all in-memory group state (weights and offsets are kept)"""
        with self._lock:
            self._groups.clear()
            self._transitions.clear()
            self._recent_exits.clear()
            self._recent_reentries.clear()
            self._suppress_exit_count = 0
            self._false_suppress_count = 0
            self._total_volume = 0
            self._suppressed_volume = 0

    # --------------------------------------------------------------- ingestion

    def observe(self, dedup_group: str, severity: Optional[str] = None, volume: int = 1) -> bool:
        """Route one incoming alert; returns True when it must be surfaced"""
        volume = max(0, int(volume))
        with self._lock:
            g = self._group(dedup_group)
            if severity:
                g.severity_scope.add(severity)
            g.pending_volume += volume
            bypass = severity == "critical" and not self.config.allow_suppress_critical
            if g.state == SUPPRESSED and not bypass:
                g.suppressed_count += 1
                gm.alerts_observed_total.labels(decision="suppress").inc()
                return False
        gm.alerts_observed_total.labels(decision="surface").inc()
        return True

    # ----------------------------------------------------------------- scoring

    def evaluate(self, signals_by_group: Mapping[str, GroupSignals], now: Optional[datetime] = None) -> List[GroupEvaluation]:
        """Score every group in the batch and apply transitions"""
        now = now or utcnow()
        results: List[GroupEvaluation] = []
        with self._lock:
            weights = self._weights
            for dedup_group, signals in signals_by_group.items():
                g = self._group(dedup_group)
                volume = signals.volume if signals.volume is not None else g.pending_volume
                score = compute_noise_score(weights, signals, volume, self.config.min_volume)
                results.append(self._apply(
                    g,
                    score,
                    now=now,
                    volume=volume,
                    severity=signals.severity,
                    escalation_effectiveness=signals.escalation_effectiveness,
                    ack_rate=signals.ack_rate,
                ))
            self._publish_counts()
        return results

    def apply_score(
        self,
        dedup_group: str,
        noise_score: float,
        *,
        now: Optional[datetime] = None,
        volume: Optional[int] = None,
        severity: Optional[str] = None,
        escalation_effectiveness: Optional[float] = None,
        ack_rate: Optional[float] = None,
    ) -> GroupEvaluation:
        """Apply an already computed noise score to one group"""
        with self._lock:
            g = self._group(dedup_group)
            result = self._apply(
                g,
                round(min(1.0, max(0.0, float(noise_score))), 4),
                now=now or utcnow(),
                volume=volume,
                severity=severity,
                escalation_effectiveness=escalation_effectiveness,
                ack_rate=ack_rate,
            )
            self._publish_counts()
            return result

    def _apply(
        self,
        g: AlertGroup,
        score: float,
        *,
        now: datetime,
        volume: Optional[int],
        severity: Optional[str],
        escalation_effectiveness: Optional[float],
        ack_rate: Optional[float],
    ) -> GroupEvaluation:
        cfg = self.config
        if severity:
            g.severity_scope.add(severity)
        if volume is not None:
            g.last_volume = int(volume)
            self._total_volume += int(volume)
            if g.state == SUPPRESSED:
                self._suppressed_volume += int(volume)
        g.pending_volume = 0
        g.noise_score = score
        g.score_history.append(score)
        self._update_dynamic_thresholds(g)
        enter, exit_, gated = self._effective_thresholds(g)

        blocked_severity = "critical" in g.severity_scope and not cfg.allow_suppress_critical
        blocked_escalation = (
            escalation_effectiveness is not None and escalation_effectiveness >= cfg.escalation_block_threshold
        )
        blocked = blocked_severity or blocked_escalation

        if ack_rate is not None:
            self._track_ack_rate(g, float(ack_rate))

        in_dwell = bool(
            cfg.cooldown_ms
            and g.last_state_change_at is not None
            and now - g.last_state_change_at < timedelta(milliseconds=cfg.cooldown_ms)
        )

        transition: Optional[Transition] = None
        if g.state == ACTIVE:
            g.robust_high_streak = g.robust_high_streak + 1 if score >= enter else 0
            volume_ok = volume is None or volume >= cfg.min_volume
            gate_ok = not gated or g.robust_high_streak >= cfg.robust.min_consecutive_above_high
            if score >= enter and not blocked and volume_ok and gate_ok and not in_dwell:
                transition = self._transition(g, SUPPRESSED, "noise>=enter", enter, exit_, now)
        else:
            if score >= enter:
                g.robust_high_streak += 1
            if score <= exit_:
                g.quiet_streak += 1
                required = 1
                if g.robust_high_streak >= cfg.robust.min_consecutive_above_high:
                    required = max(1, cfg.stable_recovery_windows)
                if g.quiet_streak >= required and not in_dwell:
                    reason = "stableRecovery" if required > 1 else "noise<=exit"
                    transition = self._transition(g, ACTIVE, reason, enter, exit_, now)
            else:
                g.quiet_streak = 0

        if transition is None:
            g.consecutive_stable += 1

        return GroupEvaluation(
            dedup_group=g.dedup_group,
            state=g.state,
            noise_score=score,
            enter=enter,
            exit=exit_,
            blocked=blocked,
            transition=transition,
        )

    def _track_ack_rate(self, g: AlertGroup, ack_rate: float) -> None:
        if g.state == SUPPRESSED:
            g.ack_inside.append(ack_rate)
            return
        if not g.ack_inside or g.recovered_at is None:
            return
        g.ack_after_exit.append(ack_rate)
        if len(g.ack_after_exit) >= max(1, self.config.stable_recovery_windows):
            inside = sum(g.ack_inside) / len(g.ack_inside)
            after = sum(g.ack_after_exit) / len(g.ack_after_exit)
            # ack rate jumping after re-open means the group carried real signal
            if after - inside >= self.config.recovery_ack_rate_jump:
                self._false_suppress_count += 1
            g.ack_inside = []
            g.ack_after_exit = []

    def _transition(self, g: AlertGroup, new_state: str, reason: str, enter: float, exit_: float, now: datetime) -> Transition:
        prev = g.state
        duration_ms: Optional[int] = None
        if new_state == SUPPRESSED:
            g.last_suppression_start = now
            g.ack_inside = []
            g.ack_after_exit = []
            if g.recovered_at is not None:
                gap = (now - g.recovered_at).total_seconds() * 1000
                self._recent_reentries.append((g.dedup_group, now, gap))
        else:
            if g.last_suppression_start is not None:
                duration_ms = int((now - g.last_suppression_start).total_seconds() * 1000)
            g.recovered_at = now
            g.robust_high_streak = 0
            self._suppress_exit_count += 1
            self._recent_exits.append((g.dedup_group, now))
        g.state = new_state
        g.noise_score_enter = enter
        g.noise_score_exit = exit_
        g.last_state_change_at = now
        g.consecutive_stable = 0
        g.quiet_streak = 0
        t = Transition(
            dedup_group=g.dedup_group,
            prev_state=prev,
            new_state=new_state,
            reason=reason,
            noise_score=g.noise_score,
            enter=enter,
            exit=exit_,
            changed_at=now,
            duration_ms=duration_ms,
        )
        self._transitions.append(t)
        gm.suppression_transitions_total.labels(to_state=new_state).inc()
        logger.info(f"Group {g.dedup_group} {prev}->{new_state} ({reason}) score={g.noise_score:.4f}")
        return t

    def _publish_counts(self) -> None:
        suppressed = sum(1 for g in self._groups.values() if g.state == SUPPRESSED)
        gm.record_group_counts(len(self._groups) - suppressed, suppressed)

    # ------------------------------------------------------------- persistence

    def get_all_group_snapshots(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [g.snapshot() for g in self._groups.values()]

    def hydrate_from_snapshots(self, rows: Iterable[Any]) -> int:
        """Restore groups from persisted snapshots.

        Rows may be mappings or ORM objects. Missing or malformed fields fall
        back to defaults; a row that cannot be read at all is skipped. Values
        overwrite in-memory state, so hydrating twice is a no-op.
        """
        count = 0
        if rows is None:
            return 0
        with self._lock:
            for row in rows:
                try:
                    if self._hydrate_row(row):
                        count += 1
                except Exception as e:  # a single corrupt row must not stop startup
                    logger.warning(f"Skipping unreadable suppression snapshot: {e}")
            self._publish_counts()
        logger.info(f"Hydrated {count} suppression groups")
        return count

    def _hydrate_row(self, row: Any) -> bool:
        def get(name: str) -> Any:
            if isinstance(row, Mapping):
                return row.get(name)
            return getattr(row, name, None)

        dedup_group = get("dedup_group")
        if not dedup_group or not isinstance(dedup_group, str):
            return False
        g = self._group(dedup_group)

        state = get("state")
        if state in STATES:
            g.state = state
        g.noise_score = _float_or(get("noise_score"), g.noise_score)
        g.noise_score_enter = _float_or(get("noise_score_enter"), g.noise_score_enter)
        g.noise_score_exit = _float_or(get("noise_score_exit"), g.noise_score_exit)
        g.suppressed_count = _int_or(get("suppressed_count"), g.suppressed_count)
        g.last_volume = _int_or(get("last_volume"), g.last_volume)
        g.consecutive_stable = _int_or(get("consecutive_stable"), g.consecutive_stable)
        g.robust_high_streak = _int_or(get("robust_high_streak"), g.robust_high_streak)
        scope = get("severity_scope")
        if isinstance(scope, str):
            g.severity_scope = {scope}
        elif isinstance(scope, (list, tuple, set)):
            g.severity_scope = {str(s) for s in scope if s}
        strategy = get("strategy")
        if isinstance(strategy, str) and strategy:
            g.strategy = strategy
        g.last_state_change_at = _dt_or(get("last_state_change_at"), g.last_state_change_at)
        g.last_suppression_start = _dt_or(get("last_suppression_start"), g.last_suppression_start)
        dyn = get("dynamic_thresholds")
        if isinstance(dyn, Mapping) and "high" in dyn and "low" in dyn:
            try:
                g.dynamic_thresholds = {k: float(v) for k, v in dyn.items() if v is not None}
            except (TypeError, ValueError):
                g.dynamic_thresholds = None
        return True

    # ----------------------------------------------------------------- metrics

    def get_suppression_metrics(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utcnow()
        horizon = timedelta(milliseconds=self.config.re_noise_window_ms)
        with self._lock:
            suppressed = sum(1 for g in self._groups.values() if g.state == SUPPRESSED)
            active = len(self._groups) - suppressed
            false_rate = (
                round(self._false_suppress_count / self._suppress_exit_count, 4) if self._suppress_exit_count else 0.0
            )
            window_exits = [(grp, at) for grp, at in self._recent_exits if now - at <= horizon]
            exit_groups = {grp for grp, _ in window_exits}
            re_noise = sum(
                1
                for grp, at, gap_ms in self._recent_reentries
                if now - at <= horizon and gap_ms <= horizon.total_seconds() * 1000 and grp in exit_groups
            )
            re_noise_rate = round(min(1.0, re_noise / len(window_exits)), 4) if window_exits else 0.0
            suppression_ratio = (
                round(self._suppressed_volume / self._total_volume, 4) if self._total_volume else 0.0
            )
            enter, exit_ = self.base_thresholds()
            return {
                "groups": len(self._groups),
                "active": active,
                "suppressed": suppressed,
                "suppress_exit_count": self._suppress_exit_count,
                "false_suppress_count": self._false_suppress_count,
                "false_suppression_rate": false_rate,
                "re_noise_rate": re_noise_rate,
                "accuracy": round(1.0 - false_rate, 4),
                "suppression_ratio": suppression_ratio,
                "transitions": len(self._transitions),
                "thresholds": {"enter": enter, "exit": exit_},
            }

    def get_recent_transitions(self, limit: int = 100) -> List[Dict[str, Any]]:
        limit = max(1, min(limit, self.config.transitions_limit))
        with self._lock:
            return [t.to_dict() for t in list(self._transitions)[-limit:]]


def _float_or(value: Any, default: Any) -> Any:
    try:
        f = float(value)
    except (TypeError, ValueError):
        return default
    return f if f == f else default


def _int_or(value: Any, default: int) -> int:
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        return default


def _dt_or(value: Any, default: Optional[datetime]) -> Optional[datetime]:
    parsed = coerce_datetime(value)
    return parsed if parsed is not None else default
