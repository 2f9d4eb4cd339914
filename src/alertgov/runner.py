"""
Adaptive runner: owns the tuning cadence and every persistence side effect.

Each cycle collects aggregated metrics, asks the controller for an adjustment,
pushes new weights into the suppression state machine, scores every group
with recent alerts under those weights and then decides whether to persist
weights and group snapshots. Saves run in worker threads as background tasks;
their outcomes feed the persistence circuit breaker.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, Set, Tuple

from alertgov.config import RunnerConfig
from alertgov.db import utcnow
from alertgov.metrics import governance_metrics as gm
from alertgov.persistence.health import PersistenceHealth
from alertgov.persistence.service import AdaptivePersistenceService, PersistenceResult, SaveWeightsInput
from alertgov.suppression.state_machine import SUPPRESSED, GroupSignals, SuppressionStateMachine
from alertgov.tuning.controller import AdaptiveWeightController, AdjustmentResult
from alertgov.types import AggregatedMetrics, MetricsProvider, ReasonCode

logger = logging.getLogger(__name__)

MAX_LOG_QUERY = 200


class AdaptiveRunner:
    def __init__(
        self,
        controller: AdaptiveWeightController,
        suppression: SuppressionStateMachine,
        provider: MetricsProvider,
        persistence: AdaptivePersistenceService,
        config: Optional[RunnerConfig] = None,
        group_signals: Optional[Callable[[], Mapping[str, GroupSignals]]] = None,
    ):
        self.controller = controller
        self.suppression = suppression
        self.provider = provider
        self.persistence = persistence
        self.config = config or RunnerConfig()
        # per-group scoring inputs; None leaves group scoring to the caller
        self.group_signals = group_signals
        pcfg = self.config.persistence
        self.health = PersistenceHealth(
            window_size=pcfg.window_size,
            min_samples=pcfg.min_samples,
            disable_ratio=pcfg.disable_ratio,
            enable_ratio=pcfg.enable_ratio,
        )
        self.debounce_every = max(1, pcfg.debounce_cooldown_every)

        self.cycle = 0
        self.hydrated = False
        self.last_result: Optional[AdjustmentResult] = None
        self._logs: Deque[Dict[str, Any]] = deque(maxlen=self.config.log_limit)
        self._lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self._stopping = False
        self._pending: Set[asyncio.Task] = set()

        self._debounce_counter = 0
        self._last_weight_save_cycle = 0
        self._last_snapshot_save_cycle = 0
        self._group_baseline = 0
        self._suppressed_baseline = 0
        self._prev_reason: Optional[ReasonCode] = None

    # -------------------------------------------------------------- lifecycle

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def hydrate(self) -> None:
        """Load persisted weights and group snapshots; failures leave a cold start"""
        if self.hydrated:
            return
        try:
            loaded = await asyncio.to_thread(self.persistence.load_weights)
            if loaded.ok and loaded.row:
                if self.controller.restore_persistence(loaded.row):
                    self.suppression.set_weights(self.controller.current_weights)
            groups = await asyncio.to_thread(self.persistence.load_suppression_states)
            if groups.ok and groups.rows:
                restored = self.suppression.hydrate_from_snapshots(groups.rows)
                self._group_baseline = restored
                self._suppressed_baseline = sum(1 for r in groups.rows if r.get("state") == SUPPRESSED)
        except Exception as e:
            logger.warning(f"Hydration failed, starting cold: {e}")
        self.hydrated = True

    async def start(self) -> None:
        if self.running:
            return
        await self.hydrate()
        self._stopping = False
        self._task = asyncio.create_task(self._loop(), name="alertgov-adaptive-runner")
        logger.info(f"Adaptive runner started, interval={self.config.interval_ms}ms")

    async def stop(self) -> None:
        """Stop the timer; an in-flight cycle is allowed to finish"""
        self._stopping = True
        task, self._task = self._task, None
        if task is not None:
            async with self._lock:
                task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self.drain()
        logger.info("Adaptive runner stopped")

    async def _loop(self) -> None:
        interval = self.config.interval_ms / 1000
        while not self._stopping:
            await asyncio.sleep(interval)
            if self._stopping:
                break
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Adaptive cycle {self.cycle} failed: {e}")
                self._push_log({"cycle": self.cycle, "error": str(e)})

    async def drain(self) -> None:
        """Wait for outstanding persistence tasks"""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # ------------------------------------------------------------------ cycle

    async def _collect(self) -> AggregatedMetrics:
        try:
            return await asyncio.wait_for(self.provider.collect_aggregated(), timeout=self.config.metrics_timeout_s)
        except Exception as e:
            logger.warning(f"Metrics provider failed ({type(e).__name__}: {e}); using defaults")
            return AggregatedMetrics.defaults()

    async def _score_groups(self) -> Tuple[int, int]:
        """Score groups with recent alerts under the current weights"""
        if self.group_signals is None:
            return 0, 0
        try:
            signals = await asyncio.wait_for(
                asyncio.to_thread(self.group_signals), timeout=self.config.metrics_timeout_s
            )
        except Exception as e:
            logger.warning(f"Group signal collection failed ({type(e).__name__}: {e}); scoring skipped")
            return 0, 0
        if not signals:
            return 0, 0
        evaluations = self.suppression.evaluate(signals)
        transitions = sum(1 for ev in evaluations if ev.transition is not None)
        if transitions:
            logger.info(f"Cycle {self.cycle}: {transitions} suppression transitions across {len(evaluations)} groups")
        return len(evaluations), transitions

    async def run_once(self) -> Optional[AdjustmentResult]:
        """Run one tuning cycle; an overlapping call is skipped and returns None"""
        if self._lock.locked():
            gm.runner_skipped_ticks_total.inc()
            logger.warning(f"Adaptive cycle skipped: cycle {self.cycle} still in progress")
            return None
        async with self._lock:
            if not self.hydrated:
                await self.hydrate()
            started = time.perf_counter()
            self.cycle += 1
            metrics = await self._collect()
            result = self.controller.compute_adjustment(metrics)
            self.last_result = result

            applied = False
            if result.adjusted:
                applied = self.suppression.set_weights(result.weights)
            scored, transitions = await self._score_groups()

            gm.runner_cycles_total.labels(reason=result.reason.value).inc()
            gm.record_weights(self.suppression.weights.as_dict())
            gm.controller_freeze_active.set(1 if self.controller.freeze_active else 0)

            self._push_log({
                "cycle": self.cycle,
                "metrics": metrics.as_dict(),
                "result": result.to_dict(),
                "applied_weights": applied,
                "scored_groups": scored,
                "transitions": transitions,
            })
            self._maybe_persist(result, metrics)
            self._prev_reason = result.reason
            gm.runner_cycle_duration.observe(time.perf_counter() - started)
            return result

    # ------------------------------------------------------------ persistence

    def _maybe_persist(self, result: AdjustmentResult, metrics: AggregatedMetrics) -> None:
        if self.health.disabled:
            # ping so the breaker can observe recovery
            self._spawn("ping", self.persistence.ping)
            return

        unchanged = not result.adjusted and result.reason in (ReasonCode.COOLDOWN, ReasonCode.FREEZE)
        self._debounce_counter = self._debounce_counter + 1 if unchanged else 0
        freeze_entered = result.reason == ReasonCode.FREEZE and self._prev_reason != ReasonCode.FREEZE
        debounced = (
            self._debounce_counter >= self.debounce_every
            and self.cycle - self._last_weight_save_cycle >= self.debounce_every
        )
        if result.adjusted or freeze_entered or debounced:
            state = self.controller.export_state()
            data = SaveWeightsInput(
                weights=result.weights,
                reason=result.reason.value,
                version=self.config.persistence.version,
                cycle=state["cycle"],
                last_adjustment_cycle=state["last_adjustment_cycle"],
                freeze_active=state["freeze_active"],
                freeze_since_cycle=state["freeze_since_cycle"],
                consecutive_zero_error_cycles=state["consecutive_zero_error_cycles"],
                metrics_snapshot=metrics.as_dict(),
                meta=result.rationale.to_dict(),
            )
            cycle = self.cycle

            def on_weights_saved(r: PersistenceResult) -> None:
                if r.ok:
                    self._last_weight_save_cycle = cycle
                    self._debounce_counter = 0

            self._spawn("weights", self.persistence.save_weights, data, on_ok=on_weights_saved)

        groups = self.suppression.get_all_group_snapshots()
        if self._snapshot_due(groups):
            total = len(groups)
            suppressed = sum(1 for g in groups if g["state"] == SUPPRESSED)
            cycle = self.cycle

            def on_snapshot_saved(r: PersistenceResult) -> None:
                if r.ok:
                    self._last_snapshot_save_cycle = cycle
                    self._group_baseline = total
                    self._suppressed_baseline = suppressed

            self._spawn("suppression", self.persistence.save_suppression_states, groups, on_ok=on_snapshot_saved)

    def _snapshot_due(self, groups: List[Dict[str, Any]]) -> bool:
        pcfg = self.config.persistence
        if not groups:
            return False
        if self.cycle - self._last_snapshot_save_cycle >= pcfg.snapshot_every:
            return True
        suppressed = sum(1 for g in groups if g["state"] == SUPPRESSED)
        if suppressed < pcfg.snapshot_min_changed:
            return False
        delta = max(abs(len(groups) - self._group_baseline), abs(suppressed - self._suppressed_baseline))
        if delta >= pcfg.snapshot_min_changed:
            return True
        return self._group_baseline > 0 and delta / self._group_baseline >= pcfg.snapshot_relative_change

    def _spawn(self, kind: str, func, *args, on_ok=None) -> asyncio.Task:
        timeout = self.config.persistence.timeout_s

        async def call() -> PersistenceResult:
            return await asyncio.wait_for(asyncio.to_thread(func, *args), timeout=timeout)

        task = asyncio.create_task(call(), name=f"alertgov-persist-{kind}")
        self._pending.add(task)

        def done(t: asyncio.Task) -> None:
            self._pending.discard(t)
            if t.cancelled():
                self.record_persistence_outcome(False, kind=kind)
                return
            exc = t.exception()
            if exc is not None:
                logger.error(f"Persistence task {kind} failed: {type(exc).__name__}: {exc}")
                self.record_persistence_outcome(False, kind=kind)
                return
            r: PersistenceResult = t.result()
            if r.skipped:
                gm.persistence_outcomes_total.labels(kind=kind, outcome="skipped").inc()
                return
            self.record_persistence_outcome(r.ok, kind=kind)
            if r.ok and on_ok is not None:
                on_ok(r)

        task.add_done_callback(done)
        return task

    def record_persistence_outcome(self, ok: bool, kind: str = "external") -> None:
        gm.persistence_outcomes_total.labels(kind=kind, outcome="ok" if ok else "error").inc()
        flipped = self.health.record(ok)
        gm.record_persistence_health(self.health.failure_ratio, self.health.disabled)
        if flipped:
            if self.health.disabled:
                logger.error(f"Persistence disabled: failure ratio {self.health.failure_ratio:.2f}")
            else:
                logger.info("Persistence re-enabled after recovery")

    # ------------------------------------------------------------ policy hooks

    def set_debounce_every(self, n: int) -> int:
        old, self.debounce_every = self.debounce_every, max(1, int(n))
        logger.info(f"Weight save debounce changed {old} -> {self.debounce_every}")
        return self.debounce_every

    def apply_policy_nudge(self, adjustment: float) -> Dict[str, float]:
        weights = self.controller.nudge(adjustment)
        self.suppression.set_weights(weights)
        gm.record_weights(weights.as_dict())
        self._push_log({"cycle": self.cycle, "policy_nudge": adjustment, "weights": weights.as_dict()})
        return weights.as_dict()

    # ---------------------------------------------------------------- status

    def _push_log(self, entry: Dict[str, Any]) -> None:
        self._logs.append({"ts": utcnow().isoformat(), **entry})

    def get_logs(self, limit: int = 50) -> List[Dict[str, Any]]:
        limit = max(1, min(int(limit), MAX_LOG_QUERY))
        return list(self._logs)[-limit:]

    def get_persistence_window(self) -> Dict[str, Any]:
        return {**self.health.snapshot(), "debounce_every": self.debounce_every}

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "hydrated": self.hydrated,
            "cycle": self.cycle,
            "last_result": self.last_result.to_dict() if self.last_result else None,
            "current_weights": self.suppression.weights.as_dict(),
            "controller": self.controller.export_state(),
            "failure_ratio": round(self.health.failure_ratio, 4),
            "persistence_disabled": self.health.disabled,
            "persistence_available": self.persistence.available,
            "recent_logs": self.get_logs(10),
        }
