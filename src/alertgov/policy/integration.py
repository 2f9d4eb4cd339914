"""
Wires the auto-policy engine to the live subsystems
"""
from __future__ import annotations

import asyncio
import logging
import math
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional

from alertgov.alerts.acks import AckLedger
from alertgov.alerts.store import AlertStore
from alertgov.db import utcnow
from alertgov.policy.engine import AutoPolicyEngine, Decision, PolicyDomain, PolicyMetrics
from alertgov.runner import AdaptiveRunner
from alertgov.suppression.state_machine import SuppressionStateMachine

logger = logging.getLogger(__name__)

# fraction of a threshold-adaptation adjustment applied to the static thresholds
THRESHOLD_STEP_SCALE = 0.1


class AutoPolicyIntegration:
    def __init__(
        self,
        engine: AutoPolicyEngine,
        runner: Optional[AdaptiveRunner] = None,
        suppression: Optional[SuppressionStateMachine] = None,
        ledger: Optional[AckLedger] = None,
        alert_store: Optional[AlertStore] = None,
    ):
        self.engine = engine
        self.runner = runner
        self.suppression = suppression
        self.ledger = ledger
        self.alert_store = alert_store
        self.history: Deque[Dict[str, Any]] = deque(maxlen=engine.config.history_limit)
        self.last_evaluation_at = None
        self.last_error: Optional[str] = None
        self._task: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()
        self._handlers: Dict[PolicyDomain, Callable[[Decision], Dict[str, Any]]] = {
            PolicyDomain.WEIGHT_NUDGING: self._nudge_weights,
            PolicyDomain.THRESHOLD_ADAPTATION: self._adapt_thresholds,
            PolicyDomain.SUPPRESSION_TUNING: self._tune_suppression,
            PolicyDomain.PERSISTENCE_POLICY: self._tune_persistence,
        }

    # --------------------------------------------------------------- metrics

    def collect_metrics(self) -> PolicyMetrics:
        m = PolicyMetrics()
        if self.runner is not None:
            m.failure_ratio = self.runner.health.failure_ratio
        if self.suppression is not None:
            sm = self.suppression.get_suppression_metrics()
            m.re_noise_rate = sm["re_noise_rate"]
            m.suppression_accuracy = sm["accuracy"]
            m.false_positive_rate = sm["false_suppression_rate"]
        if self.ledger is not None:
            esc = self.ledger.timely_ack_rate()
            if esc is not None:
                m.escalation_effectiveness = esc
            ack = self.ledger.metrics()
            m.mean_time_to_ack_ms = ack["mtta_ms_avg"] or 0.0
        if self.alert_store is not None:
            m.alert_volume = self.alert_store.stats(window_ms=self.engine.config.interval_ms)["total"]
        m.system_stability = round((1 - m.failure_ratio) * 0.6 + m.suppression_accuracy * 0.4, 4)
        return m

    # ---------------------------------------------------------------- cycle

    async def perform_evaluation_cycle(self) -> Dict[str, Any]:
        """Collect, decide, gate and execute; errors are reported, never raised"""
        errors: List[str] = []
        applied = 0
        try:
            current = await asyncio.to_thread(self.collect_metrics)
        except Exception as e:
            logger.error(f"Policy metrics collection failed: {e}")
            return {"metrics": None, "analysis": None, "executions": [], "applied": 0, "outcomes": None, "errors": [str(e)]}

        past = [h["metrics"] for h in self.history]
        self.history.append({"ts": utcnow().isoformat(), "metrics": current})
        analysis = self.engine.analyze_and_decide(current, past + [current])
        logger.info(
            f"Policy analysis: {len(analysis.decisions)} candidate decisions, "
            f"confidence={analysis.confidence:.2f} risk={analysis.risk_assessment}"
        )
        executions = []
        for decision in analysis.decisions:
            ok, reasons = self.engine.apply_decision(decision)
            if not ok:
                executions.append({"decision_id": decision.id, "applied": False, "reasons": reasons})
                continue
            try:
                result = self.execute(decision)
                applied += 1
                executions.append({"decision_id": decision.id, "applied": True, "result": result})
            except Exception as e:
                logger.error(f"Policy decision {decision.id} failed to execute: {e}")
                errors.append(f"{decision.id}: {e}")

        outcomes = self.engine.evaluate_outcomes(current)
        self.last_evaluation_at = utcnow()
        return {
            "metrics": current.to_dict(),
            "analysis": analysis.to_dict(),
            "executions": executions,
            "applied": applied,
            "outcomes": outcomes,
            "errors": errors,
        }

    def execute(self, decision: Decision) -> Dict[str, Any]:
        return self._handlers[decision.domain](decision)

    # ------------------------------------------------------------- handlers

    @staticmethod
    def _simulated(decision: Decision, missing: str) -> Dict[str, Any]:
        logger.info(f"{missing} not available, simulating {decision.domain.value} adjustment={decision.adjustment}")
        return {"simulated": True}

    def _nudge_weights(self, decision: Decision) -> Dict[str, Any]:
        if self.runner is None:
            return self._simulated(decision, "Adaptive runner")
        return {"weights": self.runner.apply_policy_nudge(decision.adjustment)}

    def _adapt_thresholds(self, decision: Decision) -> Dict[str, Any]:
        if self.suppression is None:
            return self._simulated(decision, "Suppression state machine")
        return self.suppression.adjust_thresholds(decision.adjustment * THRESHOLD_STEP_SCALE)

    def _tune_suppression(self, decision: Decision) -> Dict[str, Any]:
        if self.suppression is None:
            return self._simulated(decision, "Suppression state machine")
        return self.suppression.adjust_aggressiveness(decision.adjustment)

    def _tune_persistence(self, decision: Decision) -> Dict[str, Any]:
        if self.runner is None:
            return self._simulated(decision, "Adaptive runner")
        target = math.ceil(self.runner.debounce_every * (1 + decision.adjustment))
        return {"debounce_every": self.runner.set_debounce_every(target)}

    # ------------------------------------------------------------ schedule

    async def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._loop(), name="alertgov-auto-policy")
        logger.info(f"Auto-policy evaluation every {self.engine.config.interval_ms}ms")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        async with self._lock:
            task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.engine.config.interval_ms / 1000)
            if not self.engine.enabled:
                continue
            async with self._lock:
                try:
                    await self.perform_evaluation_cycle()
                except Exception as e:
                    logger.error(f"Policy evaluation cycle failed: {type(e).__name__}: {e}")
                    self.last_error = str(e)

    def get_status(self) -> Dict[str, Any]:
        return {
            "engine": self.engine.get_status(),
            "running": self._task is not None and not self._task.done(),
            "last_evaluation_at": self.last_evaluation_at.isoformat() if self.last_evaluation_at else None,
            "last_error": self.last_error,
            "history_size": len(self.history),
            "recent_decisions": self.engine.recent_decisions(10),
        }
