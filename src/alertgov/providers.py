"""
Metrics providers feeding the adaptive runner
"""
from __future__ import annotations

import asyncio
import logging
from typing import Optional

from alertgov.alerts.acks import AckLedger
from alertgov.suppression.state_machine import SuppressionStateMachine
from alertgov.types import AggregatedMetrics, MetricsProvider

logger = logging.getLogger(__name__)


class StaticMetricsProvider(MetricsProvider):
    """Returns a fixed snapshot; handy for replays and dry runs"""

    def __init__(self, metrics: AggregatedMetrics):
        self.metrics = metrics

    async def collect_aggregated(self) -> AggregatedMetrics:
        return self.metrics


class LedgerMetricsProvider(MetricsProvider):
    """Aggregates live metrics from the ack ledger and the state machine.

    * ack_rate: ledger ack rate over the window
    * escalation_effectiveness: critical alerts acked within the stale horizon
    * suspected_false_rate: suppressed alerts that were acked anyway
    * false_suppression_rate / re_noise_rate: from the state machine

    Any value with no data behind it falls back to the default snapshot and
    the result is flagged degraded.
    """

    def __init__(self, ledger: AckLedger, suppression: SuppressionStateMachine, window_ms: Optional[int] = None):
        self.ledger = ledger
        self.suppression = suppression
        self.window_ms = window_ms

    def _collect(self) -> AggregatedMetrics:
        defaults = AggregatedMetrics.defaults()
        degraded = False

        ack = self.ledger.metrics(window_ms=self.window_ms)
        if ack["total"]:
            ack_rate = ack["ack_rate"]
        else:
            ack_rate, degraded = defaults.ack_rate, True

        esc = self.ledger.timely_ack_rate(window_ms=self.window_ms)
        if esc is None:
            esc, degraded = defaults.escalation_effectiveness, True

        suspected = self.ledger.suppressed_ack_rate(window_ms=self.window_ms)
        if suspected is None:
            suspected = 0.0

        sm = self.suppression.get_suppression_metrics()
        return AggregatedMetrics(
            ack_rate=ack_rate,
            escalation_effectiveness=esc,
            false_suppression_rate=sm["false_suppression_rate"],
            suspected_false_rate=suspected,
            re_noise_rate=sm["re_noise_rate"],
            degraded=degraded,
        )

    async def collect_aggregated(self) -> AggregatedMetrics:
        try:
            return await asyncio.to_thread(self._collect)
        except Exception as e:
            logger.warning(f"Metrics collection failed, using defaults: {e}")
            return AggregatedMetrics.defaults()
