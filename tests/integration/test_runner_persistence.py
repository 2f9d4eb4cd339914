"""
Adaptive runner against a real (in-memory sqlite) persistence layer
"""
from __future__ import annotations

import asyncio

import pytest

from alertgov.config import RunnerConfig
from alertgov.db import Database
from alertgov.persistence.service import AdaptivePersistenceService, PersistenceResult
from alertgov.providers import StaticMetricsProvider
from alertgov.runner import AdaptiveRunner
from alertgov.suppression.state_machine import SUPPRESSED, SuppressionStateMachine
from alertgov.tuning.controller import AdaptiveWeightController
from alertgov.types import AggregatedMetrics, MetricsProvider, ReasonCode

pytestmark = [pytest.mark.asyncio, pytest.mark.integration]


def _runner(database, provider, warmup=2, **runner_kw) -> AdaptiveRunner:
    config = RunnerConfig(warmup_cycles=warmup, **runner_kw)
    return AdaptiveRunner(
        AdaptiveWeightController(warmup_cycles=warmup),
        SuppressionStateMachine(),
        provider,
        AdaptivePersistenceService(database),
        config,
    )


async def _cycles(runner: AdaptiveRunner, n: int):
    out = []
    for _ in range(n):
        out.append(await runner.run_once())
        await runner.drain()
    return out


async def test_stable_metrics_are_debounced(database, on_target_metrics):
    runner = _runner(database, StaticMetricsProvider(on_target_metrics))
    results = await _cycles(runner, 15)

    reasons = [r.reason for r in results]
    assert reasons[:2] == [ReasonCode.WARMUP, ReasonCode.WARMUP]
    assert reasons[2:7] == [ReasonCode.COOLDOWN] * 5
    assert reasons[7] == ReasonCode.FREEZE

    rows = runner.persistence.list_weights_history(limit=100).rows
    assert 1 <= len(rows) < 15
    # cycle 7 debounce save, cycle 8 freeze entry, cycle 13 debounced freeze
    assert sorted(r["cycle"] for r in rows) == [7, 8, 13]
    assert not runner.health.disabled


async def test_adjustments_are_saved_every_time(database):
    noisy = AggregatedMetrics(0.4, 0.7, 0.10, 0.15, 0.20)
    runner = _runner(database, StaticMetricsProvider(noisy), warmup=0)
    results = await _cycles(runner, 4)
    adjusted = [r.cycle for r in results if r.adjusted]
    saved = {r["cycle"] for r in runner.persistence.list_weights_history().rows if r["reason"] == "applied"}
    assert adjusted and set(adjusted) == saved


async def test_crash_recovery_restores_weights_and_groups(database):
    noisy = AggregatedMetrics(0.4, 0.7, 0.10, 0.15, 0.20)
    first = _runner(database, StaticMetricsProvider(noisy), warmup=0)
    for i in range(3):
        first.suppression.apply_score(f"grp-{i}", 0.95, volume=20)
    await _cycles(first, 1)
    assert first.last_result.adjusted
    weights_before = first.suppression.weights

    # simulated restart: new components over the same database
    second = _runner(database, StaticMetricsProvider(noisy), warmup=0)
    await second.hydrate()
    assert second.hydrated
    assert second.suppression.weights.as_tuple() == pytest.approx(weights_before.as_tuple())
    assert second.controller.state.cycle == 1
    assert second.suppression.get_suppression_state("grp-0")["state"] == SUPPRESSED
    assert second.suppression.group_count() == 3


async def test_hydrate_without_db_is_cold_start(on_target_metrics):
    runner = _runner(Database(None), StaticMetricsProvider(on_target_metrics))
    results = await _cycles(runner, 3)
    assert runner.hydrated
    assert [r.reason for r in results][:2] == [ReasonCode.WARMUP] * 2
    assert runner.get_status()["persistence_available"] is False
    assert not runner.health.disabled


class _FailingPersistence(AdaptivePersistenceService):
    def __init__(self, database):
        super().__init__(database)
        self.failing = True

    def save_weights(self, data):
        if self.failing:
            return PersistenceResult(ok=False, error="disk full")
        return super().save_weights(data)

    def ping(self):
        if self.failing:
            return PersistenceResult(ok=False, error="disk full")
        return super().ping()


async def test_breaker_disables_and_recovers(database):
    noisy = AggregatedMetrics(0.3, 0.2, 0.4, 0.5, 0.6)
    persistence = _FailingPersistence(database)
    runner = AdaptiveRunner(
        AdaptiveWeightController(),
        SuppressionStateMachine(),
        StaticMetricsProvider(noisy),
        persistence,
        RunnerConfig(warmup_cycles=0),
    )
    for _ in range(10):
        runner.record_persistence_outcome(False, kind="weights")
    assert runner.health.disabled

    # while disabled every cycle pings instead of saving
    await _cycles(runner, 3)
    assert runner.persistence.list_weights_history().empty

    persistence.failing = False
    # the recovery window still holds the three failed pings
    await _cycles(runner, 15)
    assert not runner.health.disabled
    assert runner.get_persistence_window()["trips"] == 1


class _SlowProvider(MetricsProvider):
    def __init__(self, metrics):
        self.metrics = metrics
        self.release = asyncio.Event()

    async def collect_aggregated(self):
        await self.release.wait()
        return self.metrics


async def test_overlapping_cycle_is_skipped(database, on_target_metrics):
    provider = _SlowProvider(on_target_metrics)
    runner = _runner(database, provider)
    first = asyncio.create_task(runner.run_once())
    await asyncio.sleep(0)
    assert await runner.run_once() is None
    provider.release.set()
    assert (await first).reason == ReasonCode.WARMUP
    assert runner.cycle == 1


async def test_provider_timeout_uses_defaults(database, on_target_metrics):
    runner = _runner(database, _SlowProvider(on_target_metrics), warmup=0, metrics_timeout_s=0.05)
    result = await runner.run_once()
    await runner.drain()
    assert result is not None
    assert runner.get_logs(1)[0]["metrics"]["degraded"] is True


async def test_start_and_stop_loop(database, on_target_metrics):
    runner = _runner(database, StaticMetricsProvider(on_target_metrics), interval_ms=10)
    await runner.start()
    assert runner.running
    await asyncio.sleep(0.1)
    await runner.stop()
    assert not runner.running
    assert runner.cycle >= 1
