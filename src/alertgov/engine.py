"""
Explicit wiring of the governance components.

Every component receives its collaborators through its constructor; this
module is the only place that knows the whole graph.
"""
from __future__ import annotations

import functools
import logging
from dataclasses import dataclass
from typing import Optional

from alertgov.alerts.acks import AckLedger
from alertgov.alerts.store import AlertStore
from alertgov.config import Settings, load_settings
from alertgov.db import Database
from alertgov.governance.rules import GovernanceRuleEngine
from alertgov.governance.snapshots import WeightSnapshotStore
from alertgov.persistence.service import AdaptivePersistenceService
from alertgov.policy.engine import AutoPolicyEngine
from alertgov.policy.integration import AutoPolicyIntegration
from alertgov.providers import LedgerMetricsProvider
from alertgov.runner import AdaptiveRunner
from alertgov.suppression.state_machine import SuppressionStateMachine
from alertgov.tuning.controller import AdaptiveWeightController
from alertgov.types import DEFAULT_WEIGHTS, MetricsProvider

logger = logging.getLogger(__name__)

MEMORY_URL = "sqlite:///:memory:"


@dataclass
class GovernanceEngine:
    settings: Settings
    database: Database
    alert_database: Database
    suppression: SuppressionStateMachine
    controller: AdaptiveWeightController
    persistence: AdaptivePersistenceService
    alert_store: AlertStore
    ledger: AckLedger
    snapshots: WeightSnapshotStore
    governance: GovernanceRuleEngine
    runner: AdaptiveRunner
    policy: AutoPolicyIntegration

    async def start(self, with_policy: bool = True) -> None:
        await self.runner.start()
        if with_policy and self.settings.policy.enabled:
            await self.policy.start()

    async def stop(self) -> None:
        await self.policy.stop()
        await self.runner.stop()

    def close(self) -> None:
        self.database.dispose()
        if self.alert_database is not self.database:
            self.alert_database.dispose()


def build_engine(settings: Optional[Settings] = None, provider: Optional[MetricsProvider] = None) -> GovernanceEngine:
    """Build the component graph.

    Alerts, acks and snapshots need SQL even without a durable store, so they
    fall back to an in-memory SQLite database; adaptive persistence keeps
    reporting NO_DB in that case.
    """
    settings = settings or load_settings()
    database = Database(settings.database.url, echo=settings.database.echo)
    database.init_db()
    if database.is_configured:
        alert_database = database
    else:
        alert_database = Database(MEMORY_URL)
        alert_database.init_db()

    suppression = SuppressionStateMachine(settings.suppression, DEFAULT_WEIGHTS)
    controller = AdaptiveWeightController(
        settings.tuning,
        initial=DEFAULT_WEIGHTS,
        warmup_cycles=settings.runner.warmup_cycles,
        log_limit=settings.runner.log_limit,
    )
    persistence = AdaptivePersistenceService(database, version=settings.runner.persistence.version)
    alert_store = AlertStore(alert_database, settings.alert_store, suppression=suppression)
    ledger = AckLedger(alert_database, settings.acks)
    snapshots = WeightSnapshotStore(alert_database)
    governance = GovernanceRuleEngine(snapshots, alert_store, settings.governance)
    runner = AdaptiveRunner(
        controller,
        suppression,
        provider or LedgerMetricsProvider(ledger, suppression),
        persistence,
        settings.runner,
        group_signals=functools.partial(ledger.group_signals, window_ms=settings.suppression.signal_window_ms),
    )
    policy = AutoPolicyIntegration(
        AutoPolicyEngine(settings.policy),
        runner=runner,
        suppression=suppression,
        ledger=ledger,
        alert_store=alert_store,
    )
    logger.info(f"Governance engine built (durable store: {database.is_configured})")
    return GovernanceEngine(
        settings=settings,
        database=database,
        alert_database=alert_database,
        suppression=suppression,
        controller=controller,
        persistence=persistence,
        alert_store=alert_store,
        ledger=ledger,
        snapshots=snapshots,
        governance=governance,
        runner=runner,
        policy=policy,
    )
