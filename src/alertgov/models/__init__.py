from alertgov.models.governance import (  # noqa: F401
    AlertAck,
    Base,
    GovernanceAlert,
    PersistenceAudit,
    StrategyWeightSnapshot,
    SuppressionStateLatest,
    WeightsHistory,
    WeightsLatest,
)
