from alertgov.alerts.acks import AckLedger, AckResult  # noqa: F401
from alertgov.alerts.store import AlertInput, AlertStore, PersistOutcome  # noqa: F401
