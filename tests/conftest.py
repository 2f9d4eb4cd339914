import os
import sys

import pytest

# Also add the inner `src` directory to support imports like `import alertgov`
ROOT = os.path.dirname(os.path.dirname(__file__))
SRC = os.path.join(ROOT, "src")
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from alertgov.config import Settings, TuningTargets  # noqa: E402
from alertgov.db import Database  # noqa: E402
from alertgov.types import AggregatedMetrics  # noqa: E402

MEMORY_URL = "sqlite:///:memory:"


@pytest.fixture
def database():
    db = Database(MEMORY_URL)
    db.init_db()
    yield db
    db.dispose()


@pytest.fixture
def settings():
    s = Settings()
    s.database.url = MEMORY_URL
    s.runner.interval_ms = 50
    s.runner.persistence.timeout_s = 2.0
    return s.validate()


@pytest.fixture
def on_target_metrics():
    t = TuningTargets()
    return AggregatedMetrics(
        ack_rate=t.ack_rate,
        escalation_effectiveness=t.escalation_effectiveness,
        false_suppression_rate=t.false_suppression_rate,
        suspected_false_rate=t.suspected_false_rate,
        re_noise_rate=t.re_noise_rate,
    )
