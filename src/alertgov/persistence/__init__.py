from alertgov.persistence.health import PersistenceHealth  # noqa: F401
from alertgov.persistence.service import (  # noqa: F401
    AdaptivePersistenceService,
    PersistenceResult,
    SaveWeightsInput,
)
