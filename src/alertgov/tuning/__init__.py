from alertgov.tuning.controller import (  # noqa: F401
    AdaptiveWeightController,
    AdjustmentResult,
    ControllerState,
)
