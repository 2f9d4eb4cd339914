from alertgov.suppression.state_machine import (  # noqa: F401
    ACTIVE,
    SUPPRESSED,
    AlertGroup,
    GroupEvaluation,
    GroupSignals,
    SuppressionStateMachine,
    Transition,
    compute_noise_score,
)
