from alertgov.policy.engine import AutoPolicyEngine, Decision, PolicyDomain, PolicyMetrics  # noqa: F401
from alertgov.policy.integration import AutoPolicyIntegration  # noqa: F401
