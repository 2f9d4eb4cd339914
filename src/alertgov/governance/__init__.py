from alertgov.governance.rules import GovernanceRuleEngine, RuleAlert  # noqa: F401
from alertgov.governance.snapshots import WeightSnapshotStore  # noqa: F401
from alertgov.governance.trends import StrategyTrend, compute_trends  # noqa: F401
