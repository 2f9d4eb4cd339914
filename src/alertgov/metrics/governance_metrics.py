"""
Prometheus metrics for the governance engine
"""
import time
from functools import wraps

from prometheus_client import Counter, Gauge, Histogram

# Counters
alerts_ingested_total = Counter(
    "alertgov_alerts_ingested_total",
    "Governance alerts accepted by the alert store",
    ["severity", "outcome"]  # outcome: stored|collapsed
)

alerts_observed_total = Counter(
    "alertgov_alerts_observed_total",
    "Alerts routed through the suppression state machine",
    ["decision"]  # surface|suppress
)

acks_total = Counter(
    "alertgov_acks_total",
    "Acknowledgement ledger operations",
    ["operation", "changed"]
)

suppression_transitions_total = Counter(
    "alertgov_suppression_transitions_total",
    "Suppression group state transitions",
    ["to_state"]
)

runner_cycles_total = Counter(
    "alertgov_runner_cycles_total",
    "Adaptive runner cycles by controller reason",
    ["reason"]
)

runner_skipped_ticks_total = Counter(
    "alertgov_runner_skipped_ticks_total",
    "Ticks skipped because a cycle was still running"
)

persistence_outcomes_total = Counter(
    "alertgov_persistence_outcomes_total",
    "Persistence attempts by kind and outcome",
    ["kind", "outcome"]  # outcome: ok|failed|skipped|disabled
)

policy_decisions_total = Counter(
    "alertgov_policy_decisions_total",
    "Auto-policy decisions by domain and outcome",
    ["domain", "outcome"]  # proposed|applied|rejected|succeeded|failed
)

# Gauges
suppressed_groups = Gauge(
    "alertgov_suppressed_groups",
    "Number of suppression groups currently SUPPRESSED"
)

active_groups = Gauge(
    "alertgov_active_groups",
    "Number of suppression groups currently ACTIVE"
)

persistence_disabled = Gauge(
    "alertgov_persistence_disabled",
    "1 when the persistence circuit breaker has disabled saves"
)

persistence_failure_ratio = Gauge(
    "alertgov_persistence_failure_ratio",
    "Failure ratio over the persistence health window"
)

controller_freeze_active = Gauge(
    "alertgov_controller_freeze_active",
    "1 when the weight controller is frozen"
)

weight_value = Gauge(
    "alertgov_weight_value",
    "Current noise-score weight",
    ["weight"]
)

policy_success_rate = Gauge(
    "alertgov_policy_success_rate",
    "Running success rate of applied auto-policy decisions"
)

# Histograms
runner_cycle_duration = Histogram(
    "alertgov_runner_cycle_duration_seconds",
    "Adaptive runner cycle duration",
    buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0)
)

persistence_duration = Histogram(
    "alertgov_persistence_duration_seconds",
    "Persistence call duration",
    ["kind"],
    buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0)
)

governance_evaluation_duration = Histogram(
    "alertgov_governance_evaluation_duration_seconds",
    "Governance rule evaluation duration",
    buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0)
)

api_request_duration = Histogram(
    "alertgov_api_request_duration_seconds",
    "API request duration",
    ["endpoint", "method", "status"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5)
)


def observe_duration(histogram, **labels):
    """Decorator timing a synchronous call into a histogram"""
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            start_time = time.time()
            try:
                return func(*args, **kwargs)
            finally:
                target = histogram.labels(**labels) if labels else histogram
                target.observe(time.time() - start_time)
        return wrapper
    return decorator


def record_weights(weights: dict):
    for name, value in weights.items():
        weight_value.labels(weight=name).set(value)


def record_group_counts(active: int, suppressed: int):
    active_groups.set(active)
    suppressed_groups.set(suppressed)


def record_persistence_health(failure_ratio: float, disabled: bool):
    persistence_failure_ratio.set(failure_ratio)
    persistence_disabled.set(1 if disabled else 0)
