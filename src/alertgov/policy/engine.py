"""
Auto-policy engine: slower meta-control loop over the adaptive subsystems.

Analysis turns a metrics history into candidate decisions, one per domain
whose trigger fires. A decision is applied only after it clears the safety
validator and its domain cooldown. Once the measurement window has elapsed,
the outcome is scored by whether the triggering metric moved the right way.
The running success rate feeds back into confidence.
"""
from __future__ import annotations

import logging
import uuid
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Sequence, Tuple

import numpy as np

from alertgov.config import PolicyConfig
from alertgov.db import utcnow
from alertgov.metrics import governance_metrics as gm

logger = logging.getLogger(__name__)


class PolicyDomain(str, Enum):
    WEIGHT_NUDGING = "weight_nudging"
    THRESHOLD_ADAPTATION = "threshold_adaptation"
    SUPPRESSION_TUNING = "suppression_tuning"
    PERSISTENCE_POLICY = "persistence_policy"


@dataclass
class PolicyMetrics:
    re_noise_rate: float = 0.0
    failure_ratio: float = 0.0
    escalation_effectiveness: float = 0.8
    suppression_accuracy: float = 0.9
    system_stability: float = 1.0
    alert_volume: int = 0
    false_positive_rate: float = 0.0
    mean_time_to_ack_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class DomainPolicy:
    metric: str
    threshold: float
    higher_is_better: bool
    max_adjustment: float
    cooldown_ms: int
    min_confidence: float


DEFAULT_DOMAINS: Dict[PolicyDomain, DomainPolicy] = {
    PolicyDomain.WEIGHT_NUDGING: DomainPolicy("re_noise_rate", 0.3, False, 0.2, 45 * 60_000, 0.4),
    PolicyDomain.THRESHOLD_ADAPTATION: DomainPolicy("escalation_effectiveness", 0.75, True, 0.25, 60 * 60_000, 0.6),
    PolicyDomain.SUPPRESSION_TUNING: DomainPolicy("false_positive_rate", 0.05, False, 0.15, 30 * 60_000, 0.6),
    PolicyDomain.PERSISTENCE_POLICY: DomainPolicy("failure_ratio", 0.2, False, 0.5, 20 * 60_000, 0.7),
}

ACTIONS = {
    PolicyDomain.WEIGHT_NUDGING: ("reduce_sensitivity", "Reduce noise rate by decreasing sensitivity"),
    PolicyDomain.THRESHOLD_ADAPTATION: ("adjust_thresholds", "Improve escalation effectiveness by adjusting thresholds"),
    PolicyDomain.SUPPRESSION_TUNING: ("reduce_suppression_aggressiveness", "Reduce false positives by tuning suppression"),
    PolicyDomain.PERSISTENCE_POLICY: ("increase_debounce_cooldown", "Improve persistence reliability by increasing debounce"),
}


@dataclass
class Decision:
    domain: PolicyDomain
    metric: str
    value: float
    threshold: float
    adjustment: float
    confidence: float
    action: str
    expected_impact: str
    risk_score: float = 0.0
    recommendations: List[str] = field(default_factory=list)
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    created_at: datetime = field(default_factory=utcnow)
    applied_at: Optional[datetime] = None
    baseline: Optional[float] = None
    outcome_evaluated_at: Optional[datetime] = None
    success: Optional[bool] = None
    impact: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out["domain"] = self.domain.value
        for key in ("created_at", "applied_at", "outcome_evaluated_at"):
            out[key] = out[key].isoformat() if out[key] else None
        return out


@dataclass
class PolicyAnalysis:
    decisions: List[Decision]
    patterns: Dict[str, Any]
    confidence: float
    risk_assessment: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "decisions": [d.to_dict() for d in self.decisions],
            "patterns": self.patterns,
            "confidence": round(self.confidence, 4),
            "risk_assessment": self.risk_assessment,
        }


def estimate_confidence(sample_size: int, variance: float, success_rate: float) -> float:
    """100+ samples give full sample confidence; low variance and a good track record add the rest"""
    sample_conf = min(sample_size / 100, 1.0)
    variance_conf = 1 / (1 + max(0.0, variance))
    return sample_conf * 0.4 + variance_conf * 0.3 + success_rate * 0.3


def recognize_patterns(history: Sequence[PolicyMetrics], window: int = 10) -> Dict[str, Any]:
    if len(history) < 3:
        return {"trend": "stable", "volatility": "low", "anomalies": []}
    recent = list(history)[-window:]
    rates = np.array([m.re_noise_rate for m in recent])
    half = len(rates) // 2
    early, late = rates[:half].mean(), rates[half:].mean()
    if late > early * 1.1:
        trend = "degrading"
    elif late < early * 0.9:
        trend = "improving"
    else:
        trend = "stable"
    variance = float(rates.var())
    volatility = "high" if variance > 0.1 else "medium" if variance > 0.05 else "low"

    latest = recent[-1]
    anomalies = []
    if latest.re_noise_rate > 0.3:
        anomalies.append("high_renoise_rate")
    if latest.failure_ratio > 0.3:
        anomalies.append("high_failure_ratio")
    if latest.escalation_effectiveness < 0.6:
        anomalies.append("low_escalation_effectiveness")
    return {"trend": trend, "volatility": volatility, "anomalies": anomalies}


def simulate_impact(decision: Decision, current: PolicyMetrics) -> Tuple[Dict[str, float], float, List[str]]:
    """Predicted metrics, risk score in [0, 1] and recommendations"""
    adj = decision.adjustment
    predicted = current.to_dict()
    if decision.domain == PolicyDomain.WEIGHT_NUDGING:
        predicted["re_noise_rate"] = max(0.0, current.re_noise_rate - adj * 0.2)
        risk = 0.7 if abs(adj) > 0.1 else 0.3
    elif decision.domain == PolicyDomain.THRESHOLD_ADAPTATION:
        predicted["escalation_effectiveness"] = min(1.0, max(0.0, current.escalation_effectiveness + adj * 0.1))
        risk = 0.8 if abs(adj) > 0.2 else 0.4
    elif decision.domain == PolicyDomain.SUPPRESSION_TUNING:
        predicted["false_positive_rate"] = max(0.0, current.false_positive_rate - adj * 0.15)
        risk = 0.6 if abs(adj) > 0.15 else 0.2
    else:
        predicted["failure_ratio"] = max(0.0, current.failure_ratio - adj * 0.1)
        risk = 0.5 if abs(adj) > 0.5 else 0.1
    recommendations = []
    if risk > 0.7:
        recommendations.append("consider_smaller_adjustment")
    if risk > 0.5:
        recommendations.append("monitor_closely_after_apply")
    return predicted, risk, recommendations


class PolicySafetyValidator:
    def __init__(self, config: PolicyConfig, domains: Dict[PolicyDomain, DomainPolicy]):
        self.config = config
        self.domains = domains

    def validate(self, decision: Decision) -> List[str]:
        """Reasons blocking the decision; empty when it may be applied"""
        if not self.config.enabled:
            return ["policy_disabled"]
        if self.config.human_override:
            return ["human_override_active"]
        reasons = []
        if decision.confidence < self.config.min_confidence:
            reasons.append("insufficient_confidence")
        if decision.risk_score > self.config.max_risk:
            reasons.append("risk_too_high")
        limit = self.domains[decision.domain].max_adjustment
        if decision.domain == PolicyDomain.WEIGHT_NUDGING:
            limit = min(limit, self.config.max_change)
        if abs(decision.adjustment) > limit:
            reasons.append("adjustment_too_large")
        return reasons


class AutoPolicyEngine:
    def __init__(self, config: Optional[PolicyConfig] = None, domains: Optional[Dict[PolicyDomain, DomainPolicy]] = None):
        self.config = config or PolicyConfig()
        self.domains = dict(domains or DEFAULT_DOMAINS)
        self.validator = PolicySafetyValidator(self.config, self.domains)
        self._history: Dict[PolicyDomain, Deque[Decision]] = {
            d: deque(maxlen=self.config.max_decisions_per_domain) for d in PolicyDomain
        }
        self._last_applied: Dict[PolicyDomain, datetime] = {}

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    def set_enabled(self, enabled: bool) -> None:
        self.config.enabled = bool(enabled)
        logger.info(f"Auto-policy engine {'enabled' if enabled else 'disabled'}")

    # ----------------------------------------------------------------- decide

    def _proposal(self, domain: PolicyDomain, current: PolicyMetrics) -> Optional[float]:
        policy = self.domains[domain]
        value = getattr(current, policy.metric)
        excess = (policy.threshold - value) if policy.higher_is_better else (value - policy.threshold)
        if excess <= 0:
            return None
        if domain == PolicyDomain.WEIGHT_NUDGING:
            return min(-0.1, -excess * 0.5)
        if domain == PolicyDomain.THRESHOLD_ADAPTATION:
            return min(0.2, excess * 0.8)
        if domain == PolicyDomain.SUPPRESSION_TUNING:
            return min(-0.15, -excess * 0.7)
        return min(0.5, excess * 2)

    def analyze_and_decide(self, current: PolicyMetrics, history: Sequence[PolicyMetrics]) -> PolicyAnalysis:
        if not self.enabled:
            return PolicyAnalysis([], {"trend": "stable", "volatility": "low", "anomalies": []}, 0.0, "disabled")
        patterns = recognize_patterns(history)
        variance = float(np.var([m.re_noise_rate for m in history])) if history else 0.0
        confidence = estimate_confidence(len(history), variance, self.success_rate())

        decisions = []
        for domain in PolicyDomain:
            policy = self.domains[domain]
            adjustment = self._proposal(domain, current)
            if adjustment is None or confidence <= policy.min_confidence:
                continue
            action, impact = ACTIONS[domain]
            decision = Decision(
                domain=domain,
                metric=policy.metric,
                value=getattr(current, policy.metric),
                threshold=policy.threshold,
                adjustment=round(adjustment, 6),
                confidence=confidence,
                action=action,
                expected_impact=impact,
            )
            _, decision.risk_score, decision.recommendations = simulate_impact(decision, current)
            decisions.append(decision)

        if not decisions:
            risk = "no_action"
        else:
            avg = sum(d.risk_score for d in decisions) / len(decisions)
            risk = "high_risk" if avg > 0.7 else "medium_risk" if avg > 0.4 else "low_risk"
        return PolicyAnalysis(decisions, patterns, confidence, risk)

    def apply_decision(self, decision: Decision, now: Optional[datetime] = None) -> Tuple[bool, List[str]]:
        """Gate a decision through safety checks and the domain cooldown.

        Approval records the decision with its baseline metric value; the
        caller is responsible for executing it.
        """
        now = now or utcnow()
        reasons = self.validator.validate(decision)
        if not reasons:
            last = self._last_applied.get(decision.domain)
            cooldown = timedelta(milliseconds=self.domains[decision.domain].cooldown_ms)
            if last is not None and now - last < cooldown:
                reasons = ["cooldown_active"]
        if reasons:
            gm.policy_decisions_total.labels(domain=decision.domain.value, outcome="rejected").inc()
            logger.info(f"Policy decision {decision.id} ({decision.domain.value}) not applied: {reasons}")
            return False, reasons
        decision.applied_at = now
        decision.baseline = decision.value
        self._history[decision.domain].append(decision)
        self._last_applied[decision.domain] = now
        gm.policy_decisions_total.labels(domain=decision.domain.value, outcome="applied").inc()
        logger.info(f"Applying policy decision {decision.id}: {decision.action} adjustment={decision.adjustment}")
        return True, []

    # ---------------------------------------------------------------- outcome

    def evaluate_outcomes(self, current: PolicyMetrics, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utcnow()
        window = timedelta(milliseconds=self.config.measurement_window_ms)
        evaluations = []
        for domain, decisions in self._history.items():
            policy = self.domains[domain]
            for d in decisions:
                if d.outcome_evaluated_at is not None or d.applied_at is None or now - d.applied_at < window:
                    continue
                value = getattr(current, policy.metric)
                delta = value - (d.baseline or 0.0)
                improved = delta > 0 if policy.higher_is_better else delta < 0
                on_target = value >= policy.threshold if policy.higher_is_better else value <= policy.threshold
                d.success = improved or on_target
                d.impact = {policy.metric: round(delta, 6)}
                d.outcome_evaluated_at = now
                gm.policy_decisions_total.labels(
                    domain=domain.value, outcome="succeeded" if d.success else "failed"
                ).inc()
                evaluations.append({
                    "decision_id": d.id,
                    "domain": domain.value,
                    "success": d.success,
                    "impact": d.impact,
                    "learning": f"{domain.value}_adjustment_effective" if d.success else f"{domain.value}_needs_different_approach",
                })
        rate = self.success_rate()
        gm.policy_success_rate.set(rate)
        return {"evaluations": evaluations, "success_rate": rate}

    def success_rate(self) -> float:
        """Share of evaluated decisions that succeeded; 0.5 before any evaluation"""
        scored = [d.success for decisions in self._history.values() for d in decisions if d.success is not None]
        if not scored:
            return 0.5
        return sum(1 for s in scored if s) / len(scored)

    def recent_decisions(self, limit: int = 20) -> List[Dict[str, Any]]:
        all_decisions = sorted(
            (d for decisions in self._history.values() for d in decisions),
            key=lambda d: d.applied_at or d.created_at,
        )
        return [d.to_dict() for d in all_decisions[-limit:]]

    def get_status(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "human_override": self.config.human_override,
            "cooldowns": {d.value: t.isoformat() for d, t in self._last_applied.items()},
            "decisions": sum(len(v) for v in self._history.values()),
            "success_rate": round(self.success_rate(), 4),
        }
