"""
Shared value types: weight vector, reason codes, aggregated metrics and
the metrics provider interface consumed by the runner.
"""
from __future__ import annotations

import math
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, Mapping, Optional

from alertgov.errors import InvalidWeightsError

WEIGHT_TOLERANCE = 1e-6
WEIGHT_KEYS = ("w1", "w2", "w3", "w4", "w5")


@dataclass(frozen=True)
class WeightVector:
    """Noise-score weights.

    w1 weighs (1 - ackRate), w2 the suspected-false rate, w3 normalized volume,
    w4 (1 - dedupRatio) and w5 escalation ineffectiveness.
    """

    w1: float
    w2: float
    w3: float
    w4: float
    w5: float

    @property
    def total(self) -> float:
        return self.w1 + self.w2 + self.w3 + self.w4 + self.w5

    def as_tuple(self) -> tuple[float, float, float, float, float]:
        return (self.w1, self.w2, self.w3, self.w4, self.w5)

    def as_dict(self) -> Dict[str, float]:
        return dict(zip(WEIGHT_KEYS, self.as_tuple()))

    def is_normalized(self, tol: float = WEIGHT_TOLERANCE) -> bool:
        return all(v >= 0 for v in self.as_tuple()) and abs(self.total - 1.0) <= tol

    @classmethod
    def normalize(cls, values: Iterable[float], floor: float = 0.0, ceil: Optional[float] = None) -> "WeightVector":
        """Clamp each value into [floor, ceil] and rescale so the vector sums to 1.

        Raises InvalidWeightsError when a value is not finite or nothing is
        left to distribute after clamping.
        """
        vals = [float(v) for v in values]
        if len(vals) != 5:
            raise InvalidWeightsError(f"expected 5 weights, got {len(vals)}")
        if any(not math.isfinite(v) for v in vals):
            raise InvalidWeightsError(f"non-finite weight in {vals}")
        clamped = [max(floor, v) for v in vals]
        if ceil is not None:
            clamped = [min(ceil, v) for v in clamped]
        s = sum(clamped)
        if s <= 0:
            raise InvalidWeightsError("weights sum to zero")
        return cls(*(v / s for v in clamped))

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "WeightVector":
        return cls.normalize(data[k] for k in WEIGHT_KEYS)


DEFAULT_WEIGHTS = WeightVector(0.3, 0.25, 0.15, 0.15, 0.15)


class ReasonCode(str, Enum):
    """Why a tuning cycle ended the way it did"""

    APPLIED = "applied"
    COOLDOWN = "cooldown"
    FREEZE = "freeze"
    WARMUP = "warmup"


@dataclass
class Rationale:
    """A known reason code plus an open map of supporting values."""

    code: ReasonCode
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code.value, "extra": dict(self.extra)}

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> Optional["Rationale"]:
        if not data or "code" not in data:
            return None
        try:
            code = ReasonCode(data["code"])
        except ValueError:
            return None
        extra = data.get("extra") or {}
        return cls(code=code, extra=dict(extra) if isinstance(extra, Mapping) else {})


def _clamp01(value: Any, default: float) -> float:
    try:
        v = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(v):
        return default
    return min(1.0, max(0.0, v))


@dataclass
class AggregatedMetrics:
    ack_rate: float
    escalation_effectiveness: float
    false_suppression_rate: float
    suspected_false_rate: float
    re_noise_rate: float
    degraded: bool = False

    @classmethod
    def defaults(cls) -> "AggregatedMetrics":
        """Fallback values used whenever live collection is unavailable"""
        return cls(
            ack_rate=0.7,
            escalation_effectiveness=0.5,
            false_suppression_rate=0.08,
            suspected_false_rate=0.12,
            re_noise_rate=0.0,
            degraded=True,
        )

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "AggregatedMetrics":
        base = cls.defaults()
        return cls(
            ack_rate=_clamp01(data.get("ack_rate"), base.ack_rate),
            escalation_effectiveness=_clamp01(data.get("escalation_effectiveness"), base.escalation_effectiveness),
            false_suppression_rate=_clamp01(data.get("false_suppression_rate"), base.false_suppression_rate),
            suspected_false_rate=_clamp01(data.get("suspected_false_rate"), base.suspected_false_rate),
            re_noise_rate=_clamp01(data.get("re_noise_rate"), base.re_noise_rate),
            degraded=bool(data.get("degraded", False)),
        )

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


class MetricsProvider(ABC):
    """Source of aggregated operational metrics for the tuning loop"""

    @abstractmethod
    async def collect_aggregated(self) -> AggregatedMetrics:
        ...
