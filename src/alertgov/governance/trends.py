"""
Trend analytics over strategy weight snapshots.

Per strategy, with samples ordered oldest to newest:

* simple_slope: (last - first) / (n - 1)
* lr_slope: least-squares slope of weight over sample index
* delta_weight / delta_spread: last value minus the mean of the three before it
* volatility_momentum: mean spread of the second half minus the first half
* smoothing_reduction_ratio: 1 - std(moving average) / std(raw)
* anomalies: points whose z-score against the preceding baseline window
  exceeds the threshold (absolute deviation > 0.05 when the baseline is flat)
"""
from __future__ import annotations

from collections import defaultdict
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional

import numpy as np

FLAT_BASELINE_DEVIATION = 0.05


@dataclass
class AnomalyPoint:
    index: int
    weight: float
    z_score: float
    captured_at: Optional[str] = None


@dataclass
class StrategyTrend:
    sample_count: int
    simple_slope: Optional[float] = None
    lr_slope: Optional[float] = None
    delta_weight: Optional[float] = None
    delta_spread: Optional[float] = None
    volatility_momentum: Optional[float] = None
    smoothing_reduction_ratio: Optional[float] = None
    anomalies: List[AnomalyPoint] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def lr_slope(values: np.ndarray) -> Optional[float]:
    if len(values) < 2:
        return None
    x = np.arange(len(values), dtype=float)
    denom = len(values) * np.sum(x * x) - np.sum(x) ** 2
    if denom == 0:
        return 0.0
    return float((len(values) * np.sum(x * values) - np.sum(x) * np.sum(values)) / denom)


def moving_average(values: np.ndarray, window: int) -> np.ndarray:
    """Trailing mean; the first window-1 points average what is available"""
    if window <= 1 or len(values) == 0:
        return values.copy()
    csum = np.cumsum(np.insert(values, 0, 0.0))
    idx = np.arange(1, len(values) + 1)
    start = np.maximum(0, idx - window)
    return (csum[idx] - csum[start]) / (idx - start)


def _delta_vs_recent(values: np.ndarray) -> float:
    n = len(values)
    if n < 2:
        return 0.0
    base = values[n - 4:n - 1] if n > 3 else values[:n - 1]
    return float(values[-1] - base.mean())


def _anomalies(weights: np.ndarray, stamps: List[Optional[str]], baseline_window: int, threshold: float) -> List[AnomalyPoint]:
    out = []
    for i in range(len(weights)):
        base = weights[max(0, i - baseline_window):i]
        if len(base) < 2:
            continue
        mean, sd = base.mean(), base.std()
        point = float(weights[i])
        if sd > 0:
            z = (point - mean) / sd
            if abs(z) > threshold:
                out.append(AnomalyPoint(i, point, round(float(z), 2), stamps[i]))
        elif abs(point - mean) > FLAT_BASELINE_DEVIATION:
            out.append(AnomalyPoint(i, point, 0.0, stamps[i]))
    return out


def strategy_trend(
    rows: List[Mapping[str, Any]],
    ma_window: int = 5,
    anomaly_threshold: float = 2.5,
    anomaly_baseline_window: Optional[int] = None,
) -> StrategyTrend:
    """Rows must be ordered oldest first"""
    n = len(rows)
    if n == 0:
        return StrategyTrend(sample_count=0)
    weights = np.array([float(r["weight"]) for r in rows])
    spreads = np.array([float(r["spread"]) if r.get("spread") is not None else 0.0 for r in rows])
    stamps = [r.get("captured_at") for r in rows]

    mid = n // 2 or 1
    first, second = spreads[:mid], spreads[mid:]
    momentum = (second.mean() if len(second) else 0.0) - (first.mean() if len(first) else 0.0)

    raw_std = weights.std()
    smooth_std = moving_average(weights, ma_window).std()
    slope = lr_slope(weights)
    return StrategyTrend(
        sample_count=n,
        simple_slope=round(float((weights[-1] - weights[0]) / (n - 1)) if n > 1 else 0.0, 6),
        lr_slope=round(slope, 6) if slope is not None else None,
        delta_weight=round(_delta_vs_recent(weights), 6),
        delta_spread=round(_delta_vs_recent(spreads), 6),
        volatility_momentum=round(float(momentum), 6),
        smoothing_reduction_ratio=round(float(1 - smooth_std / raw_std) if raw_std > 0 else 0.0, 6),
        anomalies=_anomalies(
            weights,
            stamps,
            ma_window if anomaly_baseline_window is None else anomaly_baseline_window,
            anomaly_threshold,
        ),
    )


def compute_trends(
    snapshots: Iterable[Mapping[str, Any]],
    ma_window: int = 5,
    anomaly_threshold: float = 2.5,
    anomaly_baseline_window: Optional[int] = None,
) -> Dict[str, StrategyTrend]:
    """Group newest-first snapshots by strategy and compute a trend for each"""
    by_strategy: Dict[str, List[Mapping[str, Any]]] = defaultdict(list)
    for s in snapshots:
        by_strategy[s["strategy"]].append(s)
    return {
        strategy: strategy_trend(list(reversed(rows)), ma_window, anomaly_threshold, anomaly_baseline_window)
        for strategy, rows in by_strategy.items()
    }
