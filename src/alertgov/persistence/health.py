import threading
from collections import deque
from typing import Any, Deque, Dict


class PersistenceHealth:
    """Sliding-window circuit breaker over persistence outcomes.

    Trips (disables persistence) once the window holds ``min_samples`` or more
    outcomes with a failure ratio >= ``disable_ratio``. A trip opens a fresh
    recovery window; persistence re-enables when that window reaches
    ``min_samples`` with a failure ratio < ``enable_ratio``.
    """

    def __init__(
        self,
        window_size: int = 50,
        min_samples: int = 10,
        disable_ratio: float = 0.6,
        enable_ratio: float = 0.2,
    ):
        if window_size <= 0:
            raise ValueError("Window size must be positive")
        if min_samples <= 0 or min_samples > window_size:
            raise ValueError("Min samples must be within (0, window_size]")
        if not 0 <= enable_ratio < disable_ratio <= 1:
            raise ValueError("Ratios must satisfy 0 <= enable_ratio < disable_ratio <= 1")

        self.window_size = window_size
        self.min_samples = min_samples
        self.disable_ratio = disable_ratio
        self.enable_ratio = enable_ratio

        self._window: Deque[int] = deque(maxlen=window_size)
        self._recovery: Deque[int] = deque(maxlen=window_size)
        self._disabled = False
        self._trips = 0
        self._lock = threading.Lock()

    @property
    def disabled(self) -> bool:
        with self._lock:
            return self._disabled

    @property
    def failure_ratio(self) -> float:
        with self._lock:
            return self._ratio(self._window)

    @staticmethod
    def _ratio(window: Deque[int]) -> float:
        return sum(window) / len(window) if window else 0.0

    def record(self, ok: bool) -> bool:
        """Push one outcome; returns True when the disabled flag flipped"""
        sample = 0 if ok else 1
        with self._lock:
            self._window.append(sample)
            if not self._disabled:
                if len(self._window) >= self.min_samples and self._ratio(self._window) >= self.disable_ratio:
                    self._disabled = True
                    self._trips += 1
                    self._recovery.clear()
                    return True
                return False
            self._recovery.append(sample)
            if len(self._recovery) >= self.min_samples and self._ratio(self._recovery) < self.enable_ratio:
                self._disabled = False
                # stale pre-trip failures must not re-trip immediately
                self._window = deque(self._recovery, maxlen=self.window_size)
                self._recovery.clear()
                return True
            return False

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "size": len(self._window),
                "failures": sum(self._window),
                "failure_ratio": round(self._ratio(self._window), 4),
                "disabled": self._disabled,
                "recovery_size": len(self._recovery),
                "recovery_failures": sum(self._recovery),
                "trips": self._trips,
            }

    def reset(self) -> None:
        with self._lock:
            self._window.clear()
            self._recovery.clear()
            self._disabled = False
