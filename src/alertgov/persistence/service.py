"""Durable storage for adaptive weights and suppression snapshots.

Every public method returns a ``PersistenceResult`` and never raises. With no
database configured each call reports ``skipped=True, reason="NO_DB"``.
Each attempted save or load writes one ``governance_persistence_audit`` row,
success or not.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import text

from alertgov.db import Database, coerce_datetime
from alertgov.metrics import governance_metrics as gm
from alertgov.models.governance import PersistenceAudit, SuppressionStateLatest, WeightsHistory, WeightsLatest
from alertgov.types import WeightVector

logger = logging.getLogger(__name__)

NO_DB = "NO_DB"
EMPTY_BATCH = "EMPTY_BATCH"


@dataclass
class PersistenceResult:
    ok: bool
    skipped: bool = False
    empty: bool = False
    reason: Optional[str] = None
    error: Optional[str] = None
    row: Optional[Dict[str, Any]] = None
    rows: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def no_db(cls) -> "PersistenceResult":
        return cls(ok=False, skipped=True, reason=NO_DB)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "skipped": self.skipped,
            "empty": self.empty,
            "reason": self.reason,
            "error": self.error,
            "count": len(self.rows) if self.rows else (1 if self.row else 0),
        }


@dataclass
class SaveWeightsInput:
    weights: WeightVector
    reason: str  # applied|cooldown|freeze
    version: Optional[str] = None
    cycle: Optional[int] = None
    last_adjustment_cycle: Optional[int] = None
    freeze_active: bool = False
    freeze_since_cycle: Optional[int] = None
    consecutive_zero_error_cycles: Optional[int] = None
    metrics_snapshot: Optional[Dict[str, Any]] = None
    meta: Optional[Dict[str, Any]] = None


def row_to_dict(obj: Any) -> Dict[str, Any]:
    return {c.name: getattr(obj, c.name) for c in obj.__table__.columns}


class AdaptivePersistenceService:
    def __init__(self, database: Optional[Database], version: str = "v1"):
        self.database = database
        self.version = version

    @property
    def available(self) -> bool:
        return self.database is not None and self.database.is_configured

    def _audit(
        self,
        action: str,
        entity: str,
        started: float,
        success: bool,
        version: Optional[str] = None,
        count: int = 0,
        error: Optional[str] = None,
    ) -> None:
        duration = time.perf_counter() - started
        gm.persistence_duration.labels(kind=entity).observe(duration)
        try:
            with self.database.session() as db:
                db.add(PersistenceAudit(
                    action=action,
                    entity=entity,
                    version=version,
                    count=count,
                    duration_ms=int(duration * 1000),
                    success=success,
                    error=error,
                ))
        except Exception as e:
            logger.error(f"Failed to write persistence audit row for {action}: {e}")

    # ------------------------------------------------------------------ weights

    def save_weights(self, data: SaveWeightsInput) -> PersistenceResult:
        if not self.available:
            return PersistenceResult.no_db()
        started = time.perf_counter()
        version = data.version or self.version
        w = data.weights.as_dict()
        try:
            with self.database.session() as db:
                db.query(WeightsLatest).filter(WeightsLatest.version == version).delete()
                db.add(WeightsLatest(
                    version=version,
                    **w,
                    freeze_active=bool(data.freeze_active),
                    freeze_since_cycle=data.freeze_since_cycle,
                    last_adjustment_cycle=data.last_adjustment_cycle,
                    cycle=data.cycle,
                    consecutive_zero_error_cycles=data.consecutive_zero_error_cycles,
                    metrics_snapshot=data.metrics_snapshot,
                ))
                db.add(WeightsHistory(
                    version=version,
                    **w,
                    reason=data.reason,
                    cycle=data.cycle,
                    last_adjustment_cycle=data.last_adjustment_cycle,
                    freeze_active=bool(data.freeze_active),
                    meta=data.meta,
                    metrics_snapshot=data.metrics_snapshot,
                ))
        except Exception as e:
            logger.error(f"save_weights failed: {e}")
            self._audit("SAVE_WEIGHTS", "weights", started, False, version=version, count=1, error=str(e))
            return PersistenceResult(ok=False, error=str(e))
        self._audit("SAVE_WEIGHTS", "weights", started, True, version=version, count=1)
        return PersistenceResult(ok=True)

    def load_weights(self, version: Optional[str] = None) -> PersistenceResult:
        if not self.available:
            return PersistenceResult.no_db()
        started = time.perf_counter()
        version = version or self.version
        try:
            with self.database.session() as db:
                obj = db.query(WeightsLatest).filter(WeightsLatest.version == version).first()
                row = row_to_dict(obj) if obj else None
        except Exception as e:
            logger.error(f"load_weights failed: {e}")
            self._audit("LOAD_WEIGHTS", "weights", started, False, version=version, error=str(e))
            return PersistenceResult(ok=False, error=str(e))
        self._audit("LOAD_WEIGHTS", "weights", started, True, version=version, count=1 if row else 0)
        if row is None:
            return PersistenceResult(ok=True, empty=True)
        return PersistenceResult(ok=True, row=row)

    def list_weights_history(self, limit: int = 50, version: Optional[str] = None) -> PersistenceResult:
        if not self.available:
            return PersistenceResult.no_db()
        limit = max(1, min(limit, 1000))
        try:
            with self.database.session() as db:
                q = db.query(WeightsHistory)
                if version:
                    q = q.filter(WeightsHistory.version == version)
                rows = [row_to_dict(r) for r in q.order_by(WeightsHistory.id.desc()).limit(limit).all()]
        except Exception as e:
            logger.error(f"list_weights_history failed: {e}")
            return PersistenceResult(ok=False, error=str(e))
        return PersistenceResult(ok=True, rows=rows, empty=not rows)

    # -------------------------------------------------------------- suppression

    def save_suppression_states(self, snapshots: Iterable[Dict[str, Any]]) -> PersistenceResult:
        if not self.available:
            return PersistenceResult.no_db()
        batch = [s for s in (snapshots or []) if s and s.get("dedup_group")]
        if not batch:
            return PersistenceResult(ok=True, skipped=True, reason=EMPTY_BATCH)
        started = time.perf_counter()
        groups = [s["dedup_group"] for s in batch]
        try:
            with self.database.session() as db:
                db.query(SuppressionStateLatest).filter(
                    SuppressionStateLatest.dedup_group.in_(groups)
                ).delete(synchronize_session=False)
                for s in batch:
                    scope = s.get("severity_scope")
                    db.add(SuppressionStateLatest(
                        dedup_group=s["dedup_group"],
                        state=s.get("state") or "ACTIVE",
                        noise_score=s.get("noise_score"),
                        noise_score_enter=s.get("noise_score_enter"),
                        noise_score_exit=s.get("noise_score_exit"),
                        suppressed_count=s.get("suppressed_count"),
                        last_volume=s.get("last_volume"),
                        severity_scope=sorted(scope) if isinstance(scope, (set, list, tuple)) else scope,
                        strategy=s.get("strategy"),
                        last_state_change_at=coerce_datetime(s.get("last_state_change_at")),
                        last_suppression_start=coerce_datetime(s.get("last_suppression_start")),
                        consecutive_stable=s.get("consecutive_stable"),
                        dynamic_thresholds=s.get("dynamic_thresholds"),
                        robust_high_streak=s.get("robust_high_streak"),
                    ))
        except Exception as e:
            logger.error(f"save_suppression_states failed: {e}")
            self._audit("SAVE_SUPPRESSION", "suppression", started, False, error=str(e))
            return PersistenceResult(ok=False, error=str(e))
        self._audit("SAVE_SUPPRESSION", "suppression", started, True, count=len(batch))
        return PersistenceResult(ok=True)

    def load_suppression_states(self, limit: int = 500) -> PersistenceResult:
        if not self.available:
            return PersistenceResult.no_db()
        started = time.perf_counter()
        try:
            with self.database.session() as db:
                rows = [row_to_dict(r) for r in db.query(SuppressionStateLatest).limit(max(1, limit)).all()]
        except Exception as e:
            logger.error(f"load_suppression_states failed: {e}")
            self._audit("LOAD_SUPPRESSION", "suppression", started, False, error=str(e))
            return PersistenceResult(ok=False, error=str(e))
        self._audit("LOAD_SUPPRESSION", "suppression", started, True, count=len(rows))
        return PersistenceResult(ok=True, rows=rows, empty=not rows)

    # -------------------------------------------------------------------- misc

    def list_audit(self, limit: int = 100, action: Optional[str] = None) -> PersistenceResult:
        if not self.available:
            return PersistenceResult.no_db()
        limit = max(1, min(limit, 1000))
        try:
            with self.database.session() as db:
                q = db.query(PersistenceAudit)
                if action:
                    q = q.filter(PersistenceAudit.action == action)
                rows = [row_to_dict(r) for r in q.order_by(PersistenceAudit.id.desc()).limit(limit).all()]
        except Exception as e:
            logger.error(f"list_audit failed: {e}")
            return PersistenceResult(ok=False, error=str(e))
        return PersistenceResult(ok=True, rows=rows, empty=not rows)

    def ping(self) -> PersistenceResult:
        """Cheap liveness check used while saves are disabled"""
        if not self.available:
            return PersistenceResult.no_db()
        try:
            with self.database.session() as db:
                db.execute(text("SELECT 1"))
        except Exception as e:
            return PersistenceResult(ok=False, error=str(e))
        return PersistenceResult(ok=True)
