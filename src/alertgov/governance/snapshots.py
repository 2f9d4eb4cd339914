"""
Strategy weight snapshots, the time series behind trend analytics
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from alertgov.db import Database, coerce_datetime, utcnow
from alertgov.models.governance import StrategyWeightSnapshot

logger = logging.getLogger(__name__)


def serialize_snapshot(row: StrategyWeightSnapshot) -> Dict[str, Any]:
    return {
        "id": row.id,
        "strategy": row.strategy,
        "weight": row.weight,
        "spread": row.spread,
        "version": row.version,
        "meta": row.meta,
        "captured_at": row.captured_at.isoformat(),
    }


class WeightSnapshotStore:
    def __init__(self, database: Database):
        self.database = database

    def record(
        self,
        strategy: str,
        weight: float,
        spread: Optional[float] = None,
        captured_at: Optional[datetime] = None,
        version: Optional[str] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> int:
        with self.database.session() as db:
            row = StrategyWeightSnapshot(
                strategy=strategy,
                weight=float(weight),
                spread=None if spread is None else float(spread),
                version=version,
                meta=meta,
                captured_at=coerce_datetime(captured_at) or utcnow(),
            )
            db.add(row)
            db.flush()
            return row.id

    def record_many(self, weights: Dict[str, float], spreads: Optional[Dict[str, float]] = None, **kwargs) -> int:
        spreads = spreads or {}
        for strategy, weight in weights.items():
            self.record(strategy, weight, spreads.get(strategy), **kwargs)
        return len(weights)

    def list(self, strategy: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        """Newest first"""
        with self.database.session() as db:
            q = db.query(StrategyWeightSnapshot)
            if strategy:
                q = q.filter(StrategyWeightSnapshot.strategy == strategy)
            rows = (
                q.order_by(StrategyWeightSnapshot.captured_at.desc(), StrategyWeightSnapshot.id.desc())
                .limit(max(1, int(limit)))
                .all()
            )
            return [serialize_snapshot(r) for r in rows]

    def purge_older_than(self, days: int = 30, now: Optional[datetime] = None) -> int:
        cutoff = (now or utcnow()) - timedelta(days=days)
        with self.database.session() as db:
            removed = (
                db.query(StrategyWeightSnapshot)
                .filter(StrategyWeightSnapshot.captured_at < cutoff)
                .delete(synchronize_session=False)
            )
        if removed:
            logger.info(f"Purged {removed} weight snapshots older than {days} days")
        return removed
