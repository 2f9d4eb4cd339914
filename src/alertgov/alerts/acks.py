"""
Acknowledgement ledger: idempotent ack/unack and ack-rate / MTTA metrics
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.exc import IntegrityError

from alertgov.config import AckConfig
from alertgov.db import Database, utcnow
from alertgov.errors import AlertNotFoundError
from alertgov.metrics import governance_metrics as gm
from alertgov.models.governance import AlertAck, GovernanceAlert
from alertgov.suppression.state_machine import GroupSignals

logger = logging.getLogger(__name__)


@dataclass
class AckResult:
    alert_id: int
    acknowledged_at: datetime
    actor: str
    already_acked: bool

    def to_dict(self) -> dict:
        return {
            "alert_id": self.alert_id,
            "acknowledged_at": self.acknowledged_at.isoformat(),
            "actor": self.actor,
            "already_acked": self.already_acked,
        }


def percentile(sorted_values: List[float], p: float) -> float:
    if not sorted_values:
        return 0.0
    idx = max(0, min(len(sorted_values) - 1, math.ceil(p * len(sorted_values)) - 1))
    return sorted_values[idx]


class AckLedger:
    def __init__(self, database: Database, config: Optional[AckConfig] = None):
        self.database = database
        self.config = config or AckConfig()

    def ack(self, alert_id: int, actor: str = "operator", note: Optional[str] = None, now: Optional[datetime] = None) -> AckResult:
        """Acknowledge an alert; acking twice keeps the first acknowledged_at"""
        now = now or utcnow()
        try:
            with self.database.session() as db:
                if db.get(GovernanceAlert, alert_id) is None:
                    raise AlertNotFoundError(alert_id)
                existing = db.query(AlertAck).filter(AlertAck.alert_id == alert_id).first()
                if existing is not None:
                    gm.acks_total.labels(operation="ack", changed="false").inc()
                    return AckResult(alert_id, existing.acknowledged_at, existing.actor, already_acked=True)
                db.add(AlertAck(alert_id=alert_id, actor=actor, note=note, acknowledged_at=now))
        except IntegrityError:
            # lost a race with a concurrent ack; report the winner
            with self.database.session() as db:
                existing = db.query(AlertAck).filter(AlertAck.alert_id == alert_id).one()
                return AckResult(alert_id, existing.acknowledged_at, existing.actor, already_acked=True)
        gm.acks_total.labels(operation="ack", changed="true").inc()
        logger.info(f"Alert {alert_id} acknowledged by {actor}")
        return AckResult(alert_id, now, actor, already_acked=False)

    def unack(self, alert_id: int) -> dict:
        with self.database.session() as db:
            if db.get(GovernanceAlert, alert_id) is None:
                raise AlertNotFoundError(alert_id)
            deleted = db.query(AlertAck).filter(AlertAck.alert_id == alert_id).delete(synchronize_session=False)
        changed = deleted > 0
        gm.acks_total.labels(operation="unack", changed=str(changed).lower()).inc()
        if changed:
            logger.info(f"Alert {alert_id} unacknowledged")
        return {"alert_id": alert_id, "changed": changed}

    def get_ack_state(self, alert_ids: Iterable[int]) -> Dict[int, Optional[dict]]:
        ids = list(dict.fromkeys(alert_ids))
        if not ids:
            return {}
        with self.database.session() as db:
            rows = db.query(AlertAck).filter(AlertAck.alert_id.in_(ids)).all()
            by_id = {
                r.alert_id: {"actor": r.actor, "acknowledged_at": r.acknowledged_at.isoformat(), "note": r.note}
                for r in rows
            }
        return {i: by_id.get(i) for i in ids}

    def metrics(
        self,
        window_ms: Optional[int] = None,
        include_severity_breakdown: bool = False,
        now: Optional[datetime] = None,
    ) -> dict:
        """Ack rate and MTTA over alerts created inside the window.

        The window is clamped to ``max_window_ms``. Open critical alerts older
        than ``critical_stale_ms`` are reported as ``stale_critical``.
        """
        now = now or utcnow()
        window_ms = self.config.default_window_ms if window_ms is None else window_ms
        window_ms = max(1, min(int(window_ms), self.config.max_window_ms))
        cutoff = now - timedelta(milliseconds=window_ms)
        stale_cutoff = now - timedelta(milliseconds=self.config.critical_stale_ms)

        with self.database.session() as db:
            rows = (
                db.query(GovernanceAlert.severity, GovernanceAlert.created_at, AlertAck.acknowledged_at)
                .outerjoin(AlertAck, AlertAck.alert_id == GovernanceAlert.id)
                .filter(GovernanceAlert.created_at >= cutoff)
                .all()
            )

        total = len(rows)
        ack_ms: List[float] = []
        stale_critical = 0
        breakdown: Dict[str, Dict[str, float]] = {}
        for severity, created_at, acknowledged_at in rows:
            bucket = breakdown.setdefault(severity, {"total": 0, "acked": 0})
            bucket["total"] += 1
            if acknowledged_at is not None:
                bucket["acked"] += 1
                ack_ms.append(max(0.0, (acknowledged_at - created_at).total_seconds() * 1000))
            elif severity == "critical" and created_at <= stale_cutoff:
                stale_critical += 1

        ack_ms.sort()
        acked = len(ack_ms)
        result = {
            "window_ms": window_ms,
            "total": total,
            "acked": acked,
            "ack_rate": round(acked / total, 4) if total else 0.0,
            "mtta_ms_avg": round(sum(ack_ms) / acked, 1) if acked else None,
            "mtta_ms_p95": round(percentile(ack_ms, 0.95), 1) if acked else None,
            "stale_critical": stale_critical,
        }
        if include_severity_breakdown:
            for bucket in breakdown.values():
                bucket["ack_rate"] = round(bucket["acked"] / bucket["total"], 4) if bucket["total"] else 0.0
            result["by_severity"] = breakdown
        return result

    def timely_ack_rate(
        self,
        severities: Iterable[str] = ("critical",),
        within_ms: Optional[int] = None,
        window_ms: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Optional[float]:
        """Share of alerts of the given severities acked within ``within_ms``.

        None when no such alert was created inside the window.
        """
        now = now or utcnow()
        within = timedelta(milliseconds=self.config.critical_stale_ms if within_ms is None else within_ms)
        window_ms = self.config.default_window_ms if window_ms is None else window_ms
        cutoff = now - timedelta(milliseconds=max(1, min(int(window_ms), self.config.max_window_ms)))
        with self.database.session() as db:
            rows = (
                db.query(GovernanceAlert.created_at, AlertAck.acknowledged_at)
                .outerjoin(AlertAck, AlertAck.alert_id == GovernanceAlert.id)
                .filter(GovernanceAlert.created_at >= cutoff, GovernanceAlert.severity.in_(list(severities)))
                .all()
            )
        if not rows:
            return None
        timely = sum(1 for created_at, acked_at in rows if acked_at is not None and acked_at - created_at <= within)
        return round(timely / len(rows), 4)

    def suppressed_ack_rate(self, window_ms: Optional[int] = None, now: Optional[datetime] = None) -> Optional[float]:
        """Share of suppressed alerts that an operator acknowledged anyway"""
        now = now or utcnow()
        window_ms = self.config.default_window_ms if window_ms is None else window_ms
        cutoff = now - timedelta(milliseconds=max(1, min(int(window_ms), self.config.max_window_ms)))
        with self.database.session() as db:
            rows = (
                db.query(AlertAck.id)
                .select_from(GovernanceAlert)
                .outerjoin(AlertAck, AlertAck.alert_id == GovernanceAlert.id)
                .filter(GovernanceAlert.created_at >= cutoff, GovernanceAlert.suppressed.is_(True))
                .all()
            )
        if not rows:
            return None
        return round(sum(1 for (ack_id,) in rows if ack_id is not None) / len(rows), 4)

    def group_signals(self, window_ms: Optional[int] = None, now: Optional[datetime] = None) -> Dict[str, GroupSignals]:
        """Scoring inputs per dedup group over alerts last seen inside the window.

        * ack_rate: acked share of the group's stored alerts
        * suspected_false_rate: acked share of its suppressed alerts
        * dedup_ratio: distinct alert hashes per occurrence, so collapsed
          repeats drive it toward 0
        * escalation_effectiveness: share acked within ``critical_stale_ms``

        Volume is left unset; the state machine scores the alerts it observed
        since the previous cycle.
        """
        now = now or utcnow()
        window_ms = self.config.default_window_ms if window_ms is None else window_ms
        cutoff = now - timedelta(milliseconds=max(1, min(int(window_ms), self.config.max_window_ms)))
        within = timedelta(milliseconds=self.config.critical_stale_ms)
        with self.database.session() as db:
            rows = (
                db.query(
                    GovernanceAlert.dedup_group,
                    GovernanceAlert.hash,
                    GovernanceAlert.occurrences,
                    GovernanceAlert.suppressed,
                    GovernanceAlert.created_at,
                    AlertAck.acknowledged_at,
                )
                .outerjoin(AlertAck, AlertAck.alert_id == GovernanceAlert.id)
                .filter(GovernanceAlert.last_seen_at >= cutoff)
                .all()
            )

        tallies: Dict[str, Dict[str, Any]] = {}
        for dedup_group, digest, occurrences, suppressed, created_at, acked_at in rows:
            t = tallies.setdefault(dedup_group, {
                "total": 0, "acked": 0, "timely": 0, "suppressed": 0,
                "suppressed_acked": 0, "occurrences": 0, "hashes": set(),
            })
            t["total"] += 1
            t["occurrences"] += max(1, occurrences or 1)
            t["hashes"].add(digest)
            if suppressed:
                t["suppressed"] += 1
            if acked_at is not None:
                t["acked"] += 1
                if acked_at - created_at <= within:
                    t["timely"] += 1
                if suppressed:
                    t["suppressed_acked"] += 1

        return {
            group: GroupSignals(
                ack_rate=round(t["acked"] / t["total"], 4),
                suspected_false_rate=round(t["suppressed_acked"] / t["suppressed"], 4) if t["suppressed"] else 0.0,
                dedup_ratio=round(len(t["hashes"]) / t["occurrences"], 4),
                escalation_effectiveness=round(t["timely"] / t["total"], 4),
            )
            for group, t in tallies.items()
        }
