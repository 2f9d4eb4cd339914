"""
Governance alert store with dedup cooldown and age-based purge
"""
from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from sqlalchemy import or_

from alertgov.config import AlertStoreConfig
from alertgov.db import Database, coerce_datetime, utcnow
from alertgov.errors import AlertNotFoundError
from alertgov.metrics import governance_metrics as gm
from alertgov.models.governance import AlertAck, GovernanceAlert

logger = logging.getLogger(__name__)

SEVERITIES = ("info", "warn", "critical")
_SEVERITY_ALIASES = {"warning": "warn", "crit": "critical", "error": "critical", "information": "info"}


@dataclass
class AlertInput:
    code: str
    severity: str
    message: str
    rationale: Optional[Dict[str, Any]] = None


@dataclass
class PersistOutcome:
    added: int = 0
    collapsed: int = 0
    rejected: int = 0
    ids: List[int] = field(default_factory=list)
    surfaced: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "added": self.added,
            "collapsed": self.collapsed,
            "rejected": self.rejected,
            "ids": list(self.ids),
            "surfaced": list(self.surfaced),
        }


def normalize_severity(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    v = value.strip().lower()
    v = _SEVERITY_ALIASES.get(v, v)
    return v if v in SEVERITIES else None


def alert_hash(code: str, message: str, rationale: Any) -> str:
    blob = json.dumps({"code": code, "message": message, "rationale": rationale}, sort_keys=True, default=str)
    return hashlib.sha256(blob.encode("utf-8")).hexdigest()[:32]


def serialize_alert(alert: GovernanceAlert, ack: Optional[AlertAck] = None, include_ack: bool = False) -> dict:
    """Serialize GovernanceAlert model to dict"""
    out = {
        "id": alert.id,
        "code": alert.code,
        "strategy": alert.strategy,
        "severity": alert.severity,
        "message": alert.message,
        "rationale": alert.rationale,
        "dedup_group": alert.dedup_group,
        "hash": alert.hash,
        "context": alert.context,
        "timestamp": alert.created_at.isoformat(),
        "generated_at": alert.generated_at.isoformat() if alert.generated_at else None,
        "last_seen_at": alert.last_seen_at.isoformat(),
        "occurrences": alert.occurrences,
        "suppressed": bool(alert.suppressed),
    }
    if include_ack:
        out["ack"] = (
            {"actor": ack.actor, "acknowledged_at": ack.acknowledged_at.isoformat(), "note": ack.note}
            if ack is not None else None
        )
    return out


class AlertStore:
    def __init__(self, database: Database, config: Optional[AlertStoreConfig] = None, suppression=None):
        self.database = database
        self.config = config or AlertStoreConfig()
        self.suppression = suppression

    def persist(
        self,
        alerts: Iterable[AlertInput | Mapping[str, Any]],
        strategy: str = "global",
        generated_at: Optional[datetime] = None,
        context: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> PersistOutcome:
        """Store alerts, collapsing repeats inside the cooldown window.

        A repeat is an alert with the same ``strategy|code|message`` key or
        the same content hash whose existing entry was created no longer than
        ``cooldown_ms`` ago; it bumps ``occurrences`` on that entry instead of
        creating a new one, but is still observed by the suppression state
        machine. A cooldown of 0 stores every alert.
        """
        now = now or utcnow()
        generated_at = coerce_datetime(generated_at) or now
        cooldown = timedelta(milliseconds=self.config.cooldown_ms)
        outcome = PersistOutcome()
        with self.database.session() as db:
            for raw in alerts:
                item = raw if isinstance(raw, AlertInput) else AlertInput(
                    code=str(raw.get("code") or raw.get("id") or ""),
                    severity=raw.get("severity"),
                    message=str(raw.get("message") or ""),
                    rationale=raw.get("rationale"),
                )
                severity = normalize_severity(item.severity)
                if not item.code or severity is None:
                    logger.warning(f"Rejected alert with code={item.code!r} severity={item.severity!r}")
                    outcome.rejected += 1
                    continue
                dedup_group = f"{strategy}|{item.code}|{item.message}"
                digest = alert_hash(item.code, item.message, item.rationale)

                if self.config.cooldown_ms > 0:
                    existing = (
                        db.query(GovernanceAlert)
                        .filter(or_(GovernanceAlert.dedup_group == dedup_group, GovernanceAlert.hash == digest))
                        .order_by(GovernanceAlert.created_at.desc(), GovernanceAlert.id.desc())
                        .first()
                    )
                    if existing is not None and now - existing.created_at <= cooldown:
                        existing.occurrences += 1
                        existing.last_seen_at = now
                        # repeats still count toward group volume and suppressed_count
                        if self.suppression is not None:
                            self.suppression.observe(existing.dedup_group, severity=severity)
                        outcome.collapsed += 1
                        outcome.ids.append(existing.id)
                        gm.alerts_ingested_total.labels(severity=severity, outcome="collapsed").inc()
                        continue

                surfaced = True
                if self.suppression is not None:
                    surfaced = self.suppression.observe(dedup_group, severity=severity)
                record = GovernanceAlert(
                    code=item.code,
                    strategy=strategy,
                    severity=severity,
                    message=item.message,
                    rationale=item.rationale,
                    hash=digest,
                    dedup_group=dedup_group,
                    context=context,
                    generated_at=generated_at,
                    created_at=now,
                    last_seen_at=now,
                    occurrences=1,
                    suppressed=not surfaced,
                )
                db.add(record)
                db.flush()
                outcome.added += 1
                outcome.ids.append(record.id)
                if surfaced:
                    outcome.surfaced.append(record.id)
                gm.alerts_ingested_total.labels(severity=severity, outcome="stored").inc()
        if outcome.added or outcome.collapsed:
            logger.info(f"Persisted alerts for {strategy}: added={outcome.added} collapsed={outcome.collapsed}")
        return outcome

    def get(self, alert_id: int, include_ack: bool = True) -> dict:
        with self.database.session() as db:
            alert = db.get(GovernanceAlert, alert_id)
            if alert is None:
                raise AlertNotFoundError(alert_id)
            return serialize_alert(alert, alert.ack, include_ack=include_ack)

    def query(
        self,
        severity: Optional[Sequence[str]] = None,
        strategy: Optional[str] = None,
        code: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: int = 100,
        offset: int = 0,
        order: str = "desc",
        include_ack: bool = False,
        include_suppressed: bool = True,
    ) -> List[dict]:
        limit = max(1, min(int(limit), self.config.max_query_limit))
        offset = max(0, int(offset))
        with self.database.session() as db:
            q = db.query(GovernanceAlert, AlertAck).outerjoin(AlertAck, AlertAck.alert_id == GovernanceAlert.id)
            if severity:
                wanted = [s for s in (normalize_severity(v) for v in severity) if s]
                q = q.filter(GovernanceAlert.severity.in_(wanted))
            if strategy:
                q = q.filter(GovernanceAlert.strategy == strategy)
            if code:
                q = q.filter(GovernanceAlert.code == code)
            if since is not None:
                q = q.filter(GovernanceAlert.created_at >= coerce_datetime(since))
            if not include_suppressed:
                q = q.filter(GovernanceAlert.suppressed.is_(False))
            if order == "asc":
                q = q.order_by(GovernanceAlert.created_at.asc(), GovernanceAlert.id.asc())
            else:
                q = q.order_by(GovernanceAlert.created_at.desc(), GovernanceAlert.id.desc())
            rows = q.offset(offset).limit(limit).all()
            return [serialize_alert(a, ack, include_ack=include_ack) for a, ack in rows]

    def stats(self, window_ms: int = 60_000, now: Optional[datetime] = None) -> dict:
        now = now or utcnow()
        cutoff = now - timedelta(milliseconds=max(0, window_ms))
        by_severity = {s: 0 for s in SEVERITIES}
        with self.database.session() as db:
            rows = (
                db.query(GovernanceAlert.severity, GovernanceAlert.suppressed)
                .filter(GovernanceAlert.created_at >= cutoff)
                .all()
            )
        suppressed = 0
        for severity, was_suppressed in rows:
            by_severity[severity] = by_severity.get(severity, 0) + 1
            suppressed += 1 if was_suppressed else 0
        return {"window_ms": window_ms, "total": len(rows), "suppressed": suppressed, "by_severity": by_severity}

    def purge_older_than(self, days: Optional[int] = None, now: Optional[datetime] = None) -> int:
        days = self.config.purge_days if days is None else days
        now = now or utcnow()
        cutoff = now - timedelta(days=days)
        with self.database.session() as db:
            old_ids = [i for (i,) in db.query(GovernanceAlert.id).filter(GovernanceAlert.created_at < cutoff).all()]
            if not old_ids:
                return 0
            db.query(AlertAck).filter(AlertAck.alert_id.in_(old_ids)).delete(synchronize_session=False)
            deleted = (
                db.query(GovernanceAlert).filter(GovernanceAlert.id.in_(old_ids)).delete(synchronize_session=False)
            )
        logger.info(f"Purged {deleted} governance alerts older than {days} days")
        return deleted
