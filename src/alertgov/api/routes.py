"""
Adaptive runtime, governance alert and auto-policy endpoints
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from alertgov.alerts.store import AlertInput
from alertgov.engine import GovernanceEngine


def get_engine(request: Request) -> GovernanceEngine:
    return request.app.state.engine


# ----------------------------------------------------------------- schemas

class AlertIn(BaseModel):
    code: str = Field(..., min_length=1)
    severity: str
    message: str = ""
    rationale: Optional[Dict[str, Any]] = None


class AlertBatch(BaseModel):
    alerts: List[AlertIn]
    strategy: str = "global"
    generated_at: Optional[datetime] = None
    context: Optional[Dict[str, Any]] = None


class AckRequest(BaseModel):
    actor: str = "operator"
    note: Optional[str] = None


class EvaluateRequest(BaseModel):
    strategy: Optional[str] = None
    persist: bool = False
    options: Optional[Dict[str, Any]] = None
    context: Optional[Dict[str, Any]] = None


class SnapshotIn(BaseModel):
    strategy: str
    weight: float
    spread: Optional[float] = None
    captured_at: Optional[datetime] = None
    version: Optional[str] = None


class PolicyToggle(BaseModel):
    enabled: bool


# ----------------------------------------------------------------- adaptive

adaptive_router = APIRouter(prefix="/v1/adaptive", tags=["adaptive"])


@adaptive_router.get("/status")
def adaptive_status(engine: GovernanceEngine = Depends(get_engine)):
    return engine.runner.get_status()


@adaptive_router.get("/logs")
def adaptive_logs(limit: int = Query(50, ge=1, le=200), engine: GovernanceEngine = Depends(get_engine)):
    return {"logs": engine.runner.get_logs(limit)}


@adaptive_router.get("/persistence-window")
def persistence_window(engine: GovernanceEngine = Depends(get_engine)):
    return engine.runner.get_persistence_window()


@adaptive_router.post("/run-once")
async def run_once(engine: GovernanceEngine = Depends(get_engine)):
    result = await engine.runner.run_once()
    if result is None:
        return {"skipped": True, "reason": "cycle_in_progress"}
    return {"skipped": False, "result": result.to_dict()}


@adaptive_router.get("/suppression")
def suppression_state(
    transitions: int = Query(20, ge=1, le=1000),
    engine: GovernanceEngine = Depends(get_engine),
):
    sm = engine.suppression
    return {"metrics": sm.get_suppression_metrics(), "transitions": sm.get_recent_transitions(transitions)}


@adaptive_router.get("/history")
def weights_history(limit: int = Query(50, ge=1, le=500), engine: GovernanceEngine = Depends(get_engine)):
    r = engine.persistence.list_weights_history(limit=limit)
    return {**r.to_dict(), "rows": r.rows}


@adaptive_router.get("/audit")
def persistence_audit(
    limit: int = Query(100, ge=1, le=1000),
    action: Optional[str] = None,
    engine: GovernanceEngine = Depends(get_engine),
):
    r = engine.persistence.list_audit(limit=limit, action=action)
    return {**r.to_dict(), "rows": r.rows}


# --------------------------------------------------------------- governance

governance_router = APIRouter(prefix="/v1/governance", tags=["governance"])


@governance_router.get("/alerts")
def list_alerts(
    severity: Optional[List[str]] = Query(None),
    strategy: Optional[str] = None,
    code: Optional[str] = None,
    since: Optional[datetime] = None,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    order: str = Query("desc", pattern="^(asc|desc)$"),
    include_ack: bool = False,
    include_suppressed: bool = True,
    engine: GovernanceEngine = Depends(get_engine),
):
    items = engine.alert_store.query(
        severity=severity,
        strategy=strategy,
        code=code,
        since=since,
        limit=limit,
        offset=offset,
        order=order,
        include_ack=include_ack,
        include_suppressed=include_suppressed,
    )
    return {"items": items, "count": len(items), "limit": limit, "offset": offset}


@governance_router.post("/alerts")
def ingest_alerts(batch: AlertBatch, engine: GovernanceEngine = Depends(get_engine)):
    outcome = engine.alert_store.persist(
        [AlertInput(a.code, a.severity, a.message, a.rationale) for a in batch.alerts],
        strategy=batch.strategy,
        generated_at=batch.generated_at,
        context=batch.context,
    )
    return outcome.to_dict()


@governance_router.get("/alerts/stats")
def alert_stats(window_ms: int = Query(60_000, ge=0), engine: GovernanceEngine = Depends(get_engine)):
    return engine.alert_store.stats(window_ms=window_ms)


@governance_router.get("/alerts/metrics")
def ack_metrics(
    window_ms: Optional[int] = Query(None, ge=1),
    by_severity: bool = False,
    engine: GovernanceEngine = Depends(get_engine),
):
    return engine.ledger.metrics(window_ms=window_ms, include_severity_breakdown=by_severity)


@governance_router.get("/alerts/{alert_id}")
def get_alert(alert_id: int, engine: GovernanceEngine = Depends(get_engine)):
    return engine.alert_store.get(alert_id)


@governance_router.post("/alerts/{alert_id}/ack")
def ack_alert(alert_id: int, body: Optional[AckRequest] = None, engine: GovernanceEngine = Depends(get_engine)):
    body = body or AckRequest()
    return engine.ledger.ack(alert_id, actor=body.actor, note=body.note).to_dict()


@governance_router.delete("/alerts/{alert_id}/ack")
def unack_alert(alert_id: int, engine: GovernanceEngine = Depends(get_engine)):
    return engine.ledger.unack(alert_id)


@governance_router.post("/evaluate")
def evaluate_governance(body: EvaluateRequest, engine: GovernanceEngine = Depends(get_engine)):
    return engine.governance.evaluate(
        options=body.options,
        strategy=body.strategy,
        persist=body.persist,
        context=body.context,
    )


@governance_router.post("/snapshots")
def record_snapshot(body: SnapshotIn, engine: GovernanceEngine = Depends(get_engine)):
    snapshot_id = engine.snapshots.record(
        body.strategy, body.weight, body.spread, captured_at=body.captured_at, version=body.version
    )
    return {"id": snapshot_id}


@governance_router.get("/snapshots")
def list_snapshots(
    strategy: Optional[str] = None,
    limit: int = Query(100, ge=1, le=1000),
    engine: GovernanceEngine = Depends(get_engine),
):
    return {"items": engine.snapshots.list(strategy=strategy, limit=limit)}


# ------------------------------------------------------------------- policy

policy_router = APIRouter(prefix="/v1/policy", tags=["policy"])


@policy_router.get("/status")
def policy_status(engine: GovernanceEngine = Depends(get_engine)):
    return engine.policy.get_status()


@policy_router.post("/evaluate")
async def policy_evaluate(engine: GovernanceEngine = Depends(get_engine)):
    return await engine.policy.perform_evaluation_cycle()


@policy_router.post("/enabled")
def policy_enabled(body: PolicyToggle, engine: GovernanceEngine = Depends(get_engine)):
    engine.policy.engine.set_enabled(body.enabled)
    return engine.policy.get_status()
