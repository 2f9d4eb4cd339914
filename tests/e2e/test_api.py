from __future__ import annotations

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from alertgov.api.main import create_app
from alertgov.db import utcnow
from alertgov.engine import build_engine
from alertgov.providers import StaticMetricsProvider


@pytest.fixture
def engine(settings, on_target_metrics):
    eng = build_engine(settings, provider=StaticMetricsProvider(on_target_metrics))
    yield eng
    eng.close()


@pytest.fixture
def client(engine):
    with TestClient(create_app(engine=engine, start_background=False)) as c:
        yield c


def _ingest(client: TestClient, *alerts, strategy: str = "carry"):
    r = client.post("/v1/governance/alerts", json={"alerts": list(alerts), "strategy": strategy})
    assert r.status_code == 200
    return r.json()


def test_health(client: TestClient):
    r = client.get("/health")
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "healthy"
    assert body["durable_store"] is True
    assert body["runner_running"] is False
    assert "X-Process-Time" in r.headers


def test_metrics_endpoint(client: TestClient):
    client.get("/health")
    r = client.get("/metrics")
    assert r.status_code == 200
    assert b"alertgov_api_request_duration_seconds" in r.content


def test_alert_lifecycle(client: TestClient):
    out = _ingest(client, {"code": "TrendBreakout", "severity": "critical", "message": "Breakout slope=0.005"})
    assert out["added"] == 1
    alert_id = out["ids"][0]

    again = _ingest(client, {"code": "TrendBreakout", "severity": "critical", "message": "Breakout slope=0.005"})
    assert again["collapsed"] == 1

    alert = client.get(f"/v1/governance/alerts/{alert_id}").json()
    assert alert["occurrences"] == 2 and alert["ack"] is None

    r = client.post(f"/v1/governance/alerts/{alert_id}/ack", json={"actor": "oncall", "note": "looking"})
    assert r.status_code == 200 and r.json()["already_acked"] is False
    r = client.post(f"/v1/governance/alerts/{alert_id}/ack")
    assert r.json()["already_acked"] is True and r.json()["actor"] == "oncall"

    listed = client.get("/v1/governance/alerts", params={"severity": ["critical"], "include_ack": True}).json()
    assert listed["count"] == 1 and listed["items"][0]["ack"]["actor"] == "oncall"

    metrics = client.get("/v1/governance/alerts/metrics", params={"by_severity": True}).json()
    assert metrics["ack_rate"] == 1.0

    assert client.delete(f"/v1/governance/alerts/{alert_id}/ack").json()["changed"] is True


def test_unknown_alert_is_404(client: TestClient):
    r = client.get("/v1/governance/alerts/424242")
    assert r.status_code == 404
    assert r.json()["alert_id"] == 424242
    assert client.post("/v1/governance/alerts/424242/ack").status_code == 404


def test_invalid_alert_payload(client: TestClient):
    r = client.post("/v1/governance/alerts", json={"alerts": [{"code": "", "severity": "warn"}]})
    assert r.status_code == 422
    out = _ingest(client, {"code": "X", "severity": "loud"})
    assert out["rejected"] == 1


def test_stats_endpoint(client: TestClient):
    _ingest(client, {"code": "VolatilitySurge", "severity": "warn", "message": "a"},
            {"code": "ReversalRisk", "severity": "warn", "message": "b"})
    stats = client.get("/v1/governance/alerts/stats", params={"window_ms": 60_000}).json()
    assert stats["total"] == 2 and stats["by_severity"]["warn"] == 2


def test_snapshots_and_evaluate(client: TestClient):
    start = utcnow() - timedelta(hours=1)
    for i in range(15):
        r = client.post("/v1/governance/snapshots", json={
            "strategy": "carry",
            "weight": 0.3 + 0.005 * i,
            "spread": 0.02,
            "captured_at": (start + timedelta(minutes=i)).isoformat(),
        })
        assert r.status_code == 200
    items = client.get("/v1/governance/snapshots", params={"strategy": "carry", "limit": 5}).json()["items"]
    assert len(items) == 5 and items[0]["weight"] == pytest.approx(0.37)

    report = client.post("/v1/governance/evaluate", json={
        "persist": True,
        "options": {"slope_warn": 0.002, "slope_critical": 0.004},
    }).json()
    codes = {a["code"]: a["severity"] for a in report["strategies"]["carry"]["alerts"]}
    assert codes["TrendBreakout"] == "critical"
    assert client.get("/v1/governance/alerts", params={"code": "TrendBreakout"}).json()["count"] == 1


def test_adaptive_endpoints(client: TestClient):
    for _ in range(3):
        r = client.post("/v1/adaptive/run-once")
        assert r.status_code == 200 and r.json()["skipped"] is False
    status = client.get("/v1/adaptive/status").json()
    assert status["cycle"] == 3 and status["hydrated"] is True
    assert abs(sum(status["current_weights"].values()) - 1.0) < 1e-6

    logs = client.get("/v1/adaptive/logs", params={"limit": 2}).json()["logs"]
    assert [entry["cycle"] for entry in logs] == [2, 3]

    window = client.get("/v1/adaptive/persistence-window").json()
    assert window["disabled"] is False and window["debounce_every"] == 5

    suppression = client.get("/v1/adaptive/suppression").json()
    assert "metrics" in suppression and "transitions" in suppression
    assert client.get("/v1/adaptive/history").json()["ok"] is True
    assert client.get("/v1/adaptive/audit", params={"action": "LOAD_WEIGHTS"}).json()["count"] >= 1


def test_policy_endpoints(client: TestClient):
    r = client.post("/v1/policy/enabled", json={"enabled": False})
    assert r.json()["engine"]["enabled"] is False
    out = client.post("/v1/policy/evaluate").json()
    assert out["analysis"]["risk_assessment"] == "disabled"
    assert client.get("/v1/policy/status").json()["history_size"] == 1
