"""Health and metrics endpoint tests."""

import pytest


@pytest.mark.asyncio
async def test_health_returns_ok(client):
    """Health endpoint should return server status and version."""
    resp = await client.get("/api/v1/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["server"] == "ok"
    assert data["broker"] == "ok"
    assert data["dedup"] == "ok"
    assert data["consumer"] == "ok"
    assert data["status"] == "healthy"
    assert "version" in data


@pytest.mark.asyncio
async def test_health_degraded_when_broker_unreachable(client, runtime, monkeypatch):
    async def down():
        return False

    monkeypatch.setattr(runtime.broker, "ping", down)
    resp = await client.get("/api/v1/health")
    data = resp.json()
    assert data["status"] == "degraded"
    assert data["broker"].startswith("error")


@pytest.mark.asyncio
async def test_metrics_exposes_relay_counters(client):
    resp = await client.get("/metrics")
    assert resp.status_code == 200
    body = resp.text
    for name in (
        "jobrelay_messages_received_total",
        "jobrelay_messages_deduplicated_total",
        "jobrelay_messages_dispatched_total",
        "jobrelay_messages_buffered_total",
        "jobrelay_messages_dead_lettered_total",
        "jobrelay_live_sessions",
    ):
        assert name in body
