"""Operator API tests — stats, sessions, dead letters, completion ingestion."""

import pytest

from fakes import RecordingHandle, make_event
from jobrelay.config import settings


def completion_body(job_id: str = "j1", subject_id: str = "u1") -> dict:
    return make_event(job_id=job_id, subject_id=subject_id).model_dump(
        mode="json", by_alias=True, exclude={"attempt"}
    )


async def dead_letter_one(runtime, body: str = "not json") -> str:
    """Push a poisoned message through the broker's dead-letter path."""
    broker, queue = runtime.broker, runtime.settings.queue
    await runtime.consumer.stop()
    message_id = await broker.publish_raw(runtime.settings.topic, body)
    [message] = await broker.receive(queue, 1, visibility_timeout=30)
    await broker.negative_acknowledge(message, retry=False)
    await broker.receive(queue, 1, visibility_timeout=30)
    return message_id


@pytest.mark.asyncio
async def test_stats_snapshot(client, runtime):
    runtime.registry.register("u1", "s1", RecordingHandle())

    resp = await client.get("/api/v1/stats")
    assert resp.status_code == 200
    data = resp.json()
    assert data["live_sessions"] == 1
    assert data["live_subjects"] == 1
    assert data["queue_depth"] == 0
    assert data["dead_letter_depth"] == 0
    assert data["workers"] == 1
    assert set(data["stats"]) >= {"received", "dispatched", "buffered", "dead_lettered"}


@pytest.mark.asyncio
async def test_list_sessions(client, runtime):
    runtime.registry.register("u1", "s1", RecordingHandle())
    runtime.registry.register("u2", "s2", RecordingHandle())

    all_sessions = (await client.get("/api/v1/sessions")).json()
    assert {s["session_id"] for s in all_sessions} == {"s1", "s2"}

    only_u1 = (await client.get("/api/v1/sessions", params={"subject_id": "u1"})).json()
    assert only_u1 == [
        {"session_id": "s1", "subject_id": "u1", "subjects": ["u1"], "state": "active"}
    ]


@pytest.mark.asyncio
async def test_dead_letters_and_redrive(client, runtime):
    message_id = await dead_letter_one(runtime)

    resp = await client.get("/api/v1/dead-letters")
    assert resp.status_code == 200
    [letter] = resp.json()
    assert letter["message_id"] == message_id
    assert letter["body"] == "not json"
    assert letter["queue"].endswith(".dlq")

    resp = await client.post(f"/api/v1/dead-letters/{message_id}/redrive")
    assert resp.status_code == 200
    assert resp.json() == {"message_id": message_id, "redriven": True}
    assert await runtime.broker.depth(runtime.settings.queue) == 1
    assert (await client.get("/api/v1/dead-letters")).json() == []


@pytest.mark.asyncio
async def test_redrive_unknown_message_404(client):
    resp = await client.post("/api/v1/dead-letters/nope/redrive")
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_publish_completion_goes_through_outbox(client, runtime):
    await runtime.consumer.stop()

    resp = await client.post("/api/v1/jobs/j1/completion", json=completion_body())

    assert resp.status_code == 202
    data = resp.json()
    assert data["published"] is True
    assert data["idempotency_key"] == "j1:2026-03-01T12:01:00+00:00"
    assert await runtime.broker.depth(runtime.settings.queue) == 1
    entry = await runtime.outbox.get(data["idempotency_key"])
    assert not entry.pending


@pytest.mark.asyncio
async def test_publish_same_transition_twice_publishes_once(client, runtime):
    await runtime.consumer.stop()

    first = await client.post("/api/v1/jobs/j1/completion", json=completion_body())
    second = await client.post("/api/v1/jobs/j1/completion", json=completion_body())

    assert first.json()["message_id"] == second.json()["message_id"]
    assert await runtime.broker.depth(runtime.settings.queue) == 1


@pytest.mark.asyncio
async def test_publish_rejects_mismatched_job_id(client):
    resp = await client.post("/api/v1/jobs/other/completion", json=completion_body())
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_publish_rejects_invalid_event(client):
    body = completion_body()
    body["status"] = "DONE"
    resp = await client.post("/api/v1/jobs/j1/completion", json=body)
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_admin_token_required_when_configured(client, monkeypatch):
    monkeypatch.setattr(settings, "admin_token", "s3cret")

    assert (await client.get("/api/v1/stats")).status_code == 401
    bad = await client.get("/api/v1/stats", headers={"Authorization": "Bearer wrong"})
    assert bad.status_code == 401
    ok = await client.get("/api/v1/stats", headers={"Authorization": "Bearer s3cret"})
    assert ok.status_code == 200
    # Health stays open for load balancers
    assert (await client.get("/api/v1/health")).status_code == 200


@pytest.mark.asyncio
async def test_publish_rejects_payload_clients_cannot_receive(client, runtime):
    body = completion_body()
    body["payload"]["width"] = "wide"

    resp = await client.post("/api/v1/jobs/j1/completion", json=body)

    assert resp.status_code == 422
    assert await runtime.broker.depth(runtime.settings.queue) == 0
