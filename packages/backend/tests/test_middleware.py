"""Tests for request ID middleware.

Learn: The request id is bound into structlog's contextvars, so every
log entry a request produces (publisher.*, outbox.*) carries it.
"""

import pytest
import structlog
from httpx import ASGITransport, AsyncClient

from jobrelay.middleware.request_id import RequestIdMiddleware


@pytest.mark.asyncio
async def test_request_id_generated(client):
    """Each request gets a unique X-Request-ID header."""
    r1 = await client.get("/api/v1/health")
    r2 = await client.get("/api/v1/health")
    assert "X-Request-ID" in r1.headers
    assert "X-Request-ID" in r2.headers
    # Each request gets a unique ID
    assert r1.headers["X-Request-ID"] != r2.headers["X-Request-ID"]


@pytest.mark.asyncio
async def test_request_id_propagated(client):
    """Incoming X-Request-ID is propagated through the response."""
    custom_id = "publisher-trace-12345"
    r = await client.get(
        "/api/v1/health",
        headers={"X-Request-ID": custom_id},
    )
    assert r.headers["X-Request-ID"] == custom_id


@pytest.mark.asyncio
async def test_request_id_bound_for_logging():
    """Handlers see the id in structlog's context; it is gone afterwards."""
    seen = {}

    async def app(scope, receive, send):
        seen.update(structlog.contextvars.get_contextvars())
        await send({"type": "http.response.start", "status": 204, "headers": []})
        await send({"type": "http.response.body", "body": b""})

    transport = ASGITransport(app=RequestIdMiddleware(app))
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        resp = await ac.get("/", headers={"X-Request-ID": "abc"})

    assert resp.status_code == 204
    assert seen["request_id"] == "abc"
    assert "request_id" not in structlog.contextvars.get_contextvars()
