"""CLI tests — click commands against a mocked JobRelay API.

Learn: httpx.MockTransport answers requests in-process, and the CLI picks
the transport up from the click context object, so no server runs.
"""

import json

import httpx
import pytest
from click.testing import CliRunner

from jobrelay.auth.jwt import verify_token
from jobrelay.cli.main import main


@pytest.fixture()
def api():
    """Records requests and serves canned responses by (method, path)."""
    calls = []
    routes = {}

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        key = (request.method, request.url.path)
        if key not in routes:
            return httpx.Response(404, json={"detail": "Not Found"})
        status, body = routes[key]
        return httpx.Response(status, json=body)

    return calls, routes, httpx.MockTransport(handler)


def invoke(transport, *args, env=None):
    return CliRunner().invoke(main, list(args), obj={"transport": transport}, env=env)


def test_health(api):
    calls, routes, transport = api
    routes[("GET", "/api/v1/health")] = (
        200,
        {"status": "healthy", "server": "ok", "broker": "ok", "dedup": "ok", "version": "0.1.0"},
    )

    result = invoke(transport, "health")

    assert result.exit_code == 0
    assert "healthy" in result.output
    assert "broker" in result.output


def test_stats_json(api):
    _, routes, transport = api
    snapshot = {
        "stats": {"received": 3, "dispatched": 2},
        "live_sessions": 1,
        "live_subjects": 1,
        "buffered_events": 0,
        "queue_depth": 0,
        "dead_letter_depth": 1,
        "workers": 4,
    }
    routes[("GET", "/api/v1/stats")] = (200, snapshot)

    result = invoke(transport, "stats", "--json")

    assert result.exit_code == 0
    assert json.loads(result.output) == snapshot


def test_dead_letters_table(api):
    _, routes, transport = api
    routes[("GET", "/api/v1/dead-letters")] = (
        200,
        [
            {
                "message_id": "m-1",
                "queue": "job-completions.notifier.dlq",
                "receive_count": 3,
                "dead_lettered_at": "2026-03-01T12:00:00Z",
                "body": "{}",
            }
        ],
    )

    result = invoke(transport, "dead-letters", "--limit", "5")

    assert result.exit_code == 0
    assert "m-1" in result.output


def test_redrive_not_found_exits_nonzero(api):
    _, _, transport = api

    result = invoke(transport, "redrive", "m-404")

    assert result.exit_code == 1
    assert "Not Found" in result.output


def test_publish_sends_camel_case_event(api):
    calls, routes, transport = api
    routes[("POST", "/api/v1/jobs/j1/completion")] = (
        202,
        {"idempotency_key": "k", "message_id": "m-1", "published": True, "error": None},
    )

    result = invoke(
        transport, "publish", "j1", "u1", "--result-url", "https://x/j1.png", "--width", "512"
    )

    assert result.exit_code == 0
    assert "Published j1" in result.output
    body = json.loads(calls[0].content)
    assert body["jobId"] == "j1"
    assert body["subjectId"] == "u1"
    assert body["status"] == "COMPLETE"
    assert body["payload"] == {"model": "unknown", "resultUrl": "https://x/j1.png", "width": 512}


def test_admin_token_sent_as_bearer(api):
    calls, routes, transport = api
    routes[("GET", "/api/v1/sessions")] = (200, [])

    result = invoke(transport, "sessions", env={"JOBRELAY_ADMIN_TOKEN": "s3cret"})

    assert result.exit_code == 0
    assert calls[0].headers["Authorization"] == "Bearer s3cret"


def test_token_command_prints_valid_token():
    result = CliRunner().invoke(main, ["token", "u1", "--also", "team-7"])

    assert result.exit_code == 0
    payload = verify_token(result.output.strip())
    assert payload["sub"] == "u1"
    assert payload["subjects"] == ["team-7"]
