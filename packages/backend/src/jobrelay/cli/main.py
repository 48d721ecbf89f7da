"""JobRelay CLI — inspect a running relay, work the dead-letter path, publish.

Usage:
    jobrelay health                                  # Broker / dedup connectivity
    jobrelay stats                                   # Counters, sessions, queue depth
    jobrelay sessions [--subject u1]                 # Live sessions
    jobrelay dead-letters [--limit 20]               # Dead-lettered messages
    jobrelay redrive MESSAGE_ID                      # Move one back to the queue
    jobrelay publish JOB_ID SUBJECT_ID --status COMPLETE --result-url ...
    jobrelay token SUBJECT_ID                        # Dev session token
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import json
import os
import sys
from datetime import datetime, timezone
from typing import Optional

import click
import httpx

# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------

DEFAULT_API_URL = "http://localhost:8000"


def _api_url() -> str:
    return os.environ.get("JOBRELAY_API_URL", DEFAULT_API_URL).rstrip("/")


def _headers() -> dict[str, str]:
    token = os.environ.get("JOBRELAY_ADMIN_TOKEN")
    return {"Authorization": f"Bearer {token}"} if token else {}


def _client(transport: Optional[httpx.AsyncBaseTransport] = None) -> httpx.AsyncClient:
    """Build an async HTTP client pointed at the JobRelay backend."""
    return httpx.AsyncClient(
        base_url=_api_url(), headers=_headers(), timeout=30.0, transport=transport
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _run(coro):
    """Run an async coroutine from a synchronous Click handler.

    Handles nested event loops (e.g. when invoked via Click CliRunner
    inside an existing async context like tests) by offloading to a thread.
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
        return pool.submit(asyncio.run, coro).result()


def _pretty_json(data: dict | list) -> str:
    return json.dumps(data, indent=2, default=str)


def _print_table(rows: list[dict], columns: list[tuple[str, str, int]]):
    """Print a simple ASCII table.

    columns: list of (header, dict_key, width)
    """
    header = "  ".join(h.ljust(w) for h, _, w in columns)
    click.secho(header, bold=True)
    click.echo("-" * len(header))
    for row in rows:
        line = "  ".join(str(row.get(k, "—"))[:w].ljust(w) for _, k, w in columns)
        click.echo(line)


async def _request(ctx: click.Context, method: str, path: str, **kwargs) -> httpx.Response:
    transport = (ctx.obj or {}).get("transport")
    async with _client(transport) as c:
        try:
            r = await c.request(method, path, **kwargs)
        except httpx.ConnectError:
            click.secho(f"Error: JobRelay not reachable at {_api_url()}", fg="red", err=True)
            sys.exit(1)
    if r.status_code >= 400:
        try:
            detail = r.json().get("detail", r.text)
        except ValueError:
            detail = r.text
        click.secho(f"Error {r.status_code}: {detail}", fg="red", err=True)
        sys.exit(1)
    return r


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(version="0.1.0", prog_name="jobrelay")
@click.pass_context
def main(ctx: click.Context):
    """JobRelay — inspect and operate the completion-notification relay."""
    ctx.ensure_object(dict)


@main.command()
@click.pass_context
def health(ctx: click.Context):
    """Show broker and dedup connectivity."""
    r = _run(_request(ctx, "GET", "/api/v1/health"))
    data = r.json()
    color = "green" if data.get("status") == "healthy" else "yellow"
    click.secho(f"Status: {data.get('status')}", fg=color, bold=True)
    for key in ("server", "broker", "dedup", "consumer"):
        if key in data:
            click.echo(f"  {key:<9} {data[key]}")
    click.echo(f"  version   {data.get('version')}")


@main.command()
@click.option("--json", "as_json", is_flag=True, help="Raw JSON output")
@click.pass_context
def stats(ctx: click.Context, as_json: bool):
    """Show delivery counters, live sessions and queue depth."""
    data = _run(_request(ctx, "GET", "/api/v1/stats")).json()
    if as_json:
        click.echo(_pretty_json(data))
        return
    click.secho("Pipeline", bold=True)
    for key in ("received", "deduplicated", "dispatched", "buffered", "dead_lettered", "nacked"):
        click.echo(f"  {key:<14} {data['stats'].get(key, 0)}")
    click.secho("State", bold=True)
    click.echo(f"  sessions       {data['live_sessions']} ({data['live_subjects']} subjects)")
    click.echo(f"  buffered       {data['buffered_events']}")
    click.echo(f"  queue depth    {data['queue_depth']}")
    dlq = data["dead_letter_depth"]
    click.secho(f"  dead letters   {dlq}", fg="red" if dlq else None)


@main.command()
@click.option("--subject", "subject_id", help="Only sessions for this subject")
@click.pass_context
def sessions(ctx: click.Context, subject_id: Optional[str]):
    """List live sessions."""
    params = {"subject_id": subject_id} if subject_id else {}
    rows = _run(_request(ctx, "GET", "/api/v1/sessions", params=params)).json()
    if not rows:
        click.echo("No live sessions.")
        return
    for row in rows:
        row["subjects"] = ",".join(row["subjects"])
    _print_table(rows, [
        ("SESSION", "session_id", 32),
        ("SUBJECT", "subject_id", 20),
        ("SUBSCRIBED", "subjects", 30),
        ("STATE", "state", 8),
    ])


@main.command("dead-letters")
@click.option("--limit", default=20, show_default=True, help="Max messages to show")
@click.pass_context
def dead_letters(ctx: click.Context, limit: int):
    """List messages in the dead-letter path."""
    rows = _run(_request(ctx, "GET", "/api/v1/dead-letters", params={"limit": limit})).json()
    if not rows:
        click.secho("Dead-letter path is empty.", fg="green")
        return
    _print_table(rows, [
        ("MESSAGE", "message_id", 36),
        ("RECEIVES", "receive_count", 8),
        ("DEAD-LETTERED", "dead_lettered_at", 25),
    ])


@main.command()
@click.argument("message_id")
@click.pass_context
def redrive(ctx: click.Context, message_id: str):
    """Move a dead-lettered message back onto the main queue."""
    _run(_request(ctx, "POST", f"/api/v1/dead-letters/{message_id}/redrive"))
    click.secho(f"Redriven {message_id}", fg="green")


@main.command()
@click.argument("job_id")
@click.argument("subject_id")
@click.option(
    "--status",
    type=click.Choice(["PENDING", "COMPLETE", "ERROR"]),
    default="COMPLETE",
    show_default=True,
)
@click.option("--result-url", help="Where the generated result lives")
@click.option("--width", type=int)
@click.option("--height", type=int)
@click.option("--model", default="unknown", show_default=True)
@click.pass_context
def publish(
    ctx: click.Context,
    job_id: str,
    subject_id: str,
    status: str,
    result_url: Optional[str],
    width: Optional[int],
    height: Optional[int],
    model: str,
):
    """Publish a completion event for JOB_ID owned by SUBJECT_ID."""
    now = datetime.now(timezone.utc).isoformat()
    payload = {"model": model}
    if result_url:
        payload["resultUrl"] = result_url
    if width is not None:
        payload["width"] = width
    if height is not None:
        payload["height"] = height
    body = {
        "jobId": job_id,
        "subjectId": subject_id,
        "status": status,
        "payload": payload,
        "createdAt": now,
        "updatedAt": now,
    }
    data = _run(_request(ctx, "POST", f"/api/v1/jobs/{job_id}/completion", json=body)).json()
    if data.get("published"):
        click.secho(f"Published {job_id} (message {data['message_id']})", fg="green")
    else:
        click.secho(
            f"Queued in outbox, publish failed: {data.get('error')}", fg="yellow"
        )


@main.command()
@click.argument("subject_id")
@click.option("--also", multiple=True, help="Extra subject the token may subscribe to")
@click.option("--minutes", default=60, show_default=True)
def token(subject_id: str, also: tuple[str, ...], minutes: int):
    """Print a session token signed with JOBRELAY_JWT_SECRET (development)."""
    # Import locally: signing needs settings, the HTTP commands don't
    from jobrelay.auth.jwt import create_session_token

    click.echo(create_session_token(subject_id, list(also), expires_minutes=minutes))


if __name__ == "__main__":
    main()
