"""Test doubles shared across the suite.

Learn: Nothing here talks to a network. Time is a FakeClock that tests
advance by hand, and connection handles record what was pushed to them,
so visibility timeouts, buffer TTLs and heartbeat sweeps are all
deterministic.
"""

import asyncio
from datetime import datetime, timedelta, timezone

from jobrelay.errors import SessionPushError
from jobrelay.schemas.event import CompletionEvent, JobStatus

TOPIC = "job-completions"
QUEUE = "job-completions.notifier"

BASE_TIME = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingHandle:
    """SessionHandle that keeps every pushed frame."""

    def __init__(self):
        self.sent: list[dict] = []
        self.closed_with: int | None = None

    async def send_json(self, data: dict) -> None:
        self.sent.append(data)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed_with = code

    @property
    def notifications(self) -> list[dict]:
        return [frame for frame in self.sent if "jobId" in frame]


class FailingHandle(RecordingHandle):
    """Every write fails, like a socket reset by the peer."""

    async def send_json(self, data: dict) -> None:
        raise SessionPushError("failing", "connection reset")


class FlakyHandle(RecordingHandle):
    """Accepts the first `ok_writes` frames, then fails."""

    def __init__(self, ok_writes: int):
        super().__init__()
        self.ok_writes = ok_writes

    async def send_json(self, data: dict) -> None:
        if len(self.sent) >= self.ok_writes:
            raise SessionPushError("flaky", "connection reset")
        self.sent.append(data)


class StallingHandle(RecordingHandle):
    """Never completes a write."""

    async def send_json(self, data: dict) -> None:
        await asyncio.sleep(3600)


def make_event(
    job_id: str = "j1",
    subject_id: str = "u1",
    status: JobStatus = JobStatus.COMPLETE,
    minutes: int = 1,
    **payload,
) -> CompletionEvent:
    payload.setdefault("resultUrl", f"https://cdn.example.com/{job_id}.png")
    payload.setdefault("model", "sdxl-turbo")
    return CompletionEvent(
        job_id=job_id,
        subject_id=subject_id,
        status=status,
        payload=payload,
        created_at=BASE_TIME,
        updated_at=BASE_TIME + timedelta(minutes=minutes),
    )
