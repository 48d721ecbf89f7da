"""Completion event schema tests."""

import json
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from fakes import make_event
from jobrelay.errors import MalformedMessageError
from jobrelay.schemas.event import CompletionEvent, JobStatus


def test_wire_format_uses_camel_case_and_omits_attempt():
    event = make_event().with_attempt(3)

    data = json.loads(event.to_wire())

    assert set(data) == {"jobId", "subjectId", "status", "payload", "createdAt", "updatedAt"}
    assert event.attempt == 3


def test_from_wire_takes_attempt_from_broker_not_body():
    body = json.loads(make_event().to_wire())
    body["attempt"] = 99

    event = CompletionEvent.from_wire(json.dumps(body), attempt=2)

    assert event.attempt == 2
    assert event.job_id == "j1"
    assert event.status is JobStatus.COMPLETE


@pytest.mark.parametrize(
    "body",
    [
        "not json",
        "[1, 2]",
        '{"jobId": "j1"}',
        json.dumps(
            {
                "jobId": "j1",
                "subjectId": "u1",
                "status": "FINISHED",
                "createdAt": "2026-03-01T12:00:00Z",
                "updatedAt": "2026-03-01T12:00:00Z",
            }
        ),
        json.dumps(
            {
                "jobId": "",
                "subjectId": "u1",
                "status": "COMPLETE",
                "createdAt": "2026-03-01T12:00:00Z",
                "updatedAt": "2026-03-01T12:00:00Z",
            }
        ),
    ],
)
def test_malformed_bodies(body):
    with pytest.raises(MalformedMessageError):
        CompletionEvent.from_wire(body)


def test_event_is_immutable():
    event = make_event()
    with pytest.raises(ValidationError):
        event.status = JobStatus.ERROR


def test_naive_timestamps_are_treated_as_utc():
    event = CompletionEvent(
        job_id="j1",
        subject_id="u1",
        status=JobStatus.PENDING,
        created_at=datetime(2026, 3, 1, 12, 0),
        updated_at=datetime(2026, 3, 1, 14, 0, tzinfo=timezone(timedelta(hours=2))),
    )
    assert event.created_at.tzinfo == timezone.utc
    assert event.updated_at == datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def test_idempotency_key_changes_with_update_time():
    assert make_event(minutes=1).idempotency_key == "j1:2026-03-01T12:01:00+00:00"
    assert make_event(minutes=1).idempotency_key != make_event(minutes=2).idempotency_key


def test_payload_that_cannot_become_a_notification_is_malformed():
    body = json.loads(make_event().to_wire())
    body["payload"]["width"] = "wide"

    with pytest.raises(MalformedMessageError, match="payload"):
        CompletionEvent.from_wire(json.dumps(body))


def test_snake_case_payload_keys_are_accepted():
    event = make_event(resultUrl=None, result_url="https://x/j1.png", width=512.0)
    notification = event.to_notification()
    assert notification.result_url == "https://x/j1.png"
    assert notification.width == 512
