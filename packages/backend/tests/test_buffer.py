"""Offline buffer tests — bounded, TTL'd, oldest first."""

from fakes import make_event
from jobrelay.realtime.buffer import OfflineBuffer


def test_take_returns_oldest_first(buffer):
    for i in range(3):
        buffer.put(make_event(job_id=f"j{i}"))

    taken = buffer.take("u1")

    assert [item.event.job_id for item in taken] == ["j0", "j1", "j2"]
    assert buffer.take("u1") == []
    assert len(buffer) == 0


def test_subjects_are_isolated(buffer):
    buffer.put(make_event(job_id="a", subject_id="u1"))
    buffer.put(make_event(job_id="b", subject_id="u2"))

    assert [e.job_id for e in buffer.peek("u1")] == ["a"]
    assert [e.job_id for e in buffer.peek("u2")] == ["b"]


def test_full_subject_evicts_oldest(buffer):
    for i in range(7):
        buffer.put(make_event(job_id=f"j{i}"))

    assert [e.job_id for e in buffer.peek("u1")] == ["j2", "j3", "j4", "j5", "j6"]


def test_expired_events_are_dropped_and_counted(buffer, clock, stats):
    buffer.put(make_event(job_id="old"))
    clock.advance(200)
    buffer.put(make_event(job_id="new"))
    clock.advance(101)

    taken = buffer.take("u1")

    assert [item.event.job_id for item in taken] == ["new"]
    assert stats.buffer_expired == 1


def test_purge_expired(buffer, clock):
    buffer.put(make_event(job_id="a", subject_id="u1"))
    buffer.put(make_event(job_id="b", subject_id="u2"))
    clock.advance(301)

    assert buffer.purge_expired() == 2
    assert len(buffer) == 0


def test_restore_keeps_original_expiry(buffer, clock):
    buffer.put(make_event(job_id="j0"))
    buffer.put(make_event(job_id="j1"))
    items = buffer.take("u1")

    clock.advance(200)
    buffer.restore("u1", items)
    clock.advance(101)

    # Restored items still expire 300s after they were first buffered
    assert buffer.take("u1") == []


def test_restore_goes_in_front_of_newer_events():
    buffer = OfflineBuffer(ttl=300, max_per_subject=3)
    buffer.put(make_event(job_id="j0"))
    buffer.put(make_event(job_id="j1"))
    items = buffer.take("u1")
    buffer.put(make_event(job_id="j2"))
    buffer.put(make_event(job_id="j3"))

    buffer.restore("u1", items)

    # Over capacity: the oldest restored item goes
    assert [e.job_id for e in buffer.peek("u1")] == ["j1", "j2", "j3"]
