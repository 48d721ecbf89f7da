"""Connection registry tests — indexes stay consistent, nothing leaks."""

from concurrent.futures import ThreadPoolExecutor

import pytest

from fakes import RecordingHandle
from jobrelay.errors import NoLiveSessionError, RegistryInvariantViolation
from jobrelay.realtime.registry import ConnectionRegistry, RegistrySweeper
from jobrelay.realtime.session import SessionState


def test_register_makes_session_active(registry):
    session = registry.register("u1", "s1", RecordingHandle())

    assert session.state is SessionState.ACTIVE
    assert registry.lookup("u1") == [session]
    assert registry.get("s1") is session
    assert len(registry) == 1


def test_register_duplicate_session_id_rejected(registry):
    registry.register("u1", "s1", RecordingHandle())
    with pytest.raises(ValueError):
        registry.register("u2", "s1", RecordingHandle())
    assert registry.lookup("u2") == []


def test_multiple_sessions_per_subject(registry, clock):
    first = registry.register("u1", "s1", RecordingHandle())
    clock.advance(1)
    second = registry.register("u1", "s2", RecordingHandle())

    assert registry.lookup("u1") == [first, second]
    assert registry.subject_count() == 1


def test_deregister_removes_all_index_entries(registry):
    registry.register("u1", "s1", RecordingHandle())
    registry.subscribe("s1", "team-7")

    session = registry.deregister("s1")

    assert session.state is SessionState.CLOSED
    assert registry.lookup("u1") == []
    assert registry.lookup("team-7") == []
    assert registry.get("s1") is None
    assert len(registry) == 0
    registry.check_invariants()


def test_deregister_is_idempotent(registry):
    registry.register("u1", "s1", RecordingHandle())
    assert registry.deregister("s1") is not None
    assert registry.deregister("s1") is None
    assert len(registry) == 0


def test_closing_one_session_keeps_the_other(registry):
    registry.register("u1", "s1", RecordingHandle())
    other = registry.register("u1", "s2", RecordingHandle())

    registry.deregister("s1")

    assert registry.lookup("u1") == [other]


def test_require_raises_when_offline(registry):
    with pytest.raises(NoLiveSessionError) as exc:
        registry.require("u1")
    assert exc.value.subject_id == "u1"


def test_subscribe_and_unsubscribe(registry):
    session = registry.register("u1", "s1", RecordingHandle())

    assert registry.subscribe("s1", "team-7") is True
    assert registry.lookup("team-7") == [session]

    assert registry.unsubscribe("s1", "team-7") is True
    assert registry.lookup("team-7") == []
    assert registry.unsubscribe("s1", "team-7") is False
    # The authenticated subject can't be dropped
    assert registry.unsubscribe("s1", "u1") is False
    assert registry.lookup("u1") == [session]


def test_subscribe_unknown_session(registry):
    assert registry.subscribe("missing", "u1") is False
    assert registry.lookup("u1") == []


def test_touch_updates_last_seen(registry, clock):
    session = registry.register("u1", "s1", RecordingHandle())
    clock.advance(30)

    assert registry.touch("s1") is True
    assert session.last_seen == clock.now
    assert registry.touch("missing") is False


def test_sweep_removes_stale_sessions(registry, clock):
    registry.register("u1", "stale", RecordingHandle())
    clock.advance(50)
    fresh = registry.register("u1", "fresh", RecordingHandle())
    clock.advance(20)

    removed = registry.sweep()

    assert [s.session_id for s in removed] == ["stale"]
    assert registry.lookup("u1") == [fresh]
    registry.check_invariants()


def test_heartbeat_keeps_session_alive(registry, clock):
    registry.register("u1", "s1", RecordingHandle())
    for _ in range(5):
        clock.advance(45)
        registry.touch("s1")
    assert registry.sweep() == []
    assert len(registry.lookup("u1")) == 1


@pytest.mark.asyncio
async def test_sweeper_closes_stale_handles(registry, buffer, clock):
    handle = RecordingHandle()
    registry.register("u1", "s1", handle)
    clock.advance(61)

    swept = await RegistrySweeper(registry, buffer, interval=1).sweep_once()

    assert swept == 1
    assert handle.closed_with == 4408
    assert registry.lookup("u1") == []


@pytest.mark.asyncio
async def test_drain_closes_every_session(registry):
    handles = [RecordingHandle() for _ in range(3)]
    for i, handle in enumerate(handles):
        registry.register(f"u{i}", f"s{i}", handle)

    assert await registry.drain() == 3

    assert len(registry) == 0
    assert all(h.closed_with == 1001 for h in handles)


def test_check_invariants_detects_dangling_entry(registry):
    registry.register("u1", "s1", RecordingHandle())
    # Corrupt the session table behind the registry's back
    for shard in registry._session_shards:
        shard.items.pop("s1", None)

    with pytest.raises(RegistryInvariantViolation):
        registry.check_invariants()


def test_invariant_violation_is_not_a_relay_error():
    from jobrelay.errors import RelayError

    assert not issubclass(RegistryInvariantViolation, RelayError)
    assert issubclass(RegistryInvariantViolation, AssertionError)


def test_concurrent_register_deregister_never_leaks():
    """Hammer the registry from threads; both indexes must agree after."""
    registry = ConnectionRegistry(shards=4, heartbeat_timeout=60)
    subjects = [f"u{i}" for i in range(8)]

    def churn(worker: int) -> None:
        for i in range(200):
            session_id = f"w{worker}-{i}"
            subject = subjects[(worker + i) % len(subjects)]
            registry.register(subject, session_id, RecordingHandle())
            registry.subscribe(session_id, subjects[i % len(subjects)])
            registry.deregister(session_id)

    def look() -> None:
        for _ in range(2000):
            for subject in subjects:
                registry.lookup(subject)

    with ThreadPoolExecutor(max_workers=6) as pool:
        futures = [pool.submit(churn, w) for w in range(4)] + [pool.submit(look) for _ in range(2)]
        for future in futures:
            future.result()

    registry.check_invariants()
    assert len(registry) == 0
    assert registry.subject_count() == 0
