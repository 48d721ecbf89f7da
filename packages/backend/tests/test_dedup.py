"""In-memory dedup store tests."""

import asyncio
from datetime import datetime, timezone

import pytest

from jobrelay.dedup import get_dedup_store
from jobrelay.dedup.store import DeliveryRecord, MemoryDedupStore


def _record(message_id: str, *sessions: str) -> DeliveryRecord:
    return DeliveryRecord(
        message_id=message_id,
        delivered_at=datetime(2026, 3, 1, tzinfo=timezone.utc),
        target_session_ids=sessions,
    )


@pytest.mark.asyncio
async def test_first_record_wins(dedup):
    assert await dedup.record(_record("m-1", "s1")) is True
    assert await dedup.record(_record("m-1", "s2")) is False

    stored = await dedup.get("m-1")
    assert stored.target_session_ids == ("s1",)


@pytest.mark.asyncio
async def test_records_expire_after_ttl(dedup, clock):
    await dedup.record(_record("m-1"))
    clock.advance(3599)
    assert await dedup.contains("m-1") is True

    clock.advance(2)
    assert await dedup.contains("m-1") is False
    assert await dedup.get("m-1") is None
    # Expired key can be recorded again
    assert await dedup.record(_record("m-1")) is True


@pytest.mark.asyncio
async def test_purge_expired(dedup, clock):
    for i in range(10):
        await dedup.record(_record(f"m-{i}"))
    clock.advance(1800)
    await dedup.record(_record("fresh"))
    clock.advance(1801)

    assert await dedup.purge_expired() == 10
    assert len(dedup) == 1
    assert await dedup.contains("fresh") is True


@pytest.mark.asyncio
async def test_concurrent_records_of_same_id_store_exactly_one():
    store = MemoryDedupStore(ttl_seconds=60, shards=8)
    results = await asyncio.gather(*(store.record(_record("m-1", f"s{i}")) for i in range(50)))
    assert results.count(True) == 1
    assert len(store) == 1


def test_delivery_record_dict_form():
    record = _record("m-1", "s1", "s2")
    data = record.to_dict()
    assert data["target_session_ids"] == ["s1", "s2"]
    assert DeliveryRecord.from_dict(data) == record


def test_get_dedup_store():
    store = get_dedup_store("memory", ttl_seconds=10, shards=2)
    assert isinstance(store, MemoryDedupStore)
    with pytest.raises(ValueError):
        get_dedup_store("dynamodb", ttl_seconds=10)
