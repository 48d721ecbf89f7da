"""SQL outbox — pending publications in the outbox_entries table.

Learn: Each operation opens its own session from the factory, the same
way the background workers get transaction isolation. A unique constraint
on idempotency_key makes add() safe to retry: the second insert fails with
IntegrityError and is reported as "already present".
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobrelay.db.models import OutboxRecord
from jobrelay.publisher.outbox import Outbox, OutboxEntry


def _to_entry(row: OutboxRecord) -> OutboxEntry:
    return OutboxEntry(
        idempotency_key=row.idempotency_key,
        message_id=row.message_id,
        topic=row.topic,
        body=row.body,
        created_at=row.created_at,
        published_at=row.published_at,
        attempts=row.attempts,
        last_error=row.last_error,
    )


class SqlOutbox(Outbox):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._sessions = session_factory

    async def add(self, entry: OutboxEntry) -> bool:
        async with self._sessions() as db:
            db.add(
                OutboxRecord(
                    idempotency_key=entry.idempotency_key,
                    message_id=entry.message_id,
                    topic=entry.topic,
                    body=entry.body,
                    created_at=entry.created_at,
                )
            )
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                return False
        return True

    async def get(self, key: str) -> Optional[OutboxEntry]:
        async with self._sessions() as db:
            row = await db.get(OutboxRecord, key)
            return _to_entry(row) if row else None

    async def discard(self, key: str) -> None:
        async with self._sessions() as db:
            await db.execute(delete(OutboxRecord).where(OutboxRecord.idempotency_key == key))
            await db.commit()

    async def mark_published(self, key: str) -> None:
        async with self._sessions() as db:
            await db.execute(
                update(OutboxRecord)
                .where(OutboxRecord.idempotency_key == key)
                .values(
                    published_at=datetime.now(timezone.utc),
                    attempts=OutboxRecord.attempts + 1,
                    last_error=None,
                )
            )
            await db.commit()

    async def record_failure(self, key: str, error: str) -> None:
        async with self._sessions() as db:
            await db.execute(
                update(OutboxRecord)
                .where(OutboxRecord.idempotency_key == key)
                .values(attempts=OutboxRecord.attempts + 1, last_error=error[:1000])
            )
            await db.commit()

    async def pending(self, older_than: timedelta, limit: int = 100) -> list[OutboxEntry]:
        cutoff = datetime.now(timezone.utc) - older_than
        async with self._sessions() as db:
            result = await db.execute(
                select(OutboxRecord)
                .where(OutboxRecord.published_at.is_(None), OutboxRecord.created_at <= cutoff)
                .order_by(OutboxRecord.created_at.asc())
                .limit(limit)
            )
            return [_to_entry(row) for row in result.scalars().all()]
