"""Async SQLAlchemy engine and session factory for the outbox.

Learn: SQLAlchemy 2.0 async mode — create_async_engine for connection
pooling, async_sessionmaker for per-operation sessions. Only imported when
the SQL outbox is enabled, so the relay runs without a database otherwise.
"""

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from jobrelay.config import settings

# echo=True in dev to see SQL queries.
engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    pool_size=5,
    max_overflow=5,
)

# Session factory — each outbox operation gets its own session.
async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)
