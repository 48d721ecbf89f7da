"""Pydantic schemas for the operational HTTP routes."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


class DeadLetterRead(BaseModel):
    message_id: str
    queue: str
    receive_count: int
    dead_lettered_at: datetime
    body: str


class RedriveResult(BaseModel):
    message_id: str
    redriven: bool


class PublishResult(BaseModel):
    idempotency_key: str
    message_id: str
    published: bool
    error: Optional[str] = None


class StatsRead(BaseModel):
    stats: dict[str, Any]
    live_sessions: int
    live_subjects: int
    buffered_events: int
    queue_depth: int
    dead_letter_depth: int
    workers: int = Field(0, ge=0)
