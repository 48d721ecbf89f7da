"""Completion event and notification wire schemas.

Learn: CompletionEvent is what the generation pipeline publishes; the
notification payload is what a client receives. They are separate models
because the client-facing schema is a stable contract that must not change
when the pipeline adds fields to its own events.

Wire format uses camelCase keys (jobId, subjectId...). Python code uses
snake_case attributes; pydantic aliases translate between the two.
"""

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from jobrelay.errors import MalformedMessageError


class JobStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETE = "COMPLETE"
    ERROR = "ERROR"


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class NotificationPayload(BaseModel):
    """The JSON object pushed to a client session."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    job_id: str = Field(alias="jobId")
    status: JobStatus
    result_url: Optional[str] = Field(None, alias="resultUrl")
    width: Optional[int] = None
    height: Optional[int] = None
    model: str
    created_at: datetime = Field(alias="createdAt")
    updated_at: datetime = Field(alias="updatedAt")

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class CompletionEvent(BaseModel):
    """A job status change, immutable once constructed.

    `attempt` is the broker's receive count for the message that carried
    this event. It is delivery metadata, not business state, and is never
    serialized back onto the wire.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    job_id: str = Field(alias="jobId", min_length=1)
    subject_id: str = Field(alias="subjectId", min_length=1)
    status: JobStatus
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(alias="createdAt")
    updated_at: datetime = Field(alias="updatedAt")
    attempt: int = Field(0, ge=0)

    @field_validator("created_at", "updated_at")
    @classmethod
    def _normalize_timestamp(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @model_validator(mode="after")
    def _payload_fits_notification(self) -> "CompletionEvent":
        # Every event must render as a client notification
        try:
            self.to_notification()
        except ValidationError as e:
            fields = ", ".join(".".join(map(str, err["loc"])) for err in e.errors())
            raise ValueError(f"payload does not fit the notification schema: {fields}") from e
        return self

    @property
    def idempotency_key(self) -> str:
        """Job id plus update timestamp — one key per status transition."""
        return f"{self.job_id}:{self.updated_at.isoformat()}"

    @classmethod
    def from_wire(cls, body: str | bytes, attempt: int = 0) -> "CompletionEvent":
        """Parse a queue message body.

        Raises MalformedMessageError for anything that is not a valid event,
        so callers only have to handle one exception type.
        """
        try:
            data = json.loads(body)
        except (TypeError, ValueError) as e:
            raise MalformedMessageError(f"Body is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise MalformedMessageError("Body must be a JSON object")
        data.pop("attempt", None)
        try:
            return cls.model_validate({**data, "attempt": attempt})
        except ValidationError as e:
            raise MalformedMessageError(
                f"Invalid completion event: {e.error_count()} validation error(s)"
            ) from e

    def to_wire(self) -> str:
        return self.model_dump_json(by_alias=True, exclude={"attempt"})

    def with_attempt(self, attempt: int) -> "CompletionEvent":
        return self.model_copy(update={"attempt": attempt})

    def to_notification(self) -> NotificationPayload:
        """Project the event onto the client-facing schema.

        The pipeline's payload may use either camelCase or snake_case keys;
        anything not in the notification schema is dropped.
        """
        p = self.payload
        return NotificationPayload(
            job_id=self.job_id,
            status=self.status,
            result_url=p.get("resultUrl") or p.get("result_url"),
            width=p.get("width"),
            height=p.get("height"),
            model=str(p.get("model") or "unknown"),
            created_at=self.created_at,
            updated_at=self.updated_at,
        )
