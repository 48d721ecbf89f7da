"""Operator routes — stats, sessions, dead letters, publish.

Learn: Dead-lettered messages need manual, out-of-band reprocessing.
These routes let an operator see what landed in the dead-letter path and
redrive a message back onto the main queue once the cause is fixed. The
redriven message starts with a fresh receive count.
"""

from fastapi import APIRouter, Depends, HTTPException, Query

from jobrelay.api.dependencies import get_runtime
from jobrelay.errors import TransientBrokerError
from jobrelay.realtime.session import describe
from jobrelay.runtime import RelayRuntime
from jobrelay.schemas.admin import DeadLetterRead, PublishResult, RedriveResult, StatsRead
from jobrelay.schemas.event import CompletionEvent

router = APIRouter()


@router.get("/stats", response_model=StatsRead)
async def get_stats(runtime: RelayRuntime = Depends(get_runtime)):
    return await runtime.snapshot()


@router.get("/sessions")
async def list_sessions(
    subject_id: str | None = Query(None),
    runtime: RelayRuntime = Depends(get_runtime),
):
    registry = runtime.registry
    sessions = registry.lookup(subject_id) if subject_id else registry.sessions()
    return [describe(s) for s in sessions]


@router.get("/dead-letters", response_model=list[DeadLetterRead])
async def list_dead_letters(
    limit: int = Query(100, ge=1, le=1000),
    runtime: RelayRuntime = Depends(get_runtime),
):
    try:
        items = await runtime.broker.dead_letters(runtime.settings.queue, limit=limit)
    except TransientBrokerError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return [
        DeadLetterRead(
            message_id=d.message_id,
            queue=d.queue,
            receive_count=d.receive_count,
            dead_lettered_at=d.dead_lettered_at,
            body=d.body,
        )
        for d in items
    ]


@router.post("/dead-letters/{message_id}/redrive", response_model=RedriveResult)
async def redrive_dead_letter(message_id: str, runtime: RelayRuntime = Depends(get_runtime)):
    try:
        redriven = await runtime.broker.redrive(runtime.settings.queue, message_id)
    except TransientBrokerError as e:
        raise HTTPException(status_code=503, detail=str(e))
    if not redriven:
        raise HTTPException(status_code=404, detail="Dead-lettered message not found")
    return RedriveResult(message_id=message_id, redriven=True)


@router.post("/jobs/{job_id}/completion", response_model=PublishResult, status_code=202)
async def publish_completion(
    job_id: str,
    event: CompletionEvent,
    runtime: RelayRuntime = Depends(get_runtime),
):
    """Publisher ingestion: status write + broker publish through the outbox."""
    if event.job_id != job_id:
        raise HTTPException(status_code=422, detail="jobId in body does not match path")
    return await runtime.publisher.publish_completion(event)
