from __future__ import annotations

import json
import logging
from typing import Dict, List, Optional
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import StreamingResponse
from starlette.concurrency import run_in_threadpool
from pydantic import ValidationError as PydanticValidationError

from ...security.rbac import require_permission, Permission
from ...security.auth import User
from ...security.rate_limit import ActionLimiter, RateLimitExceeded
from ...domain.errors import NotResumableError, StorageError, StreamNotFoundError
from ...domain.stream_models import (
    MarkInterruptedRequest,
    MarkInterruptedResponse,
    ResumableStreamSummary,
    StreamRecord,
)
from ...infrastructure.chat_store import get_chat_store
from ...services.conversation import content_writer, continuation_for
from ...services.generation import get_generator
from ...services.stream_lifecycle import get_stream_lifecycle
from ...services.stream_relay import get_stream_relay


logger = logging.getLogger("chatrelay.streams")

router = APIRouter(prefix="/streams", tags=["streams"])

interrupt_limiter = ActionLimiter("mark-interrupted", env_prefix="CHATRELAY_INTERRUPT")

STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}


def parse_message_id(raw: bytes) -> Optional[str]:
    """Extract the message id from a JSON body or a plain-text beacon payload."""
    text = raw.decode("utf-8", errors="replace").strip()
    if not text:
        return None
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        if text[0] in "{[\"":
            return None
        return text
    if isinstance(parsed, dict):
        try:
            return MarkInterruptedRequest.model_validate(parsed).message_id.strip() or None
        except PydanticValidationError:
            return None
    if isinstance(parsed, str):
        return parsed.strip() or None
    return None


def _client_key(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


@router.post("/mark-interrupted", response_model=MarkInterruptedResponse)
async def mark_interrupted(request: Request) -> MarkInterruptedResponse:
    # Unauthenticated: page-teardown beacons cannot attach headers
    message_id = parse_message_id(await request.body())
    if not message_id:
        logger.info("mark_interrupted_rejected reason=missing_message_id")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Message ID is required")
    try:
        interrupt_limiter.hit(_client_key(request))
    except RateLimitExceeded as exc:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many interruption reports",
            headers={"Retry-After": str(exc.retry_after_seconds)},
        )
    try:
        updated = await run_in_threadpool(get_stream_lifecycle().mark_interrupted, message_id)
    except StorageError:
        logger.exception("mark_interrupted_failed message=%s", message_id)
        raise HTTPException(status_code=500, detail="Failed to mark stream as interrupted")
    return MarkInterruptedResponse(updated=updated, message_id=message_id)


@router.get("/resumable", response_model=List[ResumableStreamSummary])
def list_resumable(
    thread_id: Optional[str] = Query(None, alias="threadId"),
    user: User = Depends(require_permission(Permission.STREAM_READ)),
) -> List[ResumableStreamSummary]:
    try:
        records = get_stream_lifecycle().list_resumable(user.id, thread_id=thread_id)
    except StorageError:
        logger.exception("list_resumable_failed user=%s", user.id)
        raise HTTPException(status_code=500, detail="Failed to fetch resumable streams")
    return [ResumableStreamSummary.from_record(r) for r in records]


def _owned_record(stream_id: str, user: User) -> StreamRecord:
    try:
        record = get_stream_lifecycle().get(stream_id)
    except StorageError:
        logger.exception("stream_lookup_failed stream=%s", stream_id)
        raise HTTPException(status_code=500, detail="Failed to load stream")
    if not record:
        raise HTTPException(status_code=404, detail="Stream not found")
    if record.user_id != user.id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Unauthorized")
    return record


@router.get("/{stream_id}/resume")
def resume_stream(
    stream_id: str,
    continue_generation: bool = Query(False, alias="continue"),
    user: User = Depends(require_permission(Permission.STREAM_WRITE)),
) -> StreamingResponse:
    _owned_record(stream_id, user)
    relay = get_stream_relay()
    try:
        record = relay.begin_resume(stream_id)
    except StreamNotFoundError:
        raise HTTPException(status_code=404, detail="Stream not found")
    except NotResumableError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"error": "Stream is not resumable", "status": exc.status},
        )
    except StorageError:
        logger.exception("resume_failed stream=%s", stream_id)
        raise HTTPException(status_code=500, detail="Failed to resume stream")

    store = get_chat_store()
    writer = content_writer(store, record.thread_id, record.message_id)
    continuation: Optional[List[Dict[str, str]]] = None
    if continue_generation and store.get_thread(record.thread_id):
        continuation = continuation_for(store, record.thread_id, record.message_id, record.partial_content)
    body = relay.replay(record, continuation=continuation, on_finish=writer, on_interrupt=writer)
    headers = dict(STREAM_HEADERS)
    headers["X-Stream-Id"] = record.id
    headers["X-Message-Id"] = record.message_id
    return StreamingResponse(body, media_type="text/plain; charset=utf-8", headers=headers)


@router.post("/{stream_id}/cancel", response_model=StreamRecord)
def cancel_stream(
    stream_id: str,
    user: User = Depends(require_permission(Permission.STREAM_WRITE)),
) -> StreamRecord:
    record = _owned_record(stream_id, user)
    get_generator().stop(record.message_id)
    try:
        cancelled = get_stream_lifecycle().cancel(stream_id)
    except StorageError:
        logger.exception("cancel_failed stream=%s", stream_id)
        raise HTTPException(status_code=500, detail="Failed to cancel stream")
    if cancelled is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"error": "Stream already finished", "status": record.status},
        )
    return cancelled


@router.post("/purge")
def purge_streams(user: User = Depends(require_permission(Permission.ADMIN))) -> Dict[str, int]:
    try:
        removed = get_stream_lifecycle().purge_terminal()
    except StorageError:
        logger.exception("purge_failed")
        raise HTTPException(status_code=500, detail="Failed to purge streams")
    return {"removed": removed}
