from __future__ import annotations

import logging
from typing import Dict, List, Optional
from fastapi import APIRouter, HTTPException, status, Depends
from fastapi.responses import StreamingResponse
from pydantic import ValidationError as PydanticValidationError

from ...security.rbac import require_permission, Permission
from ...security.auth import User
from ...domain.chat_models import (
    AttemptsUpdate,
    ChatMessage,
    ChatMessageCreate,
    ChatThread,
    ChatThreadCreate,
    ChatThreadWithMessages,
)
from ...domain.errors import StorageError
from ...infrastructure.chat_store import ChatStore, get_chat_store
from ...services.conversation import content_writer, history_before
from ...services.generation import get_generator
from ...services.stream_lifecycle import get_stream_lifecycle
from ...services.stream_relay import get_stream_relay
from .streams import STREAM_HEADERS


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/chat", tags=["chat"])


def _owned_thread(store: ChatStore, thread_id: str, user: User) -> ChatThread:
    thread = store.get_thread(thread_id)
    if not thread:
        raise HTTPException(status_code=404, detail="Thread not found")
    if thread.created_by != user.id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Unauthorized")
    return thread


@router.post("/threads", response_model=ChatThread, status_code=status.HTTP_201_CREATED)
def create_thread(req: ChatThreadCreate, user: User = Depends(require_permission(Permission.CHAT_WRITE))) -> ChatThread:
    return get_chat_store().create_thread(created_by=user.id, title=req.title, persona=req.persona)


@router.get("/threads", response_model=List[ChatThread])
def list_threads(user: User = Depends(require_permission(Permission.CHAT_READ))) -> List[ChatThread]:
    return get_chat_store().list_threads(user.id)


@router.get("/threads/{thread_id}", response_model=ChatThreadWithMessages)
def get_thread(thread_id: str, user: User = Depends(require_permission(Permission.CHAT_READ))) -> ChatThreadWithMessages:
    store = get_chat_store()
    thread = _owned_thread(store, thread_id, user)
    return ChatThreadWithMessages(thread=thread, messages=store.list_messages(thread_id))


@router.get("/threads/{thread_id}/messages", response_model=List[ChatMessage])
def list_messages(thread_id: str, user: User = Depends(require_permission(Permission.CHAT_READ))) -> List[ChatMessage]:
    store = get_chat_store()
    _owned_thread(store, thread_id, user)
    return store.list_messages(thread_id)


def _stream_reply(
    store: ChatStore,
    thread_id: str,
    assistant: ChatMessage,
    user: User,
    model: Optional[str],
    history: List[Dict[str, str]],
    extra_headers: Optional[Dict[str, str]] = None,
) -> StreamingResponse:
    lifecycle = get_stream_lifecycle()
    try:
        record = lifecycle.restart(thread_id, assistant.message_id, user.id, model=model)
    except StorageError:
        logger.exception("stream_start_failed thread=%s message=%s", thread_id, assistant.message_id)
        raise HTTPException(status_code=500, detail="Failed to start stream")
    writer = content_writer(store, thread_id, assistant.message_id)
    body = get_stream_relay().generate(record, history, on_finish=writer, on_interrupt=writer)
    headers = dict(STREAM_HEADERS)
    headers["X-Stream-Id"] = record.id
    headers["X-Message-Id"] = assistant.message_id
    headers.update(extra_headers or {})
    return StreamingResponse(body, media_type="text/plain; charset=utf-8", headers=headers)


@router.post("/threads/{thread_id}/messages")
def post_message(
    thread_id: str,
    msg: ChatMessageCreate,
    user: User = Depends(require_permission(Permission.CHAT_WRITE)),
) -> StreamingResponse:
    store = get_chat_store()
    _owned_thread(store, thread_id, user)

    store.add_message(thread_id, role="user", content=msg.content)
    history = history_before(store, thread_id)
    # Empty placeholder; content is filled in as the stream finishes or is interrupted
    assistant = store.add_message(thread_id, role="assistant", content="", metadata={"model": msg.model})
    return _stream_reply(store, thread_id, assistant, user, msg.model, history)


@router.post("/threads/{thread_id}/messages/{message_id}/regenerate")
def regenerate_message(
    thread_id: str,
    message_id: str,
    user: User = Depends(require_permission(Permission.CHAT_WRITE)),
) -> StreamingResponse:
    store = get_chat_store()
    _owned_thread(store, thread_id, user)
    original = store.get_message(thread_id, message_id)
    if not original:
        raise HTTPException(status_code=404, detail="Message not found")
    if original.role != "assistant":
        raise HTTPException(status_code=400, detail="Only assistant messages can be regenerated")

    # Any stream still producing the original must stop before a new one starts
    get_generator().stop(message_id)
    try:
        get_stream_lifecycle().mark_interrupted(message_id)
    except StorageError:
        logger.exception("regenerate_interrupt_failed message=%s", message_id)
        raise HTTPException(status_code=500, detail="Failed to stop previous stream")

    history = history_before(store, thread_id, message_id)
    model = (original.metadata or {}).get("model")
    assistant = store.add_message(
        thread_id,
        role="assistant",
        content="",
        metadata={"model": model, "regenerates": message_id},
    )
    return _stream_reply(
        store,
        thread_id,
        assistant,
        user,
        model,
        history,
        extra_headers={"X-Regenerating-Message-Id": message_id},
    )


@router.put("/threads/{thread_id}/messages/{message_id}/attempts", response_model=ChatMessage)
def save_attempts(
    thread_id: str,
    message_id: str,
    req: AttemptsUpdate,
    user: User = Depends(require_permission(Permission.CHAT_WRITE)),
) -> ChatMessage:
    store = get_chat_store()
    _owned_thread(store, thread_id, user)
    try:
        return store.set_attempts(thread_id, message_id, req.attempts, req.current_attempt_index)
    except KeyError:
        raise HTTPException(status_code=404, detail="Message not found")
    except PydanticValidationError as exc:
        raise HTTPException(status_code=422, detail=exc.errors(include_url=False, include_context=False, include_input=False))
