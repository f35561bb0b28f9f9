from __future__ import annotations

from typing import Dict, List, Optional
import logging

from ..infrastructure.chat_store import ChatStore


logger = logging.getLogger(__name__)

HISTORY_LIMIT = 20
CONTINUE_PROMPT = "Continue exactly where you left off, without repeating anything already written."


def history_before(store: ChatStore, thread_id: str, message_id: Optional[str] = None, limit: int = HISTORY_LIMIT) -> List[Dict[str, str]]:
    """Role/content turns preceding ``message_id`` (or the whole thread), oldest first.

    Empty placeholder messages, i.e. assistant replies still being streamed, are skipped.
    """
    turns: List[Dict[str, str]] = []
    for msg in store.list_messages(thread_id):
        if message_id is not None and msg.message_id == message_id:
            break
        if not msg.content:
            continue
        turns.append({"role": msg.role, "content": msg.content})
    return turns[-limit:] if limit > 0 else turns


def continuation_for(store: ChatStore, thread_id: str, message_id: str, partial: str) -> List[Dict[str, str]]:
    turns = history_before(store, thread_id, message_id)
    if partial:
        turns.append({"role": "assistant", "content": partial})
        turns.append({"role": "user", "content": CONTINUE_PROMPT})
    return turns


def content_writer(store: ChatStore, thread_id: str, message_id: str):
    """Callback persisting streamed text onto the assistant message."""

    def write(text: str) -> None:
        try:
            store.update_message_content(thread_id, message_id, text)
        except KeyError:
            logger.warning("stream_target_message_missing thread=%s message=%s", thread_id, message_id)

    return write
