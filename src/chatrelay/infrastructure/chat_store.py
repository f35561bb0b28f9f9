from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from threading import RLock
from typing import Any, Dict, List, Optional, Protocol
import uuid

from ..domain.chat_models import ChatMessage, ChatThread


class ChatStore(Protocol):
    def create_thread(self, created_by: str, title: Optional[str] = None, persona: Optional[str] = None) -> ChatThread: ...

    def get_thread(self, thread_id: str) -> Optional[ChatThread]: ...

    def list_threads(self, created_by: str) -> List[ChatThread]: ...

    def add_message(
        self,
        thread_id: str,
        role: str,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ChatMessage: ...

    def get_message(self, thread_id: str, message_id: str) -> Optional[ChatMessage]: ...

    def update_message_content(self, thread_id: str, message_id: str, content: str) -> ChatMessage: ...

    def set_attempts(
        self,
        thread_id: str,
        message_id: str,
        attempts: List[ChatMessage],
        current_attempt_index: Optional[int] = None,
    ) -> ChatMessage: ...

    def list_messages(self, thread_id: str) -> List[ChatMessage]: ...


@dataclass
class _Thread:
    thread_id: str
    title: str
    created_at: str
    updated_at: str
    created_by: str
    persona: Optional[str]


@dataclass
class _Message:
    message_id: str
    thread_id: str
    role: str
    content: str
    created_at: str
    metadata: Dict[str, Any] | None = None
    attempts: List[ChatMessage] | None = None
    current_attempt_index: Optional[int] = None


class InMemoryChatStore:
    def __init__(self) -> None:
        self._threads: Dict[str, _Thread] = {}
        self._messages: Dict[str, List[_Message]] = {}
        self._lock = RLock()

    def _now_iso(self) -> str:
        return datetime.now(UTC).isoformat().replace("+00:00", "Z")

    def _thread_model(self, thread: _Thread) -> ChatThread:
        return ChatThread(**thread.__dict__)

    def _message_model(self, message: _Message) -> ChatMessage:
        data = dict(message.__dict__)
        if message.attempts is not None:
            data["attempts"] = [a.model_copy(deep=True) for a in message.attempts]
        return ChatMessage(**data)

    def _find(self, thread_id: str, message_id: str) -> Optional[_Message]:
        for msg in self._messages.get(thread_id, []):
            if msg.message_id == message_id:
                return msg
        return None

    def create_thread(self, created_by: str, title: Optional[str] = None, persona: Optional[str] = None) -> ChatThread:
        with self._lock:
            tid = uuid.uuid4().hex
            now = self._now_iso()
            thread = _Thread(
                thread_id=tid,
                title=title or "New Chat",
                created_at=now,
                updated_at=now,
                created_by=created_by,
                persona=persona,
            )
            self._threads[tid] = thread
            self._messages[tid] = []
            return self._thread_model(thread)

    def get_thread(self, thread_id: str) -> Optional[ChatThread]:
        with self._lock:
            thread = self._threads.get(thread_id)
            if not thread:
                return None
            return self._thread_model(thread)

    def list_threads(self, created_by: str) -> List[ChatThread]:
        with self._lock:
            out = [self._thread_model(t) for t in self._threads.values() if t.created_by == created_by]
            # Newest first
            return sorted(out, key=lambda t: t.updated_at, reverse=True)

    def add_message(
        self,
        thread_id: str,
        role: str,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ChatMessage:
        with self._lock:
            if thread_id not in self._threads:
                raise KeyError("Thread not found")
            now = self._now_iso()
            msg = _Message(
                message_id=uuid.uuid4().hex,
                thread_id=thread_id,
                role=role,
                content=content,
                created_at=now,
                metadata=dict(metadata) if metadata else None,
            )
            self._messages.setdefault(thread_id, []).append(msg)
            # bump thread updated_at
            self._threads[thread_id].updated_at = now
            return self._message_model(msg)

    def get_message(self, thread_id: str, message_id: str) -> Optional[ChatMessage]:
        with self._lock:
            msg = self._find(thread_id, message_id)
            return self._message_model(msg) if msg else None

    def update_message_content(self, thread_id: str, message_id: str, content: str) -> ChatMessage:
        with self._lock:
            msg = self._find(thread_id, message_id)
            if not msg:
                raise KeyError("Message not found")
            msg.content = content
            return self._message_model(msg)

    def set_attempts(
        self,
        thread_id: str,
        message_id: str,
        attempts: List[ChatMessage],
        current_attempt_index: Optional[int] = None,
    ) -> ChatMessage:
        with self._lock:
            msg = self._find(thread_id, message_id)
            if not msg:
                raise KeyError("Message not found")
            index = len(attempts) - 1 if current_attempt_index is None else current_attempt_index
            shown = attempts[index].content if 0 <= index < len(attempts) else msg.content
            # Validate before mutating the stored row
            candidate = ChatMessage(
                message_id=msg.message_id,
                thread_id=msg.thread_id,
                role=msg.role,  # type: ignore[arg-type]
                content=shown,
                created_at=msg.created_at,
                metadata=msg.metadata,
                attempts=[a.model_copy(deep=True) for a in attempts],
                current_attempt_index=index,
            )
            msg.content = candidate.content
            msg.attempts = candidate.attempts
            msg.current_attempt_index = index
            # Regenerated replies now live inside the attempts; drop their standalone rows
            folded = {a.message_id for a in attempts} - {message_id}
            if folded:
                self._messages[thread_id] = [m for m in self._messages[thread_id] if m.message_id not in folded]
            return self._message_model(msg)

    def list_messages(self, thread_id: str) -> List[ChatMessage]:
        with self._lock:
            return [self._message_model(m) for m in self._messages.get(thread_id, [])]


_store: ChatStore | None = None


def get_chat_store() -> ChatStore:
    global _store
    if _store is not None:
        return _store
    _store = InMemoryChatStore()
    return _store
