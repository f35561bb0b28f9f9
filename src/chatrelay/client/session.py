from __future__ import annotations

"""One chat thread as seen by a client: live messages, regeneration and stream bookkeeping."""

import logging
from typing import Awaitable, Callable, List, Optional, Protocol, Sequence, TypeVar

from ..domain.chat_models import ChatMessage
from ..domain.errors import ValidationError
from .attempts import AttemptNavigator, AttemptStore
from .interceptor import MessageFeed, MessageInterceptor
from .regeneration import RegenerationCoordinator
from .stream_tracker import ClientStreamTracker


logger = logging.getLogger("chatrelay.client")

T = TypeVar("T")

StreamStarted = Callable[[str], None]
# Produces the regenerated reply. A returned message not yet in the feed is appended;
# callables that push into the feed themselves return None.
Generate = Callable[[ChatMessage, StreamStarted], Awaitable[Optional[ChatMessage]]]


class ChatBackend(Protocol):
    async def mark_interrupted(self, message_id: str): ...

    async def send_message(self, thread_id: str, content: str, on_started: Optional[StreamStarted] = None) -> ChatMessage: ...

    async def regenerate(self, thread_id: str, message_id: str, on_started: Optional[StreamStarted] = None) -> ChatMessage: ...

    async def save_attempts(self, thread_id: str, message: ChatMessage) -> ChatMessage: ...


class ChatClientSession:
    def __init__(
        self,
        thread_id: str,
        backend: ChatBackend,
        *,
        messages: Optional[Sequence[ChatMessage]] = None,
        tracker: Optional[ClientStreamTracker] = None,
        strict: bool = False,
        persist_attempts: bool = True,
    ) -> None:
        self.thread_id = thread_id
        self._backend = backend
        self._persist_attempts = persist_attempts
        self._captured: List[ChatMessage] = []
        self.feed = MessageFeed(messages)
        self.attempts = AttemptStore()
        for msg in self.feed.messages:
            if msg.attempts:
                self.attempts.record(msg)
        self.coordinator = RegenerationCoordinator(on_message_update=self._on_message_update, strict=strict)
        self.interceptor = MessageInterceptor(self.coordinator, self.feed)
        self.tracker = tracker or ClientStreamTracker(backend)

    @property
    def messages(self) -> List[ChatMessage]:
        return self.feed.messages

    def _on_message_update(self, merged: ChatMessage) -> None:
        self.attempts.record(merged)
        self._captured.append(merged)

    async def _tracked(self, run: Callable[[StreamStarted], Awaitable[T]]) -> T:
        started: List[str] = []

        def on_started(message_id: str) -> None:
            started.append(message_id)
            self.tracker.register(message_id)

        try:
            return await run(on_started)
        finally:
            for message_id in started:
                self.tracker.unregister(message_id)

    async def send(self, content: str) -> ChatMessage:
        self.feed.append(ChatMessage(message_id=f"local-{len(self.feed)}", role="user", content=content, thread_id=self.thread_id))
        reply = await self._tracked(lambda on_started: self._backend.send_message(self.thread_id, content, on_started))
        self.feed.append(reply)
        return reply

    async def regenerate(self, message_id: str, generate: Optional[Generate] = None) -> Optional[ChatMessage]:
        """Regenerate an assistant message; returns it merged with the new attempt.

        Returns None when no new response was captured. The coordinator is idle
        again on every exit path, including cancellation.
        """
        message = self.feed.get(message_id)
        if message is None:
            raise KeyError(message_id)
        if message.role != "assistant":
            raise ValidationError("Only assistant messages can be regenerated")
        if generate is None:
            generate = self._backend_generate

        position = self.feed.index_of(message_id)
        self.coordinator.start_regeneration(message_id, message)
        self.feed.remove(message_id)
        merged: Optional[ChatMessage] = None
        try:
            reply = await self._tracked(lambda on_started: generate(message, on_started))
            if reply is not None and self.feed.get(reply.message_id) is None:
                self.feed.append(reply)
        finally:
            if self.coordinator.is_regenerating:
                self.coordinator.finish_regeneration()
            if self._captured:
                merged = self.attempts.apply(self._captured.pop())
                self._captured.clear()
            if merged is not None:
                self._reposition(merged, position)
            elif self.feed.get(message_id) is None:
                # Nothing captured; put the original back where it was
                self.feed.insert(position if position is not None else len(self.feed), message)
        if merged is not None and self._persist_attempts:
            await self._backend.save_attempts(self.thread_id, merged)
        return merged

    def _reposition(self, merged: ChatMessage, position: Optional[int]) -> None:
        # The reply lands at the tail; the regenerated message keeps its place in the thread
        index = position if position is not None else len(self.feed)
        if self.feed.get(merged.message_id) is None:
            self.feed.insert(index, merged)
            return
        self.feed.replace(merged.message_id, merged)
        self.feed.move(merged.message_id, index)

    async def _backend_generate(self, message: ChatMessage, on_started: StreamStarted) -> Optional[ChatMessage]:
        return await self._backend.regenerate(self.thread_id, message.message_id, on_started)

    def navigator(self, message_id: str) -> Optional[AttemptNavigator]:
        return self.attempts.navigator(message_id)

    def _show_attempt(self, message_id: str) -> Optional[ChatMessage]:
        message = self.feed.get(message_id)
        if message is None:
            return None
        shown = self.attempts.apply(message)
        self.feed.replace(message_id, shown)
        return shown

    def previous_attempt(self, message_id: str) -> Optional[ChatMessage]:
        self.attempts.previous(message_id)
        return self._show_attempt(message_id)

    def next_attempt(self, message_id: str) -> Optional[ChatMessage]:
        self.attempts.next(message_id)
        return self._show_attempt(message_id)

    def select_attempt(self, message_id: str, index: int) -> Optional[ChatMessage]:
        self.attempts.select(message_id, index)
        return self._show_attempt(message_id)

    async def close(self) -> None:
        if self.coordinator.is_regenerating:
            logger.info("session_closed_mid_regeneration message=%s", self.coordinator.regenerating_message_id)
            self.coordinator.finish_regeneration()
        await self.tracker.teardown()
        self.interceptor.detach()
