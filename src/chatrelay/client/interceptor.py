from __future__ import annotations

"""Detect the response produced by a regeneration and splice in the merged message.

Two detection paths are recognised while the coordinator is regenerating:

* append: the message list grows by exactly one and the newest entry is an
  assistant message other than the one being regenerated;
* mutation: the list length is unchanged and the regenerated message's content
  differs from both the original snapshot and the last observed content.

A ``MessageFeed`` emits discrete events for both paths. ``observe`` covers
callers that only have successive snapshots of the list.
"""

from dataclasses import dataclass
import logging
from typing import Callable, List, Optional, Sequence, Union

from ..domain.chat_models import ChatMessage
from .regeneration import RegenerationCoordinator


logger = logging.getLogger("chatrelay.client")


@dataclass(frozen=True)
class MessageAppended:
    message: ChatMessage
    count: int


@dataclass(frozen=True)
class MessageContentChanged:
    message: ChatMessage
    previous_content: str
    count: int


@dataclass(frozen=True)
class MessageRemoved:
    message: ChatMessage
    count: int


MessageEvent = Union[MessageAppended, MessageContentChanged, MessageRemoved]
Listener = Callable[[MessageEvent], None]


class MessageFeed:
    """Ordered message list that notifies listeners of appends, edits and removals.

    ``insert``, ``replace``, ``replace_last`` and ``move`` change the list
    silently so a listener may rewrite the list from inside its own callback.
    """

    def __init__(self, messages: Optional[Sequence[ChatMessage]] = None) -> None:
        self._messages: List[ChatMessage] = list(messages or [])
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, event: MessageEvent) -> None:
        for listener in list(self._listeners):
            listener(event)

    @property
    def messages(self) -> List[ChatMessage]:
        return list(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def index_of(self, message_id: str) -> Optional[int]:
        for i, msg in enumerate(self._messages):
            if msg.message_id == message_id:
                return i
        return None

    def get(self, message_id: str) -> Optional[ChatMessage]:
        index = self.index_of(message_id)
        return self._messages[index] if index is not None else None

    def append(self, message: ChatMessage) -> None:
        self._messages.append(message)
        self._emit(MessageAppended(message=message, count=len(self._messages)))

    def insert(self, index: int, message: ChatMessage) -> None:
        self._messages.insert(index, message)

    def update_content(self, message_id: str, content: str) -> ChatMessage:
        index = self.index_of(message_id)
        if index is None:
            raise KeyError(message_id)
        previous = self._messages[index]
        if previous.content == content:
            return previous
        updated = previous.model_copy(update={"content": content})
        self._messages[index] = updated
        self._emit(MessageContentChanged(message=updated, previous_content=previous.content, count=len(self._messages)))
        return updated

    def remove(self, message_id: str) -> ChatMessage:
        index = self.index_of(message_id)
        if index is None:
            raise KeyError(message_id)
        removed = self._messages.pop(index)
        self._emit(MessageRemoved(message=removed, count=len(self._messages)))
        return removed

    def replace(self, message_id: str, message: ChatMessage) -> None:
        index = self.index_of(message_id)
        if index is None:
            raise KeyError(message_id)
        self._messages[index] = message

    def replace_last(self, message: ChatMessage) -> None:
        if not self._messages:
            raise IndexError("feed is empty")
        self._messages[-1] = message

    def move(self, message_id: str, index: int) -> None:
        current = self.index_of(message_id)
        if current is None:
            raise KeyError(message_id)
        message = self._messages.pop(current)
        self._messages.insert(min(max(index, 0), len(self._messages)), message)


class MessageInterceptor:
    def __init__(
        self,
        coordinator: RegenerationCoordinator,
        feed: Optional[MessageFeed] = None,
        on_splice: Optional[Callable[[List[ChatMessage]], None]] = None,
    ) -> None:
        self._coordinator = coordinator
        self._feed = feed
        self._on_splice = on_splice
        self._last_count = len(feed) if feed is not None else 0
        self._last_content: Optional[str] = None
        self._unsubscribe: Optional[Callable[[], None]] = None
        if feed is not None:
            self._unsubscribe = feed.subscribe(self.handle)

    def detach(self) -> None:
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None

    def _appended_attempt(self, message: ChatMessage) -> Optional[ChatMessage]:
        if message.role != "assistant" or message.message_id == self._coordinator.regenerating_message_id:
            return None
        return self._coordinator.capture_new_attempt(message)

    def _mutated_attempt(self, message: ChatMessage) -> Optional[ChatMessage]:
        original = self._coordinator.original_message
        if original is None or message.message_id != self._coordinator.regenerating_message_id:
            return None
        baseline = self._last_content if self._last_content is not None else original.content
        if message.content == original.content or message.content == baseline:
            return None
        return self._coordinator.capture_new_attempt(message)

    def _track(self, message: Optional[ChatMessage], count: int) -> None:
        self._last_count = count
        if self._coordinator.is_regenerating and message is not None:
            self._last_content = message.content
        else:
            self._last_content = None

    def handle(self, event: MessageEvent) -> None:
        """Feed subscription entry point."""
        merged: Optional[ChatMessage] = None
        tracked: Optional[ChatMessage] = None
        rid = self._coordinator.regenerating_message_id
        if rid is not None:
            if isinstance(event, MessageAppended) and event.count == self._last_count + 1:
                merged = self._appended_attempt(event.message)
            elif isinstance(event, MessageContentChanged) and event.count == self._last_count:
                merged = self._mutated_attempt(event.message)
            if self._feed is not None:
                tracked = self._feed.get(rid)
            elif event.message.message_id == rid and not isinstance(event, MessageRemoved):
                tracked = event.message
        self._track(tracked, event.count)
        if merged is None or self._feed is None:
            return
        if isinstance(event, MessageAppended):
            self._feed.replace_last(merged)
        else:
            self._feed.replace(event.message.message_id, merged)
        logger.info("attempt_captured message=%s attempts=%d", merged.message_id, merged.attempt_count)
        if self._on_splice:
            self._on_splice(self._feed.messages)

    def observe(self, messages: Sequence[ChatMessage]) -> Optional[List[ChatMessage]]:
        """Evaluate a snapshot of the list; returns the spliced list when an attempt was captured."""
        current = list(messages)
        merged: Optional[ChatMessage] = None
        position = -1
        rid = self._coordinator.regenerating_message_id
        tracked: Optional[ChatMessage] = None
        if rid is not None:
            tracked = next((m for m in current if m.message_id == rid), None)
            if len(current) == self._last_count + 1 and current:
                merged = self._appended_attempt(current[-1])
                position = len(current) - 1
            elif len(current) == self._last_count and tracked is not None:
                merged = self._mutated_attempt(tracked)
                position = current.index(tracked)
        self._track(tracked, len(current))
        if merged is None:
            return None
        current[position] = merged
        logger.info("attempt_captured message=%s attempts=%d", merged.message_id, merged.attempt_count)
        if self._on_splice:
            self._on_splice(current)
        return current
