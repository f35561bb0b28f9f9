from __future__ import annotations

"""Captured regeneration attempts per message and the cursor choosing which one is shown."""

from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from ..domain.chat_models import ChatMessage


def previous_index(index: int, total: int) -> int:
    return max(0, min(index, total - 1) - 1) if total > 0 else 0


def next_index(index: int, total: int) -> int:
    return min(total - 1, index + 1) if total > 0 else 0


@dataclass(frozen=True)
class AttemptNavigator:
    message_id: str
    index: int
    total: int

    @property
    def has_previous(self) -> bool:
        return self.index > 0

    @property
    def has_next(self) -> bool:
        return self.index < self.total - 1

    @property
    def label(self) -> str:
        return f"{self.index + 1}/{self.total}"


class AttemptStore:
    def __init__(self) -> None:
        self._attempts: Dict[str, Tuple[ChatMessage, ...]] = {}
        self._cursor: Dict[str, int] = {}

    def record(self, message: ChatMessage) -> None:
        """Store the attempts carried by a regenerated message.

        Captured attempts are never rewritten; a later capture may only extend them.
        """
        if not message.attempts or len(message.attempts) < 2:
            raise ValueError("message carries no attempts")
        existing = self._attempts.get(message.message_id, ())
        if len(message.attempts) < len(existing):
            raise ValueError("attempts cannot shrink once captured")
        self._attempts[message.message_id] = tuple(a.model_copy(deep=True) for a in message.attempts)
        index = message.current_attempt_index
        if index is None or not 0 <= index < len(message.attempts):
            index = len(message.attempts) - 1
        self._cursor[message.message_id] = index

    def attempts(self, message_id: str) -> Tuple[ChatMessage, ...]:
        return self._attempts.get(message_id, ())

    def count(self, message_id: str) -> int:
        return len(self._attempts.get(message_id, ()))

    def current_index(self, message_id: str) -> Optional[int]:
        return self._cursor.get(message_id)

    def current(self, message_id: str) -> Optional[ChatMessage]:
        index = self._cursor.get(message_id)
        if index is None:
            return None
        return self._attempts[message_id][index]

    def previous(self, message_id: str) -> Optional[int]:
        if message_id not in self._cursor:
            return None
        self._cursor[message_id] = previous_index(self._cursor[message_id], self.count(message_id))
        return self._cursor[message_id]

    def next(self, message_id: str) -> Optional[int]:
        if message_id not in self._cursor:
            return None
        self._cursor[message_id] = next_index(self._cursor[message_id], self.count(message_id))
        return self._cursor[message_id]

    def select(self, message_id: str, index: int) -> Optional[int]:
        if message_id not in self._cursor:
            return None
        self._cursor[message_id] = max(0, min(index, self.count(message_id) - 1))
        return self._cursor[message_id]

    def navigator(self, message_id: str) -> Optional[AttemptNavigator]:
        total = self.count(message_id)
        if total <= 1:
            return None
        return AttemptNavigator(message_id=message_id, index=self._cursor[message_id], total=total)

    def apply(self, message: ChatMessage) -> ChatMessage:
        """Return ``message`` as displayed: content and cursor follow the selected attempt."""
        attempts = self._attempts.get(message.message_id)
        if not attempts:
            return message
        index = self._cursor[message.message_id]
        return message.model_copy(
            update={
                "attempts": [a.model_copy(deep=True) for a in attempts],
                "current_attempt_index": index,
                "content": attempts[index].content,
            }
        )

    def forget(self, message_id: str) -> None:
        self._attempts.pop(message_id, None)
        self._cursor.pop(message_id, None)
