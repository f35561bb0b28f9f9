from __future__ import annotations

"""Regeneration coordinator.

Tracks at most one in-flight regeneration. While one is active, the first new
assistant response is folded into the original message as an extra attempt and
handed to ``on_message_update``; the coordinator then returns to idle.
"""

import logging
from typing import Callable, Literal, Optional

from ..domain.chat_models import ChatMessage
from ..domain.errors import CoordinatorMisuseError, RegenerationInProgressError


logger = logging.getLogger("chatrelay.client")

CoordinatorState = Literal["idle", "regenerating"]
MessageUpdateCallback = Callable[[ChatMessage], None]


def _as_attempt(message: ChatMessage) -> ChatMessage:
    # Attempts never nest
    return message.model_copy(deep=True, update={"attempts": None, "current_attempt_index": None})


def merge_attempt(original: ChatMessage, new_message: ChatMessage) -> ChatMessage:
    """Return ``original`` carrying ``new_message`` as its newest, selected attempt."""
    if original.attempts:
        attempts = [a.model_copy(deep=True) for a in original.attempts]
    else:
        attempts = [_as_attempt(original)]
    attempts.append(_as_attempt(new_message))
    return original.model_copy(
        deep=True,
        update={"attempts": attempts, "current_attempt_index": len(attempts) - 1},
    )


class RegenerationCoordinator:
    def __init__(self, on_message_update: Optional[MessageUpdateCallback] = None, *, strict: bool = False) -> None:
        self._on_message_update = on_message_update
        self._strict = strict
        self._message_id: Optional[str] = None
        self._original: Optional[ChatMessage] = None

    @property
    def state(self) -> CoordinatorState:
        return "regenerating" if self._message_id is not None else "idle"

    @property
    def is_regenerating(self) -> bool:
        return self._message_id is not None

    @property
    def regenerating_message_id(self) -> Optional[str]:
        return self._message_id

    @property
    def original_message(self) -> Optional[ChatMessage]:
        return self._original

    def start_regeneration(self, message_id: str, message: ChatMessage) -> None:
        """Begin tracking ``message_id``; ``message`` is snapshotted as the original.

        A second start while one is active replaces it, unless the coordinator
        is strict, in which case RegenerationInProgressError is raised.
        """
        if self._message_id is not None:
            if self._strict:
                raise RegenerationInProgressError(self._message_id, message_id)
            logger.warning(
                "regeneration_replaced active=%s requested=%s", self._message_id, message_id
            )
        self._message_id = message_id
        self._original = message.model_copy(deep=True)

    def finish_regeneration(self) -> None:
        self._message_id = None
        self._original = None

    def capture_new_attempt(self, new_message: ChatMessage) -> Optional[ChatMessage]:
        """Fold ``new_message`` into the tracked original.

        Returns the merged message, or None when nothing is being regenerated.
        The coordinator is idle again afterwards, even if the callback raises.
        """
        try:
            original = self._require_original()
        except CoordinatorMisuseError:
            logger.debug("capture_ignored reason=idle message=%s", new_message.message_id)
            return None
        merged = merge_attempt(original, new_message)
        try:
            if self._on_message_update:
                self._on_message_update(merged)
        finally:
            self.finish_regeneration()
        return merged

    def _require_original(self) -> ChatMessage:
        if self._original is None:
            raise CoordinatorMisuseError("no regeneration in progress")
        return self._original
