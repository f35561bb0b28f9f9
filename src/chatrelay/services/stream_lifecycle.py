from __future__ import annotations

"""Stream lifecycle: the status state machine over stored stream records.

Every mutation is one conditional store update scoped by the record's current
status, so racing tabs and devices cannot corrupt a record: the loser sees an
update count of zero or a NotResumableError.
"""

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Iterator, List, Optional
import logging
import os

from ..core.state_machine import sources_for
from ..domain.errors import ChatRelayError, NotResumableError, StorageError, StreamNotFoundError, ValidationError
from ..domain.stream_models import StreamRecord
from ..infrastructure.events import publish_stream_transition
from ..infrastructure.stream_store import StreamRecordStore, get_stream_store, now_iso
from ..observability.metrics import record_miss, record_transition


logger = logging.getLogger("chatrelay.streams")


@dataclass
class StreamConfig:
    retention_minutes: int = 24 * 60

    @staticmethod
    def from_env() -> "StreamConfig":
        raw = os.getenv("CHATRELAY_STREAM_RETENTION_MIN", "")
        try:
            retention = int(raw) if raw else 24 * 60
        except ValueError:
            retention = 24 * 60
        return StreamConfig(retention_minutes=max(retention, 0))


def _require_id(value: Optional[str], name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{name} is required")
    return value.strip()


class StreamLifecycle:
    def __init__(self, store: StreamRecordStore, config: Optional[StreamConfig] = None) -> None:
        self._store = store
        self._config = config or StreamConfig.from_env()

    @property
    def store(self) -> StreamRecordStore:
        return self._store

    @contextmanager
    def _storage(self, operation: str) -> Iterator[None]:
        try:
            yield
        except ChatRelayError:
            raise
        except Exception as exc:
            raise StorageError(operation, exc) from exc

    def _announce(self, record: StreamRecord) -> None:
        record_transition(record.status)
        publish_stream_transition(record)

    def start(self, thread_id: str, message_id: str, user_id: str, model: Optional[str] = None) -> StreamRecord:
        """Create a record in ``streaming``.

        No uniqueness check here: callers interrupt prior streams for the
        message first (see :meth:`restart`).
        """
        thread_id = _require_id(thread_id, "threadId")
        message_id = _require_id(message_id, "messageId")
        user_id = _require_id(user_id, "userId")
        with self._storage("start"):
            record = self._store.insert(thread_id, message_id, user_id, model=model)
        logger.info("stream_started stream=%s message=%s", record.id, message_id)
        self._announce(record)
        return record

    def restart(self, thread_id: str, message_id: str, user_id: str, model: Optional[str] = None) -> StreamRecord:
        self.mark_interrupted(message_id)
        return self.start(thread_id, message_id, user_id, model=model)

    def mark_interrupted(self, message_id: str) -> int:
        message_id = _require_id(message_id, "messageId")
        with self._storage("mark_interrupted"):
            updated = self._store.transition_by_message(message_id, ["streaming"], "paused")
        if not updated:
            logger.debug("mark_interrupted_noop message=%s", message_id)
            record_miss("mark_interrupted")
            return 0
        for record in updated:
            self._announce(record)
        logger.info("stream_interrupted message=%s updated=%d", message_id, len(updated))
        return len(updated)

    def list_resumable(self, user_id: str, thread_id: Optional[str] = None) -> List[StreamRecord]:
        user_id = _require_id(user_id, "userId")
        with self._storage("list_resumable"):
            return self._store.list_by_status(user_id, "paused", thread_id=thread_id)

    def get(self, stream_id: str) -> Optional[StreamRecord]:
        stream_id = _require_id(stream_id, "streamId")
        with self._storage("get"):
            return self._store.get(stream_id)

    def resume(self, stream_id: str) -> StreamRecord:
        stream_id = _require_id(stream_id, "streamId")
        with self._storage("resume"):
            record = self._store.transition(stream_id, ["paused"], "resumed")
            if record is None:
                current = self._store.get(stream_id)
        if record is None:
            record_miss("resume")
            if current is None:
                raise StreamNotFoundError(stream_id)
            logger.info("stream_not_resumable stream=%s status=%s", stream_id, current.status)
            raise NotResumableError(stream_id, current.status)
        logger.info("stream_resumed stream=%s", stream_id)
        self._announce(record)
        return record

    def mark_restarted(self, stream_id: str) -> Optional[StreamRecord]:
        """Move a resumed record back to ``streaming`` once generation restarts."""
        with self._storage("mark_restarted"):
            record = self._store.transition(stream_id, ["resumed"], "streaming")
        if record is None:
            record_miss("mark_restarted")
            return None
        self._announce(record)
        return record

    def append_content(self, stream_id: str, chunk: str) -> bool:
        if not chunk:
            return False
        with self._storage("append_content"):
            record = self._store.append_content(stream_id, chunk, ["streaming", "resumed"])
        return record is not None

    def complete(self, stream_id: str, content: Optional[str] = None, total_tokens: int = 0) -> Optional[StreamRecord]:
        updates = {"completed_at": now_iso(), "total_tokens": int(total_tokens or 0)}
        if content is not None:
            updates["partial_content"] = content
        with self._storage("complete"):
            record = self._store.transition(stream_id, sources_for("completed"), "completed", updates)
        if record is None:
            record_miss("complete")
            return None
        logger.info("stream_completed stream=%s", stream_id)
        self._announce(record)
        return record

    def cancel(self, stream_id: str) -> Optional[StreamRecord]:
        stream_id = _require_id(stream_id, "streamId")
        with self._storage("cancel"):
            record = self._store.transition(stream_id, sources_for("cancelled"), "cancelled")
        if record is None:
            record_miss("cancel")
            return None
        logger.info("stream_cancelled stream=%s", stream_id)
        self._announce(record)
        return record

    def purge_terminal(self, now: Optional[datetime] = None) -> int:
        if self._config.retention_minutes <= 0:
            return 0
        cutoff = (now or datetime.now(UTC)) - timedelta(minutes=self._config.retention_minutes)
        with self._storage("purge_terminal"):
            removed = self._store.purge_terminal(cutoff.isoformat().replace("+00:00", "Z"))
        if removed:
            logger.info("stream_records_purged count=%d", removed)
        return removed


_lifecycle: StreamLifecycle | None = None


def get_stream_lifecycle() -> StreamLifecycle:
    global _lifecycle
    if _lifecycle is not None:
        return _lifecycle
    _lifecycle = StreamLifecycle(get_stream_store())
    return _lifecycle
