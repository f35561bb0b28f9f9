from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from threading import RLock
from typing import Any, Dict, Iterable, List, Optional, Protocol
import itertools
import os
import uuid

from ..core.state_machine import TERMINAL_STATUSES
from ..domain.stream_models import StreamRecord


class StreamRecordStore(Protocol):
    """Durable table of stream metadata.

    Every mutating method is a single conditional update: it applies only when
    the record is still in one of ``from_statuses`` and reports what it changed.
    """

    def insert(self, thread_id: str, message_id: str, user_id: str, model: Optional[str] = None) -> StreamRecord: ...

    def get(self, stream_id: str) -> Optional[StreamRecord]: ...

    def transition(
        self,
        stream_id: str,
        from_statuses: Iterable[str],
        to_status: str,
        updates: Optional[Dict[str, Any]] = None,
    ) -> Optional[StreamRecord]: ...

    def transition_by_message(
        self,
        message_id: str,
        from_statuses: Iterable[str],
        to_status: str,
    ) -> List[StreamRecord]: ...

    def append_content(self, stream_id: str, chunk: str, statuses: Iterable[str]) -> Optional[StreamRecord]: ...

    def list_by_status(self, user_id: str, status: str, thread_id: Optional[str] = None) -> List[StreamRecord]: ...

    def purge_terminal(self, updated_before: str) -> int: ...


def now_iso() -> str:
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


def new_stream_id() -> str:
    return f"stream_{uuid.uuid4().hex}"


@dataclass
class _Row:
    id: str
    thread_id: str
    message_id: str
    user_id: str
    status: str
    started_at: str
    last_updated_at: str
    seq: int
    partial_content: str = ""
    model: Optional[str] = None
    completed_at: Optional[str] = None
    total_tokens: int = 0


class InMemoryStreamStore:
    def __init__(self) -> None:
        self._rows: Dict[str, _Row] = {}
        self._by_message: Dict[str, List[str]] = {}
        self._seq = itertools.count()
        self._lock = RLock()

    def _record(self, row: _Row) -> StreamRecord:
        return StreamRecord(
            id=row.id,
            thread_id=row.thread_id,
            message_id=row.message_id,
            user_id=row.user_id,
            status=row.status,  # type: ignore[arg-type]
            started_at=row.started_at,
            last_updated_at=row.last_updated_at,
            partial_content=row.partial_content,
            model=row.model,
            completed_at=row.completed_at,
            total_tokens=row.total_tokens,
        )

    def _apply(self, row: _Row, to_status: str, updates: Optional[Dict[str, Any]]) -> None:
        row.status = to_status
        row.last_updated_at = now_iso()
        for key, value in (updates or {}).items():
            if not hasattr(row, key) or key in ("id", "seq"):
                raise KeyError(f"Unknown stream field: {key}")
            setattr(row, key, value)

    def insert(self, thread_id: str, message_id: str, user_id: str, model: Optional[str] = None) -> StreamRecord:
        with self._lock:
            now = now_iso()
            row = _Row(
                id=new_stream_id(),
                thread_id=thread_id,
                message_id=message_id,
                user_id=user_id,
                status="streaming",
                started_at=now,
                last_updated_at=now,
                seq=next(self._seq),
                model=model,
            )
            self._rows[row.id] = row
            self._by_message.setdefault(message_id, []).append(row.id)
            return self._record(row)

    def get(self, stream_id: str) -> Optional[StreamRecord]:
        with self._lock:
            row = self._rows.get(stream_id)
            if not row:
                return None
            return self._record(row)

    def transition(
        self,
        stream_id: str,
        from_statuses: Iterable[str],
        to_status: str,
        updates: Optional[Dict[str, Any]] = None,
    ) -> Optional[StreamRecord]:
        allowed = set(from_statuses)
        with self._lock:
            row = self._rows.get(stream_id)
            if not row or row.status not in allowed:
                return None
            self._apply(row, to_status, updates)
            return self._record(row)

    def transition_by_message(
        self,
        message_id: str,
        from_statuses: Iterable[str],
        to_status: str,
    ) -> List[StreamRecord]:
        allowed = set(from_statuses)
        with self._lock:
            out: List[StreamRecord] = []
            for sid in self._by_message.get(message_id, []):
                row = self._rows.get(sid)
                if not row or row.status not in allowed:
                    continue
                self._apply(row, to_status, None)
                out.append(self._record(row))
            return out

    def append_content(self, stream_id: str, chunk: str, statuses: Iterable[str]) -> Optional[StreamRecord]:
        allowed = set(statuses)
        with self._lock:
            row = self._rows.get(stream_id)
            if not row or row.status not in allowed:
                return None
            row.partial_content += chunk
            return self._record(row)

    def list_by_status(self, user_id: str, status: str, thread_id: Optional[str] = None) -> List[StreamRecord]:
        with self._lock:
            rows = [
                row
                for row in self._rows.values()
                if row.user_id == user_id and row.status == status and (thread_id is None or row.thread_id == thread_id)
            ]
            # Newest first
            rows.sort(key=lambda r: (r.started_at, r.seq), reverse=True)
            return [self._record(row) for row in rows]

    def purge_terminal(self, updated_before: str) -> int:
        with self._lock:
            doomed = [
                row
                for row in self._rows.values()
                if row.status in TERMINAL_STATUSES and row.last_updated_at < updated_before
            ]
            for row in doomed:
                self._rows.pop(row.id, None)
                ids = self._by_message.get(row.message_id, [])
                if row.id in ids:
                    ids.remove(row.id)
                if not ids:
                    self._by_message.pop(row.message_id, None)
            return len(doomed)


_store: StreamRecordStore | None = None


def get_stream_store() -> StreamRecordStore:
    global _store
    if _store is not None:
        return _store
    impl = os.getenv("CHATRELAY_STREAM_STORE_IMPL", "memory").lower()
    if impl == "mongo":
        from .stream_store_mongo import MongoStreamStore

        _store = MongoStreamStore()
        return _store
    _store = InMemoryStreamStore()
    return _store
