from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, List, Optional
import logging
import os

from ..core.state_machine import TERMINAL_STATUSES
from ..domain.errors import StorageError
from ..domain.stream_models import StreamRecord
from .stream_store import InMemoryStreamStore, new_stream_id, now_iso


logger = logging.getLogger("chatrelay.streams")


class MongoStreamStore:
    """Mongo-backed stream record store.

    Conditional transitions map onto ``find_one_and_update`` with a ``status``
    filter, so each one is a single atomic document update. If Mongo is
    unreachable at construction and CHATRELAY_STREAM_STORE_REQUIRE_MONGO is not
    set, the store runs on an in-memory fallback. Failures after a successful
    connection are raised as StorageError.
    """

    def __init__(self) -> None:
        self._fallback = InMemoryStreamStore()
        self._client = None
        self._streams = None
        try:
            from pymongo import ASCENDING, DESCENDING, MongoClient  # type: ignore

            mongo_url = os.getenv("MONGO_URL", "mongodb://localhost:27017")
            mongo_db = os.getenv("MONGO_DB", "chatrelay")
            self._client = MongoClient(mongo_url, serverSelectionTimeoutMS=500)
            # Trigger server selection
            self._client.server_info()
            self._streams = self._client[mongo_db]["resumable_streams"]
            self._streams.create_index([("message_id", ASCENDING), ("status", ASCENDING)])
            self._streams.create_index([("user_id", ASCENDING), ("status", ASCENDING), ("started_at", DESCENDING)])
        except Exception:
            logger.warning("mongo_stream_store_unavailable_using_memory")
            self._client = None
            self._streams = None
        if self._use_fallback() and os.getenv("CHATRELAY_STREAM_STORE_REQUIRE_MONGO", "false").lower() in ("1", "true", "yes"):
            raise StorageError("connect", RuntimeError("Mongo stream store required but not available"))

    def _use_fallback(self) -> bool:
        return self._client is None or self._streams is None

    @contextmanager
    def _guard(self, operation: str) -> Iterator[None]:
        try:
            yield
        except StorageError:
            raise
        except Exception as exc:
            logger.exception("stream_store_failed", extra={"operation": operation})
            raise StorageError(operation, exc) from exc

    def insert(self, thread_id: str, message_id: str, user_id: str, model: Optional[str] = None) -> StreamRecord:
        if self._use_fallback():
            return self._fallback.insert(thread_id, message_id, user_id, model=model)
        now = now_iso()
        doc = {
            "_id": new_stream_id(),
            "thread_id": thread_id,
            "message_id": message_id,
            "user_id": user_id,
            "status": "streaming",
            "started_at": now,
            "last_updated_at": now,
            "partial_content": "",
            "model": model,
            "completed_at": None,
            "total_tokens": 0,
        }
        with self._guard("insert"):
            self._streams.insert_one(doc)  # type: ignore[union-attr]
        return self._to_record(doc)

    def get(self, stream_id: str) -> Optional[StreamRecord]:
        if self._use_fallback():
            return self._fallback.get(stream_id)
        with self._guard("get"):
            doc = self._streams.find_one({"_id": stream_id})  # type: ignore[union-attr]
        return self._to_record(doc) if doc else None

    def transition(
        self,
        stream_id: str,
        from_statuses: Iterable[str],
        to_status: str,
        updates: Optional[Dict[str, Any]] = None,
    ) -> Optional[StreamRecord]:
        if self._use_fallback():
            return self._fallback.transition(stream_id, from_statuses, to_status, updates)
        changes = dict(updates or {})
        changes.update({"status": to_status, "last_updated_at": now_iso()})
        with self._guard("transition"):
            doc = self._streams.find_one_and_update(  # type: ignore[union-attr]
                {"_id": stream_id, "status": {"$in": list(from_statuses)}},
                {"$set": changes},
                return_document=True,
            )
        return self._to_record(doc) if doc else None

    def transition_by_message(
        self,
        message_id: str,
        from_statuses: Iterable[str],
        to_status: str,
    ) -> List[StreamRecord]:
        if self._use_fallback():
            return self._fallback.transition_by_message(message_id, from_statuses, to_status)
        allowed = list(from_statuses)
        out: List[StreamRecord] = []
        with self._guard("transition_by_message"):
            candidates = self._streams.find({"message_id": message_id, "status": {"$in": allowed}}, {"_id": 1})  # type: ignore[union-attr]
            for candidate in list(candidates):
                doc = self._streams.find_one_and_update(  # type: ignore[union-attr]
                    {"_id": candidate["_id"], "status": {"$in": allowed}},
                    {"$set": {"status": to_status, "last_updated_at": now_iso()}},
                    return_document=True,
                )
                # A concurrent caller may have won this document
                if doc:
                    out.append(self._to_record(doc))
        return out

    def append_content(self, stream_id: str, chunk: str, statuses: Iterable[str]) -> Optional[StreamRecord]:
        if self._use_fallback():
            return self._fallback.append_content(stream_id, chunk, statuses)
        with self._guard("append_content"):
            doc = self._streams.find_one_and_update(  # type: ignore[union-attr]
                {"_id": stream_id, "status": {"$in": list(statuses)}},
                [{"$set": {"partial_content": {"$concat": ["$partial_content", {"$literal": chunk}]}}}],
                return_document=True,
            )
        return self._to_record(doc) if doc else None

    def list_by_status(self, user_id: str, status: str, thread_id: Optional[str] = None) -> List[StreamRecord]:
        if self._use_fallback():
            return self._fallback.list_by_status(user_id, status, thread_id=thread_id)
        query: Dict[str, Any] = {"user_id": user_id, "status": status}
        if thread_id is not None:
            query["thread_id"] = thread_id
        with self._guard("list_by_status"):
            docs = list(self._streams.find(query).sort("started_at", -1))  # type: ignore[union-attr]
        return [self._to_record(doc) for doc in docs]

    def purge_terminal(self, updated_before: str) -> int:
        if self._use_fallback():
            return self._fallback.purge_terminal(updated_before)
        with self._guard("purge_terminal"):
            result = self._streams.delete_many(  # type: ignore[union-attr]
                {"status": {"$in": sorted(TERMINAL_STATUSES)}, "last_updated_at": {"$lt": updated_before}}
            )
        return int(getattr(result, "deleted_count", 0) or 0)

    def _to_record(self, doc: Dict[str, Any]) -> StreamRecord:
        data = dict(doc)
        return StreamRecord(
            id=str(data.get("_id")),
            thread_id=str(data.get("thread_id", "")),
            message_id=str(data.get("message_id", "")),
            user_id=str(data.get("user_id", "")),
            status=data.get("status", "streaming"),
            started_at=str(data.get("started_at", now_iso())),
            last_updated_at=str(data.get("last_updated_at", now_iso())),
            partial_content=str(data.get("partial_content") or ""),
            model=data.get("model"),
            completed_at=data.get("completed_at"),
            total_tokens=int(data.get("total_tokens") or 0),
        )
