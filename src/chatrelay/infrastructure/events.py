from __future__ import annotations

import json
import logging
import os
from typing import Any, Dict, Optional

try:  # pragma: no cover - optional dependency
    import redis  # type: ignore
except Exception:  # pragma: no cover - optional dependency
    redis = None  # type: ignore


logger = logging.getLogger("chatrelay.events")


class _RedisPublisher:
    def __init__(self, url: str) -> None:
        self._url = url
        self._client = None
        self._connect()

    def _connect(self) -> None:
        if redis is None:
            return
        try:
            self._client = redis.Redis.from_url(self._url, socket_timeout=0.5)
            self._client.ping()
        except Exception:
            logger.debug("redis_connect_failed", extra={"url": self._url})
            self._client = None

    def publish(self, channel: str, payload: Dict[str, Any]) -> None:
        if not self._client:
            self._connect()
        if not self._client:
            return
        try:
            self._client.publish(channel, json.dumps(payload))
        except Exception:
            # Lifecycle notifications are advisory; drop and reconnect next time
            logger.debug("redis_publish_failed", extra={"channel": channel})
            self._client = None


_publisher: Optional[_RedisPublisher] = None


def _get_publisher() -> Optional[_RedisPublisher]:
    global _publisher
    if _publisher is not None:
        return _publisher
    url = os.getenv("REDIS_URL")
    if not url:
        return None
    _publisher = _RedisPublisher(url)
    return _publisher


def publish_event(event_type: str, payload: Dict[str, Any]) -> None:
    publisher = _get_publisher()
    if not publisher:
        return
    channel = f"chatrelay.events.{event_type}"
    publisher.publish(channel, payload)


def publish_stream_transition(record: Any) -> None:
    """Announce a stream status change so other workers and tabs can refresh."""
    publish_event(
        f"stream.{record.status}",
        {
            "stream_id": record.id,
            "thread_id": record.thread_id,
            "message_id": record.message_id,
            "user_id": record.user_id,
            "status": record.status,
            "at": record.last_updated_at,
        },
    )
