from __future__ import annotations

"""Client-side record of streams this session has in flight.

The set of active message ids is mirrored into a small JSON file so that a
restarted session can report streams the previous one never closed. Every
report is best effort: the server treats repeats as no-ops.
"""

import asyncio
import contextlib
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol


logger = logging.getLogger("chatrelay.client")


class InterruptNotifier(Protocol):
    async def mark_interrupted(self, message_id: str) -> Any: ...


@dataclass
class TrackerConfig:
    hide_grace_seconds: float = 5.0
    notify_timeout_seconds: float = 2.0

    @classmethod
    def from_env(cls) -> "TrackerConfig":
        return cls(
            hide_grace_seconds=float(os.getenv("CHATRELAY_INTERRUPT_GRACE_S", "5")),
            notify_timeout_seconds=float(os.getenv("CHATRELAY_INTERRUPT_TIMEOUT_S", "2")),
        )


class SessionStorage:
    """Key/value storage that outlives a single session when given a path."""

    def __init__(self, path: Optional[Path] = None) -> None:
        self._path = Path(path) if path else None
        self._data: Dict[str, Any] = {}
        if self._path and self._path.exists():
            try:
                self._data = json.loads(self._path.read_text(encoding="utf-8")) or {}
            except (OSError, json.JSONDecodeError):
                logger.warning("session_storage_unreadable path=%s", self._path)
                self._data = {}

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value
        self._flush()

    def remove(self, key: str) -> None:
        if self._data.pop(key, None) is not None:
            self._flush()

    def _flush(self) -> None:
        if not self._path:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps(self._data), encoding="utf-8")


class ClientStreamTracker:
    STORAGE_KEY = "activeStreams"

    def __init__(
        self,
        notifier: InterruptNotifier,
        storage: Optional[SessionStorage] = None,
        config: Optional[TrackerConfig] = None,
    ) -> None:
        self._notifier = notifier
        self._storage = storage or SessionStorage()
        self._config = config or TrackerConfig.from_env()
        self._active: List[str] = []
        self._hide_task: Optional[asyncio.Task] = None

    @property
    def active(self) -> List[str]:
        return list(self._active)

    def _persist(self) -> None:
        if self._active:
            self._storage.set(self.STORAGE_KEY, list(self._active))
        else:
            self._storage.remove(self.STORAGE_KEY)

    def register(self, message_id: str) -> None:
        if message_id and message_id not in self._active:
            self._active.append(message_id)
            self._persist()

    def unregister(self, message_id: str) -> None:
        if message_id in self._active:
            self._active.remove(message_id)
            self._persist()

    async def _notify(self, message_id: str) -> bool:
        try:
            await asyncio.wait_for(
                self._notifier.mark_interrupted(message_id),
                timeout=self._config.notify_timeout_seconds,
            )
            return True
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            # Best effort; the server-side disconnect path covers what is lost here
            logger.warning("interrupt_report_failed message=%s error=%s", message_id, exc)
            return False

    async def interrupt_all(self, message_ids: Optional[List[str]] = None) -> int:
        """Report each id as interrupted concurrently; returns how many reports succeeded."""
        ids = list(self._active if message_ids is None else message_ids)
        if not ids:
            return 0
        results = await asyncio.gather(*(self._notify(mid) for mid in ids))
        return sum(1 for ok in results if ok)

    async def recover_previous(self) -> List[str]:
        """Report streams a previous session left behind, then forget them."""
        previous = self._storage.get(self.STORAGE_KEY) or []
        leftover = [mid for mid in previous if isinstance(mid, str) and mid not in self._active]
        if leftover:
            logger.info("recovering_interrupted_streams count=%d", len(leftover))
            await self.interrupt_all(leftover)
        self._persist()
        return leftover

    def visibility_changed(self, hidden: bool) -> None:
        """Hiding for longer than the grace period interrupts every active stream."""
        self._cancel_hide_timer()
        if hidden and self._active:
            self._hide_task = asyncio.get_running_loop().create_task(self._after_grace())

    async def _after_grace(self) -> None:
        await asyncio.sleep(self._config.hide_grace_seconds)
        logger.info("hidden_past_grace active=%d", len(self._active))
        await self.interrupt_all()

    def _cancel_hide_timer(self) -> None:
        if self._hide_task and not self._hide_task.done():
            self._hide_task.cancel()
        self._hide_task = None

    async def teardown(self) -> int:
        self._cancel_hide_timer()
        return await self.interrupt_all()

    @contextlib.asynccontextmanager
    async def scope(self) -> AsyncIterator["ClientStreamTracker"]:
        await self.recover_previous()
        try:
            yield self
        finally:
            await self.teardown()
