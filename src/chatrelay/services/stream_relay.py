from __future__ import annotations

"""Relay generation output to HTTP clients in the data-stream framing.

Text frames are ``0:<json string>\\n``; an empty text frame ends the stream and
``3:<json string>\\n`` carries an error. Every delivered token is appended to
the stream record so an interrupted stream can be replayed on resume.
"""

import json
import logging
from typing import AsyncIterator, Callable, Dict, Iterable, List, Optional, TypeVar

from starlette.concurrency import iterate_in_threadpool, run_in_threadpool

from ..domain.stream_models import StreamRecord
from .generation import GenerationService, get_generator
from .stream_lifecycle import StreamLifecycle, get_stream_lifecycle


logger = logging.getLogger("chatrelay.streams")

T = TypeVar("T")

FinishCallback = Callable[[str], None]


def text_frame(text: str) -> bytes:
    return f"0:{json.dumps(text)}\n".encode("utf-8")


def error_frame(message: str) -> bytes:
    return f"3:{json.dumps(message)}\n".encode("utf-8")


END_FRAME = text_frame("")


def parse_frames(payload: str) -> List[str]:
    """Decode text frames from a data-stream body; the closing empty frame is dropped."""
    out: List[str] = []
    for line in payload.splitlines():
        if not line.startswith("0:"):
            continue
        text = json.loads(line[2:])
        if text:
            out.append(text)
    return out


def iter_as_async(it: Iterable[T]) -> AsyncIterator[T]:
    """Iterate a blocking iterator without stalling the event loop."""
    return iterate_in_threadpool(iter(it))


class StreamRelay:
    def __init__(self, lifecycle: StreamLifecycle, generator: GenerationService) -> None:
        self._lifecycle = lifecycle
        self._generator = generator

    async def generate(
        self,
        record: StreamRecord,
        messages: List[Dict[str, str]],
        on_finish: Optional[FinishCallback] = None,
        on_interrupt: Optional[FinishCallback] = None,
        prefix: str = "",
    ) -> AsyncIterator[bytes]:
        """Stream tokens for ``record``.

        Normal exhaustion completes the record. Any other exit (client
        disconnect, cancellation, provider error) stops the generator and
        leaves the record ``paused`` so it can be resumed later.
        """
        collected: List[str] = []
        finished = False
        try:
            try:
                async for token in iter_as_async(self._generator.stream(record.message_id, messages)):
                    collected.append(token)
                    await run_in_threadpool(self._lifecycle.append_content, record.id, token)
                    yield text_frame(token)
            except Exception as exc:
                logger.exception("generation_failed stream=%s", record.id)
                yield error_frame(str(exc) or "Generation failed")
                return
            text = prefix + "".join(collected)
            await run_in_threadpool(self._lifecycle.complete, record.id, text, record.total_tokens + len(collected))
            finished = True
            if on_finish:
                on_finish(text)
            yield END_FRAME
        finally:
            if not finished:
                # Stays synchronous: an await here is cancelled along with a disconnected response
                self._generator.stop(record.message_id)
                self._lifecycle.mark_interrupted(record.message_id)
                if on_interrupt:
                    on_interrupt(prefix + "".join(collected))

    def begin_resume(self, stream_id: str) -> StreamRecord:
        """Claim a paused record; raises NotResumableError if another caller got it first."""
        return self._lifecycle.resume(stream_id)

    async def replay(
        self,
        record: StreamRecord,
        continuation: Optional[List[Dict[str, str]]] = None,
        on_finish: Optional[FinishCallback] = None,
        on_interrupt: Optional[FinishCallback] = None,
    ) -> AsyncIterator[bytes]:
        """Replay the persisted partial output of a resumed record.

        Without a continuation prompt the record is completed with what was
        delivered. Otherwise generation restarts and its tokens follow.
        """
        if record.partial_content:
            yield text_frame(record.partial_content)
        if continuation is None:
            await run_in_threadpool(self._lifecycle.complete, record.id, record.partial_content, record.total_tokens)
            if on_finish:
                on_finish(record.partial_content)
            yield END_FRAME
            return
        restarted = await run_in_threadpool(self._lifecycle.mark_restarted, record.id)
        if restarted is None:
            # Cancelled between claim and restart
            yield END_FRAME
            return
        async for chunk in self.generate(
            restarted,
            continuation,
            on_finish=on_finish,
            on_interrupt=on_interrupt,
            prefix=record.partial_content,
        ):
            yield chunk


_relay: StreamRelay | None = None


def get_stream_relay() -> StreamRelay:
    global _relay
    if _relay is not None:
        return _relay
    _relay = StreamRelay(get_stream_lifecycle(), get_generator())
    return _relay
