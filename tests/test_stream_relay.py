import asyncio
import threading

import pytest

from src.chatrelay.infrastructure.stream_store import InMemoryStreamStore
from src.chatrelay.services.generation import DeterministicGenerator
from src.chatrelay.services.stream_lifecycle import StreamConfig, StreamLifecycle
from src.chatrelay.services.stream_relay import END_FRAME, StreamRelay, error_frame, parse_frames, text_frame


HISTORY = [{"role": "user", "content": "hello"}]


def _relay(generator=None):
    lc = StreamLifecycle(InMemoryStreamStore(), StreamConfig())
    return lc, StreamRelay(lc, generator or DeterministicGenerator())


async def _drain(agen):
    return b"".join([chunk async for chunk in agen]).decode("utf-8")


def test_frames_encode_json_strings():
    assert text_frame('say "hi"\n') == b'0:"say \\"hi\\"\\n"\n'
    assert END_FRAME == b'0:""\n'
    assert error_frame("boom") == b'3:"boom"\n'
    assert parse_frames('0:"a"\n0:"b"\n3:"x"\n0:""\n') == ["a", "b"]


def test_generate_completes_record_and_reports_text():
    lc, relay = _relay()
    record = lc.start("t1", "m1", "u1")
    finished = []

    body = asyncio.run(_drain(relay.generate(record, HISTORY, on_finish=finished.append)))

    assert "".join(parse_frames(body)) == "Here is a response to: hello"
    assert body.endswith('0:""\n')
    stored = lc.get(record.id)
    assert stored.status == "completed"
    assert stored.partial_content == "Here is a response to: hello"
    assert stored.total_tokens == len(parse_frames(body))
    assert finished == ["Here is a response to: hello"]


@pytest.mark.asyncio
async def test_closing_the_stream_early_pauses_record():
    lc, relay = _relay()
    record = lc.start("t1", "m1", "u1")
    interrupted = []

    agen = relay.generate(record, HISTORY, on_interrupt=interrupted.append)
    first = await agen.__anext__()
    await agen.aclose()

    assert first == text_frame("Here ")
    stored = lc.get(record.id)
    assert stored.status == "paused"
    assert stored.partial_content == "Here "
    assert interrupted == ["Here "]
    assert [r.id for r in lc.list_resumable("u1")] == [record.id]


class _FailingGenerator(DeterministicGenerator):
    def stream(self, message_id, messages):
        yield "partial "
        raise RuntimeError("provider unavailable")


def test_provider_error_emits_error_frame_and_pauses():
    lc, relay = _relay(_FailingGenerator())
    record = lc.start("t1", "m1", "u1")

    body = asyncio.run(_drain(relay.generate(record, HISTORY)))

    assert '3:"provider unavailable"' in body
    assert parse_frames(body) == ["partial "]
    assert lc.get(record.id).status == "paused"


def test_replay_without_continuation_completes_with_partial():
    lc, relay = _relay()
    record = lc.start("t1", "m1", "u1")
    lc.append_content(record.id, "Half a ")
    lc.mark_interrupted("m1")

    claimed = relay.begin_resume(record.id)
    body = asyncio.run(_drain(relay.replay(claimed)))

    assert parse_frames(body) == ["Half a "]
    assert lc.get(record.id).status == "completed"


def test_replay_with_continuation_restarts_generation():
    lc, relay = _relay()
    record = lc.start("t1", "m1", "u1")
    lc.append_content(record.id, "Half a ")
    lc.mark_interrupted("m1")
    finished = []

    claimed = relay.begin_resume(record.id)
    continuation = HISTORY + [{"role": "assistant", "content": "Half a "}, {"role": "user", "content": "go on"}]
    body = asyncio.run(_drain(relay.replay(claimed, continuation=continuation, on_finish=finished.append)))

    frames = parse_frames(body)
    assert frames[0] == "Half a "
    assert "".join(frames[1:]) == "Here is a response to: go on"
    stored = lc.get(record.id)
    assert stored.status == "completed"
    assert stored.partial_content == "Half a Here is a response to: go on"
    assert finished == [stored.partial_content]


def test_replay_after_cancel_ends_immediately():
    lc, relay = _relay()
    record = lc.start("t1", "m1", "u1")
    lc.mark_interrupted("m1")
    claimed = relay.begin_resume(record.id)
    lc.cancel(record.id)

    body = asyncio.run(_drain(relay.replay(claimed, continuation=HISTORY)))
    assert body == '0:""\n'
    assert lc.get(record.id).status == "cancelled"


class _ThreadRecordingLifecycle(StreamLifecycle):
    def __init__(self, *args):
        super().__init__(*args)
        self.threads = set()

    def append_content(self, stream_id, chunk):
        self.threads.add(threading.get_ident())
        return super().append_content(stream_id, chunk)


@pytest.mark.asyncio
async def test_token_writes_run_off_the_event_loop():
    lc = _ThreadRecordingLifecycle(InMemoryStreamStore(), StreamConfig())
    relay = StreamRelay(lc, DeterministicGenerator())
    record = lc.start("t1", "m1", "u1")

    await _drain(relay.generate(record, HISTORY))

    assert lc.threads
    assert threading.get_ident() not in lc.threads
    assert lc.get(record.id).status == "completed"
