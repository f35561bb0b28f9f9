import threading
from datetime import UTC, datetime, timedelta

import pytest

from src.chatrelay.core.state_machine import is_valid_transition
from src.chatrelay.domain.errors import NotResumableError, StorageError, StreamNotFoundError, ValidationError
from src.chatrelay.infrastructure.stream_store import InMemoryStreamStore
from src.chatrelay.services.stream_lifecycle import StreamConfig, StreamLifecycle


def _lifecycle(retention_minutes=60):
    return StreamLifecycle(InMemoryStreamStore(), StreamConfig(retention_minutes=retention_minutes))


def test_mark_interrupted_is_idempotent():
    lc = _lifecycle()
    rec = lc.start("t1", "m1", "u1")
    assert lc.mark_interrupted("m1") == 1
    assert lc.mark_interrupted("m1") == 0
    assert lc.get(rec.id).status == "paused"


def test_mark_interrupted_unknown_message_updates_nothing():
    assert _lifecycle().mark_interrupted("never-seen") == 0


def test_required_ids_are_validated():
    lc = _lifecycle()
    with pytest.raises(ValidationError):
        lc.mark_interrupted("  ")
    with pytest.raises(ValidationError):
        lc.start("t1", "", "u1")
    with pytest.raises(ValidationError):
        lc.resume("")


def test_interrupt_list_and_resume():
    lc = _lifecycle()
    rec = lc.start("t1", "m1", "u1")
    lc.append_content(rec.id, "Hello ")
    lc.mark_interrupted("m1")

    resumable = lc.list_resumable("u1")
    assert [r.id for r in resumable] == [rec.id]
    assert resumable[0].partial_content == "Hello "
    assert lc.list_resumable("u2") == []

    resumed = lc.resume(rec.id)
    assert resumed.status == "resumed"
    assert lc.list_resumable("u1") == []

    with pytest.raises(NotResumableError) as excinfo:
        lc.resume(rec.id)
    assert excinfo.value.status == "resumed"


def test_resume_unknown_stream_raises_not_found():
    with pytest.raises(StreamNotFoundError):
        _lifecycle().resume("stream_missing")


def test_concurrent_resume_has_exactly_one_winner():
    lc = _lifecycle()
    rec = lc.start("t1", "m1", "u1")
    lc.mark_interrupted("m1")

    barrier = threading.Barrier(8)
    winners, losers = [], []

    def attempt():
        barrier.wait()
        try:
            winners.append(lc.resume(rec.id))
        except NotResumableError:
            losers.append(1)

    threads = [threading.Thread(target=attempt) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(winners) == 1
    assert len(losers) == 7


def test_restart_pauses_previous_stream_for_same_message():
    lc = _lifecycle()
    first = lc.start("t1", "m1", "u1")
    second = lc.restart("t1", "m1", "u1")
    assert lc.get(first.id).status == "paused"
    assert lc.get(second.id).status == "streaming"


def test_complete_and_cancel_follow_transition_table():
    lc = _lifecycle()
    rec = lc.start("t1", "m1", "u1")
    lc.mark_interrupted("m1")
    # paused records cannot complete without being resumed first
    assert lc.complete(rec.id) is None
    lc.resume(rec.id)
    done = lc.complete(rec.id, content="final", total_tokens=3)
    assert done.status == "completed"
    assert done.partial_content == "final"
    assert done.completed_at is not None
    assert done.total_tokens == 3
    assert lc.cancel(rec.id) is None
    assert lc.append_content(rec.id, "late") is False


def test_mark_restarted_only_from_resumed():
    lc = _lifecycle()
    rec = lc.start("t1", "m1", "u1")
    assert lc.mark_restarted(rec.id) is None
    lc.mark_interrupted("m1")
    lc.resume(rec.id)
    again = lc.mark_restarted(rec.id)
    assert again.status == "streaming"
    assert lc.append_content(rec.id, "more") is True


def test_observed_history_only_contains_valid_edges():
    lc = _lifecycle()
    rec = lc.start("t1", "m1", "u1")
    seen = [rec.status]
    for step in (
        lambda: lc.mark_interrupted("m1"),
        lambda: lc.resume(rec.id),
        lambda: lc.mark_restarted(rec.id),
        lambda: lc.mark_interrupted("m1"),
        lambda: lc.cancel(rec.id),
    ):
        step()
        status = lc.get(rec.id).status
        if status != seen[-1]:
            assert is_valid_transition(seen[-1], status)
            seen.append(status)
    assert seen == ["streaming", "paused", "resumed", "streaming", "paused", "cancelled"]


def test_purge_terminal_honours_retention():
    lc = _lifecycle(retention_minutes=60)
    rec = lc.start("t1", "m1", "u1")
    lc.complete(rec.id)
    assert lc.purge_terminal() == 0
    assert lc.purge_terminal(now=datetime.now(UTC) + timedelta(hours=2)) == 1
    assert lc.get(rec.id) is None


def test_purge_disabled_with_zero_retention():
    lc = _lifecycle(retention_minutes=0)
    rec = lc.start("t1", "m1", "u1")
    lc.complete(rec.id)
    assert lc.purge_terminal(now=datetime.now(UTC) + timedelta(days=30)) == 0


def test_stream_config_from_env(monkeypatch):
    monkeypatch.setenv("CHATRELAY_STREAM_RETENTION_MIN", "15")
    assert StreamConfig.from_env().retention_minutes == 15
    monkeypatch.setenv("CHATRELAY_STREAM_RETENTION_MIN", "soon")
    assert StreamConfig.from_env().retention_minutes == 24 * 60


class _BrokenStore(InMemoryStreamStore):
    def transition_by_message(self, message_id, from_statuses, to_status):
        raise RuntimeError("connection reset")


def test_storage_failures_surface_as_storage_error():
    lc = StreamLifecycle(_BrokenStore(), StreamConfig())
    with pytest.raises(StorageError) as excinfo:
        lc.mark_interrupted("m1")
    assert excinfo.value.operation == "mark_interrupted"
    assert isinstance(excinfo.value.cause, RuntimeError)
