import pytest

from src.chatrelay.client.attempts import AttemptStore, next_index, previous_index
from src.chatrelay.domain.chat_models import ChatMessage


def _with_attempts(contents, index=None):
    attempts = [ChatMessage(message_id=f"x{i}", role="assistant", content=c) for i, c in enumerate(contents)]
    return ChatMessage(
        message_id="m1",
        role="assistant",
        content=contents[0],
        attempts=attempts,
        current_attempt_index=len(contents) - 1 if index is None else index,
    )


def test_navigation_clamps_at_both_ends():
    store = AttemptStore()
    store.record(_with_attempts(["A", "B", "C"]))
    assert store.current_index("m1") == 2

    assert store.previous("m1") == 1
    assert store.previous("m1") == 0
    assert store.previous("m1") == 0
    assert store.current("m1").content == "A"
    assert store.next("m1") == 1
    assert store.next("m1") == 2
    assert store.next("m1") == 2
    assert [a.content for a in store.attempts("m1")] == ["A", "B", "C"]


def test_index_helpers():
    assert previous_index(0, 3) == 0
    assert previous_index(2, 3) == 1
    assert next_index(2, 3) == 2
    assert next_index(0, 3) == 1


def test_select_and_navigator():
    store = AttemptStore()
    store.record(_with_attempts(["A", "B"], index=0))
    nav = store.navigator("m1")
    assert nav.label == "1/2"
    assert not nav.has_previous and nav.has_next

    assert store.select("m1", 10) == 1
    assert store.navigator("m1").label == "2/2"
    assert store.select("m1", -3) == 0
    assert store.navigator("unknown") is None
    assert store.previous("unknown") is None


def test_apply_shows_selected_attempt():
    store = AttemptStore()
    merged = _with_attempts(["A", "B"])
    store.record(merged)
    store.previous("m1")

    shown = store.apply(merged)
    assert shown.content == "A"
    assert shown.current_attempt_index == 0
    assert len(shown.attempts) == 2

    plain = ChatMessage(message_id="other", role="assistant", content="x")
    assert store.apply(plain) is plain


def test_captured_attempts_cannot_shrink_or_be_empty():
    store = AttemptStore()
    store.record(_with_attempts(["A", "B", "C"]))
    with pytest.raises(ValueError):
        store.record(_with_attempts(["A", "B"]))
    with pytest.raises(ValueError):
        store.record(ChatMessage(message_id="m2", role="assistant", content="x"))


def test_navigation_does_not_mutate_attempts():
    store = AttemptStore()
    store.record(_with_attempts(["A", "B"]))
    before = store.attempts("m1")
    store.previous("m1")
    store.next("m1")
    assert store.attempts("m1") == before
    store.forget("m1")
    assert store.attempts("m1") == ()
