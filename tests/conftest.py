import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)


@pytest.fixture(autouse=True)
def _fresh_singletons(monkeypatch):
    """Give every test its own stores, lifecycle, relay and generator."""
    from src.chatrelay.infrastructure import chat_store, events, stream_store
    from src.chatrelay.api.routers.streams import interrupt_limiter
    from src.chatrelay.services import generation, stream_lifecycle, stream_relay

    monkeypatch.delenv("CHATRELAY_STREAM_STORE_IMPL", raising=False)
    monkeypatch.delenv("CHATRELAY_LLM_BASE_URL", raising=False)
    monkeypatch.delenv("CHATRELAY_PUBLIC_MODE", raising=False)
    monkeypatch.delenv("REDIS_URL", raising=False)
    monkeypatch.setattr(stream_store, "_store", None)
    monkeypatch.setattr(chat_store, "_store", None)
    monkeypatch.setattr(stream_lifecycle, "_lifecycle", None)
    monkeypatch.setattr(stream_relay, "_relay", None)
    monkeypatch.setattr(generation, "_generator", None)
    monkeypatch.setattr(events, "_publisher", None)
    interrupt_limiter.reset()
    yield
    interrupt_limiter.reset()
