from __future__ import annotations

"""Model-generation collaborator.

The core only needs an incremental response per message id and a way to stop
it; how tokens are produced is left to the provider. An OpenAI-compatible HTTP
client is used when CHATRELAY_LLM_BASE_URL is set, otherwise a deterministic
local generator keeps dev and CI runs self-contained.
"""

from threading import RLock
from typing import Dict, Iterator, List, Optional, Protocol, Set
import json
import logging
import os
import re

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry


logger = logging.getLogger(__name__)
LOG = logging.getLogger("chatrelay.llm")

_STREAM_TIMEOUT = (int(os.getenv("CHATRELAY_LLM_CONNECT_TIMEOUT", "3")), int(os.getenv("CHATRELAY_LLM_READ_TIMEOUT", "60")))


class GenerationService(Protocol):
    def stream(self, message_id: str, messages: List[Dict[str, str]]) -> Iterator[str]: ...

    def stop(self, message_id: str) -> None: ...


class _StopFlags:
    def __init__(self) -> None:
        self._stopped: Set[str] = set()
        self._lock = RLock()

    def stop(self, message_id: str) -> None:
        with self._lock:
            self._stopped.add(message_id)

    def clear(self, message_id: str) -> None:
        with self._lock:
            self._stopped.discard(message_id)

    def is_stopped(self, message_id: str) -> bool:
        with self._lock:
            return message_id in self._stopped


def _build_session() -> requests.Session:
    session = requests.Session()
    retry = Retry(
        total=2,
        backoff_factor=0.5,
        status_forcelist=(429, 500, 502, 503, 504),
        allowed_methods=frozenset(["POST"]),
    )
    adapter = HTTPAdapter(max_retries=retry, pool_connections=10, pool_maxsize=10)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


class OpenAICompatibleGenerator:
    def __init__(self, base_url: str, model: str, api_key: Optional[str] = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self._api_key = api_key
        self._session = _build_session()
        self._flags = _StopFlags()

    def stop(self, message_id: str) -> None:
        self._flags.stop(message_id)

    def stream(self, message_id: str, messages: List[Dict[str, str]]) -> Iterator[str]:
        self._flags.clear(message_id)
        LOG.debug("llm_stream", extra={"model": self.model, "base_url": self.base_url, "message_id": message_id})
        headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}
        payload = {"model": self.model, "messages": messages, "stream": True}
        with self._session.post(
            f"{self.base_url}/v1/chat/completions",
            json=payload,
            headers=headers,
            timeout=_STREAM_TIMEOUT,
            stream=True,
        ) as resp:
            resp.raise_for_status()
            for raw_line in resp.iter_lines():
                if self._flags.is_stopped(message_id):
                    LOG.info("llm_stream_stopped", extra={"message_id": message_id})
                    break
                if not raw_line:
                    continue
                line = raw_line.decode("utf-8") if isinstance(raw_line, bytes) else raw_line
                if not line.startswith("data: "):
                    continue
                data = line[6:].strip()
                if data == "[DONE]":
                    break
                try:
                    parsed = json.loads(data)
                except json.JSONDecodeError:
                    continue
                delta = (parsed.get("choices") or [{}])[0].get("delta") or {}
                token = delta.get("content") or ""
                if token:
                    yield token


class DeterministicGenerator:
    """Word-by-word canned reply; used when no provider is configured."""

    def __init__(self, prefix: str = "Here is a response to:") -> None:
        self._prefix = prefix
        self._flags = _StopFlags()
        self._calls: Dict[str, int] = {}

    def stop(self, message_id: str) -> None:
        self._flags.stop(message_id)

    def stream(self, message_id: str, messages: List[Dict[str, str]]) -> Iterator[str]:
        self._flags.clear(message_id)
        prompt = ""
        for msg in reversed(messages):
            if msg.get("role") == "user":
                prompt = msg.get("content") or ""
                break
        self._calls[message_id] = self._calls.get(message_id, 0) + 1
        text = f"{self._prefix} {prompt.strip()}".strip()
        if self._calls[message_id] > 1:
            # Regenerations get a distinguishable reply
            text = f"{text} (take {self._calls[message_id]})"
        for token in re.findall(r"\S+\s*", text):
            if self._flags.is_stopped(message_id):
                break
            yield token


_generator: GenerationService | None = None


def get_generator() -> GenerationService:
    global _generator
    if _generator is not None:
        return _generator
    base_url = os.getenv("CHATRELAY_LLM_BASE_URL")
    if base_url:
        model = os.getenv("CHATRELAY_LLM_MODEL", "gpt-4o-mini")
        logger.info("Using OpenAI-compatible provider base_url=%s model=%s", base_url, model)
        _generator = OpenAICompatibleGenerator(base_url, model, api_key=os.getenv("CHATRELAY_LLM_API_KEY"))
    else:
        _generator = DeterministicGenerator()
    return _generator
