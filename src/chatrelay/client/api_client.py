"""Async HTTP client for the chatrelay API."""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import httpx

from ..domain.chat_models import ChatMessage, ChatThread
from ..domain.errors import (
    AuthError,
    ChatRelayError,
    GenerationError,
    NotResumableError,
    StorageError,
    StreamNotFoundError,
    ValidationError,
)
from ..domain.stream_models import MarkInterruptedResponse, ResumableStreamSummary


logger = logging.getLogger("chatrelay.client")

_TIMEOUT_SECONDS = 30

StreamStarted = Callable[[str], None]


def _detail(response: httpx.Response) -> Any:
    try:
        return response.json().get("detail")
    except (ValueError, AttributeError):
        return response.text


def raise_for_status(response: httpx.Response, stream_id: Optional[str] = None) -> None:
    code = response.status_code
    if code < 400:
        return
    detail = _detail(response)
    if code == 401:
        raise AuthError(str(detail or "Authentication required"))
    if code == 403:
        raise AuthError(str(detail or "Forbidden"), forbidden=True)
    if stream_id is not None and code == 404:
        raise StreamNotFoundError(stream_id)
    if stream_id is not None and code == 409:
        status = detail.get("status") if isinstance(detail, dict) else None
        raise NotResumableError(stream_id, status)
    if code in (400, 422):
        raise ValidationError(str(detail))
    if code >= 500:
        raise StorageError(f"{response.request.method} {response.request.url.path}", RuntimeError(str(detail)))
    raise ChatRelayError(f"HTTP {code}: {detail}")


async def iter_text_frames(response: httpx.Response) -> AsyncIterator[str]:
    """Yield the text of each ``0:`` frame until the empty end frame."""
    async for line in response.aiter_lines():
        if not line:
            continue
        kind, _, payload = line.partition(":")
        if kind == "3":
            raise GenerationError(json.loads(payload))
        if kind != "0":
            continue
        text = json.loads(payload)
        if text == "":
            return
        yield text


class ChatApiClient:
    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        *,
        client: Optional[httpx.AsyncClient] = None,
        prefix: str = "/api",
    ) -> None:
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url, headers=headers, timeout=_TIMEOUT_SECONDS)
        if client is not None and headers:
            self._client.headers.update(headers)
        self._prefix = prefix.rstrip("/")

    async def __aenter__(self) -> "ChatApiClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _url(self, path: str) -> str:
        return f"{self._prefix}{path}"

    async def mark_interrupted(self, message_id: str) -> MarkInterruptedResponse:
        response = await self._client.post(self._url("/streams/mark-interrupted"), json={"messageId": message_id})
        raise_for_status(response)
        return MarkInterruptedResponse.model_validate(response.json())

    async def list_resumable(self, thread_id: Optional[str] = None) -> List[ResumableStreamSummary]:
        params = {"threadId": thread_id} if thread_id else None
        response = await self._client.get(self._url("/streams/resumable"), params=params)
        raise_for_status(response)
        return [ResumableStreamSummary.model_validate(item) for item in response.json()]

    async def resume(self, stream_id: str, continue_generation: bool = False) -> AsyncIterator[str]:
        params = {"continue": "true"} if continue_generation else None
        async with self._client.stream("GET", self._url(f"/streams/{stream_id}/resume"), params=params) as response:
            if response.status_code >= 400:
                await response.aread()
                raise_for_status(response, stream_id=stream_id)
            async for text in iter_text_frames(response):
                yield text

    async def cancel(self, stream_id: str) -> Dict[str, Any]:
        response = await self._client.post(self._url(f"/streams/{stream_id}/cancel"))
        raise_for_status(response, stream_id=stream_id)
        return response.json()

    async def create_thread(self, title: Optional[str] = None) -> ChatThread:
        response = await self._client.post(self._url("/chat/threads"), json={"title": title})
        raise_for_status(response)
        return ChatThread.model_validate(response.json())

    async def list_messages(self, thread_id: str) -> List[ChatMessage]:
        response = await self._client.get(self._url(f"/chat/threads/{thread_id}/messages"))
        raise_for_status(response)
        return [ChatMessage.model_validate(item) for item in response.json()]

    async def _stream_reply(
        self,
        path: str,
        thread_id: str,
        body: Optional[Dict[str, Any]],
        on_started: Optional[StreamStarted],
    ) -> ChatMessage:
        async with self._client.stream("POST", self._url(path), json=body) as response:
            if response.status_code >= 400:
                await response.aread()
                raise_for_status(response)
            message_id = response.headers.get("X-Message-Id", "")
            logger.debug("stream_reply_started path=%s message=%s", path, message_id)
            if on_started and message_id:
                on_started(message_id)
            parts: List[str] = []
            async for text in iter_text_frames(response):
                parts.append(text)
        return ChatMessage(message_id=message_id, role="assistant", content="".join(parts), thread_id=thread_id)

    async def send_message(
        self,
        thread_id: str,
        content: str,
        on_started: Optional[StreamStarted] = None,
        model: Optional[str] = None,
    ) -> ChatMessage:
        body: Dict[str, Any] = {"content": content}
        if model:
            body["model"] = model
        return await self._stream_reply(f"/chat/threads/{thread_id}/messages", thread_id, body, on_started)

    async def regenerate(
        self,
        thread_id: str,
        message_id: str,
        on_started: Optional[StreamStarted] = None,
    ) -> ChatMessage:
        return await self._stream_reply(
            f"/chat/threads/{thread_id}/messages/{message_id}/regenerate", thread_id, None, on_started
        )

    async def save_attempts(self, thread_id: str, message: ChatMessage) -> ChatMessage:
        body = {
            "attempts": [a.model_dump(mode="json") for a in message.attempts or []],
            "current_attempt_index": message.current_attempt_index,
        }
        response = await self._client.put(
            self._url(f"/chat/threads/{thread_id}/messages/{message.message_id}/attempts"), json=body
        )
        raise_for_status(response)
        return ChatMessage.model_validate(response.json())
