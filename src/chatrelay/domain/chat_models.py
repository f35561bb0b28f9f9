from __future__ import annotations

from typing import List, Literal, Optional
from pydantic import BaseModel, Field, model_validator


Role = Literal["system", "user", "assistant"]


class ChatThreadCreate(BaseModel):
    title: Optional[str] = None
    persona: Optional[str] = None


class ChatThread(BaseModel):
    thread_id: str
    title: str
    created_at: str
    updated_at: str
    created_by: str
    persona: Optional[str] = None


class ChatMessageCreate(BaseModel):
    content: str = Field(min_length=1)
    model: Optional[str] = None


class ChatMessage(BaseModel):
    message_id: str
    role: Role
    content: str
    thread_id: Optional[str] = None
    created_at: Optional[str] = None
    metadata: Optional[dict] = None
    # Present only once the message has been regenerated; index 0 is the original response.
    attempts: Optional[List["ChatMessage"]] = None
    current_attempt_index: Optional[int] = None

    @model_validator(mode="after")
    def _check_attempts(self) -> "ChatMessage":
        if self.attempts is None:
            if self.current_attempt_index is not None:
                raise ValueError("current_attempt_index requires attempts")
            return self
        if len(self.attempts) < 2:
            raise ValueError("attempts must hold at least two entries when present")
        if self.current_attempt_index is not None and not 0 <= self.current_attempt_index < len(self.attempts):
            raise ValueError("current_attempt_index out of range")
        return self

    @property
    def attempt_count(self) -> int:
        return len(self.attempts) if self.attempts else 1


class AttemptsUpdate(BaseModel):
    attempts: List[ChatMessage] = Field(min_length=2)
    current_attempt_index: Optional[int] = None


class ChatThreadWithMessages(BaseModel):
    thread: ChatThread
    messages: List[ChatMessage]


ChatMessage.model_rebuild()
