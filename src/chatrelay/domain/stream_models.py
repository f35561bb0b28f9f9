from __future__ import annotations

from typing import Literal, Optional
from pydantic import BaseModel, ConfigDict, Field


StreamStatus = Literal["streaming", "paused", "resumed", "completed", "cancelled"]


class StreamRecord(BaseModel):
    id: str
    thread_id: str
    message_id: str
    user_id: str
    status: StreamStatus = "streaming"
    started_at: str
    last_updated_at: str
    partial_content: str = ""
    model: Optional[str] = None
    completed_at: Optional[str] = None
    total_tokens: int = 0


class MarkInterruptedRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message_id: str = Field(alias="messageId", min_length=1)


class MarkInterruptedResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    updated: int
    message_id: str = Field(alias="messageId")


class ResumableStreamSummary(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    stream_id: str = Field(alias="streamId")
    thread_id: str = Field(alias="threadId")
    message_id: str = Field(alias="messageId")
    started_at: str = Field(alias="startedAt")

    @classmethod
    def from_record(cls, record: StreamRecord) -> "ResumableStreamSummary":
        return cls(
            stream_id=record.id,
            thread_id=record.thread_id,
            message_id=record.message_id,
            started_at=record.started_at,
        )


