"""Chat API response models."""

from typing import Any

from pydantic import BaseModel, Field

from app.models.domain.chat_domain import ChatMessage


class ChatHistoryResponse(BaseModel):
    messages: list[ChatMessage] = Field(default_factory=list)
    count: int = 0


class ChatSocketReply(BaseModel):
    """Server-to-client WebSocket message."""

    event: str
    payload: dict[str, Any] = Field(default_factory=dict)
