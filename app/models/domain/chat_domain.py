# app/models/domain/chat_domain.py
"""
Chat message domain model.
Stores both user questions and assistant responses.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator

from app.models.domain.crm_domain import ContactSummary


class MessageType(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


def contact_sources_for(contacts: list[ContactSummary]) -> dict[str, str]:
    """Provider per tagged contact, keyed by `<provider>:<id>`."""
    return {f"{c.provider.value}:{c.id}": c.provider.value for c in contacts}


class ChatMessage(BaseModel):
    """Persisted chat message. Immutable once created."""

    model_config = {"frozen": True}

    id: int | None = None
    user_id: str
    content: str
    type: MessageType
    contact_ids: list[str] = Field(default_factory=list)
    contact_sources: dict[str, str] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    inserted_at: datetime | None = None

    @field_validator("content")
    @classmethod
    def _content_not_empty(cls, value: str) -> str:
        if not value:
            raise ValueError("content must not be empty")
        return value

    @classmethod
    def from_user(
        cls, user_id: str, content: str, contacts: list[ContactSummary]
    ) -> "ChatMessage":
        """Build the user message recorded at send time."""
        return cls(
            user_id=user_id,
            content=content,
            type=MessageType.USER,
            contact_ids=[c.id for c in contacts],
            contact_sources=contact_sources_for(contacts),
            metadata={"tagged_contacts": [c.model_dump(mode="json") for c in contacts]},
        )

    def tagged_contacts(self) -> list[ContactSummary]:
        """Tagged contact snapshot carried in metadata."""
        raw = self.metadata.get("tagged_contacts") or []
        return [ContactSummary.model_validate(item) for item in raw]

    def history_entry(self) -> dict[str, str]:
        return {"type": self.type.value, "content": self.content}
