"""
Chat message persistence (``chat_messages`` table).
"""

from typing import Any, Protocol

from psycopg.types.json import Jsonb

from app.db.helpers import DatabaseError, fetch_all, fetch_one, with_db_retry
from app.infrastructure.observability.logging import get_logger
from app.models.domain.chat_domain import ChatMessage, MessageType

logger = get_logger(__name__)


class MessageStoreError(Exception):
    """Raised when a chat message cannot be stored or loaded."""

    def __init__(self, message: str, user_id: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.user_id = user_id
        self.recoverable = recoverable


class MessageStore(Protocol):
    async def create(self, message: ChatMessage) -> ChatMessage: ...

    async def list_recent(self, user_id: str, limit: int) -> list[ChatMessage]: ...


def _row_to_message(row: dict[str, Any]) -> ChatMessage:
    return ChatMessage(
        id=row["id"],
        user_id=str(row["user_id"]),
        content=row["content"],
        type=MessageType(row["type"]),
        contact_ids=list(row.get("contact_ids") or []),
        contact_sources=row.get("contact_sources") or {},
        metadata=row.get("metadata") or {},
        inserted_at=row.get("inserted_at"),
    )


class PostgresMessageStore:
    """Append-only chat history; messages are never updated after insert."""

    async def create(self, message: ChatMessage) -> ChatMessage:
        try:
            row = await self._insert(message)
        except DatabaseError as e:
            logger.error(
                "Failed to store chat message",
                user_id=message.user_id,
                message_type=message.type.value,
                error=str(e),
            )
            raise MessageStoreError(f"Could not save message: {e}", message.user_id) from e

        stored = _row_to_message(row)
        logger.debug(
            "Chat message stored",
            user_id=stored.user_id,
            message_id=stored.id,
            message_type=stored.type.value,
            contact_count=len(stored.contact_ids),
        )
        return stored

    @with_db_retry(max_retries=2, base_delay=0.1)
    async def _insert(self, message: ChatMessage) -> dict[str, Any]:
        return await fetch_one(
            """
            INSERT INTO chat_messages (
                user_id, content, type, contact_ids, contact_sources, metadata,
                inserted_at, updated_at
            ) VALUES (%s, %s, %s, %s, %s, %s, NOW(), NOW())
            RETURNING id, user_id, content, type, contact_ids, contact_sources,
                      metadata, inserted_at
            """,
            (
                message.user_id,
                message.content,
                message.type.value,
                message.contact_ids,
                Jsonb(message.contact_sources),
                Jsonb(message.metadata),
            ),
        )

    @with_db_retry(max_retries=2, base_delay=0.1)
    async def list_recent(self, user_id: str, limit: int = 50) -> list[ChatMessage]:
        """Most recent `limit` messages, oldest first."""
        rows = await fetch_all(
            """
            SELECT id, user_id, content, type, contact_ids, contact_sources,
                   metadata, inserted_at
            FROM (
                SELECT * FROM chat_messages
                WHERE user_id = %s
                ORDER BY id DESC
                LIMIT %s
            ) recent
            ORDER BY id ASC
            """,
            (user_id, limit),
        )
        return [_row_to_message(row) for row in rows]
