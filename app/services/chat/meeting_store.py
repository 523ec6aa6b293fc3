"""
Recorded meetings with transcripts, looked up by participant email.
"""

from typing import Any, Protocol

from app.db.helpers import fetch_all, with_db_retry
from app.infrastructure.observability.logging import get_logger
from app.models.domain.crm_domain import MeetingTranscript

logger = get_logger(__name__)

MEETING_LIMIT = 5


class MeetingStore(Protocol):
    async def list_for_contacts(self, user_id: str, emails: list[str]) -> list[MeetingTranscript]: ...


def format_transcript(content: dict[str, Any] | None) -> str:
    """
    Render transcript segments as ``speaker: words`` lines.

    Expects ``{"data": [{"speaker": ..., "words": [{"text": ...}, ...]}, ...]}``.
    """
    segments = (content or {}).get("data") or []
    lines = []
    for segment in segments:
        speaker = segment.get("speaker") or "Unknown Speaker"
        words = " ".join(word.get("text", "") for word in segment.get("words") or [])
        lines.append(f"{speaker}: {words}")
    return "\n".join(lines)


class PostgresMeetingStore:
    def __init__(self, limit: int = MEETING_LIMIT):
        self.limit = limit

    @with_db_retry(max_retries=2, base_delay=0.1)
    async def list_for_contacts(self, user_id: str, emails: list[str]) -> list[MeetingTranscript]:
        """Latest meetings of the user that any of the emails attended."""
        emails = sorted({email.lower() for email in emails if email})
        if not emails:
            return []

        rows = await fetch_all(
            """
            SELECT m.id, m.title, m.recorded_at, m.duration_seconds, t.content
            FROM meetings m
            JOIN meeting_transcripts t ON t.meeting_id = m.id
            WHERE m.user_id = %s
              AND t.content IS NOT NULL
              AND EXISTS (
                  SELECT 1 FROM meeting_participants p
                  WHERE p.meeting_id = m.id AND lower(p.email) = ANY(%s)
              )
            ORDER BY m.recorded_at DESC NULLS LAST
            LIMIT %s
            """,
            (user_id, emails, self.limit),
        )

        meetings = [
            MeetingTranscript(
                title=row["title"] or "Untitled meeting",
                date=row.get("recorded_at"),
                duration_seconds=row.get("duration_seconds") or 0,
                transcript=format_transcript(row.get("content")),
            )
            for row in rows
        ]
        logger.debug(
            "Loaded meetings for contacts",
            user_id=user_id,
            email_count=len(emails),
            meeting_count=len(meetings),
        )
        return meetings
