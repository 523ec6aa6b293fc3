# app/services/completion_service.py
"""
Completion service for CRM questions.
Turns a question plus structured contact/meeting context into an answer via
OpenAI chat completions.
"""

import asyncio

import openai
from openai import AsyncOpenAI

from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.models.domain.crm_domain import CompletionContext, MeetingTranscript

logger = get_logger(__name__)

TRANSCRIPT_PREVIEW_CHARS = 2000

FIELD_NAMES = {
    "name": "Name",
    "email": "Email",
    "phone": "Phone",
    "mobile": "Mobile",
    "company": "Company",
    "job_title": "Job Title",
    "address": "Address",
    "city": "City",
    "state": "State",
    "zip": "ZIP Code",
    "country": "Country",
    "website": "Website",
    "linkedin": "LinkedIn",
    "twitter": "Twitter",
}

SYSTEM_MESSAGE = (
    "You are a helpful CRM assistant. Answer the user's question using the contact "
    "information and meeting transcripts provided. If the answer cannot be determined "
    "from the provided information, say so politely. Consider the conversation history "
    "for context when answering follow-up questions."
)


class CompletionServiceError(Exception):
    """Raised when an answer could not be generated."""

    reason = "ai_generation_failed"

    def __init__(self, message: str, api_error: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.api_error = api_error
        self.recoverable = recoverable


def _format_history(history: list[dict[str, str]]) -> str:
    lines = []
    for entry in history:
        role = "User" if entry.get("type") == "user" else "Assistant"
        lines.append(f"{role}: {entry.get('content', '')}")
    return "\n".join(lines)


def _format_meeting(index: int, meeting: MeetingTranscript) -> str:
    date_str = meeting.date.strftime("%Y-%m-%d %H:%M") if meeting.date else "Unknown date"
    transcript = meeting.transcript or ""
    if len(transcript) > TRANSCRIPT_PREVIEW_CHARS:
        transcript = transcript[:TRANSCRIPT_PREVIEW_CHARS] + "\n[Transcript truncated...]"

    return (
        f"Meeting {index}: {meeting.title}\n"
        f"Date: {date_str}\n"
        f"Duration: {meeting.duration_seconds // 60} minutes\n\n"
        f"Transcript:\n{transcript}"
    )


def build_prompt(question: str, context: CompletionContext) -> str:
    """Render the user message for a question and its context."""
    sections = []

    if context.conversation_history:
        sections.append("Conversation History:\n" + _format_history(context.conversation_history))

    contact_blocks = []
    for index, contact in enumerate(context.contacts, start=1):
        fields = "\n".join(
            f"  {FIELD_NAMES.get(key, key.capitalize())}: {value}"
            for key, value in contact.present_fields().items()
            if key != "id"
        )
        contact_blocks.append(f"[Contact {index} - {contact.source}]\n{fields}")
    sections.append("Contact Information:\n" + "\n\n".join(contact_blocks))

    if context.meetings:
        meetings = "\n\n---\n\n".join(
            _format_meeting(index, meeting) for index, meeting in enumerate(context.meetings, 1)
        )
        sections.append("Meeting Transcripts:\n\n" + meetings)

    sections.append(f"User Question: {question}")
    return "\n\n".join(sections)


class CompletionService:
    """
    OpenAI-backed answer generation.

    The client is created on first use so the app can start without an API
    key; the first question then fails with CompletionServiceError.
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
        client: AsyncOpenAI | None = None,
    ):
        self.api_key = api_key or settings.OPENAI_API_KEY
        self.model = model or settings.OPENAI_MODEL
        self.timeout = timeout or settings.COMPLETION_TIMEOUT_SECONDS
        self.max_retries = max_retries or settings.COMPLETION_MAX_RETRIES
        self.client = client

    def _get_client(self) -> AsyncOpenAI:
        if self.client is None:
            if not self.api_key:
                raise CompletionServiceError(
                    "OPENAI_API_KEY not configured in settings", recoverable=False
                )
            self.client = AsyncOpenAI(api_key=self.api_key, timeout=self.timeout)
            logger.info("OpenAI client initialized", model=self.model, timeout=self.timeout)
        return self.client

    async def complete(self, question: str, context: CompletionContext) -> str:
        """
        Answer a question from structured context.

        Raises:
            CompletionServiceError: If no answer could be generated
        """
        client = self._get_client()
        prompt = build_prompt(question, context)
        last_error: Exception | None = None

        for attempt in range(self.max_retries):
            try:
                response = await client.chat.completions.create(
                    model=self.model,
                    messages=[
                        {"role": "system", "content": SYSTEM_MESSAGE},
                        {"role": "user", "content": prompt},
                    ],
                    temperature=settings.OPENAI_TEMPERATURE,
                    max_tokens=settings.OPENAI_MAX_TOKENS,
                )

                if not response.choices or not response.choices[0].message.content:
                    raise CompletionServiceError("Empty response from OpenAI API")

                answer = response.choices[0].message.content.strip()
                logger.info(
                    "Completion generated",
                    attempt=attempt + 1,
                    contact_count=len(context.contacts),
                    meeting_count=len(context.meetings),
                    response_length=len(answer),
                    usage_tokens=response.usage.total_tokens if response.usage else 0,
                )
                return answer

            except openai.RateLimitError as e:
                last_error = e
                wait_time = min(2**attempt, 30)
                logger.warning(
                    "OpenAI rate limit hit, retrying",
                    attempt=attempt + 1,
                    wait_time=wait_time,
                    error=str(e),
                )
                if attempt < self.max_retries - 1:
                    await asyncio.sleep(wait_time)

            except openai.APITimeoutError as e:
                last_error = e
                logger.warning("OpenAI API timeout, retrying", attempt=attempt + 1, error=str(e))

            except openai.APIStatusError as e:
                last_error = e
                if 400 <= e.status_code < 500:
                    logger.error("OpenAI client error (not retrying)", error=str(e))
                    break
                logger.warning("OpenAI API error, retrying", attempt=attempt + 1, error=str(e))

            except openai.APIError as e:
                last_error = e
                logger.warning("OpenAI API error, retrying", attempt=attempt + 1, error=str(e))

        logger.error(
            "OpenAI completion failed after all retries",
            max_retries=self.max_retries,
            final_error=str(last_error),
        )
        raise CompletionServiceError(
            f"Completion failed after {self.max_retries} attempts",
            api_error=str(last_error),
        ) from last_error
