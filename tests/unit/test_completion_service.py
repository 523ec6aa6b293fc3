"""
Tests for prompt rendering and OpenAI error handling in the completion service.
"""

from datetime import UTC, datetime
from types import SimpleNamespace

import httpx
import openai
import pytest

from app.models.domain.crm_domain import CompletionContext, MeetingTranscript, ResolvedContact
from app.services.completion_service import (
    SYSTEM_MESSAGE,
    TRANSCRIPT_PREVIEW_CHARS,
    CompletionService,
    CompletionServiceError,
    build_prompt,
)


def _context(**overrides):
    values = {
        "contacts": [
            ResolvedContact(
                source="HubSpot",
                id="101",
                name="John Smith",
                email="john@example.com",
                job_title="CTO",
            )
        ]
    }
    values.update(overrides)
    return CompletionContext(**values)


def test_prompt_lists_contacts_with_present_fields_only():
    prompt = build_prompt("What is John's email?", _context())

    assert "[Contact 1 - HubSpot]" in prompt
    assert "  Name: John Smith" in prompt
    assert "  Email: john@example.com" in prompt
    assert "  Job Title: CTO" in prompt
    assert "Phone" not in prompt
    assert "101" not in prompt
    assert prompt.endswith("User Question: What is John's email?")


def test_prompt_includes_history_and_meetings():
    meeting = MeetingTranscript(
        title="Kickoff",
        date=datetime(2024, 5, 2, 9, 30, tzinfo=UTC),
        duration_seconds=2700,
        transcript="x" * (TRANSCRIPT_PREVIEW_CHARS + 10),
    )
    context = _context(
        conversation_history=[
            {"type": "user", "content": "Who is John?"},
            {"type": "assistant", "content": "John is the CTO."},
        ],
        meetings=[meeting],
    )

    prompt = build_prompt("And his email?", context)

    assert prompt.startswith("Conversation History:\nUser: Who is John?\nAssistant: John is the CTO.")
    assert "Meeting 1: Kickoff" in prompt
    assert "Date: 2024-05-02 09:30" in prompt
    assert "Duration: 45 minutes" in prompt
    assert "[Transcript truncated...]" in prompt


class FakeCompletions:
    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _client(outcomes):
    completions = FakeCompletions(outcomes)
    return SimpleNamespace(chat=SimpleNamespace(completions=completions)), completions


def _response(text):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=text))],
        usage=SimpleNamespace(total_tokens=42),
    )


def _status_error(status_code):
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    response = httpx.Response(status_code, request=request)
    return openai.APIStatusError("error", response=response, body=None)


@pytest.mark.asyncio
async def test_complete_returns_stripped_answer():
    client, completions = _client([_response("  john@example.com \n")])
    service = CompletionService(api_key="sk-test", model="gpt-4o-mini", client=client)

    answer = await service.complete("What is John's email?", _context())

    assert answer == "john@example.com"
    messages = completions.calls[0]["messages"]
    assert messages[0] == {"role": "system", "content": SYSTEM_MESSAGE}
    assert completions.calls[0]["model"] == "gpt-4o-mini"


@pytest.mark.asyncio
async def test_complete_retries_server_errors():
    client, completions = _client([_status_error(500), _response("answer")])
    service = CompletionService(api_key="sk-test", max_retries=3, client=client)

    assert await service.complete("q", _context()) == "answer"
    assert len(completions.calls) == 2


@pytest.mark.asyncio
async def test_complete_does_not_retry_client_errors():
    client, completions = _client([_status_error(400), _response("unused")])
    service = CompletionService(api_key="sk-test", max_retries=3, client=client)

    with pytest.raises(CompletionServiceError) as exc:
        await service.complete("q", _context())

    assert exc.value.reason == "ai_generation_failed"
    assert len(completions.calls) == 1


@pytest.mark.asyncio
async def test_complete_without_api_key_fails():
    service = CompletionService(api_key=None)
    service.api_key = None

    with pytest.raises(CompletionServiceError) as exc:
        await service.complete("q", _context())

    assert exc.value.recoverable is False
