"""
Chat session: keeps the free-text message and the tagged-contact set in step.

One session per open conversation. Every state change goes through
`process()`, driven by a single loop over the session's event queue.
Provider searches and question answering run as background tasks that post
typed result events back onto that queue; they never touch state directly.
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from app.infrastructure.observability.logging import get_logger
from app.models.domain.chat_domain import ChatMessage
from app.models.domain.crm_domain import (
    PROVIDER_ORDER,
    ContactSummary,
    Credential,
    Provider,
    TaggedContact,
)
from app.services.chat import mentions
from app.services.chat.contact_orchestrator import ContactOrchestrator, MergedContactResults
from app.services.chat.errors import ChatError, ChatValidationError
from app.services.chat.message_store import MessageStore, MessageStoreError
from app.services.chat.query_processor import QueryProcessor
from app.services.crm.credential_store import CredentialStore, load_credentials

logger = get_logger(__name__)

MAX_TAGGED_CONTACTS = 5
SEARCH_MIN_CHARS = 2
MENTION_MIN_CHARS = 1


class SearchSurface(str, Enum):
    SEARCH = "search"  # modal "tag a contact" search
    MENTION = "mention"  # inline `@` autocomplete


# ----------------------------------------------------------------------
# Events
# ----------------------------------------------------------------------


@dataclass(frozen=True)
class TextChanged:
    text: str


@dataclass(frozen=True)
class SearchQueryChanged:
    query: str


@dataclass(frozen=True)
class MentionQueryChanged:
    query: str


@dataclass(frozen=True)
class ContactSelected:
    contact: ContactSummary
    surface: SearchSurface = SearchSurface.SEARCH


@dataclass(frozen=True)
class SearchResults:
    surface: SearchSurface
    provider: Provider
    query: str
    contacts: list[ContactSummary] = field(default_factory=list)
    error: str | None = None


@dataclass(frozen=True)
class MentionsSynced:
    text: str
    mention_names: list[str]


@dataclass(frozen=True)
class SendRequested:
    pass


@dataclass(frozen=True)
class CompletionFinished:
    message: ChatMessage | None
    error: str | None = None


@dataclass(frozen=True)
class ContactRemoved:
    contact_id: str
    provider: Provider


@dataclass(frozen=True)
class NewChat:
    pass


@dataclass(frozen=True)
class SearchClosed:
    pass


@dataclass(frozen=True)
class MentionSearchCleared:
    pass


# ----------------------------------------------------------------------
# State and collaborators
# ----------------------------------------------------------------------


def _idle_flags() -> dict[Provider, bool]:
    return {provider: False for provider in PROVIDER_ORDER}


@dataclass
class SessionState:
    message_text: str = ""
    tagged_contacts: list[TaggedContact] = field(default_factory=list)
    search_query: str = ""
    mention_query: str | None = None
    search_in_flight: dict[Provider, bool] = field(default_factory=_idle_flags)
    mention_in_flight: dict[Provider, bool] = field(default_factory=_idle_flags)
    search_results: MergedContactResults = field(default_factory=MergedContactResults)
    mention_results: MergedContactResults = field(default_factory=MergedContactResults)
    processing: bool = False
    error: str | None = None
    messages: list[ChatMessage] = field(default_factory=list)


@dataclass
class EventOutcome:
    accepted: bool = True
    reason: str | None = None
    message: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


class InputSurface(Protocol):
    """The rich-text input and conversation view attached to a session."""

    async def render(self, text: str, contacts: list[ContactSummary]) -> None: ...

    async def notify(self, reason: str, message: str) -> None: ...

    async def publish(self, event: str, payload: dict[str, Any]) -> None: ...


class NullSurface:
    async def render(self, text: str, contacts: list[ContactSummary]) -> None:
        return None

    async def notify(self, reason: str, message: str) -> None:
        return None

    async def publish(self, event: str, payload: dict[str, Any]) -> None:
        return None


# ----------------------------------------------------------------------
# Session
# ----------------------------------------------------------------------


class ChatSession:
    """
    Single-owner chat session state machine.

    Call `run()` to drive it from the event queue, or `process()` directly
    when the caller already serializes events.
    """

    def __init__(
        self,
        user_id: str,
        orchestrator: ContactOrchestrator,
        credential_store: CredentialStore,
        message_store: MessageStore,
        query_processor: QueryProcessor,
        surface: InputSurface | None = None,
        max_tagged_contacts: int = MAX_TAGGED_CONTACTS,
        recent_messages_limit: int = 50,
    ):
        self.user_id = user_id
        self.orchestrator = orchestrator
        self.credential_store = credential_store
        self.message_store = message_store
        self.query_processor = query_processor
        self.surface = surface or NullSurface()
        self.max_tagged_contacts = max_tagged_contacts
        self.recent_messages_limit = recent_messages_limit

        self.state = SessionState()
        self._queue: asyncio.Queue = asyncio.Queue()
        self._tasks: set[asyncio.Task] = set()

        self._handlers = {
            TextChanged: self._on_text_changed,
            SearchQueryChanged: self._on_search_query_changed,
            MentionQueryChanged: self._on_mention_query_changed,
            ContactSelected: self._on_contact_selected,
            SearchResults: self._on_search_results,
            MentionsSynced: self._on_mentions_synced,
            SendRequested: self._on_send_requested,
            CompletionFinished: self._on_completion_finished,
            ContactRemoved: self._on_contact_removed,
            NewChat: self._on_new_chat,
            SearchClosed: self._on_search_closed,
            MentionSearchCleared: self._on_mention_search_cleared,
        }

    # -- lifecycle -----------------------------------------------------

    async def open(self) -> None:
        """Load the recent conversation into state."""
        try:
            self.state.messages = await self.message_store.list_recent(
                self.user_id, self.recent_messages_limit
            )
        except Exception as e:
            logger.error("Failed to load chat history", user_id=self.user_id, error=str(e))
            self.state.messages = []
            self.state.error = "Could not load previous messages"

    async def submit(self, event: Any) -> None:
        await self._queue.put(event)

    async def run(self) -> None:
        """Process queued events one at a time until cancelled."""
        while True:
            event = await self._queue.get()
            try:
                await self.process(event)
            except Exception:
                logger.exception(
                    "Chat session event failed",
                    user_id=self.user_id,
                    event=type(event).__name__,
                )
            finally:
                self._queue.task_done()

    async def settle(self) -> None:
        """Wait for background work and process every event it produced."""
        while True:
            pending = [task for task in self._tasks if not task.done()]
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            while not self._queue.empty():
                await self.process(self._queue.get_nowait())
                self._queue.task_done()
            if not any(not task.done() for task in self._tasks) and self._queue.empty():
                return

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def process(self, event: Any) -> EventOutcome:
        """Apply one event to session state."""
        handler = self._handlers.get(type(event))
        if handler is None:
            raise TypeError(f"Unsupported chat event: {type(event).__name__}")

        try:
            return await handler(event) or EventOutcome()
        except ChatError as e:
            self.state.error = e.message
            logger.info(
                "Chat event rejected",
                user_id=self.user_id,
                event=type(event).__name__,
                reason=e.reason,
            )
            await self.surface.notify(e.reason, e.message)
            return EventOutcome(
                accepted=False, reason=e.reason, message=e.message, details=e.details
            )

    # -- typing and searching ------------------------------------------

    async def _on_text_changed(self, event: TextChanged) -> EventOutcome | None:
        self.state.message_text = event.text

        query = mentions.detect_mention_query(event.text)
        if query is None:
            self._clear_mention_search()
            return None
        return await self._on_mention_query_changed(MentionQueryChanged(query))

    async def _on_search_query_changed(self, event: SearchQueryChanged) -> EventOutcome | None:
        query = event.query.strip()
        self.state.search_query = query

        if len(query) < SEARCH_MIN_CHARS:
            self.state.search_results.clear()
            self.state.search_in_flight = _idle_flags()
            return None

        await self._start_search(SearchSurface.SEARCH, query)
        return None

    async def _on_mention_query_changed(self, event: MentionQueryChanged) -> EventOutcome | None:
        query = event.query.strip()

        if len(query) < MENTION_MIN_CHARS:
            self._clear_mention_search()
            return None

        self.state.mention_query = query
        await self._start_search(SearchSurface.MENTION, query)
        return None

    async def _start_search(self, surface: SearchSurface, query: str) -> None:
        credentials = await self._load_credentials()
        flags = self._in_flight(surface)

        started = []
        for provider in PROVIDER_ORDER:
            credential = credentials.get(provider)
            if credential is None:
                continue
            flags[provider] = True
            started.append(provider.value)
            self._spawn(self._search_task(surface, provider, credential, query))

        logger.debug(
            "Contact search started",
            user_id=self.user_id,
            surface=surface.value,
            providers=started,
        )

    async def _search_task(
        self, surface: SearchSurface, provider: Provider, credential: Credential, query: str
    ) -> None:
        result = await self.orchestrator.search_provider(provider, credential, query)
        await self._queue.put(
            SearchResults(
                surface=surface,
                provider=provider,
                query=query,
                contacts=result.contacts,
                error=result.error_reason,
            )
        )

    async def _on_search_results(self, event: SearchResults) -> EventOutcome:
        if event.surface == SearchSurface.SEARCH:
            current_query = self.state.search_query
            merged = self.state.search_results
        else:
            current_query = self.state.mention_query
            merged = self.state.mention_results

        if event.query != current_query:
            logger.debug(
                "Discarding superseded search results",
                user_id=self.user_id,
                surface=event.surface.value,
                provider=event.provider.value,
            )
            return EventOutcome(accepted=False, reason="superseded")

        self._in_flight(event.surface)[event.provider] = False

        contacts = [] if event.error else event.contacts
        if event.surface == SearchSurface.MENTION:
            tagged = {c.identity for c in self.state.tagged_contacts}
            contacts = [c for c in contacts if c.identity not in tagged]

        merged.apply(event.provider, contacts)
        if event.error:
            merged.errors[event.provider] = event.error

        await self.surface.publish(
            f"{event.surface.value}_results",
            {
                "query": current_query,
                "contacts": [c.model_dump(mode="json") for c in merged.contacts],
                "loading": any(self._in_flight(event.surface).values()),
                "errors": {p.value: reason for p, reason in merged.errors.items()},
            },
        )
        return EventOutcome()

    # -- tagging -------------------------------------------------------

    async def _on_contact_selected(self, event: ContactSelected) -> EventOutcome:
        contact = event.contact
        tagged = self.state.tagged_contacts

        if any(c.identity == contact.identity for c in tagged):
            message = (
                "Contact already tagged"
                if event.surface == SearchSurface.MENTION
                else "Contact already added"
            )
            raise ChatValidationError(
                "already_selected",
                message,
                {"contact_id": contact.id, "provider": contact.provider.value},
            )

        if len(tagged) >= self.max_tagged_contacts:
            raise ChatValidationError(
                "max_contacts_reached",
                f"Maximum {self.max_tagged_contacts} contacts can be tagged",
                {"limit": self.max_tagged_contacts},
            )

        tagged.append(contact)

        if event.surface == SearchSurface.MENTION:
            self.state.message_text = mentions.replace_mention_query(
                self.state.message_text, self.state.mention_query, contact.mention_name
            )
        else:
            self.state.message_text = mentions.append_mention(
                self.state.message_text, contact.mention_name
            )

        self._clear_search()
        self._clear_mention_search()
        self.state.error = None

        await self.surface.render(self.state.message_text, list(tagged))
        return EventOutcome()

    async def _on_mentions_synced(self, event: MentionsSynced) -> None:
        self.state.message_text = event.text
        self.state.tagged_contacts = mentions.sync_tagged_contacts(
            self.state.tagged_contacts, event.mention_names
        )

    async def _on_contact_removed(self, event: ContactRemoved) -> None:
        self.state.tagged_contacts = [
            c
            for c in self.state.tagged_contacts
            if c.identity != (event.contact_id, event.provider)
        ]

    # -- sending -------------------------------------------------------

    def _validate_send(self) -> str:
        text = self.state.message_text.strip()
        if not text:
            raise ChatValidationError("empty_message", "Please enter a message")

        if not self.state.tagged_contacts:
            raise ChatValidationError(
                "no_contacts_tagged", "Please tag at least one contact using @mention"
            )

        unmatched = mentions.find_unmatched_mentions(text, self.state.tagged_contacts)
        if unmatched:
            raise ChatValidationError(
                "unmatched_mentions",
                "Mentioned contacts are not tagged: "
                + ", ".join(f"@{name}" for name in unmatched),
                {"unmatched_mentions": unmatched},
            )
        return text

    async def _on_send_requested(self, event: SendRequested) -> EventOutcome:
        if self.state.processing:
            raise ChatValidationError("processing", "Still answering the previous question")

        text = self._validate_send()
        contacts = list(self.state.tagged_contacts)

        try:
            saved = await self.message_store.create(
                ChatMessage.from_user(self.user_id, text, contacts)
            )
        except MessageStoreError as e:
            raise ChatError("message_not_saved", "Failed to save message") from e

        self.state.messages.append(saved)
        self.state.message_text = ""
        self.state.tagged_contacts = []
        self._clear_search()
        self._clear_mention_search()
        self.state.processing = True
        self.state.error = None

        await self.surface.render("", [])
        await self.surface.publish("message", saved.model_dump(mode="json"))

        self._spawn(self._answer_task(text, contacts))
        logger.info(
            "Chat message sent",
            user_id=self.user_id,
            message_id=saved.id,
            contact_count=len(contacts),
        )
        return EventOutcome(details={"message_id": saved.id})

    async def _answer_task(self, question: str, contacts: list[ContactSummary]) -> None:
        try:
            message = await self.query_processor.process(self.user_id, question, contacts)
            await self._queue.put(CompletionFinished(message))
        except Exception as e:
            logger.error(
                "Failed to record assistant response",
                user_id=self.user_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            await self._queue.put(CompletionFinished(None, error="message_not_saved"))

    async def _on_completion_finished(self, event: CompletionFinished) -> None:
        self.state.processing = False

        if event.message is not None:
            self.state.messages.append(event.message)
            await self.surface.publish("message", event.message.model_dump(mode="json"))
        if event.error:
            self.state.error = "Failed to save the assistant response"
            await self.surface.notify(event.error, self.state.error)

    # -- resets --------------------------------------------------------

    async def _on_new_chat(self, event: NewChat) -> None:
        self.state.messages = []
        self.state.message_text = ""
        self.state.tagged_contacts = []
        self.state.error = None
        self._clear_search()
        self._clear_mention_search()
        await self.surface.render("", [])

    async def _on_search_closed(self, event: SearchClosed) -> None:
        self._clear_search()

    async def _on_mention_search_cleared(self, event: MentionSearchCleared) -> None:
        self._clear_mention_search()

    # -- helpers -------------------------------------------------------

    def _in_flight(self, surface: SearchSurface) -> dict[Provider, bool]:
        if surface == SearchSurface.SEARCH:
            return self.state.search_in_flight
        return self.state.mention_in_flight

    def _clear_search(self) -> None:
        self.state.search_query = ""
        self.state.search_results.clear()
        self.state.search_in_flight = _idle_flags()

    def _clear_mention_search(self) -> None:
        self.state.mention_query = None
        self.state.mention_results.clear()
        self.state.mention_in_flight = _idle_flags()

    async def _load_credentials(self) -> dict[Provider, Credential | None]:
        try:
            return await load_credentials(self.credential_store, self.user_id)
        except Exception as e:
            logger.error("Failed to load CRM credentials", user_id=self.user_id, error=str(e))
            raise ChatError("credentials_unavailable", "Could not load CRM connections") from e
