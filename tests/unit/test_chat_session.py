"""
Tests for the chat session state machine.
"""

import pytest

from app.models.domain.chat_domain import ChatMessage, MessageType
from app.models.domain.crm_domain import Provider
from app.services.chat.contact_orchestrator import ContactOrchestrator
from app.services.chat.query_processor import QueryProcessor
from app.services.chat.session import (
    ChatSession,
    ContactRemoved,
    ContactSelected,
    MentionsSynced,
    NewChat,
    SearchQueryChanged,
    SearchResults,
    SearchSurface,
    SendRequested,
    TextChanged,
)
from tests.fakes import USER_ID, FakeCrmClient, make_contact, make_record

JOHN = make_contact("101", Provider.HUBSPOT, firstname="John", lastname="Smith")
MARY = make_contact("003A", Provider.SALESFORCE, firstname="Mary", lastname="Jones")


class RecordingSurface:
    def __init__(self):
        self.renders = []
        self.notices = []
        self.published = []

    async def render(self, text, contacts):
        self.renders.append((text, list(contacts)))

    async def notify(self, reason, message):
        self.notices.append((reason, message))

    async def publish(self, event, payload):
        self.published.append((event, payload))


@pytest.fixture
def clients():
    return {
        Provider.HUBSPOT: FakeCrmClient(
            Provider.HUBSPOT,
            search_results=[JOHN],
            records={"101": make_record(JOHN, phone="555-0101")},
        ),
        Provider.SALESFORCE: FakeCrmClient(
            Provider.SALESFORCE,
            search_results=[MARY],
            records={"003A": make_record(MARY)},
        ),
    }


@pytest.fixture
def surface():
    return RecordingSurface()


@pytest.fixture
def session(clients, credential_store, message_store, meeting_store, completion_service, surface):
    orchestrator = ContactOrchestrator(clients)
    processor = QueryProcessor(
        orchestrator, credential_store, meeting_store, completion_service, message_store
    )
    return ChatSession(
        USER_ID, orchestrator, credential_store, message_store, processor, surface=surface
    )


async def _tag(session, *contacts):
    for contact in contacts:
        outcome = await session.process(ContactSelected(contact))
        assert outcome.accepted


@pytest.mark.asyncio
async def test_select_contact_appends_mention_and_renders(session, surface):
    outcome = await session.process(ContactSelected(JOHN))

    assert outcome.accepted
    assert session.state.message_text == "@John "
    assert session.state.tagged_contacts == [JOHN]
    assert surface.renders[-1] == ("@John ", [JOHN])


@pytest.mark.asyncio
async def test_tagged_contacts_capped_at_five(session):
    contacts = [make_contact(str(i), firstname=f"Person{i}") for i in range(6)]
    await _tag(session, *contacts[:5])

    outcome = await session.process(ContactSelected(contacts[5]))

    assert not outcome.accepted
    assert outcome.reason == "max_contacts_reached"
    assert len(session.state.tagged_contacts) == 5


@pytest.mark.asyncio
async def test_duplicate_selection_rejected(session, surface):
    await _tag(session, JOHN)

    outcome = await session.process(ContactSelected(JOHN))

    assert outcome.reason == "already_selected"
    assert outcome.message == "Contact already added"
    assert len(session.state.tagged_contacts) == 1
    assert surface.notices[-1] == ("already_selected", "Contact already added")


@pytest.mark.asyncio
async def test_duplicate_mention_selection_message(session):
    await _tag(session, JOHN)

    outcome = await session.process(ContactSelected(JOHN, SearchSurface.MENTION))

    assert outcome.message == "Contact already tagged"
    assert len(session.state.tagged_contacts) == 1


@pytest.mark.asyncio
async def test_same_id_from_different_providers_are_distinct(session):
    john_sf = make_contact("101", Provider.SALESFORCE, firstname="Johnny")

    await _tag(session, JOHN, john_sf)

    assert [c.identity for c in session.state.tagged_contacts] == [
        ("101", Provider.HUBSPOT),
        ("101", Provider.SALESFORCE),
    ]


@pytest.mark.asyncio
async def test_mention_selection_replaces_pending_query(session):
    session.state.message_text = "Ask @Jo"
    session.state.mention_query = "Jo"

    await session.process(ContactSelected(JOHN, SearchSurface.MENTION))

    assert session.state.message_text == "Ask @John "
    assert session.state.mention_query is None


@pytest.mark.asyncio
async def test_text_change_starts_mention_search(session, clients, surface):
    await session.process(TextChanged("Ask @Jo"))
    await session.settle()

    assert session.state.mention_query == "Jo"
    assert clients[Provider.HUBSPOT].search_calls == ["Jo"]
    assert session.state.mention_results.contacts == [JOHN, MARY]
    event, payload = surface.published[-1]
    assert event == "mention_results"
    assert payload["loading"] is False


@pytest.mark.asyncio
async def test_mention_results_exclude_tagged_contacts(session):
    await _tag(session, JOHN)
    session.state.mention_query = "J"

    await session.process(SearchResults(SearchSurface.MENTION, Provider.HUBSPOT, "J", [JOHN]))

    assert session.state.mention_results.contacts == []


@pytest.mark.asyncio
async def test_search_ignores_short_query(session, clients):
    await session.process(SearchQueryChanged("j"))
    await session.settle()

    assert clients[Provider.HUBSPOT].search_calls == []
    assert session.state.search_results.contacts == []


@pytest.mark.asyncio
async def test_search_merges_provider_results(session):
    await session.process(SearchQueryChanged("jo"))
    await session.settle()

    assert session.state.search_results.contacts == [JOHN, MARY]
    assert not any(session.state.search_in_flight.values())


@pytest.mark.asyncio
async def test_superseded_results_are_discarded(session):
    session.state.search_query = "john"

    outcome = await session.process(
        SearchResults(SearchSurface.SEARCH, Provider.HUBSPOT, "jo", [JOHN])
    )

    assert outcome.reason == "superseded"
    assert session.state.search_results.contacts == []


@pytest.mark.asyncio
async def test_result_arrival_order_does_not_change_merge(session):
    session.state.search_query = "jo"
    await session.process(SearchResults(SearchSurface.SEARCH, Provider.SALESFORCE, "jo", [MARY]))
    await session.process(SearchResults(SearchSurface.SEARCH, Provider.HUBSPOT, "jo", [JOHN]))

    assert session.state.search_results.contacts == [JOHN, MARY]


@pytest.mark.asyncio
async def test_failed_provider_contributes_nothing(session):
    session.state.search_query = "jo"
    await session.process(
        SearchResults(SearchSurface.SEARCH, Provider.HUBSPOT, "jo", [], error="api_error")
    )
    await session.process(SearchResults(SearchSurface.SEARCH, Provider.SALESFORCE, "jo", [MARY]))

    assert session.state.search_results.contacts == [MARY]
    assert session.state.search_results.errors == {Provider.HUBSPOT: "api_error"}


@pytest.mark.asyncio
async def test_sync_drops_contacts_whose_mention_was_deleted(session):
    await _tag(session, JOHN, MARY)

    await session.process(MentionsSynced("Compare @Mary", ["Mary"]))
    first = list(session.state.tagged_contacts)
    await session.process(MentionsSynced("Compare @Mary", ["Mary"]))

    assert first == [MARY]
    assert session.state.tagged_contacts == first


@pytest.mark.asyncio
async def test_remove_contact(session):
    await _tag(session, JOHN, MARY)

    await session.process(ContactRemoved("101", Provider.HUBSPOT))

    assert session.state.tagged_contacts == [MARY]


@pytest.mark.asyncio
async def test_send_with_tagged_mention_succeeds(session, message_store, completion_service):
    await _tag(session, JOHN)
    await session.process(TextChanged("What is John's email? @John"))

    outcome = await session.process(SendRequested())
    await session.settle()

    assert outcome.accepted
    assert session.state.tagged_contacts == []
    assert session.state.message_text == ""
    assert session.state.processing is False

    user_message, assistant_message = message_store.messages
    assert user_message.type == MessageType.USER
    assert user_message.content == "What is John's email? @John"
    assert user_message.contact_sources == {"hubspot:101": "hubspot"}
    assert assistant_message.type == MessageType.ASSISTANT
    assert assistant_message.content == completion_service.answer
    assert assistant_message.tagged_contacts() == [JOHN]
    assert [m.id for m in session.state.messages] == [1, 2]

    question, context = completion_service.calls[0]
    assert question == "What is John's email? @John"
    assert context.contacts[0].phone == "555-0101"


@pytest.mark.asyncio
async def test_send_with_untagged_mention_rejected(session, message_store):
    await _tag(session, MARY)
    await session.process(TextChanged("What is John's email? @John"))

    outcome = await session.process(SendRequested())

    assert outcome.reason == "unmatched_mentions"
    assert outcome.details == {"unmatched_mentions": ["John"]}
    assert message_store.messages == []


@pytest.mark.asyncio
async def test_send_without_tagged_contacts_rejected(session):
    await session.process(TextChanged("What is the latest?"))

    outcome = await session.process(SendRequested())

    assert outcome.reason == "no_contacts_tagged"


@pytest.mark.asyncio
async def test_send_empty_message_rejected(session):
    await _tag(session, JOHN)
    await session.process(TextChanged("   "))

    outcome = await session.process(SendRequested())

    assert outcome.reason == "empty_message"


@pytest.mark.asyncio
async def test_send_keeps_input_when_message_not_saved(session, message_store, surface):
    await _tag(session, JOHN)
    message_store.fail_create = True

    outcome = await session.process(SendRequested())

    assert outcome.reason == "message_not_saved"
    assert session.state.message_text == "@John "
    assert session.state.tagged_contacts == [JOHN]
    assert session.state.processing is False


@pytest.mark.asyncio
async def test_second_send_rejected_while_processing(session):
    await _tag(session, JOHN)
    session.state.processing = True

    outcome = await session.process(SendRequested())

    assert outcome.reason == "processing"


@pytest.mark.asyncio
async def test_failed_completion_records_apology(session, message_store, completion_service):
    completion_service.fail = True
    await _tag(session, JOHN)

    await session.process(SendRequested())
    await session.settle()

    assistant_message = message_store.messages[-1]
    assert assistant_message.content.startswith("I apologize, but AI response generation failed")
    assert assistant_message.metadata == {"error": True, "error_reason": "ai_generation_failed"}
    assert session.state.messages[-1] == assistant_message


@pytest.mark.asyncio
async def test_unsaved_assistant_message_reported(session, message_store, surface):
    message_store.fail_on_types = {"assistant"}
    await _tag(session, JOHN)

    await session.process(SendRequested())
    await session.settle()

    assert session.state.processing is False
    assert surface.notices[-1][0] == "message_not_saved"


@pytest.mark.asyncio
async def test_new_chat_resets_conversation(session, surface):
    await _tag(session, JOHN)

    await session.process(NewChat())

    assert session.state.messages == []
    assert session.state.tagged_contacts == []
    assert session.state.message_text == ""
    assert surface.renders[-1] == ("", [])


@pytest.mark.asyncio
async def test_open_loads_recent_history(session, message_store):
    await message_store.create(ChatMessage.from_user(USER_ID, "earlier question", [JOHN]))

    await session.open()

    assert [m.content for m in session.state.messages] == ["earlier question"]


@pytest.mark.asyncio
async def test_unknown_event_type_rejected(session):
    with pytest.raises(TypeError):
        await session.process(object())
