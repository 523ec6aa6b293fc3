"""
Answers a sent chat question.

Resolves the tagged contacts' full records, related meeting transcripts and
recent history, asks the completion service, and always records an
assistant message: the answer, or an apology carrying the failure reason.
"""

from app.infrastructure.observability.logging import get_logger
from app.models.domain.chat_domain import ChatMessage, MessageType, contact_sources_for
from app.models.domain.crm_domain import CompletionContext, ContactSummary
from app.services.chat.contact_orchestrator import ContactOrchestrator
from app.services.chat.errors import ChatError
from app.services.chat.meeting_store import MeetingStore
from app.services.chat.message_store import MessageStore
from app.services.completion_service import CompletionService, CompletionServiceError
from app.services.crm.credential_store import CredentialStore, load_credentials

logger = get_logger(__name__)

ERROR_MESSAGES = {
    "no_contact_data_available": (
        "Unable to retrieve contact information. Please check your CRM connections."
    ),
    "ai_generation_failed": "AI response generation failed. Please try again.",
}
GENERIC_ERROR_MESSAGE = "An error occurred while processing your question. Please try again."


def apology_for(reason: str) -> str:
    return "I apologize, but " + ERROR_MESSAGES.get(reason, GENERIC_ERROR_MESSAGE)


class QueryProcessor:
    def __init__(
        self,
        orchestrator: ContactOrchestrator,
        credential_store: CredentialStore,
        meeting_store: MeetingStore,
        completion_service: CompletionService,
        message_store: MessageStore,
        history_limit: int = 10,
    ):
        self.orchestrator = orchestrator
        self.credential_store = credential_store
        self.meeting_store = meeting_store
        self.completion_service = completion_service
        self.message_store = message_store
        self.history_limit = history_limit

    async def process(
        self, user_id: str, question: str, contacts: list[ContactSummary]
    ) -> ChatMessage:
        """
        Answer a question about tagged contacts.

        Args:
            user_id: Asking user
            question: Message text as sent
            contacts: Tagged contact snapshot from the user message

        Returns:
            ChatMessage: The stored assistant message (answer or apology)

        Raises:
            MessageStoreError: If the assistant message itself cannot be stored
        """
        try:
            answer = await self._answer(user_id, question, contacts)
            message = ChatMessage(
                user_id=user_id,
                content=answer,
                type=MessageType.ASSISTANT,
                contact_ids=[c.id for c in contacts],
                contact_sources=contact_sources_for(contacts),
                metadata={"tagged_contacts": [c.model_dump(mode="json") for c in contacts]},
            )
        except (ChatError, CompletionServiceError) as e:
            logger.warning("Chat question failed", user_id=user_id, reason=e.reason, error=str(e))
            message = self._error_message(user_id, e.reason)
        except Exception as e:
            logger.exception(
                "Unexpected error answering chat question",
                user_id=user_id,
                error_type=type(e).__name__,
            )
            message = self._error_message(user_id, getattr(e, "reason", "processing_failed"))

        return await self.message_store.create(message)

    async def _answer(self, user_id: str, question: str, contacts: list[ContactSummary]) -> str:
        credentials = await load_credentials(self.credential_store, user_id)
        records = await self.orchestrator.fetch_contacts(credentials, contacts)

        emails = [record.email for record in records if record.email]
        try:
            meetings = await self.meeting_store.list_for_contacts(user_id, emails)
        except Exception as e:
            # transcripts are optional context
            logger.warning("Meeting lookup failed", user_id=user_id, error=str(e))
            meetings = []

        history = await self.message_store.list_recent(user_id, self.history_limit)

        context = CompletionContext(
            contacts=[record.to_resolved() for record in records],
            conversation_history=[message.history_entry() for message in history],
            meetings=meetings,
        )

        logger.info(
            "Answering chat question",
            user_id=user_id,
            contact_count=len(context.contacts),
            meeting_count=len(meetings),
            history_count=len(history),
        )
        return await self.completion_service.complete(question, context)

    def _error_message(self, user_id: str, reason: str) -> ChatMessage:
        return ChatMessage(
            user_id=user_id,
            content=apology_for(reason),
            type=MessageType.ASSISTANT,
            metadata={"error": True, "error_reason": reason},
        )
