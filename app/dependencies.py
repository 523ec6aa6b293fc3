"""
Composition root for the chat backend.

`build_services()` wires stores, provider clients and the completion
service once at startup; routes reach them through `get_services()`.
"""

from dataclasses import dataclass

from fastapi import HTTPException, Request, WebSocket, status

from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.models.domain.crm_domain import Provider
from app.services.chat.contact_orchestrator import ContactOrchestrator
from app.services.chat.meeting_store import MeetingStore, PostgresMeetingStore
from app.services.chat.message_store import MessageStore, PostgresMessageStore
from app.services.chat.query_processor import QueryProcessor
from app.services.chat.session import ChatSession, InputSurface
from app.services.completion_service import CompletionService
from app.services.crm import BaseCrmClient, build_clients
from app.services.crm.credential_store import CredentialStore, PostgresCredentialStore
from app.services.crm.token_refresher import TokenRefresher

logger = get_logger(__name__)


@dataclass
class ChatServices:
    credential_store: CredentialStore
    message_store: MessageStore
    meeting_store: MeetingStore
    completion_service: CompletionService
    refresher: TokenRefresher
    clients: dict[Provider, BaseCrmClient]
    orchestrator: ContactOrchestrator
    query_processor: QueryProcessor

    def client_for(self, provider: Provider) -> BaseCrmClient:
        return self.clients[provider]

    def new_session(self, user_id: str, surface: InputSurface | None = None) -> ChatSession:
        return ChatSession(
            user_id=user_id,
            orchestrator=self.orchestrator,
            credential_store=self.credential_store,
            message_store=self.message_store,
            query_processor=self.query_processor,
            surface=surface,
            max_tagged_contacts=settings.CHAT_MAX_TAGGED_CONTACTS,
            recent_messages_limit=settings.CHAT_RECENT_MESSAGES_LIMIT,
        )

    async def close(self) -> None:
        for client in self.clients.values():
            await client.close()
        await self.refresher.close()


def build_services(
    credential_store: CredentialStore | None = None,
    message_store: MessageStore | None = None,
    meeting_store: MeetingStore | None = None,
    completion_service: CompletionService | None = None,
) -> ChatServices:
    credential_store = credential_store or PostgresCredentialStore()
    message_store = message_store or PostgresMessageStore()
    meeting_store = meeting_store or PostgresMeetingStore()
    completion_service = completion_service or CompletionService()

    refresher, clients = build_clients(credential_store)
    orchestrator = ContactOrchestrator(clients)
    query_processor = QueryProcessor(
        orchestrator=orchestrator,
        credential_store=credential_store,
        meeting_store=meeting_store,
        completion_service=completion_service,
        message_store=message_store,
        history_limit=settings.CHAT_HISTORY_LIMIT,
    )

    logger.info("Chat services wired", providers=[p.value for p in clients])
    return ChatServices(
        credential_store=credential_store,
        message_store=message_store,
        meeting_store=meeting_store,
        completion_service=completion_service,
        refresher=refresher,
        clients=clients,
        orchestrator=orchestrator,
        query_processor=query_processor,
    )


def _services_from_state(state) -> ChatServices:
    services = getattr(state, "services", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Services not initialized"
        )
    return services


def get_services(request: Request) -> ChatServices:
    return _services_from_state(request.app.state)


def get_websocket_services(websocket: WebSocket) -> ChatServices:
    return _services_from_state(websocket.app.state)
