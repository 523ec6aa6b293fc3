"""
Chat routes: the live chat WebSocket and conversation history.

The socket carries JSON events `{"event": <name>, ...}` in both directions.
Client events map onto chat session events; the server answers with
`render`, `error`, `message`, `history`, `search_results` and
`mention_results` events.
"""

import asyncio
from typing import Any

from fastapi import (
    APIRouter,
    Depends,
    HTTPException,
    Query,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from pydantic import ValidationError

from app.auth.verify import authenticate_websocket, get_current_user_id
from app.db.helpers import DatabaseError
from app.dependencies import ChatServices, get_services, get_websocket_services
from app.infrastructure.observability.logging import get_logger
from app.models.api.chat_request import ChatSocketEvent
from app.models.api.chat_response import ChatHistoryResponse, ChatSocketReply
from app.models.domain.crm_domain import ContactSummary
from app.services.chat.session import (
    ContactRemoved,
    ContactSelected,
    MentionQueryChanged,
    MentionsSynced,
    MentionSearchCleared,
    NewChat,
    SearchClosed,
    SearchQueryChanged,
    SearchSurface,
    SendRequested,
    TextChanged,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/chat", tags=["chat"])


class WebSocketSurface:
    """Input surface that mirrors session directives onto the socket."""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket

    async def _send(self, event: str, payload: dict[str, Any]) -> None:
        reply = ChatSocketReply(event=event, payload=payload)
        await self.websocket.send_json(reply.model_dump(mode="json"))

    async def render(self, text: str, contacts: list[ContactSummary]) -> None:
        await self._send(
            "render",
            {"text": text, "contacts": [c.model_dump(mode="json") for c in contacts]},
        )

    async def notify(self, reason: str, message: str) -> None:
        await self._send("error", {"reason": reason, "message": message})

    async def publish(self, event: str, payload: dict[str, Any]) -> None:
        await self._send(event, payload)


def to_session_event(event: ChatSocketEvent):
    """
    Translate a client socket event into a chat session event.

    Raises:
        ValueError: If the event is missing a field it needs
    """
    name = event.event
    if name == "text_changed":
        return TextChanged(event.text or "")
    if name == "sync":
        return MentionsSynced(event.text or "", event.mention_names)
    if name == "send_requested":
        return SendRequested()
    if name == "search":
        return SearchQueryChanged(event.query or "")
    if name == "mention_search":
        return MentionQueryChanged(event.query or "")
    if name == "select_contact":
        if event.contact is None:
            raise ValueError("select_contact requires a contact")
        return ContactSelected(event.contact, SearchSurface(event.surface))
    if name == "remove_contact":
        if not event.contact_id or event.provider is None:
            raise ValueError("remove_contact requires contact_id and provider")
        return ContactRemoved(event.contact_id, event.provider)
    if name == "new_chat":
        return NewChat()
    if name == "close_search":
        return SearchClosed()
    return MentionSearchCleared()


@router.websocket("/ws")
async def chat_socket(websocket: WebSocket):
    """Live chat session for the user named by the `token` query parameter."""
    try:
        user_id = authenticate_websocket(websocket)
        services = get_websocket_services(websocket)
    except HTTPException as e:
        logger.warning("Chat socket rejected", status_code=e.status_code, detail=e.detail)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    surface = WebSocketSurface(websocket)
    session = services.new_session(user_id, surface)

    await session.open()
    await surface.publish(
        "history",
        {
            "messages": [m.model_dump(mode="json") for m in session.state.messages],
            "error": session.state.error,
        },
    )
    logger.info("Chat socket opened", user_id=user_id)

    runner = asyncio.create_task(session.run())
    try:
        while True:
            data = await websocket.receive_json()
            try:
                event = to_session_event(ChatSocketEvent.model_validate(data))
            except (ValidationError, ValueError) as e:
                logger.debug("Invalid chat socket event", user_id=user_id, error=str(e))
                await surface.notify("invalid_event", "Unrecognized chat event")
                continue
            await session.submit(event)

    except WebSocketDisconnect:
        logger.info("Chat socket closed", user_id=user_id)

    finally:
        runner.cancel()
        await asyncio.gather(runner, return_exceptions=True)
        await session.close()


@router.get("/messages", response_model=ChatHistoryResponse)
async def list_messages(
    limit: int = Query(default=50, ge=1, le=200),
    user_id: str = Depends(get_current_user_id),
    services: ChatServices = Depends(get_services),
):
    """
    Most recent chat messages for the authenticated user, oldest first.

    Raises:
        401: Invalid authentication token
        500: History could not be loaded
    """
    try:
        messages = await services.message_store.list_recent(user_id, limit)
    except DatabaseError as e:
        logger.error("Failed to load chat history", user_id=user_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to load chat history",
        ) from None

    return ChatHistoryResponse(messages=messages, count=len(messages))
