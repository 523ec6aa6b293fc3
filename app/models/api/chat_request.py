"""Messages sent by the chat client over the WebSocket."""

from typing import Literal

from pydantic import BaseModel, Field

from app.models.domain.crm_domain import ContactSummary, Provider

ClientEventName = Literal[
    "text_changed",
    "sync",
    "send_requested",
    "search",
    "mention_search",
    "select_contact",
    "remove_contact",
    "new_chat",
    "close_search",
    "clear_mention_search",
]


class ChatSocketEvent(BaseModel):
    """One client event: `{"event": <name>, ...fields for that event}`."""

    event: ClientEventName
    text: str | None = Field(default=None, description="Message text (text_changed, sync)")
    query: str | None = Field(default=None, description="Search text (search, mention_search)")
    mention_names: list[str] = Field(
        default_factory=list, description="Names of the mention tokens still in the text (sync)"
    )
    contact: ContactSummary | None = Field(default=None, description="Chosen contact")
    surface: Literal["search", "mention"] = Field(
        default="search", description="Where the contact was chosen"
    )
    contact_id: str | None = None
    provider: Provider | None = None
