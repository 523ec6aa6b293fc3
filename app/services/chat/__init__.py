"""Chat assistant: mention tracking, contact orchestration and question answering."""

from app.services.chat.contact_orchestrator import ContactOrchestrator, MergedContactResults
from app.services.chat.query_processor import QueryProcessor
from app.services.chat.session import ChatSession, SearchSurface, SessionState

__all__ = [
    "ChatSession",
    "ContactOrchestrator",
    "MergedContactResults",
    "QueryProcessor",
    "SearchSurface",
    "SessionState",
]
