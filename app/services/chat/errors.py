"""Chat-level error types. Each carries a machine `reason` shown to clients."""

from typing import Any


class ChatError(Exception):
    """Base class for recoverable chat failures."""

    def __init__(self, reason: str, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.reason = reason
        self.message = message
        self.details = details or {}


class ChatValidationError(ChatError):
    """A user-correctable problem with the current input or selection."""


class NoContactDataError(ChatError):
    """None of the tagged contacts could be resolved from their provider."""

    def __init__(self, message: str = "No contact data could be retrieved"):
        super().__init__("no_contact_data_available", message)
