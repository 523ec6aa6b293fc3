"""
Exception hierarchy for CRM provider access.

Every error carries a machine-readable ``reason`` used by the orchestrator,
the chat session and the HTTP routes.
"""

from typing import Any

from app.models.domain.crm_domain import Provider


class CrmError(Exception):
    """Base class for CRM client errors."""

    reason = "crm_error"

    def __init__(
        self,
        message: str,
        provider: Provider | None = None,
        user_id: str | None = None,
        recoverable: bool = True,
    ):
        super().__init__(message)
        self.provider = provider
        self.user_id = user_id
        self.recoverable = recoverable


class MissingCredentialError(CrmError):
    """No stored credential for the (user, provider) pair."""

    reason = "missing_credential"

    def __init__(self, provider: Provider, user_id: str | None = None):
        super().__init__(
            f"No {provider.label} credential connected",
            provider=provider,
            user_id=user_id,
            recoverable=False,
        )


class MissingEndpointError(CrmError):
    """Salesforce credential has no instance URL. Not an authorization error."""

    reason = "missing_endpoint"

    def __init__(self, provider: Provider, user_id: str | None = None):
        super().__init__(
            f"{provider.label} credential has no instance URL",
            provider=provider,
            user_id=user_id,
            recoverable=False,
        )


class CrmApiError(CrmError):
    """Upstream API answered with a non-success status."""

    reason = "api_error"

    def __init__(
        self,
        message: str,
        status_code: int,
        body: Any = None,
        provider: Provider | None = None,
        user_id: str | None = None,
    ):
        super().__init__(message, provider=provider, user_id=user_id)
        self.status_code = status_code
        self.body = body

    @property
    def is_auth_status(self) -> bool:
        return self.status_code in (401, 403)


class ContactNotFoundError(CrmApiError):
    reason = "not_found"

    def __init__(
        self,
        contact_id: str,
        body: Any = None,
        provider: Provider | None = None,
        user_id: str | None = None,
    ):
        super().__init__(
            f"Contact {contact_id} not found",
            status_code=404,
            body=body,
            provider=provider,
            user_id=user_id,
        )
        self.contact_id = contact_id


class CrmTransportError(CrmError):
    """Network-level failure talking to a provider (connect error, timeout)."""

    reason = "http_error"

    def __init__(
        self,
        message: str,
        transport_reason: str = "request_error",
        provider: Provider | None = None,
        user_id: str | None = None,
    ):
        super().__init__(message, provider=provider, user_id=user_id)
        self.transport_reason = transport_reason


class InvalidResponseError(CrmError):
    """Provider returned a success status with an unusable payload."""

    reason = "invalid_response"


class TokenRefreshError(CrmError):
    """Refreshing an access token failed; the stored credential is untouched."""

    reason = "token_refresh_failed"

    def __init__(
        self,
        message: str,
        provider: Provider | None = None,
        user_id: str | None = None,
        status_code: int | None = None,
        body: Any = None,
        recoverable: bool = True,
    ):
        super().__init__(message, provider=provider, user_id=user_id, recoverable=recoverable)
        self.status_code = status_code
        self.body = body
