"""
Shared plumbing for CRM provider clients: HTTP session, response handling,
and the token-refresh retry protocol.
"""

import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import httpx

from app.config import ProviderConfig
from app.infrastructure.observability.logging import get_logger, log_crm_call
from app.models.domain.crm_domain import ContactRecord, ContactSummary, Credential, FieldUpdate
from app.services.crm.errors import (
    ContactNotFoundError,
    CrmApiError,
    CrmTransportError,
    InvalidResponseError,
)
from app.services.crm.token_refresher import TokenRefresher

logger = get_logger(__name__)

T = TypeVar("T")

TOKEN_ERROR_WORDS = ("token", "expired", "unauthorized", "session", "invalid")


def text_mentions_token_error(text: Any) -> bool:
    """Free-text fallback used when a payload carries no structured error code."""
    if not isinstance(text, str):
        return False
    lowered = text.lower()
    return any(word in lowered for word in TOKEN_ERROR_WORDS)


def display_name_for(firstname: str | None, lastname: str | None, email: str | None) -> str:
    name = f"{firstname or ''} {lastname or ''}".strip()
    return name or email or ""


class BaseCrmClient(ABC):
    """
    Base class for a credential-guarded CRM client.

    Subclasses implement the raw HTTP operations; public methods wrap them
    in `_with_token_refresh`, which refreshes near-expiry tokens before the
    call and retries exactly once after an authorization failure that looks
    like a dead token.
    """

    # provider field name -> ContactRecord attribute, and display labels
    field_map: dict[str, str] = {}
    field_labels: dict[str, str] = {}

    def __init__(
        self,
        config: ProviderConfig,
        refresher: TokenRefresher,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.config = config
        self.provider = config.provider
        self.refresher = refresher
        self._client = http_client or self._create_client()

    def _create_client(self) -> httpx.AsyncClient:
        timeout = httpx.Timeout(self.config.request_timeout_seconds)
        limits = httpx.Limits(max_keepalive_connections=20, max_connections=50)
        return httpx.AsyncClient(timeout=timeout, limits=limits)

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Provider-specific hooks
    # ------------------------------------------------------------------

    @abstractmethod
    def is_token_error(self, body: Any) -> bool:
        """Whether an error body signals an invalid or expired token."""

    def check_preconditions(self, credential: Credential) -> None:
        """Raise before any network or refresh activity if the credential is unusable."""

    @abstractmethod
    async def _search(self, credential: Credential, query: str) -> list[ContactSummary]: ...

    @abstractmethod
    async def _get(self, credential: Credential, contact_id: str) -> ContactRecord: ...

    @abstractmethod
    async def _update(
        self, credential: Credential, contact_id: str, fields: dict[str, Any]
    ) -> ContactRecord: ...

    # ------------------------------------------------------------------
    # Public contract
    # ------------------------------------------------------------------

    async def search_contacts(self, credential: Credential, query: str) -> list[ContactSummary]:
        """
        Search contacts matching a free-text query.

        Raises:
            CrmError: subclass describing why the search failed
        """
        return await self._with_token_refresh(
            credential, lambda cred: self._search(cred, query), "search_contacts"
        )

    async def get_contact(self, credential: Credential, contact_id: str) -> ContactRecord:
        return await self._with_token_refresh(
            credential, lambda cred: self._get(cred, contact_id), "get_contact"
        )

    async def update_contact(
        self, credential: Credential, contact_id: str, fields: dict[str, Any]
    ) -> ContactRecord:
        return await self._with_token_refresh(
            credential, lambda cred: self._update(cred, contact_id, fields), "update_contact"
        )

    async def apply_updates(
        self, credential: Credential, contact_id: str, updates: list[FieldUpdate]
    ) -> ContactRecord | None:
        """
        Apply the selected suggested field changes in one update.

        Items are folded in list order, so a later item for the same field
        overrides an earlier one.

        Returns:
            ContactRecord after the update, or None when nothing was selected
        """
        fields: dict[str, Any] = {}
        for update in updates:
            if update.apply:
                fields[update.field] = update.new_value

        if not fields:
            logger.debug(
                "No field updates selected",
                provider=self.provider.value,
                contact_id=contact_id,
            )
            return None

        return await self.update_contact(credential, contact_id, fields)

    def merge_with_contact(
        self, updates: list[FieldUpdate], record: ContactRecord
    ) -> list[FieldUpdate]:
        """
        Fill in current values and labels for suggested updates, dropping
        suggestions that already match the stored record.
        """
        merged = []
        for update in updates:
            attr = self.field_map.get(update.field)
            current = getattr(record, attr, None) if attr else None
            if current == update.new_value:
                continue
            merged.append(
                update.model_copy(
                    update={
                        "current_value": current,
                        "label": update.label or self.field_labels.get(update.field, update.field),
                    }
                )
            )
        return merged

    # ------------------------------------------------------------------
    # Token refresh protocol
    # ------------------------------------------------------------------

    async def _with_token_refresh(
        self,
        credential: Credential,
        call: Callable[[Credential], Awaitable[T]],
        operation: str,
    ) -> T:
        self.check_preconditions(credential)

        credential = await self.refresher.ensure_fresh(credential)

        try:
            return await call(credential)
        except CrmApiError as e:
            if not (e.is_auth_status and self.is_token_error(e.body)):
                raise

            logger.warning(
                "Provider rejected access token, refreshing and retrying once",
                user_id=credential.user_id,
                provider=self.provider.value,
                operation=operation,
                status_code=e.status_code,
            )

        credential = await self.refresher.refresh_credential(credential)
        return await call(credential)

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    def _get_auth_headers(self, access_token: str) -> dict:
        return {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    async def _request(
        self,
        method: str,
        url: str,
        credential: Credential,
        operation: str,
        contact_id: str | None = None,
        **kwargs,
    ) -> Any:
        """
        Send one request and return the parsed JSON body (None for 204).

        Raises:
            CrmTransportError: On network failure or timeout
            ContactNotFoundError: On 404 when a contact id is involved
            CrmApiError: On any other non-success status
            InvalidResponseError: On an unparseable success body
        """
        started = time.monotonic()
        try:
            response = await self._client.request(
                method, url, headers=self._get_auth_headers(credential.access_token), **kwargs
            )
        except httpx.TimeoutException as e:
            logger.error(
                f"{self.provider.label} {operation} timed out",
                user_id=credential.user_id,
                provider=self.provider.value,
            )
            raise CrmTransportError(
                f"{self.provider.label} request timed out",
                "timeout",
                self.provider,
                credential.user_id,
            ) from e
        except httpx.RequestError as e:
            logger.error(
                f"{self.provider.label} {operation} network error",
                user_id=credential.user_id,
                provider=self.provider.value,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise CrmTransportError(
                f"{self.provider.label} request failed: {e}",
                type(e).__name__,
                self.provider,
                credential.user_id,
            ) from e

        log_crm_call(
            self.provider.value,
            operation,
            response.status_code,
            round((time.monotonic() - started) * 1000, 2),
            credential.user_id,
        )
        return self._handle_api_response(response, credential, operation, contact_id)

    def _handle_api_response(
        self,
        response: httpx.Response,
        credential: Credential,
        operation: str,
        contact_id: str | None,
    ) -> Any:
        if response.is_success:
            if response.status_code == 204 or not response.content:
                return None
            try:
                return response.json()
            except ValueError as e:
                logger.error(
                    f"Failed to parse {self.provider.label} {operation} response",
                    provider=self.provider.value,
                    error=str(e),
                )
                raise InvalidResponseError(
                    f"Invalid response format: {e}", self.provider, credential.user_id
                ) from e

        try:
            body = response.json() if response.content else None
        except ValueError:
            body = response.text

        if response.status_code == 404 and contact_id is not None:
            raise ContactNotFoundError(contact_id, body, self.provider, credential.user_id)

        logger.error(
            f"{self.provider.label} {operation} failed",
            user_id=credential.user_id,
            provider=self.provider.value,
            status_code=response.status_code,
        )
        raise CrmApiError(
            f"{self.provider.label} API error (HTTP {response.status_code})",
            status_code=response.status_code,
            body=body,
            provider=self.provider,
            user_id=credential.user_id,
        )
