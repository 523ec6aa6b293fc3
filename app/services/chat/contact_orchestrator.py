"""
Fan-out/fan-in over CRM providers for contact search and full-record fetch.

A failing provider never takes down the others: search failures become an
empty contribution, fetch failures drop the affected contact.
"""

import asyncio
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from app.infrastructure.observability.logging import get_logger
from app.models.domain.crm_domain import (
    PROVIDER_ORDER,
    ContactIdentity,
    ContactRecord,
    ContactSummary,
    Credential,
    Provider,
)
from app.services.chat.errors import NoContactDataError
from app.services.crm.base_client import BaseCrmClient
from app.services.crm.errors import CrmError, MissingCredentialError

logger = get_logger(__name__)

FETCH_CONCURRENCY = 5
FETCH_TIMEOUT_SECONDS = 10.0

Credentials = Mapping[Provider, Credential | None]


@dataclass
class ProviderSearchResult:
    provider: Provider
    query: str
    contacts: list[ContactSummary] = field(default_factory=list)
    error_reason: str | None = None
    error_message: str | None = None

    @property
    def ok(self) -> bool:
        return self.error_reason is None


class MergedContactResults:
    """
    Search results keyed by provider.

    Applying a provider's results replaces its previous contribution, and
    reads always walk providers in canonical order, so the merged list does
    not depend on arrival order.
    """

    def __init__(self):
        self._by_provider: dict[Provider, list[ContactSummary]] = {}
        self.errors: dict[Provider, str] = {}

    def apply(self, provider: Provider, contacts: Iterable[ContactSummary]) -> None:
        self._by_provider[provider] = list(contacts)
        self.errors.pop(provider, None)

    def apply_result(self, result: ProviderSearchResult) -> None:
        self.apply(result.provider, result.contacts if result.ok else [])
        if not result.ok:
            self.errors[result.provider] = result.error_reason

    def clear(self) -> None:
        self._by_provider.clear()
        self.errors.clear()

    @property
    def contacts(self) -> list[ContactSummary]:
        seen: set[ContactIdentity] = set()
        merged: list[ContactSummary] = []
        for provider in PROVIDER_ORDER:
            for contact in self._by_provider.get(provider, []):
                if contact.identity in seen:
                    continue
                seen.add(contact.identity)
                merged.append(contact)
        return merged

    def __len__(self) -> int:
        return len(self.contacts)


class ContactOrchestrator:
    """Runs provider searches and record fetches concurrently."""

    def __init__(
        self,
        clients: Mapping[Provider, BaseCrmClient],
        fetch_concurrency: int = FETCH_CONCURRENCY,
        fetch_timeout_seconds: float = FETCH_TIMEOUT_SECONDS,
    ):
        self.clients = clients
        self.fetch_concurrency = fetch_concurrency
        self.fetch_timeout_seconds = fetch_timeout_seconds

    async def search_provider(
        self, provider: Provider, credential: Credential | None, query: str
    ) -> ProviderSearchResult:
        """Search one provider. Errors are captured in the result, never raised."""
        try:
            if credential is None:
                raise MissingCredentialError(provider)
            contacts = await self.clients[provider].search_contacts(credential, query)
            return ProviderSearchResult(provider=provider, query=query, contacts=contacts)

        except CrmError as e:
            logger.warning(
                "Provider search failed",
                provider=provider.value,
                user_id=credential.user_id if credential else None,
                reason=e.reason,
                error=str(e),
            )
            return ProviderSearchResult(
                provider=provider, query=query, error_reason=e.reason, error_message=str(e)
            )
        except Exception as e:
            logger.exception(
                "Unexpected provider search error",
                provider=provider.value,
                error_type=type(e).__name__,
            )
            return ProviderSearchResult(
                provider=provider,
                query=query,
                error_reason="unexpected_error",
                error_message=str(e),
            )

    async def search(self, credentials: Credentials, query: str) -> MergedContactResults:
        """Search every provider with a credential and merge the results."""
        providers = [p for p in PROVIDER_ORDER if credentials.get(p) is not None]
        results = await asyncio.gather(
            *(self.search_provider(p, credentials[p], query) for p in providers)
        )

        merged = MergedContactResults()
        for result in results:
            merged.apply_result(result)

        logger.info(
            "Contact search completed",
            providers=[p.value for p in providers],
            failed=[p.value for p in merged.errors],
            result_count=len(merged),
        )
        return merged

    async def fetch_contacts(
        self, credentials: Credentials, contacts: list[ContactSummary]
    ) -> list[ContactRecord]:
        """
        Resolve full records for tagged contacts.

        Contacts whose provider has no credential, whose fetch fails, or whose
        fetch exceeds the per-task timeout are dropped.

        Returns:
            Records in input order

        Raises:
            NoContactDataError: If no contact could be resolved
        """
        semaphore = asyncio.Semaphore(self.fetch_concurrency)

        async def fetch_one(contact: ContactSummary) -> ContactRecord | None:
            credential = credentials.get(contact.provider)
            if credential is None:
                logger.warning(
                    "No credential for tagged contact's provider",
                    provider=contact.provider.value,
                    contact_id=contact.id,
                )
                return None

            async with semaphore:
                try:
                    return await asyncio.wait_for(
                        self.clients[contact.provider].get_contact(credential, contact.id),
                        timeout=self.fetch_timeout_seconds,
                    )
                except TimeoutError:
                    logger.warning(
                        "Contact fetch timed out",
                        provider=contact.provider.value,
                        contact_id=contact.id,
                        timeout=self.fetch_timeout_seconds,
                    )
                except CrmError as e:
                    logger.warning(
                        "Contact fetch failed",
                        provider=contact.provider.value,
                        contact_id=contact.id,
                        reason=e.reason,
                        error=str(e),
                    )
                except Exception as e:
                    logger.exception(
                        "Unexpected contact fetch error",
                        provider=contact.provider.value,
                        contact_id=contact.id,
                        error_type=type(e).__name__,
                    )
            return None

        results = await asyncio.gather(*(fetch_one(contact) for contact in contacts))
        records = [record for record in results if record is not None]

        logger.info(
            "Fetched tagged contacts",
            requested=len(contacts),
            resolved=len(records),
        )

        if not records:
            raise NoContactDataError()
        return records
