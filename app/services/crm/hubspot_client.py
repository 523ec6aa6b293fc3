"""
HubSpot CRM v3 contacts client.
"""

from typing import Any

from app.infrastructure.observability.logging import get_logger
from app.models.domain.crm_domain import ContactRecord, ContactSummary, Credential, Provider
from app.services.crm.base_client import (
    BaseCrmClient,
    display_name_for,
    text_mentions_token_error,
)
from app.services.crm.errors import InvalidResponseError

logger = get_logger(__name__)

SEARCH_LIMIT = 10

SUMMARY_PROPERTIES = ["firstname", "lastname", "email", "company"]

# HubSpot property -> ContactRecord attribute
PROPERTY_MAP = {
    "firstname": "firstname",
    "lastname": "lastname",
    "email": "email",
    "company": "company",
    "phone": "phone",
    "mobilephone": "mobilephone",
    "jobtitle": "jobtitle",
    "address": "address",
    "city": "city",
    "state": "state",
    "zip": "zip",
    "country": "country",
    "website": "website",
    "hs_linkedin_url": "linkedin_url",
    "twitterhandle": "twitter_handle",
}

FIELD_LABELS = {
    "firstname": "First Name",
    "lastname": "Last Name",
    "email": "Email",
    "company": "Company",
    "phone": "Phone",
    "mobilephone": "Mobile Phone",
    "jobtitle": "Job Title",
    "address": "Street Address",
    "city": "City",
    "state": "State",
    "zip": "Postal Code",
    "country": "Country",
    "website": "Website",
    "hs_linkedin_url": "LinkedIn",
    "twitterhandle": "Twitter",
}

TOKEN_ERROR_CATEGORIES = {"EXPIRED_AUTHENTICATION", "INVALID_AUTHENTICATION"}


class HubSpotClient(BaseCrmClient):
    """Contacts search, fetch and update against the HubSpot CRM API."""

    field_map = PROPERTY_MAP
    field_labels = FIELD_LABELS

    @property
    def base_url(self) -> str:
        return (self.config.api_base_url or "https://api.hubapi.com").rstrip("/")

    def is_token_error(self, body: Any) -> bool:
        if isinstance(body, dict):
            if body.get("category") in TOKEN_ERROR_CATEGORIES:
                return True
            return text_mentions_token_error(body.get("message"))
        return text_mentions_token_error(body)

    async def _search(self, credential: Credential, query: str) -> list[ContactSummary]:
        payload = {
            "query": query,
            "properties": SUMMARY_PROPERTIES,
            "limit": SEARCH_LIMIT,
        }
        data = await self._request(
            "POST",
            f"{self.base_url}/crm/v3/objects/contacts/search",
            credential,
            "search_contacts",
            json=payload,
        )
        results = (data or {}).get("results")
        if not isinstance(results, list):
            raise InvalidResponseError(
                "HubSpot search response has no results list", self.provider, credential.user_id
            )

        contacts = [self._to_record(item).summary() for item in results]
        logger.debug(
            "HubSpot contact search completed",
            user_id=credential.user_id,
            result_count=len(contacts),
        )
        return contacts

    async def _get(self, credential: Credential, contact_id: str) -> ContactRecord:
        data = await self._request(
            "GET",
            f"{self.base_url}/crm/v3/objects/contacts/{contact_id}",
            credential,
            "get_contact",
            contact_id=contact_id,
            params={"properties": ",".join(PROPERTY_MAP)},
        )
        return self._to_record(data, credential)

    async def _update(
        self, credential: Credential, contact_id: str, fields: dict[str, Any]
    ) -> ContactRecord:
        data = await self._request(
            "PATCH",
            f"{self.base_url}/crm/v3/objects/contacts/{contact_id}",
            credential,
            "update_contact",
            contact_id=contact_id,
            json={"properties": fields},
        )
        logger.info(
            "HubSpot contact updated",
            user_id=credential.user_id,
            contact_id=contact_id,
            fields=sorted(fields),
        )
        return self._to_record(data, credential)

    def _to_record(self, item: Any, credential: Credential | None = None) -> ContactRecord:
        if not isinstance(item, dict) or not item.get("id"):
            raise InvalidResponseError(
                "HubSpot contact payload has no id",
                self.provider,
                credential.user_id if credential else None,
            )

        properties = item.get("properties") or {}
        values = {attr: properties.get(prop) for prop, attr in PROPERTY_MAP.items()}
        return ContactRecord(
            id=str(item["id"]),
            provider=Provider.HUBSPOT,
            display_name=display_name_for(values["firstname"], values["lastname"], values["email"]),
            **values,
        )
