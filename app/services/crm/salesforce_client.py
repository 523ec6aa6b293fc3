"""
Salesforce REST client for Contact objects.

Every request goes to the credential's own instance URL; a credential
without one is rejected before any network or refresh activity.
"""

from typing import Any

from app.infrastructure.observability.logging import get_logger
from app.models.domain.crm_domain import ContactRecord, ContactSummary, Credential, Provider
from app.services.crm.base_client import (
    BaseCrmClient,
    display_name_for,
    text_mentions_token_error,
)
from app.services.crm.errors import InvalidResponseError, MissingEndpointError

logger = get_logger(__name__)

API_VERSION = "v59.0"

CONTACT_FIELDS = [
    "Id",
    "FirstName",
    "LastName",
    "Email",
    "Phone",
    "MobilePhone",
    "Title",
    "AccountId",
    "Account.Name",
    "MailingStreet",
    "MailingCity",
    "MailingState",
    "MailingPostalCode",
    "MailingCountry",
]

# Salesforce field -> ContactRecord attribute (updatable fields only)
FIELD_MAP = {
    "FirstName": "firstname",
    "LastName": "lastname",
    "Email": "email",
    "Phone": "phone",
    "MobilePhone": "mobilephone",
    "Title": "jobtitle",
    "MailingStreet": "address",
    "MailingCity": "city",
    "MailingState": "state",
    "MailingPostalCode": "zip",
    "MailingCountry": "country",
}

FIELD_LABELS = {
    "FirstName": "First Name",
    "LastName": "Last Name",
    "Email": "Email",
    "Phone": "Phone",
    "MobilePhone": "Mobile Phone",
    "Title": "Job Title",
    "MailingStreet": "Street",
    "MailingCity": "City",
    "MailingState": "State",
    "MailingPostalCode": "Postal Code",
    "MailingCountry": "Country",
}

TOKEN_ERROR_CODES = {"INVALID_SESSION_ID", "INVALID_AUTH"}

# Backslash must stay first so inserted escapes are not escaped again
SOSL_RESERVED = ["\\", '"', "'", "?", "&", "|", "!", "{", "}", "[", "]", "(", ")", "^", "~", "*", ":"]


def escape_sosl(query: str) -> str:
    """Backslash-escape SOSL reserved characters in a raw search term."""
    for char in SOSL_RESERVED:
        query = query.replace(char, "\\" + char)
    return query


def build_sosl_query(query: str) -> str:
    fields = ", ".join(CONTACT_FIELDS)
    return f"FIND {{{escape_sosl(query)}}} IN ALL FIELDS RETURNING Contact({fields})"


class SalesforceClient(BaseCrmClient):
    """Contact search, fetch and update against a Salesforce org."""

    field_map = FIELD_MAP
    field_labels = FIELD_LABELS

    def check_preconditions(self, credential: Credential) -> None:
        if not credential.instance_url:
            logger.error(
                "Salesforce credential has no instance URL",
                user_id=credential.user_id,
            )
            raise MissingEndpointError(Provider.SALESFORCE, credential.user_id)

    def is_token_error(self, body: Any) -> bool:
        if isinstance(body, list):
            return any(self.is_token_error(item) for item in body if isinstance(item, dict))
        if isinstance(body, dict):
            if body.get("errorCode") in TOKEN_ERROR_CODES:
                return True
            return text_mentions_token_error(body.get("message"))
        return text_mentions_token_error(body)

    def _api_url(self, credential: Credential, path: str) -> str:
        return f"{credential.instance_url.rstrip('/')}/services/data/{API_VERSION}{path}"

    async def _search(self, credential: Credential, query: str) -> list[ContactSummary]:
        data = await self._request(
            "GET",
            self._api_url(credential, "/search"),
            credential,
            "search_contacts",
            params={"q": build_sosl_query(query)},
        )
        records = (data or {}).get("searchRecords") or []
        contacts = [self._to_record(record, credential).summary() for record in records]

        logger.debug(
            "Salesforce contact search completed",
            user_id=credential.user_id,
            result_count=len(contacts),
        )
        return contacts

    async def _get(self, credential: Credential, contact_id: str) -> ContactRecord:
        data = await self._request(
            "GET",
            self._api_url(credential, f"/sobjects/Contact/{contact_id}"),
            credential,
            "get_contact",
            contact_id=contact_id,
            params={"fields": ",".join(CONTACT_FIELDS)},
        )
        return self._to_record(data, credential)

    async def _update(
        self, credential: Credential, contact_id: str, fields: dict[str, Any]
    ) -> ContactRecord:
        # flat body; 204 No Content on success
        await self._request(
            "PATCH",
            self._api_url(credential, f"/sobjects/Contact/{contact_id}"),
            credential,
            "update_contact",
            contact_id=contact_id,
            json=fields,
        )
        logger.info(
            "Salesforce contact updated",
            user_id=credential.user_id,
            contact_id=contact_id,
            fields=sorted(fields),
        )
        return await self._get(credential, contact_id)

    def _to_record(self, data: Any, credential: Credential) -> ContactRecord:
        if not isinstance(data, dict) or not (data.get("Id") or data.get("id")):
            raise InvalidResponseError(
                "Salesforce contact payload has no Id", self.provider, credential.user_id
            )

        account = data.get("Account") or {}
        values = {attr: data.get(field) for field, attr in FIELD_MAP.items()}
        return ContactRecord(
            id=str(data.get("Id") or data.get("id")),
            provider=Provider.SALESFORCE,
            company=account.get("Name") if isinstance(account, dict) else None,
            display_name=display_name_for(values["firstname"], values["lastname"], values["email"]),
            **values,
        )
