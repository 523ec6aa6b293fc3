"""CRM provider access: credentials, token refresh and provider clients."""

from app.config import settings
from app.models.domain.crm_domain import Provider
from app.services.crm.base_client import BaseCrmClient
from app.services.crm.credential_store import CredentialStore, PostgresCredentialStore
from app.services.crm.hubspot_client import HubSpotClient
from app.services.crm.salesforce_client import SalesforceClient
from app.services.crm.token_refresher import TokenRefresher

CLIENT_CLASSES: dict[Provider, type[BaseCrmClient]] = {
    Provider.HUBSPOT: HubSpotClient,
    Provider.SALESFORCE: SalesforceClient,
}


def build_clients(
    store: CredentialStore, refresher: TokenRefresher | None = None
) -> tuple[TokenRefresher, dict[Provider, BaseCrmClient]]:
    """Wire a refresher and one client per provider from application settings."""
    configs = {provider: settings.provider_config(provider) for provider in Provider}
    refresher = refresher or TokenRefresher(store, configs)
    clients = {
        provider: CLIENT_CLASSES[provider](configs[provider], refresher) for provider in Provider
    }
    return refresher, clients


__all__ = [
    "BaseCrmClient",
    "CLIENT_CLASSES",
    "CredentialStore",
    "HubSpotClient",
    "PostgresCredentialStore",
    "SalesforceClient",
    "TokenRefresher",
    "build_clients",
]
