"""
OAuth refresh protocol for CRM credentials.

Used on demand by the provider clients and proactively by the refresh sweep.
Either path writes a complete access token / expiry pair back to the
credential store.
"""

import httpx

from app.config import ProviderConfig
from app.infrastructure.observability.logging import get_logger
from app.models.domain.crm_domain import Credential, Provider
from app.services.crm.credential_store import CredentialStore
from app.services.crm.errors import CrmTransportError, TokenRefreshError

logger = get_logger(__name__)


class TokenRefresher:
    """
    Refreshes CRM access tokens against each provider's token endpoint.

    One instance serves every provider; per-provider endpoints, client
    credentials and default lifetimes come from the injected configs.
    """

    def __init__(
        self,
        store: CredentialStore,
        configs: dict[Provider, ProviderConfig],
        http_client: httpx.AsyncClient | None = None,
    ):
        self.store = store
        self.configs = configs
        self._client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(10.0))
        self.refresh_count = 0

    async def close(self) -> None:
        await self._client.aclose()

    def config_for(self, provider: Provider) -> ProviderConfig:
        return self.configs[provider]

    async def ensure_fresh(self, credential: Credential) -> Credential:
        """
        On-demand check: refresh when the token expires within the provider's
        buffer or already has; otherwise return the credential unchanged.
        """
        config = self.config_for(credential.provider)
        if not credential.needs_refresh(config.refresh_buffer_minutes):
            return credential

        logger.info(
            "Access token near expiry, refreshing before call",
            user_id=credential.user_id,
            provider=credential.provider.value,
            expires_at=credential.expires_at.isoformat() if credential.expires_at else None,
        )
        return await self.refresh_credential(credential)

    async def refresh_credential(self, credential: Credential) -> Credential:
        """
        Exchange the stored refresh token for a new access token.

        Args:
            credential: Credential to refresh

        Returns:
            Credential: Updated credential, already written to the store

        Raises:
            TokenRefreshError: If no refresh token is stored, the provider
                rejects the refresh, or the request fails in transport
        """
        provider = credential.provider
        config = self.config_for(provider)

        if not credential.refresh_token:
            raise TokenRefreshError(
                f"No refresh token stored for {provider.label}",
                provider=provider,
                user_id=credential.user_id,
                recoverable=False,
            )

        data = {
            "grant_type": "refresh_token",
            "refresh_token": credential.refresh_token,
            "client_id": config.client_id or "",
            "client_secret": config.client_secret or "",
        }

        logger.info(
            "Refreshing access token",
            user_id=credential.user_id,
            provider=provider.value,
            refresh_token=credential.refresh_token,
        )

        try:
            response = await self._client.post(
                config.token_url,
                data=data,
                timeout=config.request_timeout_seconds,
            )
        except httpx.TimeoutException as e:
            logger.error(
                "Token refresh timed out",
                user_id=credential.user_id,
                provider=provider.value,
                error=str(e),
            )
            raise TokenRefreshError(
                f"{provider.label} token refresh timed out",
                provider=provider,
                user_id=credential.user_id,
            ) from CrmTransportError(str(e), "timeout", provider, credential.user_id)
        except httpx.RequestError as e:
            logger.error(
                "Network error during token refresh",
                user_id=credential.user_id,
                provider=provider.value,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise TokenRefreshError(
                f"Network error during {provider.label} token refresh: {e}",
                provider=provider,
                user_id=credential.user_id,
            ) from CrmTransportError(str(e), type(e).__name__, provider, credential.user_id)

        refreshed = self._handle_token_response(credential, response, config)
        await self.store.put(refreshed)
        self.refresh_count += 1

        logger.info(
            "Access token refreshed",
            user_id=credential.user_id,
            provider=provider.value,
            access_token=refreshed.access_token,
            expires_at=refreshed.expires_at.isoformat() if refreshed.expires_at else None,
            refresh_token_rotated=refreshed.refresh_token != credential.refresh_token,
        )
        return refreshed

    def _handle_token_response(
        self, credential: Credential, response: httpx.Response, config: ProviderConfig
    ) -> Credential:
        provider = credential.provider
        body = _parse_body(response)

        if response.status_code != 200:
            logger.error(
                "Token refresh rejected",
                user_id=credential.user_id,
                provider=provider.value,
                status_code=response.status_code,
                error=body.get("error") if isinstance(body, dict) else None,
            )
            raise TokenRefreshError(
                f"{provider.label} token refresh failed (HTTP {response.status_code})",
                provider=provider,
                user_id=credential.user_id,
                status_code=response.status_code,
                body=body,
                # invalid_grant means the user revoked access
                recoverable=response.status_code >= 500,
            )

        if not isinstance(body, dict) or not body.get("access_token"):
            raise TokenRefreshError(
                f"{provider.label} token response had no access token",
                provider=provider,
                user_id=credential.user_id,
                status_code=response.status_code,
                body=body,
            )

        try:
            expires_in = int(body.get("expires_in") or config.default_token_lifetime_seconds)
        except (TypeError, ValueError):
            expires_in = config.default_token_lifetime_seconds

        return credential.with_refreshed_token(
            access_token=body["access_token"],
            expires_in_seconds=expires_in,
            refresh_token=body.get("refresh_token"),
            instance_url=body.get("instance_url") if provider == Provider.SALESFORCE else None,
        )


def _parse_body(response: httpx.Response):
    try:
        return response.json() if response.content else {}
    except ValueError:
        return response.text
