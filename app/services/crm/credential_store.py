"""
Credential store for CRM OAuth tokens.

Tokens are Fernet-encrypted at rest in the ``user_credentials`` table, one row
per (user, provider). Writes are whole-row upserts so concurrent refreshes
resolve by last write wins.
"""

from datetime import datetime
from typing import Any, Protocol

from app.db.helpers import DatabaseError, execute_query, fetch_all, fetch_one, with_db_retry
from app.infrastructure.observability.logging import get_logger
from app.models.domain.crm_domain import Credential, Provider
from app.services.infrastructure.encryption_service import (
    EncryptionError,
    decrypt_token,
    encrypt_token,
)

logger = get_logger(__name__)


class CredentialStoreError(Exception):
    """Raised when credentials cannot be read or written."""

    def __init__(self, message: str, user_id: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.user_id = user_id
        self.recoverable = recoverable


class CredentialStore(Protocol):
    async def get(self, user_id: str, provider: Provider) -> Credential | None: ...

    async def put(self, credential: Credential) -> None: ...

    async def list_expiring(
        self, provider: Provider, expires_before: datetime
    ) -> list[Credential]: ...


async def load_credentials(
    store: CredentialStore, user_id: str
) -> dict[Provider, Credential | None]:
    """Credentials for every provider, None where the user has not connected."""
    return {provider: await store.get(user_id, provider) for provider in Provider}


class PostgresCredentialStore:
    """Postgres-backed credential store."""

    def __init__(self, encryption_key: str | None = None):
        self._key = encryption_key

    def _row_to_credential(self, row: dict[str, Any]) -> Credential:
        refresh = row.get("refresh_token")
        return Credential(
            user_id=str(row["user_id"]),
            provider=Provider(row["provider"]),
            access_token=decrypt_token(row["access_token"], self._key),
            refresh_token=decrypt_token(refresh, self._key) if refresh else None,
            expires_at=row.get("expires_at"),
            instance_url=row.get("instance_url"),
            updated_at=row.get("updated_at"),
        )

    @with_db_retry(max_retries=2, base_delay=0.1)
    async def get(self, user_id: str, provider: Provider) -> Credential | None:
        row = await fetch_one(
            """
            SELECT user_id, provider, access_token, refresh_token,
                   expires_at, instance_url, updated_at
            FROM user_credentials
            WHERE user_id = %s AND provider = %s
            """,
            (user_id, provider.value),
        )
        if not row:
            return None

        try:
            return self._row_to_credential(row)
        except EncryptionError as e:
            logger.error(
                "Failed to decrypt stored credential",
                user_id=user_id,
                provider=provider.value,
                error=str(e),
            )
            raise CredentialStoreError(
                f"Stored {provider.label} credential is unreadable", user_id, recoverable=False
            ) from e

    @with_db_retry(max_retries=2, base_delay=0.1)
    async def put(self, credential: Credential) -> None:
        """
        Upsert a credential. Access token and expiry are always written
        together.
        """
        try:
            encrypted_access = encrypt_token(credential.access_token, self._key)
            encrypted_refresh = (
                encrypt_token(credential.refresh_token, self._key)
                if credential.refresh_token
                else None
            )
        except EncryptionError as e:
            raise CredentialStoreError(
                f"Could not encrypt credential: {e}", credential.user_id, recoverable=False
            ) from e

        await execute_query(
            """
            INSERT INTO user_credentials (
                user_id, provider, access_token, refresh_token,
                expires_at, instance_url, updated_at
            ) VALUES (%s, %s, %s, %s, %s, %s, NOW())
            ON CONFLICT (user_id, provider)
            DO UPDATE SET
                access_token = EXCLUDED.access_token,
                refresh_token = EXCLUDED.refresh_token,
                expires_at = EXCLUDED.expires_at,
                instance_url = EXCLUDED.instance_url,
                updated_at = NOW()
            """,
            (
                credential.user_id,
                credential.provider.value,
                encrypted_access,
                encrypted_refresh,
                credential.expires_at,
                credential.instance_url,
            ),
        )

        logger.info(
            "Credential stored",
            user_id=credential.user_id,
            provider=credential.provider.value,
            expires_at=credential.expires_at.isoformat() if credential.expires_at else None,
        )

    async def list_expiring(self, provider: Provider, expires_before: datetime) -> list[Credential]:
        """
        Credentials of one provider expiring at or before the cutoff.

        Rows that fail to decrypt are logged and left out so one bad row does
        not stop the sweep.
        """
        try:
            rows = await fetch_all(
                """
                SELECT user_id, provider, access_token, refresh_token,
                       expires_at, instance_url, updated_at
                FROM user_credentials
                WHERE provider = %s
                  AND expires_at IS NOT NULL
                  AND expires_at <= %s
                ORDER BY expires_at ASC
                """,
                (provider.value, expires_before),
            )
        except DatabaseError as e:
            raise CredentialStoreError(f"Failed to list expiring credentials: {e}") from e

        credentials = []
        for row in rows:
            try:
                credentials.append(self._row_to_credential(row))
            except EncryptionError as e:
                logger.error(
                    "Skipping unreadable credential",
                    user_id=str(row.get("user_id")),
                    provider=provider.value,
                    error=str(e),
                )

        logger.debug(
            "Found expiring credentials",
            provider=provider.value,
            count=len(credentials),
            expires_before=expires_before.isoformat(),
        )
        return credentials
