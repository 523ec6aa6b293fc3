"""
Encryption service for CRM OAuth tokens.
Uses Fernet symmetric encryption for token storage at rest.
"""

from cryptography.fernet import Fernet, InvalidToken

from app.config import settings
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class EncryptionError(Exception):
    """Custom exception for encryption/decryption errors."""

    pass


def _get_fernet(key: str | None = None) -> Fernet:
    """
    Get Fernet instance for the given key, or the configured one.

    Raises:
        EncryptionError: If encryption key is not configured or malformed
    """
    key = key or settings.ENCRYPTION_KEY
    if not key:
        raise EncryptionError("ENCRYPTION_KEY not configured in environment")

    try:
        return Fernet(key.encode("utf-8"))
    except ValueError as e:
        logger.error("Failed to initialize Fernet cipher", error=str(e))
        raise EncryptionError(f"Invalid encryption key: {e}") from e


def encrypt_token(token: str, key: str | None = None) -> bytes:
    """
    Encrypt a token string for database storage.

    Args:
        token: Plain text token to encrypt
        key: Optional Fernet key; defaults to ENCRYPTION_KEY

    Returns:
        bytes: Encrypted token (ready for BYTEA storage)

    Raises:
        EncryptionError: If encryption fails
    """
    if not token or not isinstance(token, str):
        raise EncryptionError("Token must be a non-empty string")

    return _get_fernet(key).encrypt(token.encode("utf-8"))


def decrypt_token(encrypted_token: bytes, key: str | None = None) -> str:
    """
    Decrypt a token from database storage.

    Raises:
        EncryptionError: If decryption fails or token is invalid
    """
    if not encrypted_token:
        raise EncryptionError("Encrypted token must be non-empty bytes")

    try:
        return _get_fernet(key).decrypt(bytes(encrypted_token)).decode("utf-8")
    except InvalidToken as e:
        logger.error("Token decryption failed - invalid token")
        raise EncryptionError("Invalid or corrupted token") from e


def validate_encryption_config() -> bool:
    """
    Validate that encryption is properly configured.

    Returns:
        bool: True if encryption is configured and round-trips data
    """
    try:
        probe = "crm_encryption_probe"
        is_valid = decrypt_token(encrypt_token(probe)) == probe
    except EncryptionError as e:
        logger.error("Encryption configuration validation failed", error=str(e))
        return False

    if is_valid:
        logger.info("Encryption configuration validated successfully")
    else:
        logger.error("Encryption validation failed - data mismatch")
    return is_valid

