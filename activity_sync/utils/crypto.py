"""
Credential Encryption Module
Encrypts and decrypts repository access tokens with Fernet.
"""

from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from activity_sync.config_manager import ConfigManager
from activity_sync.utils.logger import get_logger

logger = get_logger(__name__)


class CredentialError(Exception):
    """Raised when a stored credential is missing or cannot be decrypted."""


def load_key() -> Optional[str]:
    """Load the encryption key from configuration."""
    return ConfigManager().get_security_config().get('encryption_key') or None


def encrypt_credential(token: str, key: Optional[str] = None) -> str:
    """
    Encrypt a token using the provided (or configured) key.

    Without a key the token is stored as-is.
    """
    key = key or load_key()
    if not key:
        return token

    fernet = Fernet(key.encode('utf-8'))
    return fernet.encrypt(token.encode('utf-8')).decode('utf-8')


def decrypt_credential(encrypted_token: Optional[str], key: Optional[str] = None) -> str:
    """
    Decrypt a stored token.

    Args:
        encrypted_token: Token as stored on the repository row
        key: Fernet key; defaults to the configured one

    Returns:
        Plain token

    Raises:
        CredentialError: If the token is missing or does not decrypt with the key
    """
    if not encrypted_token:
        raise CredentialError("Repository has no stored credential")

    key = key or load_key()
    if not key:
        logger.debug("No encryption key configured, using stored credential as plain text")
        return encrypted_token

    try:
        fernet = Fernet(key.encode('utf-8'))
        return fernet.decrypt(encrypted_token.encode('utf-8')).decode('utf-8')
    except (InvalidToken, ValueError) as e:
        raise CredentialError(f"Failed to decrypt repository credential: {e.__class__.__name__}") from e
