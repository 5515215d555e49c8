"""Cluster credential handling.

Passwords are stored as Fernet tokens (AES-CBC with an HMAC-SHA256 tag), so a
tampered or foreign ciphertext fails to decrypt instead of yielding garbage.
The executor only sees the ``CredentialProvider`` interface.
"""

from typing import Dict, Protocol

from cryptography.fernet import Fernet, InvalidToken

from .errors import AuthenticationError, ConfigurationError
from .models import Cluster


class CredentialProvider(Protocol):
    def password_for(self, cluster: Cluster) -> str:
        ...


def generate_key() -> str:
    """New random key suitable for BACKUPCTL_ENCRYPTION_KEY."""
    return Fernet.generate_key().decode()


class FernetCredentialProvider:
    """Decrypts ``Cluster.password_encrypted`` with a Fernet key."""

    def __init__(self, key: str):
        if not key:
            raise ConfigurationError("BACKUPCTL_ENCRYPTION_KEY is not set")
        try:
            self._fernet = Fernet(key.encode())
        except ValueError as e:
            raise ConfigurationError(f"Invalid encryption key: {e}") from e

    def encrypt(self, password: str) -> str:
        return self._fernet.encrypt(password.encode()).decode()

    def password_for(self, cluster: Cluster) -> str:
        try:
            return self._fernet.decrypt(cluster.password_encrypted.encode()).decode()
        except InvalidToken as e:
            raise AuthenticationError(
                f"Cannot decrypt password for cluster {cluster.name}: wrong key or corrupted token"
            ) from e


class StaticCredentialProvider:
    """Plain passwords keyed by cluster ID, for tests and local setups."""

    def __init__(self, passwords: Dict[str, str]):
        self._passwords = dict(passwords)

    def password_for(self, cluster: Cluster) -> str:
        try:
            return self._passwords[cluster.id]
        except KeyError:
            raise AuthenticationError(f"No credentials for cluster {cluster.name}") from None
