"""
DNS provider credential storage.
Secrets are encrypted at rest with Fernet before they touch the disk.
"""

import abc
import json
import logging
import os
from typing import Any, Dict, Optional

from cryptography.fernet import Fernet, InvalidToken

from errors import CredentialError, StorageError
from .models import ProviderCredentials

logger = logging.getLogger(__name__)


class CredentialProvider(metaclass=abc.ABCMeta):
    @abc.abstractmethod
    def get_active(self) -> Optional[ProviderCredentials]:
        """
        Get the credentials currently configured for the DNS provider.

        Returns:
            Credentials, or None when none are configured
        """
        pass


class StaticCredentialProvider(CredentialProvider):
    """Serves one fixed set of credentials (or none)."""

    def __init__(self, credentials: Optional[ProviderCredentials]):
        self.credentials = credentials

    def get_active(self) -> Optional[ProviderCredentials]:
        return self.credentials


class EncryptedCredentialStore(CredentialProvider):
    """Credential provider backed by a JSON file with encrypted fields."""

    def __init__(self, path: str, key: Optional[str]):
        """
        Initialize the credential store.

        Args:
            path: JSON file holding the encrypted credentials
            key: Fernet key (urlsafe base64, 32 bytes)
        """
        self.path = path
        self._fernet: Optional[Fernet] = None
        if key:
            try:
                self._fernet = Fernet(key.encode() if isinstance(key, str) else key)
            except (ValueError, TypeError) as e:
                raise CredentialError(f"Invalid credentials encryption key: {e}")

    def _cipher(self) -> Fernet:
        if self._fernet is None:
            raise CredentialError(
                "CERTROUTE_CREDENTIALS_KEY is not configured; cannot use stored credentials"
            )
        return self._fernet

    def _read(self) -> Dict[str, Any]:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, "r") as f:
                raw = f.read()
            return json.loads(raw) if raw.strip() else {}
        except (OSError, json.JSONDecodeError) as e:
            raise StorageError(f"Could not read credentials file: {e}", {"path": self.path})

    def _write(self, data: Dict[str, Any]) -> None:
        try:
            os.makedirs(os.path.dirname(os.path.abspath(self.path)), exist_ok=True)
            fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w") as f:
                json.dump(data, f, indent=2)
            os.chmod(self.path, 0o600)
        except OSError as e:
            raise StorageError(f"Could not write credentials file: {e}", {"path": self.path})

    def get_active(self) -> Optional[ProviderCredentials]:
        data = self._read()
        if not data.get("secret"):
            return None

        cipher = self._cipher()
        try:
            secret = cipher.decrypt(data["secret"].encode()).decode()
            access_key = (
                cipher.decrypt(data["access_key"].encode()).decode()
                if data.get("access_key")
                else None
            )
        except InvalidToken:
            logger.error("Stored credentials could not be decrypted with the configured key")
            raise CredentialError(
                "Stored credentials could not be decrypted; re-save them or fix the key"
            )

        return ProviderCredentials(
            access_key=access_key, secret=secret, region=data.get("region")
        )

    def save(self, credentials: ProviderCredentials) -> None:
        """Encrypt and persist credentials, replacing any existing set."""
        cipher = self._cipher()
        data = {
            "access_key": cipher.encrypt(credentials.access_key.encode()).decode()
            if credentials.access_key
            else None,
            "secret": cipher.encrypt(credentials.secret.encode()).decode(),
            "region": credentials.region,
        }
        self._write(data)
        logger.info("DNS provider credentials saved")

    def delete(self) -> None:
        self._write({})
        logger.info("DNS provider credentials deleted")

    def status(self) -> Dict[str, Any]:
        """Non-secret view: whether credentials exist and their region."""
        data = self._read()
        return {"configured": bool(data.get("secret")), "region": data.get("region")}
