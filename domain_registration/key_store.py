"""
File-backed secret store for private keys and certificate material.
"""

import logging
import os
import shutil

from errors import NotFoundError, StorageError, ValidationError

logger = logging.getLogger(__name__)


class SecretStore:
    """
    Stores PEM material under ``<root>/<owner>/<name>`` with owner-only
    permissions. References handed out are the relative ``owner/name`` path.
    """

    def __init__(self, root: str):
        self.root = os.path.abspath(root)

    def _resolve(self, ref: str) -> str:
        path = os.path.abspath(os.path.join(self.root, ref))
        if not path.startswith(self.root + os.sep):
            raise ValidationError(f"Secret reference escapes the store: {ref}")
        return path

    def put(self, owner: str, name: str, data: bytes) -> str:
        """
        Write secret material.

        Args:
            owner: Grouping key, normally a certificate id
            name: File name, e.g. ``privkey.pem``
            data: Raw bytes

        Returns:
            Opaque reference to pass to ``get``/``path``
        """
        ref = f"{owner}/{name}"
        path = self._resolve(ref)
        try:
            os.makedirs(os.path.dirname(path), mode=0o700, exist_ok=True)
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.chmod(path, 0o600)
        except OSError as e:
            raise StorageError(f"Could not write secret {ref}: {e}")
        return ref

    def get(self, ref: str) -> bytes:
        path = self._resolve(ref)
        try:
            with open(path, "rb") as f:
                return f.read()
        except FileNotFoundError:
            raise NotFoundError(f"Secret {ref} not found", {"ref": ref})
        except OSError as e:
            raise StorageError(f"Could not read secret {ref}: {e}")

    def path(self, ref: str) -> str:
        """Filesystem path of an existing secret, for installers that reference it in place."""
        path = self._resolve(ref)
        if not os.path.isfile(path):
            raise NotFoundError(f"Secret {ref} not found", {"ref": ref})
        return path

    def delete_owner(self, owner: str) -> None:
        """Remove every secret stored for ``owner``. Missing owners are ignored."""
        path = self._resolve(f"{owner}/_")
        directory = os.path.dirname(path)
        if not os.path.isdir(directory):
            return
        try:
            shutil.rmtree(directory)
        except OSError as e:
            raise StorageError(f"Could not remove secrets for {owner}: {e}")
        logger.debug(f"Removed secret material for {owner}")
