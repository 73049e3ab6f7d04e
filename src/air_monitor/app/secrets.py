"""
Credential Stores for the broker password.

This module is responsible for:
- Reading, writing and deleting the password in the system keyring (`keyring`).
- Keeping a password in memory only, when the user chose not to remember it.

The password is never logged.
"""
import logging
from typing import Dict, Optional, Tuple

import keyring
from keyring.backends import fail
from keyring.errors import KeyringError, PasswordDeleteError

from air_monitor.worker.errors import CredentialError

logger = logging.getLogger(__name__)


def keyring_available() -> bool:
    """True if a real keyring backend is configured on this machine."""
    try:
        backend = keyring.get_keyring()
    except KeyringError as e:
        logger.info(f"Keyring not available: {e}")
        return False
    if isinstance(backend, fail.Keyring):
        logger.info("Keyring not available: no backend installed.")
        return False
    return True


class KeyringCredentialStore:
    """CredentialStore backed by the system keyring."""

    def get_password(self, service: str, account: str) -> Optional[str]:
        try:
            secret = keyring.get_password(service, account)
        except KeyringError as e:
            logger.warning(f"Failed to read password from keyring: {e}")
            raise CredentialError(f"failed to read password from keyring: {e}") from e
        if secret is None:
            logger.debug("No password stored in keyring.")
        return secret

    def set_password(self, service: str, account: str, secret: str) -> None:
        try:
            keyring.set_password(service, account, secret)
        except KeyringError as e:
            raise CredentialError(f"failed to write password to keyring: {e}") from e

    def delete_password(self, service: str, account: str) -> None:
        try:
            keyring.delete_password(service, account)
        except PasswordDeleteError:
            logger.debug("No keyring entry to delete.")
        except KeyringError as e:
            logger.warning(f"Failed to delete password from keyring: {e}")
            raise CredentialError(f"failed to delete password from keyring: {e}") from e


class MemoryCredentialStore:
    """CredentialStore that forgets everything when the process exits."""
    _secrets: Dict[Tuple[str, str], str]

    def __init__(self, secrets: Optional[Dict[Tuple[str, str], str]] = None):
        self._secrets = dict(secrets or {})

    def get_password(self, service: str, account: str) -> Optional[str]:
        return self._secrets.get((service, account))

    def set_password(self, service: str, account: str, secret: str) -> None:
        self._secrets[(service, account)] = secret

    def delete_password(self, service: str, account: str) -> None:
        self._secrets.pop((service, account), None)
