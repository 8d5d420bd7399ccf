"""Access to the platform credential store that holds the database key."""
import logging
from typing import Optional, Protocol, runtime_checkable

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

from notestore.exceptions import SecretStoreUnavailableError

logger = logging.getLogger(__name__)


@runtime_checkable
class SecretStore(Protocol):
    """Named secrets kept outside the database file."""

    def get(self, name: str) -> Optional[str]:
        """Return the secret stored under name, or None."""
        ...

    def set(self, name: str, secret: str) -> None:
        """Store (or replace) the secret under name."""
        ...

    def delete(self, name: str) -> None:
        """Remove the secret under name; removing a missing secret is a no-op."""
        ...


class KeyringSecretStore:
    """SecretStore backed by the ``keyring`` library.

    Uses whatever backend keyring selects for the platform (macOS Keychain,
    Windows Credential Locker, Secret Service, ...). Backend failures are
    raised as SecretStoreUnavailableError.

    Args:
        service_name: Keyring service the secrets are filed under.
    """

    def __init__(self, service_name: str = "notestore") -> None:
        self.service_name = service_name

    def get(self, name: str) -> Optional[str]:
        try:
            return keyring.get_password(self.service_name, name)
        except KeyringError as e:
            raise SecretStoreUnavailableError(
                f"Could not read secret '{name}' from the credential store",
                operation="get",
                original_error=e,
            ) from e

    def set(self, name: str, secret: str) -> None:
        try:
            keyring.set_password(self.service_name, name, secret)
        except KeyringError as e:
            raise SecretStoreUnavailableError(
                f"Could not store secret '{name}' in the credential store",
                operation="set",
                original_error=e,
            ) from e

    def delete(self, name: str) -> None:
        try:
            keyring.delete_password(self.service_name, name)
        except PasswordDeleteError:
            logger.debug(f"Secret '{name}' was not present in the credential store")
        except KeyringError as e:
            raise SecretStoreUnavailableError(
                f"Could not delete secret '{name}' from the credential store",
                operation="delete",
                original_error=e,
            ) from e
