"""Credential resolution with environment and keyring sources.

Credentials come from environment variables first and the system keyring
second. Includes diagnostic information when keyring is not available.
"""

from __future__ import annotations

import json
import os
import platform

import keyring
from keyring.errors import PasswordDeleteError
from pydantic import BaseModel

from apisync.models import ConfigurationError

API_KEY_ENV_VAR = "APISYNC_API_KEY"
API_KEY_ID_ENV_VAR = "APISYNC_API_KEY_ID"
API_KEY_SECRET_ENV_VAR = "APISYNC_API_KEY_SECRET"
ENVIRONMENT_ENV_VAR = "APISYNC_ENV"


class Credentials(BaseModel):
    """Resolved credentials.

    Either ``api_key`` (sent as a header, optionally with an environment tag)
    or the ``key_id``/``key_secret`` pair (sent as basic auth) is used.

    Attributes:
        api_key: Single API key
        environment: Environment tag sent alongside the API key
        key_id: API key ID for basic auth
        key_secret: API key secret for basic auth
    """

    api_key: str | None = None
    environment: str | None = None
    key_id: str | None = None
    key_secret: str | None = None

    def is_empty(self) -> bool:
        return not self.api_key and not self.key_id and not self.key_secret

    def require(self) -> None:
        """Check that a usable credential is configured.

        Raises:
            ConfigurationError: Naming the missing credential
        """
        if self.api_key:
            return
        if not self.key_id:
            raise ConfigurationError(
                f"Missing or incomplete credentials. Ensure the {API_KEY_ENV_VAR} "
                "environment variable has a valid API key.",
                {"missing": API_KEY_ENV_VAR},
            )
        self.key_pair()

    def key_pair(self) -> tuple[str, str]:
        """Return the key ID and secret used for basic auth.

        Raises:
            ConfigurationError: Naming the missing half of the pair
        """
        if not self.key_id:
            raise ConfigurationError(
                f"API key ID not found. Set the {API_KEY_ID_ENV_VAR} environment variable.",
                {"missing": API_KEY_ID_ENV_VAR},
            )
        if not self.key_secret:
            raise ConfigurationError(
                f"API key secret not found for key ID {self.key_id!r}. Run 'apisync login' "
                f"or set the {API_KEY_SECRET_ENV_VAR} environment variable.",
                {"missing": API_KEY_SECRET_ENV_VAR},
            )
        return self.key_id, self.key_secret


class CredentialStoreError(Exception):
    """Exception raised when keyring operations fail.

    Attributes:
        message: Human-readable error message
        os_info: Operating system information
        backend_info: Keyring backend information
    """

    def __init__(self, message: str, os_info: str, backend_info: str | None = None) -> None:
        self.message = message
        self.os_info = os_info
        self.backend_info = backend_info
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        parts = [self.message, f"\nOS: {self.os_info}"]
        if self.backend_info:
            parts.append(f"Backend: {self.backend_info}")
        if platform.system() == "Linux":
            parts.append("\nFor headless servers, install keyrings.alt or use environment variables instead.")
        return "\n".join(parts)


def _get_os_info() -> str:
    return f"{platform.system()} {platform.release()}"


def _get_backend_info() -> str | None:
    try:
        return type(keyring.get_keyring()).__name__
    except Exception:
        return None


def credentials_from_env() -> Credentials:
    """Read credentials from environment variables (empty values count as unset)."""
    return Credentials(
        api_key=os.environ.get(API_KEY_ENV_VAR) or None,
        environment=os.environ.get(ENVIRONMENT_ENV_VAR) or None,
        key_id=os.environ.get(API_KEY_ID_ENV_VAR) or None,
        key_secret=os.environ.get(API_KEY_SECRET_ENV_VAR) or None,
    )


class CredentialStore:
    """Resolves credentials from the environment, then the system keyring.

    Attributes:
        service_name: The keyring service name used for storage
    """

    DEFAULT_SERVICE_NAME = "apisync-agent"
    CREDENTIALS_KEY = "credentials"

    def __init__(self, service_name: str | None = None) -> None:
        self.service_name = service_name or self.DEFAULT_SERVICE_NAME

    def load(self) -> Credentials:
        """Resolve credentials.

        Environment variables win over the keyring. An empty result is
        returned (not an error) when nothing is configured; the transport
        reports which credential is missing.

        Raises:
            CredentialStoreError: If the keyring itself fails
        """
        from_env = credentials_from_env()
        if not from_env.is_empty():
            return from_env

        try:
            stored = keyring.get_password(self.service_name, self.CREDENTIALS_KEY)
        except Exception as e:
            raise CredentialStoreError(
                message=f"Failed to load credentials from keyring: {e}",
                os_info=_get_os_info(),
                backend_info=_get_backend_info(),
            ) from e

        if stored is None:
            return from_env

        try:
            return Credentials.model_validate(json.loads(stored))
        except ValueError:
            # Corrupt entry; behave as if nothing were stored
            return from_env

    def save(self, credentials: Credentials) -> None:
        """Store credentials in the keyring.

        Raises:
            CredentialStoreError: If keyring operation fails
        """
        try:
            keyring.set_password(self.service_name, self.CREDENTIALS_KEY, credentials.model_dump_json())
        except Exception as e:
            raise CredentialStoreError(
                message=f"Failed to save credentials to keyring: {e}",
                os_info=_get_os_info(),
                backend_info=_get_backend_info(),
            ) from e

    def clear(self) -> None:
        """Remove stored credentials. Does nothing if none are stored."""
        try:
            keyring.delete_password(self.service_name, self.CREDENTIALS_KEY)
        except PasswordDeleteError:
            pass
