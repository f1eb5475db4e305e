"""Configuration for apisync.

Settings come from environment variables and are collected into a
``TransportConfig`` that is passed explicitly to the transport.
"""

from __future__ import annotations

import logging
import os

from pydantic import BaseModel, ConfigDict

logger = logging.getLogger(__name__)

# Environment variable names
DOMAIN_ENV_VAR = "APISYNC_DOMAIN"
ENVIRONMENT_ENV_VAR = "APISYNC_ENV"
PROXY_ENV_VAR = "APISYNC_PROXY"
PERMIT_INVALID_CERTIFICATE_ENV_VAR = "APISYNC_PERMIT_INVALID_CERTIFICATE"
EXPECTED_SERVER_NAME_ENV_VAR = "APISYNC_EXPECTED_SERVER_NAME"
DISABLE_HTTPS_ENV_VAR = "APISYNC_TEST_ONLY_DISABLE_HTTPS"

PRODUCTION_DOMAIN = "apisync.dev"

# Backend domain per environment tag
ENVIRONMENT_DOMAINS = {
    "PRODUCTION": PRODUCTION_DOMAIN,
    "STAGE": "stage.apisync.dev",
    "DEV": "localhost:50443",
}


def default_domain(environment: str | None) -> str:
    """Select the backend domain for an environment tag.

    Args:
        environment: Environment tag (case-insensitive); None or empty means production

    Returns:
        Backend domain. Unknown environments fall back to production with a warning.
    """
    if not environment:
        return PRODUCTION_DOMAIN
    domain = ENVIRONMENT_DOMAINS.get(environment.upper())
    if domain is None:
        logger.warning("Unknown environment %r, using production.", environment)
        return PRODUCTION_DOMAIN
    logger.debug("Selecting %s backend for environment %s.", domain, environment.upper())
    return domain


def get_domain() -> str:
    """Get the backend domain from APISYNC_DOMAIN, falling back to APISYNC_ENV."""
    explicit = os.environ.get(DOMAIN_ENV_VAR)
    if explicit:
        return explicit
    return default_domain(os.environ.get(ENVIRONMENT_ENV_VAR))


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "false").lower() in ("1", "true", "yes")


class TransportConfig(BaseModel):
    """Everything the transport needs besides credentials.

    Attributes:
        domain: Backend domain; requests go to ``api.<domain>``
        proxy: Forward proxy (URL, hostname, or IP); None for direct connections
        permit_invalid_certificate: Skip TLS certificate validation (debug only)
        expected_server_name: Override the TLS server name (debug only)
        test_only_disable_https: Talk plain HTTP to the backend (tests only)
        request_timeout: Default per-request timeout in seconds
        retry_wait_min: Minimum backoff between retries in seconds
        retry_wait_max: Maximum backoff between retries in seconds
        max_retries: Retries after the first attempt for idempotent requests
        max_idle_connections: Keep-alive pool size
        idle_connection_timeout: Keep-alive expiry in seconds
    """

    model_config = ConfigDict(frozen=True)

    domain: str = PRODUCTION_DOMAIN
    proxy: str | None = None
    permit_invalid_certificate: bool = False
    expected_server_name: str | None = None
    test_only_disable_https: bool = False
    request_timeout: float = 20.0
    retry_wait_min: float = 0.1
    retry_wait_max: float = 1.0
    max_retries: int = 3
    max_idle_connections: int = 3
    idle_connection_timeout: float = 60.0

    @classmethod
    def from_env(cls, **overrides: object) -> TransportConfig:
        """Build a config from environment variables.

        Args:
            overrides: Field values that take precedence over the environment

        Returns:
            TransportConfig instance
        """
        values: dict[str, object] = {
            "domain": get_domain(),
            "proxy": os.environ.get(PROXY_ENV_VAR) or None,
            "permit_invalid_certificate": _env_flag(PERMIT_INVALID_CERTIFICATE_ENV_VAR),
            "expected_server_name": os.environ.get(EXPECTED_SERVER_NAME_ENV_VAR) or None,
            "test_only_disable_https": _env_flag(DISABLE_HTTPS_ENV_VAR),
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls.model_validate(values)
