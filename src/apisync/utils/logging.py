"""Secure logging configuration for apisync.

Provides logging setup with credential masking. API keys, key secrets and
basic-auth headers are masked in all log output.
"""

import logging
import re


class CredentialMaskingFilter(logging.Filter):
    """Logging filter that masks credentials.

    Header values and environment-style assignments for credentials are
    replaced with [MASKED] to prevent leakage in logs.
    """

    CREDENTIAL_PATTERNS = [
        # x-api-key: VALUE, x-api-key=VALUE, "x-api-key": "VALUE"
        re.compile(r"""((?:x-api-key)["']?\s*[=:]\s*["']?)([^\s,;"'}]+)""", re.IGNORECASE),
        # Authorization: Basic VALUE / Bearer VALUE
        re.compile(r"""(authorization["']?\s*[=:]\s*["']?(?:basic|bearer)\s+)([^\s,;"'}]+)""", re.IGNORECASE),
        # APISYNC_API_KEY=VALUE, APISYNC_API_KEY_SECRET=VALUE
        re.compile(r"""((?:APISYNC_API_KEY|APISYNC_API_KEY_SECRET)\s*[=:]\s*["']?)([^\s,;"'}]+)"""),
        # key_secret='VALUE', api_key='VALUE' (pydantic reprs)
        re.compile(r"""((?:key_secret|api_key)\s*[=:]\s*["'])([^"']+)"""),
    ]

    def filter(self, record: logging.LogRecord) -> bool:
        """Mask credentials in a log record.

        Returns:
            Always True (record is always passed through, just modified)
        """
        if record.msg:
            record.msg = self._mask(str(record.msg))
        if record.args and isinstance(record.args, tuple):
            record.args = tuple(self._mask(arg) if isinstance(arg, str) else arg for arg in record.args)
        return True

    def _mask(self, text: str) -> str:
        result = text
        for pattern in self.CREDENTIAL_PATTERNS:
            result = pattern.sub(lambda m: m.group(1) + "[MASKED]", result)
        return result


def setup_logging(level: int = logging.INFO, name: str | None = None) -> logging.Logger:
    """Set up logging with credential masking.

    Args:
        level: Logging level (default: INFO)
        name: Logger name (default: "apisync")

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name or "apisync")
    logger.setLevel(level)

    # Remove existing handlers to avoid duplicates
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
    handler.addFilter(CredentialMaskingFilter())
    logger.addHandler(handler)

    return logger


def get_logger(name: str | None = None) -> logging.Logger:
    """Get a logger under the apisync namespace.

    Args:
        name: Logger name suffix (e.g., "api" for "apisync.api")
    """
    if name:
        return logging.getLogger(f"apisync.{name}")
    return logging.getLogger("apisync")
