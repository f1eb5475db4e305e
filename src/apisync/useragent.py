"""Client identification sent with every backend request."""

from __future__ import annotations

import os
import platform
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path

PRODUCT = "apisync-agent"

# Headers that mark the agent's own traffic. Their presence on captured
# traffic identifies meta-traffic rather than user traffic.
CLI_GIT_VERSION_HEADER = "x-apisync-cli-git-version"
REQUEST_ID_HEADER = "x-apisync-request-id"
CLIENT_ID_HEADER = "x-apisync-client-id"

# Stamped by the release build; "dev" for source checkouts.
GIT_VERSION = os.environ.get("APISYNC_GIT_VERSION", "dev")


def release_version() -> str:
    """Installed package version, or 0.0.0 when running from an uninstalled tree."""
    try:
        return version(PRODUCT)
    except PackageNotFoundError:
        return "0.0.0"


def in_docker() -> bool:
    return Path("/.dockerenv").exists()


def user_agent() -> str:
    """Build the user-agent string, e.g. ``apisync-agent/0.1.0 (linux; x86_64; host)``."""
    env_type = "docker" if in_docker() else "host"
    return f"{PRODUCT}/{release_version()} ({platform.system().lower()}; {platform.machine().lower()}; {env_type})"
