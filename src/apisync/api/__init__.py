"""API module for apisync.

Provides the shared HTTP transport and the resource clients built on it.
"""

from apisync.api.client import APIClient, ErrorReporter, set_api_error_handler
from apisync.api.directory import DirectoryClient
from apisync.api.sessions import SessionClient

__all__ = [
    "APIClient",
    "DirectoryClient",
    "ErrorReporter",
    "SessionClient",
    "set_api_error_handler",
]
