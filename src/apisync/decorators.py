"""Decorators for CLI command handlers.

Decorator Order:
    Apply after the typer registration so typer sees the wrapped function:

        @app.command()
        @exit_on_agent_error
        def handler(...) -> None:
            ...
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from functools import wraps

import typer

from apisync.models import AgentError

logger = logging.getLogger(__name__)


def exit_on_agent_error[**P, R](func: Callable[P, R]) -> Callable[P, R]:
    """Decorator to turn AgentError into an error message and exit status 1.

    Other exceptions are propagated.

    Usage:
        @exit_on_agent_error
        def services() -> None:
            asyncio.run(list_services())

    Args:
        func: The command function to wrap.

    Returns:
        Wrapped function that exits with status 1 on AgentError.
    """

    @wraps(func)
    def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
        try:
            return func(*args, **kwargs)
        except AgentError as e:
            logger.debug(
                "AgentError in %s: code=%s, message=%s, details=%s",
                func.__name__,
                e.code.value,
                e.message,
                e.details,
                exc_info=True,
            )
            typer.echo(f"Error [{e.code.value}]: {e.message}", err=True)
            raise typer.Exit(1) from e

    return wrapper
