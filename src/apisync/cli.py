"""Command-line interface for apisync.

Provides commands for uploading captured traffic, running the daemon
and managing credentials.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Annotated

import typer

from apisync.api import APIClient, DirectoryClient
from apisync.auth import CredentialStore, CredentialStoreError, Credentials
from apisync.cache import IdentifierCache
from apisync.config import TransportConfig
from apisync.decorators import exit_on_agent_error
from apisync.har import har_to_events, load_har
from apisync.ids import ServiceID, TraceID
from apisync.longpoll import LongPollCoordinator
from apisync.models import (
    CollectorEvent,
    ConfigurationError,
    Destination,
    LoggingOptions,
    parse_tags,
)
from apisync.sync import SessionSynchronizer, UploadSummary
from apisync.utils import setup_logging

logger = logging.getLogger(__name__)

app = typer.Typer(
    name="apisync",
    help="apisync agent - send API traffic to the apisync backend",
)


@app.callback()
def main(
    debug: Annotated[
        bool,
        typer.Option("--debug", help="Enable debug logging"),
    ] = False,
) -> None:
    """Configure logging for every command."""
    setup_logging(logging.DEBUG if debug else logging.INFO)


def _load_credentials() -> Credentials:
    try:
        return CredentialStore().load()
    except CredentialStoreError as e:
        raise ConfigurationError(f"Failed to read stored credentials: {e.message}", {"os": e.os_info}) from e


def _open_client() -> APIClient:
    return APIClient(TransportConfig.from_env(), _load_credentials())


def _print_summary(summary: UploadSummary) -> None:
    for direction, kind, seen, submitted, filtered in summary.buckets():
        typer.echo(
            f"   {direction.value:<8} {kind.value:<14} input={seen} submitted={submitted} filtered={filtered}",
            err=True,
        )


async def _upload(
    files: list[Path],
    destination: Destination,
    append: bool,
    tags: dict[str, str],
    include_trackers: bool,
    sample_rate: float,
    exclude_paths: list[str],
    exclude_hosts: list[str],
) -> UploadSummary:
    events: list[CollectorEvent] = []
    for path in files:
        events.extend(har_to_events(load_har(path)))

    async with _open_client() as client:
        synchronizer = SessionSynchronizer(DirectoryClient(client))
        return await synchronizer.sync(
            destination,
            events,
            append=append,
            tags=tags,
            include_trackers=include_trackers,
            sample_rate=sample_rate,
            path_exclusions=list(exclude_paths),
            host_exclusions=list(exclude_hosts),
        )


@app.command()
@exit_on_agent_error
def upload(
    files: Annotated[
        list[Path],
        typer.Argument(help="HAR files to upload"),
    ],
    service: Annotated[
        str,
        typer.Option("--service", "-s", help="Service to upload to"),
    ],
    trace: Annotated[
        str | None,
        typer.Option("--trace", "-t", help="Trace name (default: a new random name)"),
    ] = None,
    append: Annotated[
        bool,
        typer.Option("--append", help="Add to the trace if it already exists"),
    ] = False,
    tag: Annotated[
        list[str] | None,
        typer.Option("--tag", help="Tag for a new trace, as key=value (repeatable)"),
    ] = None,
    include_trackers: Annotated[
        bool,
        typer.Option("--include-trackers", help="Keep traffic to third-party trackers"),
    ] = False,
    sample_rate: Annotated[
        float,
        typer.Option("--sample-rate", min=0.0, max=1.0, help="Fraction of requests to keep"),
    ] = 1.0,
    exclude_path: Annotated[
        list[str] | None,
        typer.Option("--exclude-path", help="Regex of request paths to drop (repeatable)"),
    ] = None,
    exclude_host: Annotated[
        list[str] | None,
        typer.Option("--exclude-host", help="Regex of request hosts to drop (repeatable)"),
    ] = None,
) -> None:
    """Upload HAR files into a trace.

    Example:
        apisync upload traffic.har --service checkout --trace nightly-run --append
    """
    destination = Destination(service_name=service, object_name=trace or "")
    summary = asyncio.run(
        _upload(
            files,
            destination,
            append,
            parse_tags(tag or []),
            include_trackers,
            sample_rate,
            exclude_path or [],
            exclude_host or [],
        )
    )

    typer.echo(
        f"Submitted {summary.events_submitted} of {summary.events_input} events "
        f"({summary.events_filtered} filtered).",
        err=True,
    )
    _print_summary(summary)
    # URI on stdout for scripting
    typer.echo(str(Destination(service_name=service, object_name=summary.trace.name)))


async def _list_services() -> list[tuple[str, str]]:
    async with _open_client() as client:
        services = await DirectoryClient(client).list_services()
    return [(service.name, str(service.id)) for service in services]


@app.command()
@exit_on_agent_error
def services() -> None:
    """List services visible to the configured credentials."""
    rows = asyncio.run(_list_services())
    if not rows:
        typer.echo("No services found.", err=True)
        return
    for name, service_id in sorted(rows):
        typer.echo(f"{name}\t{service_id}")


async def _run_daemon(name: str, service_names: list[str]) -> None:
    async with _open_client() as client:
        directory = DirectoryClient(client)
        cache = IdentifierCache(directory)
        service_ids = [await cache.resolve_service(service_name) for service_name in service_names]

        def activated(options: LoggingOptions) -> None:
            typer.echo(f"Trace {options.trace_name or options.trace_id} activated", err=True)

        def deactivated(service_id: ServiceID, trace_id: TraceID) -> None:
            typer.echo(f"Trace {trace_id} deactivated", err=True)

        coordinator = LongPollCoordinator(directory, name, on_activated=activated, on_deactivated=deactivated)
        await coordinator.run(service_ids, asyncio.Event())


@app.command()
@exit_on_agent_error
def daemon(
    name: Annotated[
        str,
        typer.Option("--name", "-n", help="Name to register the daemon under"),
    ],
    service: Annotated[
        list[str],
        typer.Option("--service", "-s", help="Service to watch (repeatable)"),
    ],
) -> None:
    """Watch services for trace activation until interrupted."""
    typer.echo(f"Daemon {name!r} watching: {', '.join(service)}", err=True)
    try:
        asyncio.run(_run_daemon(name, service))
    except KeyboardInterrupt:
        typer.echo("\nDaemon stopped", err=True)
        raise typer.Exit(0) from None


@app.command()
@exit_on_agent_error
def login(
    api_key: Annotated[
        str,
        typer.Option("--api-key", prompt=True, hide_input=True, help="API key to store"),
    ],
    environment: Annotated[
        str | None,
        typer.Option("--env", help="Environment tag sent with the key"),
    ] = None,
) -> None:
    """Store an API key in the system keyring."""
    try:
        CredentialStore().save(Credentials(api_key=api_key, environment=environment))
    except CredentialStoreError as e:
        raise ConfigurationError(f"Failed to store credentials: {e.message}", {"os": e.os_info}) from e
    typer.echo("Credentials saved.", err=True)


@app.command()
@exit_on_agent_error
def logout() -> None:
    """Remove stored credentials from the system keyring."""
    try:
        CredentialStore().clear()
    except CredentialStoreError as e:
        raise ConfigurationError(f"Failed to remove credentials: {e.message}", {"os": e.os_info}) from e
    typer.echo("Credentials removed.", err=True)
