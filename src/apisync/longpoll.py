"""Long-poll coordination for daemon mode.

The backend holds each poll open until it has a change to report or the
poll times out. Every loop iteration goes through the same states:

    IDLE -> POLLING -> DIFF_RECEIVED   -> IDLE
                    -> TIMEOUT         -> IDLE (poll again immediately)
                    -> TRANSPORT_ERROR -> IDLE after a backoff

Authentication and configuration errors are not retried; they stop the
loop that hit them.
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum

from apisync.api.directory import LONG_POLL_TIMEOUT, DirectoryClient
from apisync.ids import ServiceID, TraceID
from apisync.models import (
    ActiveTraceDiff,
    AgentError,
    AuthenticationError,
    ConfigurationError,
    LoggingOptions,
    RequestTimeoutError,
)

logger = logging.getLogger(__name__)

# Wait after a failed poll before polling again
LONG_POLL_INTERVAL = 5.0

HEARTBEAT_INTERVAL = 30.0

ActivatedCallback = Callable[[LoggingOptions], Awaitable[None] | None]
DeactivatedCallback = Callable[[ServiceID, TraceID], Awaitable[None] | None]


class PollState(str, Enum):
    """State of one long-poll loop."""

    IDLE = "idle"
    POLLING = "polling"
    DIFF_RECEIVED = "diff_received"
    TIMEOUT = "timeout"
    TRANSPORT_ERROR = "transport_error"


@dataclass
class PollOutcome:
    """Result of one poll.

    Attributes:
        state: DIFF_RECEIVED, TIMEOUT or TRANSPORT_ERROR
        diff: The reported change (DIFF_RECEIVED only)
        error: The failure (TRANSPORT_ERROR only)
    """

    state: PollState
    diff: ActiveTraceDiff | None = None
    error: AgentError | None = None


async def _call(callback: Callable[..., Awaitable[None] | None] | None, *args: object) -> None:
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class LongPollCoordinator:
    """Tracks the active traces of a daemon's services.

    Runs one watch loop per service and a heartbeat loop. Traces the backend
    activates are reported to ``on_activated``; traces it deactivates are
    reported to ``on_deactivated`` exactly once.

    Attributes:
        directory: Client for daemon calls
        daemon_name: Name the daemon registers under
        active_traces: Currently active traces per service
        states: Current loop state per service
    """

    def __init__(
        self,
        directory: DirectoryClient,
        daemon_name: str,
        on_activated: ActivatedCallback | None = None,
        on_deactivated: DeactivatedCallback | None = None,
        poll_timeout: float = LONG_POLL_TIMEOUT,
        backoff: float = LONG_POLL_INTERVAL,
        heartbeat_interval: float = HEARTBEAT_INTERVAL,
    ) -> None:
        self.directory = directory
        self.daemon_name = daemon_name
        self.on_activated = on_activated
        self.on_deactivated = on_deactivated
        self.poll_timeout = poll_timeout
        self.backoff = backoff
        self.heartbeat_interval = heartbeat_interval

        self.active_traces: dict[ServiceID, set[TraceID]] = {}
        self.states: dict[ServiceID, PollState] = {}
        self._trace_watchers: dict[TraceID, asyncio.Task[None]] = {}
        self._watcher_error: BaseException | None = None

    # -------------------------------------------------------------------------
    # Single polls
    # -------------------------------------------------------------------------

    async def poll_once(self, service_id: ServiceID) -> PollOutcome:
        """Issue one active-trace poll for a service.

        Raises:
            AuthenticationError: If the backend rejects the credentials
            ConfigurationError: If no credentials are configured
        """
        current = sorted(self.active_traces.get(service_id, set()), key=str)
        self.states[service_id] = PollState.POLLING
        try:
            async with asyncio.timeout(self.poll_timeout):
                diff = await self.directory.long_poll_active_traces(
                    self.daemon_name, service_id, current, timeout=self.poll_timeout
                )
        except (TimeoutError, RequestTimeoutError):
            outcome = PollOutcome(PollState.TIMEOUT)
        except (AuthenticationError, ConfigurationError):
            self.states[service_id] = PollState.IDLE
            raise
        except AgentError as e:
            logger.warning("Error while polling service %s: %s", service_id, e.message)
            outcome = PollOutcome(PollState.TRANSPORT_ERROR, error=e)
        else:
            if diff.is_empty():
                outcome = PollOutcome(PollState.TIMEOUT)
            else:
                outcome = PollOutcome(PollState.DIFF_RECEIVED, diff=diff)

        self.states[service_id] = outcome.state
        logger.debug("Poll of service %s finished: %s", service_id, outcome.state.value)
        return outcome

    async def wait_for_deactivation(
        self,
        service_id: ServiceID,
        trace_id: TraceID,
        stop: asyncio.Event | None = None,
    ) -> bool:
        """Block until the backend deactivates a trace.

        Timeouts re-issue the poll immediately; failures back off first.

        Returns:
            True once the trace is deactivated, False if stopped first
        """
        stop = stop or asyncio.Event()
        while not stop.is_set():
            try:
                async with asyncio.timeout(self.poll_timeout):
                    await self.directory.long_poll_trace_deactivation(
                        self.daemon_name, service_id, trace_id, timeout=self.poll_timeout
                    )
                return True
            except (TimeoutError, RequestTimeoutError):
                continue
            except (AuthenticationError, ConfigurationError):
                raise
            except AgentError as e:
                logger.debug("Error while polling trace %s: %s", trace_id, e.message)
                if await self._sleep_or_stop(self.backoff, stop):
                    break
        return False

    # -------------------------------------------------------------------------
    # Diff handling
    # -------------------------------------------------------------------------

    async def apply_diff(
        self,
        service_id: ServiceID,
        diff: ActiveTraceDiff,
        stop: asyncio.Event | None = None,
    ) -> None:
        """Update the active set and notify callbacks.

        With a ``stop`` event, each activated trace also gets a task that
        waits for its deactivation.
        """
        active = self.active_traces.setdefault(service_id, set())
        for options in diff.activated_traces:
            if options.trace_id in active:
                continue
            active.add(options.trace_id)
            logger.info("Trace %s activated for service %s", options.trace_id, service_id)
            await _call(self.on_activated, options)
            if stop is not None:
                self._start_trace_watcher(service_id, options.trace_id, stop)
        for trace_id in diff.deactivated_traces:
            await self._deactivate(service_id, trace_id)

    async def _deactivate(self, service_id: ServiceID, trace_id: TraceID) -> None:
        active = self.active_traces.get(service_id, set())
        if trace_id not in active:
            return
        active.discard(trace_id)
        watcher = self._trace_watchers.pop(trace_id, None)
        if watcher is not None and watcher is not asyncio.current_task():
            watcher.cancel()
        logger.info("Trace %s deactivated for service %s", trace_id, service_id)
        await _call(self.on_deactivated, service_id, trace_id)

    def _start_trace_watcher(self, service_id: ServiceID, trace_id: TraceID, stop: asyncio.Event) -> None:
        async def watch() -> None:
            if await self.wait_for_deactivation(service_id, trace_id, stop):
                await self._deactivate(service_id, trace_id)

        task = asyncio.create_task(watch(), name=f"watch-{trace_id}")
        task.add_done_callback(functools.partial(self._watcher_done, trace_id, stop))
        self._trace_watchers[trace_id] = task

    def _watcher_done(self, trace_id: TraceID, stop: asyncio.Event, task: asyncio.Task[None]) -> None:
        """Collect a finished watcher; a failure stops the coordinator and is re-raised by ``run``."""
        if self._trace_watchers.get(trace_id) is task:
            del self._trace_watchers[trace_id]
        if task.cancelled():
            return
        error = task.exception()
        if error is None:
            return
        logger.error("Watcher for trace %s failed: %s", trace_id, error)
        if self._watcher_error is None:
            self._watcher_error = error
        stop.set()

    # -------------------------------------------------------------------------
    # Loops
    # -------------------------------------------------------------------------

    async def watch_service(self, service_id: ServiceID, stop: asyncio.Event) -> None:
        """Poll a service for active-trace changes until stopped."""
        self.active_traces.setdefault(service_id, set())
        while not stop.is_set():
            outcome = await self.poll_once(service_id)
            if outcome.state is PollState.DIFF_RECEIVED:
                assert outcome.diff is not None
                await self.apply_diff(service_id, outcome.diff, stop)
            elif outcome.state is PollState.TRANSPORT_ERROR:
                if await self._sleep_or_stop(self.backoff, stop):
                    break
            self.states[service_id] = PollState.IDLE

    async def heartbeat_loop(self, stop: asyncio.Event) -> None:
        """Send heartbeats until stopped. Failures are logged and retried next interval."""
        while not stop.is_set():
            try:
                await self.directory.heartbeat(self.daemon_name)
            except (AuthenticationError, ConfigurationError):
                raise
            except AgentError as e:
                logger.warning("Error sending heartbeat: %s", e.message)
            if await self._sleep_or_stop(self.heartbeat_interval, stop):
                break

    async def run(self, service_ids: list[ServiceID], stop: asyncio.Event) -> None:
        """Run the heartbeat and one watch loop per service until ``stop`` is set.

        Raises:
            AuthenticationError: If any loop or trace watcher hits rejected credentials
            ConfigurationError: If any loop or trace watcher finds no credentials
        """
        self._watcher_error = None
        try:
            async with asyncio.TaskGroup() as group:
                loops = [group.create_task(self.heartbeat_loop(stop), name="heartbeat")]
                loops += [
                    group.create_task(self.watch_service(service_id, stop), name=f"watch-{service_id}")
                    for service_id in service_ids
                ]
                await stop.wait()
                for task in loops:
                    task.cancel()
        except ExceptionGroup as group_error:
            raise group_error.exceptions[0] from group_error
        finally:
            for watcher in self._trace_watchers.values():
                watcher.cancel()
            self._trace_watchers.clear()
        if self._watcher_error is not None:
            error, self._watcher_error = self._watcher_error, None
            raise error

    @staticmethod
    async def _sleep_or_stop(delay: float, stop: asyncio.Event) -> bool:
        """Sleep for ``delay`` seconds. Returns True if ``stop`` was set meanwhile."""
        try:
            async with asyncio.timeout(delay):
                await stop.wait()
        except TimeoutError:
            return False
        return True
