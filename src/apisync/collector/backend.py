"""Sink stage that pairs HTTP events and uploads reports to a trace."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from apisync.api.sessions import SessionClient
from apisync.collector.base import Collector
from apisync.collector.counting import PacketCounter
from apisync.ids import TraceID, WitnessID
from apisync.models import (
    AgentError,
    CollectorEvent,
    EventKind,
    HTTPError,
    TCPConnectionReport,
    TLSHandshakeReport,
    UploadError,
    UploadReportsRequest,
    WitnessReport,
)

logger = logging.getLogger(__name__)

# Partial witnesses older than this are uploaded without their partner
PAIR_CACHE_EXPIRATION = 60.0

# How often stale partial witnesses are swept
PAIR_CACHE_CLEANUP_INTERVAL = 30.0

UPLOAD_BATCH_MAX_SIZE = 120

# How often a non-empty batch is uploaded even if it is not full
UPLOAD_BATCH_FLUSH_INTERVAL = 30.0

Report = WitnessReport | TCPConnectionReport | TLSHandshakeReport


@dataclass
class _PartialWitness:
    """One half of an exchange waiting for the other."""

    request: CollectorEvent | None = None
    response: CollectorEvent | None = None

    @property
    def first_seen(self) -> datetime:
        event = self.request or self.response
        assert event is not None
        return event.observation_time


def _processing_latency_ms(request: CollectorEvent, response: CollectorEvent) -> float | None:
    """Time from the last packet of the request to the first packet of the response."""
    if request.final_packet_time is None:
        return None
    delta = response.observation_time - request.final_packet_time
    return delta.total_seconds() * 1000.0


def _to_witness_report(witness_id: WitnessID, partial: _PartialWitness) -> WitnessReport:
    request, response = partial.request, partial.response
    first = request or response
    assert first is not None

    if request is not None:
        origin = (request.src_ip, request.src_port)
        destination = (request.dst_ip, request.dst_port)
    else:
        assert response is not None
        origin = (response.dst_ip, response.dst_port)
        destination = (response.src_ip, response.src_port)

    annotations: dict[str, str] = {}
    for event in (request, response):
        if event is not None:
            annotations.update(event.annotations)

    report = WitnessReport(
        id=witness_id,
        direction=first.direction,
        origin_addr=origin[0],
        origin_port=origin[1],
        destination_addr=destination[0],
        destination_port=destination[1],
        client_witness_time=partial.first_seen,
        annotations=annotations,
    )
    update: dict[str, object] = {}
    if request is not None:
        update.update(
            method=request.method,
            host=request.host,
            path=request.path,
            query=request.query,
            request_headers=dict(request.headers),
            request_body=request.body,
        )
    if response is not None:
        update.update(
            status_code=response.status_code,
            response_headers=dict(response.headers),
            response_body=response.body,
        )
    if request is not None and response is not None:
        update["processing_latency_ms"] = _processing_latency_ms(request, response)
    return report.model_copy(update=update).with_hash()


def _tcp_report(event: CollectorEvent) -> TCPConnectionReport:
    assert event.connection_id is not None
    return TCPConnectionReport(
        id=event.connection_id,
        src_addr=event.src_ip,
        src_port=event.src_port,
        dest_addr=event.dst_ip,
        dest_port=event.dst_port,
        first_observed=event.observation_time,
        last_observed=event.final_packet_time,
        initiator_known=event.initiator_known,
        end_state=event.end_state,
    )


def _tls_report(event: CollectorEvent) -> TLSHandshakeReport:
    assert event.connection_id is not None
    return TLSHandshakeReport(
        id=event.connection_id,
        version=event.tls_version,
        sni_hostname=event.sni_hostname,
        selected_protocol=event.selected_protocol,
    )


class BackendCollector(Collector):
    """Uploads events to a trace.

    HTTP requests and responses are paired by witness ID and uploaded as
    one report. Reports are uploaded in batches: when a batch is full, on a
    timer, and on close. A failed batch is logged and counted and does not
    stop collection; ``close`` raises ``UploadError`` if any batch failed.

    Attributes:
        session_client: Client for the trace's service
        trace_id: Trace reports are uploaded to
        reports_uploaded: Reports in successfully uploaded batches
        failed_batches: Batches that could not be uploaded
        dropped: Events accepted but with no report form, so never uploaded
    """

    def __init__(
        self,
        session_client: SessionClient,
        trace_id: TraceID,
        batch_size: int = UPLOAD_BATCH_MAX_SIZE,
        flush_interval: float = UPLOAD_BATCH_FLUSH_INTERVAL,
        pair_expiration: float = PAIR_CACHE_EXPIRATION,
        pair_cleanup_interval: float = PAIR_CACHE_CLEANUP_INTERVAL,
    ) -> None:
        self.session_client = session_client
        self.trace_id = trace_id
        self.batch_size = batch_size
        self.flush_interval = flush_interval
        self.pair_expiration = pair_expiration
        self.pair_cleanup_interval = pair_cleanup_interval

        self.reports_uploaded = 0
        self.failed_batches = 0
        self.dropped = PacketCounter()
        self._last_error: AgentError | None = None
        self._flusher_error: Exception | None = None

        self._pairs: dict[WitnessID, _PartialWitness] = {}
        self._batch: list[Report] = []
        self._flusher: asyncio.Task[None] | None = None
        self._closed = False

    def switch_trace(self, trace_id: TraceID) -> None:
        """Send subsequent batches to another trace."""
        logger.debug("Switching upload target from %s to %s", self.trace_id, trace_id)
        self.trace_id = trace_id

    @property
    def pending_pairs(self) -> int:
        return len(self._pairs)

    async def process(self, event: CollectorEvent) -> None:
        if self._closed:
            raise RuntimeError("BackendCollector is closed")
        self._ensure_flusher()

        match event.kind:
            case EventKind.HTTP_REQUEST | EventKind.HTTP_RESPONSE:
                await self._process_http(event)
            case EventKind.TCP_CONNECTION if event.connection_id is not None:
                await self._add(_tcp_report(event))
            case EventKind.TLS_HANDSHAKE if event.connection_id is not None:
                await self._add(_tls_report(event))
            case _:
                logger.debug("Ignoring %s event without a report form", event.kind.value)
                self.dropped.update(event)

    async def _process_http(self, event: CollectorEvent) -> None:
        witness_id = event.witness_id
        if witness_id is None:
            logger.debug("Skipping HTTP event without a stream ID")
            self.dropped.update(event)
            return

        is_request = event.kind is EventKind.HTTP_REQUEST
        partial = self._pairs.pop(witness_id, None)
        if partial is not None and (partial.request if is_request else partial.response) is None:
            if is_request:
                partial.request = event
            else:
                partial.response = event
            await self._add(_to_witness_report(witness_id, partial))
            return

        if partial is not None:
            # Same half seen twice; upload the earlier one alone.
            await self._add(_to_witness_report(witness_id, partial))
        self._pairs[witness_id] = _PartialWitness(request=event) if is_request else _PartialWitness(response=event)

    async def _add(self, report: Report) -> None:
        self._batch.append(report)
        if len(self._batch) >= self.batch_size:
            await self.flush()

    async def flush_stale_pairs(self, cutoff: datetime | None = None) -> int:
        """Queue partial witnesses first seen before the cutoff.

        Args:
            cutoff: Default is now minus the pairing window

        Returns:
            Number of partial witnesses queued
        """
        if cutoff is None:
            cutoff = datetime.now(UTC) - timedelta(seconds=self.pair_expiration)
        stale = [witness_id for witness_id, partial in self._pairs.items() if partial.first_seen < cutoff]
        queued = 0
        for witness_id in stale:
            # Uploads yield, so a stale half may have been paired in the meantime.
            partial = self._pairs.pop(witness_id, None)
            if partial is None:
                continue
            queued += 1
            await self._add(_to_witness_report(witness_id, partial))
        return queued

    async def flush(self) -> None:
        """Upload the current batch, if any."""
        if not self._batch:
            return
        batch, self._batch = self._batch, []
        for start in range(0, len(batch), self.batch_size):
            await self._upload(batch[start : start + self.batch_size])

    async def _upload(self, batch: list[Report]) -> None:
        request = UploadReportsRequest(
            witnesses=[r for r in batch if isinstance(r, WitnessReport)],
            tcp_connections=[r for r in batch if isinstance(r, TCPConnectionReport)],
            tls_handshakes=[r for r in batch if isinstance(r, TLSHandshakeReport)],
        )
        try:
            await self.session_client.report_witnesses(self.trace_id, request)
        except AgentError as e:
            self.failed_batches += 1
            self._last_error = e
            if isinstance(e, HTTPError) and e.status_code == 429:
                logger.warning(
                    "Failed to upload %d reports: uploads are being throttled, results will be partial. "
                    "Try a lower --sample-rate to avoid this.",
                    len(request),
                )
            else:
                logger.warning("Failed to upload %d reports: %s", len(request), e.message)
            return

        self.reports_uploaded += len(request)
        logger.debug(
            "Uploaded %d witnesses, %d TCP connection reports and %d TLS handshake reports",
            len(request.witnesses),
            len(request.tcp_connections),
            len(request.tls_handshakes),
        )

    def _ensure_flusher(self) -> None:
        if self._flusher is None:
            self._flusher = asyncio.create_task(self._periodic_flush())

    async def _periodic_flush(self) -> None:
        loop = asyncio.get_running_loop()
        tick = min(self.flush_interval, self.pair_cleanup_interval)
        last_cleanup = last_flush = loop.time()
        while True:
            await asyncio.sleep(tick)
            now = loop.time()
            if now - last_cleanup >= self.pair_cleanup_interval:
                last_cleanup = now
                await self.flush_stale_pairs()
            if now - last_flush >= self.flush_interval:
                last_flush = now
                await self.flush()

    async def close(self) -> None:
        """Upload everything still pending, including unpaired halves.

        Raises:
            UploadError: If any batch failed during the run, or the periodic
                uploader stopped on an unexpected error
        """
        if self._closed:
            return
        self._closed = True
        if self._flusher is not None:
            self._flusher.cancel()
            try:
                await self._flusher
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.error("Periodic upload stopped early: %s", e)
                self._flusher_error = e
            self._flusher = None

        for witness_id, partial in list(self._pairs.items()):
            self._batch.append(_to_witness_report(witness_id, partial))
        self._pairs.clear()
        await self.flush()

        if self.failed_batches:
            raise UploadError(
                f"{self.failed_batches} report batch(es) could not be uploaded to trace {self.trace_id}.",
                {"trace_id": str(self.trace_id), "failed_batches": self.failed_batches},
            ) from self._last_error
        if self._flusher_error is not None:
            raise UploadError(
                f"Periodic upload to trace {self.trace_id} stopped early; pending reports were uploaded on close.",
                {"trace_id": str(self.trace_id), "failed_batches": 0},
            ) from self._flusher_error
