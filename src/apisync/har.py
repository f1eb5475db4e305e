"""HAR 1.2 ingestion.

Converts the entries of a HAR file into collector events: one request and
one response event per entry, sharing the file's stream ID, with the entry
index as sequence number.
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from apisync.models import CollectorEvent, ConfigurationError, Direction, EventKind

logger = logging.getLogger(__name__)

_DEFAULT_PORTS = {"http": 80, "https": 443}


class _HARModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class HARHeader(_HARModel):
    name: str
    value: str = ""


class HARPostData(_HARModel):
    mime_type: str = Field(default="", alias="mimeType")
    text: str | None = None


class HARContent(_HARModel):
    mime_type: str = Field(default="", alias="mimeType")
    text: str | None = None


class HARRequest(_HARModel):
    method: str
    url: str
    headers: list[HARHeader] = Field(default_factory=list)
    post_data: HARPostData | None = Field(default=None, alias="postData")


class HARResponse(_HARModel):
    status: int
    headers: list[HARHeader] = Field(default_factory=list)
    content: HARContent | None = None


class HARTimings(_HARModel):
    """Phase durations in milliseconds; -1 means not applicable."""

    send: float = 0.0
    wait: float = 0.0


class HAREntry(_HARModel):
    started_date_time: datetime = Field(alias="startedDateTime")
    request: HARRequest
    response: HARResponse | None = None
    timings: HARTimings = Field(default_factory=HARTimings)
    server_ip_address: str = Field(default="", alias="serverIPAddress")


class HARLog(_HARModel):
    version: str = ""
    entries: list[HAREntry] = Field(default_factory=list)


class HARExtension(_HARModel):
    """Agent-specific settings carried in the file."""

    outbound: bool = False


class HARFile(_HARModel):
    log: HARLog
    extension: HARExtension = Field(default_factory=HARExtension, alias="_apisync")


def load_har(path: Path) -> HARFile:
    """Read and validate a HAR file.

    Raises:
        ConfigurationError: If the file cannot be read or is not a HAR file
    """
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise ConfigurationError(f"failed to open HAR file {path}: {e}", {"path": str(path)}) from e
    except ValueError as e:
        raise ConfigurationError(f"failed to read HAR file {path}: {e}", {"path": str(path)}) from e

    if not isinstance(raw, dict) or "log" not in raw:
        raise ConfigurationError(f"HAR file {path} does not contain log", {"path": str(path)})
    try:
        return HARFile.model_validate(raw)
    except ValidationError as e:
        raise ConfigurationError(f"HAR file {path} is malformed: {e}", {"path": str(path)}) from e


def _headers(headers: list[HARHeader]) -> dict[str, str]:
    result: dict[str, str] = {}
    for header in headers:
        # HAR stores repeated headers as separate entries
        if header.name in result:
            result[header.name] = f"{result[header.name]}, {header.value}"
        else:
            result[header.name] = header.value
    return result


def entry_to_events(
    entry: HAREntry,
    stream_id: uuid.UUID,
    seq: int,
    direction: Direction = Direction.INBOUND,
    interface: str = "har",
) -> list[CollectorEvent]:
    """Convert one HAR entry to a request event and, if present, a response event."""
    url = urlsplit(entry.request.url)
    scheme = url.scheme or "http"
    host = url.hostname or ""
    port = url.port or _DEFAULT_PORTS.get(scheme, 0)

    request_end = entry.started_date_time + timedelta(milliseconds=max(entry.timings.send, 0.0))
    request = CollectorEvent(
        kind=EventKind.HTTP_REQUEST,
        direction=direction,
        observation_time=entry.started_date_time,
        final_packet_time=request_end,
        interface=interface,
        dst_ip=entry.server_ip_address,
        dst_port=port,
        stream_id=stream_id,
        seq=seq,
        method=entry.request.method.upper(),
        scheme=scheme,
        host=host or None,
        path=url.path or "/",
        query=url.query,
        headers=_headers(entry.request.headers),
        body=entry.request.post_data.text if entry.request.post_data else None,
    )
    if entry.response is None:
        return [request]

    response_start = request_end + timedelta(milliseconds=max(entry.timings.wait, 0.0))
    response = CollectorEvent(
        kind=EventKind.HTTP_RESPONSE,
        direction=direction,
        observation_time=response_start,
        final_packet_time=response_start,
        interface=interface,
        src_ip=entry.server_ip_address,
        src_port=port,
        stream_id=stream_id,
        seq=seq,
        status_code=entry.response.status,
        headers=_headers(entry.response.headers),
        body=entry.response.content.text if entry.response.content else None,
    )
    return [request, response]


def har_to_events(har: HARFile, stream_id: uuid.UUID | None = None) -> list[CollectorEvent]:
    """Convert every entry of a HAR file to collector events, in file order."""
    stream_id = stream_id or uuid.uuid4()
    direction = Direction.OUTBOUND if har.extension.outbound else Direction.INBOUND
    events: list[CollectorEvent] = []
    for seq, entry in enumerate(har.log.entries):
        events.extend(entry_to_events(entry, stream_id, seq, direction))
    logger.debug("Loaded %d HAR entries as %d events", len(har.log.entries), len(events))
    return events
