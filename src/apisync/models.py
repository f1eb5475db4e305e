"""Pydantic data models for apisync.

This module defines the data exchanged with the backend (services, traces,
specs, long-poll diffs, upload reports), the events flowing through the
collector pipeline, and the typed error hierarchy.
"""

from __future__ import annotations

import hashlib
import json
import secrets
import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from apisync.ids import ConnectionID, ServiceID, SpecID, TraceID, WitnessID, witness_id_for

# =============================================================================
# Errors
# =============================================================================


class ErrorCode(str, Enum):
    """Error codes for apisync errors."""

    CONFIGURATION = "configuration"
    TRANSPORT = "transport"
    HTTP = "http"
    NOT_AUTHENTICATED = "not_authenticated"
    NOT_FOUND = "not_found"
    LOOKUP_FAILED = "lookup_failed"
    PRECONDITION = "precondition"
    UPLOAD_FAILED = "upload_failed"
    BAD_RESPONSE = "bad_response"


class AgentError(Exception):
    """Base exception for all apisync errors.

    Attributes:
        code: Error code
        message: Human-readable error message
        details: Additional error details (operation context, IDs, paths)
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        details: dict[str, object] | None = None,
    ) -> None:
        """Initialize the error.

        Args:
            code: Error code from ErrorCode enum
            message: Human-readable error message
            details: Additional context (e.g., status code, path, name)
        """
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ConfigurationError(AgentError):
    """Local misconfiguration: missing credentials, malformed destination."""

    def __init__(self, message: str, details: dict[str, object] | None = None) -> None:
        super().__init__(ErrorCode.CONFIGURATION, message, details)


class TransportError(AgentError):
    """A request could not be completed after exhausting its retries."""

    def __init__(self, message: str, details: dict[str, object] | None = None) -> None:
        super().__init__(ErrorCode.TRANSPORT, message, details)


class RequestTimeoutError(TransportError):
    """The request did not complete before its deadline."""


class HTTPError(AgentError):
    """Non-2xx response from the backend.

    Attributes:
        status_code: HTTP status code
        body: Raw response body
    """

    def __init__(
        self,
        status_code: int,
        body: bytes,
        message: str | None = None,
        details: dict[str, object] | None = None,
        code: ErrorCode = ErrorCode.HTTP,
    ) -> None:
        self.status_code = status_code
        self.body = body
        merged: dict[str, object] = {"status_code": status_code}
        merged.update(details or {})
        super().__init__(code, message or f"API request failed with status {status_code}.", merged)

    def json(self) -> Any:
        """Decode the response body as JSON, returning None if it is not JSON."""
        try:
            return json.loads(self.body)
        except ValueError:
            return None


class AuthenticationError(HTTPError):
    """401 response: the backend rejected (or never received) credentials."""

    def __init__(self, body: bytes, credentials_sent: bool, details: dict[str, object] | None = None) -> None:
        if credentials_sent:
            message = (
                "Invalid credentials. Ensure the APISYNC_API_KEY environment variable "
                "(or the key stored with 'apisync login') holds a valid API key."
            )
        else:
            message = (
                "Missing credentials. Set the APISYNC_API_KEY environment variable "
                "to a valid API key and try again."
            )
        super().__init__(401, body, message, details, code=ErrorCode.NOT_AUTHENTICATED)
        self.credentials_sent = credentials_sent


class ResponseFormatError(AgentError):
    """A 2xx response body does not have the expected shape.

    Attributes:
        path: Request path whose response was rejected
    """

    def __init__(self, path: str, message: str, details: dict[str, object] | None = None) -> None:
        merged: dict[str, object] = {"path": path}
        merged.update(details or {})
        super().__init__(ErrorCode.BAD_RESPONSE, f"Unexpected response from {path}: {message}", merged)
        self.path = path


class ResolutionNotFoundError(AgentError):
    """A name has no matching backend identifier."""

    def __init__(self, kind: str, name: str, details: dict[str, object] | None = None) -> None:
        merged: dict[str, object] = {"kind": kind, "name": name}
        merged.update(details or {})
        super().__init__(ErrorCode.NOT_FOUND, f"cannot determine {kind} ID for {name!r}", merged)
        self.kind = kind
        self.name = name


class LookupFailedError(AgentError):
    """Name resolution could not reach the backend."""

    def __init__(self, message: str, details: dict[str, object] | None = None) -> None:
        super().__init__(ErrorCode.LOOKUP_FAILED, message, details)


class PreconditionError(AgentError):
    """The requested operation conflicts with existing backend state."""

    def __init__(self, message: str, details: dict[str, object] | None = None) -> None:
        super().__init__(ErrorCode.PRECONDITION, message, details)


class UploadError(AgentError):
    """One or more report batches could not be submitted."""

    def __init__(self, message: str, details: dict[str, object] | None = None) -> None:
        super().__init__(ErrorCode.UPLOAD_FAILED, message, details)


# =============================================================================
# Tags
# =============================================================================

# Keys owned by the backend. User-supplied values may be overwritten.
RESERVED_TAG_PREFIX = "x-apisync-"
RESERVED_TAG_KEYS = frozenset({"source"})


def is_reserved_tag_key(key: str) -> bool:
    """Check whether a tag key is backend-owned."""
    return key.startswith(RESERVED_TAG_PREFIX) or key in RESERVED_TAG_KEYS


def tags_match(actual: dict[str, str], expected: dict[str, str]) -> bool:
    """Check that every expected tag is present with exactly the expected value.

    A missing key never matches, not even an empty expected value.
    """
    for key, value in expected.items():
        if key not in actual or actual[key] != value:
            return False
    return True


def parse_tags(pairs: list[str]) -> dict[str, str]:
    """Parse ``key=value`` strings into a tag set.

    Raises:
        ConfigurationError: If a pair has no ``=`` or an empty key
    """
    result: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        key = key.strip()
        if not sep or not key:
            raise ConfigurationError(f"tag {pair!r} is not of the form key=value", {"tag": pair})
        result[key] = value.strip()
    return result


# =============================================================================
# Backend resources
# =============================================================================


class _BackendModel(BaseModel):
    """Base for models decoded from backend responses."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class Service(_BackendModel):
    """A service (project) known to the backend."""

    id: ServiceID
    name: str


class TraceSession(_BackendModel):
    """A trace (learn session) on the backend.

    Attributes:
        id: Trace ID
        name: Immutable trace name
        service_id: Owning service
        tags: Tags attached to the trace
        creation_time: When the backend created the trace
        active: Whether the trace still accepts events
    """

    id: TraceID
    name: str = ""
    service_id: ServiceID | None = None
    tags: dict[str, str] = Field(default_factory=dict)
    creation_time: datetime | None = None
    active: bool = True


class APISpecReference(_BackendModel):
    """Reference to an existing spec, used when a trace extends a spec."""

    api_spec_id: SpecID | None = None
    version: str | None = None


class SpecInfo(_BackendModel):
    """Listing entry for a spec."""

    id: SpecID
    name: str = ""
    tags: dict[str, str] = Field(default_factory=dict)
    creation_time: datetime | None = None
    state: str | None = None


class Spec(_BackendModel):
    """A spec as returned by ``get_spec``."""

    id: SpecID | None = None
    name: str = ""
    content: str = ""
    state: str | None = None
    tags: dict[str, str] = Field(default_factory=dict)
    trace_ids: list[TraceID] = Field(default_factory=list)


class SpecVersion(_BackendModel):
    """A named version label pointing at a spec."""

    name: str
    api_spec_id: SpecID
    service_id: ServiceID | None = None
    creation_time: datetime | None = None


class TimeRange(BaseModel):
    """Half-open time interval used to restrict spec creation."""

    start: datetime
    end: datetime


class CreateSpecOptions(BaseModel):
    """Options for creating a spec from a set of traces."""

    tags: dict[str, str] = Field(default_factory=dict)
    versions: list[str] = Field(default_factory=list)
    path_patterns: list[str] = Field(default_factory=list)
    path_exclusions: list[str] = Field(default_factory=list)
    time_range: TimeRange | None = None


class LoggingOptions(_BackendModel):
    """How the daemon should collect events for an activated trace."""

    service_id: ServiceID
    trace_id: TraceID
    trace_name: str = ""
    filter_third_party_trackers: bool = True


class ActiveTraceDiff(_BackendModel):
    """Difference between the daemon's and the backend's active trace sets."""

    activated_traces: list[LoggingOptions] = Field(default_factory=list)
    deactivated_traces: list[TraceID] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not self.activated_traces and not self.deactivated_traces


# =============================================================================
# Collector events
# =============================================================================


class EventKind(str, Enum):
    """What a collector event represents."""

    HTTP_REQUEST = "http_request"
    HTTP_RESPONSE = "http_response"
    TCP_CONNECTION = "tcp_connection"
    TLS_HANDSHAKE = "tls_handshake"
    UNPARSED = "unparsed"


class Direction(str, Enum):
    """Whether traffic was served by (inbound) or sent from (outbound) the host."""

    INBOUND = "inbound"
    OUTBOUND = "outbound"


def _now() -> datetime:
    return datetime.now(UTC)


class CollectorEvent(BaseModel):
    """One observed request, response, or connection-level fact.

    Events are frozen. Stages that need to attach information use
    ``annotate``, which returns a new event.
    """

    model_config = ConfigDict(frozen=True)

    kind: EventKind
    direction: Direction = Direction.INBOUND
    observation_time: datetime = Field(default_factory=_now)
    final_packet_time: datetime | None = None

    interface: str = ""
    src_ip: str = ""
    src_port: int = 0
    dst_ip: str = ""
    dst_port: int = 0

    # Request/response pairing
    stream_id: uuid.UUID | None = None
    seq: int = 0

    # HTTP
    method: str | None = None
    scheme: str = "http"
    host: str | None = None
    path: str | None = None
    query: str = ""
    status_code: int | None = None
    headers: dict[str, str] = Field(default_factory=dict)
    body: str | None = None

    # TCP / TLS
    connection_id: ConnectionID | None = None
    initiator_known: bool = False
    end_state: str | None = None
    tls_version: str | None = None
    sni_hostname: str | None = None
    selected_protocol: str | None = None

    annotations: dict[str, str] = Field(default_factory=dict)

    @property
    def is_http(self) -> bool:
        return self.kind in (EventKind.HTTP_REQUEST, EventKind.HTTP_RESPONSE)

    @property
    def witness_id(self) -> WitnessID | None:
        """Pairing key for HTTP events, None for everything else."""
        if not self.is_http or self.stream_id is None:
            return None
        return witness_id_for(self.stream_id, self.seq)

    def header(self, name: str) -> str | None:
        """Look up a header case-insensitively."""
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None

    def annotate(self, **values: str) -> CollectorEvent:
        """Return a copy of this event with additional annotations."""
        merged = dict(self.annotations)
        merged.update(values)
        return self.model_copy(update={"annotations": merged})


# =============================================================================
# Upload reports
# =============================================================================


class WitnessReport(BaseModel):
    """A paired request/response ready for upload.

    A witness may be missing one half if its partner never arrived before
    the pairing window closed.
    """

    id: WitnessID
    direction: Direction = Direction.INBOUND
    origin_addr: str = ""
    origin_port: int = 0
    destination_addr: str = ""
    destination_port: int = 0
    client_witness_time: datetime

    method: str | None = None
    host: str | None = None
    path: str | None = None
    query: str = ""
    request_headers: dict[str, str] = Field(default_factory=dict)
    request_body: str | None = None
    status_code: int | None = None
    response_headers: dict[str, str] = Field(default_factory=dict)
    response_body: str | None = None
    processing_latency_ms: float | None = None
    annotations: dict[str, str] = Field(default_factory=dict)

    hash: str = ""

    def with_hash(self) -> WitnessReport:
        """Return a copy carrying a content hash (excludes timing and addresses)."""
        content = self.model_dump(
            mode="json",
            include={
                "method",
                "host",
                "path",
                "query",
                "request_headers",
                "request_body",
                "status_code",
                "response_headers",
                "response_body",
            },
        )
        digest = hashlib.sha256(json.dumps(content, sort_keys=True).encode("utf-8")).hexdigest()
        return self.model_copy(update={"hash": digest})


class TCPConnectionReport(BaseModel):
    """Summary of one TCP connection."""

    id: ConnectionID
    src_addr: str = ""
    src_port: int = 0
    dest_addr: str = ""
    dest_port: int = 0
    first_observed: datetime
    last_observed: datetime | None = None
    initiator_known: bool = False
    end_state: str | None = None


class TLSHandshakeReport(BaseModel):
    """Metadata from a TLS handshake."""

    id: ConnectionID
    version: str | None = None
    sni_hostname: str | None = None
    selected_protocol: str | None = None


class UploadReportsRequest(BaseModel):
    """Body of a report upload."""

    client_id: str = ""
    witnesses: list[WitnessReport] = Field(default_factory=list)
    tcp_connections: list[TCPConnectionReport] = Field(default_factory=list)
    tls_handshakes: list[TLSHandshakeReport] = Field(default_factory=list)

    def __len__(self) -> int:
        return len(self.witnesses) + len(self.tcp_connections) + len(self.tls_handshakes)


# =============================================================================
# Destinations and names
# =============================================================================


class ObjectType(str, Enum):
    """Kind of object a destination names."""

    TRACE = "trace"
    SPEC = "spec"


class Destination(BaseModel):
    """An already-validated (service, object type, object name) triple.

    An empty ``object_name`` means a fresh name should be generated.
    """

    service_name: str
    object_type: ObjectType = ObjectType.TRACE
    object_name: str = ""

    def __str__(self) -> str:
        return f"apisync://{self.service_name}:{self.object_type.value}:{self.object_name}"


_ADJECTIVES = (
    "amber", "brisk", "calm", "dapper", "eager", "fuzzy", "gentle", "hollow",
    "icy", "jolly", "keen", "lively", "mellow", "nimble", "odd", "plucky",
    "quiet", "rapid", "sturdy", "tidy", "upbeat", "vivid", "witty", "zesty",
)  # fmt: skip

_NOUNS = (
    "anchor", "badger", "canyon", "delta", "ember", "falcon", "glacier", "harbor",
    "island", "jungle", "kettle", "lantern", "meadow", "nebula", "orchard", "pebble",
    "quartz", "river", "summit", "tunnel", "valley", "willow", "yonder", "zephyr",
)  # fmt: skip


def random_trace_name() -> str:
    """Generate a trace name like ``nimble-harbor-1a2b3c4d``.

    Adjective and noun are at most 8 characters each, so names stay well
    under the backend's 32-character limit.
    """
    return "-".join(
        [
            secrets.choice(_ADJECTIVES),
            secrets.choice(_NOUNS),
            uuid.uuid4().hex[:8],
        ]
    )
