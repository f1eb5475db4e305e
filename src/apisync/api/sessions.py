"""Trace (session) and spec operations scoped to one service."""

from __future__ import annotations

import logging
from typing import Any

from apisync.api.client import APIClient
from apisync.api.responses import parse_id, parse_model, parse_models, require_object
from apisync.ids import ServiceID, SpecID, TraceID
from apisync.models import (
    APISpecReference,
    CreateSpecOptions,
    HTTPError,
    ResolutionNotFoundError,
    Spec,
    SpecInfo,
    SpecVersion,
    TraceSession,
    UploadReportsRequest,
)

logger = logging.getLogger(__name__)


def _tag_params(tags: dict[str, str] | None) -> list[tuple[str, str]]:
    """Encode tags as ``tag[<key>]=<value>`` query parameters."""
    return [(f"tag[{key}]", value) for key, value in (tags or {}).items()]


class SessionClient:
    """Client for traces and specs belonging to one service.

    Attributes:
        client: Shared API client
        service_id: Service all paths are scoped to
    """

    def __init__(self, client: APIClient, service_id: ServiceID) -> None:
        self.client = client
        self.service_id = service_id

    @property
    def _base(self) -> str:
        return f"/v1/services/{self.service_id}"

    # -------------------------------------------------------------------------
    # Traces
    # -------------------------------------------------------------------------

    async def list_sessions(self, tags: dict[str, str] | None = None) -> list[TraceSession]:
        """List traces of the service.

        Args:
            tags: Only return traces carrying all of these tags

        Returns:
            List of traces
        """
        path = f"{self._base}/traces"
        data = await self.client.get(path, params=_tag_params(tags) or None)
        return parse_models(TraceSession, data, path, key="sessions")

    async def get_session(self, trace_id: TraceID) -> TraceSession:
        path = f"{self._base}/traces/{trace_id}"
        data = await self.client.get(path)
        return parse_model(TraceSession, data, path)

    async def create_session(
        self,
        name: str,
        tags: dict[str, str] | None = None,
        base_spec_ref: APISpecReference | None = None,
    ) -> TraceID:
        """Create a trace.

        Not retried. A 409 (name already taken) surfaces as HTTPError so the
        caller can decide whether an existing trace is acceptable.

        Args:
            name: Trace name
            tags: Tags to attach
            base_spec_ref: Spec the trace extends

        Returns:
            ID of the created trace
        """
        body: dict[str, Any] = {"name": name, "tags": tags or {}}
        if base_spec_ref is not None:
            body["base_api_spec_ref"] = base_spec_ref.model_dump(mode="json", exclude_none=True)
        path = f"{self._base}/traces"
        data = await self.client.post(path, json=body)
        return parse_model(TraceSession, data, path).id

    async def report_witnesses(self, trace_id: TraceID, reports: UploadReportsRequest) -> None:
        """Upload a batch of reports to a trace.

        Retried on transient failures; the backend deduplicates by report ID.
        """
        body = reports.model_copy(update={"client_id": str(self.client.client_id)})
        await self.client.post(
            f"{self._base}/traces/{trace_id}/async_witnesses",
            json=body.model_dump(mode="json"),
            idempotent=True,
        )

    # -------------------------------------------------------------------------
    # Specs
    # -------------------------------------------------------------------------

    async def create_spec(
        self,
        name: str,
        trace_ids: list[TraceID],
        options: CreateSpecOptions | None = None,
    ) -> SpecID:
        """Ask the backend to build a spec from traces.

        Args:
            name: Spec name
            trace_ids: Traces to build from
            options: Tags, version labels, path filters and time range

        Returns:
            ID of the new spec
        """
        options = options or CreateSpecOptions()
        body: dict[str, Any] = {
            "name": name,
            "trace_ids": [str(trace_id) for trace_id in trace_ids],
            "path_patterns": options.path_patterns,
            "path_exclusions": options.path_exclusions,
            "tags": options.tags,
            "versions": options.versions,
        }
        if options.time_range is not None:
            body["time_range"] = options.time_range.model_dump(mode="json")
        path = f"{self._base}/specs"
        data = await self.client.post(path, json=body)
        return parse_id(SpecID, data, path)

    async def get_spec(self, spec_id: SpecID, enable_related_types: bool = False) -> Spec:
        params = None if enable_related_types else {"strip_related_annotations": "true"}
        path = f"{self._base}/specs/{spec_id}"
        data = await self.client.get(path, params=params)
        return parse_model(Spec, data, path)

    async def list_specs(self) -> list[SpecInfo]:
        """List all specs of the service (no pagination)."""
        path = f"{self._base}/specs"
        data = await self.client.get(path, params={"limit": "0", "offset": "0"})
        return parse_models(SpecInfo, data, path, key="specs")

    async def get_spec_version(self, label: str) -> SpecVersion:
        path = f"{self._base}/spec-versions/{label}"
        data = await self.client.get(path)
        return parse_model(SpecVersion, data, path)

    async def set_spec_version(self, spec_id: SpecID, label: str) -> None:
        """Point a version label at a spec."""
        await self.client.post(f"{self._base}/spec-versions/{label}", json={"api_spec_id": str(spec_id)})

    async def upload_spec(self, name: str, content: str) -> SpecID:
        """Upload a spec document under a name.

        Returns:
            ID of the uploaded spec
        """
        path = f"{self._base}/upload-spec"
        data = await self.client.post(path, json={"name": name, "content": content})
        return parse_id(SpecID, data, path)

    async def get_spec_diff(self, base_id: SpecID, new_id: SpecID) -> dict[str, Any]:
        """Fetch the structural diff between two specs as a path trie document."""
        path = f"{self._base}/specs/{base_id}/diff/{new_id}/trie"
        data = await self.client.get(path)
        return dict(require_object(data, path))

    # -------------------------------------------------------------------------
    # Name lookups
    # -------------------------------------------------------------------------

    async def get_spec_id_by_name(self, name: str) -> SpecID:
        """Resolve a spec name.

        Raises:
            ResolutionNotFoundError: If no spec has this name
        """
        return await self._id_by_name("specs", name, SpecID)

    async def get_trace_id_by_name(self, name: str) -> TraceID:
        """Resolve a trace name.

        Raises:
            ResolutionNotFoundError: If no trace has this name
        """
        return await self._id_by_name("traces", name, TraceID)

    async def _id_by_name[T: (SpecID, TraceID)](self, kind: str, name: str, id_type: type[T]) -> T:
        path = f"{self._base}/ids/{kind}/{name}"
        try:
            data = await self.client.get(path)
        except HTTPError as e:
            if e.status_code == 404:
                raise ResolutionNotFoundError(kind.rstrip("s"), name, {"service_id": str(self.service_id)}) from e
            raise
        resolved = parse_id(id_type, data, path, required=False)
        if resolved.is_zero():
            raise ResolutionNotFoundError(kind.rstrip("s"), name, {"service_id": str(self.service_id)})
        return resolved
