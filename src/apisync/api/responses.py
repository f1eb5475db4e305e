"""Validation of backend response bodies.

The transport only guarantees decoded JSON. These helpers check its shape
and turn anything unexpected into ResponseFormatError naming the path.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ValidationError

from apisync.ids import ResourceID
from apisync.models import ResponseFormatError


def parse_model[M: BaseModel](model: type[M], data: Any, path: str) -> M:
    """Validate one object.

    Raises:
        ResponseFormatError: If the object does not match the model
    """
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise ResponseFormatError(
            path,
            f"invalid {model.__name__} ({e.error_count()} validation error(s))",
            {"errors": [error["msg"] for error in e.errors()]},
        ) from e


def parse_models[M: BaseModel](model: type[M], data: Any, path: str, key: str | None = None) -> list[M]:
    """Validate a list, either the body itself or the list under ``key``.

    A missing, null or empty body is treated as an empty list.

    Raises:
        ResponseFormatError: If the body or any item has the wrong shape
    """
    items = data
    if key is not None:
        items = require_object(data, path).get(key)
    if not items:
        return []
    if not isinstance(items, list):
        raise ResponseFormatError(path, f"expected a list, got {type(items).__name__}")
    return [parse_model(model, item, path) for item in items]


def require_object(data: Any, path: str) -> dict[str, Any]:
    if not isinstance(data, dict):
        raise ResponseFormatError(path, f"expected an object, got {type(data).__name__}")
    return data


def parse_id[I: ResourceID](id_type: type[I], data: Any, path: str, required: bool = True) -> I:
    """Read the ``id`` field of an object.

    Args:
        id_type: Identifier class to parse into
        data: Decoded response body
        path: Request path, for error context
        required: If False, a missing ``id`` yields the zero identifier

    Raises:
        ResponseFormatError: If the body is not an object or the ID is missing or malformed
    """
    value = require_object(data, path).get("id")
    if not value:
        if required:
            raise ResponseFormatError(path, "missing id")
        return id_type.zero()
    try:
        return id_type.parse(value)
    except ValueError as e:
        raise ResponseFormatError(path, f"invalid {id_type.__name__}: {e}") from e
