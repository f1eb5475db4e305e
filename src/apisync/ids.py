"""Backend identifiers.

Every backend object is addressed by a 128-bit identifier rendered as
``<prefix>_<32 hex digits>`` (for example ``svc_0f3c...``). The all-zero
identifier is never a valid resolved ID and is treated as "not found".
"""

from __future__ import annotations

import threading
import uuid
from typing import Any, ClassVar, Self

from pydantic import GetCoreSchemaHandler
from pydantic_core import CoreSchema, core_schema


class ResourceID:
    """Base class for typed backend identifiers.

    Subclasses only set ``PREFIX``. Instances are immutable and hashable, and
    compare equal only to identifiers of the same type and value.
    """

    PREFIX: ClassVar[str] = ""

    __slots__ = ("_uuid",)

    def __init__(self, value: uuid.UUID) -> None:
        self._uuid = value

    @classmethod
    def generate(cls) -> Self:
        """Create a new random identifier."""
        return cls(uuid.uuid4())

    @classmethod
    def zero(cls) -> Self:
        """Return the zero-value identifier."""
        return cls(uuid.UUID(int=0))

    @classmethod
    def parse(cls, text: str | Self) -> Self:
        """Parse the textual form of an identifier.

        Args:
            text: Encoded identifier, e.g. ``trc_3b0e...``

        Returns:
            Parsed identifier

        Raises:
            ValueError: If the prefix is wrong or the payload is not 128 bits of hex
        """
        if isinstance(text, cls):
            return text
        if not isinstance(text, str):
            raise ValueError(f"expected a string identifier, got {type(text).__name__}")
        prefix, sep, payload = text.partition("_")
        if not sep or prefix != cls.PREFIX:
            raise ValueError(f"{text!r} is not a {cls.__name__} (expected prefix {cls.PREFIX!r})")
        try:
            return cls(uuid.UUID(hex=payload))
        except ValueError as e:
            raise ValueError(f"{text!r} has a malformed payload") from e

    @property
    def uuid(self) -> uuid.UUID:
        return self._uuid

    def is_zero(self) -> bool:
        return self._uuid.int == 0

    def __str__(self) -> str:
        return f"{self.PREFIX}_{self._uuid.hex}"

    def __repr__(self) -> str:
        return f"{type(self).__name__}({str(self)!r})"

    def __eq__(self, other: object) -> bool:
        if type(other) is not type(self):
            return NotImplemented
        assert isinstance(other, ResourceID)
        return self._uuid == other._uuid

    def __hash__(self) -> int:
        return hash((self.PREFIX, self._uuid))

    @classmethod
    def __get_pydantic_core_schema__(cls, source_type: Any, handler: GetCoreSchemaHandler) -> CoreSchema:
        from_str = core_schema.no_info_after_validator_function(cls.parse, core_schema.str_schema())
        return core_schema.union_schema(
            [core_schema.is_instance_schema(cls), from_str],
            serialization=core_schema.plain_serializer_function_ser_schema(str),
        )


class ServiceID(ResourceID):
    PREFIX = "svc"


class TraceID(ResourceID):
    PREFIX = "trc"


class SpecID(ResourceID):
    PREFIX = "spc"


class ClientID(ResourceID):
    PREFIX = "cli"


class WitnessID(ResourceID):
    PREFIX = "wit"


class ConnectionID(ResourceID):
    PREFIX = "con"


def witness_id_for(stream_id: uuid.UUID, seq: int) -> WitnessID:
    """Derive the pairing key shared by a request and its response.

    Both halves of an exchange carry the same stream ID and sequence number,
    so they map to the same witness ID.
    """
    return WitnessID(uuid.uuid5(stream_id, str(seq)))


_client_id: ClientID | None = None
_client_id_lock = threading.Lock()


def get_client_id() -> ClientID:
    """Return the process-wide client identity, generating it on first use."""
    global _client_id
    with _client_id_lock:
        if _client_id is None:
            _client_id = ClientID.generate()
        return _client_id
