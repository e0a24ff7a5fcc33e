"""Inter-process message schema exchanged over the channel transport.

Messages travel as plain dicts (the channel carries property-list style
dictionaries with raw ``bytes`` values, not JSON text).  Every request has a
``type``; every reply has a ``status``::

    request:  {"type": "requestData" | "startTransfer" | "chunk" | "getData", ...}
    reply:    {"status": "ready" | "received" | "error" | "unknown", ...}
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import Field, TypeAdapter, ValidationError

from bridgecast.errors import PeerError
from bridgecast.models.base import BridgecastBase


class MessageType(str, Enum):
    REQUEST_DATA = "requestData"
    START_TRANSFER = "startTransfer"
    CHUNK = "chunk"
    GET_DATA = "getData"


class ReplyStatus(str, Enum):
    READY = "ready"
    RECEIVED = "received"
    ERROR = "error"
    UNKNOWN = "unknown"


class _WireModel(BridgecastBase):
    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="python", by_alias=True, exclude_none=True)


class DataRequest(_WireModel):
    """Companion → host: "give me the latest snapshot"."""

    type: Literal["requestData", "getData"] = "requestData"
    request: str = "weatherData"
    chunk_size: int | None = Field(default=None, alias="chunkSize", gt=0)


class StartTransfer(_WireModel):
    """Host → companion: announces a chunked transfer before any chunk."""

    type: Literal["startTransfer"] = "startTransfer"
    transfer_id: str = Field(alias="transferId")
    expected_chunk_count: int = Field(alias="expectedChunkCount", gt=0)


class ChunkMessage(_WireModel):
    """Host → companion: one fragment of a serialized snapshot."""

    type: Literal["chunk"] = "chunk"
    transfer_id: str = Field(alias="transferId")
    index: int
    total_count: int = Field(alias="totalCount")
    data: bytes


Message = Union[DataRequest, StartTransfer, ChunkMessage]

_message_adapter: TypeAdapter[Message] = TypeAdapter(
    Annotated[Message, Field(discriminator="type")]
)


class Reply(_WireModel):
    """Reply to any request.

    A ``ready`` reply either carries the whole snapshot in ``payload`` or
    announces ``chunk_count`` chunks under ``transfer_id``.
    """

    status: ReplyStatus
    chunk_count: int | None = Field(default=None, alias="chunkCount", ge=0)
    transfer_id: str | None = Field(default=None, alias="transferId")
    payload: bytes | None = None
    code: str | None = None
    message: str | None = None

    def to_wire(self) -> dict[str, Any]:
        wire = super().to_wire()
        wire["status"] = self.status.value
        return wire


def parse_message(raw: dict[str, Any]) -> Message:
    """Validate an inbound request dict into its message model.

    Raises:
        ValueError: If the dict is not a known, well-formed message.
    """
    try:
        return _message_adapter.validate_python(raw)
    except ValidationError as exc:
        raise ValueError(f"Unrecognized message: {exc.error_count()} error(s)") from exc


def parse_reply(raw: Any) -> Reply:
    """Validate a reply dict.

    Raises:
        PeerError: If the peer sent something that is not a valid reply.
    """
    if not isinstance(raw, dict):
        raise PeerError(f"Reply must be a mapping, got {type(raw).__name__}")
    try:
        return Reply.model_validate(raw)
    except ValidationError as exc:
        raise PeerError(f"Malformed reply from peer: {exc.error_count()} error(s)") from exc


def error_reply(message: str, code: str | None = None) -> dict[str, Any]:
    return Reply(status=ReplyStatus.ERROR, message=message, code=code).to_wire()
