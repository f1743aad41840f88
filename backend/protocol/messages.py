"""
Wire messages exchanged between peers.

Every frame is UTF-8 text and decodes to exactly one of four kinds:
the handshake sentinel, file metadata, a file chunk, or plain chat text.
"""

import json
from typing import Annotated, Literal, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_serializer,
    field_validator,
    model_validator,
)

from config import CHUNK_SIZE, CONNECTED_SENTINEL, MAX_FILE_SIZE
from errors import MalformedMessageError, UnknownMessageTypeError

FILE_META = "file-meta"
FILE_CHUNK = "file-chunk"
STRUCTURED_TYPES = (FILE_META, FILE_CHUNK)


def count_chunks(size: int, chunk_size: int = CHUNK_SIZE) -> int:
    return -(-size // chunk_size)


class Connected(BaseModel):
    """Handshake sentinel sent as soon as a connection is established."""


class PlainText(BaseModel):
    text: str


class FileMeta(BaseModel):
    """Announces a file before any of its chunks."""
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["file-meta"] = FILE_META
    file_id: str = Field(alias="fileId", min_length=1)
    name: str
    mime: str = ""
    size: int = Field(ge=0, le=MAX_FILE_SIZE)
    total_chunks: int = Field(alias="totalChunks", ge=0)

    @model_validator(mode="after")
    def _chunk_count_matches_size(self) -> "FileMeta":
        expected = count_chunks(self.size)
        if self.total_chunks != expected:
            raise ValueError(
                f"totalChunks is {self.total_chunks}, {self.size} bytes need {expected}"
            )
        return self


class FileChunk(BaseModel):
    """One slice of a file. `data` travels as an array of byte values."""
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["file-chunk"] = FILE_CHUNK
    file_id: str = Field(alias="fileId", min_length=1)
    index: int
    data: bytes

    @field_validator("data", mode="before")
    @classmethod
    def _from_byte_values(cls, value):
        if isinstance(value, (bytes, bytearray)):
            return bytes(value)
        if not isinstance(value, list):
            raise ValueError("data must be an array of byte values")
        if not all(type(b) is int for b in value):
            raise ValueError("data must contain integers only")
        try:
            return bytes(value)
        except ValueError as e:
            raise ValueError("byte values must be in range 0-255") from e

    @field_serializer("data")
    def _to_byte_values(self, data: bytes) -> list[int]:
        return list(data)


StructuredMessage = Annotated[
    Union[FileMeta, FileChunk], Field(discriminator="type")
]
Message = Union[Connected, FileMeta, FileChunk, PlainText]

_structured = TypeAdapter(StructuredMessage)


def decode_message(raw: bytes | str) -> Message:
    """
    Classify one inbound frame.

    The sentinel is matched first, then a structured decode is attempted;
    anything that is not a JSON object with a `type` field is chat text.

    Raises:
        UnknownMessageTypeError: JSON object with an unsupported `type`.
        MalformedMessageError: known `type` with missing/invalid fields.
    """
    if isinstance(raw, (bytes, bytearray)):
        text = bytes(raw).decode("utf-8", errors="replace")
    else:
        text = raw

    if text == CONNECTED_SENTINEL:
        return Connected()

    try:
        parsed = json.loads(text)
    except (ValueError, RecursionError):
        # Not JSON, or nested too deep to parse: either way it is chat
        return PlainText(text=text)

    if not isinstance(parsed, dict) or "type" not in parsed:
        return PlainText(text=text)

    kind = parsed["type"]
    if kind not in STRUCTURED_TYPES:
        raise UnknownMessageTypeError(f"Unsupported message type: {kind!r}")

    try:
        return _structured.validate_python(parsed)
    except ValidationError as e:
        file_id = parsed.get("fileId")
        raise MalformedMessageError(
            f"Malformed {kind} message: {e.error_count()} invalid field(s)",
            file_id if isinstance(file_id, str) else None,
        ) from e


def encode_message(message: Message) -> bytes:
    """Serialize a message into one UTF-8 frame."""
    if isinstance(message, Connected):
        return CONNECTED_SENTINEL.encode("utf-8")
    if isinstance(message, PlainText):
        return message.text.encode("utf-8")
    return message.model_dump_json(by_alias=True).encode("utf-8")
