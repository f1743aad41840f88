"""Rendezvous topic: the 32-byte name two peers join to find each other."""

import re
import secrets

from pydantic import BaseModel, ConfigDict, field_validator

from config import DISPLAY_NAME_LENGTH, TOPIC_SIZE
from errors import InvalidTopicError

_HEX_RE = re.compile(rf"[0-9a-fA-F]{{{TOPIC_SIZE * 2}}}")


class Topic(BaseModel):
    """Immutable topic key. The textual form is lowercase hex."""

    model_config = ConfigDict(frozen=True)

    key: bytes

    @field_validator("key")
    @classmethod
    def _check_size(cls, value: bytes) -> bytes:
        if len(value) != TOPIC_SIZE:
            raise ValueError(f"topic must be {TOPIC_SIZE} bytes, got {len(value)}")
        return value

    @classmethod
    def random(cls) -> "Topic":
        return cls(key=secrets.token_bytes(TOPIC_SIZE))

    @classmethod
    def from_hex(cls, value: str) -> "Topic":
        """Parse a user-supplied topic, ignoring surrounding whitespace."""
        if not isinstance(value, str):
            raise InvalidTopicError("Topic must be a string")
        cleaned = value.strip()
        if not cleaned:
            raise InvalidTopicError("Topic is empty")
        if not _HEX_RE.fullmatch(cleaned):
            raise InvalidTopicError(
                f"Topic must be {TOPIC_SIZE * 2} hexadecimal characters"
            )
        return cls(key=bytes.fromhex(cleaned))

    @property
    def hex(self) -> str:
        return self.key.hex()

    def __str__(self) -> str:
        return self.hex


def peer_display_name(public_key: bytes) -> str:
    """Short name shown for a remote peer (first hex chars of its key)."""
    return public_key.hex()[:DISPLAY_NAME_LENGTH]
