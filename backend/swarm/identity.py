"""
Node identity: the Ed25519 key pair a swarm node is known by.

The raw 32-byte public key is what peers see; its first hex characters
are the display name shown next to chat lines and transfers.
"""

import logging
import os
from pathlib import Path

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from config import DISPLAY_NAME_LENGTH

logger = logging.getLogger(__name__)


def _read_key(path: Path) -> Ed25519PrivateKey | None:
    try:
        key = serialization.load_pem_private_key(path.read_bytes(), password=None)
    except (OSError, ValueError, TypeError) as e:
        logger.warning(f"Unusable identity key at {path}: {e}")
        return None
    if not isinstance(key, Ed25519PrivateKey):
        logger.warning(f"Identity key at {path} is {type(key).__name__}, not Ed25519")
        return None
    return key


def _write_key(path: Path, key: Ed25519PrivateKey) -> None:
    pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    path.write_bytes(pem)
    os.chmod(path, 0o600)


class Identity:
    """Long-term signing key; ephemeral when no key path is given."""

    def __init__(self, key_path: Path | None = None):
        self._key = self._load(key_path)
        self._public = self._key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        logger.info(f"Swarm identity {self.display_name}")

    @staticmethod
    def _load(key_path: Path | None) -> Ed25519PrivateKey:
        if key_path is not None and key_path.exists():
            key = _read_key(key_path)
            if key is not None:
                return key

        key = Ed25519PrivateKey.generate()
        if key_path is not None:
            _write_key(key_path, key)
            logger.info(f"Generated new identity key at {key_path}")
        return key

    @property
    def public_key(self) -> bytes:
        return self._public

    @property
    def public_key_hex(self) -> str:
        return self._public.hex()

    @property
    def display_name(self) -> str:
        return self.public_key_hex[:DISPLAY_NAME_LENGTH]

    def sign(self, data: bytes) -> bytes:
        return self._key.sign(data)
