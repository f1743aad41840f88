"""
Security module: X25519 key agreement + AES-256-GCM stream encryption.

Every swarm connection runs one handshake. The X25519 keys are ephemeral
(per-connection) and never persisted; the long-term Ed25519 identity key
only signs the ephemeral public key so the remote side can bind the
stream to a public identity.
"""

import os
import logging

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey
from cryptography.hazmat.primitives.asymmetric.x25519 import (
    X25519PrivateKey,
    X25519PublicKey,
)
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.hashes import SHA256
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    PublicFormat,
)

logger = logging.getLogger(__name__)

NONCE_SIZE = 12
KEY_SIZE = 32
PUBLIC_KEY_SIZE = 32
SIGNATURE_SIZE = 64

STREAM_KEY_INFO = b"roomshare-v1-stream-keys"


def generate_keypair() -> tuple[X25519PrivateKey, bytes]:
    """Fresh per-connection X25519 key; the public half is 32 raw bytes."""
    private_key = X25519PrivateKey.generate()
    public_bytes = private_key.public_key().public_bytes(
        encoding=Encoding.Raw,
        format=PublicFormat.Raw,
    )
    return private_key, public_bytes


def derive_stream_keys(
    private_key: X25519PrivateKey,
    peer_public_bytes: bytes,
    initiator: bool,
) -> tuple[bytes, bytes]:
    """
    Derive one key per direction from the ECDH shared secret.

    Both sides expand the secret with HKDF-SHA256 into 64 bytes; the
    initiator sends with the first half, the responder with the second.

    Returns:
        (send_key, receive_key) for the calling side.
    """
    peer_public_key = X25519PublicKey.from_public_bytes(peer_public_bytes)
    shared_secret = private_key.exchange(peer_public_key)

    material = HKDF(
        algorithm=SHA256(),
        length=KEY_SIZE * 2,
        salt=None,
        info=STREAM_KEY_INFO,
    ).derive(shared_secret)

    first, second = material[:KEY_SIZE], material[KEY_SIZE:]
    return (first, second) if initiator else (second, first)


def verify_signature(public_key_bytes: bytes, signature: bytes, data: bytes) -> None:
    """
    Verify an Ed25519 signature.

    Raises:
        cryptography.exceptions.InvalidSignature: if it does not match.
        ValueError: if the public key is malformed.
    """
    Ed25519PublicKey.from_public_bytes(public_key_bytes).verify(signature, data)


class SecretStream:
    """AES-256-GCM framing for one connection, one key per direction."""

    def __init__(self, send_key: bytes, receive_key: bytes) -> None:
        self._send = AESGCM(send_key)
        self._receive = AESGCM(receive_key)

    def encrypt(self, plaintext: bytes) -> bytes:
        """Returns: nonce (12 bytes) || ciphertext || tag (16 bytes)"""
        nonce = os.urandom(NONCE_SIZE)
        return nonce + self._send.encrypt(nonce, plaintext, None)

    def decrypt(self, data: bytes) -> bytes:
        """
        Raises:
            cryptography.exceptions.InvalidTag: tampered or foreign frame.
            ValueError: frame shorter than a nonce.
        """
        if len(data) < NONCE_SIZE:
            raise ValueError("Encrypted frame too short")
        return self._receive.decrypt(data[:NONCE_SIZE], data[NONCE_SIZE:], None)
