"""
Encrypted, framed byte stream between two swarm nodes.

Wire format: every frame is a 1-byte type plus a 4-byte big-endian length
followed by the payload. The first frame in each direction is a handshake;
all later data frames are AES-GCM encrypted.
"""

import asyncio
import logging
import struct

from cryptography.exceptions import InvalidTag

from config import MAX_FRAME_SIZE
from errors import TransportWriteError
from security.crypto import (
    PUBLIC_KEY_SIZE,
    SIGNATURE_SIZE,
    SecretStream,
    derive_stream_keys,
    generate_keypair,
    verify_signature,
)

logger = logging.getLogger(__name__)

# --- Wire protocol helpers ---

HEADER_FORMAT = "!BI"  # 1-byte type + 4-byte length (big-endian)
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)
HANDSHAKE_SIZE = PUBLIC_KEY_SIZE * 2 + SIGNATURE_SIZE


class FrameType:
    HANDSHAKE = 0x01
    DATA = 0x02
    CLOSE = 0x03


def pack_frame(frame_type: int, payload: bytes = b"") -> bytes:
    return struct.pack(HEADER_FORMAT, frame_type, len(payload)) + payload


async def read_frame(reader: asyncio.StreamReader) -> tuple[int, bytes]:
    """Receive a type-length-payload frame. Returns (type, payload)."""
    header = await reader.readexactly(HEADER_SIZE)
    frame_type, length = struct.unpack(HEADER_FORMAT, header)
    if length > MAX_FRAME_SIZE:
        raise ConnectionError(f"Frame of {length} bytes exceeds limit")
    payload = b""
    if length > 0:
        payload = await reader.readexactly(length)
    return frame_type, payload


async def perform_handshake(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    identity,
    initiator: bool,
) -> tuple[SecretStream, bytes]:
    """
    Exchange ephemeral keys signed by each side's identity.

    Returns:
        (stream, remote_public_key)

    Raises:
        ConnectionError: unexpected frame or size.
        InvalidSignature: the remote signature does not match its key.
    """
    private_key, ephemeral = generate_keypair()
    hello = ephemeral + identity.public_key + identity.sign(ephemeral)
    writer.write(pack_frame(FrameType.HANDSHAKE, hello))
    await writer.drain()

    frame_type, payload = await read_frame(reader)
    if frame_type != FrameType.HANDSHAKE or len(payload) != HANDSHAKE_SIZE:
        raise ConnectionError(f"Expected HANDSHAKE, got {frame_type:#x}")

    remote_ephemeral = payload[:PUBLIC_KEY_SIZE]
    remote_key = payload[PUBLIC_KEY_SIZE:PUBLIC_KEY_SIZE * 2]
    signature = payload[PUBLIC_KEY_SIZE * 2:]
    try:
        verify_signature(remote_key, signature, remote_ephemeral)
    except ValueError as e:
        raise ConnectionError(f"Malformed remote key: {e}") from e

    send_key, receive_key = derive_stream_keys(private_key, remote_ephemeral, initiator)
    return SecretStream(send_key, receive_key), remote_key


class PeerConnection:
    """
    One live connection to a remote node.

    Events (register with `on`): "data" fn(bytes), "error" fn(exc),
    "close" fn(). Callbacks run on the event loop and must not block.
    """

    EVENTS = ("data", "error", "close")

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        stream: SecretStream,
        remote_public_key: bytes,
    ) -> None:
        self.remote_public_key = remote_public_key
        self._reader = reader
        self._writer = writer
        self._stream = stream
        self._listeners: dict[str, list] = {event: [] for event in self.EVENTS}
        self._read_task: asyncio.Task | None = None
        self._destroyed = False

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    def on(self, event: str, callback) -> None:
        if event not in self._listeners:
            raise ValueError(f"Unknown connection event: {event}")
        self._listeners[event].append(callback)

    def start(self) -> None:
        """Begin reading frames; register listeners before calling."""
        if self._read_task is None:
            self._read_task = asyncio.create_task(self._read_loop())

    def write(self, data: bytes) -> None:
        """
        Queue one data frame.

        Raises:
            TransportWriteError: the connection is destroyed or closing.
        """
        if self._destroyed or self._writer.is_closing():
            raise TransportWriteError(
                f"Connection to {self.remote_public_key.hex()[:6]} is closed"
            )
        try:
            self._writer.write(pack_frame(FrameType.DATA, self._stream.encrypt(bytes(data))))
        except (OSError, RuntimeError) as e:
            raise TransportWriteError(str(e)) from e

    def destroy(self, error: Exception | None = None) -> None:
        """Close the connection; fires "error" (if given) then "close" once."""
        if self._destroyed:
            return
        self._destroyed = True

        if error is not None:
            self._fire("error", error)

        try:
            if not self._writer.is_closing():
                self._writer.write(pack_frame(FrameType.CLOSE))
                self._writer.close()
        except (OSError, RuntimeError) as e:
            logger.debug(f"Error closing connection: {e}")

        if self._read_task is not None and self._read_task is not asyncio.current_task():
            self._read_task.cancel()

        self._fire("close")

    def _fire(self, event: str, *args) -> None:
        for callback in list(self._listeners[event]):
            try:
                callback(*args)
            except Exception as e:
                logger.error(f"Connection {event} listener error: {e}")

    async def _read_loop(self) -> None:
        try:
            while True:
                frame_type, payload = await read_frame(self._reader)
                if frame_type == FrameType.CLOSE:
                    logger.debug("Remote closed connection")
                    break
                if frame_type != FrameType.DATA:
                    logger.warning(f"Unexpected frame type {frame_type:#x}, ignoring")
                    continue
                self._fire("data", self._stream.decrypt(payload))
        except asyncio.IncompleteReadError:
            logger.debug("Connection closed by remote")
        except (InvalidTag, ValueError, OSError) as e:
            self.destroy(e)
            return
        self.destroy()
