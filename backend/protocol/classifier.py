"""
Inbound message dispatch.

Decodes each frame and routes it: the handshake sentinel to the
connected callback, file messages to the transfer receiver, and
everything else to the chat callback.
"""

import inspect
import logging

from config import HELLO_REPLY
from errors import MalformedMessageError, ProtocolError, TransportWriteError
from protocol.messages import (
    Connected,
    FileChunk,
    FileMeta,
    Message,
    PlainText,
    decode_message,
)

logger = logging.getLogger(__name__)


def is_greeting(text: str) -> bool:
    return text.strip().lower() == "hello"


class MessageClassifier:
    """Routes decoded messages; never raises into the session dispatcher."""

    def __init__(
        self,
        receiver,
        on_connected=None,
        on_text=None,
        on_error=None,
    ) -> None:
        self._receiver = receiver
        self._on_connected = on_connected  # fn(connection, peer_name)
        self._on_text = on_text  # fn(peer_name, text)
        self._on_error = on_error  # fn(peer_name, error)

    async def handle(self, peer_name: str, payload, connection) -> Message | None:
        """Message handler passed to `SessionManager.create_room/join_room`."""
        try:
            message = decode_message(payload)
        except MalformedMessageError as e:
            await self._report(peer_name, e)
            return None

        if isinstance(message, Connected):
            logger.info(f"Peer {peer_name} completed handshake")
            await _call(self._on_connected, connection, peer_name)
        elif isinstance(message, (FileMeta, FileChunk)):
            try:
                await self._receiver.handle_incoming_chunk(message, peer_name)
            except ProtocolError as e:
                await self._report(peer_name, e)
        elif isinstance(message, PlainText):
            if is_greeting(message.text):
                try:
                    connection.write(HELLO_REPLY.encode("utf-8"))
                except TransportWriteError as e:
                    logger.warning(f"Could not reply to {peer_name}: {e}")
            await _call(self._on_text, peer_name, message.text)
        return message

    async def _report(self, peer_name: str, error: ProtocolError) -> None:
        logger.warning(f"Protocol error from {peer_name}: {error}")
        await _call(self._on_error, peer_name, error)


async def _call(callback, *args) -> None:
    if callback is None:
        return
    try:
        result = callback(*args)
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        logger.error(f"Message callback error: {e}")
