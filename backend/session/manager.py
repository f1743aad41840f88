"""
Session Manager — owns the current topic and the current peer connection.

Bridges transport connection events to a single message handler. Inbound
frames are queued and consumed in order by one dispatcher task, so the
handler never runs inside a transport callback.
"""

import asyncio
import inspect
import logging
from enum import Enum

from config import CONNECTED_SENTINEL
from errors import DiscoveryError, NotConnectedError, TransportWriteError
from session.topic import Topic, peer_display_name

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    JOINING = "joining"
    JOINED = "joined"
    CONNECTED = "connected"


class SessionManager:
    """One rendezvous session with at most one current peer."""

    def __init__(self, transport) -> None:
        self._transport = transport
        self._topic: Topic | None = None
        self._handler = None  # fn(peer_name, payload, connection), sync or async
        self._connection = None
        self._peer_name = ""
        self._state = SessionState.DISCONNECTED
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._dispatch_task: asyncio.Task | None = None
        self._event_callbacks: list = []  # async fn(event_type, data)

        transport.on_connection(self._on_connection)

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def topic(self) -> Topic | None:
        return self._topic

    @property
    def connection(self):
        return self._connection

    @property
    def peer_name(self) -> str:
        return self._peer_name

    def snapshot(self) -> dict:
        return {
            "topic": self.get_topic_hex(),
            "state": self._state.value,
            "peer": self._peer_name if self._connection is not None else None,
        }

    def on_event(self, callback) -> None:
        """Register callback: async fn(event_type: str, data: dict)."""
        self._event_callbacks.append(callback)

    async def _emit(self, event_type: str, data: dict) -> None:
        for cb in self._event_callbacks:
            try:
                await cb(event_type, data)
            except Exception as e:
                logger.error(f"Event callback error: {e}")

    def _emit_soon(self, event_type: str, data: dict) -> None:
        """Emit from a synchronous transport callback."""
        if self._event_callbacks:
            asyncio.ensure_future(self._emit(event_type, data))

    async def _set_state(self, state: SessionState) -> None:
        if state == self._state:
            return
        logger.debug(f"Session {self._state.value} -> {state.value}")
        self._state = state
        await self._emit("session_state", self.snapshot())

    # --- Rooms ---

    async def create_room(self, handler) -> Topic:
        """Join a freshly generated topic and return it."""
        topic = Topic.random()
        await self._join(topic, handler)
        return topic

    async def join_room(self, topic_hex: str, handler) -> None:
        """
        Join an existing topic.

        Raises:
            InvalidTopicError: before any transport call.
            DiscoveryError: the transport rejected the join or the flush.
        """
        topic = Topic.from_hex(topic_hex)
        await self._join(topic, handler)

    async def _join(self, topic: Topic, handler) -> None:
        if self._topic is not None and self._topic != topic:
            logger.info(f"Leaving topic {self._topic.hex[:8]}… before joining another")
            await self._leave_topic()

        self._topic = topic
        self._handler = handler
        self._ensure_dispatcher()
        await self._set_state(SessionState.JOINING)

        try:
            discovery = self._transport.join(topic.key, client=True, server=True)
            await discovery.flushed()
        except Exception as e:
            logger.error(f"Could not join topic {topic.hex[:8]}…: {e}")
            await self._leave_topic()
            self._handler = None
            await self._set_state(SessionState.DISCONNECTED)
            if isinstance(e, DiscoveryError):
                raise
            raise DiscoveryError(f"Could not join topic: {e}") from e

        logger.info(f"Joined topic {topic.hex[:8]}…")
        await self._set_state(
            SessionState.CONNECTED if self._connection is not None else SessionState.JOINED
        )

    def get_topic_hex(self) -> str:
        if self._topic is None:
            return ""
        return self._topic.hex

    async def disconnect_peer(self) -> None:
        """Drop the current peer and leave the topic. Safe to call anytime."""
        connection = self._connection
        if connection is not None:
            self._connection = None
            self._peer_name = ""
            connection.destroy()
            logger.info("Peer connection destroyed")

        await self._leave_topic()
        self._handler = None
        await self._set_state(SessionState.DISCONNECTED)

    async def _leave_topic(self) -> None:
        topic = self._topic
        if topic is None:
            return
        self._topic = None
        try:
            await self._transport.leave(topic.key)
        except Exception as e:
            logger.warning(f"Error leaving topic {topic.hex[:8]}…: {e}")

    # --- Messaging ---

    def send(self, payload: bytes | str) -> None:
        """
        Write a frame to the current peer.

        Raises:
            NotConnectedError: no peer is connected.
            TransportWriteError: the connection is no longer writable.
        """
        if self._connection is None:
            raise NotConnectedError("No peer connected")
        if isinstance(payload, str):
            payload = payload.encode("utf-8")
        self._connection.write(payload)

    async def wait_idle(self) -> None:
        """Wait until every queued inbound frame has been dispatched."""
        await self._inbox.join()

    async def close(self) -> None:
        """Teardown hook: disconnect and stop the dispatcher."""
        await self.disconnect_peer()
        if self._dispatch_task is not None:
            self._dispatch_task.cancel()
            try:
                await self._dispatch_task
            except asyncio.CancelledError:
                pass
            self._dispatch_task = None

    # --- Transport events ---

    def _on_connection(self, connection) -> None:
        name = peer_display_name(connection.remote_public_key)
        logger.info(f"Peer {name} connected")

        self._connection = connection
        self._peer_name = name
        self._ensure_dispatcher()

        connection.on("data", lambda payload: self._inbox.put_nowait((name, payload, connection)))
        connection.on("error", lambda exc: self._on_connection_error(name, exc))
        connection.on("close", lambda: self._on_connection_closed(connection, name))

        try:
            connection.write(CONNECTED_SENTINEL.encode("utf-8"))
        except TransportWriteError as e:
            logger.warning(f"Handshake announcement to {name} failed: {e}")

        self._state = SessionState.CONNECTED
        self._emit_soon("peer_connected", {"peer": name})
        self._emit_soon("session_state", self.snapshot())

    def _on_connection_error(self, name: str, exc: Exception) -> None:
        logger.warning(f"Connection error with {name}: {exc}")
        self._emit_soon("alert", {"type": "error", "message": f"Connection error: {exc}"})

    def _on_connection_closed(self, connection, name: str) -> None:
        if connection is not self._connection:
            return
        logger.info(f"Peer {name} disconnected")
        self._connection = None
        self._peer_name = ""
        self._state = SessionState.JOINED if self._topic is not None else SessionState.DISCONNECTED
        self._emit_soon("peer_disconnected", {"peer": name})
        self._emit_soon("session_state", self.snapshot())

    # --- Dispatch ---

    def _ensure_dispatcher(self) -> None:
        if self._dispatch_task is None or self._dispatch_task.done():
            self._dispatch_task = asyncio.create_task(self._dispatch_loop())

    async def _dispatch_loop(self) -> None:
        while True:
            name, payload, connection = await self._inbox.get()
            try:
                handler = self._handler
                if handler is None:
                    logger.debug(f"No handler registered, dropping frame from {name}")
                    continue
                result = handler(name, payload, connection)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Message handler failed for frame from {name}: {e}", exc_info=True)
            finally:
                self._inbox.task_done()
