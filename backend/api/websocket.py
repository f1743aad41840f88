"""WebSocket fan-out of session, chat and transfer events to the UI."""

import asyncio
import json
import logging
import time
from collections import deque

from fastapi import WebSocket

from config import CHAT_HISTORY_SIZE

logger = logging.getLogger(__name__)


class ConnectionManager:
    """
    Tracks UI clients and pushes `{"event", "data"}` frames to them.

    Chat lines are also kept in a short history so a client that connects
    (or reloads) mid-session gets the conversation in its snapshot.
    """

    def __init__(self, snapshot_provider=None, history_size: int = CHAT_HISTORY_SIZE) -> None:
        self._clients: set[WebSocket] = set()
        self._lock = asyncio.Lock()
        self._snapshot_provider = snapshot_provider  # fn() -> dict
        self._history: deque[dict] = deque(maxlen=history_size)

    @property
    def client_count(self) -> int:
        return len(self._clients)

    def history(self) -> list[dict]:
        return list(self._history)

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        async with self._lock:
            self._clients.add(websocket)
        logger.info(f"UI client attached ({self.client_count} open)")

        snapshot = self._snapshot_provider() if self._snapshot_provider else {}
        snapshot = {**snapshot, "messages": self.history()}
        await websocket.send_text(json.dumps({"event": "snapshot", "data": snapshot}))

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            self._clients.discard(websocket)
        logger.info(f"UI client detached ({self.client_count} open)")

    async def broadcast(self, event: str, data: dict) -> None:
        frame = json.dumps({"event": event, "data": data})
        async with self._lock:
            clients = list(self._clients)

        stale = []
        for ws in clients:
            try:
                await ws.send_text(frame)
            except Exception as e:
                logger.debug(f"Dropping UI client after failed send: {e}")
                stale.append(ws)

        if stale:
            async with self._lock:
                self._clients.difference_update(stale)

    async def handle_event(self, event_type: str, data: dict) -> None:
        """Callback for `SessionManager.on_event` and `TransferManager.on_event`."""
        await self.broadcast(event_type, data)

    async def on_chat_message(self, peer_name: str, text: str) -> None:
        entry = {"peer": peer_name, "text": text, "at": time.time()}
        self._history.append(entry)
        await self.broadcast("message", entry)

    async def on_protocol_error(self, peer_name: str, error: Exception) -> None:
        await self.broadcast("notification", {
            "type": "error",
            "message": f"Dropped invalid message from {peer_name}: {error}",
        })
