"""
Transfer Manager — orchestrates file transfers in both directions.

Tracks every transfer's state, keeps received files for download and
analysis, and fans events out to the WebSocket layer.
"""

import asyncio
import logging
import mimetypes
from pathlib import Path

from config import MAX_FILE_SIZE, MAX_RECEIVED_FILES
from errors import AnalysisServiceError, NotConnectedError, TransferReadError
from transfer.models import (
    AnalysisResult,
    ReceivedFile,
    TransferDirection,
    TransferInfo,
    TransferState,
)
from transfer.receiver import TransferReceiver
from transfer.sender import OutgoingTransfer, send_file

logger = logging.getLogger(__name__)

ACTIVE_STATES = (TransferState.PENDING, TransferState.TRANSFERRING)


class TransferManager:
    """Manages all active and completed file transfers."""

    def __init__(self, analysis_service=None, max_received_files: int = MAX_RECEIVED_FILES) -> None:
        self._transfers: dict[str, TransferInfo] = {}
        self._outgoing: dict[str, OutgoingTransfer] = {}
        self._received: dict[str, ReceivedFile] = {}
        self._max_received_files = max_received_files
        self._lock = asyncio.Lock()
        self._event_callbacks: list = []  # async fn(event_type, data)
        self._connection = None
        self._analysis_service = analysis_service
        self.receiver = TransferReceiver(
            progress_callback=self._on_progress,
            complete_callback=self._on_file_received,
            state_callback=self._on_state_change,
        )

    @property
    def connection(self):
        return self._connection

    def on_event(self, callback) -> None:
        """Register callback: async fn(event_type: str, data: dict)."""
        self._event_callbacks.append(callback)

    async def _emit(self, event_type: str, data: dict) -> None:
        """Emit an event to all registered callbacks."""
        for cb in self._event_callbacks:
            try:
                await cb(event_type, data)
            except Exception as e:
                logger.error(f"Event callback error: {e}")

    def setup_file_transfer(self, connection) -> None:
        """Bind the connection outgoing files go to (None releases it)."""
        self._connection = connection
        if connection is not None:
            logger.info("File transfer ready on current peer connection")

    async def stop(self) -> None:
        """Cancel all outgoing transfers."""
        for handle in self._outgoing.values():
            handle.cancel()
            if handle.task is not None:
                handle.task.cancel()
        self._outgoing.clear()
        logger.info("Transfer manager stopped")

    def get_transfers(self) -> list[TransferInfo]:
        """Return all transfers."""
        return list(self._transfers.values())

    def get_received_files(self) -> list[ReceivedFile]:
        return sorted(self._received.values(), key=lambda f: f.received_at)

    def get_received_file(self, file_id: str) -> ReceivedFile | None:
        return self._received.get(file_id)

    async def remove_received_file(self, file_id: str) -> bool:
        """Forget a received file; returns False if it is not held."""
        received = self._received.pop(file_id, None)
        if received is None:
            return False
        logger.info(f"Removed received file {received.name} ({received.size} bytes)")
        await self._emit("file_removed", {"file_id": file_id})
        return True

    # --- Sending ---

    @staticmethod
    async def _read_file(path: str) -> tuple[bytes, str, str]:
        """Read a local file before anything is written to the wire."""
        file_path = Path(path)
        try:
            size = file_path.stat().st_size
            if size > MAX_FILE_SIZE:
                raise TransferReadError(
                    f"{file_path.name} is {size} bytes, limit is {MAX_FILE_SIZE}"
                )
            data = await asyncio.to_thread(file_path.read_bytes)
        except OSError as e:
            raise TransferReadError(f"Could not read {file_path.name}: {e.strerror or e}") from e
        mime, _ = mimetypes.guess_type(file_path.name)
        return data, file_path.name, mime or ""

    async def send_file(self, connection, path: str, peer_name: str = "") -> TransferInfo:
        """
        Send one file to a connection.

        Raises:
            TransferReadError: the file could not be read; nothing was sent.
        """
        data, name, mime = await self._read_file(path)
        return await self._start_send(connection, data, name, mime, peer_name)

    async def queue_send(
        self, file_paths: list[str], connection=None, peer_name: str = ""
    ) -> list[TransferInfo]:
        """
        Send several files, each in its own transfer.

        Raises:
            NotConnectedError: no connection given or set up.
            TransferReadError: a file could not be read; nothing was sent.
        """
        connection = connection or self._connection
        if connection is None:
            raise NotConnectedError("No peer connected")

        files = [await self._read_file(path) for path in file_paths]
        infos = []
        for data, name, mime in files:
            infos.append(await self._start_send(connection, data, name, mime, peer_name))
        return infos

    async def _start_send(
        self, connection, data: bytes, name: str, mime: str, peer_name: str
    ) -> TransferInfo:
        handle = await send_file(
            connection,
            data,
            name,
            mime,
            progress_callback=self._on_progress,
            state_callback=self._on_state_change,
            peer_name=peer_name,
        )
        async with self._lock:
            self._transfers[handle.file_id] = handle.info
        self._outgoing[handle.file_id] = handle
        handle.task.add_done_callback(lambda _: self._outgoing.pop(handle.file_id, None))
        logger.info(f"Queued {name} ({len(data)} bytes) as {handle.file_id}")
        await self._emit("transfer_state", handle.info.model_dump())
        return handle.info

    async def cancel_transfer(self, transfer_id: str) -> bool:
        """Cancel an outgoing transfer; returns False if it is not active."""
        handle = self._outgoing.get(transfer_id)
        if handle is None or handle.info.state not in ACTIVE_STATES:
            return False
        handle.cancel()
        logger.info(f"Cancel requested for {handle.info.file_name}")
        return True

    # --- Receiving ---

    async def handle_incoming_chunk(self, parsed, peer_name: str = ""):
        """Route a decoded file-meta/file-chunk message to the receiver."""
        return await self.receiver.handle_incoming_chunk(parsed, peer_name)

    async def _on_file_received(self, received: ReceivedFile) -> None:
        # Re-inserted so dict order stays oldest first
        self._received.pop(received.file_id, None)
        self._received[received.file_id] = received
        while len(self._received) > self._max_received_files:
            oldest = next(iter(self._received))
            evicted = self._received.pop(oldest)
            logger.info(f"Evicted received file {evicted.name} to stay under {self._max_received_files}")
            await self._emit("file_removed", {"file_id": oldest})
        await self._emit("file_received", received.model_dump())
        await self._emit("notification", {
            "type": "success",
            "message": f"'{received.name}' received from {received.peer_name or 'peer'}",
        })

    # --- Analysis ---

    async def analyze_file(self, file_id: str) -> AnalysisResult | None:
        """
        Summarise a received file. Failures become a failed result and an
        error notification; transfer state is never touched.
        """
        received = self._received.get(file_id)
        if received is None:
            return None

        if self._analysis_service is None:
            result = AnalysisResult(
                file_id=file_id, file_name=received.name, ok=False,
                error_message="Analysis is not available",
            )
        else:
            try:
                summary = await self._analysis_service.analyze(received, received.name)
                result = AnalysisResult(
                    file_id=file_id, file_name=received.name, ok=True, summary=summary
                )
            except AnalysisServiceError as e:
                logger.warning(f"Analysis of {received.name} failed: {e}")
                result = AnalysisResult(
                    file_id=file_id, file_name=received.name, ok=False,
                    error_message=str(e),
                )

        await self._emit("analysis", result.model_dump())
        if not result.ok:
            await self._emit("notification", {
                "type": "error",
                "message": f"Failed to analyze '{received.name}'.",
            })
        return result

    # --- Callbacks ---

    async def _on_progress(self, info: TransferInfo) -> None:
        """Called by sender/receiver on progress updates."""
        await self._emit("transfer_progress", info.model_dump())

    async def _on_state_change(self, info: TransferInfo) -> None:
        """Called by sender/receiver on state changes."""
        async with self._lock:
            self._transfers[info.transfer_id] = info
        await self._emit("transfer_state", info.model_dump())

        # Generate user-facing notifications
        notification = None
        if info.state == TransferState.COMPLETED and info.direction == TransferDirection.SENDING:
            notification = {
                "type": "success",
                "message": f"'{info.file_name}' sent successfully!",
            }
        elif info.state == TransferState.FAILED:
            notification = {
                "type": "error",
                "message": f"Transfer of '{info.file_name}' failed: {info.error_message}",
            }
        elif info.state == TransferState.CANCELLED:
            notification = {
                "type": "info",
                "message": f"Transfer of '{info.file_name}' cancelled.",
            }

        if notification:
            await self._emit("notification", notification)
