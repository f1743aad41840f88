"""
Receive side of the chunked transfer protocol.

Chunks are buffered per file id until every index has arrived, then the
file is reconstructed exactly once and handed to the completion callback.
"""

import logging

from config import CHUNK_SIZE
from errors import IndexOutOfRangeError, MalformedMessageError, MissingMetadataError
from protocol.messages import FileChunk, FileMeta
from transfer.models import (
    ChunkOutcome,
    IncomingTransfer,
    TransferInfo,
    TransferState,
)
from transfer.reconstruct import reconstruct

logger = logging.getLogger(__name__)


class TransferReceiver:
    """Tracks all partially received files, keyed by file id."""

    def __init__(
        self,
        progress_callback=None,
        complete_callback=None,
        state_callback=None,
    ) -> None:
        self._incoming: dict[str, IncomingTransfer] = {}
        self._progress_callback = progress_callback  # async fn(TransferInfo)
        self._complete_callback = complete_callback  # async fn(ReceivedFile)
        self._state_callback = state_callback  # async fn(TransferInfo)

    def get(self, file_id: str) -> IncomingTransfer | None:
        return self._incoming.get(file_id)

    def pending(self) -> list[TransferInfo]:
        return [t.info for t in self._incoming.values()]

    async def handle_incoming_chunk(
        self, message: FileMeta | FileChunk, peer_name: str = ""
    ) -> ChunkOutcome | None:
        """Entry point for structured messages coming off the wire."""
        if isinstance(message, FileMeta):
            await self.on_file_meta(message, peer_name)
            return None
        return await self.on_file_chunk(message)

    async def on_file_meta(self, meta: FileMeta, peer_name: str = "") -> None:
        if meta.file_id in self._incoming:
            logger.warning(f"Metadata for {meta.file_id} received twice, restarting transfer")

        transfer = IncomingTransfer(meta, peer_name)
        self._incoming[meta.file_id] = transfer
        logger.info(
            f"Receiving {meta.name} ({meta.size} bytes, "
            f"{meta.total_chunks} chunks) from {peer_name or 'peer'}"
        )
        await self._notify(self._state_callback, transfer.info)

        if transfer.is_complete:
            # Empty file: no chunk will ever arrive
            await self._complete(transfer)

    async def on_file_chunk(self, chunk: FileChunk) -> ChunkOutcome:
        """
        Store one chunk.

        Raises:
            MissingMetadataError: no metadata was received for the file id.
            IndexOutOfRangeError: the index is outside the announced range;
                the transfer is dropped.
            MalformedMessageError: the chunk is larger than CHUNK_SIZE; the
                transfer is dropped.
        """
        transfer = self._incoming.get(chunk.file_id)
        if transfer is None:
            raise MissingMetadataError(
                f"No metadata for file {chunk.file_id}", chunk.file_id
            )

        if not 0 <= chunk.index < transfer.total_chunks:
            await self._drop(transfer, "Chunk index out of range")
            raise IndexOutOfRangeError(
                f"Chunk index {chunk.index} outside 0..{transfer.total_chunks - 1} "
                f"for file {chunk.file_id}",
                chunk.file_id,
            )

        if len(chunk.data) > CHUNK_SIZE:
            await self._drop(transfer, "Chunk larger than the protocol chunk size")
            raise MalformedMessageError(
                f"Chunk {chunk.index} of {chunk.file_id} is {len(chunk.data)} bytes, "
                f"limit is {CHUNK_SIZE}",
                chunk.file_id,
            )

        if not transfer.store(chunk.index, chunk.data):
            logger.debug(f"Duplicate chunk {chunk.index} for {chunk.file_id} ignored")
            return ChunkOutcome.DUPLICATE

        await self._notify(self._progress_callback, transfer.info)

        if transfer.is_complete:
            await self._complete(transfer)
            return ChunkOutcome.COMPLETED
        return ChunkOutcome.STORED

    async def _drop(self, transfer: IncomingTransfer, reason: str) -> None:
        self._incoming.pop(transfer.file_id, None)
        transfer.info.state = TransferState.FAILED
        transfer.info.error_message = reason
        logger.warning(f"Dropped transfer {transfer.file_id}: {reason}")
        await self._notify(self._state_callback, transfer.info)

    async def _complete(self, transfer: IncomingTransfer) -> None:
        # Removed before reconstruction so a late duplicate cannot re-trigger it
        self._incoming.pop(transfer.file_id, None)
        try:
            received = reconstruct(transfer)
        except Exception as e:
            transfer.info.state = TransferState.FAILED
            transfer.info.error_message = str(e)
            await self._notify(self._state_callback, transfer.info)
            raise

        transfer.info.state = TransferState.COMPLETED
        transfer.info.record_progress(transfer.total_chunks)
        logger.info(f"Received {received.name} ({received.size} bytes)")
        await self._notify(self._state_callback, transfer.info)
        await self._notify(self._complete_callback, received)

    @staticmethod
    async def _notify(callback, payload) -> None:
        if callback is None:
            return
        try:
            await callback(payload)
        except Exception as e:
            logger.error(f"Receiver callback error: {e}")
