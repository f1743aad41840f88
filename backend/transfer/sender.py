"""
Send side of the chunked transfer protocol.

A file is announced with one metadata message and then written as
fixed-size chunk messages in ascending index order. There is no
acknowledgment: a short sleep between chunks is the only throttle.
"""

import asyncio
import logging
import secrets
import string
import time
from collections.abc import Iterator

from config import CHUNK_DELAY, CHUNK_SIZE
from errors import TransportWriteError
from protocol.messages import FileChunk, FileMeta, count_chunks, encode_message
from transfer.models import TransferDirection, TransferInfo, TransferState

logger = logging.getLogger(__name__)

_ID_ALPHABET = string.ascii_lowercase + string.digits


def new_file_id() -> str:
    """Millisecond timestamp plus a short random suffix."""
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(6))
    return f"{int(time.time() * 1000)}-{suffix}"


def iter_chunks(data: bytes, chunk_size: int = CHUNK_SIZE) -> Iterator[tuple[int, bytes]]:
    for index in range(count_chunks(len(data), chunk_size)):
        yield index, data[index * chunk_size:(index + 1) * chunk_size]


class OutgoingTransfer:
    """Handle for one send attempt; lives until the send loop exits."""

    def __init__(
        self, data: bytes, name: str, mime: str, peer_name: str = ""
    ) -> None:
        self.file_id = new_file_id()
        self.total_chunks = count_chunks(len(data))
        self.cursor = 0  # chunks written so far
        self._cancelled = False
        self._task: asyncio.Task | None = None
        self.info = TransferInfo(
            transfer_id=self.file_id,
            file_name=name,
            mime=mime,
            file_size=len(data),
            total_chunks=self.total_chunks,
            direction=TransferDirection.SENDING,
            peer_name=peer_name,
        )

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        """Stop before the next chunk; chunks already written stay sent."""
        self._cancelled = True

    @property
    def task(self) -> asyncio.Task | None:
        return self._task

    async def wait(self) -> TransferState:
        """Wait for the send loop to exit and return its final state."""
        if self._task is not None:
            try:
                await asyncio.shield(self._task)
            except asyncio.CancelledError:
                if not self._task.cancelled():
                    raise
                self.info.state = TransferState.CANCELLED
        return self.info.state


async def send_file(
    connection,
    data: bytes,
    name: str,
    mime: str = "",
    *,
    progress_callback=None,
    state_callback=None,
    delay: float = CHUNK_DELAY,
    peer_name: str = "",
) -> OutgoingTransfer:
    """
    Start sending a file over a peer connection.

    Args:
        connection: Object with a `write(bytes)` method.
        data: Whole file contents.
        name: File name announced to the receiver.
        mime: MIME type announced to the receiver.
        progress_callback: async fn(transfer_info) after each chunk.
        state_callback: async fn(transfer_info) on state changes.

    Returns:
        The transfer handle; `await handle.wait()` for the final state.
    """
    handle = OutgoingTransfer(data, name, mime, peer_name)
    handle._task = asyncio.create_task(
        _run_transfer(
            connection, handle, data, delay,
            progress_callback, state_callback,
        )
    )
    return handle


async def _run_transfer(
    connection,
    handle: OutgoingTransfer,
    data: bytes,
    delay: float,
    progress_callback,
    state_callback,
) -> None:
    info = handle.info
    try:
        info.state = TransferState.TRANSFERRING
        await _notify(state_callback, info)

        meta = FileMeta(
            file_id=handle.file_id,
            name=info.file_name,
            mime=info.mime,
            size=len(data),
            total_chunks=handle.total_chunks,
        )
        connection.write(encode_message(meta))

        for index, chunk in iter_chunks(data):
            if handle.cancelled:
                logger.info(
                    f"Send of {info.file_name} cancelled after "
                    f"{handle.cursor}/{handle.total_chunks} chunks"
                )
                info.state = TransferState.CANCELLED
                await _notify(state_callback, info)
                return

            message = FileChunk(file_id=handle.file_id, index=index, data=chunk)
            connection.write(encode_message(message))
            handle.cursor = index + 1

            info.record_progress(handle.cursor)
            await _notify(progress_callback, info)
            await asyncio.sleep(delay)

        info.state = TransferState.COMPLETED
        info.record_progress(handle.total_chunks)
        logger.info(f"Sent {info.file_name} ({info.file_size} bytes)")
        await _notify(state_callback, info)

    except asyncio.CancelledError:
        info.state = TransferState.CANCELLED
        await _notify(state_callback, info)
    except TransportWriteError as e:
        logger.error(f"Send error for {info.file_name}: {e}")
        info.state = TransferState.FAILED
        info.error_message = str(e)
        await _notify(state_callback, info)
    except Exception as e:
        logger.error(f"Unexpected send error for {info.file_name}: {e}", exc_info=True)
        info.state = TransferState.FAILED
        info.error_message = str(e)
        await _notify(state_callback, info)


async def _notify(callback, info: TransferInfo) -> None:
    if callback is None:
        return
    try:
        await callback(info)
    except Exception as e:
        logger.error(f"Sender callback error: {e}")
