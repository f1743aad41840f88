"""Models for file transfers in both directions."""

import time
from enum import Enum

from pydantic import BaseModel, Field

from protocol.messages import FileMeta


class TransferState(str, Enum):
    """All possible states for a file transfer."""
    PENDING = "pending"
    TRANSFERRING = "transferring"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TransferDirection(str, Enum):
    SENDING = "sending"
    RECEIVING = "receiving"


class ChunkOutcome(str, Enum):
    """What the receiver did with one chunk."""
    STORED = "stored"
    DUPLICATE = "duplicate"
    COMPLETED = "completed"


class TransferInfo(BaseModel):
    """Full state of a single file transfer, exposed to the frontend."""
    transfer_id: str
    file_name: str
    mime: str = ""
    file_size: int
    total_chunks: int
    chunks_done: int = 0
    state: TransferState = TransferState.PENDING
    direction: TransferDirection
    peer_name: str = ""
    progress_percent: float = 0.0
    error_message: str | None = None

    def record_progress(self, chunks_done: int) -> None:
        self.chunks_done = chunks_done
        self.progress_percent = (
            chunks_done / self.total_chunks * 100
            if self.total_chunks > 0
            else 100.0
        )


class ReceivedFile(BaseModel):
    """A fully reassembled file, ready for download or analysis."""
    file_id: str
    name: str
    mime: str
    size: int
    peer_name: str = ""
    received_at: float = Field(default_factory=time.time)
    data: bytes = Field(repr=False, exclude=True)

    def text(self) -> str:
        return self.data.decode("utf-8", errors="replace")


class IncomingTransfer:
    """Chunks buffered for one file id until every slot is filled."""

    def __init__(self, meta: FileMeta, peer_name: str = "") -> None:
        self.meta = meta
        self.chunks: list[bytes | None] = [None] * meta.total_chunks
        self.received_count = 0
        self.info = TransferInfo(
            transfer_id=meta.file_id,
            file_name=meta.name,
            mime=meta.mime,
            file_size=meta.size,
            total_chunks=meta.total_chunks,
            direction=TransferDirection.RECEIVING,
            peer_name=peer_name,
            state=TransferState.TRANSFERRING,
        )

    @property
    def file_id(self) -> str:
        return self.meta.file_id

    @property
    def total_chunks(self) -> int:
        return self.meta.total_chunks

    @property
    def is_complete(self) -> bool:
        return self.received_count == self.total_chunks

    def store(self, index: int, data: bytes) -> bool:
        """Store a chunk; returns False if that index was already filled."""
        if self.chunks[index] is not None:
            return False
        self.chunks[index] = data
        self.received_count += 1
        self.info.record_progress(self.received_count)
        return True

    def missing_indices(self) -> list[int]:
        return [i for i, chunk in enumerate(self.chunks) if chunk is None]


class AnalysisResult(BaseModel):
    """Outcome of summarising a received file."""
    file_id: str
    file_name: str
    ok: bool
    summary: str = ""
    error_message: str | None = None
