"""Reassemble buffered chunks into one file."""

import logging

from config import DEFAULT_MIME
from errors import IncompleteTransferError
from transfer.models import IncomingTransfer, ReceivedFile

logger = logging.getLogger(__name__)


def reconstruct(transfer: IncomingTransfer) -> ReceivedFile:
    """
    Concatenate the chunk slots of a transfer in index order.

    Raises:
        IncompleteTransferError: if any slot is still empty.
    """
    missing = transfer.missing_indices()
    if missing:
        raise IncompleteTransferError(transfer.file_id, missing)

    data = b"".join(transfer.chunks)
    meta = transfer.meta
    if len(data) != meta.size:
        logger.warning(
            f"Reassembled {meta.name} is {len(data)} bytes, "
            f"metadata announced {meta.size}"
        )

    return ReceivedFile(
        file_id=meta.file_id,
        name=meta.name,
        mime=meta.mime or DEFAULT_MIME,
        size=len(data),
        peer_name=transfer.info.peer_name,
        data=data,
    )
