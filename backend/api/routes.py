"""REST API routes for Room Share."""

import logging
import os
from urllib.parse import quote

from fastapi import APIRouter, HTTPException, Response
from pydantic import BaseModel

from errors import (
    DiscoveryError,
    InvalidTopicError,
    NotConnectedError,
    TransferReadError,
    TransportWriteError,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

# Set by init_routes() when the app module is imported
_session = None
_transfer_manager = None
_message_handler = None


def init_routes(session, transfer_manager, message_handler) -> None:
    """Hand the routes the session, transfer manager and inbound handler."""
    global _session, _transfer_manager, _message_handler
    _session = session
    _transfer_manager = transfer_manager
    _message_handler = message_handler


# --- Room ---

class JoinRoomBody(BaseModel):
    topic: str


@router.get("/room")
async def get_room():
    """Current topic, session state and peer."""
    return _session.snapshot()


@router.post("/room")
async def create_room():
    """Create a new room on a random topic."""
    try:
        topic = await _session.create_room(_message_handler)
    except DiscoveryError as e:
        raise HTTPException(status_code=502, detail=f"Could not create room: {e}")
    return {"topic": topic.hex, "message": "Room created! Waiting for peers..."}


@router.post("/room/join")
async def join_room(body: JoinRoomBody):
    """Join an existing room by its hex topic."""
    if not body.topic.strip():
        raise HTTPException(status_code=400, detail="Please enter a topic")
    try:
        await _session.join_room(body.topic, _message_handler)
    except InvalidTopicError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except DiscoveryError as e:
        raise HTTPException(status_code=502, detail=f"Could not join room: {e}")
    return {"topic": _session.get_topic_hex(), "message": "Joined topic"}


@router.delete("/room")
async def leave_room():
    """Disconnect the peer and leave the topic."""
    await _session.disconnect_peer()
    _transfer_manager.setup_file_transfer(None)
    return {"status": "disconnected"}


# --- Chat ---

class MessageBody(BaseModel):
    text: str


@router.post("/messages")
async def send_message(body: MessageBody):
    if not body.text:
        raise HTTPException(status_code=400, detail="Message is empty")
    try:
        _session.send(body.text)
    except NotConnectedError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except TransportWriteError as e:
        raise HTTPException(status_code=503, detail=f"Peer connection lost: {e}")
    return {"status": "sent"}


# --- Transfers ---

class CreateTransferBody(BaseModel):
    file_paths: list[str]


@router.get("/transfers")
async def list_transfers():
    """Outgoing and incoming transfers, finished ones included."""
    transfers = _transfer_manager.get_transfers()
    return {"transfers": [t.model_dump() for t in transfers]}


@router.post("/transfers")
async def create_transfer(body: CreateTransferBody):
    """Send local files, given as absolute paths, to the current peer."""
    valid_paths = []
    for path in body.file_paths:
        if os.path.isfile(path):
            valid_paths.append(path)
        else:
            logger.warning(f"Skipping invalid file path: {path}")

    if not valid_paths:
        raise HTTPException(status_code=400, detail="Please select a file first")

    try:
        infos = await _transfer_manager.queue_send(
            valid_paths,
            connection=_session.connection,
            peer_name=_session.peer_name,
        )
    except NotConnectedError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except TransferReadError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {
        "transfers": [i.model_dump() for i in infos],
        "message": f"Queued {len(infos)} file(s) for transfer",
    }


@router.post("/transfers/{transfer_id}/cancel")
async def cancel_transfer(transfer_id: str):
    if not await _transfer_manager.cancel_transfer(transfer_id):
        raise HTTPException(status_code=404, detail="No active transfer with that id")
    return {"status": "cancelled"}


# --- Received files ---

@router.get("/files")
async def list_files():
    files = _transfer_manager.get_received_files()
    return {"files": [f.model_dump() for f in files]}


@router.get("/files/{file_id}")
async def download_file(file_id: str):
    received = _transfer_manager.get_received_file(file_id)
    if received is None:
        raise HTTPException(status_code=404, detail="File not found")
    return Response(
        content=received.data,
        media_type=received.mime,
        headers={
            "Content-Disposition": f"attachment; filename*=UTF-8''{quote(received.name)}"
        },
    )


@router.delete("/files/{file_id}")
async def delete_file(file_id: str):
    if not await _transfer_manager.remove_received_file(file_id):
        raise HTTPException(status_code=404, detail="File not found")
    return {"status": "deleted"}


@router.post("/files/{file_id}/analyze")
async def analyze_file(file_id: str):
    result = await _transfer_manager.analyze_file(file_id)
    if result is None:
        raise HTTPException(status_code=404, detail="File not found")
    return result.model_dump()
