"""
Room Share — FastAPI application entry point.

Wires the swarm, session, message classifier and transfer manager into
one process, serves the REST API and the `/ws` event stream, and tears
the swarm down when the app stops.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from analysis.service import AnalysisService
from api.routes import init_routes, router
from api.websocket import ConnectionManager
from config import API_HOST, API_PORT, IDENTITY_KEY_FILE, LOG_LEVEL
from protocol.classifier import MessageClassifier
from session.manager import SessionManager
from swarm.identity import Identity
from swarm.service import Swarm
from transfer.manager import TransferManager

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

swarm = Swarm(Identity(IDENTITY_KEY_FILE))
session = SessionManager(swarm)
analysis_service = AnalysisService()
transfer_manager = TransferManager(analysis_service)
ws_manager = ConnectionManager(snapshot_provider=session.snapshot)


async def on_peer_connected(connection, peer_name: str) -> None:
    """The remote side sent its sentinel: files can flow both ways now."""
    transfer_manager.setup_file_transfer(connection)
    await ws_manager.broadcast("peer_ready", {"peer": peer_name})


async def on_session_event(event: str, data: dict) -> None:
    if event == "peer_disconnected" and session.connection is None:
        transfer_manager.setup_file_transfer(None)
    await ws_manager.handle_event(event, data)


classifier = MessageClassifier(
    transfer_manager.receiver,
    on_connected=on_peer_connected,
    on_text=ws_manager.on_chat_message,
    on_error=ws_manager.on_protocol_error,
)

session.on_event(on_session_event)
transfer_manager.on_event(ws_manager.handle_event)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await swarm.start()
    if not analysis_service.configured:
        logger.warning("OPENAI_API_KEY not set, file analysis will be unavailable")
    logger.info(
        f"Room Share up on http://{API_HOST}:{API_PORT} "
        f"(node {swarm.identity.display_name}, swarm port {swarm.port})"
    )
    try:
        yield
    finally:
        logger.info("Shutting down Room Share...")
        await transfer_manager.stop()
        await session.close()
        await swarm.destroy()


app = FastAPI(title="Room Share", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://127.0.0.1:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

init_routes(session, transfer_manager, classifier.handle)
app.include_router(router)


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await ws_manager.connect(websocket)
    try:
        # The UI only listens; inbound text just keeps the socket open
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        await ws_manager.disconnect(websocket)


def run() -> None:
    import uvicorn

    uvicorn.run(app, host=API_HOST, port=API_PORT, log_level=LOG_LEVEL.lower())


if __name__ == "__main__":
    run()
