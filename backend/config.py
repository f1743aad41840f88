"""Application-wide configuration constants."""

import os
from pathlib import Path

# --- Identity ---
APP_ID = "roomshare-v1"
DISPLAY_NAME_LENGTH = 6  # hex characters of the remote key shown as peer name

# --- Storage ---
CONFIG_DIR = Path(os.environ.get("ROOMSHARE_HOME", Path.home() / ".roomshare"))
os.makedirs(CONFIG_DIR, exist_ok=True)
IDENTITY_KEY_FILE = CONFIG_DIR / "identity.key"

# --- Networking ---
API_HOST = "127.0.0.1"
API_PORT = 8766
LOG_LEVEL = os.environ.get("ROOMSHARE_LOG_LEVEL", "INFO").upper()
DISCOVERY_PORT = 41235  # UDP
DISCOVERY_INTERVAL = 3  # seconds
PEER_TIMEOUT = 10  # seconds before a peer is considered offline
CONNECT_TIMEOUT = 5  # seconds for TCP connect + handshake

SWARM_PORT_MIN = 50000
SWARM_PORT_MAX = 65000
MAX_FRAME_SIZE = 32 * 1024 * 1024  # 32 MB

# --- Session ---
TOPIC_SIZE = 32  # bytes
CONNECTED_SENTINEL = "__CONNECTED__"
HELLO_REPLY = "👋 Hello from receiver!"
CHAT_HISTORY_SIZE = 200  # chat lines replayed to a reconnecting UI

# --- Transfer ---
CHUNK_SIZE = 65536  # 64 KB
CHUNK_DELAY = 0.005  # seconds between chunk writes
DEFAULT_MIME = "application/octet-stream"
MAX_FILE_SIZE = 2 * 1024 ** 3  # 2 GiB, whole files are held in memory
MAX_RECEIVED_FILES = 50  # oldest received files are evicted beyond this

# --- Analysis ---
OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY", "")
OPENAI_MODEL = os.environ.get("OPENAI_MODEL", "gpt-4o")
OPENAI_URL = "https://api.openai.com/v1/chat/completions"
ANALYSIS_PREVIEW_CHARS = 1500
ANALYSIS_TIMEOUT = 60  # seconds
