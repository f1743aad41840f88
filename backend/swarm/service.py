"""
LAN swarm: topic-based peer discovery over UDP broadcast plus encrypted
TCP connections between nodes that share a topic.

A node broadcasts a periodic beacon listing the discovery keys it
announces (server) and looks up (client). A client that sees a peer
announcing one of its topics dials it; when both sides are clients only
the node with the smaller public key dials, so each pair ends up with a
single connection.
"""

import asyncio
import hashlib
import inspect
import json
import logging
import random
import socket
import time

from cryptography.exceptions import InvalidSignature
from pydantic import ValidationError

from config import (
    APP_ID,
    CONNECT_TIMEOUT,
    DISCOVERY_INTERVAL,
    DISCOVERY_PORT,
    PEER_TIMEOUT,
    SWARM_PORT_MAX,
    SWARM_PORT_MIN,
)
from errors import DiscoveryError
from swarm.connection import PeerConnection, perform_handshake
from swarm.identity import Identity
from swarm.models import Beacon, SwarmPeer

logger = logging.getLogger(__name__)


def discovery_key(topic: bytes) -> str:
    """Hash of a topic as it appears on the LAN; the topic itself never does."""
    return hashlib.sha256(b"roomshare-v1:" + topic).hexdigest()


class PeerDiscovery:
    """Handle for one joined topic."""

    def __init__(self, topic: bytes, client: bool, server: bool) -> None:
        self.topic = topic
        self.discovery_key = discovery_key(topic)
        self.client = client
        self.server = server
        self._flushed = asyncio.Event()
        self._error: Exception | None = None

    async def flushed(self) -> None:
        """Wait until the topic has been announced at least once."""
        await self._flushed.wait()
        if self._error is not None:
            raise self._error

    def _mark_flushed(self) -> None:
        self._flushed.set()

    def _fail(self, error: Exception) -> None:
        if not self._flushed.is_set():
            self._error = error
            self._flushed.set()


class SwarmProtocol(asyncio.DatagramProtocol):
    """asyncio UDP protocol for receiving beacons."""

    def __init__(self, swarm: "Swarm"):
        self.swarm = swarm

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        try:
            beacon = Beacon(**json.loads(data.decode("utf-8")))
        except (ValueError, TypeError, ValidationError) as e:
            logger.debug(f"Ignoring invalid beacon from {addr}: {e}")
            return
        self.swarm.handle_beacon(beacon, addr[0])

    def error_received(self, exc: Exception) -> None:
        logger.warning(f"Swarm UDP error: {exc}")


class Swarm:
    """Joins topics on the LAN and hands out connections to peers."""

    def __init__(
        self,
        identity: Identity | None = None,
        discovery_port: int = DISCOVERY_PORT,
        host: str = "0.0.0.0",
    ) -> None:
        self.identity = identity or Identity()
        self._discovery_port = discovery_port
        self._host = host
        self._discoveries: dict[str, PeerDiscovery] = {}
        self._peers: dict[str, SwarmPeer] = {}
        self._connections: dict[str, PeerConnection] = {}
        self._dialing: set[str] = set()
        self._connection_callbacks: list = []  # fn(connection), sync or async
        self._server: asyncio.Server | None = None
        self._transport: asyncio.DatagramTransport | None = None
        self._broadcast_task: asyncio.Task | None = None
        self._cleanup_task: asyncio.Task | None = None
        self._wake: asyncio.Event | None = None
        self._port = 0
        self._destroyed = False

    @property
    def port(self) -> int:
        return self._port

    @property
    def running(self) -> bool:
        return self._server is not None and not self._destroyed

    def on_connection(self, callback) -> None:
        """Register a callback for every new peer connection."""
        self._connection_callbacks.append(callback)

    def connections(self) -> list[PeerConnection]:
        return list(self._connections.values())

    async def start(self) -> None:
        """Start the connection listener, the beacon broadcaster and listener."""
        port = random.randint(SWARM_PORT_MIN, SWARM_PORT_MAX)
        # Try a few ports if the first one is busy
        for attempt in range(10):
            try:
                self._server = await asyncio.start_server(
                    self._handle_incoming, self._host, port
                )
                self._port = port
                break
            except OSError:
                port = random.randint(SWARM_PORT_MIN, SWARM_PORT_MAX)
        else:
            raise DiscoveryError("Could not bind to any swarm port")

        loop = asyncio.get_running_loop()

        # SO_REUSEADDR before binding so several nodes can share the UDP port
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
        sock.setblocking(False)
        sock.bind(("0.0.0.0", self._discovery_port))

        self._transport, _ = await loop.create_datagram_endpoint(
            lambda: SwarmProtocol(self),
            sock=sock,
        )

        self._wake = asyncio.Event()
        self._broadcast_task = asyncio.create_task(self._broadcast_loop())
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        logger.info(
            f"Swarm node {self.identity.display_name} listening on TCP {self._port}, "
            f"discovery on UDP {self._discovery_port}"
        )

    def join(self, topic: bytes, client: bool = True, server: bool = True) -> PeerDiscovery:
        """
        Start announcing and/or looking up a topic.

        Raises:
            DiscoveryError: the swarm is not running.
        """
        if not self.running:
            raise DiscoveryError("Swarm is not running")

        discovery = PeerDiscovery(topic, client, server)
        previous = self._discoveries.get(discovery.discovery_key)
        if previous is not None:
            previous._fail(DiscoveryError("Topic joined again"))
        self._discoveries[discovery.discovery_key] = discovery
        logger.info(f"Joined discovery key {discovery.discovery_key[:8]}…")

        # Announce right away instead of waiting for the next interval
        self._wake.set()
        for peer in list(self._peers.values()):
            self._maybe_dial(peer)
        return discovery

    async def leave(self, topic: bytes) -> None:
        """Stop announcing and looking up a topic; connections stay open."""
        discovery = self._discoveries.pop(discovery_key(topic), None)
        if discovery is not None:
            discovery._fail(DiscoveryError("Topic left before it was announced"))
            logger.info(f"Left discovery key {discovery.discovery_key[:8]}…")
            if self._wake is not None:
                self._wake.set()

    async def destroy(self) -> None:
        """Teardown hook: close everything this swarm owns."""
        if self._destroyed:
            return
        self._destroyed = True

        for discovery in self._discoveries.values():
            discovery._fail(DiscoveryError("Swarm destroyed"))
        self._discoveries.clear()

        for task in (self._broadcast_task, self._cleanup_task):
            if task:
                task.cancel()
        if self._transport:
            self._transport.close()

        for connection in list(self._connections.values()):
            connection.destroy()
        self._connections.clear()

        if self._server:
            self._server.close()
            await self._server.wait_closed()
        logger.info("Swarm destroyed")

    # --- Discovery ---

    def _build_beacon(self) -> Beacon:
        return Beacon(
            app_id=APP_ID,
            public_key=self.identity.public_key_hex,
            port=self._port,
            announce=[k for k, d in self._discoveries.items() if d.server],
            lookup=[k for k, d in self._discoveries.items() if d.client],
        )

    def _broadcast_addresses(self) -> set[str]:
        bcast_ips = ["<broadcast>", "255.255.255.255", "127.255.255.255"]
        try:
            host_name = socket.gethostname()
            _, _, ips = socket.gethostbyname_ex(host_name)
            for ip in ips:
                if not ip.startswith("127."):
                    # Simple heuristic for /24 subnets
                    parts = ip.split(".")
                    if len(parts) == 4:
                        parts[3] = "255"
                        bcast_ips.append(".".join(parts))
        except OSError as e:
            logger.debug(f"Error resolving local IPs: {e}")
        return set(bcast_ips)

    def _send_beacon(self) -> int:
        """Broadcast one beacon; returns how many addresses accepted it."""
        if self._transport is None:
            return 0
        data = self._build_beacon().model_dump_json().encode("utf-8")
        sent = 0
        for bcast_ip in self._broadcast_addresses():
            try:
                self._transport.sendto(data, (bcast_ip, self._discovery_port))
                sent += 1
            except OSError:
                # Some interfaces might not support broadcast
                pass
        return sent

    async def _broadcast_loop(self) -> None:
        """Periodically broadcast a beacon; resolves pending flushes."""
        while True:
            self._wake.clear()
            pending = [d for d in self._discoveries.values() if not d._flushed.is_set()]
            try:
                if self._send_beacon() == 0:
                    raise OSError("no broadcast address accepted the beacon")
            except OSError as e:
                logger.warning(f"Broadcast failed: {e}")
                for discovery in pending:
                    discovery._fail(DiscoveryError(f"Could not announce topic: {e}"))
                    self._discoveries.pop(discovery.discovery_key, None)
            else:
                for discovery in pending:
                    discovery._mark_flushed()

            try:
                await asyncio.wait_for(self._wake.wait(), timeout=DISCOVERY_INTERVAL)
            except asyncio.TimeoutError:
                pass

    def handle_beacon(self, beacon: Beacon, ip_address: str) -> None:
        """Record a peer seen on the LAN and dial it if we share a topic."""
        if beacon.app_id != APP_ID:
            return
        if beacon.public_key == self.identity.public_key_hex:
            return

        peer = SwarmPeer(
            public_key=beacon.public_key,
            ip_address=ip_address,
            port=beacon.port,
            announce=beacon.announce,
            lookup=beacon.lookup,
            last_seen=time.time(),
        )
        if peer.public_key not in self._peers:
            logger.info(f"Discovered node {peer.public_key[:6]} ({ip_address})")
        self._peers[peer.public_key] = peer
        self._maybe_dial(peer)

    def should_dial(self, peer: SwarmPeer) -> bool:
        if peer.public_key in self._connections or peer.public_key in self._dialing:
            return False
        for key, discovery in self._discoveries.items():
            if not discovery.client or key not in peer.announce:
                continue
            # Both sides look the topic up: the smaller key dials
            if key in peer.lookup and discovery.server and self.identity.public_key_hex > peer.public_key:
                continue
            return True
        return False

    def _maybe_dial(self, peer: SwarmPeer) -> None:
        if self.running and self.should_dial(peer):
            self._dialing.add(peer.public_key)
            asyncio.ensure_future(self._dial(peer))

    async def _dial(self, peer: SwarmPeer) -> None:
        writer = None
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(peer.ip_address, peer.port),
                timeout=CONNECT_TIMEOUT,
            )
            stream, remote_key = await asyncio.wait_for(
                perform_handshake(reader, writer, self.identity, initiator=True),
                timeout=CONNECT_TIMEOUT,
            )
            if remote_key.hex() != peer.public_key:
                raise ConnectionError("Remote key does not match beacon")
            self._adopt(PeerConnection(reader, writer, stream, remote_key))
        except (OSError, asyncio.TimeoutError, asyncio.IncompleteReadError, InvalidSignature) as e:
            logger.warning(f"Could not connect to {peer.public_key[:6]} ({peer.ip_address}): {e}")
            if writer is not None:
                writer.close()
        finally:
            self._dialing.discard(peer.public_key)

    async def _handle_incoming(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        try:
            stream, remote_key = await asyncio.wait_for(
                perform_handshake(reader, writer, self.identity, initiator=False),
                timeout=CONNECT_TIMEOUT,
            )
        except (OSError, asyncio.TimeoutError, asyncio.IncompleteReadError, InvalidSignature) as e:
            logger.warning(f"Rejected incoming connection: {e}")
            writer.close()
            return
        self._adopt(PeerConnection(reader, writer, stream, remote_key))

    def _adopt(self, connection: PeerConnection) -> None:
        key = connection.remote_public_key.hex()
        if self._destroyed:
            connection.destroy()
            return

        previous = self._connections.get(key)
        self._connections[key] = connection
        if previous is not None:
            logger.info(f"Replacing connection to {key[:6]} with a newer one")
            previous.destroy()

        connection.on("close", lambda: self._forget(key, connection))
        for cb in self._connection_callbacks:
            try:
                result = cb(connection)
                if inspect.isawaitable(result):
                    asyncio.ensure_future(result)
            except Exception as e:
                logger.error(f"Connection callback error: {e}")
        connection.start()

    def _forget(self, key: str, connection: PeerConnection) -> None:
        if self._connections.get(key) is connection:
            del self._connections[key]

    async def _cleanup_loop(self) -> None:
        """Remove stale peers that haven't been seen recently."""
        while True:
            await asyncio.sleep(PEER_TIMEOUT)
            now = time.time()
            for key, peer in list(self._peers.items()):
                if now - peer.last_seen > PEER_TIMEOUT:
                    del self._peers[key]
                    logger.info(f"Node lost: {key[:6]} ({peer.ip_address})")
