"""Pydantic models for LAN topic discovery."""

from pydantic import BaseModel


class Beacon(BaseModel):
    """The JSON payload broadcast over UDP."""
    app_id: str
    public_key: str  # hex
    port: int  # TCP port accepting swarm connections
    announce: list[str] = []  # discovery keys this node serves
    lookup: list[str] = []  # discovery keys this node is looking for


class SwarmPeer(BaseModel):
    """A node seen on the LAN."""
    public_key: str
    ip_address: str
    port: int
    announce: list[str] = []
    lookup: list[str] = []
    last_seen: float  # Unix timestamp
