"""Pydantic models for peer discovery."""

from pydantic import BaseModel


class Peer(BaseModel):
    """Represents another instance discovered on the LAN."""
    display_name: str
    host: str
    port: int
    last_seen: float  # Unix timestamp

    @property
    def key(self) -> tuple[str, int]:
        return (self.host, self.port)


class DiscoveryStatus(BaseModel):
    """Snapshot of the discovery service state, exposed to the frontend."""
    running: bool
    standalone: bool
    service_name: str | None = None
    peer_count: int = 0
    error: str | None = None
