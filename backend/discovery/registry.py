"""In-memory peer registry with staleness eviction."""

import logging
import threading
import time
from typing import Callable

from config import PEER_TIMEOUT
from discovery.models import Peer

logger = logging.getLogger(__name__)


class PeerRegistry:
    """Peers keyed by ``(host, port)``.

    Every method takes the lock, so upsert, sweep and snapshot are atomic
    with respect to each other even when zeroconf calls back from its own
    thread.
    """

    def __init__(
        self,
        timeout: float = PEER_TIMEOUT,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._peers: dict[tuple[str, int], Peer] = {}
        self._lock = threading.Lock()
        self.timeout = timeout
        self.clock = clock

    def __len__(self) -> int:
        with self._lock:
            return len(self._peers)

    def observe(
        self, display_name: str, host: str, port: int, seen_at: float | None = None
    ) -> Peer:
        """Record an advertisement seen at ``seen_at`` (default: now)."""
        peer = Peer(
            display_name=display_name,
            host=host,
            port=port,
            last_seen=self.clock() if seen_at is None else seen_at,
        )
        self.upsert(peer)
        return peer

    def upsert(self, peer: Peer) -> bool:
        """Insert or overwrite the entry for ``peer.key``. Returns True if new."""
        with self._lock:
            is_new = peer.key not in self._peers
            # Overwrite in place; dict keeps the first insertion position.
            self._peers[peer.key] = peer

        if is_new:
            logger.info(f"Discovered peer: {peer.display_name} at {peer.host}:{peer.port}")
        return is_new

    def sweep(self, now: float | None = None) -> list[Peer]:
        """Remove peers not seen within ``timeout`` seconds of ``now``."""
        if now is None:
            now = self.clock()

        with self._lock:
            stale = [
                peer for peer in self._peers.values()
                if now - peer.last_seen > self.timeout
            ]
            for peer in stale:
                del self._peers[peer.key]

        for peer in stale:
            logger.info(f"Peer lost: {peer.display_name} ({peer.host}:{peer.port})")
        return stale

    def snapshot(self) -> list[Peer]:
        """Copies of the current entries, in insertion order."""
        with self._lock:
            return [peer.model_copy() for peer in self._peers.values()]

    def clear(self) -> None:
        with self._lock:
            self._peers.clear()
