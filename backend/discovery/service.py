"""
mDNS/DNS-SD LAN discovery service.

Advertises this instance as ``RyFlow-<name>`` and browses for other
RyFlow instances on the same LAN segment. Every advertisement seen is
upserted into a :class:`PeerRegistry`; a background sweep drops peers
that have been silent for longer than ``PEER_TIMEOUT``.
"""

import asyncio
import logging
import socket

from zeroconf import (
    DNSOutgoing,
    DNSQuestion,
    DNSService,
    ServiceStateChange,
    current_time_millis,
)
from zeroconf.asyncio import AsyncServiceBrowser, AsyncServiceInfo, AsyncZeroconf

from config import (
    APP_ID,
    APP_VERSION,
    REFRESH_WAIT,
    RESOLVE_TIMEOUT_MS,
    SERVICE_NAME_PREFIX,
    SERVICE_TYPE,
    SWEEP_INTERVAL,
)
from discovery.models import DiscoveryStatus, Peer
from discovery.registry import PeerRegistry

logger = logging.getLogger(__name__)

# DNS record types and class used for sweep-time queries
_TYPE_SRV = 33
_TYPE_TXT = 16
_CLASS_IN = 1
_FLAGS_QUERY = 0x0000


def instance_name(name: str) -> str:
    """Strip the service type from a fully qualified DNS-SD name."""
    suffix = f".{SERVICE_TYPE}"
    if name.endswith(suffix):
        return name[: -len(suffix)]
    return name


def _decode_properties(properties: dict | None) -> dict[str, str]:
    decoded = {}
    for key, value in (properties or {}).items():
        if isinstance(key, bytes):
            key = key.decode("utf-8", "replace")
        if isinstance(value, bytes):
            value = value.decode("utf-8", "replace")
        decoded[key] = value
    return decoded


class DiscoveryService:
    """Manages LAN instance discovery via zeroconf."""

    def __init__(
        self,
        registry: PeerRegistry | None = None,
        sweep_interval: float = SWEEP_INTERVAL,
        refresh_wait: float = REFRESH_WAIT,
    ) -> None:
        self._registry = registry if registry is not None else PeerRegistry()
        self.sweep_interval = sweep_interval
        self.refresh_wait = refresh_wait

        self._zeroconf: AsyncZeroconf | None = None
        self._service_info: AsyncServiceInfo | None = None
        self._browser: AsyncServiceBrowser | None = None
        self._sweep_task: asyncio.Task | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._pending: set = set()
        # fully qualified service name -> registry key, for re-resolution
        self._names: dict[str, tuple[str, int]] = {}

        self._service_name: str | None = None
        self._running = False
        self.last_error: str | None = None

    @property
    def service_name(self) -> str | None:
        """Instance name this process advertises, e.g. ``RyFlow-Host``."""
        return self._service_name

    @property
    def running(self) -> bool:
        return self._running

    @property
    def standalone(self) -> bool:
        return not self._running

    async def start(self, display_name: str, port: int) -> bool:
        """Advertise this instance and browse for others.

        Returns False (standalone mode) if the network does not allow it;
        the reason is kept in ``last_error``.
        """
        self._service_name = f"{SERVICE_NAME_PREFIX}{display_name}"
        self._loop = asyncio.get_running_loop()
        self.last_error = None

        try:
            self._zeroconf = AsyncZeroconf()
            self._service_info = AsyncServiceInfo(
                SERVICE_TYPE,
                f"{self._service_name}.{SERVICE_TYPE}",
                parsed_addresses=[self._get_local_ip()],
                port=port,
                properties={"app": APP_ID, "version": APP_VERSION},
                server=f"{socket.gethostname().split('.')[0]}.local.",
            )
            await self._zeroconf.async_register_service(self._service_info)
            logger.info(f'Advertising as "{self._service_name}" on port {port}')

            self._browser = AsyncServiceBrowser(
                self._zeroconf.zeroconf,
                SERVICE_TYPE,
                handlers=[self._on_service_state_change],
            )
        except Exception as e:
            self.last_error = str(e) or e.__class__.__name__
            logger.warning(
                f"Discovery error: {self.last_error}. "
                "LAN discovery disabled, running in standalone mode"
            )
            await self.stop()
            return False

        self._running = True
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.info("Discovery service started")
        return True

    async def stop(self) -> None:
        """Withdraw the advertisement and stop browsing. Safe to repeat."""
        self._running = False

        if self._sweep_task:
            self._sweep_task.cancel()
            self._sweep_task = None

        for future in list(self._pending):
            future.cancel()
        self._pending.clear()

        if self._browser:
            try:
                await self._browser.async_cancel()
            except Exception as e:
                logger.debug(f"Browser cleanup: {e}")
            self._browser = None

        if self._zeroconf and self._service_info:
            try:
                await self._zeroconf.async_unregister_service(self._service_info)
            except Exception as e:
                logger.debug(f"Service unregister: {e}")
        self._service_info = None

        if self._zeroconf:
            try:
                await self._zeroconf.async_close()
            except Exception as e:
                logger.debug(f"Zeroconf close: {e}")
            self._zeroconf = None

        self._registry.clear()
        self._names.clear()
        logger.info("Discovery service stopped")

    def list_peers(self) -> list[Peer]:
        """Return a snapshot of currently known peers. Never does I/O."""
        return self._registry.snapshot()

    def status(self) -> DiscoveryStatus:
        return DiscoveryStatus(
            running=self._running,
            standalone=self.standalone,
            service_name=self._service_name,
            peer_count=len(self._registry),
            error=self.last_error,
        )

    def handle_advertisement(
        self,
        name: str,
        host: str,
        port: int,
        properties: dict | None,
        seen_at: float | None = None,
    ) -> Peer | None:
        """Upsert a resolved advertisement unless it is foreign or our own.

        ``seen_at`` is when the advertisement actually arrived; it defaults
        to now.
        """
        props = _decode_properties(properties)
        if props.get("app") != APP_ID:
            return None

        instance = instance_name(name)
        if instance == self._service_name:
            return None
        if not host or not port:
            return None

        display_name = instance
        if display_name.startswith(SERVICE_NAME_PREFIX):
            display_name = display_name[len(SERVICE_NAME_PREFIX):]

        peer = self._registry.observe(display_name, host, port, seen_at=seen_at)
        self._names[name] = peer.key
        return peer

    def sweep(self) -> list[Peer]:
        """Evict stale peers and forget their service names."""
        stale = self._registry.sweep()
        if stale:
            gone = {peer.key for peer in stale}
            self._names = {
                name: key for name, key in self._names.items() if key not in gone
            }
        return stale

    def _on_service_state_change(
        self,
        zeroconf,
        service_type: str,
        name: str,
        state_change: ServiceStateChange,
    ) -> None:
        """Browser callback; may run outside the event loop thread."""
        if not self._running or self._loop is None:
            return
        # Removal is left to the sweep.
        if state_change not in (ServiceStateChange.Added, ServiceStateChange.Updated):
            return

        future = asyncio.run_coroutine_threadsafe(self._resolve(name), self._loop)
        self._pending.add(future)
        future.add_done_callback(self._pending.discard)

    async def _resolve(self, name: str, refresh: bool = False) -> None:
        """Resolve ``name`` and record it.

        With ``refresh`` the observation time is taken from when the SRV
        record last arrived, because ``async_request`` answers from the
        cache without touching the network.
        """
        if self._zeroconf is None:
            return
        try:
            info = AsyncServiceInfo(SERVICE_TYPE, name)
            if not await info.async_request(self._zeroconf.zeroconf, RESOLVE_TIMEOUT_MS):
                return
            seen_at = None
            if refresh:
                seen_at = self._last_heard(name)
                if seen_at is None:
                    return
            addresses = info.parsed_addresses()
            host = addresses[0] if addresses else (info.server or "").rstrip(".")
            self.handle_advertisement(
                name, host, info.port, info.properties, seen_at=seen_at
            )
        except Exception as e:
            logger.debug(f"Ignoring unresolvable service {name}: {e}")

    def _last_heard(self, name: str) -> float | None:
        """Registry-clock time at which the SRV record for ``name`` arrived."""
        records = self._zeroconf.zeroconf.cache.async_entries_with_name(name)
        created = [r.created for r in records if isinstance(r, DNSService)]
        if not created:
            return None
        # zeroconf stamps records with its own monotonic millisecond clock
        age = max(current_time_millis() - max(created), 0) / 1000
        return self._registry.clock() - age

    def _query(self, name: str) -> None:
        """Ask the network for fresh SRV and TXT records of ``name``."""
        out = DNSOutgoing(_FLAGS_QUERY)
        out.add_question(DNSQuestion(name, _TYPE_SRV, _CLASS_IN))
        out.add_question(DNSQuestion(name, _TYPE_TXT, _CLASS_IN))
        self._zeroconf.zeroconf.async_send(out)

    async def _refresh_known(self) -> None:
        """Query every known peer and record the ones that answered."""
        names = list(self._names)
        if not names or self._zeroconf is None:
            return
        for name in names:
            try:
                self._query(name)
            except Exception as e:
                logger.debug(f"Query for {name} failed: {e}")
        await asyncio.sleep(self.refresh_wait)
        await asyncio.gather(*(self._resolve(name, refresh=True) for name in names))

    async def _sweep_loop(self) -> None:
        """Refresh known services, then remove the ones that went quiet."""
        while True:
            await asyncio.sleep(self.sweep_interval)
            # mDNS browsers only report changes, so ask live peers again.
            await self._refresh_known()
            self.sweep()

    def _get_local_ip(self) -> str:
        """Get the local IP address (best guess)."""
        try:
            # Connecting a UDP socket sends nothing, it only picks a route
            s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
            try:
                s.connect(("8.8.8.8", 80))
                return s.getsockname()[0]
            finally:
                s.close()
        except OSError:
            return "127.0.0.1"
