"""Coordinator: wires the store, drivers and lifecycle components together.

Owns the boot sequence (schema, base domain seed, server keys, optional
interface bring-up, reconcile) and the background activity sampler.
"""

from __future__ import annotations

import asyncio
import contextlib
import re
from pathlib import Path
from typing import Any

import structlog

from gatehouse.core.config import ServerSettings
from gatehouse.core.exceptions import (
    ConfigurationMissingError,
    GatehouseError,
    PeerNotFoundError,
    ValidationError,
)
from gatehouse.network.allocator import (
    AddressAllocator,
    AddressCursor,
    AddressRange,
    WraparoundPolicy,
)
from gatehouse.network.drivers import (
    KeyPair,
    LivePeer,
    MemoryInterfaceDriver,
    NetworkInterfaceDriver,
    WireGuardDriver,
)
from gatehouse.network.peers import (
    PeerController,
    render_client_config,
    render_interface_config,
)
from gatehouse.observability.metrics import ACTIVE_PEERS, ACTIVE_TUNNELS
from gatehouse.proxy.drivers import MemoryProxyDriver, NginxDriver, ReverseProxyDriver
from gatehouse.proxy.routes import RouteProvisioner, RouteSpec
from gatehouse.reconcile import RECOVERABLE, Reconciler, ReconcileReport
from gatehouse.security.apikeys import APIKeyService
from gatehouse.store.models import Peer, TunnelStatus
from gatehouse.store.sqlite import BASE_DOMAIN_KEY, SQLiteStorage
from gatehouse.tunnels.manager import TunnelManager

logger = structlog.get_logger()

# Intents younger than this may belong to a registration still in flight.
INTENT_GRACE_SECONDS = 60.0
MAX_NAME_LENGTH = 64

_DOMAIN_RE = re.compile(r"^(?=.{1,253}$)([a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z]{2,63}$")


def validate_domain(domain: str) -> str:
    value = domain.strip().lower().rstrip(".")
    if not _DOMAIN_RE.match(value):
        raise ValidationError(f"Invalid domain: {domain!r}")
    return value


def _write_private(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.tmp")
    tmp.write_text(content, encoding="utf-8")
    tmp.chmod(0o600)
    tmp.replace(path)


class Coordinator:
    """The lifecycle coordinator for one interface and one proxy."""

    def __init__(
        self,
        settings: ServerSettings,
        storage: SQLiteStorage,
        interface_driver: NetworkInterfaceDriver,
        proxy_driver: ReverseProxyDriver,
    ) -> None:
        self.settings = settings
        self.storage = storage
        self.address_range = AddressRange(settings.network, [settings.server_address])
        self.allocator = AddressAllocator(
            AddressCursor(storage, settings.server_address),
            self.address_range,
            WraparoundPolicy(settings.address_policy),
        )
        self.peers = PeerController(storage, interface_driver, self.allocator)
        self.provisioner = RouteProvisioner(
            proxy_driver,
            tls_cert_dir=settings.tls_cert_dir,
            log_dir=settings.nginx_log_dir,
        )
        self.tunnels = TunnelManager(storage, self.provisioner)
        self.reconciler = Reconciler(
            storage,
            self.peers,
            self.tunnels,
            self.provisioner,
            retries=settings.reset_retries,
            manage_interface=settings.wg_manage_interface,
            state_paths=(settings.interface_config_path,) if settings.wg_manage_interface else (),
        )
        self.api_keys = APIKeyService(storage)
        self.server_keys: KeyPair | None = None
        self.initial_api_key: str | None = None
        self.last_report: ReconcileReport | None = None
        self._shutdown_event = asyncio.Event()
        self._activity_task: asyncio.Task | None = None
        self._transfer: dict[str, tuple[int, int]] = {}

    @classmethod
    def from_settings(cls, settings: ServerSettings, *, dry_run: bool = False) -> Coordinator:
        """Build a coordinator with real drivers, or in-memory ones for ``dry_run``."""
        storage = SQLiteStorage(settings.database_path)
        interface_driver: NetworkInterfaceDriver
        proxy_driver: ReverseProxyDriver
        if dry_run:
            interface_driver = MemoryInterfaceDriver(settings.wg_interface)
            proxy_driver = MemoryProxyDriver()
        else:
            interface_driver = WireGuardDriver(
                settings.wg_interface,
                use_sudo=settings.use_sudo,
                timeout=settings.command_timeout,
                config_path=(
                    settings.interface_config_path if settings.wg_manage_interface else None
                ),
            )
            proxy_driver = NginxDriver(
                settings.nginx_sites_path,
                use_sudo=settings.use_sudo,
                timeout=settings.reload_timeout,
            )
        return cls(settings, storage, interface_driver, proxy_driver)

    @property
    def interface_driver(self) -> NetworkInterfaceDriver:
        return self.peers.driver

    def initialize(self) -> None:
        """Prepare the store. Safe to call from CLI commands that never serve."""
        self.storage.initialize()
        if self.settings.base_domain:
            domain = validate_domain(self.settings.base_domain)
            self.storage.set_config_value(BASE_DOMAIN_KEY, domain)
        if self.initial_api_key is None:
            self.initial_api_key = self.api_keys.ensure_key()

    async def start(self) -> None:
        """Run the boot sequence."""
        self.initialize()
        self.server_keys = await self.peers.ensure_server_keys()

        driver = self.interface_driver
        if self.settings.wg_manage_interface and not await driver.is_up():
            await self.write_interface_config()
            await driver.up(self.settings.interface_config_path)

        if self.settings.reconcile_on_start:
            self.last_report = await self.reconciler.reconcile()
        self.refresh_gauges()

        if self.settings.activity_interval > 0:
            self._activity_task = asyncio.create_task(self._activity_loop())
        logger.info(
            "Coordinator started",
            interface=driver.interface,
            network=str(self.settings.network),
            base_domain=self.storage.get_config_value(BASE_DOMAIN_KEY),
        )

    async def stop(self) -> None:
        self._shutdown_event.set()
        if self._activity_task:
            self._activity_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._activity_task
            self._activity_task = None
        self.storage.close()
        logger.info("Coordinator stopped")

    async def write_interface_config(self) -> Path:
        keys = self.server_keys or await self.peers.ensure_server_keys()
        path = self.settings.interface_config_path
        content = render_interface_config(
            private_key=keys.private_key,
            address=f"{self.settings.server_address}/{self.settings.network.prefixlen}",
            listen_port=self.settings.wg_listen_port,
        )
        await asyncio.to_thread(_write_private, path, content)
        logger.info("Interface config written", path=str(path))
        return path

    def refresh_gauges(self) -> None:
        ACTIVE_PEERS.set(len(self.storage.list_peers(active_only=True)))
        ACTIVE_TUNNELS.set(len(self.tunnels.list_active()))

    def endpoint(self) -> str:
        if self.settings.endpoint:
            return self.settings.endpoint
        domain = self.storage.get_config_value(BASE_DOMAIN_KEY)
        if not domain:
            raise ConfigurationMissingError(
                "Neither an endpoint nor a base domain is configured for client configs"
            )
        return f"{domain}:{self.settings.wg_listen_port}"

    # Clients

    async def register_client(self, name: str) -> dict[str, Any]:
        """Register a peer and return it with its rendered client config."""
        name = name.strip()
        if not name or len(name) > MAX_NAME_LENGTH:
            raise ValidationError(f"name must be 1-{MAX_NAME_LENGTH} characters")
        endpoint = self.endpoint()
        server_keys = self.server_keys or await self.peers.ensure_server_keys()

        registration = await self.peers.register(name)
        config = render_client_config(
            private_key=registration.private_key,
            address=registration.peer.address,
            dns=self.settings.wg_dns,
            server_public_key=server_keys.public_key,
            endpoint=endpoint,
            allowed_ips=str(self.settings.network),
        )
        peer = registration.peer
        return {
            "peer": {"id": peer.id, "name": peer.name, "assignedAddress": peer.address},
            "interfaceConfig": config,
        }

    def get_client(self, peer_id: str) -> Peer:
        peer = self.storage.get_peer(peer_id)
        if peer is None:
            raise PeerNotFoundError(f"Peer {peer_id} not found")
        return peer

    def list_clients(self, include_inactive: bool = False) -> list[Peer]:
        return self.storage.list_peers(active_only=not include_inactive)

    async def live_peer(self, peer: Peer) -> LivePeer | None:
        """The peer's entry on the interface, or None when it is not bound."""
        for live in await self.peers.list_live_peers():
            if live.public_key == peer.public_key:
                return live
        return None

    async def set_client_active(self, peer_id: str, is_active: bool) -> Peer:
        """Deactivating closes the peer's tunnels and retracts it; activating re-applies it."""
        peer = self.get_client(peer_id)
        if not is_active:
            await self.tunnels.close_peer_tunnels(peer_id)
        return await self.peers.set_active(peer, is_active)

    async def remove_client(self, peer_id: str) -> Peer:
        peer = self.get_client(peer_id)
        await self.tunnels.close_peer_tunnels(peer_id)
        await self.peers.remove(peer)
        self.tunnels.forget_peer(peer_id)
        return peer

    # Maintenance

    async def reconcile(self, intent_grace: float = INTENT_GRACE_SECONDS) -> ReconcileReport:
        self.last_report = await self.reconciler.reconcile(intent_grace=intent_grace)
        self.refresh_gauges()
        return self.last_report

    async def reset(self, purge: bool = False) -> ReconcileReport:
        report = await self.reconciler.reset(purge=purge)
        self._transfer.clear()
        self.tunnels.forget_all()
        if purge:
            self.server_keys = None
            self.initial_api_key = None
        self.refresh_gauges()
        return report

    async def set_base_domain(self, domain: str) -> str:
        """Store a new base domain and re-render every active route for it."""
        value = validate_domain(domain)
        self.storage.set_config_value(BASE_DOMAIN_KEY, value)
        rewritten = 0
        for tunnel in self.tunnels.list_active():
            peer = self.storage.get_peer(tunnel.peer_id)
            if peer is None:
                continue
            await self.provisioner.write(RouteSpec.for_tunnel(tunnel, peer, value))
            rewritten += 1
        if rewritten:
            await self.provisioner.reload()
        logger.info("Base domain set", domain=value, routes=rewritten)
        return value

    def health(self) -> dict[str, Any]:
        return {"status": "ok", "database": self.storage.ping()}

    # Activity sampling

    async def sync_activity(self) -> int:
        """Update last-seen times and credit transfer deltas to active tunnels.

        Returns the number of peers that were credited.
        """
        credited = 0
        for live in await self.peers.list_live_peers():
            peer = self.storage.get_peer_by_public_key(live.public_key)
            if peer is None:
                continue
            if live.latest_handshake is not None:
                self.storage.touch_peer(peer.id, live.latest_handshake)

            previous = self._transfer.get(live.public_key)
            self._transfer[live.public_key] = (live.rx_bytes, live.tx_bytes)
            if previous is None:
                continue
            rx = live.rx_bytes - previous[0]
            tx = live.tx_bytes - previous[1]
            if rx < 0 or tx < 0:
                # Counters restart with the interface.
                rx, tx = live.rx_bytes, live.tx_bytes
            if not rx and not tx:
                continue
            active = self.storage.list_tunnels(status=TunnelStatus.ACTIVE, peer_id=peer.id)
            if active:
                self.tunnels.record_traffic(active[0].id, bytes_sent=tx, bytes_received=rx)
                credited += 1
        return credited

    async def _activity_loop(self) -> None:
        """Periodically sample the interface."""
        while not self._shutdown_event.is_set():
            try:
                await asyncio.sleep(self.settings.activity_interval)
                await self.sync_activity()
            except asyncio.CancelledError:
                break
            except RECOVERABLE as e:
                message = e.message if isinstance(e, GatehouseError) else str(e)
                logger.error("Activity sync failed", error=message)
