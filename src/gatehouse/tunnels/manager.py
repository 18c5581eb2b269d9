"""Tunnel lifecycle manager.

Enforces one active tunnel per peer and subdomain uniqueness among tunnels
that are not closed. The tunnel row is written before its route is
provisioned, so a crash in between leaves a record the reconciler can act on
rather than an untracked route.
"""

from __future__ import annotations

import asyncio
import re
import secrets
import string
from datetime import UTC, datetime

import structlog

from gatehouse.core.exceptions import (
    ConfigurationMissingError,
    ConflictError,
    GatehouseError,
    PeerNotFoundError,
    ProxyReloadFailed,
    SubdomainTakenError,
    TunnelNotFoundError,
    ValidationError,
)
from gatehouse.observability.metrics import ACTIVE_TUNNELS, TUNNEL_OPERATIONS
from gatehouse.proxy.routes import RouteProvisioner
from gatehouse.store.models import Peer, Tunnel, TunnelStatus
from gatehouse.store.sqlite import BASE_DOMAIN_KEY, SQLiteStorage

logger = structlog.get_logger()

SUBDOMAIN_ALPHABET = string.ascii_lowercase + string.digits
SUBDOMAIN_LENGTH = 8
MAX_SUBDOMAIN_ATTEMPTS = 10

_LABEL_RE = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$")


def generate_subdomain(length: int = SUBDOMAIN_LENGTH) -> str:
    return "".join(secrets.choice(SUBDOMAIN_ALPHABET) for _ in range(length))


def validate_subdomain(subdomain: str) -> str:
    """Normalize a requested subdomain and check it is a single DNS label."""
    value = subdomain.strip().lower()
    if not _LABEL_RE.match(value):
        raise ValidationError(
            f"Invalid subdomain '{subdomain}': use 1-63 letters, digits or hyphens, "
            "not starting or ending with a hyphen"
        )
    return value


def validate_port(local_port: int) -> int:
    if isinstance(local_port, bool) or not isinstance(local_port, int):
        raise ValidationError("localPort must be an integer")
    if not 1 <= local_port <= 65535:
        raise ValidationError(f"localPort {local_port} is out of range (1-65535)")
    return local_port


class TunnelManager:
    """Creates, replaces and closes tunnels.

    Example:
        manager = TunnelManager(storage, provisioner)
        tunnel = await manager.create_tunnel(peer.id, 3000, "alpha")
        print(manager.public_url(tunnel))  # https://alpha.<base domain>
    """

    def __init__(self, storage: SQLiteStorage, provisioner: RouteProvisioner) -> None:
        self.storage = storage
        self.provisioner = provisioner
        self._peer_locks: dict[str, asyncio.Lock] = {}

    def lock_for(self, peer_id: str) -> asyncio.Lock:
        lock = self._peer_locks.get(peer_id)
        if lock is None:
            lock = self._peer_locks[peer_id] = asyncio.Lock()
        return lock

    def forget_peer(self, peer_id: str) -> None:
        """Drop the peer's lock once the peer is gone; a held lock is kept."""
        lock = self._peer_locks.get(peer_id)
        if lock is not None and not lock.locked():
            del self._peer_locks[peer_id]

    def forget_all(self) -> None:
        for peer_id in list(self._peer_locks):
            self.forget_peer(peer_id)

    def base_domain(self) -> str:
        domain = self.storage.get_config_value(BASE_DOMAIN_KEY)
        if not domain:
            raise ConfigurationMissingError("Base domain is not configured")
        return domain

    def public_url(self, tunnel: Tunnel) -> str:
        """Computed at read time; the base domain may have changed since creation."""
        return f"https://{tunnel.subdomain}.{self.base_domain()}"

    def view(self, tunnel: Tunnel) -> dict[str, object]:
        return tunnel.to_dict(public_url=self.public_url(tunnel))

    async def create_tunnel(
        self,
        peer_id: str,
        local_port: int,
        subdomain: str | None = None,
    ) -> Tunnel:
        """Open a tunnel for ``peer_id``, closing the one it replaces.

        Input and lookup errors are raised before anything changes. A
        provisioning failure marks the new tunnel ``error`` and re-raises.
        """
        validate_port(local_port)
        requested = validate_subdomain(subdomain) if subdomain is not None else None

        peer = self.storage.get_peer(peer_id)
        if peer is None:
            raise PeerNotFoundError(f"Peer {peer_id} not found")
        if not peer.is_active:
            raise ConflictError(f"Peer {peer_id} is inactive")
        base_domain = self.base_domain()

        async with self.lock_for(peer_id):
            if requested is not None:
                holder = self.storage.find_open_tunnel_by_subdomain(requested)
                if holder is not None and holder.peer_id != peer_id:
                    TUNNEL_OPERATIONS.labels(operation="create", result="conflict").inc()
                    raise SubdomainTakenError(f"Subdomain '{requested}' is already in use")

            for prior in self.storage.list_open_tunnels(peer_id):
                try:
                    await self._close(prior)
                except ProxyReloadFailed as e:
                    # The reload after provisioning below picks up the removal.
                    logger.warning(
                        "Reload after replacing tunnel failed",
                        tunnel_id=prior.id,
                        error=str(e),
                    )
                logger.info("Replaced tunnel", peer_id=peer_id, tunnel_id=prior.id)

            tunnel = self._insert(peer, local_port, requested)
            try:
                await self.provisioner.provision(tunnel, peer, base_domain)
            except GatehouseError as e:
                self.storage.update_tunnel_status(tunnel.id, TunnelStatus.ERROR)
                tunnel.status = TunnelStatus.ERROR
                TUNNEL_OPERATIONS.labels(operation="create", result="error").inc()
                # The next reload of any tunnel must not pick this artifact up.
                try:
                    await self.provisioner.driver.remove_route(tunnel.id)
                except (GatehouseError, OSError) as cleanup_error:
                    logger.warning(
                        "Could not remove route of failed tunnel",
                        tunnel_id=tunnel.id,
                        error=str(cleanup_error),
                    )
                logger.error(
                    "Route provisioning failed",
                    tunnel_id=tunnel.id,
                    subdomain=tunnel.subdomain,
                    error=e.message,
                    code=e.code,
                )
                raise

        TUNNEL_OPERATIONS.labels(operation="create", result="ok").inc()
        ACTIVE_TUNNELS.inc()
        logger.info(
            "Tunnel created",
            tunnel_id=tunnel.id,
            peer_id=peer_id,
            subdomain=tunnel.subdomain,
            local_port=local_port,
        )
        return tunnel

    def _insert(self, peer: Peer, local_port: int, subdomain: str | None) -> Tunnel:
        if subdomain is not None:
            tunnel = Tunnel(peer_id=peer.id, local_port=local_port, subdomain=subdomain)
            self.storage.insert_tunnel(tunnel)
            return tunnel

        for _ in range(MAX_SUBDOMAIN_ATTEMPTS):
            candidate = generate_subdomain()
            if self.storage.find_open_tunnel_by_subdomain(candidate) is not None:
                continue
            tunnel = Tunnel(peer_id=peer.id, local_port=local_port, subdomain=candidate)
            try:
                self.storage.insert_tunnel(tunnel)
            except SubdomainTakenError:
                continue
            return tunnel
        raise SubdomainTakenError("Could not find a free random subdomain")

    async def close_tunnel(self, tunnel_id: str) -> Tunnel:
        """Close a tunnel and remove its route. Closing twice is harmless."""
        tunnel = self.get(tunnel_id)
        async with self.lock_for(tunnel.peer_id):
            current = self.storage.get_tunnel(tunnel_id)
            if current is None:
                raise TunnelNotFoundError(f"Tunnel {tunnel_id} not found")
            return await self._close(current)

    async def close_peer_tunnels(self, peer_id: str) -> list[Tunnel]:
        async with self.lock_for(peer_id):
            return [await self._close(t) for t in self.storage.list_open_tunnels(peer_id)]

    async def _close(self, tunnel: Tunnel) -> Tunnel:
        was_active = tunnel.status == TunnelStatus.ACTIVE
        if tunnel.status != TunnelStatus.CLOSED:
            self.storage.update_tunnel_status(
                tunnel.id, TunnelStatus.CLOSED, end_time=datetime.now(UTC)
            )
            if was_active:
                ACTIVE_TUNNELS.dec()
            TUNNEL_OPERATIONS.labels(operation="close", result="ok").inc()
            logger.info("Tunnel closed", tunnel_id=tunnel.id, subdomain=tunnel.subdomain)
        # Always attempted so a retried close never leaves a route behind.
        await self.provisioner.deprovision(tunnel.id)
        return self.storage.get_tunnel(tunnel.id) or tunnel

    def get(self, tunnel_id: str) -> Tunnel:
        tunnel = self.storage.get_tunnel(tunnel_id)
        if tunnel is None:
            raise TunnelNotFoundError(f"Tunnel {tunnel_id} not found")
        return tunnel

    def list_active(self) -> list[Tunnel]:
        return self.storage.list_tunnels(status=TunnelStatus.ACTIVE)

    def list_tunnels(self, status: TunnelStatus | None = None) -> list[Tunnel]:
        return self.storage.list_tunnels(status=status)

    def record_traffic(
        self,
        tunnel_id: str,
        bytes_sent: int = 0,
        bytes_received: int = 0,
        requests: int = 0,
    ) -> Tunnel:
        """Add traffic deltas to a tunnel's cumulative counters."""
        if min(bytes_sent, bytes_received, requests) < 0:
            raise ValidationError("Traffic deltas must not be negative")
        if not self.storage.add_tunnel_traffic(tunnel_id, bytes_sent, bytes_received, requests):
            raise TunnelNotFoundError(f"Tunnel {tunnel_id} not found")
        return self.get(tunnel_id)
