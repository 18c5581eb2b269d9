"""Peer controller: keeps the live interface and the identity store in step.

Interface mutations are not transactional with store writes. Registration
therefore walks an explicit state machine and leaves a registration intent
row behind while the peer is live but not yet persisted, so the reconciler
can tell a half-finished registration from a stray peer after a crash.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from enum import Enum

import structlog

from gatehouse.core.exceptions import GatehouseError, PeerNotFoundError
from gatehouse.network.allocator import AddressAllocator
from gatehouse.network.drivers import KeyPair, LivePeer, NetworkInterfaceDriver
from gatehouse.observability.metrics import ACTIVE_PEERS, REGISTRATIONS
from gatehouse.store.models import Peer, RegistrationIntent
from gatehouse.store.sqlite import SERVER_PRIVATE_KEY, SERVER_PUBLIC_KEY, SQLiteStorage

logger = structlog.get_logger()

CLIENT_KEEPALIVE = 25


class RegistrationState(str, Enum):
    REQUESTED = "requested"
    KEY_GENERATED = "key_generated"
    ADDRESS_ALLOCATED = "address_allocated"
    INTERFACE_APPLIED = "interface_applied"
    PERSISTED = "persisted"
    FAILED = "failed"


@dataclass
class Registration:
    """Outcome of a successful registration.

    The private key exists only here; it is never written to the store.
    """

    peer: Peer
    private_key: str = field(repr=False)
    state: RegistrationState = RegistrationState.PERSISTED


def render_client_config(
    *,
    private_key: str,
    address: str,
    dns: str,
    server_public_key: str,
    endpoint: str,
    allowed_ips: str,
    keepalive: int = CLIENT_KEEPALIVE,
) -> str:
    """WireGuard config a client imports to join the network."""
    return (
        "[Interface]\n"
        f"PrivateKey = {private_key}\n"
        f"Address = {address}/32\n"
        f"DNS = {dns}\n"
        "\n"
        "[Peer]\n"
        f"PublicKey = {server_public_key}\n"
        f"Endpoint = {endpoint}\n"
        f"AllowedIPs = {allowed_ips}\n"
        f"PersistentKeepalive = {keepalive}\n"
    )


def render_interface_config(*, private_key: str, address: str, listen_port: int) -> str:
    """Server-side interface config for ``wg-quick``.

    Peers are not listed here; they are applied at runtime and restored by
    the reconciler.
    """
    return (
        "[Interface]\n"
        f"PrivateKey = {private_key}\n"
        f"Address = {address}\n"
        f"ListenPort = {listen_port}\n"
        "SaveConfig = false\n"
    )


class PeerController:
    """Applies and retracts peers on one interface.

    All interface mutations go through a single lock; ``wg set`` does not
    cope with overlapping writers.
    """

    def __init__(
        self,
        storage: SQLiteStorage,
        driver: NetworkInterfaceDriver,
        allocator: AddressAllocator,
    ) -> None:
        self.storage = storage
        self.driver = driver
        self.allocator = allocator
        self._lock = asyncio.Lock()

    @property
    def interface(self) -> str:
        return self.driver.interface

    async def apply_peer(self, peer: Peer) -> None:
        async with self._lock:
            await self.driver.apply_peer(peer.public_key, peer.address)

    async def retract_peer(self, public_key: str, *, missing_ok: bool = False) -> bool:
        """Remove ``public_key`` from the interface.

        Returns False when the peer was not bound and ``missing_ok`` is set;
        otherwise an absent peer raises PeerNotFoundError.
        """
        async with self._lock:
            live = {p.public_key for p in await self.driver.list_peers()}
            if public_key not in live:
                if missing_ok:
                    return False
                raise PeerNotFoundError(f"Peer {public_key} is not bound on {self.interface}")
            await self.driver.retract_peer(public_key)
            return True

    async def list_live_peers(self) -> list[LivePeer]:
        return await self.driver.list_peers()

    async def ensure_server_keys(self) -> KeyPair:
        """Return the server key pair, generating and storing it on first use."""
        private = self.storage.get_config_value(SERVER_PRIVATE_KEY)
        public = self.storage.get_config_value(SERVER_PUBLIC_KEY)
        if private and public:
            return KeyPair(private_key=private, public_key=public)
        keys = await self.driver.generate_keypair()
        self.storage.set_config_value(SERVER_PRIVATE_KEY, keys.private_key)
        self.storage.set_config_value(SERVER_PUBLIC_KEY, keys.public_key)
        logger.info("Generated server key pair", public_key=keys.public_key)
        return keys

    async def register(self, name: str) -> Registration:
        """Create a peer: key pair, address, interface entry, then record.

        Failures before the interface step leave nothing behind except an
        advanced address cursor. A failure after it leaves the intent row for
        the reconciler to resolve.
        """
        peer_id = str(uuid.uuid4())
        log = logger.bind(peer_id=peer_id, name=name, interface=self.interface)

        def transition(state: RegistrationState, **kw: object) -> RegistrationState:
            log.info("Registration state", state=state.value, **kw)
            return state

        state = transition(RegistrationState.REQUESTED)
        intent: RegistrationIntent | None = None
        try:
            keys = await self.driver.generate_keypair()
            state = transition(RegistrationState.KEY_GENERATED)

            live = await self.driver.list_peers()
            occupied = self.storage.occupied_addresses()
            for live_peer in live:
                occupied.update(live_peer.addresses)
            address = str(await self.allocator.allocate(occupied))
            state = transition(RegistrationState.ADDRESS_ALLOCATED, address=address)

            intent = RegistrationIntent(
                peer_id=peer_id,
                name=name,
                public_key=keys.public_key,
                address=address,
            )
            self.storage.add_intent(intent)
            try:
                async with self._lock:
                    await self.driver.apply_peer(keys.public_key, address)
            except GatehouseError:
                # The client never receives this key pair, so nothing is worth keeping.
                self.storage.delete_intent(peer_id)
                intent = None
                raise
            state = transition(RegistrationState.INTERFACE_APPLIED)

            peer = intent.to_peer()
            self.storage.persist_registration(peer)
            state = transition(RegistrationState.PERSISTED)
        except Exception as e:
            REGISTRATIONS.labels(result="failed").inc()
            log.error(
                "Registration failed",
                state=state.value,
                error=str(e),
                pending_intent=intent is not None,
            )
            raise

        REGISTRATIONS.labels(result="ok").inc()
        ACTIVE_PEERS.inc()
        return Registration(peer=peer, private_key=keys.private_key, state=state)

    async def remove(self, peer: Peer) -> None:
        """Retract the peer (if bound) and delete its row and tunnels."""
        await self.retract_peer(peer.public_key, missing_ok=True)
        if self.storage.delete_peer(peer.id) and peer.is_active:
            ACTIVE_PEERS.dec()
        logger.info("Peer removed", peer_id=peer.id, address=peer.address)

    async def set_active(self, peer: Peer, is_active: bool) -> Peer:
        """Activate (re-apply) or deactivate (retract) a peer."""
        if is_active:
            await self.apply_peer(peer)
        else:
            await self.retract_peer(peer.public_key, missing_ok=True)
        self.storage.set_peer_active(peer.id, is_active)
        if is_active and not peer.is_active:
            ACTIVE_PEERS.inc()
        elif peer.is_active and not is_active:
            ACTIVE_PEERS.dec()
        peer.is_active = is_active
        logger.info("Peer status changed", peer_id=peer.id, is_active=is_active)
        return peer
