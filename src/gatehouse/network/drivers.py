"""Network interface drivers.

The coordinator touches the live WireGuard interface only through
``NetworkInterfaceDriver``. ``WireGuardDriver`` shells out to ``wg`` and
``wg-quick``; ``MemoryInterfaceDriver`` keeps the peer table in a dict for
tests and ``--dry-run``.
"""

from __future__ import annotations

import base64
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

import structlog

from gatehouse.core.exceptions import NetworkCommandFailed
from gatehouse.core.process import run_command

logger = structlog.get_logger()


@dataclass
class KeyPair:
    private_key: str = field(repr=False)
    public_key: str


@dataclass
class LivePeer:
    """One row of the interface's peer table."""

    public_key: str
    allowed_ips: list[str] = field(default_factory=list)
    endpoint: str | None = None
    latest_handshake: datetime | None = None
    rx_bytes: int = 0
    tx_bytes: int = 0

    @property
    def addresses(self) -> list[str]:
        """Bound host addresses without their prefix length."""
        return [ip.split("/", 1)[0] for ip in self.allowed_ips]

    def to_dict(self) -> dict[str, object]:
        return {
            "publicKey": self.public_key,
            "allowedIps": self.allowed_ips,
            "endpoint": self.endpoint,
            "lastHandshake": self.latest_handshake.isoformat() if self.latest_handshake else None,
            "rxBytes": self.rx_bytes,
            "txBytes": self.tx_bytes,
        }


def _none(value: str) -> str | None:
    return None if value in ("", "(none)") else value


def parse_wg_dump(output: str) -> list[LivePeer]:
    """Parse ``wg show <interface> dump``.

    The first line describes the interface itself; every following line is a
    peer: public-key, preshared-key, endpoint, allowed-ips, latest-handshake,
    transfer-rx, transfer-tx, persistent-keepalive.
    """
    peers: list[LivePeer] = []
    for line in output.strip().splitlines()[1:]:
        parts = line.split("\t")
        if len(parts) < 7:
            continue
        allowed = _none(parts[3])
        handshake = int(parts[4]) if parts[4].isdigit() else 0
        peers.append(
            LivePeer(
                public_key=parts[0],
                endpoint=_none(parts[2]),
                allowed_ips=allowed.split(",") if allowed else [],
                latest_handshake=datetime.fromtimestamp(handshake, UTC) if handshake else None,
                rx_bytes=int(parts[5]) if parts[5].isdigit() else 0,
                tx_bytes=int(parts[6]) if parts[6].isdigit() else 0,
            )
        )
    return peers


class NetworkInterfaceDriver(ABC):
    """Capability interface over one live VPN interface."""

    interface: str

    @abstractmethod
    async def generate_keypair(self) -> KeyPair: ...

    @abstractmethod
    async def apply_peer(self, public_key: str, address: str) -> None:
        """Bind ``public_key`` to ``address``/32 on the interface."""

    @abstractmethod
    async def retract_peer(self, public_key: str) -> None: ...

    @abstractmethod
    async def list_peers(self) -> list[LivePeer]: ...

    @abstractmethod
    async def is_up(self) -> bool: ...

    @abstractmethod
    async def up(self, config_path: Path) -> None: ...

    @abstractmethod
    async def down(self) -> None: ...


class WireGuardDriver(NetworkInterfaceDriver):
    """Drives a kernel WireGuard interface with the ``wg`` tools."""

    def __init__(
        self,
        interface: str = "wg0",
        *,
        use_sudo: bool = True,
        timeout: float = 15.0,
        config_path: Path | None = None,
    ) -> None:
        self.interface = interface
        self.use_sudo = use_sudo
        self.timeout = timeout
        self.config_path = config_path

    def _argv(self, *args: str, privileged: bool = True) -> list[str]:
        prefix = ["sudo"] if self.use_sudo and privileged else []
        return [*prefix, *args]

    async def _run(self, *args: str, input_text: str | None = None, privileged: bool = True):
        return await run_command(
            self._argv(*args, privileged=privileged),
            timeout=self.timeout,
            input_text=input_text,
            error_cls=NetworkCommandFailed,
        )

    async def generate_keypair(self) -> KeyPair:
        private = (await self._run("wg", "genkey", privileged=False)).stdout.strip()
        public = (
            await self._run("wg", "pubkey", input_text=private + "\n", privileged=False)
        ).stdout.strip()
        return KeyPair(private_key=private, public_key=public)

    async def apply_peer(self, public_key: str, address: str) -> None:
        await self._run(
            "wg", "set", self.interface, "peer", public_key, "allowed-ips", f"{address}/32"
        )
        logger.info("Peer applied", interface=self.interface, address=address)

    async def retract_peer(self, public_key: str) -> None:
        await self._run("wg", "set", self.interface, "peer", public_key, "remove")
        logger.info("Peer retracted", interface=self.interface, public_key=public_key)

    async def list_peers(self) -> list[LivePeer]:
        result = await self._run("wg", "show", self.interface, "dump")
        return parse_wg_dump(result.stdout)

    async def is_up(self) -> bool:
        result = await run_command(
            self._argv("wg", "show", self.interface),
            timeout=self.timeout,
            error_cls=NetworkCommandFailed,
            check=False,
        )
        return result.returncode == 0

    async def up(self, config_path: Path) -> None:
        await self._run("wg-quick", "up", str(config_path))
        logger.info("Interface up", interface=self.interface)

    async def down(self) -> None:
        target = str(self.config_path) if self.config_path else self.interface
        await self._run("wg-quick", "down", target)
        logger.info("Interface down", interface=self.interface)


class MemoryInterfaceDriver(NetworkInterfaceDriver):
    """In-process stand-in for a WireGuard interface.

    ``fail_on`` names driver methods that should raise NetworkCommandFailed,
    which lets tests exercise partial-failure paths.
    """

    def __init__(self, interface: str = "wg0", *, up: bool = True) -> None:
        self.interface = interface
        self.peers: dict[str, LivePeer] = {}
        self.running = up
        self.fail_on: set[str] = set()
        self.calls: list[tuple[str, ...]] = []

    def _check(self, operation: str, *args: str) -> None:
        self.calls.append((operation, *args))
        if operation in self.fail_on:
            raise NetworkCommandFailed(
                f"wg {operation} failed",
                command=["wg", operation, *args],
                returncode=1,
                stderr="injected failure",
            )

    async def generate_keypair(self) -> KeyPair:
        self._check("genkey")
        private = base64.b64encode(secrets.token_bytes(32)).decode()
        public = base64.b64encode(secrets.token_bytes(32)).decode()
        return KeyPair(private_key=private, public_key=public)

    async def apply_peer(self, public_key: str, address: str) -> None:
        self._check("apply", public_key, address)
        if not self.running:
            raise NetworkCommandFailed(
                f"Unable to access interface: {self.interface} is down",
                command=["wg", "set", self.interface],
                returncode=1,
            )
        self.peers[public_key] = LivePeer(public_key=public_key, allowed_ips=[f"{address}/32"])

    async def retract_peer(self, public_key: str) -> None:
        self._check("retract", public_key)
        self.peers.pop(public_key, None)

    async def list_peers(self) -> list[LivePeer]:
        self._check("list")
        if not self.running:
            return []
        return list(self.peers.values())

    async def is_up(self) -> bool:
        return self.running

    async def up(self, config_path: Path) -> None:
        self._check("up", str(config_path))
        self.running = True

    async def down(self) -> None:
        self._check("down")
        self.running = False
        self.peers.clear()
