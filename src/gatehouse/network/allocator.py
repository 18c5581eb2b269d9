"""Address pool cursor and allocator.

Addresses are handed out by stepping a persisted cursor: the last octet is
incremented modulo 255 and, when it rolls over to 0, the third octet is
incremented modulo 255 as well. A step that leaves the configured range
wraps to the first usable host. The cursor is read, stepped and written
inside one SQLite write transaction while holding an asyncio lock, so two
concurrent allocations never observe the same cursor value.
"""

from __future__ import annotations

import asyncio
import ipaddress
from collections.abc import Callable, Iterable
from enum import Enum

import structlog

from gatehouse.core.exceptions import AddressConflictError, AddressPoolExhaustedError
from gatehouse.store.sqlite import CURSOR_KEY, SQLiteStorage

logger = structlog.get_logger()


class WraparoundPolicy(str, Enum):
    """What to do when the cursor lands on an address that is still in use."""

    SKIP_OCCUPIED = "skip-occupied"
    REJECT = "reject"


def step_address(last: ipaddress.IPv4Address) -> ipaddress.IPv4Address:
    """Advance one position using the two-octet rollover rule."""
    octets = list(last.packed)
    octets[3] = (octets[3] + 1) % 255
    if octets[3] == 0:
        octets[2] = (octets[2] + 1) % 255
    return ipaddress.IPv4Address(bytes(octets))


class AddressRange:
    """The usable client addresses of a network, minus reserved ones."""

    def __init__(
        self,
        network: ipaddress.IPv4Network,
        reserved: Iterable[ipaddress.IPv4Address] = (),
    ) -> None:
        self.network = network
        self.reserved = frozenset(reserved)
        self._first = next(
            (host for host in network.hosts() if host not in self.reserved),
            None,
        )
        if self._first is None:
            raise AddressPoolExhaustedError(f"Network {network} has no usable addresses")

    @property
    def first(self) -> ipaddress.IPv4Address:
        assert self._first is not None
        return self._first

    @property
    def capacity(self) -> int:
        hosts = max(self.network.num_addresses - 2, 1)
        return hosts - sum(1 for addr in self.reserved if addr in self.network)

    def contains(self, address: ipaddress.IPv4Address) -> bool:
        return (
            address in self.network
            and address != self.network.network_address
            and address != self.network.broadcast_address
            and address not in self.reserved
        )

    def next_after(self, last: str | None) -> ipaddress.IPv4Address:
        """The address following ``last``, wrapping back into range when needed."""
        try:
            current = ipaddress.IPv4Address(last) if last else None
        except ValueError:
            logger.warning("Ignoring unparseable address cursor", cursor=last)
            current = None
        if current is None:
            return self.first
        candidate = step_address(current)
        if not self.contains(candidate):
            return self.first
        return candidate


class AddressCursor:
    """Lock-guarded handle on the persisted last-assigned address."""

    def __init__(
        self,
        storage: SQLiteStorage,
        seed: ipaddress.IPv4Address,
        key: str = CURSOR_KEY,
    ) -> None:
        self._storage = storage
        self._seed = seed
        self._key = key
        self._lock = asyncio.Lock()

    async def advance(self, step: Callable[[str], str]) -> str:
        """Apply ``step(current) -> new`` and persist the result atomically."""
        async with self._lock:
            return self._storage.advance_config_value(
                self._key,
                lambda stored: step(stored or str(self._seed)),
            )


class AddressAllocator:
    """Hands out client addresses from the configured range.

    Example:
        allocator = AddressAllocator(cursor, AddressRange(network, [server_ip]))
        address = await allocator.allocate(occupied={"10.8.0.2"})
    """

    def __init__(
        self,
        cursor: AddressCursor,
        address_range: AddressRange,
        policy: WraparoundPolicy = WraparoundPolicy.SKIP_OCCUPIED,
    ) -> None:
        self.cursor = cursor
        self.range = address_range
        self.policy = policy

    async def allocate(self, occupied: Iterable[str] = ()) -> ipaddress.IPv4Address:
        """Step the cursor and return the new address.

        ``occupied`` holds addresses that must not be handed out again (rows,
        pending registrations and addresses still bound on the interface).
        """
        taken = set(occupied)

        def choose(last: str) -> str:
            candidate = self.range.next_after(last)
            if self.policy is WraparoundPolicy.REJECT:
                return str(candidate)
            for _ in range(self.range.capacity):
                if str(candidate) not in taken:
                    return str(candidate)
                candidate = self.range.next_after(str(candidate))
            raise AddressPoolExhaustedError(
                f"No free address left in {self.range.network}",
                details={"occupied": len(taken)},
            )

        value = await self.cursor.advance(choose)
        if value in taken:
            logger.warning("Allocated address is still in use", address=value)
            raise AddressConflictError(
                f"Address {value} is still bound to another peer",
                details={"address": value},
            )
        logger.debug("Address allocated", address=value, policy=self.policy.value)
        return ipaddress.IPv4Address(value)
