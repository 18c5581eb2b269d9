"""Address allocation and live interface control."""

from gatehouse.network.allocator import (
    AddressAllocator,
    AddressCursor,
    AddressRange,
    WraparoundPolicy,
    step_address,
)
from gatehouse.network.drivers import (
    KeyPair,
    LivePeer,
    MemoryInterfaceDriver,
    NetworkInterfaceDriver,
    WireGuardDriver,
    parse_wg_dump,
)
from gatehouse.network.peers import (
    PeerController,
    Registration,
    RegistrationState,
    render_client_config,
    render_interface_config,
)

__all__ = [
    "AddressAllocator",
    "AddressCursor",
    "AddressRange",
    "KeyPair",
    "LivePeer",
    "MemoryInterfaceDriver",
    "NetworkInterfaceDriver",
    "PeerController",
    "Registration",
    "RegistrationState",
    "WireGuardDriver",
    "WraparoundPolicy",
    "parse_wg_dump",
    "render_client_config",
    "render_interface_config",
    "step_address",
]
