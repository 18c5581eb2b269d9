"""Persistent records for peers, tunnels and coordinator config."""

from gatehouse.store.models import (
    ApiKeyRecord,
    Peer,
    RegistrationIntent,
    Tunnel,
    TunnelStatus,
)
from gatehouse.store.sqlite import SQLiteStorage

__all__ = [
    "ApiKeyRecord",
    "Peer",
    "RegistrationIntent",
    "SQLiteStorage",
    "Tunnel",
    "TunnelStatus",
]
