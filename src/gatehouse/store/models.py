"""Persistent record types.

Rows are stored with ISO-8601 UTC timestamps. ``to_dict`` produces the JSON
shape the HTTP API returns; ``from_row`` rebuilds a record from a
``sqlite3.Row`` (or any mapping with the same keys).
"""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


def _utc_now() -> datetime:
    return datetime.now(UTC)


def _new_id() -> str:
    return str(uuid.uuid4())


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class TunnelStatus(str, Enum):
    ACTIVE = "active"
    CLOSED = "closed"
    ERROR = "error"


@dataclass
class Peer:
    """A registered client bound to one address and public key.

    The private key never reaches this record; it is handed to the client
    once, inside the rendered interface config.
    """

    name: str
    public_key: str
    address: str
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=_utc_now)
    last_seen: datetime | None = None
    is_active: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "publicKey": self.public_key,
            "assignedAddress": self.address,
            "createdAt": _iso(self.created_at),
            "lastSeen": _iso(self.last_seen),
            "isActive": self.is_active,
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Peer:
        return cls(
            id=row["id"],
            name=row["name"],
            public_key=row["public_key"],
            address=row["address"],
            created_at=_parse(row["created_at"]) or _utc_now(),
            last_seen=_parse(row["last_seen"]),
            is_active=bool(row["is_active"]),
        )


@dataclass
class Tunnel:
    """A mapping from a public subdomain to a peer's address and local port."""

    peer_id: str
    local_port: int
    subdomain: str
    id: str = field(default_factory=_new_id)
    start_time: datetime = field(default_factory=_utc_now)
    end_time: datetime | None = None
    status: TunnelStatus = TunnelStatus.ACTIVE
    bytes_sent: int = 0
    bytes_received: int = 0
    request_count: int = 0

    def to_dict(self, public_url: str | None = None) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "peerId": self.peer_id,
            "localPort": self.local_port,
            "subdomain": self.subdomain,
            "startTime": _iso(self.start_time),
            "endTime": _iso(self.end_time),
            "status": self.status.value,
            "bytesSent": self.bytes_sent,
            "bytesReceived": self.bytes_received,
            "requestCount": self.request_count,
        }
        if public_url is not None:
            data["publicUrl"] = public_url
        return data

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Tunnel:
        return cls(
            id=row["id"],
            peer_id=row["peer_id"],
            local_port=int(row["local_port"]),
            subdomain=row["subdomain"],
            start_time=_parse(row["start_time"]) or _utc_now(),
            end_time=_parse(row["end_time"]),
            status=TunnelStatus(row["status"]),
            bytes_sent=int(row["bytes_sent"] or 0),
            bytes_received=int(row["bytes_received"] or 0),
            request_count=int(row["request_count"] or 0),
        )


@dataclass
class RegistrationIntent:
    """A registration that has reached the interface but may not be persisted yet.

    Written before the peer is applied so the reconciler can attribute a
    live peer left behind by a crash.
    """

    peer_id: str
    name: str
    public_key: str
    address: str
    created_at: datetime = field(default_factory=_utc_now)

    def to_peer(self) -> Peer:
        return Peer(
            id=self.peer_id,
            name=self.name,
            public_key=self.public_key,
            address=self.address,
            created_at=self.created_at,
        )

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> RegistrationIntent:
        return cls(
            peer_id=row["peer_id"],
            name=row["name"],
            public_key=row["public_key"],
            address=row["address"],
            created_at=_parse(row["created_at"]) or _utc_now(),
        )


@dataclass
class ApiKeyRecord:
    id: str
    key_hash: str
    key_prefix: str
    created_at: datetime = field(default_factory=_utc_now)
    last_used_at: datetime | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> ApiKeyRecord:
        return cls(
            id=row["id"],
            key_hash=row["key_hash"],
            key_prefix=row["key_prefix"],
            created_at=_parse(row["created_at"]) or _utc_now(),
            last_used_at=_parse(row["last_used_at"]),
        )
