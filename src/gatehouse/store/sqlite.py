"""SQLite identity store.

Holds peers, tunnels, pending registration intents, API key hashes and a
flat key-value config table (address-pool cursor, base domain, server key
pair). The store is authoritative for records only; the live interface and
the proxy's route files are reconciled against it, never the reverse.
"""

from __future__ import annotations

import sqlite3
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

import structlog

from gatehouse.core.exceptions import (
    AddressConflictError,
    PeerNotFoundError,
    SubdomainTakenError,
)
from gatehouse.store.models import (
    ApiKeyRecord,
    Peer,
    RegistrationIntent,
    Tunnel,
    TunnelStatus,
)

logger = structlog.get_logger()

# Config table keys
BASE_DOMAIN_KEY = "base_domain"
CURSOR_KEY = "last_assigned_ip"
SERVER_PUBLIC_KEY = "server_public_key"
SERVER_PRIVATE_KEY = "server_private_key"

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS peers (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        public_key TEXT UNIQUE NOT NULL,
        address TEXT UNIQUE NOT NULL,
        created_at TEXT NOT NULL,
        last_seen TEXT,
        is_active INTEGER NOT NULL DEFAULT 1
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tunnels (
        id TEXT PRIMARY KEY,
        peer_id TEXT NOT NULL,
        local_port INTEGER NOT NULL,
        subdomain TEXT NOT NULL,
        start_time TEXT NOT NULL,
        end_time TEXT,
        status TEXT NOT NULL DEFAULT 'active',
        bytes_sent INTEGER NOT NULL DEFAULT 0,
        bytes_received INTEGER NOT NULL DEFAULT 0,
        request_count INTEGER NOT NULL DEFAULT 0,
        FOREIGN KEY (peer_id) REFERENCES peers(id) ON DELETE CASCADE
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_tunnels_open_subdomain
    ON tunnels(subdomain) WHERE status != 'closed'
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_tunnels_peer_status
    ON tunnels(peer_id, status)
    """,
    """
    CREATE TABLE IF NOT EXISTS registration_intents (
        peer_id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        public_key TEXT UNIQUE NOT NULL,
        address TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS config (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS api_keys (
        id TEXT PRIMARY KEY,
        key_hash TEXT UNIQUE NOT NULL,
        key_prefix TEXT NOT NULL,
        created_at TEXT NOT NULL,
        last_used_at TEXT
    )
    """,
)


class SQLiteStorage:
    """File-backed store for a single coordinator process."""

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = str(db_path)
        self._local = threading.local()
        self._initialized = False

    def _get_connection(self) -> sqlite3.Connection:
        """Get thread-local database connection."""
        if not hasattr(self._local, "connection"):
            conn = sqlite3.connect(self.db_path, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")
            self._local.connection = conn
        return self._local.connection

    @contextmanager
    def cursor(self) -> Iterator[sqlite3.Cursor]:
        """Get a cursor with automatic commit/rollback."""
        conn = self._get_connection()
        cur = conn.cursor()
        try:
            yield cur
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            cur.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Cursor]:
        """Cursor inside BEGIN IMMEDIATE, holding the write lock until commit."""
        conn = self._get_connection()
        cur = conn.cursor()
        try:
            cur.execute("BEGIN IMMEDIATE")
            yield cur
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            cur.close()

    def initialize(self) -> None:
        """Create the schema if needed."""
        if self._initialized:
            return
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        with self.cursor() as cur:
            for statement in SCHEMA:
                cur.execute(statement)
        self._initialized = True
        logger.debug("Database initialized", path=self.db_path)

    def close(self) -> None:
        """Close database connection."""
        if hasattr(self._local, "connection"):
            self._local.connection.close()
            del self._local.connection

    def ping(self) -> bool:
        with self.cursor() as cur:
            cur.execute("SELECT 1")
            return cur.fetchone()[0] == 1

    # Peer operations

    def add_peer(self, peer: Peer) -> None:
        try:
            with self.cursor() as cur:
                self._insert_peer(cur, peer)
        except sqlite3.IntegrityError as e:
            raise AddressConflictError(
                f"Peer address {peer.address} or key is already registered"
            ) from e

    def _insert_peer(self, cur: sqlite3.Cursor, peer: Peer) -> None:
        cur.execute(
            """
            INSERT INTO peers
            (id, name, public_key, address, created_at, last_seen, is_active)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                peer.id,
                peer.name,
                peer.public_key,
                peer.address,
                peer.created_at.isoformat(),
                peer.last_seen.isoformat() if peer.last_seen else None,
                int(peer.is_active),
            ),
        )

    def get_peer(self, peer_id: str) -> Peer | None:
        with self.cursor() as cur:
            cur.execute("SELECT * FROM peers WHERE id = ?", (peer_id,))
            row = cur.fetchone()
            return Peer.from_row(row) if row else None

    def get_peer_by_public_key(self, public_key: str) -> Peer | None:
        with self.cursor() as cur:
            cur.execute("SELECT * FROM peers WHERE public_key = ?", (public_key,))
            row = cur.fetchone()
            return Peer.from_row(row) if row else None

    def list_peers(self, active_only: bool = False) -> list[Peer]:
        with self.cursor() as cur:
            if active_only:
                cur.execute("SELECT * FROM peers WHERE is_active = 1 ORDER BY created_at")
            else:
                cur.execute("SELECT * FROM peers ORDER BY created_at")
            return [Peer.from_row(row) for row in cur.fetchall()]

    def set_peer_active(self, peer_id: str, is_active: bool) -> bool:
        with self.cursor() as cur:
            cur.execute(
                "UPDATE peers SET is_active = ? WHERE id = ?",
                (int(is_active), peer_id),
            )
            return cur.rowcount > 0

    def touch_peer(self, peer_id: str, seen_at: datetime | None = None) -> None:
        seen_at = seen_at or datetime.now(UTC)
        with self.cursor() as cur:
            cur.execute(
                "UPDATE peers SET last_seen = ? WHERE id = ?",
                (seen_at.isoformat(), peer_id),
            )

    def delete_peer(self, peer_id: str) -> bool:
        """Delete a peer row; its tunnels go with it."""
        with self.cursor() as cur:
            cur.execute("DELETE FROM peers WHERE id = ?", (peer_id,))
            return cur.rowcount > 0

    def occupied_addresses(self) -> set[str]:
        """Addresses held by peer rows or pending registrations."""
        with self.cursor() as cur:
            cur.execute("SELECT address FROM peers UNION SELECT address FROM registration_intents")
            return {row[0] for row in cur.fetchall()}

    # Registration intents

    def add_intent(self, intent: RegistrationIntent) -> None:
        with self.cursor() as cur:
            cur.execute(
                """
                INSERT INTO registration_intents
                (peer_id, name, public_key, address, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    intent.peer_id,
                    intent.name,
                    intent.public_key,
                    intent.address,
                    intent.created_at.isoformat(),
                ),
            )

    def list_intents(self) -> list[RegistrationIntent]:
        with self.cursor() as cur:
            cur.execute("SELECT * FROM registration_intents ORDER BY created_at")
            return [RegistrationIntent.from_row(row) for row in cur.fetchall()]

    def delete_intent(self, peer_id: str) -> bool:
        with self.cursor() as cur:
            cur.execute("DELETE FROM registration_intents WHERE peer_id = ?", (peer_id,))
            return cur.rowcount > 0

    def persist_registration(self, peer: Peer) -> None:
        """Insert the peer row and drop its intent in one transaction."""
        try:
            with self.transaction() as cur:
                self._insert_peer(cur, peer)
                cur.execute(
                    "DELETE FROM registration_intents WHERE peer_id = ?",
                    (peer.id,),
                )
        except sqlite3.IntegrityError as e:
            raise AddressConflictError(
                f"Peer address {peer.address} or key is already registered"
            ) from e

    # Tunnel operations

    def insert_tunnel(self, tunnel: Tunnel) -> None:
        try:
            with self.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO tunnels
                    (id, peer_id, local_port, subdomain, start_time, end_time,
                     status, bytes_sent, bytes_received, request_count)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        tunnel.id,
                        tunnel.peer_id,
                        tunnel.local_port,
                        tunnel.subdomain,
                        tunnel.start_time.isoformat(),
                        tunnel.end_time.isoformat() if tunnel.end_time else None,
                        tunnel.status.value,
                        tunnel.bytes_sent,
                        tunnel.bytes_received,
                        tunnel.request_count,
                    ),
                )
        except sqlite3.IntegrityError as e:
            if "FOREIGN KEY" in str(e):
                raise PeerNotFoundError(f"Peer {tunnel.peer_id} not found") from e
            raise SubdomainTakenError(f"Subdomain '{tunnel.subdomain}' is already in use") from e

    def get_tunnel(self, tunnel_id: str) -> Tunnel | None:
        with self.cursor() as cur:
            cur.execute("SELECT * FROM tunnels WHERE id = ?", (tunnel_id,))
            row = cur.fetchone()
            return Tunnel.from_row(row) if row else None

    def list_tunnels(
        self,
        status: TunnelStatus | None = None,
        peer_id: str | None = None,
    ) -> list[Tunnel]:
        query = "SELECT * FROM tunnels"
        clauses: list[str] = []
        params: list[str] = []
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if peer_id is not None:
            clauses.append("peer_id = ?")
            params.append(peer_id)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY start_time"
        with self.cursor() as cur:
            cur.execute(query, params)
            return [Tunnel.from_row(row) for row in cur.fetchall()]

    def list_open_tunnels(self, peer_id: str | None = None) -> list[Tunnel]:
        """Tunnels not in status ``closed``."""
        with self.cursor() as cur:
            if peer_id is None:
                cur.execute("SELECT * FROM tunnels WHERE status != 'closed' ORDER BY start_time")
            else:
                cur.execute(
                    "SELECT * FROM tunnels WHERE status != 'closed' AND peer_id = ? "
                    "ORDER BY start_time",
                    (peer_id,),
                )
            return [Tunnel.from_row(row) for row in cur.fetchall()]

    def find_open_tunnel_by_subdomain(self, subdomain: str) -> Tunnel | None:
        with self.cursor() as cur:
            cur.execute(
                "SELECT * FROM tunnels WHERE subdomain = ? AND status != 'closed'",
                (subdomain,),
            )
            row = cur.fetchone()
            return Tunnel.from_row(row) if row else None

    def update_tunnel_status(
        self,
        tunnel_id: str,
        status: TunnelStatus,
        end_time: datetime | None = None,
    ) -> None:
        with self.cursor() as cur:
            if end_time is not None:
                cur.execute(
                    "UPDATE tunnels SET status = ?, end_time = COALESCE(end_time, ?) WHERE id = ?",
                    (status.value, end_time.isoformat(), tunnel_id),
                )
            else:
                cur.execute(
                    "UPDATE tunnels SET status = ? WHERE id = ?",
                    (status.value, tunnel_id),
                )

    def add_tunnel_traffic(
        self,
        tunnel_id: str,
        bytes_sent: int = 0,
        bytes_received: int = 0,
        requests: int = 0,
    ) -> bool:
        with self.cursor() as cur:
            cur.execute(
                """
                UPDATE tunnels
                SET bytes_sent = bytes_sent + ?,
                    bytes_received = bytes_received + ?,
                    request_count = request_count + ?
                WHERE id = ?
                """,
                (bytes_sent, bytes_received, requests, tunnel_id),
            )
            return cur.rowcount > 0

    # Key-value config

    def get_config_value(self, key: str) -> str | None:
        with self.cursor() as cur:
            cur.execute("SELECT value FROM config WHERE key = ?", (key,))
            row = cur.fetchone()
            return row[0] if row else None

    def set_config_value(self, key: str, value: str) -> None:
        with self.cursor() as cur:
            cur.execute(
                "INSERT INTO config (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, value),
            )

    def delete_config_value(self, key: str) -> None:
        with self.cursor() as cur:
            cur.execute("DELETE FROM config WHERE key = ?", (key,))

    def advance_config_value(self, key: str, compute: Callable[[str | None], str]) -> str:
        """Read ``key``, store ``compute(old)`` and return it, atomically.

        If ``compute`` raises, nothing is written.
        """
        with self.transaction() as cur:
            cur.execute("SELECT value FROM config WHERE key = ?", (key,))
            row = cur.fetchone()
            new_value = compute(row[0] if row else None)
            cur.execute(
                "INSERT INTO config (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, new_value),
            )
            return new_value

    # API keys

    def add_api_key(self, record: ApiKeyRecord) -> None:
        with self.cursor() as cur:
            cur.execute(
                """
                INSERT INTO api_keys (id, key_hash, key_prefix, created_at, last_used_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    record.key_hash,
                    record.key_prefix,
                    record.created_at.isoformat(),
                    record.last_used_at.isoformat() if record.last_used_at else None,
                ),
            )

    def replace_api_keys(self, record: ApiKeyRecord) -> None:
        """Drop every stored key and keep only ``record``."""
        with self.transaction() as cur:
            cur.execute("DELETE FROM api_keys")
            cur.execute(
                """
                INSERT INTO api_keys (id, key_hash, key_prefix, created_at, last_used_at)
                VALUES (?, ?, ?, ?, NULL)
                """,
                (record.id, record.key_hash, record.key_prefix, record.created_at.isoformat()),
            )

    def find_api_key(self, key_hash: str) -> ApiKeyRecord | None:
        with self.cursor() as cur:
            cur.execute("SELECT * FROM api_keys WHERE key_hash = ?", (key_hash,))
            row = cur.fetchone()
            return ApiKeyRecord.from_row(row) if row else None

    def touch_api_key(self, key_id: str) -> None:
        with self.cursor() as cur:
            cur.execute(
                "UPDATE api_keys SET last_used_at = ? WHERE id = ?",
                (datetime.now(UTC).isoformat(), key_id),
            )

    def list_api_keys(self) -> list[ApiKeyRecord]:
        with self.cursor() as cur:
            cur.execute("SELECT * FROM api_keys ORDER BY created_at")
            return [ApiKeyRecord.from_row(row) for row in cur.fetchall()]

    def delete_api_keys(self) -> int:
        with self.cursor() as cur:
            cur.execute("DELETE FROM api_keys")
            return cur.rowcount

    # Reset

    def clear_records(self) -> None:
        """Remove tunnels, peers, intents and the address cursor."""
        with self.transaction() as cur:
            cur.execute("DELETE FROM tunnels")
            cur.execute("DELETE FROM peers")
            cur.execute("DELETE FROM registration_intents")
            cur.execute("DELETE FROM config WHERE key = ?", (CURSOR_KEY,))

    def clear_config(self) -> None:
        with self.cursor() as cur:
            cur.execute("DELETE FROM config")
