"""API key issue and verification.

Keys are 32 random bytes rendered as hex. Only their SHA-256 hash is
stored; the raw key is shown once, when it is created.
"""

from __future__ import annotations

import hashlib
import secrets
from uuid import uuid4

import structlog

from gatehouse.store.models import ApiKeyRecord
from gatehouse.store.sqlite import SQLiteStorage

logger = structlog.get_logger()

API_KEY_HEADER = "X-API-Key"


class APIKeyService:
    """Issues and checks the coordinator's API keys."""

    KEY_BYTES = 32
    PREFIX_LENGTH = 8

    def __init__(self, storage: SQLiteStorage) -> None:
        self.storage = storage

    def generate_key(self) -> str:
        return secrets.token_hex(self.KEY_BYTES)

    @staticmethod
    def hash_key(raw_key: str) -> str:
        return hashlib.sha256(raw_key.encode()).hexdigest()

    def create_key(self) -> tuple[str, ApiKeyRecord]:
        """Create a key, replacing every existing one.

        Returns:
            Tuple of (raw_key, record). The raw key is not recoverable later.
        """
        raw_key = self.generate_key()
        record = ApiKeyRecord(
            id=str(uuid4()),
            key_hash=self.hash_key(raw_key),
            key_prefix=raw_key[: self.PREFIX_LENGTH],
        )
        self.storage.replace_api_keys(record)
        logger.info("API key created", key_id=record.id, prefix=record.key_prefix)
        return raw_key, record

    def ensure_key(self) -> str | None:
        """Create the first key if none exists; returns it, or None if keys exist."""
        if self.storage.list_api_keys():
            return None
        raw_key, _ = self.create_key()
        return raw_key

    def verify(self, raw_key: str | None) -> ApiKeyRecord | None:
        """Return the matching record and mark it used, or None."""
        if not raw_key:
            return None
        record = self.storage.find_api_key(self.hash_key(raw_key.strip()))
        if record is None:
            return None
        self.storage.touch_api_key(record.id)
        return record

    def revoke_all(self) -> int:
        count = self.storage.delete_api_keys()
        logger.info("API keys revoked", count=count)
        return count
