"""
EQVault - Secure Local Store
Encrypts metrics snapshots and hands them to a key-value backend.

PRIVACY: Only PrivateEQData records (ciphertext + metadata) ever
reach the backend. Plaintext metrics and raw signals never do.
"""

import asyncio
import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol
from uuid import uuid4

import structlog

from .config import get_eqvault_dir
from .keys import KeyManager
from .models import EncryptionStandard, EQMetrics, PrivateEQData, parse_timestamp

logger = structlog.get_logger(__name__)

METRICS_PREFIX = "eq_metrics:"
STORAGE_VERSION = 1


def get_db_path() -> Path:
    """Get the path to the local vault database."""
    return get_eqvault_dir() / "vault.db"


class KeyValueStore(Protocol):
    """Persistence boundary. Implementations may be file, DB or OS keychain."""

    async def put(self, key: str, value: Dict[str, Any]) -> None: ...

    async def get(self, key: str) -> Optional[Dict[str, Any]]: ...

    async def delete(self, key: str) -> bool: ...

    async def keys(self, prefix: str = "") -> List[str]: ...


class SQLiteKeyValueStore:
    """
    Bundled backend: a single-table SQLite key-value store.

    Schema stores ONLY opaque JSON records:
    - key (sortable, timestamp-prefixed for metrics)
    - value (PrivateEQData as JSON)
    - stored_at (write time)

    Blocking sqlite3 calls run in a worker thread.
    """

    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = db_path or get_db_path()
        self._init_db()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS records (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    stored_at TEXT NOT NULL
                )
            """)
            conn.commit()

    @contextmanager
    def _get_connection(self):
        """Context manager for database connections."""
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def _put(self, key: str, value: Dict[str, Any]) -> None:
        with self._get_connection() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO records (key, value, stored_at) VALUES (?, ?, ?)",
                (key, json.dumps(value), datetime.now(timezone.utc).isoformat()),
            )
            conn.commit()

    def _get(self, key: str) -> Optional[Dict[str, Any]]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT value FROM records WHERE key = ?", (key,)).fetchone()
            return json.loads(row["value"]) if row else None

    def _delete(self, key: str) -> bool:
        with self._get_connection() as conn:
            cursor = conn.execute("DELETE FROM records WHERE key = ?", (key,))
            conn.commit()
            return cursor.rowcount > 0

    def _keys(self, prefix: str) -> List[str]:
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT key FROM records WHERE substr(key, 1, ?) = ? ORDER BY key ASC",
                (len(prefix), prefix),
            )
            return [row["key"] for row in cursor.fetchall()]

    async def put(self, key: str, value: Dict[str, Any]) -> None:
        await asyncio.to_thread(self._put, key, value)

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        return await asyncio.to_thread(self._get, key)

    async def delete(self, key: str) -> bool:
        return await asyncio.to_thread(self._delete, key)

    async def keys(self, prefix: str = "") -> List[str]:
        return await asyncio.to_thread(self._keys, prefix)


class SecureLocalStore:
    """
    Encrypt-then-write for metrics snapshots.

    The ordering guarantee is structural: save_metrics awaits the
    encryption before it builds the record the backend receives.
    """

    def __init__(self, key_manager: KeyManager, backend: KeyValueStore):
        self.key_manager = key_manager
        self.backend = backend

    @property
    def device_id(self) -> str:
        return self.key_manager.device_id

    @staticmethod
    def _associated_data(device_id: str) -> bytes:
        # Binds each ciphertext to the device that wrote it
        return f"eqvault/metrics/v{STORAGE_VERSION}/{device_id}".encode("utf-8")

    async def encrypt_metrics(self, metrics: EQMetrics) -> PrivateEQData:
        sealed = await self.key_manager.encrypt(
            metrics.to_json_bytes(), self._associated_data(self.device_id)
        )
        return PrivateEQData(
            encrypted_metrics=sealed,
            encryption_standard=EncryptionStandard.AES256_GCM,
            device_id=self.device_id,
            storage_version=STORAGE_VERSION,
            sync_enabled=False,
        )

    async def decrypt_metrics(self, record: PrivateEQData) -> EQMetrics:
        plaintext = await self.key_manager.decrypt(
            record.encrypted_metrics, self._associated_data(record.device_id)
        )
        return EQMetrics.from_json_bytes(plaintext)

    async def save_metrics(self, metrics: EQMetrics) -> PrivateEQData:
        """Encrypt a snapshot, then persist it. Returns the stored record."""
        record = await self.encrypt_metrics(metrics)
        # UTC with fixed precision so key order is snapshot order
        stamp = parse_timestamp(metrics.last_updated).astimezone(timezone.utc)
        key = f"{METRICS_PREFIX}{stamp.isoformat(timespec='microseconds')}:{uuid4().hex[:8]}"
        await self.backend.put(key, record.to_dict())
        logger.debug("metrics_stored", key=key)
        return record

    async def list_records(self) -> List[str]:
        return await self.backend.keys(METRICS_PREFIX)

    async def load_history(self, limit: Optional[int] = None) -> List[EQMetrics]:
        """Decrypt stored snapshots, oldest -> newest."""
        keys = await self.list_records()
        if limit is not None:
            keys = keys[-limit:] if limit > 0 else []

        history = []
        for key in keys:
            data = await self.backend.get(key)
            if data is None:
                continue
            history.append(await self.decrypt_metrics(PrivateEQData.from_dict(data)))

        history.sort(key=lambda m: m.last_updated)
        return history

    async def load_latest(self) -> Optional[EQMetrics]:
        history = await self.load_history(limit=1)
        return history[-1] if history else None

    async def cleanup(self, days: int, now: Optional[datetime] = None) -> int:
        """
        Delete snapshots taken more than N days ago.

        Works on any backend without decrypting: the snapshot time
        is part of each record key.
        """
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=days)
        deleted = 0
        for key in await self.list_records():
            stamp = key[len(METRICS_PREFIX):].rsplit(":", 1)[0]
            if parse_timestamp(stamp) < cutoff and await self.backend.delete(key):
                deleted += 1

        logger.info("retention_applied", days=days, deleted=deleted)
        return deleted
