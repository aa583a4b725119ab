"""Durable key/value stores backing the persistent cache tier.

Every store is partitioned by cache class and keeps, per key, the stored value
together with the timestamp it was written at. Two implementations:

- JsonFileStore: a single JSON file, written atomically (default)
- PostgresStore: a shared Postgres table, for multi-process deployments

Stores raise on I/O failure. Callers that must never fail on a cache error
(CacheStore) catch and report those errors themselves.
"""
import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Optional, Protocol

import psycopg
from psycopg.rows import dict_row

logger = logging.getLogger(__name__)


class DurableStore(Protocol):
    """Contract for the durable cache tier."""

    async def put(self, cache_class: str, key: str, value: Any, timestamp: float) -> None: ...
    async def get(self, cache_class: str, key: str) -> Optional[tuple[Any, float]]: ...
    async def delete(self, cache_class: str, key: str) -> None: ...
    async def clear(self, cache_class: str) -> None: ...
    async def purge(self, cache_class: str, before: float) -> int: ...
    async def timestamps(self, cache_class: str) -> list[float]: ...


class JsonFileStore:
    """Durable store persisted to one JSON file.

    File layout:
        {
            "<cache_class>": {
                "<key>": {"value": ..., "timestamp": 1718000000.0}
            }
        }

    The file is loaded once at construction; every mutation rewrites it
    through a temp file + rename. Rewrites are serialized, so concurrent
    writers never interleave and the last mutation always reaches disk.
    """

    def __init__(self, path: Path):
        """
        Initialize the store.

        Args:
            path: Path to the JSON file (created on first write)
        """
        self.path = path
        self._data: dict[str, dict[str, dict[str, Any]]] = self._load()
        self._lock = asyncio.Lock()

    def _load(self) -> dict[str, dict[str, dict[str, Any]]]:
        """Load store contents from disk."""
        if self.path.exists():
            try:
                with open(self.path, 'r', encoding='utf-8') as f:
                    data = json.load(f)
                if isinstance(data, dict):
                    return data
                logger.warning(f"Ignoring durable cache with unexpected layout: {self.path}")
            except (json.JSONDecodeError, IOError) as e:
                # Corrupted store - start fresh
                logger.warning(f"Could not read durable cache {self.path}: {e}")
        return {}

    def _write(self, serialized: str) -> None:
        """Write serialized contents atomically."""
        self.path.parent.mkdir(parents=True, exist_ok=True)

        # Unique temp name: another store on the same file may be mid-write
        fd, temp_name = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.", suffix='.tmp')
        temp_path = Path(temp_name)
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                f.write(serialized)
            temp_path.replace(self.path)
        except IOError:
            if temp_path.exists():
                temp_path.unlink()
            raise

    async def _save(self) -> None:
        async with self._lock:
            # Snapshot on the loop once the previous write is done, write off-loop
            serialized = json.dumps(self._data, indent=2, default=str, ensure_ascii=False)
            await asyncio.to_thread(self._write, serialized)

    async def put(self, cache_class: str, key: str, value: Any, timestamp: float) -> None:
        self._data.setdefault(cache_class, {})[key] = {
            "value": value,
            "timestamp": timestamp,
        }
        await self._save()

    async def get(self, cache_class: str, key: str) -> Optional[tuple[Any, float]]:
        entry = self._data.get(cache_class, {}).get(key)
        if entry is None:
            return None
        return entry["value"], float(entry["timestamp"])

    async def delete(self, cache_class: str, key: str) -> None:
        entries = self._data.get(cache_class, {})
        if key in entries:
            del entries[key]
            await self._save()

    async def clear(self, cache_class: str) -> None:
        if self._data.pop(cache_class, None) is not None:
            await self._save()

    async def purge(self, cache_class: str, before: float) -> int:
        """Delete entries of a class written before the given timestamp."""
        entries = self._data.get(cache_class, {})
        expired = [k for k, e in entries.items() if float(e["timestamp"]) < before]
        for key in expired:
            del entries[key]
        if expired:
            await self._save()
        return len(expired)

    async def timestamps(self, cache_class: str) -> list[float]:
        """Write timestamps of every entry of a class."""
        return [float(e["timestamp"]) for e in self._data.get(cache_class, {}).values()]


class PostgresStore:
    """Durable store backed by a Postgres table.

    Schema:
        CREATE TABLE cache_entries (
            cache_class TEXT NOT NULL,
            key TEXT NOT NULL,
            value JSONB,
            written_at DOUBLE PRECISION NOT NULL,
            PRIMARY KEY (cache_class, key)
        );

    Usage:
        store = PostgresStore("postgresql://...")
        await store.initialize()
    """

    def __init__(self, connection_string: str):
        """
        Args:
            connection_string: Postgres connection URL
        """
        self.connection_string = connection_string
        self._conn: Optional[psycopg.AsyncConnection] = None

    async def initialize(self) -> None:
        """Open the connection and create the table if needed."""
        self._conn = await psycopg.AsyncConnection.connect(
            self.connection_string,
            row_factory=dict_row
        )
        async with self._conn.cursor() as cur:
            await cur.execute("""
                CREATE TABLE IF NOT EXISTS cache_entries (
                    cache_class TEXT NOT NULL,
                    key TEXT NOT NULL,
                    value JSONB,
                    written_at DOUBLE PRECISION NOT NULL,
                    PRIMARY KEY (cache_class, key)
                )
            """)
            await cur.execute("""
                CREATE INDEX IF NOT EXISTS idx_cache_entries_written_at
                ON cache_entries(cache_class, written_at)
            """)
            await self._conn.commit()
        logger.info("PostgresStore initialized")

    async def close(self) -> None:
        """Close database connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None

    def _require_conn(self) -> psycopg.AsyncConnection:
        if self._conn is None:
            raise RuntimeError("Not connected - call initialize() first")
        return self._conn

    async def put(self, cache_class: str, key: str, value: Any, timestamp: float) -> None:
        conn = self._require_conn()
        async with conn.cursor() as cur:
            await cur.execute("""
                INSERT INTO cache_entries (cache_class, key, value, written_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (cache_class, key)
                DO UPDATE SET value = EXCLUDED.value, written_at = EXCLUDED.written_at
            """, (cache_class, key, json.dumps(value, default=str), timestamp))
            await conn.commit()

    async def get(self, cache_class: str, key: str) -> Optional[tuple[Any, float]]:
        conn = self._require_conn()
        async with conn.cursor() as cur:
            await cur.execute("""
                SELECT value, written_at FROM cache_entries
                WHERE cache_class = %s AND key = %s
            """, (cache_class, key))
            row = await cur.fetchone()

        if not row:
            return None

        value = row["value"]
        if isinstance(value, str):
            value = json.loads(value)
        return value, float(row["written_at"])

    async def delete(self, cache_class: str, key: str) -> None:
        conn = self._require_conn()
        async with conn.cursor() as cur:
            await cur.execute("""
                DELETE FROM cache_entries WHERE cache_class = %s AND key = %s
            """, (cache_class, key))
            await conn.commit()

    async def clear(self, cache_class: str) -> None:
        conn = self._require_conn()
        async with conn.cursor() as cur:
            await cur.execute("""
                DELETE FROM cache_entries WHERE cache_class = %s
            """, (cache_class,))
            await conn.commit()

    async def timestamps(self, cache_class: str) -> list[float]:
        """Write timestamps of every entry of a class."""
        conn = self._require_conn()
        async with conn.cursor() as cur:
            await cur.execute("""
                SELECT written_at FROM cache_entries WHERE cache_class = %s
            """, (cache_class,))
            rows = await cur.fetchall()
        return [float(row["written_at"]) for row in rows]

    async def purge(self, cache_class: str, before: float) -> int:
        conn = self._require_conn()
        async with conn.cursor() as cur:
            await cur.execute("""
                DELETE FROM cache_entries
                WHERE cache_class = %s AND written_at < %s
            """, (cache_class, before))
            purged = cur.rowcount
            await conn.commit()

        if purged > 0:
            logger.info(f"Purged {purged} {cache_class} entries from Postgres cache")
        return purged
