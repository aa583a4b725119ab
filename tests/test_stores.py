"""
Tests for the durable cache stores.
"""
import asyncio
import json
import pytest
from unittest.mock import AsyncMock, MagicMock

from pmr_catalog.services.stores import JsonFileStore, PostgresStore


class TestJsonFileStore:
    """Tests for the JSON file store."""

    @pytest.mark.asyncio
    async def test_put_and_get(self, temp_cache_dir):
        """Test a value round-trips with its timestamp."""
        store = JsonFileStore(temp_cache_dir / "store.json")
        await store.put("factory", "factories:1", {"items": [1]}, 100.0)

        assert await store.get("factory", "factories:1") == ({"items": [1]}, 100.0)

    @pytest.mark.asyncio
    async def test_persists_across_instances(self, temp_cache_dir):
        """Test data survives a reload from disk."""
        path = temp_cache_dir / "store.json"
        await JsonFileStore(path).put("tag", "tags:catalog", ["a"], 5.0)

        reloaded = JsonFileStore(path)
        assert await reloaded.get("tag", "tags:catalog") == (["a"], 5.0)

    @pytest.mark.asyncio
    async def test_file_layout(self, temp_cache_dir):
        """Test entries are grouped by class on disk."""
        path = temp_cache_dir / "store.json"
        await JsonFileStore(path).put("image", "images:1", "url", 7.0)

        with open(path) as f:
            data = json.load(f)
        assert data == {"image": {"images:1": {"value": "url", "timestamp": 7.0}}}
        assert [p.name for p in temp_cache_dir.iterdir()] == ["store.json"]

    def test_corrupted_file_starts_fresh(self, temp_cache_dir):
        """Test an unreadable file is ignored."""
        path = temp_cache_dir / "store.json"
        path.write_text("{not json")

        store = JsonFileStore(path)
        assert store._data == {}

    @pytest.mark.asyncio
    async def test_delete_and_clear(self, temp_cache_dir):
        """Test deleting a key and clearing a class."""
        store = JsonFileStore(temp_cache_dir / "store.json")
        await store.put("factory", "a", 1, 1.0)
        await store.put("factory", "b", 2, 1.0)
        await store.put("tag", "c", 3, 1.0)

        await store.delete("factory", "a")
        assert await store.get("factory", "a") is None
        assert await store.get("factory", "b") == (2, 1.0)

        await store.clear("factory")
        assert await store.get("factory", "b") is None
        assert await store.get("tag", "c") == (3, 1.0)

    @pytest.mark.asyncio
    async def test_purge_removes_only_older_entries(self, temp_cache_dir):
        """Test purge by write time."""
        store = JsonFileStore(temp_cache_dir / "store.json")
        await store.put("product", "old", 1, 10.0)
        await store.put("product", "new", 2, 50.0)

        purged = await store.purge("product", before=20.0)

        assert purged == 1
        assert await store.timestamps("product") == [50.0]

    @pytest.mark.asyncio
    async def test_write_error_propagates(self, temp_cache_dir):
        """Test store I/O errors are raised to the caller."""
        blocker = temp_cache_dir / "blocker"
        blocker.write_text("")
        store = JsonFileStore(blocker / "store.json")

        with pytest.raises(OSError):
            await store.put("tag", "k", 1, 1.0)

    @pytest.mark.asyncio
    async def test_concurrent_puts_all_persist(self, temp_cache_dir):
        """Test overlapping writes neither fail nor lose entries."""
        path = temp_cache_dir / "store.json"
        store = JsonFileStore(path)

        await asyncio.gather(*(store.put("factory", f"k{i}", i, float(i)) for i in range(50)))

        reloaded = JsonFileStore(path)
        assert len(await reloaded.timestamps("factory")) == 50
        assert await reloaded.get("factory", "k49") == (49, 49.0)
        assert [p.name for p in temp_cache_dir.iterdir()] == ["store.json"]


class TestPostgresStoreWithMockDB:
    """Tests for the Postgres store with a mocked connection."""

    @pytest.fixture
    def mock_cursor(self):
        """Create a mock cursor."""
        cursor = AsyncMock()
        cursor.__aenter__ = AsyncMock(return_value=cursor)
        cursor.__aexit__ = AsyncMock(return_value=None)
        cursor.fetchone = AsyncMock()
        cursor.fetchall = AsyncMock()
        cursor.rowcount = 0
        return cursor

    @pytest.fixture
    def mock_conn(self, mock_cursor):
        """Create a mock connection."""
        conn = AsyncMock()
        conn.cursor = MagicMock(return_value=mock_cursor)
        conn.commit = AsyncMock()
        conn.close = AsyncMock()
        return conn

    @pytest.fixture
    def store_with_mock_conn(self, mock_conn):
        """Create store with mocked connection."""
        store = PostgresStore("postgresql://mock")
        store._conn = mock_conn
        return store

    @pytest.mark.asyncio
    async def test_put_upserts(self, store_with_mock_conn, mock_cursor, mock_conn):
        """Test put issues an upsert with JSON-encoded value."""
        await store_with_mock_conn.put("factory", "factories:1", {"a": 1}, 12.5)

        sql, params = mock_cursor.execute.call_args[0]
        assert "ON CONFLICT" in sql
        assert params == ("factory", "factories:1", '{"a": 1}', 12.5)
        mock_conn.commit.assert_awaited()

    @pytest.mark.asyncio
    async def test_get_found(self, store_with_mock_conn, mock_cursor):
        """Test get decodes the stored row."""
        mock_cursor.fetchone.return_value = {"value": {"a": 1}, "written_at": 12.5}

        assert await store_with_mock_conn.get("factory", "factories:1") == ({"a": 1}, 12.5)

    @pytest.mark.asyncio
    async def test_get_decodes_text_value(self, store_with_mock_conn, mock_cursor):
        """Test get accepts a value returned as JSON text."""
        mock_cursor.fetchone.return_value = {"value": '["x"]', "written_at": 1}

        assert await store_with_mock_conn.get("tag", "k") == (["x"], 1.0)

    @pytest.mark.asyncio
    async def test_get_not_found(self, store_with_mock_conn, mock_cursor):
        """Test get on a missing key."""
        mock_cursor.fetchone.return_value = None

        assert await store_with_mock_conn.get("tag", "missing") is None

    @pytest.mark.asyncio
    async def test_purge_returns_rowcount(self, store_with_mock_conn, mock_cursor):
        """Test purge reports the number of deleted rows."""
        mock_cursor.rowcount = 3

        assert await store_with_mock_conn.purge("product", 100.0) == 3

    @pytest.mark.asyncio
    async def test_timestamps(self, store_with_mock_conn, mock_cursor):
        """Test timestamps lists write times of a class."""
        mock_cursor.fetchall.return_value = [{"written_at": 1.0}, {"written_at": 2}]

        assert await store_with_mock_conn.timestamps("image") == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_not_connected_raises(self):
        """Test operations before initialize() fail loudly."""
        store = PostgresStore("postgresql://mock")
        with pytest.raises(RuntimeError, match="Not connected"):
            await store.get("tag", "k")
