"""
Shared fixtures and fakes for catalog tests.
"""
import asyncio
import math
import pytest
import tempfile
from pathlib import Path
from typing import Any, Optional

from pmr_catalog.services.cache import CacheStore
from pmr_catalog.services.errors import NotFound, RemoteUnavailable
from pmr_catalog.services.stores import JsonFileStore


class FakeClock:
    """Controllable clock returning epoch seconds."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeGateway:
    """In-memory remote store with failure injection.

    Collections are lists of documents keyed by resource. Every call yields
    to the event loop once, so concurrent callers interleave like they would
    against a real remote store.
    """

    def __init__(self):
        self.collections: dict[str, list[dict[str, Any]]] = {}
        self.calls: list[tuple[str, str]] = []
        self.failures: dict[tuple[str, Optional[str]], Exception] = {}
        self.page_response: Optional[dict[str, Any]] = None
        self._next_id = 0

    # --- test helpers ---

    def seed(self, resource: str, *docs: dict[str, Any]) -> None:
        for doc in docs:
            self._next_id += 1
            record = {"createdAt": self._timestamp(), **doc}
            record.setdefault("id", f"{resource}-{self._next_id}")
            self.collections.setdefault(resource, []).append(record)

    def fail(self, method: str, resource: Optional[str] = None, error: Optional[Exception] = None) -> None:
        """Make calls of method (optionally for one resource) raise."""
        self.failures[(method, resource)] = error or RemoteUnavailable("remote down", resource)

    def heal(self) -> None:
        self.failures.clear()
        self.page_response = None

    def count(self, method: str, resource: Optional[str] = None) -> int:
        return sum(1 for m, r in self.calls if m == method and (resource is None or r == resource))

    def _timestamp(self) -> str:
        n = self._next_id
        return f"2024-01-01T00:{n // 60:02d}:{n % 60:02d}Z"

    async def _enter(self, method: str, resource: str) -> None:
        self.calls.append((method, resource))
        await asyncio.sleep(0)
        error = self.failures.get((method, resource)) or self.failures.get((method, None))
        if error is not None:
            raise error

    # --- RemoteGateway ---

    async def connect(self) -> None:
        pass

    async def close(self) -> None:
        pass

    async def fetch_page(self, resource, query):
        await self._enter("fetch_page", resource)
        if self.page_response is not None:
            return self.page_response

        docs = [
            d for d in self.collections.get(resource, [])
            if all(str(d.get(k)) == str(v) for k, v in query.filters.items())
        ]
        docs.sort(
            key=lambda d: str(d.get(query.order_field, "")),
            reverse=query.order_direction == "desc",
        )
        start = (query.page - 1) * query.page_size
        return {
            "success": True,
            "data": [dict(d) for d in docs[start:start + query.page_size]],
            "pagination": {
                "page": query.page,
                "pageSize": query.page_size,
                "total": len(docs),
                "pages": math.ceil(len(docs) / query.page_size),
            },
        }

    async def get(self, resource, doc_id):
        await self._enter("get", resource)
        for doc in self.collections.get(resource, []):
            if doc["id"] == doc_id:
                return dict(doc)
        raise NotFound(resource, doc_id)

    async def create(self, resource, payload):
        await self._enter("create", resource)
        self.seed(resource, dict(payload))
        return {"id": self.collections[resource][-1]["id"]}

    async def update(self, resource, doc_id, payload):
        await self._enter("update", resource)
        for doc in self.collections.get(resource, []):
            if doc["id"] == doc_id:
                doc.update(payload)
                return
        raise NotFound(resource, doc_id)

    async def delete(self, resource, doc_id):
        await self._enter("delete", resource)
        docs = self.collections.get(resource, [])
        for i, doc in enumerate(docs):
            if doc["id"] == doc_id:
                del docs[i]
                return
        raise NotFound(resource, doc_id)


@pytest.fixture
def temp_cache_dir():
    """Create temporary directory for cache files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def clock():
    """Controllable clock."""
    return FakeClock()


@pytest.fixture
def durable_store(temp_cache_dir):
    """JSON file durable store in a temp directory."""
    return JsonFileStore(temp_cache_dir / "cache.json")


@pytest.fixture
def cache(durable_store, clock):
    """CacheStore over the temp durable store with the fake clock."""
    return CacheStore(durable_store, clock=clock)


@pytest.fixture
def gateway():
    """Empty in-memory remote store."""
    return FakeGateway()
