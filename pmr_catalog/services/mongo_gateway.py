"""Direct MongoDB gateway for the catalog document store.

Alternative to the HTTP gateway for deployments that can reach the database
directly. Each resource maps to a collection of the same name; document ids
are stored as string `_id` values and exposed as `id`.

Calls run in a worker thread (pymongo is blocking) so the event loop is never
held up by database I/O.
"""

import asyncio
import logging
import math
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database
from pymongo.errors import PyMongoError

from .errors import NotFound, RemoteUnavailable
from .models import PaginatedQuery

logger = logging.getLogger(__name__)


def _to_record(doc: dict[str, Any]) -> dict[str, Any]:
    """Expose Mongo's _id as id."""
    record = dict(doc)
    record["id"] = str(record.pop("_id"))
    return record


class MongoGateway:
    """Reads and writes catalog documents in MongoDB.

    Usage:
        gateway = MongoGateway("mongodb://...", "pmr")
        await gateway.connect()

        page = await gateway.fetch_page("products", PaginatedQuery("products"))

        await gateway.close()
    """

    def __init__(self, connection_string: str, database: str = "pmr"):
        """Initialize MongoDB gateway.

        Args:
            connection_string: MongoDB connection URL
            database: Database name
        """
        self.connection_string = connection_string
        self.database_name = database
        self._client: Optional[MongoClient] = None
        self._db: Optional[Database] = None

    async def connect(self) -> None:
        """Establish connection to MongoDB."""
        self._client = MongoClient(self.connection_string)
        self._db = self._client[self.database_name]
        logger.info(f"Connected to MongoDB: {self.database_name}")

    async def close(self) -> None:
        """Close MongoDB connection."""
        if self._client:
            self._client.close()
            self._client = None
            self._db = None

    async def _run(self, resource: str, fn: Callable[[], Any]) -> Any:
        if self._db is None:
            raise RuntimeError("Not connected to MongoDB")
        try:
            return await asyncio.to_thread(fn)
        except PyMongoError as e:
            logger.error(f"MongoDB error on {resource}: {e}")
            raise RemoteUnavailable(f"MongoDB error on {resource}: {e}", resource) from e

    async def fetch_page(self, resource: str, query: PaginatedQuery) -> dict[str, Any]:
        """Fetch one page of a collection.

        Returns:
            Envelope {"success": True, "data": [...], "pagination": {...}}
        """
        collection = self._db[resource] if self._db is not None else None
        direction = ASCENDING if query.order_direction == "asc" else DESCENDING
        skip = (query.page - 1) * query.page_size

        def _fetch():
            cursor = (
                collection.find(query.filters)
                .sort(query.order_field, direction)
                .skip(skip)
                .limit(query.page_size)
            )
            docs = [_to_record(doc) for doc in cursor]
            total = collection.count_documents(query.filters)
            return docs, total

        docs, total = await self._run(resource, _fetch)

        return {
            "success": True,
            "data": docs,
            "pagination": {
                "page": query.page,
                "pageSize": query.page_size,
                "total": total,
                "pages": math.ceil(total / query.page_size),
            },
        }

    async def get(self, resource: str, doc_id: str) -> dict[str, Any]:
        """Get a single document.

        Raises:
            NotFound: If the document does not exist
        """
        doc = await self._run(resource, lambda: self._db[resource].find_one({"_id": doc_id}))
        if not doc:
            raise NotFound(resource, doc_id)
        return _to_record(doc)

    async def create(self, resource: str, payload: dict[str, Any]) -> dict[str, Any]:
        """Insert a new document with a generated string id."""
        doc_id = uuid.uuid4().hex
        now = datetime.now(timezone.utc).isoformat()
        document = {**payload, "_id": doc_id, "createdAt": now, "updatedAt": now}

        await self._run(resource, lambda: self._db[resource].insert_one(document))
        logger.info(f"Created {resource}/{doc_id}")
        return {"id": doc_id}

    async def update(self, resource: str, doc_id: str, payload: dict[str, Any]) -> None:
        """Atomic $set of the given fields.

        Raises:
            NotFound: If the document does not exist
        """
        fields = {k: v for k, v in payload.items() if k not in ("id", "_id")}
        fields["updatedAt"] = datetime.now(timezone.utc).isoformat()

        result = await self._run(
            resource,
            lambda: self._db[resource].update_one({"_id": doc_id}, {"$set": fields}, upsert=False)
        )
        if result.matched_count == 0:
            raise NotFound(resource, doc_id)
        logger.info(f"Updated {resource}/{doc_id}")

    async def delete(self, resource: str, doc_id: str) -> None:
        """Delete a document.

        Raises:
            NotFound: If the document does not exist
        """
        result = await self._run(resource, lambda: self._db[resource].delete_one({"_id": doc_id}))
        if result.deleted_count == 0:
            raise NotFound(resource, doc_id)
        logger.info(f"Deleted {resource}/{doc_id}")
