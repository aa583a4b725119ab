"""
Read-through query orchestration.

This module serves paginated catalog reads cache-first, falls back to the
remote store on a miss, and degrades through an ordered chain of fallback
data sources when the remote store is unavailable.
"""
import logging
import math
from dataclasses import dataclass
from typing import Any, Awaitable, Dict, List, Mapping, Optional, Protocol, Sequence, TypeVar

from .cache import CacheClass, CacheStore
from .errors import (
    CatalogError,
    FallbackExhausted,
    MalformedResponse,
    QuotaExceeded,
    RemoteUnavailable,
)
from .gateway import RemoteGateway
from .models import PaginatedQuery, PaginatedResult

logger = logging.getLogger(__name__)

# Collections served through the cache, and the TTL class each one uses
RESOURCE_CLASSES: Dict[str, CacheClass] = {
    "factories": CacheClass.FACTORY,
    "products": CacheClass.PRODUCT,
    "tags": CacheClass.TAG,
    "images": CacheClass.IMAGE,
}

T = TypeVar("T")


async def remote_call(resource: str, call: Awaitable[T]) -> T:
    """
    Await a gateway call, normalizing unexpected failures.

    Typed catalog errors pass through; anything else a gateway raises
    (timeouts, driver errors) becomes RemoteUnavailable.
    """
    try:
        return await call
    except CatalogError:
        raise
    except Exception as e:
        raise RemoteUnavailable(f"Remote call on {resource} failed: {e}", resource) from e


async def fetch_remote_page(gateway: RemoteGateway, query: PaginatedQuery) -> PaginatedResult:
    """
    Fetch a page from the remote store and validate the envelope.

    Raises:
        RemoteUnavailable: Any failure, including quota and malformed payloads
        NotFound: Passed through from the gateway
    """
    resource = query.resource
    response = await remote_call(resource, gateway.fetch_page(resource, query))

    if not isinstance(response, dict):
        raise MalformedResponse(f"Fetch of {resource} returned {type(response).__name__}", resource)
    if response.get("fallback"):
        raise QuotaExceeded(response.get("error") or f"Remote store degraded for {resource}", resource)
    if not response.get("success"):
        raise RemoteUnavailable(response.get("error") or f"Fetch of {resource} failed", resource)

    data = response.get("data")
    if not isinstance(data, list):
        raise MalformedResponse(f"Fetch of {resource} returned no data list", resource)

    pagination = response.get("pagination")
    if pagination is not None and not isinstance(pagination, dict):
        raise MalformedResponse(
            f"Fetch of {resource} returned pagination as {type(pagination).__name__}", resource
        )

    try:
        return PaginatedResult.from_remote(query, data, pagination)
    except (TypeError, ValueError) as e:
        raise MalformedResponse(f"Bad pagination for {resource}: {e}", resource) from e


async def fetch_all(gateway: RemoteGateway, query: PaginatedQuery) -> List[Dict[str, Any]]:
    """Read every page of a query, starting at query.page, straight from the remote store."""
    items: List[Dict[str, Any]] = []
    while True:
        result = await fetch_remote_page(gateway, query)
        items.extend(result.items)
        if not result.items or query.page >= result.total_pages:
            return items
        query = query.next_page()


class DataSource(Protocol):
    """A fallback strategy tried when the remote store cannot answer."""

    name: str

    async def load(self, query: PaginatedQuery, cache_class: CacheClass) -> PaginatedResult: ...


class StaleCacheSource:
    """Serves the last-known-good cached page, however old."""

    name = "stale"

    def __init__(self, cache: CacheStore):
        self.cache = cache

    async def load(self, query: PaginatedQuery, cache_class: CacheClass) -> PaginatedResult:
        entry = await self.cache.get_stale(query.cache_key(), cache_class)
        if entry is None:
            raise LookupError(f"No cached copy of {query.cache_key()}")

        result = PaginatedResult.from_dict(entry.payload)
        result.source = self.name
        result.degraded = True
        return result


class SampleDataSource:
    """
    Last resort: hardcoded sample data.

    With no samples configured this yields an empty page, which is what the
    catalog shows when nothing at all can be loaded. Results are always
    marked degraded.
    """

    name = "sample"

    def __init__(self, samples: Optional[Mapping[str, list]] = None):
        """
        Args:
            samples: Mapping resource -> list of sample documents
        """
        self.samples = dict(samples or {})

    async def load(self, query: PaginatedQuery, cache_class: CacheClass) -> PaginatedResult:
        items = self.samples.get(query.resource, [])
        start = (query.page - 1) * query.page_size
        return PaginatedResult(
            items=items[start:start + query.page_size],
            page=query.page,
            page_size=query.page_size,
            total_count=len(items),
            total_pages=math.ceil(len(items) / query.page_size),
            degraded=True,
            source=self.name,
        )


@dataclass
class DocumentResult:
    """A single document and where it was served from."""
    data: Dict[str, Any]
    degraded: bool = False
    source: str = "remote"


class CachedQueryService:
    """
    Serves catalog reads through the cache with graceful degradation.

    Flow for get_paginated():
    1. Check cache (unless force_refresh)
    2. On miss: fetch from the remote store, store result
    3. On remote failure: try each fallback source in order
       (stale cache, then sample data), marking the result degraded
    4. Raise FallbackExhausted only if every fallback fails

    force_refresh skips the cache and every fallback: the caller gets the
    authoritative answer or the typed remote error.
    """

    def __init__(
        self,
        gateway: RemoteGateway,
        cache: CacheStore,
        fallbacks: Optional[Sequence[DataSource]] = None,
        resource_classes: Optional[Mapping[str, CacheClass]] = None,
    ):
        """
        Initialize the service.

        Args:
            gateway: Remote document store
            cache: Shared two-tier cache
            fallbacks: Ordered fallback sources (default: stale cache, then sample data)
            resource_classes: Mapping resource -> cache class (default: RESOURCE_CLASSES)

        Raises:
            ValueError: If a served resource's class has no TTL policy
        """
        self.gateway = gateway
        self.cache = cache
        self.fallbacks = (
            list(fallbacks) if fallbacks is not None
            else [StaleCacheSource(cache), SampleDataSource()]
        )
        self.resource_classes = {
            resource: CacheClass(cache_class)
            for resource, cache_class in (resource_classes or RESOURCE_CLASSES).items()
        }

        for cache_class in set(self.resource_classes.values()):
            cache.ttl(cache_class)

    def _class_for(self, resource: str) -> CacheClass:
        try:
            return self.resource_classes[resource]
        except KeyError:
            raise ValueError(f"Unknown resource '{resource}'") from None

    async def _degrade(
        self,
        query: PaginatedQuery,
        cache_class: CacheClass,
        error: RemoteUnavailable,
    ) -> PaginatedResult:
        """Walk the fallback chain after a remote failure."""
        errors: list[Exception] = [error]

        for source in self.fallbacks:
            try:
                result = await source.load(query, cache_class)
            except Exception as e:
                logger.debug(f"Fallback '{source.name}' unavailable for {query.cache_key()}: {e}")
                errors.append(e)
                continue

            result.degraded = True
            result.error = str(error)
            logger.warning(
                f"Serving {query.resource} page {query.page} from '{source.name}' fallback: {error}"
            )
            return result

        raise FallbackExhausted(query.resource, errors) from error

    async def get_paginated(self, query: PaginatedQuery, force_refresh: bool = False) -> PaginatedResult:
        """
        Get a page of a resource, cache-first.

        Args:
            query: Resource, page, ordering and filters
            force_refresh: Skip cache and fallbacks, demand the remote answer

        Returns:
            PaginatedResult; degraded=True when served from a fallback

        Raises:
            ValueError: Unknown resource
            NotFound: Remote store reports the resource missing
            RemoteUnavailable: Only when force_refresh is set
            FallbackExhausted: Remote failed and no fallback could answer
        """
        cache_class = self._class_for(query.resource)
        key = query.cache_key()

        if force_refresh:
            logger.debug(f"Forced refresh: {key}")
            await self.cache.invalidate(key, cache_class)
            result = await fetch_remote_page(self.gateway, query)
            await self.cache.set(key, result.to_dict(), cache_class)
            return result

        cached = await self.cache.get(key, cache_class)
        if cached is not None:
            result = PaginatedResult.from_dict(cached)
            result.source = "cache"
            result.degraded = False
            return result

        try:
            result = await fetch_remote_page(self.gateway, query)
        except RemoteUnavailable as e:
            return await self._degrade(query, cache_class, e)

        await self.cache.set(key, result.to_dict(), cache_class)
        return result

    async def get_one(self, resource: str, doc_id: str, force_refresh: bool = False) -> DocumentResult:
        """
        Get a single document, cache-first.

        Remote failures fall back to the last cached copy of the document;
        NotFound always propagates.
        """
        cache_class = self._class_for(resource)
        key = f"{resource}:id:{doc_id}"

        if force_refresh:
            await self.cache.invalidate(key, cache_class)
        else:
            cached = await self.cache.get(key, cache_class)
            if cached is not None:
                return DocumentResult(data=cached, source="cache")

        try:
            document = await remote_call(resource, self.gateway.get(resource, doc_id))
        except CatalogError as e:
            if force_refresh or not isinstance(e, RemoteUnavailable):
                raise
            stale = await self.cache.get_stale(key, cache_class)
            if stale is None:
                raise
            logger.warning(f"Serving stale {key}: {e}")
            return DocumentResult(data=stale.payload, degraded=True, source="stale")

        await self.cache.set(key, document, cache_class)
        return DocumentResult(data=document)

    async def create(self, resource: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Create a document remotely and invalidate the resource's cached reads."""
        self._class_for(resource)
        created = await remote_call(resource, self.gateway.create(resource, payload))
        await self.invalidate_resource(resource)
        return created

    async def update(self, resource: str, doc_id: str, payload: Dict[str, Any]) -> None:
        """Update a document remotely and invalidate the resource's cached reads."""
        self._class_for(resource)
        await remote_call(resource, self.gateway.update(resource, doc_id, payload))
        await self.invalidate_resource(resource)

    async def delete(self, resource: str, doc_id: str) -> None:
        """Delete a document remotely and invalidate the resource's cached reads."""
        self._class_for(resource)
        await remote_call(resource, self.gateway.delete(resource, doc_id))
        await self.invalidate_resource(resource)

    async def invalidate_resource(self, resource: str) -> None:
        """
        Drop every cached read of a resource.

        Coarse-grained on purpose: the whole class is cleared rather than
        enumerating keys across filter combinations.
        """
        await self.cache.invalidate_class(self._class_for(resource))
