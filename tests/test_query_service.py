"""
Tests for CachedQueryService: read-through flow and degradation.
"""
import pytest

from pmr_catalog.services.cache import CacheStore
from pmr_catalog.services.errors import (
    FallbackExhausted,
    MalformedResponse,
    NotFound,
    QuotaExceeded,
    RemoteUnavailable,
)
from pmr_catalog.services.models import PaginatedQuery, PaginatedResult
from pmr_catalog.services.query import (
    CachedQueryService,
    SampleDataSource,
    StaleCacheSource,
    fetch_all,
)


@pytest.fixture
def service(gateway, cache):
    """Query service with the default fallback chain."""
    return CachedQueryService(gateway, cache)


class TestPaginatedQuery:
    """Tests for query validation and cache keys."""

    def test_cache_key_format(self):
        """Test key layout resource:page:size:field:direction:hash."""
        key = PaginatedQuery("products", page=3, page_size=10, filters={"factoryId": "f-1"}).cache_key()

        parts = key.split(":")
        assert parts[:5] == ["products", "3", "10", "createdAt", "desc"]
        assert len(parts[5]) == 16

    def test_cache_key_filter_order_independent(self):
        """Test filter order does not change the key."""
        a = PaginatedQuery("products", filters={"a": 1, "b": 2})
        b = PaginatedQuery("products", filters={"b": 2, "a": 1})
        assert a.cache_key() == b.cache_key()

    def test_none_filters_dropped(self):
        """Test unset filters do not affect the key."""
        a = PaginatedQuery("products", filters={"factoryId": None})
        b = PaginatedQuery("products")
        assert a.cache_key() == b.cache_key()

    @pytest.mark.parametrize("kwargs", [
        {"page": 0},
        {"page_size": 0},
        {"order_direction": "sideways"},
    ])
    def test_invalid_query(self, kwargs):
        """Test invalid pagination is rejected."""
        with pytest.raises(ValueError):
            PaginatedQuery("products", **kwargs)


class TestCachedQueryServiceReads:
    """Tests for the cache-first read flow."""

    @pytest.mark.asyncio
    async def test_miss_fetches_and_caches(self, service, gateway):
        """Test a miss goes remote, then the cache serves."""
        gateway.seed("factories", {"name": "Acme"}, {"name": "Bolt Co"})
        query = PaginatedQuery("factories")

        first = await service.get_paginated(query)
        second = await service.get_paginated(query)

        assert first.source == "remote"
        assert first.total_count == 2
        assert second.source == "cache"
        assert second.degraded is False
        assert second.items == first.items
        assert gateway.count("fetch_page") == 1

    @pytest.mark.asyncio
    async def test_filters_make_distinct_entries(self, service, gateway):
        """Test different filters are cached separately."""
        gateway.seed("products", {"factoryId": "f-1"}, {"factoryId": "f-2"})

        one = await service.get_paginated(PaginatedQuery("products", filters={"factoryId": "f-1"}))
        two = await service.get_paginated(PaginatedQuery("products", filters={"factoryId": "f-2"}))

        assert one.items[0]["factoryId"] == "f-1"
        assert two.items[0]["factoryId"] == "f-2"
        assert gateway.count("fetch_page") == 2

    @pytest.mark.asyncio
    async def test_mutating_results_leaves_cache_intact(self, service, gateway):
        """Test callers editing returned items never change cached pages."""
        gateway.seed("products", {"name": "Bolt"})
        query = PaginatedQuery("products")

        first = await service.get_paginated(query)
        first.items.clear()
        second = await service.get_paginated(query)
        second.items[0]["name"] = "changed"
        second.items.append({"name": "extra"})
        third = await service.get_paginated(query)

        assert third.source == "cache"
        assert [i["name"] for i in third.items] == ["Bolt"]

    @pytest.mark.asyncio
    async def test_expired_entry_refetched(self, service, gateway, clock):
        """Test an entry past its TTL goes back to the remote store."""
        gateway.seed("products", {"name": "Bolt"})
        query = PaginatedQuery("products")

        await service.get_paginated(query)
        clock.advance(15 * 60)
        result = await service.get_paginated(query)

        assert result.source == "remote"
        assert gateway.count("fetch_page") == 2

    @pytest.mark.asyncio
    async def test_force_refresh_bypasses_fresh_cache(self, service, gateway):
        """Test forced refresh always calls the remote store."""
        gateway.seed("factories", {"name": "Acme"})
        query = PaginatedQuery("factories")
        await service.get_paginated(query)

        gateway.seed("factories", {"name": "Newco"})
        result = await service.get_paginated(query, force_refresh=True)

        assert result.source == "remote"
        assert result.total_count == 2
        assert gateway.count("fetch_page") == 2

    @pytest.mark.asyncio
    async def test_force_refresh_propagates_errors(self, service, gateway):
        """Test forced refresh never falls back to cached data."""
        gateway.seed("factories", {"name": "Acme"})
        query = PaginatedQuery("factories")
        await service.get_paginated(query)

        gateway.fail("fetch_page", error=QuotaExceeded("quota", "factories"))

        with pytest.raises(QuotaExceeded):
            await service.get_paginated(query, force_refresh=True)

    @pytest.mark.asyncio
    async def test_unknown_resource(self, service):
        """Test resources without a cache class are rejected."""
        with pytest.raises(ValueError):
            await service.get_paginated(PaginatedQuery("quotations"))

    def test_construction_validates_policy(self, gateway, durable_store, clock):
        """Test a served resource without a TTL policy is rejected up front."""
        cache = CacheStore(durable_store, ttls={"factory": 1800}, clock=clock)
        with pytest.raises(ValueError):
            CachedQueryService(gateway, cache)

        service = CachedQueryService(gateway, cache, resource_classes={"factories": "factory"})
        assert service.resource_classes == {"factories": "factory"}


class TestCachedQueryServiceDegradation:
    """Tests for the fallback chain."""

    @pytest.mark.asyncio
    async def test_failure_without_cache_returns_empty_degraded_page(self, service, gateway):
        """Test remote failure with nothing cached yields an empty degraded page."""
        gateway.fail("fetch_page")

        result = await service.get_paginated(PaginatedQuery("products", page=1))

        assert result.items == []
        assert result.degraded is True
        assert result.source == "sample"
        assert "remote down" in result.error

    @pytest.mark.asyncio
    async def test_failure_serves_stale_entry(self, service, gateway, clock):
        """Test an expired entry is served, marked degraded, when the remote fails."""
        gateway.seed("products", {"name": "Bolt"})
        query = PaginatedQuery("products")
        await service.get_paginated(query)

        clock.advance(60 * 60)
        gateway.fail("fetch_page")
        result = await service.get_paginated(query)

        assert result.source == "stale"
        assert result.degraded is True
        assert result.items[0]["name"] == "Bolt"

    @pytest.mark.parametrize("response, error_type", [
        ({"success": False, "error": "boom"}, RemoteUnavailable),
        ({"success": True, "fallback": True, "data": []}, QuotaExceeded),
        ({"success": True, "data": "not-a-list"}, MalformedResponse),
        ({"success": True, "data": [], "pagination": [1, 2]}, MalformedResponse),
        ({"success": True, "data": [], "pagination": "page-1"}, MalformedResponse),
    ])
    @pytest.mark.asyncio
    async def test_bad_envelopes_degrade(self, service, gateway, cache, response, error_type):
        """Test success:false, fallback:true and malformed data all degrade."""
        gateway.page_response = response

        result = await service.get_paginated(PaginatedQuery("factories"))
        assert result.degraded is True
        assert result.source == "sample"

        strict = CachedQueryService(gateway, cache, fallbacks=[])
        with pytest.raises(FallbackExhausted) as exc_info:
            await strict.get_paginated(PaginatedQuery("factories"))
        assert type(exc_info.value.errors[0]) is error_type

    @pytest.mark.asyncio
    async def test_unexpected_gateway_exception_degrades(self, service, gateway):
        """Test arbitrary gateway exceptions are treated as remote failures."""
        gateway.fail("fetch_page", error=TimeoutError("slow"))

        result = await service.get_paginated(PaginatedQuery("images"))

        assert result.degraded is True

    @pytest.mark.asyncio
    async def test_sample_data_is_paged(self, gateway, cache):
        """Test configured sample data is served page by page."""
        samples = {"factories": [{"name": f"Sample {i}"} for i in range(5)]}
        service = CachedQueryService(
            gateway, cache, fallbacks=[StaleCacheSource(cache), SampleDataSource(samples)]
        )
        gateway.fail("fetch_page")

        result = await service.get_paginated(PaginatedQuery("factories", page=2, page_size=2))

        assert [i["name"] for i in result.items] == ["Sample 2", "Sample 3"]
        assert result.total_count == 5
        assert result.total_pages == 3
        assert result.source == "sample"

    @pytest.mark.asyncio
    async def test_fallback_exhausted(self, gateway, cache):
        """Test every strategy failing raises with all collected errors."""
        service = CachedQueryService(gateway, cache, fallbacks=[StaleCacheSource(cache)])
        gateway.fail("fetch_page")

        with pytest.raises(FallbackExhausted) as exc_info:
            await service.get_paginated(PaginatedQuery("factories"))

        errors = exc_info.value.errors
        assert isinstance(errors[0], RemoteUnavailable)
        assert isinstance(errors[1], LookupError)

    @pytest.mark.asyncio
    async def test_not_found_never_absorbed(self, service, gateway):
        """Test NotFound propagates instead of degrading."""
        gateway.fail("fetch_page", error=NotFound("factories", "collection"))

        with pytest.raises(NotFound):
            await service.get_paginated(PaginatedQuery("factories"))

    @pytest.mark.asyncio
    async def test_degraded_result_not_cached(self, service, gateway):
        """Test a degraded answer does not overwrite the cache."""
        gateway.fail("fetch_page")
        await service.get_paginated(PaginatedQuery("factories"))

        gateway.heal()
        gateway.seed("factories", {"name": "Acme"})
        result = await service.get_paginated(PaginatedQuery("factories"))

        assert result.source == "remote"
        assert result.total_count == 1


class TestCachedQueryServiceDocuments:
    """Tests for single-document reads and writes."""

    @pytest.mark.asyncio
    async def test_get_one_cached(self, service, gateway):
        """Test a document read is cached."""
        gateway.seed("factories", {"id": "f-1", "name": "Acme"})

        first = await service.get_one("factories", "f-1")
        second = await service.get_one("factories", "f-1")

        assert first.data["name"] == "Acme"
        assert second.source == "cache"
        assert gateway.count("get") == 1

    @pytest.mark.asyncio
    async def test_get_one_not_found(self, service):
        """Test a missing document raises NotFound."""
        with pytest.raises(NotFound):
            await service.get_one("factories", "nope")

    @pytest.mark.asyncio
    async def test_get_one_stale_fallback(self, service, gateway, clock):
        """Test remote failure serves the last cached copy."""
        gateway.seed("factories", {"id": "f-1", "name": "Acme"})
        await service.get_one("factories", "f-1")

        clock.advance(2 * 60 * 60)
        gateway.fail("get")
        result = await service.get_one("factories", "f-1")

        assert result.degraded is True
        assert result.source == "stale"

    @pytest.mark.asyncio
    async def test_get_one_failure_without_copy_raises(self, service, gateway):
        """Test remote failure with no cached copy propagates."""
        gateway.fail("get")
        with pytest.raises(RemoteUnavailable):
            await service.get_one("factories", "f-1")

    @pytest.mark.asyncio
    async def test_writes_invalidate_resource(self, service, gateway):
        """Test create/update/delete drop cached reads of the resource."""
        query = PaginatedQuery("factories")
        await service.get_paginated(query)

        created = await service.create("factories", {"name": "Acme"})
        after_create = await service.get_paginated(query)
        assert after_create.source == "remote"
        assert after_create.total_count == 1

        await service.update("factories", created["id"], {"name": "Acme Ltd"})
        after_update = await service.get_paginated(query)
        assert after_update.items[0]["name"] == "Acme Ltd"

        await service.delete("factories", created["id"])
        after_delete = await service.get_paginated(query)
        assert after_delete.total_count == 0

    @pytest.mark.asyncio
    async def test_invalidate_resource(self, service, gateway):
        """Test explicit invalidation forces the next read remote."""
        query = PaginatedQuery("tags")
        await service.get_paginated(query)
        await service.invalidate_resource("tags")
        await service.get_paginated(query)

        assert gateway.count("fetch_page") == 2


class TestFetchAll:
    """Tests for reading every page."""

    @pytest.mark.asyncio
    async def test_reads_every_page(self, gateway):
        """Test all pages are concatenated."""
        gateway.seed("tags", *[{"name": f"t{i}"} for i in range(7)])

        items = await fetch_all(gateway, PaginatedQuery("tags", page_size=3))

        assert len(items) == 7
        assert gateway.count("fetch_page") == 3

    @pytest.mark.asyncio
    async def test_pagination_derived_when_missing(self, gateway):
        """Test a payload without pagination is one page."""
        gateway.page_response = {"success": True, "data": [{"id": "x"}]}

        items = await fetch_all(gateway, PaginatedQuery("tags"))

        assert items == [{"id": "x"}]


class TestPaginatedResult:
    """Tests for result conversion."""

    def test_from_remote_uses_limit_alias(self):
        """Test older pagination blocks with limit instead of pageSize."""
        result = PaginatedResult.from_remote(
            PaginatedQuery("products"), [{}] * 5, {"page": 1, "limit": 5, "total": 12}
        )
        assert result.page_size == 5
        assert result.total_pages == 3
