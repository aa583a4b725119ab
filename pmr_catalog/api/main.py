"""
PMR Catalog Cache API Service.

FastAPI application serving catalog reads through the tiered cache, the
deduplicated tag catalog, and tag association reconciliation.

Remote store (choose ONE):
1. HTTP API: REMOTE_API_URL (+ REMOTE_API_TOKEN for writes)
2. Direct MongoDB: MONGODB_URL (+ MONGODB_DATABASE)

Durable cache tier: Postgres when POSTGRES_URL is set, else a JSON file
under CACHE_DIR.
"""
# Load .env file if present (for local development)
from dotenv import load_dotenv
load_dotenv()

import asyncio
import logging
import os
from pathlib import Path
from contextlib import asynccontextmanager
from typing import Any, Optional, Union

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ..services.cache import CacheStore
from ..services.errors import CatalogError, NotFound, QuotaExceeded
from ..services.gateway import HttpGateway
from ..services.models import PaginatedQuery, PaginatedResult
from ..services.mongo_gateway import MongoGateway
from ..services.query import CachedQueryService
from ..services.reconcile import AssociationReconciler, ReconciliationResult
from ..services.stores import JsonFileStore, PostgresStore
from ..services.tags import Catalog, Tag, TagRegistry

logging.basicConfig(
    level=os.getenv('LOG_LEVEL', 'INFO').upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Query parameters of the resource listing that are not filters
PAGINATION_PARAMS = {"page", "page_size", "order_field", "order_direction", "force_refresh"}


# Global instances
gateway: Optional[Union[HttpGateway, MongoGateway]] = None
cache: Optional[CacheStore] = None
query_service: Optional[CachedQueryService] = None
registry: Optional[TagRegistry] = None
reconciler: Optional[AssociationReconciler] = None
postgres_store: Optional[PostgresStore] = None
durable_backend: str = "json"


async def sweep_loop(cache_store: CacheStore, interval: float) -> None:
    """Periodically remove expired cache entries."""
    while True:
        try:
            await asyncio.sleep(interval)
            await cache_store.sweep_expired()
        except asyncio.CancelledError:
            break
        except Exception as e:
            logger.error(f"Cache sweep error: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Connects the remote gateway, picks the durable cache tier, wires the
    core services and starts the periodic cache sweep.
    """
    global gateway, cache, query_service, registry, reconciler, postgres_store, durable_backend

    api_url = os.getenv('REMOTE_API_URL')
    mongodb_url = os.getenv('MONGODB_URL')
    postgres_url = os.getenv('POSTGRES_URL')
    cache_dir = Path(os.getenv('CACHE_DIR', '/tmp/pmr-catalog/cache'))
    sweep_interval = float(os.getenv('CACHE_SWEEP_INTERVAL', '600'))

    if api_url:
        gateway = HttpGateway(api_url=api_url, api_token=os.getenv('REMOTE_API_TOKEN', ''))
    elif mongodb_url:
        gateway = MongoGateway(mongodb_url, os.getenv('MONGODB_DATABASE', 'pmr'))
    else:
        raise ValueError("REMOTE_API_URL or MONGODB_URL environment variable required")
    await gateway.connect()

    durable = None
    if postgres_url:
        try:
            postgres_store = PostgresStore(postgres_url)
            await postgres_store.initialize()
            durable = postgres_store
            durable_backend = "postgres"
        except Exception as e:
            logger.warning(f"Postgres cache initialization failed: {e}. Using JSON file cache.")
            postgres_store = None

    if durable is None:
        cache_dir.mkdir(parents=True, exist_ok=True)
        durable = JsonFileStore(cache_dir / 'catalog_cache.json')
        durable_backend = "json"

    cache = CacheStore(durable)
    query_service = CachedQueryService(gateway, cache)
    registry = TagRegistry(gateway, cache, durable)
    reconciler = AssociationReconciler(gateway, registry)

    sweep_task = None
    if sweep_interval > 0:
        sweep_task = asyncio.create_task(sweep_loop(cache, sweep_interval))

    yield

    # Cleanup
    if sweep_task:
        sweep_task.cancel()
    await registry.drain()
    await gateway.close()
    if postgres_store:
        await postgres_store.close()


app = FastAPI(
    title="PMR Catalog Cache API",
    description="Cached catalog reads, deduplicated tags and tag association reconciliation",
    version="1.0.0",
    lifespan=lifespan
)


@app.exception_handler(CatalogError)
async def catalog_error_handler(request: Request, exc: CatalogError):
    if isinstance(exc, NotFound):
        status_code = 404
    elif isinstance(exc, QuotaExceeded):
        status_code = 429
    else:
        status_code = 503
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


# Request/Response Models

class PageResponse(BaseModel):
    """Response model for a page of a resource."""
    items: list[dict[str, Any]]
    page: int
    page_size: int
    total_count: int
    total_pages: int
    degraded: bool
    source: str
    error: Optional[str] = None


class DocumentResponse(BaseModel):
    """Response model for a single document."""
    data: dict[str, Any]
    degraded: bool
    source: str


class CreatedResponse(BaseModel):
    id: str


class TagModel(BaseModel):
    id: str
    name: str
    category: str
    created_at: Optional[str] = None


class TagCatalogResponse(BaseModel):
    """Response model for the whole tag catalog."""
    mode: str
    tags: dict[str, list[TagModel]]


class TagWriteRequest(BaseModel):
    """Request model for creating or renaming a tag."""
    name: str
    category: str


class TagWriteResponse(BaseModel):
    created: bool
    id: str
    reason: Optional[str] = None


class ProbeResponse(BaseModel):
    mode: str
    remote_available: bool


class DesiredTag(BaseModel):
    """A desired tag, by id or by name (created on demand)."""
    id: Optional[str] = None
    name: Optional[str] = None


class ReconcileRequest(BaseModel):
    """Request model for reconciling an entity's tags."""
    tags: dict[str, list[Union[str, DesiredTag]]]


class AssociationFailureModel(BaseModel):
    operation: str
    category: str
    tag_id: str
    tag_name: str
    error: str


class ReconcileResponse(BaseModel):
    """Response model for a reconciliation run."""
    entity_id: str
    state: str
    added: dict[str, list[TagModel]]
    removed: dict[str, list[TagModel]]
    linked: list[str]
    unlinked: list[str]
    failures: list[AssociationFailureModel]


class CacheStatsResponse(BaseModel):
    """Response model for cache statistics."""
    memory_entries: int
    memory_keys: list[str]
    ttls: dict[str, float]
    durable_backend: str
    registry_mode: str


class HealthResponse(BaseModel):
    """Response model for health check."""
    status: str
    cache_entries: int
    durable_backend: str
    registry_mode: Optional[str]


def _tag_model(tag: Tag) -> TagModel:
    return TagModel(id=tag.id, name=tag.name, category=tag.category.value, created_at=tag.created_at)


def _catalog_models(catalog: Catalog) -> dict[str, list[TagModel]]:
    return {category.value: [_tag_model(t) for t in tags] for category, tags in catalog.items()}


def _page_response(result: PaginatedResult) -> PageResponse:
    return PageResponse(**result.to_dict())


def _reconcile_response(result: ReconciliationResult) -> ReconcileResponse:
    return ReconcileResponse(
        entity_id=result.entity_id,
        state=result.state.value,
        added=_catalog_models(result.plan.added),
        removed=_catalog_models(result.plan.removed),
        linked=result.linked,
        unlinked=result.unlinked,
        failures=[
            AssociationFailureModel(
                operation=f.operation,
                category=f.category.value,
                tag_id=f.tag_id,
                tag_name=f.tag_name,
                error=f.error,
            )
            for f in result.failures
        ],
    )


# =============================================================================
# Resource Endpoints
# =============================================================================

@app.get("/api/v1/resources/{resource}", response_model=PageResponse)
async def list_resource(
    resource: str,
    request: Request,
    page: int = 1,
    page_size: int = 20,
    order_field: str = "createdAt",
    order_direction: str = "desc",
    force_refresh: bool = False,
):
    """
    Get a page of a resource, cache-first.

    Query parameters other than the pagination ones are used as filters.
    Degraded answers (stale cache, sample data) come back with
    degraded=true instead of an error.
    """
    filters = {k: v for k, v in request.query_params.items() if k not in PAGINATION_PARAMS}
    query = PaginatedQuery(
        resource=resource,
        page=page,
        page_size=page_size,
        order_field=order_field,
        order_direction=order_direction,
        filters=filters,
    )
    result = await query_service.get_paginated(query, force_refresh=force_refresh)
    return _page_response(result)


@app.get("/api/v1/resources/{resource}/{doc_id}", response_model=DocumentResponse)
async def get_document(resource: str, doc_id: str, force_refresh: bool = False):
    """Get a single document, cache-first."""
    result = await query_service.get_one(resource, doc_id, force_refresh=force_refresh)
    return DocumentResponse(data=result.data, degraded=result.degraded, source=result.source)


@app.post("/api/v1/resources/{resource}", response_model=CreatedResponse)
async def create_document(resource: str, payload: dict[str, Any]):
    """Create a document and invalidate the resource's cached reads."""
    created = await query_service.create(resource, payload)
    return CreatedResponse(id=str(created["id"]))


@app.put("/api/v1/resources/{resource}/{doc_id}")
async def update_document(resource: str, doc_id: str, payload: dict[str, Any]):
    """Update a document and invalidate the resource's cached reads."""
    await query_service.update(resource, doc_id, payload)
    return {"status": "updated", "id": doc_id}


@app.delete("/api/v1/resources/{resource}/{doc_id}")
async def delete_document(resource: str, doc_id: str):
    """Delete a document and invalidate the resource's cached reads."""
    await query_service.delete(resource, doc_id)
    return {"status": "deleted", "id": doc_id}


# =============================================================================
# Tag Endpoints
# =============================================================================

@app.get("/api/v1/tags", response_model=TagCatalogResponse)
async def list_tags(force_refresh: bool = False):
    """Get the deduplicated tag catalog grouped by category."""
    catalog = await registry.get_all(force_refresh=force_refresh)
    return TagCatalogResponse(mode=registry.mode.value, tags=_catalog_models(catalog))


@app.post("/api/v1/tags", response_model=TagWriteResponse)
async def create_tag(req: TagWriteRequest):
    """
    Create a tag.

    Idempotent by identity: a tag whose trimmed, lowercased name already
    exists in the category is not created again; the response carries
    created=false, reason="duplicate" and the existing id.
    """
    result = await registry.create(req.name, req.category)
    return TagWriteResponse(created=result.created, id=result.id, reason=result.reason)


@app.put("/api/v1/tags/{tag_id}", response_model=TagWriteResponse)
async def update_tag(tag_id: str, req: TagWriteRequest):
    """Rename a tag, refused when the new name is taken in the category."""
    result = await registry.update(tag_id, req.category, req.name)
    return TagWriteResponse(created=result.created, id=result.id, reason=result.reason)


@app.delete("/api/v1/tags/{tag_id}")
async def delete_tag(tag_id: str, category: str):
    """
    Delete a tag.

    Associations of the tag are removed in the background.
    """
    await registry.delete(tag_id, category)
    return {"status": "deleted", "id": tag_id}


@app.post("/api/v1/tags/probe", response_model=ProbeResponse)
async def probe_tags():
    """Retry the remote store and leave local fallback mode if it answers."""
    available = await registry.probe()
    return ProbeResponse(mode=registry.mode.value, remote_available=available)


@app.put("/api/v1/entities/{entity_id}/tags", response_model=ReconcileResponse)
async def reconcile_entity_tags(entity_id: str, req: ReconcileRequest):
    """
    Set an entity's tags.

    Only the categories present in the request are changed. Individual
    association writes that fail are listed in failures; the request itself
    still succeeds.
    """
    desired = {
        category: [item if isinstance(item, str) else item.model_dump() for item in items]
        for category, items in req.tags.items()
    }
    result = await reconciler.reconcile(entity_id, desired)
    return _reconcile_response(result)


# =============================================================================
# Cache Endpoints
# =============================================================================

@app.get("/api/v1/cache/stats", response_model=CacheStatsResponse)
async def cache_stats():
    """
    Get cache statistics.

    Returns:
        CacheStatsResponse with in-process entries and TTL policy
    """
    stats = cache.stats()
    return CacheStatsResponse(
        **stats,
        durable_backend=durable_backend,
        registry_mode=registry.mode.value,
    )


@app.delete("/api/v1/cache")
async def clear_cache():
    """Clear every cache class in both tiers."""
    await cache.clear_all()
    return {"status": "cleared", "message": "Cache has been cleared"}


@app.delete("/api/v1/cache/{resource}")
async def invalidate_resource(resource: str):
    """
    Drop every cached read of one resource.

    Raises:
        HTTPException: 404 if the resource is not served through the cache
    """
    if resource not in query_service.resource_classes:
        raise HTTPException(status_code=404, detail=f"Resource not cached: {resource}")
    await query_service.invalidate_resource(resource)
    return {"status": "invalidated", "resource": resource}


@app.get("/health", response_model=HealthResponse)
async def health():
    """
    Health check endpoint.

    Returns:
        HealthResponse with service status and cache info
    """
    return HealthResponse(
        status="healthy",
        cache_entries=cache.stats()["memory_entries"] if cache else 0,
        durable_backend=durable_backend,
        registry_mode=registry.mode.value if registry else None,
    )


@app.get("/")
async def root():
    """
    Root endpoint with API information.

    Returns:
        API info and available endpoints
    """
    return {
        "name": "PMR Catalog Cache API",
        "version": "1.0.0",
        "endpoints": {
            "list_resource": "GET /api/v1/resources/{resource}",
            "get_document": "GET /api/v1/resources/{resource}/{doc_id}",
            "create_document": "POST /api/v1/resources/{resource}",
            "update_document": "PUT /api/v1/resources/{resource}/{doc_id}",
            "delete_document": "DELETE /api/v1/resources/{resource}/{doc_id}",
            "list_tags": "GET /api/v1/tags",
            "create_tag": "POST /api/v1/tags",
            "update_tag": "PUT /api/v1/tags/{tag_id}",
            "delete_tag": "DELETE /api/v1/tags/{tag_id}?category=...",
            "probe_tags": "POST /api/v1/tags/probe",
            "reconcile": "PUT /api/v1/entities/{entity_id}/tags",
            "cache_stats": "GET /api/v1/cache/stats",
            "clear_cache": "DELETE /api/v1/cache",
            "invalidate_resource": "DELETE /api/v1/cache/{resource}",
            "health": "GET /health",
        },
    }
