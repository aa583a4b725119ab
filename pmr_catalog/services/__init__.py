"""Service layer for catalog caching, tags and association reconciliation."""

from .cache import CacheClass, CacheStore
from .errors import (
    CatalogError,
    FallbackExhausted,
    MalformedResponse,
    NotFound,
    QuotaExceeded,
    RemoteUnavailable,
)
from .models import PaginatedQuery, PaginatedResult
from .query import CachedQueryService
from .reconcile import AssociationReconciler, compute_plan
from .tags import Tag, TagCategory, TagRegistry

__all__ = [
    "AssociationReconciler",
    "CacheClass",
    "CacheStore",
    "CachedQueryService",
    "CatalogError",
    "FallbackExhausted",
    "MalformedResponse",
    "NotFound",
    "PaginatedQuery",
    "PaginatedResult",
    "QuotaExceeded",
    "RemoteUnavailable",
    "Tag",
    "TagCategory",
    "TagRegistry",
    "compute_plan",
]
