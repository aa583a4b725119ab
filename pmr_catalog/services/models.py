"""Query and result models shared by the gateway and the query service."""
import math
from dataclasses import asdict, dataclass, field
from typing import Any, Optional

from .cache import CacheStore

ORDER_DIRECTIONS = ("asc", "desc")


@dataclass(frozen=True)
class PaginatedQuery:
    """A paginated, filtered, ordered read of one resource."""
    resource: str
    page: int = 1
    page_size: int = 20
    order_field: str = "createdAt"
    order_direction: str = "desc"
    filters: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.page < 1:
            raise ValueError(f"page must be >= 1, got {self.page}")
        if self.page_size <= 0:
            raise ValueError(f"page_size must be > 0, got {self.page_size}")
        if self.order_direction not in ORDER_DIRECTIONS:
            raise ValueError(f"order_direction must be one of {ORDER_DIRECTIONS}")
        # Unset filters never reach the remote store
        cleaned = {k: v for k, v in self.filters.items() if v is not None}
        object.__setattr__(self, "filters", cleaned)

    def cache_key(self) -> str:
        """
        Build the deterministic cache key.

        Returns:
            Key in format: {resource}:{page}:{page_size}:{order_field}:{order_direction}:{filters_hash}
        """
        filters_hash = CacheStore.compute_hash(self.filters)
        return (
            f"{self.resource}:{self.page}:{self.page_size}:"
            f"{self.order_field}:{self.order_direction}:{filters_hash}"
        )

    def next_page(self) -> "PaginatedQuery":
        return PaginatedQuery(
            resource=self.resource,
            page=self.page + 1,
            page_size=self.page_size,
            order_field=self.order_field,
            order_direction=self.order_direction,
            filters=dict(self.filters),
        )


@dataclass
class PaginatedResult:
    """
    One page of results.

    degraded is True whenever the page did not come from the authoritative
    remote store or a fresh cache entry.
    """
    items: list[dict[str, Any]]
    page: int
    page_size: int
    total_count: int
    total_pages: int
    degraded: bool = False
    source: str = "remote"
    error: Optional[str] = None

    @classmethod
    def empty(cls, query: PaginatedQuery, **kwargs) -> "PaginatedResult":
        return cls(
            items=[],
            page=query.page,
            page_size=query.page_size,
            total_count=0,
            total_pages=0,
            **kwargs
        )

    @classmethod
    def from_remote(cls, query: PaginatedQuery, data: list, pagination: Optional[dict]) -> "PaginatedResult":
        """
        Build a result from a remote payload.

        Missing pagination fields are derived from the page contents.
        """
        pagination = pagination or {}
        total = int(pagination.get("total", len(data)))
        page_size = int(pagination.get("pageSize", pagination.get("limit", query.page_size)))
        pages = pagination.get("pages")
        if pages is None:
            pages = math.ceil(total / page_size) if page_size else 0
        return cls(
            items=list(data),
            page=int(pagination.get("page", query.page)),
            page_size=page_size,
            total_count=total,
            total_pages=int(pages),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PaginatedResult":
        return cls(
            items=data.get("items", []),
            page=data.get("page", 1),
            page_size=data.get("page_size", 0),
            total_count=data.get("total_count", 0),
            total_pages=data.get("total_pages", 0),
            degraded=data.get("degraded", False),
            source=data.get("source", "cache"),
            error=data.get("error"),
        )
