"""HTTP gateway to the catalog document store API.

The remote API exposes one set of endpoints per collection:

- GET    /firestore/get/paginated?col=...   - Paginated, filtered read
- GET    /firestore/get/{resource}/{id}     - Single document
- POST   /firestore/create/{resource}       - Create document
- PUT    /firestore/update/{resource}/{id}  - Update document
- DELETE /firestore/delete/{resource}/{id}  - Delete document

Responses are JSON envelopes of the form
    {"success": true, "data": [...], "pagination": {...}}
Older endpoints answer with "ok" instead of "success"; both are accepted.

HTTP failures are mapped onto the typed errors in errors.py:
transport/timeout/5xx -> RemoteUnavailable, 429 -> QuotaExceeded,
404 -> NotFound.
"""

import logging
from typing import Any, Optional, Protocol

import httpx

from .errors import MalformedResponse, NotFound, QuotaExceeded, RemoteUnavailable
from .models import PaginatedQuery

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "http://localhost:3001/api"


class RemoteGateway(Protocol):
    """Protocol for remote document stores (HTTP API or direct MongoDB)."""

    async def fetch_page(self, resource: str, query: PaginatedQuery) -> dict[str, Any]: ...
    async def get(self, resource: str, doc_id: str) -> dict[str, Any]: ...
    async def create(self, resource: str, payload: dict[str, Any]) -> dict[str, Any]: ...
    async def update(self, resource: str, doc_id: str, payload: dict[str, Any]) -> None: ...
    async def delete(self, resource: str, doc_id: str) -> None: ...


class HttpGateway:
    """Reads and writes catalog documents via the HTTP API.

    Usage:
        gateway = HttpGateway(api_url="https://catalog.example.com/api")
        await gateway.connect()

        page = await gateway.fetch_page("factories", PaginatedQuery("factories"))
        created = await gateway.create("tags", {"name": "Steel", "category": "material"})

        await gateway.close()
    """

    def __init__(
        self,
        api_url: str = DEFAULT_API_URL,
        api_token: str = "",
        timeout: float = 30.0,
    ):
        """Initialize HTTP gateway.

        Args:
            api_url: Base URL of the catalog API
            api_token: Bearer token for write operations
            timeout: HTTP request timeout in seconds
        """
        self.api_url = api_url.rstrip("/")
        self.api_token = api_token
        self.timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None

    async def connect(self) -> None:
        """Initialize HTTP client."""
        self._client = httpx.AsyncClient(
            timeout=self.timeout,
            headers={
                "User-Agent": "PMR-Catalog-Cache/1.0",
                "Accept": "application/json",
            }
        )
        logger.info(f"HTTP gateway initialized for {self.api_url}")

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def _get_headers(self, with_auth: bool = False) -> dict[str, str]:
        """Get headers for requests."""
        headers = {"Content-Type": "application/json"}
        if with_auth and self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        resource: str,
        doc_id: Optional[str] = None,
        **kwargs
    ) -> dict[str, Any]:
        """Send a request and return the decoded JSON envelope.

        Raises:
            RemoteUnavailable: Transport error, timeout or 5xx
            QuotaExceeded: 429 from the API
            NotFound: 404 for a single-document request
            MalformedResponse: Body is not a JSON object
        """
        if not self._client:
            raise RuntimeError("Not connected - call connect() first")

        url = f"{self.api_url}{path}"

        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.RequestError as e:
            logger.error(f"HTTP error on {method} {url}: {e}")
            raise RemoteUnavailable(f"{method} {path} failed: {e}", resource) from e

        if response.status_code == 429:
            raise QuotaExceeded(f"Quota exceeded for {resource}", resource)
        if response.status_code == 404 and doc_id is not None:
            raise NotFound(resource, doc_id)
        if response.status_code >= 400:
            logger.error(f"{method} {url} returned {response.status_code} - {response.text}")
            raise RemoteUnavailable(
                f"{method} {path} returned {response.status_code}", resource
            )

        try:
            body = response.json()
        except ValueError as e:
            raise MalformedResponse(f"{method} {path} returned non-JSON body", resource) from e

        if not isinstance(body, dict):
            raise MalformedResponse(f"{method} {path} returned {type(body).__name__}", resource)

        if "success" not in body and "ok" in body:
            body["success"] = bool(body["ok"])
        return body

    async def fetch_page(self, resource: str, query: PaginatedQuery) -> dict[str, Any]:
        """Fetch one page of a collection.

        Args:
            resource: Collection name
            query: Page, ordering and filters

        Returns:
            Raw response envelope (may carry success=false or fallback=true)
        """
        params: dict[str, Any] = {
            "col": resource,
            "page": str(query.page),
            "limit": str(query.page_size),
            "orderBy": query.order_field,
            "orderDirection": query.order_direction,
        }
        for key, value in query.filters.items():
            params[key] = str(value)

        return await self._request(
            "GET", "/firestore/get/paginated", resource,
            params=params, headers=self._get_headers()
        )

    async def get(self, resource: str, doc_id: str) -> dict[str, Any]:
        """Get a single document.

        Raises:
            NotFound: If the document does not exist
        """
        body = await self._request(
            "GET", f"/firestore/get/{resource}/{doc_id}", resource, doc_id=doc_id,
            headers=self._get_headers()
        )
        if not body.get("success") or body.get("data") is None:
            raise NotFound(resource, doc_id)
        return body["data"]

    async def create(self, resource: str, payload: dict[str, Any]) -> dict[str, Any]:
        """Create a document.

        Returns:
            Dict with the new document "id"
        """
        body = await self._request(
            "POST", f"/firestore/create/{resource}", resource,
            json=payload, headers=self._get_headers(with_auth=True)
        )
        if not body.get("success") or not body.get("id"):
            raise MalformedResponse(f"Create on {resource} returned no id", resource)

        logger.info(f"Created {resource}/{body['id']}")
        return {"id": body["id"]}

    async def update(self, resource: str, doc_id: str, payload: dict[str, Any]) -> None:
        """Update fields of an existing document."""
        body = await self._request(
            "PUT", f"/firestore/update/{resource}/{doc_id}", resource, doc_id=doc_id,
            json=payload, headers=self._get_headers(with_auth=True)
        )
        if not body.get("success"):
            raise RemoteUnavailable(body.get("error") or f"Update of {resource}/{doc_id} failed", resource)
        logger.info(f"Updated {resource}/{doc_id}")

    async def delete(self, resource: str, doc_id: str) -> None:
        """Delete a document."""
        body = await self._request(
            "DELETE", f"/firestore/delete/{resource}/{doc_id}", resource, doc_id=doc_id,
            headers=self._get_headers(with_auth=True)
        )
        if not body.get("success"):
            raise RemoteUnavailable(body.get("error") or f"Delete of {resource}/{doc_id} failed", resource)
        logger.info(f"Deleted {resource}/{doc_id}")
