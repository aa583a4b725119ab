"""Typed errors raised by the catalog cache services.

Hierarchy:
    CatalogError
    ├── RemoteUnavailable      transport failure, timeout, 5xx, success=false
    │   ├── MalformedResponse  remote answered with an unusable payload
    │   └── QuotaExceeded      remote reported rate/quota limiting
    ├── NotFound               requested entity or tag does not exist
    └── FallbackExhausted      every degradation strategy failed

RemoteUnavailable and its subclasses are absorbed by the services wherever
fallback data exists. NotFound is always surfaced to the caller.
"""
from typing import Optional


class CatalogError(Exception):
    """Base class for catalog cache errors."""


class RemoteUnavailable(CatalogError):
    """The remote document store could not serve the request."""

    def __init__(self, message: str, resource: Optional[str] = None):
        super().__init__(message)
        self.resource = resource


class MalformedResponse(RemoteUnavailable):
    """The remote store answered, but the payload was not usable."""


class QuotaExceeded(RemoteUnavailable):
    """The remote store signalled rate or quota exhaustion."""


class NotFound(CatalogError):
    """The requested document does not exist."""

    def __init__(self, resource: str, doc_id: str):
        super().__init__(f"{resource}/{doc_id} not found")
        self.resource = resource
        self.doc_id = doc_id


class FallbackExhausted(CatalogError):
    """No data source in the fallback chain could answer.

    Attributes:
        errors: Errors collected from each strategy, in the order tried
    """

    def __init__(self, resource: str, errors: list[Exception]):
        summary = "; ".join(f"{type(e).__name__}: {e}" for e in errors)
        super().__init__(f"No data available for {resource}: {summary}")
        self.resource = resource
        self.errors = errors
