"""Contracts of the external services the step handlers call.

Implementations may define these methods as coroutines or as plain
functions; handlers go through ``invoke`` which awaits when needed.
"""

import inspect
from typing import Any, Callable, Dict, List, Protocol, runtime_checkable

from ..models.core import (
    ClassificationResult, Document, NotificationSummary, NormalizedRecord,
    WriteOptions, WriteResult,
)


@runtime_checkable
class DocumentSource(Protocol):
    """Supplies documents matching filter criteria.

    Raise ``TransientSourceError`` for retryable failures and
    ``AuthenticationExpiredError`` when credentials are rejected. Sources
    that can renew credentials also expose ``refresh_credentials()``.
    """

    async def fetch(self, filter_criteria: Dict[str, Any]) -> List[Document]:
        ...


@runtime_checkable
class Classifier(Protocol):
    async def classify(self, document: Document) -> ClassificationResult:
        ...


@runtime_checkable
class Extractor(Protocol):
    """Turns a document into a structured record; raises on failure."""

    async def extract(self, document: Document) -> Dict[str, Any]:
        ...


@runtime_checkable
class Persistence(Protocol):
    """Writes normalized records. Idempotency of upserts is its own concern."""

    async def write(self, records: List[NormalizedRecord], options: WriteOptions) -> WriteResult:
        ...


@runtime_checkable
class Notifier(Protocol):
    async def send(self, summary: NotificationSummary) -> None:
        ...


async def invoke(method: Callable[..., Any], *args, **kwargs) -> Any:
    """Call a collaborator method, awaiting the result when it is awaitable."""
    result = method(*args, **kwargs)
    if inspect.isawaitable(result):
        result = await result
    return result
