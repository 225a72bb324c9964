"""Source step: fetches documents with retry and a single credential refresh."""

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..core.collaborators import DocumentSource, invoke
from ..core.exceptions import (
    AuthenticationExpiredError, ReauthenticationRequiredError, SourceFetchError, TransientSourceError,
)
from ..core.logging import RetryLogger, get_logger
from ..core.retry import RetryConfig, retry_async
from ..models.core import Document, StepDefinition, StepType
from .base import StepHandler

logger = get_logger(__name__)

INVOICE_KEYWORDS = [
    "invoice", "billing", "payment", "receipt", "statement",
    "purchase order", "PO", "remittance", "payable",
    "due", "amount", "total", "tax", "vat",
]


def build_filter_criteria(config: Dict[str, Any]) -> Dict[str, Any]:
    """Filter criteria for ``DocumentSource.fetch`` from step config.

    With ``intelligent_filtering`` the user filters are extended with invoice
    keywords and the result limit is raised.
    """
    filters = list(config.get("filters", []))
    intelligent = bool(config.get("intelligent_filtering", False))
    if intelligent:
        for keyword in INVOICE_KEYWORDS:
            if keyword not in filters:
                filters.append(keyword)

    criteria = dict(config.get("criteria", {}))
    criteria["filters"] = filters
    criteria["intelligent_filtering"] = intelligent
    criteria["max_results"] = config.get("max_results", 20 if intelligent else 10)
    return criteria


class SourceStepHandler(StepHandler):
    """Fetches documents from a ``DocumentSource``.

    Transient failures are retried with exponential backoff. An expired
    credential triggers exactly one ``refresh_credentials()`` call followed by
    another fetch; if that fails on authentication again the step fails with
    ``ReauthenticationRequiredError``.
    """

    step_type = StepType.SOURCE

    def __init__(
        self,
        source: DocumentSource,
        retry_config: Optional[RetryConfig] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        self.source = source
        self.retry_config = retry_config or RetryConfig(retryable_exceptions=[TransientSourceError])
        self.sleep = sleep
        self.retry_logger = RetryLogger("source")

    async def handle(self, step: StepDefinition, context: Dict[str, Any]) -> Dict[str, Any]:
        criteria = build_filter_criteria(step.config)
        logger.info(f"Fetching documents for step {step.id} with {len(criteria['filters'])} filters")

        try:
            raw_documents = await self._fetch(step, criteria)
        except AuthenticationExpiredError as e:
            raw_documents = await self._refresh_and_fetch(step, criteria, e)

        documents = [self._coerce(document) for document in raw_documents or []]
        logger.info(f"Step {step.id} fetched {len(documents)} documents")
        return {"success": True, "documents": documents, "document_count": len(documents)}

    async def _fetch(self, step: StepDefinition, criteria: Dict[str, Any]) -> List[Any]:
        try:
            return await retry_async(
                invoke, self.retry_config, self.source.fetch, criteria,
                operation="source.fetch", sleep=self.sleep
            )
        except TransientSourceError as e:
            raise SourceFetchError(
                f"Transient failure: document source unavailable after "
                f"{self.retry_config.max_attempts} attempts ({e.message})",
                step_id=step.id,
                attempts=self.retry_config.max_attempts
            ) from e

    async def _refresh_and_fetch(
        self,
        step: StepDefinition,
        criteria: Dict[str, Any],
        error: AuthenticationExpiredError
    ) -> List[Any]:
        refresh = getattr(self.source, "refresh_credentials", None)
        if not callable(refresh):
            raise ReauthenticationRequiredError(
                f"Reauthentication required: source credentials expired ({error.message})",
                step_id=step.id
            ) from error

        try:
            await invoke(refresh)
        except Exception as refresh_error:
            self.retry_logger.log_credential_refresh("source.fetch", succeeded=False)
            raise ReauthenticationRequiredError(
                f"Reauthentication required: credential refresh failed ({refresh_error})",
                step_id=step.id
            ) from refresh_error
        self.retry_logger.log_credential_refresh("source.fetch", succeeded=True)

        try:
            return await self._fetch(step, criteria)
        except AuthenticationExpiredError as again:
            raise ReauthenticationRequiredError(
                f"Reauthentication required: credentials rejected after refresh ({again.message})",
                step_id=step.id
            ) from again

    @staticmethod
    def _coerce(document: Any) -> Document:
        if isinstance(document, Document):
            return document
        return Document.model_validate(document)
