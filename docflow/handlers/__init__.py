"""Step handlers, one per StepType."""

from typing import Optional

from ..core.comparison import default_purchase_order_rules
from ..core.retry import RetryConfig
from ..core.exceptions import TransientSourceError
from .base import StepHandler, StepHandlerRegistry
from .comparison import ComparisonStepHandler
from .extraction import CoordinatorExtractor, ExtractionStepHandler
from .notification import NotificationStepHandler
from .source import SourceStepHandler
from .storage import StorageStepHandler, normalize_payload, normalize_record


def build_handler_registry(source, classifier, extractor, persistence, notifier, config=None) -> StepHandlerRegistry:
    """Registry with the default handler for every step type.

    ``config`` is an ``AppConfig``; its retry, confidence and fallback
    settings are applied when given.
    """
    retry_config: Optional[RetryConfig] = None
    min_confidence = 0.5
    fallback_table = "extracted_json"
    comparison_rules = default_purchase_order_rules()
    if config is not None:
        retry_config = RetryConfig(
            max_attempts=config.source_max_attempts,
            base_delay=config.source_base_delay,
            max_delay=config.source_max_delay,
            retryable_exceptions=[TransientSourceError]
        )
        min_confidence = config.min_confidence
        fallback_table = config.fallback_table
        comparison_rules.approval_variance_pct = config.approval_variance_pct

    return StepHandlerRegistry([
        SourceStepHandler(source, retry_config=retry_config),
        ExtractionStepHandler(classifier, extractor, min_confidence=min_confidence),
        ComparisonStepHandler(comparison_rules),
        StorageStepHandler(persistence, fallback_table=fallback_table),
        NotificationStepHandler(notifier),
    ])


__all__ = [
    "StepHandler",
    "StepHandlerRegistry",
    "SourceStepHandler",
    "ExtractionStepHandler",
    "CoordinatorExtractor",
    "ComparisonStepHandler",
    "StorageStepHandler",
    "NotificationStepHandler",
    "normalize_payload",
    "normalize_record",
    "build_handler_registry",
]
