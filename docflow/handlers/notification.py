"""Notification step: summarizes the run and hands the summary to a Notifier."""

from typing import Any, Dict

from ..core.collaborators import Notifier, invoke
from ..core.logging import get_logger
from ..models.core import NotificationSummary, StepDefinition, StepType
from .base import StepHandler
from .extraction import STATUS_ERROR, STATUS_EXTRACTED, STATUS_REJECTED

logger = get_logger(__name__)


def build_summary(context: Dict[str, Any], config: Dict[str, Any]) -> NotificationSummary:
    extracted = [entry for entry in context.get("extracted_data") or [] if isinstance(entry, dict)]

    def count(status: str) -> int:
        return sum(1 for entry in extracted if entry.get("status") == status)

    summary = NotificationSummary(
        workflow_id=context.get("workflow_id"),
        execution_id=context.get("execution_id"),
        documents_fetched=len(context.get("documents") or []),
        documents_extracted=count(STATUS_EXTRACTED),
        documents_rejected=count(STATUS_REJECTED),
        documents_failed=count(STATUS_ERROR),
        records_stored=context.get("stored_count", 0),
        comparisons=len(context.get("comparisons") or []),
        approval_required=bool(context.get("approval_required", False)),
        used_fallback_storage=bool(context.get("used_fallback", False)),
        channels=list(config.get("channels", [])),
    )
    summary.message = config.get("message") or (
        f"Processed {summary.documents_fetched} documents: {summary.documents_extracted} extracted, "
        f"{summary.documents_rejected} rejected, {summary.documents_failed} failed; "
        f"{summary.records_stored} records stored"
    )
    if summary.approval_required:
        summary.message += "; approval required"
    return summary


class NotificationStepHandler(StepHandler):
    """Terminal step. Fails only if the notifier raises."""

    step_type = StepType.NOTIFICATION

    def __init__(self, notifier: Notifier):
        self.notifier = notifier

    async def handle(self, step: StepDefinition, context: Dict[str, Any]) -> Dict[str, Any]:
        summary = build_summary(context, step.config)
        await invoke(self.notifier.send, summary)
        logger.info(f"Step {step.id}: notification sent ({summary.message})")
        return {"success": True, "notification": summary.model_dump(mode="json")}
