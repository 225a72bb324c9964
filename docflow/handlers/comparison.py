"""Comparison step: runs the rule evaluator over extracted records."""

from typing import Any, Dict, List, Optional, Tuple

from ..core.comparison import ComparisonEvaluator, default_purchase_order_rules
from ..core.logging import get_logger
from ..models.comparison import RuleSet
from ..models.core import StepDefinition, StepType
from .base import StepHandler
from .extraction import STATUS_EXTRACTED

logger = get_logger(__name__)


class ComparisonStepHandler(StepHandler):
    """Compares extracted records against each other.

    Step config:
        rules: field rules (list or mapping), see ``RuleSet.from_config``
        source_type / target_type: document types to pair, e.g.
            ``purchase_order`` against ``invoice``
        match_key: field grouping sources with their targets, e.g. ``po_number``

    Without ``source_type`` the first extracted record is compared against all
    others. Each group with one target yields a ``ComparisonResult``; groups
    with several targets yield a ``ConsolidatedComparison``.
    """

    step_type = StepType.COMPARISON

    def __init__(self, default_rules: Optional[RuleSet] = None):
        self.default_rules = default_rules or default_purchase_order_rules()

    async def handle(self, step: StepDefinition, context: Dict[str, Any]) -> Dict[str, Any]:
        extracted_data = context.get("extracted_data") or []
        if not extracted_data:
            logger.info(f"Step {step.id}: nothing to compare")
            return {"success": True, "comparisons": [], "processed_count": 0}

        rule_set = RuleSet.from_config(step.config) if "rules" in step.config else self.default_rules
        evaluator = ComparisonEvaluator(rule_set)
        records = [self._record_data(entry) for entry in extracted_data]
        records = [record for record in records if record is not None]

        comparisons = []
        approval_required = False
        for source, targets in self._groups(records, step.config):
            if len(targets) == 1:
                result = evaluator.compare(source, targets[0])
            else:
                result = evaluator.compare_many(source, targets)
            approval_required = approval_required or result.approval_required
            comparisons.append(result.model_dump())

        logger.info(f"Step {step.id}: {len(comparisons)} comparisons over {len(records)} records")
        return {
            "success": True,
            "comparisons": comparisons,
            "processed_count": len(records),
            "approval_required": approval_required,
        }

    @staticmethod
    def _record_data(entry: Any) -> Optional[Dict[str, Any]]:
        """Structured data of an extraction entry; rejected and failed entries are skipped."""
        if not isinstance(entry, dict):
            return None
        if "status" in entry and "data" in entry:
            if entry["status"] != STATUS_EXTRACTED or not isinstance(entry["data"], dict):
                return None
            data = dict(entry["data"])
            if entry.get("document_type") and "document_type" not in data:
                data["document_type"] = entry["document_type"]
            return data
        return entry

    @staticmethod
    def _groups(records: List[Dict[str, Any]], config: Dict[str, Any]) -> List[Tuple[Dict[str, Any], List[Dict[str, Any]]]]:
        source_type = config.get("source_type")
        if not source_type:
            if len(records) < 2:
                return []
            return [(records[0], records[1:])]

        target_type = config.get("target_type")
        match_key = config.get("match_key")
        sources = [record for record in records if record.get("document_type") == source_type]
        targets = [
            record for record in records
            if record.get("document_type") != source_type
            and (target_type is None or record.get("document_type") == target_type)
        ]

        groups = []
        for source in sources:
            if match_key:
                matched = [target for target in targets if target.get(match_key) == source.get(match_key)]
            else:
                matched = targets
            if matched:
                groups.append((source, matched))
        return groups
