"""Weighted, tolerance-aware comparison of extracted business documents."""

import re
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from ..models.comparison import (
    MatchStrategy, Severity, FieldRule, RuleSet, FieldComparison, Discrepancy,
    LineItemComparison, ComparisonSummary, ComparisonResult, ConsolidatedComparison,
)
from .logging import get_logger

logger = get_logger(__name__)

# Float slack when checking a variance against a tolerance boundary.
_EPSILON = 1e-9

_TOKEN_PATTERN = re.compile(r"[a-z0-9]+")
_NUMBER_CLEANUP = re.compile(r"[^0-9.\-]")


def variance(expected: float, observed: float) -> float:
    """Signed percentage difference of ``observed`` relative to ``expected``.

    Returns 0 when both are zero and 100 when only ``expected`` is zero.
    """
    if expected == 0 and observed == 0:
        return 0.0
    if expected == 0:
        return 100.0
    return (observed - expected) * 100.0 / expected


def severity_for_variance(value: float) -> Severity:
    magnitude = abs(value)
    if magnitude > 10:
        return Severity.HIGH
    if magnitude > 5:
        return Severity.MEDIUM
    return Severity.LOW


def tokenize(value: Any) -> Set[str]:
    if value is None:
        return set()
    return set(_TOKEN_PATTERN.findall(str(value).lower()))


def token_jaccard(left: Any, right: Any) -> float:
    """Token-set Jaccard similarity in [0, 1]."""
    left_tokens = tokenize(left)
    right_tokens = tokenize(right)
    if not left_tokens and not right_tokens:
        return 1.0 if _normalize_text(left) == _normalize_text(right) else 0.0
    return len(left_tokens & right_tokens) / len(left_tokens | right_tokens)


def to_number(value: Any) -> Optional[float]:
    """Parse ints, floats and currency-formatted strings; None otherwise."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        cleaned = _NUMBER_CLEANUP.sub("", value)
        if not cleaned or cleaned in ("-", ".", "-."):
            return None
        try:
            return float(cleaned)
        except ValueError:
            return None
    return None


def _normalize_text(value: Any) -> str:
    return "" if value is None else str(value).strip().lower()


class ComparisonEvaluator:
    """Evaluates a rule set against source/target record pairs."""

    def __init__(self, rule_set: Optional[RuleSet] = None):
        self.rule_set = rule_set or RuleSet()

    def compare(self, source: Dict[str, Any], target: Dict[str, Any]) -> ComparisonResult:
        field_comparisons = [self._compare_field(rule, source, target) for rule in self.rule_set.rules]
        discrepancies = [
            self._field_discrepancy(comparison)
            for comparison in field_comparisons
            if not comparison.matched
        ]

        line_items, unmatched_targets = self.reconcile_line_items(
            self._line_items(source), self._line_items(target)
        )
        for pair in line_items:
            if abs(pair.amount_variance) > 5:
                description = pair.source_item.get(self.rule_set.line_item_description_field, "")
                discrepancies.append(Discrepancy(
                    field=f"line_item:{description}",
                    source_value=self._item_amount(pair.source_item),
                    target_value=self._item_amount(pair.target_item),
                    variance=pair.amount_variance,
                    description=f"{pair.amount_variance:.2f}% amount variance",
                    severity=Severity.HIGH if abs(pair.amount_variance) > 10 else Severity.MEDIUM,
                ))

        source_total = self._document_total(source)
        target_total = self._document_total(target)
        amount_variance = variance(source_total, target_total)
        has_high = any(d.severity == Severity.HIGH for d in discrepancies)
        source_items = self._line_items(source)

        summary = ComparisonSummary(
            source_total=source_total,
            target_total=target_total,
            amount_variance=amount_variance,
            items_matched=len(line_items),
            items_missing=len(source_items) - len(line_items),
            items_unexpected=unmatched_targets,
            approval_required=abs(amount_variance) > self.rule_set.approval_variance_pct + _EPSILON or has_high,
        )

        return ComparisonResult(
            score=self._aggregate(field_comparisons),
            field_comparisons=field_comparisons,
            discrepancies=discrepancies,
            line_items=line_items,
            summary=summary,
        )

    def compare_many(self, source: Dict[str, Any], targets: Sequence[Dict[str, Any]]) -> ConsolidatedComparison:
        """Compare one source against several targets, e.g. a PO against its invoices."""
        if not targets:
            raise ValueError("compare_many requires at least one target record")

        comparisons = [self.compare(source, target) for target in targets]
        source_total = self._document_total(source)
        targets_total = sum(result.summary.target_total for result in comparisons)
        overall_variance = variance(source_total, targets_total)
        overall_score = sum(result.score for result in comparisons) / len(comparisons)
        approval_required = (
            abs(overall_variance) > self.rule_set.approval_variance_pct + _EPSILON
            or any(result.has_high_severity for result in comparisons)
        )

        return ConsolidatedComparison(
            source_total=source_total,
            targets_total=targets_total,
            overall_variance=overall_variance,
            overall_score=overall_score,
            comparisons=comparisons,
            approval_required=approval_required,
            recommendation="approve" if overall_score > 80 and not approval_required else "review",
        )

    def reconcile_line_items(
        self,
        source_items: List[Dict[str, Any]],
        target_items: List[Dict[str, Any]],
    ) -> Tuple[List[LineItemComparison], int]:
        """Greedily pair each source item with its most similar unmatched target item
        whose similarity is above ``line_item_threshold``.

        Returns the matched pairs and the number of target items left over.
        """
        description_field = self.rule_set.line_item_description_field
        threshold = self.rule_set.line_item_threshold / 100.0
        available = list(range(len(target_items)))
        pairs = []

        for source_item in source_items:
            best_index = None
            best_similarity = 0.0
            for index in available:
                similarity = token_jaccard(
                    source_item.get(description_field),
                    target_items[index].get(description_field),
                )
                if similarity > best_similarity:
                    best_index, best_similarity = index, similarity

            if best_index is None or best_similarity <= threshold:
                continue

            available.remove(best_index)
            target_item = target_items[best_index]
            pairs.append(LineItemComparison(
                source_item=source_item,
                target_item=target_item,
                similarity=best_similarity * 100.0,
                quantity_variance=variance(self._num(source_item, "quantity"), self._num(target_item, "quantity")),
                price_variance=variance(self._item_price(source_item), self._item_price(target_item)),
                amount_variance=variance(self._item_amount(source_item), self._item_amount(target_item)),
            ))

        return pairs, len(available)

    def _compare_field(self, rule: FieldRule, source: Dict[str, Any], target: Dict[str, Any]) -> FieldComparison:
        source_value = source.get(rule.field)
        target_value = target.get(rule.target_key)
        result = {
            "field": rule.field,
            "strategy": rule.strategy,
            "source_value": source_value,
            "target_value": target_value,
            "weight": rule.weight,
        }

        if rule.strategy == MatchStrategy.NUMERIC_TOLERANCE:
            source_number = to_number(source_value)
            target_number = to_number(target_value)
            if source_number is not None and target_number is not None:
                field_variance = variance(source_number, target_number)
                overshoot = abs(field_variance) - rule.tolerance_pct
                matched = overshoot <= _EPSILON
                score = 100.0 if matched else max(0.0, 100.0 - overshoot)
                return FieldComparison(matched=matched, score=score, variance=field_variance, **result)
            # Unparseable numbers fall back to exact comparison.
            matched = _normalize_text(source_value) == _normalize_text(target_value)
            return FieldComparison(matched=matched, score=100.0 if matched else 0.0, **result)

        if rule.strategy == MatchStrategy.FUZZY_TEXT:
            similarity = token_jaccard(source_value, target_value) * 100.0
            matched = similarity + _EPSILON >= rule.threshold
            return FieldComparison(matched=matched, score=similarity, similarity=similarity, **result)

        matched = source_value == target_value or (
            isinstance(source_value, str) and isinstance(target_value, str)
            and _normalize_text(source_value) == _normalize_text(target_value)
        )
        return FieldComparison(matched=matched, score=100.0 if matched else 0.0, **result)

    @staticmethod
    def _field_discrepancy(comparison: FieldComparison) -> Discrepancy:
        if comparison.strategy == MatchStrategy.NUMERIC_TOLERANCE and comparison.variance is not None:
            return Discrepancy(
                field=comparison.field,
                source_value=comparison.source_value,
                target_value=comparison.target_value,
                variance=comparison.variance,
                description=f"{comparison.variance:.2f}% variance",
                severity=severity_for_variance(comparison.variance),
            )
        if comparison.strategy == MatchStrategy.FUZZY_TEXT:
            similarity = comparison.similarity or 0.0
            return Discrepancy(
                field=comparison.field,
                source_value=comparison.source_value,
                target_value=comparison.target_value,
                description=f"{100.0 - similarity:.0f}% difference",
                severity=Severity.MEDIUM if similarity >= 50.0 else Severity.HIGH,
            )
        return Discrepancy(
            field=comparison.field,
            source_value=comparison.source_value,
            target_value=comparison.target_value,
            description="Mismatch",
            severity=Severity.HIGH,
        )

    @staticmethod
    def _aggregate(field_comparisons: List[FieldComparison]) -> float:
        total_weight = sum(comparison.weight for comparison in field_comparisons)
        if total_weight == 0:
            return 100.0
        weighted = sum(comparison.score * comparison.weight for comparison in field_comparisons)
        return min(100.0, max(0.0, weighted / total_weight))

    def _line_items(self, record: Dict[str, Any]) -> List[Dict[str, Any]]:
        items = record.get(self.rule_set.line_items_field) or []
        return [item for item in items if isinstance(item, dict)]

    def _document_total(self, record: Dict[str, Any]) -> float:
        if self.rule_set.amount_field:
            total = to_number(record.get(self.rule_set.amount_field))
            if total is not None:
                return total
        return sum(self._item_amount(item) for item in self._line_items(record))

    @staticmethod
    def _num(item: Dict[str, Any], *keys: str) -> float:
        for key in keys:
            number = to_number(item.get(key))
            if number is not None:
                return number
        return 0.0

    def _item_price(self, item: Dict[str, Any]) -> float:
        return self._num(item, "unit_price", "price")

    def _item_amount(self, item: Dict[str, Any]) -> float:
        amount = to_number(item.get("total", item.get("amount")))
        if amount is not None:
            return amount
        return self._num(item, "quantity") * self._item_price(item)


def default_purchase_order_rules() -> RuleSet:
    """Rule set for purchase order against invoice reconciliation."""
    return RuleSet(
        rules=[
            FieldRule(field="po_number", strategy=MatchStrategy.EXACT, weight=35),
            FieldRule(field="vendor_name", strategy=MatchStrategy.FUZZY_TEXT, threshold=80, weight=25),
            FieldRule(field="total", strategy=MatchStrategy.NUMERIC_TOLERANCE, tolerance_pct=5, weight=20),
            FieldRule(field="currency", strategy=MatchStrategy.EXACT, weight=10),
            FieldRule(field="tax_amount", strategy=MatchStrategy.NUMERIC_TOLERANCE, tolerance_pct=5, weight=10),
        ],
        amount_field="total",
        line_item_threshold=70.0,
    )
