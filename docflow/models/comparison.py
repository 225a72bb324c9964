"""Pydantic models for field comparison rules and their results."""

from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, field_validator, model_validator


class MatchStrategy(str, Enum):
    """How a single field is compared."""
    EXACT = "exact"
    NUMERIC_TOLERANCE = "numeric_tolerance"
    FUZZY_TEXT = "fuzzy_text"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class FieldRule(BaseModel):
    """Matching rule for one field.

    ``tolerance_pct`` applies to numeric tolerance, ``threshold`` (0-100) to
    fuzzy text. ``target_field`` names the field on the target record when it
    differs from the source field, e.g. ``vendor_code`` against ``vendor_name``.
    """
    field: str
    strategy: MatchStrategy = MatchStrategy.EXACT
    weight: float = Field(1.0, ge=0.0)
    tolerance_pct: float = Field(5.0, ge=0.0)
    threshold: float = Field(80.0, ge=0.0, le=100.0)
    target_field: Optional[str] = None

    @property
    def target_key(self) -> str:
        return self.target_field or self.field


class RuleSet(BaseModel):
    """Rules applied to a source/target record pair."""
    rules: List[FieldRule] = Field(default_factory=list)
    amount_field: Optional[str] = Field("total", description="Field holding the document total")
    line_items_field: str = "line_items"
    line_item_description_field: str = "description"
    line_item_threshold: float = Field(70.0, ge=0.0, le=100.0)
    approval_variance_pct: float = Field(5.0, ge=0.0)

    @field_validator('rules')
    @classmethod
    def validate_unique_fields(cls, rules):
        fields = [rule.field for rule in rules]
        if len(fields) != len(set(fields)):
            raise ValueError("Each field may only have one rule")
        return rules

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "RuleSet":
        """Build a rule set from step configuration.

        ``rules`` may be a list of rule dicts or a mapping of field name to
        rule options, e.g. ``{"total": {"strategy": "numeric_tolerance",
        "tolerance_pct": 5}}``.
        """
        raw_rules = config.get("rules", [])
        if isinstance(raw_rules, dict):
            raw_rules = [{"field": field, **(options or {})} for field, options in raw_rules.items()]
        options = {key: value for key, value in config.items() if key in cls.model_fields and key != "rules"}
        return cls(rules=raw_rules, **options)


class FieldComparison(BaseModel):
    field: str
    strategy: MatchStrategy
    source_value: Any = None
    target_value: Any = None
    matched: bool
    score: float
    weight: float
    variance: Optional[float] = None
    similarity: Optional[float] = None


class Discrepancy(BaseModel):
    field: str
    source_value: Any = None
    target_value: Any = None
    variance: Optional[float] = None
    description: str = ""
    severity: Severity


class LineItemComparison(BaseModel):
    source_item: Dict[str, Any]
    target_item: Dict[str, Any]
    similarity: float
    quantity_variance: float
    price_variance: float
    amount_variance: float


class ComparisonSummary(BaseModel):
    source_total: float = 0.0
    target_total: float = 0.0
    amount_variance: float = 0.0
    items_matched: int = 0
    items_missing: int = 0
    items_unexpected: int = 0
    approval_required: bool = False


class ComparisonResult(BaseModel):
    """Weighted comparison of one source record against one target record."""
    score: float = Field(..., ge=0.0, le=100.0)
    field_comparisons: List[FieldComparison] = Field(default_factory=list)
    discrepancies: List[Discrepancy] = Field(default_factory=list)
    line_items: List[LineItemComparison] = Field(default_factory=list)
    summary: ComparisonSummary = Field(default_factory=ComparisonSummary)

    @property
    def approval_required(self) -> bool:
        return self.summary.approval_required

    @property
    def has_high_severity(self) -> bool:
        return any(d.severity == Severity.HIGH for d in self.discrepancies)


class ConsolidatedComparison(BaseModel):
    """One source record compared against several target records."""
    source_total: float = 0.0
    targets_total: float = 0.0
    overall_variance: float = 0.0
    overall_score: float = 0.0
    comparisons: List[ComparisonResult] = Field(default_factory=list)
    approval_required: bool = False
    recommendation: str = "review"

    @model_validator(mode='after')
    def validate_recommendation(self):
        if self.recommendation not in ("approve", "review"):
            raise ValueError("recommendation must be 'approve' or 'review'")
        return self
