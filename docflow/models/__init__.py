"""Data models for the workflow engine."""

from .core import (
    ExecutionStatusEnum,
    StepStatusEnum,
    StepType,
    StepDefinition,
    ConnectionDefinition,
    WorkflowConfig,
    StepResult,
    Execution,
    ExecutionError,
    ValidationResult,
    Document,
    ClassificationResult,
    WriteMode,
    WriteOptions,
    WriteResult,
    NormalizedRecord,
    NotificationSummary,
)
from .comparison import MatchStrategy, FieldRule, RuleSet, ComparisonResult, ConsolidatedComparison

__all__ = [
    "ExecutionStatusEnum",
    "StepStatusEnum",
    "StepType",
    "StepDefinition",
    "ConnectionDefinition",
    "WorkflowConfig",
    "StepResult",
    "Execution",
    "ExecutionError",
    "ValidationResult",
    "Document",
    "ClassificationResult",
    "WriteMode",
    "WriteOptions",
    "WriteResult",
    "NormalizedRecord",
    "NotificationSummary",
    "MatchStrategy",
    "FieldRule",
    "RuleSet",
    "ComparisonResult",
    "ConsolidatedComparison",
]
