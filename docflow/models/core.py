"""Core Pydantic models for the workflow engine."""

import base64
import re
from collections import deque
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_serializer, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


_ID_PATTERN = re.compile(r'^[a-zA-Z0-9_.:-]+$')


class ExecutionStatusEnum(str, Enum):
    """Enumeration of workflow execution statuses."""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class StepStatusEnum(str, Enum):
    """Enumeration of step result statuses."""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class StepType(str, Enum):
    """Closed set of step kinds a workflow may contain."""
    SOURCE = "source"
    EXTRACTION = "extraction"
    COMPARISON = "comparison"
    STORAGE = "storage"
    NOTIFICATION = "notification"


class ValidationResult(BaseModel):
    """Result of workflow validation."""
    is_valid: bool = Field(..., description="Whether the workflow is valid")
    errors: List[str] = Field(default_factory=list, description="List of validation errors")
    warnings: List[str] = Field(default_factory=list, description="List of validation warnings")


class StepDefinition(BaseModel):
    """Definition of a workflow step."""
    id: str = Field(..., description="Identifier, unique within the workflow")
    type: StepType = Field(..., description="Kind of step, selects the handler")
    name: str = Field("", description="Human readable step name")
    config: Dict[str, Any] = Field(default_factory=dict, description="Handler specific configuration")

    @field_validator('id')
    @classmethod
    def validate_id_format(cls, id_value):
        """Ensure step ID follows valid format."""
        if not id_value or not id_value.strip():
            raise ValueError("Step ID cannot be empty")
        if not _ID_PATTERN.match(id_value.strip()):
            raise ValueError("Step ID must contain only alphanumeric characters, '.', ':', '_' and '-'")
        return id_value.strip()

    @model_validator(mode='after')
    def default_name(self):
        if not self.name:
            self.name = self.id
        return self


class ConnectionDefinition(BaseModel):
    """Directed connection between two workflow steps."""
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., description="Connection identifier")
    source_step_id: str = Field(..., alias="sourceStepId", description="Step the connection leaves")
    target_step_id: str = Field(..., alias="targetStepId", description="Step the connection enters")
    condition: Optional[str] = Field(None, description="Optional condition label, not evaluated")

    @field_validator('source_step_id', 'target_step_id')
    @classmethod
    def validate_step_ids(cls, step_id):
        if not step_id or not step_id.strip():
            raise ValueError("Step ID cannot be empty")
        return step_id.strip()

    @model_validator(mode='after')
    def validate_connection(self):
        if self.source_step_id == self.target_step_id:
            raise ValueError(f"Self-referencing connection not allowed: {self.source_step_id}")
        return self


class RunStats(BaseModel):
    """Aggregate run counters of a workflow."""
    total_runs: int = 0
    successful_runs: int = 0
    failed_runs: int = 0
    last_run: Optional[datetime] = None


class WorkflowConfig(BaseModel):
    """Complete declarative definition of a document workflow."""
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., description="Workflow ID")
    name: str = Field(..., description="Workflow name")
    description: str = Field("", description="Workflow description")
    steps: List[StepDefinition] = Field(..., description="Steps of the workflow")
    connections: List[ConnectionDefinition] = Field(default_factory=list, description="Connections between steps")
    is_active: bool = Field(True, alias="isActive", description="Whether the workflow may run")
    run_stats: RunStats = Field(default_factory=RunStats, alias="runStats")

    @field_validator('steps')
    @classmethod
    def validate_unique_step_ids(cls, steps):
        """Ensure all step IDs are unique."""
        if not steps:
            raise ValueError("Workflow must contain at least one step")
        step_ids = [step.id for step in steps]
        if len(step_ids) != len(set(step_ids)):
            duplicates = sorted({step_id for step_id in step_ids if step_ids.count(step_id) > 1})
            raise ValueError(f"Step IDs must be unique, duplicated: {', '.join(duplicates)}")
        return steps

    @field_validator('name')
    @classmethod
    def validate_name_not_empty(cls, name):
        if not name.strip():
            raise ValueError("Workflow name cannot be empty")
        return name.strip()

    @model_validator(mode='after')
    def validate_connection_references(self):
        """Every connection endpoint must reference an existing step."""
        if not self.steps:
            raise ValueError("Workflow must contain at least one step")

        step_ids = {step.id for step in self.steps}
        for connection in self.connections:
            if connection.source_step_id not in step_ids:
                raise ValueError(f"Connection {connection.id} references non-existent source step: {connection.source_step_id}")
            if connection.target_step_id not in step_ids:
                raise ValueError(f"Connection {connection.id} references non-existent target step: {connection.target_step_id}")
        return self

    def get_step(self, step_id: str) -> Optional[StepDefinition]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def outgoing(self, step_id: str) -> List[ConnectionDefinition]:
        """Outgoing connections of a step, in definition order."""
        return [conn for conn in self.connections if conn.source_step_id == step_id]

    def entry_steps(self) -> List[StepDefinition]:
        """Steps with no incoming connection, in definition order."""
        targets = {conn.target_step_id for conn in self.connections}
        return [step for step in self.steps if step.id not in targets]

    def validate_structure(self) -> ValidationResult:
        """Check entry point uniqueness, acyclicity and reachability."""
        errors = []
        warnings = []

        entries = self.entry_steps()
        if not entries:
            errors.append("Workflow has no entry step (every step has an incoming connection)")
        elif len(entries) > 1:
            errors.append(
                f"Workflow has multiple entry steps: {', '.join(step.id for step in entries)}"
            )

        if self._has_cycles():
            errors.append("Workflow connections contain a cycle")

        if len(entries) == 1 and not errors:
            unreachable = {step.id for step in self.steps} - self._reachable_from(entries[0].id)
            if unreachable:
                warnings.append(f"Unreachable steps: {', '.join(sorted(unreachable))}")

        for step in self.steps:
            if len(self.outgoing(step.id)) > 1:
                warnings.append(f"Step {step.id} has several outgoing connections; only the first is followed")

        return ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)

    def _reachable_from(self, entry_id: str) -> Set[str]:
        reachable = {entry_id}
        queue = deque([entry_id])
        while queue:
            current = queue.popleft()
            for conn in self.outgoing(current):
                if conn.target_step_id not in reachable:
                    reachable.add(conn.target_step_id)
                    queue.append(conn.target_step_id)
        return reachable

    def _has_cycles(self) -> bool:
        """Kahn's algorithm: a cycle leaves nodes with remaining in-degree."""
        in_degree = {step.id: 0 for step in self.steps}
        for conn in self.connections:
            in_degree[conn.target_step_id] += 1

        queue = deque(step_id for step_id, degree in in_degree.items() if degree == 0)
        visited = 0
        while queue:
            current = queue.popleft()
            visited += 1
            for conn in self.outgoing(current):
                in_degree[conn.target_step_id] -= 1
                if in_degree[conn.target_step_id] == 0:
                    queue.append(conn.target_step_id)
        return visited != len(in_degree)


class StepResult(BaseModel):
    """Outcome of a single step within an execution."""
    step_id: str
    status: StepStatusEnum
    start_time: datetime = Field(default_factory=utcnow)
    end_time: Optional[datetime] = None
    output: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


class ExecutionError(BaseModel):
    """Execution-level error entry naming the step or agent it came from."""
    step_id: Optional[str] = None
    agent_id: Optional[str] = None
    error_type: str = "WorkflowEngineError"
    message: str


class Execution(BaseModel):
    """Record of one workflow run."""
    id: str
    workflow_id: str
    status: ExecutionStatusEnum = ExecutionStatusEnum.RUNNING
    start_time: datetime = Field(default_factory=utcnow)
    end_time: Optional[datetime] = None
    current_step_id: Optional[str] = None
    step_results: List[StepResult] = Field(default_factory=list)
    errors: List[ExecutionError] = Field(default_factory=list)
    processed_documents: int = 0
    context: Dict[str, Any] = Field(default_factory=dict, exclude=True, description="Final run context")

    @property
    def visited_step_ids(self) -> List[str]:
        return [result.step_id for result in self.step_results]


class Document(BaseModel):
    """A document handed over by a DocumentSource."""
    model_config = ConfigDict(populate_by_name=True)

    name: str
    mime_type: str = Field("application/octet-stream", validation_alias=AliasChoices("mime_type", "mimeType"))
    content: Optional[bytes] = Field(None, validation_alias=AliasChoices("content", "bytes"))
    handle: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_serializer("content", when_used="json")
    def serialize_content(self, content: Optional[bytes]) -> Optional[str]:
        return base64.b64encode(content).decode("ascii") if content is not None else None


class ClassificationResult(BaseModel):
    """Classifier verdict for one document."""
    is_target_class: bool
    confidence: float = Field(..., ge=0.0, le=1.0)
    reason: str = ""
    document_type: Optional[str] = None


class WriteMode(str, Enum):
    INSERT = "insert"
    UPSERT = "upsert"


class WriteOptions(BaseModel):
    table: str
    mode: WriteMode = WriteMode.INSERT


class WriteResult(BaseModel):
    stored_count: int = 0
    errors: List[str] = Field(default_factory=list)


class NormalizedRecord(BaseModel):
    """Uniform shape every record takes before it reaches Persistence."""
    payload: Dict[str, Any]
    source_label: str
    created_at: datetime = Field(default_factory=utcnow)


class NotificationSummary(BaseModel):
    """Counts reported by the notification step."""
    workflow_id: Optional[str] = None
    execution_id: Optional[str] = None
    documents_fetched: int = 0
    documents_extracted: int = 0
    documents_rejected: int = 0
    documents_failed: int = 0
    records_stored: int = 0
    comparisons: int = 0
    approval_required: bool = False
    used_fallback_storage: bool = False
    message: str = ""
    channels: List[str] = Field(default_factory=list)
