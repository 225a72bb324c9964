"""Declarative step engine: walks a workflow's step graph one step at a time."""

import inspect
import uuid
from typing import Any, Dict, Optional

from ..handlers.base import StepHandlerRegistry
from ..models.core import (
    Execution, ExecutionError, ExecutionStatusEnum, StepDefinition, StepResult,
    StepStatusEnum, StepType, ValidationResult, WorkflowConfig, utcnow,
)
from .exceptions import GraphValidationError, StorageError, WorkflowEngineError
from .logging import get_logger, reset_logging_context, set_logging_context

logger = get_logger(__name__)


class WorkflowEngine:
    """Executes workflows by dispatching each step to the handler for its type.

    Traversal starts at the single entry step and follows the first outgoing
    connection of every step. The run context starts empty (plus
    ``workflow_id``/``execution_id`` and any initial values) and each
    handler's output is shallow-merged into it. The first failing step stops
    the run.
    """

    def __init__(self, handlers: StepHandlerRegistry, execution_store=None):
        """Initialize the engine.

        Args:
            handlers: Registry holding a handler for every StepType
            execution_store: Optional store with ``save_execution(execution)``
        """
        handlers.ensure_complete()
        self.handlers = handlers
        self.execution_store = execution_store

    async def execute_workflow(
        self,
        workflow: WorkflowConfig,
        initial_context: Optional[Dict[str, Any]] = None
    ) -> Execution:
        """
        Run a workflow to completion or to its first failing step.

        Args:
            workflow: Workflow definition
            initial_context: Values seeded into the run context

        Returns:
            The finished Execution; its ``context`` holds the final run context

        Raises:
            GraphValidationError: If the graph has no single entry step or a cycle
        """
        validation = workflow.validate_structure()
        if not validation.is_valid:
            raise GraphValidationError(
                f"Workflow {workflow.id} cannot be executed",
                validation_errors=validation.errors,
                workflow_id=workflow.id
            )

        execution = Execution(id=f"exec_{uuid.uuid4().hex}", workflow_id=workflow.id)
        context: Dict[str, Any] = dict(initial_context or {})
        context.update(workflow_id=workflow.id, execution_id=execution.id)

        log_token = set_logging_context(workflow_id=workflow.id, execution_id=execution.id)
        logger.info(f"Starting execution {execution.id} of workflow {workflow.id}")

        try:
            current: Optional[StepDefinition] = workflow.entry_steps()[0]
            # Acyclic, so no step is visited twice.
            for _ in range(len(workflow.steps)):
                execution.current_step_id = current.id
                if not await self._run_step(current, context, execution):
                    break

                outgoing = workflow.outgoing(current.id)
                if not outgoing:
                    break
                current = workflow.get_step(outgoing[0].target_step_id)

            if execution.status == ExecutionStatusEnum.RUNNING:
                execution.status = ExecutionStatusEnum.COMPLETED

            execution.end_time = utcnow()
            execution.processed_documents = len(context.get("documents") or [])
            execution.context = context
            self._update_run_stats(workflow, execution)
            self._save(execution)

            logger.info(
                f"Execution {execution.id} {execution.status.value} after "
                f"{len(execution.step_results)} steps"
            )
            return execution
        finally:
            reset_logging_context(log_token)

    async def _run_step(self, step: StepDefinition, context: Dict[str, Any], execution: Execution) -> bool:
        """Run one step, record its result and merge its output. Returns False on failure."""
        set_logging_context(step_id=step.id)
        step_result = StepResult(step_id=step.id, status=StepStatusEnum.RUNNING)
        execution.step_results.append(step_result)
        logger.debug(f"Running step {step.id} ({step.type.value})")

        try:
            handler = self.handlers.get(step.type)
            output = await handler.handle(step, dict(context))
            if not isinstance(output, dict):
                raise WorkflowEngineError(
                    f"Handler for step {step.id} returned {type(output).__name__}, expected a dict"
                )
        except Exception as e:
            message = e.message if isinstance(e, WorkflowEngineError) else (str(e) or type(e).__name__)
            agent_id = e.details.get("agent_id") if isinstance(e, WorkflowEngineError) else None
            logger.error(f"Step {step.id} raised {type(e).__name__}: {message}")
            self._fail(execution, step_result, step, message, type(e).__name__, agent_id)
            return False

        step_result.end_time = utcnow()
        step_result.output = output
        context.update({key: value for key, value in output.items() if key not in ("success", "error")})

        if not output.get("success", False):
            message = output.get("error") or f"Step {step.id} reported failure"
            logger.error(f"Step {step.id} failed: {message}")
            self._fail(execution, step_result, step, message, "StepFailed", None)
            return False

        step_result.status = StepStatusEnum.COMPLETED
        return True

    @staticmethod
    def _fail(
        execution: Execution,
        step_result: StepResult,
        step: StepDefinition,
        message: str,
        error_type: str,
        agent_id: Optional[str]
    ) -> None:
        step_result.status = StepStatusEnum.FAILED
        step_result.end_time = step_result.end_time or utcnow()
        step_result.error = message
        execution.status = ExecutionStatusEnum.FAILED
        execution.errors.append(ExecutionError(
            step_id=step.id,
            agent_id=agent_id,
            error_type=error_type,
            message=message
        ))

    @staticmethod
    def _update_run_stats(workflow: WorkflowConfig, execution: Execution) -> None:
        stats = workflow.run_stats
        stats.total_runs += 1
        if execution.status == ExecutionStatusEnum.COMPLETED:
            stats.successful_runs += 1
        else:
            stats.failed_runs += 1
        stats.last_run = execution.end_time

    def _save(self, execution: Execution) -> None:
        if self.execution_store is None:
            return
        try:
            self.execution_store.save_execution(execution)
        except StorageError as e:
            logger.error(f"Failed to persist execution {execution.id}: {e.message}")
            execution.errors.append(ExecutionError(error_type=type(e).__name__, message=e.message))

    async def validate_requirements(self, workflow: WorkflowConfig) -> ValidationResult:
        """Check that a workflow can run: graph structure, activity, source authentication."""
        result = workflow.validate_structure()
        errors = list(result.errors)
        warnings = list(result.warnings)

        if not workflow.is_active:
            warnings.append(f"Workflow {workflow.id} is inactive")

        source_steps = [step for step in workflow.steps if step.type == StepType.SOURCE]
        if source_steps:
            source = getattr(self.handlers.get(StepType.SOURCE), "source", None)
            is_authenticated = getattr(source, "is_authenticated", None)
            if callable(is_authenticated):
                authenticated = is_authenticated()
                if inspect.isawaitable(authenticated):
                    authenticated = await authenticated
                if not authenticated:
                    for step in source_steps:
                        errors.append(f"Step {step.id}: document source authentication required")

        return ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)
