"""Persistence of workflow definitions and execution records."""

from typing import List, Optional
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError

from ..core.exceptions import StorageError, WorkflowNotFoundError
from ..core.logging import get_logger
from ..models.core import Execution, ExecutionError, RunStats, StepResult, WorkflowConfig
from .database import get_session_factory
from .models import ExecutionModel, WorkflowModel

logger = get_logger(__name__)


class _SessionMixin:
    """Holds one session per store; a session is opened lazily when none is injected."""

    def __init__(self, db_session: Optional[Session] = None):
        self._db_session = db_session
        self._owns_session = False

    def _get_db_session(self) -> Session:
        if self._db_session is None:
            self._db_session = get_session_factory()()
            self._owns_session = True
        return self._db_session

    def close(self) -> None:
        """Close the session if this store opened it."""
        if self._owns_session and self._db_session is not None:
            self._db_session.close()
            self._db_session = None
            self._owns_session = False


class WorkflowRepository(_SessionMixin):
    """Stores workflow definitions together with their run statistics."""

    def save(self, workflow: WorkflowConfig) -> str:
        """
        Insert or update a workflow.

        Returns:
            str: The workflow ID

        Raises:
            StorageError: If the database write fails
        """
        db = self._get_db_session()
        try:
            model = db.get(WorkflowModel, workflow.id)
            if model is None:
                model = WorkflowModel(id=workflow.id)
                db.add(model)

            model.name = workflow.name
            model.description = workflow.description
            model.definition = workflow.model_dump(
                mode="json", include={"steps", "connections"}
            )
            model.is_active = workflow.is_active
            model.total_runs = workflow.run_stats.total_runs
            model.successful_runs = workflow.run_stats.successful_runs
            model.failed_runs = workflow.run_stats.failed_runs
            model.last_run = workflow.run_stats.last_run
            db.commit()

            logger.info(f"Saved workflow '{workflow.name}' ({workflow.id})")
            return workflow.id
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Database error while saving workflow {workflow.id}: {str(e)}")
            raise StorageError(f"Failed to store workflow: {str(e)}", operation="save_workflow", table="workflows")

    def get(self, workflow_id: str) -> WorkflowConfig:
        """
        Load a workflow by ID.

        Raises:
            WorkflowNotFoundError: If no workflow has this ID
            StorageError: If the database read fails
        """
        db = self._get_db_session()
        try:
            model = db.get(WorkflowModel, workflow_id)
        except SQLAlchemyError as e:
            logger.error(f"Database error while loading workflow {workflow_id}: {str(e)}")
            raise StorageError(f"Failed to load workflow: {str(e)}", operation="get_workflow", table="workflows")

        if model is None:
            raise WorkflowNotFoundError(workflow_id)
        return self._to_config(model)

    def list(self) -> List[WorkflowConfig]:
        db = self._get_db_session()
        try:
            models = db.query(WorkflowModel).order_by(WorkflowModel.created_at).all()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to list workflows: {str(e)}", operation="list_workflows", table="workflows")
        return [self._to_config(model) for model in models]

    @staticmethod
    def _to_config(model: WorkflowModel) -> WorkflowConfig:
        definition = model.definition or {}
        return WorkflowConfig(
            id=model.id,
            name=model.name,
            description=model.description or "",
            steps=definition.get("steps", []),
            connections=definition.get("connections", []),
            is_active=model.is_active,
            run_stats=RunStats(
                total_runs=model.total_runs or 0,
                successful_runs=model.successful_runs or 0,
                failed_runs=model.failed_runs or 0,
                last_run=model.last_run,
            ),
        )


class ExecutionStore(_SessionMixin):
    """Stores execution records.

    When the execution row cannot be written, the owning workflow's
    ``last_run`` and ``total_runs`` are still updated so the run is not lost
    from the workflow statistics.
    """

    def save_execution(self, execution: Execution) -> None:
        """
        Persist an execution, falling back to a workflow statistics update.

        Raises:
            StorageError: If neither the execution nor the fallback could be written
        """
        db = self._get_db_session()
        try:
            db.merge(ExecutionModel(
                id=execution.id,
                workflow_id=execution.workflow_id,
                status=execution.status.value,
                step_results=[result.model_dump(mode="json") for result in execution.step_results],
                errors=[error.model_dump(mode="json") for error in execution.errors],
                processed_documents=execution.processed_documents,
                started_at=execution.start_time,
                completed_at=execution.end_time,
            ))
            db.commit()
            logger.debug(f"Saved execution {execution.id}")
            return
        except SQLAlchemyError as e:
            db.rollback()
            logger.warning(f"Could not save execution {execution.id}, updating workflow statistics instead: {str(e)}")

        try:
            workflow = db.get(WorkflowModel, execution.workflow_id)
            if workflow is None:
                raise StorageError(
                    f"Cannot record execution {execution.id}: workflow {execution.workflow_id} not stored",
                    operation="save_execution",
                    table="workflows"
                )
            workflow.last_run = execution.end_time or execution.start_time
            workflow.total_runs = (workflow.total_runs or 0) + 1
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(
                f"Failed to record execution {execution.id}: {str(e)}",
                operation="save_execution",
                table="workflows"
            )

    def list_executions(self, workflow_id: str, limit: int = 50) -> List[Execution]:
        """Executions of a workflow, newest first."""
        db = self._get_db_session()
        try:
            models = (
                db.query(ExecutionModel)
                .filter(ExecutionModel.workflow_id == workflow_id)
                .order_by(ExecutionModel.started_at.desc())
                .limit(limit)
                .all()
            )
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to list executions: {str(e)}",
                operation="list_executions",
                table="workflow_executions"
            )

        return [
            Execution(
                id=model.id,
                workflow_id=model.workflow_id,
                status=model.status,
                start_time=model.started_at,
                end_time=model.completed_at,
                step_results=[StepResult.model_validate(result) for result in model.step_results or []],
                errors=[ExecutionError.model_validate(error) for error in model.errors or []],
                processed_documents=model.processed_documents or 0,
            )
            for model in models
        ]
