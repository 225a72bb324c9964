"""FastAPI REST endpoints for the document workflow engine."""

from datetime import datetime, timezone
from typing import Dict, List, Any, Optional
from fastapi import APIRouter, HTTPException, Depends, status
from pydantic import BaseModel, Field

from ..core.workflow_engine import WorkflowEngine
from ..core.exceptions import (
    ConfigurationError,
    GraphValidationError,
    WorkflowEngineError,
    WorkflowNotFoundError,
    create_error_response
)
from ..models.core import Execution, ValidationResult, WorkflowConfig
from ..storage.repository import ExecutionStore, WorkflowRepository
from ..core.logging import get_logger

logger = get_logger(__name__)

# Create router
router = APIRouter(prefix="/api/v1", tags=["workflow"])

# Global instances (initialized by create_app)
_workflow_engine: Optional[WorkflowEngine] = None
_workflow_repository: Optional[WorkflowRepository] = None
_execution_store: Optional[ExecutionStore] = None


def init_dependencies(
    workflow_engine: WorkflowEngine,
    workflow_repository: WorkflowRepository,
    execution_store: ExecutionStore
):
    """Initialize the global dependencies."""
    global _workflow_engine, _workflow_repository, _execution_store
    _workflow_engine = workflow_engine
    _workflow_repository = workflow_repository
    _execution_store = execution_store


def get_workflow_engine() -> WorkflowEngine:
    """Dependency to get the workflow engine."""
    if _workflow_engine is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Workflow engine not initialized"
        )
    return _workflow_engine


def get_workflow_repository() -> WorkflowRepository:
    """Dependency to get the workflow repository."""
    if _workflow_repository is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Workflow repository not initialized"
        )
    return _workflow_repository


def get_execution_store() -> ExecutionStore:
    """Dependency to get the execution store."""
    if _execution_store is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Execution store not initialized"
        )
    return _execution_store


# Request/Response models
class CreateWorkflowResponse(BaseModel):
    """Response model for workflow creation."""
    workflow_id: str = Field(..., description="Identifier of the stored workflow")
    message: str = Field(..., description="Success message")
    validation_warnings: List[str] = Field(default_factory=list, description="Validation warnings")


class ExecuteWorkflowRequest(BaseModel):
    """Request model for running a workflow."""
    initial_context: Dict[str, Any] = Field(default_factory=dict, description="Values seeded into the run context")


def _raise_http_error(e: Exception, action: str):
    """Translate an error into an HTTPException."""
    if isinstance(e, WorkflowEngineError):
        if isinstance(e, WorkflowNotFoundError):
            status_code = status.HTTP_404_NOT_FOUND
        elif isinstance(e, (GraphValidationError, ConfigurationError)):
            status_code = status.HTTP_400_BAD_REQUEST
        else:
            status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
        logger.warning(f"Workflow engine error while {action}: {e.message}")
        raise HTTPException(status_code=status_code, detail=create_error_response(e))

    logger.error(f"Unexpected error while {action}: {str(e)}", exc_info=True)
    raise HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={
            "error": "InternalError",
            "message": f"An unexpected error occurred while {action}",
            "details": {"original_error": str(e)},
            "timestamp": datetime.now(timezone.utc).isoformat()
        }
    )


# Endpoints

@router.post(
    "/workflows",
    response_model=CreateWorkflowResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Store a workflow definition"
)
async def create_workflow(
    workflow: WorkflowConfig,
    repository: WorkflowRepository = Depends(get_workflow_repository)
) -> CreateWorkflowResponse:
    """
    Validate and store a workflow.

    Raises:
        HTTPException: 400 if the step graph is invalid
    """
    try:
        validation = workflow.validate_structure()
        if not validation.is_valid:
            raise GraphValidationError(
                f"Workflow validation failed: {'; '.join(validation.errors)}",
                validation_errors=validation.errors,
                workflow_id=workflow.id
            )

        workflow_id = repository.save(workflow)
        return CreateWorkflowResponse(
            workflow_id=workflow_id,
            message=f"Workflow '{workflow.name}' stored successfully",
            validation_warnings=validation.warnings
        )
    except Exception as e:
        _raise_http_error(e, "creating workflow")


@router.get("/workflows", response_model=List[WorkflowConfig], summary="List workflows")
async def list_workflows(repository: WorkflowRepository = Depends(get_workflow_repository)) -> List[WorkflowConfig]:
    try:
        return repository.list()
    except Exception as e:
        _raise_http_error(e, "listing workflows")


@router.get("/workflows/{workflow_id}", response_model=WorkflowConfig, summary="Get a workflow")
async def get_workflow(
    workflow_id: str,
    repository: WorkflowRepository = Depends(get_workflow_repository)
) -> WorkflowConfig:
    try:
        return repository.get(workflow_id)
    except Exception as e:
        _raise_http_error(e, f"loading workflow {workflow_id}")


@router.post(
    "/workflows/{workflow_id}/validate",
    response_model=ValidationResult,
    summary="Check whether a workflow can run"
)
async def validate_workflow(
    workflow_id: str,
    repository: WorkflowRepository = Depends(get_workflow_repository),
    engine: WorkflowEngine = Depends(get_workflow_engine)
) -> ValidationResult:
    try:
        workflow = repository.get(workflow_id)
        return await engine.validate_requirements(workflow)
    except Exception as e:
        _raise_http_error(e, f"validating workflow {workflow_id}")


@router.post(
    "/workflows/{workflow_id}/execute",
    response_model=Execution,
    summary="Run a workflow",
    description="Run a stored workflow to completion and return its execution record"
)
async def execute_workflow(
    workflow_id: str,
    request: Optional[ExecuteWorkflowRequest] = None,
    repository: WorkflowRepository = Depends(get_workflow_repository),
    engine: WorkflowEngine = Depends(get_workflow_engine)
) -> Execution:
    """
    Execute a workflow.

    A failed run is still returned with status 200; its ``status`` and
    ``errors`` describe the failure. Requirement check failures are 400.
    """
    try:
        workflow = repository.get(workflow_id)
        requirements = await engine.validate_requirements(workflow)
        if not requirements.is_valid:
            raise GraphValidationError(
                f"Workflow {workflow_id} cannot run: {'; '.join(requirements.errors)}",
                validation_errors=requirements.errors,
                workflow_id=workflow_id
            )

        initial_context = request.initial_context if request else {}
        execution = await engine.execute_workflow(workflow, initial_context)
        repository.save(workflow)
        return execution
    except Exception as e:
        _raise_http_error(e, f"executing workflow {workflow_id}")


@router.get(
    "/workflows/{workflow_id}/executions",
    response_model=List[Execution],
    summary="List executions of a workflow, newest first"
)
async def list_executions(
    workflow_id: str,
    limit: int = 50,
    repository: WorkflowRepository = Depends(get_workflow_repository),
    execution_store: ExecutionStore = Depends(get_execution_store)
) -> List[Execution]:
    try:
        repository.get(workflow_id)
        return execution_store.list_executions(workflow_id, limit=limit)
    except Exception as e:
        _raise_http_error(e, f"listing executions of workflow {workflow_id}")
