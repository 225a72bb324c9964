"""Application wiring for the document workflow engine."""

from contextlib import asynccontextmanager
from typing import Optional
from fastapi import FastAPI
from sqlalchemy.orm import Session

from .config import AppConfig, get_config
from .core.logging import setup_logging, get_logger
from .core.workflow_engine import WorkflowEngine
from .handlers import build_handler_registry
from .storage.database import create_tables, get_database_engine
from .storage.repository import ExecutionStore, WorkflowRepository
from .api.endpoints import router, init_dependencies


def build_engine(
    source,
    classifier,
    extractor,
    persistence,
    notifier,
    config: Optional[AppConfig] = None,
    db_session: Optional[Session] = None
) -> WorkflowEngine:
    """Create a WorkflowEngine with the default handlers and a database-backed execution store."""
    handlers = build_handler_registry(source, classifier, extractor, persistence, notifier, config or get_config())
    return WorkflowEngine(handlers, execution_store=ExecutionStore(db_session))


def create_app(
    engine: WorkflowEngine,
    config: Optional[AppConfig] = None,
    workflow_repository: Optional[WorkflowRepository] = None,
    execution_store: Optional[ExecutionStore] = None
) -> FastAPI:
    """
    Create the FastAPI application around a configured engine.

    Args:
        engine: Workflow engine with its collaborators wired in
        config: Application configuration; read from the environment when omitted
        workflow_repository: Repository for workflow definitions
        execution_store: Store used to list executions; defaults to the engine's store
    """
    config = config or get_config()
    workflow_repository = workflow_repository or WorkflowRepository()
    execution_store = execution_store or engine.execution_store or ExecutionStore()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(
            level=config.log_level.value,
            log_file=config.log_file,
            log_format=config.log_format,
            structured=config.log_structured,
            max_size=config.log_max_size,
            backup_count=config.log_backup_count
        )
        logger = get_logger(__name__)
        logger.info(f"Starting {config.app_name} {config.app_version}")

        create_tables(get_database_engine(
            config.database_url,
            echo=config.database_echo,
            connect_args=config.get_database_connect_args()
        ))
        logger.info("Database tables created")

        yield

        workflow_repository.close()
        execution_store.close()
        logger.info(f"Shutting down {config.app_name}")

    app = FastAPI(
        title=config.app_name,
        description="Declarative document workflows: fetch, extract, compare, store and notify",
        version=config.app_version,
        lifespan=lifespan
    )

    init_dependencies(
        workflow_engine=engine,
        workflow_repository=workflow_repository,
        execution_store=execution_store
    )
    app.include_router(router)

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "service": "docflow", "version": config.app_version}

    return app


def run(app: FastAPI, config: Optional[AppConfig] = None):
    """Serve an application with uvicorn."""
    import uvicorn
    config = config or get_config()
    uvicorn.run(app, **config.get_uvicorn_config())
