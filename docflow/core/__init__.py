"""Core workflow engine components."""

from .exceptions import (
    WorkflowEngineError,
    GraphValidationError,
    ConfigurationError,
    AgentRegistryError,
    DuplicateAgentError,
    UnknownAgentError,
    AgentChainError,
    StepExecutionError,
    UnsupportedStepTypeError,
    SourceFetchError,
    TransientSourceError,
    AuthenticationExpiredError,
    ReauthenticationRequiredError,
    StorageError,
    WorkflowNotFoundError,
)
from .logging import setup_logging, get_logger
from .context import ProcessingContext
from .agents import Agent, FunctionAgent, AgentRegistry, AgentCoordinator, ProcessingResult
from .comparison import ComparisonEvaluator, variance
from .workflow_engine import WorkflowEngine

__all__ = [
    "WorkflowEngineError",
    "GraphValidationError",
    "ConfigurationError",
    "AgentRegistryError",
    "DuplicateAgentError",
    "UnknownAgentError",
    "AgentChainError",
    "StepExecutionError",
    "UnsupportedStepTypeError",
    "SourceFetchError",
    "TransientSourceError",
    "AuthenticationExpiredError",
    "ReauthenticationRequiredError",
    "StorageError",
    "WorkflowNotFoundError",
    "setup_logging",
    "get_logger",
    "ProcessingContext",
    "Agent",
    "FunctionAgent",
    "AgentRegistry",
    "AgentCoordinator",
    "ProcessingResult",
    "ComparisonEvaluator",
    "variance",
    "WorkflowEngine",
]
