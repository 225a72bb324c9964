"""Step handler base class and the exhaustive step-type lookup table."""

from typing import Any, Dict, Iterable, List, Optional

from ..core.exceptions import ConfigurationError, UnsupportedStepTypeError
from ..models.core import StepDefinition, StepType


class StepHandler:
    """Executes one kind of workflow step.

    ``handle`` receives a read-only view of the run context and returns a
    partial context: a dict with a boolean ``success`` key, an ``error`` on
    failure, and any keys to merge into the run context.
    """

    step_type: StepType

    async def handle(self, step: StepDefinition, context: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(step_type={self.step_type.value})"


class StepHandlerRegistry:
    """Maps every ``StepType`` to exactly one handler."""

    def __init__(self, handlers: Optional[Iterable[StepHandler]] = None):
        self._handlers: Dict[StepType, StepHandler] = {}
        for handler in handlers or []:
            self.register(handler)

    def register(self, handler: StepHandler) -> None:
        step_type = getattr(handler, "step_type", None)
        if not isinstance(step_type, StepType):
            raise ConfigurationError(f"Handler {handler!r} does not declare a valid step_type")
        if step_type in self._handlers:
            raise ConfigurationError(
                f"A handler for step type '{step_type.value}' is already registered",
                config_key=step_type.value
            )
        self._handlers[step_type] = handler

    def get(self, step_type: StepType) -> StepHandler:
        handler = self._handlers.get(step_type)
        if handler is None:
            raise UnsupportedStepTypeError(getattr(step_type, "value", str(step_type)))
        return handler

    def missing(self) -> List[StepType]:
        return [step_type for step_type in StepType if step_type not in self._handlers]

    def ensure_complete(self) -> None:
        """Raise unless every step type has a handler."""
        missing = self.missing()
        if missing:
            raise ConfigurationError(
                f"No handler registered for step types: {', '.join(t.value for t in missing)}"
            )

    def __contains__(self, step_type: StepType) -> bool:
        return step_type in self._handlers
