"""Per-run state threaded through agents."""

from typing import Any, Dict, Optional


class ProcessingContext:
    """Mutable state bag for one top-level agent invocation.

    Create a fresh instance per run; instances must never be shared between
    concurrent runs.
    """

    def __init__(self, options: Optional[Dict[str, Any]] = None, metadata: Optional[Dict[str, Any]] = None):
        self.results: Dict[str, Any] = {}
        self.options: Dict[str, Any] = dict(options or {})
        self.metadata: Dict[str, Any] = dict(metadata or {})

    def record(self, agent_id: str, result: Any) -> None:
        self.results[agent_id] = result

    def result_of(self, agent_id: str, default: Any = None) -> Any:
        return self.results.get(agent_id, default)

    def __repr__(self) -> str:
        return f"ProcessingContext(results={list(self.results)}, options={self.options}, metadata={self.metadata})"
