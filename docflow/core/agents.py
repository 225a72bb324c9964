"""Agent capability graph: chains agent transforms by runtime predicates."""

import inspect
import time
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel, Field

from .context import ProcessingContext
from .exceptions import AgentChainError, AgentRegistryError, DuplicateAgentError, UnknownAgentError
from .logging import get_logger

logger = get_logger(__name__)

DEFAULT_MAX_HOPS = 64


class Agent:
    """Base class for a capability-gated unit of work.

    Subclasses implement ``transform`` (sync or ``async``) and ``can_process``.
    """

    id: str = ""
    name: str = ""
    description: str = ""

    def transform(self, data: Any, context: ProcessingContext) -> Any:
        raise NotImplementedError

    def can_process(self, data: Any) -> bool:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(id={self.id!r})"


class FunctionAgent(Agent):
    """Agent assembled from plain callables."""

    def __init__(self, agent_id: str, transform, can_process=None, name: str = "", description: str = ""):
        self.id = agent_id
        self.name = name or agent_id
        self.description = description
        self._transform = transform
        self._can_process = can_process or (lambda data: True)

    def transform(self, data: Any, context: ProcessingContext) -> Any:
        return self._transform(data, context)

    def can_process(self, data: Any) -> bool:
        return bool(self._can_process(data))


class AgentNode:
    """An agent together with its ordered outgoing edges."""

    def __init__(self, agent: Agent):
        self.agent = agent
        self.next_agent_ids: List[str] = []

    def __repr__(self) -> str:
        return f"AgentNode(agent={self.agent.id!r}, next={self.next_agent_ids})"


class ProcessingResult(BaseModel):
    """Outcome of a chain run."""
    success: bool
    data: Any = None
    error: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class AgentRegistry:
    """Explicitly constructed catalogue of agents.

    Several registries may exist in one process; nothing here is global.
    """

    def __init__(self, agents: Optional[Iterable[Agent]] = None):
        self._agents: Dict[str, Agent] = {}
        for agent in agents or []:
            self.register(agent)

    def register(self, agent: Agent) -> None:
        if not agent.id or not agent.id.strip():
            raise AgentRegistryError("Agent id cannot be empty", operation="register")
        if agent.id in self._agents:
            raise DuplicateAgentError(f"Agent '{agent.id}' is already registered", agent_id=agent.id, operation="register")
        self._agents[agent.id] = agent

    def get(self, agent_id: str) -> Agent:
        if agent_id not in self._agents:
            raise UnknownAgentError(f"Agent '{agent_id}' is not registered", agent_id=agent_id, operation="get")
        return self._agents[agent_id]

    def list(self) -> List[Agent]:
        return list(self._agents.values())

    def __contains__(self, agent_id: str) -> bool:
        return agent_id in self._agents

    def __len__(self) -> int:
        return len(self._agents)


class AgentCoordinator:
    """Routes data through registered agents.

    After each agent runs, the first outgoing edge (in insertion order) whose
    target agent accepts the result via ``can_process`` is followed. The chain
    ends when no edge accepts, or stops on the first raising agent.
    """

    def __init__(self, registry: Optional[AgentRegistry] = None, max_hops: int = DEFAULT_MAX_HOPS):
        if max_hops < 1:
            raise ValueError("max_hops must be at least 1")
        self.max_hops = max_hops
        self.nodes: Dict[str, AgentNode] = {}
        if registry is not None:
            for agent in registry.list():
                self.add_node(agent.id, agent)

    @classmethod
    def from_registry(
        cls,
        registry: AgentRegistry,
        edges: Iterable[Tuple[str, str]] = (),
        max_hops: int = DEFAULT_MAX_HOPS
    ) -> "AgentCoordinator":
        """Build a coordinator from every agent in ``registry`` plus ``edges``."""
        coordinator = cls(registry=registry, max_hops=max_hops)
        for from_id, to_id in edges:
            coordinator.connect(from_id, to_id)
        return coordinator

    def add_node(self, agent_id: str, agent: Agent) -> None:
        if agent_id in self.nodes:
            raise DuplicateAgentError(
                f"Agent with id {agent_id} already exists in the graph",
                agent_id=agent_id,
                operation="add_node"
            )
        self.nodes[agent_id] = AgentNode(agent)
        logger.debug(f"Registered agent node {agent_id}")

    def connect(self, from_id: str, to_id: str) -> None:
        """Add a directed edge; connecting the same pair twice is a no-op."""
        for agent_id in (from_id, to_id):
            if agent_id not in self.nodes:
                raise UnknownAgentError(
                    f"Cannot connect {from_id} -> {to_id}: agent {agent_id} is not registered",
                    agent_id=agent_id,
                    operation="connect"
                )
        node = self.nodes[from_id]
        if to_id not in node.next_agent_ids:
            node.next_agent_ids.append(to_id)

    def get_available_agents(self) -> List[Agent]:
        return [node.agent for node in self.nodes.values()]

    def select_next(self, agent_id: str, result: Any) -> Optional[str]:
        """First successor, in edge insertion order, that accepts ``result``."""
        for candidate_id in self.nodes[agent_id].next_agent_ids:
            if self.nodes[candidate_id].agent.can_process(result):
                return candidate_id
        return None

    async def process(
        self,
        input_data: Any,
        start_id: str,
        context: Optional[ProcessingContext] = None
    ) -> ProcessingResult:
        """
        Run the chain starting at ``start_id``.

        Args:
            input_data: Input for the first agent
            start_id: ID of the first agent
            context: Run context; a fresh one is created when omitted

        Returns:
            ProcessingResult of the last agent run. A raising agent yields
            ``success=False`` and stops the chain; the caller decides
            whether that is fatal.
        """
        if context is None:
            context = ProcessingContext()

        if start_id not in self.nodes:
            return ProcessingResult(
                success=False,
                error=f"Agent with id {start_id} not found",
                metadata={"agent_id": start_id, "elapsed_ms": 0.0}
            )

        current_id = start_id
        data = input_data
        path: List[str] = []

        for _ in range(self.max_hops):
            node = self.nodes[current_id]
            path.append(current_id)
            started = time.perf_counter()
            try:
                logger.debug(f"Agent {node.agent.name or current_id} starting")
                result = node.agent.transform(data, context)
                if inspect.isawaitable(result):
                    result = await result
            except Exception as e:
                elapsed_ms = (time.perf_counter() - started) * 1000
                logger.error(f"Agent {current_id} failed after {elapsed_ms:.2f}ms: {e}")
                return ProcessingResult(
                    success=False,
                    error=str(e) or type(e).__name__,
                    metadata={"agent_id": current_id, "elapsed_ms": elapsed_ms, "path": path}
                )

            elapsed_ms = (time.perf_counter() - started) * 1000
            context.record(current_id, result)
            logger.debug(f"Agent {current_id} completed in {elapsed_ms:.2f}ms")

            next_id = self.select_next(current_id, result)
            if next_id is None:
                return ProcessingResult(
                    success=True,
                    data=result,
                    metadata={"agent_id": current_id, "elapsed_ms": elapsed_ms, "next_agent": None, "path": path}
                )

            current_id = next_id
            data = result

        error = AgentChainError(
            f"Agent chain exceeded {self.max_hops} hops",
            agent_id=current_id,
            hops=self.max_hops
        )
        logger.error(error.message)
        return ProcessingResult(
            success=False,
            error=error.message,
            metadata={"agent_id": current_id, "elapsed_ms": 0.0, "path": path}
        )
