"""
Conductor Runtime
运行时装配

Wires configuration, store, agents, tools, the model client, the output
channel, the Execution Loop, the AgentQueue and the Orchestrator into one
object the HTTP layer (or an embedding program) talks to.
"""

from __future__ import annotations
import logging
from typing import Any, Dict, Optional, Sequence

from .agents import AgentDirectory, load_agent_definitions
from .config import ConductorConfig
from .core.agent_queue import AgentQueue
from .core.decomposer import Decomposer, SubtaskSpec
from .core.execution_loop import ExecutionLoop, SleepFn
from .core.orchestrator import OrchestrationResult, Orchestrator
from .core.retry import RetryPolicy
from .core.synthesizer import Synthesizer
from .models import Message, RunResult, TaskNode
from .output import BroadcastOutputChannel, OutputChannel
from .providers import ModelStreamClient, create_stream_client
from .storage import InMemoryStore, JsonFileStore, Store
from .tools.tool_registry import ToolRegistry

logger = logging.getLogger(__name__)


class Conductor:
    """
    Runtime facade

    Example:
        conductor = Conductor(ConductorConfig.from_env())
        conductor.registry.register("lookup", lookup_handler)
        conductor.freeze_tools()
        message = await conductor.post_message("researcher", "Hello")
        result = await conductor.queue.wait_for("researcher", message.position)
    """

    def __init__(
        self,
        config: Optional[ConductorConfig] = None,
        *,
        store: Optional[Store] = None,
        directory: Optional[AgentDirectory] = None,
        registry: Optional[ToolRegistry] = None,
        client: Optional[ModelStreamClient] = None,
        output: Optional[OutputChannel] = None,
        decomposer: Optional[Decomposer] = None,
        synthesizer: Optional[Synthesizer] = None,
        root_agent_id: Optional[str] = None,
        sleep: Optional[SleepFn] = None,
    ):
        self.config = config or ConductorConfig()
        config = self.config

        if store is None:
            store = JsonFileStore(config.store_dir) if config.store_dir else InMemoryStore()
        if directory is None:
            agents = (
                load_agent_definitions(config.agents_file, config.default_model)
                if config.agents_file else ()
            )
            directory = AgentDirectory(agents)

        self.store = store
        self.directory = directory
        self.registry = registry or ToolRegistry(default_timeout=config.tool_timeout)
        self.client = client or create_stream_client(config)
        self.output = output or BroadcastOutputChannel()

        self.retry_policy = RetryPolicy(
            max_attempts=config.max_attempts,
            initial_delay=config.backoff_initial,
            max_delay=config.backoff_max,
            jitter_ratio=config.backoff_jitter,
        )
        self.loop = ExecutionLoop(
            store=self.store,
            registry=self.registry,
            client=self.client,
            directory=self.directory,
            output=self.output,
            retry_policy=self.retry_policy,
            max_tool_round_trips=config.max_tool_round_trips,
            max_tokens=config.max_tokens,
            sleep=sleep,
        )
        self.queue = AgentQueue(self.loop.run_agent)
        self.orchestrator = Orchestrator(
            store=self.store,
            queue=self.queue,
            directory=self.directory,
            decomposer=decomposer,
            synthesizer=synthesizer,
            max_concurrent=config.max_concurrent_subtasks,
            root_agent_id=root_agent_id,
        )

        logger.info(
            f"Conductor initialized: provider={config.provider} "
            f"store={type(self.store).__name__} agents={len(self.directory)}"
        )

    @classmethod
    def from_env(cls, **kwargs) -> "Conductor":
        return cls(ConductorConfig.from_env(), **kwargs)

    def freeze_tools(self) -> None:
        """Make the tool table immutable (call once configuration is done)"""
        self.registry.freeze()

    # ============================================
    # Agents
    # ============================================

    async def post_message(self, agent_id: str, content: str) -> Message:
        """Append a user message for an agent and schedule a run"""
        self.directory.get(agent_id)
        message = await self.store.append_message(agent_id, content)
        self.queue.enqueue(agent_id)
        return message

    async def send(self, agent_id: str, content: str) -> RunResult:
        """post_message + wait for the run that answers it"""
        self.directory.get(agent_id)
        message = await self.store.append_message(agent_id, content)
        completion = self.queue.watch(agent_id, message.position)
        self.queue.enqueue(agent_id)
        return await completion

    async def agent_status(self, agent_id: str) -> Dict[str, Any]:
        agent = self.directory.get(agent_id)
        cursor = await self.store.get_cursor(agent_id)
        last = self.queue.last_result(agent_id)
        return {
            "agent_id": agent.agent_id,
            "role": agent.role,
            "model": agent.model,
            "tools": list(agent.tools),
            "state": self.queue.state(agent_id).value,
            "pending_work": self.queue.has_pending_work(agent_id),
            "cursor": cursor.position,
            "session_id": cursor.session_id,
            "highest_position": await self.store.highest_position(agent_id),
            "last_run": last.to_dict() if last else None,
        }

    # ============================================
    # Tasks
    # ============================================

    async def run_task(
        self,
        objective: str,
        *,
        agent_id: Optional[str] = None,
        subtasks: Optional[Sequence[SubtaskSpec]] = None,
    ) -> OrchestrationResult:
        return await self.orchestrator.run(objective, agent_id=agent_id, subtasks=subtasks)

    async def start_task(
        self,
        objective: str,
        *,
        agent_id: Optional[str] = None,
        subtasks: Optional[Sequence[SubtaskSpec]] = None,
    ) -> str:
        return await self.orchestrator.start(objective, agent_id=agent_id, subtasks=subtasks)

    async def cancel_task(self, task_id: str):
        return await self.orchestrator.cancel(task_id)

    async def get_task_tree(self, task_id: str) -> TaskNode:
        return await self.orchestrator.get_tree(task_id)

    # ============================================
    # Lifecycle
    # ============================================

    def get_stats(self) -> Dict[str, Any]:
        return {
            "scheduler": self.queue.stats(),
            "loop": self.loop.get_stats(),
            "tools": self.registry.get_stats(),
            "orchestrator": self.orchestrator.get_stats(),
        }

    async def aclose(self) -> None:
        await self.queue.shutdown()
        await self.client.aclose()
        logger.info("Conductor closed")
