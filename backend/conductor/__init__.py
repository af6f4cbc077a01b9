"""
Conductor
多 Agent 并发调度

Runs many streaming LLM agents concurrently while keeping each agent's own
history strictly ordered:
- AgentQueue: one in-flight run per agent, any number of agents in parallel
- ExecutionLoop: pending messages -> model/tool exchange -> atomic cursor commit
- Orchestrator: task trees with bounded fan-out, synthesis and cancellation
"""

from .errors import (
    ConductorError,
    FailureInfo,
    FailureKind,
    ModelStreamError,
    ToolError,
    ToolNotFound,
    ToolExecutionFailed,
    ToolTimeout,
    DuplicateTool,
    ToolLoopExceeded,
    UnknownAgent,
    TaskNotFound,
    InvalidTaskTransition,
    StoreError,
    CursorConflict,
)
from .models import (
    Agent,
    Message,
    Role,
    CursorState,
    RunResult,
    RunStatus,
    Task,
    TaskNode,
    TaskStatus,
)
# core before agents/config/providers, which import core submodules
from .core import (
    AgentQueue,
    AgentState,
    ExecutionLoop,
    Orchestrator,
    OrchestrationResult,
    RetryPolicy,
    SubtaskSpec,
)
from .agents import AgentDirectory, load_agent_definitions
from .config import ConductorConfig
from .output import OutputChannel, BroadcastOutputChannel, NullOutputChannel
from .storage import Store, InMemoryStore, JsonFileStore
from .tools import Tool, ToolRegistry, ToolResult
from .runtime import Conductor

__all__ = [
    # Runtime
    "Conductor",
    "ConductorConfig",

    # Core
    "AgentQueue",
    "AgentState",
    "ExecutionLoop",
    "Orchestrator",
    "OrchestrationResult",
    "RetryPolicy",
    "SubtaskSpec",

    # Agents / tools / storage / output
    "AgentDirectory",
    "load_agent_definitions",
    "Tool",
    "ToolRegistry",
    "ToolResult",
    "Store",
    "InMemoryStore",
    "JsonFileStore",
    "OutputChannel",
    "BroadcastOutputChannel",
    "NullOutputChannel",

    # Models
    "Agent",
    "Message",
    "Role",
    "CursorState",
    "RunResult",
    "RunStatus",
    "Task",
    "TaskNode",
    "TaskStatus",

    # Errors
    "ConductorError",
    "FailureInfo",
    "FailureKind",
    "ModelStreamError",
    "ToolError",
    "ToolNotFound",
    "ToolExecutionFailed",
    "ToolTimeout",
    "DuplicateTool",
    "ToolLoopExceeded",
    "UnknownAgent",
    "TaskNotFound",
    "InvalidTaskTransition",
    "StoreError",
    "CursorConflict",
]
