"""
Conductor Core

核心调度层：
- AgentQueue: per-agent debounced run scheduler (每个 agent 同时只有一个 run)
- ExecutionLoop: runAgent, one model/tool exchange per run with cursor commit
- Orchestrator: task trees, bounded fan-out, synthesis, cancellation
- RetryPolicy: exponential backoff for retryable run failures
"""

from .constants import (
    MAX_TOOL_ROUND_TRIPS,
    MAX_RUN_ATTEMPTS,
    MAX_CONCURRENT_SUBTASKS,
    DEFAULT_TOOL_TIMEOUT_SECONDS,
    StopReason,
)
from .events import StreamEvent, TextDelta, ToolInvocation, Stop, StreamError
from .retry import RetryPolicy
from .execution_loop import ExecutionLoop
from .agent_queue import AgentQueue, AgentState
from .decomposer import Decomposer, StaticDecomposer, ModelDecomposer, SubtaskSpec
from .synthesizer import Synthesizer, ConcatenatingSynthesizer, ModelSynthesizer
from .orchestrator import Orchestrator, OrchestrationResult

__all__ = [
    # Constants
    "MAX_TOOL_ROUND_TRIPS",
    "MAX_RUN_ATTEMPTS",
    "MAX_CONCURRENT_SUBTASKS",
    "DEFAULT_TOOL_TIMEOUT_SECONDS",
    "StopReason",

    # Events
    "StreamEvent",
    "TextDelta",
    "ToolInvocation",
    "Stop",
    "StreamError",

    # Core Components
    "RetryPolicy",
    "ExecutionLoop",
    "AgentQueue",
    "AgentState",
    "Decomposer",
    "StaticDecomposer",
    "ModelDecomposer",
    "SubtaskSpec",
    "Synthesizer",
    "ConcatenatingSynthesizer",
    "ModelSynthesizer",
    "Orchestrator",
    "OrchestrationResult",
]
