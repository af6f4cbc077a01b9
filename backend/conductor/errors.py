"""
Error Taxonomy
错误分类

Structured failures for the conductor core:
- Model stream failures (retryable vs. non-retryable request errors)
- Tool failures (not found / execution failed / timeout)
- Tool round-trip limit exhaustion
- Store and task state machine violations

Every failure that crosses a component boundary is reported as a FailureInfo
(kind + human-readable detail), never as a flat string.
"""

from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class FailureKind(str, Enum):
    """Failure classification for runs and tasks"""
    # Retryable transient
    RATE_LIMITED = "rate_limited"
    OVERLOADED = "overloaded"
    NETWORK_FAILURE = "network_failure"

    # Non-retryable request
    INVALID_REQUEST = "invalid_request"
    AUTH_FAILURE = "auth_failure"

    # Tool round-trip limit exceeded
    TOOL_LOOP_EXCEEDED = "tool_loop_exceeded"

    # Anything unexpected (bug, store failure)
    INTERNAL = "internal"

    # Child task was cancelled (used for synthesis caveats)
    CANCELLED = "cancelled"

    @property
    def is_retryable(self) -> bool:
        return self in _RETRYABLE_KINDS


_RETRYABLE_KINDS = frozenset({
    FailureKind.RATE_LIMITED,
    FailureKind.OVERLOADED,
    FailureKind.NETWORK_FAILURE,
})


@dataclass(frozen=True)
class FailureInfo:
    """
    Structured failure

    Enough structure for a caller to decide on further retry.
    """
    kind: FailureKind
    detail: str
    retryable: bool = False

    @classmethod
    def from_kind(cls, kind: FailureKind, detail: str) -> "FailureInfo":
        return cls(kind=kind, detail=detail, retryable=kind.is_retryable)

    def summary(self) -> str:
        """One-line summary used in caveats and logs"""
        return f"{self.kind.value}: {self.detail}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "detail": self.detail,
            "retryable": self.retryable,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FailureInfo":
        return cls(
            kind=FailureKind(data["kind"]),
            detail=data.get("detail", ""),
            retryable=bool(data.get("retryable", False)),
        )


# ============================================
# Exceptions
# ============================================

class ConductorError(Exception):
    """Base class for all conductor errors"""


class ModelStreamError(ConductorError):
    """The model stream reported an error or the provider call failed"""

    def __init__(self, kind: FailureKind, detail: str = ""):
        super().__init__(f"{kind.value}: {detail}" if detail else kind.value)
        self.kind = kind
        self.detail = detail

    @property
    def retryable(self) -> bool:
        return self.kind.is_retryable

    def to_failure(self) -> FailureInfo:
        return FailureInfo.from_kind(self.kind, self.detail or self.kind.value)


class ToolLoopExceeded(ConductorError):
    """A run requested more tool round-trips than allowed"""

    def __init__(self, limit: int):
        super().__init__(f"Tool round-trip limit exceeded ({limit})")
        self.limit = limit


class DuplicateTool(ConductorError):
    """A tool name is already bound in the registry"""

    def __init__(self, name: str):
        super().__init__(f"Tool already registered: {name}")
        self.name = name


class ToolErrorKind(str, Enum):
    """Tool failure classification"""
    NOT_FOUND = "not_found"
    EXECUTION_FAILED = "execution_failed"
    TIMEOUT = "timeout"


class ToolError(ConductorError):
    """Base class for tool failures"""

    kind: ToolErrorKind = ToolErrorKind.EXECUTION_FAILED

    def __init__(self, tool_name: str, detail: str):
        super().__init__(detail)
        self.tool_name = tool_name
        self.detail = detail


class ToolNotFound(ToolError):
    kind = ToolErrorKind.NOT_FOUND

    def __init__(self, tool_name: str):
        super().__init__(tool_name, f"Unknown tool: {tool_name}")


class ToolExecutionFailed(ToolError):
    kind = ToolErrorKind.EXECUTION_FAILED


class ToolTimeout(ToolError):
    kind = ToolErrorKind.TIMEOUT

    def __init__(self, tool_name: str, timeout: float):
        super().__init__(tool_name, f"Tool {tool_name} timed out after {timeout}s")
        self.timeout = timeout


class StoreError(ConductorError):
    """Store operation failed"""


class CursorConflict(StoreError):
    """A cursor commit would regress or overrun the message log"""


class UnknownAgent(ConductorError):
    """No agent is configured under the given id"""

    def __init__(self, agent_id: str):
        super().__init__(f"Unknown agent: {agent_id}")
        self.agent_id = agent_id


class TaskNotFound(StoreError):
    def __init__(self, task_id: str):
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class InvalidTaskTransition(StoreError):
    """A task status change violates the task state machine"""

    def __init__(self, task_id: str, current: Any, target: Any, reason: Optional[str] = None):
        message = f"Task {task_id}: cannot transition {current} -> {target}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)
        self.task_id = task_id
        self.current = current
        self.target = target
