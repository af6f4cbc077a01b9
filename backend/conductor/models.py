"""
Conductor Data Model
数据模型

Agents, messages, cursors, tasks and run results shared by every component.
"""

from __future__ import annotations
import json
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .errors import FailureInfo


# ============================================
# Agent
# ============================================

@dataclass(frozen=True)
class Agent:
    """
    Agent definition

    A configured conversational unit: model, prompt and tool set. Session and
    cursor live in the Store and are mutated only by the agent's own run.
    """
    agent_id: str
    model: str
    system_prompt: str = ""
    tools: Tuple[str, ...] = ()
    role: Optional[str] = None
    max_tokens: Optional[int] = None

    def with_id(self, agent_id: str) -> "Agent":
        """Clone this definition under a new id (role template -> dedicated agent)"""
        return replace(self, agent_id=agent_id)


# ============================================
# Message
# ============================================

class Role(str, Enum):
    """Message roles"""
    USER = "user"
    ASSISTANT = "assistant"
    TOOL_RESULT = "tool_result"


@dataclass
class ToolCallRequest:
    """A tool invocation requested by the model inside an assistant turn"""
    call_id: str
    name: str
    input: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"call_id": self.call_id, "name": self.name, "input": self.input}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ToolCallRequest":
        return cls(
            call_id=data["call_id"],
            name=data["name"],
            input=dict(data.get("input") or {}),
        )


@dataclass
class Message:
    """
    Message

    Immutable once written. `position` is assigned by the Store; messages built
    during an in-flight exchange have no position until the cursor commit.
    """
    agent_id: str
    role: Role
    content: str = ""
    position: Optional[int] = None

    # Assistant turns: tool invocations requested in this turn
    tool_calls: List[ToolCallRequest] = field(default_factory=list)

    # Tool results
    tool_call_id: Optional[str] = None
    tool_name: Optional[str] = None
    is_error: bool = False

    # Output messages: cursor of the exchange that produced them
    reply_to: Optional[int] = None

    created_at: datetime = field(default_factory=datetime.now)

    @property
    def is_input(self) -> bool:
        return self.role == Role.USER

    def history_key(self) -> Tuple[int, int, int]:
        """
        Ordering key for conversation history

        Output messages sort right after the input batch they answered.
        """
        position = self.position if self.position is not None else 0
        if self.is_input:
            return (position, 0, position)
        anchor = self.reply_to if self.reply_to is not None else position
        return (anchor, 1, position)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "role": self.role.value,
            "content": self.content,
            "position": self.position,
            "tool_calls": [call.to_dict() for call in self.tool_calls],
            "tool_call_id": self.tool_call_id,
            "tool_name": self.tool_name,
            "is_error": self.is_error,
            "reply_to": self.reply_to,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        return cls(
            agent_id=data["agent_id"],
            role=Role(data["role"]),
            content=data.get("content", ""),
            position=data.get("position"),
            tool_calls=[ToolCallRequest.from_dict(c) for c in data.get("tool_calls", [])],
            tool_call_id=data.get("tool_call_id"),
            tool_name=data.get("tool_name"),
            is_error=bool(data.get("is_error", False)),
            reply_to=data.get("reply_to"),
            created_at=datetime.fromisoformat(data["created_at"]) if data.get("created_at") else datetime.now(),
        )


@dataclass(frozen=True)
class CursorState:
    """Per-agent resumption cursor and session identifier"""
    position: int = 0
    session_id: Optional[str] = None
    updated_at: Optional[datetime] = None


# ============================================
# Tool invocation
# ============================================

@dataclass
class ToolInvocationRecord:
    """
    Tool invocation record

    Executed within exactly one run; retrying the run re-issues the call.
    """
    call_id: str
    name: str
    input: Dict[str, Any]
    output: Any = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    duration: float = 0.0

    @property
    def is_error(self) -> bool:
        return self.error is not None

    def to_content(self) -> str:
        """Convert to string content for the model"""
        if self.is_error:
            return f"Error: {self.error}"
        if isinstance(self.output, str):
            return self.output
        try:
            return json.dumps(self.output, ensure_ascii=False, default=str)
        except (TypeError, ValueError):
            return str(self.output)


# ============================================
# Run result
# ============================================

class RunStatus(str, Enum):
    """Outcome of one Execution Loop invocation"""
    SUCCEEDED = "succeeded"
    NOOP = "noop"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class RunResult:
    """
    Result of one run

    `last_position` is the highest input position read by the final attempt,
    so waiters can tell whether their message was part of this run.
    """
    agent_id: str
    status: RunStatus
    cursor: Optional[int] = None
    session_id: Optional[str] = None
    output_text: str = ""
    attempts: int = 0
    failure: Optional[FailureInfo] = None
    last_position: Optional[int] = None
    tool_invocations: List[ToolInvocationRecord] = field(default_factory=list)
    backoff_total: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.status == RunStatus.SUCCEEDED

    @classmethod
    def cancelled(cls, agent_id: str) -> "RunResult":
        return cls(agent_id=agent_id, status=RunStatus.CANCELLED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "status": self.status.value,
            "cursor": self.cursor,
            "session_id": self.session_id,
            "output_text": self.output_text,
            "attempts": self.attempts,
            "failure": self.failure.to_dict() if self.failure else None,
            "last_position": self.last_position,
            "tool_calls": [
                {"name": r.name, "is_error": r.is_error, "duration": round(r.duration, 3)}
                for r in self.tool_invocations
            ],
            "backoff_total": round(self.backoff_total, 3),
        }


# ============================================
# Task
# ============================================

class TaskStatus(str, Enum):
    """Task state machine: pending -> running -> {succeeded, failed}; non-terminal -> cancelled"""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.SUCCEEDED, TaskStatus.FAILED, TaskStatus.CANCELLED)

    def can_transition_to(self, target: "TaskStatus") -> bool:
        return target in _TASK_TRANSITIONS[self]


_TASK_TRANSITIONS = {
    TaskStatus.PENDING: {TaskStatus.RUNNING, TaskStatus.CANCELLED},
    TaskStatus.RUNNING: {TaskStatus.SUCCEEDED, TaskStatus.FAILED, TaskStatus.CANCELLED},
    TaskStatus.SUCCEEDED: set(),
    TaskStatus.FAILED: set(),
    TaskStatus.CANCELLED: set(),
}


@dataclass
class Task:
    """Orchestration unit: one node of a task tree"""
    task_id: str
    objective: str
    agent_id: Optional[str] = None
    parent_id: Optional[str] = None
    role: Optional[str] = None
    status: TaskStatus = TaskStatus.PENDING
    result: Optional[str] = None
    error: Optional[FailureInfo] = None
    caveats: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=datetime.now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_root(self) -> bool:
        return self.parent_id is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "objective": self.objective,
            "agent_id": self.agent_id,
            "parent_id": self.parent_id,
            "role": self.role,
            "status": self.status.value,
            "result": self.result,
            "error": self.error.to_dict() if self.error else None,
            "caveats": list(self.caveats),
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        def _dt(value: Optional[str]) -> Optional[datetime]:
            return datetime.fromisoformat(value) if value else None

        return cls(
            task_id=data["task_id"],
            objective=data.get("objective", ""),
            agent_id=data.get("agent_id"),
            parent_id=data.get("parent_id"),
            role=data.get("role"),
            status=TaskStatus(data.get("status", "pending")),
            result=data.get("result"),
            error=FailureInfo.from_dict(data["error"]) if data.get("error") else None,
            caveats=list(data.get("caveats") or []),
            created_at=_dt(data.get("created_at")) or datetime.now(),
            started_at=_dt(data.get("started_at")),
            completed_at=_dt(data.get("completed_at")),
        )


@dataclass
class TaskNode:
    """Tree view of a task and its descendants"""
    task: Task
    children: List["TaskNode"] = field(default_factory=list)

    def walk(self):
        """Depth-first iteration over this node and all descendants"""
        yield self
        for child in self.children:
            yield from child.walk()

    def to_dict(self) -> Dict[str, Any]:
        return {
            **self.task.to_dict(),
            "children": [child.to_dict() for child in self.children],
        }
