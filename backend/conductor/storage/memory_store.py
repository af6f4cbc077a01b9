"""
Memory Store Implementation
内存存储实现

Thread-safe in-memory Store.

Features:
- Thread-safe operations with Lock
- Gap-free per-agent positions shared by inputs and exchange outputs
- Single-step cursor commit (cursor + session + transcript)
- Withdrawal of pending input (cancelled work is never read again)
- Task state machine enforcement
"""

from __future__ import annotations
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from threading import Lock
from typing import Dict, List, Optional, Sequence, Set

from ..errors import (
    CursorConflict,
    FailureInfo,
    InvalidTaskTransition,
    StoreError,
    TaskNotFound,
)
from ..models import CursorState, Message, Role, Task, TaskNode, TaskStatus
from .base import Store

logger = logging.getLogger(__name__)


@dataclass
class AgentLog:
    """
    Per-agent log
    单个 agent 的消息日志
    """
    messages: List[Message] = field(default_factory=list)
    cursor: CursorState = field(default_factory=CursorState)
    next_position: int = 1
    withdrawn: Set[int] = field(default_factory=set)

    @property
    def highest_input(self) -> int:
        for message in reversed(self.messages):
            if message.is_input:
                return message.position or 0
        return 0

    def outputs(self) -> List[Message]:
        return [m for m in self.messages if not m.is_input]


def _copy_message(message: Message) -> Message:
    return replace(message, tool_calls=list(message.tool_calls))


def _copy_task(task: Task) -> Task:
    return replace(task, caveats=list(task.caveats))


class InMemoryStore(Store):
    """
    Thread-safe in-memory storage
    线程安全的内存存储

    Subclasses add durability by overriding the `_persist_*` hooks, which are
    called under the lock before the in-memory state changes. A hook that
    raises leaves the state untouched.
    """

    def __init__(self):
        self._agents: Dict[str, AgentLog] = {}
        self._tasks: Dict[str, Task] = {}
        self._children: Dict[str, List[str]] = {}
        self._lock = Lock()

    # ============================================
    # Messages
    # ============================================

    async def append_message(
        self,
        agent_id: str,
        content: str,
        role: Role = Role.USER,
    ) -> Message:
        if role != Role.USER:
            raise StoreError("Only input messages are appended directly; outputs go through commit_cursor")

        with self._lock:
            log = self._log(agent_id)
            message = Message(
                agent_id=agent_id,
                role=role,
                content=content,
                position=log.next_position,
            )
            self._persist_message(agent_id, message)
            log.messages.append(message)
            log.next_position += 1

        logger.debug(f"Message appended: agent={agent_id} position={message.position}")
        return _copy_message(message)

    async def read_messages_since(self, agent_id: str, cursor: int) -> List[Message]:
        with self._lock:
            log = self._agents.get(agent_id)
            if log is None:
                return []
            return [
                _copy_message(m) for m in log.messages
                if m.is_input and (m.position or 0) > cursor
                and m.position not in log.withdrawn
            ]

    async def withdraw_message(self, agent_id: str, position: int) -> bool:
        with self._lock:
            log = self._agents.get(agent_id)
            if log is None or position <= log.cursor.position or position in log.withdrawn:
                return False
            if not any(m.is_input and m.position == position for m in log.messages):
                return False

            self._persist_withdrawal(agent_id, position)
            log.withdrawn.add(position)

        logger.info(f"Message withdrawn: agent={agent_id} position={position}")
        return True

    async def read_history(self, agent_id: str) -> List[Message]:
        with self._lock:
            log = self._agents.get(agent_id)
            if log is None:
                return []
            committed = [
                m for m in log.messages
                if not m.is_input
                or ((m.position or 0) <= log.cursor.position and m.position not in log.withdrawn)
            ]
            return [_copy_message(m) for m in sorted(committed, key=Message.history_key)]

    async def highest_position(self, agent_id: str) -> int:
        with self._lock:
            log = self._agents.get(agent_id)
            return log.next_position - 1 if log else 0

    # ============================================
    # Cursor
    # ============================================

    async def get_cursor(self, agent_id: str) -> CursorState:
        with self._lock:
            log = self._agents.get(agent_id)
            return log.cursor if log else CursorState()

    async def commit_cursor(
        self,
        agent_id: str,
        cursor: int,
        session_id: Optional[str],
        transcript: Sequence[Message] = (),
    ) -> CursorState:
        with self._lock:
            log = self._log(agent_id)

            if cursor < log.cursor.position:
                raise CursorConflict(
                    f"Cursor for {agent_id} would regress: {log.cursor.position} -> {cursor}"
                )
            if cursor > log.highest_input:
                raise CursorConflict(
                    f"Cursor for {agent_id} overruns the log: {cursor} > {log.highest_input}"
                )

            position = log.next_position
            outputs: List[Message] = []
            for message in transcript:
                if message.is_input:
                    raise StoreError("Transcript may only contain assistant / tool-result messages")
                outputs.append(replace(
                    message,
                    agent_id=agent_id,
                    position=position,
                    reply_to=cursor,
                    tool_calls=list(message.tool_calls),
                ))
                position += 1

            state = CursorState(
                position=cursor,
                session_id=session_id,
                updated_at=datetime.now(),
            )

            self._persist_commit(agent_id, state, log.outputs() + outputs)

            log.messages.extend(outputs)
            log.next_position = position
            log.cursor = state

        logger.debug(
            f"Cursor committed: agent={agent_id} cursor={cursor} "
            f"session={session_id} transcript={len(outputs)}"
        )
        return state

    # ============================================
    # Tasks
    # ============================================

    async def create_task(self, task: Task) -> Task:
        with self._lock:
            if task.task_id in self._tasks:
                raise StoreError(f"Task already exists: {task.task_id}")
            if task.parent_id is not None and task.parent_id not in self._tasks:
                raise TaskNotFound(task.parent_id)

            stored = _copy_task(task)
            tasks = {**self._tasks, stored.task_id: stored}
            self._persist_tasks(tasks)

            self._tasks = tasks
            self._children.setdefault(stored.task_id, [])
            if stored.parent_id is not None:
                self._children.setdefault(stored.parent_id, []).append(stored.task_id)

        return _copy_task(stored)

    async def get_task(self, task_id: str) -> Task:
        with self._lock:
            return _copy_task(self._get(task_id))

    async def update_task_status(
        self,
        task_id: str,
        status: TaskStatus,
        *,
        result: Optional[str] = None,
        error: Optional[FailureInfo] = None,
        caveats: Optional[Sequence[str]] = None,
    ) -> Task:
        with self._lock:
            task = self._get(task_id)

            if not task.status.can_transition_to(status):
                raise InvalidTaskTransition(task_id, task.status.value, status.value)

            if status == TaskStatus.SUCCEEDED:
                active = [
                    child_id for child_id in self._children.get(task_id, [])
                    if self._tasks[child_id].status in (TaskStatus.PENDING, TaskStatus.RUNNING)
                ]
                if active:
                    raise InvalidTaskTransition(
                        task_id, task.status.value, status.value,
                        reason=f"children still active: {', '.join(active)}",
                    )

            now = datetime.now()
            updated = replace(
                task,
                status=status,
                result=result if result is not None else task.result,
                error=error if error is not None else task.error,
                caveats=list(caveats) if caveats is not None else list(task.caveats),
                started_at=now if status == TaskStatus.RUNNING else task.started_at,
                completed_at=now if status.is_terminal else task.completed_at,
            )

            tasks = {**self._tasks, task_id: updated}
            self._persist_tasks(tasks)
            self._tasks = tasks

        logger.info(f"Task {task_id}: {task.status.value} -> {status.value}")
        return _copy_task(updated)

    async def list_children(self, task_id: str) -> List[Task]:
        with self._lock:
            self._get(task_id)
            return [_copy_task(self._tasks[c]) for c in self._children.get(task_id, [])]

    async def get_task_tree(self, root_id: str) -> TaskNode:
        with self._lock:
            return self._build_tree(root_id)

    def _build_tree(self, task_id: str) -> TaskNode:
        node = TaskNode(task=_copy_task(self._get(task_id)))
        for child_id in self._children.get(task_id, []):
            node.children.append(self._build_tree(child_id))
        return node

    # ============================================
    # Internal (assumes lock held)
    # ============================================

    def _log(self, agent_id: str) -> AgentLog:
        log = self._agents.get(agent_id)
        if log is None:
            log = self._agents[agent_id] = AgentLog()
        return log

    def _get(self, task_id: str) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFound(task_id)
        return task

    # ============================================
    # Persistence hooks (no-op in memory)
    # ============================================

    def _persist_message(self, agent_id: str, message: Message) -> None:
        pass

    def _persist_withdrawal(self, agent_id: str, position: int) -> None:
        pass

    def _persist_commit(self, agent_id: str, state: CursorState, outputs: List[Message]) -> None:
        pass

    def _persist_tasks(self, tasks: Dict[str, Task]) -> None:
        pass

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "agents": len(self._agents),
                "messages": sum(len(log.messages) for log in self._agents.values()),
                "tasks": len(self._tasks),
            }
