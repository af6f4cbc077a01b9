"""
Store Interface

Durable state for agents and task trees:
- append-only per-agent message log
- resumption cursor + session identifier per agent (single atomic commit)
- task records
"""

from __future__ import annotations
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

from ..errors import FailureInfo
from ..models import CursorState, Message, Role, Task, TaskNode, TaskStatus


class Store(ABC):
    """
    Store interface

    Consistency: read-your-writes per agent. No cross-agent transactions.
    """

    # ============================================
    # Messages
    # ============================================

    @abstractmethod
    async def append_message(
        self,
        agent_id: str,
        content: str,
        role: Role = Role.USER,
    ) -> Message:
        """Append an input message and return it with its assigned position"""

    @abstractmethod
    async def read_messages_since(self, agent_id: str, cursor: int) -> List[Message]:
        """Pending input messages with position > cursor, ordered by position"""

    @abstractmethod
    async def withdraw_message(self, agent_id: str, position: int) -> bool:
        """
        Withdraw a pending input message

        A withdrawn message is skipped by read_messages_since and read_history.
        Messages at or below the cursor are already consumed and stay as they
        are. Returns True if the message was withdrawn by this call.
        """

    @abstractmethod
    async def read_history(self, agent_id: str) -> List[Message]:
        """
        Committed conversation context

        Input messages up to the cursor plus the committed output of each
        exchange, placed right after the batch it answered.
        """

    @abstractmethod
    async def highest_position(self, agent_id: str) -> int:
        """Highest committed position for the agent (0 when empty)"""

    # ============================================
    # Cursor
    # ============================================

    @abstractmethod
    async def get_cursor(self, agent_id: str) -> CursorState:
        """Current cursor and session (position 0 / no session when new)"""

    @abstractmethod
    async def commit_cursor(
        self,
        agent_id: str,
        cursor: int,
        session_id: Optional[str],
        transcript: Sequence[Message] = (),
    ) -> CursorState:
        """
        Atomically advance cursor and session, writing the exchange transcript

        Transcript messages receive positions and `reply_to = cursor` in the
        same operation. Either everything is visible afterwards or nothing is.

        Raises:
            CursorConflict: cursor regresses or overruns the input log
        """

    # ============================================
    # Tasks
    # ============================================

    @abstractmethod
    async def create_task(self, task: Task) -> Task:
        """Persist a new task record"""

    @abstractmethod
    async def get_task(self, task_id: str) -> Task:
        """Raises TaskNotFound"""

    @abstractmethod
    async def update_task_status(
        self,
        task_id: str,
        status: TaskStatus,
        *,
        result: Optional[str] = None,
        error: Optional[FailureInfo] = None,
        caveats: Optional[Sequence[str]] = None,
    ) -> Task:
        """
        Move a task forward in its state machine

        Raises:
            TaskNotFound
            InvalidTaskTransition: transition not allowed, or `succeeded`
                requested while a child is still pending/running
        """

    @abstractmethod
    async def list_children(self, task_id: str) -> List[Task]:
        """Direct children in creation order"""

    @abstractmethod
    async def get_task_tree(self, root_id: str) -> TaskNode:
        """Task and all descendants; children in creation order"""
