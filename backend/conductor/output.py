"""
Output Channel

One-way, best-effort sink for streamed text. Presentation consumes it; the
core never depends on delivery (a lost delta is a UX defect, not a data
integrity one).
"""

from __future__ import annotations
import asyncio
import logging
from typing import Dict, List, Optional, Protocol, Set, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class OutputChannel(Protocol):
    """emit(agent_id, text_delta)"""

    def emit(self, agent_id: str, text_delta: str) -> None:
        ...


class NullOutputChannel:
    """Discards everything"""

    def emit(self, agent_id: str, text_delta: str) -> None:
        return None


class BroadcastOutputChannel:
    """
    Fan-out output channel

    Each subscriber gets its own bounded queue per agent. When a subscriber
    falls behind, new deltas for it are dropped instead of blocking the run.
    """

    def __init__(self, max_queue_size: int = 1000):
        self.max_queue_size = max_queue_size
        self._subscribers: Dict[str, Set[asyncio.Queue]] = {}
        self._stats = {
            "emitted": 0,
            "dropped": 0,
        }

    def subscribe(self, agent_id: str) -> "asyncio.Queue[str]":
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue_size)
        self._subscribers.setdefault(agent_id, set()).add(queue)
        logger.debug(f"Output subscriber added: agent={agent_id}")
        return queue

    def unsubscribe(self, agent_id: str, queue: "asyncio.Queue[str]") -> None:
        subscribers = self._subscribers.get(agent_id)
        if not subscribers:
            return
        subscribers.discard(queue)
        if not subscribers:
            del self._subscribers[agent_id]

    def emit(self, agent_id: str, text_delta: str) -> None:
        self._stats["emitted"] += 1
        for queue in list(self._subscribers.get(agent_id, ())):
            try:
                queue.put_nowait(text_delta)
            except asyncio.QueueFull:
                self._stats["dropped"] += 1

    def subscriber_count(self, agent_id: Optional[str] = None) -> int:
        if agent_id is not None:
            return len(self._subscribers.get(agent_id, ()))
        return sum(len(s) for s in self._subscribers.values())

    def get_stats(self) -> Dict[str, int]:
        return {**self._stats, "subscribers": self.subscriber_count()}


class RecordingOutputChannel:
    """Keeps every delta per agent; used by tests and diagnostics"""

    def __init__(self):
        self.deltas: Dict[str, List[str]] = {}

    def emit(self, agent_id: str, text_delta: str) -> None:
        self.deltas.setdefault(agent_id, []).append(text_delta)

    def text(self, agent_id: str) -> str:
        return "".join(self.deltas.get(agent_id, []))
