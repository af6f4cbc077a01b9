"""
Agent Queue
Agent 调度器

At most one active Execution Loop per agent; any number of agents run side
by side. Not a FIFO of jobs: enqueue() on a busy agent sets `pending_work`,
and however many calls arrive they coalesce into one follow-up run that picks
up every message written in the meantime.

State per agent:  idle | running  + pending_work

    enqueue(A):   idle    -> running, start run
                  running -> pending_work = True
    run done(A):  pending_work -> clear, start follow-up run
                  else         -> idle

Every state change happens in synchronous code on the event loop thread, so
enqueue() and the completion step never interleave.
"""

from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from ..errors import FailureInfo, FailureKind
from ..models import RunResult, RunStatus

logger = logging.getLogger(__name__)


RunAgentFn = Callable[[str], Awaitable[RunResult]]


class AgentState(str, Enum):
    """Scheduler state of one agent"""
    IDLE = "idle"
    RUNNING = "running"


@dataclass
class AgentSlot:
    """
    Per-agent scheduling slot

    Only touched from the event loop thread.
    """
    agent_id: str
    state: AgentState = AgentState.IDLE
    pending_work: bool = False
    task: Optional[asyncio.Task] = None

    # A cancelled run whose other waiters still need a follow-up
    resume_after_cancel: bool = False

    # (position, future) completion waiters
    waiters: List[Tuple[int, asyncio.Future]] = field(default_factory=list)
    idle_waiters: List[asyncio.Future] = field(default_factory=list)

    runs: int = 0
    last_result: Optional[RunResult] = None


class AgentQueue:
    """
    Debounced per-agent run scheduler

    Example:
        queue = AgentQueue(loop.run_agent)
        message = await store.append_message("a", "hello")
        done = queue.watch("a", message.position)
        queue.enqueue("a")
        result = await done
    """

    def __init__(
        self,
        run_agent: RunAgentFn,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ):
        """
        Args:
            run_agent: The Execution Loop entry point (agent_id -> RunResult)
            loop: Event loop for enqueue_threadsafe (defaults to the loop of
                the first enqueue)
        """
        self._run_agent = run_agent
        self._loop = loop
        self._slots: Dict[str, AgentSlot] = {}
        self._closed = False

        self._stats = {
            "enqueued": 0,
            "coalesced": 0,
            "runs": 0,
            "succeeded": 0,
            "noop": 0,
            "failed": 0,
            "cancelled": 0,
            "max_running": 0,
        }

        logger.info("AgentQueue initialized")

    # ============================================
    # Scheduling
    # ============================================

    def enqueue(self, agent_id: str) -> None:
        """
        Request a run for an agent (non-blocking)

        Must be called on the event loop thread; use enqueue_threadsafe from
        other threads.
        """
        if self._closed:
            raise RuntimeError("AgentQueue is shut down")

        loop = asyncio.get_running_loop()
        if self._loop is None:
            self._loop = loop

        slot = self._slot(agent_id)
        self._stats["enqueued"] += 1

        if slot.state == AgentState.RUNNING:
            if not slot.pending_work:
                logger.debug(f"Agent {agent_id} busy, pending work flagged")
            else:
                self._stats["coalesced"] += 1
            slot.pending_work = True
            return

        slot.state = AgentState.RUNNING
        slot.pending_work = False
        task = loop.create_task(self._drive(slot), name=f"agent-run:{agent_id}")
        task.add_done_callback(lambda t, s=slot: self._on_task_done(s, t))
        slot.task = task

        running = self.running_count()
        if running > self._stats["max_running"]:
            self._stats["max_running"] = running

        logger.debug(f"Agent {agent_id} started (running={running})")

    def enqueue_threadsafe(self, agent_id: str) -> None:
        """enqueue() from a thread other than the event loop's"""
        if self._loop is None:
            raise RuntimeError("AgentQueue is not bound to an event loop yet")
        self._loop.call_soon_threadsafe(self.enqueue, agent_id)

    def cancel(self, agent_id: str, positions: Optional[Iterable[int]] = None) -> bool:
        """
        Cancel the agent's in-flight run

        Without `positions` the pending follow-up is dropped and every waiter
        receives a cancelled result. Returns False if the agent was not running.

        With `positions` only the waiters for those messages receive a
        cancelled result; the other waiters stay registered and a follow-up
        run is scheduled for them. Returns False if no such waiter existed.
        """
        slot = self._slots.get(agent_id)
        if slot is None:
            return False
        if positions is not None:
            return self._cancel_positions(slot, set(positions))

        if slot.task is None or slot.state != AgentState.RUNNING:
            return False

        slot.pending_work = False
        slot.resume_after_cancel = False
        slot.task.cancel()
        logger.info(f"Agent {agent_id} run cancellation requested")
        return True

    def _cancel_positions(self, slot: AgentSlot, positions: set) -> bool:
        targeted = [(p, f) for p, f in slot.waiters if p in positions and not f.done()]
        if not targeted:
            return False

        slot.waiters = [(p, f) for p, f in slot.waiters if p not in positions]
        result = RunResult.cancelled(slot.agent_id)
        for _, future in targeted:
            future.set_result(result)

        if slot.task is not None and slot.state == AgentState.RUNNING:
            slot.pending_work = True
            slot.resume_after_cancel = True
            slot.task.cancel()

        logger.info(
            f"Agent {slot.agent_id} run cancellation requested for "
            f"position(s) {sorted(positions)} ({len(slot.waiters)} waiter(s) kept)"
        )
        return True

    # ============================================
    # Completion signals
    # ============================================

    def watch(self, agent_id: str, position: int) -> "asyncio.Future[RunResult]":
        """
        Future resolved with the RunResult of the run that incorporates the
        message at `position` (or fails / is cancelled while holding it)
        """
        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        slot = self._slot(agent_id)

        last = slot.last_result
        if (
            slot.state == AgentState.IDLE
            and last is not None
            and last.status in (RunStatus.SUCCEEDED, RunStatus.NOOP)
            and (last.cursor or 0) >= position
        ):
            future.set_result(last)
            return future

        slot.waiters.append((position, future))
        return future

    async def wait_for(self, agent_id: str, position: int) -> RunResult:
        return await self.watch(agent_id, position)

    async def wait_idle(self, agent_id: str) -> None:
        slot = self._slots.get(agent_id)
        if slot is None or slot.state == AgentState.IDLE:
            return
        future = asyncio.get_running_loop().create_future()
        slot.idle_waiters.append(future)
        await future

    # ============================================
    # Run driver
    # ============================================

    async def _drive(self, slot: AgentSlot) -> None:
        agent_id = slot.agent_id

        while True:
            resume = False
            try:
                result = await self._run_agent(agent_id)
            except asyncio.CancelledError:
                # Cancellation ends this run only; the slot keeps serving
                current = asyncio.current_task()
                if current is not None:
                    while current.uncancel() > 0:
                        pass
                result = RunResult.cancelled(agent_id)
                resume = slot.resume_after_cancel
                slot.resume_after_cancel = False
                if resume:
                    slot.pending_work = True
            except Exception as e:
                logger.error(f"Agent {agent_id} run raised: {e}", exc_info=True)
                result = RunResult(
                    agent_id=agent_id,
                    status=RunStatus.FAILED,
                    failure=FailureInfo.from_kind(FailureKind.INTERNAL, f"{type(e).__name__}: {e}"),
                )

            self._settle(slot, result, resolve=not resume)

            if slot.pending_work and not self._closed:
                slot.pending_work = False
                logger.debug(f"Agent {agent_id} draining pending work")
                continue

            self._go_idle(slot)
            return

    def _settle(self, slot: AgentSlot, result: RunResult, resolve: bool = True) -> None:
        """Record a finished run and resolve the waiters it covers"""
        slot.runs += 1
        slot.last_result = result
        self._stats["runs"] += 1
        self._stats[result.status.value] += 1

        if not resolve:
            logger.debug(
                f"Agent {slot.agent_id} run cancelled, "
                f"{len(slot.waiters)} waiter(s) kept for the follow-up"
            )
            return

        remaining = []
        for position, future in slot.waiters:
            if future.done():
                continue
            if _covers(result, position):
                future.set_result(result)
            else:
                remaining.append((position, future))
        slot.waiters = remaining

        logger.debug(
            f"Agent {slot.agent_id} run finished: {result.status.value} "
            f"(cursor={result.cursor}, waiting={len(remaining)})"
        )

    def _go_idle(self, slot: AgentSlot) -> None:
        slot.state = AgentState.IDLE
        slot.task = None
        slot.pending_work = False
        for future in slot.idle_waiters:
            if not future.done():
                future.set_result(None)
        slot.idle_waiters = []
        logger.debug(f"Agent {slot.agent_id} idle")

    def _on_task_done(self, slot: AgentSlot, task: asyncio.Task) -> None:
        # Cancelled before the driver got to run its first step
        if slot.task is task and task.cancelled():
            resume = slot.resume_after_cancel and not self._closed
            slot.resume_after_cancel = False
            self._settle(slot, RunResult.cancelled(slot.agent_id), resolve=not resume)
            self._go_idle(slot)
            if resume:
                self.enqueue(slot.agent_id)

    # ============================================
    # Introspection / lifecycle
    # ============================================

    def state(self, agent_id: str) -> AgentState:
        slot = self._slots.get(agent_id)
        return slot.state if slot else AgentState.IDLE

    def has_pending_work(self, agent_id: str) -> bool:
        slot = self._slots.get(agent_id)
        return bool(slot and slot.pending_work)

    def last_result(self, agent_id: str) -> Optional[RunResult]:
        slot = self._slots.get(agent_id)
        return slot.last_result if slot else None

    def running_count(self) -> int:
        return sum(1 for s in self._slots.values() if s.state == AgentState.RUNNING)

    def stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "agents": len(self._slots),
            "running": self.running_count(),
            "runs_by_agent": {agent_id: s.runs for agent_id, s in self._slots.items()},
        }

    async def shutdown(self) -> None:
        """Cancel every in-flight run and wait for the drivers to exit"""
        self._closed = True
        tasks = []
        for slot in self._slots.values():
            if slot.task is not None:
                slot.pending_work = False
                slot.resume_after_cancel = False
                slot.task.cancel()
                tasks.append(slot.task)

        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        logger.info(f"AgentQueue shut down ({len(tasks)} run(s) cancelled)")

    def _slot(self, agent_id: str) -> AgentSlot:
        slot = self._slots.get(agent_id)
        if slot is None:
            slot = self._slots[agent_id] = AgentSlot(agent_id=agent_id)
        return slot

    def __repr__(self) -> str:
        return (
            f"AgentQueue(agents={len(self._slots)}, "
            f"running={self.running_count()}, "
            f"runs={self._stats['runs']})"
        )


def _covers(result: RunResult, position: int) -> bool:
    """Whether a finished run answers the waiter for `position`"""
    if result.status == RunStatus.CANCELLED:
        return True
    if result.status == RunStatus.FAILED:
        # A run that failed before reading anything still reports to everyone
        return result.last_position is None or result.last_position >= position
    return (result.cursor or 0) >= position
