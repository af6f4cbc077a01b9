"""
Orchestrator
任务编排器

Decomposes an objective into child tasks, dispatches each child through the
AgentQueue with bounded parallelism, and synthesizes the parent's result.

Dispatch:
- Children are admitted in creation order, at most `max_concurrent` at once
  per tree (semaphore + gather)
- A child's objective is appended as a user message to its agent, and the
  Orchestrator awaits that message's completion signal
- Role-bound children run on a dedicated agent `{role}:{task_id}` cloned from
  the role template and retired afterwards

Synthesis:
- all children succeeded -> parent succeeded
- some failed/cancelled  -> parent succeeded with caveats naming them
- all failed/cancelled   -> parent failed

Cancellation walks the subtree and marks every non-terminal task cancelled.
The objectives already delivered for those tasks are withdrawn from the Store
and only their waiters are cancelled in the AgentQueue; other work queued on
a shared agent runs in the follow-up. A tree cancelled while planning never
dispatches its children.
"""

from __future__ import annotations
import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from ..agents import AgentDirectory
from ..errors import FailureInfo, FailureKind, InvalidTaskTransition, TaskNotFound, UnknownAgent
from ..models import RunResult, RunStatus, Task, TaskNode, TaskStatus
from ..storage.base import Store
from .agent_queue import AgentQueue
from .constants import MAX_CONCURRENT_SUBTASKS
from .decomposer import Decomposer, StaticDecomposer, SubtaskSpec
from .synthesizer import ConcatenatingSynthesizer, Synthesizer

logger = logging.getLogger(__name__)


def new_task_id() -> str:
    return f"task_{uuid.uuid4().hex[:12]}"


@dataclass
class OrchestrationResult:
    """Final state of one task tree"""
    root_id: str
    status: TaskStatus
    result: Optional[str] = None
    caveats: List[str] = field(default_factory=list)
    children: List[Task] = field(default_factory=list)
    error: Optional[FailureInfo] = None
    peak_running: int = 0

    @property
    def succeeded(self) -> bool:
        return self.status == TaskStatus.SUCCEEDED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "root_id": self.root_id,
            "status": self.status.value,
            "result": self.result,
            "caveats": list(self.caveats),
            "children": [child.to_dict() for child in self.children],
            "error": self.error.to_dict() if self.error else None,
            "peak_running": self.peak_running,
        }


@dataclass
class _TreeRun:
    """Per-tree dispatch state (slot counter scoped to one tree)"""
    root_id: str
    semaphore: asyncio.Semaphore
    task_ids: Set[str] = field(default_factory=set)
    running: int = 0
    peak: int = 0

    def enter(self) -> None:
        self.running += 1
        if self.running > self.peak:
            self.peak = self.running

    def leave(self) -> None:
        self.running -= 1


class Orchestrator:
    """
    Task tree orchestrator

    Example:
        orchestrator = Orchestrator(store, queue, directory)
        outcome = await orchestrator.run(
            "Compare three databases",
            subtasks=[SubtaskSpec("Research Postgres", role="research"),
                      SubtaskSpec("Research MySQL", role="research")],
        )
    """

    def __init__(
        self,
        store: Store,
        queue: AgentQueue,
        directory: AgentDirectory,
        decomposer: Optional[Decomposer] = None,
        synthesizer: Optional[Synthesizer] = None,
        max_concurrent: int = MAX_CONCURRENT_SUBTASKS,
        root_agent_id: Optional[str] = None,
    ):
        """
        Args:
            store: Durable store for task records and messages
            queue: Agent scheduler the children are dispatched through
            directory: Agent definitions and role templates
            decomposer: Objective -> subtasks (default: none, objective goes
                to the root agent)
            synthesizer: Composes the parent result (default: concatenation)
            max_concurrent: Children dispatched at once per tree
            root_agent_id: Agent that owns root tasks when the caller names none
        """
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")

        self.store = store
        self.queue = queue
        self.directory = directory
        self.decomposer = decomposer or StaticDecomposer()
        self.synthesizer = synthesizer or ConcatenatingSynthesizer()
        self.max_concurrent = max_concurrent
        self.root_agent_id = root_agent_id

        # task_id -> (agent_id, message position) of the run currently backing it
        self._active: Dict[str, Tuple[str, int]] = {}
        self._planning: Dict[str, asyncio.Task] = {}
        self._cancelled: Set[str] = set()
        self._trees: Dict[str, _TreeRun] = {}
        self._runs: Dict[str, asyncio.Task] = {}

        self._stats = {
            "trees": 0,
            "children": 0,
            "succeeded": 0,
            "failed": 0,
            "cancelled": 0,
        }

        logger.info(f"Orchestrator initialized: max_concurrent={max_concurrent}")

    # ============================================
    # Entry points
    # ============================================

    async def run(
        self,
        objective: str,
        *,
        agent_id: Optional[str] = None,
        subtasks: Optional[Sequence[SubtaskSpec]] = None,
        task_id: Optional[str] = None,
    ) -> OrchestrationResult:
        """
        Run a task tree to completion

        Args:
            objective: The user objective
            agent_id: Root agent (receives the objective when there are no
                children; its model plans when a ModelDecomposer is used)
            subtasks: Explicit children; skips the decomposer
            task_id: Root task id (generated if omitted)
        """
        root = await self._create_root(objective, agent_id, task_id)
        return await self._execute(root, subtasks)

    async def start(
        self,
        objective: str,
        *,
        agent_id: Optional[str] = None,
        subtasks: Optional[Sequence[SubtaskSpec]] = None,
        task_id: Optional[str] = None,
    ) -> str:
        """Start a task tree in the background and return the root task id"""
        root = await self._create_root(objective, agent_id, task_id)
        run = asyncio.create_task(
            self._execute(root, subtasks),
            name=f"orchestration:{root.task_id}",
        )
        self._runs[root.task_id] = run
        run.add_done_callback(lambda t, rid=root.task_id: self._forget_run(rid, t))
        return root.task_id

    async def wait(self, root_id: str) -> OrchestrationResult:
        """
        Await a tree started with start()

        Once the background run has finished, the result is rebuilt from the
        Store (peak_running is then 0).
        """
        run = self._runs.get(root_id)
        if run is None:
            return await self._snapshot(root_id)
        return await asyncio.shield(run)

    def _forget_run(self, root_id: str, run: asyncio.Task) -> None:
        if self._runs.get(root_id) is run:
            del self._runs[root_id]

    async def cancel(self, task_id: str) -> List[str]:
        """
        Cancel a task and all its descendants

        Pending input delivered for the cancelled tasks is withdrawn from the
        Store, so later runs of the same agents never read it. Returns the ids
        that transitioned to cancelled.
        """
        tree = await self.store.get_task_tree(task_id)
        nodes = [node.task for node in tree.walk() if not node.task.status.is_terminal]
        ids = [task.task_id for task in nodes]

        # Stop new dispatches before any await
        self._cancelled.update(ids)
        delivered = {tid: self._active[tid] for tid in ids if tid in self._active}
        for tid in ids:
            planning = self._planning.get(tid)
            if planning is not None:
                planning.cancel()

        for agent_id, position in delivered.values():
            await self.store.withdraw_message(agent_id, position)

        # Interrupt in-flight runs; waiters of other tasks on the same agent
        # are kept for the follow-up run
        for tid, (agent_id, position) in delivered.items():
            if self._active.get(tid) == (agent_id, position):
                self.queue.cancel(agent_id, positions=[position])

        cancelled = []
        for task in reversed(nodes):
            updated = await self._finish(task.task_id, TaskStatus.CANCELLED)
            if updated.status == TaskStatus.CANCELLED:
                cancelled.append(task.task_id)

        logger.info(f"Cancelled {len(cancelled)} task(s) under {task_id}")
        return cancelled

    async def get_tree(self, root_id: str) -> TaskNode:
        return await self.store.get_task_tree(root_id)

    # ============================================
    # Tree execution
    # ============================================

    async def _create_root(
        self,
        objective: str,
        agent_id: Optional[str],
        task_id: Optional[str],
    ) -> Task:
        root = Task(
            task_id=task_id or new_task_id(),
            objective=objective,
            agent_id=agent_id or self.root_agent_id,
        )
        self._stats["trees"] += 1
        logger.info(f"Task tree created: {root.task_id} (agent={root.agent_id})")
        return await self.store.create_task(root)

    async def _execute(
        self,
        root: Task,
        subtasks: Optional[Sequence[SubtaskSpec]],
    ) -> OrchestrationResult:
        root_id = root.task_id
        tree = _TreeRun(root_id=root_id, semaphore=asyncio.Semaphore(self.max_concurrent))
        tree.task_ids.add(root_id)
        self._trees[root_id] = tree

        try:
            if root_id in self._cancelled:
                return await self._result(tree)
            await self.store.update_task_status(root_id, TaskStatus.RUNNING)

            if subtasks is not None:
                specs = list(subtasks)
            elif root_id in self._cancelled:
                specs = []
            else:
                specs = await self._plan(root)

            if root_id in self._cancelled:
                return await self._result(tree)

            if not specs:
                await self._run_direct(tree, root)
                return await self._result(tree)

            children: List[Tuple[Task, SubtaskSpec]] = []
            for spec in specs:
                if root_id in self._cancelled:
                    break
                child = await self._create_child(root, spec)
                tree.task_ids.add(child.task_id)
                children.append((child, spec))

            if root_id in self._cancelled:
                # Children created after the cancellation walk are still pending
                await self.cancel(root_id)
                return await self._result(tree)

            logger.info(f"Dispatching {len(children)} subtask(s) for {root_id}")
            await self._dispatch(tree, children)
            await self._synthesize(tree, root)
            return await self._result(tree)

        except (InvalidTaskTransition, TaskNotFound) as e:
            # Cancelled underneath us
            logger.info(f"Task tree {root_id} stopped: {e}")
            return await self._result(tree)
        except Exception as e:
            logger.error(f"Task tree {root_id} error: {e}", exc_info=True)
            await self._fail(
                root_id,
                FailureInfo.from_kind(FailureKind.INTERNAL, f"{type(e).__name__}: {e}"),
            )
            return await self._result(tree)
        finally:
            self._trees.pop(root_id, None)
            self._cancelled.difference_update(tree.task_ids)

    async def _plan(self, root: Task) -> List[SubtaskSpec]:
        """Run the decomposer; cancel() interrupts it through `_planning`"""
        root_agent = self._lookup(root.agent_id)
        planning = asyncio.ensure_future(self.decomposer.decompose(root.objective, root_agent))
        self._planning[root.task_id] = planning
        try:
            return await planning
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            logger.info(f"Planning for {root.task_id} cancelled")
            return []
        finally:
            self._planning.pop(root.task_id, None)

    async def _create_child(self, root: Task, spec: SubtaskSpec) -> Task:
        task_id = new_task_id()
        agent_id = spec.agent_id or f"{spec.role}:{task_id}"
        child = Task(
            task_id=task_id,
            objective=spec.objective,
            agent_id=agent_id,
            parent_id=root.task_id,
            role=spec.role,
        )
        self._stats["children"] += 1
        return await self.store.create_task(child)

    async def _dispatch(self, tree: _TreeRun, children: List[Tuple[Task, SubtaskSpec]]) -> None:
        """Run children with bounded concurrency, FIFO by creation order"""

        async def run_child_with_semaphore(child: Task, spec: SubtaskSpec) -> Task:
            async with tree.semaphore:
                return await self._run_child(tree, child, spec)

        tasks = [
            asyncio.create_task(run_child_with_semaphore(child, spec))
            for child, spec in children
        ]

        try:
            results = await asyncio.gather(*tasks, return_exceptions=True)
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            raise

        for (child, _), result in zip(children, results):
            if isinstance(result, Exception):
                logger.error(f"Subtask {child.task_id} error: {result}")
                await self._fail(
                    child.task_id,
                    FailureInfo.from_kind(FailureKind.INTERNAL, f"{type(result).__name__}: {result}"),
                )

    async def _run_child(self, tree: _TreeRun, child: Task, spec: SubtaskSpec) -> Task:
        if child.task_id in self._cancelled:
            return await self.store.get_task(child.task_id)

        spawned = False
        try:
            if spec.agent_id:
                self.directory.get(spec.agent_id)
            else:
                self.directory.spawn(spec.role, child.agent_id)
                spawned = True
        except (UnknownAgent, ValueError) as e:
            return await self._fail(
                child.task_id,
                FailureInfo.from_kind(FailureKind.INVALID_REQUEST, str(e)),
            )

        try:
            return await self._deliver(tree, child.task_id, child.agent_id, child.objective)
        finally:
            if spawned:
                # A follow-up run after a cancel may still be reading this agent
                await self.queue.wait_idle(child.agent_id)
                self.directory.retire(child.agent_id)

    async def _run_direct(self, tree: _TreeRun, root: Task) -> Task:
        """No children: the root agent handles the objective itself"""
        if self._lookup(root.agent_id) is None:
            return await self._finish(
                root.task_id,
                TaskStatus.FAILED,
                error=FailureInfo.from_kind(
                    FailureKind.INVALID_REQUEST,
                    f"No subtasks and no agent for the objective (agent={root.agent_id})",
                ),
            )
        return await self._deliver(tree, root.task_id, root.agent_id, root.objective, mark_running=False)

    async def _deliver(
        self,
        tree: _TreeRun,
        task_id: str,
        agent_id: str,
        objective: str,
        *,
        mark_running: bool = True,
    ) -> Task:
        """Send the objective to the agent and wait for the run that answers it"""
        if mark_running:
            try:
                await self.store.update_task_status(task_id, TaskStatus.RUNNING)
            except InvalidTaskTransition:
                return await self.store.get_task(task_id)

        tree.enter()
        try:
            if task_id in self._cancelled:
                return await self._finish(task_id, TaskStatus.CANCELLED)

            message = await self.store.append_message(agent_id, objective)
            position = message.position

            # watch + enqueue + register without yielding, so cancel() sees the run
            if task_id in self._cancelled:
                await self.store.withdraw_message(agent_id, position)
                return await self._finish(task_id, TaskStatus.CANCELLED)
            completion = self.queue.watch(agent_id, position)
            self.queue.enqueue(agent_id)
            self._active[task_id] = (agent_id, position)

            try:
                result = await completion
            except asyncio.CancelledError:
                await self.store.withdraw_message(agent_id, position)
                self.queue.cancel(agent_id, positions=[position])
                raise
            finally:
                self._active.pop(task_id, None)
        finally:
            tree.leave()

        return await self._record(task_id, result)

    async def _record(self, task_id: str, result: RunResult) -> Task:
        if result.status in (RunStatus.SUCCEEDED, RunStatus.NOOP):
            self._stats["succeeded"] += 1
            return await self._finish(task_id, TaskStatus.SUCCEEDED, result=result.output_text)

        if result.status == RunStatus.CANCELLED:
            self._stats["cancelled"] += 1
            return await self._finish(task_id, TaskStatus.CANCELLED)

        self._stats["failed"] += 1
        failure = result.failure or FailureInfo.from_kind(FailureKind.INTERNAL, "run failed")
        return await self._finish(task_id, TaskStatus.FAILED, error=failure)

    # ============================================
    # Synthesis
    # ============================================

    async def _synthesize(self, tree: _TreeRun, root: Task) -> Task:
        root_id = root.task_id
        current = await self.store.get_task(root_id)
        if current.status.is_terminal:
            return current

        children = await self.store.list_children(root_id)
        succeeded = [c for c in children if c.status == TaskStatus.SUCCEEDED]
        failed = [c for c in children if c.status != TaskStatus.SUCCEEDED]
        caveats = [_caveat(c) for c in failed]

        if not succeeded:
            kinds = [c.error.kind for c in failed if c.error is not None]
            kind = kinds[0] if kinds else FailureKind.CANCELLED
            error = FailureInfo.from_kind(
                kind,
                f"All {len(children)} subtasks failed: " + "; ".join(caveats),
            )
            logger.warning(f"Task tree {root_id} failed: every subtask failed")
            return await self._finish(root_id, TaskStatus.FAILED, error=error, caveats=caveats)

        result = await self.synthesizer.synthesize(root.objective, succeeded, failed)
        if caveats:
            logger.warning(f"Task tree {root_id} succeeded with {len(caveats)} caveat(s)")
        return await self._finish(root_id, TaskStatus.SUCCEEDED, result=result, caveats=caveats)

    # ============================================
    # Helpers
    # ============================================

    async def _finish(self, task_id: str, status: TaskStatus, **kwargs) -> Task:
        """Transition a task; a task already terminal is left as it is"""
        try:
            return await self.store.update_task_status(task_id, status, **kwargs)
        except InvalidTaskTransition as e:
            logger.debug(f"Task {task_id} not moved to {status.value}: {e}")
            return await self.store.get_task(task_id)

    async def _fail(self, task_id: str, failure: FailureInfo) -> Task:
        """Fail a task; a pending task is moved through running first"""
        task = await self.store.get_task(task_id)
        if task.status == TaskStatus.PENDING:
            await self._finish(task_id, TaskStatus.RUNNING)
        return await self._finish(task_id, TaskStatus.FAILED, error=failure)

    async def _result(self, tree: _TreeRun) -> OrchestrationResult:
        return await self._snapshot(tree.root_id, tree.peak)

    async def _snapshot(self, root_id: str, peak: int = 0) -> OrchestrationResult:
        root = await self.store.get_task(root_id)
        children = await self.store.list_children(root_id)
        return OrchestrationResult(
            root_id=root.task_id,
            status=root.status,
            result=root.result,
            caveats=list(root.caveats),
            children=children,
            error=root.error,
            peak_running=peak,
        )

    def _lookup(self, agent_id: Optional[str]):
        if agent_id is None or agent_id not in self.directory:
            return None
        return self.directory.get(agent_id)

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "active_trees": len(self._trees),
            "active_tasks": len(self._active),
            "background_runs": len(self._runs),
        }


def _caveat(task: Task) -> str:
    if task.status == TaskStatus.CANCELLED:
        return f"Subtask {task.task_id} ({task.objective}) was cancelled"
    summary = task.error.summary() if task.error else task.status.value
    return f"Subtask {task.task_id} ({task.objective}) failed: {summary}"
