"""
Execution Loop (runAgent)
执行循环

The unit of work for one agent: read every input past the cursor, drive one
multi-turn model/tool exchange to completion, then commit the new cursor,
session and exchange transcript in a single Store operation.

Flow per attempt:
1. cursor = store.get_cursor(agent); pending = inputs with position > cursor
   (none -> NOOP)
2. conversation = committed history + pending batch
3. stream a turn: text deltas -> output channel, tool invocations -> registry
4. stop(tool_use) -> feed tool results back, next turn (capped round-trips)
   stop(other)    -> commit_cursor(agent, pending[-1].position, session, transcript)

A failed attempt commits nothing. Retryable failures re-run the whole attempt
from the unchanged cursor under the RetryPolicy; everything else becomes a
failed RunResult. Cancellation is not a failure and propagates to the caller.
"""

from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from ..agents import AgentDirectory
from ..errors import (
    FailureInfo,
    FailureKind,
    ModelStreamError,
    ToolLoopExceeded,
    UnknownAgent,
)
from ..models import (
    Agent,
    Message,
    Role,
    RunResult,
    RunStatus,
    ToolCallRequest,
    ToolInvocationRecord,
)
from ..output import NullOutputChannel, OutputChannel
from ..providers.base import ModelStreamClient
from ..storage.base import Store
from ..tools.tool_registry import ToolRegistry
from .constants import MAX_OUTPUT_TOKENS, MAX_TOOL_ROUND_TRIPS
from .events import Stop, StreamError, TextDelta, ToolInvocation
from .retry import RetryPolicy

logger = logging.getLogger(__name__)


SleepFn = Callable[[float], Awaitable[Any]]


@dataclass
class _AttemptState:
    """Per-attempt scratch state (discarded on failure)"""
    last_position: Optional[int] = None
    tool_invocations: List[ToolInvocationRecord] = field(default_factory=list)


@dataclass
class _Turn:
    text: str
    records: List[ToolInvocationRecord]
    stop: Stop


class ExecutionLoop:
    """
    Execution Loop

    Callers (the AgentQueue) guarantee at most one run per agent at a time.

    Example:
        loop = ExecutionLoop(store, registry, client, directory)
        result = await loop.run_agent("researcher")
    """

    def __init__(
        self,
        store: Store,
        registry: ToolRegistry,
        client: ModelStreamClient,
        directory: AgentDirectory,
        output: Optional[OutputChannel] = None,
        retry_policy: Optional[RetryPolicy] = None,
        max_tool_round_trips: int = MAX_TOOL_ROUND_TRIPS,
        max_tokens: int = MAX_OUTPUT_TOKENS,
        sleep: Optional[SleepFn] = None,
    ):
        """
        Args:
            store: Durable store
            registry: Tool registry
            client: Model stream client
            directory: Agent definitions
            output: Output channel for streamed text (best-effort)
            retry_policy: Backoff policy for whole-run retries
            max_tool_round_trips: Tool round-trips allowed per run
            max_tokens: Output token limit for agents without their own
            sleep: Backoff sleep, injectable for tests
        """
        self.store = store
        self.registry = registry
        self.client = client
        self.directory = directory
        self.output = output or NullOutputChannel()
        self.retry_policy = retry_policy or RetryPolicy()
        self.max_tool_round_trips = max_tool_round_trips
        self.max_tokens = max_tokens
        self._sleep = sleep or asyncio.sleep

        self._stats = {
            "runs": 0,
            "succeeded": 0,
            "noop": 0,
            "failed": 0,
            "retries": 0,
        }

    # ============================================
    # Run
    # ============================================

    async def run_agent(self, agent_id: str) -> RunResult:
        """
        Run one agent to completion

        Never raises for model, tool, store or round-trip-limit failures; those are
        returned as a failed RunResult. asyncio.CancelledError propagates.
        """
        self._stats["runs"] += 1

        try:
            agent = self.directory.get(agent_id)
        except UnknownAgent as e:
            self._stats["failed"] += 1
            logger.error(f"Run rejected: {e}")
            return RunResult(
                agent_id=agent_id,
                status=RunStatus.FAILED,
                failure=FailureInfo.from_kind(FailureKind.INVALID_REQUEST, str(e)),
            )

        attempt = 0
        backoff_total = 0.0

        while True:
            attempt += 1
            state = _AttemptState()
            logger.info(f"Run start: agent={agent_id} attempt={attempt}")

            try:
                result = await self._attempt(agent, state)
                result.attempts = attempt
                result.backoff_total = backoff_total
                if result.status == RunStatus.NOOP:
                    self._stats["noop"] += 1
                else:
                    self._stats["succeeded"] += 1
                return result

            except ModelStreamError as e:
                failure = e.to_failure()
            except ToolLoopExceeded as e:
                failure = FailureInfo.from_kind(FailureKind.TOOL_LOOP_EXCEEDED, str(e))
            except Exception as e:
                logger.error(f"Run error: agent={agent_id}: {e}", exc_info=True)
                failure = FailureInfo.from_kind(FailureKind.INTERNAL, f"{type(e).__name__}: {e}")

            if not self.retry_policy.should_retry(attempt, failure.kind):
                self._stats["failed"] += 1
                logger.error(
                    f"Run failed: agent={agent_id} attempts={attempt} {failure.summary()}"
                )
                return RunResult(
                    agent_id=agent_id,
                    status=RunStatus.FAILED,
                    attempts=attempt,
                    failure=failure,
                    last_position=state.last_position,
                    tool_invocations=state.tool_invocations,
                    backoff_total=backoff_total,
                )

            delay = self.retry_policy.compute_delay(attempt)
            self._stats["retries"] += 1
            logger.warning(
                f"Run retry: agent={agent_id} attempt={attempt} "
                f"{failure.kind.value}, retrying in {delay:.2f}s"
            )
            await self._sleep(delay)
            backoff_total += delay

    async def _attempt(self, agent: Agent, state: _AttemptState) -> RunResult:
        agent_id = agent.agent_id

        cursor = await self.store.get_cursor(agent_id)
        pending = await self.store.read_messages_since(agent_id, cursor.position)
        if not pending:
            logger.debug(f"Run noop: agent={agent_id} cursor={cursor.position}")
            return RunResult(
                agent_id=agent_id,
                status=RunStatus.NOOP,
                cursor=cursor.position,
                session_id=cursor.session_id,
            )

        state.last_position = pending[-1].position
        history = await self.store.read_history(agent_id)
        conversation: List[Message] = history + pending
        tools = self.registry.declarations(agent.tools)

        transcript: List[Message] = []
        session_id = cursor.session_id
        round_trips = 0

        while True:
            turn = await self._stream_turn(
                agent,
                conversation + transcript,
                tools,
                state,
                tools_allowed=round_trips < self.max_tool_round_trips,
            )
            if turn.stop.session_id:
                session_id = turn.stop.session_id

            if turn.text or turn.records:
                transcript.append(Message(
                    agent_id=agent_id,
                    role=Role.ASSISTANT,
                    content=turn.text,
                    tool_calls=[
                        ToolCallRequest(call_id=r.call_id, name=r.name, input=r.input)
                        for r in turn.records
                    ],
                ))
            for record in turn.records:
                transcript.append(Message(
                    agent_id=agent_id,
                    role=Role.TOOL_RESULT,
                    content=record.to_content(),
                    tool_call_id=record.call_id,
                    tool_name=record.name,
                    is_error=record.is_error,
                ))

            # Any other stop reason (or a tool_use stop without calls) ends the exchange
            if not (turn.stop.wants_tools and turn.records):
                break

            round_trips += 1

        committed = await self.store.commit_cursor(
            agent_id,
            state.last_position,
            session_id,
            transcript,
        )
        logger.info(
            f"Run commit: agent={agent_id} cursor={cursor.position}->{committed.position} "
            f"round_trips={round_trips} tools={len(state.tool_invocations)}"
        )

        return RunResult(
            agent_id=agent_id,
            status=RunStatus.SUCCEEDED,
            cursor=committed.position,
            session_id=committed.session_id,
            output_text=_final_text(transcript),
            last_position=state.last_position,
            tool_invocations=state.tool_invocations,
        )

    async def _stream_turn(
        self,
        agent: Agent,
        messages: Sequence[Message],
        tools: List[Dict[str, Any]],
        state: _AttemptState,
        *,
        tools_allowed: bool,
    ) -> _Turn:
        """Consume one streaming turn; every await is a cancellation point"""
        text_parts: List[str] = []
        records: List[ToolInvocationRecord] = []
        stop: Optional[Stop] = None

        stream = self.client.stream_message(
            agent.model,
            agent.system_prompt,
            messages,
            tools,
            max_tokens=agent.max_tokens or self.max_tokens,
        )

        try:
            async for event in stream:
                if isinstance(event, TextDelta):
                    text_parts.append(event.text)
                    self._emit(agent.agent_id, event.text)

                elif isinstance(event, ToolInvocation):
                    if not tools_allowed:
                        raise ToolLoopExceeded(self.max_tool_round_trips)
                    record = await self.registry.invoke(
                        event.call_id,
                        event.name,
                        event.input,
                        allowed=agent.tools,
                    )
                    records.append(record)
                    state.tool_invocations.append(record)

                elif isinstance(event, Stop):
                    stop = event
                    break

                elif isinstance(event, StreamError):
                    raise event.to_exception()
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

        if stop is None:
            raise ModelStreamError(FailureKind.NETWORK_FAILURE, "Stream ended without a stop event")

        return _Turn(text="".join(text_parts), records=records, stop=stop)

    def _emit(self, agent_id: str, text: str) -> None:
        try:
            self.output.emit(agent_id, text)
        except Exception as e:
            logger.warning(f"Output channel emit failed for {agent_id}: {e}")

    def get_stats(self) -> Dict[str, int]:
        return dict(self._stats)


def _final_text(transcript: Sequence[Message]) -> str:
    """Text of the last assistant turn that produced any"""
    for message in reversed(transcript):
        if message.role == Role.ASSISTANT and message.content:
            return message.content
    return ""
