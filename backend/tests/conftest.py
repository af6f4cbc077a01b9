"""
Conductor 测试配置文件

Shared fakes and fixtures:
- ScriptedStreamClient: replays scripted stream turns, records every call
- SleepRecorder: instant backoff sleep that remembers the requested delays
- fixtures for store / registry / directory / output channel

Test modules import the helpers with `from conftest import ...`.
"""

import asyncio
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

import pytest

# 添加 backend 目录到 Python 路径
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

from conductor.agents import AgentDirectory
from conductor.core.constants import StopReason
from conductor.core.events import Stop, StreamError, TextDelta, ToolInvocation
from conductor.core.execution_loop import ExecutionLoop
from conductor.core.retry import RetryPolicy
from conductor.errors import FailureKind
from conductor.models import Agent, Message
from conductor.output import RecordingOutputChannel
from conductor.providers.base import ModelStreamClient
from conductor.storage import InMemoryStore
from conductor.tools import ToolRegistry


# ============================================
# Scripted turns
# ============================================

def text_turn(text: str, session_id: str = "sess_1") -> List[Any]:
    """A turn that streams text and ends the exchange"""
    return [TextDelta(text), Stop(reason=StopReason.END_TURN, session_id=session_id)]


def tool_turn(name: str, input: Optional[Dict[str, Any]] = None, call_id: str = "call_1",
              text: str = "") -> List[Any]:
    """A turn that requests one tool and waits for its result"""
    events: List[Any] = []
    if text:
        events.append(TextDelta(text))
    events.append(ToolInvocation(call_id=call_id, name=name, input=input or {}))
    events.append(Stop(reason=StopReason.TOOL_USE))
    return events


def error_turn(kind: FailureKind, detail: str = "scripted failure") -> List[Any]:
    return [StreamError(kind, detail)]


@dataclass
class StreamCall:
    """One recorded stream_message call"""
    agent_id: Optional[str]
    model: str
    system_prompt: str
    messages: List[Message]
    tools: List[Dict[str, Any]]


class ScriptedStreamClient(ModelStreamClient):
    """
    Fake Model Stream Client

    Turns are taken from `turns` in order; `responder(call)` overrides the
    script; when both are exhausted every call answers "ok".

    Args:
        turns: Scripted turns (lists of events)
        responder: Callable building the events for a call
        delay: Sleep before each event (a suspension point per event)
        gate: Event awaited before the first event of every call
    """

    def __init__(
        self,
        turns: Sequence[List[Any]] = (),
        responder: Optional[Callable[[StreamCall], List[Any]]] = None,
        delay: float = 0.0,
        gate: Optional[asyncio.Event] = None,
    ):
        self.turns = [list(t) for t in turns]
        self.responder = responder
        self.delay = delay
        self.gate = gate

        self.calls: List[StreamCall] = []
        self.events_delivered = 0
        self.active: Dict[str, int] = {}
        self.max_active: Dict[str, int] = {}
        self.max_active_total = 0
        self.started = asyncio.Event()

    async def stream_message(self, model, system_prompt, messages, tools, *, max_tokens=None):
        agent_id = messages[-1].agent_id if messages else None
        call = StreamCall(agent_id, model, system_prompt, list(messages), list(tools))
        self.calls.append(call)

        if self.responder is not None:
            events = self.responder(call)
        elif self.turns:
            events = self.turns.pop(0)
        else:
            events = text_turn("ok")

        key = agent_id or ""
        self.active[key] = self.active.get(key, 0) + 1
        self.max_active[key] = max(self.max_active.get(key, 0), self.active[key])
        self.max_active_total = max(self.max_active_total, sum(self.active.values()))
        self.started.set()
        try:
            if self.gate is not None:
                await self.gate.wait()
            for event in events:
                if self.delay:
                    await asyncio.sleep(self.delay)
                else:
                    await asyncio.sleep(0)
                self.events_delivered += 1
                yield event
        finally:
            self.active[key] -= 1

    def calls_for(self, agent_id: str) -> List[StreamCall]:
        return [c for c in self.calls if c.agent_id == agent_id]


class SleepRecorder:
    """Instant sleep that records requested delays"""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)

    @property
    def total(self) -> float:
        return sum(self.delays)


def make_agent(agent_id: str, tools=("lookup", "echo"), role: Optional[str] = None) -> Agent:
    return Agent(
        agent_id=agent_id,
        model="test-model",
        system_prompt=f"You are {agent_id}.",
        tools=tuple(tools),
        role=role,
    )


def make_loop(store, registry, client, directory, output=None, sleeper=None, **kwargs) -> ExecutionLoop:
    """ExecutionLoop with zero-jitter backoff and an instant sleep"""
    return ExecutionLoop(
        store=store,
        registry=registry,
        client=client,
        directory=directory,
        output=output,
        retry_policy=kwargs.pop("retry_policy", RetryPolicy(jitter_ratio=0.0)),
        sleep=sleeper or SleepRecorder(),
        **kwargs,
    )


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll the event loop until predicate() holds"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


# ============================================
# Fixtures
# ============================================

@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def registry():
    registry = ToolRegistry()

    async def echo(input):
        return {"echo": input.get("text", "")}

    registry.register(
        "echo",
        echo,
        description="Echo the text back",
        input_schema={"type": "object", "properties": {"text": {"type": "string"}}},
    )
    return registry


@pytest.fixture
def directory():
    return AgentDirectory([
        make_agent("alpha"),
        make_agent("beta"),
        make_agent("researcher", role="research"),
        make_agent("writer", role="writing"),
    ])


@pytest.fixture
def output():
    return RecordingOutputChannel()


@pytest.fixture
def sleeper():
    return SleepRecorder()
