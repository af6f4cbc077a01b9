"""
Stream Events

The provider-neutral event vocabulary produced by Model Stream Clients and
consumed, in order, by the Execution Loop:

- TextDelta      - streamed text, forwarded to the output channel
- ToolInvocation - the model requests a tool call
- Stop           - the exchange turn ended (end_turn / tool_use / ...)
- StreamError    - the provider reported a failure
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

from ..errors import FailureKind, ModelStreamError
from .constants import StopReason


class StreamEventType:
    """流式事件类型"""

    TEXT_DELTA = "text_delta"
    TOOL_INVOCATION = "tool_invocation"
    STOP = "stop"
    ERROR = "error"


@dataclass(frozen=True)
class TextDelta:
    text: str

    type: str = field(default=StreamEventType.TEXT_DELTA, init=False)


@dataclass(frozen=True)
class ToolInvocation:
    call_id: str
    name: str
    input: Dict[str, Any] = field(default_factory=dict)

    type: str = field(default=StreamEventType.TOOL_INVOCATION, init=False)


@dataclass(frozen=True)
class Stop:
    """
    Turn end

    `session_id` is the provider's opaque conversation token for this turn
    (message id / completion id), if it reports one.
    """
    reason: str = StopReason.END_TURN
    session_id: Optional[str] = None
    usage: Dict[str, int] = field(default_factory=dict)

    type: str = field(default=StreamEventType.STOP, init=False)

    @property
    def wants_tools(self) -> bool:
        return self.reason == StopReason.TOOL_USE


@dataclass(frozen=True)
class StreamError:
    kind: FailureKind
    detail: str = ""

    type: str = field(default=StreamEventType.ERROR, init=False)

    def to_exception(self) -> ModelStreamError:
        return ModelStreamError(self.kind, self.detail)


StreamEvent = Union[TextDelta, ToolInvocation, Stop, StreamError]
