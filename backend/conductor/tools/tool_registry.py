"""
Tool Registry

Maps a tool name to an executable handler. Platform capabilities (automation,
UI state, screen capture, ...) attach here as ordinary tools.

Execution pipeline (per call):
1. Discovery  - look the tool up (NotFound)
2. Validation - check required input parameters against the schema
3. Execution  - run the handler under a per-call deadline (Timeout)
4. Formatting - unwrap ToolResult / surface handler errors (ExecutionFailed)

Registration is copy-on-write: lookups read an immutable snapshot and never
block on a concurrent register. `freeze()` makes the table immutable after
startup.
"""

from __future__ import annotations
import asyncio
import inspect
import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Union

from ..core.constants import DEFAULT_TOOL_TIMEOUT_SECONDS
from ..errors import (
    DuplicateTool,
    ToolError,
    ToolExecutionFailed,
    ToolNotFound,
    ToolTimeout,
)
from ..models import ToolInvocationRecord

logger = logging.getLogger(__name__)


ToolHandler = Callable[[Dict[str, Any]], Union[Any, Awaitable[Any]]]


# ============================================
# Tool types
# ============================================

@dataclass
class ToolResult:
    """
    Result from tool execution

    Handlers may return this to report a failure without raising.
    """
    success: bool
    result: Any = None
    error: Optional[str] = None


class Tool(ABC):
    """
    Invocable tool

    Subclass this for capabilities that carry their own state (e.g. a host
    automation bridge). Plain callables can be registered directly instead.
    """

    name: str = ""
    description: str = ""
    input_schema: Dict[str, Any] = {"type": "object", "properties": {}}
    timeout: Optional[float] = None

    @abstractmethod
    async def execute(self, input: Dict[str, Any]) -> Any:
        """Run the tool; raise or return ToolResult(success=False) on failure"""


@dataclass(frozen=True)
class ToolSpec:
    """A registered tool"""
    name: str
    handler: ToolHandler
    description: str = ""
    input_schema: Dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    timeout: Optional[float] = None

    def declaration(self) -> Dict[str, Any]:
        """Tool declaration sent to the model"""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


# ============================================
# Registry
# ============================================

class ToolRegistry:
    """
    Tool registry

    Stateless dispatch: executing a call has no effect on the registry itself.
    Handlers own their side effects and idempotency.
    """

    def __init__(self, default_timeout: float = DEFAULT_TOOL_TIMEOUT_SECONDS):
        self.default_timeout = default_timeout

        # Immutable snapshot, replaced on every registration
        self._tools: Mapping[str, ToolSpec] = MappingProxyType({})
        self._write_lock = threading.Lock()
        self._frozen = False

        self._stats = {
            "executed": 0,
            "successful": 0,
            "failed": 0,
            "not_found": 0,
            "timeouts": 0,
        }

    # ============================================
    # Registration
    # ============================================

    def register(
        self,
        name: str,
        handler: ToolHandler,
        *,
        description: str = "",
        input_schema: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> ToolSpec:
        """
        Bind a handler to a tool name

        Args:
            name: Unique tool name
            handler: Callable receiving the input dict (sync or async)
            description: Description shown to the model
            input_schema: JSON schema of the input
            timeout: Per-call deadline override (seconds)

        Raises:
            DuplicateTool: name already bound
            RuntimeError: registry is frozen
        """
        if not name:
            raise ValueError("Tool name must not be empty")

        spec = ToolSpec(
            name=name,
            handler=handler,
            description=description,
            input_schema=input_schema or {"type": "object", "properties": {}},
            timeout=timeout,
        )

        with self._write_lock:
            if self._frozen:
                raise RuntimeError(f"Tool registry is frozen; cannot register {name}")
            if name in self._tools:
                raise DuplicateTool(name)
            self._tools = MappingProxyType({**self._tools, name: spec})

        logger.info(f"Tool registered: {name}")
        return spec

    def register_tool(self, tool: Tool) -> ToolSpec:
        """Register a Tool instance under its own name"""
        return self.register(
            tool.name,
            tool.execute,
            description=tool.description,
            input_schema=tool.input_schema,
            timeout=tool.timeout,
        )

    def freeze(self) -> None:
        """Make the table immutable (configuration finished)"""
        with self._write_lock:
            self._frozen = True
        logger.info(f"Tool registry frozen with {len(self._tools)} tools")

    @property
    def frozen(self) -> bool:
        return self._frozen

    # ============================================
    # Lookup
    # ============================================

    def get(self, name: str) -> Optional[ToolSpec]:
        return self._tools.get(name)

    def names(self) -> List[str]:
        return list(self._tools.keys())

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def declarations(self, names: Optional[Iterable[str]] = None) -> List[Dict[str, Any]]:
        """
        Tool declarations for the model

        Args:
            names: Restrict to these tools (an agent's enabled set); unknown
                names are skipped.
        """
        tools = self._tools
        if names is None:
            return [spec.declaration() for spec in tools.values()]
        return [tools[name].declaration() for name in names if name in tools]

    # ============================================
    # Execution
    # ============================================

    async def execute(
        self,
        name: str,
        input: Optional[Dict[str, Any]] = None,
        *,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Execute a tool

        Returns:
            The handler's output

        Raises:
            ToolNotFound: unknown name
            ToolExecutionFailed: handler raised or reported failure
            ToolTimeout: handler exceeded its deadline
            asyncio.CancelledError: the calling run was cancelled
        """
        input = dict(input or {})

        # Stage 1: Discovery
        spec = self._tools.get(name)
        if spec is None:
            self._stats["not_found"] += 1
            raise ToolNotFound(name)

        # Stage 2: Validation
        self._validate(spec, input)

        # Stage 3: Execution
        deadline = timeout if timeout is not None else (spec.timeout or self.default_timeout)
        self._stats["executed"] += 1
        try:
            raw = await asyncio.wait_for(self._call(spec, input), timeout=deadline)
        except asyncio.TimeoutError:
            self._stats["timeouts"] += 1
            raise ToolTimeout(name, deadline) from None
        except asyncio.CancelledError:
            raise
        except ToolError:
            self._stats["failed"] += 1
            raise
        except Exception as e:
            self._stats["failed"] += 1
            raise ToolExecutionFailed(name, f"{type(e).__name__}: {e}") from e

        # Stage 4: Formatting
        if isinstance(raw, ToolResult):
            if not raw.success:
                self._stats["failed"] += 1
                raise ToolExecutionFailed(name, raw.error or str(raw.result or "Tool reported failure"))
            raw = raw.result

        self._stats["successful"] += 1
        return raw

    async def invoke(
        self,
        call_id: str,
        name: str,
        input: Optional[Dict[str, Any]] = None,
        *,
        allowed: Optional[Iterable[str]] = None,
    ) -> ToolInvocationRecord:
        """
        Execute a tool and capture the outcome as a record

        Tool failures never propagate: they become an error-flagged record.
        Cancellation still propagates.

        Args:
            allowed: The calling agent's enabled tool names; tools outside
                this set are reported as not found.
        """
        input = dict(input or {})
        started = time.monotonic()
        record = ToolInvocationRecord(call_id=call_id, name=name, input=input)

        try:
            if allowed is not None and name not in set(allowed):
                self._stats["not_found"] += 1
                raise ToolNotFound(name)
            record.output = await self.execute(name, input)
        except ToolError as e:
            record.error = e.detail
            record.error_kind = e.kind.value
            logger.warning(f"Tool {name} failed ({e.kind.value}): {e.detail}")
        finally:
            record.duration = time.monotonic() - started

        return record

    async def _call(self, spec: ToolSpec, input: Dict[str, Any]) -> Any:
        handler = spec.handler
        if inspect.iscoroutinefunction(handler):
            result = await handler(input)
        else:
            # Blocking handlers run off the event loop so the deadline holds
            result = await asyncio.to_thread(handler, input)

        if inspect.isawaitable(result):
            result = await result
        return result

    def _validate(self, spec: ToolSpec, input: Dict[str, Any]) -> None:
        required = spec.input_schema.get("required", [])
        missing = [param for param in required if param not in input]
        if missing:
            self._stats["failed"] += 1
            raise ToolExecutionFailed(
                spec.name,
                f"Missing required parameter(s) for tool {spec.name}: {', '.join(missing)}",
            )

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "tools_registered": len(self._tools),
            "frozen": self._frozen,
        }

    def __repr__(self) -> str:
        stats = self.get_stats()
        return (
            f"ToolRegistry("
            f"tools={stats['tools_registered']}, "
            f"executed={stats['executed']}, "
            f"failed={stats['failed']})"
        )
