"""
OpenAI Stream Client

Model Stream Client over the OpenAI Chat Completions API (streaming).

Tool call fragments arrive spread over many chunks keyed by index; they are
accumulated and emitted as ToolInvocation events once the choice finishes.
finish_reason is mapped onto the conductor's stop reasons.
"""

from __future__ import annotations
import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import openai

from ..core.constants import MAX_OUTPUT_TOKENS, StopReason
from ..core.events import Stop, StreamError, StreamEvent, TextDelta, ToolInvocation
from ..errors import FailureKind
from ..models import Message, Role
from .base import ModelStreamClient, classify_status, error_type_from_body, parse_tool_input

logger = logging.getLogger(__name__)


_FINISH_REASONS = {
    "stop": StopReason.END_TURN,
    "tool_calls": StopReason.TOOL_USE,
    "function_call": StopReason.TOOL_USE,
    "length": StopReason.MAX_TOKENS,
}


def classify_openai_error(exc: BaseException) -> FailureKind:
    """Map an OpenAI SDK exception to a failure kind"""
    if isinstance(exc, openai.APIConnectionError):
        return FailureKind.NETWORK_FAILURE
    if isinstance(exc, openai.APIStatusError):
        error_type = getattr(exc, "code", None) or error_type_from_body(exc.body)
        return classify_status(exc.status_code, error_type)
    if isinstance(exc, openai.APIError):
        return classify_status(None, getattr(exc, "code", None) or getattr(exc, "type", None))
    return FailureKind.INTERNAL


def format_tools(declarations: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Tool declarations -> function tools"""
    return [
        {
            "type": "function",
            "function": {
                "name": decl["name"],
                "description": decl.get("description", ""),
                "parameters": decl.get("input_schema") or {"type": "object", "properties": {}},
            },
        }
        for decl in declarations
    ]


def format_messages(system_prompt: str, messages: Sequence[Message]) -> List[Dict[str, Any]]:
    formatted: List[Dict[str, Any]] = []
    if system_prompt:
        formatted.append({"role": "system", "content": system_prompt})

    for message in messages:
        if message.role == Role.USER:
            formatted.append({"role": "user", "content": message.content})
        elif message.role == Role.ASSISTANT:
            entry: Dict[str, Any] = {"role": "assistant", "content": message.content or None}
            if message.tool_calls:
                entry["tool_calls"] = [
                    {
                        "id": call.call_id,
                        "type": "function",
                        "function": {"name": call.name, "arguments": json.dumps(call.input)},
                    }
                    for call in message.tool_calls
                ]
            formatted.append(entry)
        elif message.role == Role.TOOL_RESULT:
            formatted.append({
                "role": "tool",
                "tool_call_id": message.tool_call_id,
                "content": message.content,
            })

    return formatted


class OpenAIStreamClient(ModelStreamClient):
    """OpenAI-compatible streaming client"""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = 120.0,
        client: Optional[openai.AsyncOpenAI] = None,
    ):
        if client is None:
            client_kwargs: Dict[str, Any] = {"timeout": timeout, "max_retries": 0}
            if api_key:
                client_kwargs["api_key"] = api_key
            if base_url:
                client_kwargs["base_url"] = base_url
            client = openai.AsyncOpenAI(**client_kwargs)

        self.client = client
        self._stats = {
            "requests": 0,
            "successful": 0,
            "failed": 0,
        }

        logger.info(f"OpenAIStreamClient initialized (base_url={base_url or 'default'})")

    async def stream_message(
        self,
        model: str,
        system_prompt: str,
        messages: Sequence[Message],
        tools: Sequence[Dict[str, Any]],
        *,
        max_tokens: Optional[int] = None,
    ) -> AsyncIterator[StreamEvent]:
        request_params: Dict[str, Any] = {
            "model": model,
            "messages": format_messages(system_prompt, messages),
            "max_tokens": max_tokens or MAX_OUTPUT_TOKENS,
            "stream": True,
        }
        if tools:
            request_params["tools"] = format_tools(tools)

        self._stats["requests"] += 1
        logger.debug(f"Calling OpenAI: model={model}, messages={len(request_params['messages'])}")

        try:
            stream = await self.client.chat.completions.create(**request_params)
        except openai.APIError as e:
            self._stats["failed"] += 1
            logger.warning(f"OpenAI request failed: {e}")
            yield StreamError(classify_openai_error(e), str(e))
            return

        session_id: Optional[str] = None
        finish_reason: Optional[str] = None
        # index -> {"id", "name", "arguments"}
        calls: Dict[int, Dict[str, str]] = {}

        try:
            async for chunk in stream:
                session_id = session_id or chunk.id
                if not chunk.choices:
                    continue

                choice = chunk.choices[0]
                delta = choice.delta

                if delta is not None:
                    if delta.content:
                        yield TextDelta(delta.content)

                    for fragment in delta.tool_calls or ():
                        acc = calls.setdefault(fragment.index, {"id": "", "name": "", "arguments": ""})
                        if fragment.id:
                            acc["id"] = fragment.id
                        if fragment.function is not None:
                            if fragment.function.name:
                                acc["name"] += fragment.function.name
                            if fragment.function.arguments:
                                acc["arguments"] += fragment.function.arguments

                if choice.finish_reason:
                    finish_reason = choice.finish_reason

        except openai.APIError as e:
            self._stats["failed"] += 1
            logger.warning(f"OpenAI stream failed: {e}")
            yield StreamError(classify_openai_error(e), str(e))
            return
        finally:
            await stream.close()

        for index in sorted(calls):
            call = calls[index]
            yield ToolInvocation(
                call_id=call["id"] or f"call_{index}",
                name=call["name"],
                input=parse_tool_input(call["arguments"]),
            )

        self._stats["successful"] += 1
        stop_reason = _FINISH_REASONS.get(finish_reason or "stop", finish_reason)
        yield Stop(reason=stop_reason, session_id=session_id)

    async def aclose(self) -> None:
        await self.client.close()

    def get_stats(self) -> Dict[str, Any]:
        return dict(self._stats)
