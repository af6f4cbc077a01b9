"""
Anthropic Stream Client

Model Stream Client over the Anthropic Messages API (streaming).

Raw stream events are folded into the conductor vocabulary:
- content_block_delta(text_delta)       -> TextDelta
- content_block_stop on a tool_use block -> ToolInvocation (input JSON
                                            accumulated from input_json_delta)
- message_delta(stop_reason) + message_stop -> Stop(reason, session_id)
- SDK errors                             -> StreamError(kind)

SDK-level retries are disabled: the Execution Loop owns the retry policy.
"""

from __future__ import annotations
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import anthropic

from ..core.constants import MAX_OUTPUT_TOKENS, StopReason
from ..core.events import Stop, StreamError, StreamEvent, TextDelta, ToolInvocation
from ..errors import FailureKind
from ..models import Message, Role
from .base import (
    ModelStreamClient,
    classify_status,
    error_type_from_body,
    merge_consecutive,
    parse_tool_input,
)

logger = logging.getLogger(__name__)


def classify_anthropic_error(exc: BaseException) -> FailureKind:
    """Map an Anthropic SDK exception to a failure kind"""
    if isinstance(exc, anthropic.APIConnectionError):
        return FailureKind.NETWORK_FAILURE
    if isinstance(exc, anthropic.APIStatusError):
        return classify_status(exc.status_code, error_type_from_body(exc.body))
    if isinstance(exc, anthropic.APIError):
        return classify_status(None, error_type_from_body(getattr(exc, "body", None)))
    return FailureKind.INTERNAL


def format_messages(messages: Sequence[Message]) -> List[Dict[str, Any]]:
    """Convert conductor messages to Anthropic message params"""
    formatted: List[Dict[str, Any]] = []

    for message in messages:
        if message.role == Role.USER:
            formatted.append({
                "role": "user",
                "content": [{"type": "text", "text": message.content}],
            })

        elif message.role == Role.ASSISTANT:
            blocks: List[Dict[str, Any]] = []
            if message.content:
                blocks.append({"type": "text", "text": message.content})
            for call in message.tool_calls:
                blocks.append({
                    "type": "tool_use",
                    "id": call.call_id,
                    "name": call.name,
                    "input": call.input,
                })
            if blocks:
                formatted.append({"role": "assistant", "content": blocks})

        elif message.role == Role.TOOL_RESULT:
            formatted.append({
                "role": "user",
                "content": [{
                    "type": "tool_result",
                    "tool_use_id": message.tool_call_id,
                    "content": message.content,
                    "is_error": message.is_error,
                }],
            })

    return merge_consecutive(formatted)


class AnthropicStreamClient(ModelStreamClient):
    """Anthropic streaming client"""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = 120.0,
        client: Optional[anthropic.AsyncAnthropic] = None,
    ):
        """
        Args:
            api_key: Anthropic API key (falls back to ANTHROPIC_API_KEY)
            base_url: Optional proxy base URL
            timeout: Request timeout (seconds)
            client: Pre-built SDK client (tests)
        """
        if client is None:
            client_kwargs: Dict[str, Any] = {"timeout": timeout, "max_retries": 0}
            if api_key:
                client_kwargs["api_key"] = api_key
            if base_url:
                client_kwargs["base_url"] = base_url
            client = anthropic.AsyncAnthropic(**client_kwargs)

        self.client = client

        self._stats = {
            "requests": 0,
            "successful": 0,
            "failed": 0,
        }

        logger.info(f"AnthropicStreamClient initialized (base_url={base_url or 'default'})")

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
            "messages": format_messages(messages),
            "max_tokens": max_tokens or MAX_OUTPUT_TOKENS,
            "stream": True,
        }
        if system_prompt:
            request_params["system"] = system_prompt
        if tools:
            request_params["tools"] = list(tools)

        self._stats["requests"] += 1
        logger.debug(f"Calling Anthropic: model={model}, messages={len(request_params['messages'])}")

        try:
            stream = await self.client.messages.create(**request_params)
        except anthropic.APIError as e:
            self._stats["failed"] += 1
            logger.warning(f"Anthropic request failed: {e}")
            yield StreamError(classify_anthropic_error(e), str(e))
            return

        session_id: Optional[str] = None
        stop_reason: str = StopReason.END_TURN
        usage: Dict[str, int] = {}

        # index -> {"type", "id", "name", "json"}
        blocks: Dict[int, Dict[str, Any]] = {}

        try:
            async for event in stream:
                event_type = getattr(event, "type", None)

                if event_type == "message_start":
                    session_id = event.message.id
                    if getattr(event.message, "usage", None) is not None:
                        usage["input_tokens"] = event.message.usage.input_tokens

                elif event_type == "content_block_start":
                    block = event.content_block
                    blocks[event.index] = {
                        "type": block.type,
                        "id": getattr(block, "id", None),
                        "name": getattr(block, "name", None),
                        "json": "",
                    }

                elif event_type == "content_block_delta":
                    delta = event.delta
                    if delta.type == "text_delta":
                        yield TextDelta(delta.text)
                    elif delta.type == "input_json_delta":
                        blocks.setdefault(event.index, {"type": "tool_use", "json": ""})
                        blocks[event.index]["json"] += delta.partial_json

                elif event_type == "content_block_stop":
                    block = blocks.pop(event.index, None)
                    if block and block["type"] == "tool_use":
                        yield ToolInvocation(
                            call_id=block["id"],
                            name=block["name"],
                            input=parse_tool_input(block["json"]),
                        )

                elif event_type == "message_delta":
                    if event.delta.stop_reason:
                        stop_reason = event.delta.stop_reason
                    if getattr(event, "usage", None) is not None:
                        usage["output_tokens"] = event.usage.output_tokens

                elif event_type == "message_stop":
                    break

        except anthropic.APIError as e:
            self._stats["failed"] += 1
            logger.warning(f"Anthropic stream failed: {e}")
            yield StreamError(classify_anthropic_error(e), str(e))
            return
        finally:
            await stream.close()

        self._stats["successful"] += 1
        yield Stop(reason=stop_reason, session_id=session_id, usage=usage)

    async def aclose(self) -> None:
        await self.client.close()

    def get_stats(self) -> Dict[str, Any]:
        return dict(self._stats)
