"""
Model Stream Client Interface

streamMessage(model, systemPrompt, messages, toolDeclarations)
    -> async sequence of TextDelta | ToolInvocation | Stop | StreamError

Each client formats the provider-neutral message list into its own request
shape. Provider errors are reported as a StreamError event (or raised as
ModelStreamError); a stream always ends with Stop or StreamError.
"""

from __future__ import annotations
import json
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

from ..core.events import StreamEvent
from ..errors import FailureKind
from ..models import Message


class ModelStreamClient(ABC):
    """Streaming model call interface"""

    @abstractmethod
    def stream_message(
        self,
        model: str,
        system_prompt: str,
        messages: Sequence[Message],
        tools: Sequence[Dict[str, Any]],
        *,
        max_tokens: Optional[int] = None,
    ) -> AsyncIterator[StreamEvent]:
        """Open one streaming exchange turn"""

    async def aclose(self) -> None:
        """Release network resources"""
        return None


def merge_consecutive(messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Merge consecutive same-role messages whose content is a block list

    Several pending inputs form one user turn; providers reject two user
    turns in a row.
    """
    merged: List[Dict[str, Any]] = []
    for message in messages:
        if merged and merged[-1]["role"] == message["role"]:
            merged[-1]["content"] = list(merged[-1]["content"]) + list(message["content"])
        else:
            merged.append({"role": message["role"], "content": list(message["content"])})
    return merged


# ============================================
# Error classification
# ============================================

# Provider error type -> failure kind
_ERROR_TYPE_KINDS = {
    "overloaded_error": FailureKind.OVERLOADED,
    "api_error": FailureKind.OVERLOADED,
    "server_error": FailureKind.OVERLOADED,
    "rate_limit_error": FailureKind.RATE_LIMITED,
    "rate_limit_exceeded": FailureKind.RATE_LIMITED,
    "insufficient_quota": FailureKind.RATE_LIMITED,
    "authentication_error": FailureKind.AUTH_FAILURE,
    "permission_error": FailureKind.AUTH_FAILURE,
    "invalid_api_key": FailureKind.AUTH_FAILURE,
    "invalid_request_error": FailureKind.INVALID_REQUEST,
    "not_found_error": FailureKind.INVALID_REQUEST,
    "request_too_large": FailureKind.INVALID_REQUEST,
}


def classify_status(status_code: Optional[int], error_type: Optional[str] = None) -> FailureKind:
    """
    Map an HTTP status / provider error type to a failure kind

    The error type wins when known: streamed error events arrive on a 200
    response.
    """
    if error_type and error_type in _ERROR_TYPE_KINDS:
        return _ERROR_TYPE_KINDS[error_type]

    if status_code is None:
        return FailureKind.NETWORK_FAILURE
    if status_code == 429:
        return FailureKind.RATE_LIMITED
    if status_code in (401, 403):
        return FailureKind.AUTH_FAILURE
    if status_code == 408:
        return FailureKind.NETWORK_FAILURE
    if status_code >= 500:
        # 529 = overloaded
        return FailureKind.OVERLOADED
    if status_code >= 400:
        return FailureKind.INVALID_REQUEST
    return FailureKind.OVERLOADED


def error_type_from_body(body: Any) -> Optional[str]:
    """Extract the provider error type from an error response body"""
    if not isinstance(body, dict):
        return None
    error = body.get("error", body)
    if isinstance(error, dict):
        value = error.get("type") or error.get("code")
        return str(value) if value else None
    return None


def parse_tool_input(raw: str) -> Dict[str, Any]:
    """Parse accumulated tool input JSON; malformed input is passed through raw"""
    if not raw or not raw.strip():
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        return {"_raw_input": raw}
    return value if isinstance(value, dict) else {"_raw_input": value}
