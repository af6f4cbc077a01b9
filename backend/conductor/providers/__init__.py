"""
Model Providers

Streaming model clients behind the ModelStreamClient interface.
"""

from __future__ import annotations
from typing import TYPE_CHECKING

from .anthropic_client import AnthropicStreamClient
from .base import ModelStreamClient
from .openai_client import OpenAIStreamClient

if TYPE_CHECKING:
    from ..config import ConductorConfig

__all__ = [
    "ModelStreamClient",
    "AnthropicStreamClient",
    "OpenAIStreamClient",
    "create_stream_client",
]


def create_stream_client(config: "ConductorConfig") -> ModelStreamClient:
    """Build the stream client for the configured provider"""
    if config.provider == "openai":
        return OpenAIStreamClient(api_key=config.api_key, base_url=config.base_url)
    return AnthropicStreamClient(api_key=config.api_key, base_url=config.base_url)
