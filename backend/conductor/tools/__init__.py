"""
Tools

Tool registry and the Tool interface through which every host capability
attaches to the conductor core.
"""

from .tool_registry import Tool, ToolRegistry, ToolResult, ToolSpec

__all__ = [
    "Tool",
    "ToolRegistry",
    "ToolResult",
    "ToolSpec",
]
