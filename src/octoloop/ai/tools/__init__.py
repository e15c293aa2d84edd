"""Tool-execution boundary: specs, definitions, registry and file tracking."""

from .file_tracker import FileTracker
from .registry import DuplicateToolError, ToolRegistry
from .types import ToolDefinition, ToolResult, ToolRuntime, ToolSpec

__all__ = [
    "DuplicateToolError",
    "FileTracker",
    "ToolDefinition",
    "ToolRegistry",
    "ToolResult",
    "ToolRuntime",
    "ToolSpec",
]
