"""Tool system types for the arc engine and delegation service.

A tool is validated before it runs: validation raises :class:`ToolError` or
:class:`FileOutdatedError` so the arc engine can recover locally, while
``run`` produces the text fed back to the model.
"""

from __future__ import annotations

import inspect
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Mapping, Protocol, runtime_checkable

from ..ir import ToolCallRequest

if TYPE_CHECKING:  # pragma: no cover - typing only
    from ..orchestration.abort import AbortSignal

__all__ = [
    "ToolSpec",
    "ToolResult",
    "ToolRunner",
    "ToolValidator",
    "ToolDefinition",
    "ToolRuntime",
]


@dataclass(slots=True, frozen=True)
class ToolSpec:
    """Specification for a tool's interface.

    Attributes:
        name: Unique identifier for the tool.
        description: Human-readable description of what the tool does.
        parameters: JSON Schema for the tool's parameters.
    """

    name: str
    description: str
    parameters: Mapping[str, Any] = field(default_factory=dict)

    def to_openai_tool(self) -> dict[str, Any]:
        """Convert to OpenAI tool definition format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": dict(self.parameters) if self.parameters else {
                    "type": "object",
                    "properties": {},
                },
            },
        }


@dataclass(slots=True)
class ToolResult:
    content: str
    lines: int = 0

    @classmethod
    def from_text(cls, text: str) -> "ToolResult":
        return cls(content=text, lines=len(text.splitlines()) if text else 0)


ToolRunner = Callable[[Mapping[str, Any], "AbortSignal", str], Awaitable[ToolResult | str]]
ToolValidator = Callable[[Mapping[str, Any], "AbortSignal"], Awaitable[None] | None]


@dataclass
class ToolDefinition:
    """A tool assembled from a spec, a runner and an optional validator.

    Example:
        async def read(args, signal, tool_call_id):
            return ToolResult.from_text(Path(args["file_path"]).read_text())

        tool = ToolDefinition(spec=ToolSpec(name="read", description="Read a file"), runner=read)
    """

    spec: ToolSpec
    runner: ToolRunner
    validator: ToolValidator | None = None

    @property
    def name(self) -> str:
        return self.spec.name

    async def validate(self, arguments: Mapping[str, Any], signal: "AbortSignal") -> None:
        if self.validator is None:
            return
        outcome = self.validator(arguments, signal)
        if inspect.isawaitable(outcome):
            await outcome

    async def run(self, arguments: Mapping[str, Any], signal: "AbortSignal", tool_call_id: str) -> ToolResult:
        result = await self.runner(arguments, signal, tool_call_id)
        if isinstance(result, ToolResult):
            return result
        return ToolResult.from_text(str(result))


@runtime_checkable
class ToolRuntime(Protocol):
    """Tool-execution boundary used by the arc engine and delegation."""

    def tool_specs(self) -> list[dict[str, Any]]:
        """Return OpenAI tool definitions for the available tools."""
        ...

    async def validate(self, call: ToolCallRequest, signal: "AbortSignal") -> None:
        """Raise ``ToolError`` or ``FileOutdatedError`` when the call cannot run."""
        ...

    async def run(self, call: ToolCallRequest, signal: "AbortSignal", tool_call_id: str) -> ToolResult:
        ...
