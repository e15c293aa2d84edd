"""Tool registry implementing the tool-execution boundary."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Iterable

from ..agents import Agent, filter_tools_for_agent
from ..errors import ToolError
from ..ir import ToolCallRequest
from .types import ToolDefinition, ToolResult

if TYPE_CHECKING:  # pragma: no cover - typing only
    from ..orchestration.abort import AbortSignal

__all__ = ["ToolRegistry", "DuplicateToolError"]

LOGGER = logging.getLogger(__name__)


class DuplicateToolError(Exception):
    """Raised when attempting to register a tool with a name that already exists."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Tool '{name}' is already registered")


class ToolRegistry:
    """Registry of :class:`ToolDefinition` objects keyed by name.

    Example:
        registry = ToolRegistry([read_tool, edit_tool])
        subagent_tools = registry.for_agent(explore_agent)
        await subagent_tools.validate(call, signal)
    """

    def __init__(self, tools: Iterable[ToolDefinition] | None = None) -> None:
        self._tools: dict[str, ToolDefinition] = {}
        for tool in tools or ():
            self.register(tool)

    def register(self, tool: ToolDefinition, *, allow_override: bool = False) -> ToolDefinition:
        name = tool.name
        if name in self._tools and not allow_override:
            raise DuplicateToolError(name)
        self._tools[name] = tool
        LOGGER.debug("Registered tool: %s", name)
        return tool

    def unregister(self, name: str) -> bool:
        if name in self._tools:
            del self._tools[name]
            LOGGER.debug("Unregistered tool: %s", name)
            return True
        return False

    def get(self, name: str) -> ToolDefinition | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def for_agent(self, agent: Agent) -> "ToolRegistry":
        """Return a registry restricted to the tools ``agent`` may use."""

        return ToolRegistry(filter_tools_for_agent(agent, self._tools).values())

    def tool_specs(self) -> list[dict[str, Any]]:
        return [tool.spec.to_openai_tool() for tool in self._tools.values()]

    async def validate(self, call: ToolCallRequest, signal: "AbortSignal") -> None:
        tool = self._require(call.function.name)
        await tool.validate(call.function.arguments, signal)

    async def run(self, call: ToolCallRequest, signal: "AbortSignal", tool_call_id: str) -> ToolResult:
        tool = self._require(call.function.name)
        LOGGER.debug("Running tool %s (%s)", call.function.name, tool_call_id)
        return await tool.run(call.function.arguments, signal, tool_call_id)

    def _require(self, name: str) -> ToolDefinition:
        tool = self._tools.get(name)
        if tool is None:
            raise ToolError(f"Unknown tool: {name}")
        return tool
