"""Shared test helpers and stub classes.

Reusable fakes for the model transport and tools. Import from here instead of
duplicating these classes in individual test files.
"""

from __future__ import annotations

from typing import Any, Callable, Mapping, Sequence

from octoloop.ai.client import TransportResult
from octoloop.ai.ir import AssistantItem, MalformedToolCall, ToolCallRequest, ToolFunction
from octoloop.ai.tools import ToolDefinition, ToolResult, ToolSpec

Responder = Callable[[Sequence[Any], dict[str, Any]], TransportResult]


def text_result(text: str, reasoning: str | None = None) -> TransportResult:
    return TransportResult(success=True, output=[AssistantItem(content=text, reasoning_content=reasoning)])


def tool_result(name: str, arguments: Mapping[str, Any], call_id: str = "call_1", text: str = "") -> TransportResult:
    call = ToolCallRequest(tool_call_id=call_id, function=ToolFunction(name=name, arguments=dict(arguments)))
    return TransportResult(success=True, output=[AssistantItem(content=text, tool_call=call)])


def malformed_result(raw: str = "{not json") -> TransportResult:
    return TransportResult(
        success=True,
        output=[AssistantItem(content=""), MalformedToolCall(error="Invalid JSON", tool_call_id="call_bad", raw=raw)],
    )


def error_result(message: str = "boom") -> TransportResult:
    return TransportResult(success=False, request_error=message, curl="curl http://local")


class FakeTransport:
    """Scripted model transport.

    Each ``run`` consumes the next scripted entry: a :class:`TransportResult`
    or a callable ``(messages, kwargs) -> TransportResult``. The last entry is
    repeated once the script runs out. Assistant content is streamed through
    ``on_tokens`` before the result is returned.

    Example:
        transport = FakeTransport([text_result("done")])
        finish = await TrajectoryArc(transport, ToolRegistry()).run([UserItem("hi")])
    """

    def __init__(self, script: Sequence[TransportResult | Responder]) -> None:
        self._script = list(script)
        self.calls: list[dict[str, Any]] = []

    async def run(self, messages: Sequence[Any], **kwargs: Any) -> TransportResult:
        self.calls.append({"messages": list(messages), **kwargs})
        index = min(len(self.calls) - 1, len(self._script) - 1)
        entry = self._script[index]
        result = entry(messages, kwargs) if callable(entry) else entry
        on_tokens = kwargs.get("on_tokens")
        if on_tokens is not None and result.success:
            for item in result.output:
                if isinstance(item, AssistantItem):
                    if item.reasoning_content:
                        on_tokens(item.reasoning_content, "reasoning")
                    if item.content:
                        on_tokens(item.content, "content")
        return result

    def count_tokens(self, text: str, *, estimate_only: bool = False) -> int:
        return len(text) // 4


def make_tool(
    name: str,
    output: str = "ok",
    *,
    validator: Callable[..., Any] | None = None,
    runner: Callable[..., Any] | None = None,
) -> ToolDefinition:
    async def default_runner(arguments: Mapping[str, Any], signal: Any, tool_call_id: str) -> ToolResult:
        return ToolResult.from_text(output)

    return ToolDefinition(
        spec=ToolSpec(name=name, description=f"{name} tool", parameters={"type": "object", "properties": {}}),
        runner=runner or default_runner,
        validator=validator,
    )
