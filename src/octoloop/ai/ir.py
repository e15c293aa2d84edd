"""Intermediate representation for conversation turns.

Every item produced or consumed by the arc engine is one of the dataclasses
below. Items are ordered and append-only per conversation; ``kind`` mirrors
the role tag used when the history is serialized or summarized.
"""

from __future__ import annotations

import itertools
import json
from dataclasses import dataclass, field
from typing import Any, ClassVar, Iterable, Sequence, Union

__all__ = [
    "sequence_id",
    "ToolFunction",
    "ToolCallRequest",
    "UserItem",
    "AssistantItem",
    "ToolCallItem",
    "ToolOutputItem",
    "ToolErrorItem",
    "MalformedToolCall",
    "FileOutdatedItem",
    "FileUnreadableItem",
    "CompactionCheckpoint",
    "ToolRejectItem",
    "NotificationItem",
    "CompactionFailedItem",
    "IRItem",
    "OutputIR",
    "output_to_history",
    "to_chat_messages",
    "latest_assistant_text",
]

_SEQUENCE = itertools.count(1)


def sequence_id() -> int:
    """Return the next process-wide IR identifier."""

    return next(_SEQUENCE)


@dataclass(slots=True)
class ToolFunction:
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ToolCallRequest:
    """A tool invocation requested by the model.

    ``function.arguments`` may be rewritten once by an autofix pass before the
    call is re-validated; nothing else mutates a request after it is issued.
    """

    tool_call_id: str
    function: ToolFunction

    def to_openai(self) -> dict[str, Any]:
        return {
            "id": self.tool_call_id,
            "type": "function",
            "function": {
                "name": self.function.name,
                "arguments": json.dumps(self.function.arguments, ensure_ascii=False),
            },
        }


@dataclass(slots=True)
class UserItem:
    content: str
    id: int = field(default_factory=sequence_id)
    kind: ClassVar[str] = "user"


@dataclass(slots=True)
class AssistantItem:
    content: str = ""
    reasoning_content: str | None = None
    tool_call: ToolCallRequest | None = None
    provider_metadata: dict[str, Any] | None = None
    token_usage: int = 0
    output_tokens: int = 0
    id: int = field(default_factory=sequence_id)
    kind: ClassVar[str] = "assistant"


@dataclass(slots=True)
class ToolCallItem:
    """History form of a tool request, split out of its assistant item."""

    tool_call: ToolCallRequest
    id: int = field(default_factory=sequence_id)
    kind: ClassVar[str] = "tool"


@dataclass(slots=True)
class ToolOutputItem:
    tool_call_id: str
    content: str
    lines: int = 0
    id: int = field(default_factory=sequence_id)
    kind: ClassVar[str] = "tool-output"


@dataclass(slots=True)
class ToolErrorItem:
    tool_call_id: str
    tool_name: str
    error: str
    id: int = field(default_factory=sequence_id)
    kind: ClassVar[str] = "tool-error"


@dataclass(slots=True)
class MalformedToolCall:
    error: str
    tool_call_id: str | None = None
    tool_name: str | None = None
    raw: str = ""
    id: int = field(default_factory=sequence_id)
    kind: ClassVar[str] = "tool-malformed"


@dataclass(slots=True)
class FileOutdatedItem:
    tool_call: ToolCallRequest
    error: str
    id: int = field(default_factory=sequence_id)
    kind: ClassVar[str] = "file-outdated"


@dataclass(slots=True)
class FileUnreadableItem:
    path: str
    tool_call: ToolCallRequest
    error: str
    id: int = field(default_factory=sequence_id)
    kind: ClassVar[str] = "file-unreadable"


@dataclass(slots=True)
class CompactionCheckpoint:
    summary: str
    id: int = field(default_factory=sequence_id)
    kind: ClassVar[str] = "compaction-checkpoint"


@dataclass(slots=True)
class ToolRejectItem:
    tool_call_id: str
    id: int = field(default_factory=sequence_id)
    kind: ClassVar[str] = "tool-reject"


@dataclass(slots=True)
class NotificationItem:
    content: str
    id: int = field(default_factory=sequence_id)
    kind: ClassVar[str] = "notification"


@dataclass(slots=True)
class CompactionFailedItem:
    error: str = ""
    id: int = field(default_factory=sequence_id)
    kind: ClassVar[str] = "compaction-failed"


OutputIR = Union[
    AssistantItem,
    MalformedToolCall,
    ToolErrorItem,
    FileOutdatedItem,
    FileUnreadableItem,
    CompactionCheckpoint,
]

IRItem = Union[
    UserItem,
    AssistantItem,
    ToolCallItem,
    ToolOutputItem,
    ToolErrorItem,
    MalformedToolCall,
    FileOutdatedItem,
    FileUnreadableItem,
    CompactionCheckpoint,
    ToolRejectItem,
    NotificationItem,
    CompactionFailedItem,
]


def output_to_history(irs: Iterable[Any]) -> list[Any]:
    """Split assistant items carrying a tool call into assistant + tool entries."""

    history: list[Any] = []
    for item in irs:
        if isinstance(item, AssistantItem) and item.tool_call is not None:
            history.append(
                AssistantItem(
                    content=item.content,
                    reasoning_content=item.reasoning_content,
                    provider_metadata=item.provider_metadata,
                    token_usage=item.token_usage,
                    output_tokens=item.output_tokens,
                    id=item.id,
                )
            )
            history.append(ToolCallItem(tool_call=item.tool_call))
        else:
            history.append(item)
    return history


def latest_assistant_text(history: Sequence[Any]) -> str:
    for item in reversed(history):
        if isinstance(item, AssistantItem) and item.content.strip():
            return item.content.strip()
    return ""


def to_chat_messages(
    history: Sequence[Any],
    system_prompt: str | None = None,
) -> list[dict[str, Any]]:
    """Convert IR history into OpenAI chat-completions message dicts.

    Everything before the latest checkpoint is replaced by its summary. Tool
    results whose request is not visible in the converted window are sent as
    user notes since chat backends reject unmatched tool messages.
    """

    start = 0
    for index in range(len(history) - 1, -1, -1):
        if isinstance(history[index], CompactionCheckpoint):
            start = index
            break

    messages: list[dict[str, Any]] = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    pending: set[str] = set()

    def tool_result(tool_call_id: str, content: str) -> None:
        if tool_call_id in pending:
            pending.discard(tool_call_id)
            messages.append({"role": "tool", "tool_call_id": tool_call_id, "content": content})
        else:
            messages.append({"role": "user", "content": f"[tool result {tool_call_id}]\n{content}"})

    for item in history[start:]:
        if isinstance(item, CompactionCheckpoint):
            messages.append(
                {
                    "role": "user",
                    "content": f"Summary of the conversation so far:\n\n{item.summary}",
                }
            )
        elif isinstance(item, UserItem):
            messages.append({"role": "user", "content": item.content})
        elif isinstance(item, AssistantItem):
            message: dict[str, Any] = {"role": "assistant", "content": item.content or ""}
            if item.tool_call is not None:
                message["tool_calls"] = [item.tool_call.to_openai()]
                pending.add(item.tool_call.tool_call_id)
            messages.append(message)
        elif isinstance(item, ToolCallItem):
            _attach_tool_call(messages, item.tool_call)
            pending.add(item.tool_call.tool_call_id)
        elif isinstance(item, ToolOutputItem):
            tool_result(item.tool_call_id, item.content)
        elif isinstance(item, ToolErrorItem):
            tool_result(item.tool_call_id, f"Error: {item.error}")
        elif isinstance(item, (FileOutdatedItem, FileUnreadableItem)):
            tool_result(item.tool_call.tool_call_id, f"Error: {item.error}")
        elif isinstance(item, ToolRejectItem):
            tool_result(item.tool_call_id, "The user rejected this tool call.")
        elif isinstance(item, MalformedToolCall):
            messages.append(
                {
                    "role": "user",
                    "content": f"Your last tool call was malformed and could not be parsed: {item.error}",
                }
            )
        # notifications and failed compactions are display-only
    return messages


def _attach_tool_call(messages: list[dict[str, Any]], tool_call: ToolCallRequest) -> None:
    payload = tool_call.to_openai()
    if messages and messages[-1].get("role") == "assistant" and not messages[-1].get("tool_calls"):
        messages[-1]["tool_calls"] = [payload]
        return
    messages.append({"role": "assistant", "content": "", "tool_calls": [payload]})
