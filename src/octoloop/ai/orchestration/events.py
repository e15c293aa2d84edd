"""Arc lifecycle events and capped token buffers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Sequence

from ..ir import CompactionCheckpoint

__all__ = [
    "MAX_CONTENT_CHARS",
    "MAX_REASONING_CHARS",
    "MAX_TOOL_CHARS",
    "append_capped",
    "AssistantBuffer",
    "ArcEventHandler",
]

MAX_CONTENT_CHARS = 500_000
MAX_REASONING_CHARS = 200_000
MAX_TOOL_CHARS = 500_000

_CAPS = {
    "content": MAX_CONTENT_CHARS,
    "reasoning": MAX_REASONING_CHARS,
    "tool": MAX_TOOL_CHARS,
}


def append_capped(base: str, addition: str, max_chars: int) -> str:
    """Append ``addition`` to ``base`` without growing past ``max_chars``."""

    if not addition or max_chars <= 0:
        return base
    if len(base) >= max_chars:
        return base
    remaining = max_chars - len(base)
    return base + addition[:remaining]


@dataclass(slots=True)
class AssistantBuffer:
    """Streaming text per token kind; once a kind is full further tokens are dropped."""

    content: str = ""
    reasoning: str = ""
    tool: str = ""

    def append(self, kind: str, text: str) -> None:
        cap = _CAPS.get(kind, MAX_CONTENT_CHARS)
        if kind == "reasoning":
            self.reasoning = append_capped(self.reasoning, text, cap)
        elif kind == "tool":
            self.tool = append_capped(self.tool, text, cap)
        else:
            self.content = append_capped(self.content, text, cap)

    @property
    def is_empty(self) -> bool:
        return not (self.content or self.reasoning or self.tool)

    def total_chars(self) -> int:
        return len(self.content) + len(self.reasoning) + len(self.tool)

    def snapshot(self) -> dict[str, str]:
        return {"content": self.content, "reasoning": self.reasoning, "tool": self.tool}


class ArcEventHandler:
    """Receives progress notifications from a trajectory arc.

    Every hook is a no-op here; consumers override the ones they care about.
    """

    def start_response(self) -> None:
        pass

    def response_progress(self, buffer: AssistantBuffer, kind: str, delta: str) -> None:
        pass

    def start_compaction(self) -> None:
        pass

    def compaction_progress(self, buffer: AssistantBuffer, kind: str, delta: str) -> None:
        pass

    def compaction_parsed(self, checkpoint: CompactionCheckpoint) -> None:
        pass

    def autofixing_json(self) -> None:
        pass

    def autofixing_diff(self) -> None:
        pass

    def retry_tool(self, irs: Sequence[Any]) -> None:
        pass
