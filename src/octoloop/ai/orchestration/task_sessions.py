"""Resumable subagent sessions and their bounded histories."""

from __future__ import annotations

import json
import logging
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from threading import Lock
from typing import Any, Sequence

from ...services import telemetry as telemetry_service
from ..ir import (
    AssistantItem,
    FileUnreadableItem,
    MalformedToolCall,
    NotificationItem,
    ToolCallItem,
    ToolErrorItem,
    ToolOutputItem,
    UserItem,
)
from .runtime_config import DelegationConfig

__all__ = [
    "TaskSession",
    "TaskSessionStore",
    "compact_subagent_history",
    "sanitize_history_item",
    "estimate_item_size",
    "truncate_head",
]

LOGGER = logging.getLogger(__name__)

_TOOL_TRUNCATION_MARKER = "\n... (truncated for subagent context)"
_TEXT_TRUNCATION_MARKER = "\n... (truncated)"
_DEFAULT_ITEM_SIZE = 40


@dataclass(slots=True)
class TaskSession:
    id: str
    subagent_name: str
    history: list[Any] = field(default_factory=list)


def truncate_head(text: str, max_chars: int, marker: str = _TEXT_TRUNCATION_MARKER) -> str:
    """Strip ``text`` and keep its first ``max_chars`` characters."""

    trimmed = text.strip()
    if len(trimmed) <= max_chars:
        return trimmed
    return trimmed[:max_chars] + marker


def sanitize_history_item(item: Any, config: DelegationConfig | None = None) -> Any:
    """Trim assistant text and drop provider metadata; other items pass through."""

    if not isinstance(item, AssistantItem):
        return item
    limit = (config or DelegationConfig()).assistant_content_chars
    reasoning = item.reasoning_content
    return replace(
        item,
        content=truncate_head(item.content, limit),
        reasoning_content=truncate_head(reasoning, limit) if reasoning else None,
        provider_metadata=None,
    )


def estimate_item_size(item: Any) -> int:
    if isinstance(item, AssistantItem):
        size = len(item.content) + len(item.reasoning_content or "")
        if item.provider_metadata:
            size += len(json.dumps(item.provider_metadata, default=str))
        return size
    if isinstance(item, (UserItem, NotificationItem)):
        return len(item.content)
    if isinstance(item, ToolOutputItem):
        return len(item.content)
    if isinstance(item, ToolCallItem):
        return len(json.dumps(item.tool_call.function.arguments, default=str))
    if isinstance(item, (ToolErrorItem, MalformedToolCall)):
        return len(item.error)
    if isinstance(item, FileUnreadableItem):
        return len(item.path)
    return _DEFAULT_ITEM_SIZE


def compact_subagent_history(history: Sequence[Any], config: DelegationConfig | None = None) -> list[Any]:
    """Bound a subagent history by item count and total size.

    Oldest entries are evicted first; a leading user message (the seed prompt)
    is pinned in place.
    """

    config = config or DelegationConfig()
    trimmed: list[Any] = []
    for item in history:
        item = sanitize_history_item(item, config)
        if isinstance(item, ToolOutputItem) and len(item.content) > config.tool_content_chars:
            item = replace(item, content=item.content[: config.tool_content_chars] + _TOOL_TRUNCATION_MARKER)
        trimmed.append(item)

    keep_first_user = bool(trimmed) and isinstance(trimmed[0], UserItem)
    min_length = 2 if keep_first_user else 1
    total_chars = sum(estimate_item_size(item) for item in trimmed)
    remove_index = 1 if keep_first_user else 0

    while (
        len(trimmed) > config.history_items or total_chars > config.history_chars
    ) and len(trimmed) >= min_length:
        removed = trimmed.pop(remove_index)
        total_chars -= estimate_item_size(removed)
    return trimmed


class TaskSessionStore:
    """Bounded table of sessions keyed by task id, evicting the oldest insertion."""

    def __init__(self, config: DelegationConfig | None = None) -> None:
        self._config = (config or DelegationConfig()).clamp()
        self._sessions: OrderedDict[str, TaskSession] = OrderedDict()
        self._lock = Lock()

    @property
    def capacity(self) -> int:
        return self._config.max_sessions

    def get(self, task_id: str) -> TaskSession | None:
        with self._lock:
            return self._sessions.get(task_id)

    def store(self, task_id: str, session: TaskSession) -> None:
        """Insert or refresh ``session``; re-storing moves it to the newest slot."""

        evicted: list[str] = []
        with self._lock:
            self._sessions[task_id] = session
            self._sessions.move_to_end(task_id)
            while len(self._sessions) > self._config.max_sessions:
                oldest, _ = self._sessions.popitem(last=False)
                evicted.append(oldest)
        for task_id_evicted in evicted:
            LOGGER.debug("Evicted task session %s", task_id_evicted)
            telemetry_service.emit("task_session.evicted", {"task_id": task_id_evicted})

    def discard(self, task_id: str) -> None:
        with self._lock:
            self._sessions.pop(task_id, None)

    def clear(self) -> None:
        with self._lock:
            self._sessions.clear()

    def task_ids(self) -> list[str]:
        with self._lock:
            return list(self._sessions)

    def __contains__(self, task_id: object) -> bool:
        with self._lock:
            return task_id in self._sessions

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
