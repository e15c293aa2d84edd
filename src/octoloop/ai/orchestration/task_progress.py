"""Live progress of delegated tasks that are still executing.

Runs are keyed by the tool-call id that started the delegation. A run exists
from delegation start until the delegation finishes; consumers poll
:meth:`LiveTaskProgressRegistry.snapshot` and compare ``updated_at``.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, replace
from threading import Lock
from typing import Iterable

__all__ = [
    "MAX_TRACE_CHARS",
    "MAX_RESULT_CHARS",
    "TRUNCATION_MARKER",
    "RUNNING_RESULT",
    "clamp_tail",
    "make_live_task_id",
    "LiveTaskSeed",
    "LiveTaskObservation",
    "LiveTaskRunSnapshot",
    "LiveTaskProgressRegistry",
]

LOGGER = logging.getLogger(__name__)

MAX_TRACE_CHARS = 32_000
MAX_RESULT_CHARS = 8_000
TRUNCATION_MARKER = "... (truncated)\n"
RUNNING_RESULT = "Subagent is running. Waiting for first tool outputs..."
_PROMPT_PREVIEW_CHARS = 600


def clamp_tail(text: str, max_chars: int) -> str:
    """Keep the last ``max_chars`` characters, prefixing a marker when cut."""

    if len(text) <= max_chars:
        return text
    return f"{TRUNCATION_MARKER}{text[len(text) - max_chars:]}"


def make_live_task_id(tool_call_id: str, index: int) -> str:
    return f"task_{tool_call_id}_{index}"


@dataclass(slots=True, frozen=True)
class LiveTaskSeed:
    task_id: str
    subagent_name: str
    description: str
    prompt: str = ""


@dataclass(slots=True)
class LiveTaskObservation:
    task_id: str
    subagent_name: str
    description: str
    trace: str = ""
    result: str = ""


@dataclass(slots=True)
class LiveTaskRunSnapshot:
    order: list[str]
    observations: dict[str, LiveTaskObservation]
    updated_at: int


@dataclass(slots=True)
class _RunState:
    order: list[str] = field(default_factory=list)
    observations: dict[str, LiveTaskObservation] = field(default_factory=dict)
    updated_at: int = 0


class LiveTaskProgressRegistry:
    """Table of in-flight delegation runs shared by concurrently running tasks."""

    def __init__(self) -> None:
        self._runs: dict[str, _RunState] = {}
        self._lock = Lock()
        self._clock = 0

    def start_run(self, tool_call_id: str, seeds: Iterable[LiveTaskSeed]) -> None:
        seeds = list(seeds)
        with self._lock:
            state = self._runs.setdefault(tool_call_id, _RunState())
            state.order = [seed.task_id for seed in seeds]
            state.observations = {
                seed.task_id: LiveTaskObservation(
                    task_id=seed.task_id,
                    subagent_name=seed.subagent_name,
                    description=seed.description,
                    trace=(
                        f"status: running\nsubagent: @{seed.subagent_name}\n\n"
                        f"prompt:\n{seed.prompt[:_PROMPT_PREVIEW_CHARS]}"
                    ),
                    result=RUNNING_RESULT,
                )
                for seed in seeds
            }
            self._touch(state)
        LOGGER.debug("Started live task run %s with %d task(s)", tool_call_id, len(seeds))

    def append_trace(self, tool_call_id: str, task_id: str, line: str) -> None:
        with self._lock:
            self._append_trace_locked(tool_call_id, task_id, line)

    def set_result(self, tool_call_id: str, task_id: str, result: str) -> None:
        with self._lock:
            self._set_result_locked(tool_call_id, task_id, result)

    def mark_failed(self, tool_call_id: str, task_id: str, message: str) -> None:
        with self._lock:
            self._append_trace_locked(tool_call_id, task_id, f"[task-error]\n{message}")
            self._set_result_locked(tool_call_id, task_id, f"Subagent task failed: {message}")

    def snapshot(self, tool_call_id: str) -> LiveTaskRunSnapshot | None:
        """Return a copy of the run, or ``None`` when no run is active."""

        with self._lock:
            state = self._runs.get(tool_call_id)
            if state is None:
                return None
            return LiveTaskRunSnapshot(
                order=list(state.order),
                observations={key: replace(obs) for key, obs in state.observations.items()},
                updated_at=state.updated_at,
            )

    def clear(self, tool_call_id: str) -> None:
        with self._lock:
            removed = self._runs.pop(tool_call_id, None)
        if removed is not None:
            LOGGER.debug("Cleared live task run %s", tool_call_id)

    def active_runs(self) -> list[str]:
        with self._lock:
            return list(self._runs)

    def _observation(self, tool_call_id: str, task_id: str) -> tuple[_RunState, LiveTaskObservation] | None:
        state = self._runs.get(tool_call_id)
        if state is None:
            return None
        observation = state.observations.get(task_id)
        if observation is None:
            return None
        return state, observation

    def _append_trace_locked(self, tool_call_id: str, task_id: str, line: str) -> None:
        found = self._observation(tool_call_id, task_id)
        if found is None:
            return
        state, observation = found
        combined = f"{observation.trace}\n\n{line}" if observation.trace.strip() else line
        observation.trace = clamp_tail(combined, MAX_TRACE_CHARS)
        self._touch(state)

    def _set_result_locked(self, tool_call_id: str, task_id: str, result: str) -> None:
        found = self._observation(tool_call_id, task_id)
        if found is None:
            return
        state, observation = found
        observation.result = clamp_tail(result, MAX_RESULT_CHARS)
        self._touch(state)

    def _touch(self, state: _RunState) -> None:
        self._clock = max(time.monotonic_ns(), self._clock + 1)
        state.updated_at = self._clock
