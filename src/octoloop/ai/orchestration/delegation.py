"""Subagent delegation: run described tasks as nested, resumable agent sessions.

The service backs the ``task`` tool. Each invocation names a subagent and a
prompt; the subagent runs its own trajectory arcs with its own tool subset
until it pauses, and the tool output is a text observation (see
:mod:`.task_observations`). Parallel invocations are fanned out as asyncio
tasks and joined all-settled so one failing task never hides its siblings.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Sequence

from ...services import telemetry as telemetry_service
from ...utils.logging import task_log_context
from ..agents import Agent, resolve_agent_model_override, subagent_choices
from ..client import ModelTransport
from ..errors import AbortError, TaskSessionPinnedError, ToolError, is_abort_like
from ..ir import (
    AssistantItem,
    CompactionCheckpoint,
    FileOutdatedItem,
    FileUnreadableItem,
    MalformedToolCall,
    ToolCallItem,
    ToolCallRequest,
    ToolErrorItem,
    ToolOutputItem,
    ToolRejectItem,
    UserItem,
    latest_assistant_text,
    output_to_history,
)
from ..tools.file_tracker import FileTracker
from ..tools.registry import ToolRegistry
from ..tools.types import ToolDefinition, ToolResult, ToolSpec
from .abort import AbortSignal
from .autofix import EditAutofixer
from .compaction import AutoCompactor
from .runtime_config import RuntimeConfig
from .task_observations import (
    TaskObservation,
    build_observation_output,
    build_parallel_observation_output,
)
from .task_progress import LiveTaskProgressRegistry, LiveTaskSeed, make_live_task_id
from .task_sessions import (
    TaskSession,
    TaskSessionStore,
    compact_subagent_history,
    sanitize_history_item,
    truncate_head,
)
from .trajectory_arc import (
    AbortFinish,
    NeedsResponse,
    RequestErrorFinish,
    RequestTool,
    TrajectoryArc,
)

__all__ = [
    "TASK_TOOL_NAME",
    "TaskInvocation",
    "SubagentDelegationService",
    "parse_invocations",
    "summarize_tool_request",
    "summarize_task_trace",
    "build_peer_preamble",
]

LOGGER = logging.getLogger(__name__)

TASK_TOOL_NAME = "task"
NO_OUTPUT_RESULT = "Subagent finished without additional output."
FAILED_PREFIX = "Subagent task failed: "

_TRACE_CHARS = 12_000
_LIVE_CHARS = 1_200
_LIVE_SUMMARY_CHARS = 900
_OUTPUT_PREVIEW_LINES = 20
_OUTPUT_PREVIEW_CHARS = 2_000

_FILE_PATH_TOOLS = frozenset({"read", "edit", "create", "append", "prepend", "rewrite"})


@dataclass(slots=True, frozen=True)
class TaskInvocation:
    description: str
    prompt: str
    subagent_type: str
    task_id: str | None = None

    @classmethod
    def from_arguments(cls, arguments: Mapping[str, Any]) -> TaskInvocation:
        fields: dict[str, str] = {}
        for key in ("description", "prompt", "subagent_type"):
            value = arguments.get(key)
            if not isinstance(value, str):
                raise ToolError(f"Task argument '{key}' must be a string")
            fields[key] = value
        task_id = arguments.get("task_id")
        if task_id is not None and not isinstance(task_id, str):
            raise ToolError("Task argument 'task_id' must be a string")
        return cls(task_id=task_id or None, **fields)


def parse_invocations(arguments: Mapping[str, Any]) -> tuple[list[TaskInvocation], bool]:
    """Return the invocations a ``task`` call describes and whether it is a batch.

    A non-empty ``parallel_tasks`` list replaces the top-level invocation.
    """

    parallel = arguments.get("parallel_tasks") or []
    if not isinstance(parallel, list):
        raise ToolError("Task argument 'parallel_tasks' must be a list")
    if parallel:
        invocations = []
        for entry in parallel:
            if not isinstance(entry, Mapping):
                raise ToolError("Each entry of 'parallel_tasks' must be an object")
            invocations.append(TaskInvocation.from_arguments(entry))
        return invocations, True
    return [TaskInvocation.from_arguments(arguments)], False


def _duplicate_task_ids(invocations: Iterable[TaskInvocation]) -> list[str]:
    seen: set[str] = set()
    duplicates: list[str] = []
    for invocation in invocations:
        if invocation.task_id is None:
            continue
        if invocation.task_id in seen:
            if invocation.task_id not in duplicates:
                duplicates.append(invocation.task_id)
        else:
            seen.add(invocation.task_id)
    return duplicates


def summarize_tool_request(name: str, arguments: Any) -> str:
    """One-line description of a tool request for traces."""

    args = arguments if isinstance(arguments, Mapping) else {}

    def text(key: str, default: str = "") -> str:
        value = args.get(key)
        return value if isinstance(value, str) else default

    if name in _FILE_PATH_TOOLS:
        return text("file_path")
    if name == "list":
        return text("dir_path", os.getcwd())
    if name == "shell":
        return text("cmd")
    if name == TASK_TOOL_NAME:
        description = text("description")
        subagent = text("subagent_type", "unknown")
        return f"@{subagent} {description}" if description else f"@{subagent}"
    if name in ("fetch", "web-search"):
        return text("url")
    if name == "skill":
        return text("skill_name")
    return ""


def _output_preview(content: str) -> str:
    lines = content.split("\n")
    preview = "\n".join(lines[:_OUTPUT_PREVIEW_LINES])
    if len(lines) > _OUTPUT_PREVIEW_LINES:
        preview = f"{preview}\n... ({len(lines) - _OUTPUT_PREVIEW_LINES} more lines)"
    return truncate_head(preview, _OUTPUT_PREVIEW_CHARS)


def _line_count(content: str, lines: int | None = None) -> int:
    return lines if lines else len(content.split("\n"))


def summarize_task_trace(history: Sequence[Any]) -> str:
    """Render a finished session history as the trace of its observation."""

    parts: list[str] = []
    for item in history:
        if isinstance(item, UserItem):
            parts.append(f"[user]\n{truncate_head(item.content, 1_200)}")
        elif isinstance(item, AssistantItem):
            if item.reasoning_content and item.reasoning_content.strip():
                parts.append(f"[reasoning]\n{truncate_head(item.reasoning_content, 1_500)}")
            parts.append(f"[assistant]\n{truncate_head(item.content, 2_000)}")
        elif isinstance(item, ToolCallItem):
            name = item.tool_call.function.name
            summary = summarize_tool_request(name, item.tool_call.function.arguments)
            parts.append(f"[tool-request] {name}\n{summary}" if summary else f"[tool-request] {name}")
        elif isinstance(item, ToolOutputItem):
            count = _line_count(item.content, item.lines)
            parts.append(f"[tool-output] {count} lines\n{_output_preview(item.content)}")
        elif isinstance(item, ToolErrorItem):
            parts.append(f"[tool-error] {item.tool_name}\n{truncate_head(item.error, 1_200)}")
        elif isinstance(item, MalformedToolCall):
            parts.append(f"[tool-malformed]\n{truncate_head(item.error, 1_200)}")
        elif isinstance(item, FileOutdatedItem):
            parts.append("[file-outdated]")
        elif isinstance(item, FileUnreadableItem):
            parts.append(f"[file-unreadable] {item.path}")
        elif isinstance(item, ToolRejectItem):
            parts.append("[tool-rejected]")
        elif isinstance(item, CompactionCheckpoint):
            parts.append("[compaction-checkpoint]")
    return truncate_head("\n\n".join(parts), _TRACE_CHARS)


def build_peer_preamble(invocation: TaskInvocation, index: int, peers: Sequence[TaskInvocation]) -> str:
    """Tell a parallel worker its position and what its siblings are doing."""

    total = len(peers)
    if total <= 1:
        return ""
    lines = [
        "[Parallel execution context]",
        f"You are worker {index + 1} of {total} running concurrently.",
        f"Your task: {invocation.description}",
    ]
    others = [f"  - @{peer.subagent_type}: {peer.description}" for i, peer in enumerate(peers) if i != index]
    if others:
        lines.append("Other workers running in parallel:\n" + "\n".join(others))
    lines.append(
        "Scope discipline: complete only your assigned task. "
        "Do not modify artefacts owned by other workers."
    )
    return "\n".join(lines) + "\n\n"


class _LiveTrace:
    """Mirror of one task's progress into the live registry."""

    __slots__ = ("_progress", "tool_call_id", "task_id")

    def __init__(self, progress: LiveTaskProgressRegistry, tool_call_id: str, task_id: str) -> None:
        self._progress = progress
        self.tool_call_id = tool_call_id
        self.task_id = task_id

    def append(self, line: str) -> None:
        self._progress.append_trace(self.tool_call_id, self.task_id, line)

    def set_result(self, result: str) -> None:
        self._progress.set_result(self.tool_call_id, self.task_id, result)


class SubagentDelegationService:
    """Runs delegated tasks and owns their resumable sessions.

    Subagents never see the ``task`` tool themselves, so delegation is
    exactly two tiers deep.
    """

    def __init__(
        self,
        transport: ModelTransport,
        tools: ToolRegistry,
        agents: Sequence[Agent],
        *,
        config: RuntimeConfig | None = None,
        progress: LiveTaskProgressRegistry | None = None,
        sessions: TaskSessionStore | None = None,
        file_tracker: FileTracker | None = None,
        autofixer: EditAutofixer | None = None,
        compactor: AutoCompactor | None = None,
    ) -> None:
        self._transport = transport
        self._tools = tools
        self._agents = list(agents)
        self._config = (config or RuntimeConfig()).clamp()
        self._progress = progress or LiveTaskProgressRegistry()
        self._sessions = sessions or TaskSessionStore(self._config.delegation)
        self._file_tracker = file_tracker
        self._autofixer = autofixer
        self._compactor = compactor

    @property
    def progress(self) -> LiveTaskProgressRegistry:
        return self._progress

    @property
    def sessions(self) -> TaskSessionStore:
        return self._sessions

    def set_agents(self, agents: Sequence[Agent]) -> None:
        self._agents = list(agents)

    def candidates(self) -> list[Agent]:
        return subagent_choices(self._agents)

    def _find_subagent(self, name: str) -> Agent:
        for agent in self.candidates():
            if agent.name == name:
                return agent
        raise ToolError(f"Unknown subagent: {name}")

    # ------------------------------------------------------------------
    # Tool surface
    # ------------------------------------------------------------------
    def tool_definition(self) -> ToolDefinition | None:
        """Build the ``task`` tool, or ``None`` when no subagent is available."""

        candidates = self.candidates()
        if not candidates:
            return None
        names = [agent.name for agent in candidates]
        invocation_properties: dict[str, Any] = {
            "description": {
                "type": "string",
                "description": "A short 3-5 word description of the delegated task",
            },
            "prompt": {
                "type": "string",
                "description": "The full task instructions for the delegated subagent",
            },
            "subagent_type": {
                "type": "string",
                "enum": names,
                "description": "The name of the subagent to delegate this task to",
            },
            "task_id": {
                "type": "string",
                "description": "Resume an earlier task session by reusing its task_id",
            },
        }
        required = ["description", "prompt", "subagent_type"]
        parameters = {
            "type": "object",
            "properties": {
                **invocation_properties,
                "parallel_tasks": {
                    "type": "array",
                    "description": "Optional: execute multiple independent delegated tasks in parallel",
                    "items": {
                        "type": "object",
                        "properties": invocation_properties,
                        "required": required,
                    },
                },
            },
            "required": required,
        }
        available = ", ".join(
            f"{agent.name} ({agent.description})" if agent.description else agent.name for agent in candidates
        )
        spec = ToolSpec(
            name=TASK_TOOL_NAME,
            description=(
                "Delegate work to a specialized subagent and wait for its result. "
                f"Available subagents: {available}"
            ),
            parameters=parameters,
        )
        return ToolDefinition(spec=spec, runner=self._run_tool, validator=self._validate_tool)

    async def _validate_tool(self, arguments: Mapping[str, Any], signal: AbortSignal) -> None:
        # the top-level subagent is checked even when parallel_tasks replaces it
        self._find_subagent(str(arguments.get("subagent_type", "")))
        invocations, _ = parse_invocations(arguments)
        self.validate(invocations)

    async def _run_tool(self, arguments: Mapping[str, Any], signal: AbortSignal, tool_call_id: str) -> ToolResult:
        invocations, parallel = parse_invocations(arguments)
        content = await self.delegate(invocations, tool_call_id, signal, parallel=parallel)
        return ToolResult.from_text(content)

    # ------------------------------------------------------------------
    # Delegation
    # ------------------------------------------------------------------
    def validate(self, invocations: Sequence[TaskInvocation]) -> None:
        """Raise :class:`ToolError` for unknown subagents, duplicate ids or pinning conflicts."""

        duplicates = _duplicate_task_ids(invocations)
        if duplicates:
            plural = "s" if len(duplicates) > 1 else ""
            raise ToolError(
                f"Duplicate task_id{plural} in parallel_tasks: {', '.join(duplicates)}. "
                "Each task in parallel_tasks must have a unique task_id."
            )
        for invocation in invocations:
            self._find_subagent(invocation.subagent_type)
            if invocation.task_id is None:
                continue
            session = self._sessions.get(invocation.task_id)
            if session is not None and session.subagent_name != invocation.subagent_type:
                raise TaskSessionPinnedError(invocation.task_id, session.subagent_name)

    async def delegate(
        self,
        invocations: Sequence[TaskInvocation],
        tool_call_id: str | None,
        abort_signal: AbortSignal | None = None,
        *,
        parallel: bool | None = None,
    ) -> str:
        """Run ``invocations`` and return the observation text for the tool output."""

        signal = abort_signal or AbortSignal()
        invocations = list(invocations)
        if not invocations:
            raise ToolError("No task to delegate")
        self.validate(invocations)
        parallel = len(invocations) > 1 if parallel is None else parallel
        run_id = tool_call_id or f"task-live-{time.time_ns()}"
        planned = [
            (invocation, invocation.task_id or make_live_task_id(run_id, index))
            for index, invocation in enumerate(invocations)
        ]

        self._progress.start_run(
            run_id,
            [
                LiveTaskSeed(
                    task_id=task_id,
                    subagent_name=invocation.subagent_type,
                    description=invocation.description,
                    prompt=invocation.prompt,
                )
                for invocation, task_id in planned
            ],
        )
        telemetry_service.emit(
            "delegation.started",
            {"tool_call_id": run_id, "task_ids": [task_id for _, task_id in planned], "parallel": parallel},
        )
        LOGGER.info("Delegating %d task(s) for %s", len(planned), run_id)

        try:
            if signal.aborted:
                raise AbortError()
            if parallel:
                output = await self._delegate_batch(planned, run_id, signal)
            else:
                output = await self._delegate_single(planned[0], run_id, signal)
        except Exception as exc:
            if signal.aborted or is_abort_like(exc):
                raise AbortError() from exc
            raise
        finally:
            self._progress.clear(run_id)

        telemetry_service.emit("delegation.completed", {"tool_call_id": run_id, "count": len(planned)})
        return output

    async def _delegate_batch(
        self,
        planned: Sequence[tuple[TaskInvocation, str]],
        run_id: str,
        signal: AbortSignal,
    ) -> str:
        peers = [invocation for invocation, _ in planned]
        settled = await asyncio.gather(
            *(
                self._execute(invocation, task_id, run_id, signal, index=index, peers=peers)
                for index, (invocation, task_id) in enumerate(planned)
            ),
            return_exceptions=True,
        )
        observations: list[TaskObservation] = []
        for (invocation, task_id), outcome in zip(planned, settled):
            if isinstance(outcome, BaseException):
                observations.append(self._failure(invocation, task_id, run_id, outcome))
            else:
                observations.append(outcome)
        return build_parallel_observation_output(observations)

    async def _delegate_single(
        self,
        planned: tuple[TaskInvocation, str],
        run_id: str,
        signal: AbortSignal,
    ) -> str:
        invocation, task_id = planned
        try:
            observation = await self._execute(invocation, task_id, run_id, signal)
        except Exception as exc:
            if signal.aborted or is_abort_like(exc):
                raise
            observation = self._failure(invocation, task_id, run_id, exc)
        return build_observation_output(observation)

    def _failure(
        self,
        invocation: TaskInvocation,
        task_id: str,
        run_id: str,
        error: BaseException,
    ) -> TaskObservation:
        message = str(error) or type(error).__name__
        LOGGER.warning("Delegated task %s (@%s) failed: %s", task_id, invocation.subagent_type, message)
        self._progress.mark_failed(run_id, task_id, message)
        telemetry_service.emit(
            "delegation.task_failed",
            {"tool_call_id": run_id, "task_id": task_id, "error": message},
        )
        return TaskObservation(
            task_id=task_id,
            subagent_name=invocation.subagent_type,
            description=invocation.description,
            trace=f"[task-error]\n{message}",
            result=f"{FAILED_PREFIX}{message}",
        )

    async def _execute(
        self,
        invocation: TaskInvocation,
        task_id: str,
        run_id: str,
        signal: AbortSignal,
        *,
        index: int = 0,
        peers: Sequence[TaskInvocation] = (),
    ) -> TaskObservation:
        subagent = self._find_subagent(invocation.subagent_type)
        session = self._sessions.get(task_id)
        if session is None:
            session = TaskSession(id=task_id, subagent_name=subagent.name)
        elif session.subagent_name != subagent.name:
            raise TaskSessionPinnedError(task_id, session.subagent_name)

        live = _LiveTrace(self._progress, run_id, task_id)
        prompt = (build_peer_preamble(invocation, index, peers) + invocation.prompt).strip()
        if prompt:
            live.append(f"[user]\n{truncate_head(prompt, _LIVE_CHARS)}")
            session.history.append(UserItem(content=prompt))
        self._sessions.store(task_id, session)

        with task_log_context(task_id, subagent.name):
            LOGGER.debug("Running delegated task (%d history item(s))", len(session.history))
            result = await self._run_until_pause(session, subagent, signal, live)
        live.set_result(result)
        return TaskObservation(
            task_id=task_id,
            subagent_name=subagent.name,
            description=invocation.description,
            trace=summarize_task_trace(session.history),
            result=result,
        )

    def _arc_for(self, subagent: Agent) -> tuple[TrajectoryArc, ToolRegistry]:
        tools = self._tools.for_agent(subagent)
        tools.unregister(TASK_TOOL_NAME)
        arc = TrajectoryArc(
            self._transport,
            tools,
            config=self._config.arc,
            compactor=self._compactor,
            autofixer=self._autofixer,
            file_tracker=self._file_tracker,
            system_prompt=subagent.prompt or None,
            model=resolve_agent_model_override(subagent, None),
            temperature=subagent.temperature,
        )
        return arc, tools

    async def _run_until_pause(
        self,
        session: TaskSession,
        subagent: Agent,
        signal: AbortSignal,
        live: _LiveTrace,
    ) -> str:
        arc, tools = self._arc_for(subagent)
        delegation_config = self._config.delegation
        while True:
            signal.throw_if_aborted()
            finish = await arc.run(session.history, abort_signal=signal)

            generated = [sanitize_history_item(item, delegation_config) for item in output_to_history(finish.irs)]
            session.history.extend(generated)
            session.history = compact_subagent_history(session.history, delegation_config)
            for item in generated:
                self._mirror(item, live)

            reason = finish.reason
            if isinstance(reason, (AbortFinish, NeedsResponse)):
                return latest_assistant_text(session.history) or NO_OUTPUT_RESULT
            if isinstance(reason, RequestErrorFinish):
                live.append(f"[task-error]\nSubagent request failed: {reason.request_error}")
                return f"Subagent request failed: {reason.request_error}"
            if not isinstance(reason, RequestTool):
                raise TypeError(f"Unexpected finish reason: {reason!r}")
            session.history.append(await self._execute_tool(tools, reason.tool_call, signal, live))
            session.history = compact_subagent_history(session.history, delegation_config)

    async def _execute_tool(
        self,
        tools: ToolRegistry,
        call: ToolCallRequest,
        signal: AbortSignal,
        live: _LiveTrace,
    ) -> ToolOutputItem | ToolErrorItem:
        limit = self._config.delegation.tool_content_chars
        try:
            result = await tools.run(call, signal, call.tool_call_id)
        except Exception as exc:
            message = getattr(exc, "message", None) or str(exc) or "Tool execution failed"
            LOGGER.debug("Subagent tool %s failed: %s", call.function.name, message)
            live.append(f"[tool-error] {call.function.name}\n{message}")
            return ToolErrorItem(tool_call_id=call.tool_call_id, tool_name=call.function.name, error=message)

        lines = _line_count(result.content, result.lines)
        live.append(f"[tool-output] {lines} lines\n{truncate_head(result.content, _LIVE_SUMMARY_CHARS)}")
        content = result.content
        if len(content) > limit:
            content = f"{content[:limit]}\n... (truncated for subagent context)"
        return ToolOutputItem(tool_call_id=call.tool_call_id, content=content, lines=lines)

    @staticmethod
    def _mirror(item: Any, live: _LiveTrace) -> None:
        if isinstance(item, AssistantItem):
            reasoning = truncate_head(item.reasoning_content or "", _LIVE_CHARS)
            if reasoning:
                live.append(f"[reasoning]\n{reasoning}")
            text = truncate_head(item.content, _LIVE_CHARS)
            if text:
                live.append(f"[assistant]\n{text}")
        elif isinstance(item, ToolCallItem):
            name = item.tool_call.function.name
            summary = summarize_tool_request(name, item.tool_call.function.arguments)
            if summary:
                live.append(f"[tool-request] {name}\n{truncate_head(summary, _LIVE_SUMMARY_CHARS)}")
            else:
                live.append(f"[tool-request] {name}")
