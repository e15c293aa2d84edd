"""The trajectory arc: one bounded model turn with local recovery.

An arc optionally compacts the history, streams one model response and
validates any requested tool call. Malformed tool calls, stale-file conflicts
and tool validation errors are fed back to the model and retried, all sharing
one decrementing retry budget. The first terminal outcome ends the arc.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, ClassVar, Sequence, Union

from ...services import telemetry as telemetry_service
from ..client import ModelTransport
from ..errors import FileOutdatedError, RequestError, ToolError
from ..ir import (
    AssistantItem,
    CompactionCheckpoint,
    FileOutdatedItem,
    FileUnreadableItem,
    MalformedToolCall,
    ToolCallRequest,
    ToolErrorItem,
    ToolFunction,
)
from ..tools.file_tracker import FileTracker
from ..tools.types import ToolRuntime
from .abort import AbortSignal
from .autofix import EditAutofixer
from .compaction import AutoCompactor
from .events import ArcEventHandler, AssistantBuffer
from .runtime_config import ArcConfig

__all__ = [
    "AbortFinish",
    "NeedsResponse",
    "RequestTool",
    "RequestErrorFinish",
    "FinishReason",
    "Finish",
    "TrajectoryArc",
    "NO_RESPONSE_ERROR",
    "MALFORMED_BUDGET_ERROR",
    "TOOL_BUDGET_ERROR",
    "FILE_OUTDATED_ERROR",
]

LOGGER = logging.getLogger(__name__)

NO_RESPONSE_ERROR = "No response from backend"
MALFORMED_BUDGET_ERROR = (
    "Too many malformed tool retries in a single response arc. "
    "Aborting to prevent runaway memory growth."
)
TOOL_BUDGET_ERROR = (
    "Too many tool retry attempts in a single response arc. "
    "Aborting to prevent runaway memory growth."
)
FILE_OUTDATED_ERROR = (
    "File could not be updated because it was modified after being last read. "
    "Please read the file again before modifying it."
)


@dataclass(slots=True, frozen=True)
class AbortFinish:
    type: ClassVar[str] = "abort"


@dataclass(slots=True, frozen=True)
class NeedsResponse:
    type: ClassVar[str] = "needs-response"


@dataclass(slots=True, frozen=True)
class RequestTool:
    tool_call: ToolCallRequest
    type: ClassVar[str] = "request-tool"


@dataclass(slots=True, frozen=True)
class RequestErrorFinish:
    request_error: str
    curl: str = ""
    type: ClassVar[str] = "request-error"


FinishReason = Union[AbortFinish, NeedsResponse, RequestTool, RequestErrorFinish]


@dataclass(slots=True)
class Finish:
    """Terminal outcome of an arc plus every IR item it produced, in order."""

    reason: FinishReason
    irs: list[Any] = field(default_factory=list)


@dataclass(slots=True)
class _Step:
    irs: list[Any]
    finish: FinishReason | None = None
    retry_reason: str = ""


SystemPrompt = Union[str, Callable[[], str], None]


class TrajectoryArc:
    """Runs arcs against one model transport and tool runtime.

    Retries are an explicit loop: each pass is one model invocation and the
    budget is decremented before the next pass, so a budget of ``B`` allows at
    most ``B + 1`` invocations.
    """

    def __init__(
        self,
        transport: ModelTransport,
        tools: ToolRuntime,
        *,
        config: ArcConfig | None = None,
        compactor: AutoCompactor | None = None,
        autofixer: EditAutofixer | None = None,
        file_tracker: FileTracker | None = None,
        system_prompt: SystemPrompt = None,
        model: str | None = None,
        temperature: float | None = None,
        edit_tool_name: str = "edit",
    ) -> None:
        self._transport = transport
        self._tools = tools
        self._config = (config or ArcConfig()).clamp()
        self._compactor = compactor
        self._autofixer = autofixer
        self._file_tracker = file_tracker
        self._system_prompt = system_prompt
        self._model = model
        self._temperature = temperature
        self._edit_tool_name = edit_tool_name

    @property
    def tools(self) -> ToolRuntime:
        return self._tools

    async def run(
        self,
        messages: Sequence[Any],
        handler: ArcEventHandler | None = None,
        abort_signal: AbortSignal | None = None,
        *,
        retry_budget: int | None = None,
    ) -> Finish:
        handler = handler or ArcEventHandler()
        signal = abort_signal or AbortSignal()
        budget = self._config.retry_budget if retry_budget is None else max(0, int(retry_budget))
        working = list(messages)
        collected: list[Any] = []

        while True:
            step = await self._step(working, handler, signal, budget)
            collected.extend(step.irs)
            if step.finish is not None:
                return Finish(reason=step.finish, irs=collected)
            budget -= 1
            LOGGER.debug("Retrying arc after %s (%s retries left)", step.retry_reason, budget)
            telemetry_service.emit(
                "trajectory.retry",
                {"reason": step.retry_reason, "remaining_budget": budget},
            )
            handler.retry_tool(list(step.irs))
            working.extend(ir for ir in step.irs if not isinstance(ir, CompactionCheckpoint))

    async def _step(
        self,
        working: list[Any],
        handler: ArcEventHandler,
        signal: AbortSignal,
        budget: int,
    ) -> _Step:
        if signal.aborted:
            return _Step([], AbortFinish())

        irs: list[Any] = []
        checkpoint = await self._maybe_autocompact(working, handler, signal)
        if checkpoint is not None:
            handler.compaction_parsed(checkpoint)
            working.append(checkpoint)
            irs.append(checkpoint)
        if signal.aborted:
            return _Step(irs, AbortFinish())

        handler.start_response()
        buffer = AssistantBuffer()

        def on_tokens(text: str, kind: str) -> None:
            buffer.append(kind, text)
            handler.response_progress(buffer, kind, text)

        tool_specs = self._tools.tool_specs()
        result = await self._transport.run(
            working,
            tools=tool_specs or None,
            on_tokens=on_tokens,
            system_prompt=self._resolve_system_prompt(),
            abort_signal=signal,
            model=self._model,
            temperature=self._temperature,
        )

        if signal.aborted:
            return _Step(irs + _partial_items(buffer), AbortFinish())
        if not result.success:
            return _Step(irs + _partial_items(buffer), RequestErrorFinish(result.request_error, result.curl))
        if not result.output:
            return _Step(irs + _partial_items(buffer), RequestErrorFinish(NO_RESPONSE_ERROR, result.curl))

        irs.extend(result.output)
        last = result.output[-1]

        if isinstance(last, MalformedToolCall):
            tool_call = await self._repair_malformed(last, handler, signal)
            if tool_call is None:
                if budget <= 0:
                    return _Step(irs, RequestErrorFinish(MALFORMED_BUDGET_ERROR, result.curl))
                return _Step(irs, retry_reason="malformed-tool-call")
            irs.pop()
            if irs and isinstance(irs[-1], AssistantItem) and irs[-1].tool_call is None:
                irs[-1].tool_call = tool_call
            else:
                irs.append(AssistantItem(tool_call=tool_call))
        else:
            tool_call = getattr(last, "tool_call", None)

        if tool_call is None:
            return _Step(irs, NeedsResponse())

        try:
            await self._tools.validate(tool_call, signal)
            return _Step(irs, RequestTool(tool_call))
        except FileOutdatedError as exc:
            retry_irs = irs + [await self._file_outdated_item(tool_call, exc)]
            if budget <= 0:
                return _Step(retry_irs, RequestErrorFinish(TOOL_BUDGET_ERROR, result.curl))
            return _Step(retry_irs, retry_reason="file-outdated")
        except ToolError as exc:
            error_item = ToolErrorItem(
                tool_call_id=tool_call.tool_call_id,
                tool_name=tool_call.function.name,
                error=exc.message,
            )
            if tool_call.function.name == self._edit_tool_name and self._autofixer is not None:
                fixed = await self._autofix_edit(tool_call, handler, signal)
                if signal.aborted:
                    return _Step(irs[:-1] + [error_item], AbortFinish())
                if fixed:
                    return _Step(irs, RequestTool(tool_call))
            retry_irs = irs + [error_item]
            if budget <= 0:
                return _Step(retry_irs, RequestErrorFinish(TOOL_BUDGET_ERROR, result.curl))
            return _Step(retry_irs, retry_reason="tool-error")

    async def _maybe_autocompact(
        self,
        working: list[Any],
        handler: ArcEventHandler,
        signal: AbortSignal,
    ) -> CompactionCheckpoint | None:
        if self._compactor is None or not self._compactor.should_autocompact(working):
            return None
        handler.start_compaction()
        buffer = AssistantBuffer()

        def on_tokens(text: str, kind: str) -> None:
            buffer.append(kind, text)
            handler.compaction_progress(buffer, kind, text)

        return await self._compactor.compact(working, on_tokens, signal)

    async def _repair_malformed(
        self,
        malformed: MalformedToolCall,
        handler: ArcEventHandler,
        signal: AbortSignal,
    ) -> ToolCallRequest | None:
        if self._autofixer is None or not malformed.tool_name or not malformed.raw.strip():
            return None
        handler.autofixing_json()
        try:
            arguments = await self._autofixer.repair_json(malformed.raw, signal)
        except RequestError as exc:
            LOGGER.debug("JSON autofix request failed: %s", exc)
            return None
        if arguments is None or signal.aborted:
            telemetry_service.emit("trajectory.autofix", {"kind": "json", "status": "failed"})
            return None
        telemetry_service.emit("trajectory.autofix", {"kind": "json", "status": "applied"})
        return ToolCallRequest(
            tool_call_id=malformed.tool_call_id or f"call_{malformed.tool_name}",
            function=ToolFunction(name=malformed.tool_name, arguments=arguments),
        )

    async def _autofix_edit(
        self,
        tool_call: ToolCallRequest,
        handler: ArcEventHandler,
        signal: AbortSignal,
    ) -> bool:
        """Try one corrected diff; on success rewrite the call's arguments in place."""

        if self._autofixer is None:
            raise RuntimeError("edit autofixer is not configured")
        handler.autofixing_diff()
        arguments = tool_call.function.arguments
        path = arguments.get("file_path")
        if not isinstance(path, str) or not path:
            return False
        try:
            content = await self._read_untracked(path)
            fix = await self._autofixer.fix_edit(content, arguments, signal)
            if signal.aborted or not fix:
                telemetry_service.emit("trajectory.autofix", {"kind": "edit", "status": "failed"})
                return False
            candidate = ToolCallRequest(
                tool_call_id=tool_call.tool_call_id,
                function=ToolFunction(name=tool_call.function.name, arguments={**arguments, **fix}),
            )
            await self._tools.validate(candidate, signal)
        except (OSError, UnicodeDecodeError, ToolError, FileOutdatedError, RequestError) as exc:
            LOGGER.debug("Edit autofix for %s failed: %s", path, exc)
            telemetry_service.emit("trajectory.autofix", {"kind": "edit", "status": "failed"})
            return False
        tool_call.function.arguments = {**arguments, **fix}
        telemetry_service.emit("trajectory.autofix", {"kind": "edit", "status": "applied"})
        return True

    async def _file_outdated_item(self, tool_call: ToolCallRequest, exc: FileOutdatedError) -> Any:
        try:
            await self._read_untracked(exc.file_path)
        except (OSError, UnicodeDecodeError) as read_error:
            LOGGER.debug("Outdated file %s is unreadable: %s", exc.file_path, read_error)
            return FileUnreadableItem(
                path=exc.file_path,
                tool_call=tool_call,
                error=f"File {exc.file_path} could not be read. Has it been deleted?",
            )
        return FileOutdatedItem(tool_call=tool_call, error=FILE_OUTDATED_ERROR)

    async def _read_untracked(self, path: str) -> str:
        if self._file_tracker is not None:
            return await self._file_tracker.read_untracked(path)
        return await asyncio.to_thread(Path(path).expanduser().read_text, encoding="utf-8")

    def _resolve_system_prompt(self) -> str | None:
        prompt = self._system_prompt
        if callable(prompt):
            return prompt()
        return prompt


def _partial_items(buffer: AssistantBuffer) -> list[Any]:
    """Synthesize an assistant item from whatever streamed before an interruption."""

    if buffer.is_empty:
        return []
    content = buffer.content
    if buffer.tool:
        content = f"{content}\n<partial_tool_call>{buffer.tool}</partial_tool_call>"
    return [AssistantItem(content=content, reasoning_content=buffer.reasoning or None)]
