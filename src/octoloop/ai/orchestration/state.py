"""Orchestration state machine driving the main conversation.

:class:`OrchestrationStore` owns the conversation history, the current
:data:`Mode`, finalized and live task observations, and the focus used to
inspect delegated tasks. Arc events move the store between modes; consumers
subscribe to be notified after every change.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, ClassVar, Mapping, Sequence, Union

from ..agents import (
    Agent,
    discover_agents,
    primary_agents,
    resolve_active_agent,
    resolve_agent_model_override,
)
from ..client import ModelTransport
from ..errors import (
    USER_ABORTED_ERROR_MESSAGE,
    AbortError,
    CompactionRequestError,
    FileOutdatedError,
    PaymentError,
    RateLimitError,
    ToolError,
)
from ..ir import (
    CompactionCheckpoint,
    CompactionFailedItem,
    FileOutdatedItem,
    FileUnreadableItem,
    NotificationItem,
    ToolCallRequest,
    ToolErrorItem,
    ToolOutputItem,
    ToolRejectItem,
    UserItem,
    output_to_history,
)
from ..tools.file_tracker import FileTracker
from ..tools.registry import ToolRegistry
from .abort import AbortController
from .autofix import EditAutofixer
from .compaction import AutoCompactor
from .delegation import TASK_TOOL_NAME, SubagentDelegationService
from .events import ArcEventHandler, AssistantBuffer
from .runtime_config import RuntimeConfig
from .task_observations import TaskObservation, parse_task_observations
from .task_progress import RUNNING_RESULT, make_live_task_id
from .trajectory_arc import (
    FILE_OUTDATED_ERROR,
    AbortFinish,
    NeedsResponse,
    RequestErrorFinish,
    TrajectoryArc,
)

__all__ = [
    "InflightResponse",
    "InputMode",
    "RespondingMode",
    "ToolRequestMode",
    "PaymentErrorMode",
    "RateLimitErrorMode",
    "RequestErrorMode",
    "CompactionErrorMode",
    "DiffApplyMode",
    "FixJsonMode",
    "CompactingMode",
    "MenuMode",
    "ToolWaitingMode",
    "Mode",
    "MainFocus",
    "TaskFocus",
    "Focus",
    "TaskDashboardItem",
    "TaskDashboard",
    "ThrottledBuffer",
    "OrchestrationState",
    "OrchestrationStore",
    "provisional_task_observations",
    "active_task_order",
    "task_status",
    "count_task_tool_calls",
    "count_task_bytes",
    "task_dashboard",
]

LOGGER = logging.getLogger(__name__)

_PROVISIONAL_PROMPT_CHARS = 400
_TOOL_REQUEST_RE = re.compile(r"\[tool-request\]|tool-request:")


# ----------------------------------------------------------------------
# Modes
# ----------------------------------------------------------------------
@dataclass(slots=True)
class InflightResponse:
    content: str = ""
    reasoning_content: str | None = None


@dataclass(slots=True, frozen=True)
class InputMode:
    vim_mode: str = "INSERT"
    name: ClassVar[str] = "input"


@dataclass(slots=True, frozen=True)
class RespondingMode:
    inflight: InflightResponse
    abort_controller: AbortController
    name: ClassVar[str] = "responding"


@dataclass(slots=True, frozen=True)
class ToolRequestMode:
    tool_call: ToolCallRequest
    name: ClassVar[str] = "tool-request"


@dataclass(slots=True, frozen=True)
class PaymentErrorMode:
    error: str
    name: ClassVar[str] = "payment-error"


@dataclass(slots=True, frozen=True)
class RateLimitErrorMode:
    error: str
    name: ClassVar[str] = "rate-limit-error"


@dataclass(slots=True, frozen=True)
class RequestErrorMode:
    error: str
    curl: str | None = None
    name: ClassVar[str] = "request-error"


@dataclass(slots=True, frozen=True)
class CompactionErrorMode:
    error: str
    curl: str | None = None
    name: ClassVar[str] = "compaction-error"


@dataclass(slots=True, frozen=True)
class DiffApplyMode:
    abort_controller: AbortController
    name: ClassVar[str] = "diff-apply"


@dataclass(slots=True, frozen=True)
class FixJsonMode:
    abort_controller: AbortController
    name: ClassVar[str] = "fix-json"


@dataclass(slots=True, frozen=True)
class CompactingMode:
    inflight: InflightResponse
    abort_controller: AbortController
    name: ClassVar[str] = "compacting"


@dataclass(slots=True, frozen=True)
class MenuMode:
    name: ClassVar[str] = "menu"


@dataclass(slots=True, frozen=True)
class ToolWaitingMode:
    abort_controller: AbortController
    name: ClassVar[str] = "tool-waiting"


Mode = Union[
    InputMode,
    RespondingMode,
    ToolRequestMode,
    PaymentErrorMode,
    RateLimitErrorMode,
    RequestErrorMode,
    CompactionErrorMode,
    DiffApplyMode,
    FixJsonMode,
    CompactingMode,
    MenuMode,
    ToolWaitingMode,
]

_RETRYABLE_MODES = frozenset({"payment-error", "rate-limit-error", "request-error", "compaction-error"})
_EDITABLE_MODES = frozenset({"request-error", "compaction-error"})


@dataclass(slots=True, frozen=True)
class MainFocus:
    type: ClassVar[str] = "main"


@dataclass(slots=True, frozen=True)
class TaskFocus:
    task_id: str
    type: ClassVar[str] = "task"


Focus = Union[MainFocus, TaskFocus]


# ----------------------------------------------------------------------
# Task dashboard
# ----------------------------------------------------------------------
@dataclass(slots=True)
class TaskDashboardItem:
    task_id: str
    subagent_name: str
    description: str
    status: str
    tool_calls: int
    bytes_received: int


@dataclass(slots=True)
class TaskDashboard:
    items: list[TaskDashboardItem] = field(default_factory=list)
    working_count: int = 0
    failed_count: int = 0
    completed_count: int = 0
    total_tool_calls: int = 0
    bytes_received: int = 0


@dataclass(slots=True)
class OrchestrationState:
    mode: Mode = field(default_factory=InputMode)
    pre_menu_vim_mode: str | None = None
    history: list[Any] = field(default_factory=list)
    model_override: str | None = None
    agents: list[Agent] = field(default_factory=list)
    active_agent_name: str | None = None
    task_observations: dict[str, TaskObservation] = field(default_factory=dict)
    task_observation_order: list[str] = field(default_factory=list)
    live_task_observations: dict[str, TaskObservation] = field(default_factory=dict)
    live_task_observation_order: list[str] = field(default_factory=list)
    focus: Focus = field(default_factory=MainFocus)
    byte_count: int = 0
    query: str = ""
    clear_nonce: int = 0
    last_user_prompt_id: int | None = None
    whitelist: set[str] = field(default_factory=set)


def provisional_task_observations(tool_call: ToolCallRequest) -> list[TaskObservation]:
    """Placeholder observations shown before the first live registry poll."""

    if tool_call.function.name != TASK_TOOL_NAME:
        return []
    args = tool_call.function.arguments
    tasks = args.get("parallel_tasks") or [args]
    observations = []
    for index, task in enumerate(tasks):
        if not isinstance(task, Mapping):
            continue
        subagent = str(task.get("subagent_type") or "")
        prompt = str(task.get("prompt") or "")
        observations.append(
            TaskObservation(
                task_id=task.get("task_id") or make_live_task_id(tool_call.tool_call_id, index),
                subagent_name=subagent,
                description=str(task.get("description") or ""),
                trace=(
                    f"status: running\nsubagent: @{subagent}\n\n"
                    f"prompt:\n{prompt[:_PROVISIONAL_PROMPT_CHARS]}"
                ),
                result=RUNNING_RESULT,
            )
        )
    return observations


def active_task_order(state: OrchestrationState) -> list[str]:
    """Live ordering wins whenever any live task exists."""

    if state.live_task_observation_order:
        return state.live_task_observation_order
    return state.task_observation_order


def task_status(observation: TaskObservation) -> str:
    trace = observation.trace.lower()
    result = observation.result.lower()
    if "[task-error]" in trace or "subagent task failed" in result:
        return "failed"
    if "status: running" in trace or "subagent is running" in result:
        return "working"
    return "completed"


def count_task_tool_calls(trace: str) -> int:
    return len(_TOOL_REQUEST_RE.findall(trace))


def count_task_bytes(observation: TaskObservation) -> int:
    return len(f"{observation.trace}\n{observation.result}".encode("utf-8"))


def task_dashboard(state: OrchestrationState) -> TaskDashboard:
    items: list[TaskDashboardItem] = []
    for task_id in active_task_order(state):
        observation = state.live_task_observations.get(task_id) or state.task_observations.get(task_id)
        if observation is None:
            continue
        items.append(
            TaskDashboardItem(
                task_id=observation.task_id,
                subagent_name=observation.subagent_name,
                description=observation.description,
                status=task_status(observation),
                tool_calls=count_task_tool_calls(observation.trace),
                bytes_received=count_task_bytes(observation),
            )
        )
    working = sum(1 for item in items if item.status == "working")
    failed = sum(1 for item in items if item.status == "failed")
    return TaskDashboard(
        items=items,
        working_count=working,
        failed_count=failed,
        completed_count=len(items) - working - failed,
        total_tool_calls=sum(item.tool_calls for item in items),
        bytes_received=sum(item.bytes_received for item in items),
    )


class ThrottledBuffer:
    """Coalesce state changes and apply them at most once per ``interval``."""

    def __init__(self, interval: float, apply: Callable[[dict[str, Any]], None]) -> None:
        self._interval = interval
        self._apply = apply
        self._pending: dict[str, Any] | None = None
        self._handle: asyncio.TimerHandle | None = None

    def emit(self, changes: Mapping[str, Any]) -> None:
        self._pending = {**(self._pending or {}), **changes}
        if self._interval <= 0:
            self.flush()
            return
        if self._handle is None:
            self._handle = asyncio.get_running_loop().call_later(self._interval, self.flush)

    def flush(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        pending, self._pending = self._pending, None
        if pending:
            self._apply(pending)


class _StoreArcHandler(ArcEventHandler):
    """Translates arc events of one main-agent turn into store updates."""

    def __init__(
        self,
        store: OrchestrationStore,
        history: list[Any],
        controller: AbortController,
        throttle: ThrottledBuffer,
    ) -> None:
        self._store = store
        self._history = history
        self._controller = controller
        self._throttle = throttle
        self.response_bytes = 0
        self.compaction_bytes = 0

    def start_response(self) -> None:
        self._throttle.flush()
        self._store._set(
            mode=RespondingMode(InflightResponse(), self._controller),
            byte_count=self.response_bytes,
        )

    def response_progress(self, buffer: AssistantBuffer, kind: str, delta: str) -> None:
        self.response_bytes += len(delta)
        self._throttle.emit(
            {
                "mode": RespondingMode(_inflight(buffer), self._controller),
                "byte_count": self.response_bytes,
            }
        )

    def start_compaction(self) -> None:
        self._throttle.flush()
        self._store._set(
            mode=CompactingMode(InflightResponse(), self._controller),
            byte_count=self.compaction_bytes,
        )

    def compaction_progress(self, buffer: AssistantBuffer, kind: str, delta: str) -> None:
        self.compaction_bytes += len(delta)
        self._throttle.emit(
            {
                "mode": CompactingMode(_inflight(buffer), self._controller),
                "byte_count": self.compaction_bytes,
            }
        )

    def compaction_parsed(self, checkpoint: CompactionCheckpoint) -> None:
        self._throttle.flush()
        self._store._set(history=[*self._history, checkpoint])

    def autofixing_json(self) -> None:
        self._throttle.flush()
        self._store._set(mode=FixJsonMode(self._controller))

    def autofixing_diff(self) -> None:
        self._throttle.flush()
        self._store._set(mode=DiffApplyMode(self._controller))

    def retry_tool(self, irs: Sequence[Any]) -> None:
        self._throttle.flush()
        self._store._set(history=[*self._history, *output_to_history(irs)])


def _inflight(buffer: AssistantBuffer) -> InflightResponse:
    return InflightResponse(content=buffer.content, reasoning_content=buffer.reasoning or None)


Listener = Callable[[OrchestrationState], None]


class OrchestrationStore:
    """Sequences the main agent's turns, tool runs and delegated-task views."""

    def __init__(
        self,
        transport: ModelTransport,
        tools: ToolRegistry,
        *,
        delegation: SubagentDelegationService | None = None,
        config: RuntimeConfig | None = None,
        agent_loader: Callable[[], Sequence[Agent]] | None = None,
        compactor: AutoCompactor | None = None,
        autofixer: EditAutofixer | None = None,
        file_tracker: FileTracker | None = None,
    ) -> None:
        self._transport = transport
        self._tools = tools
        self._delegation = delegation
        self._config = (config or RuntimeConfig()).clamp()
        self._agent_loader = agent_loader or discover_agents
        self._compactor = compactor
        self._autofixer = autofixer
        self._file_tracker = file_tracker
        self._state = OrchestrationState()
        self._listeners: list[Listener] = []
        if delegation is not None and TASK_TOOL_NAME not in tools:
            definition = delegation.tool_definition()
            if definition is not None:
                tools.register(definition)

    @property
    def state(self) -> OrchestrationState:
        return self._state

    @property
    def mode(self) -> Mode:
        return self._state.mode

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _set(self, **changes: Any) -> None:
        for key, value in changes.items():
            setattr(self._state, key, value)
        for listener in list(self._listeners):
            try:
                listener(self._state)
            except Exception:  # pragma: no cover - listeners must not break the loop
                LOGGER.debug("State listener %s failed", listener, exc_info=True)

    def _to_input(self, vim_mode: str = "INSERT") -> None:
        self._set(mode=InputMode(vim_mode))

    # ------------------------------------------------------------------
    # Turn lifecycle
    # ------------------------------------------------------------------
    async def submit(self, query: str) -> None:
        """Append a user message and run the main agent."""

        message = UserItem(content=query)
        self._set(history=[*self._state.history, message], last_user_prompt_id=message.id)
        await self._run_agent()

    async def retry_from(self, mode_name: str) -> None:
        if mode_name in _RETRYABLE_MODES and self._state.mode.name == mode_name:
            await self._run_agent()

    def edit_and_retry_from(self, mode_name: str) -> None:
        """Drop the last user turn and put its text back into the composer."""

        if mode_name not in _EDITABLE_MODES or self._state.mode.name != mode_name:
            return
        prompt_id = self._state.last_user_prompt_id
        last_user = None
        if prompt_id is not None:
            last_user = next((item for item in self._state.history if item.id == prompt_id), None)
        if not isinstance(last_user, UserItem):
            self._set(query="", byte_count=0, mode=InputMode())
            return
        self._set(
            history=[item for item in self._state.history if item.id < prompt_id],
            query=last_user.content,
            byte_count=0,
            clear_nonce=self._state.clear_nonce + 1,
            mode=InputMode(),
        )

    def reject_tool(self, tool_call_id: str) -> None:
        self._set(
            history=[*self._state.history, ToolRejectItem(tool_call_id=tool_call_id)],
            mode=InputMode(),
        )

    def abort_response(self) -> None:
        controller = getattr(self._state.mode, "abort_controller", None)
        if controller is not None:
            controller.abort()

    def _handle_abort(self, controller: AbortController) -> bool:
        if controller.signal.aborted:
            self._to_input()
            return True
        return False

    async def run_tool(self, tool_call: ToolCallRequest) -> None:
        """Run an approved tool call, then continue the main agent."""

        controller = AbortController()
        provisional = provisional_task_observations(tool_call)
        self._set(
            mode=ToolWaitingMode(controller),
            live_task_observations={item.task_id: item for item in provisional},
            live_task_observation_order=[item.task_id for item in provisional],
        )
        poll: asyncio.Task[None] | None = None
        if tool_call.function.name == TASK_TOOL_NAME and self._delegation is not None:
            poll = asyncio.create_task(self._poll_live_progress(tool_call.tool_call_id))

        tools = self._tools_for(self._active_agent())
        try:
            result = await tools.run(tool_call, controller.signal, tool_call.tool_call_id)
        except Exception as exc:
            item = await self._transform_tool_error(tool_call, exc)
            self._finish_tool(tool_call, [*self._state.history, item], [])
        else:
            output = ToolOutputItem(tool_call_id=tool_call.tool_call_id, content=result.content, lines=result.lines)
            observations = []
            if tool_call.function.name == TASK_TOOL_NAME:
                observations = parse_task_observations(result.content)
            self._finish_tool(tool_call, [*self._state.history, output], observations)
        finally:
            if poll is not None:
                poll.cancel()
            if self._delegation is not None:
                self._delegation.progress.clear(tool_call.tool_call_id)

        if self._handle_abort(controller):
            return
        await self._run_agent()

    def _finish_tool(
        self,
        tool_call: ToolCallRequest,
        history: list[Any],
        observations: Sequence[TaskObservation],
    ) -> None:
        focus = self._state.focus
        if observations:
            mapped = {item.task_id: item for item in observations}
            known = set(self._state.task_observation_order)
            order = [*self._state.task_observation_order, *(key for key in mapped if key not in known)]
            if not (isinstance(focus, TaskFocus) and focus.task_id in mapped):
                focus = MainFocus()
            self._set(
                history=history,
                task_observations={**self._state.task_observations, **mapped},
                task_observation_order=order,
                live_task_observations={},
                live_task_observation_order=[],
                focus=focus,
            )
            return
        if isinstance(focus, TaskFocus) and focus.task_id in self._state.live_task_observations:
            focus = MainFocus()
        self._set(
            history=history,
            live_task_observations={},
            live_task_observation_order=[],
            focus=focus,
        )

    async def _transform_tool_error(self, tool_call: ToolCallRequest, exc: Exception) -> Any:
        call_id = tool_call.tool_call_id
        name = tool_call.function.name
        if isinstance(exc, AbortError):
            return ToolErrorItem(tool_call_id=call_id, tool_name=name, error=USER_ABORTED_ERROR_MESSAGE)
        if isinstance(exc, ToolError):
            return ToolErrorItem(tool_call_id=call_id, tool_name=name, error=exc.message)
        if isinstance(exc, FileOutdatedError):
            try:
                if self._file_tracker is not None:
                    await self._file_tracker.read_untracked(exc.file_path)
                else:
                    await asyncio.to_thread(_read_text, exc.file_path)
            except (OSError, UnicodeDecodeError):
                return FileUnreadableItem(
                    path=exc.file_path,
                    tool_call=tool_call,
                    error=f"File {exc.file_path} could not be read. Has it been deleted?",
                )
            return FileOutdatedItem(tool_call=tool_call, error=FILE_OUTDATED_ERROR)
        message = str(exc) or type(exc).__name__
        LOGGER.warning("Tool %s failed: %s", name, message, exc_info=True)
        return ToolErrorItem(tool_call_id=call_id, tool_name=name, error=message)

    async def _poll_live_progress(self, tool_call_id: str) -> None:
        if self._delegation is None:
            raise RuntimeError("live progress requires a delegation service")
        interval = self._config.state.live_poll_interval
        last_update = -1
        while True:
            snapshot = self._delegation.progress.snapshot(tool_call_id)
            if snapshot is not None and snapshot.updated_at != last_update:
                last_update = snapshot.updated_at
                mapped = {
                    task_id: TaskObservation(
                        task_id=obs.task_id,
                        subagent_name=obs.subagent_name,
                        description=obs.description,
                        trace=obs.trace,
                        result=obs.result,
                    )
                    for task_id in snapshot.order
                    if (obs := snapshot.observations.get(task_id)) is not None
                }
                self._set(live_task_observations=mapped, live_task_observation_order=list(snapshot.order))
            await asyncio.sleep(interval)

    async def _run_agent(self) -> None:
        agents = await self.ensure_agents()
        agent = resolve_active_agent(agents, self._state.active_agent_name)
        history = list(self._state.history)
        controller = AbortController()
        throttle = ThrottledBuffer(self._config.state.response_throttle, lambda changes: self._set(**changes))
        handler = _StoreArcHandler(self, history, controller, throttle)
        arc = TrajectoryArc(
            self._transport,
            self._tools_for(agent),
            config=self._config.arc,
            compactor=self._compactor,
            autofixer=self._autofixer,
            file_tracker=self._file_tracker,
            system_prompt=agent.prompt or None,
            model=resolve_agent_model_override(agent, self._state.model_override),
            temperature=agent.temperature,
        )
        try:
            finish = await arc.run(history, handler, controller.signal)
            throttle.flush()
            history.extend(output_to_history(finish.irs))
            self._set(history=list(history))
            reason = finish.reason
            if isinstance(reason, (AbortFinish, NeedsResponse)):
                self._to_input()
            elif isinstance(reason, RequestErrorFinish):
                self._set(mode=RequestErrorMode(reason.request_error, reason.curl or None))
            else:
                self._set(mode=ToolRequestMode(reason.tool_call))
        except CompactionRequestError as exc:
            throttle.flush()
            LOGGER.warning("Compaction failed: %s", exc.request_error)
            self._set(
                mode=CompactionErrorMode(exc.request_error, exc.curl or None),
                history=[*self._state.history, CompactionFailedItem(error=exc.request_error)],
            )
        except (PaymentError, RateLimitError, AbortError) as exc:
            throttle.flush()
            if isinstance(exc, AbortError) or controller.signal.aborted:
                self._to_input()
            elif isinstance(exc, PaymentError):
                self._set(mode=PaymentErrorMode(str(exc)))
            else:
                self._set(mode=RateLimitErrorMode(str(exc)))
        finally:
            self._set(byte_count=0)

    # ------------------------------------------------------------------
    # Agents and tools
    # ------------------------------------------------------------------
    async def ensure_agents(self) -> list[Agent]:
        agents = list(await asyncio.to_thread(self._agent_loader))
        active = resolve_active_agent(agents, self._state.active_agent_name)
        self._set(agents=agents, active_agent_name=active.name)
        if self._delegation is not None:
            self._delegation.set_agents(agents)
        return agents

    def _active_agent(self) -> Agent:
        return resolve_active_agent(self._state.agents, self._state.active_agent_name)

    def _tools_for(self, agent: Agent) -> ToolRegistry:
        return self._tools.for_agent(agent)

    def cycle_agent(self) -> None:
        available = primary_agents(self._state.agents)
        if len(available) <= 1:
            return
        current = self._active_agent()
        index = next((i for i, agent in enumerate(available) if agent.name == current.name), -1)
        following = available[(index + 1) % len(available)]
        self._set(
            active_agent_name=following.name,
            history=[*self._state.history, NotificationItem(content=f"Agent: {following.name}")],
        )

    def set_model_override(self, model: str) -> None:
        self._set(
            model_override=model,
            history=[*self._state.history, NotificationItem(content=f"Model: {model}")],
        )

    # ------------------------------------------------------------------
    # Menu and composer
    # ------------------------------------------------------------------
    def toggle_menu(self) -> None:
        mode = self._state.mode
        if isinstance(mode, InputMode):
            self._set(mode=MenuMode(), pre_menu_vim_mode=mode.vim_mode)
        elif isinstance(mode, MenuMode):
            self.close_menu()

    def open_menu(self) -> None:
        mode = self._state.mode
        vim_mode = mode.vim_mode if isinstance(mode, InputMode) else "INSERT"
        self._set(mode=MenuMode(), pre_menu_vim_mode=vim_mode)

    def close_menu(self) -> None:
        self._set(mode=InputMode(self._state.pre_menu_vim_mode or "INSERT"), pre_menu_vim_mode=None)

    def set_vim_mode(self, vim_mode: str) -> None:
        if isinstance(self._state.mode, InputMode):
            self._set(mode=InputMode(vim_mode))

    def reset_pre_menu_vim_mode(self) -> None:
        self._set(pre_menu_vim_mode="INSERT")

    def set_query(self, query: str) -> None:
        self._set(query=query)

    def notify(self, message: str) -> None:
        self._set(history=[*self._state.history, NotificationItem(content=message)])

    def clear_history(self) -> None:
        self.abort_response()
        self._set(
            history=[],
            task_observations={},
            task_observation_order=[],
            live_task_observations={},
            live_task_observation_order=[],
            focus=MainFocus(),
            byte_count=0,
            clear_nonce=self._state.clear_nonce + 1,
        )

    def add_to_whitelist(self, key: str) -> None:
        self._set(whitelist={*self._state.whitelist, key})

    def is_whitelisted(self, key: str) -> bool:
        return key in self._state.whitelist

    # ------------------------------------------------------------------
    # Task focus
    # ------------------------------------------------------------------
    def focus_next(self) -> None:
        self._move_focus(1)

    def focus_prev(self) -> None:
        self._move_focus(-1)

    def _move_focus(self, step: int) -> None:
        order = active_task_order(self._state)
        if not order:
            return
        focus = self._state.focus
        if isinstance(focus, MainFocus):
            self._set(focus=TaskFocus(order[0] if step > 0 else order[-1]))
            return
        if focus.task_id not in order:
            self._set(focus=TaskFocus(order[-1]))
            return
        # Main sits between the last and the first task: with n tasks, n
        # advances from main land on the last task and advance n + 1 wraps.
        index = order.index(focus.task_id) + step
        if index < 0 or index >= len(order):
            self._set(focus=MainFocus())
            return
        self._set(focus=TaskFocus(order[index]))

    def focused_task(self) -> TaskObservation | None:
        focus = self._state.focus
        if not isinstance(focus, TaskFocus):
            return None
        return self._state.live_task_observations.get(focus.task_id) or self._state.task_observations.get(
            focus.task_id
        )

    def task_dashboard(self) -> TaskDashboard:
        return task_dashboard(self._state)


def _read_text(path: str) -> str:
    with open(path, encoding="utf-8") as handle:
        return handle.read()
