"""Tests for subagent delegation."""

from __future__ import annotations

from typing import Any

import pytest

from octoloop.ai.agents import Agent
from octoloop.ai.client import TransportResult
from octoloop.ai.errors import AbortError, TaskSessionPinnedError, ToolError
from octoloop.ai.ir import ToolOutputItem, UserItem
from octoloop.ai.orchestration.abort import AbortController, AbortSignal
from octoloop.ai.orchestration.delegation import (
    SubagentDelegationService,
    TaskInvocation,
    build_peer_preamble,
    parse_invocations,
    summarize_task_trace,
    summarize_tool_request,
)
from octoloop.ai.orchestration.task_observations import parse_task_observation, parse_task_observations
from octoloop.ai.tools import ToolRegistry, ToolResult
from octoloop.services import telemetry as telemetry_service
from tests.helpers import FakeTransport, make_tool, text_result, tool_result

AGENTS = [
    Agent(name="lead", mode="primary", prompt="You lead."),
    Agent(name="worker", mode="subagent", description="Does the work", prompt="You work."),
    Agent(name="scout", mode="subagent", description="Looks around", prompt="You look.", tools={"edit": False}),
]


def _prompt(messages) -> str:
    first = next(item for item in messages if isinstance(item, UserItem))
    return first.content.splitlines()[-1]


def _echo(messages, kwargs) -> TransportResult:
    prompt = _prompt(messages)
    if "explode" in prompt:
        raise RuntimeError("kaboom")
    return text_result(f"done: {prompt}")


def _service(transport: FakeTransport, tools: ToolRegistry | None = None) -> SubagentDelegationService:
    return SubagentDelegationService(transport, tools if tools is not None else ToolRegistry(), AGENTS)


def _invocation(prompt: str, subagent: str = "worker", task_id: str | None = None) -> TaskInvocation:
    return TaskInvocation(description=f"do {prompt}", prompt=prompt, subagent_type=subagent, task_id=task_id)


@pytest.mark.asyncio
async def test_single_delegation_returns_observation_and_clears_run() -> None:
    service = _service(FakeTransport([_echo]))

    output = await service.delegate([_invocation("count files")], "call_1")

    observation = parse_task_observation(output)
    assert observation is not None
    assert observation.task_id == "task_call_1_0"
    assert observation.subagent_name == "worker"
    assert observation.description == "do count files"
    assert observation.result == "done: count files"
    assert "[user]\ncount files" in observation.trace
    assert "[assistant]\ndone: count files" in observation.trace
    assert service.progress.active_runs() == []


@pytest.mark.asyncio
async def test_parallel_failure_does_not_hide_siblings() -> None:
    sink = telemetry_service.InMemoryTelemetrySink()
    telemetry_service.register_event_listener("delegation.task_failed", sink.listener)
    service = _service(FakeTransport([_echo]))
    try:
        output = await service.delegate(
            [_invocation("first"), _invocation("explode"), _invocation("third", "scout")],
            "call_2",
        )
    finally:
        telemetry_service.unregister_event_listener("delegation.task_failed", sink.listener)

    assert output.startswith("task_parallel_count: 3\n")
    observations = parse_task_observations(output)
    assert [item.task_id for item in observations] == ["task_call_2_0", "task_call_2_1", "task_call_2_2"]
    assert observations[0].result == "done: first"
    assert observations[2].result == "done: third"
    assert observations[1].result == "Subagent task failed: kaboom"
    assert observations[1].trace == "[task-error]\nkaboom"
    assert sink.tail()[-1].payload["task_id"] == "task_call_2_1"
    assert service.progress.active_runs() == []


@pytest.mark.asyncio
async def test_parallel_workers_receive_peer_preamble() -> None:
    transport = FakeTransport([_echo])
    service = _service(transport)

    await service.delegate([_invocation("alpha"), _invocation("beta", "scout")], "call_3")

    prompts = sorted(call["messages"][0].content for call in transport.calls)
    assert "You are worker 1 of 2 running concurrently." in prompts[0]
    assert "  - @scout: do beta" in prompts[0]
    assert "You are worker 2 of 2 running concurrently." in prompts[1]
    assert prompts[1].endswith("beta")


@pytest.mark.asyncio
async def test_single_failure_becomes_failure_observation() -> None:
    service = _service(FakeTransport([_echo]))

    output = await service.delegate([_invocation("explode")], "call_4")

    observation = parse_task_observation(output)
    assert observation is not None
    assert observation.result == "Subagent task failed: kaboom"


@pytest.mark.asyncio
async def test_duplicate_task_ids_rejected_before_execution() -> None:
    transport = FakeTransport([_echo])
    service = _service(transport)

    with pytest.raises(ToolError) as excinfo:
        await service.delegate(
            [_invocation("a", task_id="dup"), _invocation("b", task_id="dup"), _invocation("c")],
            "call_5",
        )

    assert excinfo.value.message == (
        "Duplicate task_id in parallel_tasks: dup. Each task in parallel_tasks must have a unique task_id."
    )
    assert transport.calls == []
    assert service.progress.active_runs() == []


@pytest.mark.asyncio
async def test_top_level_task_id_colliding_with_nested_entry_is_accepted() -> None:
    service = _service(FakeTransport([_echo]))
    definition = service.tool_definition()
    assert definition is not None
    arguments = {
        "description": "outer",
        "prompt": "outer prompt",
        "subagent_type": "worker",
        "task_id": "shared",
        "parallel_tasks": [
            {"description": "inner", "prompt": "inner one", "subagent_type": "worker", "task_id": "shared"},
            {"description": "other", "prompt": "inner two", "subagent_type": "scout", "task_id": "solo"},
        ],
    }

    await definition.validate(arguments, AbortSignal())
    result = await definition.run(arguments, AbortSignal(), "call_6")

    assert [item.task_id for item in parse_task_observations(result.content)] == ["shared", "solo"]


@pytest.mark.asyncio
async def test_unknown_subagent_is_rejected() -> None:
    service = _service(FakeTransport([_echo]))

    with pytest.raises(ToolError, match="Unknown subagent: ghost"):
        await service.delegate([_invocation("x", "ghost")], "call_7")


@pytest.mark.asyncio
async def test_resuming_task_appends_to_session_history() -> None:
    transport = FakeTransport([text_result("first answer"), text_result("second answer")])
    service = _service(transport)

    await service.delegate([_invocation("start", task_id="t1")], "call_8")
    output = await service.delegate([_invocation("continue", task_id="t1")], "call_9")

    session = service.sessions.get("t1")
    assert session is not None
    prompts = [item.content for item in session.history if isinstance(item, UserItem)]
    assert prompts == ["start", "continue"]
    second_call_prompts = [item.content for item in transport.calls[1]["messages"] if isinstance(item, UserItem)]
    assert second_call_prompts == ["start", "continue"]
    assert parse_task_observation(output).result == "second answer"


@pytest.mark.asyncio
async def test_resuming_task_with_other_subagent_is_pinned() -> None:
    service = _service(FakeTransport([text_result("ok")]))
    await service.delegate([_invocation("start", "worker", task_id="t1")], "call_10")

    with pytest.raises(TaskSessionPinnedError) as excinfo:
        await service.delegate([_invocation("again", "scout", task_id="t1")], "call_11")

    assert "t1" in excinfo.value.message
    assert "worker" in excinfo.value.message


@pytest.mark.asyncio
async def test_subagent_runs_tools_without_delegation_tool() -> None:
    async def read(arguments, signal, tool_call_id) -> ToolResult:
        return ToolResult.from_text("line one\nline two")

    transport = FakeTransport([tool_result("read", {"file_path": "notes.md"}, call_id="sub_1"), text_result("read it")])
    tools = ToolRegistry([make_tool("read", runner=read)])
    service = _service(transport, tools)
    definition = service.tool_definition()
    assert definition is not None
    tools.register(definition)

    output = await service.delegate([_invocation("read notes")], "call_12")

    tool_names = [tool["function"]["name"] for tool in transport.calls[0]["tools"]]
    assert tool_names == ["read"]
    session = service.sessions.get("task_call_12_0")
    assert any(isinstance(item, ToolOutputItem) and item.lines == 2 for item in session.history)
    observation = parse_task_observation(output)
    assert "[tool-request] read\nnotes.md" in observation.trace
    assert "[tool-output] 2 lines\nline one\nline two" in observation.trace
    assert observation.result == "read it"


@pytest.mark.asyncio
async def test_subagent_tool_failure_is_fed_back() -> None:
    async def shell(arguments, signal, tool_call_id) -> ToolResult:
        raise ToolError("command not permitted")

    transport = FakeTransport([tool_result("shell", {"cmd": "rm -rf /"}), text_result("could not run it")])
    service = _service(transport, ToolRegistry([make_tool("shell", runner=shell)]))

    output = await service.delegate([_invocation("clean up")], "call_13")

    observation = parse_task_observation(output)
    assert "[tool-error] shell\ncommand not permitted" in observation.trace
    assert observation.result == "could not run it"


@pytest.mark.asyncio
async def test_live_progress_is_visible_while_running() -> None:
    seen: list[Any] = []
    service: SubagentDelegationService

    def respond(messages, kwargs) -> TransportResult:
        seen.append(service.progress.snapshot("call_14"))
        return text_result("finished")

    service = _service(FakeTransport([respond]))
    await service.delegate([_invocation("watch me")], "call_14")

    snapshot = seen[0]
    assert snapshot is not None
    assert snapshot.order == ["task_call_14_0"]
    trace = snapshot.observations["task_call_14_0"].trace
    assert trace.startswith("status: running\nsubagent: @worker")
    assert "[user]\nwatch me" in trace
    assert service.progress.snapshot("call_14") is None


@pytest.mark.asyncio
async def test_single_abort_propagates_and_clears_run() -> None:
    controller = AbortController()
    controller.abort()
    transport = FakeTransport([_echo])
    service = _service(transport)

    with pytest.raises(AbortError):
        await service.delegate([_invocation("never")], "call_15", controller.signal)

    assert transport.calls == []
    assert service.progress.active_runs() == []


@pytest.mark.asyncio
async def test_request_error_is_reported_as_result() -> None:
    transport = FakeTransport([TransportResult(success=False, request_error="HTTP 503", curl="curl x")])
    service = _service(transport)

    output = await service.delegate([_invocation("try")], "call_16")

    assert parse_task_observation(output).result == "Subagent request failed: HTTP 503"


def test_parse_invocations_prefers_parallel_tasks() -> None:
    invocations, parallel = parse_invocations(
        {
            "description": "top",
            "prompt": "p",
            "subagent_type": "worker",
            "parallel_tasks": [{"description": "one", "prompt": "p1", "subagent_type": "scout"}],
        }
    )

    assert parallel is True
    assert invocations == [TaskInvocation(description="one", prompt="p1", subagent_type="scout")]


def test_parse_invocations_rejects_missing_prompt() -> None:
    with pytest.raises(ToolError, match="prompt"):
        parse_invocations({"description": "d", "subagent_type": "worker"})


def test_tool_definition_lists_subagents() -> None:
    definition = _service(FakeTransport([_echo])).tool_definition()
    assert definition is not None

    tool = definition.spec.to_openai_tool()["function"]
    assert tool["name"] == "task"
    assert tool["parameters"]["properties"]["subagent_type"]["enum"] == ["worker", "scout"]
    assert "worker (Does the work)" in tool["description"]


def test_tool_definition_absent_without_subagents() -> None:
    service = SubagentDelegationService(FakeTransport([_echo]), ToolRegistry(), [Agent(name="solo")])
    assert service.tool_definition() is None


@pytest.mark.parametrize(
    ("name", "arguments", "expected"),
    [
        ("read", {"file_path": "a.py"}, "a.py"),
        ("shell", {"cmd": "ls -la"}, "ls -la"),
        ("task", {"description": "scan", "subagent_type": "explore"}, "@explore scan"),
        ("task", {}, "@unknown"),
        ("fetch", {"url": "https://example.com"}, "https://example.com"),
        ("skill", {"skill_name": "lint"}, "lint"),
        ("mystery", {"x": 1}, ""),
    ],
)
def test_summarize_tool_request(name: str, arguments: dict[str, Any], expected: str) -> None:
    assert summarize_tool_request(name, arguments) == expected


def test_peer_preamble_empty_for_single_worker() -> None:
    invocation = _invocation("solo")
    assert build_peer_preamble(invocation, 0, [invocation]) == ""


def test_task_trace_is_capped() -> None:
    history = [UserItem(content="x" * 1_000) for _ in range(40)]

    trace = summarize_task_trace(history)

    assert len(trace) <= 12_000 + len("\n... (truncated)")
    assert trace.endswith("\n... (truncated)")
