"""Tests for the conversation IR and chat-message conversion."""

from __future__ import annotations

import json

from octoloop.ai.ir import (
    AssistantItem,
    CompactionCheckpoint,
    CompactionFailedItem,
    FileOutdatedItem,
    MalformedToolCall,
    NotificationItem,
    ToolCallItem,
    ToolCallRequest,
    ToolErrorItem,
    ToolFunction,
    ToolOutputItem,
    ToolRejectItem,
    UserItem,
    latest_assistant_text,
    output_to_history,
    to_chat_messages,
)
from octoloop.ai.tool_call_parser import (
    normalize_tool_marker_text,
    parse_embedded_tool_calls,
    strip_embedded_tool_calls,
)


def _call(call_id: str = "call_1", name: str = "read") -> ToolCallRequest:
    return ToolCallRequest(tool_call_id=call_id, function=ToolFunction(name=name, arguments={"file_path": "a.py"}))


def test_ids_increase_monotonically() -> None:
    first = UserItem(content="a")
    second = AssistantItem(content="b")
    assert second.id > first.id


def test_output_to_history_splits_tool_calls() -> None:
    assistant = AssistantItem(content="reading", tool_call=_call())

    history = output_to_history([assistant, NotificationItem(content="n")])

    assert isinstance(history[0], AssistantItem)
    assert history[0].tool_call is None
    assert history[0].id == assistant.id
    assert isinstance(history[1], ToolCallItem)
    assert history[1].tool_call.tool_call_id == "call_1"
    assert isinstance(history[2], NotificationItem)


def test_latest_assistant_text_skips_blank_items() -> None:
    history = [AssistantItem(content="first"), UserItem(content="u"), AssistantItem(content="  ")]
    assert latest_assistant_text(history) == "first"
    assert latest_assistant_text([]) == ""


def test_chat_messages_pair_tool_calls_with_results() -> None:
    history = output_to_history([AssistantItem(content="let me look", tool_call=_call())])
    history.append(ToolOutputItem(tool_call_id="call_1", content="print('hi')"))

    messages = to_chat_messages([UserItem(content="hi"), *history], system_prompt="sys")

    assert messages[0] == {"role": "system", "content": "sys"}
    assert messages[2]["role"] == "assistant"
    assert messages[2]["content"] == "let me look"
    payload = messages[2]["tool_calls"][0]
    assert payload["id"] == "call_1"
    assert json.loads(payload["function"]["arguments"]) == {"file_path": "a.py"}
    assert messages[3] == {"role": "tool", "tool_call_id": "call_1", "content": "print('hi')"}


def test_orphan_tool_results_become_user_notes() -> None:
    messages = to_chat_messages([ToolOutputItem(tool_call_id="lost", content="data")])

    assert messages == [{"role": "user", "content": "[tool result lost]\ndata"}]


def test_error_items_are_reported_as_tool_results() -> None:
    history = [
        AssistantItem(tool_call=_call("c1")),
        ToolErrorItem(tool_call_id="c1", tool_name="read", error="missing"),
        AssistantItem(tool_call=_call("c2")),
        FileOutdatedItem(tool_call=_call("c2"), error="stale"),
        AssistantItem(tool_call=_call("c3")),
        ToolRejectItem(tool_call_id="c3"),
    ]

    tool_messages = [message for message in to_chat_messages(history) if message["role"] == "tool"]

    assert [message["content"] for message in tool_messages] == [
        "Error: missing",
        "Error: stale",
        "The user rejected this tool call.",
    ]


def test_checkpoint_replaces_earlier_history() -> None:
    history = [
        UserItem(content="old"),
        AssistantItem(content="old answer"),
        CompactionCheckpoint(summary="we did things"),
        UserItem(content="new"),
        NotificationItem(content="display only"),
        CompactionFailedItem(error="ignored"),
    ]

    messages = to_chat_messages(history)

    assert messages == [
        {"role": "user", "content": "Summary of the conversation so far:\n\nwe did things"},
        {"role": "user", "content": "new"},
    ]


def test_malformed_call_is_reported_to_model() -> None:
    messages = to_chat_messages([MalformedToolCall(error="Invalid JSON", raw="{")])
    assert "malformed" in messages[0]["content"]


def test_embedded_tool_calls_are_parsed() -> None:
    text = (
        "Sure.<|tool_calls_begin|><|tool_call_begin|>read<|tool_sep|>"
        '{"file_path": "x"}<|tool_call_end|><|tool_calls_end|>'
    )

    calls = parse_embedded_tool_calls(text)

    assert len(calls) == 1
    assert calls[0]["name"] == "read"
    assert calls[0]["arguments"] == '{"file_path": "x"}'
    assert calls[0]["id"].startswith("parsed_read_0_")
    assert strip_embedded_tool_calls(text) == "Sure."


def test_stylized_markers_are_normalized() -> None:
    assert normalize_tool_marker_text("＜｜tool▁calls▁begin｜＞") == "<|tool_calls_begin|>"
    assert parse_embedded_tool_calls("no markers here") == []
