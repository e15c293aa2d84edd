"""Tests for the OpenAI-compatible model transport."""

from __future__ import annotations

import asyncio
import json
import shlex
import time
from types import SimpleNamespace
from typing import Any, Iterable, cast

import httpx
import pytest
from openai import APIConnectionError, APIStatusError, AsyncOpenAI
from openai import RateLimitError as OpenAIRateLimitError

from octoloop.ai.client import AIClient, ApproxByteCounter, ClientSettings
from octoloop.ai.errors import PaymentError, RateLimitError
from octoloop.ai.ir import AssistantItem, MalformedToolCall, UserItem
from octoloop.ai.orchestration.abort import AbortController


def _event(type: str, **fields: Any) -> SimpleNamespace:
    return SimpleNamespace(type=type, **fields)


def _reasoning_chunk(text: str) -> SimpleNamespace:
    delta = SimpleNamespace(reasoning_content=text, tool_calls=None)
    return _event("chunk", chunk=SimpleNamespace(choices=[SimpleNamespace(delta=delta)]))


def _tool_id_chunk(call_id: str) -> SimpleNamespace:
    tool_delta = SimpleNamespace(id=call_id, index=0)
    delta = SimpleNamespace(reasoning_content=None, reasoning=None, tool_calls=[tool_delta])
    return _event("chunk", chunk=SimpleNamespace(choices=[SimpleNamespace(delta=delta)]))


class _Stall:
    def __init__(self, seconds: float) -> None:
        self.seconds = seconds


class _FakeStream:
    def __init__(self, events: Iterable[Any]) -> None:
        self._iterator = iter(list(events))

    def __aiter__(self) -> "_FakeStream":
        return self

    async def __anext__(self) -> Any:
        try:
            item = next(self._iterator)
        except StopIteration as exc:
            raise StopAsyncIteration from exc
        if isinstance(item, _Stall):
            await asyncio.sleep(item.seconds)
            return await self.__anext__()
        if isinstance(item, Exception):
            raise item
        return item


class _FakeStreamContext:
    def __init__(self, events: Iterable[Any]) -> None:
        self._events = list(events)

    async def __aenter__(self) -> _FakeStream:
        return _FakeStream(self._events)

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        return False


class _FakeCompletions:
    def __init__(self, events: Iterable[Any] = (), error: Exception | None = None) -> None:
        self._events = list(events)
        self._error = error
        self.calls: list[dict[str, Any]] = []

    def stream(self, **kwargs: Any) -> _FakeStreamContext:
        self.calls.append(kwargs)
        if self._error is not None:
            raise self._error
        return _FakeStreamContext(self._events)


class _ScriptedCompletions:
    """Serves one scripted stream per call; an exception script fails the call itself."""

    def __init__(self, *scripts: Any) -> None:
        self._scripts = list(scripts)
        self.calls: list[dict[str, Any]] = []

    def stream(self, **kwargs: Any) -> _FakeStreamContext:
        self.calls.append(kwargs)
        script = self._scripts.pop(0)
        if isinstance(script, Exception):
            raise script
        return _FakeStreamContext(script)


def _connection_error() -> APIConnectionError:
    return APIConnectionError(request=httpx.Request("POST", "http://local/v1/chat/completions"))


def _client(completions: Any, **settings: Any) -> AIClient:
    fake = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    settings.setdefault("max_retries", 1)
    return AIClient(
        ClientSettings(base_url="http://local/v1", api_key="secret-key", model="stub", **settings),
        client=cast(AsyncOpenAI, fake),
        token_counter=ApproxByteCounter(),
    )


def _status_error(cls: type[APIStatusError], status: int, message: str) -> APIStatusError:
    response = httpx.Response(status, request=httpx.Request("POST", "http://local/v1/chat/completions"))
    return cls(message, response=response, body=None)


@pytest.mark.asyncio
async def test_run_streams_content_and_reasoning() -> None:
    completions = _FakeCompletions(
        [
            _reasoning_chunk("thinking"),
            _event("content.delta", delta="Hel"),
            _event("content.delta", delta="lo"),
            _event("content.done", content="Hello", parsed=None),
        ]
    )
    client = _client(completions)
    tokens: list[tuple[str, str]] = []

    result = await client.run([UserItem(content="hi")], on_tokens=lambda text, kind: tokens.append((kind, text)))

    assert result.success
    assert len(result.output) == 1
    item = result.output[0]
    assert isinstance(item, AssistantItem)
    assert item.content == "Hello"
    assert item.reasoning_content == "thinking"
    assert tokens == [("reasoning", "thinking"), ("content", "Hel"), ("content", "lo")]
    assert completions.calls[0]["messages"] == [{"role": "user", "content": "hi"}]


@pytest.mark.asyncio
async def test_run_passes_system_prompt_model_and_tools() -> None:
    completions = _FakeCompletions([_event("content.delta", delta="ok")])
    client = _client(completions)
    tool = {"type": "function", "function": {"name": "read", "parameters": {"type": "object"}}}

    await client.run([UserItem(content="hi")], tools=[tool], system_prompt="sys", model="other", temperature=0.5)

    payload = completions.calls[0]
    assert payload["model"] == "other"
    assert payload["messages"][0] == {"role": "system", "content": "sys"}
    assert payload["tools"] == [tool]
    assert payload["temperature"] == 0.5


@pytest.mark.asyncio
async def test_run_builds_tool_call() -> None:
    completions = _FakeCompletions(
        [
            _tool_id_chunk("call_42"),
            _event(
                "tool_calls.function.arguments.delta",
                name="read",
                index=0,
                arguments='{"file_path"',
                arguments_delta='{"file_path"',
            ),
            _event(
                "tool_calls.function.arguments.done",
                name="read",
                index=0,
                arguments='{"file_path": "a.py"}',
                parsed_arguments=None,
            ),
        ]
    )
    tokens: list[str] = []

    result = await _client(completions).run([UserItem(content="hi")], on_tokens=lambda text, kind: tokens.append(kind))

    call = result.output[0].tool_call
    assert call.tool_call_id == "call_42"
    assert call.function.name == "read"
    assert call.function.arguments == {"file_path": "a.py"}
    assert tokens == ["tool"]


@pytest.mark.asyncio
async def test_only_first_tool_call_is_kept() -> None:
    completions = _FakeCompletions(
        [
            _event("tool_calls.function.arguments.done", name="read", index=0, arguments="{}", parsed_arguments=None),
            _event("tool_calls.function.arguments.done", name="edit", index=1, arguments="{}", parsed_arguments=None),
        ]
    )

    result = await _client(completions).run([UserItem(content="hi")])

    assert len(result.output) == 1
    assert result.output[0].tool_call.function.name == "read"


@pytest.mark.asyncio
async def test_invalid_arguments_become_malformed_tool_call() -> None:
    completions = _FakeCompletions(
        [_event("tool_calls.function.arguments.done", name="read", index=0, arguments="{bad", parsed_arguments=None)]
    )

    result = await _client(completions).run([UserItem(content="hi")])

    assert isinstance(result.output[0], AssistantItem)
    malformed = result.output[1]
    assert isinstance(malformed, MalformedToolCall)
    assert malformed.tool_name == "read"
    assert malformed.raw == "{bad"


@pytest.mark.asyncio
async def test_embedded_tool_markers_are_extracted() -> None:
    text = (
        "Checking.<|tool_calls_begin|><|tool_call_begin|>read<|tool_sep|>"
        '{"file_path": "b.py"}<|tool_call_end|><|tool_calls_end|>'
    )
    completions = _FakeCompletions([_event("content.delta", delta=text)])

    result = await _client(completions).run([UserItem(content="hi")])

    item = result.output[0]
    assert item.content == "Checking."
    assert item.tool_call.function.arguments == {"file_path": "b.py"}


@pytest.mark.asyncio
async def test_empty_stream_produces_no_output() -> None:
    result = await _client(_FakeCompletions([])).run([UserItem(content="hi")])
    assert result.success
    assert result.output == []


@pytest.mark.asyncio
async def test_abort_stops_consuming_stream() -> None:
    controller = AbortController()
    controller.abort()
    completions = _FakeCompletions([_event("content.delta", delta="ignored")])

    result = await _client(completions).run([UserItem(content="hi")], abort_signal=controller.signal)

    assert result.success
    assert result.output == []


@pytest.mark.asyncio
async def test_payment_required_raises_payment_error() -> None:
    completions = _FakeCompletions(error=_status_error(APIStatusError, 402, "Payment required"))

    with pytest.raises(PaymentError) as excinfo:
        await _client(completions).run([UserItem(content="hi")])

    assert "402" in str(excinfo.value)
    assert excinfo.value.curl.startswith("curl -X POST")


@pytest.mark.asyncio
async def test_persistent_rate_limit_raises() -> None:
    completions = _FakeCompletions(error=_status_error(OpenAIRateLimitError, 429, "Too many requests"))

    with pytest.raises(RateLimitError):
        await _client(completions).run([UserItem(content="hi")])


@pytest.mark.asyncio
async def test_other_http_errors_become_failed_results() -> None:
    completions = _FakeCompletions(error=_status_error(APIStatusError, 500, "Internal error"))

    result = await _client(completions).run([UserItem(content="hi")])

    assert not result.success
    assert result.request_error == "HTTP 500: Internal error"
    assert "secret-key" not in result.curl


def test_build_curl_redacts_api_key() -> None:
    client = _client(_FakeCompletions())

    curl = client.build_curl([{"role": "user", "content": "hi"}], model="m")

    parts = shlex.split(curl)
    assert parts[:4] == ["curl", "-X", "POST", "http://local/v1/chat/completions"]
    assert "Authorization: Bearer [REDACTED]" in parts
    body = json.loads(parts[-1])
    assert body == {"model": "m", "messages": [{"role": "user", "content": "hi"}], "stream": True}


def test_approx_counter() -> None:
    counter = ApproxByteCounter()
    assert counter.count("") == 0
    assert counter.count("abcdefgh") == 2
    assert counter.estimate("a") == 1


@pytest.mark.asyncio
async def test_failure_before_first_event_is_retried() -> None:
    completions = _ScriptedCompletions(
        _connection_error(),
        [_event("content.delta", delta="Hello")],
    )
    client = _client(completions, max_retries=2, retry_min_seconds=0, retry_max_seconds=0)
    tokens: list[str] = []

    result = await client.run([UserItem(content="hi")], on_tokens=lambda text, _kind: tokens.append(text))

    assert result.success
    assert len(completions.calls) == 2
    assert result.output[0].content == "Hello"
    assert tokens == ["Hello"]


@pytest.mark.asyncio
async def test_failure_mid_stream_is_not_replayed() -> None:
    completions = _ScriptedCompletions(
        [_event("content.delta", delta="Hello"), _connection_error()],
        [_event("content.delta", delta="Hello")],
    )
    client = _client(completions, max_retries=2, retry_min_seconds=0, retry_max_seconds=0)
    tokens: list[str] = []

    result = await client.run([UserItem(content="hi")], on_tokens=lambda text, _kind: tokens.append(text))

    assert not result.success
    assert len(completions.calls) == 1
    assert tokens == ["Hello"]
    assert result.curl.startswith("curl")


@pytest.mark.asyncio
async def test_abort_interrupts_stalled_stream() -> None:
    controller = AbortController()
    completions = _FakeCompletions([_Stall(5.0), _event("content.delta", delta="late")])
    asyncio.get_running_loop().call_later(0.05, controller.abort)

    started = time.monotonic()
    result = await asyncio.wait_for(
        _client(completions).run([UserItem(content="hi")], abort_signal=controller.signal),
        timeout=2.0,
    )

    assert time.monotonic() - started < 1.0
    assert result.success
    assert result.output == []


@pytest.mark.asyncio
async def test_settings_temperature_is_the_default() -> None:
    completions = _FakeCompletions([_event("content.delta", delta="ok")])
    client = _client(completions, temperature=0.7)

    await client.run([UserItem(content="hi")])
    await client.run([UserItem(content="hi")], temperature=0.1)

    assert completions.calls[0]["temperature"] == 0.7
    assert completions.calls[1]["temperature"] == 0.1
