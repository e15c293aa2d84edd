"""Async AI client wrapper built around OpenAI-compatible endpoints."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import math
import shlex
from dataclasses import dataclass, field
from typing import (
    TYPE_CHECKING,
    Any,
    AsyncGenerator,
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    MutableMapping,
    Protocol,
    Sequence,
    cast,
)

import httpx
import tiktoken
from openai import APIConnectionError, APIError, APIStatusError, AsyncOpenAI
from openai import RateLimitError as OpenAIRateLimitError
from openai.lib.streaming.chat import ChatCompletionStreamEvent
from openai.types.chat import ChatCompletionMessageParam, ChatCompletionToolParam
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from .errors import PaymentError, RateLimitError
from .ir import AssistantItem, MalformedToolCall, ToolCallRequest, ToolFunction, to_chat_messages
from .tool_call_parser import parse_embedded_tool_calls, strip_embedded_tool_calls

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .orchestration.abort import AbortSignal

LOGGER = logging.getLogger(__name__)
_DEFAULT_BYTES_PER_TOKEN = 4
_REDACTED = "[REDACTED]"
_TRANSIENT_ERRORS = (APIConnectionError, OpenAIRateLimitError, httpx.TimeoutException)

TokenHandler = Callable[[str, str], None]


class TokenCounterProtocol(Protocol):
    """Protocol describing tokenizer implementations."""

    model_name: str | None

    def count(self, text: str) -> int:
        """Return the precise token count for *text*."""
        ...

    def estimate(self, text: str) -> int:
        """Return a deterministic fallback estimate when precise counts fail."""
        ...


class ModelTransport(Protocol):
    """LLM transport boundary consumed by the arc engine and its collaborators."""

    async def run(
        self,
        messages: Sequence[Any],
        *,
        tools: Sequence[Any] | None = None,
        on_tokens: TokenHandler | None = None,
        system_prompt: str | None = None,
        abort_signal: "AbortSignal | None" = None,
        model: str | None = None,
        temperature: float | None = None,
    ) -> "TransportResult":
        ...

    def count_tokens(self, text: str, *, estimate_only: bool = False) -> int:
        ...


class ApproxByteCounter(TokenCounterProtocol):
    """Deterministic fallback counter that estimates tokens via byte length."""

    def __init__(self, *, model_name: str | None = None, charset: str = "utf-8", bytes_per_token: int = _DEFAULT_BYTES_PER_TOKEN) -> None:
        self.model_name = model_name
        self._charset = charset
        self._bytes_per_token = max(1, int(bytes_per_token))

    def count(self, text: str) -> int:
        return self.estimate(text)

    def estimate(self, text: str) -> int:
        if not text:
            return 0
        data = text.encode(self._charset, errors="ignore")
        return max(1, math.ceil(len(data) / self._bytes_per_token))


class TiktokenCounter(TokenCounterProtocol):
    """Token counter backed by OpenAI's tiktoken package."""

    def __init__(self, model_name: str, *, encoding_name: str | None = None) -> None:
        if not model_name:
            raise ValueError("model_name is required for TiktokenCounter")
        self.model_name = model_name
        self._encoding = self._load_encoding(model_name, encoding_name)
        self._fallback = ApproxByteCounter(model_name=model_name)

    def count(self, text: str) -> int:
        if not text:
            return 0
        try:
            return len(self._encoding.encode(text, disallowed_special=()))
        except Exception:  # pragma: no cover - defensive guard
            LOGGER.debug("tiktoken encode failed; falling back to approximation", exc_info=True)
            return self._fallback.estimate(text)

    def estimate(self, text: str) -> int:
        return self._fallback.estimate(text)

    def _load_encoding(self, model_name: str, encoding_name: str | None):
        try:
            if encoding_name:
                return tiktoken.get_encoding(encoding_name)
            return tiktoken.encoding_for_model(model_name)
        except KeyError:
            LOGGER.debug("Falling back to cl100k_base encoding for model %s", model_name)
            return tiktoken.get_encoding("cl100k_base")


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to configure the AI client."""

    base_url: str
    api_key: str
    model: str
    organization: str | None = None
    request_timeout: float | None = 90.0
    temperature: float | None = None
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    default_headers: Mapping[str, str] | None = None
    metadata: Mapping[str, str] | None = None
    debug_logging: bool = False


@dataclass(slots=True)
class AIStreamEvent:
    """Normalized representation of streaming deltas."""

    type: str
    content: str | None = None
    parsed: Any | None = None
    tool_name: str | None = None
    tool_index: int | None = None
    tool_arguments: str | None = None
    arguments_delta: str | None = None
    tool_call_id: str | None = None


@dataclass(slots=True)
class TransportResult:
    """Outcome of one streamed model turn.

    ``output`` holds the produced IR items when ``success`` is true; otherwise
    ``request_error`` explains the failure and ``curl`` replays the request.
    """

    success: bool
    output: list[Any] = field(default_factory=list)
    request_error: str = ""
    curl: str = ""


@dataclass(slots=True)
class _TurnAccumulator:
    content: str = ""
    reasoning: str = ""
    tool_name: str | None = None
    tool_arguments: str = ""
    tool_call_id: str | None = None
    tool_call_ids: dict[int, str] = field(default_factory=dict)
    extra_tool_calls: int = 0


class AIClient:
    """Async client providing streaming helpers with retry semantics."""

    def __init__(
        self,
        settings: ClientSettings,
        *,
        client: AsyncOpenAI | None = None,
        token_counter: TokenCounterProtocol | None = None,
    ) -> None:
        self._settings = settings
        self._client = client or self._build_client(settings)
        self._token_counter = token_counter or self._build_token_counter(settings.model)

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    async def stream_chat(
        self,
        messages: Iterable[Mapping[str, Any] | ChatCompletionMessageParam],
        *,
        tools: Iterable[ChatCompletionToolParam] | None = None,
        temperature: float | None = 0.2,
        model: str | None = None,
        metadata: Mapping[str, str] | None = None,
        **extra_params: Any,
    ) -> AsyncGenerator[AIStreamEvent, None]:
        """Stream chat completions for the provided messages."""

        payload = self._build_chat_payload(
            messages=self._coerce_messages(messages),
            tools=tools,
            temperature=temperature,
            model=model,
            metadata=metadata,
            extra_params=extra_params,
        )
        LOGGER.debug(
            "Starting streamed chat completion via %s with %s message(s)",
            payload["model"],
            len(payload["messages"]),
        )
        if self._settings.debug_logging:
            self._log_prompt_payload(payload)

        # Only failures before the first yielded event are retried.
        yielded = False

        def _may_retry(exc: BaseException) -> bool:
            return not yielded and isinstance(exc, _TRANSIENT_ERRORS)

        async for attempt in self._retrying(_may_retry):
            with attempt:
                async with self._client.chat.completions.stream(**payload) as stream:
                    async for event in stream:
                        normalized = self._normalize_stream_event(event)
                        if normalized is not None:
                            yielded = True
                            yield normalized
                break

    async def run(
        self,
        messages: Sequence[Any],
        *,
        tools: Sequence[ChatCompletionToolParam] | None = None,
        on_tokens: TokenHandler | None = None,
        system_prompt: str | None = None,
        abort_signal: "AbortSignal | None" = None,
        model: str | None = None,
        temperature: float | None = None,
    ) -> TransportResult:
        """Stream one model turn for IR ``messages`` and convert it to output IR.

        Token deltas are forwarded to ``on_tokens(text, kind)`` where ``kind`` is
        ``content``, ``reasoning`` or ``tool``. HTTP 402 raises
        :class:`PaymentError`, a persistent 429 raises :class:`RateLimitError`;
        any other transport failure is reported through the returned result.
        """

        chat_messages = to_chat_messages(messages, system_prompt)
        tool_list = list(tools or [])
        curl = self.build_curl(chat_messages, tool_list, model=model)
        acc = _TurnAccumulator()
        emit = on_tokens or (lambda _text, _kind: None)

        stream = self.stream_chat(
            chat_messages,
            tools=tool_list or None,
            temperature=self._settings.temperature if temperature is None else temperature,
            model=model,
        )
        try:
            while True:
                event = await _next_event(stream, abort_signal)
                if event is None or (abort_signal is not None and abort_signal.aborted):
                    break
                self._accumulate(acc, event, emit)
        except OpenAIRateLimitError as exc:
            raise RateLimitError(_describe_error(exc), curl) from exc
        except APIStatusError as exc:
            if exc.status_code == 402:
                raise PaymentError(_describe_error(exc), curl) from exc
            LOGGER.warning("Chat completion failed with HTTP %s: %s", exc.status_code, exc)
            return TransportResult(success=False, request_error=_describe_error(exc), curl=curl)
        except (APIError, APIConnectionError, httpx.HTTPError) as exc:
            LOGGER.warning("Chat completion failed: %s", exc)
            return TransportResult(success=False, request_error=_describe_error(exc), curl=curl)
        finally:
            await stream.aclose()

        if abort_signal is not None and abort_signal.aborted:
            return TransportResult(success=True, output=[], curl=curl)
        return TransportResult(success=True, output=self._build_output(acc), curl=curl)

    def build_curl(
        self,
        chat_messages: Sequence[Mapping[str, Any]],
        tools: Sequence[Mapping[str, Any]] | None = None,
        *,
        model: str | None = None,
    ) -> str:
        """Return a replayable ``curl`` command with the API key redacted."""

        body: Dict[str, Any] = {
            "model": model or self._settings.model,
            "messages": list(chat_messages),
            "stream": True,
        }
        if tools:
            body["tools"] = list(tools)
        url = f"{self._settings.base_url.rstrip('/')}/chat/completions"
        parts = [
            "curl",
            "-X",
            "POST",
            shlex.quote(url),
            "-H",
            shlex.quote("Content-Type: application/json"),
            "-H",
            shlex.quote(f"Authorization: Bearer {_REDACTED}"),
            "-d",
            shlex.quote(json.dumps(body, ensure_ascii=False, default=str)),
        ]
        return " ".join(parts)

    def _build_client(self, settings: ClientSettings) -> AsyncOpenAI:
        headers = dict(settings.default_headers) if settings.default_headers else None
        return AsyncOpenAI(
            api_key=settings.api_key,
            base_url=settings.base_url,
            organization=settings.organization,
            timeout=settings.request_timeout,
            default_headers=headers,
        )

    def get_token_counter(self) -> TokenCounterProtocol:
        return self._token_counter

    def count_tokens(self, text: str, *, estimate_only: bool = False) -> int:
        if not text:
            return 0
        counter = self._token_counter
        if estimate_only:
            return counter.estimate(text)
        try:
            return counter.count(text)
        except Exception:  # pragma: no cover - defensive guard
            LOGGER.debug("count_tokens failed; falling back to estimate", exc_info=True)
            return counter.estimate(text)

    def _build_token_counter(self, model_name: str) -> TokenCounterProtocol:
        model_name = (model_name or "").strip()
        if not model_name:
            return ApproxByteCounter()
        try:
            return TiktokenCounter(model_name)
        except Exception as exc:  # pragma: no cover - network-less encodings
            LOGGER.debug("Failed to initialize tiktoken counter for %s: %s", model_name, exc)
            return ApproxByteCounter(model_name=model_name)

    def _retrying(self, should_retry: Callable[[BaseException], bool]) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_retries)),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_seconds,
                max=self._settings.retry_max_seconds,
            ),
            retry=retry_if_exception(should_retry),
        )

    def _coerce_messages(
        self, messages: Iterable[Mapping[str, Any] | ChatCompletionMessageParam]
    ) -> List[ChatCompletionMessageParam]:
        normalized: List[ChatCompletionMessageParam] = []
        for message in messages:
            if isinstance(message, MutableMapping):
                normalized.append(cast(ChatCompletionMessageParam, dict(message)))
            else:
                try:
                    normalized.append(cast(ChatCompletionMessageParam, dict(message)))
                except TypeError as exc:  # pragma: no cover - defensive guard
                    raise TypeError("Messages must be mapping-like objects") from exc
        if not normalized:
            raise ValueError("At least one message is required to start a chat")
        return normalized

    def _build_chat_payload(
        self,
        *,
        messages: Sequence[ChatCompletionMessageParam],
        tools: Iterable[ChatCompletionToolParam] | None,
        temperature: float | None,
        model: str | None,
        metadata: Mapping[str, str] | None,
        extra_params: Mapping[str, Any],
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": model or self._settings.model,
            "messages": list(messages),
        }

        merged_metadata = self._merge_metadata(metadata)
        if merged_metadata:
            payload["metadata"] = merged_metadata
        if tools:
            payload["tools"] = list(tools)
        if temperature is not None:
            payload["temperature"] = temperature
        if extra_params:
            payload.update(extra_params)

        return payload

    def _merge_metadata(self, runtime_metadata: Mapping[str, str] | None) -> Dict[str, str] | None:
        combined: Dict[str, str] = {}
        if self._settings.metadata:
            combined.update(self._settings.metadata)
        if runtime_metadata:
            combined.update(runtime_metadata)
        return combined or None

    def _normalize_stream_event(self, event: ChatCompletionStreamEvent[Any]) -> AIStreamEvent | None:
        event_type = getattr(event, "type", None)
        if event_type is None:
            return None

        if event_type == "chunk":
            return self._normalize_chunk(getattr(event, "chunk", None))
        if event_type == "content.delta":
            delta_text = getattr(event, "delta", None)
            if delta_text:
                return AIStreamEvent(type=event_type, content=str(delta_text))
            return None
        if event_type == "content.done":
            return AIStreamEvent(
                type=event_type,
                content=getattr(event, "content", None),
                parsed=getattr(event, "parsed", None),
            )
        if event_type == "tool_calls.function.arguments.delta":
            return AIStreamEvent(
                type=event_type,
                tool_name=getattr(event, "name", None),
                tool_index=getattr(event, "index", None),
                tool_arguments=getattr(event, "arguments", None),
                arguments_delta=getattr(event, "arguments_delta", None),
                parsed=getattr(event, "parsed_arguments", None),
                tool_call_id=getattr(event, "id", None)
                or getattr(event, "tool_call_id", None),
            )
        if event_type == "tool_calls.function.arguments.done":
            return AIStreamEvent(
                type=event_type,
                tool_name=getattr(event, "name", None),
                tool_index=getattr(event, "index", None),
                tool_arguments=getattr(event, "arguments", None),
                parsed=getattr(event, "parsed_arguments", None),
                tool_call_id=getattr(event, "id", None)
                or getattr(event, "tool_call_id", None),
            )
        return None

    def _normalize_chunk(self, chunk: Any) -> AIStreamEvent | None:
        """Extract reasoning text and tool call ids the higher level events omit."""

        choices = getattr(chunk, "choices", None) or []
        if not choices:
            return None
        delta = getattr(choices[0], "delta", None)
        if delta is None:
            return None
        reasoning = getattr(delta, "reasoning_content", None) or getattr(delta, "reasoning", None)
        tool_call_id = None
        tool_index = None
        for tool_delta in getattr(delta, "tool_calls", None) or []:
            identifier = getattr(tool_delta, "id", None)
            if identifier:
                tool_call_id = str(identifier)
                tool_index = getattr(tool_delta, "index", None)
                break
        if not reasoning and tool_call_id is None:
            return None
        return AIStreamEvent(
            type="chunk",
            content=str(reasoning) if reasoning else None,
            tool_call_id=tool_call_id,
            tool_index=tool_index,
        )

    def _accumulate(self, acc: _TurnAccumulator, event: AIStreamEvent, emit: TokenHandler) -> None:
        if event.type == "chunk":
            if event.content:
                acc.reasoning += event.content
                emit(event.content, "reasoning")
            if event.tool_call_id is not None:
                acc.tool_call_ids[event.tool_index or 0] = event.tool_call_id
        elif event.type == "content.delta" and event.content:
            acc.content += event.content
            emit(event.content, "content")
        elif event.type == "tool_calls.function.arguments.delta":
            if (event.tool_index or 0) != 0:
                return
            if event.tool_name:
                acc.tool_name = event.tool_name
            if event.arguments_delta:
                acc.tool_arguments += event.arguments_delta
                emit(event.arguments_delta, "tool")
        elif event.type == "tool_calls.function.arguments.done":
            index = event.tool_index or 0
            if index != 0:
                acc.extra_tool_calls += 1
                return
            acc.tool_name = event.tool_name or acc.tool_name
            if event.tool_arguments is not None:
                acc.tool_arguments = event.tool_arguments
            acc.tool_call_id = event.tool_call_id or acc.tool_call_ids.get(index)

    def _build_output(self, acc: _TurnAccumulator) -> list[Any]:
        content = acc.content
        tool_name = acc.tool_name
        raw_arguments = acc.tool_arguments
        tool_call_id = acc.tool_call_id or acc.tool_call_ids.get(0)

        if tool_name is None:
            embedded = parse_embedded_tool_calls(content)
            if embedded:
                first = embedded[0]
                tool_name = first["name"]
                raw_arguments = first["arguments"]
                tool_call_id = first["id"]
                content = strip_embedded_tool_calls(content)
        if acc.extra_tool_calls:
            LOGGER.debug("Ignoring %s additional tool call(s) in one turn", acc.extra_tool_calls)

        reasoning = acc.reasoning or None
        output_tokens = self.count_tokens(content + raw_arguments, estimate_only=True)
        if tool_name is None:
            if not content and not reasoning:
                return []
            return [AssistantItem(content=content, reasoning_content=reasoning, output_tokens=output_tokens)]

        call_id = tool_call_id or f"call_{tool_name}"
        try:
            arguments = json.loads(raw_arguments) if raw_arguments.strip() else {}
        except json.JSONDecodeError as exc:
            LOGGER.debug("Malformed tool call arguments for %s: %s", tool_name, exc)
            return [
                AssistantItem(content=content, reasoning_content=reasoning, output_tokens=output_tokens),
                MalformedToolCall(
                    error=f"Invalid JSON arguments for tool {tool_name}: {exc}",
                    tool_call_id=call_id,
                    tool_name=tool_name,
                    raw=raw_arguments,
                ),
            ]
        if not isinstance(arguments, dict):
            return [
                AssistantItem(content=content, reasoning_content=reasoning, output_tokens=output_tokens),
                MalformedToolCall(
                    error=f"Arguments for tool {tool_name} must be a JSON object",
                    tool_call_id=call_id,
                    tool_name=tool_name,
                    raw=raw_arguments,
                ),
            ]
        request = ToolCallRequest(tool_call_id=call_id, function=ToolFunction(name=tool_name, arguments=arguments))
        return [
            AssistantItem(
                content=content,
                reasoning_content=reasoning,
                tool_call=request,
                output_tokens=output_tokens,
            )
        ]

    def _log_prompt_payload(self, payload: Mapping[str, Any]) -> None:
        try:
            serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        except (TypeError, ValueError):
            LOGGER.debug("AI prompt payload (unserializable): %s", payload)
        else:
            LOGGER.debug("AI prompt payload:\n%s", serialized)

    async def aclose(self) -> None:
        """Close the underlying OpenAI client to release network resources."""

        close = getattr(self._client, "close", None)
        if close is None:
            return
        try:
            result = close()
        except Exception as exc:  # pragma: no cover - defensive guard
            LOGGER.debug("AI client close failed to start: %s", exc)
            return
        if inspect.isawaitable(result):
            await result


async def _next_event(
    stream: AsyncGenerator[AIStreamEvent, None],
    abort_signal: "AbortSignal | None",
) -> AIStreamEvent | None:
    """Return the next stream event, or ``None`` once the stream ends or the turn is aborted.

    A pending ``__anext__`` is raced against the abort signal so a stalled
    backend cannot hold the turn open after the user aborts.
    """

    if abort_signal is None:
        try:
            return await stream.__anext__()
        except StopAsyncIteration:
            return None
    if abort_signal.aborted:
        return None

    next_task = asyncio.ensure_future(stream.__anext__())
    abort_task = asyncio.ensure_future(abort_signal.wait())
    try:
        done, _pending = await asyncio.wait({next_task, abort_task}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        await _cancel_pending(next_task)
        raise
    finally:
        abort_task.cancel()
    if next_task in done:
        try:
            return next_task.result()
        except StopAsyncIteration:
            return None
    await _cancel_pending(next_task)
    return None


async def _cancel_pending(task: "asyncio.Future[Any]") -> None:
    task.cancel()
    try:
        await task
    except (asyncio.CancelledError, StopAsyncIteration):
        pass
    except Exception as exc:
        LOGGER.debug("Stream failed after abort: %s", exc)


def _describe_error(exc: BaseException) -> str:
    status = getattr(exc, "status_code", None)
    message = str(exc) or type(exc).__name__
    if status is not None and str(status) not in message:
        return f"HTTP {status}: {message}"
    return message


__all__ = [
    "AIClient",
    "AIStreamEvent",
    "ApproxByteCounter",
    "ClientSettings",
    "ModelTransport",
    "TiktokenCounter",
    "TokenCounterProtocol",
    "TokenHandler",
    "TransportResult",
]
