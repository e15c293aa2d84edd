"""History compaction: decide when to summarize and produce the summary."""

from __future__ import annotations

import json
import logging
from typing import Any, Sequence

from ..client import ModelTransport, TokenHandler
from ..errors import CompactionRequestError
from ..ir import AssistantItem, CompactionCheckpoint, UserItem, to_chat_messages
from .abort import AbortSignal
from .runtime_config import CompactionConfig

__all__ = ["AutoCompactor", "COMPACTION_SYSTEM_PROMPT", "COMPACTION_REQUEST"]

LOGGER = logging.getLogger(__name__)

COMPACTION_SYSTEM_PROMPT = (
    "You compress coding-agent conversations. Produce a faithful summary that lets the "
    "agent continue the work without the original messages."
)

COMPACTION_REQUEST = """Summarize the conversation above so it can replace the full history.

Include:
- The user's goals and any constraints they stated
- Files read or modified, with the relevant details of each change
- Decisions made and the reasoning behind them
- Work that is still pending, and the next step

Respond with the summary only."""

_MESSAGE_OVERHEAD_TOKENS = 4


class AutoCompactor:
    """Summarizes history once it nears the model's context window."""

    def __init__(self, transport: ModelTransport, config: CompactionConfig | None = None, *, model: str | None = None) -> None:
        self._transport = transport
        self._config = (config or CompactionConfig()).clamp()
        self._model = model

    @property
    def config(self) -> CompactionConfig:
        return self._config

    def estimate_tokens(self, messages: Sequence[Any]) -> int:
        total = 0
        for message in to_chat_messages(messages):
            content = message.get("content") or ""
            total += self._transport.count_tokens(str(content), estimate_only=True) + _MESSAGE_OVERHEAD_TOKENS
            for call in message.get("tool_calls") or ():
                total += self._transport.count_tokens(json.dumps(call, ensure_ascii=False), estimate_only=True)
        return total

    def should_autocompact(self, messages: Sequence[Any]) -> bool:
        """True when the history since the last checkpoint exceeds the threshold."""

        if not messages:
            return False
        tokens = self.estimate_tokens(messages)
        threshold = self._config.token_threshold
        if tokens > threshold:
            LOGGER.debug("History at %s tokens exceeds compaction threshold %s", tokens, threshold)
            return True
        return False

    async def summarize(
        self,
        messages: Sequence[Any],
        on_tokens: TokenHandler | None = None,
        abort_signal: AbortSignal | None = None,
    ) -> str | None:
        """Stream a tool-less summarization turn; ``None`` when aborted or empty."""

        request = [*messages, UserItem(content=COMPACTION_REQUEST)]
        result = await self._transport.run(
            request,
            tools=None,
            on_tokens=on_tokens,
            system_prompt=COMPACTION_SYSTEM_PROMPT,
            abort_signal=abort_signal,
            model=self._model,
        )
        if abort_signal is not None and abort_signal.aborted:
            return None
        if not result.success:
            raise CompactionRequestError(result.request_error, result.curl)
        summary = "\n".join(
            item.content.strip() for item in result.output if isinstance(item, AssistantItem) and item.content.strip()
        )
        return summary or None

    async def compact(
        self,
        messages: Sequence[Any],
        on_tokens: TokenHandler | None = None,
        abort_signal: AbortSignal | None = None,
    ) -> CompactionCheckpoint | None:
        summary = await self.summarize(messages, on_tokens, abort_signal)
        if summary is None:
            return None
        return CompactionCheckpoint(summary=summary)
