"""Single-pass repairs for failed edits and unparsable tool arguments."""

from __future__ import annotations

import difflib
import json
import logging
import re
from typing import Any, Mapping

from ..client import ModelTransport
from ..ir import AssistantItem, UserItem
from .abort import AbortSignal

__all__ = ["EditAutofixer", "match_whitespace_insensitive", "loads_lenient"]

LOGGER = logging.getLogger(__name__)

_FUZZY_THRESHOLD = 0.92
_MAX_SCAN_LINES = 20_000
_MAX_FILE_CHARS_IN_PROMPT = 60_000
_CODE_FENCE_RE = re.compile(r"^```[a-zA-Z0-9_-]*\s*\n(?P<body>.*?)\n?```\s*$", re.DOTALL)
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")

_EDIT_SYSTEM_PROMPT = (
    "You repair failed search-and-replace edits. The search string did not match the file. "
    'Reply with a JSON object {"search": "..."} whose search value is copied exactly from the file, '
    'or {"search": null} if no region corresponds.'
)

_JSON_SYSTEM_PROMPT = (
    "You repair malformed JSON tool arguments. Reply with the corrected JSON object only, "
    "preserving every key and value the author intended."
)


def loads_lenient(raw: str) -> dict[str, Any] | None:
    """Parse ``raw`` as a JSON object after stripping code fences and trailing commas."""

    text = (raw or "").strip()
    if not text:
        return None
    fenced = _CODE_FENCE_RE.match(text)
    if fenced:
        text = fenced.group("body").strip()
    for candidate in (text, _TRAILING_COMMA_RE.sub(r"\1", text)):
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed
    return None


def match_whitespace_insensitive(content: str, search: str) -> str | None:
    """Return the unique region of ``content`` matching ``search`` modulo indentation.

    Exact line matches (after stripping each line) win; otherwise the single
    best ``difflib`` window above the similarity threshold is used.
    """

    search_lines = search.strip("\n").splitlines()
    if not search_lines:
        return None
    file_lines = content.splitlines()
    window = len(search_lines)
    if window > len(file_lines) or len(file_lines) > _MAX_SCAN_LINES:
        return None

    target = [line.strip() for line in search_lines]
    stripped = [line.strip() for line in file_lines]
    exact = [i for i in range(len(file_lines) - window + 1) if stripped[i : i + window] == target]
    if len(exact) == 1:
        start = exact[0]
        return "\n".join(file_lines[start : start + window])
    if exact:
        return None

    target_text = "\n".join(target)
    matcher = difflib.SequenceMatcher(autojunk=False)
    matcher.set_seq2(target_text)
    best_ratio = 0.0
    best_start: int | None = None
    tied = False
    for start in range(len(file_lines) - window + 1):
        matcher.set_seq1("\n".join(stripped[start : start + window]))
        if matcher.quick_ratio() < _FUZZY_THRESHOLD:
            continue
        ratio = matcher.ratio()
        if ratio > best_ratio:
            best_ratio, best_start, tied = ratio, start, False
        elif ratio == best_ratio:
            tied = True
    if best_start is None or tied or best_ratio < _FUZZY_THRESHOLD:
        return None
    return "\n".join(file_lines[best_start : best_start + window])


class EditAutofixer:
    """Re-derives a failed edit's ``search`` text, or repairs malformed JSON."""

    def __init__(self, transport: ModelTransport | None = None, *, model: str | None = None) -> None:
        self._transport = transport
        self._model = model

    async def fix_edit(
        self,
        file_content: str,
        arguments: Mapping[str, Any],
        abort_signal: AbortSignal | None = None,
    ) -> dict[str, Any] | None:
        """Return replacement arguments for a failed edit, or ``None``."""

        search = arguments.get("search")
        if not isinstance(search, str) or not search:
            return None
        local = match_whitespace_insensitive(file_content, search)
        if local is not None and local != search:
            LOGGER.debug("Edit autofix matched %s by whitespace-insensitive search", arguments.get("file_path"))
            return {"search": local}
        if self._transport is None:
            return None

        prompt = (
            f"File: {arguments.get('file_path', '')}\n\n"
            f"<file>\n{file_content[:_MAX_FILE_CHARS_IN_PROMPT]}\n</file>\n\n"
            f"<failed_search>\n{search}\n</failed_search>\n\n"
            f"<replacement>\n{arguments.get('replace', '')}\n</replacement>"
        )
        reply = await self._ask(prompt, _EDIT_SYSTEM_PROMPT, abort_signal)
        if reply is None:
            return None
        parsed = loads_lenient(reply)
        candidate = parsed.get("search") if parsed else None
        if not isinstance(candidate, str) or not candidate or candidate not in file_content:
            LOGGER.debug("Model edit autofix produced no usable search string")
            return None
        return {"search": candidate}

    async def repair_json(self, raw: str, abort_signal: AbortSignal | None = None) -> dict[str, Any] | None:
        """Return the decoded arguments of a malformed tool call, or ``None``."""

        local = loads_lenient(raw)
        if local is not None:
            return local
        if self._transport is None or not raw.strip():
            return None
        reply = await self._ask(raw, _JSON_SYSTEM_PROMPT, abort_signal)
        return loads_lenient(reply) if reply else None

    async def _ask(self, prompt: str, system_prompt: str, abort_signal: AbortSignal | None) -> str | None:
        if self._transport is None:
            raise RuntimeError("autofix transport is not configured")
        result = await self._transport.run(
            [UserItem(content=prompt)],
            tools=None,
            system_prompt=system_prompt,
            abort_signal=abort_signal,
            model=self._model,
            temperature=0.0,
        )
        if not result.success:
            LOGGER.debug("Autofix request failed: %s", result.request_error)
            return None
        text = "".join(item.content for item in result.output if isinstance(item, AssistantItem))
        return text.strip() or None
