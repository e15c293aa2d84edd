"""Parsing for tool calls embedded in assistant text.

Some OpenAI-compatible backends emit tool calls as delimited markers inside the
content stream (``<|tool_calls_begin|>...<|tool_calls_end|>``) instead of the
structured ``tool_calls`` field.
"""

from __future__ import annotations

import re
import uuid
from typing import Any

__all__ = [
    "TOOL_MARKER_TRANSLATION",
    "TOOL_CALLS_BLOCK_RE",
    "TOOL_CALL_ENTRY_RE",
    "parse_embedded_tool_calls",
    "parse_tool_call_entries",
    "strip_embedded_tool_calls",
    "normalize_tool_marker_text",
    "parsed_tool_call_id",
]

# Normalizes stylized glyphs inside <|tool ...|> markers emitted by some models.
TOOL_MARKER_TRANSLATION = str.maketrans(
    {
        ord("＜"): "<",
        ord("﹤"): "<",
        ord("〈"): "<",
        ord("＞"): ">",
        ord("﹥"): ">",
        ord("〉"): ">",
        ord("｜"): "|",
        ord("￨"): "|",
        ord("│"): "|",
        ord("▁"): "_",
        ord("\u00a0"): " ",
        ord("\u200b"): " ",
        ord("\u3000"): " ",
        ord("\ufeff"): " ",
    }
)

TOOL_CALLS_BLOCK_RE = re.compile(
    r"<\s*\|?\s*tool[\s_]*calls[\s_]*begin\s*\|?\s*>(?P<body>.*?)<\s*\|?\s*tool[\s_]*calls[\s_]*end\s*\|?\s*>",
    re.IGNORECASE | re.DOTALL,
)

TOOL_CALL_ENTRY_RE = re.compile(
    r"<\s*\|?\s*tool[\s_]*call[\s_]*begin\s*\|?\s*>(?P<name>.*?)<\s*\|?\s*tool[\s_]*sep\s*\|?\s*>(?P<args>.*?)<\s*\|?\s*tool[\s_]*call[\s_]*end\s*\|?\s*>",
    re.IGNORECASE | re.DOTALL,
)


def normalize_tool_marker_text(text: str) -> str:
    """Normalize stylized Unicode glyphs to ASCII equivalents for tool parsing."""
    return text.translate(TOOL_MARKER_TRANSLATION)


def parse_embedded_tool_calls(text: str, start_index: int = 0) -> list[dict[str, Any]]:
    """Return ``{id, name, arguments, index}`` dicts for each embedded call.

    ``arguments`` is the raw argument text; JSON decoding is left to the caller
    so malformed arguments can be reported instead of dropped.
    """
    if not text or not isinstance(text, str):
        return []
    match = TOOL_CALLS_BLOCK_RE.search(normalize_tool_marker_text(text))
    if not match:
        return []
    return parse_tool_call_entries(match.group("body") or "", start_index)


def parse_tool_call_entries(body: str, start_index: int = 0) -> list[dict[str, Any]]:
    if not body or not isinstance(body, str):
        return []
    calls: list[dict[str, Any]] = []
    for idx, entry_match in enumerate(TOOL_CALL_ENTRY_RE.finditer(normalize_tool_marker_text(body))):
        name = (entry_match.group("name") or "").strip().strip("\"' \t\n\r")
        args_raw = (entry_match.group("args") or "").strip()
        calls.append(
            {
                "id": parsed_tool_call_id(name, idx + start_index),
                "name": name,
                "arguments": args_raw,
                "index": idx + start_index,
            }
        )
    return calls


def strip_embedded_tool_calls(text: str) -> str:
    """Remove the tool-call block from ``text``, leaving the surrounding prose."""
    if not text:
        return ""
    return TOOL_CALLS_BLOCK_RE.sub("", normalize_tool_marker_text(text)).strip()


def parsed_tool_call_id(name: str, index: int) -> str:
    """Generate a unique tool call ID for parsed tool calls."""
    return f"parsed_{name}_{index}_{uuid.uuid4().hex[:8]}"
