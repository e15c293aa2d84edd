"""Wire format for finalized delegation results.

A single observation is embedded in the delegation tool output as::

    task_id: <id>
    task_subagent: <name>
    task_description: <text>

    <task_trace>
    ...
    </task_trace>

    <task_result>
    ...
    </task_result>

A batch starts with ``task_parallel_count: <n>`` followed by ``n`` such blocks,
each wrapped in ``<task_observation>`` tags.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable

__all__ = [
    "TaskObservation",
    "SINGLE_TRACE_CHARS",
    "SINGLE_RESULT_CHARS",
    "BATCH_TRACE_CHARS",
    "BATCH_RESULT_CHARS",
    "build_observation_output",
    "build_parallel_observation_output",
    "parse_task_observation_block",
    "parse_task_observations",
    "parse_task_observation",
]

SINGLE_TRACE_CHARS = 4_000
SINGLE_RESULT_CHARS = 2_000
BATCH_TRACE_CHARS = 3_000
BATCH_RESULT_CHARS = 1_500
_TRUNCATED = "\n... (truncated)"

_TASK_ID_RE = re.compile(r"^task_id:[ \t]*(.+)$", re.MULTILINE)
_TASK_SUBAGENT_RE = re.compile(r"^task_subagent:[ \t]*(.+)$", re.MULTILINE)
_TASK_DESCRIPTION_RE = re.compile(r"^task_description:[ \t]*(.+)$", re.MULTILINE)
_TRACE_RE = re.compile(r"<task_trace>\n?(.*?)\n?</task_trace>", re.DOTALL)
_RESULT_RE = re.compile(r"<task_result>\n?(.*?)\n?</task_result>", re.DOTALL)
_OBSERVATION_RE = re.compile(r"<task_observation>\n?(.*?)\n?</task_observation>", re.DOTALL)


@dataclass(slots=True)
class TaskObservation:
    task_id: str
    subagent_name: str
    description: str
    trace: str = ""
    result: str = ""


def _truncate(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return f"{text[:max_chars]}{_TRUNCATED}"


def _block_lines(observation: TaskObservation, trace_chars: int, result_chars: int) -> list[str]:
    return [
        f"task_id: {observation.task_id}",
        f"task_subagent: {observation.subagent_name}",
        f"task_description: {observation.description}",
        "",
        "<task_trace>",
        _truncate(observation.trace, trace_chars),
        "</task_trace>",
        "",
        "<task_result>",
        _truncate(observation.result, result_chars),
        "</task_result>",
    ]


def build_observation_output(observation: TaskObservation) -> str:
    return "\n".join(_block_lines(observation, SINGLE_TRACE_CHARS, SINGLE_RESULT_CHARS))


def build_parallel_observation_output(observations: Iterable[TaskObservation]) -> str:
    observations = list(observations)
    sections = [
        "\n".join(
            ["<task_observation>", *_block_lines(item, BATCH_TRACE_CHARS, BATCH_RESULT_CHARS), "</task_observation>"]
        )
        for item in observations
    ]
    return "\n".join([f"task_parallel_count: {len(observations)}", "", *sections])


def parse_task_observation_block(content: str) -> TaskObservation | None:
    """Parse one block; ``None`` when a required header field is missing."""

    task_id = _first_group(_TASK_ID_RE, content)
    subagent_name = _first_group(_TASK_SUBAGENT_RE, content)
    description = _first_group(_TASK_DESCRIPTION_RE, content)
    if not task_id or not subagent_name or not description:
        return None
    return TaskObservation(
        task_id=task_id,
        subagent_name=subagent_name,
        description=description,
        trace=_first_group(_TRACE_RE, content),
        result=_first_group(_RESULT_RE, content),
    )


def parse_task_observations(content: str) -> list[TaskObservation]:
    """Parse a single or batch delegation output; unparsable blocks are skipped."""

    wrapped = _OBSERVATION_RE.findall(content or "")
    if wrapped:
        parsed = (parse_task_observation_block(block) for block in wrapped)
        return [item for item in parsed if item is not None]
    single = parse_task_observation_block(content or "")
    return [single] if single is not None else []


def parse_task_observation(content: str) -> TaskObservation | None:
    observations = parse_task_observations(content)
    return observations[0] if observations else None


def _first_group(pattern: re.Pattern[str], content: str) -> str:
    match = pattern.search(content)
    if match is None:
        return ""
    return match.group(1).strip()
