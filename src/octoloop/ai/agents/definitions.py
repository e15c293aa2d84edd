"""Agent definitions and markdown/YAML frontmatter parsing."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import PurePath
from typing import Any, Literal, Mapping

import yaml

LOGGER = logging.getLogger(__name__)

AgentMode = Literal["primary", "subagent", "all"]

AGENT_FILE_EXT = ".md"
MAX_NAME_LENGTH = 64
MAX_DESCRIPTION_LENGTH = 1024
AGENT_MODES: tuple[str, ...] = ("primary", "subagent", "all")
_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9]+(-[a-zA-Z0-9]+)*$")


@dataclass(slots=True)
class Agent:
    """A primary agent or delegation target.

    ``tools`` maps tool names (or ``"*"``) to allow/deny flags; ``None`` allows
    every tool. ``model`` overrides the session model when set.
    """

    name: str
    mode: str = "primary"
    prompt: str = ""
    path: str = ""
    description: str | None = None
    hidden: bool = False
    color: str | None = None
    model: str | None = None
    steps: int | None = None
    temperature: float | None = None
    top_p: float | None = None
    tools: dict[str, bool] | None = None
    source_file_path: str | None = None
    native: bool = False


def validate_agent(agent: Agent) -> list[str]:
    """Return a list of validation problems; empty when the agent is valid."""

    errors: list[str] = []

    if not agent.name:
        errors.append("name is required")
    elif not isinstance(agent.name, str):
        errors.append("name must be a string")
    else:
        if len(agent.name) > MAX_NAME_LENGTH:
            errors.append(f"name exceeds {MAX_NAME_LENGTH} characters")
        if not _NAME_PATTERN.match(agent.name):
            errors.append("name must be alphanumeric with hyphens, no leading/trailing/consecutive hyphens")

    if agent.description is not None and not isinstance(agent.description, str):
        errors.append("description must be a string")
    elif agent.description and len(agent.description) > MAX_DESCRIPTION_LENGTH:
        errors.append(f"description exceeds {MAX_DESCRIPTION_LENGTH} characters")

    if agent.mode not in AGENT_MODES:
        errors.append('mode must be one of: "primary", "subagent", "all"')

    if agent.steps is not None and (
        isinstance(agent.steps, bool) or not isinstance(agent.steps, int) or agent.steps <= 0
    ):
        errors.append("steps must be a positive integer")

    if agent.tools is not None:
        if not isinstance(agent.tools, Mapping):
            errors.append("tools must be a mapping of tool names to booleans")
        else:
            for name, value in agent.tools.items():
                if not isinstance(name, str) or not name.strip():
                    errors.append("tools keys must be non-empty strings")
                if not isinstance(value, bool):
                    errors.append(f"tools.{name} must be boolean")

    if agent.temperature is not None and not _number_between(agent.temperature, 0, 2):
        errors.append("temperature must be a number between 0 and 2")

    if agent.top_p is not None and not _number_between(agent.top_p, 0, 1):
        errors.append("top_p must be a number between 0 and 1")

    return errors


def parse_agent_content(content: str, file_path: str) -> Agent | None:
    """Parse an agent markdown file; return ``None`` when it is invalid.

    Files without frontmatter become primary agents named after the file with
    the whole body as prompt.
    """

    source = PurePath(file_path)
    base_name = source.stem
    dir_path = str(source.parent)

    split = _split_frontmatter(content)
    if split is None:
        fallback = Agent(
            name=base_name,
            mode="primary",
            prompt=content.strip(),
            path=dir_path,
            source_file_path=file_path,
        )
        return None if validate_agent(fallback) else fallback

    frontmatter_text, body = split
    try:
        frontmatter = yaml.safe_load(frontmatter_text)
    except yaml.YAMLError as exc:
        LOGGER.debug("Invalid agent frontmatter in %s: %s", file_path, exc)
        return None
    if not isinstance(frontmatter, dict):
        return None

    top_p = frontmatter.get("topP")
    if top_p is None:
        top_p = frontmatter.get("top_p")
    parsed = Agent(
        name=frontmatter.get("name") or base_name,
        description=frontmatter.get("description"),
        mode=frontmatter.get("mode") or "primary",
        hidden=bool(frontmatter.get("hidden", False)),
        color=frontmatter.get("color"),
        model=frontmatter.get("model"),
        steps=frontmatter.get("steps"),
        temperature=frontmatter.get("temperature"),
        top_p=top_p,
        tools=frontmatter.get("tools"),
        prompt=body,
        path=dir_path,
        source_file_path=file_path,
    )
    errors = validate_agent(parsed)
    if errors:
        LOGGER.debug("Agent %s failed validation: %s", file_path, ", ".join(errors))
        return None
    return parsed


def _split_frontmatter(content: str) -> tuple[str, str] | None:
    normalized = content.replace("\r\n", "\n")
    if not normalized.startswith("---\n"):
        return None
    rest = normalized[4:]
    end_index = rest.find("\n---")
    if end_index == -1:
        return None
    return rest[:end_index], rest[end_index + 4 :].strip()


def _number_between(value: Any, low: float, high: float) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return low <= value <= high


__all__ = [
    "AGENT_FILE_EXT",
    "AGENT_MODES",
    "Agent",
    "AgentMode",
    "parse_agent_content",
    "validate_agent",
]
