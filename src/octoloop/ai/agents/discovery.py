"""Discovery of custom agent markdown files on disk."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Iterator, Sequence

from .definitions import AGENT_FILE_EXT, Agent, parse_agent_content
from .selection import merge_agents

LOGGER = logging.getLogger(__name__)

__all__ = ["default_agent_paths", "discover_agents"]


def default_agent_paths(cwd: Path | None = None, home: Path | None = None) -> list[Path]:
    """Return the agent directories in ascending precedence order."""

    base = Path(cwd) if cwd is not None else Path.cwd()
    paths = [base / "agents", base / ".agents" / "agents"]
    home_dir = home if home is not None else _home_dir()
    if home_dir is not None:
        paths.append(home_dir / ".config" / "octoloop" / "agents")
    return paths


def discover_agents(search_paths: Sequence[Path | str] | None = None) -> list[Agent]:
    """Load agents from ``search_paths`` and merge them over the built-ins.

    Files are visited in sorted order; a later file defining an existing name
    replaces the earlier definition.
    """

    paths = [Path(p) for p in search_paths] if search_paths is not None else default_agent_paths()
    agents_by_name: dict[str, Agent] = {}
    seen: set[Path] = set()

    for base_path in paths:
        if not base_path.is_dir():
            continue
        for file_path in _walk_markdown_files(base_path):
            if file_path in seen:
                continue
            seen.add(file_path)
            try:
                content = file_path.read_text(encoding="utf-8")
            except OSError as exc:
                LOGGER.info("Error reading agent file %s: %s", file_path, exc)
                continue
            parsed = parse_agent_content(content, str(file_path))
            if parsed is None:
                LOGGER.info("Failed to parse agent file: %s", file_path)
                continue
            if parsed.name in agents_by_name:
                LOGGER.info(
                    "Duplicate agent name %r at %s, overriding previous definition",
                    parsed.name,
                    file_path,
                )
            agents_by_name[parsed.name] = parsed

    return merge_agents(agents_by_name.values())


def _walk_markdown_files(dir_path: Path) -> Iterator[Path]:
    try:
        entries = sorted(dir_path.iterdir(), key=lambda entry: entry.name)
    except OSError:
        return
    for entry in entries:
        if entry.is_dir():
            yield from _walk_markdown_files(entry)
        elif entry.name.endswith(AGENT_FILE_EXT):
            yield entry


def _home_dir() -> Path | None:
    home = os.environ.get("HOME")
    if not home:
        return None
    return Path(home)
