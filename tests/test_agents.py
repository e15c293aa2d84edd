"""Tests for agent parsing, discovery and selection."""

from __future__ import annotations

from pathlib import Path

import pytest

from octoloop.ai.agents import (
    Agent,
    builtin_agents,
    default_agent_paths,
    discover_agents,
    filter_tools_for_agent,
    is_tool_allowed,
    merge_agents,
    parse_agent_content,
    primary_agents,
    resolve_active_agent,
    resolve_agent_model_override,
    subagent_choices,
    validate_agent,
)

REVIEWER = """---
name: code-review
description: Reviews diffs
mode: subagent
model: gpt-review
temperature: 0.3
topP: 0.9
tools:
  edit: false
  "*": true
---

Review the change carefully.
"""


def test_parse_frontmatter_agent() -> None:
    agent = parse_agent_content(REVIEWER, "/agents/review.md")

    assert agent is not None
    assert agent.name == "code-review"
    assert agent.mode == "subagent"
    assert agent.model == "gpt-review"
    assert agent.top_p == 0.9
    assert agent.tools == {"edit": False, "*": True}
    assert agent.prompt == "Review the change carefully."
    assert agent.path == "/agents"
    assert agent.source_file_path == "/agents/review.md"


def test_file_without_frontmatter_is_primary_named_after_file() -> None:
    agent = parse_agent_content("  Just be helpful.\n", "/agents/helper.md")

    assert agent == Agent(
        name="helper",
        mode="primary",
        prompt="Just be helpful.",
        path="/agents",
        source_file_path="/agents/helper.md",
    )


@pytest.mark.parametrize(
    "frontmatter",
    [
        "mode: boss",
        "temperature: 3",
        "top_p: -1",
        "steps: 0",
        "name: -bad-name",
        "tools:\n  edit: maybe",
        "- just\n- a list",
    ],
)
def test_invalid_frontmatter_is_rejected(frontmatter: str) -> None:
    assert parse_agent_content(f"---\n{frontmatter}\n---\nbody", "/agents/x.md") is None


def test_unparseable_yaml_is_rejected() -> None:
    assert parse_agent_content("---\nname: [unclosed\n---\nbody", "/agents/x.md") is None


def test_validate_agent_reports_every_problem() -> None:
    errors = validate_agent(Agent(name="a--b", mode="other", steps=-1))
    assert len(errors) == 3


def test_discovery_merges_over_builtins(tmp_path: Path) -> None:
    first = tmp_path / "agents"
    nested = first / "team"
    nested.mkdir(parents=True)
    (first / "review.md").write_text(REVIEWER, encoding="utf-8")
    (nested / "general.md").write_text("---\nmode: subagent\n---\nCustom general.", encoding="utf-8")
    (first / "notes.txt").write_text("ignored", encoding="utf-8")
    (first / "broken.md").write_text("---\nmode: nope\n---\n", encoding="utf-8")
    second = tmp_path / "home"
    second.mkdir()
    (second / "override.md").write_text("---\nname: code-review\nmode: subagent\n---\nLater wins.", encoding="utf-8")

    agents = discover_agents([first, second, tmp_path / "missing"])
    by_name = {agent.name: agent for agent in agents}

    assert by_name["general"].prompt == "Custom general."
    assert not by_name["general"].native
    assert by_name["code-review"].prompt == "Later wins."
    assert "broken" not in by_name
    assert [agent.name for agent in agents][: len(builtin_agents())] == [agent.name for agent in builtin_agents()]


def test_default_agent_paths(tmp_path: Path) -> None:
    paths = default_agent_paths(cwd=tmp_path, home=tmp_path / "home")

    assert paths == [
        tmp_path / "agents",
        tmp_path / ".agents" / "agents",
        tmp_path / "home" / ".config" / "octoloop" / "agents",
    ]


def test_primary_and_subagent_lists_skip_hidden() -> None:
    agents = [
        Agent(name="lead"),
        Agent(name="both", mode="all"),
        Agent(name="sub", mode="subagent"),
        Agent(name="secret", mode="subagent", hidden=True),
    ]

    assert [agent.name for agent in primary_agents(agents)] == ["lead", "both"]
    assert [agent.name for agent in subagent_choices(agents)] == ["both", "sub"]


def test_resolve_active_agent() -> None:
    agents = [Agent(name="lead"), Agent(name="second")]

    assert resolve_active_agent(agents, "second").name == "second"
    assert resolve_active_agent(agents, "unknown").name == "lead"
    assert resolve_active_agent([], None).name == "octo"


def test_agent_model_beats_session_override() -> None:
    assert resolve_agent_model_override(Agent(name="a", model="fixed"), "session") == "fixed"
    assert resolve_agent_model_override(Agent(name="a"), "session") == "session"


def test_tool_filtering() -> None:
    agent = Agent(name="a", tools={"*": False, "read": True})

    assert is_tool_allowed(agent, "read")
    assert not is_tool_allowed(agent, "shell")
    assert is_tool_allowed(Agent(name="open"), "anything")
    assert filter_tools_for_agent(agent, {"read": 1, "shell": 2}) == {"read": 1}


def test_builtin_plan_agent_cannot_edit() -> None:
    plan = next(agent for agent in merge_agents([]) if agent.name == "plan")
    assert not is_tool_allowed(plan, "edit")
    assert is_tool_allowed(plan, "read")
