"""Merging built-in and custom agents, and per-agent tool filtering."""

from __future__ import annotations

from typing import Iterable, Mapping, TypeVar

from .builtin import builtin_agents
from .definitions import Agent

T = TypeVar("T")

__all__ = [
    "merge_agents",
    "primary_agents",
    "subagent_choices",
    "resolve_active_agent",
    "resolve_agent_model_override",
    "is_tool_allowed",
    "filter_tools_for_agent",
]


def merge_agents(custom: Iterable[Agent]) -> list[Agent]:
    """Overlay ``custom`` agents on the built-ins; a custom name replaces a built-in."""

    merged: dict[str, Agent] = {agent.name: agent for agent in builtin_agents()}
    for agent in custom:
        merged[agent.name] = agent
    return list(merged.values())


def primary_agents(agents: Iterable[Agent]) -> list[Agent]:
    return [agent for agent in agents if agent.mode in ("primary", "all") and not agent.hidden]


def subagent_choices(agents: Iterable[Agent]) -> list[Agent]:
    return [agent for agent in agents if agent.mode in ("subagent", "all") and not agent.hidden]


def resolve_active_agent(agents: Iterable[Agent], active_agent_name: str | None) -> Agent:
    available = primary_agents(agents)
    if not available:
        return merge_agents([])[0]
    if active_agent_name:
        for agent in available:
            if agent.name == active_agent_name:
                return agent
    return available[0]


def resolve_agent_model_override(agent: Agent, model_override: str | None) -> str | None:
    if agent.model:
        return agent.model
    return model_override


def is_tool_allowed(agent: Agent, tool_name: str) -> bool:
    if not agent.tools:
        return True
    direct = agent.tools.get(tool_name)
    if isinstance(direct, bool):
        return direct
    wildcard = agent.tools.get("*")
    if isinstance(wildcard, bool):
        return wildcard
    return True


def filter_tools_for_agent(agent: Agent, tools: Mapping[str, T]) -> dict[str, T]:
    return {name: tool for name, tool in tools.items() if is_tool_allowed(agent, name)}
