"""Agent definitions, discovery and selection."""

from .builtin import builtin_agents
from .definitions import Agent, AgentMode, parse_agent_content, validate_agent
from .discovery import default_agent_paths, discover_agents
from .selection import (
    filter_tools_for_agent,
    is_tool_allowed,
    merge_agents,
    primary_agents,
    resolve_active_agent,
    resolve_agent_model_override,
    subagent_choices,
)

__all__ = [
    "Agent",
    "AgentMode",
    "builtin_agents",
    "default_agent_paths",
    "discover_agents",
    "filter_tools_for_agent",
    "is_tool_allowed",
    "merge_agents",
    "parse_agent_content",
    "primary_agents",
    "resolve_active_agent",
    "resolve_agent_model_override",
    "subagent_choices",
    "validate_agent",
]
