"""Agent-loop orchestration: trajectory arcs, delegation and the state machine."""

from .abort import AbortController, AbortSignal
from .compaction import AutoCompactor
from .autofix import EditAutofixer

# Trajectory arc
from .trajectory_arc import (
    AbortFinish,
    Finish,
    NeedsResponse,
    RequestErrorFinish,
    RequestTool,
    TrajectoryArc,
)
from .events import ArcEventHandler

# Subagent delegation
from .delegation import SubagentDelegationService, TaskInvocation
from .task_observations import TaskObservation, parse_task_observations
from .task_progress import LiveTaskProgressRegistry
from .task_sessions import TaskSession, TaskSessionStore

# Main conversation state
from .runtime_config import RuntimeConfig
from .state import OrchestrationState, OrchestrationStore

__all__ = [
    "AbortController",
    "AbortFinish",
    "AbortSignal",
    "ArcEventHandler",
    "AutoCompactor",
    "EditAutofixer",
    "Finish",
    "LiveTaskProgressRegistry",
    "NeedsResponse",
    "OrchestrationState",
    "OrchestrationStore",
    "RequestErrorFinish",
    "RequestTool",
    "RuntimeConfig",
    "SubagentDelegationService",
    "TaskInvocation",
    "TaskObservation",
    "TaskSession",
    "TaskSessionStore",
    "TrajectoryArc",
    "parse_task_observations",
]
