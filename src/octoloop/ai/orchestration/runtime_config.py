"""Runtime configuration classes for the orchestration layer."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover - typing only
    from ...services.settings import Settings


@dataclass(slots=True)
class ArcConfig:
    """Knobs for a single trajectory arc."""

    retry_budget: int = 8

    def clamp(self) -> ArcConfig:
        """Clamp values into safe operating ranges and return ``self``."""

        self.retry_budget = max(0, min(int(self.retry_budget), 64))
        return self


@dataclass(slots=True)
class CompactionConfig:
    """When the history should be summarized into a checkpoint."""

    context_window: int = 128_000
    autocompact_ratio: float = 0.8

    def clamp(self) -> CompactionConfig:
        self.context_window = max(1_024, int(self.context_window or 1_024))
        self.autocompact_ratio = max(0.1, min(float(self.autocompact_ratio), 1.0))
        return self

    @property
    def token_threshold(self) -> int:
        return int(self.context_window * self.autocompact_ratio)


@dataclass(slots=True)
class DelegationConfig:
    """Limits applied to subagent sessions."""

    max_sessions: int = 48
    history_items: int = 80
    history_chars: int = 140_000
    tool_content_chars: int = 24_000
    assistant_content_chars: int = 24_000

    def clamp(self) -> DelegationConfig:
        self.max_sessions = max(1, int(self.max_sessions))
        self.history_items = max(2, int(self.history_items))
        self.history_chars = max(1_000, int(self.history_chars))
        self.tool_content_chars = max(100, int(self.tool_content_chars))
        self.assistant_content_chars = max(100, int(self.assistant_content_chars))
        return self


@dataclass(slots=True)
class StateConfig:
    """Timing of the live registry poll and progress publication."""

    live_poll_interval: float = 0.3
    response_throttle: float = 0.2

    def clamp(self) -> StateConfig:
        self.live_poll_interval = max(0.01, float(self.live_poll_interval))
        self.response_throttle = max(0.0, float(self.response_throttle))
        return self


@dataclass(slots=True)
class RuntimeConfig:
    arc: ArcConfig = field(default_factory=ArcConfig)
    compaction: CompactionConfig = field(default_factory=CompactionConfig)
    delegation: DelegationConfig = field(default_factory=DelegationConfig)
    state: StateConfig = field(default_factory=StateConfig)

    def clamp(self) -> RuntimeConfig:
        self.arc.clamp()
        self.compaction.clamp()
        self.delegation.clamp()
        self.state.clamp()
        return self

    @classmethod
    def from_settings(cls, settings: "Settings") -> RuntimeConfig:
        return cls(
            arc=ArcConfig(retry_budget=settings.retry_budget),
            compaction=CompactionConfig(
                context_window=settings.context_window,
                autocompact_ratio=settings.autocompact_ratio,
            ),
            state=StateConfig(
                live_poll_interval=settings.live_poll_interval,
                response_throttle=settings.response_throttle,
            ),
        ).clamp()


__all__ = [
    "ArcConfig",
    "CompactionConfig",
    "DelegationConfig",
    "StateConfig",
    "RuntimeConfig",
]
