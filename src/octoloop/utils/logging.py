"""Logging setup for octoloop with per-task context.

Delegated tasks run concurrently, so every record is tagged with the task it
was emitted from. :func:`task_log_context` binds ``task_id@subagent`` for the
current asyncio context; records logged outside any task carry ``main``.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
from contextlib import contextmanager
from contextvars import ContextVar
from pathlib import Path
from typing import TYPE_CHECKING, Iterator

if TYPE_CHECKING:  # pragma: no cover - typing only
    from ..services.settings import Settings

__all__ = ["setup_logging", "task_log_context", "current_task_label", "TaskContextFilter", "get_log_path"]

_DEFAULT_LOG_DIR = Path.home() / ".octoloop" / "logs"
_LOG_FILE_NAME = "octoloop.log"
_MAIN_LABEL = "main"
_FORMAT = "%(asctime)s | %(levelname)-8s | %(task)s | %(name)s | %(message)s"
# Transport chatter; kept at WARNING unless the root level is stricter.
_NOISY_LOGGERS: tuple[str, ...] = ("asyncio", "httpx", "httpcore", "openai")

_task_label: ContextVar[str | None] = ContextVar("octoloop_task", default=None)
_CONFIGURED = False
_LOG_PATH: Path | None = None


@contextmanager
def task_log_context(task_id: str, subagent_name: str | None = None) -> Iterator[str]:
    """Tag records logged inside the block with ``task_id@subagent_name``."""

    label = f"{task_id}@{subagent_name}" if subagent_name else task_id
    token = _task_label.set(label)
    try:
        yield label
    finally:
        _task_label.reset(token)


def current_task_label() -> str:
    return _task_label.get() or _MAIN_LABEL


class TaskContextFilter(logging.Filter):
    """Adds the ``task`` attribute used by the octoloop format."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.task = current_task_label()
        return True


def setup_logging(
    settings: "Settings | None" = None,
    *,
    level: int | None = None,
    log_dir: Path | str | None = None,
    console: bool = True,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> Path:
    """Install the rotating file sink (and optional console) on the root logger.

    The level comes from ``level`` when given, otherwise from
    ``settings.debug_logging``. Calling again is a no-op unless ``force``.
    """

    global _CONFIGURED, _LOG_PATH
    if _CONFIGURED and not force and _LOG_PATH is not None:
        return _LOG_PATH

    if level is None:
        level = logging.DEBUG if settings is not None and settings.debug_logging else logging.INFO
    target_dir = Path(log_dir or os.environ.get("OCTOLOOP_LOG_DIR") or _DEFAULT_LOG_DIR).expanduser()
    target_dir.mkdir(parents=True, exist_ok=True)
    log_path = target_dir / _LOG_FILE_NAME

    formatter = logging.Formatter(fmt=_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    context_filter = TaskContextFilter()
    handlers: list[logging.Handler] = [
        logging.handlers.RotatingFileHandler(log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8")
    ]
    if console:
        handlers.append(logging.StreamHandler())
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        handler.addFilter(context_filter)

    logging.basicConfig(level=level, handlers=handlers, force=True)
    logging.captureWarnings(True)
    quiet_level = max(level, logging.WARNING)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(quiet_level)

    _CONFIGURED = True
    _LOG_PATH = log_path
    return log_path


def get_log_path() -> Path | None:
    """Return the currently configured log file if available."""

    return _LOG_PATH
