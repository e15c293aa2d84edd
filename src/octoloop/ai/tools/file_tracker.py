"""Stale-read detection for files the model edits."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from threading import Lock

from ..errors import FileOutdatedError

__all__ = ["FileTracker"]

LOGGER = logging.getLogger(__name__)


class FileTracker:
    """Remembers when each file was last read so edits can detect drift."""

    def __init__(self) -> None:
        self._read_mtimes: dict[Path, int] = {}
        self._lock = Lock()

    async def read(self, path: str | Path) -> str:
        """Read ``path`` and record its modification time."""

        resolved = self._resolve(path)
        content, mtime = await asyncio.to_thread(self._read_with_mtime, resolved)
        with self._lock:
            self._read_mtimes[resolved] = mtime
        return content

    async def read_untracked(self, path: str | Path) -> str:
        """Read ``path`` without recording it; raises ``OSError`` when unreadable."""

        resolved = self._resolve(path)
        content, _ = await asyncio.to_thread(self._read_with_mtime, resolved)
        return content

    def mark_written(self, path: str | Path) -> None:
        """Record the current modification time after the runtime wrote ``path``."""

        resolved = self._resolve(path)
        try:
            mtime = resolved.stat().st_mtime_ns
        except OSError:
            self.forget(resolved)
            return
        with self._lock:
            self._read_mtimes[resolved] = mtime

    def forget(self, path: str | Path) -> None:
        with self._lock:
            self._read_mtimes.pop(self._resolve(path), None)

    def is_tracked(self, path: str | Path) -> bool:
        with self._lock:
            return self._resolve(path) in self._read_mtimes

    def assert_fresh(self, path: str | Path) -> None:
        """Raise :class:`FileOutdatedError` if ``path`` changed since it was read."""

        resolved = self._resolve(path)
        with self._lock:
            recorded = self._read_mtimes.get(resolved)
        if recorded is None:
            return
        try:
            current = resolved.stat().st_mtime_ns
        except OSError as exc:
            LOGGER.debug("Tracked file %s disappeared: %s", resolved, exc)
            raise FileOutdatedError(str(path)) from exc
        if current != recorded:
            raise FileOutdatedError(str(path))

    @staticmethod
    def _resolve(path: str | Path) -> Path:
        return Path(path).expanduser().resolve()

    @staticmethod
    def _read_with_mtime(path: Path) -> tuple[str, int]:
        mtime = path.stat().st_mtime_ns
        return path.read_text(encoding="utf-8"), mtime
