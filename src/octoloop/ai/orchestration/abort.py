"""Cooperative cancellation shared by every arc spawned under one user turn."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

from ..errors import USER_ABORTED_ERROR_MESSAGE, AbortError

__all__ = ["AbortSignal", "AbortController"]

LOGGER = logging.getLogger(__name__)


class AbortSignal:
    """Read side of an :class:`AbortController`."""

    def __init__(self) -> None:
        self._aborted = False
        self._reason = ""
        self._listeners: list[Callable[[], None]] = []
        self._event: asyncio.Event | None = None

    @property
    def aborted(self) -> bool:
        return self._aborted

    @property
    def reason(self) -> str:
        return self._reason

    def add_listener(self, callback: Callable[[], None]) -> None:
        """Invoke ``callback`` once on abort, immediately if already aborted."""

        if self._aborted:
            callback()
            return
        self._listeners.append(callback)

    def remove_listener(self, callback: Callable[[], None]) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    def throw_if_aborted(self) -> None:
        if self._aborted:
            raise AbortError(self._reason or USER_ABORTED_ERROR_MESSAGE)

    async def wait(self) -> None:
        if self._aborted:
            return
        if self._event is None:
            self._event = asyncio.Event()
        await self._event.wait()

    def _fire(self, reason: str) -> None:
        if self._aborted:
            return
        self._aborted = True
        self._reason = reason
        if self._event is not None:
            self._event.set()
        listeners, self._listeners = self._listeners, []
        for callback in listeners:
            try:
                callback()
            except Exception:  # pragma: no cover - listeners must not block aborts
                LOGGER.debug("Abort listener %s failed", callback, exc_info=True)


class AbortController:
    """Owns an :class:`AbortSignal` and triggers it."""

    def __init__(self) -> None:
        self.signal = AbortSignal()

    def abort(self, reason: str = USER_ABORTED_ERROR_MESSAGE) -> None:
        self.signal._fire(reason)
