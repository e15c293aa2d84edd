"""Exception taxonomy shared by the arc engine, tools and delegation."""

from __future__ import annotations

import asyncio
from typing import Any

__all__ = [
    "USER_ABORTED_ERROR_MESSAGE",
    "ToolError",
    "TaskSessionPinnedError",
    "FileOutdatedError",
    "AbortError",
    "RequestError",
    "PaymentError",
    "RateLimitError",
    "CompactionRequestError",
    "is_abort_like",
]

USER_ABORTED_ERROR_MESSAGE = "Aborted by user"


class ToolError(Exception):
    """Validation or execution failure reported back to the model."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {"error": type(self).__name__, "message": self.message}


class TaskSessionPinnedError(ToolError):
    """Raised when a task session is resumed with a different subagent."""

    def __init__(self, task_id: str, subagent_name: str) -> None:
        super().__init__(
            f"Task {task_id} belongs to subagent {subagent_name}. "
            "Resume it with that same subagent."
        )
        self.task_id = task_id
        self.subagent_name = subagent_name

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload.update(task_id=self.task_id, subagent=self.subagent_name)
        return payload


class FileOutdatedError(Exception):
    """The file changed on disk after it was last read."""

    def __init__(self, file_path: str, message: str | None = None) -> None:
        super().__init__(message or f"File {file_path} was modified since it was last read")
        self.file_path = file_path

    def to_dict(self) -> dict[str, Any]:
        return {"error": type(self).__name__, "file_path": self.file_path, "message": str(self)}


class AbortError(Exception):
    """User-initiated cancellation; never surfaced as a failure."""

    def __init__(self, message: str = USER_ABORTED_ERROR_MESSAGE) -> None:
        super().__init__(message)


class RequestError(Exception):
    """Transport-level failure carrying a replayable request descriptor."""

    def __init__(self, request_error: str, curl: str = "") -> None:
        super().__init__(request_error)
        self.request_error = request_error
        self.curl = curl

    def to_dict(self) -> dict[str, Any]:
        return {"error": type(self).__name__, "message": self.request_error, "curl": self.curl}


class PaymentError(RequestError):
    """The backend rejected the request for billing reasons (HTTP 402)."""


class RateLimitError(RequestError):
    """The backend kept rate limiting the request after retries (HTTP 429)."""


class CompactionRequestError(RequestError):
    """The summarization request issued during compaction failed."""


def is_abort_like(error: BaseException) -> bool:
    if isinstance(error, (AbortError, asyncio.CancelledError)):
        return True
    return "aborted" in str(error).lower()
