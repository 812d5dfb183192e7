from __future__ import annotations

from enum import StrEnum


class ErrorCode(StrEnum):
    INACTIVE_TOPIC = "INACTIVE_TOPIC"
    REMOTE_REJECTED = "REMOTE_REJECTED"
    NOT_FOUND = "NOT_FOUND"
    CANCELLED = "CANCELLED"


class TopicSyncError(RuntimeError):
    code: ErrorCode


class InactiveTopicError(TopicSyncError):
    """The operation needs an active subscription to the topic."""

    code = ErrorCode.INACTIVE_TOPIC


class RemoteRejectedError(TopicSyncError):
    """The session returned an error or a non-success status."""

    code = ErrorCode.REMOTE_REJECTED

    def __init__(self, text: str, *, status: int = 500) -> None:
        super().__init__(f"{status} {text}")
        self.status = status
        self.text = text


class NotFoundError(TopicSyncError):
    code = ErrorCode.NOT_FOUND


class DraftCancelledError(TopicSyncError):
    code = ErrorCode.CANCELLED
