from __future__ import annotations

from enum import StrEnum


class ErrorCode(StrEnum):
    NOT_FOUND = "NOT_FOUND"
    ALREADY_EXISTS = "ALREADY_EXISTS"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    RATE_LIMITED = "RATE_LIMITED"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    UNVERIFIED = "UNVERIFIED"
    REMOTE_FAILED = "REMOTE_FAILED"


class IssueKeepError(Exception):
    """Raised for every classified failure of the record/thread store.

    The ``code`` survives translation through every layer so that consumers
    can tell "try again later" (``RATE_LIMITED``) apart from "not allowed"
    (``PERMISSION_DENIED``). ``retry_after`` is set in seconds when the
    remote store or the client-side rate limiter supplied a hint.
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        suggestion: str,
        recoverable: bool = False,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.suggestion = suggestion
        self.recoverable = recoverable
        self.retry_after = retry_after

    def to_dict(self) -> dict:
        error: dict = {
            "code": self.code,
            "message": self.message,
            "suggestion": self.suggestion,
            "recoverable": self.recoverable,
        }
        if self.retry_after is not None:
            error["retry_after"] = self.retry_after
        return {"error": error}


def rate_limited(message: str, retry_after: float | None) -> IssueKeepError:
    return IssueKeepError(
        code=ErrorCode.RATE_LIMITED,
        message=message,
        suggestion="Wait before trying again.",
        recoverable=True,
        retry_after=retry_after,
    )


def validation_error(message: str, suggestion: str) -> IssueKeepError:
    return IssueKeepError(
        code=ErrorCode.VALIDATION_ERROR,
        message=message,
        suggestion=suggestion,
        recoverable=False,
    )


def permission_denied(message: str) -> IssueKeepError:
    return IssueKeepError(
        code=ErrorCode.PERMISSION_DENIED,
        message=message,
        suggestion="This action requires additional permissions.",
        recoverable=False,
    )
