"""Error taxonomy shared by the signaling core and its transports.

Every failure a command can produce is a ``SignalError`` subclass carrying a
stable ``ErrorCode``; the event channel relays the code verbatim in the
acknowledgement and the REST layer maps it onto an HTTP status.
"""

from __future__ import annotations

from enum import StrEnum


class ErrorCode(StrEnum):
    NOT_A_MEMBER = "NOT_A_MEMBER"
    NOT_AUTHOR = "NOT_AUTHOR"
    ALREADY_DELETED = "ALREADY_DELETED"
    INVALID_STATE = "INVALID_STATE"
    NOT_CONNECTED = "NOT_CONNECTED"
    TARGET_UNREACHABLE = "TARGET_UNREACHABLE"
    NOT_FOUND = "NOT_FOUND"
    INVALID_PAYLOAD = "INVALID_PAYLOAD"
    NOT_AUTHENTICATED = "NOT_AUTHENTICATED"
    INTERNAL = "INTERNAL"


class SignalError(RuntimeError):
    """Base exception for signaling failures.

    Errors are terminal for the command that raised them and are never
    retried automatically.
    """

    code: ErrorCode = ErrorCode.INVALID_STATE

    def __init__(self, detail: str = "") -> None:
        super().__init__(detail or self.code.value)
        self.detail = detail

    def __str__(self) -> str:
        if self.detail:
            return f"{self.code.value}: {self.detail}"
        return self.code.value


class NotAMemberError(SignalError):
    """Raised when the actor is not part of the conversation or group."""

    code = ErrorCode.NOT_A_MEMBER


class NotAuthorError(SignalError):
    """Raised when a sender-only mutation is attempted by someone else."""

    code = ErrorCode.NOT_AUTHOR


class AlreadyDeletedError(SignalError):
    """Raised when mutating a message that has been deleted for everyone."""

    code = ErrorCode.ALREADY_DELETED


class InvalidStateError(SignalError):
    """Raised when a call command is not valid from the call's current state."""

    code = ErrorCode.INVALID_STATE


class NotConnectedError(SignalError):
    """Raised by a transport that can no longer send."""

    code = ErrorCode.NOT_CONNECTED


class TargetUnreachableError(SignalError):
    """Raised when a call target has no live connection."""

    code = ErrorCode.TARGET_UNREACHABLE


class NotFoundError(SignalError):
    code = ErrorCode.NOT_FOUND


class InvalidPayloadError(SignalError):
    code = ErrorCode.INVALID_PAYLOAD


class NotAuthenticatedError(SignalError):
    code = ErrorCode.NOT_AUTHENTICATED
