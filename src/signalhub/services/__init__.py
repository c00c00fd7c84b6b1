"""Signaling core services for the SignalHub application."""

from .errors import ErrorCode, SignalError

__all__ = [
    "ErrorCode",
    "SignalError",
]
