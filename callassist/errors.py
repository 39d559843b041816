"""Exception types shared across the call-assist pipeline."""
from __future__ import annotations


class CallAssistError(Exception):
    """Base error for the call-assist pipeline."""


class MissingCredentialsError(CallAssistError):
    """Required configuration (API key) is missing; start is aborted."""


class InvalidStatusTransition(CallAssistError):
    """A connection status change that the state machine does not allow."""

    def __init__(self, current: str, requested: str) -> None:
        super().__init__(f"Invalid status transition: {current} -> {requested}")
        self.current = current
        self.requested = requested


class CollaboratorError(CallAssistError):
    """Chat or memory service call failed (HTTP error, timeout, bad payload)."""
