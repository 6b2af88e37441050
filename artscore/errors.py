"""Exceptions raised by the scoring core."""


class ScoringError(Exception):
    """Base class for every error raised by artscore."""


class ValidationError(ScoringError):
    """Input rejected before anything was written."""


class AuthenticationError(ScoringError):
    """Login rejected. The message never says which part was wrong."""


class TransportError(ScoringError):
    """The shared store could not be reached or refused a write."""

    def __init__(self, message: str, retryable: bool = False):
        self.message = message
        self.retryable = retryable
        super().__init__(message)
