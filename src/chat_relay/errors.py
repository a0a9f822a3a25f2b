"""Exception types raised by the chat relay and their HTTP status mapping."""
from __future__ import annotations


class ChatRelayError(Exception):
    """Base error. ``message`` is safe to return to clients."""

    status_code: int = 500

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(ChatRelayError):
    status_code = 400


class MethodNotAllowed(ChatRelayError):
    status_code = 405

    def __init__(self, message: str = "Method not allowed") -> None:
        super().__init__(message)


class NotFound(ChatRelayError):
    status_code = 404

    def __init__(self, message: str = "Not found") -> None:
        super().__init__(message)


class PersistenceError(ChatRelayError):
    """A conversation store could not be read or written."""


class UpstreamInferenceError(ChatRelayError):
    """The inference endpoint failed or produced an empty reply.

    Never reaches clients: the orchestrator answers with the fallback reply.
    """


class MalformedStoredRecord(ChatRelayError):
    """A stored record could not be decoded. Callers treat it as absent."""


class ConfigError(ChatRelayError):
    pass
