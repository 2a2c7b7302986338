"""
Error taxonomy for the conversational turn pipeline.

Adapters convert low-level faults (HTTP errors, SDK exceptions, store
failures) into one of these types. The turn orchestrator is the only place
that decides whether a failure aborts the turn or is degraded away.
"""
from __future__ import annotations

from typing import Optional


class PipelineError(Exception):
    """Base class for every failure the pipeline reports to a client."""

    def __init__(self, message: str, *, details: Optional[str] = None) -> None:
        self.message = message
        self.details = details
        super().__init__(message)


class ValidationError(PipelineError):
    """Bad or missing input. Never retried; reported to the client verbatim."""


class PermanentServiceError(PipelineError):
    """
    An upstream service rejected the request (4xx-class).

    The service's own message is relayed to the client.
    """

    def __init__(self, message: str, *, status_code: Optional[int] = None, details: Optional[str] = None) -> None:
        self.status_code = status_code
        super().__init__(message, details=details)


class TransientServiceError(PipelineError):
    """An upstream service stayed unavailable after the retry budget was spent."""


class NotFoundError(PipelineError):
    """A referenced session, character or scene does not exist."""

    def __init__(self, kind: str, identifier: object) -> None:
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class PersistenceError(PipelineError):
    """A durable store write failed."""
