"""Exception hierarchy for the deliberation pipeline."""

from __future__ import annotations

from typing import Sequence

from deliberator.schemas import ModelFailure


class DeliberationError(Exception):
    """Base class for every error raised by the pipeline."""


class ValidationError(DeliberationError):
    """Structural problem detected before any remote call is made."""


class InsufficientResponsesError(DeliberationError):
    """Fewer responders succeeded than a phase needs to continue.

    ``failures`` carries every individual failure so callers can persist
    them for diagnosis.
    """

    def __init__(self, message: str, failures: Sequence[ModelFailure] = ()) -> None:
        super().__init__(message)
        self.failures = list(failures)


class ConsensusError(DeliberationError):
    """No proposal could be gathered to build a consensus from."""


class DeliberationTimeoutError(DeliberationError, TimeoutError):
    """The whole session exceeded its overall time limit."""


class SessionNotFoundError(DeliberationError, KeyError):
    """The session store has no session with the requested id."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "Session not found"
