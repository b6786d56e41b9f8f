"""Error kinds raised by the attempt lifecycle engine and its repositories.

Routers translate these into HTTP responses; nothing below the router
layer knows about status codes.
"""

from __future__ import annotations


class AttemptError(Exception):
    pass


class NotFoundError(AttemptError):
    """A referenced exam, student, attempt or question does not exist."""


class InvalidStateError(AttemptError):
    """The attempt is missing or no longer in progress."""


class AttemptValidationError(AttemptError, ValueError):
    pass


class PersistenceError(AttemptError):
    """The backing store failed to commit. Never retried by the engine."""
