"""Exception types shared by the studio core, the web app and the CLI."""

from __future__ import annotations


class StudioError(Exception):
    """Base class for studio failures."""


class ValidationError(StudioError):
    """A precondition for an operation is not met.

    Raised before any call is made to the generation service.
    """


class NotFoundError(ValidationError):
    """The referenced unit, image or entry does not exist (any more)."""


class GenerationError(StudioError):
    """An external generation / analysis / watermark call failed.

    Carries a human-readable message and the name of the client operation
    that failed. Callers treat it as recoverable.
    """

    def __init__(self, message: str, operation: str = "") -> None:
        super().__init__(message)
        self.message = message
        self.operation = operation

    def __str__(self) -> str:
        return self.message
