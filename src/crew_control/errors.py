"""Error taxonomy shared by all crew-control components."""

from __future__ import annotations


class CrewControlError(Exception):
    """Base class for errors raised across component boundaries."""


class NotFoundError(CrewControlError, KeyError):
    """Unknown worker, task, process, workflow or template."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""


class LimitExceededError(CrewControlError):
    """A configured resource ceiling was reached."""

    def __init__(self, message: str, *, limit: int, current: int) -> None:
        super().__init__(message)
        self.limit = limit
        self.current = current


class InvalidTransitionError(CrewControlError):
    """Operation is not allowed from the entity's current state."""


class ValidationError(CrewControlError, ValueError):
    """Rejected input value (out of range, NaN, unknown enum value)."""


class UpstreamUnavailableError(CrewControlError):
    """No eligible worker was found for the required skills."""


class SpawnError(CrewControlError):
    """Worker process could not be launched, with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient
