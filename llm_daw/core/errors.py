"""Error taxonomy and the result values returned by the persistence gateway.

``ValidationError`` is raised at the entity boundary and never reaches storage.
``TransactionFailure`` is raised inside the gateway, rolled back, and handed
back to callers wrapped in a :class:`Failure`.  ``NotFound`` is an ordinary
outcome, so it is a result value rather than an exception.
"""

from __future__ import annotations

from dataclasses import dataclass


class LlmDawError(Exception):
    """Base class for all errors raised by llm-daw."""


class ValidationError(LlmDawError, ValueError):
    """An entity invariant was violated."""


class TransactionFailure(LlmDawError):
    """A gateway transaction failed and was rolled back; the driver error is the cause."""


class UnknownEntityError(LlmDawError, KeyError):
    """An id passed to a store operation does not exist in the project."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""


class UnsupportedCapability(LlmDawError):
    """MIDI access is unavailable on this platform."""


# ── Results ────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class Ack:
    """Successful write."""

    id: str


@dataclass(frozen=True, slots=True)
class Failure:
    """Failed write; ``cause`` is the underlying exception."""

    cause: BaseException

    @property
    def message(self) -> str:
        return str(self.cause)


@dataclass(frozen=True, slots=True)
class NotFound:
    """The referenced entity does not exist."""

    kind: str
    id: str

    def __bool__(self) -> bool:
        return False
