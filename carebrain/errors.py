"""
Error taxonomy for the CareBrain core.

Routine outcomes (version conflicts, duplicate submissions, insufficient data)
are returned to callers as structured results carrying a CoreError.
Referential-integrity failures and expired deadlines are raised as
CareBrainError subclasses and surfaced as-is.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorKind(Enum):
    """Structured error kinds surfaced to callers."""

    VERSION_CONFLICT = "VERSION_CONFLICT"
    NOT_INITIALIZED = "NOT_INITIALIZED"
    ALREADY_INITIALIZED = "ALREADY_INITIALIZED"
    DUPLICATE_SUBMISSION = "DUPLICATE_SUBMISSION"
    INSUFFICIENT_DATA = "INSUFFICIENT_DATA"
    RULE_NOT_FOUND = "RULE_NOT_FOUND"
    RESIDENT_NOT_FOUND = "RESIDENT_NOT_FOUND"
    EVENT_NOT_FOUND = "EVENT_NOT_FOUND"
    PROJECTION_NOT_FOUND = "PROJECTION_NOT_FOUND"
    DEADLINE_EXCEEDED = "DEADLINE_EXCEEDED"
    INVALID_INPUT = "INVALID_INPUT"

    def __str__(self) -> str:
        return self.value


@dataclass
class CoreError:
    """Structured error payload."""

    kind: ErrorKind
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "details": self.details,
        }


class CareBrainError(Exception):
    """Base class for errors raised by the core."""

    kind: ErrorKind = ErrorKind.INVALID_INPUT

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_error(self) -> CoreError:
        return CoreError(kind=self.kind, message=self.message, details=self.details)


class ResidentNotFound(CareBrainError):
    kind = ErrorKind.RESIDENT_NOT_FOUND


class RuleNotFound(CareBrainError):
    kind = ErrorKind.RULE_NOT_FOUND


class EventNotFound(CareBrainError):
    kind = ErrorKind.EVENT_NOT_FOUND


class ProjectionNotFound(CareBrainError):
    kind = ErrorKind.PROJECTION_NOT_FOUND


class DeadlineExceeded(CareBrainError):
    kind = ErrorKind.DEADLINE_EXCEEDED


class InvalidInput(CareBrainError, ValueError):
    kind = ErrorKind.INVALID_INPUT


class ConfigError(CareBrainError):
    """A policy or rule file is missing or malformed."""

    kind = ErrorKind.INVALID_INPUT
