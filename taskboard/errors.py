from __future__ import annotations

import logging
from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    LIMIT_EXCEEDED = "limit_exceeded"
    INVALID_ARGUMENT = "invalid_argument"
    PERMISSION_DENIED = "permission_denied"
    ALREADY_EXISTS = "already_exists"


class KanbanError(Exception):
    """A rejected operation.

    Every domain failure is raised as this one type; callers branch on
    ``kind`` instead of on exception subclasses. ``details`` carries the
    identifiers (ids, titles, limits) a boundary layer may interpolate into
    its own messages.
    """

    def __init__(self, kind: ErrorKind, message: str, **details: Any) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.details = details

    def __repr__(self) -> str:
        return f"KanbanError({self.kind.value!r}, {self.message!r})"


class InvariantViolation(RuntimeError):
    """The task-state index and the column lists disagree.

    Legal operations never raise this; it means a mutation path updated one
    representation without the other. Never convert it into a domain error.
    """


def reject(logger: logging.Logger, kind: ErrorKind, message: str, **details: Any) -> KanbanError:
    """Log a refused operation and build the error to raise."""
    logger.warning("%s: %s", kind.value, message)
    return KanbanError(kind, message, **details)


def fatal(logger: logging.Logger, message: str) -> InvariantViolation:
    logger.critical("FATAL: %s", message)
    return InvariantViolation(message)
