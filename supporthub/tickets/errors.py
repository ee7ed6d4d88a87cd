from __future__ import annotations

from enum import Enum
from typing import Sequence


class ErrorKind(str, Enum):
    """Failure categories surfaced to callers of the ticket service."""

    NOT_FOUND = "not_found"
    UNAUTHORIZED = "unauthorized"
    VALIDATION_FAILED = "validation_failed"
    INVALID_TRANSITION = "invalid_transition"
    ALREADY_ASSIGNED = "already_assigned"
    OPERATION_FAILED = "operation_failed"


class TicketServiceError(RuntimeError):
    """Base error for ticket service issues."""

    kind: ErrorKind = ErrorKind.OPERATION_FAILED

    def __init__(self, *messages: str) -> None:
        self.messages: list[str] = [message for message in messages if message]
        super().__init__(", ".join(self.messages))


class TicketNotFoundError(TicketServiceError):
    """Raised when a ticket could not be located."""

    kind = ErrorKind.NOT_FOUND

    def __init__(self, message: str = "Ticket not found") -> None:
        super().__init__(message)


class UnauthorizedError(TicketServiceError):
    """Raised when the acting user may not perform the requested action."""

    kind = ErrorKind.UNAUTHORIZED

    def __init__(self, message: str = "Access denied") -> None:
        super().__init__(message)


class ValidationFailedError(TicketServiceError):
    """Raised when submitted fields do not satisfy the ticket constraints."""

    kind = ErrorKind.VALIDATION_FAILED

    def __init__(self, field_errors: dict[str, Sequence[str]]) -> None:
        self.field_errors = {field: list(errors) for field, errors in field_errors.items()}
        messages = [
            f"{field.replace('_', ' ').capitalize()} {error}"
            for field, errors in self.field_errors.items()
            for error in errors
        ]
        super().__init__(*messages)


class InvalidTransitionError(TicketServiceError):
    """Raised when attempting to transition to an invalid state."""

    kind = ErrorKind.INVALID_TRANSITION


class AlreadyAssignedError(TicketServiceError):
    """Raised when a different agent already holds the assignment."""

    kind = ErrorKind.ALREADY_ASSIGNED

    def __init__(self, message: str = "Ticket is already assigned to another agent") -> None:
        super().__init__(message)


class OperationFailedError(TicketServiceError):
    """Raised when infrastructure failures prevent an operation from completing."""

    kind = ErrorKind.OPERATION_FAILED


class StorageError(RuntimeError):
    """Base error raised by ticket stores."""


class LockTimeoutError(StorageError):
    """Raised when a ticket lock could not be acquired in time."""


class DuplicateReferenceError(StorageError):
    """Raised when a generated reference number collides with an existing one."""
