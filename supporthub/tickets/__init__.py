"""Ticket lifecycle domain: state machine, authorization and coordination."""

from .errors import (
    AlreadyAssignedError,
    ErrorKind,
    InvalidTransitionError,
    OperationFailedError,
    TicketNotFoundError,
    TicketServiceError,
    UnauthorizedError,
    ValidationFailedError,
)
from .memory import InMemoryTicketStore
from .models import Comment, CommentRecord, Ticket, TicketAuditEntry, TicketCategory, TicketPriority, TicketStats
from .policy import TicketAction, TicketPolicy
from .service import OperationResult, TicketService
from .state import TicketEvent, TicketStateMachine, TicketStatus

__all__ = [
    "AlreadyAssignedError",
    "Comment",
    "CommentRecord",
    "ErrorKind",
    "InMemoryTicketStore",
    "InvalidTransitionError",
    "OperationFailedError",
    "OperationResult",
    "Ticket",
    "TicketAction",
    "TicketAuditEntry",
    "TicketCategory",
    "TicketEvent",
    "TicketNotFoundError",
    "TicketPolicy",
    "TicketPriority",
    "TicketService",
    "TicketServiceError",
    "TicketStateMachine",
    "TicketStats",
    "TicketStatus",
    "UnauthorizedError",
    "ValidationFailedError",
]
