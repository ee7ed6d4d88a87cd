from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Mapping

from .state import TicketStatus


class TicketPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class TicketCategory(str, Enum):
    TECHNICAL_ISSUES = "technical_issues"
    BILLING = "billing"
    ACCOUNT = "account"
    FEATURE_REQUEST = "feature_request"
    FEEDBACK = "feedback"
    OTHER = "other"


@dataclass(slots=True)
class Ticket:
    """Aggregate representing a support ticket entry."""

    id: str
    number: str
    title: str
    description: str
    priority: TicketPriority
    category: TicketCategory
    status: TicketStatus
    customer_id: str
    created_at: datetime
    updated_at: datetime
    agent_id: str | None = None
    agent_has_replied: bool = False
    first_response_at: datetime | None = None
    resolved_at: datetime | None = None
    resolved_by: str | None = None
    closed_at: datetime | None = None
    reopened_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status is not TicketStatus.CLOSED

    @property
    def needs_agent_attention(self) -> bool:
        return self.status in (TicketStatus.OPEN, TicketStatus.REOPENED, TicketStatus.IN_PROGRESS)

    @property
    def is_completed(self) -> bool:
        return self.status in (TicketStatus.RESOLVED, TicketStatus.CLOSED)


@dataclass(slots=True)
class Comment:
    """Message written on a ticket by its customer or an agent."""

    id: str
    ticket_id: str
    author_id: str
    author_role: str
    body: str
    created_at: datetime


@dataclass(slots=True)
class TicketAuditEntry:
    """History entry describing a lifecycle change for a ticket."""

    id: str
    ticket_id: str
    action: str
    actor: str
    from_status: TicketStatus | None
    to_status: TicketStatus
    created_at: datetime
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TicketStats:
    """Ticket counts over the tickets visible to an actor."""

    total: int
    open: int
    pending: int
    completed: int


@dataclass(slots=True)
class CommentRecord:
    """A recorded comment together with the ticket as it stands afterwards."""

    comment: Comment
    ticket: Ticket
