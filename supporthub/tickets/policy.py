"""Authorization rules for ticket actions.

Every decision is a pure function of the acting user, the ticket snapshot and
the requested action. Rules are evaluated in a fixed order and the first one
that applies decides.
"""

from __future__ import annotations

from enum import Enum

from supporthub.core.security import User

from .models import Ticket
from .state import TicketStatus


class TicketAction(str, Enum):
    CREATE = "create"
    VIEW = "view"
    ASSIGN = "assign"
    COMMENT = "comment"
    RESOLVE = "resolve"
    CLOSE = "close"
    REOPEN = "reopen"


_RESOLVABLE = frozenset({TicketStatus.IN_PROGRESS, TicketStatus.WAITING_ON_CUSTOMER, TicketStatus.REOPENED})
_AGENT_COMMENTABLE = frozenset({TicketStatus.IN_PROGRESS, TicketStatus.WAITING_ON_CUSTOMER, TicketStatus.RESOLVED})
_REOPENABLE = frozenset({TicketStatus.RESOLVED, TicketStatus.CLOSED})


class TicketPolicy:
    """Decide whether ``user`` may perform an action on ``ticket``."""

    def __init__(self, user: User | None, ticket: Ticket | None = None) -> None:
        self.user = user
        self.ticket = ticket

    def allows(self, action: TicketAction) -> bool:
        if self.user is None:
            return False
        if action is TicketAction.CREATE:
            return self.create()
        if self.ticket is None:
            return False
        return getattr(self, action.value)()

    def view(self) -> bool:
        return self.user is not None and (self.user.is_agent or self.own_ticket())

    def create(self) -> bool:
        return self.user is not None

    def assign(self) -> bool:
        return self.user is not None and self.user.is_agent

    def resolve(self) -> bool:
        if not self.assigned_agent():
            return False
        return self.ticket.status in _RESOLVABLE

    def close(self) -> bool:
        if self.user is None or self.ticket.status is TicketStatus.CLOSED:
            return False
        if self.user.is_agent:
            return self.assigned_agent()
        return self.own_ticket() and self.ticket.status is TicketStatus.RESOLVED

    def comment(self) -> bool:
        if self.user is None or self.ticket.status is TicketStatus.CLOSED:
            return False
        if not self.view():
            return False
        if self.user.is_agent:
            return self.agent_can_comment()
        return self.customer_can_comment()

    def reopen(self) -> bool:
        if self.user is None or self.ticket.status not in _REOPENABLE:
            return False
        return self.own_ticket() or self.assigned_agent()

    def agent_can_comment(self) -> bool:
        if self.ticket.status is TicketStatus.OPEN:
            return False
        return self.assigned_agent() and self.ticket.status in _AGENT_COMMENTABLE

    def customer_can_comment(self) -> bool:
        if not self.own_ticket():
            return False
        status = self.ticket.status
        if status is TicketStatus.WAITING_ON_CUSTOMER:
            return True
        if status is TicketStatus.IN_PROGRESS:
            return self.ticket.agent_has_replied
        return False

    def own_ticket(self) -> bool:
        return self.user is not None and self.ticket is not None and self.ticket.customer_id == self.user.id

    def assigned_agent(self) -> bool:
        return (
            self.user is not None
            and self.user.is_agent
            and self.ticket is not None
            and self.ticket.agent_id is not None
            and self.ticket.agent_id == self.user.id
        )

    def capabilities(self) -> dict[str, bool]:
        """Per-ticket permission flags for the acting user."""

        return {
            "can_assign": self.allows(TicketAction.ASSIGN),
            "can_comment": self.allows(TicketAction.COMMENT),
            "can_resolve": self.allows(TicketAction.RESOLVE),
            "can_close": self.allows(TicketAction.CLOSE),
            "can_reopen": self.allows(TicketAction.REOPEN),
        }

    @staticmethod
    def scope_customer_id(user: User | None) -> str | None:
        """Owner filter for listings: ``None`` means every ticket.

        Callers must reject anonymous users before asking for a scope.
        """

        if user is None:
            raise ValueError("Anonymous users have no ticket scope")
        if user.is_agent:
            return None
        return user.id
