from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Mapping

from .errors import InvalidTransitionError

if TYPE_CHECKING:
    from .models import Ticket


class TicketStatus(str, Enum):
    """Supported states for a ticket's lifecycle."""

    OPEN = "open"
    IN_PROGRESS = "in_progress"
    WAITING_ON_CUSTOMER = "waiting_on_customer"
    RESOLVED = "resolved"
    CLOSED = "closed"
    REOPENED = "reopened"


class TicketEvent(str, Enum):
    """Events that move a ticket between states."""

    ASSIGN = "assign"
    AGENT_RESPOND = "agent_respond"
    CUSTOMER_REPLY = "customer_reply"
    RESOLVE = "resolve"
    CLOSE = "close"
    REOPEN = "reopen"


@dataclass(frozen=True, slots=True)
class Transition:
    """A single row of the transition table."""

    event: TicketEvent
    sources: frozenset[TicketStatus]
    target: TicketStatus
    verb: str


class TicketStateMachine:
    """Validate ticket lifecycle transitions and apply their effects."""

    _TRANSITIONS: Mapping[TicketEvent, Transition] = {
        TicketEvent.ASSIGN: Transition(
            TicketEvent.ASSIGN,
            frozenset({TicketStatus.OPEN, TicketStatus.REOPENED}),
            TicketStatus.IN_PROGRESS,
            "assign ticket",
        ),
        TicketEvent.AGENT_RESPOND: Transition(
            TicketEvent.AGENT_RESPOND,
            frozenset({TicketStatus.IN_PROGRESS, TicketStatus.REOPENED}),
            TicketStatus.WAITING_ON_CUSTOMER,
            "respond",
        ),
        TicketEvent.CUSTOMER_REPLY: Transition(
            TicketEvent.CUSTOMER_REPLY,
            frozenset({TicketStatus.WAITING_ON_CUSTOMER, TicketStatus.RESOLVED}),
            TicketStatus.IN_PROGRESS,
            "reply",
        ),
        TicketEvent.RESOLVE: Transition(
            TicketEvent.RESOLVE,
            frozenset({TicketStatus.IN_PROGRESS, TicketStatus.WAITING_ON_CUSTOMER}),
            TicketStatus.RESOLVED,
            "resolve ticket",
        ),
        TicketEvent.CLOSE: Transition(
            TicketEvent.CLOSE,
            frozenset({TicketStatus.RESOLVED, TicketStatus.IN_PROGRESS, TicketStatus.WAITING_ON_CUSTOMER}),
            TicketStatus.CLOSED,
            "close ticket",
        ),
        TicketEvent.REOPEN: Transition(
            TicketEvent.REOPEN,
            frozenset({TicketStatus.CLOSED, TicketStatus.RESOLVED}),
            TicketStatus.REOPENED,
            "reopen ticket",
        ),
    }

    @classmethod
    def initial_state(cls) -> TicketStatus:
        return TicketStatus.OPEN

    @classmethod
    def can_fire(cls, current: TicketStatus, event: TicketEvent) -> bool:
        transition = cls._TRANSITIONS.get(event)
        return transition is not None and current in transition.sources

    @classmethod
    def available_events(cls, current: TicketStatus) -> list[TicketEvent]:
        return [event for event in TicketEvent if cls.can_fire(current, event)]

    @classmethod
    def next_state(cls, current: TicketStatus, event: TicketEvent) -> TicketStatus:
        """Return the state reached by firing ``event`` from ``current``.

        Raises :class:`InvalidTransitionError` when the table has no matching row.
        """

        transition = cls._TRANSITIONS[event]
        if current not in transition.sources:
            raise InvalidTransitionError(f"Cannot {transition.verb} in current state: {current.value}")
        return transition.target

    @classmethod
    def fire(cls, ticket: Ticket, event: TicketEvent, *, actor_id: str, at: datetime) -> Ticket:
        """Return a copy of ``ticket`` with ``event`` and its effects applied.

        The input ticket is left untouched, so a rejected event never leaks a
        partially updated record.
        """

        target = cls.next_state(ticket.status, event)
        changes: dict[str, object] = {"status": target, "updated_at": at}

        if event is TicketEvent.ASSIGN:
            changes["agent_id"] = actor_id
        elif event is TicketEvent.AGENT_RESPOND:
            changes["first_response_at"] = ticket.first_response_at or at
            changes["agent_has_replied"] = True
        elif event is TicketEvent.RESOLVE:
            changes["resolved_at"] = at
            changes["resolved_by"] = actor_id
        elif event is TicketEvent.CLOSE:
            changes["closed_at"] = at
        elif event is TicketEvent.REOPEN:
            changes["reopened_at"] = at
            changes["closed_at"] = None
            changes["resolved_at"] = None
            changes["resolved_by"] = None

        return replace(ticket, **changes)


def implicit_comment_event(*, author_is_agent: bool, status: TicketStatus) -> TicketEvent | None:
    """Event fired as a side effect of a comment, or ``None`` when the comment stands alone."""

    if author_is_agent:
        if status in (TicketStatus.IN_PROGRESS, TicketStatus.REOPENED):
            return TicketEvent.AGENT_RESPOND
        return None
    if status in (TicketStatus.WAITING_ON_CUSTOMER, TicketStatus.RESOLVED):
        return TicketEvent.CUSTOMER_REPLY
    return None
