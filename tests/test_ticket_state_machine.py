from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from supporthub.tickets.errors import InvalidTransitionError
from supporthub.tickets.state import TicketEvent, TicketStateMachine, TicketStatus, implicit_comment_event

NOW = datetime(2025, 8, 20, 9, 0, tzinfo=timezone.utc)

ALLOWED = {
    TicketEvent.ASSIGN: ({TicketStatus.OPEN, TicketStatus.REOPENED}, TicketStatus.IN_PROGRESS),
    TicketEvent.AGENT_RESPOND: ({TicketStatus.IN_PROGRESS, TicketStatus.REOPENED}, TicketStatus.WAITING_ON_CUSTOMER),
    TicketEvent.CUSTOMER_REPLY: ({TicketStatus.WAITING_ON_CUSTOMER, TicketStatus.RESOLVED}, TicketStatus.IN_PROGRESS),
    TicketEvent.RESOLVE: ({TicketStatus.IN_PROGRESS, TicketStatus.WAITING_ON_CUSTOMER}, TicketStatus.RESOLVED),
    TicketEvent.CLOSE: (
        {TicketStatus.RESOLVED, TicketStatus.IN_PROGRESS, TicketStatus.WAITING_ON_CUSTOMER},
        TicketStatus.CLOSED,
    ),
    TicketEvent.REOPEN: ({TicketStatus.CLOSED, TicketStatus.RESOLVED}, TicketStatus.REOPENED),
}

VALID_PAIRS = [(status, event) for event, (sources, _) in ALLOWED.items() for status in sources]
INVALID_PAIRS = [
    (status, event) for event in TicketEvent for status in TicketStatus if status not in ALLOWED[event][0]
]


def test_initial_state_is_open():
    assert TicketStateMachine.initial_state() is TicketStatus.OPEN


@pytest.mark.parametrize(("status", "event"), VALID_PAIRS)
def test_state_machine_allows_table_transitions(status, event):
    assert TicketStateMachine.can_fire(status, event)
    assert TicketStateMachine.next_state(status, event) is ALLOWED[event][1]


@pytest.mark.parametrize(("status", "event"), INVALID_PAIRS)
def test_state_machine_rejects_everything_else_without_touching_the_ticket(make_ticket, status, event):
    ticket = make_ticket(status=status, agent_id="agent-1")
    before = replace(ticket)

    assert not TicketStateMachine.can_fire(status, event)
    with pytest.raises(InvalidTransitionError) as exc:
        TicketStateMachine.fire(ticket, event, actor_id="agent-1", at=NOW)

    assert f"in current state: {status.value}" in str(exc.value)
    assert ticket == before


def test_invalid_transition_message_names_the_action():
    with pytest.raises(InvalidTransitionError) as exc:
        TicketStateMachine.next_state(TicketStatus.OPEN, TicketEvent.RESOLVE)
    assert exc.value.messages == ["Cannot resolve ticket in current state: open"]


def test_available_events_for_resolved_ticket():
    assert set(TicketStateMachine.available_events(TicketStatus.RESOLVED)) == {
        TicketEvent.CUSTOMER_REPLY,
        TicketEvent.CLOSE,
        TicketEvent.REOPEN,
    }
    assert TicketStateMachine.available_events(TicketStatus.CLOSED) == [TicketEvent.REOPEN]


def test_assign_sets_agent_and_returns_new_snapshot(make_ticket):
    ticket = make_ticket()

    assigned = TicketStateMachine.fire(ticket, TicketEvent.ASSIGN, actor_id="agent-7", at=NOW)

    assert assigned.status is TicketStatus.IN_PROGRESS
    assert assigned.agent_id == "agent-7"
    assert assigned.updated_at == NOW
    assert ticket.status is TicketStatus.OPEN
    assert ticket.agent_id is None


def test_agent_respond_sets_first_response_once(make_ticket):
    ticket = make_ticket(status=TicketStatus.IN_PROGRESS, agent_id="agent-1")

    first = TicketStateMachine.fire(ticket, TicketEvent.AGENT_RESPOND, actor_id="agent-1", at=NOW)
    assert first.first_response_at == NOW
    assert first.agent_has_replied is True

    back = TicketStateMachine.fire(first, TicketEvent.CUSTOMER_REPLY, actor_id="customer-1", at=NOW)
    later = NOW + timedelta(hours=3)
    second = TicketStateMachine.fire(back, TicketEvent.AGENT_RESPOND, actor_id="agent-1", at=later)

    assert second.first_response_at == NOW
    assert second.agent_has_replied is True
    assert second.updated_at == later


def test_resolve_records_time_and_agent(make_ticket):
    ticket = make_ticket(status=TicketStatus.WAITING_ON_CUSTOMER, agent_id="agent-1")

    resolved = TicketStateMachine.fire(ticket, TicketEvent.RESOLVE, actor_id="agent-1", at=NOW)

    assert resolved.status is TicketStatus.RESOLVED
    assert resolved.resolved_at == NOW
    assert resolved.resolved_by == "agent-1"


@pytest.mark.parametrize("status", [TicketStatus.CLOSED, TicketStatus.RESOLVED])
def test_reopen_clears_closure_fields(make_ticket, status):
    ticket = make_ticket(
        status=status,
        agent_id="agent-1",
        resolved_at=NOW - timedelta(days=2),
        resolved_by="agent-1",
        closed_at=NOW - timedelta(days=1) if status is TicketStatus.CLOSED else None,
    )

    reopened = TicketStateMachine.fire(ticket, TicketEvent.REOPEN, actor_id="customer-1", at=NOW)

    assert reopened.status is TicketStatus.REOPENED
    assert reopened.reopened_at == NOW
    assert reopened.closed_at is None
    assert reopened.resolved_at is None
    assert reopened.resolved_by is None
    assert reopened.agent_id == "agent-1"


def test_close_sets_closed_at(make_ticket):
    ticket = make_ticket(status=TicketStatus.RESOLVED, agent_id="agent-1")
    closed = TicketStateMachine.fire(ticket, TicketEvent.CLOSE, actor_id="customer-1", at=NOW)
    assert closed.closed_at == NOW
    assert not closed.is_active
    assert closed.is_completed


@pytest.mark.parametrize(
    ("author_is_agent", "status", "expected"),
    [
        (True, TicketStatus.IN_PROGRESS, TicketEvent.AGENT_RESPOND),
        (True, TicketStatus.REOPENED, TicketEvent.AGENT_RESPOND),
        (True, TicketStatus.WAITING_ON_CUSTOMER, None),
        (True, TicketStatus.RESOLVED, None),
        (False, TicketStatus.WAITING_ON_CUSTOMER, TicketEvent.CUSTOMER_REPLY),
        (False, TicketStatus.RESOLVED, TicketEvent.CUSTOMER_REPLY),
        (False, TicketStatus.IN_PROGRESS, None),
        (False, TicketStatus.OPEN, None),
    ],
)
def test_implicit_comment_event(author_is_agent, status, expected):
    assert implicit_comment_event(author_is_agent=author_is_agent, status=status) is expected


def test_status_helpers(make_ticket):
    assert make_ticket(status=TicketStatus.OPEN).needs_agent_attention
    assert make_ticket(status=TicketStatus.IN_PROGRESS).needs_agent_attention
    assert not make_ticket(status=TicketStatus.WAITING_ON_CUSTOMER).needs_agent_attention
    assert make_ticket(status=TicketStatus.RESOLVED).is_active
    assert not make_ticket(status=TicketStatus.OPEN).is_completed
