from __future__ import annotations

import uuid
from dataclasses import replace
from datetime import datetime, timezone

import pytest

from supporthub.core.security import Role, User
from supporthub.tickets.memory import InMemoryTicketStore
from supporthub.tickets.models import Ticket, TicketAuditEntry, TicketCategory, TicketPriority
from supporthub.tickets.service import TicketService
from supporthub.tickets.state import TicketStatus

CREATED_AT = datetime(2025, 8, 15, 13, 31, tzinfo=timezone.utc)


class RecordingNotifier:
    def __init__(self) -> None:
        self.events: list[tuple[str, str, TicketStatus]] = []

    def notify(self, event: str, ticket: Ticket) -> None:
        self.events.append((event, ticket.id, ticket.status))


def build_ticket(**overrides) -> Ticket:
    ticket = Ticket(
        id=str(uuid.uuid4()),
        number=f"SPT-{uuid.uuid4().hex[:10]}",
        title="Cannot log in",
        description="The login page keeps spinning",
        priority=TicketPriority.NORMAL,
        category=TicketCategory.ACCOUNT,
        status=TicketStatus.OPEN,
        customer_id="customer-1",
        created_at=CREATED_AT,
        updated_at=CREATED_AT,
    )
    return replace(ticket, **overrides)


@pytest.fixture
def agent() -> User:
    return User("agent-1", (Role.AGENT,))


@pytest.fixture
def other_agent() -> User:
    return User("agent-2", (Role.AGENT,))


@pytest.fixture
def customer() -> User:
    return User("customer-1", (Role.CUSTOMER,))


@pytest.fixture
def stranger() -> User:
    return User("customer-2", (Role.CUSTOMER,))


@pytest.fixture
def make_ticket():
    return build_ticket


@pytest.fixture
def store() -> InMemoryTicketStore:
    return InMemoryTicketStore()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def service(store, notifier) -> TicketService:
    return TicketService(store, notifier=notifier, lock_timeout=0.5)


@pytest.fixture
def seed_ticket(store):
    async def seed(**overrides) -> Ticket:
        ticket = build_ticket(**overrides)
        audit = TicketAuditEntry(
            id=str(uuid.uuid4()),
            ticket_id=ticket.id,
            action="created",
            actor=ticket.customer_id,
            from_status=None,
            to_status=ticket.status,
            created_at=ticket.created_at,
        )
        return await store.create_ticket(ticket, audit)

    return seed
