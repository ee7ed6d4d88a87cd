from __future__ import annotations

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import replace
from typing import AsyncIterator

from .errors import DuplicateReferenceError, LockTimeoutError
from .models import Comment, Ticket, TicketAuditEntry
from .state import TicketStatus


class InMemoryLockedTicket:
    """Write handle for a ticket whose lock is held by the caller."""

    def __init__(self, store: InMemoryTicketStore, ticket: Ticket) -> None:
        self._store = store
        self.ticket = ticket

    async def save(self, ticket: Ticket, audit: TicketAuditEntry) -> None:
        self._store.commit(ticket, audit)
        self.ticket = replace(ticket)

    async def add_comment(self, comment: Comment) -> None:
        self._store.append_comment(comment)


class InMemoryTicketStore:
    """Process-local ticket store guarded by one ``asyncio.Lock`` per ticket."""

    def __init__(self) -> None:
        self._tickets: dict[str, Ticket] = {}
        self._numbers: set[str] = set()
        self._comments: defaultdict[str, list[Comment]] = defaultdict(list)
        self._audit: defaultdict[str, list[TicketAuditEntry]] = defaultdict(list)
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def ensure_schema(self) -> None:
        return None

    async def create_ticket(self, ticket: Ticket, audit: TicketAuditEntry) -> Ticket:
        if ticket.number in self._numbers:
            raise DuplicateReferenceError(f"Reference number {ticket.number} already exists")
        self._numbers.add(ticket.number)
        self.commit(ticket, audit)
        return replace(ticket)

    async def get_ticket(self, ticket_id: str) -> Ticket | None:
        ticket = self._tickets.get(ticket_id)
        return replace(ticket) if ticket is not None else None

    async def list_tickets(
        self, *, customer_id: str | None = None, status: TicketStatus | None = None
    ) -> list[Ticket]:
        tickets = [
            replace(ticket)
            for ticket in self._tickets.values()
            if (customer_id is None or ticket.customer_id == customer_id)
            and (status is None or ticket.status is status)
        ]
        tickets.sort(key=lambda ticket: ticket.created_at, reverse=True)
        return tickets

    async def count_by_status(self, *, customer_id: str | None = None) -> dict[TicketStatus, int]:
        counts: dict[TicketStatus, int] = {}
        for ticket in self._tickets.values():
            if customer_id is not None and ticket.customer_id != customer_id:
                continue
            counts[ticket.status] = counts.get(ticket.status, 0) + 1
        return counts

    @asynccontextmanager
    async def lock_ticket(self, ticket_id: str, *, timeout: float) -> AsyncIterator[InMemoryLockedTicket | None]:
        lock = self._locks[ticket_id]
        try:
            await asyncio.wait_for(lock.acquire(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise LockTimeoutError(f"Timed out waiting for lock on ticket {ticket_id}") from exc
        try:
            current = self._tickets.get(ticket_id)
            yield None if current is None else InMemoryLockedTicket(self, replace(current))
        finally:
            lock.release()

    async def list_comments(self, ticket_id: str) -> list[Comment]:
        return [replace(comment) for comment in self._comments.get(ticket_id, [])]

    async def get_audit_log(self, ticket_id: str) -> list[TicketAuditEntry]:
        return [replace(entry) for entry in self._audit.get(ticket_id, [])]

    def commit(self, ticket: Ticket, audit: TicketAuditEntry) -> None:
        """Store a ticket snapshot and its audit entry; callers hold the ticket lock."""

        self._tickets[ticket.id] = replace(ticket)
        self._audit[ticket.id].append(replace(audit))

    def append_comment(self, comment: Comment) -> None:
        self._comments[comment.ticket_id].append(replace(comment))
