"""Storage contract the ticket service relies on.

A store hands out an exclusive, per-ticket lock through :meth:`TicketStore.lock_ticket`.
While the lock is held no other caller can lock the same ticket, but plain
reads keep returning the last committed snapshot. Writes made through the
locked handle are individually atomic: a failed ``save`` leaves earlier
writes in the same lock scope (for example a comment) intact.
"""

from __future__ import annotations

from typing import AsyncContextManager, Protocol

from .models import Comment, Ticket, TicketAuditEntry
from .state import TicketStatus


class LockedTicket(Protocol):
    ticket: Ticket

    async def save(self, ticket: Ticket, audit: TicketAuditEntry) -> None:
        ...

    async def add_comment(self, comment: Comment) -> None:
        ...


class TicketStore(Protocol):
    async def ensure_schema(self) -> None:
        ...

    async def create_ticket(self, ticket: Ticket, audit: TicketAuditEntry) -> Ticket:
        ...

    async def get_ticket(self, ticket_id: str) -> Ticket | None:
        ...

    async def list_tickets(
        self, *, customer_id: str | None = None, status: TicketStatus | None = None
    ) -> list[Ticket]:
        ...

    async def count_by_status(self, *, customer_id: str | None = None) -> dict[TicketStatus, int]:
        ...

    def lock_ticket(self, ticket_id: str, *, timeout: float) -> AsyncContextManager[LockedTicket | None]:
        ...

    async def list_comments(self, ticket_id: str) -> list[Comment]:
        ...

    async def get_audit_log(self, ticket_id: str) -> list[TicketAuditEntry]:
        ...
