from __future__ import annotations

import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Mapping

import asyncpg

from .errors import DuplicateReferenceError, LockTimeoutError, StorageError
from .models import Comment, Ticket, TicketAuditEntry, TicketCategory, TicketPriority
from .state import TicketStatus

_TICKET_COLUMNS = """
    id, number, title, description, priority, category, status, customer_id, agent_id,
    agent_has_replied, first_response_at, resolved_at, resolved_by, closed_at, reopened_at,
    created_at, updated_at
"""


async def _init_connection(connection: asyncpg.Connection) -> None:
    await connection.set_type_codec("jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog")


async def create_pool(dsn: str, *, min_size: int = 1, max_size: int = 10) -> asyncpg.Pool:
    """Create an asyncpg pool whose connections encode ``jsonb`` as Python dicts."""

    return await asyncpg.create_pool(dsn=dsn, min_size=min_size, max_size=max_size, init=_init_connection)


class PostgresLockedTicket:
    """Write handle bound to the transaction that holds ``SELECT ... FOR UPDATE``."""

    def __init__(self, connection: Any, ticket: Ticket) -> None:
        self._connection = connection
        self.ticket = ticket

    async def save(self, ticket: Ticket, audit: TicketAuditEntry) -> None:
        # Nested transaction: a savepoint inside the lock-holding transaction.
        async with self._connection.transaction():
            row = await self._connection.fetchrow(
                TicketRepository._UPDATE_TICKET_SQL,
                ticket.id,
                ticket.status.value,
                ticket.agent_id,
                ticket.agent_has_replied,
                ticket.first_response_at,
                ticket.resolved_at,
                ticket.resolved_by,
                ticket.closed_at,
                ticket.reopened_at,
                ticket.updated_at,
            )
            if row is None:
                raise StorageError(f"Ticket {ticket.id} disappeared while locked")
            await TicketRepository._insert_audit(self._connection, audit)
        self.ticket = TicketRepository._row_to_ticket(row)

    async def add_comment(self, comment: Comment) -> None:
        async with self._connection.transaction():
            await self._connection.execute(
                TicketRepository._INSERT_COMMENT_SQL,
                comment.id,
                comment.ticket_id,
                comment.author_id,
                comment.author_role,
                comment.body,
                comment.created_at,
            )


class TicketRepository:
    """Data access layer for ticket records, comments and audit logs."""

    _CREATE_TICKETS_SQL = """
    CREATE TABLE IF NOT EXISTS tickets (
        id TEXT PRIMARY KEY,
        number TEXT NOT NULL,
        title TEXT NOT NULL,
        description TEXT NOT NULL,
        priority TEXT NOT NULL DEFAULT 'low',
        category TEXT NOT NULL DEFAULT 'technical_issues',
        status TEXT NOT NULL DEFAULT 'open',
        customer_id TEXT NOT NULL,
        agent_id TEXT NULL,
        agent_has_replied BOOLEAN NOT NULL DEFAULT FALSE,
        first_response_at TIMESTAMPTZ NULL,
        resolved_at TIMESTAMPTZ NULL,
        resolved_by TEXT NULL,
        closed_at TIMESTAMPTZ NULL,
        reopened_at TIMESTAMPTZ NULL,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL
    )
    """

    _CREATE_INDEXES_SQL = """
    CREATE UNIQUE INDEX IF NOT EXISTS index_tickets_on_number ON tickets (number);
    CREATE INDEX IF NOT EXISTS index_tickets_on_customer_id ON tickets (customer_id);
    CREATE INDEX IF NOT EXISTS index_tickets_on_agent_id ON tickets (agent_id);
    CREATE INDEX IF NOT EXISTS index_tickets_on_status ON tickets (status)
    """

    _CREATE_COMMENTS_SQL = """
    CREATE TABLE IF NOT EXISTS ticket_comments (
        id TEXT PRIMARY KEY,
        ticket_id TEXT NOT NULL REFERENCES tickets(id) ON DELETE CASCADE,
        author_id TEXT NOT NULL,
        author_role TEXT NOT NULL,
        body TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL
    )
    """

    _CREATE_AUDIT_SQL = """
    CREATE TABLE IF NOT EXISTS ticket_audit_logs (
        id TEXT PRIMARY KEY,
        ticket_id TEXT NOT NULL REFERENCES tickets(id) ON DELETE CASCADE,
        action TEXT NOT NULL,
        actor TEXT NOT NULL,
        from_status TEXT NULL,
        to_status TEXT NOT NULL,
        metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL
    )
    """

    _INSERT_TICKET_SQL = f"""
    INSERT INTO tickets (
        id, number, title, description, priority, category, status, customer_id, agent_id,
        agent_has_replied, first_response_at, resolved_at, resolved_by, closed_at, reopened_at,
        created_at, updated_at
    )
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16, $17)
    RETURNING {_TICKET_COLUMNS}
    """

    _SELECT_TICKET_SQL = f"""
    SELECT {_TICKET_COLUMNS}
    FROM tickets
    WHERE id = $1
    """

    _SELECT_TICKET_FOR_UPDATE_SQL = f"""
    SELECT {_TICKET_COLUMNS}
    FROM tickets
    WHERE id = $1
    FOR UPDATE
    """

    _UPDATE_TICKET_SQL = f"""
    UPDATE tickets
    SET status = $2,
        agent_id = $3,
        agent_has_replied = $4,
        first_response_at = $5,
        resolved_at = $6,
        resolved_by = $7,
        closed_at = $8,
        reopened_at = $9,
        updated_at = $10
    WHERE id = $1
    RETURNING {_TICKET_COLUMNS}
    """

    _COUNT_BY_STATUS_SQL = """
    SELECT status, COUNT(*) AS count
    FROM tickets
    {where}
    GROUP BY status
    """

    _INSERT_COMMENT_SQL = """
    INSERT INTO ticket_comments (id, ticket_id, author_id, author_role, body, created_at)
    VALUES ($1, $2, $3, $4, $5, $6)
    """

    _SELECT_COMMENTS_SQL = """
    SELECT id, ticket_id, author_id, author_role, body, created_at
    FROM ticket_comments
    WHERE ticket_id = $1
    ORDER BY created_at ASC
    """

    _INSERT_AUDIT_SQL = """
    INSERT INTO ticket_audit_logs (id, ticket_id, action, actor, from_status, to_status, metadata, created_at)
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
    """

    _SELECT_AUDIT_SQL = """
    SELECT id, ticket_id, action, actor, from_status, to_status, metadata, created_at
    FROM ticket_audit_logs
    WHERE ticket_id = $1
    ORDER BY created_at ASC
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def ensure_schema(self) -> None:
        async with self._pool.acquire() as connection:
            await connection.execute(self._CREATE_TICKETS_SQL)
            await connection.execute(self._CREATE_INDEXES_SQL)
            await connection.execute(self._CREATE_COMMENTS_SQL)
            await connection.execute(self._CREATE_AUDIT_SQL)

    async def create_ticket(self, ticket: Ticket, audit: TicketAuditEntry) -> Ticket:
        async with self._pool.acquire() as connection:
            async with connection.transaction():
                try:
                    row = await connection.fetchrow(
                        self._INSERT_TICKET_SQL,
                        ticket.id,
                        ticket.number,
                        ticket.title,
                        ticket.description,
                        ticket.priority.value,
                        ticket.category.value,
                        ticket.status.value,
                        ticket.customer_id,
                        ticket.agent_id,
                        ticket.agent_has_replied,
                        ticket.first_response_at,
                        ticket.resolved_at,
                        ticket.resolved_by,
                        ticket.closed_at,
                        ticket.reopened_at,
                        ticket.created_at,
                        ticket.updated_at,
                    )
                except asyncpg.exceptions.UniqueViolationError as exc:
                    raise DuplicateReferenceError(f"Reference number {ticket.number} already exists") from exc
                if row is None:
                    raise StorageError("Failed to insert ticket")
                await self._insert_audit(connection, audit)
        return self._row_to_ticket(row)

    async def get_ticket(self, ticket_id: str) -> Ticket | None:
        async with self._pool.acquire() as connection:
            row = await connection.fetchrow(self._SELECT_TICKET_SQL, ticket_id)
        if row is None:
            return None
        return self._row_to_ticket(row)

    async def list_tickets(
        self, *, customer_id: str | None = None, status: TicketStatus | None = None
    ) -> list[Ticket]:
        where, args = self._filters(customer_id=customer_id, status=status)
        query = f"SELECT {_TICKET_COLUMNS} FROM tickets {where} ORDER BY created_at DESC"
        async with self._pool.acquire() as connection:
            rows = await connection.fetch(query, *args)
        return [self._row_to_ticket(row) for row in rows]

    async def count_by_status(self, *, customer_id: str | None = None) -> dict[TicketStatus, int]:
        where, args = self._filters(customer_id=customer_id)
        async with self._pool.acquire() as connection:
            rows = await connection.fetch(self._COUNT_BY_STATUS_SQL.format(where=where), *args)
        return {TicketStatus(str(row["status"])): int(row["count"]) for row in rows}

    @asynccontextmanager
    async def lock_ticket(self, ticket_id: str, *, timeout: float) -> AsyncIterator[PostgresLockedTicket | None]:
        async with self._pool.acquire(timeout=timeout) as connection:
            async with connection.transaction():
                # SET cannot take bind parameters; the value is an integer we built.
                await connection.execute(f"SET LOCAL lock_timeout = '{max(1, int(timeout * 1000))}ms'")
                try:
                    row = await connection.fetchrow(self._SELECT_TICKET_FOR_UPDATE_SQL, ticket_id)
                except asyncpg.exceptions.LockNotAvailableError as exc:
                    raise LockTimeoutError(f"Timed out waiting for lock on ticket {ticket_id}") from exc
                if row is None:
                    yield None
                else:
                    yield PostgresLockedTicket(connection, self._row_to_ticket(row))

    async def list_comments(self, ticket_id: str) -> list[Comment]:
        async with self._pool.acquire() as connection:
            rows = await connection.fetch(self._SELECT_COMMENTS_SQL, ticket_id)
        return [self._row_to_comment(row) for row in rows]

    async def get_audit_log(self, ticket_id: str) -> list[TicketAuditEntry]:
        async with self._pool.acquire() as connection:
            rows = await connection.fetch(self._SELECT_AUDIT_SQL, ticket_id)
        return [self._row_to_audit(row) for row in rows]

    @staticmethod
    def _filters(
        *, customer_id: str | None = None, status: TicketStatus | None = None
    ) -> tuple[str, list[Any]]:
        clauses: list[str] = []
        args: list[Any] = []
        if customer_id is not None:
            args.append(customer_id)
            clauses.append(f"customer_id = ${len(args)}")
        if status is not None:
            args.append(status.value)
            clauses.append(f"status = ${len(args)}")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, args

    @classmethod
    async def _insert_audit(cls, connection: Any, audit: TicketAuditEntry) -> None:
        await connection.execute(
            cls._INSERT_AUDIT_SQL,
            audit.id,
            audit.ticket_id,
            audit.action,
            audit.actor,
            None if audit.from_status is None else audit.from_status.value,
            audit.to_status.value,
            dict(audit.metadata),
            audit.created_at,
        )

    @staticmethod
    def _row_to_ticket(row: Mapping[str, Any]) -> Ticket:
        return Ticket(
            id=str(row["id"]),
            number=str(row["number"]),
            title=str(row["title"]),
            description=str(row["description"]),
            priority=TicketPriority(str(row["priority"])),
            category=TicketCategory(str(row["category"])),
            status=TicketStatus(str(row["status"])),
            customer_id=str(row["customer_id"]),
            agent_id=_optional_str(row["agent_id"]),
            agent_has_replied=bool(row["agent_has_replied"]),
            first_response_at=_optional_datetime(row["first_response_at"]),
            resolved_at=_optional_datetime(row["resolved_at"]),
            resolved_by=_optional_str(row["resolved_by"]),
            closed_at=_optional_datetime(row["closed_at"]),
            reopened_at=_optional_datetime(row["reopened_at"]),
            created_at=_ensure_datetime(row["created_at"]),
            updated_at=_ensure_datetime(row["updated_at"]),
        )

    @staticmethod
    def _row_to_comment(row: Mapping[str, Any]) -> Comment:
        return Comment(
            id=str(row["id"]),
            ticket_id=str(row["ticket_id"]),
            author_id=str(row["author_id"]),
            author_role=str(row["author_role"]),
            body=str(row["body"]),
            created_at=_ensure_datetime(row["created_at"]),
        )

    @staticmethod
    def _row_to_audit(row: Mapping[str, Any]) -> TicketAuditEntry:
        metadata = row["metadata"] or {}
        if isinstance(metadata, str):
            metadata = json.loads(metadata)
        from_status = row["from_status"]
        return TicketAuditEntry(
            id=str(row["id"]),
            ticket_id=str(row["ticket_id"]),
            action=str(row["action"]),
            actor=str(row["actor"]),
            from_status=TicketStatus(str(from_status)) if from_status else None,
            to_status=TicketStatus(str(row["to_status"])),
            metadata=dict(metadata),
            created_at=_ensure_datetime(row["created_at"]),
        )


def _optional_str(value: Any) -> str | None:
    return None if value is None else str(value)


def _optional_datetime(value: Any) -> datetime | None:
    return None if value is None else _ensure_datetime(value)


def _ensure_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    return datetime.fromisoformat(str(value))
