from __future__ import annotations

import logging
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Generic, Mapping, TypeVar

from opentelemetry import trace

from supporthub.core.security import User

from .errors import (
    AlreadyAssignedError,
    DuplicateReferenceError,
    ErrorKind,
    InvalidTransitionError,
    OperationFailedError,
    TicketNotFoundError,
    TicketServiceError,
    UnauthorizedError,
)
from .models import Comment, CommentRecord, Ticket, TicketAuditEntry, TicketStats
from .notifications import LoggingNotifier, TicketNotifier
from .policy import TicketAction, TicketPolicy
from .state import TicketEvent, TicketStateMachine, TicketStatus, implicit_comment_event
from .store import LockedTicket, TicketStore
from .validation import validate_comment_body, validate_ticket_draft

logger = logging.getLogger(__name__)
_tracer = trace.get_tracer(__name__)

T = TypeVar("T")

_OPERATION_LABELS = {
    "create_ticket": "creating ticket",
    "assign_ticket": "assigning ticket",
    "record_comment": "adding comment",
    "resolve_ticket": "resolving ticket",
    "close_ticket": "closing ticket",
    "reopen_ticket": "reopening ticket",
    "view_ticket": "loading ticket",
    "list_tickets": "listing tickets",
    "ticket_stats": "counting tickets",
    "list_comments": "loading comments",
    "get_audit_log": "loading ticket history",
}

_ACTION_VERBS = {
    TicketAction.VIEW: "view",
    TicketAction.ASSIGN: "assign",
    TicketAction.COMMENT: "comment on",
    TicketAction.RESOLVE: "resolve",
    TicketAction.CLOSE: "close",
    TicketAction.REOPEN: "reopen",
}

_OPEN_STATES = (TicketStatus.OPEN, TicketStatus.REOPENED)
_PENDING_STATES = (TicketStatus.IN_PROGRESS, TicketStatus.WAITING_ON_CUSTOMER)
_COMPLETED_STATES = (TicketStatus.RESOLVED, TicketStatus.CLOSED)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class OperationResult(Generic[T]):
    """Outcome of a ticket service operation.

    A failed result always carries at least one message in ``errors``; a
    successful one may carry ``warnings`` about side effects that did not
    happen.
    """

    value: T | None = None
    errors: list[str] = field(default_factory=list)
    error: ErrorKind | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T, warnings: list[str] | None = None) -> OperationResult[T]:
        return cls(value=value, warnings=list(warnings or []))

    @classmethod
    def failure(cls, exc: TicketServiceError) -> OperationResult[T]:
        return cls(errors=list(exc.messages) or ["Operation failed"], error=exc.kind)


class TicketService:
    """Coordinates ticket creation, lifecycle transitions and comments.

    Every transition follows the same protocol: look the ticket up, check the
    actor's permission, take the ticket's exclusive lock, re-check permission
    and guards against the locked row, fire the state machine event, persist
    and release. Business failures come back as failed results; anything
    else is logged and reported as ``OPERATION_FAILED``.
    """

    def __init__(
        self,
        store: TicketStore,
        *,
        notifier: TicketNotifier | None = None,
        lock_timeout: float = 5.0,
        reference_prefix: str = "SPT",
        reference_attempts: int = 5,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._notifier = notifier or LoggingNotifier()
        self._lock_timeout = lock_timeout
        self._reference_prefix = reference_prefix
        self._reference_attempts = max(1, reference_attempts)
        self._clock = clock

    async def ensure_schema(self) -> None:
        await self._store.ensure_schema()

    async def create_ticket(
        self,
        actor: User | None,
        *,
        title: str | None,
        description: str | None,
        priority: str | None = None,
        category: str | None = None,
    ) -> OperationResult[Ticket]:
        async def work() -> Ticket:
            if not TicketPolicy(actor).allows(TicketAction.CREATE):
                raise UnauthorizedError("Not authorized to create tickets")
            draft = validate_ticket_draft(
                title=title, description=description, priority=priority, category=category
            )
            ticket = await self._insert_ticket(
                customer_id=actor.id,
                title=draft.title,
                description=draft.description,
                priority=draft.priority,
                category=draft.category,
            )
            self._notify("created", ticket)
            return ticket

        return await self._execute("create_ticket", actor, work)

    async def assign_ticket(self, actor: User | None, ticket_id: str) -> OperationResult[Ticket]:
        def guard(user: User, ticket: Ticket) -> None:
            if ticket.agent_id is not None and ticket.agent_id != user.id:
                raise AlreadyAssignedError()

        return await self._transition(
            "assign_ticket", actor, ticket_id, action=TicketAction.ASSIGN, event=TicketEvent.ASSIGN, guard=guard
        )

    async def resolve_ticket(self, actor: User | None, ticket_id: str) -> OperationResult[Ticket]:
        return await self._transition(
            "resolve_ticket", actor, ticket_id, action=TicketAction.RESOLVE, event=TicketEvent.RESOLVE
        )

    async def close_ticket(self, actor: User | None, ticket_id: str) -> OperationResult[Ticket]:
        return await self._transition(
            "close_ticket", actor, ticket_id, action=TicketAction.CLOSE, event=TicketEvent.CLOSE
        )

    async def reopen_ticket(
        self, actor: User | None, ticket_id: str, *, reason: str | None = None
    ) -> OperationResult[Ticket]:
        metadata = {"reason": reason.strip()} if reason and reason.strip() else {}
        return await self._transition(
            "reopen_ticket",
            actor,
            ticket_id,
            action=TicketAction.REOPEN,
            event=TicketEvent.REOPEN,
            metadata=metadata,
        )

    async def record_comment(
        self, actor: User | None, ticket_id: str, body: str | None
    ) -> OperationResult[CommentRecord]:
        warnings: list[str] = []

        async def work() -> CommentRecord:
            ticket = await self._load(ticket_id)
            self._authorize(actor, ticket, TicketAction.COMMENT)
            text = validate_comment_body(body)
            record, fired = await self._comment_locked(actor, ticket_id, text, warnings)
            self._notify("comment_added", record.ticket)
            if fired is not None:
                self._notify(fired.value, record.ticket)
            return record

        return await self._execute("record_comment", actor, work, ticket_id=ticket_id, warnings=warnings)

    async def view_ticket(self, actor: User | None, ticket_id: str) -> OperationResult[Ticket]:
        async def work() -> Ticket:
            ticket = await self._load(ticket_id)
            self._authorize(actor, ticket, TicketAction.VIEW)
            return ticket

        return await self._execute("view_ticket", actor, work, ticket_id=ticket_id)

    async def list_tickets(
        self, actor: User | None, *, status: TicketStatus | None = None
    ) -> OperationResult[list[Ticket]]:
        async def work() -> list[Ticket]:
            customer_id = TicketPolicy.scope_customer_id(actor)
            return await self._store.list_tickets(customer_id=customer_id, status=status)

        return await self._execute("list_tickets", actor, work)

    async def ticket_stats(self, actor: User | None) -> OperationResult[TicketStats]:
        async def work() -> TicketStats:
            counts = await self._store.count_by_status(customer_id=TicketPolicy.scope_customer_id(actor))
            return TicketStats(
                total=sum(counts.values()),
                open=sum(counts.get(status, 0) for status in _OPEN_STATES),
                pending=sum(counts.get(status, 0) for status in _PENDING_STATES),
                completed=sum(counts.get(status, 0) for status in _COMPLETED_STATES),
            )

        return await self._execute("ticket_stats", actor, work)

    async def list_comments(self, actor: User | None, ticket_id: str) -> OperationResult[list[Comment]]:
        async def work() -> list[Comment]:
            ticket = await self._load(ticket_id)
            self._authorize(actor, ticket, TicketAction.VIEW)
            return await self._store.list_comments(ticket_id)

        return await self._execute("list_comments", actor, work, ticket_id=ticket_id)

    async def get_audit_log(self, actor: User | None, ticket_id: str) -> OperationResult[list[TicketAuditEntry]]:
        async def work() -> list[TicketAuditEntry]:
            ticket = await self._load(ticket_id)
            self._authorize(actor, ticket, TicketAction.VIEW)
            return await self._store.get_audit_log(ticket_id)

        return await self._execute("get_audit_log", actor, work, ticket_id=ticket_id)

    async def _transition(
        self,
        operation: str,
        actor: User | None,
        ticket_id: str,
        *,
        action: TicketAction,
        event: TicketEvent,
        guard: Callable[[User, Ticket], None] | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> OperationResult[Ticket]:
        async def work() -> Ticket:
            ticket = await self._load(ticket_id)
            # Provisional: the row may change before we hold its lock.
            self._authorize(actor, ticket, action)
            async with self._store.lock_ticket(ticket_id, timeout=self._lock_timeout) as locked:
                if locked is None:
                    raise TicketNotFoundError()
                current = locked.ticket
                self._authorize(actor, current, action)
                if guard is not None:
                    guard(actor, current)
                await self._fire(locked, event, actor, metadata or {})
                updated = locked.ticket
            self._notify(event.value, updated)
            return updated

        return await self._execute(operation, actor, work, ticket_id=ticket_id)

    async def _comment_locked(
        self, actor: User, ticket_id: str, body: str, warnings: list[str]
    ) -> tuple[CommentRecord, TicketEvent | None]:
        async with self._store.lock_ticket(ticket_id, timeout=self._lock_timeout) as locked:
            if locked is None:
                raise TicketNotFoundError()
            current = locked.ticket
            self._authorize(actor, current, TicketAction.COMMENT)

            comment = Comment(
                id=str(uuid.uuid4()),
                ticket_id=ticket_id,
                author_id=actor.id,
                author_role=actor.primary_role.value,
                body=body,
                created_at=self._clock(),
            )
            await locked.add_comment(comment)

            event = implicit_comment_event(author_is_agent=actor.is_agent, status=current.status)
            fired: TicketEvent | None = None
            if event is not None:
                try:
                    await self._fire(locked, event, actor, {"comment_id": comment.id})
                    fired = event
                except InvalidTransitionError as exc:
                    logger.warning(
                        "Comment %s created but state transition failed for ticket %s: %s",
                        comment.id,
                        ticket_id,
                        exc,
                    )
                    warnings.extend(exc.messages)
                except Exception:
                    logger.exception(
                        "Comment %s created but %s could not be persisted for ticket %s",
                        comment.id,
                        event.value,
                        ticket_id,
                    )
                    warnings.append("Comment saved but the ticket status could not be updated")
            return CommentRecord(comment=comment, ticket=locked.ticket), fired

    async def _fire(
        self, locked: LockedTicket, event: TicketEvent, actor: User, metadata: Mapping[str, Any]
    ) -> None:
        current = locked.ticket
        now = self._clock()
        updated = TicketStateMachine.fire(current, event, actor_id=actor.id, at=now)
        audit = TicketAuditEntry(
            id=str(uuid.uuid4()),
            ticket_id=current.id,
            action=event.value,
            actor=actor.id,
            from_status=current.status,
            to_status=updated.status,
            metadata=dict(metadata),
            created_at=now,
        )
        await locked.save(updated, audit)

    async def _insert_ticket(self, *, customer_id: str, **fields: Any) -> Ticket:
        now = self._clock()
        for attempt in range(1, self._reference_attempts + 1):
            ticket = Ticket(
                id=str(uuid.uuid4()),
                number=self._new_reference(),
                status=TicketStateMachine.initial_state(),
                customer_id=customer_id,
                created_at=now,
                updated_at=now,
                **fields,
            )
            audit = TicketAuditEntry(
                id=str(uuid.uuid4()),
                ticket_id=ticket.id,
                action="created",
                actor=customer_id,
                from_status=None,
                to_status=ticket.status,
                created_at=now,
            )
            try:
                return await self._store.create_ticket(ticket, audit)
            except DuplicateReferenceError:
                logger.warning("Reference %s already taken (attempt %d)", ticket.number, attempt)
        raise OperationFailedError("Could not allocate a reference number, please try again")

    def _new_reference(self) -> str:
        return f"{self._reference_prefix}-{secrets.token_hex(5)}"

    async def _load(self, ticket_id: str) -> Ticket:
        ticket = await self._store.get_ticket(ticket_id)
        if ticket is None:
            raise TicketNotFoundError()
        return ticket

    @staticmethod
    def _authorize(actor: User | None, ticket: Ticket, action: TicketAction) -> None:
        if actor is None:
            raise UnauthorizedError("Authentication required")
        if not TicketPolicy(actor, ticket).allows(action):
            raise UnauthorizedError(f"Not authorized to {_ACTION_VERBS[action]} this ticket")

    def _notify(self, event: str, ticket: Ticket) -> None:
        try:
            self._notifier.notify(event, ticket)
        except Exception:
            logger.exception("Notifier failed for %s on ticket %s", event, ticket.id)

    async def _execute(
        self,
        operation: str,
        actor: User | None,
        work: Callable[[], Awaitable[T]],
        *,
        ticket_id: str | None = None,
        warnings: list[str] | None = None,
    ) -> OperationResult[T]:
        with _tracer.start_as_current_span(f"ticket.{operation}") as span:
            if ticket_id is not None:
                span.set_attribute("ticket.id", ticket_id)
            if actor is not None:
                span.set_attribute("ticket.actor", actor.id)
            try:
                # Ticket-scoped work looks the ticket up first and rejects anonymous
                # actors in _authorize, so a missing ticket reads as NOT_FOUND.
                if actor is None and ticket_id is None:
                    raise UnauthorizedError("Authentication required")
                value = await work()
            except TicketServiceError as exc:
                span.set_attribute("ticket.error", exc.kind.value)
                logger.info("%s rejected (ticket=%s): %s", operation, ticket_id, exc)
                return OperationResult.failure(exc)
            except Exception as exc:
                span.record_exception(exc)
                logger.exception(
                    "%s failed (ticket=%s, actor=%s)",
                    operation,
                    ticket_id,
                    None if actor is None else actor.id,
                )
                return OperationResult.failure(
                    OperationFailedError(f"Unexpected error while {_OPERATION_LABELS[operation]}")
                )
        return OperationResult.success(value, warnings=warnings)
