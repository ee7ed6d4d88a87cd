from __future__ import annotations

from datetime import datetime
from typing import Any, TypeVar

from fastapi import APIRouter, HTTPException, Query, status
from pydantic import BaseModel, ConfigDict, Field

from supporthub.core.security import User
from supporthub.dependencies.auth import CurrentUser
from supporthub.dependencies.tickets import TicketServiceDep
from supporthub.tickets.errors import ErrorKind
from supporthub.tickets.models import Comment, Ticket, TicketAuditEntry, TicketCategory, TicketPriority
from supporthub.tickets.policy import TicketPolicy
from supporthub.tickets.service import OperationResult
from supporthub.tickets.state import TicketStatus

router = APIRouter(prefix="/tickets", tags=["tickets"])

T = TypeVar("T")

_STATUS_BY_ERROR = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.UNAUTHORIZED: 403,
    ErrorKind.VALIDATION_FAILED: 422,
    ErrorKind.INVALID_TRANSITION: 409,
    ErrorKind.ALREADY_ASSIGNED: 409,
    ErrorKind.OPERATION_FAILED: 503,
}


class TicketCreateRequest(BaseModel):
    title: str | None = None
    description: str | None = None
    priority: str | None = Field(default=None)
    category: str | None = Field(default=None)


class TicketReopenRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class CommentCreateRequest(BaseModel):
    body: str | None = None


class TicketCapabilities(BaseModel):
    can_assign: bool
    can_comment: bool
    can_resolve: bool
    can_close: bool
    can_reopen: bool


class TicketResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    number: str
    title: str
    description: str
    priority: TicketPriority
    category: TicketCategory
    status: TicketStatus
    customer_id: str
    agent_id: str | None
    agent_has_replied: bool
    first_response_at: datetime | None
    resolved_at: datetime | None
    resolved_by: str | None
    closed_at: datetime | None
    reopened_at: datetime | None
    created_at: datetime
    updated_at: datetime
    is_active: bool
    is_completed: bool
    needs_agent_attention: bool
    capabilities: TicketCapabilities | None = None


class CommentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    ticket_id: str
    author_id: str
    author_role: str
    body: str
    created_at: datetime


class CommentCreatedResponse(BaseModel):
    comment: CommentResponse
    ticket: TicketResponse
    warnings: list[str]


class TicketAuditResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    ticket_id: str
    action: str
    actor: str
    from_status: TicketStatus | None
    to_status: TicketStatus
    metadata: dict[str, Any]
    created_at: datetime


class TicketStatsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    total: int
    open: int
    pending: int
    completed: int


def _unwrap(result: OperationResult[T], user: User | None) -> T:
    if result.ok:
        return result.value
    status_code = _STATUS_BY_ERROR[result.error]
    if result.error is ErrorKind.UNAUTHORIZED and user is None:
        status_code = 401
    raise HTTPException(status_code=status_code, detail=result.errors)


def _to_response(ticket: Ticket, user: User | None) -> TicketResponse:
    response = TicketResponse.model_validate(ticket)
    response.capabilities = TicketCapabilities(**TicketPolicy(user, ticket).capabilities())
    return response


def _to_comment_response(comment: Comment) -> CommentResponse:
    return CommentResponse.model_validate(comment)


def _to_audit_response(entry: TicketAuditEntry) -> TicketAuditResponse:
    return TicketAuditResponse.model_validate(entry)


@router.post("", response_model=TicketResponse, status_code=status.HTTP_201_CREATED)
async def create_ticket(payload: TicketCreateRequest, service: TicketServiceDep, user: CurrentUser) -> TicketResponse:
    result = await service.create_ticket(
        user,
        title=payload.title,
        description=payload.description,
        priority=payload.priority,
        category=payload.category,
    )
    return _to_response(_unwrap(result, user), user)


@router.get("", response_model=list[TicketResponse])
async def list_tickets(
    service: TicketServiceDep,
    user: CurrentUser,
    status_filter: TicketStatus | None = Query(default=None, alias="status"),
) -> list[TicketResponse]:
    tickets = _unwrap(await service.list_tickets(user, status=status_filter), user)
    return [_to_response(ticket, user) for ticket in tickets]


@router.get("/stats", response_model=TicketStatsResponse)
async def ticket_stats(service: TicketServiceDep, user: CurrentUser) -> TicketStatsResponse:
    stats = _unwrap(await service.ticket_stats(user), user)
    return TicketStatsResponse.model_validate(stats)


@router.get("/{ticket_id}", response_model=TicketResponse)
async def get_ticket(ticket_id: str, service: TicketServiceDep, user: CurrentUser) -> TicketResponse:
    ticket = _unwrap(await service.view_ticket(user, ticket_id), user)
    return _to_response(ticket, user)


@router.post("/{ticket_id}/assign", response_model=TicketResponse)
async def assign_ticket(ticket_id: str, service: TicketServiceDep, user: CurrentUser) -> TicketResponse:
    ticket = _unwrap(await service.assign_ticket(user, ticket_id), user)
    return _to_response(ticket, user)


@router.post("/{ticket_id}/resolve", response_model=TicketResponse)
async def resolve_ticket(ticket_id: str, service: TicketServiceDep, user: CurrentUser) -> TicketResponse:
    ticket = _unwrap(await service.resolve_ticket(user, ticket_id), user)
    return _to_response(ticket, user)


@router.post("/{ticket_id}/close", response_model=TicketResponse)
async def close_ticket(ticket_id: str, service: TicketServiceDep, user: CurrentUser) -> TicketResponse:
    ticket = _unwrap(await service.close_ticket(user, ticket_id), user)
    return _to_response(ticket, user)


@router.post("/{ticket_id}/reopen", response_model=TicketResponse)
async def reopen_ticket(
    ticket_id: str,
    service: TicketServiceDep,
    user: CurrentUser,
    payload: TicketReopenRequest | None = None,
) -> TicketResponse:
    reason = payload.reason if payload is not None else None
    ticket = _unwrap(await service.reopen_ticket(user, ticket_id, reason=reason), user)
    return _to_response(ticket, user)


@router.get("/{ticket_id}/comments", response_model=list[CommentResponse])
async def list_comments(ticket_id: str, service: TicketServiceDep, user: CurrentUser) -> list[CommentResponse]:
    comments = _unwrap(await service.list_comments(user, ticket_id), user)
    return [_to_comment_response(comment) for comment in comments]


@router.post("/{ticket_id}/comments", response_model=CommentCreatedResponse, status_code=status.HTTP_201_CREATED)
async def add_comment(
    ticket_id: str,
    payload: CommentCreateRequest,
    service: TicketServiceDep,
    user: CurrentUser,
) -> CommentCreatedResponse:
    result = await service.record_comment(user, ticket_id, payload.body)
    record = _unwrap(result, user)
    return CommentCreatedResponse(
        comment=_to_comment_response(record.comment),
        ticket=_to_response(record.ticket, user),
        warnings=result.warnings,
    )


@router.get("/{ticket_id}/audit", response_model=list[TicketAuditResponse])
async def get_ticket_audit(ticket_id: str, service: TicketServiceDep, user: CurrentUser) -> list[TicketAuditResponse]:
    entries = _unwrap(await service.get_audit_log(user, ticket_id), user)
    return [_to_audit_response(entry) for entry in entries]
