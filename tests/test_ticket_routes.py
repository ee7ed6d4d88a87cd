import json
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from supporthub.core.config import get_settings
from supporthub.core.security import Role, StaticTokenResolver, User
from supporthub.dependencies import auth as auth_deps
from supporthub.dependencies import tickets as ticket_deps
from supporthub.main import create_app
from supporthub.tickets.errors import (
    AlreadyAssignedError,
    InvalidTransitionError,
    OperationFailedError,
    TicketNotFoundError,
    UnauthorizedError,
    ValidationFailedError,
)
from supporthub.tickets.memory import InMemoryTicketStore
from supporthub.tickets.models import Comment, CommentRecord, TicketAuditEntry, TicketStats
from supporthub.tickets.service import OperationResult, TicketService
from supporthub.tickets.state import TicketStatus

from conftest import CREATED_AT, build_ticket

AGENT = User("agent-1", (Role.AGENT,))
CUSTOMER = User("customer-1", (Role.CUSTOMER,))


@pytest.fixture
def ticket_client():
    app = create_app()
    service = AsyncMock()
    current = {"user": AGENT}

    async def override_service():
        return service

    app.dependency_overrides[ticket_deps.get_ticket_service] = override_service
    app.dependency_overrides[auth_deps.get_current_user] = lambda: current["user"]

    client = TestClient(app)
    try:
        yield client, service, current
    finally:
        app.dependency_overrides.clear()


def test_create_ticket_endpoint_returns_created(ticket_client):
    client, service, current = ticket_client
    current["user"] = CUSTOMER
    ticket = build_ticket()
    service.create_ticket = AsyncMock(return_value=OperationResult.success(ticket))

    response = client.post("/tickets", json={"title": "Cannot log in", "description": "Spinner", "priority": "high"})

    assert response.status_code == 201
    body = response.json()
    assert body["id"] == ticket.id
    assert body["number"] == ticket.number
    assert body["status"] == "open"
    assert body["needs_agent_attention"] is True
    assert body["capabilities"]["can_assign"] is False
    service.create_ticket.assert_awaited_once_with(
        CUSTOMER, title="Cannot log in", description="Spinner", priority="high", category=None
    )


def test_create_ticket_validation_errors_are_422(ticket_client):
    client, service, _ = ticket_client
    service.create_ticket = AsyncMock(
        return_value=OperationResult.failure(ValidationFailedError({"title": ["can't be blank"]}))
    )

    response = client.post("/tickets", json={"title": "", "description": "Spinner"})

    assert response.status_code == 422
    assert response.json()["detail"] == ["Title can't be blank"]


def test_list_tickets_endpoint_filters_by_status(ticket_client):
    client, service, _ = ticket_client
    service.list_tickets = AsyncMock(
        return_value=OperationResult.success([build_ticket(status=TicketStatus.RESOLVED, agent_id="agent-1")])
    )

    response = client.get("/tickets", params={"status": "resolved"})

    assert response.status_code == 200
    assert [item["status"] for item in response.json()] == ["resolved"]
    service.list_tickets.assert_awaited_once_with(AGENT, status=TicketStatus.RESOLVED)


def test_stats_endpoint(ticket_client):
    client, service, _ = ticket_client
    service.ticket_stats = AsyncMock(return_value=OperationResult.success(TicketStats(7, 2, 3, 2)))

    response = client.get("/tickets/stats")

    assert response.status_code == 200
    assert response.json() == {"total": 7, "open": 2, "pending": 3, "completed": 2}


def test_missing_ticket_is_404(ticket_client):
    client, service, _ = ticket_client
    service.view_ticket = AsyncMock(return_value=OperationResult.failure(TicketNotFoundError()))

    response = client.get("/tickets/missing")

    assert response.status_code == 404
    assert response.json()["detail"] == ["Ticket not found"]


@pytest.mark.parametrize(
    ("error", "status_code"),
    [
        (InvalidTransitionError("Cannot assign ticket in current state: closed"), 409),
        (AlreadyAssignedError(), 409),
        (UnauthorizedError("Not authorized to assign this ticket"), 403),
        (OperationFailedError("Unexpected error while assigning ticket"), 503),
    ],
)
def test_assign_maps_failures_to_status_codes(ticket_client, error, status_code):
    client, service, _ = ticket_client
    service.assign_ticket = AsyncMock(return_value=OperationResult.failure(error))

    response = client.post("/tickets/ticket-1/assign")

    assert response.status_code == status_code
    assert response.json()["detail"] == error.messages


def test_anonymous_request_is_401(ticket_client):
    client, service, current = ticket_client
    current["user"] = None
    service.resolve_ticket = AsyncMock(
        return_value=OperationResult.failure(UnauthorizedError("Authentication required"))
    )

    response = client.post("/tickets/ticket-1/resolve")

    assert response.status_code == 401
    service.resolve_ticket.assert_awaited_once_with(None, "ticket-1")


def test_reopen_passes_reason(ticket_client):
    client, service, current = ticket_client
    current["user"] = CUSTOMER
    reopened = build_ticket(status=TicketStatus.REOPENED, agent_id="agent-1", reopened_at=CREATED_AT)
    service.reopen_ticket = AsyncMock(return_value=OperationResult.success(reopened))

    response = client.post("/tickets/ticket-1/reopen", json={"reason": "Broken again"})

    assert response.status_code == 200
    assert response.json()["status"] == "reopened"
    service.reopen_ticket.assert_awaited_once_with(CUSTOMER, "ticket-1", reason="Broken again")


def test_comment_endpoint_returns_warnings(ticket_client):
    client, service, current = ticket_client
    current["user"] = CUSTOMER
    ticket = build_ticket(status=TicketStatus.WAITING_ON_CUSTOMER, agent_id="agent-1")
    comment = Comment(
        id="comment-1",
        ticket_id=ticket.id,
        author_id=CUSTOMER.id,
        author_role="customer",
        body="Here you go",
        created_at=CREATED_AT,
    )
    warning = "Comment saved but the ticket status could not be updated"
    service.record_comment = AsyncMock(
        return_value=OperationResult.success(CommentRecord(comment=comment, ticket=ticket), warnings=[warning])
    )

    response = client.post(f"/tickets/{ticket.id}/comments", json={"body": "Here you go"})

    assert response.status_code == 201
    body = response.json()
    assert body["comment"]["body"] == "Here you go"
    assert body["ticket"]["status"] == "waiting_on_customer"
    assert body["warnings"] == [warning]


def test_audit_endpoint_returns_entries(ticket_client):
    client, service, _ = ticket_client
    entry = TicketAuditEntry(
        id="audit-1",
        ticket_id="ticket-1",
        action="reopen",
        actor="customer-1",
        from_status=TicketStatus.CLOSED,
        to_status=TicketStatus.REOPENED,
        created_at=CREATED_AT,
        metadata={"reason": "Broken again"},
    )
    service.get_audit_log = AsyncMock(return_value=OperationResult.success([entry]))

    response = client.get("/tickets/ticket-1/audit")

    assert response.status_code == 200
    assert response.json()[0]["metadata"] == {"reason": "Broken again"}


def test_unknown_bearer_token_is_rejected():
    app = create_app()
    app.state.identity_resolver = StaticTokenResolver({"good-token": "agent:agent-1"})
    app.state.ticket_service = AsyncMock()
    client = TestClient(app)

    response = client.get("/tickets", headers={"Authorization": "Bearer nope"})

    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid authentication credentials"


def test_missing_service_is_503():
    app = create_app()
    app.state.identity_resolver = StaticTokenResolver({})
    client = TestClient(app)

    response = client.get("/tickets")

    assert response.status_code == 503


@pytest.fixture
def memory_app(monkeypatch):
    monkeypatch.setenv("STORAGE_BACKEND", "memory")
    monkeypatch.setenv("OTEL_ENABLED", "false")
    monkeypatch.setenv(
        "AUTH_TOKENS",
        json.dumps({"customer-token": "customer:customer-1", "agent-token": "agent:agent-1"}),
    )
    get_settings.cache_clear()
    try:
        yield create_app()
    finally:
        get_settings.cache_clear()


def test_ticket_lifecycle_over_http(memory_app):
    customer = {"Authorization": "Bearer customer-token"}
    agent = {"Authorization": "Bearer agent-token"}

    with TestClient(memory_app) as client:
        created = client.post(
            "/tickets", json={"title": "Invoice missing", "description": "No PDF attached"}, headers=customer
        )
        assert created.status_code == 201
        ticket_id = created.json()["id"]
        assert created.json()["priority"] == "low"

        assert client.post(f"/tickets/{ticket_id}/comments", json={"body": "Hello?"}, headers=customer).status_code == 403
        assert client.post(f"/tickets/{ticket_id}/assign", headers=agent).json()["status"] == "in_progress"

        replied = client.post(f"/tickets/{ticket_id}/comments", json={"body": "Resending now"}, headers=agent)
        assert replied.status_code == 201
        assert replied.json()["ticket"]["status"] == "waiting_on_customer"

        assert client.post(f"/tickets/{ticket_id}/resolve", headers=agent).json()["status"] == "resolved"
        closed = client.post(f"/tickets/{ticket_id}/close", headers=customer)
        assert closed.json()["status"] == "closed"
        assert closed.json()["capabilities"]["can_reopen"] is True

        again = client.post(f"/tickets/{ticket_id}/close", headers=customer)
        assert again.status_code == 403

        assert client.get(f"/tickets/{ticket_id}").status_code == 401
        history = client.get(f"/tickets/{ticket_id}/audit", headers=agent).json()
        assert [entry["action"] for entry in history] == ["created", "assign", "agent_respond", "resolve", "close"]


@pytest.fixture
def live_client():
    app = create_app()
    service = TicketService(InMemoryTicketStore())
    current = {"user": CUSTOMER}

    async def override_service():
        return service

    app.dependency_overrides[ticket_deps.get_ticket_service] = override_service
    app.dependency_overrides[auth_deps.get_current_user] = lambda: current["user"]

    client = TestClient(app)
    try:
        yield client, current
    finally:
        app.dependency_overrides.clear()


def test_missing_ticket_fields_use_service_messages(live_client):
    client, _ = live_client

    response = client.post("/tickets", json={})

    assert response.status_code == 422
    assert response.json()["detail"] == ["Title can't be blank", "Description can't be blank"]


def test_missing_comment_body_uses_service_message(live_client):
    client, current = live_client
    ticket_id = client.post("/tickets", json={"title": "VPN", "description": "Drops hourly"}).json()["id"]
    current["user"] = AGENT
    assert client.post(f"/tickets/{ticket_id}/assign").status_code == 200

    response = client.post(f"/tickets/{ticket_id}/comments", json={})

    assert response.status_code == 422
    assert response.json()["detail"] == ["Body can't be blank"]


def test_anonymous_lookup_reports_missing_ticket_first(live_client):
    client, current = live_client
    ticket_id = client.post("/tickets", json={"title": "VPN", "description": "Drops hourly"}).json()["id"]
    current["user"] = None

    assert client.post("/tickets/does-not-exist/assign").status_code == 404
    existing = client.post(f"/tickets/{ticket_id}/assign")
    assert existing.status_code == 401
    assert existing.json()["detail"] == ["Authentication required"]
