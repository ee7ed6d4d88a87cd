from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import ValidationFailedError
from .models import TicketCategory, TicketPriority

_MESSAGES = {
    "missing": "can't be blank",
    "string_too_short": "can't be blank",
    "string_type": "must be text",
    "enum": "is not included in the list",
}


class TicketDraft(BaseModel):
    """Fields submitted when a customer opens a ticket."""

    model_config = ConfigDict(str_strip_whitespace=True)

    title: str = Field(..., min_length=1, max_length=255)
    description: str = Field(..., min_length=1)
    priority: TicketPriority = TicketPriority.LOW
    category: TicketCategory = TicketCategory.TECHNICAL_ISSUES


class CommentDraft(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    body: str = Field(..., min_length=1)


def _field_errors(exc: ValidationError) -> dict[str, list[str]]:
    errors: dict[str, list[str]] = {}
    for error in exc.errors():
        field = str(error["loc"][0]) if error["loc"] else "base"
        if error["type"] == "string_too_long":
            message = f"is too long (maximum is {error['ctx']['max_length']} characters)"
        else:
            message = _MESSAGES.get(error["type"], error["msg"])
        errors.setdefault(field, []).append(message)
    return errors


def validate_ticket_draft(
    *,
    title: str | None,
    description: str | None,
    priority: str | None = None,
    category: str | None = None,
) -> TicketDraft:
    """Build a :class:`TicketDraft`, raising :class:`ValidationFailedError` with per-field messages."""

    submitted = {"title": title, "description": description, "priority": priority, "category": category}
    payload = {key: value for key, value in submitted.items() if value is not None}
    try:
        return TicketDraft.model_validate(payload)
    except ValidationError as exc:
        raise ValidationFailedError(_field_errors(exc)) from exc


def validate_comment_body(body: str | None) -> str:
    try:
        draft = CommentDraft.model_validate({} if body is None else {"body": body})
    except ValidationError as exc:
        raise ValidationFailedError(_field_errors(exc)) from exc
    return draft.body
