from __future__ import annotations

import logging
from typing import Protocol

from .models import Ticket

logger = logging.getLogger(__name__)


class TicketNotifier(Protocol):
    """Outbound channel told about committed ticket changes.

    Implementations must not block: delivery happens elsewhere and the caller
    never waits for it.
    """

    def notify(self, event: str, ticket: Ticket) -> None:
        ...


class LoggingNotifier:
    """Notifier that records events in the application log."""

    def __init__(self, log: logging.Logger | None = None) -> None:
        self._logger = log or logger

    def notify(self, event: str, ticket: Ticket) -> None:
        self._logger.info(
            "ticket %s (%s) %s -> %s",
            ticket.number,
            ticket.id,
            event,
            ticket.status.value,
        )
