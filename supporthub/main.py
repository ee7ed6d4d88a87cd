import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from supporthub.api.routes import tickets
from supporthub.core.config import Settings, get_settings
from supporthub.core.logging import configure_logging, init_tracer, shutdown_tracer
from supporthub.core.security import StaticTokenResolver
from supporthub.tickets.memory import InMemoryTicketStore
from supporthub.tickets.notifications import LoggingNotifier
from supporthub.tickets.repository import TicketRepository, create_pool
from supporthub.tickets.service import TicketService

logger = logging.getLogger(__name__)


def build_ticket_service(settings: Settings, store) -> TicketService:
    return TicketService(
        store,
        notifier=LoggingNotifier(logging.getLogger(f"{settings.app_name}.notifications")),
        lock_timeout=settings.lock_timeout_seconds,
        reference_prefix=settings.reference_prefix,
        reference_attempts=settings.reference_attempts,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):  # pragma: no cover - executed by framework
    settings = get_settings()
    app.state.logger = configure_logging(settings)
    tracer_provider = init_tracer(settings)
    app.state.tracer_provider = tracer_provider
    app.state.identity_resolver = StaticTokenResolver(settings.auth_tokens)

    pool = None
    app.state.ticket_service = None
    try:
        if settings.storage_backend == "memory":
            store = InMemoryTicketStore()
        else:
            pool = await create_pool(
                settings.postgres_dsn,
                min_size=settings.postgres_pool_min_size,
                max_size=settings.postgres_pool_max_size,
            )
            store = TicketRepository(pool)
        service = build_ticket_service(settings, store)
        await service.ensure_schema()
        app.state.ticket_service = service
    except Exception:  # pragma: no cover - service initialisation best effort
        logger.exception("Ticket service could not be initialised (backend=%s)", settings.storage_backend)
        if pool is not None:
            await pool.close()
            pool = None
    try:
        yield
    finally:
        if pool is not None:
            await pool.close()
        shutdown_tracer(tracer_provider)


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.include_router(tickets.router)
    return app


app = create_app()
