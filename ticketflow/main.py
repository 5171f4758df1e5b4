from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from ticketflow.api.routes import health, sla, tickets
from ticketflow.core.config import Settings, get_settings
from ticketflow.core.logging import configure_logging, init_tracer, shutdown_tracer
from ticketflow.metrics import metrics_registry
from ticketflow.middleware import CallerIdentityMiddleware
from ticketflow.tickets import (
    DepartmentInfo,
    FilialeInfo,
    InMemoryTicketRepository,
    InMemoryTimeEntryStore,
    LoggingNotifier,
    PermissionGate,
    SQLTicketRepository,
    StaticDepartmentDirectory,
    StaticPermissionResolver,
    TicketCollaborators,
    TicketRepository,
    TicketService,
)

logger = logging.getLogger(__name__)

_IT_DEPARTMENT = DepartmentInfo(
    id="it",
    name="IT",
    is_it_department=True,
    filiale=FilialeInfo(id="provider", name="Software provider", is_software_provider=True),
)


def _to_asyncpg_dsn(dsn: str) -> str:
    """Ensure the SQLAlchemy DSN uses the asyncpg driver."""

    if dsn.startswith("postgresql://"):
        return "postgresql+asyncpg://" + dsn[len("postgresql://") :]
    return dsn


def build_collaborators(settings: Settings) -> TicketCollaborators:
    """In-memory collaborators seeded from settings, for local runs."""

    departments = StaticDepartmentDirectory()
    for user_id in settings.it_department_members:
        departments.place(user_id, _IT_DEPARTMENT)
    return TicketCollaborators(
        permissions=StaticPermissionResolver(settings.caller_permissions),
        departments=departments,
        notifier=LoggingNotifier(),
        time_entries=InMemoryTimeEntryStore(),
    )


def build_ticket_service(
    settings: Settings,
    repository: TicketRepository,
    collaborators: TicketCollaborators | None = None,
) -> TicketService:
    return TicketService(
        repository,
        collaborators or build_collaborators(settings),
        gate=PermissionGate(override_permission=settings.status_override_permission),
        count_unvalidated_time_entries=settings.count_unvalidated_time_entries,
        sla_at_risk_ratio=settings.sla_at_risk_ratio,
        metrics=metrics_registry,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:  # pragma: no cover - executed by framework
    settings: Settings = app.state.settings
    app.state.logger = configure_logging(settings)
    tracer_provider = init_tracer(settings)
    app.state.tracer_provider = tracer_provider

    db_engine: AsyncEngine | None = None
    service: TicketService | None = getattr(app.state, "ticket_service", None)
    if service is None:
        try:
            if settings.storage_backend == "sql":
                db_engine = create_async_engine(_to_asyncpg_dsn(settings.database_dsn), future=True)
                repository: TicketRepository = SQLTicketRepository(
                    async_sessionmaker(db_engine, expire_on_commit=False), engine=db_engine
                )
            else:
                repository = InMemoryTicketRepository()
            service = build_ticket_service(settings, repository)
            await service.ensure_schema()
            app.state.ticket_service = service
        except Exception:
            logger.exception("Ticket service initialisation failed; ticket routes will answer 503")
            app.state.ticket_service = None
            service = None
            if db_engine is not None:
                await db_engine.dispose()
                db_engine = None
    try:
        yield
    finally:
        if service is not None:
            await service.drain_notifications()
        if db_engine is not None:
            await db_engine.dispose()
        shutdown_tracer(tracer_provider)


def create_app(settings: Settings | None = None, ticket_service: TicketService | None = None) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.state.settings = settings
    app.state.api_tokens = dict(settings.api_tokens)
    app.state.metrics_registry = ticket_service.metrics if ticket_service is not None else metrics_registry
    app.state.ticket_service = ticket_service
    app.add_middleware(CallerIdentityMiddleware, tokens=settings.api_tokens)
    app.include_router(health.router)
    app.include_router(tickets.router)
    app.include_router(sla.router)
    return app


app = create_app()
