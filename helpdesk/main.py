from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import timedelta
from typing import AsyncIterator

from fastapi import FastAPI
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from helpdesk.api.errors import register_exception_handlers
from helpdesk.api.routes import health, tickets
from helpdesk.core.config import Settings, get_settings
from helpdesk.core.logging import configure_logging, init_tracer, shutdown_tracer
from helpdesk.middleware import AuthenticationMiddleware, IdempotencyMiddleware
from helpdesk.tickets.audit import AuditLog
from helpdesk.tickets.clock import SystemClock
from helpdesk.tickets.directory import SqlUserDirectory
from helpdesk.tickets.idempotency import (
    IdempotencyStore,
    IdempotencySweeper,
    InMemoryIdempotencyStore,
    SqlIdempotencyStore,
)
from helpdesk.tickets.repository import TicketRepository
from helpdesk.tickets.service import TicketService


def _to_asyncpg_dsn(dsn: str) -> str:
    """Ensure the SQLAlchemy DSN uses the asyncpg driver."""

    if dsn.startswith("postgresql+asyncpg://"):
        return dsn
    if dsn.startswith("postgresql://"):
        return "postgresql+asyncpg://" + dsn[len("postgresql://") :]
    return dsn


def build_idempotency_store(settings: Settings, session_factory, clock) -> IdempotencyStore:
    ttl = timedelta(hours=settings.idempotency_ttl_hours)
    if settings.idempotency_backend == "database":
        return SqlIdempotencyStore(session_factory, ttl=ttl, clock=clock)
    if settings.idempotency_backend != "memory":
        raise ValueError(f"Unknown idempotency backend: {settings.idempotency_backend}")
    return InMemoryIdempotencyStore(ttl=ttl, clock=clock)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:  # pragma: no cover - executed by framework
    settings = get_settings()
    logger = configure_logging(settings)
    tracer_provider = init_tracer(settings)

    app.state.logger = logger
    app.state.tracer_provider = tracer_provider
    app.state.clock = SystemClock()
    app.state.db_engine = None
    app.state.ticket_service = None
    app.state.user_directory = None
    app.state.idempotency_store = None

    db_engine = create_async_engine(
        _to_asyncpg_dsn(settings.postgres_dsn), echo=settings.database_echo, future=True
    )
    session_factory = async_sessionmaker(db_engine, expire_on_commit=False)
    sweeper: IdempotencySweeper | None = None
    try:
        repository = TicketRepository(session_factory, engine=db_engine)
        await repository.ensure_schema()
        directory = SqlUserDirectory(session_factory)
        app.state.ticket_service = TicketService(
            repository,
            directory,
            audit_log=AuditLog(repository),
            clock=app.state.clock,
        )
        app.state.user_directory = directory
        app.state.db_engine = db_engine

        store = build_idempotency_store(settings, session_factory, app.state.clock)
        app.state.idempotency_store = store
        sweeper = IdempotencySweeper(store, interval_seconds=settings.idempotency_sweep_interval_seconds)
        sweeper.start()
        logger.info("Helpdesk API started (%s)", settings.environment)
    except Exception:
        logger.exception("Ticket service initialisation failed; serving degraded")
        app.state.ticket_service = None

    try:
        yield
    finally:
        if sweeper is not None:
            await sweeper.stop()
        await db_engine.dispose()
        shutdown_tracer(tracer_provider)


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    register_exception_handlers(app)
    app.add_middleware(IdempotencyMiddleware)
    # Added last so it runs first and sets the actor for idempotency scoping.
    app.add_middleware(AuthenticationMiddleware)
    app.include_router(health.router)
    app.include_router(tickets.router)
    return app


app = create_app()
