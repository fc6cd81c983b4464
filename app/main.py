import logging
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI

from app.api.routes import ping, tickets
from app.core.config import Settings, get_settings
from app.core.logging import configure_logging, init_tracer, shutdown_tracer
from app.identity import PrivilegePolicy, SessionTokenCodec
from app.realtime import RealtimeChannel
from app.tickets.errors import StoreUnavailable
from app.tickets.messages import MessageService
from app.tickets.repository import (
    InMemoryTicketRepository,
    PostgresTicketRepository,
    TicketRepository,
    create_pool,
)
from app.tickets.service import TicketService

_DEFAULT_SESSION_SECRET = "change-me"


async def _open_repository(settings: Settings):
    backend = settings.storage_backend.lower()
    if backend == "memory":
        return InMemoryTicketRepository(), None
    if backend != "postgres":
        raise ValueError(f"Unsupported storage backend: {settings.storage_backend}")
    pool = await create_pool(
        settings.postgres_dsn,
        min_size=settings.postgres_pool_min_size,
        max_size=settings.postgres_pool_max_size,
    )
    return PostgresTicketRepository(pool), pool


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    logger = configure_logging(settings)
    tracer_provider = init_tracer(settings)

    if settings.session_secret == _DEFAULT_SESSION_SECRET and settings.environment != "development":
        logger.warning("SESSION_SECRET is still the default value; session tokens are forgeable.")

    policy = PrivilegePolicy(settings.privileged_ids)
    codec = SessionTokenCodec(
        settings.session_secret,
        algorithm=settings.session_algorithm,
        issuer=settings.session_issuer,
        ttl=timedelta(minutes=settings.session_ttl_minutes),
    )
    channel = RealtimeChannel(callback_timeout=settings.realtime_callback_timeout)

    app.state.logger = logger
    app.state.tracer_provider = tracer_provider
    app.state.privilege_policy = policy
    app.state.token_codec = codec
    app.state.channel = channel
    app.state.ticket_repository = None
    app.state.ticket_service = None
    app.state.message_service = None

    pool = None
    activity = None
    try:
        repository: TicketRepository
        repository, pool = await _open_repository(settings)
        await repository.ensure_schema()
        ticket_service = TicketService(repository, policy=policy, channel=channel)
        await ticket_service.load_projection()
        activity = ticket_service.track_activity()

        app.state.ticket_repository = repository
        app.state.ticket_service = ticket_service
        app.state.message_service = MessageService(
            repository, policy=policy, channel=channel, locks=ticket_service.locks
        )
    except StoreUnavailable:
        logger.exception("Ticket store unavailable at startup; ticket routes will answer 503")
        if pool is not None:
            await pool.close()
            pool = None
    try:
        yield
    finally:
        if activity is not None:
            activity.unsubscribe()
        await channel.close()
        if pool is not None:
            await pool.close()
        shutdown_tracer(tracer_provider)
        logging.getLogger(__name__).info("Ticket Desk API stopped")


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.state.settings = settings
    app.include_router(ping.router)
    app.include_router(tickets.router)
    return app


app = create_app()
