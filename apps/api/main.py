import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from apps.api.api.errors import register_exception_handlers
from apps.api.api.routes import notifications, ping, tickets
from apps.api.core.config import Settings, get_settings
from apps.api.core.logging import configure_logging, init_tracer, shutdown_tracer
from apps.api.services.presence import NotificationFeed, PresenceSweeper, TypingTracker
from apps.api.services.sheets import build_sink
from apps.api.services.tickets import TicketNumberGenerator, TicketRepository, TicketService

logger = logging.getLogger(__name__)


def _to_asyncpg_dsn(dsn: str) -> str:
    """Ensure the SQLAlchemy DSN uses the asyncpg driver."""

    if dsn.startswith("postgresql+asyncpg://"):
        return dsn
    if dsn.startswith("postgresql://"):
        return "postgresql+asyncpg://" + dsn[len("postgresql://") :]
    return dsn


def build_ticket_service(settings: Settings, repository: TicketRepository) -> TicketService:
    """Wire the service with trackers and sink sized from settings."""

    return TicketService(
        repository,
        typing=TypingTracker(stale_after=settings.typing_stale_seconds),
        notifications=NotificationFeed(
            limit=settings.notification_limit,
            preview_length=settings.notification_preview_length,
        ),
        sink=build_sink(settings.sheets_webhook_url, timeout=settings.sheets_timeout_seconds),
        number_factory=TicketNumberGenerator(settings.ticket_number_length),
        max_number_attempts=settings.ticket_number_attempts,
        timezone_name=settings.timezone,
        allow_public_message_delete=settings.allow_public_message_delete,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):  # pragma: no cover - executed by framework
    settings = get_settings()
    app_logger = configure_logging(settings)
    tracer_provider = init_tracer(settings)

    app.state.logger = app_logger
    app.state.tracer_provider = tracer_provider
    app.state.ticket_service = None
    db_engine = None
    sweeper: PresenceSweeper | None = None
    service: TicketService | None = None
    try:
        db_engine = create_async_engine(_to_asyncpg_dsn(settings.database_url), future=True)
        session_factory = async_sessionmaker(db_engine, expire_on_commit=False)
        repository = TicketRepository(session_factory, engine=db_engine)
        await repository.ensure_schema()
        service = build_ticket_service(settings, repository)
        sweeper = PresenceSweeper(service.typing, interval=settings.typing_sweep_interval_seconds)
        sweeper.start()
        app.state.ticket_service = service
        app_logger.info("Ticket service ready")
    except Exception:
        logger.exception("Ticket service initialisation failed; ticket routes will answer 503")
        if db_engine is not None:
            await db_engine.dispose()
            db_engine = None
    try:
        yield
    finally:
        if sweeper is not None:
            await sweeper.stop()
        if service is not None:
            await service.aclose()
        if db_engine is not None:
            await db_engine.dispose()
        shutdown_tracer(tracer_provider)


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    register_exception_handlers(app)
    app.include_router(ping.router)
    app.include_router(tickets.router)
    app.include_router(tickets.portal_router)
    app.include_router(notifications.router)
    return app


app = create_app()
