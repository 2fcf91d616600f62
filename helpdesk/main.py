import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from helpdesk.api.routes import notifications, ping, recurrences, work_items
from helpdesk.core.config import Settings, get_settings
from helpdesk.core.logging import configure_logging, init_tracer, shutdown_tracer
from helpdesk.services.postgres import PostgresPoolManager
from helpdesk.workitems.dispatcher import NotificationDispatcher
from helpdesk.workitems.engine import LifecycleEngine
from helpdesk.workitems.notifier import LoggingNotifier, Notifier, WebhookNotifier
from helpdesk.workitems.recurrence import RecurrenceService
from helpdesk.workitems.repository import PostgresWorkItemRepository
from helpdesk.workitems.scheduler import RecurrenceScheduler

logger = logging.getLogger(__name__)


def build_notifier(settings: Settings) -> Notifier:
    if settings.notification_webhook_url:
        return WebhookNotifier(
            settings.notification_webhook_url,
            timeout=settings.notification_webhook_timeout_seconds,
        )
    return LoggingNotifier()


@asynccontextmanager
async def lifespan(app: FastAPI):  # pragma: no cover - executed by framework
    settings = get_settings()
    app.state.logger = configure_logging(settings)
    tracer_provider = init_tracer(settings)

    pool_manager = PostgresPoolManager(
        dsn=settings.postgres_dsn,
        min_size=settings.postgres_pool_min_size,
        max_size=settings.postgres_pool_max_size,
    )
    notifier = build_notifier(settings)
    dispatcher: NotificationDispatcher | None = None
    scheduler: RecurrenceScheduler | None = None
    app.state.lifecycle_engine = None
    app.state.recurrence_service = None
    try:
        await pool_manager.test_connection()
        pool = await pool_manager.get_pool()
        repository = PostgresWorkItemRepository(pool)
        await repository.ensure_schema()

        dispatcher = NotificationDispatcher(
            notifier,
            repository,
            queue_size=settings.notification_queue_size,
            workers=settings.notification_workers,
            retry_delay=settings.notification_retry_delay_seconds,
        )
        dispatcher.start()

        engine = LifecycleEngine(
            repository,
            dispatcher,
            lock_timeout=settings.lock_timeout_seconds,
            retry_backoff=settings.transaction_retry_backoff_seconds,
        )
        app.state.lifecycle_engine = engine
        app.state.recurrence_service = RecurrenceService(
            repository, lock_timeout=settings.lock_timeout_seconds
        )

        if settings.scheduler_enabled:
            scheduler = RecurrenceScheduler(engine, interval_seconds=settings.scheduler_interval_seconds)
            scheduler.start()
    except Exception:
        logger.exception("Lifecycle engine initialisation failed; work item routes will return 503")
        app.state.lifecycle_engine = None
        app.state.recurrence_service = None
    try:
        yield
    finally:
        if scheduler is not None:
            scheduler.shutdown()
        if dispatcher is not None:
            await dispatcher.stop()
        if isinstance(notifier, WebhookNotifier):
            await notifier.close()
        await pool_manager.close()
        shutdown_tracer(tracer_provider)


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.include_router(ping.router)
    app.include_router(work_items.router)
    app.include_router(recurrences.router)
    app.include_router(notifications.router)
    return app


app = create_app()
