"""
Mailtrail - delivery-status notification ingestion and monitoring.
Main FastAPI application entry point.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
import redis.asyncio as aioredis
import sentry_sdk
from fastapi import FastAPI, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from mailtrail import __version__
from mailtrail.api.router import api_router
from mailtrail.config import Settings, get_settings
from mailtrail.database import create_engine_from_settings, create_session_factory
from mailtrail.services.archive import ArchiveFetcher
from mailtrail.services.decoder import NotificationDecoder
from mailtrail.services.event_store import EventStore
from mailtrail.services.metrics_aggregator import MetricsAggregator
from mailtrail.services.notification_queue import RedisStreamQueue
from mailtrail.services.webhook_dispatcher import WebhookDispatcher
from mailtrail.utils.alerting import Alerter
from mailtrail.utils.logging import configure_structured_logging, correlation_scope
from mailtrail.workers.event_expiry import run_event_expiry
from mailtrail.workers.ingestion import IngestionWorker
from mailtrail.workers.queue_consumer import run_queue_consumer

logger = logging.getLogger("mailtrail")


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Injects a correlation ID into every request context and response header."""

    async def dispatch(self, request: Request, call_next) -> Response:
        with correlation_scope(request.headers.get("X-Correlation-ID")) as cid:
            response = await call_next(request)
        response.headers["X-Correlation-ID"] = cid
        return response


def build_services(app: FastAPI, settings: Settings, session_factory, http_client, redis) -> None:
    """Wire every service from shared client handles onto app.state."""
    alerter = Alerter(redis=redis, http_client=http_client, webhook_url=settings.alert_webhook_url)
    store = EventStore(
        session_factory,
        timeout_seconds=settings.store_timeout_seconds,
        max_attempts=settings.store_max_attempts,
        backoff_base_seconds=settings.store_backoff_base_seconds,
    )
    dispatcher = WebhookDispatcher(
        http_client,
        receivers=settings.webhook_receivers,
        timeout_seconds=settings.webhook_timeout_seconds,
        max_concurrency=settings.webhook_concurrency,
        user_agent=settings.webhook_user_agent,
    )
    decoder = NotificationDecoder(
        retention_days=settings.event_retention_days,
        default_account_id=settings.default_account_id,
    )

    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.http_client = http_client
    app.state.redis = redis
    app.state.alerter = alerter
    app.state.event_store = store
    app.state.ingestion_worker = IngestionWorker(
        decoder,
        store,
        dispatcher,
        max_receive_count=settings.max_receive_count,
        concurrency=settings.ingest_concurrency,
        time_budget_seconds=settings.ingest_time_budget_seconds,
        alerter=alerter,
    )
    app.state.notification_queue = RedisStreamQueue(
        redis,
        stream=settings.queue_stream,
        group=settings.queue_group,
        consumer=settings.queue_consumer,
        visibility_timeout_seconds=settings.queue_visibility_timeout_seconds,
        max_receive_count=settings.max_receive_count,
        alerter=alerter,
    )
    app.state.metrics_aggregator = MetricsAggregator(store, period_ms=settings.aggregation_period_ms)
    app.state.archive_fetcher = ArchiveFetcher(
        http_client,
        base_url=settings.archive_base_url,
        timeout_seconds=settings.archive_timeout_seconds,
    )


def _init_sentry(settings: Settings) -> None:
    if not settings.sentry_dsn:
        return
    sentry_sdk.init(dsn=settings.sentry_dsn, traces_sample_rate=0.1, environment=settings.app_env)
    logger.info("Sentry initialized")


def _start_workers(app: FastAPI, settings: Settings) -> list[asyncio.Task]:
    """Background loops owned by this process: queue consumption and retention sweeps."""
    state = app.state
    tasks = [asyncio.create_task(
        run_event_expiry(
            state.session_factory,
            redis=state.redis,
            interval_seconds=settings.expiry_sweep_interval_seconds,
            batch_size=settings.expiry_sweep_batch_size,
        ),
        name="event-expiry",
    )]
    if settings.queue_consumer_enabled:
        tasks.append(asyncio.create_task(
            run_queue_consumer(
                state.notification_queue, state.ingestion_worker, state.redis,
                batch_size=settings.queue_batch_size,
            ),
            name="queue-consumer",
        ))
    else:
        logger.info("Queue consumer disabled (QUEUE_CONSUMER_ENABLED=false)")

    logger.info("Started workers: %s", ", ".join(t.get_name() for t in tasks))
    return tasks


async def _stop_workers(tasks: list[asyncio.Task], grace_seconds: float = 10.0) -> None:
    for task in tasks:
        task.cancel()
    await asyncio.wait(tasks, timeout=grace_seconds)
    await asyncio.gather(*tasks, return_exceptions=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    logger.info("Mailtrail %s starting (env=%s)", __version__, settings.app_env)
    _init_sentry(settings)
    if not settings.webhook_receivers:
        logger.warning("WEBHOOK_URLS not set - events will be stored but not forwarded")

    engine = create_engine_from_settings(settings)
    http_client = httpx.AsyncClient()
    redis = aioredis.from_url(settings.redis_url, decode_responses=True)
    build_services(app, settings, create_session_factory(engine), http_client, redis)
    tasks = _start_workers(app, settings)
    try:
        yield
    finally:
        logger.info("Mailtrail stopping %d workers", len(tasks))
        await _stop_workers(tasks)
        await http_client.aclose()
        await redis.aclose()
        await engine.dispose()
        logger.info("Mailtrail shutdown complete")


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Application factory."""
    settings = settings or get_settings()

    configure_structured_logging(settings.log_level)

    application = FastAPI(
        title="Mailtrail",
        description="Delivery-status notification ingestion and email event monitoring",
        version=__version__,
        lifespan=lifespan,
    )
    application.state.settings = settings
    application.add_middleware(CorrelationIdMiddleware)
    application.include_router(api_router)
    return application


app = create_app()
