"""
FastAPI dependencies. Every service handle is built once in the application
lifespan and lives on app.state.
"""
from typing import AsyncGenerator

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from mailtrail.database import get_db
from mailtrail.services.archive import ArchiveFetcher
from mailtrail.services.event_store import EventStore
from mailtrail.services.metrics_aggregator import MetricsAggregator
from mailtrail.services.notification_queue import RedisStreamQueue
from mailtrail.workers.ingestion import IngestionWorker


async def get_session(request: Request) -> AsyncGenerator[AsyncSession, None]:
    async for session in get_db(request.app.state.session_factory):
        yield session


def get_event_store(request: Request) -> EventStore:
    return request.app.state.event_store


def get_ingestion_worker(request: Request) -> IngestionWorker:
    return request.app.state.ingestion_worker


def get_metrics_aggregator(request: Request) -> MetricsAggregator:
    return request.app.state.metrics_aggregator


def get_archive_fetcher(request: Request) -> ArchiveFetcher:
    return request.app.state.archive_fetcher


def get_notification_queue(request: Request) -> RedisStreamQueue:
    return request.app.state.notification_queue


def get_redis(request: Request):
    return request.app.state.redis
