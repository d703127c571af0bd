"""
Health check endpoints - used by load balancers and monitoring.

- GET /health       - basic liveness (always 200 if app running)
- GET /health/ready - readiness check (DB + Redis)
- GET /health/queue - dead-letter depth and worker heartbeats
"""
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from mailtrail import __version__
from mailtrail.api.deps import get_notification_queue, get_redis, get_session
from mailtrail.services.notification_queue import RedisStreamQueue
from mailtrail.workers import event_expiry, queue_consumer

logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"])

WORKER_HEARTBEATS = {
    "queue_consumer": queue_consumer.HEARTBEAT_KEY,
    "event_expiry": event_expiry.HEARTBEAT_KEY,
}


@router.get("/health")
async def health_check():
    """Basic liveness check - returns 200 if the app is running."""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": __version__,
    }


async def _probe(name: str, check) -> bool:
    try:
        await check()
        return True
    except Exception as e:
        logger.warning("Readiness probe %s failed: %s", name, e)
        return False


@router.get("/health/ready")
async def readiness_check(
    db: AsyncSession = Depends(get_session),
    redis=Depends(get_redis),
):
    """Ready once the event store and Redis both answer."""
    checks = {
        "database": await _probe("database", lambda: db.execute(text("SELECT 1"))),
        "redis": await _probe("redis", redis.ping),
    }
    return {
        "status": "ready" if all(checks.values()) else "degraded",
        "checks": checks,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/health/queue")
async def queue_health(
    queue: RedisStreamQueue = Depends(get_notification_queue),
    redis=Depends(get_redis),
):
    """Dead-letter depth is an operational signal: anything above zero needs a look."""
    result = {"stream": queue.stream, "dead_letter_stream": queue.dead_letter_stream}
    try:
        depth = await queue.dead_letter_depth()
        heartbeats = {
            worker: _as_text(await redis.get(key)) for worker, key in WORKER_HEARTBEATS.items()
        }
    except Exception as e:
        logger.warning("Queue health check failed: %s", e)
        return {**result, "status": "unknown", "dead_letter_depth": None, "heartbeats": {}}

    return {
        **result,
        "status": "healthy" if depth == 0 else "attention",
        "dead_letter_depth": depth,
        "heartbeats": heartbeats,
    }


def _as_text(value):
    return value.decode() if isinstance(value, bytes) else value
