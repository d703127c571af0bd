"""
Event expiry worker - deletes stored events whose expires_at has passed.
Runs every hour by default, in bounded batches so one sweep never holds a
long transaction.
"""
import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import delete, select, tuple_
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mailtrail.database import transaction
from mailtrail.models.email_event import EmailEventRecord

logger = logging.getLogger(__name__)

HEARTBEAT_KEY = "mailtrail:worker_health:event_expiry"


async def _heartbeat(redis, ttl: int) -> None:
    if redis is None:
        return
    try:
        await redis.set(HEARTBEAT_KEY, datetime.now(timezone.utc).isoformat(), ex=ttl)
    except Exception as e:
        logger.debug("Event expiry heartbeat failed: %s", str(e))


async def sweep_expired_events(
    session_factory: async_sessionmaker[AsyncSession],
    batch_size: int = 1000,
    now: Optional[int] = None,
) -> int:
    """Delete every event with expires_at <= now (epoch seconds). Returns rows deleted."""
    cutoff = int(time.time()) if now is None else now
    total = 0

    while True:
        async with transaction(session_factory) as db:
            expired = (
                select(EmailEventRecord.message_id, EmailEventRecord.sent_at)
                .where(EmailEventRecord.expires_at <= cutoff)
                .limit(batch_size)
            )
            result = await db.execute(
                delete(EmailEventRecord).where(
                    tuple_(EmailEventRecord.message_id, EmailEventRecord.sent_at).in_(expired)
                )
            )

        deleted = result.rowcount or 0
        total += deleted
        if deleted < batch_size:
            break

    if total:
        logger.info("Expired %d stored events (cutoff=%d)", total, cutoff)
    return total


async def run_event_expiry(
    session_factory: async_sessionmaker[AsyncSession],
    redis=None,
    interval_seconds: int = 3600,
    batch_size: int = 1000,
):
    """Main loop - sweep expired events every interval."""
    logger.info("Event expiry worker started (poll every %ds)", interval_seconds)

    while True:
        try:
            await sweep_expired_events(session_factory, batch_size=batch_size)
        except Exception as e:
            logger.error("Event expiry error: %s", str(e))

        await _heartbeat(redis, ttl=interval_seconds * 2)
        await asyncio.sleep(interval_seconds)
