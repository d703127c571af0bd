"""
Queue consumer - pulls notification batches from the Redis stream and runs
them through the ingestion worker.

Only messages the worker acknowledged are XACKed. Everything else stays in
the pending list and is reclaimed after the visibility timeout.
"""
import asyncio
import logging
from datetime import datetime, timezone

from mailtrail.schemas.ingestion import BatchResult
from mailtrail.services.notification_queue import RedisStreamQueue
from mailtrail.utils.logging import correlation_scope
from mailtrail.workers.ingestion import IngestionWorker

logger = logging.getLogger(__name__)

IDLE_SLEEP_SECONDS = 1
ERROR_BACKOFF_SECONDS = 5
READ_BLOCK_MS = 5000
HEARTBEAT_KEY = "mailtrail:worker_health:queue_consumer"


async def _heartbeat(redis) -> None:
    """Store heartbeat timestamp in Redis."""
    try:
        await redis.set(HEARTBEAT_KEY, datetime.now(timezone.utc).isoformat(), ex=300)
    except Exception as e:
        logger.debug("Queue consumer heartbeat failed: %s", str(e))


async def consume_once(
    queue: RedisStreamQueue,
    worker: IngestionWorker,
    batch_size: int = 10,
    block_ms: int = READ_BLOCK_MS,
) -> BatchResult:
    """Receive one batch, process it, ack what was handled."""
    messages = await queue.receive(count=batch_size, block_ms=block_ms)
    if not messages:
        return BatchResult()

    with correlation_scope():
        result = await worker.process_batch(messages)
        acked = await queue.ack(result.acknowledged_ids)
        if result.failed_ids:
            logger.info(
                "Acked %d, left %d pending for redelivery", acked, len(result.failed_ids),
            )
    return result


async def run_queue_consumer(
    queue: RedisStreamQueue,
    worker: IngestionWorker,
    redis,
    batch_size: int = 10,
):
    """Main loop - consume notification batches until cancelled."""
    logger.info(
        "Queue consumer started (stream=%s group=%s consumer=%s)",
        queue.stream, queue.group, queue.consumer,
    )
    await queue.ensure_group()

    while True:
        try:
            result = await consume_once(queue, worker, batch_size=batch_size)
            idle = not result.outcomes
        except Exception as e:
            logger.error("Queue consumer error: %s", str(e))
            await asyncio.sleep(ERROR_BACKOFF_SECONDS)
            idle = False

        await _heartbeat(redis)
        if idle:
            await asyncio.sleep(IDLE_SLEEP_SECONDS)
