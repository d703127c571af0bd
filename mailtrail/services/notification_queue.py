"""
Notification queue on Redis Streams.

One stream holds raw notifications (field "body"). A consumer group gives
each message to one consumer at a time; a message that is not acknowledged
within the visibility timeout is reclaimed (XAUTOCLAIM) and delivered again.
The pending-entries list counts deliveries, which becomes the message's
receive_count.

Once a message has been delivered more than max_receive_count times it is
moved to the dead-letter stream "<stream>:dlq" instead of being processed.
"""
import logging
from datetime import datetime, timezone
from typing import Iterable, Optional

from redis.exceptions import ResponseError

from mailtrail.schemas.ingestion import QueueMessage
from mailtrail.utils.alerting import Alerter, AlertType

logger = logging.getLogger(__name__)

BODY_FIELD = "body"


def _s(value) -> str:
    return value.decode() if isinstance(value, bytes) else str(value)


class RedisStreamQueue:
    def __init__(
        self,
        redis,
        stream: str,
        group: str,
        consumer: str,
        visibility_timeout_seconds: int = 30,
        max_receive_count: int = 3,
        alerter: Optional[Alerter] = None,
    ):
        self._redis = redis
        self.stream = stream
        self.group = group
        self.consumer = consumer
        self.visibility_timeout_ms = int(visibility_timeout_seconds * 1000)
        self.max_receive_count = max_receive_count
        self.alerter = alerter

    @property
    def dead_letter_stream(self) -> str:
        return f"{self.stream}:dlq"

    async def ensure_group(self) -> None:
        """Create the stream and consumer group if missing."""
        try:
            await self._redis.xgroup_create(self.stream, self.group, id="0", mkstream=True)
            logger.info("Created consumer group %s on %s", self.group, self.stream)
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    async def publish(self, body: str) -> str:
        """Append a raw notification to the stream."""
        entry_id = await self._redis.xadd(self.stream, {BODY_FIELD: body})
        return _s(entry_id)

    async def receive(self, count: int = 10, block_ms: Optional[int] = None) -> list[QueueMessage]:
        """
        Up to `count` messages: expired leases first, then new messages.
        Messages past the receive limit are dead-lettered and not returned.
        """
        entries = await self._reclaim(count)
        if len(entries) < count:
            entries.extend(await self._read_new(count - len(entries), block_ms))
        if not entries:
            return []

        receive_counts = await self._receive_counts([entry_id for entry_id, _ in entries])

        messages, exhausted = [], []
        for entry_id, fields in entries:
            message = QueueMessage(
                queue_message_id=entry_id,
                body=_s(fields.get(BODY_FIELD, "")),
                receive_count=max(1, receive_counts.get(entry_id, 1)),
            )
            if message.receive_count > self.max_receive_count:
                exhausted.append(message)
            else:
                messages.append(message)

        if exhausted:
            await self.dead_letter(exhausted)
        return messages

    async def _reclaim(self, count: int) -> list[tuple[str, dict]]:
        result = await self._redis.xautoclaim(
            self.stream, self.group, self.consumer,
            min_idle_time=self.visibility_timeout_ms, start_id="0-0", count=count,
        )
        claimed = result[1] if result and len(result) > 1 else []
        # Entries trimmed from the stream come back as (id, None)
        return [(_s(entry_id), _decode_fields(fields)) for entry_id, fields in claimed if fields]

    async def _read_new(self, count: int, block_ms: Optional[int]) -> list[tuple[str, dict]]:
        response = await self._redis.xreadgroup(
            self.group, self.consumer, {self.stream: ">"}, count=count, block=block_ms,
        )
        entries = []
        for _stream, stream_entries in response or []:
            for entry_id, fields in stream_entries:
                entries.append((_s(entry_id), _decode_fields(fields)))
        return entries

    async def _receive_counts(self, entry_ids: list[str]) -> dict[str, int]:
        counts = {}
        for entry_id in entry_ids:
            pending = await self._redis.xpending_range(
                self.stream, self.group, min=entry_id, max=entry_id, count=1,
            )
            if pending:
                counts[entry_id] = int(pending[0]["times_delivered"])
        return counts

    async def ack(self, entry_ids: Iterable[str]) -> int:
        ids = list(entry_ids)
        if not ids:
            return 0
        return await self._redis.xack(self.stream, self.group, *ids)

    async def dead_letter(self, messages: list[QueueMessage]) -> None:
        """Copy each message to the dead-letter stream, then drop it from the group."""
        for message in messages:
            await self._redis.xadd(self.dead_letter_stream, {
                BODY_FIELD: message.body,
                "source_id": message.queue_message_id,
                "receive_count": str(message.receive_count),
                "dead_lettered_at": datetime.now(timezone.utc).isoformat(),
            })
            logger.error(
                "Notification %s exhausted %d deliveries, moved to %s",
                message.queue_message_id, message.receive_count, self.dead_letter_stream,
                extra={"queue_message_id": message.queue_message_id},
            )
        await self.ack(m.queue_message_id for m in messages)

        if self.alerter is not None:
            await self.alerter.send(
                AlertType.DEAD_LETTER_EXHAUSTED,
                f"{len(messages)} notification(s) moved to {self.dead_letter_stream}",
                extra={"ids": ",".join(m.queue_message_id for m in messages)[:200]},
            )

    async def dead_letter_depth(self) -> int:
        return int(await self._redis.xlen(self.dead_letter_stream))


def _decode_fields(fields) -> dict:
    return {_s(k): v for k, v in (fields or {}).items()}
