"""
Event store - idempotent persistence of EmailEvents.

Writes are upserts keyed by (message_id, sent_at): re-delivery of a stored
notification overwrites the row in place (last writer wins, by call order).
The event type of a stored key never changes; a write that would change it
is rejected as a non-transient error.

Transient failures (timeouts, dropped connections, throttling) are retried
here with bounded exponential backoff. Once retries are exhausted the error
surfaces as StoreError(transient=True) and the queue redelivers the message.

Expiry is carried on every row as expires_at; this module never deletes.
"""
import asyncio
import json
import logging
from typing import AsyncIterator, Iterable, Optional

from sqlalchemy import exc as sa_exc, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mailtrail.database import transaction
from mailtrail.errors import StoreError
from mailtrail.models.email_event import EmailEventRecord
from mailtrail.schemas.email_event import EmailEvent, event_type_value
from mailtrail.utils.logging import event_fields

logger = logging.getLogger(__name__)

MAX_ITEM_BYTES = 400 * 1024
SCAN_PAGE_SIZE = 500

_KEY_COLUMNS = ("message_id", "sent_at")


def is_transient_error(error: BaseException) -> bool:
    """True for failures that may succeed when simply tried again."""
    if isinstance(error, (asyncio.TimeoutError, TimeoutError, ConnectionError, sa_exc.TimeoutError)):
        return True
    if isinstance(error, sa_exc.DBAPIError):
        if error.connection_invalidated:
            return True
        return isinstance(error, (sa_exc.OperationalError, sa_exc.InterfaceError))
    return False


def _row_values(event: EmailEvent) -> dict:
    extra = event.additional_data()
    return {
        "message_id": event.message_id,
        "sent_at": event.sent_at,
        "account_id": event.account_id,
        "event_type": event.event_type,
        "source": event.source,
        "destination": list(event.destination),
        "subject": event.subject,
        "bounce_type": extra.get("bounce_type"),
        "bounce_sub_type": extra.get("bounce_sub_type"),
        "complaint_feedback_type": extra.get("complaint_feedback_type"),
        "processing_time_ms": extra.get("processing_time_ms"),
        "additional_data": extra,
        "raw_event": event.raw_event,
        "expires_at": event.expires_at,
    }


class EventStore:
    """Durable, idempotent store for email events."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        timeout_seconds: float = 5.0,
        max_attempts: int = 3,
        backoff_base_seconds: float = 0.2,
    ):
        self._session_factory = session_factory
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max(1, max_attempts)
        self.backoff_base_seconds = backoff_base_seconds

    async def put(self, event: EmailEvent) -> None:
        """
        Upsert one event. Raises StoreError; transient=True only after
        every attempt has failed with a transient error.
        """
        values = _row_values(event)
        size = len(json.dumps(values, default=str).encode("utf-8"))
        if size > MAX_ITEM_BYTES:
            raise StoreError(
                f"Event {event.message_id} is {size} bytes (limit {MAX_ITEM_BYTES})",
                transient=False,
                code="item-too-large",
            )

        for attempt in range(1, self.max_attempts + 1):
            try:
                await asyncio.wait_for(self._upsert(values), timeout=self.timeout_seconds)
                return
            except StoreError:
                raise
            except Exception as e:
                if not is_transient_error(e):
                    if isinstance(e, sa_exc.SQLAlchemyError):
                        raise StoreError(str(e), transient=False, code="rejected") from e
                    raise
                if attempt >= self.max_attempts:
                    raise StoreError(
                        f"Store write failed after {attempt} attempts: {e!r}",
                        transient=True,
                        code="retries-exhausted",
                    ) from e
                delay = self.backoff_base_seconds * (2 ** (attempt - 1))
                logger.warning(
                    "Transient store error for %s (attempt %d/%d), retrying in %.2fs: %r",
                    event.message_id, attempt, self.max_attempts, delay, e,
                    extra=event_fields(event),
                )
                await asyncio.sleep(delay)

    async def _upsert(self, values: dict) -> None:
        async with transaction(self._session_factory) as session:
            dialect = session.bind.dialect.name
            insert = pg_insert if dialect == "postgresql" else sqlite_insert

            stmt = insert(EmailEventRecord).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=list(_KEY_COLUMNS),
                set_={k: stmt.excluded[k] for k in values if k not in _KEY_COLUMNS},
                where=EmailEventRecord.event_type == stmt.excluded.event_type,
            ).returning(EmailEventRecord.event_type)

            result = await session.execute(stmt)
            written = result.first()

        if written is None:
            raise StoreError(
                f"Event {values['message_id']}@{values['sent_at']} is already stored "
                f"with a different event type than {values['event_type']}",
                transient=False,
                code="event-type-conflict",
            )

    async def scan(
        self,
        account_ids: Optional[Iterable[str]] = None,
        time_range: Optional[tuple[int, int]] = None,
        event_types: Optional[Iterable] = None,
    ) -> AsyncIterator[EmailEventRecord]:
        """
        Lazily stream stored events matching the filters. Unordered.
        Each call opens its own session, so a failed scan can simply be re-run.
        """
        stmt = select(EmailEventRecord)
        if time_range is not None:
            start, end = time_range
            stmt = stmt.where(EmailEventRecord.sent_at.between(start, end))
        if event_types:
            stmt = stmt.where(
                EmailEventRecord.event_type.in_([event_type_value(t) for t in event_types])
            )
        if account_ids:
            stmt = stmt.where(EmailEventRecord.account_id.in_(list(account_ids)))

        async with self._session_factory() as session:
            records = await session.stream_scalars(
                stmt.execution_options(yield_per=SCAN_PAGE_SIZE)
            )
            async for record in records:
                yield record

    async def list_for_message(self, message_id: str) -> list[EmailEventRecord]:
        """All stored events of one message, oldest first."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(EmailEventRecord)
                .where(EmailEventRecord.message_id == message_id)
                .order_by(EmailEventRecord.sent_at)
            )
            return list(result.scalars().all())
