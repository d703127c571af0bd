"""
Ingestion worker - decode -> store -> dispatch for a batch of queued notifications.

Per-message lifecycle:

    received -> decoded -> stored -> dispatched -> acknowledged

with two terminal failure states:

    dropped_permanent   undecodable payload or a write the store will never
                        accept. Acknowledged, so garbage is not redelivered.
    redelivery_pending  transient store failure (after the store's own
                        retries), an unexpected error, or the time budget ran
                        out. Left unacknowledged; the queue redelivers it after
                        the visibility timeout and dead-letters it once the
                        maximum receive count is reached.

Retry is two-level: bounded backoff inside EventStore.put, then queue
redelivery as the outer loop. Webhook failures never block acknowledgement:
once an event is stored it is ingested.

Messages of a batch run concurrently and share nothing but read-only
collaborators, so one message can never fail or hold back a sibling.
"""
import asyncio
import json
import logging
from typing import Optional, Sequence

from mailtrail.errors import DecodeError, StoreError
from mailtrail.schemas.delivery import BatchDeliveryReport
from mailtrail.schemas.ingestion import BatchResult, MessageOutcome, MessageState, QueueMessage
from mailtrail.services.decoder import NotificationDecoder
from mailtrail.services.event_store import EventStore
from mailtrail.services.webhook_dispatcher import WebhookDispatcher
from mailtrail.utils.alerting import Alerter, AlertType
from mailtrail.utils.logging import correlation_scope, event_fields, get_correlation_id

logger = logging.getLogger(__name__)


class IngestionWorker:
    def __init__(
        self,
        decoder: NotificationDecoder,
        store: EventStore,
        dispatcher: WebhookDispatcher,
        max_receive_count: int = 3,
        concurrency: int = 10,
        time_budget_seconds: Optional[float] = 25.0,
        alerter: Optional[Alerter] = None,
    ):
        self.decoder = decoder
        self.store = store
        self.dispatcher = dispatcher
        self.max_receive_count = max_receive_count
        self.concurrency = max(1, concurrency)
        self.time_budget_seconds = time_budget_seconds
        self.alerter = alerter

    async def process_batch(self, messages: Sequence[QueueMessage]) -> BatchResult:
        """Process every message independently. Never raises for per-message failures."""
        if not messages:
            return BatchResult()

        semaphore = asyncio.Semaphore(self.concurrency)

        async def _bounded(message: QueueMessage) -> MessageOutcome:
            async with semaphore:
                return await self.process_message(message)

        tasks = [asyncio.create_task(_bounded(m)) for m in messages]
        _, pending = await asyncio.wait(tasks, timeout=self.time_budget_seconds)
        if pending:
            logger.warning(
                "Time budget of %ss exceeded, leaving %d/%d messages for redelivery",
                self.time_budget_seconds, len(pending), len(tasks),
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        outcomes = []
        for message, task in zip(messages, tasks):
            if task.cancelled():
                outcomes.append(self._redelivery(message, None, "time budget exceeded"))
            elif task.exception() is not None:
                outcomes.append(self._redelivery(message, None, repr(task.exception())))
            else:
                outcomes.append(task.result())

        result = BatchResult(outcomes=outcomes)
        logger.info(
            "Processed batch of %d: %d acknowledged, %d left for redelivery%s",
            len(outcomes), len(result.acknowledged_ids), len(result.failed_ids),
            " (webhook delivery degraded)" if result.degraded else "",
        )
        return result

    async def process_message(self, message: QueueMessage) -> MessageOutcome:
        log_extra = event_fields(queue_message_id=message.queue_message_id)

        try:
            event = self.decoder.decode(message.body)
        except DecodeError as e:
            logger.warning(
                "Dropping undecodable notification %s: %s",
                message.queue_message_id, e, extra={**log_extra, "error_code": e.reason},
            )
            return MessageOutcome(
                queue_message_id=message.queue_message_id,
                state=MessageState.DROPPED_PERMANENT,
                acknowledged=True,
                error=e.reason,
            )
        except Exception as e:
            logger.exception("Unexpected error decoding %s", message.queue_message_id, extra=log_extra)
            return self._redelivery(message, None, repr(e))

        log_extra = event_fields(event, queue_message_id=message.queue_message_id)

        try:
            await self.store.put(event)
        except StoreError as e:
            if e.transient:
                return self._redelivery(message, event, str(e))
            logger.error(
                "Store rejected %s %s, dropping: %s",
                event.event_type, event.message_id, e, extra={**log_extra, "error_code": e.code},
            )
            if self.alerter is not None:
                await self.alerter.send(
                    AlertType.STORE_WRITE_REJECTED,
                    f"Store rejected {event.event_type} event {event.message_id}: {e}",
                    extra={"code": e.code},
                )
            return MessageOutcome(
                queue_message_id=message.queue_message_id,
                state=MessageState.DROPPED_PERMANENT,
                acknowledged=True,
                message_id=event.message_id,
                event_type=event.event_type,
                error=e.code or "store-rejected",
            )
        except Exception as e:
            logger.exception("Unexpected error storing %s", event.message_id, extra=log_extra)
            return self._redelivery(message, event, repr(e))

        try:
            report = await self.dispatcher.dispatch(event)
            dispatch_error = None
        except Exception as e:
            # Stored already; redelivery would only repeat the write
            logger.exception("Webhook dispatch crashed for %s", event.message_id, extra=log_extra)
            report = BatchDeliveryReport()
            dispatch_error = f"dispatch-error: {e!r}"

        return MessageOutcome(
            queue_message_id=message.queue_message_id,
            state=MessageState.ACKNOWLEDGED,
            acknowledged=True,
            message_id=event.message_id,
            event_type=event.event_type,
            error=dispatch_error,
            delivery=report,
        )

    def _redelivery(self, message: QueueMessage, event, error: str) -> MessageOutcome:
        eligible = message.receive_count >= self.max_receive_count
        log_extra = event_fields(event, queue_message_id=message.queue_message_id)

        if eligible:
            logger.error(
                "Notification %s failed on receive %d/%d, queue will dead-letter it: %s",
                message.queue_message_id, message.receive_count, self.max_receive_count, error,
                extra=log_extra,
            )
        else:
            logger.warning(
                "Notification %s failed on receive %d/%d, leaving for redelivery: %s",
                message.queue_message_id, message.receive_count, self.max_receive_count, error,
                extra=log_extra,
            )
        return MessageOutcome(
            queue_message_id=message.queue_message_id,
            state=MessageState.REDELIVERY_PENDING,
            acknowledged=False,
            message_id=event.message_id if event is not None else None,
            event_type=event.event_type if event is not None else None,
            error=error,
            dead_letter_eligible=eligible,
        )


def parse_queue_records(event: dict) -> list[QueueMessage]:
    """
    Turn a {"Records": [...]} transport event into queue messages.
    Accepts SQS records (messageId/body/attributes) and SNS records (Sns.Message).
    """
    records = event.get("Records") if isinstance(event, dict) else None
    if not isinstance(records, list):
        raise ValueError("transport event has no Records list")

    messages = []
    for index, record in enumerate(records):
        if not isinstance(record, dict):
            messages.append(QueueMessage(queue_message_id=f"record-{index}", body=json.dumps(record)))
        elif isinstance(record.get("Sns"), dict):
            sns = record["Sns"]
            messages.append(QueueMessage(
                queue_message_id=str(sns.get("MessageId") or f"record-{index}"),
                body=json.dumps(record),
            ))
        elif "body" in record:
            attributes = record.get("attributes") or {}
            try:
                receive_count = max(1, int(attributes.get("ApproximateReceiveCount", 1)))
            except (TypeError, ValueError):
                receive_count = 1
            body = record["body"]
            messages.append(QueueMessage(
                queue_message_id=str(record.get("messageId") or f"record-{index}"),
                body=body if isinstance(body, str) else json.dumps(body),
                receive_count=receive_count,
            ))
        else:
            messages.append(QueueMessage(queue_message_id=f"record-{index}", body=json.dumps(record)))
    return messages


def _record_ids(event) -> list[str]:
    try:
        return [m.queue_message_id for m in parse_queue_records(event)]
    except (ValueError, TypeError):
        return []


async def handle_queue_event(event: dict, worker: IngestionWorker) -> dict:
    """
    Worker entry point. Always returns a structured result:
    200 when everything was delivered, 207 when webhooks degraded, 500 when
    the batch could not be processed at all (every record left for redelivery).
    """
    with correlation_scope(get_correlation_id()):
        try:
            messages = parse_queue_records(event)
            result = await worker.process_batch(messages)
            return result.to_response()
        except Exception as e:
            logger.exception("Notification batch failed before per-message processing: %s", e)
            return {
                "statusCode": 500,
                "results": [],
                "batchItemFailures": [{"itemIdentifier": i} for i in _record_ids(event)],
            }
