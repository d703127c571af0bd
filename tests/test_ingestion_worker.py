"""
Tests for mailtrail/workers/ingestion.py - per-message isolation, redelivery and
the batch result reported back to the queue.
"""
import asyncio
import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from mailtrail.errors import StoreError
from mailtrail.schemas.delivery import BatchDeliveryReport, DeliveryAttempt
from mailtrail.schemas.ingestion import MessageState, QueueMessage
from mailtrail.services.decoder import NotificationDecoder
from mailtrail.services.event_store import EventStore
from mailtrail.utils.alerting import AlertType
from mailtrail.workers.ingestion import IngestionWorker, handle_queue_event, parse_queue_records
from factories import make_notification, sns_record, sqs_record


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _report(total=0, failed=0) -> BatchDeliveryReport:
    attempts = [
        DeliveryAttempt(
            receiver=f"https://r{i}.example.com",
            success=i >= failed,
            status_code=200 if i >= failed else None,
            error=None if i >= failed else "ReadTimeout: timed out",
            attempted_at=datetime.now(timezone.utc),
        )
        for i in range(total)
    ]
    return BatchDeliveryReport.from_attempts(attempts)


def _message(queue_id: str, message_id: str = "msg-1", receive_count: int = 1, event_type="Bounce"):
    return QueueMessage(
        queue_message_id=queue_id,
        body=json.dumps(make_notification(event_type, message_id=message_id)),
        receive_count=receive_count,
    )


def _worker(store=None, dispatcher=None, alerter=None, **kw) -> IngestionWorker:
    if store is None:
        store = AsyncMock()
        store.put = AsyncMock(return_value=None)
    if dispatcher is None:
        dispatcher = AsyncMock()
        dispatcher.dispatch = AsyncMock(return_value=_report(total=1))
    return IngestionWorker(
        NotificationDecoder(clock=lambda: 1_000_000.0),
        store,
        dispatcher,
        alerter=alerter,
        **kw,
    )


# ---------------------------------------------------------------------------
# process_batch
# ---------------------------------------------------------------------------

class TestProcessBatch:
    async def test_all_good_is_acknowledged(self):
        worker = _worker()
        result = await worker.process_batch([_message("q-1", "m-1"), _message("q-2", "m-2")])

        assert result.acknowledged_ids == ["q-1", "q-2"]
        assert result.failed_ids == []
        assert result.status_code == 200
        assert worker.store.put.await_count == 2
        assert worker.dispatcher.dispatch.await_count == 2

    async def test_malformed_message_does_not_affect_siblings(self):
        worker = _worker()
        garbage = QueueMessage(queue_message_id="q-bad", body="{nope")
        result = await worker.process_batch([_message("q-1", "m-1"), garbage, _message("q-2", "m-2")])

        states = {o.queue_message_id: o.state for o in result.outcomes}
        assert states == {
            "q-1": MessageState.ACKNOWLEDGED,
            "q-bad": MessageState.DROPPED_PERMANENT,
            "q-2": MessageState.ACKNOWLEDGED,
        }
        # Undecodable messages are acknowledged so they are never redelivered
        assert result.failed_ids == []
        assert worker.store.put.await_count == 2

    async def test_unhashable_discriminator_is_dropped_not_redelivered(self):
        message = make_notification("Open")
        message["eventType"] = ["Open"]
        poison = QueueMessage(queue_message_id="q-1", body=json.dumps(message), receive_count=1)

        result = await _worker().process_batch([poison])

        outcome = result.outcomes[0]
        assert outcome.state == MessageState.DROPPED_PERMANENT
        assert outcome.acknowledged is True
        assert outcome.error == "missing-discriminator"

    async def test_transient_store_failure_leaves_only_that_message(self):
        store = AsyncMock()

        async def _put(event):
            if event.message_id == "m-2":
                raise StoreError("throttled", transient=True, code="retries-exhausted")

        store.put = AsyncMock(side_effect=_put)
        worker = _worker(store=store)
        result = await worker.process_batch([
            _message("q-1", "m-1"), _message("q-2", "m-2"), _message("q-3", "m-3"),
        ])

        assert result.failed_ids == ["q-2"]
        assert result.acknowledged_ids == ["q-1", "q-3"]
        failed = result.outcomes[1]
        assert failed.state == MessageState.REDELIVERY_PENDING
        assert failed.dead_letter_eligible is False
        # Not stored, so never dispatched
        assert worker.dispatcher.dispatch.await_count == 2

    async def test_dead_letter_threshold(self):
        store = AsyncMock()
        store.put = AsyncMock(side_effect=StoreError("down", transient=True))
        worker = _worker(store=store, max_receive_count=3)

        result = await worker.process_batch([
            _message("q-1", "m-1", receive_count=2),
            _message("q-2", "m-2", receive_count=3),
        ])

        assert result.failed_ids == ["q-1", "q-2"]
        assert [o.dead_letter_eligible for o in result.outcomes] == [False, True]

    async def test_non_transient_store_failure_is_dropped_and_alerted(self):
        store = AsyncMock()
        store.put = AsyncMock(
            side_effect=StoreError("conflict", transient=False, code="event-type-conflict")
        )
        alerter = AsyncMock()
        worker = _worker(store=store, alerter=alerter)

        result = await worker.process_batch([_message("q-1")])

        outcome = result.outcomes[0]
        assert outcome.state == MessageState.DROPPED_PERMANENT
        assert outcome.acknowledged is True
        assert outcome.error == "event-type-conflict"
        alerter.send.assert_awaited_once()
        assert alerter.send.await_args.args[0] == AlertType.STORE_WRITE_REJECTED

    async def test_unexpected_store_error_is_redelivered(self):
        store = AsyncMock()
        store.put = AsyncMock(side_effect=RuntimeError("driver bug"))
        result = await _worker(store=store).process_batch([_message("q-1")])
        assert result.outcomes[0].state == MessageState.REDELIVERY_PENDING

    async def test_webhook_failure_still_acknowledges_and_reports_207(self):
        dispatcher = AsyncMock()
        dispatcher.dispatch = AsyncMock(return_value=_report(total=2, failed=1))
        result = await _worker(dispatcher=dispatcher).process_batch([_message("q-1")])

        assert result.acknowledged_ids == ["q-1"]
        assert result.degraded is True
        assert result.status_code == 207
        summary = result.to_response()["results"][0]
        assert summary["webhooks"] == {"total": 2, "successful": 1, "failed": 1}

    async def test_dispatch_crash_still_acknowledges(self):
        dispatcher = AsyncMock()
        dispatcher.dispatch = AsyncMock(side_effect=RuntimeError("boom"))
        result = await _worker(dispatcher=dispatcher).process_batch([_message("q-1")])

        outcome = result.outcomes[0]
        assert outcome.acknowledged is True
        assert outcome.error.startswith("dispatch-error")
        assert result.degraded is True
        assert result.status_code == 207

    async def test_time_budget_leaves_unfinished_messages_unacknowledged(self):
        store = AsyncMock()

        async def _put(event):
            if event.message_id == "slow":
                await asyncio.sleep(5)

        store.put = AsyncMock(side_effect=_put)
        worker = _worker(store=store, time_budget_seconds=0.05)

        result = await worker.process_batch([_message("q-1", "fast"), _message("q-2", "slow")])

        assert result.acknowledged_ids == ["q-1"]
        assert result.failed_ids == ["q-2"]
        assert result.outcomes[1].state == MessageState.REDELIVERY_PENDING
        assert result.outcomes[1].error == "time budget exceeded"

    async def test_empty_batch(self):
        result = await _worker().process_batch([])
        assert result.outcomes == []
        assert result.status_code == 200


# ---------------------------------------------------------------------------
# End to end against the real store
# ---------------------------------------------------------------------------

class TestWithStore:
    async def test_redelivered_batch_creates_no_duplicates(self, session_factory):
        store = EventStore(session_factory, backoff_base_seconds=0)
        worker = _worker(store=store)
        batch = [_message("q-1", "m-1"), _message("q-2", "m-2")]

        await worker.process_batch(batch)
        await worker.process_batch(batch)

        records = [r async for r in store.scan()]
        assert sorted(r.message_id for r in records) == ["m-1", "m-2"]

    async def test_transient_store_failure_is_retried_into_one_row(self, session_factory):
        store = EventStore(session_factory, max_attempts=3, backoff_base_seconds=0)
        upsert = store._upsert
        calls = []

        async def _flaky(values):
            calls.append(values["message_id"])
            if len(calls) == 1:
                raise ConnectionError("connection reset")
            await upsert(values)

        store._upsert = _flaky

        result = await _worker(store=store).process_batch([_message("q-1", "m-1")])

        assert result.acknowledged_ids == ["q-1"]
        assert calls == ["m-1", "m-1"]
        records = [r async for r in store.scan()]
        assert [r.message_id for r in records] == ["m-1"]


# ---------------------------------------------------------------------------
# Transport parsing / entry point
# ---------------------------------------------------------------------------

class TestParseQueueRecords:
    def test_sqs_records(self):
        messages = parse_queue_records({"Records": [sqs_record(make_notification(), "q-9", receive_count=2)]})
        assert messages[0].queue_message_id == "q-9"
        assert messages[0].receive_count == 2

    def test_sns_records(self):
        messages = parse_queue_records({"Records": [sns_record(make_notification(), "sns-7")]})
        assert messages[0].queue_message_id == "sns-7"
        assert messages[0].receive_count == 1

    def test_missing_records_raises(self):
        with pytest.raises(ValueError):
            parse_queue_records({"nope": []})


class TestHandleQueueEvent:
    async def test_returns_batch_item_failures(self):
        store = AsyncMock()

        async def _put(event):
            if event.message_id == "m-2":
                raise StoreError("down", transient=True)

        store.put = AsyncMock(side_effect=_put)
        event = {"Records": [
            sqs_record(make_notification(message_id="m-1"), "q-1"),
            sqs_record(make_notification(message_id="m-2"), "q-2"),
        ]}

        response = await handle_queue_event(event, _worker(store=store))

        assert response["statusCode"] == 200
        assert response["batchItemFailures"] == [{"itemIdentifier": "q-2"}]
        assert [r["state"] for r in response["results"]] == ["acknowledged", "redelivery_pending"]

    async def test_top_level_failure_never_raises(self):
        response = await handle_queue_event({"Records": "not-a-list"}, _worker())
        assert response["statusCode"] == 500
        assert response["batchItemFailures"] == []

    async def test_worker_crash_fails_every_record(self):
        worker = _worker()
        worker.process_batch = AsyncMock(side_effect=RuntimeError("boom"))
        event = {"Records": [sqs_record(make_notification(), "q-1"), sqs_record(make_notification(), "q-2")]}

        response = await handle_queue_event(event, worker)

        assert response["statusCode"] == 500
        assert response["batchItemFailures"] == [{"itemIdentifier": "q-1"}, {"itemIdentifier": "q-2"}]
