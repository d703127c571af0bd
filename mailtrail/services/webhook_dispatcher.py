"""
Webhook dispatcher - forwards a normalized copy of each stored event to the
configured receivers.

Every receiver gets exactly one POST per dispatch. Receivers are independent:
a timeout or non-2xx at one never affects another. Nothing is retried here;
receivers deduplicate on the Idempotency-Key header, and redelivery happens
at the queue level only.
"""
import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Optional, Sequence
from urllib.parse import quote

import httpx

from mailtrail.schemas.delivery import BatchDeliveryReport, DeliveryAttempt
from mailtrail.schemas.email_event import EmailEvent
from mailtrail.utils.logging import event_fields

logger = logging.getLogger(__name__)

EVENT_HEADER = "X-Mailtrail-Event"


def build_webhook_payload(event: EmailEvent) -> dict:
    """Normalized body sent to every receiver."""
    timestamp = event.mail_timestamp or datetime.fromtimestamp(
        event.sent_at / 1000, tz=timezone.utc
    ).isoformat()
    return {
        "event": event.event_type,
        "messageId": event.message_id,
        "timestamp": timestamp,
        "source": event.source,
        "destination": list(event.destination),
        "subject": event.subject,
        "data": event.raw_event,
    }


class WebhookDispatcher:
    def __init__(
        self,
        client: httpx.AsyncClient,
        receivers: Sequence[str] = (),
        timeout_seconds: float = 10.0,
        max_concurrency: int = 8,
        user_agent: str = "Mailtrail-Webhook/1.0",
    ):
        self._client = client
        self.receivers = list(receivers)
        self.timeout_seconds = timeout_seconds
        self.max_concurrency = max(1, max_concurrency)
        self.user_agent = user_agent

    async def dispatch(
        self,
        event: EmailEvent,
        receivers: Optional[Sequence[str]] = None,
    ) -> BatchDeliveryReport:
        """POST the event to each receiver (configured ones when receivers is None)."""
        targets = list(self.receivers if receivers is None else receivers)
        if not targets:
            return BatchDeliveryReport()

        payload = build_webhook_payload(event)
        headers = {
            "Content-Type": "application/json",
            "User-Agent": self.user_agent,
            EVENT_HEADER: event.event_type,
            "Idempotency-Key": idempotency_key(event),
        }
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def _bounded(url: str) -> DeliveryAttempt:
            async with semaphore:
                return await self._post(url, payload, headers)

        attempts = await asyncio.gather(*(_bounded(url) for url in targets))
        report = BatchDeliveryReport.from_attempts(list(attempts))

        if report.has_failures:
            logger.warning(
                "Webhook delivery for %s %s: %d/%d receivers failed",
                event.event_type, event.message_id, report.failed, report.total,
                extra=event_fields(event),
            )
        else:
            logger.info(
                "Webhook delivered %s %s to %d receivers",
                event.event_type, event.message_id, report.total,
            )
        return report

    async def _post(self, url: str, payload: dict, headers: dict) -> DeliveryAttempt:
        attempted_at = datetime.now(timezone.utc)
        started = time.monotonic()
        try:
            response = await self._client.post(
                url, json=payload, headers=headers, timeout=self.timeout_seconds,
            )
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.debug("Webhook transport error for %s: %r", url, e, extra=event_fields(receiver=url))
            return _failed_attempt(url, e, attempted_at, started)
        except Exception as e:
            logger.warning(
                "Webhook request to %s could not be sent: %r", url, e,
                exc_info=True, extra=event_fields(receiver=url),
            )
            return _failed_attempt(url, e, attempted_at, started)

        success = response.is_success
        if not success:
            logger.debug(
                "Webhook receiver %s answered %d", url, response.status_code,
                extra=event_fields(receiver=url),
            )
        return DeliveryAttempt(
            receiver=url,
            success=success,
            status_code=response.status_code,
            error=None if success else f"HTTP {response.status_code}",
            attempted_at=attempted_at,
            duration_ms=int((time.monotonic() - started) * 1000),
        )


def _failed_attempt(url: str, error: Exception, attempted_at: datetime, started: float) -> DeliveryAttempt:
    return DeliveryAttempt(
        receiver=url,
        success=False,
        error=f"{type(error).__name__}: {error}",
        attempted_at=attempted_at,
        duration_ms=int((time.monotonic() - started) * 1000),
    )


def idempotency_key(event: EmailEvent) -> str:
    """message_id:sent_at, percent-encoded so any message id fits an HTTP header."""
    return quote(f"{event.message_id}:{event.sent_at}", safe=":@<>.-_")
