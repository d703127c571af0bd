"""
Queue-side models for the ingestion worker: the transport envelope of one
queued notification, and the per-message outcome reported back to the queue.
"""
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field

from mailtrail.schemas.delivery import BatchDeliveryReport


class QueueMessage(BaseModel):
    """NotificationEnvelope - one queued notification. Never persisted as-is."""
    queue_message_id: str
    body: str
    receive_count: int = Field(default=1, ge=1)


class MessageState(str, Enum):
    RECEIVED = "received"
    DECODED = "decoded"
    STORED = "stored"
    DISPATCHED = "dispatched"
    ACKNOWLEDGED = "acknowledged"
    DROPPED_PERMANENT = "dropped_permanent"
    REDELIVERY_PENDING = "redelivery_pending"


class MessageOutcome(BaseModel):
    queue_message_id: str
    state: MessageState
    acknowledged: bool
    message_id: Optional[str] = None
    event_type: Optional[str] = None
    error: Optional[str] = None
    delivery: Optional[BatchDeliveryReport] = None
    dead_letter_eligible: bool = False

    @property
    def degraded(self) -> bool:
        """Stored and acknowledged, but at least one receiver missed it."""
        if not self.acknowledged or self.state != MessageState.ACKNOWLEDGED:
            return False
        if self.error and self.error.startswith("dispatch-error"):
            return True
        return self.delivery is not None and self.delivery.has_failures

    def summary(self) -> dict:
        data = {
            "itemIdentifier": self.queue_message_id,
            "state": self.state.value,
            "acknowledged": self.acknowledged,
            "messageId": self.message_id,
            "eventType": self.event_type,
        }
        if self.error:
            data["error"] = self.error
        if self.delivery is not None:
            data["webhooks"] = {
                "total": self.delivery.total,
                "successful": self.delivery.successful,
                "failed": self.delivery.failed,
            }
        return data


class BatchResult(BaseModel):
    outcomes: list[MessageOutcome] = Field(default_factory=list)

    @property
    def acknowledged_ids(self) -> list[str]:
        return [o.queue_message_id for o in self.outcomes if o.acknowledged]

    @property
    def failed_ids(self) -> list[str]:
        return [o.queue_message_id for o in self.outcomes if not o.acknowledged]

    @property
    def degraded(self) -> bool:
        return any(o.degraded for o in self.outcomes)

    @property
    def status_code(self) -> int:
        return 207 if self.degraded else 200

    def to_response(self) -> dict:
        """Worker invocation result: statusCode, per-message results, batchItemFailures."""
        return {
            "statusCode": self.status_code,
            "results": [o.summary() for o in self.outcomes],
            "batchItemFailures": [{"itemIdentifier": i} for i in self.failed_ids],
        }
