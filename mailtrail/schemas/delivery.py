"""
Webhook delivery results. Ephemeral - summarized into the batch result, never stored.
"""
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field


class DeliveryAttempt(BaseModel):
    """Outcome of one POST to one receiver."""
    receiver: str
    success: bool
    status_code: Optional[int] = None
    error: Optional[str] = None
    attempted_at: datetime
    duration_ms: int = 0


class BatchDeliveryReport(BaseModel):
    """Fan-out summary for one event across all receivers."""
    total: int = 0
    successful: int = 0
    failed: int = 0
    results: list[DeliveryAttempt] = Field(default_factory=list)

    @property
    def has_failures(self) -> bool:
        return self.failed > 0

    @property
    def degraded(self) -> bool:
        """Some receiver missed the event."""
        return self.has_failures

    @classmethod
    def from_attempts(cls, attempts: list[DeliveryAttempt]) -> "BatchDeliveryReport":
        successful = sum(1 for a in attempts if a.success)
        return cls(
            total=len(attempts),
            successful=successful,
            failed=len(attempts) - successful,
            results=attempts,
        )
