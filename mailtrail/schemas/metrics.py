"""
Dashboard metric series.
"""
from pydantic import BaseModel, Field


class AggregationBucket(BaseModel):
    """Number of events of one type whose sent_at falls in [bucket_start, bucket_start + period)."""
    bucket_start: int
    event_type: str
    count: int = Field(ge=1)

    def to_point(self) -> dict:
        return {"timestamp": self.bucket_start, "value": self.count}
