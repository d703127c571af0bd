"""
Dashboard metrics - per-type event counts in 5-minute buckets.
"""
import logging
import time
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from mailtrail.api.deps import get_metrics_aggregator
from mailtrail.schemas.email_event import EventType
from mailtrail.services.metrics_aggregator import MetricsAggregator

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/metrics", tags=["metrics"])

DEFAULT_WINDOW_MS = 24 * 60 * 60 * 1000
DEFAULT_EVENT_TYPES = [
    EventType.SEND, EventType.DELIVERY, EventType.BOUNCE,
    EventType.COMPLAINT, EventType.OPEN, EventType.CLICK,
]


@router.get("/events")
async def event_metrics(
    start: Optional[int] = Query(None, description="Range start, epoch ms (default: end - 24h)"),
    end: Optional[int] = Query(None, description="Range end, epoch ms (default: now)"),
    event_types: Optional[str] = Query(None, description="Comma-separated event types"),
    account_id: Optional[str] = Query(None),
    aggregator: MetricsAggregator = Depends(get_metrics_aggregator),
):
    """Returns {eventType: [{timestamp, value}, ...]} with ascending timestamps."""
    end_ms = end if end is not None else int(time.time() * 1000)
    start_ms = start if start is not None else end_ms - DEFAULT_WINDOW_MS
    if start_ms > end_ms:
        raise HTTPException(status_code=400, detail="start must not be after end")

    if event_types:
        requested = [t.strip() for t in event_types.split(",") if t.strip()]
        valid = {t.value for t in EventType}
        unknown = [t for t in requested if t not in valid]
        if unknown:
            raise HTTPException(status_code=400, detail=f"Unknown event types: {', '.join(unknown)}")
    else:
        requested = [t.value for t in DEFAULT_EVENT_TYPES]

    series = await aggregator.aggregate(
        (start_ms, end_ms),
        requested,
        account_ids=[account_id] if account_id else None,
    )
    return {
        event_type: [bucket.to_point() for bucket in buckets]
        for event_type, buckets in series.items()
    }
