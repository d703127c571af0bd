"""
Metrics aggregator - per-type event counts in fixed time buckets for the
monitoring dashboard.

Computed on demand from a full scan of the event store. Buckets are aligned
to the epoch (floor(t / period) * period), so adjacent ranges never split a
bucket differently. Only non-empty buckets are returned.

A failing scan degrades to empty series rather than an error: the dashboard
shows no data instead of breaking.
"""
import logging
from collections import defaultdict
from typing import Iterable, Optional

from mailtrail.schemas.email_event import event_type_value
from mailtrail.schemas.metrics import AggregationBucket
from mailtrail.services.event_store import EventStore

logger = logging.getLogger(__name__)

DEFAULT_PERIOD_MS = 5 * 60 * 1000


def bucket_start(timestamp_ms: int, period_ms: int = DEFAULT_PERIOD_MS) -> int:
    return (timestamp_ms // period_ms) * period_ms


class MetricsAggregator:
    def __init__(self, store: EventStore, period_ms: int = DEFAULT_PERIOD_MS):
        if period_ms <= 0:
            raise ValueError("period_ms must be positive")
        self.store = store
        self.period_ms = period_ms

    async def aggregate(
        self,
        time_range: tuple[int, int],
        event_types: Iterable,
        account_ids: Optional[Iterable[str]] = None,
    ) -> dict[str, list[AggregationBucket]]:
        """
        Count events per (type, bucket) with sent_at inside time_range (inclusive).
        Every requested type is a key of the result, possibly with an empty list.
        """
        types = [event_type_value(t) for t in event_types]
        start, end = time_range
        if not types or start > end:
            return {t: [] for t in types}

        counts: dict[str, dict[int, int]] = {t: defaultdict(int) for t in types}
        try:
            async for record in self.store.scan(
                account_ids=account_ids, time_range=(start, end), event_types=types,
            ):
                per_type = counts.get(record.event_type)
                if per_type is not None:
                    per_type[bucket_start(record.sent_at, self.period_ms)] += 1
        except Exception as e:
            logger.warning(
                "Metrics scan failed for %s in [%d, %d], returning empty series: %s",
                ",".join(types), start, end, str(e),
            )
            return {t: [] for t in types}

        return {
            event_type: [
                AggregationBucket(bucket_start=b, event_type=event_type, count=n)
                for b, n in sorted(buckets.items())
            ]
            for event_type, buckets in counts.items()
        }
