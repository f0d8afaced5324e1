"""
Batch percentile recomputation.

Averages, medians and 95th percentiles can't be maintained incrementally
with plain counters, so a periodic job fills them in from the raw events:

    job = DailyStatsJob(client)
    summary = await job.run()

A bucket is picked up once it has metrics and no ``processed_at`` marker.
After processing it is skipped until the marker is cleared with
``clear_processed()``.
"""
import logging
import math
from dataclasses import dataclass
from datetime import date

from .core.aggregates import DailyAggregates
from .core.client import TrackingClient
from .core.events import EventStore
from .core.models import DailyAggregate, is_internal_page

logger = logging.getLogger(__name__)

TIMING_METRICS = ("ttfb_ms", "dom_content_loaded_ms", "load_event_end_ms")


def calculate_average(values: list[float]) -> float | None:
    if not values:
        return None
    return sum(values) / len(values)


def calculate_median(values: list[float]) -> float | None:
    """Middle value; mean of the two middle values for even counts."""
    if not values:
        return None
    ordered = sorted(values)
    n = len(ordered)
    mid = n // 2
    if n % 2:
        return ordered[mid]
    return (ordered[mid - 1] + ordered[mid]) / 2


def calculate_p95(values: list[float]) -> float | None:
    """Nearest-rank 95th percentile at index floor((n - 1) * 0.95)."""
    if not values:
        return None
    ordered = sorted(values)
    return ordered[math.floor((len(ordered) - 1) * 0.95)]


def compute_statistics(events: list[dict]) -> dict[str, float | None]:
    """The nine stat columns for a list of event rows. Null timings are skipped."""
    stats: dict[str, float | None] = {}
    for metric in TIMING_METRICS:
        values = [float(e[metric]) for e in events if e.get(metric) is not None]
        stats[f"avg_{metric}"] = calculate_average(values)
        stats[f"median_{metric}"] = calculate_median(values)
        stats[f"p95_{metric}"] = calculate_p95(values)
    return stats


@dataclass
class StatsRunSummary:
    """Outcome of one job run."""
    total: int = 0
    processed: int = 0
    failed: int = 0
    mismatched: int = 0


class DailyStatsJob:
    """Fills in the statistics of pending daily buckets."""

    def __init__(self, client: TrackingClient):
        self.events = EventStore(client)
        self.aggregates = DailyAggregates(client)

    async def _bucket_events(self, bucket: DailyAggregate) -> list[dict]:
        rows = await self.events.events_with_metrics(
            bucket.pageview_date, bucket.domain, bucket.category
        )
        matching = []
        for row in rows:
            stored = row.get("is_internal")
            is_internal = stored if stored is not None else is_internal_page(row.get("url"))
            if is_internal == bucket.is_internal:
                matching.append(row)
        return matching

    async def process_bucket(self, bucket: DailyAggregate) -> bool:
        """Compute and store stats for one bucket. Returns False on a count mismatch."""
        events = await self._bucket_events(bucket)
        count = len(events)

        matched = count == bucket.cnt_pageviews_with_metrics
        if not matched:
            logger.warning(
                f"Metrics count mismatch for {bucket.pageview_date} {bucket.domain} "
                f"(internal={bucket.is_internal}, category={bucket.category}): "
                f"expected {bucket.cnt_pageviews_with_metrics}, found {count}"
            )

        await self.aggregates.write_stats(bucket.key, compute_statistics(events), count)
        return matched

    async def run(self) -> StatsRunSummary:
        """Process every pending bucket. A failing bucket doesn't stop the run."""
        buckets = await self.aggregates.pending()
        summary = StatsRunSummary(total=len(buckets))
        logger.info(f"Found {summary.total} daily buckets to process")

        for bucket in buckets:
            try:
                matched = await self.process_bucket(bucket)
            except Exception:
                logger.exception(
                    f"Failed to process {bucket.pageview_date} {bucket.domain} "
                    f"(internal={bucket.is_internal}, category={bucket.category})"
                )
                summary.failed += 1
                continue

            summary.processed += 1
            if not matched:
                summary.mismatched += 1

        logger.info(
            f"Processed {summary.processed}/{summary.total} buckets "
            f"({summary.failed} failed, {summary.mismatched} mismatched)"
        )
        return summary

    async def clear_processed(self, start: date, end: date) -> int:
        """Mark buckets in [start, end] for recomputation on the next run."""
        return await self.aggregates.clear_processed(start, end)
