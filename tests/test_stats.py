"""Tests for the batch percentile job."""

import asyncio
import json
from datetime import date
from unittest.mock import AsyncMock

from pageview_tracking.core.client import SQLiteClient
from pageview_tracking.core.events import EventStore
from pageview_tracking.core.aggregates import DailyAggregates
from pageview_tracking.core.models import BucketKey, PageviewEvent
from pageview_tracking.stats import (
    DailyStatsJob,
    calculate_average,
    calculate_median,
    calculate_p95,
    compute_statistics,
)

DAY = date(2025, 10, 20)


def run_async(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def bucket_key(domain="example.com", is_internal=1, category="none") -> BucketKey:
    return BucketKey(pageview_date=DAY, domain=domain, is_internal=is_internal, category=category)


async def add_view(client, view_id, ttfb, domain="example.com", url="https://example.com/post", is_internal=1, **timings):
    """Store a complete view and count it, the way ingestion does."""
    events = EventStore(client)
    aggregates = DailyAggregates(client)
    event = PageviewEvent(
        view_id=view_id,
        pageview_date=DAY,
        url=url,
        domain=domain,
        is_internal=is_internal,
        category="none",
        ttfb_ms=ttfb,
        **timings,
    )
    await events.record_pageview(event)
    await events.record_metrics(event)
    await aggregates.increment(bucket_key(domain, is_internal), pageviews=1, with_metrics=1)


def with_client(scenario):
    async def main():
        async with SQLiteClient(":memory:") as client:
            await client.ensure_schema()
            return await scenario(client)
    return run_async(main())


class TestCalculations:
    """Test average, median and nearest-rank p95."""

    def test_odd_sample(self):
        values = [10, 20, 30, 40, 50]
        assert calculate_average(values) == 30
        assert calculate_median(values) == 30
        assert calculate_p95(values) == 40

    def test_unsorted_input(self):
        values = [50, 10, 40, 30, 20]
        assert calculate_median(values) == 30
        assert calculate_p95(values) == 40

    def test_even_median_averages_middle_values(self):
        assert calculate_median([1, 2, 3, 4]) == 2.5

    def test_single_value(self):
        assert calculate_average([7]) == 7
        assert calculate_median([7]) == 7
        assert calculate_p95([7]) == 7

    def test_p95_of_hundred(self):
        values = list(range(1, 101))
        # floor(99 * 0.95) = 94
        assert calculate_p95(values) == 95

    def test_empty(self):
        assert calculate_average([]) is None
        assert calculate_median([]) is None
        assert calculate_p95([]) is None

    def test_compute_statistics_skips_nulls(self):
        events = [
            {"ttfb_ms": 10.0, "dom_content_loaded_ms": None, "load_event_end_ms": 100.0},
            {"ttfb_ms": 30.0, "dom_content_loaded_ms": None, "load_event_end_ms": None},
        ]
        stats = compute_statistics(events)
        assert stats["avg_ttfb_ms"] == 20.0
        assert stats["median_ttfb_ms"] == 20.0
        assert stats["p95_ttfb_ms"] == 10.0
        assert stats["avg_dom_content_loaded_ms"] is None
        assert stats["p95_load_event_end_ms"] == 100.0
        assert len(stats) == 9


class TestDailyStatsJob:
    """Test DailyStatsJob.run against SQLite."""

    def test_processes_pending_bucket(self):
        async def scenario(client):
            for i, ttfb in enumerate([10.0, 20.0, 30.0, 40.0, 50.0]):
                await add_view(client, f"v{i}", ttfb, load_event_end_ms=ttfb * 10)
            summary = await DailyStatsJob(client).run()
            row = await DailyAggregates(client).get(bucket_key())
            return summary, row

        summary, row = with_client(scenario)
        assert (summary.total, summary.processed, summary.failed, summary.mismatched) == (1, 1, 0, 0)
        assert row.avg_ttfb_ms == 30.0
        assert row.median_ttfb_ms == 30.0
        assert row.p95_ttfb_ms == 40.0
        assert row.p95_load_event_end_ms == 400.0
        assert row.avg_dom_content_loaded_ms is None
        assert row.processed_at is not None
        assert json.loads(row.processed_status) == {"status": "Success", "metrics_count": 5}

    def test_processed_buckets_skipped(self):
        async def scenario(client):
            await add_view(client, "v1", 10.0)
            job = DailyStatsJob(client)
            await job.run()
            return await job.run()

        summary = with_client(scenario)
        assert summary.total == 0

    def test_clear_processed_recomputes(self):
        async def scenario(client):
            await add_view(client, "v1", 10.0)
            job = DailyStatsJob(client)
            await job.run()
            await add_view(client, "v2", 30.0)
            skipped = await job.run()
            await job.clear_processed(DAY, DAY)
            rerun = await job.run()
            return skipped, rerun, await DailyAggregates(client).get(bucket_key())

        skipped, rerun, row = with_client(scenario)
        assert skipped.total == 0
        assert rerun.processed == 1
        assert row.avg_ttfb_ms == 20.0

    def test_internal_and_external_kept_apart(self):
        async def scenario(client):
            await add_view(client, "home", 100.0, url="https://example.com/", is_internal=0)
            await add_view(client, "post", 10.0)
            await DailyStatsJob(client).run()
            aggregates = DailyAggregates(client)
            return await aggregates.get(bucket_key(is_internal=0)), await aggregates.get(bucket_key(is_internal=1))

        home, internal = with_client(scenario)
        assert home.avg_ttfb_ms == 100.0
        assert internal.avg_ttfb_ms == 10.0

    def test_unstored_classification_derived_from_url(self):
        async def scenario(client):
            await add_view(client, "v1", 10.0, url="https://example.com/post")
            await client._execute("UPDATE tracking_pageviews SET is_internal = NULL")
            summary = await DailyStatsJob(client).run()
            return summary, await DailyAggregates(client).get(bucket_key())

        summary, row = with_client(scenario)
        assert summary.mismatched == 0
        assert row.avg_ttfb_ms == 10.0

    def test_count_mismatch_logged_and_processed(self, caplog):
        async def scenario(client):
            await add_view(client, "v1", 10.0)
            # Counter ahead of stored events
            await DailyAggregates(client).increment(bucket_key(), with_metrics=1)
            summary = await DailyStatsJob(client).run()
            return summary, await DailyAggregates(client).get(bucket_key())

        summary, row = with_client(scenario)
        assert summary.processed == 1
        assert summary.mismatched == 1
        assert "mismatch" in caplog.text
        assert json.loads(row.processed_status)["metrics_count"] == 1

    def test_failing_bucket_does_not_stop_run(self, caplog):
        async def scenario(client):
            await add_view(client, "bad", 10.0, domain="bad.example", url="https://bad.example/post")
            await add_view(client, "good", 20.0)
            job = DailyStatsJob(client)

            original = job.events.events_with_metrics

            async def flaky(pageview_date, domain, category=None):
                if domain == "bad.example":
                    raise RuntimeError("boom")
                return await original(pageview_date, domain, category)

            job.events.events_with_metrics = AsyncMock(side_effect=flaky)
            summary = await job.run()
            pending = await DailyAggregates(client).pending()
            return summary, pending

        summary, pending = with_client(scenario)
        assert summary.total == 2
        assert summary.processed == 1
        assert summary.failed == 1
        assert [row.domain for row in pending] == ["bad.example"]
        assert "Failed to process" in caplog.text
