"""
Rebuild daily counters from stored events.

An offline repair tool for when counters have drifted (a store outage that
dropped upserts, a change to the IP ranges). It wipes the daily table and
recounts every bucket from ``tracking_pageviews``, so it must not run while
beacons are being ingested.

Daily-only beacons and server-side hits never create event rows, so their
counts are not recoverable and are lost by a rebuild. Statistics are cleared
too; run ``DailyStatsJob`` afterwards.
"""
import logging
from collections import defaultdict

from .bots import BOT_COUNTERS, classify_bot_traffic
from .config import DEFAULT_CATEGORY
from .core.aggregates import DailyAggregates
from .core.client import TrackingClient
from .core.events import EventStore
from .core.models import BucketKey, is_internal_page
from .ip_ranges import IPRangeIndex

logger = logging.getLogger(__name__)


async def rebuild_daily_aggregates(
    client: TrackingClient,
    ranges: IPRangeIndex,
    category: str = DEFAULT_CATEGORY,
    count_bots: bool = True,
) -> int:
    """Recompute all daily counters. Returns the number of buckets written.

    Args:
        client: Store holding both tracking tables
        ranges: Range index used to re-derive the IP bot flags
        category: Category for events stored without one
        count_bots: Recount the six bot counters (mirrors count_bots_on_beacon)
    """
    events = EventStore(client)
    aggregates = DailyAggregates(client)

    deleted = await aggregates.delete_all()
    logger.info(f"Deleted {deleted} daily rows before rebuild")

    written = 0
    for pageview_date, domain in await events.date_domain_pairs():
        buckets: dict[BucketKey, dict[str, int]] = defaultdict(lambda: defaultdict(int))

        for row in await events.events_for_day(pageview_date, domain):
            stored = row.get("is_internal")
            key = BucketKey(
                pageview_date=pageview_date,
                domain=domain,
                is_internal=stored if stored is not None else is_internal_page(row.get("url")),
                category=row.get("category") or category,
            )
            counters = buckets[key]
            # Every event row was counted once, whichever beacon created it
            counters["pageviews"] += 1
            if row.get("has_metrics"):
                counters["cnt_pageviews_with_metrics"] += 1

            if count_bots:
                flags = classify_bot_traffic(row.get("user_agent"), row.get("ip"), ranges)
                for flag, column in BOT_COUNTERS:
                    counters[column] += int(getattr(flags, flag))

        for key, counters in buckets.items():
            await aggregates.set_counters(key, dict(counters))
            written += 1

    logger.info(f"Rebuilt {written} daily buckets")
    return written
