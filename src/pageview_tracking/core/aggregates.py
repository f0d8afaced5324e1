"""
Daily aggregate upsert engine.

Counters live in ``tracking_pageviews_daily``, one row per
(pageview_date, domain, is_internal, category). Every increment is a single
INSERT ... ON CONFLICT DO UPDATE that adds to the existing values, so
concurrent writers never lose an update and a row never has to exist first.
"""
import json
import logging
from datetime import date
from functools import lru_cache

from ..bots import BOT_COUNTER_COLUMNS, BotFlags
from .client import TrackingClient
from .models import BucketKey, DailyAggregate
from .schema import DAILY_TABLE

logger = logging.getLogger(__name__)

COUNTER_COLUMNS = ("pageviews", "cnt_pageviews_with_metrics") + BOT_COUNTER_COLUMNS

STAT_COLUMNS = tuple(
    f"{stat}_{metric}"
    for metric in ("ttfb_ms", "dom_content_loaded_ms", "load_event_end_ms")
    for stat in ("avg", "median", "p95")
)

KEY_COLUMNS = ("pageview_date", "domain", "is_internal", "category")


class UnknownCounterError(ValueError):
    """Raised for a counter column outside COUNTER_COLUMNS."""
    pass


@lru_cache(maxsize=None)
def _upsert_sql(columns: tuple[str, ...], replace: bool = False) -> str:
    """Build the upsert for a fixed set of counter columns.

    Column names only ever come from COUNTER_COLUMNS; values are bound.
    """
    unknown = [c for c in columns if c not in COUNTER_COLUMNS]
    if unknown:
        raise UnknownCounterError(f"Unknown counter column(s): {', '.join(unknown)}")

    all_columns = KEY_COLUMNS + columns
    if replace:
        assignments = [f"{c} = excluded.{c}" for c in columns]
    else:
        assignments = [f"{c} = {c} + excluded.{c}" for c in columns]
    assignments.append("updated_at = CURRENT_TIMESTAMP")

    return f"""
        INSERT INTO {DAILY_TABLE} ({", ".join(all_columns)})
        VALUES ({", ".join("?" for _ in all_columns)})
        ON CONFLICT(pageview_date, domain, is_internal, category) DO UPDATE SET
            {", ".join(assignments)}
    """


class DailyAggregates:
    """Read and write daily counter rows."""

    def __init__(self, client: TrackingClient):
        self.client = client

    async def increment(
        self,
        key: BucketKey,
        pageviews: int = 0,
        with_metrics: int = 0,
        bots: BotFlags | None = None,
    ) -> bool:
        """Add to the bucket's counters in one statement.

        Only non-zero counters appear in the statement. Returns False (and
        touches nothing) when there is nothing to add.
        """
        increments: dict[str, int] = {}
        if pageviews:
            increments["pageviews"] = pageviews
        if with_metrics:
            increments["cnt_pageviews_with_metrics"] = with_metrics
        if bots:
            for column in bots.counter_columns():
                increments[column] = 1

        if not increments:
            return False

        sql = _upsert_sql(tuple(increments))
        await self.client._execute(sql, key.params() + list(increments.values()))
        return True

    async def record_pageview(self, key: BucketKey, bots: BotFlags | None = None) -> bool:
        return await self.increment(key, pageviews=1, bots=bots)

    async def record_metrics(self, key: BucketKey) -> bool:
        return await self.increment(key, with_metrics=1)

    async def set_counters(self, key: BucketKey, counters: dict[str, int]) -> None:
        """Overwrite counters with absolute values (used by rebuilds)."""
        if not counters:
            return
        columns = tuple(counters)
        sql = _upsert_sql(columns, replace=True)
        await self.client._execute(sql, key.params() + [counters[c] for c in columns])

    async def delete_all(self) -> int:
        return await self.client._execute(f"DELETE FROM {DAILY_TABLE}")

    async def get(self, key: BucketKey) -> DailyAggregate | None:
        rows = await self.client._query(
            f"""
            SELECT * FROM {DAILY_TABLE}
            WHERE pageview_date = ? AND domain = ? AND is_internal = ? AND category = ?
            """,
            key.params(),
        )
        return DailyAggregate(**rows[0]) if rows else None

    async def list_for_date(self, pageview_date: date) -> list[DailyAggregate]:
        rows = await self.client._query(
            f"""
            SELECT * FROM {DAILY_TABLE}
            WHERE pageview_date = ?
            ORDER BY domain ASC, is_internal ASC, category ASC
            """,
            [pageview_date.isoformat()],
        )
        return [DailyAggregate(**row) for row in rows]

    # =========================================================================
    # BATCH STATISTICS
    # =========================================================================

    async def pending(self) -> list[DailyAggregate]:
        """Rows with metrics that haven't been processed yet, oldest first."""
        rows = await self.client._query(
            f"""
            SELECT * FROM {DAILY_TABLE}
            WHERE processed_at IS NULL AND cnt_pageviews_with_metrics > 0
            ORDER BY pageview_date ASC, domain ASC, is_internal ASC
            """
        )
        return [DailyAggregate(**row) for row in rows]

    async def write_stats(self, key: BucketKey, stats: dict[str, float | None], metrics_count: int) -> None:
        """Store the nine statistics and mark the row processed."""
        status = json.dumps({"status": "Success", "metrics_count": metrics_count})
        await self.client._execute(
            f"""
            UPDATE {DAILY_TABLE}
            SET {", ".join(f"{c} = ?" for c in STAT_COLUMNS)},
                processed_at = strftime('%Y-%m-%dT%H:%M:%SZ', 'now'),
                processed_status = ?,
                updated_at = CURRENT_TIMESTAMP
            WHERE pageview_date = ? AND domain = ? AND is_internal = ? AND category = ?
            """,
            [stats.get(c) for c in STAT_COLUMNS] + [status] + key.params(),
        )

    async def clear_processed(self, start: date, end: date) -> int:
        """Reset processing markers in a date range so the job recomputes it."""
        changed = await self.client._execute(
            f"""
            UPDATE {DAILY_TABLE}
            SET processed_at = NULL,
                processed_status = NULL,
                updated_at = CURRENT_TIMESTAMP
            WHERE pageview_date >= ? AND pageview_date <= ?
            """,
            [start.isoformat(), end.isoformat()],
        )
        logger.info(f"Cleared processing markers on {changed} daily rows ({start} .. {end})")
        return changed
