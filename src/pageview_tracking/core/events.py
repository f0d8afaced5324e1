"""
Per-view event store.

Every page view sends two beacons with the same ``view_id``: a pageview
beacon when the page becomes visible, and a metrics beacon after load. They
can arrive in either order, twice, or not at all. Each identity therefore
moves through a small state machine:

    absent ──pageview──▶ pageview_only ──metrics──▶ complete
       │                                               ▲
       └──metrics──▶ metrics_only ──pageview (backfill)┘

Every transition is a single conditional statement (INSERT ... ON CONFLICT
DO NOTHING, or UPDATE ... WHERE has_x = 0), so concurrent duplicates can't
both win. RETURNING tells us whether our statement was the one that moved
the row, and which bucket the row belongs to.
"""
import logging
from dataclasses import dataclass
from datetime import date

from ..config import DEFAULT_CATEGORY
from .client import TrackingClient
from .models import BucketKey, EventState, PageviewEvent
from .schema import EVENTS_TABLE

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Transition:
    """A state change and what it means for the daily counters."""
    name: str
    source: EventState
    target: EventState
    counts_pageview: bool = False
    counts_metrics: bool = False


PAGEVIEW_INSERT = Transition(
    "pageview_insert", EventState.ABSENT, EventState.PAGEVIEW_ONLY,
    counts_pageview=True,
)
PAGEVIEW_BACKFILL = Transition(
    # Metrics-first row already counted this view
    "pageview_backfill", EventState.METRICS_ONLY, EventState.COMPLETE,
)
METRICS_UPDATE = Transition(
    "metrics_update", EventState.PAGEVIEW_ONLY, EventState.COMPLETE,
    counts_metrics=True,
)
METRICS_INSERT = Transition(
    # Metrics-first race: nothing has counted this view yet
    "metrics_insert", EventState.ABSENT, EventState.METRICS_ONLY,
    counts_pageview=True, counts_metrics=True,
)


@dataclass(frozen=True)
class TransitionResult:
    """Outcome of applying a beacon. ``transition`` is None for duplicates."""
    transition: Transition | None = None
    key: BucketKey | None = None

    @property
    def is_duplicate(self) -> bool:
        return self.transition is None


EVENT_COLUMNS = (
    "view_id", "pageview_date", "url", "domain", "referrer", "ip", "user_agent",
    "language", "timezone", "viewport_width", "viewport_height",
    "ts_pageview_ms", "ts_metrics_ms", "ttfb_ms", "dom_content_loaded_ms", "load_event_end_ms",
    "is_internal", "category", "has_pageview", "has_metrics",
)

PAGEVIEW_FIELDS = (
    "referrer", "language", "timezone", "viewport_width", "viewport_height", "ts_pageview_ms",
)

METRICS_FIELDS = (
    "ts_metrics_ms", "ttfb_ms", "dom_content_loaded_ms", "load_event_end_ms",
)

_RETURNING_KEY = "RETURNING pageview_date, domain, is_internal, category"

_INSERT_SQL = f"""
    INSERT INTO {EVENTS_TABLE} ({", ".join(EVENT_COLUMNS)})
    VALUES ({", ".join("?" for _ in EVENT_COLUMNS)})
    ON CONFLICT(view_id) DO NOTHING
    {_RETURNING_KEY}
"""

_BACKFILL_PAGEVIEW_SQL = f"""
    UPDATE {EVENTS_TABLE}
    SET {", ".join(f"{c} = ?" for c in PAGEVIEW_FIELDS)},
        has_pageview = 1,
        updated_at = CURRENT_TIMESTAMP
    WHERE view_id = ? AND has_pageview = 0
    {_RETURNING_KEY}
"""

_UPDATE_METRICS_SQL = f"""
    UPDATE {EVENTS_TABLE}
    SET {", ".join(f"{c} = ?" for c in METRICS_FIELDS)},
        has_metrics = 1,
        updated_at = CURRENT_TIMESTAMP
    WHERE view_id = ? AND has_metrics = 0
    {_RETURNING_KEY}
"""


def _key_from_row(row: dict) -> BucketKey:
    return BucketKey(
        pageview_date=row["pageview_date"],
        domain=row["domain"],
        is_internal=row["is_internal"] or 0,
        category=row["category"] or DEFAULT_CATEGORY,
    )


def _event_params(event: PageviewEvent) -> list:
    data = event.model_dump()
    data["pageview_date"] = event.pageview_date.isoformat()
    data["has_pageview"] = int(event.has_pageview)
    data["has_metrics"] = int(event.has_metrics)
    return [data[c] for c in EVENT_COLUMNS]


class EventStore:
    """Applies beacons to ``tracking_pageviews`` as state transitions."""

    def __init__(self, client: TrackingClient):
        self.client = client

    async def _insert(self, event: PageviewEvent) -> BucketKey | None:
        rows = await self.client._query(_INSERT_SQL, _event_params(event))
        return _key_from_row(rows[0]) if rows else None

    async def _backfill_pageview(self, event: PageviewEvent) -> BucketKey | None:
        params = [getattr(event, c) for c in PAGEVIEW_FIELDS] + [event.view_id]
        rows = await self.client._query(_BACKFILL_PAGEVIEW_SQL, params)
        return _key_from_row(rows[0]) if rows else None

    async def _update_metrics(self, event: PageviewEvent) -> BucketKey | None:
        params = [getattr(event, c) for c in METRICS_FIELDS] + [event.view_id]
        rows = await self.client._query(_UPDATE_METRICS_SQL, params)
        return _key_from_row(rows[0]) if rows else None

    async def record_pageview(self, event: PageviewEvent) -> TransitionResult:
        """Apply a pageview beacon.

        absent -> pageview_only (insert), metrics_only -> complete (backfill),
        anything else is a duplicate.
        """
        event = event.model_copy(update={"has_pageview": True, "has_metrics": False})

        key = await self._insert(event)
        if key is not None:
            return TransitionResult(PAGEVIEW_INSERT, key)

        # Row exists; only a metrics-first row still lacks pageview fields
        key = await self._backfill_pageview(event)
        if key is not None:
            return TransitionResult(PAGEVIEW_BACKFILL, key)

        logger.debug(f"Duplicate pageview beacon for view {event.view_id}")
        return TransitionResult()

    async def record_metrics(self, event: PageviewEvent) -> TransitionResult:
        """Apply a metrics beacon.

        pageview_only -> complete (update), absent -> metrics_only (insert),
        anything else is a duplicate.
        """
        key = await self._update_metrics(event)
        if key is not None:
            return TransitionResult(METRICS_UPDATE, key)

        event = event.model_copy(update={"has_pageview": False, "has_metrics": True})
        key = await self._insert(event)
        if key is not None:
            return TransitionResult(METRICS_INSERT, key)

        # A concurrent pageview may have inserted between our update and insert
        key = await self._update_metrics(event)
        if key is not None:
            return TransitionResult(METRICS_UPDATE, key)

        logger.debug(f"Duplicate metrics beacon for view {event.view_id}")
        return TransitionResult()

    # =========================================================================
    # READS
    # =========================================================================

    async def get_event(self, view_id: str) -> PageviewEvent | None:
        rows = await self.client._query(
            f"SELECT {', '.join(EVENT_COLUMNS)} FROM {EVENTS_TABLE} WHERE view_id = ?",
            [view_id],
        )
        return PageviewEvent(**rows[0]) if rows else None

    async def get_state(self, view_id: str) -> EventState:
        event = await self.get_event(view_id)
        return event.state if event else EventState.ABSENT

    async def events_with_metrics(
        self,
        pageview_date: date,
        domain: str,
        category: str | None = None,
    ) -> list[dict]:
        """URL, stored classification and timings for events that have metrics."""
        sql = f"""
            SELECT url, is_internal, ttfb_ms, dom_content_loaded_ms, load_event_end_ms
            FROM {EVENTS_TABLE}
            WHERE pageview_date = ? AND domain = ? AND has_metrics = 1
        """
        params: list = [pageview_date.isoformat(), domain]
        if category is not None:
            sql += " AND (category = ? OR category IS NULL)"
            params.append(category)
        return await self.client._query(sql, params)

    async def date_domain_pairs(self) -> list[tuple[str, str]]:
        rows = await self.client._query(
            f"""
            SELECT DISTINCT pageview_date, domain
            FROM {EVENTS_TABLE}
            ORDER BY pageview_date ASC, domain ASC
            """
        )
        return [(row["pageview_date"], row["domain"]) for row in rows]

    async def events_for_day(self, pageview_date: str, domain: str) -> list[dict]:
        return await self.client._query(
            f"""
            SELECT url, ip, user_agent, is_internal, category, has_metrics
            FROM {EVENTS_TABLE}
            WHERE pageview_date = ? AND domain = ?
            """,
            [pageview_date, domain],
        )
