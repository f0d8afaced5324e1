"""
Beacon ingestion.

Control flow for every request:

    disabled? -> blacklisted? -> classify bots -> event store transition
              -> daily counter upsert

Store failures are logged and the event is dropped; the caller still answers
the request normally so a broken store never breaks the tracked page.
"""
import logging
import time
from datetime import date, datetime
from enum import Enum

from .bots import BotFlags
from .config import TrackingConfig
from .context import TrackingContext
from .core.aggregates import DailyAggregates
from .core.client import STORE_ERRORS, TrackingClient
from .core.events import EventStore, TransitionResult
from .core.models import (
    BucketKey,
    ClientInfo,
    DailyBeacon,
    MetricsBeacon,
    PageviewBeacon,
    PageviewEvent,
    domain_from_url,
    is_internal_page,
)

logger = logging.getLogger(__name__)


class IngestResult(str, Enum):
    """What happened to a beacon."""
    RECORDED = "recorded"          # Event store and/or counters changed
    DUPLICATE = "duplicate"        # Already applied, nothing changed
    BLACKLISTED = "blacklisted"
    DISABLED = "disabled"
    IGNORED = "ignored"            # Nothing to count (server hit without bot flags)
    FAILED = "failed"              # Store error, event dropped


class BeaconIngestor:
    """Applies beacons to the event store and daily aggregates."""

    def __init__(
        self,
        client: TrackingClient,
        context: TrackingContext,
        config: TrackingConfig | None = None,
    ):
        self.config = config or TrackingConfig()
        self.context = context
        self.events = EventStore(client)
        self.aggregates = DailyAggregates(client)

    # =========================================================================
    # BUCKETING
    # =========================================================================

    def bucket_date(self, ts_ms: int | None = None) -> date:
        """Calendar day of ``ts_ms`` in the configured time zone (now if missing)."""
        seconds = ts_ms / 1000 if ts_ms is not None else time.time()
        return datetime.fromtimestamp(seconds, self.config.tzinfo).date()

    def bucket_key(self, url: str, host: str = "", ts_ms: int | None = None) -> BucketKey:
        return BucketKey(
            pageview_date=self.bucket_date(ts_ms),
            domain=domain_from_url(url, host),
            is_internal=is_internal_page(url),
            category=self.config.category,
        )

    def _beacon_bots(self, flags: BotFlags) -> BotFlags | None:
        return flags if self.config.count_bots_on_beacon else None

    def _rejected(self, info: ClientInfo) -> IngestResult | None:
        if not self.config.tracking_enabled:
            return IngestResult.DISABLED
        if self.context.is_blacklisted(info.ip, info.user_agent):
            logger.debug(f"Dropping blacklisted request from {info.ip}")
            return IngestResult.BLACKLISTED
        return None

    # =========================================================================
    # DUAL-BEACON MODE
    # =========================================================================

    async def ingest(self, beacon: PageviewBeacon | MetricsBeacon, info: ClientInfo) -> IngestResult:
        """Apply a pageview or metrics beacon."""
        rejected = self._rejected(info)
        if rejected:
            return rejected

        flags = self.context.classify(info.user_agent, info.ip)

        try:
            if isinstance(beacon, PageviewBeacon):
                result = await self._apply_pageview(beacon, info, flags)
            else:
                result = await self._apply_metrics(beacon, info, flags)
        except STORE_ERRORS as e:
            logger.error(f"Failed to record {beacon.type} beacon for view {beacon.view_id}: {e}")
            return IngestResult.FAILED

        return IngestResult.DUPLICATE if result.is_duplicate else IngestResult.RECORDED

    def _event(self, beacon: PageviewBeacon | MetricsBeacon, info: ClientInfo, key: BucketKey) -> PageviewEvent:
        return PageviewEvent(
            **beacon.model_dump(exclude={"type"}),
            pageview_date=key.pageview_date,
            domain=key.domain,
            is_internal=key.is_internal,
            category=key.category,
            ip=info.ip,
            user_agent=info.user_agent,
        )

    async def _apply_pageview(self, beacon: PageviewBeacon, info: ClientInfo, flags: BotFlags) -> TransitionResult:
        key = self.bucket_key(beacon.url, info.host, beacon.ts_pageview_ms)
        result = await self.events.record_pageview(self._event(beacon, info, key))

        if result.transition and result.transition.counts_pageview:
            await self.aggregates.record_pageview(result.key, bots=self._beacon_bots(flags))
        return result

    async def _apply_metrics(self, beacon: MetricsBeacon, info: ClientInfo, flags: BotFlags) -> TransitionResult:
        # No pageview timestamp on this beacon; a metrics-first row is
        # bucketed by arrival time
        key = self.bucket_key(beacon.url, info.host)
        result = await self.events.record_metrics(self._event(beacon, info, key))

        transition = result.transition
        if transition is None:
            return result

        if transition.counts_pageview:
            # Metrics-first: this view has not been counted at all yet
            await self.aggregates.increment(
                result.key,
                pageviews=1,
                with_metrics=1,
                bots=self._beacon_bots(flags),
            )
        elif transition.counts_metrics:
            await self.aggregates.record_metrics(result.key)
        return result

    # =========================================================================
    # DAILY-ONLY MODE
    # =========================================================================

    async def record_daily_pageview(self, beacon: DailyBeacon, info: ClientInfo) -> IngestResult:
        """Count a pageview without storing the event."""
        rejected = self._rejected(info)
        if rejected:
            return rejected

        flags = self.context.classify(info.user_agent, info.ip)
        key = self.bucket_key(beacon.url, info.host, beacon.ts_pageview_ms)
        try:
            await self.aggregates.record_pageview(key, bots=self._beacon_bots(flags))
        except STORE_ERRORS as e:
            logger.error(f"Failed to record daily pageview for {key.domain}: {e}")
            return IngestResult.FAILED
        return IngestResult.RECORDED

    async def record_server_hit(self, url: str, info: ClientInfo) -> IngestResult:
        """Count a server-rendered request that never runs the script.

        Crawlers rarely execute JavaScript, so bot counters can be fed from
        the server side instead of the beacons. Only bot counters are touched,
        and only when at least one flag is set. Ignored while
        ``count_bots_on_beacon`` is on: each request feeds the bot counters
        through one path.
        """
        rejected = self._rejected(info)
        if rejected:
            return rejected
        if self.config.count_bots_on_beacon:
            return IngestResult.IGNORED

        flags = self.context.classify(info.user_agent, info.ip)
        if not flags:
            return IngestResult.IGNORED

        key = self.bucket_key(url, info.host)
        try:
            await self.aggregates.increment(key, bots=flags)
        except STORE_ERRORS as e:
            logger.error(f"Failed to record server hit for {key.domain}: {e}")
            return IngestResult.FAILED
        return IngestResult.RECORDED
