"""
Pydantic models for beacons, stored events and daily aggregates.
"""
import math
import time
from datetime import date, datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator

# =============================================================================
# Sanitizing bounds
# =============================================================================

MAX_URL_LENGTH = 4096
MAX_REFERRER_LENGTH = 4096
MAX_LOCALE_LENGTH = 64
MAX_USER_AGENT_LENGTH = 1024
MAX_DOMAIN_LENGTH = 255
MAX_VIEW_ID_LENGTH = 255

MAX_VIEWPORT_PX = 100_000
MIN_CLIENT_TS_MS = 946_684_800_000          # 2000-01-01T00:00:00Z
CLIENT_TS_FUTURE_MS = 31_536_000_000        # now + 365 days
MAX_TIMING_MS = 3_600_000                   # 1 hour

UNKNOWN_DOMAIN = "unknown"


def clip(value: Any, length: int) -> str:
    """Coerce to str and truncate. None becomes an empty string."""
    if value is None:
        return ""
    return str(value)[:length]


def _as_number(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def sane_dimension(value: Any) -> int | None:
    """Viewport dimension: accept 1..100000 px, else None."""
    number = _as_number(value)
    if number is None:
        return None
    number = int(number)
    return number if 0 < number <= MAX_VIEWPORT_PX else None


def sane_client_timestamp(value: Any, now_ms: int | None = None) -> int | None:
    """Client ``Date.now()`` in ms: keep if within 2000-01-01 .. now + 1 year."""
    number = _as_number(value)
    if number is None:
        return None
    number = int(number)
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return number if MIN_CLIENT_TS_MS <= number <= now_ms + CLIENT_TS_FUTURE_MS else None


def sane_timing(value: Any) -> float | None:
    """Performance timing: keep if within 1 ms .. 1 hour."""
    number = _as_number(value)
    if number is None:
        return None
    return number if 1 <= number <= MAX_TIMING_MS else None


def is_internal_page(url: str | None) -> int:
    """1 if the URL's path is non-empty and not '/', else 0."""
    try:
        path = urlparse(url or "").path
    except ValueError:
        return 0
    return 1 if path not in ("", "/") else 0


def domain_from_url(url: str | None, fallback_host: str | None = None) -> str:
    """Lowercased URL host, falling back to the request host for relative URLs."""
    try:
        host = urlparse(url or "").hostname or ""
    except ValueError:
        host = ""
    if not host:
        host = (fallback_host or "").strip()
    host = clip(host.lower(), MAX_DOMAIN_LENGTH)
    return host or UNKNOWN_DOMAIN


# =============================================================================
# Incoming beacons
# =============================================================================

class _BeaconBase(BaseModel):
    """Fields shared by every beacon shape."""
    model_config = ConfigDict(extra="ignore")

    url: str = Field(min_length=1)

    @field_validator("url", mode="before")
    @classmethod
    def clip_url(cls, v):
        return clip(v, MAX_URL_LENGTH)


def _clean_view_id(v):
    return clip(v, MAX_VIEW_ID_LENGTH).strip()


class _PageviewFields(_BeaconBase):
    """Page context captured on first visibility."""
    referrer: str = ""
    language: str = ""
    timezone: str = ""
    viewport_width: int | None = None
    viewport_height: int | None = None
    ts_pageview_ms: int | None = None

    @field_validator("referrer", mode="before")
    @classmethod
    def clip_referrer(cls, v):
        return clip(v, MAX_REFERRER_LENGTH)

    @field_validator("language", "timezone", mode="before")
    @classmethod
    def clip_locale(cls, v):
        return clip(v, MAX_LOCALE_LENGTH)

    @field_validator("viewport_width", "viewport_height", mode="before")
    @classmethod
    def check_viewport(cls, v):
        return sane_dimension(v)

    @field_validator("ts_pageview_ms", mode="before")
    @classmethod
    def check_timestamp(cls, v):
        return sane_client_timestamp(v)


class PageviewBeacon(_PageviewFields):
    """Sent when the page first becomes visible."""
    type: Literal["pageview"]
    view_id: str = Field(min_length=1)

    normalize_view_id = field_validator("view_id", mode="before")(_clean_view_id)


class DailyBeacon(_PageviewFields):
    """Single-beacon mode: counts a pageview without event-level storage."""


class MetricsBeacon(_BeaconBase):
    """Sent after window load with Navigation Timing values."""
    type: Literal["metrics"]
    view_id: str = Field(min_length=1)

    ts_metrics_ms: int | None = None
    ttfb_ms: float | None = None
    dom_content_loaded_ms: float | None = None
    load_event_end_ms: float | None = None

    normalize_view_id = field_validator("view_id", mode="before")(_clean_view_id)

    @field_validator("ts_metrics_ms", mode="before")
    @classmethod
    def check_timestamp(cls, v):
        return sane_client_timestamp(v)

    @field_validator("ttfb_ms", "dom_content_loaded_ms", "load_event_end_ms", mode="before")
    @classmethod
    def check_timing(cls, v):
        return sane_timing(v)


Beacon = Annotated[Union[PageviewBeacon, MetricsBeacon], Field(discriminator="type")]


class ClientInfo(BaseModel):
    """Request facts the client can't be trusted to send."""
    ip: str | None = None
    user_agent: str = ""
    host: str = ""

    @field_validator("user_agent", mode="before")
    @classmethod
    def clip_user_agent(cls, v):
        return clip(v, MAX_USER_AGENT_LENGTH)


# =============================================================================
# Stored rows
# =============================================================================

class EventState(str, Enum):
    """Lifecycle of a single view identity."""
    ABSENT = "absent"
    PAGEVIEW_ONLY = "pageview_only"
    METRICS_ONLY = "metrics_only"
    COMPLETE = "complete"

    @classmethod
    def from_flags(cls, has_pageview: bool, has_metrics: bool) -> "EventState":
        if has_pageview and has_metrics:
            return cls.COMPLETE
        if has_pageview:
            return cls.PAGEVIEW_ONLY
        if has_metrics:
            return cls.METRICS_ONLY
        return cls.ABSENT


class BucketKey(BaseModel):
    """Unique key of a daily aggregate row."""
    model_config = ConfigDict(frozen=True)

    pageview_date: date
    domain: str
    is_internal: int
    category: str

    def params(self) -> list:
        return [self.pageview_date.isoformat(), self.domain, self.is_internal, self.category]


class PageviewEvent(BaseModel):
    """A single page view, merged from its pageview and metrics beacons."""
    view_id: str
    pageview_date: date
    url: str
    domain: str
    referrer: str | None = None
    ip: str | None = None
    user_agent: str | None = None
    language: str | None = None
    timezone: str | None = None
    viewport_width: int | None = None
    viewport_height: int | None = None

    ts_pageview_ms: int | None = None
    ts_metrics_ms: int | None = None
    ttfb_ms: float | None = None
    dom_content_loaded_ms: float | None = None
    load_event_end_ms: float | None = None

    # Bucket classification as of ingestion
    is_internal: int | None = None
    category: str | None = None

    has_pageview: bool = False
    has_metrics: bool = False

    @property
    def state(self) -> EventState:
        return EventState.from_flags(self.has_pageview, self.has_metrics)


class DailyAggregate(BaseModel):
    """Counters and statistics for one (date, domain, is_internal, category)."""
    pageview_date: date
    domain: str
    is_internal: int
    category: str

    pageviews: int = 0
    cnt_pageviews_with_metrics: int = 0

    googlebot_ua_pageviews: int = 0
    bingbot_ua_pageviews: int = 0
    googlebot_ip_pageviews: int = 0
    google_ip_pageviews: int = 0
    bingbot_ip_pageviews: int = 0
    microsoft_ip_pageviews: int = 0

    avg_ttfb_ms: float | None = None
    median_ttfb_ms: float | None = None
    p95_ttfb_ms: float | None = None
    avg_dom_content_loaded_ms: float | None = None
    median_dom_content_loaded_ms: float | None = None
    p95_dom_content_loaded_ms: float | None = None
    avg_load_event_end_ms: float | None = None
    median_load_event_end_ms: float | None = None
    p95_load_event_end_ms: float | None = None

    processed_at: datetime | None = None
    processed_status: str | None = None

    @property
    def key(self) -> BucketKey:
        return BucketKey(
            pageview_date=self.pageview_date,
            domain=self.domain,
            is_internal=self.is_internal,
            category=self.category,
        )
