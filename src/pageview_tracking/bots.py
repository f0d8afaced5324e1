"""
Bot traffic classification for daily counters.

Each request gets six independent flags: two from the user-agent and four
from the client IP. The flags are not exclusive. A scraper that claims to be
Googlebot from a residential IP sets ``googlebot_ua`` only, and a real
Googlebot fetch from a published crawler range sets ``googlebot_ua``,
``googlebot_ip`` and ``google_ip``.

IP flags come in two widths per bot:
- Narrow: the crawler ranges the search engine publishes
  (Google's "goog" list, Bing's "bingbot" list)
- Organization-wide: any range the company owns (any source, including
  ARIN registry and cloud ranges)
"""

from dataclasses import dataclass, fields

from .ip_ranges import IPRangeIndex


@dataclass(frozen=True)
class BotFlags:
    """
    Six independent bot signals for a single request.

    Attributes:
        googlebot_ua: User-agent contains "googlebot"
        bingbot_ua: User-agent contains "bingbot"
        googlebot_ip: IP in Google's published crawler ranges
        google_ip: IP in any Google-owned range
        bingbot_ip: IP in Bing's published crawler ranges
        microsoft_ip: IP in any Microsoft-owned range
    """
    googlebot_ua: bool = False
    bingbot_ua: bool = False
    googlebot_ip: bool = False
    google_ip: bool = False
    bingbot_ip: bool = False
    microsoft_ip: bool = False

    def __bool__(self) -> bool:
        """Allow `if flags:` to check whether any flag is set."""
        return any(getattr(self, f.name) for f in fields(self))

    def counter_columns(self) -> list[str]:
        """Daily counter columns to increment, in BOT_COUNTERS order."""
        return [column for flag, column in BOT_COUNTERS if getattr(self, flag)]


# =============================================================================
# FLAG TABLES
# =============================================================================

# Flag -> daily aggregate counter column. Fixed order; the upsert engine
# iterates this table, so no other column name can reach the SQL.
BOT_COUNTERS: tuple[tuple[str, str], ...] = (
    ("googlebot_ua", "googlebot_ua_pageviews"),
    ("bingbot_ua", "bingbot_ua_pageviews"),
    ("googlebot_ip", "googlebot_ip_pageviews"),
    ("google_ip", "google_ip_pageviews"),
    ("bingbot_ip", "bingbot_ip_pageviews"),
    ("microsoft_ip", "microsoft_ip_pageviews"),
)

BOT_COUNTER_COLUMNS = tuple(column for _, column in BOT_COUNTERS)

# Flag -> lowercase user-agent substring
UA_PATTERNS = {
    "googlebot_ua": "googlebot",
    "bingbot_ua": "bingbot",
}

# Flag -> (bot name in the range index, source filter; empty = any source)
IP_CHECKS = {
    "googlebot_ip": ("google", ("goog",)),
    "google_ip": ("google", ()),
    "bingbot_ip": ("bing", ("bingbot",)),
    "microsoft_ip": ("bing", ()),
}


def classify_bot_traffic(
    user_agent: str | None,
    ip: str | None,
    ranges: IPRangeIndex,
) -> BotFlags:
    """
    Compute the six bot flags for a request.

    Args:
        user_agent: The User-Agent header string
        ip: Client IP (IPv4, IPv6 or IPv4-mapped IPv6); None skips IP checks
        ranges: Process-wide range index

    Returns:
        BotFlags with each flag computed independently

    Examples:
        >>> classify_bot_traffic("Mozilla/5.0 (compatible; Googlebot/2.1)", "203.0.113.7", index)
        BotFlags(googlebot_ua=True, bingbot_ua=False, googlebot_ip=False, ...)
    """
    ua_lower = (user_agent or "").lower()
    values = {flag: pattern in ua_lower for flag, pattern in UA_PATTERNS.items()}

    for flag, (bot, sources) in IP_CHECKS.items():
        values[flag] = bool(ip) and ranges.contains(ip, bot, sources)

    return BotFlags(**values)
