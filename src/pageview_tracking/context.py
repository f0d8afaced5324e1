"""
Process-wide, read-only tracking context.

The range index and blacklist are loaded once at startup and handed to the
classifier, filter and ingestor explicitly. Nothing in here changes after
construction, so concurrent requests share it without locking.
"""
import logging
from dataclasses import dataclass, field

from .blacklist import Blacklist
from .bots import BotFlags, classify_bot_traffic
from .config import TrackingConfig
from .ip_ranges import IPRangeIndex

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TrackingContext:
    """Immutable rule sets shared by all requests."""

    ranges: IPRangeIndex = field(default_factory=IPRangeIndex)
    blacklist: Blacklist = field(default_factory=Blacklist)

    def is_blacklisted(self, ip: str | None, user_agent: str | None) -> bool:
        return self.blacklist.is_blacklisted(ip, user_agent)

    def classify(self, user_agent: str | None, ip: str | None) -> BotFlags:
        return classify_bot_traffic(user_agent, ip, self.ranges)


def load_context(config: TrackingConfig) -> TrackingContext:
    """Build the context from the files and inline rules in ``config``."""
    if config.ip_ranges_file:
        ranges = IPRangeIndex.from_file(config.ip_ranges_file)
    else:
        logger.warning("No IP ranges file configured, IP bot flags will always be false")
        ranges = IPRangeIndex()

    blacklist = Blacklist.from_config(config.load_blacklist())
    return TrackingContext(ranges=ranges, blacklist=blacklist)
