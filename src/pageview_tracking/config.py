"""
Configuration for pageview tracking.
"""
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_CATEGORY = "none"

# Store backends
STORE_D1 = "d1"
STORE_SQLITE = "sqlite"


class InvalidTimezoneError(ValueError):
    """Raised when the configured aggregation time zone is unknown."""
    pass


class StoreNotConfiguredError(ValueError):
    """Raised when the selected store backend is missing required settings."""
    pass


@dataclass
class BlacklistConfig:
    """Blacklist rules for IPs and user agents.

    Usage:
        blacklist = BlacklistConfig(
            ips=["192.168.1.100", "2001:db8::1"],
            cidrs=["10.0.0.0/8"],
            user_agents_substring=["badbot"],
        )
    """

    ips: list[str] = field(default_factory=list)                   # Exact IPv4/IPv6
    cidrs: list[str] = field(default_factory=list)                 # e.g. 192.168.1.0/24
    user_agents_exact: list[str] = field(default_factory=list)     # Case-insensitive
    user_agents_substring: list[str] = field(default_factory=list) # Case-insensitive

    @classmethod
    def from_dict(cls, data: dict) -> "BlacklistConfig":
        return cls(
            ips=list(data.get("blacklist_ips", [])),
            cidrs=list(data.get("blacklist_ips_cidr", [])),
            user_agents_exact=list(data.get("blacklist_user_agents_exact", [])),
            user_agents_substring=list(data.get("blacklist_user_agents_substring", [])),
        )

    @classmethod
    def from_file(cls, path: str | Path) -> "BlacklistConfig":
        """Load blacklist rules from a JSON file.

        A missing file means "no rules", matching an empty config.
        """
        path = Path(path)
        if not path.exists():
            logger.info(f"Blacklist file {path} not found, no rules loaded")
            return cls()
        with open(path, "r", encoding="utf-8") as f:
            return cls.from_dict(json.load(f))


@dataclass
class TrackingConfig:
    """Configuration for a tracking instance."""

    # Store
    store: str = STORE_SQLITE            # "sqlite" or "d1"
    sqlite_path: str = "tracking.db"
    d1_database_id: str | None = None
    cf_account_id: str | None = None
    cf_api_token: str | None = None

    # Aggregation
    timezone: str | None = None          # None = server local time
    category: str = DEFAULT_CATEGORY

    # Feature flags
    tracking_enabled: bool = True
    count_bots_on_beacon: bool = True    # Bot counters fed by beacons; False = by record_server_hit

    # Process-wide data files
    ip_ranges_file: str | None = None    # Runtime range JSON (see ip_ranges.py)
    blacklist_file: str | None = None
    blacklist: BlacklistConfig = field(default_factory=BlacklistConfig)

    def __post_init__(self):
        """Validate configuration after initialization."""
        self._validate_timezone()
        self._validate_store()
        self._validate_category()

    def _validate_timezone(self) -> None:
        if self.timezone is None:
            return
        try:
            ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            raise InvalidTimezoneError(f"Unknown timezone: {self.timezone!r}")

    def _validate_store(self) -> None:
        if self.store == STORE_D1:
            missing = [
                name for name in ("d1_database_id", "cf_account_id", "cf_api_token")
                if not getattr(self, name)
            ]
            if missing:
                raise StoreNotConfiguredError(
                    f"D1 store requires: {', '.join(missing)}"
                )
        elif self.store != STORE_SQLITE:
            raise StoreNotConfiguredError(f"Unknown store backend: {self.store!r}")

    def _validate_category(self) -> None:
        if not self.category:
            logger.warning(f"Empty category configured, using '{DEFAULT_CATEGORY}'")
            self.category = DEFAULT_CATEGORY

    @property
    def tzinfo(self) -> ZoneInfo | None:
        """Aggregation time zone, or None for server local time."""
        return ZoneInfo(self.timezone) if self.timezone else None

    def load_blacklist(self) -> BlacklistConfig:
        """Inline rules merged with rules from ``blacklist_file`` (if any)."""
        if not self.blacklist_file:
            return self.blacklist
        from_file = BlacklistConfig.from_file(self.blacklist_file)
        return BlacklistConfig(
            ips=self.blacklist.ips + from_file.ips,
            cidrs=self.blacklist.cidrs + from_file.cidrs,
            user_agents_exact=self.blacklist.user_agents_exact + from_file.user_agents_exact,
            user_agents_substring=self.blacklist.user_agents_substring + from_file.user_agents_substring,
        )
