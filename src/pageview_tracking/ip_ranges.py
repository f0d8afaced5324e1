"""
IP range index for bot verification.

Search engines publish the address blocks their crawlers use, and registries
(ARIN) list the blocks an organization owns. This module loads those ranges
once per process and answers "is this IP in one of bot X's ranges?" for both
IPv4 and IPv6.

Range structure (runtime JSON, one entry per bot):

    {
        "google": {
            "ipv4": [{"start": 1089052672, "end": 1089060863,
                      "cidr": "64.233.160.0/19", "sources": ["goog", "arin"]}],
            "ipv6": [{"cidr": "2001:4860::/32", "prefix_length": 32,
                      "sources": ["goog"]}]
        },
        "bing": {...}
    }

Design Principles:
- Immutable: built once, never mutated, safe for concurrent reads
- Forgiving: invalid addresses return False, never raise
- Normalized: IPv4-mapped IPv6 (::ffff:1.2.3.4) is tested as IPv4
"""

import ipaddress
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Mapping

logger = logging.getLogger(__name__)

IPV4_BITS = 32
IPV6_BITS = 128


@dataclass(frozen=True)
class IPv4Range:
    """A normalized IPv4 block with its originating CIDR and source tags."""

    start: int
    end: int
    cidr: str
    sources: frozenset[str] = field(default_factory=frozenset)


@dataclass(frozen=True)
class IPv6Range:
    """An IPv6 block with its prefix length and source tags."""

    cidr: str
    prefix_length: int
    sources: frozenset[str] = field(default_factory=frozenset)


@dataclass(frozen=True)
class BotRanges:
    """All known ranges for a single bot (e.g. "google")."""

    ipv4: tuple[IPv4Range, ...] = ()
    ipv6: tuple[IPv6Range, ...] = ()


# =============================================================================
# ADDRESS HELPERS
# =============================================================================

def parse_ip(ip: str | None) -> ipaddress.IPv4Address | ipaddress.IPv6Address | None:
    """Parse an address, unwrapping IPv4-mapped IPv6 to plain IPv4.

    Returns None for anything that isn't a valid address.
    """
    if not ip or not isinstance(ip, str):
        return None
    try:
        addr = ipaddress.ip_address(ip.strip())
    except ValueError:
        return None
    if isinstance(addr, ipaddress.IPv6Address) and addr.ipv4_mapped is not None:
        return addr.ipv4_mapped
    return addr


def prefix_mask(prefix_length: int, bits: int) -> int:
    """Network mask with the top ``prefix_length`` bits set."""
    if prefix_length <= 0:
        return 0
    return ((1 << prefix_length) - 1) << (bits - prefix_length)


def _parse_cidr(cidr: str, version: int) -> tuple[int, int] | None:
    """Split a CIDR into (network bits, prefix length), or None if invalid."""
    if not cidr or "/" not in cidr:
        return None
    subnet, _, prefix_str = cidr.partition("/")
    prefix_str = prefix_str.strip()
    if not prefix_str.isdigit():
        return None
    try:
        network = ipaddress.ip_address(subnet.strip())
    except ValueError:
        return None
    if network.version != version:
        return None
    bits = IPV4_BITS if version == 4 else IPV6_BITS
    prefix_length = int(prefix_str)
    if prefix_length > bits:
        return None
    return int(network), prefix_length


def ip_in_cidr(addr: ipaddress.IPv4Address | ipaddress.IPv6Address, cidr: str) -> bool:
    """Check whether a parsed address falls inside a CIDR of the same version."""
    parsed = _parse_cidr(cidr, addr.version)
    if parsed is None:
        return False
    network, prefix_length = parsed
    bits = IPV4_BITS if addr.version == 4 else IPV6_BITS
    mask = prefix_mask(prefix_length, bits)
    return (int(addr) & mask) == (network & mask)


def _matches_filter(range_sources: frozenset[str], sources: Iterable[str]) -> bool:
    wanted = set(sources)
    return not wanted or bool(wanted & range_sources)


# =============================================================================
# INDEX
# =============================================================================

class IPRangeIndex:
    """Read-only lookup of bot IP ranges, keyed by bot name."""

    def __init__(self, bots: Mapping[str, BotRanges] | None = None):
        self._bots: dict[str, BotRanges] = dict(bots or {})

    @property
    def bots(self) -> list[str]:
        return sorted(self._bots)

    def ranges_for(self, bot: str) -> BotRanges:
        return self._bots.get(bot, BotRanges())

    def contains(self, ip: str | None, bot: str, sources: Iterable[str] = ()) -> bool:
        """Check if ``ip`` falls in any of ``bot``'s ranges.

        Args:
            ip: IPv4 or IPv6 address (IPv4-mapped IPv6 is normalized)
            bot: Bot name, e.g. "google" or "bing"
            sources: Source tags to restrict to; empty means any source

        Returns:
            True on the first matching range, False otherwise (including for
            invalid addresses and unknown bots)
        """
        addr = parse_ip(ip)
        if addr is None:
            return False

        ranges = self.ranges_for(bot)
        sources = tuple(sources)

        candidates = ranges.ipv4 if addr.version == 4 else ranges.ipv6
        for r in candidates:
            # Source filter first, before parsing the CIDR
            if not _matches_filter(r.sources, sources):
                continue
            if ip_in_cidr(addr, r.cidr):
                return True
        return False

    # -------------------------------------------------------------------------
    # Serialization
    # -------------------------------------------------------------------------

    @classmethod
    def from_dict(cls, data: Mapping) -> "IPRangeIndex":
        """Build an index from the runtime range structure."""
        bots = {}
        for bot, entry in (data or {}).items():
            ipv4 = []
            for item in entry.get("ipv4", []):
                try:
                    ipv4.append(IPv4Range(
                        start=int(item["start"]),
                        end=int(item["end"]),
                        cidr=str(item.get("cidr", "")),
                        sources=frozenset(item.get("sources", [])),
                    ))
                except (KeyError, TypeError, ValueError):
                    logger.warning(f"Skipping malformed IPv4 range for {bot}: {item!r}")
            ipv6 = []
            for item in entry.get("ipv6", []):
                try:
                    ipv6.append(IPv6Range(
                        cidr=str(item["cidr"]),
                        prefix_length=int(item["prefix_length"]),
                        sources=frozenset(item.get("sources", [])),
                    ))
                except (KeyError, TypeError, ValueError):
                    logger.warning(f"Skipping malformed IPv6 range for {bot}: {item!r}")
            bots[bot] = BotRanges(ipv4=tuple(ipv4), ipv6=tuple(ipv6))
        return cls(bots)

    @classmethod
    def from_file(cls, path: str | Path) -> "IPRangeIndex":
        """Load the runtime range JSON produced by the build step."""
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        index = cls.from_dict(data)
        for bot in index.bots:
            ranges = index.ranges_for(bot)
            logger.info(
                f"Loaded {len(ranges.ipv4)} IPv4 / {len(ranges.ipv6)} IPv6 ranges for {bot}"
            )
        return index

    def to_dict(self) -> dict:
        return {
            bot: {
                "ipv4": [
                    {"start": r.start, "end": r.end, "cidr": r.cidr, "sources": sorted(r.sources)}
                    for r in ranges.ipv4
                ],
                "ipv6": [
                    {"cidr": r.cidr, "prefix_length": r.prefix_length, "sources": sorted(r.sources)}
                    for r in ranges.ipv6
                ],
            }
            for bot, ranges in self._bots.items()
        }


# =============================================================================
# BUILDING FROM REGISTRY DOCUMENTS
# =============================================================================

def build_bot_ranges(documents: Mapping[str, Mapping]) -> BotRanges:
    """
    Build one bot's ranges from registry ``prefixes`` documents.

    Args:
        documents: Source tag -> parsed JSON document, e.g.
            {"goog": {"prefixes": [{"ipv4Prefix": "8.8.4.0/24"}, ...]}}

    Returns:
        BotRanges with IPv4 sorted by start, IPv6 sorted by CIDR, and
        duplicate ranges merged (their source tags combined)
    """
    ipv4: dict[tuple[int, int], tuple[str, set[str]]] = {}
    ipv6: dict[str, tuple[int, set[str]]] = {}

    for source, document in documents.items():
        prefixes = document.get("prefixes") if isinstance(document, Mapping) else None
        if not isinstance(prefixes, list):
            logger.warning(f"Invalid range document for source '{source}', skipping")
            continue

        for prefix in prefixes:
            if "ipv4Prefix" in prefix:
                cidr = prefix["ipv4Prefix"]
                parsed = _parse_cidr(cidr, 4)
                if parsed is None:
                    continue
                network, prefix_length = parsed
                mask = prefix_mask(prefix_length, IPV4_BITS)
                start = network & mask
                end = start | (~mask & 0xFFFFFFFF)
                key = (start, end)
                if key in ipv4:
                    ipv4[key][1].add(source)
                else:
                    ipv4[key] = (cidr, {source})
            elif "ipv6Prefix" in prefix:
                cidr = prefix["ipv6Prefix"]
                parsed = _parse_cidr(cidr, 6)
                if parsed is None:
                    continue
                if cidr in ipv6:
                    ipv6[cidr][1].add(source)
                else:
                    ipv6[cidr] = (parsed[1], {source})

    return BotRanges(
        ipv4=tuple(
            IPv4Range(start=start, end=end, cidr=cidr, sources=frozenset(tags))
            for (start, end), (cidr, tags) in sorted(ipv4.items())
        ),
        ipv6=tuple(
            IPv6Range(cidr=cidr, prefix_length=length, sources=frozenset(tags))
            for cidr, (length, tags) in sorted(ipv6.items())
        ),
    )
