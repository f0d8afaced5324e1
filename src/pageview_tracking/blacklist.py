"""
Blacklist filter applied before anything is persisted.

Rules come in four flavours: exact IPs, CIDR blocks, exact user-agents and
user-agent substrings. UA comparisons are case-insensitive. IP comparisons
are binary (so "2001:db8::1" and "2001:0db8:0:0::1" are the same address) and
IPv4-mapped IPv6 is normalized to IPv4 first.
"""

import ipaddress
import logging
from dataclasses import dataclass
from typing import Iterable

from .config import BlacklistConfig
from .ip_ranges import ip_in_cidr, parse_ip

logger = logging.getLogger(__name__)


def _clean(values: Iterable) -> list[str]:
    """Trim entries, dropping empty and non-string values."""
    return [v.strip() for v in values or [] if isinstance(v, str) and v.strip()]


@dataclass(frozen=True)
class Blacklist:
    """Immutable, pre-parsed blacklist rules."""

    ips: frozenset = frozenset()
    cidrs: tuple[str, ...] = ()
    user_agents_exact: frozenset[str] = frozenset()
    user_agents_substring: tuple[str, ...] = ()

    @classmethod
    def from_config(cls, config: BlacklistConfig) -> "Blacklist":
        ips = set()
        for value in _clean(config.ips):
            addr = parse_ip(value)
            if addr is None:
                logger.warning(f"Ignoring invalid blacklist IP: {value!r}")
                continue
            ips.add(addr)

        cidrs = []
        for value in _clean(config.cidrs):
            try:
                ipaddress.ip_network(value, strict=False)
            except ValueError:
                logger.warning(f"Ignoring invalid blacklist CIDR: {value!r}")
                continue
            cidrs.append(value)

        return cls(
            ips=frozenset(ips),
            cidrs=tuple(cidrs),
            user_agents_exact=frozenset(v.casefold() for v in _clean(config.user_agents_exact)),
            user_agents_substring=tuple(v.casefold() for v in _clean(config.user_agents_substring)),
        )

    def is_ip_blacklisted(self, ip: str | None) -> bool:
        """Check exact IPs and CIDR blocks. Invalid IPs are never blacklisted."""
        addr = parse_ip(ip)
        if addr is None:
            return False

        # ip_address objects compare by version and value
        if addr in self.ips:
            return True

        return any(ip_in_cidr(addr, cidr) for cidr in self.cidrs)

    def is_user_agent_blacklisted(self, user_agent: str | None) -> bool:
        ua = (user_agent or "").casefold()
        if ua in self.user_agents_exact:
            return True
        return any(sub in ua for sub in self.user_agents_substring)

    def is_blacklisted(self, ip: str | None, user_agent: str | None) -> bool:
        """True if either the IP or the user-agent matches a rule."""
        return self.is_ip_blacklisted(ip) or self.is_user_agent_blacklisted(user_agent)
