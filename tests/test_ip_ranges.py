"""Tests for the IP range index."""

import ipaddress
import json
import random

from pageview_tracking.ip_ranges import (
    BotRanges,
    IPRangeIndex,
    IPv4Range,
    IPv6Range,
    build_bot_ranges,
    ip_in_cidr,
    parse_ip,
    prefix_mask,
)


def _ip_int(ip: str) -> int:
    return int(ipaddress.ip_address(ip))


def make_index() -> IPRangeIndex:
    google = build_bot_ranges({
        "goog": {"prefixes": [
            {"ipv4Prefix": "66.249.64.0/19"},
            {"ipv6Prefix": "2001:4860:4801::/48"},
        ]},
        "cloud": {"prefixes": [{"ipv4Prefix": "34.64.0.0/10"}]},
        "arin": {"prefixes": [{"ipv4Prefix": "66.249.64.0/19"}]},
    })
    bing = build_bot_ranges({
        "bingbot": {"prefixes": [{"ipv4Prefix": "157.55.39.0/24"}]},
        "arin": {"prefixes": [{"ipv4Prefix": "13.64.0.0/11"}]},
    })
    return IPRangeIndex({"google": google, "bing": bing})


class TestParseIp:
    """Test address parsing and normalization."""

    def test_ipv4(self):
        assert parse_ip("66.249.66.1") == ipaddress.IPv4Address("66.249.66.1")

    def test_ipv6(self):
        assert parse_ip("2001:db8::1").version == 6

    def test_ipv4_mapped_ipv6_becomes_ipv4(self):
        """::ffff:1.2.3.4 is tested as plain IPv4."""
        assert parse_ip("::ffff:66.249.66.1") == ipaddress.IPv4Address("66.249.66.1")

    def test_whitespace_trimmed(self):
        assert parse_ip("  10.0.0.1 ") == ipaddress.IPv4Address("10.0.0.1")

    def test_invalid_returns_none(self):
        assert parse_ip("not-an-ip") is None
        assert parse_ip("999.1.1.1") is None
        assert parse_ip("") is None
        assert parse_ip(None) is None


class TestPrefixMask:
    """Test mask construction."""

    def test_zero_prefix_matches_everything(self):
        assert prefix_mask(0, 32) == 0

    def test_full_prefix(self):
        assert prefix_mask(32, 32) == 0xFFFFFFFF

    def test_partial_prefix(self):
        assert prefix_mask(24, 32) == 0xFFFFFF00

    def test_ipv6_prefix(self):
        assert prefix_mask(64, 128) == ((1 << 64) - 1) << 64


class TestIpInCidr:
    """Test bitmask containment."""

    def test_inside(self):
        assert ip_in_cidr(parse_ip("192.168.1.77"), "192.168.1.0/24") is True

    def test_outside(self):
        assert ip_in_cidr(parse_ip("192.168.2.1"), "192.168.1.0/24") is False

    def test_unaligned_network_is_masked(self):
        """Host bits set in the CIDR don't matter."""
        assert ip_in_cidr(parse_ip("10.200.0.1"), "10.0.0.5/8") is True

    def test_version_mismatch_is_false(self):
        assert ip_in_cidr(parse_ip("10.0.0.1"), "2001:db8::/32") is False

    def test_invalid_cidrs_are_false(self):
        addr = parse_ip("10.0.0.1")
        assert ip_in_cidr(addr, "10.0.0.0") is False
        assert ip_in_cidr(addr, "10.0.0.0/33") is False
        assert ip_in_cidr(addr, "10.0.0.0/abc") is False
        assert ip_in_cidr(addr, "bogus/8") is False
        assert ip_in_cidr(addr, "") is False

    def test_ipv6_inside(self):
        assert ip_in_cidr(parse_ip("2001:4860:4801:10::1"), "2001:4860:4801::/48") is True

    def test_ipv6_outside(self):
        assert ip_in_cidr(parse_ip("2001:4860:4802::1"), "2001:4860:4801::/48") is False


class TestBitmaskAgreesWithBounds:
    """Bitmask containment matches a naive start <= ip <= end comparison."""

    CIDRS = [
        "66.249.64.0/19",
        "157.55.39.0/24",
        "13.64.0.0/11",
        "8.8.8.8/32",
        "10.0.0.0/8",
        "192.0.2.128/25",
        "0.0.0.0/0",
    ]

    def test_random_and_boundary_addresses(self):
        ranges = build_bot_ranges({
            "test": {"prefixes": [{"ipv4Prefix": cidr} for cidr in self.CIDRS]}
        })
        rng = random.Random(1234)

        for r in ranges.ipv4:
            samples = [r.start, r.end, r.start - 1, r.end + 1]
            samples += [rng.randint(0, 0xFFFFFFFF) for _ in range(200)]
            for value in samples:
                if not 0 <= value <= 0xFFFFFFFF:
                    continue
                addr = ipaddress.IPv4Address(value)
                naive = r.start <= value <= r.end
                assert ip_in_cidr(addr, r.cidr) is naive, (r.cidr, str(addr))


class TestBuildBotRanges:
    """Test building ranges from registry prefix documents."""

    def test_bounds_computed(self):
        ranges = build_bot_ranges({"goog": {"prefixes": [{"ipv4Prefix": "66.249.64.0/19"}]}})
        assert len(ranges.ipv4) == 1
        r = ranges.ipv4[0]
        assert r.start == _ip_int("66.249.64.0")
        assert r.end == _ip_int("66.249.95.255")
        assert r.cidr == "66.249.64.0/19"
        assert r.sources == frozenset({"goog"})

    def test_duplicates_merge_sources(self):
        ranges = build_bot_ranges({
            "goog": {"prefixes": [{"ipv4Prefix": "66.249.64.0/19"}, {"ipv6Prefix": "2001:4860::/32"}]},
            "arin": {"prefixes": [{"ipv4Prefix": "66.249.64.0/19"}, {"ipv6Prefix": "2001:4860::/32"}]},
        })
        assert len(ranges.ipv4) == 1
        assert ranges.ipv4[0].sources == frozenset({"goog", "arin"})
        assert len(ranges.ipv6) == 1
        assert ranges.ipv6[0].sources == frozenset({"goog", "arin"})
        assert ranges.ipv6[0].prefix_length == 32

    def test_ipv4_sorted_by_start(self):
        ranges = build_bot_ranges({"x": {"prefixes": [
            {"ipv4Prefix": "157.55.39.0/24"},
            {"ipv4Prefix": "13.64.0.0/11"},
            {"ipv4Prefix": "66.249.64.0/19"},
        ]}})
        starts = [r.start for r in ranges.ipv4]
        assert starts == sorted(starts)

    def test_invalid_prefixes_skipped(self):
        ranges = build_bot_ranges({"x": {"prefixes": [
            {"ipv4Prefix": "300.1.1.0/24"},
            {"ipv4Prefix": "10.0.0.0/40"},
            {"ipv6Prefix": "10.0.0.0/8"},
            {"somethingElse": "1.2.3.0/24"},
            {"ipv4Prefix": "10.0.0.0/8"},
        ]}})
        assert [r.cidr for r in ranges.ipv4] == ["10.0.0.0/8"]
        assert ranges.ipv6 == ()

    def test_document_without_prefixes_skipped(self, caplog):
        ranges = build_bot_ranges({
            "broken": {"creationTime": "2025-01-01"},
            "ok": {"prefixes": [{"ipv4Prefix": "10.0.0.0/8"}]},
        })
        assert len(ranges.ipv4) == 1
        assert "broken" in caplog.text


class TestIPRangeIndex:
    """Test IPRangeIndex.contains."""

    def test_googlebot_ip_in_narrow_list(self):
        index = make_index()
        assert index.contains("66.249.66.1", "google", ["goog"]) is True

    def test_cloud_ip_not_in_narrow_list(self):
        index = make_index()
        assert index.contains("34.100.1.1", "google", ["goog"]) is False
        assert index.contains("34.100.1.1", "google") is True

    def test_any_source_filter(self):
        index = make_index()
        assert index.contains("66.249.66.1", "google", []) is True
        assert index.contains("66.249.66.1", "google", ["arin"]) is True

    def test_outside_all_ranges(self):
        assert make_index().contains("203.0.113.7", "google") is False

    def test_unknown_bot(self):
        assert make_index().contains("66.249.66.1", "yandex") is False

    def test_invalid_ip_never_raises(self):
        index = make_index()
        assert index.contains("garbage", "google") is False
        assert index.contains(None, "google") is False
        assert index.contains("", "bing") is False

    def test_ipv4_mapped_ipv6(self):
        assert make_index().contains("::ffff:157.55.39.10", "bing", ["bingbot"]) is True

    def test_ipv6(self):
        index = make_index()
        assert index.contains("2001:4860:4801:2::5", "google", ["goog"]) is True
        assert index.contains("2001:4860:4801:2::5", "google", ["cloud"]) is False
        assert index.contains("2001:db8::1", "google") is False

    def test_invalid_range_entries_skipped(self):
        index = IPRangeIndex({"test": BotRanges(
            ipv4=(
                IPv4Range(start=0, end=0, cidr="not-a-cidr", sources=frozenset({"a"})),
                IPv4Range(start=0, end=0, cidr="10.0.0.0/99", sources=frozenset({"a"})),
                IPv4Range(start=0, end=0, cidr="10.0.0.0/8", sources=frozenset({"a"})),
            ),
            ipv6=(IPv6Range(cidr="::/999", prefix_length=999, sources=frozenset({"a"})),),
        )})
        assert index.contains("10.1.2.3", "test") is True
        assert index.contains("2001:db8::1", "test") is False

    def test_bots_listed(self):
        assert make_index().bots == ["bing", "google"]


class TestSerialization:
    """Test runtime JSON loading."""

    def test_dict_roundtrip(self):
        index = make_index()
        restored = IPRangeIndex.from_dict(index.to_dict())
        assert restored.to_dict() == index.to_dict()
        assert restored.contains("66.249.66.1", "google", ["goog"]) is True

    def test_from_file(self, tmp_path):
        path = tmp_path / "ranges.json"
        path.write_text(json.dumps(make_index().to_dict()))
        index = IPRangeIndex.from_file(path)
        assert index.contains("157.55.39.200", "bing", ["bingbot"]) is True
        assert index.contains("13.70.1.1", "bing") is True

    def test_malformed_entries_skipped(self, caplog):
        index = IPRangeIndex.from_dict({
            "google": {
                "ipv4": [
                    {"cidr": "1.2.3.0/24"},
                    {"start": 0, "end": 255, "cidr": "0.0.0.0/24", "sources": ["goog"]},
                ],
                "ipv6": [{"prefix_length": 32}],
            }
        })
        ranges = index.ranges_for("google")
        assert len(ranges.ipv4) == 1
        assert ranges.ipv6 == ()
        assert "malformed" in caplog.text
