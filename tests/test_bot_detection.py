"""Tests for bot classification and request-rate tracking."""

import threading

import pytest

from visitor_analytics.bot_detection import (
    BotPolicy,
    RateLimitPolicy,
    RequestRateTracker,
    analyze_user_agent,
    bot_indicators,
    is_bot,
    is_internal_address,
    separate_bot_traffic,
)
from visitor_analytics.visitors import summarize_addresses

from conftest import CHROME_UA, FIREFOX_UA, IPHONE_UA

SCRAPER_AGENTS = [
    CHROME_UA,
    FIREFOX_UA,
    IPHONE_UA,
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_5) AppleWebKit/605.1.15 Version/17.5 Safari/605.1.15",
    "Mozilla/5.0 (Windows NT 10.0) AppleWebKit/537.36 Edge/126.0",
    "Opera/9.80 (Windows NT 6.1) Presto/2.12.388 Version/12.18",
    "Mozilla/5.0 (Linux; Android 14; Pixel 8) Mobile Chrome/126.0",
    "ExampleCrawler/1.0 (+https://crawler.example.com)",
]


def _records(record_factory, count, agents, address="198.51.100.20"):
    return [
        record_factory(address=address, when=(2025, 7, 25, 10, i // 60, i % 60),
                       user_agent=agents[i % len(agents)])
        for i in range(count)
    ]


class TestClassification:
    def test_crawler_with_volume_and_many_agents_is_bot(self, record_factory):
        records = _records(record_factory, 150, SCRAPER_AGENTS)
        indicators = bot_indicators(records)
        assert indicators["high_request_volume"]
        assert indicators["many_user_agents"]
        assert indicators["crawler_user_agent"]
        assert is_bot(records)

    def test_ordinary_visitor_is_human(self, record_factory):
        records = _records(record_factory, 12, [CHROME_UA])
        assert sum(bot_indicators(records).values()) == 0
        assert not is_bot(records)

    def test_two_indicators_not_enough(self, record_factory):
        records = _records(record_factory, 150, ["Googlebot/2.1"])
        indicators = bot_indicators(records)
        assert sum(indicators.values()) == 2
        assert not is_bot(records)

    def test_threshold_is_policy(self, record_factory):
        records = _records(record_factory, 150, ["Googlebot/2.1"])
        assert is_bot(records, BotPolicy(min_indicators=2))

    def test_more_agents_never_lowers_indicator_count(self, record_factory):
        base = _records(record_factory, 40, SCRAPER_AGENTS[:2])
        previous = sum(bot_indicators(base).values())
        for n in range(3, len(SCRAPER_AGENTS) + 1):
            extra = _records(record_factory, 1, [SCRAPER_AGENTS[n - 1]])
            base = base + extra
            current = sum(bot_indicators(base).values())
            assert current >= previous
            previous = current

    def test_separate_bot_traffic_partitions(self, record_factory):
        records = (
            _records(record_factory, 150, SCRAPER_AGENTS, address="198.51.100.20")
            + _records(record_factory, 5, [CHROME_UA], address="203.0.113.5")
        )
        summaries = summarize_addresses(records)
        by_address = {}
        for r in records:
            by_address.setdefault(r.address, []).append(r)

        humans, bots = separate_bot_traffic(summaries, by_address)
        assert [s.address for s in humans] == ["203.0.113.5"]
        assert [s.address for s in bots] == ["198.51.100.20"]
        assert len(humans) + len(bots) == len(summaries)


class TestInternalAddresses:
    @pytest.mark.parametrize("address", [
        "10.1.2.3", "172.16.0.1", "172.31.255.255", "192.168.1.10", "127.0.0.1", "::1", "localhost",
    ])
    def test_internal(self, address):
        assert is_internal_address(address)

    @pytest.mark.parametrize("address", ["203.0.113.5", "172.32.0.1", "2001:db8::1", "unknown"])
    def test_external(self, address):
        assert not is_internal_address(address)


class TestUserAgentAnalysis:
    def test_browser(self):
        analysis = analyze_user_agent(CHROME_UA)
        assert analysis.is_bot is False
        assert analysis.confidence == pytest.approx(0.1)

    def test_suspicious_pattern(self):
        analysis = analyze_user_agent("python-requests/2.32")
        assert analysis.is_bot is True
        assert analysis.confidence == pytest.approx(0.9)
        assert "python" in analysis.reason

    def test_short_without_browser_markers(self):
        analysis = analyze_user_agent("MyFetcher/1.0")
        assert analysis.is_bot is True
        assert analysis.confidence == pytest.approx(0.7)

    def test_automation_tool(self):
        ua = CHROME_UA.replace("Chrome/", "HeadlessChrome/")
        analysis = analyze_user_agent(ua)
        assert analysis.is_bot is True
        assert analysis.confidence == pytest.approx(0.95)


class TestRequestRateTracker:
    def _tracker(self, clock, **policy):
        return RequestRateTracker(RateLimitPolicy(**policy), time_func=lambda: clock[0])

    def test_minute_limit(self):
        clock = [1000.0]
        tracker = self._tracker(clock, max_per_minute=3)
        results = [tracker.check("203.0.113.5") for _ in range(4)]
        assert [r.is_rate_limited for r in results] == [False, False, False, True]
        assert results[-1].requests_in_last_minute == 4

    def test_minute_window_resets(self):
        clock = [1000.0]
        tracker = self._tracker(clock, max_per_minute=2)
        for _ in range(3):
            tracker.check("203.0.113.5")
        clock[0] += 60
        info = tracker.check("203.0.113.5")
        assert info.requests_in_last_minute == 1
        assert info.requests_in_last_hour == 4
        assert not info.is_rate_limited

    def test_hour_limit(self):
        clock = [0.0]
        tracker = self._tracker(clock, max_per_minute=1000, max_per_hour=5)
        for _ in range(5):
            assert not tracker.check("a").is_rate_limited
        assert tracker.check("a").is_rate_limited

    def test_addresses_independent(self):
        clock = [0.0]
        tracker = self._tracker(clock, max_per_minute=1)
        tracker.check("a")
        assert tracker.check("a").is_rate_limited
        assert not tracker.check("b").is_rate_limited

    def test_detect_bot_behaviour_hints(self):
        clock = [0.0]
        tracker = self._tracker(clock)
        result = tracker.detect_bot("203.0.113.5", CHROME_UA, {"timeOnPage": 200, "mouseMovements": 0})
        assert result.is_bot is False
        assert result.confidence == pytest.approx(0.4)
        assert "Rapid page navigation" in result.reason
        assert result.requires_verification is False

    def test_detect_bot_rate_limited(self):
        clock = [0.0]
        tracker = self._tracker(clock, max_per_minute=1)
        tracker.detect_bot("203.0.113.5", CHROME_UA)
        result = tracker.detect_bot("203.0.113.5", CHROME_UA)
        assert result.rate_limit_exceeded
        assert result.is_bot

    def test_cleanup_evicts_only_stale(self):
        clock = [0.0]
        tracker = self._tracker(clock)
        tracker.check("old")
        clock[0] = 3000.0
        tracker.check("recent")

        assert tracker.cleanup(now=3700.0) == 1
        assert "old" not in tracker
        assert "recent" in tracker
        assert len(tracker) == 1

    def test_cleanup_uses_clock_by_default(self):
        clock = [0.0]
        tracker = self._tracker(clock)
        tracker.check("a")
        clock[0] = 10.0
        assert tracker.cleanup() == 0

    def test_concurrent_checks_lose_no_increments(self):
        tracker = RequestRateTracker(RateLimitPolicy(max_per_minute=10**6, max_per_hour=10**6),
                                     time_func=lambda: 0.0)

        def hammer():
            for _ in range(500):
                tracker.check("203.0.113.5")

        threads = [threading.Thread(target=hammer) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert tracker.check("203.0.113.5").requests_in_last_hour == 8 * 500 + 1
