"""Bot/human classification and per-address request-rate tracking.

Two layers:
  * offline classification of one address's record set against heuristic
    indicators (used when building dashboards from access logs)
  * online detection for ingestion: user-agent analysis plus per-address
    minute/hour counters, with an explicit ``cleanup(now)`` sweep

All thresholds are heuristic policy and live in BotPolicy.
"""

import ipaddress
import logging
import time
from dataclasses import dataclass
from typing import Callable, Iterable

from visitor_analytics.aggregation import extract_browser, infer_device_type
from visitor_analytics.locks import KeyedLock
from visitor_analytics.models import AddressSummary, LogRecord

logger = logging.getLogger(__name__)

_INTERNAL_NETWORKS = tuple(ipaddress.ip_network(n) for n in (
    "10.0.0.0/8", "172.16.0.0/12", "192.168.0.0/16", "127.0.0.0/8", "::1/128",
))

SUSPICIOUS_USER_AGENTS = (
    "bot", "crawler", "spider", "scraper", "curl", "wget", "python", "java",
    "go-http-client", "okhttp", "apache-httpclient", "postman", "insomnia",
)

AUTOMATION_TOOLS = ("selenium", "webdriver", "phantomjs", "headless")

_BROWSER_MARKERS = ("mozilla", "chrome", "safari", "firefox")

ONE_MINUTE = 60.0
ONE_HOUR = 3600.0


@dataclass(frozen=True)
class BotPolicy:
    max_user_agents: int = 5
    max_device_types: int = 3
    max_browsers: int = 3
    max_requests: int = 100
    min_indicators: int = 3


def bot_indicators(records: Iterable[LogRecord], policy: BotPolicy = BotPolicy()) -> dict[str, bool]:
    """Named boolean indicators for one address's records."""
    user_agents = set()
    devices = set()
    browsers = set()
    total = 0
    for record in records:
        total += 1
        user_agents.add(record.user_agent)
        devices.add(infer_device_type(record.user_agent))
        browsers.add(extract_browser(record.user_agent))

    lowered = [ua.lower() for ua in user_agents]
    return {
        "many_user_agents": len(user_agents) > policy.max_user_agents,
        "many_device_types": len(devices) > policy.max_device_types,
        "many_browsers": len(browsers) > policy.max_browsers,
        "high_request_volume": total > policy.max_requests,
        "bot_user_agent": any("bot" in ua for ua in lowered),
        "crawler_user_agent": any("crawler" in ua or "spider" in ua for ua in lowered),
    }


def is_bot(records: Iterable[LogRecord], policy: BotPolicy = BotPolicy()) -> bool:
    """Bot when at least policy.min_indicators indicators fire."""
    indicators = bot_indicators(records, policy)
    return sum(indicators.values()) >= policy.min_indicators


def is_internal_address(address: str) -> bool:
    """Private (RFC 1918), loopback or 'localhost': infrastructure, not visitors."""
    if address.lower() == "localhost":
        return True
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return False
    return any(ip.version == net.version and ip in net for net in _INTERNAL_NETWORKS)


def separate_bot_traffic(
    summaries: list[AddressSummary],
    records_by_address: dict[str, list[LogRecord]],
    policy: BotPolicy = BotPolicy(),
) -> tuple[list[AddressSummary], list[AddressSummary]]:
    """Partition summaries into (humans, bots), preserving input order."""
    humans, bots = [], []
    for summary in summaries:
        if is_bot(records_by_address.get(summary.address, []), policy):
            bots.append(summary)
        else:
            humans.append(summary)
    return humans, bots


# ---------------------------------------------------------------------------
# Online detection for ingestion
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class UserAgentAnalysis:
    is_bot: bool
    confidence: float
    reason: str


def analyze_user_agent(user_agent: str) -> UserAgentAnalysis:
    ua = user_agent.lower()

    for pattern in SUSPICIOUS_USER_AGENTS:
        if pattern in ua:
            return UserAgentAnalysis(True, 0.9, f"Suspicious user agent pattern: {pattern}")

    if not any(marker in ua for marker in _BROWSER_MARKERS) and len(ua) < 50:
        return UserAgentAnalysis(True, 0.7, "Missing browser indicators and short user agent")

    for tool in AUTOMATION_TOOLS:
        if tool in ua:
            return UserAgentAnalysis(True, 0.95, f"Automation tool detected: {tool}")

    return UserAgentAnalysis(False, 0.1, "Appears to be legitimate browser")


@dataclass(frozen=True)
class RateLimitInfo:
    requests_in_last_minute: int
    requests_in_last_hour: int
    is_rate_limited: bool
    reset_time: float


@dataclass(frozen=True)
class BotDetectionResult:
    is_bot: bool
    confidence: float
    reason: str
    requires_verification: bool
    rate_limit_exceeded: bool


@dataclass
class _RateEntry:
    minute_start: float
    hour_start: float
    minute_count: int = 0
    hour_count: int = 0


@dataclass(frozen=True)
class RateLimitPolicy:
    max_per_minute: int = 60
    max_per_hour: int = 1000
    progressive_verification: bool = True
    stale_after_seconds: float = ONE_HOUR


class RequestRateTracker:
    """Per-address request counters shared by concurrent ingestion requests.

    Each address's counters are only touched while holding that address's
    lock, so concurrent increments are never lost.
    """

    def __init__(self, policy: RateLimitPolicy = RateLimitPolicy(),
                 time_func: Callable[[], float] | None = None,
                 locks: KeyedLock | None = None):
        self._policy = policy
        self._time_func = time_func or time.time
        self._locks = locks or KeyedLock()
        self._entries: dict[str, _RateEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, address: str) -> bool:
        return address in self._entries

    def check(self, address: str) -> RateLimitInfo:
        """Count one request for *address* and report its rate-limit state."""
        now = self._time_func()
        with self._locks.hold(address):
            entry = self._entries.get(address)
            if entry is None:
                entry = _RateEntry(minute_start=now, hour_start=now)
                self._entries[address] = entry
            if now - entry.hour_start >= ONE_HOUR:
                entry.hour_start = now
                entry.hour_count = 0
            if now - entry.minute_start >= ONE_MINUTE:
                entry.minute_start = now
                entry.minute_count = 0

            entry.minute_count += 1
            entry.hour_count += 1

            return RateLimitInfo(
                requests_in_last_minute=entry.minute_count,
                requests_in_last_hour=entry.hour_count,
                is_rate_limited=(
                    entry.minute_count > self._policy.max_per_minute
                    or entry.hour_count > self._policy.max_per_hour
                ),
                reset_time=entry.hour_start + ONE_HOUR,
            )

    def detect_bot(self, address: str, user_agent: str,
                   additional: dict | None = None) -> BotDetectionResult:
        """Rate check plus user-agent and behaviour heuristics for one request."""
        rate = self.check(address)
        analysis = analyze_user_agent(user_agent)

        confidence = analysis.confidence
        reasons = [analysis.reason]
        if additional:
            time_on_page = additional.get("timeOnPage")
            if isinstance(time_on_page, (int, float)) and time_on_page < 1000:
                confidence = min(confidence + 0.2, 1.0)
                reasons.append("Rapid page navigation detected")
            if additional.get("mouseMovements") == 0:
                confidence = min(confidence + 0.1, 1.0)
                reasons.append("No mouse movements detected")

        return BotDetectionResult(
            is_bot=analysis.is_bot or rate.is_rate_limited,
            confidence=confidence,
            reason="; ".join(reasons),
            requires_verification=self._policy.progressive_verification and confidence > 0.5,
            rate_limit_exceeded=rate.is_rate_limited,
        )

    def cleanup(self, now: float | None = None) -> int:
        """Evict addresses whose hour window started too long ago.

        Holds each address's lock only for that address's check, so the sweep
        never blocks traffic for other addresses. Returns the eviction count.
        """
        if now is None:
            now = self._time_func()
        evicted = 0
        for address in list(self._entries):
            with self._locks.hold(address):
                entry = self._entries.get(address)
                if entry is not None and now - entry.hour_start > self._policy.stale_after_seconds:
                    del self._entries[address]
                    evicted += 1
        if evicted:
            logger.info("Rate tracker cleanup evicted %d stale addresses", evicted)
        return evicted
