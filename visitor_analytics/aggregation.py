"""Aggregation: run-wide summaries, top-N extraction and record filters."""

from datetime import date, datetime, time, tzinfo
from typing import Iterable
from urllib.parse import urlparse
from zoneinfo import ZoneInfo

from visitor_analytics.models import LogRecord, LogSummary, format_timestamp
from visitor_analytics.parser import DEFAULT_TIMEZONE
from visitor_analytics.sessions import is_actual_page, strip_query

DEFAULT_TOP_N = 10


def extract_browser(user_agent: str) -> str:
    """Normalized browser family. Order matters: most UAs mention Safari."""
    ua = user_agent.lower()
    if "chrome" in ua:
        return "Chrome"
    if "firefox" in ua:
        return "Firefox"
    if "safari" in ua:
        return "Safari"
    if "edge" in ua:
        return "Edge"
    if "opera" in ua:
        return "Opera"
    if "bot" in ua or "crawler" in ua:
        return "Bot"
    return "Other"


def infer_device_type(user_agent: str) -> str:
    """Coarse device class from the user agent."""
    ua = user_agent.lower()
    if "bot" in ua or "crawler" in ua or "spider" in ua:
        return "bot"
    if "ipad" in ua or "tablet" in ua:
        return "tablet"
    if "mobile" in ua or "android" in ua or "iphone" in ua:
        return "mobile"
    return "desktop"


def extract_domain(referer: str) -> str:
    """Hostname of a referer URL, 'Direct' when it has none."""
    try:
        hostname = urlparse(referer).hostname
    except ValueError:
        return "Direct"
    return hostname or "Direct"


def summarize(records: Iterable[LogRecord]) -> LogSummary:
    """Fold records into a LogSummary. Pure: same input, same output."""
    summary = LogSummary()
    total_response_time = 0.0
    timed_requests = 0
    earliest = latest = None

    for record in records:
        summary.total_requests += 1
        summary.unique_addresses.add(record.address)
        summary.status_codes[record.status_code] = summary.status_codes.get(record.status_code, 0) + 1
        summary.top_paths[record.path] = summary.top_paths.get(record.path, 0) + 1

        if record.user_agent:
            browser = extract_browser(record.user_agent)
            summary.top_user_agents[browser] = summary.top_user_agents.get(browser, 0) + 1

        if record.referer:
            domain = extract_domain(record.referer)
            summary.top_referrers[domain] = summary.top_referrers.get(domain, 0) + 1

        # Zero means "not recorded", not an instant response.
        if record.request_time_seconds > 0:
            total_response_time += record.request_time_seconds
            timed_requests += 1

        summary.total_bytes_sent += record.bytes_sent

        if earliest is None or record.timestamp < earliest:
            earliest = record.timestamp
        if latest is None or record.timestamp > latest:
            latest = record.timestamp

    if timed_requests:
        summary.average_response_time_seconds = total_response_time / timed_requests
    if earliest is not None:
        summary.time_range = {
            "start": format_timestamp(earliest),
            "end": format_timestamp(latest),
        }
    return summary


def top_items(counts: dict, limit: int = DEFAULT_TOP_N) -> list[dict]:
    """Highest counts first; ties keep first-seen key order."""
    ordered = sorted(counts.items(), key=lambda kv: kv[1], reverse=True)
    return [{"key": key, "count": count} for key, count in ordered[:limit]]


def filter_by_date_range(records: Iterable[LogRecord], start_date: str, end_date: str,
                         tz: tzinfo | str = DEFAULT_TIMEZONE) -> list[LogRecord]:
    """Records from start_date 00:00 through end_date 23:59:59.999 in *tz*.

    Dates are ISO 'YYYY-MM-DD'; malformed input raises ValueError.
    """
    zone = ZoneInfo(tz) if isinstance(tz, str) else tz
    start = datetime.combine(date.fromisoformat(start_date), time.min, tzinfo=zone)
    end = datetime.combine(date.fromisoformat(end_date), time(23, 59, 59, 999000), tzinfo=zone)
    return [r for r in records if start <= r.timestamp <= end]


def by_address(records: Iterable[LogRecord], address: str) -> list[LogRecord]:
    return [r for r in records if r.address == address]


def by_path(records: Iterable[LogRecord], path: str) -> list[LogRecord]:
    return [r for r in records if r.path == path]


def group_by_address(records: Iterable[LogRecord]) -> dict[str, list[LogRecord]]:
    """Records per address, addresses in first-seen order."""
    groups: dict[str, list[LogRecord]] = {}
    for record in records:
        groups.setdefault(record.address, []).append(record)
    return groups


def page_analytics(records: Iterable[LogRecord]) -> dict[str, int]:
    """Hit counts for actual pages only (assets, builds and APIs excluded)."""
    counts: dict[str, int] = {}
    for record in records:
        if is_actual_page(record.path):
            page = strip_query(record.path)
            counts[page] = counts.get(page, 0) + 1
    return counts
