"""Report pipelines: load sources, run the analytics, return JSON-ready dicts.

Every report carries ``status``: ``"ok"`` when at least one source was read,
``"no_data"`` when the sources are missing or unreadable. Missing data is
never raised to the caller.
"""

import logging
from datetime import date

from visitor_analytics.aggregation import (
    by_address,
    filter_by_date_range,
    group_by_address,
    page_analytics,
    summarize,
    top_items,
)
from visitor_analytics.bot_detection import BotPolicy, separate_bot_traffic
from visitor_analytics.config import Config
from visitor_analytics.events import (
    RECENT_EVENTS,
    EventValidator,
    filter_fingerprints,
    fingerprint_analytics,
    load_daily_events,
    load_fingerprint_log,
    session_activities,
    sessions_from_events,
    summarize_event_visitors,
)
from visitor_analytics.marketing import MarketingIntelligence
from visitor_analytics.models import to_dict
from visitor_analytics.parser import LogParser
from visitor_analytics.reader import LoadResult, load_access_logs
from visitor_analytics.visitors import summarize_address, summarize_addresses

logger = logging.getLogger(__name__)

STATUS_OK = "ok"
STATUS_NO_DATA = "no_data"

LOG_TYPES = ("all", "access", "tracking", "ip_tracking")


def select_log_files(config: Config, log_type: str = "all") -> list[str]:
    files = config.log_files()
    if log_type == "all":
        return list(files.values())
    if log_type not in files:
        raise ValueError(f"log_type must be one of {', '.join(LOG_TYPES)}")
    return [files[log_type]]


def bot_policy(config: Config) -> BotPolicy:
    return BotPolicy(
        max_requests=config.max_human_requests,
        min_indicators=config.min_bot_indicators,
    )


def _load(config: Config, log_type: str, date_range: tuple[str, str] | None) -> LoadResult:
    parser = LogParser(config.tzinfo)
    result = load_access_logs(select_log_files(config, log_type), parser, config.read_timeout_seconds)
    if date_range:
        start, end = date_range
        result.records = filter_by_date_range(result.records, start, end, config.tzinfo)
    return result


def _parse_stats(result: LoadResult) -> dict:
    return {
        "total_lines": result.stats.total_lines,
        "parsed": result.stats.parsed,
        "skipped": result.stats.skipped,
        "grammar_counts": dict(result.stats.grammar_counts),
    }


def access_log_report(config: Config, log_type: str = "all",
                      date_range: tuple[str, str] | None = None,
                      include_entries: bool = False) -> dict:
    """Run-wide summary, top-N lists, page analytics and bot/human split."""
    result = _load(config, log_type, date_range)
    records = result.records
    n = config.top_n

    summary = summarize(records)
    visitors = summarize_addresses(records, config.session_timeout_minutes)
    humans, bots = separate_bot_traffic(visitors, group_by_address(records), bot_policy(config))
    pages = page_analytics(records)

    report = {
        "status": STATUS_OK if result.has_data else STATUS_NO_DATA,
        "log_type": log_type,
        "files_processed": result.files_processed,
        "files_missing": result.files_missing,
        "parse_stats": _parse_stats(result),
        "summary": to_dict(summary),
        "top": {
            "paths": top_items(summary.top_paths, n),
            "user_agents": top_items(summary.top_user_agents, n),
            "referrers": top_items(summary.top_referrers, n),
            "pages": top_items(pages, n),
        },
        "filtered_pages": pages,
        "human_visitors": to_dict(humans),
        "bot_visitors": to_dict(bots),
    }
    if include_entries:
        report["entries"] = to_dict(records)
    return report


def address_report(config: Config, address: str, log_type: str = "all",
                   date_range: tuple[str, str] | None = None) -> dict:
    """Every record and the session rollup for one address."""
    result = _load(config, log_type, date_range)
    records = by_address(result.records, address)

    report = {
        "status": STATUS_OK,
        "address": address,
        "files_processed": result.files_processed,
        "parse_stats": _parse_stats(result),
        "total_entries": len(records),
        "entries": to_dict(records),
        "summary": to_dict(summarize_address(address, records, config.session_timeout_minutes)),
    }
    if not result.has_data:
        report["status"] = STATUS_NO_DATA
        report["reason"] = "No log files found"
    elif not records:
        report["status"] = STATUS_NO_DATA
        report["reason"] = "Address not found in logs"
    return report


def event_dashboard(config: Config, day: date,
                    validator: EventValidator | None = None) -> dict:
    """Per-address rollup of one day's tracking events."""
    events, stats = load_daily_events(
        config.events_path, day, validator or EventValidator(), config.read_timeout_seconds
    )
    visitors = summarize_event_visitors(events)
    sessions = sessions_from_events(events, config.session_timeout_minutes)
    return {
        "status": STATUS_OK if stats.source_found else STATUS_NO_DATA,
        "date": day.isoformat(),
        "files_seen": stats.files_seen,
        "skipped": stats.skipped,
        "total_visitors": len(visitors),
        "total_sessions": len(sessions),
        "total_events": len(events),
        "total_page_views": sum(1 for e in events if e.event_type == "pageview"),
        "visitors": to_dict(visitors),
        "sessions": to_dict(sessions),
        "recent_events": to_dict(events[-RECENT_EVENTS:]),
    }


def marketing_report(config: Config, day: date,
                     intelligence: MarketingIntelligence | None = None,
                     validator: EventValidator | None = None) -> dict:
    """Visitor profiles, lead qualification and sales intelligence for one day.

    Without an *intelligence* instance the day is folded into a fresh one, so
    running the report twice gives the same answer.
    """
    events, stats = load_daily_events(
        config.events_path, day, validator or EventValidator(), config.read_timeout_seconds
    )
    if intelligence is None:
        intelligence = MarketingIntelligence(tz=config.tzinfo)
    for activity in session_activities(events, config.session_timeout_minutes):
        intelligence.update_visitor_profile(activity)

    profiles = intelligence.get_visitor_profiles()
    return {
        "status": STATUS_OK if stats.source_found else STATUS_NO_DATA,
        "date": day.isoformat(),
        "skipped": stats.skipped,
        "visitor_profiles": to_dict(profiles),
        "qualifications": {
            p.address: to_dict(intelligence.qualify_lead(p.address)) for p in profiles
        },
        "sales_intelligence": to_dict(intelligence.generate_sales_intelligence()),
    }


def fingerprint_report(config: Config, visitor_id: str | None = None,
                       address: str | None = None) -> dict:
    entries, stats = load_fingerprint_log(config.fingerprint_log_path, config.read_timeout_seconds)
    if visitor_id is not None or address is not None:
        entries = filter_fingerprints(entries, visitor_id, address)
    return {
        "status": STATUS_OK if stats.source_found else STATUS_NO_DATA,
        "skipped": stats.skipped,
        "analytics": to_dict(fingerprint_analytics(entries)),
    }
