"""Per-address rollups built from sessions."""

from typing import Iterable

from visitor_analytics.aggregation import extract_browser, group_by_address, infer_device_type
from visitor_analytics.bot_detection import is_internal_address
from visitor_analytics.models import AddressSummary, LogRecord
from visitor_analytics.scoring import DEFAULT_ENGAGEMENT_POLICY, EngagementPolicy, engagement_score
from visitor_analytics.sessions import DEFAULT_SESSION_TIMEOUT_MINUTES, is_actual_page, sessions_for, strip_query

LEAD_MIN_ENGAGEMENT = 70
LEAD_MIN_SESSIONS = 2
LEAD_MIN_VISITS = 5


def is_potential_lead(summary: AddressSummary) -> bool:
    return (
        summary.engagement_score >= LEAD_MIN_ENGAGEMENT
        and summary.session_count >= LEAD_MIN_SESSIONS
        and summary.total_visits >= LEAD_MIN_VISITS
    )


def summarize_address(address: str, records: list[LogRecord],
                      timeout_minutes: int = DEFAULT_SESSION_TIMEOUT_MINUTES,
                      policy: EngagementPolicy = DEFAULT_ENGAGEMENT_POLICY) -> AddressSummary:
    """Roll up one address. total_visits is the session count, not raw hits."""
    sessions = sessions_for(records, timeout_minutes)
    summary = AddressSummary(address=address, session_details=sessions)
    if not sessions:
        return summary

    for record in records:
        if not is_actual_page(record.path):
            continue
        page = strip_query(record.path)
        summary.pages[page] = summary.pages.get(page, 0) + 1
        if record.user_agent:
            browser = extract_browser(record.user_agent)
            device = infer_device_type(record.user_agent)
            summary.browsers[browser] = summary.browsers.get(browser, 0) + 1
            summary.devices[device] = summary.devices.get(device, 0) + 1

    summary.session_count = len(sessions)
    summary.total_visits = len(sessions)
    summary.request_count = sum(s.total_requests for s in sessions)
    summary.first_visit = sessions[0].start_time
    summary.last_visit = sessions[-1].end_time
    summary.engagement_score = engagement_score(
        summary.request_count, len(summary.pages), sessions, policy
    )
    summary.is_potential_lead = is_potential_lead(summary)
    return summary


def summarize_addresses(records: Iterable[LogRecord],
                        timeout_minutes: int = DEFAULT_SESSION_TIMEOUT_MINUTES,
                        policy: EngagementPolicy = DEFAULT_ENGAGEMENT_POLICY,
                        exclude_internal: bool = True) -> list[AddressSummary]:
    """One summary per visitor address, most visits first.

    Internal addresses (private ranges, loopback, localhost) are dropped
    before anything else when *exclude_internal* is set.
    """
    summaries = []
    for address, address_records in group_by_address(records).items():
        if exclude_internal and is_internal_address(address):
            continue
        summaries.append(summarize_address(address, address_records, timeout_minutes, policy))
    summaries.sort(key=lambda s: s.total_visits, reverse=True)
    return summaries
