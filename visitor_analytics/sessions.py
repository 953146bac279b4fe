"""Session reconstruction from one address's records using an inactivity gap."""

from datetime import timedelta
from typing import Iterable

from visitor_analytics.models import LogRecord, Session, format_timestamp

DEFAULT_SESSION_TIMEOUT_MINUTES = 30

SYSTEM_PATH_PREFIXES = (
    "/_next/", "/api/", "/.well-known/", "/static/", "/assets/", "/images/",
    "/fonts/", "/favicon", "/robots.txt", "/sitemap", "/manifest", "/sw.js",
)

ASSET_EXTENSIONS = (
    ".js", ".css", ".map", ".png", ".jpg", ".jpeg", ".gif", ".svg", ".ico",
    ".webp", ".woff", ".woff2", ".ttf", ".txt", ".xml", ".json",
)


def strip_query(path: str) -> str:
    return path.split("?", 1)[0].split("#", 1)[0]


def is_actual_page(path: str) -> bool:
    """True for visitor-facing pages; False for assets, builds, APIs, system files."""
    page = strip_query(path)
    if not page.startswith("/"):
        return False
    if page.startswith(SYSTEM_PATH_PREFIXES):
        return False
    last_segment = page.rsplit("/", 1)[-1].lower()
    return not last_segment.endswith(ASSET_EXTENSIONS)


def _open_session(record: LogRecord) -> Session:
    return Session(
        session_key=f"{record.address}-{format_timestamp(record.timestamp)}",
        start_time=record.timestamp,
        end_time=record.timestamp,
    )


def _add_record(session: Session, record: LogRecord) -> None:
    session.end_time = record.timestamp
    session.record_count += 1
    if is_actual_page(record.path):
        session.total_requests += 1
        page = strip_query(record.path)
        if page not in session.pages:
            session.pages.append(page)


def sessions_for(records: Iterable[LogRecord],
                 timeout_minutes: int = DEFAULT_SESSION_TIMEOUT_MINUTES) -> list[Session]:
    """Split one address's records into sessions.

    The caller pre-filters to a single address. A gap strictly greater than
    *timeout_minutes* between consecutive records starts a new session.
    System-path records keep a session alive but add no pages or requests.
    Every record lands in exactly one session.
    """
    ordered = sorted(records, key=lambda r: r.timestamp)
    if not ordered:
        return []

    timeout = timedelta(minutes=timeout_minutes)
    sessions = []
    current = _open_session(ordered[0])
    _add_record(current, ordered[0])
    previous = ordered[0]

    for record in ordered[1:]:
        if record.timestamp - previous.timestamp > timeout:
            sessions.append(current)
            current = _open_session(record)
        _add_record(current, record)
        previous = record

    sessions.append(current)
    return sessions
