"""Client-side tracking events: validation, loading and per-visitor rollups."""

import json
import logging
import math
import os
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta

import jsonschema

from visitor_analytics.marketing import SessionActivity
from visitor_analytics.models import FingerprintEntry, Session, TrackingEvent
from visitor_analytics.reader import DEFAULT_READ_TIMEOUT, read_file
from visitor_analytics.sessions import DEFAULT_SESSION_TIMEOUT_MINUTES

logger = logging.getLogger(__name__)

SCHEMA_PATH = os.path.join(os.path.dirname(__file__), "schemas", "tracking_event.json")
FINGERPRINT_SCHEMA_PATH = os.path.join(os.path.dirname(__file__), "schemas", "fingerprint.json")

RECENT_EVENTS = 100
RECENT_FINGERPRINTS = 50


def _reject_constant(name):
    raise ValueError(f"non-finite number: {name}")


def loads_finite(raw: str):
    """json.loads that refuses the Infinity/NaN literals."""
    return json.loads(raw, parse_constant=_reject_constant)


def _non_finite_paths(value, path="$"):
    if isinstance(value, float) and not math.isfinite(value):
        yield path
    elif isinstance(value, dict):
        for key, item in value.items():
            yield from _non_finite_paths(item, f"{path}.{key}")
    elif isinstance(value, list):
        for i, item in enumerate(value):
            yield from _non_finite_paths(item, f"{path}[{i}]")


class EventValidator:
    """Validates tracker payloads against a JSON schema.

    Numbers must also be finite. ``1e400`` decodes to ``inf``, which the
    schema's ``number`` type accepts, so those are reported as ``finite``
    errors. Stats are shared by request threads and guarded by a lock.
    """

    def __init__(self, schema_path=SCHEMA_PATH):
        with open(schema_path, "r", encoding="utf-8") as f:
            schema = json.load(f)

        self._validator = jsonschema.Draft202012Validator(schema)
        self._lock = threading.Lock()
        self.reset_stats()

    def validate(self, payload):
        """Returns (is_valid, error messages)."""
        problems = [(error.validator, error.message) for error in self._validator.iter_errors(payload)]
        problems.extend(("finite", f"{path} is not a finite number")
                        for path in _non_finite_paths(payload))

        with self._lock:
            self._stats["total"] += 1
            if not problems:
                self._stats["valid"] += 1
            else:
                self._stats["invalid"] += 1
                for kind, _ in problems:
                    self._stats["error_types"][kind] += 1
        return not problems, [message for _, message in problems]

    def get_stats(self):
        with self._lock:
            stats = dict(self._stats)
            stats["error_types"] = dict(stats["error_types"])
        return stats

    def reset_stats(self):
        with self._lock:
            self._stats = {
                "total": 0,
                "valid": 0,
                "invalid": 0,
                "error_types": defaultdict(int),
            }


@dataclass
class EventLoadStats:
    files_seen: int = 0
    loaded: int = 0
    skipped: int = 0
    source_found: bool = False


def daily_events_dir(events_dir: str, day: date) -> str:
    return os.path.join(events_dir, f"{day.year:04d}", f"{day.month:02d}", f"{day.day:02d}")


def _decode_event(raw: str, validator: EventValidator | None) -> TrackingEvent | None:
    try:
        data = loads_finite(raw)
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None
    if validator is not None:
        is_valid, errors = validator.validate(data)
        if not is_valid:
            logger.debug("Schema-invalid event: %s", "; ".join(errors))
            return None
    try:
        return TrackingEvent.from_dict(data)
    except (KeyError, TypeError, ValueError, OverflowError):
        return None


def load_daily_events(events_dir: str, day: date,
                      validator: EventValidator | None = None,
                      timeout: float = DEFAULT_READ_TIMEOUT) -> tuple[list[TrackingEvent], EventLoadStats]:
    """Load one day's event files, oldest first.

    Files whose name contains ``summary`` are rollups, not events, and are
    ignored. Malformed or schema-invalid files are counted and skipped.
    """
    stats = EventLoadStats()
    day_dir = daily_events_dir(events_dir, day)
    if not os.path.isdir(day_dir):
        logger.info("No event directory %s", day_dir)
        return [], stats
    stats.source_found = True

    events = []
    for name in sorted(os.listdir(day_dir)):
        if not name.endswith(".json") or "summary" in name:
            continue
        stats.files_seen += 1
        lines = read_file(os.path.join(day_dir, name), timeout)
        event = _decode_event("".join(lines), validator) if lines is not None else None
        if event is None:
            stats.skipped += 1
            logger.debug("Skipping event file %s", name)
            continue
        events.append(event)
        stats.loaded += 1

    events.sort(key=lambda e: e.timestamp)
    logger.info("%s: %d events loaded, %d skipped", day_dir, stats.loaded, stats.skipped)
    return events, stats


def load_fingerprint_log(path: str,
                         timeout: float = DEFAULT_READ_TIMEOUT) -> tuple[list[FingerprintEntry], EventLoadStats]:
    """Parse the NDJSON fingerprint log, skipping malformed lines."""
    stats = EventLoadStats()
    lines = read_file(path, timeout)
    if lines is None:
        return [], stats
    stats.source_found = True

    entries = []
    for line in lines:
        line = line.strip()
        if not line:
            continue
        try:
            data = loads_finite(line)
            if not isinstance(data, dict):
                raise ValueError("not an object")
            entries.append(FingerprintEntry.from_dict(data))
            stats.loaded += 1
        except (KeyError, TypeError, ValueError, OverflowError):
            stats.skipped += 1
            logger.debug("Skipping fingerprint line: %.80s", line)
    return entries, stats


def filter_fingerprints(entries: list[FingerprintEntry], visitor_id: str | None = None,
                        address: str | None = None) -> list[FingerprintEntry]:
    return [
        e for e in entries
        if (visitor_id is None or e.visitor_id == visitor_id)
        and (address is None or e.address == address)
    ]


# ---------------------------------------------------------------------------
# Rollups
# ---------------------------------------------------------------------------


@dataclass
class EventVisitorSummary:
    address: str
    event_count: int = 0
    unique_sessions: int = 0
    pages: dict[str, int] = field(default_factory=dict)
    devices: dict[str, int] = field(default_factory=dict)
    browsers: dict[str, int] = field(default_factory=dict)
    average_time_on_page_ms: float = 0.0
    first_visit: datetime | None = None
    last_visit: datetime | None = None


def summarize_event_visitors(events: list[TrackingEvent]) -> list[EventVisitorSummary]:
    """One summary per address, most events first."""
    summaries: dict[str, EventVisitorSummary] = {}
    sessions: dict[str, set[str]] = defaultdict(set)
    dwell: dict[str, list[float]] = defaultdict(list)

    for event in events:
        summary = summaries.get(event.address)
        if summary is None:
            summary = EventVisitorSummary(
                address=event.address,
                first_visit=event.timestamp,
                last_visit=event.timestamp,
            )
            summaries[event.address] = summary
        summary.event_count += 1
        summary.first_visit = min(summary.first_visit, event.timestamp)
        summary.last_visit = max(summary.last_visit, event.timestamp)

        page = event.page_path
        summary.pages[page] = summary.pages.get(page, 0) + 1
        device = event.device_info.device_type
        summary.devices[device] = summary.devices.get(device, 0) + 1
        browser = event.device_info.browser
        summary.browsers[browser] = summary.browsers.get(browser, 0) + 1

        sessions[event.address].add(event.session_id)
        if event.time_on_page_ms:
            dwell[event.address].append(event.time_on_page_ms)

    for address, summary in summaries.items():
        summary.unique_sessions = len(sessions[address])
        times = dwell[address]
        summary.average_time_on_page_ms = sum(times) / len(times) if times else 0.0

    return sorted(summaries.values(), key=lambda s: s.event_count, reverse=True)


def _event_segments(events: list[TrackingEvent],
                    timeout_minutes: int) -> list[tuple[str, list[TrackingEvent]]]:
    """Group by session id, splitting a session id wherever the gap exceeds the timeout."""
    timeout = timedelta(minutes=timeout_minutes)
    by_session: dict[str, list[TrackingEvent]] = {}
    for event in sorted(events, key=lambda e: e.timestamp):
        by_session.setdefault(event.session_id, []).append(event)

    segments = []
    for session_id, session_events in by_session.items():
        part = 1
        current = [session_events[0]]
        for event in session_events[1:]:
            if event.timestamp - current[-1].timestamp > timeout:
                segments.append((_segment_key(session_id, part), current))
                part += 1
                current = []
            current.append(event)
        segments.append((_segment_key(session_id, part), current))

    segments.sort(key=lambda seg: seg[1][0].timestamp)
    return segments


def _segment_key(session_id: str, part: int) -> str:
    return session_id if part == 1 else f"{session_id}-{part}"


def sessions_from_events(events: list[TrackingEvent],
                         timeout_minutes: int = DEFAULT_SESSION_TIMEOUT_MINUTES) -> list[Session]:
    """Sessions keyed by session id; an id idle longer than the timeout starts a new session."""
    sessions = []
    for key, segment in _event_segments(events, timeout_minutes):
        pageviews = [e for e in segment if e.event_type == "pageview"]
        pages = []
        for event in pageviews:
            page = event.page_path
            if page not in pages:
                pages.append(page)
        sessions.append(Session(
            session_key=key,
            start_time=segment[0].timestamp,
            end_time=segment[-1].timestamp,
            pages=pages,
            total_requests=len(pageviews),
            record_count=len(segment),
        ))
    return sessions


def session_activities(events: list[TrackingEvent],
                       timeout_minutes: int = DEFAULT_SESSION_TIMEOUT_MINUTES) -> list[SessionActivity]:
    """Per-session activity totals, ready to fold into marketing profiles."""
    activities = []
    for key, segment in _event_segments(events, timeout_minutes):
        activity = SessionActivity.start(segment[0], key)
        for event in segment:
            activity.add_event(event)
        activities.append(activity)
    return activities


@dataclass
class FingerprintAnalytics:
    total_entries: int = 0
    unique_visitors: int = 0
    total_sessions: int = 0
    average_time_on_site_ms: float = 0.0
    average_scroll_depth: float = 0.0
    browsers: dict[str, int] = field(default_factory=dict)
    devices: dict[str, int] = field(default_factory=dict)
    timezones: dict[str, int] = field(default_factory=dict)
    languages: dict[str, int] = field(default_factory=dict)
    platforms: dict[str, int] = field(default_factory=dict)
    screen_resolutions: dict[str, int] = field(default_factory=dict)
    top_pages: dict[str, int] = field(default_factory=dict)
    top_referrers: dict[str, int] = field(default_factory=dict)
    average_clicks: float = 0.0
    average_scrolls: float = 0.0
    average_form_interactions: float = 0.0
    recent_visitors: list[FingerprintEntry] = field(default_factory=list)


def _bump(counts: dict[str, int], key: str) -> None:
    counts[key] = counts.get(key, 0) + 1


def fingerprint_analytics(entries: list[FingerprintEntry]) -> FingerprintAnalytics:
    result = FingerprintAnalytics(total_entries=len(entries))
    if not entries:
        return result

    totals = defaultdict(float)
    for entry in entries:
        _bump(result.browsers, entry.browser)
        _bump(result.devices, entry.device_type)
        _bump(result.timezones, entry.timezone)
        _bump(result.languages, entry.language)
        _bump(result.platforms, entry.platform)
        _bump(result.screen_resolutions, entry.screen_resolution)
        _bump(result.top_pages, entry.page_url)
        if entry.referrer and entry.referrer != "unknown":
            _bump(result.top_referrers, entry.referrer)
        totals["time"] += entry.time_on_page_ms
        totals["scroll"] += entry.scroll_depth_percent
        totals["clicks"] += entry.clicks
        totals["scrolls"] += entry.scrolls
        totals["forms"] += entry.form_interactions

    n = len(entries)
    result.unique_visitors = len({e.visitor_id for e in entries})
    result.total_sessions = len({e.session_id for e in entries})
    result.average_time_on_site_ms = totals["time"] / n
    result.average_scroll_depth = totals["scroll"] / n
    result.average_clicks = totals["clicks"] / n
    result.average_scrolls = totals["scrolls"] / n
    result.average_form_interactions = totals["forms"] / n
    result.recent_visitors = sorted(entries, key=lambda e: e.timestamp, reverse=True)[:RECENT_FINGERPRINTS]
    return result
