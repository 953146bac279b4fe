"""Records and derived analytics structures.

Input records (LogRecord, TrackingEvent, FingerprintEntry) are created by the
parsers and never mutated afterwards. Derived structures (Session,
AddressSummary, LogSummary, VisitorProfile) are built by the analytics
functions and serialized with ``to_dict`` for the presentation layer.
"""

import math
from dataclasses import dataclass, field, fields, is_dataclass
from datetime import datetime, timezone
from typing import Any

EVENT_TYPES = (
    "pageview", "click", "scroll", "form_submit", "session_start",
    "session_end", "error", "performance", "engagement",
)

DEVICE_TYPES = ("desktop", "mobile", "tablet")


def format_timestamp(ts: datetime) -> str:
    """ISO 8601 with milliseconds and an explicit numeric offset."""
    return ts.isoformat(timespec="milliseconds")


def parse_iso_timestamp(value: str) -> datetime:
    """Parse an ISO 8601 string; a trailing 'Z' or missing offset means UTC."""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _finite(value, cast=float):
    """Coerce a JSON number; missing is 0, infinite or NaN raises ValueError."""
    try:
        number = float(value or 0)
    except OverflowError:
        raise ValueError(f"number out of range: {value!r}") from None
    if not math.isfinite(number):
        raise ValueError(f"non-finite number: {value!r}")
    return cast(number)


@dataclass(frozen=True)
class LogRecord:
    timestamp: datetime
    address: str
    method: str
    path: str
    status_code: int
    bytes_sent: int = 0
    referer: str = ""
    user_agent: str = ""
    request_time_seconds: float = 0.0
    upstream_response_time_seconds: float = 0.0
    protocol: str = ""
    forwarded_for: str = ""
    accept_language: str = ""
    accept_encoding: str = ""
    connection: str = ""
    upgrade: str = ""
    sec_fetch_dest: str = ""
    sec_fetch_mode: str = ""
    sec_fetch_site: str = ""
    sec_fetch_user: str = ""
    user_session: str = ""
    grammar: str = ""  # "extended", "tracking", "combined"


@dataclass
class Session:
    session_key: str
    start_time: datetime
    end_time: datetime
    pages: list[str] = field(default_factory=list)
    total_requests: int = 0
    record_count: int = 0

    @property
    def duration_seconds(self) -> float:
        return (self.end_time - self.start_time).total_seconds()


@dataclass
class AddressSummary:
    address: str
    total_visits: int = 0
    session_count: int = 0
    request_count: int = 0
    first_visit: datetime | None = None
    last_visit: datetime | None = None
    pages: dict[str, int] = field(default_factory=dict)
    browsers: dict[str, int] = field(default_factory=dict)
    devices: dict[str, int] = field(default_factory=dict)
    engagement_score: int = 0
    is_potential_lead: bool = False
    session_details: list[Session] = field(default_factory=list)


@dataclass
class LogSummary:
    total_requests: int = 0
    unique_addresses: set[str] = field(default_factory=set)
    status_codes: dict[int, int] = field(default_factory=dict)
    top_paths: dict[str, int] = field(default_factory=dict)
    top_user_agents: dict[str, int] = field(default_factory=dict)
    top_referrers: dict[str, int] = field(default_factory=dict)
    average_response_time_seconds: float = 0.0
    total_bytes_sent: int = 0
    time_range: dict[str, str] = field(
        default_factory=lambda: {"start": "", "end": ""}
    )


@dataclass(frozen=True)
class DeviceInfo:
    browser: str = "unknown"
    browser_version: str = ""
    os: str = ""
    os_version: str = ""
    device_type: str = "unknown"
    screen_width: int = 0
    screen_height: int = 0
    viewport_width: int = 0
    viewport_height: int = 0
    language: str = ""
    timezone: str = ""

    @classmethod
    def from_dict(cls, d: dict) -> "DeviceInfo":
        return cls(
            browser=d.get("browser") or "unknown",
            browser_version=d.get("browserVersion") or "",
            os=d.get("os") or "",
            os_version=d.get("osVersion") or "",
            device_type=d.get("deviceType") or "unknown",
            screen_width=_finite(d.get("screenWidth"), int),
            screen_height=_finite(d.get("screenHeight"), int),
            viewport_width=_finite(d.get("viewportWidth"), int),
            viewport_height=_finite(d.get("viewportHeight"), int),
            language=d.get("language") or "",
            timezone=d.get("timezone") or "",
        )


@dataclass(frozen=True)
class PerformanceMetrics:
    page_load_time: float = 0.0
    dom_content_loaded: float = 0.0
    first_contentful_paint: float = 0.0
    largest_contentful_paint: float = 0.0
    cumulative_layout_shift: float = 0.0
    first_input_delay: float = 0.0
    time_to_interactive: float = 0.0

    @classmethod
    def from_dict(cls, d: dict) -> "PerformanceMetrics":
        return cls(
            page_load_time=_finite(d.get("pageLoadTime")),
            dom_content_loaded=_finite(d.get("domContentLoaded")),
            first_contentful_paint=_finite(d.get("firstContentfulPaint")),
            largest_contentful_paint=_finite(d.get("largestContentfulPaint")),
            cumulative_layout_shift=_finite(d.get("cumulativeLayoutShift")),
            first_input_delay=_finite(d.get("firstInputDelay")),
            time_to_interactive=_finite(d.get("timeToInteractive")),
        )


@dataclass(frozen=True)
class EngagementMetrics:
    mouse_movements: int = 0
    key_strokes: int = 0
    scroll_events: int = 0
    clicks: int = 0
    form_interactions: int = 0
    time_on_page_ms: float = 0.0
    bounce: bool = True
    return_visitor: bool = False

    @classmethod
    def from_dict(cls, d: dict) -> "EngagementMetrics":
        return cls(
            mouse_movements=_finite(d.get("mouseMovements"), int),
            key_strokes=_finite(d.get("keyStrokes"), int),
            scroll_events=_finite(d.get("scrollEvents"), int),
            clicks=_finite(d.get("clicks"), int),
            form_interactions=_finite(d.get("formInteractions"), int),
            time_on_page_ms=_finite(d.get("timeOnPage")),
            bounce=bool(d.get("bounceRate", True)),
            return_visitor=bool(d.get("returnVisitor", False)),
        )


@dataclass(frozen=True)
class TrackingEvent:
    timestamp: datetime
    session_id: str
    event_type: str
    page_url: str
    address: str = "unknown"
    user_agent: str = ""
    referrer: str = ""
    device_info: DeviceInfo = field(default_factory=DeviceInfo)
    time_on_page_ms: float | None = None
    scroll_depth_percent: float | None = None
    performance: PerformanceMetrics | None = None
    engagement: EngagementMetrics | None = None
    event_data: dict[str, Any] = field(default_factory=dict)

    @property
    def page_path(self) -> str:
        """Page URL without query string or fragment."""
        return self.page_url.split("?", 1)[0].split("#", 1)[0]

    @classmethod
    def from_dict(cls, d: dict) -> "TrackingEvent":
        """Build from the camelCase JSON emitted by the browser tracker."""
        performance = d.get("performance")
        engagement = d.get("engagement")
        time_on_page = d.get("timeOnPage")
        scroll_depth = d.get("scrollDepth")
        return cls(
            timestamp=parse_iso_timestamp(d["timestamp"]),
            session_id=d["sessionId"],
            event_type=d["eventType"],
            page_url=d["pageUrl"],
            address=d.get("ipAddress") or "unknown",
            user_agent=d.get("userAgent") or "",
            referrer=d.get("referrer") or "",
            device_info=DeviceInfo.from_dict(d.get("deviceInfo") or {}),
            time_on_page_ms=_finite(time_on_page) if time_on_page is not None else None,
            scroll_depth_percent=_finite(scroll_depth) if scroll_depth is not None else None,
            performance=PerformanceMetrics.from_dict(performance) if performance else None,
            engagement=EngagementMetrics.from_dict(engagement) if engagement else None,
            event_data=d.get("eventData") or {},
        )


@dataclass(frozen=True)
class FingerprintEntry:
    timestamp: datetime
    visitor_id: str = "unknown"
    address: str = "unknown"
    user_agent: str = "unknown"
    browser: str = "unknown"
    device_type: str = "unknown"
    screen_resolution: str = "unknown"
    timezone: str = "unknown"
    language: str = "unknown"
    platform: str = "unknown"
    session_id: str = "unknown"
    page_url: str = "unknown"
    referrer: str = "unknown"
    time_on_page_ms: float = 0.0
    scroll_depth_percent: float = 0.0
    clicks: int = 0
    scrolls: int = 0
    form_interactions: int = 0

    @classmethod
    def from_dict(cls, d: dict) -> "FingerprintEntry":
        return cls(
            timestamp=parse_iso_timestamp(d["timestamp"]),
            visitor_id=d.get("visitorId") or "unknown",
            address=d.get("ipAddress") or "unknown",
            user_agent=d.get("userAgent") or "unknown",
            browser=d.get("browser") or "unknown",
            device_type=d.get("deviceType") or "unknown",
            screen_resolution=d.get("screenResolution") or "unknown",
            timezone=d.get("timezone") or "unknown",
            language=d.get("language") or "unknown",
            platform=d.get("platform") or "unknown",
            session_id=d.get("sessionId") or "unknown",
            page_url=d.get("pageUrl") or "unknown",
            referrer=d.get("referrer") or "unknown",
            time_on_page_ms=_finite(d.get("timeOnPage")),
            scroll_depth_percent=_finite(d.get("scrollDepth")),
            clicks=_finite(d.get("clicks"), int),
            scrolls=_finite(d.get("scrolls"), int),
            form_interactions=_finite(d.get("formInteractions"), int),
        )


@dataclass
class TimeBasedPatterns:
    average_session_duration_ms: float = 0.0
    preferred_visit_hours: list[int] = field(default_factory=list)
    return_visitor: bool = False


@dataclass
class VisitorProfile:
    address: str
    session_id: str
    first_visit: datetime
    last_visit: datetime
    total_visits: int = 0
    total_time_on_site_ms: float = 0.0
    pages_visited: list[str] = field(default_factory=list)
    engagement_score: float = 0.0
    lead_score: float = 0.0
    device_consistency: bool = False
    device_signatures: list[str] = field(default_factory=list)
    high_engagement_pages: list[str] = field(default_factory=list)
    conversion_events: list[str] = field(default_factory=list)
    time_based_patterns: TimeBasedPatterns = field(default_factory=TimeBasedPatterns)


@dataclass(frozen=True)
class LeadQualification:
    is_qualified: bool
    lead_score: float
    qualification_reason: str
    recommended_action: str
    urgency: str  # "low", "medium", "high"
    next_best_action: str


def to_dict(obj: Any) -> Any:
    """Recursively convert dataclasses to JSON-ready structures.

    Datetimes become ISO strings with offset, sets become sorted lists and
    Session gains its derived ``duration_seconds``.
    """
    if is_dataclass(obj) and not isinstance(obj, type):
        result = {f.name: to_dict(getattr(obj, f.name)) for f in fields(obj)}
        if isinstance(obj, Session):
            result["duration_seconds"] = obj.duration_seconds
        return result
    if isinstance(obj, datetime):
        return format_timestamp(obj)
    if isinstance(obj, (set, frozenset)):
        return sorted(to_dict(v) for v in obj)
    if isinstance(obj, dict):
        return {str(k): to_dict(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [to_dict(v) for v in obj]
    return obj
