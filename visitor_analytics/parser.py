"""Access-log line grammars and the parser that tries them in order.

Grammar order (most specific first, tried per line since rotated files can
mix formats):
  1. extended: combined + forwarded-for, real-ip, request/upstream timings,
               user-agent and session echoes (rt=, uct=, uht=, urt=, ua=, us=)
  2. tracking: combined + forwarded-for, request time and unquoted header
               echoes (accept-language, accept-encoding, connection, upgrade,
               sec-fetch-dest/mode/site/user)
  3. combined: address, time, request, status, bytes, referer, agent
"""

import logging
import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Callable, Iterable
from zoneinfo import ZoneInfo

from visitor_analytics.models import LogRecord

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "America/New_York"

# ---------------------------------------------------------------------------
# Compiled regex patterns
# ---------------------------------------------------------------------------

_PREFIX = (
    r'^(?P<host>\S+) - \S+ '
    r'\[(?P<time>[^\]]+)\] '
    r'"(?P<request>[^"]*)" '
    r'(?P<status>\d{3}) '
    r'(?P<size>\d+|-) '
    r'"(?P<referer>[^"]*)" '
    r'"(?P<user_agent>[^"]*)"'
)

_EXTENDED_RE = re.compile(
    _PREFIX
    + r' "(?P<forwarded_for>[^"]*)"'
    r' "(?P<real_ip>[^"]*)"'
    r' rt=(?P<request_time>\S+)'
    r' uct="(?P<upstream_connect>[^"]*)"'
    r' uht="(?P<upstream_header>[^"]*)"'
    r' urt="(?P<upstream_response>[^"]*)"'
    r' ua="(?P<ua_echo>[^"]*)"'
    r' us="(?P<user_session>[^"]*)"$'
)

_TRACKING_RE = re.compile(
    _PREFIX
    + r' "(?P<forwarded_for>[^"]*)"'
    r' (?P<request_time>\S+) -'
    r' (?P<accept_language>\S+)'
    r' (?P<accept_encoding>\S+)'
    r' (?P<connection>\S+)'
    r' (?P<upgrade>\S+)'
    r' (?P<sec_fetch_dest>\S+)'
    r' (?P<sec_fetch_mode>\S+)'
    r' (?P<sec_fetch_site>\S+)'
    r' (?P<sec_fetch_user>\S+)$'
)

_COMBINED_RE = re.compile(_PREFIX + r'$')

_REQUEST_RE = re.compile(r'^(?P<method>\S+) (?P<path>\S+) (?P<protocol>HTTP/\S+)$')

_TIMESTAMP_RE = re.compile(
    r'^(?P<day>\d{1,2})/(?P<month>[A-Za-z]{3})/(?P<year>\d{4}):'
    r'(?P<hour>\d{2}):(?P<minute>\d{2}):(?P<second>\d{2}) '
    r'(?P<offset>[+-]\d{4})$'
)

_MONTHS = {
    "Jan": 1, "Feb": 2, "Mar": 3, "Apr": 4, "May": 5, "Jun": 6,
    "Jul": 7, "Aug": 8, "Sep": 9, "Oct": 10, "Nov": 11, "Dec": 12,
}

_PLACEHOLDERS = ("", "-", "unknown")

_IPV6_MAPPED_PREFIX = "::ffff:"

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def parse_request(request_str: str) -> tuple[str, str, str] | None:
    """Split 'GET /path HTTP/1.1' → (method, path, protocol)."""
    m = _REQUEST_RE.match(request_str)
    if not m:
        return None
    return m.group("method"), m.group("path"), m.group("protocol")


def parse_timestamp(time_str: str, tz: tzinfo) -> datetime | None:
    """Convert '25/Jul/2025:15:10:42 +0000' to an aware datetime in *tz*.

    The numeric offset in the input is honoured, so the instant is preserved
    and only the rendered offset changes.
    """
    m = _TIMESTAMP_RE.match(time_str)
    if not m:
        return None
    month = _MONTHS.get(m.group("month").capitalize())
    if month is None:
        return None

    offset = m.group("offset")
    sign = -1 if offset[0] == "-" else 1
    delta = timedelta(hours=int(offset[1:3]), minutes=int(offset[3:5]))
    try:
        dt = datetime(
            int(m.group("year")), month, int(m.group("day")),
            int(m.group("hour")), int(m.group("minute")), int(m.group("second")),
            tzinfo=timezone(sign * delta),
        )
    except ValueError:
        return None
    return dt.astimezone(tz)


def resolve_address(source: str, forwarded_for: str = "") -> str:
    """Real client address: first forwarded-for entry, else the source field."""
    address = source
    if forwarded_for and forwarded_for.strip().lower() not in _PLACEHOLDERS:
        first = forwarded_for.split(",")[0].strip()
        if first:
            address = first
    if address.lower().startswith(_IPV6_MAPPED_PREFIX):
        address = address[len(_IPV6_MAPPED_PREFIX):]
    return address or "unknown"


def _clean(value: str | None) -> str:
    """Map nginx '-' placeholders to empty strings."""
    if value is None or value == "-":
        return ""
    return value


def _safe_int(value: str | None) -> int:
    if value is None or value == "-":
        return 0
    try:
        return int(value)
    except ValueError:
        return 0


def _safe_float(value: str | None) -> float:
    """Parse a timing field; '-', garbage or inf is 0, 'a, b' uses the first value."""
    if not value:
        return 0.0
    first = value.split(",")[0].strip()
    try:
        result = float(first)
    except ValueError:
        return 0.0
    return result if math.isfinite(result) and result > 0 else 0.0


# ---------------------------------------------------------------------------
# Grammar-specific field extraction
# ---------------------------------------------------------------------------


def _common_fields(m: re.Match) -> dict:
    return {
        "status_code": int(m.group("status")),
        "bytes_sent": _safe_int(m.group("size")),
        "referer": _clean(m.group("referer")),
        "user_agent": _clean(m.group("user_agent")),
    }


def _extract_extended(m: re.Match) -> dict:
    forwarded_for = _clean(m.group("forwarded_for"))
    fields = _common_fields(m)
    fields.update(
        address=resolve_address(m.group("host"), forwarded_for),
        forwarded_for=forwarded_for,
        request_time_seconds=_safe_float(m.group("request_time")),
        upstream_response_time_seconds=_safe_float(m.group("upstream_response")),
        user_session=_clean(m.group("user_session")),
    )
    return fields


def _extract_tracking(m: re.Match) -> dict:
    forwarded_for = _clean(m.group("forwarded_for"))
    fields = _common_fields(m)
    fields.update(
        address=resolve_address(m.group("host"), forwarded_for),
        forwarded_for=forwarded_for,
        request_time_seconds=_safe_float(m.group("request_time")),
        accept_language=_clean(m.group("accept_language")),
        accept_encoding=_clean(m.group("accept_encoding")),
        connection=_clean(m.group("connection")),
        upgrade=_clean(m.group("upgrade")),
        sec_fetch_dest=_clean(m.group("sec_fetch_dest")),
        sec_fetch_mode=_clean(m.group("sec_fetch_mode")),
        sec_fetch_site=_clean(m.group("sec_fetch_site")),
        sec_fetch_user=_clean(m.group("sec_fetch_user")),
    )
    return fields


def _extract_combined(m: re.Match) -> dict:
    fields = _common_fields(m)
    fields["address"] = resolve_address(m.group("host"))
    return fields


@dataclass(frozen=True)
class Grammar:
    """A named line format: regex plus its isolated field extraction."""

    name: str
    pattern: re.Pattern
    extract: Callable[[re.Match], dict]

    def match(self, line: str) -> re.Match | None:
        return self.pattern.match(line)


GRAMMARS: tuple[Grammar, ...] = (
    Grammar("extended", _EXTENDED_RE, _extract_extended),
    Grammar("tracking", _TRACKING_RE, _extract_tracking),
    Grammar("combined", _COMBINED_RE, _extract_combined),
)


@dataclass
class ParseStats:
    total_lines: int = 0
    parsed: int = 0
    skipped: int = 0
    grammar_counts: dict[str, int] = field(default_factory=dict)

    def merge(self, other: "ParseStats") -> None:
        self.total_lines += other.total_lines
        self.parsed += other.parsed
        self.skipped += other.skipped
        for name, count in other.grammar_counts.items():
            self.grammar_counts[name] = self.grammar_counts.get(name, 0) + count


class LogParser:
    """Parses access-log lines into LogRecords in a target timezone."""

    def __init__(self, tz: tzinfo | str = DEFAULT_TIMEZONE,
                 grammars: tuple[Grammar, ...] = GRAMMARS):
        self._tz = ZoneInfo(tz) if isinstance(tz, str) else tz
        self._grammars = grammars

    @property
    def tz(self) -> tzinfo:
        return self._tz

    def parse_line(self, raw: str) -> LogRecord | None:
        """Parse one line. Returns None (never raises) when nothing matches."""
        line = raw.strip()
        if not line:
            return None

        for grammar in self._grammars:
            m = grammar.match(line)
            if m is None:
                continue
            # The first grammar to match owns the line; a bad request or
            # timestamp inside it does not fall through to looser grammars.
            request = parse_request(m.group("request"))
            if request is None:
                return None
            timestamp = parse_timestamp(m.group("time"), self._tz)
            if timestamp is None:
                return None
            method, path, protocol = request
            return LogRecord(
                timestamp=timestamp,
                method=method,
                path=path,
                protocol=protocol,
                grammar=grammar.name,
                **grammar.extract(m),
            )
        return None

    def parse_lines(self, lines: Iterable[str]) -> tuple[list[LogRecord], ParseStats]:
        """Parse a batch, skipping (and counting) unparseable lines."""
        records = []
        stats = ParseStats()
        for line in lines:
            if not line.strip():
                continue
            stats.total_lines += 1
            record = self.parse_line(line)
            if record is None:
                stats.skipped += 1
                logger.debug("Skipping unparseable line: %.120s", line.rstrip())
                continue
            stats.parsed += 1
            stats.grammar_counts[record.grammar] = stats.grammar_counts.get(record.grammar, 0) + 1
            records.append(record)
        return records, stats


def parse_line(raw: str, tz: tzinfo | str = DEFAULT_TIMEZONE) -> LogRecord | None:
    """Convenience wrapper around LogParser(tz).parse_line."""
    return LogParser(tz).parse_line(raw)
