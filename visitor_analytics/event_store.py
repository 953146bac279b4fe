"""Event persistence: one JSON file per event, NDJSON for fingerprints.

Event files land in daily buckets (``<base>/YYYY/MM/DD/HH-MM-SS-<sid8>.json``)
and are written atomically (tmp + os.replace) so a concurrent loader never
sees a half-written file.
"""

import json
import logging
import math
import os
import tempfile
import threading
from datetime import datetime, timezone, tzinfo

from visitor_analytics.models import format_timestamp, parse_iso_timestamp

logger = logging.getLogger(__name__)

_EVENT_FIELDS = (
    "timestamp", "sessionId", "eventType", "pageUrl", "referrer", "ipAddress",
    "userAgent", "deviceInfo", "eventData", "timeOnPage", "timeOnPageSeconds",
    "scrollDepth", "performance", "engagement",
)


def _event_entry(event: dict) -> dict:
    entry = dict(event)
    if entry.get("timeOnPage") is not None:
        entry["timeOnPageSeconds"] = round(entry["timeOnPage"] / 1000)
    return {k: entry[k] for k in _EVENT_FIELDS if entry.get(k) is not None}


def _joined(value) -> str:
    if isinstance(value, (list, tuple)):
        return ",".join(str(v) for v in value)
    return str(value or "")


def _number(value):
    """Finite positive JSON numbers pass through; anything else is 0."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    try:
        finite = math.isfinite(value)
    except OverflowError:
        return 0
    return value if finite and value > 0 else 0


def fingerprint_entry(data: dict, address: str, now: datetime | None = None) -> dict:
    """Normalize a fingerprint beacon into one log line's fields."""
    try:
        ts = parse_iso_timestamp(str(data["timestamp"]))
    except (KeyError, ValueError):
        ts = now or datetime.now(timezone.utc)
    interactions = data.get("interactions")
    if not isinstance(interactions, dict):
        interactions = {}
    return {
        "timestamp": format_timestamp(ts.astimezone(timezone.utc)),
        "visitorId": data.get("visitorId") or "unknown",
        "ipAddress": address or "unknown",
        "userAgent": data.get("userAgent") or "unknown",
        "browser": data.get("browser") or "unknown",
        "deviceType": data.get("deviceType") or "unknown",
        "screenResolution": data.get("screenResolution") or "unknown",
        "timezone": data.get("timezone") or "unknown",
        "language": data.get("language") or "unknown",
        "platform": data.get("platform") or "unknown",
        "cpuCores": _number(data.get("cpuCores")),
        "memorySize": _number(data.get("memorySize")),
        "canvas": data.get("canvas") or "",
        "webgl": data.get("webgl") or "",
        "audio": data.get("audio") or "",
        "fonts": _joined(data.get("fonts")),
        "plugins": _joined(data.get("plugins")),
        "sessionId": data.get("sessionId") or "unknown",
        "pageUrl": data.get("pageUrl") or "unknown",
        "referrer": data.get("referrer") or "unknown",
        "timeOnPage": _number(data.get("timeOnPage")),
        "scrollDepth": _number(data.get("scrollDepth")),
        "clicks": _number(interactions.get("clicks")),
        "scrolls": _number(interactions.get("scrolls")),
        "formInteractions": _number(interactions.get("formInteractions")),
    }


class EventStore:
    def __init__(self, events_dir: str, fingerprint_path: str, tz: tzinfo = timezone.utc):
        self._events_dir = events_dir
        self._fingerprint_path = fingerprint_path
        self._tz = tz
        self._write_lock = threading.Lock()
        self._fingerprint_lock = threading.Lock()
        self.events_written = 0
        self.fingerprints_written = 0

    def write_event(self, event: dict, now: datetime | None = None) -> str:
        """Persist one validated event into the bucket for *now*; returns the path."""
        now = (now or datetime.now(self._tz)).astimezone(self._tz)
        day_dir = os.path.join(self._events_dir, now.strftime("%Y"), now.strftime("%m"), now.strftime("%d"))
        os.makedirs(day_dir, exist_ok=True)
        stem = f"{now.strftime('%H-%M-%S')}-{str(event['sessionId'])[:8]}"
        payload = json.dumps(_event_entry(event), indent=2)

        with self._write_lock:
            dest = os.path.join(day_dir, f"{stem}.json")
            n = 1
            while os.path.exists(dest):
                n += 1
                dest = os.path.join(day_dir, f"{stem}-{n}.json")

            fd, tmp = tempfile.mkstemp(dir=day_dir, suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(payload)
                os.replace(tmp, dest)
            except Exception:
                os.unlink(tmp)
                raise
            self.events_written += 1

        logger.debug("Stored event %s", dest)
        return dest

    def append_fingerprint(self, data: dict, address: str, now: datetime | None = None) -> dict:
        """Append one normalized NDJSON line to the fingerprint log."""
        entry = fingerprint_entry(data, address, now)
        line = json.dumps(entry) + "\n"
        directory = os.path.dirname(self._fingerprint_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with self._fingerprint_lock:
            with open(self._fingerprint_path, "a", encoding="utf-8") as f:
                f.write(line)
            self.fingerprints_written += 1
        return entry
