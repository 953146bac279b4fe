import json
import os
from datetime import datetime
from zoneinfo import ZoneInfo

import pytest

from visitor_analytics.config import Config
from visitor_analytics.models import LogRecord

NEW_YORK = ZoneInfo("America/New_York")

CHROME_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/126.0.0.0 Safari/537.36"
)
FIREFOX_UA = "Mozilla/5.0 (X11; Linux x86_64; rv:128.0) Gecko/20100101 Firefox/128.0"
IPHONE_UA = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_5 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.5 Mobile/15E148 Safari/604.1"
)

COMBINED_LINE = (
    '203.0.113.5 - - [25/Jul/2025:15:10:42 +0000] "GET /services HTTP/1.1" 200 5120 '
    '"https://www.google.com/search?q=web+design" "' + CHROME_UA + '"'
)

EXTENDED_LINE = (
    '10.0.0.2 - - [25/Jul/2025:15:11:00 +0000] "GET /projects?ref=nav HTTP/2.0" 200 2048 '
    '"-" "' + FIREFOX_UA + '" "198.51.100.7, 10.0.0.1" "-" rt=0.123 uct="0.001" '
    'uht="0.050" urt="0.050, 0.010" ua="-" us="abc123"'
)

TRACKING_LINE = (
    '10.0.0.2 - - [25/Jul/2025:15:12:00 +0000] "GET /contact HTTP/1.1" 200 - '
    '"https://example.com/services" "' + IPHONE_UA + '" "192.0.2.44" 0.045 - '
    'en-US gzip keep-alive - document navigate same-origin ?1'
)

MALFORMED_LINE = '203.0.113.5 - - [25/Jul/2025:15:10:42 +0000] "GET /truncated'


@pytest.fixture
def record_factory():
    """Build LogRecords with sensible defaults; timestamps are New York wall time."""

    def make(address="203.0.113.5", when=(2025, 7, 25, 10, 0, 0), path="/",
             user_agent=CHROME_UA, status_code=200, request_time=0.0, **kwargs):
        return LogRecord(
            timestamp=datetime(*when, tzinfo=NEW_YORK),
            address=address,
            method="GET",
            path=path,
            status_code=status_code,
            user_agent=user_agent,
            request_time_seconds=request_time,
            **kwargs,
        )

    return make


@pytest.fixture
def config(tmp_path):
    return Config(logs_base_dir=str(tmp_path), timezone="America/New_York")


@pytest.fixture
def sample_event():
    return {
        "timestamp": "2025-07-25T14:00:00.000Z",
        "sessionId": "sess-aaaa-1111",
        "eventType": "pageview",
        "pageUrl": "/services?utm_source=newsletter",
        "referrer": "https://www.google.com/",
        "userAgent": CHROME_UA,
        "deviceInfo": {
            "browser": "Chrome",
            "deviceType": "desktop",
            "screenWidth": 1920,
            "screenHeight": 1080,
            "language": "en-US",
        },
        "timeOnPage": 45000,
        "scrollDepth": 60,
        "engagement": {"mouseMovements": 40, "clicks": 3, "scrollEvents": 12},
    }


@pytest.fixture
def write_access_log(config):
    """Write lines to the configured access log and return its path."""

    def write(lines, name=None):
        path = os.path.join(config.nginx_log_dir, name or config.access_log_name)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "w") as f:
            f.write("\n".join(lines) + "\n")
        return path

    return write


@pytest.fixture
def write_event_file(config):
    """Write one event JSON file into the configured daily bucket."""

    def write(event, name, day=(2025, 7, 25), raw=None):
        day_dir = os.path.join(config.events_path, f"{day[0]:04d}", f"{day[1]:02d}", f"{day[2]:02d}")
        os.makedirs(day_dir, exist_ok=True)
        path = os.path.join(day_dir, name)
        with open(path, "w") as f:
            f.write(raw if raw is not None else json.dumps(event))
        return path

    return write
