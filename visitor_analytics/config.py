"""Configuration: frozen dataclass loaded from env vars over an optional YAML file."""

import logging
import os
from dataclasses import dataclass, fields
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

logger = logging.getLogger(__name__)

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# YAML key / env var per field. Env wins over YAML, YAML over defaults.
_ENV_VARS = {
    "timezone": "ANALYTICS_TIMEZONE",
    "session_timeout_minutes": "SESSION_TIMEOUT",
    "logs_base_dir": "LOGS_BASE_DIR",
    "nginx_logs_dir": "NGINX_LOGS_DIR",
    "access_log_name": "ACCESS_LOG_NAME",
    "tracking_log_name": "TRACKING_LOG_NAME",
    "ip_tracking_log_name": "IP_TRACKING_LOG_NAME",
    "fingerprint_log_name": "FINGERPRINT_LOG_NAME",
    "events_dir": "EVENTS_DIR",
    "min_bot_indicators": "MIN_BOT_INDICATORS",
    "max_human_requests": "MAX_HUMAN_REQUESTS",
    "rate_limit_per_minute": "RATE_LIMIT_PER_MINUTE",
    "rate_limit_per_hour": "RATE_LIMIT_PER_HOUR",
    "rate_limit_cleanup_seconds": "RATE_LIMIT_CLEANUP_SECONDS",
    "read_timeout_seconds": "READ_TIMEOUT_SECONDS",
    "top_n": "TOP_N",
    "log_level": "LOG_LEVEL",
    "host": "SERVER_HOST",
    "port": "SERVER_PORT",
}


def _default_base_dir() -> str:
    return os.environ.get("HOME") or os.environ.get("USERPROFILE") or "."


@dataclass(frozen=True)
class Config:
    timezone: str = "America/New_York"
    session_timeout_minutes: int = 30
    logs_base_dir: str = "."
    nginx_logs_dir: str = "nginx/logs"
    access_log_name: str = "access.log"
    tracking_log_name: str = "tracking.log"
    ip_tracking_log_name: str = "ip_tracking.log"
    fingerprint_log_name: str = "fingerprint_tracking.log"
    events_dir: str = "events"
    min_bot_indicators: int = 3
    max_human_requests: int = 100
    rate_limit_per_minute: int = 60
    rate_limit_per_hour: int = 1000
    rate_limit_cleanup_seconds: int = 3600
    read_timeout_seconds: float = 10.0
    top_n: int = 10
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 5000

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    @property
    def nginx_log_dir(self) -> str:
        return os.path.join(self.logs_base_dir, self.nginx_logs_dir)

    @property
    def events_path(self) -> str:
        return os.path.join(self.logs_base_dir, self.events_dir)

    @property
    def fingerprint_log_path(self) -> str:
        return os.path.join(self.nginx_log_dir, self.fingerprint_log_name)

    def log_files(self) -> dict[str, str]:
        """Access-log paths keyed by log type."""
        log_dir = self.nginx_log_dir
        return {
            "access": os.path.join(log_dir, self.access_log_name),
            "tracking": os.path.join(log_dir, self.tracking_log_name),
            "ip_tracking": os.path.join(log_dir, self.ip_tracking_log_name),
        }


def load_yaml_config(path: str | None) -> dict:
    """Load a YAML mapping of Config fields. Returns empty dict if no path."""
    if not path:
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.warning("Config file %s not found, using defaults", path)
        return {}
    except yaml.YAMLError as e:
        logger.warning("Invalid YAML in %s (%s), using defaults", path, e)
        return {}
    if not isinstance(data, dict):
        logger.warning("Config file %s is not a mapping, using defaults", path)
        return {}
    logger.info("Loaded YAML config from %s", path)
    return data


def _coerce(value, default):
    if isinstance(default, int):
        return int(value)
    if isinstance(default, float):
        return float(value)
    return str(value)


def load_config(yaml_path: str | None = None) -> Config:
    """Build Config from env vars, an optional YAML file and the defaults.

    The YAML path defaults to the ``CONFIG_PATH`` environment variable.
    Raises ValueError for an unknown timezone or non-positive session timeout.
    """
    yaml_data = load_yaml_config(yaml_path or os.environ.get("CONFIG_PATH"))

    values = {}
    for f in fields(Config):
        default = f.default
        if f.name == "logs_base_dir":
            default = _default_base_dir()
        raw = os.environ.get(_ENV_VARS[f.name], yaml_data.get(f.name, default))
        values[f.name] = _coerce(raw, f.default)

    values["log_level"] = values["log_level"].upper()
    cfg = Config(**values)

    try:
        cfg.tzinfo
    except (ZoneInfoNotFoundError, ValueError):
        raise ValueError(f"Unknown timezone: {cfg.timezone}")
    if cfg.session_timeout_minutes <= 0:
        raise ValueError("SESSION_TIMEOUT must be a positive number of minutes")
    if cfg.log_level not in LOG_LEVELS:
        raise ValueError(f"LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}")
    return cfg
