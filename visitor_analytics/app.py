import atexit
import logging

from apscheduler.schedulers.background import BackgroundScheduler
from flask import Flask, jsonify, request

from visitor_analytics.bot_detection import RateLimitPolicy, RequestRateTracker
from visitor_analytics.config import Config, load_config
from visitor_analytics.event_store import EventStore
from visitor_analytics.events import FINGERPRINT_SCHEMA_PATH, EventValidator
from visitor_analytics.marketing import LiveSessionTracker, MarketingIntelligence
from visitor_analytics.models import TrackingEvent, to_dict
from visitor_analytics.parser import resolve_address

logger = logging.getLogger(__name__)


def client_address(req) -> str:
    """First X-Forwarded-For entry, else the socket peer."""
    return resolve_address(req.remote_addr or "", req.headers.get("X-Forwarded-For", ""))


def create_app(config: Config | None = None, time_func=None, start_scheduler: bool = True):
    """Flask application factory for the tracking ingestion API."""
    app = Flask(__name__)

    if config is None:
        config = load_config()

    validator = EventValidator()
    fingerprint_validator = EventValidator(FINGERPRINT_SCHEMA_PATH)
    store = EventStore(config.events_path, config.fingerprint_log_path, config.tzinfo)
    rate_tracker = RequestRateTracker(
        RateLimitPolicy(
            max_per_minute=config.rate_limit_per_minute,
            max_per_hour=config.rate_limit_per_hour,
            stale_after_seconds=config.rate_limit_cleanup_seconds,
        ),
        time_func=time_func,
    )
    intelligence = MarketingIntelligence(tz=config.tzinfo)
    live_sessions = LiveSessionTracker(config.session_timeout_minutes)

    def sweep():
        """Evict stale rate entries and fold idle sessions into profiles."""
        rate_tracker.cleanup()
        for activity in live_sessions.flush_idle():
            intelligence.update_visitor_profile(activity)

    app.config["components"] = {
        "config": config,
        "validator": validator,
        "fingerprint_validator": fingerprint_validator,
        "store": store,
        "rate_tracker": rate_tracker,
        "intelligence": intelligence,
        "live_sessions": live_sessions,
        "sweep": sweep,
    }

    if start_scheduler:
        scheduler = BackgroundScheduler()
        scheduler.add_job(sweep, "interval", seconds=config.rate_limit_cleanup_seconds)
        scheduler.start()
        atexit.register(scheduler.shutdown)

    # --- Routes ---

    @app.route("/health")
    def health():
        return jsonify({
            "status": "healthy",
            "events_written": store.events_written,
            "fingerprints_written": store.fingerprints_written,
            "tracked_addresses": len(rate_tracker),
            "open_sessions": len(live_sessions),
            "validation_stats": validator.get_stats(),
            "fingerprint_validation_stats": fingerprint_validator.get_stats(),
        })

    @app.route("/api/tracking", methods=["POST"])
    def ingest_event():
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            return jsonify({"status": "invalid", "errors": ["Body must be a JSON object"]}), 400

        address = client_address(request)
        engagement = data.get("engagement") if isinstance(data.get("engagement"), dict) else {}
        detection = rate_tracker.detect_bot(address, str(data.get("userAgent") or ""), {
            "timeOnPage": data.get("timeOnPage"),
            "mouseMovements": engagement.get("mouseMovements"),
        })
        if detection.rate_limit_exceeded:
            logger.info("Rate limited %s", address)
            return jsonify({"status": "rate_limited"}), 429

        data["ipAddress"] = address
        is_valid, errors = validator.validate(data)
        if not is_valid:
            logger.info("Rejected event from %s: %s", address, "; ".join(errors))
            return jsonify({"status": "invalid", "errors": errors}), 400
        try:
            event = TrackingEvent.from_dict(data)
        except (ValueError, OverflowError) as e:
            return jsonify({"status": "invalid", "errors": [str(e)]}), 400

        store.write_event(data)
        if not detection.is_bot:
            for activity in live_sessions.observe(event):
                intelligence.update_visitor_profile(activity)

        return jsonify({
            "status": "accepted",
            "bot": detection.is_bot,
            "requires_verification": detection.requires_verification,
        }), 201

    @app.route("/api/tracking/fingerprint", methods=["POST"])
    def ingest_fingerprint():
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            return jsonify({"status": "invalid", "errors": ["Body must be a JSON object"]}), 400

        address = client_address(request)
        is_valid, errors = fingerprint_validator.validate(data)
        if not is_valid:
            logger.info("Rejected fingerprint from %s: %s", address, "; ".join(errors))
            return jsonify({"status": "invalid", "errors": errors}), 400
        store.append_fingerprint(data, address)
        return jsonify({"status": "accepted"}), 201

    @app.route("/api/leads")
    def leads():
        profiles = intelligence.get_visitor_profiles()
        return jsonify({
            "visitor_profiles": to_dict(profiles),
            "qualifications": {
                p.address: to_dict(intelligence.qualify_lead(p.address)) for p in profiles
            },
            "sales_intelligence": to_dict(intelligence.generate_sales_intelligence()),
        })

    return app
