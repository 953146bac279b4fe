"""visitor-analytics: access-log and tracking-event reports for the marketing site."""

import logging
import sys
from argparse import ArgumentParser
from datetime import date, datetime

from visitor_analytics.config import load_config
from visitor_analytics.formatter import get_formatter
from visitor_analytics.reports import (
    LOG_TYPES,
    access_log_report,
    address_report,
    event_dashboard,
    fingerprint_report,
    marketing_report,
)

LOG_FORMAT = "%(asctime)s [ANALYTICS] %(levelname)s %(message)s"


def _add_output(parser: ArgumentParser) -> None:
    parser.add_argument(
        "--output",
        choices=["text", "json"],
        default="text",
        help="Output format (default: text)",
    )


def _add_log_selection(parser: ArgumentParser) -> None:
    parser.add_argument(
        "--log-type",
        choices=LOG_TYPES,
        default="all",
        help="Which access log to read (default: all)",
    )
    parser.add_argument("--start", help="First day to include (YYYY-MM-DD)")
    parser.add_argument("--end", help="Last day to include (YYYY-MM-DD)")


def _add_date(parser: ArgumentParser) -> None:
    parser.add_argument(
        "--date",
        type=date.fromisoformat,
        help="Event day to report on (YYYY-MM-DD, default: today)",
    )


def build_parser() -> ArgumentParser:
    """Build the CLI argument parser."""
    parser = ArgumentParser(
        prog="visitor-analytics",
        description="Visitor analytics over access logs and tracking events.",
    )
    parser.add_argument("--config", help="YAML config file (default: $CONFIG_PATH)")
    sub = parser.add_subparsers(dest="command", required=True)

    summary = sub.add_parser("summary", help="Access-log summary with bot/human split")
    _add_log_selection(summary)
    summary.add_argument("--entries", action="store_true", help="Include parsed entries (JSON only)")
    _add_output(summary)

    address = sub.add_parser("address", help="Records and sessions for one address")
    address.add_argument("address")
    _add_log_selection(address)
    _add_output(address)

    events = sub.add_parser("events", help="Tracking-event dashboard for one day")
    _add_date(events)
    _add_output(events)

    leads = sub.add_parser("leads", help="Visitor profiles and lead qualification for one day")
    _add_date(leads)
    _add_output(leads)

    fingerprints = sub.add_parser("fingerprints", help="Fingerprint log analytics")
    fingerprints.add_argument("--visitor-id")
    fingerprints.add_argument("--address")
    _add_output(fingerprints)

    serve = sub.add_parser("serve", help="Run the tracking ingestion API")
    serve.add_argument("--host")
    serve.add_argument("--port", type=int)
    return parser


def _date_range(args):
    if bool(args.start) != bool(args.end):
        raise SystemExit("Error: --start and --end must be given together")
    return (args.start, args.end) if args.start else None


def run(args) -> int:
    config = load_config(args.config)
    logging.basicConfig(level=config.log_level, format=LOG_FORMAT, stream=sys.stderr)

    if args.command == "serve":
        from visitor_analytics.app import create_app
        app = create_app(config)
        app.run(host=args.host or config.host, port=args.port or config.port)
        return 0

    if args.command == "summary":
        report = access_log_report(config, args.log_type, _date_range(args), args.entries)
    elif args.command == "address":
        report = address_report(config, args.address, args.log_type, _date_range(args))
    elif args.command == "events":
        report = event_dashboard(config, args.date or datetime.now(config.tzinfo).date())
    elif args.command == "leads":
        report = marketing_report(config, args.date or datetime.now(config.tzinfo).date())
    else:
        report = fingerprint_report(config, args.visitor_id, args.address)

    print(get_formatter(args.command, args.output)(report))
    return 0


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        return run(args)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2
