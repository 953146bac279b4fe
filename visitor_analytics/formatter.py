"""Output formatters for report dicts: plain text and JSON."""

import json
from typing import Callable


def format_json(report: dict) -> str:
    return json.dumps(report, indent=2, default=str)


def _counts(lines: list[str], title: str, items: list[dict]) -> None:
    lines.append(f"{title}:")
    if not items:
        lines.append("  (none)")
    for item in items:
        lines.append(f"  {item['count']:>7}  {item['key']}")
    lines.append("")


def _no_data(report: dict) -> str:
    reason = report.get("reason", "No data for this period.")
    return f"Status: no_data\n{reason}"


def format_summary_text(report: dict) -> str:
    """Human-readable access-log summary."""
    if report["status"] != "ok":
        return _no_data(report)

    summary = report["summary"]
    stats = report["parse_stats"]
    lines = [
        f"Files processed: {', '.join(report['files_processed'])}",
        f"Lines: {stats['total_lines']} total, {stats['parsed']} parsed, {stats['skipped']} skipped",
        "",
        f"Total requests:   {summary['total_requests']}",
        f"Unique addresses: {len(summary['unique_addresses'])}",
        f"Bytes sent:       {summary['total_bytes_sent']}",
        f"Avg response:     {summary['average_response_time_seconds']:.3f}s",
        f"Time range:       {summary['time_range']['start']} .. {summary['time_range']['end']}",
        "",
        "Status codes:",
    ]
    for code, count in sorted(summary["status_codes"].items()):
        lines.append(f"  {code}  {count}")
    lines.append("")

    _counts(lines, "Top pages", report["top"]["pages"])
    _counts(lines, "Top browsers", report["top"]["user_agents"])
    _counts(lines, "Top referrers", report["top"]["referrers"])

    lines.append(f"Human visitors: {len(report['human_visitors'])}")
    for visitor in report["human_visitors"]:
        lead = "  lead" if visitor["is_potential_lead"] else ""
        lines.append(
            f"  {visitor['address']:<39} visits={visitor['total_visits']:<3} "
            f"engagement={visitor['engagement_score']}{lead}"
        )
    lines.append(f"Bot addresses: {len(report['bot_visitors'])}")
    for visitor in report["bot_visitors"]:
        lines.append(f"  {visitor['address']}")
    return "\n".join(lines)


def format_address_text(report: dict) -> str:
    if report["status"] != "ok":
        return _no_data(report)

    summary = report["summary"]
    lines = [
        f"Address: {report['address']}",
        f"Entries: {report['total_entries']}",
        f"Sessions: {summary['session_count']}  engagement={summary['engagement_score']}",
        "",
    ]
    for session in summary["session_details"]:
        lines.append(
            f"  {session['start_time']}  {session['duration_seconds']:>7.0f}s  "
            f"{' -> '.join(session['pages'])}"
        )
    return "\n".join(lines)


def format_events_text(report: dict) -> str:
    if report["status"] != "ok":
        return _no_data(report)

    lines = [
        f"Date: {report['date']}",
        f"Visitors: {report['total_visitors']}  sessions: {report['total_sessions']}  "
        f"page views: {report['total_page_views']}  skipped files: {report['skipped']}",
        "",
    ]
    for visitor in report["visitors"]:
        lines.append(
            f"  {visitor['address']:<39} events={visitor['event_count']:<4} "
            f"sessions={visitor['unique_sessions']}"
        )
    return "\n".join(lines)


def format_leads_text(report: dict) -> str:
    if report["status"] != "ok":
        return _no_data(report)

    lines = [f"Date: {report['date']}", ""]
    for address, lead in report["qualifications"].items():
        mark = "QUALIFIED" if lead["is_qualified"] else "-"
        lines.append(f"  {address:<39} {lead['lead_score']:.2f} {lead['urgency']:<6} {mark}")
        lines.append(f"      {lead['qualification_reason']}; next: {lead['next_best_action']}")
    insights = report["sales_intelligence"]["market_insights"]
    lines.append("")
    lines.append(f"Top pages: {', '.join(insights['top_performing_pages']) or '(none)'}")
    return "\n".join(lines)


def format_fingerprints_text(report: dict) -> str:
    if report["status"] != "ok":
        return _no_data(report)

    a = report["analytics"]
    return "\n".join([
        f"Entries: {a['total_entries']}  unique visitors: {a['unique_visitors']}  "
        f"sessions: {a['total_sessions']}",
        f"Avg time on site: {a['average_time_on_site_ms'] / 1000:.1f}s  "
        f"avg scroll depth: {a['average_scroll_depth']:.0f}%",
        f"Browsers: {a['browsers']}",
        f"Devices: {a['devices']}",
    ])


TEXT_FORMATTERS: dict[str, Callable[[dict], str]] = {
    "summary": format_summary_text,
    "address": format_address_text,
    "events": format_events_text,
    "leads": format_leads_text,
    "fingerprints": format_fingerprints_text,
}


def get_formatter(command: str, output_format: str = "text") -> Callable[[dict], str]:
    """Factory that returns the right formatter for a command's report."""
    if output_format == "json":
        return format_json
    return TEXT_FORMATTERS[command]
