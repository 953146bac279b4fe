"""Tests for the CLI and report formatters."""

import json

import pytest

from visitor_analytics.cli import build_parser, main
from visitor_analytics.config import _ENV_VARS
from visitor_analytics.formatter import format_json, format_summary_text, get_formatter

from conftest import COMBINED_LINE, EXTENDED_LINE


@pytest.fixture(autouse=True)
def env(monkeypatch, config):
    for var in list(_ENV_VARS.values()) + ["CONFIG_PATH"]:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("LOGS_BASE_DIR", config.logs_base_dir)
    monkeypatch.setenv("LOG_LEVEL", "WARNING")


class TestParser:
    def test_summary_defaults(self):
        args = build_parser().parse_args(["summary"])
        assert args.command == "summary"
        assert args.log_type == "all"
        assert args.output == "text"
        assert args.entries is False

    def test_date_parsed(self):
        args = build_parser().parse_args(["events", "--date", "2025-07-25"])
        assert args.date.isoformat() == "2025-07-25"

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_bad_log_type(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["summary", "--log-type", "error"])


class TestMain:
    def test_summary_text(self, write_access_log, capsys):
        write_access_log([COMBINED_LINE, EXTENDED_LINE])
        assert main(["summary"]) == 0
        out = capsys.readouterr().out
        assert "Total requests:   2" in out
        assert "/services" in out
        assert "Human visitors: 2" in out

    def test_summary_json(self, write_access_log, capsys):
        write_access_log([COMBINED_LINE])
        assert main(["summary", "--output", "json", "--entries"]) == 0
        report = json.loads(capsys.readouterr().out)
        assert report["status"] == "ok"
        assert report["entries"][0]["address"] == "203.0.113.5"

    def test_no_data(self, capsys):
        assert main(["summary"]) == 0
        assert capsys.readouterr().out.startswith("Status: no_data")

    def test_address_not_found(self, write_access_log, capsys):
        write_access_log([COMBINED_LINE])
        assert main(["address", "198.51.100.99"]) == 0
        assert "Address not found in logs" in capsys.readouterr().out

    def test_events_and_leads(self, sample_event, write_event_file, capsys):
        write_event_file(dict(sample_event, ipAddress="203.0.113.5"), "10-00-00-a.json")
        assert main(["events", "--date", "2025-07-25"]) == 0
        assert "203.0.113.5" in capsys.readouterr().out
        assert main(["leads", "--date", "2025-07-25", "--output", "json"]) == 0
        report = json.loads(capsys.readouterr().out)
        assert list(report["qualifications"]) == ["203.0.113.5"]

    def test_fingerprints(self, capsys):
        assert main(["fingerprints", "--visitor-id", "v1"]) == 0
        assert "no_data" in capsys.readouterr().out

    def test_half_open_date_range(self):
        with pytest.raises(SystemExit):
            main(["summary", "--start", "2025-07-25"])

    def test_bad_date_reported(self, write_access_log, capsys):
        write_access_log([COMBINED_LINE])
        assert main(["summary", "--start", "2025-07-25", "--end", "July"]) == 2
        assert "Error:" in capsys.readouterr().err

    def test_bad_config_reported(self, monkeypatch, capsys):
        monkeypatch.setenv("ANALYTICS_TIMEZONE", "Nowhere/Special")
        assert main(["summary"]) == 2
        assert "Unknown timezone" in capsys.readouterr().err


class TestFormatters:
    def test_json(self):
        assert json.loads(format_json({"a": 1})) == {"a": 1}

    def test_factory(self):
        assert get_formatter("summary", "json") is format_json
        assert get_formatter("summary", "text") is format_summary_text
        with pytest.raises(KeyError):
            get_formatter("unknown")

    def test_no_data_reason(self):
        text = get_formatter("address")({"status": "no_data", "reason": "Address not found in logs"})
        assert text == "Status: no_data\nAddress not found in logs"
