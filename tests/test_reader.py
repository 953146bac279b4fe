"""Tests for log source reading."""

from visitor_analytics.parser import LogParser
from visitor_analytics.reader import load_access_logs, read_file, read_lines

from conftest import COMBINED_LINE, EXTENDED_LINE, MALFORMED_LINE


class TestReadFile:
    def test_reads_lines(self, tmp_path):
        path = tmp_path / "access.log"
        path.write_text("one\ntwo\n")
        assert list(read_lines(str(path))) == ["one\n", "two\n"]
        assert read_file(str(path)) == ["one\n", "two\n"]

    def test_missing_returns_none(self, tmp_path):
        assert read_file(str(tmp_path / "missing.log")) is None

    def test_undecodable_bytes_replaced(self, tmp_path):
        path = tmp_path / "access.log"
        path.write_bytes(b"ok \xff\xfe line\n")
        lines = read_file(str(path))
        assert len(lines) == 1
        assert lines[0].startswith("ok ")


class TestLoadAccessLogs:
    def test_loads_and_tracks_missing(self, tmp_path):
        present = tmp_path / "access.log"
        present.write_text("\n".join([COMBINED_LINE, EXTENDED_LINE, MALFORMED_LINE]) + "\n")
        missing = tmp_path / "tracking.log"

        result = load_access_logs([str(present), str(missing)], LogParser("UTC"))
        assert result.has_data
        assert result.files_processed == [str(present)]
        assert result.files_missing == [str(missing)]
        assert len(result.records) == 2
        assert result.stats.parsed == 2
        assert result.stats.skipped == 1

    def test_no_sources(self, tmp_path):
        result = load_access_logs([str(tmp_path / "a.log")], LogParser("UTC"))
        assert not result.has_data
        assert result.records == []

    def test_stats_merge_across_files(self, tmp_path):
        a = tmp_path / "a.log"
        b = tmp_path / "b.log"
        a.write_text(COMBINED_LINE + "\n")
        b.write_text(EXTENDED_LINE + "\n")
        result = load_access_logs([str(a), str(b)], LogParser("UTC"))
        assert result.stats.parsed == 2
        assert result.stats.grammar_counts == {"combined": 1, "extended": 1}
