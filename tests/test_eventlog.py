"""Tests for the append-only event log."""

import re

from sieveproxy.eventlog import (
    EventLog,
    LogType,
    format_block_text,
    format_error_text,
)


class TestFormatting:
    def test_block_text(self):
        line = format_block_text("http://blocked.test/x")
        assert re.match(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2} Blocked request to: http://blocked.test/x\n$", line)

    def test_error_text(self):
        line = format_error_text("http://down.test/", "connection refused")
        assert line.endswith("Error on request to: http://down.test/: connection refused\n")


class TestEventLog:
    def test_creates_file_on_first_write(self, tmp_path):
        log = EventLog(tmp_path / "logs")
        assert log.blocked("http://a.test/")
        path = tmp_path / "logs" / "blocked.txt"
        assert path.exists()
        assert "Blocked request to: http://a.test/" in path.read_text()

    def test_appends(self, tmp_path):
        log = EventLog(tmp_path)
        log.blocked("http://a.test/")
        log.blocked("http://b.test/")
        lines = (tmp_path / "blocked.txt").read_text().splitlines()
        assert len(lines) == 2
        assert lines[1].endswith("http://b.test/")

    def test_kinds_go_to_separate_files(self, tmp_path):
        log = EventLog(tmp_path)
        log.blocked("http://a.test/")
        log.error("http://b.test/", "boom")
        assert "boom" in (tmp_path / "error.txt").read_text()
        assert "boom" not in (tmp_path / "blocked.txt").read_text()

    def test_custom_file_names(self, tmp_path):
        log = EventLog(tmp_path, files={LogType.BLOCKED: "denied.log"})
        log.blocked("http://a.test/")
        assert (tmp_path / "denied.log").exists()
        assert log.path_for(LogType.ERROR) == tmp_path / "error.txt"

    def test_write_adds_newline(self, tmp_path):
        log = EventLog(tmp_path)
        log.write(LogType.ERROR, "no newline")
        assert (tmp_path / "error.txt").read_text() == "no newline\n"

    def test_invalid_log_type(self, tmp_path):
        assert EventLog(tmp_path).write("bogus", "x") is False

    def test_write_failure_is_swallowed(self, tmp_path):
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("")
        log = EventLog(blocker / "logs")
        assert log.blocked("http://a.test/") is False
        assert log.error("http://a.test/", "x") is False
