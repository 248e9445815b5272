"""Tests for the engine audit log.

The logger records structured entries for launches, stops, terminal
hand-offs and failures, so a host can explain what happened to a job.
"""

from py_jobctl.engine import JobControl
from py_jobctl.logging import LogEntry, Logger, LogLevel
from py_jobctl.terminal import TerminalOwnership


class TestLogLevel:
    """Verify log level ordering."""

    def test_levels_are_ordered(self) -> None:
        """DEBUG < INFO < WARNING < ERROR."""
        assert LogLevel.DEBUG < LogLevel.INFO
        assert LogLevel.INFO < LogLevel.WARNING
        assert LogLevel.WARNING < LogLevel.ERROR


class TestLogEntry:
    """Verify log entry structure."""

    def test_entry_has_fields(self) -> None:
        """A log entry stores level, message, source and pid."""
        expected_pid = 42
        entry = LogEntry(level=LogLevel.INFO, message="started", source="executor", pid=42)
        assert entry.level is LogLevel.INFO
        assert entry.message == "started"
        assert entry.source == "executor"
        assert entry.pid == expected_pid

    def test_entry_str(self) -> None:
        """String form is ``[LEVEL] source: message``."""
        entry = LogEntry(level=LogLevel.WARNING, message="table full", source="executor")
        assert str(entry) == "[WARNING] executor: table full"


class TestLogger:
    """Verify the logger buffer."""

    def test_log_appends(self) -> None:
        """Entries are kept in chronological order."""
        logger = Logger()
        logger.log(LogLevel.INFO, "one", source="a")
        logger.log(LogLevel.ERROR, "two", source="b")
        assert [e.message for e in logger.entries] == ["one", "two"]

    def test_bounded(self) -> None:
        """Only the newest entries survive past the bound."""
        logger = Logger(max_entries=2)
        for n in range(5):
            logger.log(LogLevel.INFO, str(n), source="t")
        assert [e.message for e in logger.entries] == ["3", "4"]

    def test_filter_by_level_and_source(self) -> None:
        """Filters combine level threshold and source."""
        logger = Logger()
        logger.log(LogLevel.DEBUG, "noise", source="terminal")
        logger.log(LogLevel.WARNING, "full", source="executor")
        logger.log(LogLevel.ERROR, "fork", source="executor")
        logger.log(LogLevel.ERROR, "other", source="engine")
        result = logger.filter(min_level=LogLevel.WARNING, source="executor")
        assert [e.message for e in result] == ["full", "fork"]

    def test_clear(self) -> None:
        """Clearing empties the log."""
        logger = Logger()
        logger.log(LogLevel.INFO, "x", source="t")
        logger.clear()
        assert logger.entries == []


class TestEngineLogging:
    """Verify that the engine writes to the log it is given."""

    def test_execution_is_logged(self) -> None:
        """Running a command logs its start and finish at INFO."""
        logger = Logger()
        control = JobControl(ownership=TerminalOwnership.detached(), logger=logger)
        control.execute(["true"])
        messages = [e.message for e in logger.filter(source="executor")]
        assert any("started" in m for m in messages)
        assert any("finished" in m for m in messages)

    def test_detached_handoff_logged_at_debug(self) -> None:
        """Without a terminal the hand-off is skipped and logged at DEBUG."""
        logger = Logger()
        control = JobControl(ownership=TerminalOwnership.detached(), logger=logger)
        control.execute(["true"])
        entries = logger.filter(source="terminal")
        assert entries
        assert all(e.level is LogLevel.DEBUG for e in entries)
