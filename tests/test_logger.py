"""Tests for the structured logger."""

import dataclasses
import json
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from monitoring.events import EventBus, MonitoringEvent
from monitoring.exceptions import ConfigError
from monitoring.logger import (
    REDACTED,
    LogEntry,
    Logger,
    LoggerConfig,
    LogLevel,
    LogQuery,
    LogType,
    parse_readable_line,
    sanitize_value,
)


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def memory_config(log_dir):
    """Logger configuration without any sink."""
    return LoggerConfig(
        level=LogLevel.INFO,
        enable_console=False,
        enable_file=False,
        log_directory=str(log_dir),
    )


def read_records(log_dir):
    records = []
    for path in sorted(log_dir.glob("*.log")):
        for line in path.read_text(encoding="utf-8").splitlines():
            records.append(json.loads(line))
    return records


# ============================================================================
# TEST SUITE: CONFIGURATION
# ============================================================================

class TestLoggerConfig:
    """Configuration parsing and validation."""

    def test_defaults(self):
        config = LoggerConfig()
        assert config.level == LogLevel.INFO
        assert config.log_directory == ".speco/logs"
        assert config.max_file_size == 10 * 1024 * 1024
        assert config.max_files == 30
        assert config.structured_output is True

    @pytest.mark.parametrize("value,expected", [
        ("error", LogLevel.ERROR),
        ("WARNING", LogLevel.WARN),
        ("warn", LogLevel.WARN),
        (3, LogLevel.DEBUG),
        ("4", LogLevel.TRACE),
    ])
    def test_level_parsing(self, value, expected):
        assert LoggerConfig(level=value).level == expected

    def test_unknown_level(self):
        with pytest.raises(ConfigError):
            LoggerConfig(level="verbose")

    def test_invalid_max_files(self):
        with pytest.raises(ConfigError) as exc_info:
            LoggerConfig(max_files=0)
        assert exc_info.value.field == "max_files"

    def test_from_dict_rejects_unknown_keys(self):
        with pytest.raises(ConfigError):
            LoggerConfig.from_dict({"colour": True})

    def test_from_dict(self):
        config = LoggerConfig.from_dict({"level": "debug", "max_files": 3})
        assert config.level == LogLevel.DEBUG
        assert config.max_files == 3


# ============================================================================
# TEST SUITE: LOG ENTRIES
# ============================================================================

class TestLogEntry:
    """LogEntry construction and rendering."""

    def test_defaults(self):
        entry = LogEntry(message="hello")
        assert entry.level == LogLevel.INFO
        assert entry.type == LogType.SYSTEM
        assert entry.category == "general"
        assert entry.user_id == "system"
        assert entry.source == "application"
        assert entry.timestamp.endswith("Z")

    def test_is_immutable(self):
        entry = LogEntry(message="hello")
        with pytest.raises(dataclasses.FrozenInstanceError):
            entry.message = "changed"

    def test_exception_becomes_error_and_stack_trace(self):
        try:
            raise ValueError("bad input")
        except ValueError as e:
            entry = LogEntry(level=LogLevel.ERROR, message="failed", error=e)

        assert entry.error == "bad input"
        assert "ValueError: bad input" in entry.stack_trace

    def test_readable_format(self):
        entry = LogEntry(
            level=LogLevel.WARN,
            type=LogType.PERFORMANCE,
            category="performance",
            message="slow save",
            user_id="alice",
            duration=42.5,
            error="timeout",
            timestamp="2024-05-01T10:00:00.000Z",
        )
        assert entry.to_readable() == (
            "[2024-05-01T10:00:00.000Z] WARN [performance:performance] slow save "
            "[User: alice] (42.5ms) Error: timeout"
        )

    def test_readable_line_parses_back(self):
        entry = LogEntry(message="task saved", user_id="bob", duration=12.0)
        parsed = parse_readable_line(entry.to_readable())

        assert parsed["message"] == "task saved"
        assert parsed["user_id"] == "bob"
        assert parsed["duration"] == 12.0
        assert parsed["level"] == int(LogLevel.INFO)

    def test_unparseable_readable_line(self):
        with pytest.raises(ValueError):
            parse_readable_line("not a log line")

    def test_structured_contains_level_name(self):
        record = json.loads(LogEntry(level=LogLevel.ERROR, message="x").to_json())
        assert record["level"] == 0
        assert record["level_name"] == "ERROR"
        assert record["type"] == "system"


# ============================================================================
# TEST SUITE: REDACTION
# ============================================================================

class TestSanitizeValue:
    """Sensitive data masking."""

    def test_nested_redaction(self):
        data = {"a": {"password": "p"}, "items": [{"token": "t"}], "name": "x"}
        assert sanitize_value(data) == {
            "a": {"password": REDACTED},
            "items": [{"token": REDACTED}],
            "name": "x",
        }

    @pytest.mark.parametrize("key", ["password", "token", "key", "secret", "privateKey", "private_key"])
    def test_sensitive_keys(self, key):
        assert sanitize_value({key: "value"}) == {key: REDACTED}

    def test_truncation_only_with_max_length(self):
        long_text = "x" * 20
        assert sanitize_value({"note": long_text}) == {"note": long_text}
        assert sanitize_value({"note": long_text}, max_length=5) == {"note": "xxxxx..."}


# ============================================================================
# TEST SUITE: LOGGING AND METRICS
# ============================================================================

class TestLogging:
    """Level filtering, metrics and events."""

    def test_level_filtering(self, memory_config):
        log = Logger(dataclasses.replace(memory_config, level=LogLevel.WARN))

        assert log.info("ignored") is None
        assert log.debug("ignored") is None
        assert log.warn("kept") is not None
        assert log.error("kept") is not None
        assert log.get_metrics()["total_logs"] == 2

    def test_metrics_at_info_level(self, memory_config):
        log = Logger(memory_config)
        log.info("a")
        log.debug("b")
        log.error("c")

        metrics = log.get_metrics()
        assert metrics["total_logs"] == 2
        assert metrics["logs_by_level"] == {"INFO": 1, "ERROR": 1}
        assert metrics["errors"] == 1
        assert metrics["warnings"] == 0

    def test_logs_by_type(self, memory_config):
        log = Logger(memory_config)
        log.audit("task.create", {"id": 1})
        log.security("login failed")
        log.performance("save", 12.5)
        log.business("task completed")

        assert log.get_metrics()["logs_by_type"] == {
            "audit": 1,
            "security": 1,
            "performance": 1,
            "business": 1,
        }

    def test_context_identity_lifted(self, memory_config):
        log = Logger(memory_config)
        entry = log.info("hello", context={"user_id": "alice", "session_id": "s1"})

        assert entry.user_id == "alice"
        assert entry.session_id == "s1"

    def test_non_dict_context_is_wrapped(self, memory_config):
        log = Logger(memory_config)
        entry = log.info("x", context="request-42")

        assert entry.context == {"value": "request-42"}
        assert log.get_metrics()["total_logs"] == 1

    def test_performance_entry(self, memory_config):
        entry = Logger(memory_config).performance("save_tasks", 41.5, {"count": 3})

        assert entry.type == LogType.PERFORMANCE
        assert entry.duration == 41.5
        assert entry.details == {"count": 3}

    def test_invalid_entry_is_rejected_without_raising(self, memory_config):
        log = Logger(memory_config)

        assert log.log(LogLevel.INFO, "no-such-type", "general", "x") is None
        assert log.get_metrics()["total_logs"] == 0

    def test_log_event_published(self, memory_config):
        bus = EventBus()
        received = []
        bus.add_listener(MonitoringEvent.LOG, received.append)

        entry = Logger(memory_config, events=bus).info("hello")
        assert received == [entry]

    def test_console_output_is_redacted(self, memory_config, capsys):
        config = dataclasses.replace(memory_config, enable_console=True, console_format="json")
        Logger(config).info("login", {"password": "hunter2", "user": "alice"})

        err = capsys.readouterr().err
        assert REDACTED in err
        assert "hunter2" not in err
        assert "alice" in err


# ============================================================================
# TEST SUITE: FILE SINK
# ============================================================================

class TestFileSink:
    """Durable file writes, rotation and retention."""

    @pytest.mark.asyncio
    async def test_entries_written_in_order(self, logger_config, log_dir):
        log = Logger(logger_config)
        await log.start()
        for n in range(5):
            log.info(f"entry {n}")
        await log.close()

        messages = [r["message"] for r in read_records(log_dir) if r["message"].startswith("entry")]
        assert messages == [f"entry {n}" for n in range(5)]

    @pytest.mark.asyncio
    async def test_file_name_format(self, logger_config):
        log = Logger(logger_config)
        name = log.current_log_file.name

        assert name.startswith("speco-tasker-")
        assert name.endswith(".log")
        assert log._extract_file_key(name) is not None

    @pytest.mark.asyncio
    async def test_flush_reports_nothing_pending(self, logger_config):
        log = Logger(logger_config)
        await log.start()
        log.info("a")

        assert await log.flush() == 0
        assert log.pending_writes == 0
        await log.close()

    @pytest.mark.asyncio
    async def test_write_failure_keeps_entry_queued(self, logger_config, log_dir):
        log = Logger(logger_config)
        await log.start()
        await log.flush()

        with patch("monitoring.logger.aiofiles.open", side_effect=OSError("disk full")):
            log.info("survivor")
            assert await log.flush() == 1

        assert await log.flush() == 0
        await log.close()
        assert "survivor" in [r["message"] for r in read_records(log_dir)]

    @pytest.mark.asyncio
    async def test_unwritable_directory_disables_file_sink(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        config = LoggerConfig(enable_console=False, log_directory=str(blocker / "logs"))

        log = Logger(config)
        await log.start()

        assert log.file_enabled is False
        assert log.info("still works") is not None
        await log.close()

    @pytest.mark.asyncio
    async def test_rotation_by_size(self, logger_config, log_dir):
        log = Logger(dataclasses.replace(logger_config, max_file_size=200))
        await log.start()
        first_file = log.current_log_file
        for n in range(3):
            log.info(f"entry {n}", {"padding": "x" * 100})
        await log.close()

        assert log.current_log_file != first_file
        assert len(list(log_dir.glob("*.log"))) >= 2
        messages = [r["message"] for r in read_records(log_dir)]
        assert all(f"entry {n}" in messages for n in range(3))

    @pytest.mark.asyncio
    async def test_retention_keeps_newest_files(self, logger_config, log_dir):
        log_dir.mkdir(parents=True)
        names = [f"speco-tasker-2024-01-0{day}-00-00-00.log" for day in range(1, 6)]
        for name in names:
            (log_dir / name).write_text("")
        (log_dir / "speco-tasker-undated.log").write_text("")

        log = Logger(dataclasses.replace(logger_config, max_files=2))
        deleted = await log.cleanup_old_logs()

        assert sorted(deleted) == names[:3]
        remaining = {p.name for p in log_dir.iterdir()}
        assert remaining == {names[3], names[4], "speco-tasker-undated.log"}

    @pytest.mark.asyncio
    async def test_close_releases_log_listeners(self, logger_config):
        log = Logger(logger_config)
        log.events.add_listener(MonitoringEvent.LOG, lambda entry: None)
        await log.start()
        await log.close()

        assert log.events.listener_count(MonitoringEvent.LOG) == 0


# ============================================================================
# TEST SUITE: QUERYING AND REPORTING
# ============================================================================

class TestQueryAndReport:
    """Historical querying and reports."""

    @pytest.mark.asyncio
    async def test_query_filters(self, logger_config):
        log = Logger(logger_config)
        await log.start()
        log.error("save failed", context={"user_id": "alice"})
        log.info("Task saved", context={"user_id": "alice"})
        log.info("task listed", context={"user_id": "bob"})
        await log.flush()

        errors = await log.query_logs(level=LogLevel.ERROR)
        assert [r["message"] for r in errors] == ["save failed"]

        alice = await log.query_logs(user_id="alice", message="TASK")
        assert [r["message"] for r in alice] == ["Task saved"]

        limited = await log.query_logs(LogQuery(limit=2))
        assert len(limited) == 2
        await log.close()

    @pytest.mark.asyncio
    async def test_query_time_range(self, logger_config):
        log = Logger(logger_config)
        await log.start()
        log.info("now")
        await log.flush()

        future = datetime.now(timezone.utc) + timedelta(hours=1)
        assert await log.query_logs(start_time=future) == []
        assert await log.query_logs(end_time=future, message="now") != []
        await log.close()

    @pytest.mark.asyncio
    async def test_query_readable_files(self, logger_config):
        log = Logger(dataclasses.replace(logger_config, structured_output=False))
        await log.start()
        log.warn("disk almost full", context={"user_id": "ops"})
        await log.flush()

        records = await log.query_logs(level="WARN")
        assert records[0]["message"] == "disk almost full"
        assert records[0]["user_id"] == "ops"
        await log.close()

    @pytest.mark.asyncio
    async def test_query_skips_corrupt_lines(self, logger_config, log_dir):
        log = Logger(logger_config)
        await log.start()
        log.info("valid")
        await log.flush()
        with open(log.current_log_file, "a", encoding="utf-8") as f:
            f.write("{broken json\n")

        records = await log.query_logs(message="valid")
        assert len(records) == 1
        await log.close()

    @pytest.mark.asyncio
    async def test_query_skips_undecodable_lines(self, logger_config, log_dir):
        log_dir.mkdir(parents=True)
        good = LogEntry(level=LogLevel.INFO, message="keep me").to_json().encode("utf-8")
        (log_dir / "speco-tasker-2024-01-01-00-00-00.log").write_bytes(
            good + b"\n" + b"\xff\xfe garbage\n" + good + b"\n"
        )

        records = await Logger(logger_config).query_logs(message="keep me")
        assert len(records) == 2

    @pytest.mark.asyncio
    async def test_query_missing_directory(self, memory_config):
        assert await Logger(memory_config).query_logs() == []

    def test_report_health(self, memory_config):
        log = Logger(memory_config)
        for _ in range(8):
            log.info("ok")
        for _ in range(2):
            log.error("failed")

        report = log.generate_report()
        assert report["period"] == "current-session"
        assert report["health"]["status"] == "critical"
        assert report["health"]["score"] == 50
        assert report["health"]["indicators"]["error_rate"] == "20.00%"
        priorities = [r["priority"] for r in report["recommendations"]]
        assert "high" in priorities
