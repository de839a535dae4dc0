"""Tests for the audit trail."""

import asyncio
import dataclasses
import json
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from monitoring.audit import AuditConfig, AuditEntry, AuditQuery, AuditTracker
from monitoring.events import EventBus, MonitoringEvent
from monitoring.exceptions import ConfigError
from monitoring.logger import REDACTED, Logger, LogType


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def log(logger_config):
    return Logger(logger_config)


@pytest.fixture
def tracker(log, audit_config):
    return AuditTracker(log, audit_config)


def snapshot_files(audit_dir):
    return sorted(audit_dir.glob("audit-*.json"))


# ============================================================================
# TEST SUITE: CONFIGURATION
# ============================================================================

class TestAuditConfig:
    """Configuration validation."""

    def test_defaults(self):
        config = AuditConfig()
        assert config.directory == ".speco/audit"
        assert config.max_buffer_size == 1000
        assert config.flush_interval == 30.0

    @pytest.mark.parametrize("field,value", [
        ("max_buffer_size", 0),
        ("flush_interval", 0),
        ("max_string_length", 0),
    ])
    def test_invalid_values(self, field, value):
        with pytest.raises(ConfigError):
            AuditConfig(**{field: value})

    def test_from_dict_rejects_unknown_keys(self):
        with pytest.raises(ConfigError):
            AuditConfig.from_dict({"path": "x"})


# ============================================================================
# TEST SUITE: RECORDING
# ============================================================================

class TestAuditRecording:
    """Sanitization, context defaults and mirroring."""

    @pytest.mark.asyncio
    async def test_nested_redaction(self, logger_config, audit_config, audit_dir):
        bus = EventBus()
        logged = []
        bus.add_listener(MonitoringEvent.LOG, logged.append)
        memory_only = dataclasses.replace(logger_config, enable_file=False)
        tracker = AuditTracker(Logger(memory_only, events=bus), audit_config)
        expected = {"a": {"password": REDACTED}, "items": [{"token": REDACTED}]}

        entry = tracker.audit("x", {"a": {"password": "p"}, "items": [{"token": "t"}]})
        assert entry.details == expected
        assert [e.details for e in logged] == [expected]

        await tracker.flush()
        data = json.loads(snapshot_files(audit_dir)[0].read_text(encoding="utf-8"))
        assert data["entries"][0]["details"] == expected

    def test_non_dict_context_is_wrapped(self, tracker):
        entry = tracker.audit("x", {}, "alice")

        assert entry.user_id == "system"
        assert entry.result == "success"
        assert tracker.buffer_size == 1

    def test_long_strings_truncated(self, tracker):
        entry = tracker.audit("x", {"body": "a" * 600, "short": "ok"})

        assert entry.details["body"] == "a" * 500 + "..."
        assert entry.details["short"] == "ok"

    def test_context_defaults(self, tracker):
        entry = tracker.audit("task.create")

        assert entry.context["user_id"] == "system"
        assert entry.context["source"] == "internal"
        assert entry.context["session_id"] is None
        assert entry.result == "success"
        assert entry.duration is None

    def test_result_and_duration_from_context(self, tracker):
        entry = tracker.audit("task.update", {"id": 3}, {
            "user_id": "alice",
            "ip": "10.0.0.1",
            "result": "failure",
            "duration": 12.5,
        })

        assert entry.user_id == "alice"
        assert entry.context["ip"] == "10.0.0.1"
        assert entry.result == "failure"
        assert entry.duration == 12.5

    def test_non_dict_details_wrapped(self, tracker):
        assert tracker.audit("note", "free text").details == {"value": "free text"}

    def test_mirrored_into_logger(self, tracker, log):
        tracker.audit("task.delete", {"id": 1}, {"user_id": "alice"})

        metrics = log.get_metrics()
        assert metrics["logs_by_type"] == {LogType.AUDIT.value: 1}

    @pytest.mark.parametrize("result", ["failure", "denied"])
    def test_violation_published(self, log, audit_config, result):
        bus = EventBus()
        violations = bus.subscribe(MonitoringEvent.AUDIT_VIOLATION)
        tracker = AuditTracker(log, audit_config, events=bus)

        tracker.audit("task.delete", {}, {"result": result})
        tracker.audit("task.read")

        payloads = violations.drain()
        assert len(payloads) == 1
        assert payloads[0]["result"] == result


# ============================================================================
# TEST SUITE: PERSISTENCE
# ============================================================================

class TestAuditPersistence:
    """Flushing buffered entries to snapshot files."""

    @pytest.mark.asyncio
    async def test_flush_writes_snapshot(self, tracker, audit_dir):
        tracker.audit("a", {"n": 1})
        tracker.audit("b", {"n": 2})

        assert await tracker.flush() == 2
        assert tracker.buffer_size == 0

        files = snapshot_files(audit_dir)
        assert len(files) == 1
        data = json.loads(files[0].read_text(encoding="utf-8"))
        assert set(data) == {"flushTime", "entries"}
        assert [e["action"] for e in data["entries"]] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_empty_flush_writes_nothing(self, tracker, audit_dir):
        assert await tracker.flush() == 0
        assert not audit_dir.exists()

    @pytest.mark.asyncio
    async def test_full_buffer_flushes_automatically(self, log, audit_dir):
        tracker = AuditTracker(log, AuditConfig(directory=str(audit_dir), max_buffer_size=5))
        for n in range(5):
            tracker.audit("x", {"n": n})

        assert tracker.buffer_size == 0
        await tracker.flush()

        files = snapshot_files(audit_dir)
        assert len(files) == 1
        assert len(json.loads(files[0].read_text())["entries"]) == 5

    @pytest.mark.asyncio
    async def test_entries_during_flush_go_to_next_batch(self, tracker, audit_dir):
        tracker.audit("first")
        flushing = asyncio.ensure_future(tracker.flush())
        await asyncio.sleep(0)
        tracker.audit("second")
        await flushing

        assert tracker.buffer_size == 1
        await tracker.flush()
        batches = [
            [e["action"] for e in json.loads(path.read_text())["entries"]]
            for path in snapshot_files(audit_dir)
        ]
        assert batches == [["first"], ["second"]]

    @pytest.mark.asyncio
    async def test_persistence_failure_drops_batch(self, tracker, log, audit_dir):
        tracker.audit("lost")
        with patch("monitoring.audit.aiofiles.open", side_effect=OSError("read-only")):
            assert await tracker.flush() == 0

        assert tracker.buffer_size == 0
        assert log.get_metrics()["errors"] == 1
        assert snapshot_files(audit_dir) == []

    @pytest.mark.asyncio
    async def test_periodic_flush(self, log, audit_dir):
        tracker = AuditTracker(log, AuditConfig(directory=str(audit_dir), flush_interval=0.01))
        await tracker.start()
        tracker.audit("tick")
        await asyncio.sleep(0.3)

        assert tracker.buffer_size == 0
        assert len(snapshot_files(audit_dir)) == 1
        await tracker.stop()

    @pytest.mark.asyncio
    async def test_stop_performs_final_flush(self, tracker, audit_dir):
        await tracker.start()
        tracker.audit("last")
        await tracker.stop()

        assert tracker.buffer_size == 0
        assert len(snapshot_files(audit_dir)) == 1

    def test_full_buffer_outside_event_loop(self, log, audit_dir):
        tracker = AuditTracker(log, AuditConfig(directory=str(audit_dir), max_buffer_size=2))
        tracker.audit("a")
        tracker.audit("b")

        assert tracker.buffer_size == 0
        assert asyncio.run(tracker.flush()) == 2


# ============================================================================
# TEST SUITE: QUERYING AND REPORTING
# ============================================================================

class TestAuditQueries:
    """Buffer and history queries."""

    def test_query_buffer(self, tracker):
        tracker.audit("task.create", {}, {"user_id": "alice"})
        tracker.audit("task.delete", {}, {"user_id": "alice"})
        tracker.audit("task.create", {}, {"user_id": "bob"})

        assert len(tracker.query_audit(action="task.create")) == 2
        assert len(tracker.query_audit(user_id="alice")) == 2
        assert len(tracker.query_audit(AuditQuery(action="task.create", user_id="bob"))) == 1
        assert len(tracker.query_audit(limit=1)) == 1

    def test_query_time_range(self, tracker):
        tracker.audit("task.create")
        past = datetime.now(timezone.utc) - timedelta(hours=1)
        future = datetime.now(timezone.utc) + timedelta(hours=1)

        assert len(tracker.query_audit(start_time=past, end_time=future)) == 1
        assert tracker.query_audit(start_time=future) == []

    def test_invalid_time_filter(self, tracker):
        with pytest.raises(ConfigError):
            tracker.query_audit(start_time="yesterday")

    @pytest.mark.asyncio
    async def test_query_audit_ignores_flushed_entries(self, tracker):
        tracker.audit("flushed")
        await tracker.flush()
        tracker.audit("buffered")

        assert [e["action"] for e in tracker.query_audit()] == ["buffered"]

    @pytest.mark.asyncio
    async def test_query_history_includes_snapshots(self, tracker, audit_dir):
        tracker.audit("flushed", {}, {"user_id": "alice"})
        await tracker.flush()
        tracker.audit("buffered", {}, {"user_id": "alice"})
        (audit_dir / "audit-1.json").write_text("{not json")

        history = await tracker.query_history(user_id="alice")
        assert [e["action"] for e in history] == ["flushed", "buffered"]


class TestAuditReport:
    """Risk assessment."""

    def test_empty_report(self, tracker):
        report = tracker.generate_audit_report()

        assert report["summary"]["total_events"] == 0
        assert report["risk_assessment"] == {"level": "low", "score": 0, "issues": []}
        assert report["recommendations"] == []

    def test_summary_counts(self, tracker):
        tracker.audit("task.create", {}, {"user_id": "alice"})
        tracker.audit("task.read", {}, {"user_id": "bob"})

        summary = tracker.generate_audit_report("today")["summary"]
        assert summary["events_by_action"] == {"task.create": 1, "task.read": 1}
        assert summary["events_by_user"] == {"alice": 1, "bob": 1}
        assert summary["events_by_result"] == {"success": 2}
        assert set(summary["time_range"]) == {"start", "end"}

    def test_high_risk(self, tracker):
        for _ in range(4):
            tracker.audit("task.delete", {}, {"result": "failure"})
        for action in ("a", "b", "c", "d", "e", "f"):
            tracker.audit(action)

        report = tracker.generate_audit_report()
        risks = report["risk_assessment"]
        # 40% failures (+30) and task.delete at 40% of events (+20)
        assert risks["score"] == 50
        assert risks["level"] == "high"
        assert [r["priority"] for r in report["recommendations"]] == ["high", "medium"]

    def test_report_over_given_entries(self, tracker):
        entries = [AuditEntry(action="x", result="failure")]

        report = tracker.generate_audit_report(entries=entries)
        assert report["summary"]["total_events"] == 1
        assert report["risk_assessment"]["score"] == 50
