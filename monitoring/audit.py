# =============================================================================
# TASK TRACKER OBSERVABILITY - AUDIT TRAIL
# =============================================================================
"""
Audit Trail Module

Buffers audit events in memory and persists them in batches.

Every event is sanitized before it is stored: values of secret-looking
keys (password, token, key, secret, privateKey) are redacted at any depth
and long strings are truncated. Events are mirrored into the structured
Logger as audit entries.

The buffer is written to ``<directory>/audit-<epoch-ms>.json`` as
``{"flushTime": ..., "entries": [...]}``:
    - every ``flush_interval`` seconds, and
    - as soon as the buffer reaches ``max_buffer_size`` entries.

A flush claims the whole buffer in one synchronous step before any I/O,
so events recorded while a write is in flight go to the next batch.
Persistence failures are logged and the batch is dropped.
"""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass, field, fields
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Union

import aiofiles
import aiofiles.os

from monitoring.events import EventBus, MonitoringEvent
from monitoring.exceptions import ConfigError
from monitoring.logger import Logger, parse_timestamp, sanitize_value, utc_now_iso

# Audit results that are reported as violations
FAILURE_RESULTS = frozenset(["failure", "denied"])


# =============================================================================
# CONFIGURATION AND DATA STRUCTURES
# =============================================================================


@dataclass
class AuditConfig:
    """Audit trail configuration."""
    directory: str = ".speco/audit"
    max_buffer_size: int = 1000
    flush_interval: float = 30.0  # seconds
    max_string_length: int = 500

    def __post_init__(self):
        self.directory = str(self.directory)
        if self.max_buffer_size < 1:
            raise ConfigError("max_buffer_size", "must be at least 1")
        if self.flush_interval <= 0:
            raise ConfigError("flush_interval", "must be positive")
        if self.max_string_length < 1:
            raise ConfigError("max_string_length", "must be at least 1")

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]] = None) -> "AuditConfig":
        data = dict(data or {})
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(unknown[0], "unrecognized audit option")
        return cls(**data)


@dataclass
class AuditEntry:
    """A single sanitized audit event."""
    action: str
    details: Dict[str, Any] = field(default_factory=dict)
    context: Dict[str, Any] = field(default_factory=dict)
    result: str = "success"
    duration: Optional[float] = None
    timestamp: str = field(default_factory=utc_now_iso)

    @property
    def user_id(self) -> str:
        return self.context.get("user_id") or "system"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "timestamp": self.timestamp,
            "action": self.action,
            "details": self.details,
            "context": self.context,
            "result": self.result,
            "duration": self.duration,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditEntry":
        """Create from dictionary."""
        return cls(
            action=data["action"],
            details=data.get("details") or {},
            context=data.get("context") or {},
            result=data.get("result") or "success",
            duration=data.get("duration"),
            timestamp=data.get("timestamp") or utc_now_iso(),
        )


@dataclass
class AuditQuery:
    """Filters for audit queries; unset fields match everything."""
    action: Optional[str] = None
    user_id: Optional[str] = None
    start_time: Optional[Union[datetime, str]] = None
    end_time: Optional[Union[datetime, str]] = None
    limit: Optional[int] = None

    def __post_init__(self):
        for name in ("start_time", "end_time"):
            value = getattr(self, name)
            if value is not None:
                parsed = parse_timestamp(value)
                if parsed is None:
                    raise ConfigError(name, f"not an ISO-8601 timestamp: {value!r}")
                setattr(self, name, parsed)
        if self.limit is not None and self.limit < 1:
            raise ConfigError("limit", "must be at least 1")

    def matches(self, entry: AuditEntry) -> bool:
        if self.action is not None and entry.action != self.action:
            return False
        if self.user_id is not None and entry.user_id != self.user_id:
            return False
        if self.start_time is not None or self.end_time is not None:
            stamp = parse_timestamp(entry.timestamp)
            if stamp is None:
                return False
            if self.start_time is not None and stamp < self.start_time:
                return False
            if self.end_time is not None and stamp > self.end_time:
                return False
        return True

    def apply(self, entries: List[AuditEntry]) -> List[Dict[str, Any]]:
        matched = [entry.to_dict() for entry in entries if self.matches(entry)]
        if self.limit is not None:
            matched = matched[:self.limit]
        return matched


# =============================================================================
# AUDIT TRACKER
# =============================================================================


class AuditTracker:
    """
    Buffered audit trail.

    Usage::

        tracker = AuditTracker(log, AuditConfig(directory="./audit"))
        await tracker.start()
        tracker.audit("task.delete", {"task_id": 7}, {"user_id": "alice"})
        recent = tracker.query_audit(action="task.delete")
        await tracker.stop()
    """

    def __init__(
        self,
        logger: Logger,
        config: Optional[AuditConfig] = None,
        events: Optional[EventBus] = None,
    ):
        self.logger = logger
        self.config = config or AuditConfig()
        self.events = events or logger.events

        self._buffer: List[AuditEntry] = []
        # Batches detached while no event loop was running
        self._pending: List[List[AuditEntry]] = []
        self._persist_tasks: Set[asyncio.Task] = set()
        self._flush_task: Optional[asyncio.Task] = None
        self._last_file_ms = 0

    @property
    def buffer_size(self) -> int:
        return len(self._buffer)

    # -----------------------------------------------------------------
    # Recording
    # -----------------------------------------------------------------

    def sanitize_details(self, details: Any) -> Dict[str, Any]:
        """Redact secret fields and truncate long strings."""
        if details is None:
            details = {}
        elif not isinstance(details, dict):
            details = {"value": details}
        return sanitize_value(details, max_length=self.config.max_string_length)

    def audit(
        self,
        action: str,
        details: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> AuditEntry:
        """
        Record an audit event.

        Args:
            action: What happened (e.g. ``"task.update"``).
            details: Event payload; sanitized before storage.
            context: ``user_id``, ``session_id``, ``ip``, ``user_agent``,
                ``source``, plus ``result`` and ``duration`` of the action.

        Returns:
            The stored entry.
        """
        if context is None:
            context = {}
        elif not isinstance(context, dict):
            context = {"value": context}
        entry = AuditEntry(
            action=action,
            details=self.sanitize_details(details),
            context={
                "user_id": context.get("user_id") or "system",
                "session_id": context.get("session_id"),
                "ip": context.get("ip"),
                "user_agent": context.get("user_agent"),
                "source": context.get("source") or "internal",
            },
            result=context.get("result") or "success",
            duration=context.get("duration"),
        )

        self._buffer.append(entry)
        self.logger.audit(action, entry.details, entry.context)

        if entry.result in FAILURE_RESULTS:
            self.events.publish(MonitoringEvent.AUDIT_VIOLATION, entry.to_dict())

        if len(self._buffer) >= self.config.max_buffer_size:
            self._flush_in_background()

        return entry

    # -----------------------------------------------------------------
    # Persistence
    # -----------------------------------------------------------------

    def _detach(self) -> List[AuditEntry]:
        entries, self._buffer = self._buffer, []
        return entries

    def _flush_in_background(self) -> None:
        entries = self._detach()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._pending.append(entries)
            return
        task = loop.create_task(self._persist_batch(entries))
        self._persist_tasks.add(task)
        task.add_done_callback(self._persist_tasks.discard)

    async def flush(self) -> int:
        """
        Persist the buffer (and any batch awaiting persistence).

        Never raises.

        Returns:
            Number of entries written to disk.
        """
        batches = self._pending
        self._pending = []
        if self._buffer:
            batches.append(self._detach())

        if self._persist_tasks:
            await asyncio.gather(*list(self._persist_tasks), return_exceptions=True)

        written = 0
        for batch in batches:
            written += await self._persist_batch(batch)
        return written

    async def _persist_batch(self, entries: List[AuditEntry]) -> int:
        if not entries:
            return 0

        audit_data = {
            "flushTime": utc_now_iso(),
            "entries": [entry.to_dict() for entry in entries],
        }
        try:
            path = await self._persist_audit_data(audit_data)
        except (OSError, TypeError, ValueError) as e:
            self.logger.error("Failed to flush audit buffer", {
                "error": str(e),
                "entries_lost": len(entries),
            })
            return 0

        self.logger.info("Audit buffer flushed", {
            "entries_count": len(entries),
            "file": str(path),
        })
        return len(entries)

    async def _persist_audit_data(self, audit_data: Dict[str, Any]) -> Path:
        directory = Path(self.config.directory)
        await aiofiles.os.makedirs(directory, exist_ok=True)

        # file names must stay unique when two flushes share a millisecond
        stamp = max(int(time.time() * 1000), self._last_file_ms + 1)
        self._last_file_ms = stamp

        path = directory / f"audit-{stamp}.json"
        payload = json.dumps(audit_data, indent=2, default=str, ensure_ascii=False)
        async with aiofiles.open(path, mode="w", encoding="utf-8") as f:
            await f.write(payload)
        return path

    async def _flush_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.flush_interval)
            await self.flush()

    async def start(self) -> None:
        """Start the periodic flush loop."""
        if self._flush_task is None:
            self._flush_task = asyncio.get_running_loop().create_task(self._flush_loop())

    async def stop(self) -> None:
        """Cancel the flush loop and perform a final flush."""
        if self._flush_task is not None:
            self._flush_task.cancel()
            await asyncio.gather(self._flush_task, return_exceptions=True)
            self._flush_task = None
        await self.flush()

    # -----------------------------------------------------------------
    # Querying
    # -----------------------------------------------------------------

    def query_audit(
        self, filters: Optional[AuditQuery] = None, **criteria: Any
    ) -> List[Dict[str, Any]]:
        """
        Filter the in-memory buffer.

        Entries already flushed to disk are not included; use
        ``query_history`` for those.
        """
        query = filters if filters is not None else AuditQuery(**criteria)
        return query.apply(self._buffer)

    async def query_history(
        self, filters: Optional[AuditQuery] = None, **criteria: Any
    ) -> List[Dict[str, Any]]:
        """Filter persisted audit snapshots plus the live buffer, oldest first."""
        query = filters if filters is not None else AuditQuery(**criteria)
        directory = Path(self.config.directory)

        try:
            names = await aiofiles.os.listdir(directory)
        except FileNotFoundError:
            names = []
        except OSError as e:
            self.logger.warn("Failed to list audit snapshots", {"error": str(e)})
            names = []

        snapshots = []
        for name in names:
            if name.startswith("audit-") and name.endswith(".json"):
                stamp = name[len("audit-"):-len(".json")]
                if stamp.isdigit():
                    snapshots.append((int(stamp), name))
        snapshots.sort()

        entries: List[AuditEntry] = []
        for _, name in snapshots:
            try:
                async with aiofiles.open(directory / name, mode="r", encoding="utf-8") as f:
                    data = json.loads(await f.read())
                entries.extend(AuditEntry.from_dict(item) for item in data.get("entries", []))
            except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
                self.logger.warn("Skipping unreadable audit snapshot", {
                    "file": name,
                    "error": str(e),
                })

        entries.extend(self._buffer)
        return query.apply(entries)

    # -----------------------------------------------------------------
    # Reporting
    # -----------------------------------------------------------------

    def generate_audit_report(
        self,
        period: Optional[str] = None,
        entries: Optional[List[AuditEntry]] = None,
    ) -> Dict[str, Any]:
        """
        Summarize audit events and assess their risk.

        Covers the in-memory buffer unless ``entries`` is given.
        """
        summary = self._calculate_audit_summary(self._buffer if entries is None else entries)
        risks = self._assess_audit_risks(summary)
        return {
            "generated_at": utc_now_iso(),
            "period": period or "last-24-hours",
            "summary": summary,
            "risk_assessment": risks,
            "recommendations": self._generate_audit_recommendations(summary, risks),
        }

    def _calculate_audit_summary(self, entries: List[AuditEntry]) -> Dict[str, Any]:
        summary: Dict[str, Any] = {
            "total_events": len(entries),
            "events_by_action": {},
            "events_by_user": {},
            "events_by_result": {},
            "time_range": {},
        }
        if not entries:
            return summary

        for entry in entries:
            for bucket, value in (
                ("events_by_action", entry.action),
                ("events_by_user", entry.user_id),
                ("events_by_result", entry.result),
            ):
                summary[bucket][value] = summary[bucket].get(value, 0) + 1

        stamped = [
            (stamp, entry.timestamp)
            for entry in entries
            if (stamp := parse_timestamp(entry.timestamp)) is not None
        ]
        if stamped:
            summary["time_range"] = {
                "start": min(stamped)[1],
                "end": max(stamped)[1],
            }
        return summary

    def _assess_audit_risks(self, summary: Dict[str, Any]) -> Dict[str, Any]:
        risks: Dict[str, Any] = {"level": "low", "score": 0, "issues": []}
        total = summary["total_events"]
        if total == 0:
            return risks

        failure_rate = summary["events_by_result"].get("failure", 0) / total
        if failure_rate > 0.1:
            risks["score"] += 30
            risks["issues"].append("High failure rate in operations")

        for action, count in summary["events_by_action"].items():
            if count > total * 0.3:
                risks["score"] += 20
                risks["issues"].append(f"High frequency of {action} operations")

        if risks["score"] >= 50:
            risks["level"] = "high"
        elif risks["score"] >= 25:
            risks["level"] = "medium"
        return risks

    def _generate_audit_recommendations(
        self, summary: Dict[str, Any], risks: Dict[str, Any]
    ) -> List[Dict[str, str]]:
        recommendations = []
        if risks["level"] == "high":
            recommendations.append({
                "priority": "high",
                "message": "High security risk detected, immediate review required",
                "action": "Review recent audit logs and investigate suspicious activities",
            })
        if summary["events_by_result"].get("failure", 0) > 0:
            recommendations.append({
                "priority": "medium",
                "message": "Some operations are failing, investigate error patterns",
                "action": "Analyze failed operations and fix underlying issues",
            })
        return recommendations


# =============================================================================
# EXPORTS
# =============================================================================

__all__ = [
    "AuditConfig",
    "AuditEntry",
    "AuditQuery",
    "AuditTracker",
    "FAILURE_RESULTS",
]
