# =============================================================================
# TASK TRACKER OBSERVABILITY - STRUCTURED LOGGING
# =============================================================================
"""
Structured Logging Module

Provides the structured application logger used by the task tracker.

Features:
    - Immutable log entries with JSON and human-readable renderings
    - Level filtering (ERROR..TRACE) and typed log categories
    - Console sink rendered through structlog
    - Durable file sink with a single-writer FIFO queue
    - Size-based file rotation and count-based retention
    - Historical querying of the log files
    - Lightweight health report over cumulative log metrics
    - Sensitive data masking shared with the audit trail

The package's own diagnostics (sink failures and the like) are written to
stdlib ``logging`` module loggers; ``setup_logging`` renders those through
structlog.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import sys
import traceback
from collections import deque
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum, IntEnum
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional, Tuple, Union

import aiofiles
import aiofiles.os
import structlog

from monitoring.events import EventBus, MonitoringEvent
from monitoring.exceptions import ConfigError

logger = logging.getLogger(__name__)


# =============================================================================
# SENSITIVE DATA MASKING
# =============================================================================

REDACTED = "[REDACTED]"

# Keys whose values are replaced by the redaction marker (compared lowercased)
SENSITIVE_KEYS = frozenset([
    "password", "token", "key", "secret", "privatekey", "private_key",
])


def is_sensitive_key(key: Any) -> bool:
    """Check if a key name is one of the redacted field names."""
    return str(key).lower().replace("-", "_") in SENSITIVE_KEYS


def sanitize_value(value: Any, max_length: Optional[int] = None) -> Any:
    """
    Return a copy of ``value`` with sensitive fields redacted.

    Dicts are processed recursively (lists and tuples too). When
    ``max_length`` is given, longer strings are truncated and suffixed
    with ``...``.
    """
    if isinstance(value, dict):
        return {
            key: REDACTED if is_sensitive_key(key) else sanitize_value(item, max_length)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [sanitize_value(item, max_length) for item in value]
    if max_length is not None and isinstance(value, str) and len(value) > max_length:
        return value[:max_length] + "..."
    return value


def mask_sensitive_data(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Structlog processor that redacts sensitive values in log events."""
    return sanitize_value(event_dict)


# =============================================================================
# LEVELS, TYPES AND TIME HELPERS
# =============================================================================


class LogLevel(IntEnum):
    """Log levels (lower number = more severe)."""
    ERROR = 0
    WARN = 1
    INFO = 2
    DEBUG = 3
    TRACE = 4

    @classmethod
    def parse(cls, value: Union["LogLevel", int, str]) -> "LogLevel":
        """Accept an enum member, its ordinal, or its (case-insensitive) name."""
        if isinstance(value, cls):
            return value
        if isinstance(value, int) and not isinstance(value, bool):
            try:
                return cls(value)
            except ValueError:
                raise ConfigError("level", f"unknown level ordinal {value}") from None
        if isinstance(value, str):
            name = value.strip().upper()
            if name == "WARNING":
                name = "WARN"
            if name in cls.__members__:
                return cls[name]
            if name.isdigit():
                return cls.parse(int(name))
        raise ConfigError("level", f"unknown level {value!r}")


class LogType(Enum):
    """Log entry types."""
    SYSTEM = "system"
    USER = "user"
    SECURITY = "security"
    AUDIT = "audit"
    PERFORMANCE = "performance"
    BUSINESS = "business"


# structlog has no trace level
_CONSOLE_METHODS = {
    LogLevel.ERROR: "error",
    LogLevel.WARN: "warning",
    LogLevel.INFO: "info",
    LogLevel.DEBUG: "debug",
    LogLevel.TRACE: "debug",
}


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string with millisecond precision."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace(
        "+00:00", "Z"
    )


def parse_timestamp(value: Union[datetime, str, None]) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp into an aware datetime (naive = UTC)."""
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# =============================================================================
# CONFIGURATION
# =============================================================================


@dataclass
class LoggerConfig:
    """Logger configuration. Values are validated on construction."""
    level: Union[LogLevel, int, str] = LogLevel.INFO
    enable_console: bool = True
    enable_file: bool = True
    log_directory: str = ".speco/logs"
    file_prefix: str = "speco-tasker"
    max_file_size: int = 10 * 1024 * 1024  # 10 MB
    max_files: int = 30
    structured_output: bool = True  # JSON lines; False = readable lines
    console_format: str = "text"  # "text" or "json"
    cleanup_interval: float = 3600.0  # seconds

    def __post_init__(self):
        self.level = LogLevel.parse(self.level)
        self.log_directory = str(self.log_directory)
        if self.max_file_size <= 0:
            raise ConfigError("max_file_size", "must be positive")
        if self.max_files < 1:
            raise ConfigError("max_files", "must be at least 1")
        if self.cleanup_interval <= 0:
            raise ConfigError("cleanup_interval", "must be positive")
        if self.console_format not in ("text", "json"):
            raise ConfigError("console_format", "must be 'text' or 'json'")
        if not self.file_prefix or re.search(r"[\\/]", self.file_prefix):
            raise ConfigError("file_prefix", "must be a plain, non-empty name")

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]] = None) -> "LoggerConfig":
        data = dict(data or {})
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(unknown[0], "unrecognized logger option")
        return cls(**data)


# =============================================================================
# LOG ENTRY
# =============================================================================


@dataclass(frozen=True)
class LogEntry:
    """
    One structured log record.

    Immutable once constructed; ``to_structured()`` and ``to_readable()``
    depend only on the fields. Passing an exception as ``error`` stores its
    message and, unless given, its formatted traceback.
    """
    level: LogLevel = LogLevel.INFO
    type: LogType = LogType.SYSTEM
    category: str = "general"
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)
    context: Dict[str, Any] = field(default_factory=dict)
    user_id: str = "system"
    session_id: Optional[str] = None
    request_id: Optional[str] = None
    duration: Optional[float] = None
    error: Optional[str] = None
    stack_trace: Optional[str] = None
    source: str = "application"
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=utc_now_iso)

    def __post_init__(self):
        set_ = object.__setattr__
        set_(self, "level", LogLevel(self.level))
        set_(self, "type", LogType(self.type))
        set_(self, "category", self.category or "general")
        set_(self, "message", str(self.message))
        set_(self, "details", dict(self.details or {}))
        set_(self, "context", dict(self.context or {}))
        set_(self, "metadata", dict(self.metadata or {}))
        set_(self, "user_id", self.user_id or "system")
        set_(self, "source", self.source or "application")

        if isinstance(self.error, BaseException):
            exc = self.error
            set_(self, "error", str(exc) or type(exc).__name__)
            if self.stack_trace is None and exc.__traceback__ is not None:
                set_(self, "stack_trace", "".join(
                    traceback.format_exception(type(exc), exc, exc.__traceback__)
                ))

    @property
    def level_name(self) -> str:
        return self.level.name

    def to_structured(self) -> Dict[str, Any]:
        """Convert to a plain dict (the JSON-lines record)."""
        return {
            "timestamp": self.timestamp,
            "level": int(self.level),
            "level_name": self.level.name,
            "type": self.type.value,
            "category": self.category,
            "message": self.message,
            "details": self.details,
            "context": self.context,
            "user_id": self.user_id,
            "session_id": self.session_id,
            "request_id": self.request_id,
            "duration": self.duration,
            "error": self.error,
            "stack_trace": self.stack_trace,
            "source": self.source,
            "metadata": self.metadata,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_structured(), default=str, ensure_ascii=False)

    def to_readable(self) -> str:
        """Render as one human-readable line."""
        readable = (
            f"[{self.timestamp}] {self.level.name} "
            f"[{self.type.value}:{self.category}] {self.message}"
        )
        if self.user_id and self.user_id != "system":
            readable += f" [User: {self.user_id}]"
        if self.duration is not None:
            readable += f" ({self.duration}ms)"
        if self.error:
            readable += f" Error: {self.error}"
        return readable


_READABLE_LINE = re.compile(
    r"^\[(?P<timestamp>[^\]]+)\] (?P<level>[A-Z]+) "
    r"\[(?P<type>[^:\]]+):(?P<category>[^\]]*)\] "
    r"(?P<message>.*?)"
    r"(?: \[User: (?P<user_id>[^\]]+)\])?"
    r"(?: \((?P<duration>-?\d+(?:\.\d+)?)ms\))?"
    r"(?: Error: (?P<error>.*))?$"
)


def parse_readable_line(line: str) -> Dict[str, Any]:
    """
    Parse a line produced by ``LogEntry.to_readable()``.

    Raises:
        ValueError: The line is not in the readable format.
    """
    match = _READABLE_LINE.match(line.rstrip("\n"))
    if match is None:
        raise ValueError("not a readable log line")
    try:
        level = LogLevel[match["level"]]
    except KeyError:
        raise ValueError(f"unknown level {match['level']}") from None

    duration = match["duration"]
    return {
        "timestamp": match["timestamp"],
        "level": int(level),
        "level_name": level.name,
        "type": match["type"],
        "category": match["category"] or "general",
        "message": match["message"],
        "user_id": match["user_id"] or "system",
        "session_id": None,
        "duration": float(duration) if duration is not None else None,
        "error": match["error"],
    }


def parse_json_line(line: str) -> Dict[str, Any]:
    """Parse a JSON-lines record; raises ValueError for anything else."""
    record = json.loads(line)
    if not isinstance(record, dict):
        raise ValueError("log record is not an object")
    return record


# =============================================================================
# LOG QUERY
# =============================================================================


@dataclass
class LogQuery:
    """Filters for ``Logger.query_logs``; unset fields match everything."""
    level: Optional[Union[LogLevel, int, str]] = None
    type: Optional[Union[LogType, str]] = None
    category: Optional[str] = None
    start_time: Optional[Union[datetime, str]] = None
    end_time: Optional[Union[datetime, str]] = None
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    message: Optional[str] = None
    limit: int = 1000

    def __post_init__(self):
        if self.level is not None:
            self.level = LogLevel.parse(self.level)
        if self.type is not None:
            self.type = LogType(self.type)
        if self.start_time is not None:
            self.start_time = self._time("start_time", self.start_time)
        if self.end_time is not None:
            self.end_time = self._time("end_time", self.end_time)
        if self.limit < 1:
            raise ConfigError("limit", "must be at least 1")

    @staticmethod
    def _time(name: str, value: Union[datetime, str]) -> datetime:
        parsed = parse_timestamp(value)
        if parsed is None:
            raise ConfigError(name, f"not an ISO-8601 timestamp: {value!r}")
        return parsed

    def matches(self, record: Dict[str, Any]) -> bool:
        if self.level is not None and record.get("level") != int(self.level):
            return False
        if self.type is not None and record.get("type") != self.type.value:
            return False
        if self.category is not None and record.get("category") != self.category:
            return False

        if self.start_time is not None or self.end_time is not None:
            stamp = parse_timestamp(record.get("timestamp"))
            if stamp is None:
                return False
            if self.start_time is not None and stamp < self.start_time:
                return False
            if self.end_time is not None and stamp > self.end_time:
                return False

        if self.user_id is not None and record.get("user_id") != self.user_id:
            return False
        if self.session_id is not None and record.get("session_id") != self.session_id:
            return False
        if self.message is not None:
            text = str(record.get("message", ""))
            if self.message.lower() not in text.lower():
                return False
        return True


# =============================================================================
# LOGGER
# =============================================================================


class Logger:
    """
    Structured logger with console and file sinks.

    File writes go through an in-memory FIFO queue drained by at most one
    writer task at a time. A failed write puts the entry back at the head
    of the queue and stops the drain; the next log call resumes it.

    Usage::

        log = Logger(LoggerConfig(log_directory="./logs"))
        await log.start()
        log.info("Task created", {"task_id": 12})
        log.performance("save_tasks", 41.5)
        entries = await log.query_logs(level=LogLevel.ERROR, limit=20)
        await log.close()
    """

    def __init__(
        self,
        config: Optional[LoggerConfig] = None,
        events: Optional[EventBus] = None,
    ):
        self.config = config or LoggerConfig()
        self.events = events or EventBus()
        self.console_enabled = self.config.enable_console
        self.file_enabled = self.config.enable_file

        self._name_stamp = ""
        self._name_seq = 0
        self._file_pattern = re.compile(
            rf"^{re.escape(self.config.file_prefix)}-"
            r"(\d{4}-\d{2}-\d{2}-\d{2}-\d{2}-\d{2})(?:-(\d+))?\.log$"
        )
        self.current_log_file: Path = self._generate_log_file_name()

        self._write_queue: Deque[LogEntry] = deque()
        self._writer_task: Optional[asyncio.Task] = None
        self._cleanup_task: Optional[asyncio.Task] = None

        self._metrics: Dict[str, Any] = {
            "total_logs": 0,
            "logs_by_level": {},
            "logs_by_type": {},
            "errors": 0,
            "warnings": 0,
        }
        self._console = self._build_console_logger()

    # -----------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------

    async def start(self) -> None:
        """
        Prepare the log directory and start periodic retention cleanup.

        If the directory cannot be created the file sink is disabled and
        the logger keeps writing to the console.
        """
        if self.file_enabled:
            try:
                await aiofiles.os.makedirs(self.config.log_directory, exist_ok=True)
            except OSError as e:
                logger.error(
                    f"Failed to initialize log directory {self.config.log_directory}: {e}"
                )
                self.file_enabled = False

        if self.file_enabled:
            await self.cleanup_old_logs()
            if self._cleanup_task is None:
                self._cleanup_task = asyncio.get_running_loop().create_task(
                    self._periodic_cleanup()
                )
            # entries logged before start() are still queued
            self._ensure_writer()

        self.info("Logger initialized", {
            "log_directory": self.config.log_directory,
            "current_log_file": str(self.current_log_file),
            "file_sink": self.file_enabled,
        })

    async def flush(self) -> int:
        """
        Wait until the write queue has been drained.

        Returns:
            Number of entries still queued (non-zero after a write failure).
        """
        task = self._writer_task
        if task is not None and not task.done():
            await task
        if self._write_queue and self.file_enabled:
            task = self._ensure_writer()
            if task is not None:
                await task
        return len(self._write_queue)

    async def close(self) -> None:
        """Stop cleanup, drain pending writes, then release log listeners."""
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            await asyncio.gather(self._cleanup_task, return_exceptions=True)
            self._cleanup_task = None

        remaining = await self.flush()
        if remaining:
            logger.error(f"Logger closed with {remaining} unwritten log entries")

        self.events.clear(MonitoringEvent.LOG)

    # -----------------------------------------------------------------
    # Logging API
    # -----------------------------------------------------------------

    def log(
        self,
        level: Union[LogLevel, int],
        log_type: Union[LogType, str],
        category: str,
        message: str,
        **options: Any,
    ) -> Optional[LogEntry]:
        """
        Record one log event.

        Entries less severe than the configured level are dropped. Never
        raises; failures are reported on the diagnostic logger.

        Args:
            level: Severity.
            log_type: Entry type.
            category: Free-form category.
            message: Log message.
            **options: Any other ``LogEntry`` field (details, context,
                user_id, duration, error, ...).

        Returns:
            The recorded entry, or ``None`` if it was filtered or rejected.
        """
        try:
            level = LogLevel.parse(level)
            if level > self.config.level:
                return None

            context = options.get("context")
            if context is None:
                context = {}
            elif not isinstance(context, dict):
                context = {"value": context}
            options["context"] = context
            for key in ("user_id", "session_id", "request_id"):
                if options.get(key) is None and context.get(key) is not None:
                    options[key] = context[key]

            entry = LogEntry(
                level=level,
                type=log_type,
                category=category,
                message=message,
                **options,
            )
        except (TypeError, ValueError) as e:
            logger.error(f"Rejected log entry {message!r}: {e}")
            return None

        self._update_metrics(entry)
        self.events.publish(MonitoringEvent.LOG, entry)

        if self.console_enabled:
            try:
                self._output_to_console(entry)
            except Exception as e:
                logger.error(f"Failed to write log to console: {e}")

        if self.file_enabled:
            self._output_to_file(entry)

        return entry

    def error(self, message: str, details=None, context=None, **options) -> Optional[LogEntry]:
        return self.log(LogLevel.ERROR, LogType.SYSTEM, "error", message,
                        details=details, context=context, **options)

    def warn(self, message: str, details=None, context=None, **options) -> Optional[LogEntry]:
        return self.log(LogLevel.WARN, LogType.SYSTEM, "warning", message,
                        details=details, context=context, **options)

    warning = warn

    def info(self, message: str, details=None, context=None, **options) -> Optional[LogEntry]:
        return self.log(LogLevel.INFO, LogType.SYSTEM, "info", message,
                        details=details, context=context, **options)

    def debug(self, message: str, details=None, context=None, **options) -> Optional[LogEntry]:
        return self.log(LogLevel.DEBUG, LogType.SYSTEM, "debug", message,
                        details=details, context=context, **options)

    def trace(self, message: str, details=None, context=None, **options) -> Optional[LogEntry]:
        return self.log(LogLevel.TRACE, LogType.SYSTEM, "trace", message,
                        details=details, context=context, **options)

    def audit(self, operation: str, params=None, context=None, **options) -> Optional[LogEntry]:
        """Log an audited operation."""
        return self.log(LogLevel.INFO, LogType.AUDIT, "audit", operation,
                        details=params, context=context, **options)

    def security(self, event: str, details=None, context=None, **options) -> Optional[LogEntry]:
        """Log a security event (WARN)."""
        return self.log(LogLevel.WARN, LogType.SECURITY, "security", event,
                        details=details, context=context, **options)

    def performance(
        self, operation: str, duration: float, details=None, context=None, **options
    ) -> Optional[LogEntry]:
        """Log an operation duration in milliseconds."""
        return self.log(LogLevel.INFO, LogType.PERFORMANCE, "performance", operation,
                        duration=duration, details=details, context=context, **options)

    def business(self, event: str, details=None, context=None, **options) -> Optional[LogEntry]:
        return self.log(LogLevel.INFO, LogType.BUSINESS, "business", event,
                        details=details, context=context, **options)

    # -----------------------------------------------------------------
    # Metrics
    # -----------------------------------------------------------------

    def _update_metrics(self, entry: LogEntry) -> None:
        metrics = self._metrics
        metrics["total_logs"] += 1

        by_level = metrics["logs_by_level"]
        by_level[entry.level.name] = by_level.get(entry.level.name, 0) + 1

        by_type = metrics["logs_by_type"]
        by_type[entry.type.value] = by_type.get(entry.type.value, 0) + 1

        if entry.level == LogLevel.ERROR:
            metrics["errors"] += 1
        elif entry.level == LogLevel.WARN:
            metrics["warnings"] += 1

    def get_metrics(self) -> Dict[str, Any]:
        """Return a copy of the cumulative log metrics."""
        return {
            "total_logs": self._metrics["total_logs"],
            "logs_by_level": dict(self._metrics["logs_by_level"]),
            "logs_by_type": dict(self._metrics["logs_by_type"]),
            "errors": self._metrics["errors"],
            "warnings": self._metrics["warnings"],
        }

    # -----------------------------------------------------------------
    # Sinks
    # -----------------------------------------------------------------

    def _build_console_logger(self) -> Any:
        if self.config.console_format == "json":
            renderer = structlog.processors.JSONRenderer(default=str)
        else:
            renderer = structlog.dev.ConsoleRenderer(colors=False)

        return structlog.wrap_logger(
            structlog.PrintLogger(file=sys.stderr),
            processors=[
                structlog.stdlib.add_log_level,
                mask_sensitive_data,
                renderer,
            ],
            wrapper_class=structlog.make_filtering_bound_logger(logging.DEBUG),
        )

    def _output_to_console(self, entry: LogEntry) -> None:
        emit = getattr(self._console, _CONSOLE_METHODS[entry.level])
        fields_: Dict[str, Any] = {
            "timestamp": entry.timestamp,
            "log_type": entry.type.value,
            "category": entry.category,
        }
        if entry.user_id != "system":
            fields_["user_id"] = entry.user_id
        if entry.duration is not None:
            fields_["duration_ms"] = entry.duration
        if entry.details:
            fields_["details"] = entry.details
        if entry.error:
            fields_["error"] = entry.error
        emit(entry.message, **fields_)

    def _output_to_file(self, entry: LogEntry) -> None:
        self._write_queue.append(entry)
        self._ensure_writer()

    @property
    def is_writing(self) -> bool:
        return self._writer_task is not None and not self._writer_task.done()

    @property
    def pending_writes(self) -> int:
        return len(self._write_queue)

    def _ensure_writer(self) -> Optional[asyncio.Task]:
        """Start the writer task unless one is already draining the queue."""
        if self.is_writing:
            return self._writer_task
        if not self._write_queue:
            return None
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Outside an event loop; the queue is drained by the next call
            # made from inside one (or by flush()/close()).
            return None
        self._writer_task = loop.create_task(self._process_write_queue())
        return self._writer_task

    async def _process_write_queue(self) -> None:
        while self._write_queue:
            entry = self._write_queue.popleft()
            try:
                line = entry.to_json() if self.config.structured_output else entry.to_readable()
            except (TypeError, ValueError) as e:
                logger.error(f"Dropping unserializable log entry {entry.message!r}: {e}")
                continue

            try:
                async with aiofiles.open(
                    self.current_log_file, mode="a", encoding="utf-8"
                ) as f:
                    await f.write(line + "\n")
            except OSError as e:
                logger.error(f"Failed to write log to file {self.current_log_file}: {e}")
                self._write_queue.appendleft(entry)
                break

            await self._check_file_rotation()

    # -----------------------------------------------------------------
    # Rotation and retention
    # -----------------------------------------------------------------

    def _generate_log_file_name(self) -> Path:
        stamp = datetime.now(timezone.utc).strftime("%Y-%m-%d-%H-%M-%S")
        if stamp == self._name_stamp:
            self._name_seq += 1
        else:
            self._name_stamp, self._name_seq = stamp, 0
        suffix = f"-{self._name_seq}" if self._name_seq else ""
        return Path(self.config.log_directory) / f"{self.config.file_prefix}-{stamp}{suffix}.log"

    async def _check_file_rotation(self) -> None:
        try:
            stats = await aiofiles.os.stat(self.current_log_file)
        except OSError:
            return
        if stats.st_size > self.config.max_file_size:
            self.current_log_file = self._generate_log_file_name()

    def _extract_file_key(self, file_name: str) -> Optional[Tuple[datetime, int]]:
        """Return (timestamp, sequence) embedded in a log file name."""
        match = self._file_pattern.match(file_name)
        if match is None:
            return None
        try:
            stamp = datetime.strptime(match.group(1), "%Y-%m-%d-%H-%M-%S")
        except ValueError:
            return None
        return stamp.replace(tzinfo=timezone.utc), int(match.group(2) or 0)

    def _dated_log_files(self, names: List[str]) -> List[Tuple[Tuple[datetime, int], str]]:
        """Log files with a parseable name, newest first."""
        dated = []
        for name in names:
            key = self._extract_file_key(name)
            if key is not None:
                dated.append((key, name))
        dated.sort(reverse=True)
        return dated

    async def cleanup_old_logs(self) -> List[str]:
        """
        Delete the oldest log files beyond ``max_files``.

        Files whose name carries no parseable timestamp are left alone.

        Returns:
            Names of the deleted files.
        """
        directory = Path(self.config.log_directory)
        try:
            names = await aiofiles.os.listdir(directory)
        except OSError as e:
            self.warn("Failed to cleanup old logs", {"error": str(e)})
            return []

        deleted = []
        for _, name in self._dated_log_files(names)[self.config.max_files:]:
            try:
                await aiofiles.os.remove(directory / name)
                deleted.append(name)
            except OSError as e:
                self.warn("Failed to delete old log file", {"file": name, "error": str(e)})
        return deleted

    async def _periodic_cleanup(self) -> None:
        while True:
            await asyncio.sleep(self.config.cleanup_interval)
            await self.cleanup_old_logs()

    # -----------------------------------------------------------------
    # Querying
    # -----------------------------------------------------------------

    def _log_files_newest_first(self, names: List[str]) -> List[Path]:
        directory = Path(self.config.log_directory)
        dated = [name for _, name in self._dated_log_files(names)]
        undated = sorted(
            (
                name for name in names
                if name.startswith(f"{self.config.file_prefix}-")
                and name.endswith(".log")
                and name not in dated
            ),
            reverse=True,
        )
        return [directory / name for name in dated + undated]

    def _parse_line(self, line: str) -> Dict[str, Any]:
        if self.config.structured_output:
            return parse_json_line(line)
        return parse_readable_line(line)

    async def query_logs(
        self, filters: Optional[LogQuery] = None, **criteria: Any
    ) -> List[Dict[str, Any]]:
        """
        Search the log files, newest file first.

        Args:
            filters: A ``LogQuery``; alternatively pass its fields as
                keyword arguments.

        Returns:
            Matching records (at most ``limit``). Unreadable files and
            corrupt lines are skipped.
        """
        query = filters if filters is not None else LogQuery(**criteria)

        try:
            names = await aiofiles.os.listdir(self.config.log_directory)
        except OSError as e:
            self.error("Failed to query logs", {"error": str(e)})
            return []

        results: List[Dict[str, Any]] = []
        for path in self._log_files_newest_first(names):
            try:
                async with aiofiles.open(path, mode="r", encoding="utf-8", errors="replace") as f:
                    content = await f.read()
            except OSError:
                continue

            for line in content.splitlines():
                if not line.strip():
                    continue
                try:
                    record = self._parse_line(line)
                except ValueError:
                    continue
                if query.matches(record):
                    results.append(record)
                    if len(results) >= query.limit:
                        return results

        return results

    # -----------------------------------------------------------------
    # Reporting
    # -----------------------------------------------------------------

    def generate_report(self, period: Optional[str] = None) -> Dict[str, Any]:
        """Build a report of log metrics, health, recommendations and alerts."""
        return {
            "generated_at": utc_now_iso(),
            "period": period or "current-session",
            "metrics": self.get_metrics(),
            "health": self._assess_health(),
            "recommendations": self._generate_recommendations(),
            "alerts": self._check_alerts(),
        }

    def _assess_health(self) -> Dict[str, Any]:
        metrics = self._metrics
        total = max(metrics["total_logs"], 1)
        status = "healthy"
        score = 100

        error_rate = metrics["errors"] / total
        if error_rate > 0.1:
            status = "critical"
            score -= 50
        elif error_rate > 0.05:
            status = "warning"
            score -= 25

        warning_rate = metrics["warnings"] / total
        if warning_rate > 0.2:
            score -= 10

        return {
            "status": status,
            "score": max(0, score),
            "indicators": {
                "error_rate": f"{error_rate * 100:.2f}%",
                "warning_rate": f"{warning_rate * 100:.2f}%",
                "total_logs": metrics["total_logs"],
            },
        }

    def _generate_recommendations(self) -> List[Dict[str, str]]:
        metrics = self._metrics
        recommendations = []

        if metrics["errors"] > metrics["total_logs"] * 0.05:
            recommendations.append({
                "priority": "high",
                "message": "Error rate is high, check system stability",
                "action": "Review recent error logs and fix underlying issues",
            })
        if metrics["warnings"] > metrics["total_logs"] * 0.1:
            recommendations.append({
                "priority": "medium",
                "message": "Many warnings logged, review configuration",
                "action": "Review warning logs and optimize configurations",
            })
        if metrics["total_logs"] < 100:
            recommendations.append({
                "priority": "low",
                "message": "Few log entries recorded, consider more detailed logging",
                "action": "Enable more detailed logging for better observability",
            })
        return recommendations

    def _check_alerts(self) -> List[Dict[str, str]]:
        metrics = self._metrics
        alerts = []

        if metrics["errors"] > 10:
            alerts.append({
                "level": "critical",
                "message": f"High error count: {metrics['errors']} errors detected",
                "timestamp": utc_now_iso(),
            })
        if metrics["warnings"] > 50:
            alerts.append({
                "level": "warning",
                "message": f"High warning count: {metrics['warnings']} warnings detected",
                "timestamp": utc_now_iso(),
            })
        return alerts


# =============================================================================
# DIAGNOSTIC LOGGING SETUP
# =============================================================================


def setup_logging(
    level: str = "INFO",
    fmt: str = "text",
    mask_sensitive: bool = True,
    stream: Any = None,
) -> logging.Logger:
    """
    Configure stdlib and structlog output for the package's diagnostics.

    Records from ``logging.getLogger(...)`` loggers and from
    ``structlog.get_logger()`` are rendered by the same structlog
    processor chain.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        fmt: Output format, ``"json"`` or ``"text"``.
        mask_sensitive: Redact sensitive values.
        stream: Output stream (default ``sys.stderr``).

    Returns:
        Root logger instance.
    """
    numeric_level = getattr(logging, str(level).upper(), logging.INFO)

    shared: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]
    if fmt == "json":
        shared.append(structlog.processors.format_exc_info)
    if mask_sensitive:
        shared.append(mask_sensitive_data)

    if fmt == "json":
        renderer = structlog.processors.JSONRenderer(default=str)
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=False)

    structlog.configure(
        processors=shared + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    root = logging.getLogger()
    root.setLevel(numeric_level)
    root.handlers.clear()

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setLevel(numeric_level)
    handler.setFormatter(formatter)
    root.addHandler(handler)

    logging.getLogger("asyncio").setLevel(logging.WARNING)

    return root


# =============================================================================
# EXPORTS
# =============================================================================

__all__ = [
    # Levels and types
    "LogLevel",
    "LogType",
    # Entries
    "LogEntry",
    "LogQuery",
    "parse_readable_line",
    "parse_json_line",
    # Logger
    "Logger",
    "LoggerConfig",
    # Data masking
    "REDACTED",
    "SENSITIVE_KEYS",
    "is_sensitive_key",
    "sanitize_value",
    "mask_sensitive_data",
    # Time helpers
    "utc_now_iso",
    "parse_timestamp",
    # Setup
    "setup_logging",
]
