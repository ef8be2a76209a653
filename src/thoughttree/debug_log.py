"""Debug logging with an exportable ring buffer.

Captures both ``log`` calls made by ThoughtTree itself and records emitted
through Python's logging module (the ACP SDK logs there) into one buffer
that can be written out for bug reports.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from thoughttree.limits import MAX_LOG_LINES, MAX_LOG_MESSAGE_LENGTH

if TYPE_CHECKING:
    from pathlib import Path


class LogSource(Enum):
    """Source of the log entry."""

    THOUGHTTREE = "THOUGHTTREE"
    LOGGING = "LOGGING"


@dataclass(slots=True)
class LogEntry:
    """A captured log entry."""

    group: str  # Level name (DEBUG, INFO, WARNING, ERROR)
    message: str
    timestamp: float
    source: LogSource


log_buffer: deque[LogEntry] = deque(maxlen=MAX_LOG_LINES)

_buffer_generation: int = 0

_stdlib_logger = logging.getLogger("thoughttree")


class ThoughtTreeLogger:
    """Logger that captures entries for export and forwards them to ``logging``."""

    def _log(self, level: int, message: str) -> None:
        if len(message) > MAX_LOG_MESSAGE_LENGTH:
            message = message[:MAX_LOG_MESSAGE_LENGTH] + "... [truncated]"
        log_buffer.append(
            LogEntry(
                group=logging.getLevelName(level),
                message=message,
                timestamp=time.time(),
                source=LogSource.THOUGHTTREE,
            )
        )
        _stdlib_logger.log(level, message)

    def debug(self, message: str) -> None:
        self._log(logging.DEBUG, message)

    def info(self, message: str) -> None:
        self._log(logging.INFO, message)

    def warning(self, message: str) -> None:
        self._log(logging.WARNING, message)

    def error(self, message: str) -> None:
        self._log(logging.ERROR, message)


class DebugLogHandler(logging.Handler):
    """Logging handler that captures third-party records to the debug buffer."""

    def emit(self, record: logging.LogRecord) -> None:
        # Our own records are already in the buffer.
        if record.name == _stdlib_logger.name:
            return
        try:
            msg = self.format(record)
            log_buffer.append(
                LogEntry(
                    group=record.levelname,
                    message=msg,
                    timestamp=record.created,
                    source=LogSource.LOGGING,
                )
            )
        except Exception:
            self.handleError(record)


_debug_logging_initialized: bool = False


def setup_debug_logging(level: int = logging.WARNING) -> None:
    """Set up the debug logging handler for Python's logging module.

    This is idempotent - calling it multiple times has no effect after the first call.
    """
    global _debug_logging_initialized

    if _debug_logging_initialized:
        return

    handler = DebugLogHandler()
    handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    if root_logger.level == logging.NOTSET or root_logger.level > level:
        root_logger.setLevel(level)

    _debug_logging_initialized = True
    log.debug("Debug logging initialized")


def clear_log_buffer() -> None:
    """Clear the log buffer."""
    global _buffer_generation
    log_buffer.clear()
    _buffer_generation += 1


def get_buffer_generation() -> int:
    """Get the current buffer generation (incremented on clear)."""
    return _buffer_generation


def export_logs_to_file(file_path: str | Path) -> int:
    """Export all logs from the buffer to a file.

    Returns:
        Number of log entries written
    """
    from datetime import datetime
    from pathlib import Path

    output_path = Path(file_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    with output_path.open("w", encoding="utf-8") as f:
        f.write("# ThoughtTree Debug Log Export\n")
        f.write(f"# Total entries: {len(log_buffer)}\n")
        f.write(f"# Buffer generation: {_buffer_generation}\n")
        f.write("# " + "=" * 76 + "\n\n")

        for entry in log_buffer:
            ts = datetime.fromtimestamp(entry.timestamp).strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]
            source = "[PY]" if entry.source == LogSource.LOGGING else "[TT]"
            f.write(f"{ts} {source} [{entry.group}] {entry.message}\n")

    return len(log_buffer)


log = ThoughtTreeLogger()
