"""Numeric limits and timeouts - no circular dependencies."""

from __future__ import annotations

SHUTDOWN_TIMEOUT = 5.0
VERSION_QUERY_TIMEOUT = 15.0

SUBPROCESS_LIMIT = 10 * 1024 * 1024

MAX_LOG_LINES = 2000
MAX_LOG_MESSAGE_LENGTH = 4096
MAX_STDERR_LINE_LENGTH = 2000

DEFAULT_SEARCH_LIMIT = 20
