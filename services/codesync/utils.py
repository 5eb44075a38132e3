"""
Logging and error handling utilities for the code bus sync service.

Provides:
- Structured logging with rotation
- Custom exception classes
- Performance timing context managers
- HTTP date helpers shared by the sync phases
"""

from __future__ import annotations

import base64
import hashlib
import sys
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import format_datetime, parsedate_to_datetime
from pathlib import Path
from typing import Any, Optional

from loguru import logger


# =============================================================================
# Logging Setup
# =============================================================================

# Custom format for pretty console output
CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<magenta>{module}</magenta>:<cyan>{function}</cyan> | "
    "<level>{message}</level>"
)

# Detailed format for file logs
FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
    "{level: <8} | "
    "{name}:{function}:{line} | "
    "{message}"
)

# Simple format for verbose mode
VERBOSE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<level>{message}</level>"
)


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = "./logs/codesync.log",
    max_size_mb: int = 50,
    backup_count: int = 5,
    verbose: bool = False,
) -> None:
    """
    Configure logging for the sync service.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_file: Path to log file. None disables the file sink.
        max_size_mb: Maximum log file size before rotation.
        backup_count: Number of backup log files to keep.
        verbose: If True, use simplified verbose format.
    """
    # Remove default handler
    logger.remove()

    logger.add(
        sys.stderr,
        format=VERBOSE_FORMAT if verbose else CONSOLE_FORMAT,
        level=level,
        colorize=True,
    )

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        logger.add(
            str(log_path),
            format=FILE_FORMAT,
            level="DEBUG",  # Always log everything to file
            rotation=f"{max_size_mb} MB",
            retention=backup_count,
            compression="zip",
            enqueue=True,  # Thread-safe
        )

    logger.info(f"Logging configured: level={level}, file={log_file}")


# =============================================================================
# Custom Exceptions
# =============================================================================

class CodeSyncError(Exception):
    """Base exception for code sync errors."""
    pass


class StatusCodeError(CodeSyncError):
    """Error carrying an HTTP-like status code."""
    def __init__(self, message: str, status: int = 500):
        super().__init__(message)
        self.status = status


class RateLimitError(StatusCodeError):
    """Upstream rejected the request because the rate limit is exhausted."""
    def __init__(self, message: str, retry_at: Optional[float] = None):
        super().__init__(message, 429)
        self.retry_at = retry_at


class EventError(StatusCodeError):
    """Malformed or unsupported change event."""
    def __init__(self, message: str, status: int = 400):
        super().__init__(message, status)


class JobResumeError(CodeSyncError):
    """A job was re-invoked in a phase that cannot be resumed."""
    pass


class RetryDeferredError(CodeSyncError):
    """A rate-limit wait exceeds what this invocation may spend idling."""
    def __init__(self, message: str, retry_at: float):
        super().__init__(message)
        self.retry_at = retry_at


class StorageError(CodeSyncError):
    """Error with object storage operations."""
    pass


class ConfigError(CodeSyncError):
    """Error with configuration."""
    pass


# =============================================================================
# Performance Timing
# =============================================================================

@contextmanager
def timed_operation(operation_name: str, log_level: str = "info"):
    """
    Context manager for timing operations.

    Example:
        with timed_operation("Collecting changes"):
            collector.collect(event)
    """
    start_time = time.perf_counter()
    try:
        yield
    finally:
        elapsed = time.perf_counter() - start_time

        log_func = getattr(logger, log_level)
        log_func(f"{operation_name} completed in {elapsed:.3f}s")


@dataclass
class CallTimer:
    """Call counters and accumulated time for one upstream (github or storage)."""
    name: str
    time: float = 0.0
    counts: dict[str, int] = field(default_factory=dict)

    @contextmanager
    def measure(self, operation: str):
        start = time.perf_counter()
        try:
            yield
        finally:
            self.time += time.perf_counter() - start
            self.counts[operation] = self.counts.get(operation, 0) + 1

    def to_dict(self) -> dict[str, Any]:
        return {"time": round(self.time * 1000), **self.counts}


# =============================================================================
# Dates and keys
# =============================================================================

def http_date(value: Optional[datetime] = None) -> str:
    """Format a datetime (default: now) as an RFC 7231 HTTP date."""
    if value is None:
        value = datetime.now(timezone.utc)
    return format_datetime(value.astimezone(timezone.utc).replace(microsecond=0), usegmt=True)


def parse_http_date(value: Optional[str]) -> Optional[datetime]:
    """Parse an HTTP date or ISO-8601 timestamp, returning None if invalid."""
    if not value:
        return None
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def compute_surrogate_key(value: str) -> str:
    """CDN surrogate key: first 16 characters of the base64 sha256 digest."""
    digest = hashlib.sha256(value.encode("utf-8")).digest()
    return base64.b64encode(digest).decode("ascii")[:16]
