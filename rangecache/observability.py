"""
Observability module for structured logging, correlation IDs, and fetch metrics.

Usage:
    from rangecache.observability import setup_logging, get_logger, correlation_context

    # At process startup:
    setup_logging()

    # In modules:
    logger = get_logger(__name__)

    # Around one dashboard request:
    with correlation_context():
        result = await orchestrator.fetch(request)
"""
import logging
import json
import time
import uuid
from contextvars import ContextVar
from typing import Optional, Any, Dict
from datetime import datetime, timezone

# Context variable for request correlation ID
_correlation_id: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Log record attributes that are never treated as structured extras
_STANDARD_ATTRS = {
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "message", "asctime", "taskName",
}


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID from context."""
    return _correlation_id.get()


def set_correlation_id(correlation_id: str) -> None:
    """Set correlation ID in context."""
    _correlation_id.set(correlation_id)


def generate_correlation_id() -> str:
    """Generate a new correlation ID."""
    return str(uuid.uuid4())[:8]


class correlation_context:
    """Context manager for setting correlation ID."""

    def __init__(self, correlation_id: Optional[str] = None):
        self.correlation_id = correlation_id or generate_correlation_id()
        self.token = None

    def __enter__(self):
        self.token = _correlation_id.set(self.correlation_id)
        return self.correlation_id

    def __exit__(self, *args):
        _correlation_id.reset(self.token)


def _extras(record: logging.LogRecord) -> Dict[str, Any]:
    return {
        k: v for k, v in record.__dict__.items()
        if k not in _STANDARD_ATTRS and not k.startswith("_")
    }


class StructuredFormatter(logging.Formatter):
    """
    JSON log formatter for structured logging.

    Outputs logs as JSON with:
    - timestamp, level, logger, message
    - correlation_id (if set)
    - extra fields passed via ``extra=``
    - exception info (if present)
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        correlation_id = get_correlation_id()
        if correlation_id:
            log_entry["correlation_id"] = correlation_id

        log_entry.update(_extras(record))

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """
    Human-readable log formatter with correlation ID.

    Format: TIMESTAMP - LEVEL - LOGGER [CORRELATION_ID] - MESSAGE | EXTRAS
    """

    def format(self, record: logging.LogRecord) -> str:
        correlation_id = get_correlation_id()
        correlation_str = f" [{correlation_id}]" if correlation_id else ""

        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")

        base_msg = f"{timestamp} - {record.levelname:8} - {record.name}{correlation_str} - {record.getMessage()}"

        extras = _extras(record)
        if extras:
            base_msg += f" | {extras}"

        if record.exc_info:
            base_msg += f"\n{self.formatException(record.exc_info)}"

        return base_msg


def setup_logging(
    level: str = "INFO",
    json_format: bool = False,
    include_libs: bool = False
) -> None:
    """
    Configure logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: If True, output JSON logs; otherwise human-readable
        include_libs: If True, also log from third-party libraries
    """
    formatter = StructuredFormatter() if json_format else HumanReadableFormatter()

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, level.upper()))

    # Quiet down noisy libraries unless explicitly included
    if not include_libs:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)
        logging.getLogger("redis").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the given name."""
    return logging.getLogger(name)


# ═══════════════════════════════════════════════════════════════════════════════
# TIMING
# ═══════════════════════════════════════════════════════════════════════════════

class Timer:
    """
    Context manager for timing operations.

    Usage:
        with Timer("fetch_chunk", logger) as t:
            page = await transport.fetch(request, chunk)
        print(f"Chunk took {t.elapsed_ms}ms")
    """

    def __init__(self, name: str, logger: Optional[logging.Logger] = None):
        self.name = name
        self.logger = logger
        self.start_time: float = 0
        self.end_time: float = 0
        self.elapsed_ms: float = 0

    def __enter__(self) -> "Timer":
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, *args):
        self.end_time = time.perf_counter()
        self.elapsed_ms = (self.end_time - self.start_time) * 1000

        if self.logger:
            level = logging.WARNING if self.elapsed_ms > 5000 else logging.DEBUG
            self.logger.log(
                level,
                f"{self.name} completed",
                extra={"duration_ms": round(self.elapsed_ms, 2)}
            )


# ═══════════════════════════════════════════════════════════════════════════════
# METRICS COLLECTOR (simple in-memory stats)
# ═══════════════════════════════════════════════════════════════════════════════

class MetricsCollector:
    """
    Simple in-memory metrics collector.

    Tracks:
    - Event counts (cache hits, chunk fetches, retries, merges)
    - Error counts by type
    - Timing samples per operation
    """

    def __init__(self, max_samples: int = 100):
        self._counts: Dict[str, int] = {}
        self._error_counts: Dict[str, int] = {}
        self._timing_samples: Dict[str, list] = {}
        self._max_samples = max_samples

    def increment(self, name: str, amount: int = 1) -> None:
        """Increment a named counter."""
        self._counts[name] = self._counts.get(name, 0) + amount

    def record_error(self, error_type: str) -> None:
        """Record an error."""
        self._error_counts[error_type] = self._error_counts.get(error_type, 0) + 1

    def record_timing(self, operation: str, duration_ms: float) -> None:
        """Record timing for an operation."""
        samples = self._timing_samples.setdefault(operation, [])
        samples.append(duration_ms)

        # Keep only last N samples
        if len(samples) > self._max_samples:
            self._timing_samples[operation] = samples[-self._max_samples:]

    def count(self, name: str) -> int:
        """Current value of a counter."""
        return self._counts.get(name, 0)

    def get_stats(self) -> Dict[str, Any]:
        """Get current metrics snapshot."""
        stats = {
            "counts": dict(self._counts),
            "errors": dict(self._error_counts),
            "timing": {}
        }

        for operation, samples in self._timing_samples.items():
            if samples:
                sorted_samples = sorted(samples)
                stats["timing"][operation] = {
                    "count": len(samples),
                    "avg_ms": round(sum(samples) / len(samples), 2),
                    "min_ms": round(min(samples), 2),
                    "max_ms": round(max(samples), 2),
                    "p50_ms": round(sorted_samples[len(sorted_samples) // 2], 2),
                }

        return stats

    def reset(self) -> None:
        """Reset all metrics."""
        self._counts.clear()
        self._error_counts.clear()
        self._timing_samples.clear()
