"""Observability utilities for the NoteTree MCP server.

Rotating file logging for the ``notetree`` logger hierarchy, per-operation
timing metrics, and the ``timed_operation`` / ``traced`` helpers used by the
services and the MCP tools.
"""
import functools
import json
import logging
import time
import uuid
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, Optional, TypeVar, Union

logger = logging.getLogger(__name__)

DEFAULT_LOG_DIR = Path.home() / ".notetree" / "logs"
DEFAULT_METRICS_FILE = Path.home() / ".notetree" / "metrics.json"

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"

# Keyword arguments worth echoing into trace lines
_TRACE_CONTEXT_KEYS = ("project_id", "node_id", "parent_id", "import_id")

F = TypeVar("F", bound=Callable[..., Any])

_logging_configured = False


def configure_logging(
    log_dir: Optional[Union[str, Path]] = None,
    level: int = logging.INFO,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
    console: bool = True,
) -> Path:
    """Configure persistent file logging with rotation.

    Attaches a rotating handler to the ``notetree_mcp`` package logger, so
    every module logger (``notetree_mcp.*``) reaches it by propagation.

    Args:
        log_dir: Directory for log files. Defaults to ~/.notetree/logs/
        level: Logging level (default: INFO)
        max_bytes: Maximum size per log file before rotation (default: 10 MB)
        backup_count: Number of rotated files to keep (default: 5)
        console: Also log to stderr (default: True)

    Returns:
        Path to the log directory
    """
    global _logging_configured

    log_path = Path(log_dir) if log_dir else DEFAULT_LOG_DIR
    log_path.mkdir(parents=True, exist_ok=True)

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    log_file = log_path / "notetree.log"

    package_logger = logging.getLogger("notetree_mcp")
    package_logger.setLevel(level)
    if not any(isinstance(h, RotatingFileHandler) for h in package_logger.handlers):
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        package_logger.addHandler(file_handler)

    if console and not any(
        isinstance(h, logging.StreamHandler) and not isinstance(h, RotatingFileHandler)
        for h in package_logger.handlers
    ):
        # MCP speaks over stdout; keep log output on stderr
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        package_logger.addHandler(console_handler)

    _logging_configured = True
    package_logger.info(
        f"Logging configured: {log_file} (max {max_bytes} bytes, {backup_count} backups)"
    )
    return log_path


def is_logging_configured() -> bool:
    return _logging_configured


@dataclass
class OperationMetrics:
    """Metrics for a single operation type."""
    count: int = 0
    success_count: int = 0
    error_count: int = 0
    total_duration_ms: float = 0.0
    min_duration_ms: float = float("inf")
    max_duration_ms: float = 0.0
    last_error: Optional[str] = None
    last_error_time: Optional[datetime] = None


class MetricsCollector:
    """Thread-safe metrics for engine operations.

    Collects timing and success/failure counts per operation name
    (``reparent_and_order``, ``normalize``, ``import_run`` ...). Persisting
    to disk is opt-in: pass a ``metrics_file`` or call :meth:`save_metrics`.
    """

    def __init__(
        self,
        metrics_file: Optional[Union[str, Path]] = None,
        auto_save_interval: int = 0,
    ):
        self._metrics: Dict[str, OperationMetrics] = defaultdict(OperationMetrics)
        self._lock = Lock()
        self._start_time = datetime.now(timezone.utc)
        self._metrics_file = Path(metrics_file) if metrics_file else DEFAULT_METRICS_FILE
        self._auto_save_interval = auto_save_interval
        self._operation_count_since_save = 0

    def record_operation(
        self,
        operation: str,
        duration_ms: float,
        success: bool,
        error: Optional[str] = None,
    ) -> None:
        with self._lock:
            m = self._metrics[operation]
            m.count += 1
            m.total_duration_ms += duration_ms
            m.min_duration_ms = min(m.min_duration_ms, duration_ms)
            m.max_duration_ms = max(m.max_duration_ms, duration_ms)

            if success:
                m.success_count += 1
            else:
                m.error_count += 1
                m.last_error = error
                m.last_error_time = datetime.now(timezone.utc)

            self._operation_count_since_save += 1
            if (
                self._auto_save_interval > 0
                and self._operation_count_since_save >= self._auto_save_interval
            ):
                self._save_metrics_unlocked()

    def get_metrics(self) -> Dict[str, Dict[str, Any]]:
        """Snapshot of every operation's counters and timings."""
        with self._lock:
            result = {}
            for op, m in self._metrics.items():
                avg_duration = m.total_duration_ms / m.count if m.count > 0 else 0
                min_dur = m.min_duration_ms if m.min_duration_ms != float("inf") else 0
                result[op] = {
                    "count": m.count,
                    "success_count": m.success_count,
                    "error_count": m.error_count,
                    "success_rate": m.success_count / m.count if m.count > 0 else 0,
                    "avg_duration_ms": round(avg_duration, 2),
                    "min_duration_ms": round(min_dur, 2),
                    "max_duration_ms": round(m.max_duration_ms, 2),
                    "last_error": m.last_error,
                    "last_error_time": (
                        m.last_error_time.isoformat() if m.last_error_time else None
                    ),
                }
            return result

    def get_summary(self) -> Dict[str, Any]:
        with self._lock:
            total_ops = sum(m.count for m in self._metrics.values())
            total_success = sum(m.success_count for m in self._metrics.values())
            return {
                "uptime_seconds": (
                    datetime.now(timezone.utc) - self._start_time
                ).total_seconds(),
                "total_operations": total_ops,
                "total_success": total_success,
                "total_errors": total_ops - total_success,
                "overall_success_rate": total_success / total_ops if total_ops else 1.0,
                "operations_tracked": sorted(self._metrics.keys()),
            }

    def reset(self) -> None:
        """Reset all metrics (useful for testing)."""
        with self._lock:
            self._metrics.clear()
            self._start_time = datetime.now(timezone.utc)
            self._operation_count_since_save = 0

    def _save_metrics_unlocked(self) -> bool:
        try:
            self._metrics_file.parent.mkdir(parents=True, exist_ok=True)
            data = {
                "start_time": self._start_time.isoformat(),
                "saved_at": datetime.now(timezone.utc).isoformat(),
                "operations": {
                    op: {
                        "count": m.count,
                        "success_count": m.success_count,
                        "error_count": m.error_count,
                        "total_duration_ms": m.total_duration_ms,
                        "max_duration_ms": m.max_duration_ms,
                        "last_error": m.last_error,
                    }
                    for op, m in self._metrics.items()
                },
            }
            # Atomic write via temp file
            temp_file = self._metrics_file.with_suffix(".tmp")
            with open(temp_file, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            temp_file.replace(self._metrics_file)
            self._operation_count_since_save = 0
            return True
        except (OSError, TypeError) as e:
            logger.error(f"Failed to save metrics to {self._metrics_file}: {e}")
            return False

    def save_metrics(self) -> bool:
        """Write the current metrics to disk; False on failure."""
        with self._lock:
            return self._save_metrics_unlocked()

    def get_metrics_file(self) -> Path:
        return self._metrics_file


# Global metrics collector instance
metrics = MetricsCollector()


@contextmanager
def timed_operation(operation: str, **context):
    """Time an operation, log start/end with a correlation ID and record metrics.

    Yields a dict the caller can fill with result details, which are
    appended to the END log line.

    Example:
        with timed_operation("normalize", project_id=pid) as op:
            op["writes"] = normalizer.normalize(pid, None)
    """
    correlation_id = str(uuid.uuid4())[:8]
    start_time = time.perf_counter()
    result_info: Dict[str, Any] = {"correlation_id": correlation_id}

    context_str = ", ".join(f"{k}={v}" for k, v in context.items())
    logger.debug(f"[{correlation_id}] START {operation} ({context_str})")

    error_msg = None
    success = True

    try:
        yield result_info
    except Exception as e:
        success = False
        error_msg = str(e)
        raise
    finally:
        duration_ms = (time.perf_counter() - start_time) * 1000
        metrics.record_operation(operation, duration_ms, success, error_msg)

        result_str = ", ".join(
            f"{k}={v}" for k, v in result_info.items() if k != "correlation_id"
        )
        status = "OK" if success else f"ERROR: {error_msg}"
        logger.debug(
            f"[{correlation_id}] END {operation} "
            f"({duration_ms:.2f}ms) [{status}] {result_str}"
        )


def traced(operation_name: Optional[str] = None) -> Callable[[F], F]:
    """Decorator form of :func:`timed_operation`.

    Example:
        @traced("delete_subtree")
        def delete_subtree(self, node_id: str) -> int:
            ...
    """
    def decorator(func: F) -> F:
        op_name = operation_name or func.__name__

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            context = {k: kwargs[k] for k in _TRACE_CONTEXT_KEYS if k in kwargs}
            with timed_operation(op_name, **context) as op:
                result = func(*args, **kwargs)
                if isinstance(result, int) and not isinstance(result, bool):
                    op["result"] = result
                elif hasattr(result, "__len__"):
                    op["result_count"] = len(result)
                elif result is not None:
                    op["has_result"] = True
                return result

        return wrapper  # type: ignore
    return decorator
