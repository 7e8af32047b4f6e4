"""
Structured logging system for denormsync.

Console and optional daily-file output with a JSON context suffix, plus
counters that summarize a propagation or backfill session.
"""

import json
import logging
import os
import sys
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

CONSOLE_FORMAT = '%(asctime)s | %(levelname)-8s | %(name)s | %(message)s'
FILE_FORMAT = '%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def _console_handler(level: int) -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt=CONSOLE_FORMAT, datefmt=DATE_FORMAT))
    return handler


def _file_handler(log_dir: Path) -> logging.Handler:
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / f"denormsync_{datetime.now().strftime('%Y%m%d')}.log"
    handler = logging.FileHandler(log_file, encoding='utf-8')
    handler.setLevel(logging.DEBUG)  # Files always get everything
    handler.setFormatter(logging.Formatter(fmt=FILE_FORMAT, datefmt=DATE_FORMAT))
    return handler


def _empty_metrics() -> Dict[str, Any]:
    return {
        "events_received": 0,
        "events_skipped": 0,
        "events_failed": 0,
        "documents_processed": {},
        "documents_updated": {},
        "errors_by_type": {},
    }


class StructuredLogger:
    """
    Logger with context-aware messages and session metrics.

    Metric updates are guarded by a lock so backfill worker threads can
    record into the same instance.
    """

    def __init__(
        self,
        name: str = "denormsync",
        level: str = "INFO",
        log_dir: Optional[Path] = None,
        enable_file: bool = True,
        enable_console: bool = True,
    ):
        """
        Initialize the structured logger.

        Args:
            name: Logger name
            level: Console log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
            log_dir: Directory for log files (default: logs/)
            enable_file: Write logs to a daily file
            enable_console: Write logs to stdout
        """
        self.logger = logging.getLogger(name)
        self._lock = threading.Lock()
        self.metrics = _empty_metrics()
        self.configure(
            level=level,
            log_dir=(log_dir or Path("logs")) if enable_file else None,
            enable_console=enable_console,
        )

    def configure(self, level: str = "INFO", log_dir: Optional[Path] = None, enable_console: bool = True):
        """
        Replace the level and handlers in place.

        Module-level references to this instance pick up the change. Files
        are written only when ``log_dir`` is given.
        """
        numeric_level = getattr(logging, level.upper())
        self.logger.setLevel(numeric_level)
        for handler in list(self.logger.handlers):
            self.logger.removeHandler(handler)
            handler.close()

        if enable_console:
            self.logger.addHandler(_console_handler(numeric_level))
        if log_dir is not None:
            self.logger.addHandler(_file_handler(Path(log_dir)))

    def debug(self, message: str, **kwargs):
        self._log(logging.DEBUG, message, kwargs)

    def info(self, message: str, **kwargs):
        self._log(logging.INFO, message, kwargs)

    def warning(self, message: str, **kwargs):
        self._log(logging.WARNING, message, kwargs)

    def error(self, message: str, **kwargs):
        self._log(logging.ERROR, message, kwargs)

    def critical(self, message: str, **kwargs):
        self._log(logging.CRITICAL, message, kwargs)

    def _log(self, level: int, message: str, context: dict):
        if context:
            message = f"{message} | Context: {json.dumps(context, default=str)}"
        self.logger.log(level, message)

    # Metric tracking

    def _bump(self, key: str, amount: int = 1, bucket: Optional[str] = None):
        with self._lock:
            if bucket is None:
                self.metrics[key] += amount
            else:
                counts = self.metrics[key]
                counts[bucket] = counts.get(bucket, 0) + amount

    def record_event(self):
        """Count one received change event."""
        self._bump("events_received")

    def record_event_skipped(self):
        """Count an event that needed no propagation."""
        self._bump("events_skipped")

    def record_event_failure(self, error_type: str):
        """Count a failed propagation and its error type."""
        self._bump("events_failed")
        self.record_error(error_type)

    def record_error(self, error_type: str):
        self._bump("errors_by_type", bucket=error_type)

    def record_documents(self, collection: str, processed: int = 0, updated: int = 0):
        """Add processed/updated document counts for a collection."""
        self._bump("documents_processed", processed, bucket=collection)
        self._bump("documents_updated", updated, bucket=collection)

    def get_metrics(self) -> dict:
        """Return a snapshot of current metrics."""
        with self._lock:
            return {
                key: dict(value) if isinstance(value, dict) else value
                for key, value in self.metrics.items()
            }

    def log_metrics_summary(self):
        """Log a summary of current metrics."""
        metrics = self.get_metrics()

        self.info("=== Denormalization Session Metrics ===")
        self.info(
            f"Events: {metrics['events_received']} received, "
            f"{metrics['events_skipped']} skipped, {metrics['events_failed']} failed"
        )

        processed = metrics["documents_processed"]
        updated = metrics["documents_updated"]
        if processed or updated:
            self.info("Documents by collection:")
            for collection in sorted(set(processed) | set(updated)):
                self.info(
                    f"  {collection}: {updated.get(collection, 0)} updated "
                    f"/ {processed.get(collection, 0)} processed"
                )

        if metrics["errors_by_type"]:
            self.info("Error Types:")
            for error_type, count in metrics["errors_by_type"].items():
                self.info(f"  {error_type}: {count}")


# Global logger instance
_global_logger: Optional[StructuredLogger] = None


def get_logger(
    name: str = "denormsync",
    level: Optional[str] = None,
    **kwargs
) -> StructuredLogger:
    """
    Get or create the global logger instance.

    Args:
        name: Logger name
        level: Log level (defaults to DENORMSYNC_LOG_LEVEL, then INFO)
        **kwargs: Passed to StructuredLogger. Unless ``log_dir`` or
            ``enable_file`` is given, file output follows DENORMSYNC_LOG_DIR.

    Returns:
        StructuredLogger instance
    """
    global _global_logger

    if _global_logger is None:
        level = level or os.getenv("DENORMSYNC_LOG_LEVEL", "INFO")
        if "log_dir" not in kwargs and "enable_file" not in kwargs:
            env_log_dir = os.getenv("DENORMSYNC_LOG_DIR")
            kwargs["enable_file"] = bool(env_log_dir)
            kwargs["log_dir"] = Path(env_log_dir) if env_log_dir else None
        _global_logger = StructuredLogger(name=name, level=level, **kwargs)

    return _global_logger


def reset_logger():
    """Reset the global logger (useful for testing)."""
    global _global_logger
    _global_logger = None


def summarize_counts(counts: Dict[str, int]) -> str:
    """Render per-collection counts as 'a=1, b=2' for log lines."""
    return ", ".join(f"{name}={count}" for name, count in sorted(counts.items()))
