"""
Structured logging for mcrun.

Provides a process-wide logger with console and optional file output,
plus counters that summarize what a session did to the record store.
"""

import logging
import sys
from pathlib import Path
from typing import Optional
from datetime import datetime
import json


class StructuredLogger:
    """
    Centralized logger with support for console and file outputs.
    Tracks store write metrics for end-of-command summaries.
    """

    def __init__(
        self,
        name: str = "mcrun",
        level: str = "INFO",
        log_dir: Optional[Path] = None,
        enable_file: bool = False,
        enable_console: bool = True,
    ):
        """
        Initialize the structured logger.

        Args:
            name: Logger name
            level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
            log_dir: Directory for log files (default: logs/)
            enable_file: Write logs to file
            enable_console: Output logs to stderr
        """
        self.logger = logging.getLogger(name)
        self.logger.setLevel(getattr(logging, level.upper()))
        self.logger.handlers.clear()
        self.logger.propagate = False

        self.metrics = {
            "rows_inserted": 0,
            "batches_committed": 0,
            "batches_rolled_back": 0,
            "errors_by_type": {},
        }

        # stdout carries command output (dumps, query results)
        if enable_console:
            console_handler = logging.StreamHandler(sys.stderr)
            console_handler.setLevel(getattr(logging, level.upper()))
            console_formatter = logging.Formatter(
                fmt='%(asctime)s | %(levelname)-8s | %(name)s | %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            )
            console_handler.setFormatter(console_formatter)
            self.logger.addHandler(console_handler)

        if enable_file:
            self.add_file_handler(log_dir or Path("logs"))

    def add_file_handler(self, log_dir: Path) -> Path:
        """Also write everything (DEBUG and up) to a daily log file in log_dir."""
        log_dir.mkdir(parents=True, exist_ok=True)

        log_file = log_dir / f"mcrun_{datetime.now().strftime('%Y%m%d')}.log"
        file_handler = logging.FileHandler(log_file, encoding='utf-8')
        file_handler.setLevel(logging.DEBUG)  # Always log everything to file
        file_formatter = logging.Formatter(
            fmt='%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
        file_handler.setFormatter(file_formatter)
        self.logger.addHandler(file_handler)
        # Let DEBUG records reach the file even if the console is quieter
        self.logger.setLevel(logging.DEBUG)
        return log_file

    def set_level(self, level: str):
        """Change the threshold of the logger and its console handler."""
        lvl = getattr(logging, level.upper())
        has_file = False
        for handler in self.logger.handlers:
            if isinstance(handler, logging.FileHandler):
                has_file = True
            else:
                handler.setLevel(lvl)
        self.logger.setLevel(logging.DEBUG if has_file else lvl)

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
        """Internal logging method with context."""
        if context:
            message = f"{message} | Context: {json.dumps(context, default=str)}"
        self.logger.log(level, message)

    # Metric tracking methods

    def record_commit(self, rows: int):
        """Record a committed write transaction."""
        self.metrics["batches_committed"] += 1
        self.metrics["rows_inserted"] += rows

    def record_rollback(self, error_type: str):
        """Record a write transaction that was rolled back."""
        self.metrics["batches_rolled_back"] += 1
        self.record_error(error_type)

    def record_error(self, error_type: str):
        if error_type not in self.metrics["errors_by_type"]:
            self.metrics["errors_by_type"][error_type] = 0
        self.metrics["errors_by_type"][error_type] += 1

    def get_metrics(self) -> dict:
        """Return a copy of current metrics."""
        metrics_copy = self.metrics.copy()
        metrics_copy["errors_by_type"] = dict(self.metrics["errors_by_type"])
        return metrics_copy

    def log_metrics_summary(self):
        """Log a summary of current metrics."""
        metrics = self.get_metrics()

        self.info("=== Store Session Metrics ===")
        self.info(f"Rows inserted: {metrics['rows_inserted']}")
        self.info(
            f"Batches: {metrics['batches_committed']} committed, "
            f"{metrics['batches_rolled_back']} rolled back"
        )

        if metrics["errors_by_type"]:
            self.info("Error Types:")
            for error_type, count in metrics["errors_by_type"].items():
                self.info(f"  {error_type}: {count}")


# Global logger instance
_global_logger: Optional[StructuredLogger] = None


def get_logger(
    name: str = "mcrun",
    level: str = "INFO",
    **kwargs
) -> StructuredLogger:
    """
    Get or create the global logger instance.

    Args:
        name: Logger name
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        **kwargs: Additional arguments passed to StructuredLogger

    Returns:
        StructuredLogger instance
    """
    global _global_logger

    if _global_logger is None:
        _global_logger = StructuredLogger(name=name, level=level, **kwargs)

    return _global_logger


def reset_logger():
    """Reset the global logger (useful for testing)."""
    global _global_logger
    _global_logger = None
