# -*- coding: utf-8 -*-
"""
Logging configuration for the trial lifecycle service.

- DEBUG, INFO, WARNING → STDOUT; ERROR, CRITICAL → STDERR, so the platform
  classifies lines as [inf] / [err] correctly
- QueueHandler + QueueListener: a run over hundreds of schools never blocks
  the event loop on stream writes
- Structured fields passed through log_event(extra=...) and the current
  correlation id are appended to the line as key=value pairs
"""

import atexit
import logging
import os
import queue
import sys
from logging.handlers import QueueHandler, QueueListener

from app.utils.logging_helpers import get_correlation_id

# log_event() fields, in output order
STRUCTURED_FIELDS = (
    "component", "operation", "outcome", "tenant_id", "from_state", "to_state",
    "event", "stage", "reason", "duration_ms", "correlation_id",
)

_QUIET_LOGGERS = ("aiohttp.access", "asyncio", "aiogram.event")

_log_listener: QueueListener | None = None


class MaxLevelFilter(logging.Filter):
    """Pass records up to max_level (inclusive)."""

    def __init__(self, max_level):
        super().__init__()
        self.max_level = max_level

    def filter(self, record):
        return record.levelno <= self.max_level


class CorrelationFilter(logging.Filter):
    """Stamp the run/request id at emit time, before the record crosses the queue."""

    def filter(self, record):
        if getattr(record, "correlation_id", None) is None:
            record.correlation_id = get_correlation_id()
        return True


class StructuredFormatter(logging.Formatter):
    def format(self, record):
        line = super().format(record)
        pairs = [
            f"{name}={getattr(record, name)}"
            for name in STRUCTURED_FIELDS
            if getattr(record, name, None) is not None
        ]
        return f"{line} | {' '.join(pairs)}" if pairs else line


def setup_logging(level: str | None = None):
    """
    Install the queue-based root handler. Idempotent.

    Args:
        level: Root level name; defaults to LOG_LEVEL env or INFO
    """
    global _log_listener

    if _log_listener is not None:
        return

    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    root_level = getattr(logging, level_name, logging.INFO)
    formatter = StructuredFormatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setLevel(root_level)
    stdout_handler.addFilter(MaxLevelFilter(logging.WARNING))
    stdout_handler.setFormatter(formatter)

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(logging.ERROR)
    stderr_handler.setFormatter(formatter)

    log_queue: queue.Queue = queue.Queue()
    queue_handler = QueueHandler(log_queue)
    queue_handler.addFilter(CorrelationFilter())

    root_logger = logging.getLogger()
    root_logger.setLevel(root_level)
    root_logger.handlers.clear()
    root_logger.addHandler(queue_handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    _log_listener = QueueListener(log_queue, stdout_handler, stderr_handler, respect_handler_level=True)
    _log_listener.start()
    atexit.register(stop_logging)


def stop_logging():
    """Flush and stop the listener (safe to call twice)."""
    global _log_listener
    if _log_listener is not None:
        _log_listener.stop()
        _log_listener = None
