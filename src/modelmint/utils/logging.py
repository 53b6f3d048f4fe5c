# /modelmint/src/modelmint/utils/logging.py

"""
Engine Logging Infrastructure

Structured logging for the classifier engine with persistent context,
timers and stage tracking.

Key Features:
- Structured logging with JSON and text formatters
- Context-aware logging (session, class and stage identifiers)
- Timing helpers for assemble / surgery / fit stages
- Optional rotating file output

Log messages are event names (``"sample.added"``, ``"training.epoch_completed"``)
with the details carried in ``extra``.
"""

import json
import logging
import logging.handlers
import os
import sys
import threading
import time
import traceback
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

import psutil


# Attributes every LogRecord carries; anything else came in through ``extra``.
_RESERVED_RECORD_KEYS = frozenset(vars(logging.LogRecord('', 0, '', 0, '', (), None))) | {
    'message', 'asctime'
}


def _record_extra(record: logging.LogRecord) -> Dict[str, Any]:
    return {
        key: value for key, value in record.__dict__.items()
        if key not in _RESERVED_RECORD_KEYS and not key.startswith('_')
    }


class StructuredFormatter(logging.Formatter):
    """
    JSON-structured log formatter with consistent schema.
    """

    def __init__(self, include_extra: bool = True):
        super().__init__()
        self.include_extra = include_extra
        self.hostname = os.uname().nodename if hasattr(os, 'uname') else 'unknown'

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as structured JSON."""
        log_entry = {
            'timestamp': datetime.fromtimestamp(record.created).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
            'thread_name': record.threadName,
            'process': record.process,
            'hostname': self.hostname
        }

        if record.exc_info:
            log_entry['exception'] = {
                'type': record.exc_info[0].__name__,
                'message': str(record.exc_info[1]),
                'traceback': traceback.format_exception(*record.exc_info)
            }

        if self.include_extra:
            extra = {}
            for key, value in _record_extra(record).items():
                try:
                    json.dumps(value)
                    extra[key] = value
                except (TypeError, ValueError):
                    extra[key] = str(value)

            if extra:
                log_entry['extra'] = extra

        return json.dumps(log_entry)


class TextFormatter(logging.Formatter):
    """
    Human-readable text formatter with trailing ``key=value`` extras.
    """

    def __init__(self, include_extra: bool = True):
        super().__init__('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
        self.include_extra = include_extra

    def format(self, record: logging.LogRecord) -> str:
        base_message = super().format(record)

        if self.include_extra:
            extra_fields = [f"{key}={value}" for key, value in _record_extra(record).items()]
            if extra_fields:
                base_message += f" [{', '.join(extra_fields)}]"

        return base_message


class PerformanceLogFilter(logging.Filter):
    """
    Adds process memory usage to log records.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, 'memory_usage_mb'):
            try:
                record.memory_usage_mb = round(psutil.Process().memory_info().rss / (1024 * 1024), 2)
            except psutil.Error:
                record.memory_usage_mb = None

        return True


class EngineLogger:
    """
    Component logger with persistent context and timers.
    """

    def __init__(self, name: str, config: Optional[Dict[str, Any]] = None):
        """
        Initialize engine logger with configuration.

        Args:
            name: Logger name (usually the component module name)
            config: Logging configuration dictionary
        """
        self.name = name
        self.config = config or {}
        self.logger = logging.getLogger(name)

        self._context: Dict[str, Any] = {}
        self._context_lock = threading.RLock()
        self._timers: Dict[str, float] = {}

        # Only explicitly configured loggers get handlers; the rest propagate.
        if config is not None and not self.logger.handlers:
            self._configure_logger()

    def _configure_logger(self) -> None:
        """Configure logger with handlers and formatters."""
        log_level = self.config.get('log_level', 'INFO').upper()
        self.logger.setLevel(getattr(logging, log_level))

        if self.config.get('enable_performance_filter', True):
            self.logger.addFilter(PerformanceLogFilter())

        if self.config.get('enable_console', True):
            console_handler = logging.StreamHandler(sys.stdout)

            if self.config.get('log_format', 'text') == 'json':
                console_handler.setFormatter(StructuredFormatter())
            else:
                console_handler.setFormatter(TextFormatter())

            self.logger.addHandler(console_handler)

        if self.config.get('enable_file', False):
            log_dir = Path(self.config.get('log_dir', 'logs/engine'))
            log_dir.mkdir(parents=True, exist_ok=True)

            log_file = log_dir / f"{self.config.get('log_file_prefix', 'engine')}.log"

            file_handler = logging.handlers.RotatingFileHandler(
                log_file,
                maxBytes=self.config.get('log_rotation_size_mb', 100) * 1024 * 1024,
                backupCount=self.config.get('log_retention_count', 10)
            )
            file_handler.setFormatter(StructuredFormatter())
            self.logger.addHandler(file_handler)

    def set_context(self, **kwargs) -> None:
        """Set persistent context for all log messages."""
        with self._context_lock:
            self._context.update(kwargs)

    def clear_context(self) -> None:
        with self._context_lock:
            self._context.clear()

    @contextmanager
    def context(self, **kwargs):
        """Temporary context manager for log messages."""
        with self._context_lock:
            old_context = self._context.copy()
        try:
            self.set_context(**kwargs)
            yield
        finally:
            with self._context_lock:
                self._context = old_context

    def _log_with_context(self, level: int, message: str,
                          extra: Optional[Dict[str, Any]] = None,
                          exc_info: bool = False) -> None:
        combined_extra = {}

        with self._context_lock:
            combined_extra.update(self._context)

        if extra:
            combined_extra.update(extra)

        self.logger.log(level, message, extra=combined_extra or None, exc_info=exc_info)

    def debug(self, message: str, extra: Optional[Dict[str, Any]] = None) -> None:
        self._log_with_context(logging.DEBUG, message, extra)

    def info(self, message: str, extra: Optional[Dict[str, Any]] = None) -> None:
        self._log_with_context(logging.INFO, message, extra)

    def warning(self, message: str, extra: Optional[Dict[str, Any]] = None) -> None:
        self._log_with_context(logging.WARNING, message, extra)

    def error(self, message: str, extra: Optional[Dict[str, Any]] = None,
              exc_info: bool = False) -> None:
        """Log error message, optionally with the active exception."""
        self._log_with_context(logging.ERROR, message, extra, exc_info=exc_info)

    def start_timer(self, timer_name: str) -> None:
        self._timers[timer_name] = time.perf_counter()

    def stop_timer(self, timer_name: str, log_result: bool = True) -> float:
        """Stop a named timer and optionally log the duration."""
        if timer_name not in self._timers:
            self.warning("timer.not_found", extra={'timer_name': timer_name})
            return 0.0

        duration = time.perf_counter() - self._timers.pop(timer_name)

        if log_result:
            self.debug("timer.completed", extra={
                'timer_name': timer_name,
                'duration_seconds': duration
            })

        return duration


def setup_engine_logging(level: str = "INFO",
                         log_format: str = "text",
                         log_dir: str = "logs/engine",
                         enable_console: bool = True,
                         enable_file: bool = False) -> Dict[str, Any]:
    """
    Setup package-level engine logging configuration.

    Component loggers (``modelmint.engine.trainer`` and so on) propagate to
    the ``modelmint`` logger configured here.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Log format (json, text)
        log_dir: Directory for log files
        enable_console: Enable console logging
        enable_file: Enable rotating file logging

    Returns:
        Logging configuration dictionary
    """
    config = {
        'log_level': level.upper(),
        'log_format': log_format.lower(),
        'log_dir': log_dir,
        'enable_console': enable_console,
        'enable_file': enable_file,
        'log_file_prefix': 'engine',
        'log_rotation_size_mb': 100,
        'log_retention_count': 10
    }

    root = logging.getLogger('modelmint')
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    for existing_filter in list(root.filters):
        root.removeFilter(existing_filter)

    root_logger = EngineLogger('modelmint', config)
    root_logger.logger.propagate = False

    root_logger.debug("engine_logging.initialized", extra={
        'log_level': level,
        'log_format': log_format
    })

    return config


def get_engine_logger(name: str) -> EngineLogger:
    """Get an engine logger for a component (propagates to ``modelmint``)."""
    return EngineLogger(name)


@contextmanager
def stage_logging(logger: EngineLogger, stage_name: str, **context):
    """Context manager for training stage logging."""
    stage_context = {'stage': stage_name, **context}

    with logger.context(**stage_context):
        logger.debug("stage.started", extra={'stage_name': stage_name})

        timer_name = f"stage.{stage_name}"
        logger.start_timer(timer_name)
        try:
            yield logger
        except Exception as e:
            logger.warning("stage.failed", extra={
                'stage_name': stage_name,
                'error_type': type(e).__name__,
                'error': str(e),
                'duration': logger.stop_timer(timer_name, log_result=False)
            })
            raise
        else:
            logger.debug("stage.completed", extra={
                'stage_name': stage_name,
                'duration': logger.stop_timer(timer_name, log_result=False)
            })
