"""
Logging configuration for Mission Sync.

This module provides centralized logging setup with:
- Structured logging with rich console formatting
- Log rotation for the main and error logs
- Optional Sentry error tracking
- A bounded debug ring buffer for stream/store/api events
"""

import logging
import logging.handlers
import os
import sys
import json
from collections import deque
from pathlib import Path
from typing import Optional, Dict, Any, List, Deque
from datetime import datetime, timezone
import structlog
from rich.logging import RichHandler
from rich.console import Console
import sentry_sdk
from sentry_sdk.integrations.logging import LoggingIntegration


console = Console(file=sys.stderr)

# Components whose events are captured by the debug buffer
DEBUG_CAPTURE_PREFIXES = (
    "mission-sync.stream",
    "mission-sync.store",
    "mission-sync.api",
)


class JSONFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_obj = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }

        if record.exc_info:
            log_obj['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_obj)


class DebugLogBuffer:
    """Keeps the most recent stream/store/api log events for a debug panel."""

    def __init__(self, capacity: int = 50):
        self.enabled = os.environ.get("MISSION_SYNC_DEBUG", "").lower() == "true"
        self._entries: Deque[Dict[str, Any]] = deque(maxlen=capacity)

    def configure(self, enabled: bool, capacity: Optional[int] = None) -> None:
        self.enabled = enabled
        if capacity is not None and capacity != self._entries.maxlen:
            self._entries = deque(self._entries, maxlen=capacity)

    def __call__(self, logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
        """structlog processor: record matching events, pass everything through."""
        if self.enabled:
            name = event_dict.get("logger", "")
            if name.startswith(DEBUG_CAPTURE_PREFIXES):
                self._entries.appendleft({
                    "timestamp": datetime.now(timezone.utc),
                    "type": f"{name.rsplit('.', 1)[-1]}: {event_dict.get('event')}",
                    "data": {
                        k: v for k, v in event_dict.items()
                        if k not in ("event", "logger", "level", "timestamp")
                    },
                })
        return event_dict

    def entries(self) -> List[Dict[str, Any]]:
        """Newest first."""
        return list(self._entries)

    def clear(self) -> None:
        self._entries.clear()


debug_buffer = DebugLogBuffer()


def setup_logging(
    app_name: str = "mission-sync",
    log_level: str = "INFO",
    log_dir: Optional[Path] = None,
    enable_json: bool = True,
    enable_console: bool = True,
    enable_sentry: bool = False,
    sentry_dsn: Optional[str] = None,
    debug_panel: bool = False,
    debug_capacity: int = 50,
) -> Dict[str, Any]:
    """
    Set up logging for the sync client.

    Args:
        app_name: Application name for log identification
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_dir: Directory for log files (no file logging when None)
        enable_json: Render structlog events as JSON
        enable_console: Attach a rich console handler
        enable_sentry: Enable Sentry error tracking
        sentry_dsn: Sentry DSN for error tracking
        debug_panel: Capture stream/store/api events in the debug buffer
        debug_capacity: Number of debug entries kept

    Returns:
        Dictionary with logger instances and configuration
    """
    debug_buffer.configure(debug_panel or debug_buffer.enabled, debug_capacity)

    renderer = structlog.processors.JSONRenderer() if enable_json else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            debug_buffer,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if enable_console:
        console_handler = RichHandler(
            console=console,
            show_time=True,
            show_path=False,
            rich_tracebacks=True,
            tracebacks_suppress=["click", "asyncio"],
        )
        console_handler.setFormatter(logging.Formatter('%(message)s'))
        root_logger.addHandler(console_handler)
    else:
        root_logger.addHandler(logging.NullHandler())

    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            log_dir / f"{app_name}.log",
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=5,
            encoding='utf-8'
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(JSONFormatter())
        root_logger.addHandler(file_handler)

        error_handler = logging.handlers.RotatingFileHandler(
            log_dir / f"{app_name}-errors.log",
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=5,
            encoding='utf-8'
        )
        error_handler.setLevel(logging.ERROR)
        error_handler.setFormatter(JSONFormatter())
        root_logger.addHandler(error_handler)

    if enable_sentry and sentry_dsn:
        sentry_logging = LoggingIntegration(
            level=logging.INFO,
            event_level=logging.ERROR
        )
        sentry_sdk.init(
            dsn=sentry_dsn,
            integrations=[sentry_logging],
            traces_sample_rate=0.0,
        )

    loggers = {
        'main': structlog.get_logger(app_name),
        'store': structlog.get_logger(f"{app_name}.store"),
        'stream': structlog.get_logger(f"{app_name}.stream"),
        'poller': structlog.get_logger(f"{app_name}.poller"),
        'optimistic': structlog.get_logger(f"{app_name}.optimistic"),
        'connectivity': structlog.get_logger(f"{app_name}.connectivity"),
        'api': structlog.get_logger(f"{app_name}.api"),
    }

    loggers['main'].info(
        "logging_initialized",
        app_name=app_name,
        log_level=log_level,
        log_dir=str(log_dir) if log_dir else None,
        enable_json=enable_json,
        enable_sentry=enable_sentry,
        debug_panel=debug_buffer.enabled,
    )

    return {
        'loggers': loggers,
        'log_dir': log_dir,
        'console': console,
        'config': {
            'app_name': app_name,
            'log_level': log_level,
            'enable_json': enable_json,
            'enable_sentry': enable_sentry,
        }
    }


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a logger instance by name."""
    return structlog.get_logger(name)


def get_debug_entries() -> List[Dict[str, Any]]:
    """Recent stream/store/api events captured for the debug panel."""
    return debug_buffer.entries()


__all__ = [
    'setup_logging',
    'get_logger',
    'get_debug_entries',
    'debug_buffer',
    'DebugLogBuffer',
    'JSONFormatter',
]
