"""
Logging configuration for the tiered cache.

Provides structured logging with correlation IDs and component/operation
context, plus JSON and colored output formats. The library never installs
handlers on import; applications call ``initialize_logging`` or
``LoggingConfig.setup_logging`` themselves.
"""

import logging
import json
import sys
import os
from datetime import datetime, timezone
from typing import Dict, Any, Optional, Union
from uuid import uuid4
import traceback
from contextvars import ContextVar
from pathlib import Path

from .config import get_settings


correlation_id: ContextVar[Optional[str]] = ContextVar('correlation_id', default=None)

# LogRecord attributes that cannot be passed through ``extra``
_RESERVED_ATTRS = frozenset(
    logging.LogRecord('', 0, '', 0, '', (), None).__dict__.keys()
) | {'message', 'asctime'}


class CorrelationFilter(logging.Filter):
    """Add correlation ID and cache context to log records."""

    def filter(self, record):
        record.correlation_id = correlation_id.get() or 'unknown'
        record.component = getattr(record, 'component', 'unknown')
        record.operation = getattr(record, 'operation', 'unknown')
        return True


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def __init__(self, include_extra=True):
        super().__init__()
        self.include_extra = include_extra

    def format(self, record):
        log_entry = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'correlation_id': getattr(record, 'correlation_id', 'unknown'),
            'component': getattr(record, 'component', 'unknown'),
            'operation': getattr(record, 'operation', 'unknown'),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
            'process_id': record.process,
        }

        if record.exc_info:
            log_entry['exception'] = {
                'type': record.exc_info[0].__name__,
                'message': str(record.exc_info[1]),
                'traceback': traceback.format_exception(*record.exc_info)
            }

        if self.include_extra:
            for key, value in record.__dict__.items():
                if key in log_entry or key in _RESERVED_ATTRS or key.startswith('_'):
                    continue
                try:
                    json.dumps(value)
                    log_entry[key] = value
                except (TypeError, ValueError):
                    log_entry[key] = str(value)

        return json.dumps(log_entry, default=str)


class ColoredFormatter(logging.Formatter):
    """Colored formatter for console output."""

    COLORS = {
        'DEBUG': '\033[36m',
        'INFO': '\033[32m',
        'WARNING': '\033[33m',
        'ERROR': '\033[31m',
        'CRITICAL': '\033[35m',
    }
    RESET = '\033[0m'

    def format(self, record):
        color = self.COLORS.get(record.levelname, '')
        formatted = super().format(record)
        context = f"[{getattr(record, 'component', 'unknown')}:{getattr(record, 'operation', 'unknown')}]"
        correlation_info = f"[{getattr(record, 'correlation_id', 'unknown')[:8]}]"
        return f"{color}{formatted}{self.RESET} {context} {correlation_info}"


class CacheLogger:
    """Logger wrapper that attaches component and operation context."""

    def __init__(self, name: str, component: str = None):
        self.logger = logging.getLogger(name)
        self.component = component or name.split('.')[-1]

    def _extra(self, operation: Optional[str], default_operation: str, kwargs: Dict[str, Any]) -> Dict[str, Any]:
        extra = {
            'component': self.component,
            'operation': operation or default_operation,
        }
        for key, value in kwargs.items():
            # Reserved names would make LogRecord raise KeyError
            extra[f"ctx_{key}" if key in _RESERVED_ATTRS else key] = value
        return extra

    def _log(self, log_level: int, message: str, operation: str = None, **kwargs):
        if not self.logger.isEnabledFor(log_level):
            return
        self.logger.log(log_level, message, extra=self._extra(operation, 'unknown', kwargs))

    def debug(self, message: str, operation: str = None, **kwargs):
        self._log(logging.DEBUG, message, operation, **kwargs)

    def info(self, message: str, operation: str = None, **kwargs):
        self._log(logging.INFO, message, operation, **kwargs)

    def warning(self, message: str, operation: str = None, **kwargs):
        self._log(logging.WARNING, message, operation, **kwargs)

    def error(self, message: str, operation: str = None, **kwargs):
        self._log(logging.ERROR, message, operation, **kwargs)

    def critical(self, message: str, operation: str = None, **kwargs):
        self._log(logging.CRITICAL, message, operation, **kwargs)

    def exception(self, message: str, operation: str = None, **kwargs):
        """Log an error with the active exception's traceback."""
        self.logger.exception(message, extra=self._extra(operation, 'exception', kwargs))


class LoggingConfig:
    """Centralized logging configuration."""

    DEFAULT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

    @classmethod
    def setup_logging(
        cls,
        level: Union[str, int] = logging.INFO,
        format_type: str = 'json',
        log_file: Optional[str] = None,
        console_output: bool = True,
        correlation_tracking: bool = True
    ):
        """
        Configure the root logger.

        Args:
            level: Logging level
            format_type: 'json', 'colored', or 'standard'
            log_file: Optional log file path, always written as JSON
            console_output: Enable console output
            correlation_tracking: Enable correlation ID tracking
        """
        if log_file:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)

        root_logger = logging.getLogger()
        root_logger.setLevel(level)
        root_logger.handlers.clear()

        correlation_filter = CorrelationFilter() if correlation_tracking else None

        if console_output:
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setLevel(level)
            console_handler.setFormatter(cls._formatter(format_type))
            if correlation_filter:
                console_handler.addFilter(correlation_filter)
            root_logger.addHandler(console_handler)

        if log_file:
            file_handler = logging.FileHandler(log_file)
            file_handler.setLevel(level)
            file_handler.setFormatter(JSONFormatter())
            if correlation_filter:
                file_handler.addFilter(correlation_filter)
            root_logger.addHandler(file_handler)

        # Redis client internals are noisy at INFO
        logging.getLogger('redis').setLevel(logging.WARNING)

        logger = CacheLogger(__name__, 'logging_config')
        logger.info(
            "Logging system initialized",
            operation="setup_logging",
            level=level,
            format_type=format_type,
            log_file=log_file,
        )

    @classmethod
    def _formatter(cls, format_type: str) -> logging.Formatter:
        if format_type == 'json':
            return JSONFormatter()
        if format_type == 'colored':
            return ColoredFormatter(cls.DEFAULT_FORMAT)
        return logging.Formatter(cls.DEFAULT_FORMAT)


class CorrelationContext:
    """Context manager binding a correlation ID to the current context."""

    def __init__(self, correlation_id_value: str = None):
        self.correlation_id_value = correlation_id_value or str(uuid4())
        self.token = None

    def __enter__(self):
        self.token = correlation_id.set(self.correlation_id_value)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.token:
            correlation_id.reset(self.token)


def get_logger(name: str, component: str = None) -> CacheLogger:
    """Get a cache logger instance."""
    return CacheLogger(name, component)


def get_correlation_id() -> Optional[str]:
    return correlation_id.get()


def initialize_logging(level: Optional[str] = None, format_type: Optional[str] = None):
    """Initialize logging from the environment with sensible defaults."""
    environment = os.getenv('ENVIRONMENT', 'development')
    level = level or get_settings().log_level

    if environment == 'production':
        LoggingConfig.setup_logging(level=level, format_type=format_type or 'json')
    else:
        LoggingConfig.setup_logging(level=level, format_type=format_type or 'colored')
