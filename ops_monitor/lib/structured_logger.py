"""Structured Logger with JSON Formatting.

Developer-facing logging for the monitoring core. Every line is a single JSON
object carrying the active correlation id.
"""

import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from ops_monitor.lib.distributed_tracing import get_correlation_id

# Attributes present on every LogRecord; anything else came in through `extra`
_RESERVED_ATTRS = set(vars(logging.LogRecord('', 0, '', 0, '', None, None))) | {'message', 'asctime'}

SENSITIVE_KEYS = (
    'token',
    'password',
    'auth_token',
    'routing_key',
    'encryption_key',
    'smtp_password',
    'access_token',
)


def redact(context: Dict[str, Any]) -> Dict[str, Any]:
    """Drop sensitive keys from a context dictionary.

    Args:
        context: Log context

    Returns:
        Copy of the context without credentials
    """
    return {key: value for key, value in context.items() if key not in SENSITIVE_KEYS}


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON.

        Args:
            record: Log record to format

        Returns:
            JSON-formatted log string
        """
        log_data = {
            'timestamp': _utc_timestamp(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'request_id': get_correlation_id(),
        }

        extra = {
            key: value
            for key, value in vars(record).items()
            if key not in _RESERVED_ATTRS and not key.startswith('_')
        }
        log_data.update(redact(extra))

        if record.exc_info:
            log_data['exception'] = {
                'type': record.exc_info[0].__name__ if record.exc_info[0] else None,
                'message': str(record.exc_info[1]) if record.exc_info[1] else None,
            }

        return json.dumps(log_data, default=str)


class StructuredLogger:
    """Structured logger with JSON formatting.

    Usage:
        logger = StructuredLogger(__name__)
        logger.info('Uptime check finished', service_id='backend', duration_ms=42)
        logger.error('Backup failed', exc_info=True, backup_type='daily')
    """

    def __init__(self, name: str):
        """Initialize structured logger.

        Args:
            name: Logger name (typically module name)
        """
        self.logger = logging.getLogger(name)

        log_level = os.getenv('LOG_LEVEL', 'INFO').upper()
        if log_level == 'WARN':
            log_level = 'WARNING'
        self.logger.setLevel(getattr(logging, log_level, logging.INFO))

        self.logger.handlers.clear()
        handler = logging.StreamHandler()
        handler.setFormatter(JSONFormatter())
        self.logger.addHandler(handler)
        self.logger.propagate = False

    def info(self, message: str, **extra: Any) -> None:
        """Log INFO level message.

        Args:
            message: Log message
            **extra: Additional context (service_id, duration_ms, etc.)
        """
        self.logger.info(message, extra=extra)

    def warning(self, message: str, exc_info: bool = False, **extra: Any) -> None:
        """Log WARNING level message."""
        self.logger.warning(message, exc_info=exc_info, extra=extra)

    def error(self, message: str, exc_info: bool = False, **extra: Any) -> None:
        """Log ERROR level message.

        Args:
            message: Log message
            exc_info: Include exception details
            **extra: Additional context
        """
        self.logger.error(message, exc_info=exc_info, extra=extra)

    def debug(self, message: str, **extra: Any) -> None:
        self.logger.debug(message, extra=extra)

    def log_event(self, event: str, level: str = 'INFO', context: Optional[Dict[str, Any]] = None) -> None:
        """Log a named operational event.

        Args:
            event: Event name (e.g., "uptime.incident_opened", "backup.completed")
            level: Log level (INFO, WARNING, ERROR, DEBUG)
            context: Additional context, credentials are stripped

        Example:
            logger.log_event('alert.delivered', context={'channel': 'slack', 'alert_id': 'high_error_rate'})
        """
        numeric_level = getattr(logging, level.upper(), logging.INFO)
        self.logger.log(numeric_level, event, extra={'event': event, **redact(context or {})})


def log_request(endpoint: str, method: str, status_code: int, duration_ms: float, user_id: str | None = None) -> None:
    """Log an API request with timing.

    Args:
        endpoint: API endpoint path
        method: HTTP method
        status_code: HTTP status code
        duration_ms: Request duration in milliseconds
        user_id: Optional user identifier
    """
    log_data = {
        'timestamp': _utc_timestamp(),
        'level': 'INFO',
        'message': f'{method} {endpoint}',
        'request_id': get_correlation_id(),
        'endpoint': endpoint,
        'method': method,
        'status_code': status_code,
        'duration_ms': round(duration_ms, 2),
    }

    if user_id:
        log_data['user_id'] = user_id

    print(json.dumps(log_data))
