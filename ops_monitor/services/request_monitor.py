"""Inbound recording API used by the HTTP layer.

The middleware and exception handler call into RequestMonitor; it keeps the
cumulative counters behind /health and forwards each event to the
PerformanceMonitor and the CentralizedLogger.
"""

import logging
import threading
import time
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import psutil

from ops_monitor.lib.metrics import record_request_error, set_active_connections
from ops_monitor.lib.timeutils import format_uptime, utc_now
from ops_monitor.models.alert import AlertSeverity

logger = logging.getLogger(__name__)


class RequestMonitor:
    """Cumulative request counters plus fan-out to the monitoring services."""

    def __init__(
        self,
        performance_monitor,
        centralized_logger=None,
        alerting=None,
        slow_request_alert_ms: float = 5000,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.performance_monitor = performance_monitor
        self.centralized_logger = centralized_logger
        self.alerting = alerting
        self.slow_request_alert_ms = slow_request_alert_ms
        self._clock = clock
        self._lock = threading.Lock()
        self._process = psutil.Process()
        self.reset_metrics()

    def reset_metrics(self) -> None:
        with self._lock:
            self.requests = 0
            self.errors = 0
            self.total_response_time = 0.0
            self.active_connections = 0
            self.start_time = time.time()

    def request_started(self) -> None:
        with self._lock:
            self.active_connections += 1
            set_active_connections(self.active_connections)

    def record_request(
        self,
        method: str,
        path: str,
        duration_ms: float,
        status_code: int,
        user_id: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> None:
        """Record a completed request.

        Args:
            method: HTTP method
            path: Request path
            duration_ms: Handling time in milliseconds
            status_code: Response status
            user_id: Authenticated user, if any
            user_agent: Client user agent
            ip: Client address
        """
        with self._lock:
            self.requests += 1
            self.total_response_time += duration_ms
            self.active_connections = max(self.active_connections - 1, 0)
            set_active_connections(self.active_connections)

        self.performance_monitor.track_api_request(method, path, duration_ms, status_code, user_id)
        if self.centralized_logger is not None:
            self.centralized_logger.log_access(
                method,
                path,
                status_code,
                duration_ms,
                user_agent=user_agent,
                ip=ip,
                metadata={'user_id': user_id} if user_id else None,
            )

        if duration_ms > self.slow_request_alert_ms and self.alerting is not None:
            self.alerting.notify_in_background('slow_response', AlertSeverity.WARNING, {
                'message': f'Slow response: {method} {path} took {duration_ms:.0f}ms',
                'method': method,
                'path': path,
                'duration': duration_ms,
                'status_code': status_code,
            })

    def record_error(self, error: BaseException, context: Optional[Dict[str, Any]] = None) -> None:
        """Record an unhandled error.

        Server errors (status >= 500, or no status at all) also raise a
        `server_error` alert in the background.
        """
        context = dict(context or {})
        with self._lock:
            self.errors += 1
        record_request_error(type(error).__name__)

        if self.centralized_logger is not None:
            self.centralized_logger.log_error(f'Unhandled error: {error}', error, context)
        else:
            logger.error(f'Unhandled error: {error}', exc_info=error)

        status_code = context.get('status_code')
        if (status_code is None or status_code >= 500) and self.alerting is not None:
            self.alerting.notify_in_background('server_error', AlertSeverity.WARNING, {
                'message': f'Server error: {error}',
                'error': type(error).__name__,
                'path': context.get('path'),
                'method': context.get('method'),
            })

    def record_database_query(self, query: str, params: Optional[Any], duration_ms: float) -> None:
        self.performance_monitor.track_database_query(query, params, duration_ms)

    def get_metrics(self) -> Dict[str, Any]:
        with self._lock:
            requests = self.requests
            return {
                'requests': requests,
                'errors': self.errors,
                'error_rate': round(self.errors / requests * 100, 2) if requests else 0.0,
                'total_response_time': round(self.total_response_time, 2),
                'average_response_time': round(self.total_response_time / requests, 2) if requests else 0.0,
                'active_connections': self.active_connections,
                'uptime': round(time.time() - self.start_time, 2),
            }

    def get_basic_health(self) -> Dict[str, Any]:
        uptime = time.time() - self.start_time
        memory_info = self._process.memory_info()
        return {
            'status': 'healthy',
            'timestamp': self._clock().isoformat(),
            'uptime': round(uptime, 2),
            'uptime_formatted': format_uptime(uptime),
            'memory': {
                'rss': memory_info.rss,
                'vms': memory_info.vms,
                'percent': round(self._process.memory_percent(), 2),
            },
        }
