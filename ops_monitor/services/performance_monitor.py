"""Performance sampling, threshold alerts and health status.

The monitor writes request, query and external API timings into the
MetricsRegistry as they happen, samples process and application metrics on
timers, and raises an alert for every threshold a sample crosses.
"""

import logging
import time
from collections import defaultdict, deque
from datetime import datetime, timedelta
from typing import Any, Callable, Deque, Dict, List, Optional

import psutil
from prometheus_client import CollectorRegistry, Gauge, generate_latest

from ops_monitor.lib.config import AlertThresholds, PerformanceConfig
from ops_monitor.lib.timeutils import parse_timeframe, utc_now
from ops_monitor.models.alert import AlertSeverity
from ops_monitor.models.metric_record import MetricCategory, MetricSummary
from ops_monitor.services.metrics_registry import MetricsRegistry

logger = logging.getLogger(__name__)

HEALTHY = 'healthy'
WARNING = 'warning'
DEGRADED = 'degraded'
CRITICAL = 'critical'

APPLICATION_WINDOW = timedelta(minutes=5)
SLOW_REQUEST_RATE_WARNING = 10.0
MAX_QUERY_LENGTH = 200


def determine_health_status(
    error_rate: float,
    average_response_time: float,
    slow_request_rate: float,
    recent_critical_alert: bool,
    thresholds: AlertThresholds,
) -> str:
    """Reduce the current figures to one health status.

    The conditions are checked in priority order and the first match wins.

    Args:
        error_rate: Error rate in percent
        average_response_time: Mean response time in milliseconds
        slow_request_rate: Slow request rate in percent
        recent_critical_alert: Whether a critical alert fired inside the alert window
        thresholds: Warning thresholds for error rate and response time

    Returns:
        'critical', 'degraded', 'warning' or 'healthy'
    """
    if recent_critical_alert:
        return CRITICAL
    if error_rate > thresholds.error_rate_warning * 100 or average_response_time > thresholds.response_time_warning:
        return DEGRADED
    if slow_request_rate > SLOW_REQUEST_RATE_WARNING:
        return WARNING
    return HEALTHY


def _average(values: List[float]) -> float:
    return round(sum(values) / len(values), 2) if values else 0.0


class PerformanceMonitor:
    """Tracks request, query and system performance."""

    def __init__(
        self,
        config: PerformanceConfig,
        registry: MetricsRegistry,
        alerting=None,
        clock: Callable[[], datetime] = utc_now,
        process: Optional[psutil.Process] = None,
    ):
        """Initialize the monitor.

        Args:
            config: Thresholds and sampling intervals
            registry: Metric buffers written by this monitor
            alerting: Optional AlertingService receiving threshold breaches
            clock: Source of the current UTC time
            process: psutil process to sample (defaults to the current process)
        """
        self.config = config
        self.registry = registry
        self.alerting = alerting
        self._clock = clock
        self._process = process or psutil.Process()
        self._started_at = time.time()
        self._request_monitor = None
        self.recent_alerts: Deque[Dict[str, Any]] = deque(maxlen=100)
        self.is_collecting = False

    def attach_request_monitor(self, request_monitor) -> None:
        """Source of cumulative request counters for application samples."""
        self._request_monitor = request_monitor

    # ------------------------------------------------------------------
    # Tracking
    # ------------------------------------------------------------------

    def track_api_request(self, method: str, path: str, duration_ms: float, status_code: int, user_id: Optional[str] = None):
        return self.registry.record(MetricCategory.API_REQUESTS, {
            'method': method,
            'path': path,
            'duration': duration_ms,
            'status_code': status_code,
            'user_id': user_id,
            'is_error': status_code >= 400,
            'is_slow': duration_ms > self.config.api_response_slow_ms,
        })

    def track_database_query(self, query: str, params: Optional[Any], duration_ms: float):
        """Record a query timing.

        Only the first 200 characters of the query and the number of
        parameters are kept. Very slow queries raise a background alert.
        """
        query_text = (query or '')[:MAX_QUERY_LENGTH]
        record = self.registry.record(MetricCategory.DATABASE_QUERIES, {
            'query': query_text,
            'param_count': len(params) if params else 0,
            'duration': duration_ms,
            'is_slow': duration_ms > self.config.database_query_slow_ms,
        })

        if duration_ms > self.config.database_query_alert_ms:
            data = {
                'message': f'Very slow database query: {duration_ms:.0f}ms',
                'query': query_text,
                'duration': duration_ms,
            }
            self._remember_alert('slow_database_query', AlertSeverity.WARNING, data)
            if self.alerting is not None:
                self.alerting.notify_in_background('slow_database_query', AlertSeverity.WARNING, data)
        return record

    def track_external_api(
        self,
        service: str,
        endpoint: str,
        duration_ms: float,
        status_code: Optional[int] = None,
        error: Optional[str] = None,
    ):
        return self.registry.record(MetricCategory.EXTERNAL_APIS, {
            'service': service,
            'endpoint': endpoint,
            'duration': duration_ms,
            'status_code': status_code,
            'error': error,
            'is_error': bool(error) or (status_code is not None and status_code >= 400),
            'is_slow': duration_ms > self.config.external_api_slow_ms,
        })

    # ------------------------------------------------------------------
    # Sampling
    # ------------------------------------------------------------------

    def _handle_count(self) -> int:
        try:
            return self._process.num_fds()
        except AttributeError:
            # Windows exposes handles instead of file descriptors
            return self._process.num_handles()

    async def collect_system_metrics(self) -> Optional[Dict[str, Any]]:
        """Sample process and system resources, then evaluate memory and handle thresholds."""
        try:
            memory_info = self._process.memory_info()
            system_memory = psutil.virtual_memory()
            sample = {
                'memory_rss': memory_info.rss,
                'memory_vms': memory_info.vms,
                'memory_percent': system_memory.percent,
                'cpu_percent': self._process.cpu_percent(interval=None),
                'active_handles': self._handle_count(),
                'threads': self._process.num_threads(),
                'uptime': round(time.time() - self._started_at, 2),
            }
        except Exception as e:
            logger.error(f'Failed to collect system metrics: {e}', exc_info=True)
            return None

        self.registry.record(MetricCategory.SYSTEM, sample)
        await self.check_system_thresholds(sample)
        return sample

    async def check_system_thresholds(self, sample: Dict[str, Any]) -> None:
        thresholds = self.config.thresholds
        memory_usage = sample['memory_percent'] / 100
        if memory_usage >= thresholds.memory_critical:
            await self._raise_alert('high_memory_usage', AlertSeverity.CRITICAL, {
                'message': f"Critical memory usage: {sample['memory_percent']:.1f}%",
                'memory_percent': sample['memory_percent'],
                'threshold': thresholds.memory_critical,
            })
        elif memory_usage >= thresholds.memory_warning:
            await self._raise_alert('high_memory_usage', AlertSeverity.WARNING, {
                'message': f"High memory usage: {sample['memory_percent']:.1f}%",
                'memory_percent': sample['memory_percent'],
                'threshold': thresholds.memory_warning,
            })

        if sample['active_handles'] > self.config.high_active_handles:
            await self._raise_alert('high_active_handles', AlertSeverity.WARNING, {
                'message': f"High number of active handles: {sample['active_handles']}",
                'active_handles': sample['active_handles'],
            })

    async def collect_application_metrics(self) -> Dict[str, Any]:
        """Sample request totals and the 5 minute request window, then evaluate rate thresholds."""
        totals = self._request_monitor.get_metrics() if self._request_monitor is not None else {}
        summary = self.registry.summarize(MetricCategory.API_REQUESTS, APPLICATION_WINDOW)
        sample = {
            'total_requests': totals.get('requests', 0),
            'total_errors': totals.get('errors', 0),
            'active_connections': totals.get('active_connections', 0),
            'request_count': summary.count,
            'error_rate': summary.error_rate,
            'average_response_time': summary.mean,
            'p95_response_time': summary.p95,
            'slow_request_rate': summary.slow_rate,
        }
        self.registry.record(MetricCategory.APPLICATION, sample)
        if summary.count:
            await self.check_application_thresholds(summary)
        return sample

    async def check_application_thresholds(self, summary: MetricSummary) -> None:
        thresholds = self.config.thresholds
        error_rate = summary.error_rate / 100
        if error_rate >= thresholds.error_rate_critical:
            await self._raise_alert('high_error_rate', AlertSeverity.CRITICAL, {
                'message': f'Critical error rate: {summary.error_rate:.2f}%',
                'error_rate': summary.error_rate,
                'threshold': thresholds.error_rate_critical,
            })
        elif error_rate >= thresholds.error_rate_warning:
            await self._raise_alert('high_error_rate', AlertSeverity.WARNING, {
                'message': f'High error rate: {summary.error_rate:.2f}%',
                'error_rate': summary.error_rate,
                'threshold': thresholds.error_rate_warning,
            })

        if summary.mean >= thresholds.response_time_critical:
            await self._raise_alert('slow_response_time', AlertSeverity.CRITICAL, {
                'message': f'Critical average response time: {summary.mean:.0f}ms',
                'average_response_time': summary.mean,
                'threshold': thresholds.response_time_critical,
            })
        elif summary.mean >= thresholds.response_time_warning:
            await self._raise_alert('slow_response_time', AlertSeverity.WARNING, {
                'message': f'Slow average response time: {summary.mean:.0f}ms',
                'average_response_time': summary.mean,
                'threshold': thresholds.response_time_warning,
            })

    def _remember_alert(self, alert_id: str, severity: AlertSeverity, data: Dict[str, Any]) -> None:
        self.recent_alerts.append({
            'alert_id': alert_id,
            'severity': severity.value,
            'timestamp': self._clock(),
            'data': data,
        })

    async def _raise_alert(self, alert_id: str, severity: AlertSeverity, data: Dict[str, Any]) -> None:
        self._remember_alert(alert_id, severity, data)
        logger.warning(f"Performance alert {alert_id} ({severity.value}): {data['message']}")
        if self.alerting is None:
            return
        try:
            await self.alerting.trigger_alert(alert_id, severity, data)
        except Exception as e:
            logger.error(f'Failed to raise performance alert {alert_id}: {e}')

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def _recent_critical_alert(self, now: datetime) -> bool:
        cutoff = now - timedelta(minutes=self.config.health_alert_window_minutes)
        if any(alert['severity'] == CRITICAL and alert['timestamp'] > cutoff for alert in list(self.recent_alerts)):
            return True
        if self.alerting is not None:
            return any(
                alert.severity == AlertSeverity.CRITICAL and alert.last_seen > cutoff
                for alert in self.alerting.get_active_alerts()
            )
        return False

    def get_health_status(self) -> Dict[str, Any]:
        now = self._clock()
        summary = self.registry.summarize(MetricCategory.API_REQUESTS, APPLICATION_WINDOW)
        recent_critical = self._recent_critical_alert(now)
        status = determine_health_status(
            summary.error_rate,
            summary.mean,
            summary.slow_rate,
            recent_critical,
            self.config.thresholds,
        )
        latest_system = self.registry.latest(MetricCategory.SYSTEM)
        active_alerts = len(self.alerting.get_active_alerts()) if self.alerting is not None else 0
        return {
            'status': status,
            'timestamp': now.isoformat(),
            'metrics': {
                'request_count': summary.count,
                'error_rate': summary.error_rate,
                'average_response_time': summary.mean,
                'slow_request_rate': summary.slow_rate,
            },
            'system': dict(latest_system.data) if latest_system else {},
            'alerts': {
                'active': active_alerts,
                'recent_critical': recent_critical,
            },
        }

    def get_performance_summary(self, timeframe: Optional[str] = '1h') -> Dict[str, Any]:
        """Aggregate every tracked category over a lookback window.

        Args:
            timeframe: Window such as '15m', '1h' or '7d'; malformed values mean 1h

        Returns:
            API, system, database and external API sections plus the alerts raised in the window
        """
        window = parse_timeframe(timeframe)
        now = self._clock()
        api_records = self.registry.query(MetricCategory.API_REQUESTS, window)
        api = self.registry.summarize(MetricCategory.API_REQUESTS, window)
        database = self.registry.summarize(MetricCategory.DATABASE_QUERIES, window)
        external = self.registry.summarize(MetricCategory.EXTERNAL_APIS, window)
        system_records = self.registry.query(MetricCategory.SYSTEM, window)

        endpoints: Dict[str, List[float]] = defaultdict(list)
        for record in api_records:
            endpoints[f"{record.get('method')} {record.get('path')}"].append(record.get('duration', 0))
        top_endpoints = sorted(endpoints.items(), key=lambda item: len(item[1]), reverse=True)[:10]

        memory = [record.get('memory_percent', 0) for record in system_records]
        cpu = [record.get('cpu_percent', 0) for record in system_records]
        cutoff = now - window

        return {
            'timeframe': timeframe if parse_timeframe(timeframe, default=None) else '1h',
            'generated_at': now.isoformat(),
            'api': {
                **api.model_dump(),
                'endpoints': [
                    {'endpoint': name, 'count': len(durations), 'average_response_time': _average(durations)}
                    for name, durations in top_endpoints
                ],
            },
            'system': {
                'samples': len(system_records),
                'average_memory_percent': _average(memory),
                'max_memory_percent': max(memory) if memory else 0.0,
                'average_cpu_percent': _average(cpu),
                'max_cpu_percent': max(cpu) if cpu else 0.0,
            },
            'database': database.model_dump(),
            'external_apis': external.model_dump(),
            'alerts': [
                {**alert, 'timestamp': alert['timestamp'].isoformat()}
                for alert in list(self.recent_alerts)
                if alert['timestamp'] > cutoff
            ],
        }

    def get_query_metrics(self) -> Dict[str, Any]:
        summary = self.registry.summarize(MetricCategory.DATABASE_QUERIES, APPLICATION_WINDOW)
        return {
            'total_queries': summary.count,
            'average_duration': summary.mean,
            'max_duration': summary.max,
            'slow_queries': summary.slow_count,
            'slow_query_rate': summary.slow_rate,
        }

    def get_slow_queries(self, limit: int = 10) -> List[Dict[str, Any]]:
        slow = [record for record in self.registry.query(MetricCategory.DATABASE_QUERIES) if record.get('is_slow')]
        slow.sort(key=lambda record: record.get('duration', 0), reverse=True)
        return [{**record.data, 'timestamp': record.timestamp.isoformat()} for record in slow[:limit]]

    def export_metrics(self, format: str = 'json'):
        """Export the current figures.

        Args:
            format: 'json' for a dict, 'prometheus' for the text exposition format

        Raises:
            ValueError: For any other format
        """
        if format == 'json':
            return {
                'timestamp': self._clock().isoformat(),
                'summary': self.get_performance_summary('1h'),
                'health': self.get_health_status(),
            }
        if format == 'prometheus':
            return self._render_prometheus()
        raise ValueError(f'Unsupported export format: {format}')

    def _render_prometheus(self) -> str:
        summary = self.registry.summarize(MetricCategory.API_REQUESTS, timedelta(hours=1))
        latest_system = self.registry.latest(MetricCategory.SYSTEM)

        registry = CollectorRegistry()
        gauges = {
            'lfa_api_requests_total': ('API requests in the last hour', summary.count),
            'lfa_api_response_time_avg_ms': ('Average API response time in the last hour', summary.mean),
            'lfa_api_response_time_p95_ms': ('95th percentile API response time in the last hour', summary.p95),
            'lfa_api_error_rate_percent': ('API error rate in the last hour', summary.error_rate),
        }
        if latest_system is not None:
            gauges['lfa_memory_usage_percent'] = ('System memory usage', latest_system.get('memory_percent', 0))
            gauges['lfa_cpu_usage_percent'] = ('Process CPU usage', latest_system.get('cpu_percent', 0))
            gauges['lfa_active_handles'] = ('Open handles of the process', latest_system.get('active_handles', 0))

        for name, (documentation, value) in gauges.items():
            Gauge(name, documentation, registry=registry).set(value)
        return generate_latest(registry).decode('utf-8')

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def clean_old_metrics(self) -> int:
        """Drop metric records and remembered alerts past the retention window."""
        retention = timedelta(hours=self.config.retention_hours)
        removed = self.registry.sweep(retention)
        cutoff = self._clock() - retention
        kept = [alert for alert in self.recent_alerts if alert['timestamp'] > cutoff]
        self.recent_alerts = deque(kept, maxlen=100)
        logger.debug(f'Performance metrics cleanup removed {removed} records')
        return removed

    def start(self, scheduler) -> None:
        scheduler.add_interval_job(
            'performance.system', self.collect_system_metrics, self.config.system_sample_interval, run_immediately=True
        )
        scheduler.add_interval_job(
            'performance.application', self.collect_application_metrics, self.config.application_sample_interval
        )
        scheduler.add_interval_job('performance.cleanup', self.clean_old_metrics, 3600)
        self.is_collecting = True
        logger.info('Performance monitoring started')

    def stop(self, scheduler) -> None:
        for job_id in ('performance.system', 'performance.application', 'performance.cleanup'):
            scheduler.remove_job(job_id)
        self.is_collecting = False
