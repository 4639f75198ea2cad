"""Prometheus metrics for the monitoring core.

Exposed at GET /metrics alongside the in-memory MetricsRegistry snapshots.
"""

from prometheus_client import Counter, Gauge, Histogram


# Request metrics
request_duration_seconds = Histogram(
    'ops_request_duration_seconds',
    'Request duration in seconds',
    ['endpoint', 'method', 'status'],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0, 30.0]
)

request_errors_total = Counter(
    'ops_request_errors_total',
    'Errors recorded by the request monitor',
    ['error_type']
)

active_connections_gauge = Gauge(
    'ops_active_connections',
    'Requests currently in flight'
)

# Alerting metrics
alerts_triggered_total = Counter(
    'ops_alerts_triggered_total',
    'Alerts that passed de-duplication and were notified',
    ['alert_id', 'severity']
)

alert_delivery_failures_total = Counter(
    'ops_alert_delivery_failures_total',
    'Failed alert deliveries per channel',
    ['channel']
)

# Uptime metrics
uptime_check_duration_seconds = Histogram(
    'ops_uptime_check_duration_seconds',
    'Duration of uptime probes',
    ['service_id', 'status'],
    buckets=[0.05, 0.1, 0.5, 1.0, 5.0, 10.0, 30.0]
)

service_up_gauge = Gauge(
    'ops_service_up',
    'Whether a monitored service is up (1) or down (0)',
    ['service_id']
)

# Scheduled job metrics
backup_runs_total = Counter(
    'ops_backup_runs_total',
    'Backup runs by type and outcome',
    ['backup_type', 'status']
)

maintenance_runs_total = Counter(
    'ops_maintenance_runs_total',
    'Maintenance runs by job and outcome',
    ['job', 'status']
)


def record_request_duration(endpoint: str, method: str, status: int, duration_seconds: float):
    """Record overall request duration.

    Args:
        endpoint: API endpoint path
        method: HTTP method (GET, POST, etc.)
        status: HTTP status code
        duration_seconds: Request duration in seconds
    """
    request_duration_seconds.labels(
        endpoint=endpoint,
        method=method,
        status=str(status)
    ).observe(duration_seconds)


def record_request_error(error_type: str):
    request_errors_total.labels(error_type=error_type).inc()


def set_active_connections(count: int):
    active_connections_gauge.set(count)


def record_alert_triggered(alert_id: str, severity: str):
    """Count an alert that reached the notification stage."""
    alerts_triggered_total.labels(alert_id=alert_id, severity=severity).inc()


def record_alert_delivery_failure(channel: str):
    alert_delivery_failures_total.labels(channel=channel).inc()


def record_uptime_check(service_id: str, status: str, duration_seconds: float):
    """Record an uptime probe and the resulting up/down state.

    Args:
        service_id: Monitored service id
        status: 'up' or 'down'
        duration_seconds: Probe duration in seconds
    """
    uptime_check_duration_seconds.labels(service_id=service_id, status=status).observe(duration_seconds)
    service_up_gauge.labels(service_id=service_id).set(1 if status == 'up' else 0)


def record_backup_run(backup_type: str, status: str):
    backup_runs_total.labels(backup_type=backup_type, status=status).inc()


def record_maintenance_run(job: str, status: str):
    maintenance_runs_total.labels(job=job, status=status).inc()
