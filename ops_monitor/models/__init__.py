"""Models for metrics, alerts, uptime, logs, backups and maintenance runs."""

from ops_monitor.models.alert import Alert, AlertHistoryEntry, AlertSeverity, AlertStatus
from ops_monitor.models.backup_record import BackupRecord, BackupType
from ops_monitor.models.log_entry import LogCategory, LogEntry, LogLevel
from ops_monitor.models.maintenance_record import MaintenanceRecord, MaintenanceStatus
from ops_monitor.models.metric_record import MetricCategory, MetricRecord, MetricSummary
from ops_monitor.models.service_status import (
    CheckOutcome,
    CheckResult,
    Incident,
    IncidentStatus,
    ServiceCheckTarget,
    ServiceState,
    ServiceStatus,
    ServiceType,
    SystemState,
)

__all__ = [
    'Alert',
    'AlertHistoryEntry',
    'AlertSeverity',
    'AlertStatus',
    'BackupRecord',
    'BackupType',
    'CheckOutcome',
    'CheckResult',
    'Incident',
    'IncidentStatus',
    'LogCategory',
    'LogEntry',
    'LogLevel',
    'MaintenanceRecord',
    'MaintenanceStatus',
    'MetricCategory',
    'MetricRecord',
    'MetricSummary',
    'ServiceCheckTarget',
    'ServiceState',
    'ServiceStatus',
    'ServiceType',
    'SystemState',
]
