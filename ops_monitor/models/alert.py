"""Alert models."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class AlertSeverity(str, Enum):
    CRITICAL = 'critical'
    WARNING = 'warning'
    INFO = 'info'


class AlertStatus(str, Enum):
    ACTIVE = 'active'
    RESOLVED = 'resolved'


class Alert(BaseModel):
    """Alert identified by (alert_id, severity).

    Attributes:
        alert_id: Alert type, e.g. 'high_error_rate' or 'service_down_backend_health'
        severity: critical, warning or info
        message: Human readable summary
        data: Free-form payload supplied by the signal source
        first_seen: When the alert was created
        last_seen: Most recent occurrence
        occurrences: Number of triggers while active
        window_start: Start of the current hourly notification window
        window_notifications: Notifications sent in the current window
        status: active or resolved
        escalated: Whether delivery used the escalation channels
        resolved_at: Resolution time, set once resolved
    """

    alert_id: str = Field(..., min_length=1)
    severity: AlertSeverity
    message: str = ''
    data: dict[str, Any] = Field(default_factory=dict)
    first_seen: datetime
    last_seen: datetime
    occurrences: int = Field(default=1, ge=1)
    window_start: datetime | None = None
    window_notifications: int = Field(default=0, ge=0)
    status: AlertStatus = AlertStatus.ACTIVE
    escalated: bool = False
    resolved_at: datetime | None = None

    @property
    def key(self) -> str:
        return alert_key(self.alert_id, self.severity)


class AlertHistoryEntry(BaseModel):
    """Alert snapshot appended to the history after notification."""

    alert: Alert
    sent_at: datetime
    channels: list[str] = Field(default_factory=list, description='Channels attempted')
    failed_channels: list[str] = Field(default_factory=list)


def alert_key(alert_id: str, severity: AlertSeverity | str) -> str:
    """Composite key of an alert, e.g. 'high_error_rate_warning'."""
    severity_value = severity.value if isinstance(severity, AlertSeverity) else severity
    return f'{alert_id}_{severity_value}'
