"""Alert de-duplication, suppression, escalation and fan-out.

Alerts are keyed by (alert_id, severity). At most one alert per key is active;
repeat triggers bump its occurrence count and re-notify at most
`max_alerts_per_hour` times per hourly window. Delivery goes to every enabled
channel of the severity's escalation rule, each channel isolated from the
others' failures.
"""

import asyncio
import logging
import threading
import time
from collections import deque
from datetime import datetime, timedelta
from typing import Any, Callable, Deque, Dict, Iterable, List, NamedTuple, Optional, Set

from ops_monitor.lib.config import AlertingConfig
from ops_monitor.lib.metrics import record_alert_delivery_failure, record_alert_triggered
from ops_monitor.lib.timeutils import utc_now
from ops_monitor.models.alert import Alert, AlertHistoryEntry, AlertSeverity, AlertStatus, alert_key
from ops_monitor.services.alert_channels import AlertChannel

logger = logging.getLogger(__name__)

CHAT_CHANNELS = ('slack', 'discord', 'webhook')
NOTIFICATION_WINDOW = timedelta(hours=1)


class UnknownSeverityError(ValueError):
    """Raised when an alert is triggered with a severity outside critical/warning/info."""


class EscalationRule(NamedTuple):
    """Channels used for a severity.

    `escalation_channels` are added once the alert has been active for
    `escalate_after`; a zero delay escalates immediately.
    """

    channels: tuple
    escalation_channels: tuple = ()
    escalate_after: Optional[timedelta] = None


DEFAULT_ESCALATION_RULES = {
    AlertSeverity.CRITICAL: EscalationRule(
        channels=CHAT_CHANNELS + ('email',),
        escalation_channels=('sms', 'pagerduty'),
        escalate_after=timedelta(0),
    ),
    AlertSeverity.WARNING: EscalationRule(
        channels=CHAT_CHANNELS + ('email',),
        escalation_channels=('pagerduty',),
        escalate_after=timedelta(minutes=15),
    ),
    AlertSeverity.INFO: EscalationRule(channels=CHAT_CHANNELS),
}


def parse_severity(severity: AlertSeverity | str) -> AlertSeverity:
    """Validate a severity value.

    Raises:
        UnknownSeverityError: For anything but critical, warning or info
    """
    if isinstance(severity, AlertSeverity):
        return severity
    try:
        return AlertSeverity(str(severity).lower())
    except ValueError:
        raise UnknownSeverityError(f'Unknown alert severity: {severity!r}') from None


class AlertingService:
    """Owns active alerts, suppressions and alert history."""

    def __init__(
        self,
        config: AlertingConfig,
        channels: Optional[Dict[str, AlertChannel]] = None,
        audit_log=None,
        escalation_rules: Optional[Dict[AlertSeverity, EscalationRule]] = None,
        clock: Callable[[], datetime] = utc_now,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        """Initialize the service.

        Args:
            config: Alerting settings
            channels: Enabled delivery channels by name
            audit_log: Optional CentralizedLogger receiving alert events
            escalation_rules: Override of the severity to channel mapping
            clock: Source of the current UTC time
            monotonic: Clock used for suppression deadlines
        """
        self.config = config
        self.channels: Dict[str, AlertChannel] = dict(channels or {})
        self.audit_log = audit_log
        self.escalation_rules = dict(escalation_rules or DEFAULT_ESCALATION_RULES)
        self._clock = clock
        self._monotonic = monotonic
        self._alerts: Dict[str, Alert] = {}
        self._suppressed: Dict[str, float] = {}
        self._history: Deque[AlertHistoryEntry] = deque(maxlen=config.history_limit)
        self._lock = threading.Lock()
        self._background: Set[asyncio.Task] = set()
        self._uptime_monitor = None

    # ------------------------------------------------------------------
    # Triggering
    # ------------------------------------------------------------------

    async def trigger_alert(
        self,
        alert_id: str,
        severity: AlertSeverity | str,
        data: Optional[Dict[str, Any]] = None,
    ) -> Optional[Alert]:
        """Raise (or re-raise) an alert and notify its channels.

        Args:
            alert_id: Alert type, e.g. 'high_error_rate'
            severity: critical, warning or info
            data: Payload; a 'message' key becomes the alert message

        Returns:
            Snapshot of the alert, or None when the key is suppressed

        Raises:
            UnknownSeverityError: For an unknown severity
        """
        severity = parse_severity(severity)
        data = dict(data or {})
        key = alert_key(alert_id, severity)
        now = self._clock()

        with self._lock:
            if self._is_suppressed(key):
                logger.debug(f'Alert {key} suppressed')
                return None

            alert = self._alerts.get(key)
            if alert is not None:
                alert.occurrences += 1
                alert.last_seen = now
                if data:
                    alert.data = data
            else:
                alert = Alert(
                    alert_id=alert_id,
                    severity=severity,
                    message=data.get('message') or f'Alert: {alert_id}',
                    data=data,
                    first_seen=now,
                    last_seen=now,
                )
                self._alerts[key] = alert

            if alert.window_start is None or now - alert.window_start >= NOTIFICATION_WINDOW:
                alert.window_start = now
                alert.window_notifications = 0
            if alert.window_notifications >= self.config.max_alerts_per_hour:
                logger.debug(f'Alert {key} over the hourly notification cap')
                return alert.model_copy(deep=True)
            alert.window_notifications += 1

            channel_names = self._select_channels(alert, now)
            snapshot = alert.model_copy(deep=True)

        await self._notify(snapshot, channel_names)

        if self.audit_log is not None:
            self.audit_log.log_application('WARN', f'Alert triggered: {alert_id}', {
                'alert_id': alert_id,
                'severity': severity.value,
                'occurrences': snapshot.occurrences,
                'data': data,
            })
        return snapshot

    def notify_in_background(
        self,
        alert_id: str,
        severity: AlertSeverity | str,
        data: Optional[Dict[str, Any]] = None,
    ) -> Optional[asyncio.Task]:
        """Schedule `trigger_alert` without awaiting delivery.

        Used from the request path so notification latency never reaches
        the response. The severity is validated before scheduling.

        Returns:
            The scheduled task, or None without a running event loop
        """
        parse_severity(severity)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f'No running event loop, alert {alert_id} not delivered')
            return None

        task = loop.create_task(self.trigger_alert(alert_id, severity, data))
        self._background.add(task)
        task.add_done_callback(self._background_done)
        return task

    def _background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f'Background alert failed: {task.exception()}')

    async def drain_background(self) -> None:
        """Wait for alerts scheduled with notify_in_background."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def _select_channels(self, alert: Alert, now: datetime) -> List[str]:
        rule = self.escalation_rules.get(alert.severity) or self.escalation_rules[AlertSeverity.WARNING]
        names = list(rule.channels)
        if rule.escalation_channels and rule.escalate_after is not None:
            if alert.escalated or now - alert.first_seen >= rule.escalate_after:
                alert.escalated = True
                names.extend(rule.escalation_channels)
        return names

    async def _notify(self, alert: Alert, channel_names: Iterable[str]) -> AlertHistoryEntry:
        targets = [
            self.channels[name]
            for name in channel_names
            if name in self.channels and self.channels[name].accepts(alert)
        ]
        results = await asyncio.gather(*(self._deliver(channel, alert) for channel in targets))
        failed = [channel.name for channel, delivered in zip(targets, results) if not delivered]

        entry = AlertHistoryEntry(
            alert=alert,
            sent_at=self._clock(),
            channels=[channel.name for channel in targets],
            failed_channels=failed,
        )
        with self._lock:
            self._history.append(entry)
        record_alert_triggered(alert.alert_id, alert.severity.value)
        return entry

    async def _deliver(self, channel: AlertChannel, alert: Alert) -> bool:
        try:
            await channel.deliver(alert)
        except Exception as e:
            record_alert_delivery_failure(channel.name)
            logger.error(f'Failed to send {channel.name} notification for {alert.key}: {e}')
            if self.audit_log is not None:
                self.audit_log.log_error(f'Failed to send {channel.name} notification', e, {
                    'alert_id': alert.alert_id,
                    'severity': alert.severity.value,
                })
            return False
        return True

    # ------------------------------------------------------------------
    # Suppression and resolution
    # ------------------------------------------------------------------

    def _is_suppressed(self, key: str) -> bool:
        deadline = self._suppressed.get(key)
        if deadline is None:
            return False
        if self._monotonic() >= deadline:
            del self._suppressed[key]
            return False
        return True

    def suppress_alert(self, alert_id: str, severity: AlertSeverity | str, duration: Optional[float] = None) -> None:
        """Silence a key for `duration` seconds (default: configured suppression duration)."""
        severity = parse_severity(severity)
        key = alert_key(alert_id, severity)
        seconds = duration if duration is not None else self.config.suppression_duration
        with self._lock:
            self._suppressed[key] = self._monotonic() + seconds
        logger.info(f'Alert suppressed: {key} for {seconds}s')

    def is_suppressed(self, alert_id: str, severity: AlertSeverity | str) -> bool:
        with self._lock:
            return self._is_suppressed(alert_key(alert_id, parse_severity(severity)))

    def resolve_alert(self, alert_id: str, severity: AlertSeverity | str) -> bool:
        """Mark an active alert resolved and forget it.

        Returns:
            True when an active alert existed
        """
        key = alert_key(alert_id, parse_severity(severity))
        with self._lock:
            alert = self._alerts.pop(key, None)
            if alert is None:
                return False
            alert.status = AlertStatus.RESOLVED
            alert.resolved_at = self._clock()

        logger.info(f'Alert resolved: {key}')
        if self.audit_log is not None:
            self.audit_log.log_application('INFO', f'Alert resolved: {key}', {'occurrences': alert.occurrences})
        return True

    def cleanup_alerts(self) -> Dict[str, int]:
        """Hourly sweep.

        Active alerts that have not fired again within the cleanup age are
        retired as resolved; alerts that keep firing stay active however old
        they are. History older than the cleanup age goes.

        Returns:
            Counts of retired alerts, removed history entries and expired suppressions
        """
        now = self._clock()
        cutoff = now - timedelta(hours=self.config.cleanup_max_age_hours)
        with self._lock:
            stale = [key for key, alert in self._alerts.items() if alert.last_seen <= cutoff]
            for key in stale:
                alert = self._alerts.pop(key)
                alert.status = AlertStatus.RESOLVED
                alert.resolved_at = now

            before = len(self._history)
            kept = [entry for entry in self._history if entry.sent_at > cutoff]
            self._history = deque(kept, maxlen=self.config.history_limit)

            expired = [key for key, deadline in self._suppressed.items() if self._monotonic() >= deadline]
            for key in expired:
                del self._suppressed[key]

        removed = {'alerts': len(stale), 'history': before - len(kept), 'suppressions': len(expired)}
        logger.debug(f'Alert cleanup completed: {removed}')
        return removed

    # ------------------------------------------------------------------
    # Uptime-driven checks
    # ------------------------------------------------------------------

    def attach_uptime_monitor(self, uptime_monitor) -> None:
        """Use an UptimeMonitor's snapshots for the periodic health checks."""
        self._uptime_monitor = uptime_monitor

    async def check_system_health_alerts(self) -> None:
        if self._uptime_monitor is None:
            return
        try:
            system_status = self._uptime_monitor.get_system_status()
            status = system_status['status']
            if status == 'major_outage':
                await self.trigger_alert('system_major_outage', AlertSeverity.CRITICAL, {
                    'message': 'Major system outage detected',
                    'services_down': system_status['services']['down'],
                })
            elif status == 'partial_outage':
                await self.trigger_alert('system_partial_outage', AlertSeverity.WARNING, {
                    'message': 'Partial system outage detected',
                    'services_down': system_status['services']['down'],
                })
            elif status == 'degraded_performance':
                await self.trigger_alert('system_degraded_performance', AlertSeverity.WARNING, {
                    'message': 'System performance is degraded',
                    'average_response_time': system_status['average_response_time'],
                })

            open_incidents = system_status['incidents']['open']
            if open_incidents > 0:
                await self.trigger_alert('open_incidents', AlertSeverity.WARNING, {
                    'message': f'{open_incidents} open incidents detected',
                    'open_incidents': open_incidents,
                })
        except Exception as e:
            logger.error(f'Failed to check system health alerts: {e}', exc_info=True)

    async def check_uptime_alerts(self) -> None:
        if self._uptime_monitor is None:
            return
        try:
            for service in self._uptime_monitor.get_all_services_status():
                if service['status'] == 'down':
                    critical = service['critical']
                    await self.trigger_alert(
                        'critical_service_down' if critical else 'service_down',
                        AlertSeverity.CRITICAL if critical else AlertSeverity.WARNING,
                        {
                            'message': f"{'Critical service' if critical else 'Service'} down: {service['name']}",
                            'service_id': service['id'],
                            'service_name': service['name'],
                            'last_check': service['last_check'],
                        },
                    )
                if service['critical'] and service['uptime'] < self.config.low_uptime_threshold:
                    await self.trigger_alert('low_uptime', AlertSeverity.WARNING, {
                        'message': f"Low uptime for {service['name']}: {service['uptime']:.2f}%",
                        'service_id': service['id'],
                        'uptime': service['uptime'],
                    })
        except Exception as e:
            logger.error(f'Failed to check uptime alerts: {e}', exc_info=True)

    def start(self, scheduler) -> None:
        scheduler.add_interval_job('alerting.cleanup', self.cleanup_alerts, 3600)
        if self._uptime_monitor is not None:
            scheduler.add_interval_job(
                'alerting.system_health', self.check_system_health_alerts, self.config.system_health_check_interval
            )
            scheduler.add_interval_job('alerting.uptime', self.check_uptime_alerts, self.config.uptime_check_interval)

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def get_active_alerts(self) -> List[Alert]:
        with self._lock:
            return [alert.model_copy(deep=True) for alert in self._alerts.values()]

    def get_alert_history(self, limit: int = 100) -> List[AlertHistoryEntry]:
        with self._lock:
            history = list(self._history)
        return history[-limit:] if limit else history

    def get_alerting_status(self) -> Dict[str, Any]:
        with self._lock:
            active = len(self._alerts)
            suppressed = sum(1 for key in list(self._suppressed) if self._is_suppressed(key))
            history = list(self._history)
        return {
            'active_alerts': active,
            'suppressed_alerts': suppressed,
            'total_alerts': len(history),
            'channels': {name: {'enabled': True} for name in sorted(self.channels)},
            'recent_alerts': [entry.model_dump(mode='json') for entry in history[-10:]],
        }

    async def test_alerts(self) -> Dict[str, Any]:
        """Send an info alert through the chat channels."""
        try:
            await self.trigger_alert('test_alert', AlertSeverity.INFO, {
                'message': 'This is a test alert to verify the alerting system',
                'test_run': True,
                'timestamp': self._clock().isoformat(),
            })
        except Exception as e:
            logger.error(f'Alert test failed: {e}', exc_info=True)
            return {'success': False, 'error': str(e)}
        return {'success': True, 'message': 'Test alert sent successfully', 'channels': sorted(self.channels)}
