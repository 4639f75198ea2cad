"""Service availability probes and incident tracking.

Every enabled target is probed concurrently on each tick. Checks of a single
service are serialized by a per-service lock so its incident transitions
follow the order of its checks.
"""

import asyncio
import inspect
import logging
import threading
import time
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
from pydantic import ValidationError

from ops_monitor.lib.config import ConfigurationError, UptimeConfig
from ops_monitor.lib.database import check_database_connection
from ops_monitor.lib.metrics import record_uptime_check
from ops_monitor.lib.timeutils import format_duration, utc_now
from ops_monitor.models.alert import AlertSeverity
from ops_monitor.models.metric_record import MetricCategory
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

logger = logging.getLogger(__name__)

SERVICE_HISTORY_LIMIT = 100


def database_check(engine) -> Callable[[], Awaitable[CheckOutcome]]:
    """Internal check function probing the academy database."""

    async def check() -> CheckOutcome:
        result = await asyncio.to_thread(check_database_connection, engine)
        return CheckOutcome(
            status=ServiceState.UP if result['status'] == 'healthy' else ServiceState.DOWN,
            error=result['error'],
            details={'response_time_ms': result['response_time_ms']},
        )

    return check


def default_targets(config: UptimeConfig, engine=None) -> List[ServiceCheckTarget]:
    """Targets monitored out of the box: backend, frontend and database."""
    targets = []
    if config.backend_url:
        targets.append(ServiceCheckTarget(
            id='backend_health',
            name='Backend API',
            url=f"{config.backend_url.rstrip('/')}/health",
            critical=True,
        ))
    if config.frontend_url:
        targets.append(ServiceCheckTarget(
            id='frontend',
            name='Frontend',
            url=config.frontend_url,
            critical=False,
        ))
    if engine is not None:
        targets.append(ServiceCheckTarget(
            id='database',
            name='Database',
            type=ServiceType.INTERNAL,
            check=database_check(engine),
            critical=True,
        ))
    return targets


class UptimeMonitor:
    """Probes services and opens/closes incidents from consecutive results."""

    def __init__(
        self,
        config: UptimeConfig,
        registry=None,
        alerting=None,
        audit_log=None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = utc_now,
    ):
        """Initialize the monitor.

        Args:
            config: Probe and incident settings
            registry: Optional MetricsRegistry receiving system status snapshots
            alerting: Optional AlertingService notified on incident changes
            audit_log: Optional CentralizedLogger receiving incident audit entries
            transport: httpx transport for HTTP probes (tests use MockTransport)
            sleep: Delay between HTTP retries
            clock: Source of the current UTC time
        """
        self.config = config
        self.registry = registry
        self.alerting = alerting
        self.audit_log = audit_log
        self._transport = transport
        self._sleep = sleep
        self._clock = clock
        self.services: Dict[str, ServiceCheckTarget] = {}
        self.statuses: Dict[str, ServiceStatus] = {}
        self.incidents: List[Incident] = []
        self._history: Dict[str, List[CheckResult]] = {}
        self._check_locks: Dict[str, asyncio.Lock] = {}
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def add_service(self, target: ServiceCheckTarget | Dict[str, Any]) -> ServiceCheckTarget:
        """Register a target, replacing any target with the same id.

        Raises:
            ConfigurationError: If the target definition is invalid
        """
        if not isinstance(target, ServiceCheckTarget):
            try:
                target = ServiceCheckTarget.model_validate(target)
            except ValidationError as e:
                raise ConfigurationError(f'Invalid service target: {e}') from e

        with self._lock:
            self.services[target.id] = target
            self.statuses.setdefault(target.id, ServiceStatus(service_id=target.id))
            self._history.setdefault(target.id, [])
            self._check_locks.setdefault(target.id, asyncio.Lock())
        logger.info(f'Added uptime target {target.id} ({target.type.value})')
        return target

    def remove_service(self, service_id: str) -> bool:
        with self._lock:
            if self.services.pop(service_id, None) is None:
                return False
            self.statuses.pop(service_id, None)
            self._history.pop(service_id, None)
            self._check_locks.pop(service_id, None)
        logger.info(f'Removed uptime target {service_id}')
        return True

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    async def check_all_services(self) -> Dict[str, Any]:
        """Probe every enabled service concurrently, then aggregate.

        A failing probe never affects the others.

        Returns:
            The aggregated system status
        """
        with self._lock:
            service_ids = [service_id for service_id, target in self.services.items() if target.enabled]

        results = await asyncio.gather(
            *(self.check_service(service_id) for service_id in service_ids),
            return_exceptions=True,
        )
        for service_id, result in zip(service_ids, results):
            if isinstance(result, Exception):
                logger.error(f'Uptime check for {service_id} failed: {result}')

        system_status = self.get_system_status()
        if self.registry is not None:
            self.registry.record(MetricCategory.SYSTEM_STATUS, {
                'status': system_status['status'],
                'services': system_status['services'],
                'open_incidents': system_status['incidents']['open'],
            })
        return system_status

    async def check_service(self, service_id: str) -> CheckResult:
        """Probe one service and apply the result to its state.

        Raises:
            KeyError: If the service is not registered
        """
        target = self.services[service_id]
        async with self._check_locks[service_id]:
            result = await self._probe(target)
            await self._apply(target, result)
        return result

    async def _probe(self, target: ServiceCheckTarget) -> CheckResult:
        if target.type == ServiceType.INTERNAL:
            result = await self._check_internal(target)
        else:
            result = await self._check_http(target)
        record_uptime_check(target.id, result.status.value, result.response_time_ms / 1000)
        return result

    async def _check_http(self, target: ServiceCheckTarget) -> CheckResult:
        timeout = target.timeout or self.config.timeout
        attempts = self.config.retry_attempts
        status_code = None
        error = None
        start = time.perf_counter()

        for attempt in range(1, attempts + 1):
            attempt_start = time.perf_counter()
            try:
                async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                    response = await client.request(
                        target.method,
                        target.url,
                        headers=target.headers,
                        json=target.body,
                    )
                status_code = response.status_code
                if status_code == target.expected_status:
                    return CheckResult(
                        service_id=target.id,
                        timestamp=self._clock(),
                        status=ServiceState.UP,
                        response_time_ms=round((time.perf_counter() - attempt_start) * 1000, 2),
                        status_code=status_code,
                        details={'attempts': attempt},
                    )
                error = f'Unexpected status code: {status_code}'
            except httpx.HTTPError as e:
                error = str(e) or type(e).__name__

            logger.debug(f'Check {attempt}/{attempts} for {target.id} failed: {error}')
            if attempt < attempts:
                await self._sleep(self.config.retry_delay)

        return CheckResult(
            service_id=target.id,
            timestamp=self._clock(),
            status=ServiceState.DOWN,
            response_time_ms=round((time.perf_counter() - start) * 1000, 2),
            status_code=status_code,
            error=error,
            details={'attempts': attempts},
        )

    async def _check_internal(self, target: ServiceCheckTarget) -> CheckResult:
        start = time.perf_counter()
        try:
            outcome = target.check()
            if inspect.isawaitable(outcome):
                outcome = await outcome
            if not isinstance(outcome, CheckOutcome):
                outcome = CheckOutcome.model_validate(outcome)
        except Exception as e:
            outcome = CheckOutcome(status=ServiceState.DOWN, error=str(e) or type(e).__name__)

        return CheckResult(
            service_id=target.id,
            timestamp=self._clock(),
            status=outcome.status,
            response_time_ms=round((time.perf_counter() - start) * 1000, 2),
            error=outcome.error,
            details=outcome.details,
        )

    async def apply_check_result(self, service_id: str, result: CheckResult) -> ServiceStatus:
        """Feed an externally produced result through the state machine.

        Raises:
            KeyError: If the service is not registered
        """
        target = self.services[service_id]
        async with self._check_locks[service_id]:
            await self._apply(target, result)
        return self.statuses[service_id].model_copy(deep=True)

    async def _apply(self, target: ServiceCheckTarget, result: CheckResult) -> None:
        opened = None
        resolved = None
        with self._lock:
            status = self.statuses[target.id]
            self._history[target.id].append(result)
            status.last_check = result.timestamp
            status.response_time_ms = result.response_time_ms

            if result.status == ServiceState.UP:
                status.consecutive_failures = 0
                status.consecutive_successes += 1
                status.last_success = result.timestamp
                status.last_error = None
                if status.incident is not None and status.consecutive_successes >= self.config.recovery_threshold:
                    resolved = status.incident
                    resolved.status = IncidentStatus.RESOLVED
                    resolved.end_time = result.timestamp
                    status.incident = None
                if status.incident is None:
                    status.status = ServiceState.UP
            else:
                status.consecutive_successes = 0
                status.consecutive_failures += 1
                status.last_failure = result.timestamp
                status.last_error = result.error
                status.status = ServiceState.DOWN
                if status.incident is None and status.consecutive_failures >= self.config.incident_threshold:
                    opened = Incident(
                        id=f'incident_{target.id}_{int(result.timestamp.timestamp() * 1000)}',
                        service_id=target.id,
                        service_name=target.name,
                        severity=AlertSeverity.CRITICAL.value if target.critical else AlertSeverity.WARNING.value,
                        start_time=result.timestamp,
                        description=f'{target.name} is down',
                        details={
                            'error': result.error,
                            'status_code': result.status_code,
                            'consecutive_failures': status.consecutive_failures,
                        },
                    )
                    status.incident = opened
                    self.incidents.append(opened)

            status.uptime = self.calculate_uptime(target.id)

        if opened is not None:
            await self._on_incident_opened(target, opened)
        if resolved is not None:
            await self._on_incident_resolved(target, resolved)

    async def _on_incident_opened(self, target: ServiceCheckTarget, incident: Incident) -> None:
        logger.error(f'Incident opened for {target.id}: {incident.details.get("error")}')
        if self.audit_log is not None:
            self.audit_log.log_audit('incident_opened', 'uptime_monitor', target.id, 'open', {
                'incident_id': incident.id,
                'severity': incident.severity,
            })
        if self.alerting is None:
            return
        try:
            await self.alerting.trigger_alert(f'service_down_{target.id}', incident.severity, {
                'message': f'Service down: {target.name}',
                'service_id': target.id,
                'incident_id': incident.id,
                **incident.details,
            })
        except Exception as e:
            logger.error(f'Failed to send incident alert for {target.id}: {e}')

    async def _on_incident_resolved(self, target: ServiceCheckTarget, incident: Incident) -> None:
        duration = format_duration(incident.duration_seconds or 0)
        logger.info(f'Incident resolved for {target.id} after {duration}')
        if self.audit_log is not None:
            self.audit_log.log_audit('incident_resolved', 'uptime_monitor', target.id, 'resolved', {
                'incident_id': incident.id,
                'duration': duration,
            })
        if self.alerting is None:
            return
        try:
            self.alerting.resolve_alert(f'service_down_{target.id}', incident.severity)
            await self.alerting.trigger_alert(f'service_recovered_{target.id}', AlertSeverity.INFO, {
                'message': f'Service recovered: {target.name}',
                'service_id': target.id,
                'incident_id': incident.id,
                'duration': duration,
            })
        except Exception as e:
            logger.error(f'Failed to send recovery alert for {target.id}: {e}')

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def calculate_uptime(self, service_id: str) -> float:
        """Percentage of 'up' results in the retained history; 100 without history."""
        with self._lock:
            history = list(self._history.get(service_id, ()))
        if not history:
            return 100.0
        up = sum(1 for result in history if result.status == ServiceState.UP)
        return round(up / len(history) * 100, 2)

    def get_system_status(self) -> Dict[str, Any]:
        """Aggregate service states into one system state.

        A critical service down means major outage, any other service down a
        partial outage, and a slow average response degraded performance.
        """
        with self._lock:
            pairs = [
                (target, self.statuses[service_id])
                for service_id, target in self.services.items()
                if target.enabled
            ]
            open_incidents = [incident for incident in self.incidents if incident.status == IncidentStatus.OPEN]
            recent = sorted(self.incidents, key=lambda incident: incident.start_time, reverse=True)[:5]

        down = [(target, status) for target, status in pairs if status.status == ServiceState.DOWN]
        up_times = [status.response_time_ms for _, status in pairs if status.status == ServiceState.UP]
        average_response_time = round(sum(up_times) / len(up_times), 2) if up_times else 0.0

        if any(target.critical for target, _ in down):
            state = SystemState.MAJOR_OUTAGE
        elif down:
            state = SystemState.PARTIAL_OUTAGE
        elif average_response_time > self.config.degraded_response_time_ms:
            state = SystemState.DEGRADED_PERFORMANCE
        else:
            state = SystemState.OPERATIONAL

        return {
            'status': state.value,
            'timestamp': self._clock().isoformat(),
            'services': {
                'total': len(pairs),
                'up': sum(1 for _, status in pairs if status.status == ServiceState.UP),
                'down': len(down),
                'unknown': sum(1 for _, status in pairs if status.status == ServiceState.UNKNOWN),
            },
            'average_response_time': average_response_time,
            'incidents': {
                'open': len(open_incidents),
                'recent': [incident.model_dump(mode='json') for incident in recent],
            },
        }

    def get_service_status(self, service_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            target = self.services.get(service_id)
            if target is None:
                return None
            status = self.statuses[service_id].model_copy(deep=True)
            history = list(self._history[service_id][-SERVICE_HISTORY_LIMIT:])
            incidents = [incident for incident in self.incidents if incident.service_id == service_id]
        return {
            'service': target.model_dump(mode='json'),
            'status': status.model_dump(mode='json'),
            'history': [result.model_dump(mode='json') for result in history],
            'incidents': [incident.model_dump(mode='json') for incident in incidents],
        }

    def get_all_services_status(self) -> List[Dict[str, Any]]:
        with self._lock:
            pairs = [(target, self.statuses[service_id].model_copy(deep=True)) for service_id, target in self.services.items()]
        return [
            {
                'id': target.id,
                'name': target.name,
                'type': target.type.value,
                'critical': target.critical,
                'enabled': target.enabled,
                'status': status.status.value,
                'uptime': status.uptime,
                'response_time_ms': status.response_time_ms,
                'last_check': status.last_check.isoformat() if status.last_check else None,
                'consecutive_failures': status.consecutive_failures,
                'incident': status.incident.id if status.incident else None,
            }
            for target, status in pairs
        ]

    def get_recent_incidents(self, limit: int = 10) -> List[Incident]:
        with self._lock:
            incidents = sorted(self.incidents, key=lambda incident: incident.start_time, reverse=True)
        return [incident.model_copy(deep=True) for incident in incidents[:limit]]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def cleanup_history(self) -> int:
        """Drop check results and resolved incidents past the retention window."""
        cutoff = self._clock() - timedelta(hours=self.config.history_retention_hours)
        removed = 0
        with self._lock:
            for service_id, history in self._history.items():
                kept = [result for result in history if result.timestamp > cutoff]
                removed += len(history) - len(kept)
                self._history[service_id] = kept
            self.incidents = [
                incident for incident in self.incidents
                if incident.status == IncidentStatus.OPEN or incident.end_time > cutoff
            ]
            for service_id, status in self.statuses.items():
                status.uptime = self.calculate_uptime(service_id)
        logger.debug(f'Uptime history cleanup removed {removed} results')
        return removed

    def start(self, scheduler) -> None:
        scheduler.add_interval_job('uptime.check', self.check_all_services, self.config.check_interval, run_immediately=True)
        scheduler.add_interval_job('uptime.cleanup', self.cleanup_history, 3600)
        logger.info(f'Uptime monitoring started for {len(self.services)} services')

    def stop(self, scheduler) -> None:
        scheduler.remove_job('uptime.check')
        scheduler.remove_job('uptime.cleanup')
