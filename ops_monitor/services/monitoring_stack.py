"""Explicit wiring of the monitoring components.

Every component is constructed once here and handed its collaborators; the
FastAPI lifespan owns the resulting MonitoringStack.
"""

import logging
from typing import Dict, Optional

import httpx
from sqlalchemy import Engine

from ops_monitor.lib.commands import CommandRunner, run_command
from ops_monitor.lib.config import MonitoringConfig
from ops_monitor.lib.database import create_database_engine
from ops_monitor.lib.scheduler import JobScheduler
from ops_monitor.services.alert_channels import AlertChannel, build_channels
from ops_monitor.services.alerting_service import AlertingService
from ops_monitor.services.backup_scheduler import BackupScheduler
from ops_monitor.services.centralized_logger import CentralizedLogger
from ops_monitor.services.maintenance_scheduler import MaintenanceScheduler
from ops_monitor.services.metrics_registry import MetricsRegistry
from ops_monitor.services.performance_monitor import PerformanceMonitor
from ops_monitor.services.request_monitor import RequestMonitor
from ops_monitor.services.uptime_monitor import UptimeMonitor, default_targets

logger = logging.getLogger(__name__)


class MonitoringStack:
    """Holds the wired components and starts/stops their periodic jobs."""

    def __init__(
        self,
        config: MonitoringConfig,
        scheduler: JobScheduler,
        engine: Engine,
        registry: MetricsRegistry,
        centralized_logger: CentralizedLogger,
        alerting: AlertingService,
        performance: PerformanceMonitor,
        request_monitor: RequestMonitor,
        uptime: UptimeMonitor,
        backup: BackupScheduler,
        maintenance: MaintenanceScheduler,
    ):
        self.config = config
        self.scheduler = scheduler
        self.engine = engine
        self.registry = registry
        self.centralized_logger = centralized_logger
        self.alerting = alerting
        self.performance = performance
        self.request_monitor = request_monitor
        self.uptime = uptime
        self.backup = backup
        self.maintenance = maintenance
        self.started = False

    def start(self, run_jobs: bool = True) -> None:
        """Register every periodic job and start the scheduler.

        Args:
            run_jobs: Start the scheduler; False only prepares components (tests)
        """
        self.centralized_logger.initialize()
        if run_jobs:
            self.centralized_logger.start(self.scheduler)
            self.performance.start(self.scheduler)
            self.uptime.start(self.scheduler)
            self.alerting.start(self.scheduler)
            self.backup.start(self.scheduler)
            self.maintenance.start(self.scheduler)
            self.scheduler.start()
        self.started = True
        logger.info('Monitoring stack started')

    async def stop(self) -> None:
        """Stop jobs, deliver pending alerts and flush logs."""
        if self.scheduler.running:
            self.backup.stop(self.scheduler)
            self.maintenance.stop(self.scheduler)
            self.performance.stop(self.scheduler)
            self.uptime.stop(self.scheduler)
            self.scheduler.shutdown()
        await self.alerting.drain_background()
        self.centralized_logger.shutdown()
        self.engine.dispose()
        self.started = False
        logger.info('Monitoring stack stopped')


def build_monitoring_stack(
    config: MonitoringConfig,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    engine: Optional[Engine] = None,
    channels: Optional[Dict[str, AlertChannel]] = None,
    runner: CommandRunner = run_command,
    scheduler: Optional[JobScheduler] = None,
) -> MonitoringStack:
    """Construct and wire every monitoring component.

    Args:
        config: Full monitoring configuration
        transport: httpx transport shared by probes, webhooks and log shipping (tests)
        engine: SQLAlchemy engine; created from config.database when omitted
        channels: Alert channels; built from config.alerting.channels when omitted
        runner: Async command runner for backup and maintenance tools
        scheduler: Job scheduler; a new one in config.scheduler_timezone when omitted

    Returns:
        The wired, not yet started, MonitoringStack
    """
    engine = engine or create_database_engine(config.database)
    scheduler = scheduler or JobScheduler(config.scheduler_timezone)
    registry = MetricsRegistry()

    centralized_logger = CentralizedLogger(config.logging, registry=registry, transport=transport)
    if channels is None:
        channels = build_channels(config.alerting.channels, config.alerting.service_name, transport)
    alerting = AlertingService(config.alerting, channels, audit_log=centralized_logger)

    performance = PerformanceMonitor(config.performance, registry, alerting=alerting)
    request_monitor = RequestMonitor(
        performance,
        centralized_logger=centralized_logger,
        alerting=alerting,
        slow_request_alert_ms=config.performance.slow_request_alert_ms,
    )
    performance.attach_request_monitor(request_monitor)

    uptime = UptimeMonitor(
        config.uptime,
        registry=registry,
        alerting=alerting,
        audit_log=centralized_logger,
        transport=transport,
    )
    for target in default_targets(config.uptime, engine):
        uptime.add_service(target)
    alerting.attach_uptime_monitor(uptime)

    backup = BackupScheduler(config.backup, alerting=alerting, audit_log=centralized_logger, runner=runner)
    maintenance = MaintenanceScheduler(
        config.maintenance,
        backup=backup,
        alerting=alerting,
        centralized_logger=centralized_logger,
        registry=registry,
        engine=engine,
        runner=runner,
    )

    return MonitoringStack(
        config=config,
        scheduler=scheduler,
        engine=engine,
        registry=registry,
        centralized_logger=centralized_logger,
        alerting=alerting,
        performance=performance,
        request_monitor=request_monitor,
        uptime=uptime,
        backup=backup,
        maintenance=maintenance,
    )
