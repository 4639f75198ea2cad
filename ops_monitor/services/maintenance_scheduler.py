"""Scheduled maintenance jobs.

Security and dependency updates follow a guarded protocol: snapshot the
installed packages, take a pre-change database backup, apply the updates and
run the test command. A failed install or test run restores both snapshots.
"""

import asyncio
import gc
import json
import logging
import os
import re
import shlex
import socket
import ssl
import sys
import tempfile
import time
from collections import deque
from datetime import datetime, timedelta, timezone
from functools import partial
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from ops_monitor.lib.commands import CommandError, CommandRunner, run_command
from ops_monitor.lib.config import MAINTENANCE_JOBS, MaintenanceConfig
from ops_monitor.lib.database import run_maintenance_statements
from ops_monitor.lib.distributed_tracing import correlation_scope
from ops_monitor.lib.metrics import record_maintenance_run
from ops_monitor.lib.scheduler import next_cron_time
from ops_monitor.lib.timeutils import filename_timestamp, utc_now
from ops_monitor.models.alert import AlertSeverity
from ops_monitor.models.backup_record import BackupType
from ops_monitor.models.maintenance_record import MaintenanceRecord, MaintenanceStatus

logger = logging.getLogger(__name__)

APPROVAL_LEVELS = {'patch': 0, 'minor': 1, 'major': 2}


class MaintenanceError(Exception):
    """Raised when a maintenance job fails; `rolled_back` tells whether changes were reverted."""

    def __init__(self, message: str, rolled_back: bool = False):
        super().__init__(message)
        self.rolled_back = rolled_back


def parse_version(version: str) -> Tuple[int, int, int]:
    parts = [int(part) for part in re.findall(r'\d+', version or '')[:3]]
    return tuple(parts + [0] * (3 - len(parts)))


def update_level(current: str, latest: str) -> str:
    """Classify an upgrade as 'major', 'minor' or 'patch'."""
    current_parts = parse_version(current)
    latest_parts = parse_version(latest)
    if latest_parts[0] != current_parts[0]:
        return 'major'
    if latest_parts[1] != current_parts[1]:
        return 'minor'
    return 'patch'


def is_update_allowed(current: str, latest: str, auto_approval: str) -> bool:
    return APPROVAL_LEVELS[update_level(current, latest)] <= APPROVAL_LEVELS[auto_approval]


def fetch_certificate_expiry(domain: str, port: int = 443, timeout: float = 10.0) -> datetime:
    """Expiry time of the TLS certificate served by `domain`."""
    context = ssl.create_default_context()
    with socket.create_connection((domain, port), timeout=timeout) as sock:
        with context.wrap_socket(sock, server_hostname=domain) as tls:
            cert = tls.getpeercert()
    return datetime.fromtimestamp(ssl.cert_time_to_seconds(cert['notAfter']), tz=timezone.utc)


class MaintenanceScheduler:
    """Runs maintenance jobs on their cron schedules and keeps a run history."""

    def __init__(
        self,
        config: MaintenanceConfig,
        backup=None,
        alerting=None,
        centralized_logger=None,
        registry=None,
        engine=None,
        runner: CommandRunner = run_command,
        cert_fetcher: Callable[[str], datetime] = fetch_certificate_expiry,
        python: str = sys.executable,
        clock=utc_now,
    ):
        """Initialize the scheduler.

        Args:
            config: Schedules and update policy
            backup: BackupScheduler used for pre-change backups and rollback
            alerting: AlertingService receiving failure and completion notices
            centralized_logger: CentralizedLogger whose files the log cleanup prunes
            registry: MetricsRegistry swept by the system cleanup
            engine: SQLAlchemy engine for database maintenance
            runner: Async command runner
            cert_fetcher: Returns the certificate expiry of a domain
            python: Interpreter whose pip is managed
            clock: Source of the current UTC time
        """
        self.config = config
        self.backup = backup
        self.alerting = alerting
        self.centralized_logger = centralized_logger
        self.registry = registry
        self.engine = engine
        self._runner = runner
        self._cert_fetcher = cert_fetcher
        self._python = python
        self._clock = clock
        self.history: Deque[MaintenanceRecord] = deque(maxlen=100)
        self.is_running = False
        self._job_ids: List[str] = []
        self._running: set = set()
        self._handlers = {
            'security_updates': self.perform_security_updates,
            'performance_optimization': self.perform_performance_optimization,
            'database_maintenance': self.perform_database_maintenance,
            'dependency_updates': self.perform_dependency_updates,
            'ssl_renewal': self.perform_ssl_renewal,
            'log_cleanup': self.perform_log_cleanup,
            'system_cleanup': self.perform_system_cleanup,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, scheduler) -> None:
        for job, expression in self.config.schedules.items():
            job_id = f'maintenance.{job}'
            scheduler.add_cron_job(job_id, partial(self.run_maintenance, job), expression)
            self._job_ids.append(job_id)
        self.is_running = True
        logger.info(f'Maintenance service started with {len(self._job_ids)} jobs')

    def stop(self, scheduler) -> None:
        for job_id in self._job_ids:
            scheduler.remove_job(job_id)
        self._job_ids = []
        self.is_running = False

    async def run_maintenance(self, job: str) -> MaintenanceRecord:
        """Run one job and record the outcome.

        Failures are recorded and alerted, never raised, so a scheduled tick
        cannot take the scheduler down.

        Raises:
            ValueError: For an unknown job name
            MaintenanceError: If the job is already running
        """
        if job not in MAINTENANCE_JOBS:
            raise ValueError(f'Unknown maintenance job: {job}')
        if job in self._running:
            raise MaintenanceError(f'{job} is already running')

        self._running.add(job)
        start_time = self._clock()
        start = time.perf_counter()
        maintenance_id = f'{job}_{int(start_time.timestamp() * 1000)}'
        logger.info(f'Starting maintenance {maintenance_id}')
        try:
            with correlation_scope(f'maintenance.{job}'):
                summary = await self._handlers[job]()
        except Exception as e:
            record = self._record(maintenance_id, job, MaintenanceStatus.FAILED, start_time, start, error=str(e))
            record_maintenance_run(job, 'failure')
            logger.error(f'Maintenance {job} failed: {e}')
            if self.centralized_logger is not None:
                self.centralized_logger.log_error(f'Maintenance {job} failed', e, {'maintenance_id': maintenance_id})
            await self._notify('maintenance_failed', AlertSeverity.WARNING, {
                'message': f"{job.replace('_', ' ').capitalize()} failed: {e}",
                'job': job,
                'maintenance_id': maintenance_id,
                'rolled_back': getattr(e, 'rolled_back', False),
            })
            return record
        finally:
            self._running.discard(job)

        record = self._record(maintenance_id, job, MaintenanceStatus.COMPLETED, start_time, start, summary=summary)
        record_maintenance_run(job, 'success')
        if self.centralized_logger is not None:
            self.centralized_logger.log_application('INFO', f'Maintenance {job} completed', {
                'maintenance_id': maintenance_id,
                'duration_seconds': record.duration_seconds,
            })
        if self.config.notifications_enabled:
            await self._notify('maintenance_completed', AlertSeverity.INFO, {
                'message': f"{job.replace('_', ' ').capitalize()} completed",
                'job': job,
                'summary': summary.get('summary'),
            })
        return record

    def _record(self, maintenance_id, job, status, start_time, start, summary=None, error=None) -> MaintenanceRecord:
        record = MaintenanceRecord(
            id=maintenance_id,
            type=job,
            status=status,
            start_time=start_time,
            end_time=self._clock(),
            duration_seconds=round(time.perf_counter() - start, 3),
            summary=summary or {},
            error=error,
        )
        self.history.append(record)
        return record

    async def _notify(self, alert_id: str, severity: AlertSeverity, data: Dict[str, Any]) -> None:
        if self.alerting is None:
            return
        try:
            await self.alerting.trigger_alert(alert_id, severity, data)
        except Exception as e:
            logger.error(f'Failed to send maintenance notification: {e}')

    # ------------------------------------------------------------------
    # Package updates
    # ------------------------------------------------------------------

    async def check_security_vulnerabilities(self) -> List[Dict[str, Any]]:
        """Vulnerable packages with a known fix, from pip-audit."""
        result = await self._runner(['pip-audit', '--format', 'json'], check=False, timeout=self.config.command_timeout)
        try:
            report = json.loads(result.stdout or '{}')
        except json.JSONDecodeError as e:
            raise MaintenanceError(f'Cannot parse pip-audit output: {e}') from e

        dependencies = report.get('dependencies', []) if isinstance(report, dict) else report
        vulnerabilities = []
        for dependency in dependencies:
            vulns = dependency.get('vulns', [])
            fixes = sorted({fix for vuln in vulns for fix in vuln.get('fix_versions', [])}, key=parse_version)
            if vulns and fixes:
                vulnerabilities.append({
                    'package': dependency['name'],
                    'version': dependency.get('version'),
                    'ids': [vuln.get('id') for vuln in vulns],
                    'fix_version': fixes[-1],
                })
        return vulnerabilities

    async def check_outdated_dependencies(self) -> List[Dict[str, Any]]:
        result = await self._runner(
            [self._python, '-m', 'pip', 'list', '--outdated', '--format', 'json'],
            timeout=self.config.command_timeout,
        )
        return json.loads(result.stdout or '[]')

    def filter_safe_updates(self, outdated: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        return [
            package for package in outdated
            if is_update_allowed(package['version'], package['latest_version'], self.config.auto_approval)
        ]

    async def perform_security_updates(self) -> Dict[str, Any]:
        vulnerabilities = await self.check_security_vulnerabilities()
        if not vulnerabilities:
            return {'summary': 'No updates needed', 'vulnerabilities': 0}
        updates = [(vuln['package'], vuln['fix_version']) for vuln in vulnerabilities]
        updated = await self.apply_updates_with_rollback('security_updates', updates)
        return {
            'summary': f'Updated {len(updated)} packages, fixed {len(vulnerabilities)} vulnerabilities',
            'vulnerabilities': len(vulnerabilities),
            'updated': updated,
        }

    async def perform_dependency_updates(self) -> Dict[str, Any]:
        outdated = await self.check_outdated_dependencies()
        safe = self.filter_safe_updates(outdated)
        if not safe:
            return {'summary': 'No updates needed', 'outdated': len(outdated)}
        updates = [(package['name'], package['latest_version']) for package in safe]
        updated = await self.apply_updates_with_rollback('dependency_updates', updates)
        return {
            'summary': f'Updated {len(updated)} of {len(outdated)} outdated packages',
            'outdated': len(outdated),
            'updated': updated,
        }

    async def apply_updates_with_rollback(self, job: str, updates: List[Tuple[str, str]]) -> List[str]:
        """Install `updates` behind a package snapshot and a pre-change backup.

        Returns:
            The installed `name==version` specs

        Raises:
            MaintenanceError: If an install or the test run fails
        """
        snapshot = await self.snapshot_packages()
        try:
            backup = None
            if self.backup is not None:
                backup = await self.backup.perform_database_backup(BackupType.PRE_CHANGE)

            updated = []
            try:
                for name, version in updates:
                    spec = f'{name}=={version}'
                    await self._runner(
                        [self._python, '-m', 'pip', 'install', spec],
                        timeout=self.config.command_timeout,
                    )
                    updated.append(spec)
                    logger.info(f'Installed {spec}')
            except CommandError as e:
                await self._fail_with_rollback(job, f'Package installation failed during {job}: {e}', snapshot, backup)

            tests = await self.run_system_tests()
            if not tests['success']:
                await self._fail_with_rollback(job, f'Tests failed after {job}', snapshot, backup)
            return updated
        finally:
            snapshot.unlink(missing_ok=True)

    async def _fail_with_rollback(self, job: str, message: str, snapshot: Path, backup: Optional[Dict[str, Any]]):
        if not self.config.rollback_enabled:
            raise MaintenanceError(f'{message}, rollback disabled')
        await self.rollback_changes(snapshot, backup)
        raise MaintenanceError(f'{message}, rolled back changes', rolled_back=True)

    async def snapshot_packages(self) -> Path:
        result = await self._runner([self._python, '-m', 'pip', 'freeze'], timeout=self.config.command_timeout)
        snapshot = Path(tempfile.gettempdir()) / f'requirements-snapshot-{filename_timestamp(self._clock())}.txt'
        snapshot.write_text(result.stdout)
        return snapshot

    async def rollback_changes(self, snapshot: Path, backup: Optional[Dict[str, Any]]) -> None:
        logger.warning(f'Rolling back to package snapshot {snapshot.name}')
        await self._runner(
            [self._python, '-m', 'pip', 'install', '-r', str(snapshot)],
            timeout=self.config.command_timeout,
        )
        if backup is not None:
            await self.backup.restore_database(backup['path'])
        if self.centralized_logger is not None:
            self.centralized_logger.log_audit('rollback', 'maintenance_scheduler', snapshot.name, 'success', {
                'backup': backup['path'] if backup else None,
            })

    async def run_system_tests(self) -> Dict[str, Any]:
        try:
            result = await self._runner(
                shlex.split(self.config.test_command),
                check=False,
                timeout=self.config.command_timeout,
            )
        except CommandError as e:
            return {'success': False, 'output': str(e)}
        return {'success': result.returncode == 0, 'output': result.stdout[-2000:]}

    # ------------------------------------------------------------------
    # Housekeeping jobs
    # ------------------------------------------------------------------

    async def perform_performance_optimization(self) -> Dict[str, Any]:
        optimizations = []
        temp = await asyncio.to_thread(self.clean_temporary_files)
        if temp['cleaned']:
            optimizations.append(f"Cleaned {temp['cleaned']} temporary files")
        if self.engine is not None:
            statements = await asyncio.to_thread(run_maintenance_statements, self.engine)
            optimizations.append(f'Database optimized: {", ".join(statements) or "nothing to run"}')
        collected = gc.collect()
        if collected:
            optimizations.append(f'Collected {collected} unreachable objects')
        return {
            'summary': ', '.join(optimizations) if optimizations else 'No optimizations needed',
            'temporary_files': temp,
        }

    async def perform_database_maintenance(self) -> Dict[str, Any]:
        if self.engine is None:
            raise MaintenanceError('No database engine configured')
        statements = await asyncio.to_thread(run_maintenance_statements, self.engine)
        return {'summary': f'Executed {len(statements)} maintenance statements', 'statements': statements}

    async def perform_ssl_renewal(self) -> Dict[str, Any]:
        now = self._clock()
        threshold = timedelta(days=self.config.ssl_expiry_warning_days)
        expiring, renewed, errors = [], [], {}

        for domain in self.config.ssl_domains:
            try:
                expiry = await asyncio.to_thread(self._cert_fetcher, domain)
            except (OSError, ssl.SSLError) as e:
                errors[domain] = str(e)
                continue
            if expiry - now > threshold:
                continue

            days_left = (expiry - now).days
            expiring.append({'domain': domain, 'expires': expiry.isoformat(), 'days_left': days_left})
            if self.config.ssl_renew_command:
                await self._runner(
                    shlex.split(self.config.ssl_renew_command) + [domain],
                    timeout=self.config.command_timeout,
                )
                renewed.append(domain)
            else:
                await self._notify('ssl_certificate_expiring', AlertSeverity.WARNING, {
                    'message': f'SSL certificate for {domain} expires in {days_left} days',
                    'domain': domain,
                    'expires': expiry.isoformat(),
                })

        return {
            'summary': f'Checked {len(self.config.ssl_domains)} certificates, {len(expiring)} expiring',
            'expiring': expiring,
            'renewed': renewed,
            'errors': errors,
        }

    async def perform_log_cleanup(self) -> Dict[str, Any]:
        if self.centralized_logger is None:
            return {'summary': 'No log directory configured', 'removed': []}
        removed = await asyncio.to_thread(self.centralized_logger.clean_all_log_files)
        return {'summary': f'Removed {len(removed)} rotated log files', 'removed': removed}

    async def perform_system_cleanup(self) -> Dict[str, Any]:
        temp = await asyncio.to_thread(self.clean_temporary_files)
        alerts = self.alerting.cleanup_alerts() if self.alerting is not None else {}
        metrics = self.registry.sweep(timedelta(hours=24)) if self.registry is not None else 0
        return {
            'summary': f"Cleaned {temp['cleaned']} temporary files and {metrics} metric records",
            'temporary_files': temp,
            'alerts': alerts,
            'metric_records': metrics,
        }

    def clean_temporary_files(self) -> Dict[str, int]:
        cutoff = self._clock().timestamp() - self.config.temp_file_max_age_days * 86400
        cleaned = 0
        freed = 0
        for directory in self.config.temp_directories:
            for root, _, files in os.walk(directory):
                for name in files:
                    path = os.path.join(root, name)
                    try:
                        stat = os.stat(path)
                        if stat.st_mtime < cutoff:
                            os.remove(path)
                            cleaned += 1
                            freed += stat.st_size
                    except OSError as e:
                        logger.warning(f'Could not remove temporary file {path}: {e}')
        return {'cleaned': cleaned, 'freed_bytes': freed}

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def in_maintenance_window(self, moment: Optional[datetime] = None) -> bool:
        hour = (moment or self._clock()).hour
        start, end = self.config.window_start_hour, self.config.window_end_hour
        if start <= end:
            return start <= hour < end
        return hour >= start or hour < end

    def get_next_maintenance_times(self) -> Dict[str, Optional[str]]:
        times = {}
        for job, expression in self.config.schedules.items():
            next_time = next_cron_time(expression, self._clock())
            times[job] = next_time.isoformat() if next_time else None
        return times

    def get_maintenance_status(self) -> Dict[str, Any]:
        return {
            'running': self.is_running,
            'active_jobs': sorted(self._running),
            'scheduled_jobs': list(self._job_ids),
            'in_maintenance_window': self.in_maintenance_window(),
            'next_runs': self.get_next_maintenance_times(),
            'history': [record.model_dump(mode='json') for record in list(self.history)[-10:]],
            'config': {
                'auto_approval': self.config.auto_approval,
                'rollback_enabled': self.config.rollback_enabled,
                'notifications_enabled': self.config.notifications_enabled,
                'test_command': self.config.test_command,
                'ssl_domains': list(self.config.ssl_domains),
            },
        }
