"""Scheduled database backups, retention and restore.

Artifacts are named `<database>_<type>_<timestamp>.<ext>[.gz][.enc]` so the
retention tier can be read back from the file name alone.
"""

import asyncio
import gzip
import logging
import os
import re
import shutil
import tarfile
import tempfile
import time
from datetime import datetime, timedelta
from functools import partial
from pathlib import Path
from typing import Any, Dict, List, Optional

import boto3
from cryptography.fernet import Fernet
from sqlalchemy import create_engine

from ops_monitor.lib.commands import CommandRunner, run_command
from ops_monitor.lib.config import BackupConfig
from ops_monitor.lib.database import list_tables
from ops_monitor.lib.distributed_tracing import correlation_scope
from ops_monitor.lib.metrics import record_backup_run
from ops_monitor.lib.scheduler import next_cron_time
from ops_monitor.lib.timeutils import filename_timestamp, utc_now
from ops_monitor.models.alert import AlertSeverity
from ops_monitor.models.backup_record import BackupRecord, BackupType

logger = logging.getLogger(__name__)

DUMP_EXTENSIONS = {'sqlite': '.db', 'postgresql': '.sql', 'mysql': '.sql'}

_BACKUP_NAME_PATTERN = re.compile(
    r'_(' + '|'.join(t.value for t in BackupType) + r')_\d{4}-\d{2}-\d{2}T\d{2}-\d{2}-\d{2}'
)


class BackupError(Exception):
    """Raised when a backup or restore cannot be completed."""


def determine_backup_type(filename: str) -> BackupType:
    """Retention tier encoded in a backup file name.

    Names look like `<database>_<type>_<timestamp>.<ext>`; the tier is the
    segment right before the timestamp, so tier words inside the database
    name are ignored.
    """
    match = _BACKUP_NAME_PATTERN.search(filename)
    if match:
        return BackupType(match.group(1))
    if filename.startswith('full_backup_'):
        return BackupType.FULL
    return BackupType.MANUAL


class BackupScheduler:
    """Runs backup and cleanup jobs on their cron schedules."""

    def __init__(
        self,
        config: BackupConfig,
        alerting=None,
        audit_log=None,
        runner: CommandRunner = run_command,
        s3_client=None,
        clock=utc_now,
    ):
        """Initialize the scheduler.

        Args:
            config: Schedules, retention and artifact options
            alerting: Optional AlertingService notified on failures
            audit_log: Optional CentralizedLogger receiving backup events
            runner: Async command runner used for dump/restore tools
            s3_client: boto3 S3 client (created on first upload when omitted)
            clock: Source of the current UTC time
        """
        self.config = config
        self.alerting = alerting
        self.audit_log = audit_log
        self._runner = runner
        self._s3_client = s3_client
        self._clock = clock
        self.directory = Path(config.directory)
        self.is_running = False
        self._job_ids: List[str] = []
        self._running: set = set()
        self.stats = {
            'total_backups': 0,
            'successful_backups': 0,
            'failed_backups': 0,
            'total_size': 0,
            'last_backup': None,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def ensure_directory(self) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)

    def start(self, scheduler) -> None:
        """Register one cron job per backup schedule plus the retention sweep."""
        self.ensure_directory()
        for backup_type, expression in self.config.schedules.items():
            job_id = f'backup.{backup_type}'
            scheduler.add_cron_job(job_id, partial(self.run_scheduled_backup, backup_type), expression)
            self._job_ids.append(job_id)
        scheduler.add_cron_job('backup.cleanup', self.run_scheduled_cleanup, self.config.cleanup_schedule)
        self._job_ids.append('backup.cleanup')
        self.is_running = True
        logger.info(f'Backup service started with jobs: {self._job_ids}')

    def stop(self, scheduler) -> None:
        for job_id in self._job_ids:
            scheduler.remove_job(job_id)
        self._job_ids = []
        self.is_running = False

    async def run_scheduled_backup(self, backup_type: str) -> None:
        with correlation_scope(f'backup.{backup_type}'):
            try:
                await self.perform_database_backup(backup_type)
            except BackupError as e:
                logger.error(f'Scheduled {backup_type} backup failed: {e}')

    async def run_scheduled_cleanup(self) -> None:
        with correlation_scope('backup.cleanup'):
            try:
                await asyncio.to_thread(self.cleanup_old_backups)
            except Exception as e:
                logger.error(f'Backup cleanup failed: {e}', exc_info=True)
                await self._alert_failure('cleanup', e)

    # ------------------------------------------------------------------
    # Backup
    # ------------------------------------------------------------------

    async def perform_database_backup(self, backup_type: BackupType | str = BackupType.MANUAL) -> Dict[str, Any]:
        """Dump the database, then compress, encrypt and upload as configured.

        Args:
            backup_type: Retention tier recorded in the file name

        Returns:
            Summary with path, size, duration and remote key

        Raises:
            BackupError: If a backup of this type is already running or any step fails
        """
        backup_type = BackupType(backup_type)
        if backup_type in self._running:
            raise BackupError(f'{backup_type.value} backup already running')

        self._running.add(backup_type)
        start = time.perf_counter()
        backup_name = f'{self.config.database.name}_{backup_type.value}_{filename_timestamp(self._clock())}'
        try:
            self.ensure_directory()
            self._log('INFO', f'Starting {backup_type.value} database backup: {backup_name}')
            path = await self._dump_database(backup_name)
            if self.config.compression:
                path = await asyncio.to_thread(self.compress_file, path)
            if self.config.encryption_enabled:
                path = await asyncio.to_thread(self.encrypt_file, path)
            remote_key = await self.upload_to_cloud(path) if self.config.cloud_enabled else None

            size = path.stat().st_size
            duration_ms = round((time.perf_counter() - start) * 1000, 2)
            self._update_stats(True, size)
            record_backup_run(backup_type.value, 'success')
            self._log('INFO', 'Database backup completed successfully', {
                'backup_name': backup_name,
                'type': backup_type.value,
                'duration_ms': duration_ms,
                'size': size,
                'path': str(path),
            })
            return {
                'success': True,
                'backup_name': backup_name,
                'path': str(path),
                'size': size,
                'duration_ms': duration_ms,
                'type': backup_type.value,
                'remote_key': remote_key,
            }
        except Exception as e:
            self._update_stats(False)
            record_backup_run(backup_type.value, 'failure')
            logger.error(f'Database backup {backup_name} failed: {e}')
            if self.audit_log is not None:
                self.audit_log.log_error(f'Database backup failed for {backup_type.value}', e, {'backup_name': backup_name})
            await self._alert_failure(backup_type.value, e)
            raise BackupError(f'{backup_type.value} backup failed: {e}') from e
        finally:
            self._running.discard(backup_type)

    async def _dump_database(self, backup_name: str) -> Path:
        database = self.config.database
        extension = DUMP_EXTENSIONS.get(database.type)
        if extension is None:
            raise BackupError(f'Unsupported database type: {database.type}')
        destination = self.directory / f'{backup_name}{extension}'

        if database.type == 'sqlite':
            source = Path(database.path or '')
            if not source.is_file():
                raise BackupError(f'SQLite database not found: {source}')
            await asyncio.to_thread(shutil.copy2, source, destination)
        elif database.type == 'postgresql':
            await self._runner(
                ['pg_dump', '-h', database.host or 'localhost', '-p', str(database.port or 5432),
                 '-U', database.user or 'postgres', '-d', database.name, '-f', str(destination)],
                env={'PGPASSWORD': database.password or ''},
                timeout=self.config.command_timeout,
            )
        else:
            await self._runner(
                ['mysqldump', '-h', database.host or 'localhost', '-P', str(database.port or 3306),
                 '-u', database.user or 'root', database.name],
                env={'MYSQL_PWD': database.password or ''},
                stdout_path=str(destination),
                timeout=self.config.command_timeout,
            )
        return destination

    async def perform_full_backup(self, backup_type: BackupType | str = BackupType.FULL) -> Dict[str, Any]:
        """Archive a database dump, the configured paths and the log directory.

        Raises:
            BackupError: If any step fails
        """
        backup_type = BackupType(backup_type)
        start = time.perf_counter()
        backup_name = f'full_backup_{backup_type.value}_{filename_timestamp(self._clock())}'
        dump_path = None
        try:
            self.ensure_directory()
            self._log('INFO', f'Starting full backup: {backup_name}')
            dump_path = await self._dump_database(f'{self.config.database.name}_database_{filename_timestamp(self._clock())}')
            archive = self.directory / f'{backup_name}.tar.gz'
            await asyncio.to_thread(self._create_archive, archive, dump_path)
            path = archive
            if self.config.encryption_enabled:
                path = await asyncio.to_thread(self.encrypt_file, path)
            remote_key = await self.upload_to_cloud(path) if self.config.cloud_enabled else None

            size = path.stat().st_size
            self._update_stats(True, size)
            record_backup_run(BackupType.FULL.value, 'success')
            self._log('INFO', 'Full backup completed successfully', {'backup_name': backup_name, 'size': size})
            return {
                'success': True,
                'backup_name': backup_name,
                'path': str(path),
                'size': size,
                'duration_ms': round((time.perf_counter() - start) * 1000, 2),
                'type': BackupType.FULL.value,
                'remote_key': remote_key,
            }
        except Exception as e:
            self._update_stats(False)
            record_backup_run(BackupType.FULL.value, 'failure')
            logger.error(f'Full backup {backup_name} failed: {e}')
            await self._alert_failure(BackupType.FULL.value, e)
            raise BackupError(f'Full backup failed: {e}') from e
        finally:
            if dump_path is not None and dump_path.exists():
                dump_path.unlink()

    def _create_archive(self, archive: Path, dump_path: Path) -> None:
        with tarfile.open(archive, 'w:gz', compresslevel=self.config.compression_level) as tar:
            tar.add(dump_path, arcname=f'database/{dump_path.name}')
            for include in self.config.include_paths:
                if os.path.exists(include):
                    tar.add(include, arcname=f'files/{os.path.basename(os.path.normpath(include))}')
                else:
                    logger.warning(f'Backup include path not found: {include}')
            log_directory = self.config.log_directory
            if log_directory and os.path.isdir(log_directory):
                tar.add(log_directory, arcname='logs')

    # ------------------------------------------------------------------
    # Artifact transforms
    # ------------------------------------------------------------------

    def compress_file(self, path: Path) -> Path:
        target = path.with_name(path.name + '.gz')
        with open(path, 'rb') as source, gzip.open(target, 'wb', compresslevel=self.config.compression_level) as dest:
            shutil.copyfileobj(source, dest)
        path.unlink()
        return target

    def decompress_file(self, path: Path, target_dir: Path) -> Path:
        target = target_dir / path.name[:-len('.gz')]
        with gzip.open(path, 'rb') as source, open(target, 'wb') as dest:
            shutil.copyfileobj(source, dest)
        return target

    def encrypt_file(self, path: Path) -> Path:
        target = path.with_name(path.name + '.enc')
        fernet = Fernet(self.config.encryption_key.encode())
        target.write_bytes(fernet.encrypt(path.read_bytes()))
        path.unlink()
        return target

    def decrypt_file(self, path: Path, target_dir: Path) -> Path:
        if not self.config.encryption_enabled:
            raise BackupError(f'{path.name} is encrypted but no encryption key is configured')
        target = target_dir / path.name[:-len('.enc')]
        fernet = Fernet(self.config.encryption_key.encode())
        target.write_bytes(fernet.decrypt(path.read_bytes()))
        return target

    @property
    def s3_client(self):
        if self._s3_client is None:
            self._s3_client = boto3.client('s3', region_name=self.config.aws_region)
        return self._s3_client

    async def upload_to_cloud(self, path: Path) -> str:
        """Upload an artifact to S3 under backups/<year>/<month>/.

        Returns:
            The object key
        """
        now = self._clock()
        key = f'backups/{now.year}/{now.month:02d}/{path.name}'
        await asyncio.to_thread(self.s3_client.upload_file, str(path), self.config.s3_bucket, key)
        logger.info(f'Uploaded backup to s3://{self.config.s3_bucket}/{key}')
        return key

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    async def restore_database(self, backup_path: str | Path, target_database: Optional[str] = None) -> Dict[str, Any]:
        """Restore a database backup.

        Args:
            backup_path: Backup artifact, possibly compressed and encrypted
            target_database: Database name (or sqlite path) to restore into

        Raises:
            BackupError: If the artifact is missing or the restore fails
        """
        backup_path = Path(backup_path)
        if not backup_path.is_file():
            raise BackupError(f'Backup file not found: {backup_path}')

        database = self.config.database
        target = target_database or (database.path if database.type == 'sqlite' else database.name)
        self._log('INFO', f'Starting database restore from {backup_path.name}', {'target': target})

        with tempfile.TemporaryDirectory(prefix='restore-') as work_dir:
            try:
                current = await asyncio.to_thread(self._unpack, backup_path, Path(work_dir))
                await self._restore_dump(current, target)
            except BackupError:
                raise
            except Exception as e:
                logger.error(f'Database restore from {backup_path.name} failed: {e}')
                if self.audit_log is not None:
                    self.audit_log.log_error('Database restore failed', e, {'backup': str(backup_path)})
                raise BackupError(f'Restore failed: {e}') from e

        if self.audit_log is not None:
            self.audit_log.log_audit('database_restore', 'backup_scheduler', str(target), 'success', {
                'backup': backup_path.name,
            })
        return {'success': True, 'database': target, 'restored_from': str(backup_path)}

    def _unpack(self, path: Path, work_dir: Path) -> Path:
        current = path
        if current.name.endswith('.enc'):
            current = self.decrypt_file(current, work_dir)
        if current.name.endswith('.gz'):
            current = self.decompress_file(current, work_dir)
        return current

    async def _restore_dump(self, dump: Path, target: str) -> None:
        database = self.config.database
        if database.type == 'sqlite':
            await asyncio.to_thread(shutil.copyfile, dump, target)
        elif database.type == 'postgresql':
            await self._runner(
                ['psql', '-h', database.host or 'localhost', '-p', str(database.port or 5432),
                 '-U', database.user or 'postgres', '-d', target, '-f', str(dump)],
                env={'PGPASSWORD': database.password or ''},
                timeout=self.config.command_timeout,
            )
        elif database.type == 'mysql':
            await self._runner(
                ['mysql', '-h', database.host or 'localhost', '-P', str(database.port or 3306),
                 '-u', database.user or 'root', target],
                env={'MYSQL_PWD': database.password or ''},
                stdin_path=str(dump),
                timeout=self.config.command_timeout,
            )
        else:
            raise BackupError(f'Unsupported database type: {database.type}')

    async def test_backup_restore(self) -> Dict[str, Any]:
        """Restore the newest sqlite backup into a scratch file and list its tables."""
        if self.config.database.type != 'sqlite':
            return {'success': False, 'error': 'Restore test is only supported for sqlite databases'}

        candidates = [backup for backup in self.list_backups() if '.db' in backup.name and backup.type != BackupType.FULL]
        if not candidates:
            return {'success': False, 'error': 'No backups available for testing'}
        latest = candidates[0]

        with tempfile.TemporaryDirectory(prefix='restore-test-') as work_dir:
            scratch = Path(work_dir) / 'restore_test.db'
            try:
                await self.restore_database(latest.path, str(scratch))
                engine = create_engine(f'sqlite:///{scratch}')
                try:
                    tables = await asyncio.to_thread(list_tables, engine)
                finally:
                    engine.dispose()
            except Exception as e:
                logger.error(f'Backup restore test failed: {e}')
                await self._alert_failure('restore_test', e)
                return {'success': False, 'backup': latest.name, 'error': str(e)}

        self._log('INFO', 'Backup restore test completed successfully', {'backup': latest.name, 'tables': len(tables)})
        return {'success': True, 'backup': latest.name, 'tables': tables}

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    def retention_for(self, backup_type: BackupType) -> Optional[timedelta]:
        """Maximum age of a tier; None for tiers that are never swept."""
        if backup_type == BackupType.DAILY:
            return timedelta(days=self.config.retention_daily_days)
        if backup_type == BackupType.WEEKLY:
            return timedelta(weeks=self.config.retention_weekly_weeks)
        if backup_type == BackupType.MONTHLY:
            return timedelta(days=self.config.retention_monthly_months * 30)
        return None

    def cleanup_old_backups(self) -> Dict[str, Any]:
        """Delete backups older than their tier's retention.

        Returns:
            Deleted file names and bytes freed
        """
        deleted = []
        freed = 0
        if not self.directory.is_dir():
            return {'deleted': deleted, 'freed_bytes': freed}

        now = self._clock().timestamp()
        for path in self.directory.iterdir():
            if not path.is_file():
                continue
            retention = self.retention_for(determine_backup_type(path.name))
            if retention is None:
                continue
            stat = path.stat()
            if now - stat.st_mtime > retention.total_seconds():
                path.unlink()
                deleted.append(path.name)
                freed += stat.st_size

        self._log('INFO', 'Backup cleanup completed', {'deleted_files': len(deleted), 'freed_bytes': freed})
        return {'deleted': deleted, 'freed_bytes': freed}

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def list_backups(self) -> List[BackupRecord]:
        """Backups on disk, newest first."""
        if not self.directory.is_dir():
            return []
        backups = []
        for path in self.directory.iterdir():
            if not path.is_file():
                continue
            stat = path.stat()
            backups.append(BackupRecord(
                name=path.name,
                path=str(path.resolve()),
                size=stat.st_size,
                type=determine_backup_type(path.name),
                created=datetime.fromtimestamp(stat.st_ctime, tz=self._clock().tzinfo),
                modified=datetime.fromtimestamp(stat.st_mtime, tz=self._clock().tzinfo),
            ))
        return sorted(backups, key=lambda backup: backup.modified, reverse=True)

    def _update_stats(self, success: bool, size: int = 0) -> None:
        self.stats['total_backups'] += 1
        if success:
            self.stats['successful_backups'] += 1
            self.stats['total_size'] += size
            self.stats['last_backup'] = self._clock().isoformat()
        else:
            self.stats['failed_backups'] += 1

    def get_backup_stats(self) -> Dict[str, Any]:
        total = self.stats['total_backups']
        successful = self.stats['successful_backups']
        return {
            **self.stats,
            'success_rate': round(successful / total * 100, 2) if total else 0.0,
            'average_size': round(self.stats['total_size'] / successful) if successful else 0,
        }

    def get_next_backup_times(self) -> Dict[str, Optional[str]]:
        times = {}
        for backup_type, expression in self.config.schedules.items():
            next_time = next_cron_time(expression, self._clock())
            times[backup_type] = next_time.isoformat() if next_time else None
        return times

    def export_backup_config(self) -> Dict[str, Any]:
        """Backup settings with secrets left out."""
        return {
            'directory': str(self.directory),
            'database': {'type': self.config.database.type, 'name': self.config.database.name},
            'schedules': dict(self.config.schedules),
            'cleanup_schedule': self.config.cleanup_schedule,
            'retention': {
                'daily_days': self.config.retention_daily_days,
                'weekly_weeks': self.config.retention_weekly_weeks,
                'monthly_months': self.config.retention_monthly_months,
            },
            'compression': {'enabled': self.config.compression, 'level': self.config.compression_level},
            'encryption': {'enabled': self.config.encryption_enabled},
            'cloud': {
                'enabled': self.config.cloud_enabled,
                'provider': 's3' if self.config.cloud_enabled else None,
                'bucket': self.config.s3_bucket,
                'region': self.config.aws_region,
            },
        }

    def get_service_status(self) -> Dict[str, Any]:
        return {
            'running': self.is_running,
            'scheduled_jobs': list(self._job_ids),
            'active_backups': sorted(backup_type.value for backup_type in self._running),
            'next_backups': self.get_next_backup_times(),
            'stats': self.get_backup_stats(),
            'config': self.export_backup_config(),
        }

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _log(self, level: str, message: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        logger.info(message)
        if self.audit_log is not None:
            self.audit_log.log_application(level, message, metadata)

    async def _alert_failure(self, operation: str, error: Exception) -> None:
        if self.alerting is None:
            return
        try:
            await self.alerting.trigger_alert('backup_failed', AlertSeverity.CRITICAL, {
                'message': f'Backup {operation} failed: {error}',
                'operation': operation,
                'error': str(error),
            })
        except Exception as e:
            logger.error(f'Failed to send backup failure alert: {e}')
