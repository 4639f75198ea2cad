#!/usr/bin/env python3
"""Run backup operations outside the API process.

Usage:
  python scripts/run_backup.py backup --type daily
  python scripts/run_backup.py full
  python scripts/run_backup.py restore backups/academy_daily_2024-05-01T02-00-00.db.gz
  python scripts/run_backup.py list
  python scripts/run_backup.py cleanup
  python scripts/run_backup.py test

Exit codes: 0 on success, 1 when the operation fails, 2 on invalid configuration.
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

from ops_monitor.lib.config import BackupConfig, ConfigurationError
from ops_monitor.lib.distributed_tracing import generate_correlation_id
from ops_monitor.models.backup_record import BackupType
from ops_monitor.services.backup_scheduler import BackupError, BackupScheduler

# Configure logging
logging.basicConfig(
  level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
  parser = argparse.ArgumentParser(description='Database backup operations')
  subparsers = parser.add_subparsers(dest='command', required=True)

  backup = subparsers.add_parser('backup', help='Create a database backup')
  backup.add_argument(
    '--type',
    default=BackupType.MANUAL.value,
    choices=[t.value for t in BackupType if t != BackupType.FULL],
    help='Retention tier recorded in the file name',
  )

  subparsers.add_parser('full', help='Create a full backup archive (database, files and logs)')

  restore = subparsers.add_parser('restore', help='Restore a database backup')
  restore.add_argument('path', help='Backup artifact to restore')
  restore.add_argument('--target', help='Target database name or sqlite path')

  subparsers.add_parser('list', help='List backups on disk, newest first')
  subparsers.add_parser('cleanup', help='Delete backups past their retention')
  subparsers.add_parser('test', help='Restore the newest backup into a scratch database')
  return parser


async def run(scheduler: BackupScheduler, args: argparse.Namespace) -> dict:
  """Dispatch a parsed command to the backup scheduler.

  Returns:
      JSON-serializable result of the operation

  Raises:
      BackupError: If the operation fails
  """
  if args.command == 'backup':
    return await scheduler.perform_database_backup(args.type)
  if args.command == 'full':
    return await scheduler.perform_full_backup()
  if args.command == 'restore':
    return await scheduler.restore_database(args.path, args.target)
  if args.command == 'list':
    return {'backups': [backup.model_dump(mode='json') for backup in scheduler.list_backups()]}
  if args.command == 'cleanup':
    return scheduler.cleanup_old_backups()

  result = await scheduler.test_backup_restore()
  if not result['success']:
    raise BackupError(result['error'])
  return result


def main(argv: Optional[List[str]] = None) -> int:
  """Entry point; returns the process exit code."""
  args = build_parser().parse_args(argv)
  correlation_id = generate_correlation_id('cli')
  logger.info(f'Running backup command {args.command!r} ({correlation_id})')

  try:
    scheduler = BackupScheduler(BackupConfig.from_env())
  except ConfigurationError as e:
    logger.error(f'Invalid backup configuration: {e}')
    return 2

  try:
    result = asyncio.run(run(scheduler, args))
  except BackupError as e:
    logger.error(f'Backup command {args.command!r} failed: {e}')
    return 1

  print(json.dumps(result, indent=2, default=str))
  return 0


if __name__ == '__main__':
  sys.exit(main())
