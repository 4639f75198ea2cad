"""Centralized application log sink.

Buffers structured entries per category, appends them to
`<directory>/<category>.log` as JSON lines, rotates files past a size limit
(optionally gzip-compressed) and prunes old rotated files. File-system
failures are reported to the console logger and never raised to callers.
"""

import gzip
import itertools
import json
import logging
import os
import platform
import random
import shutil
import socket
import string
import threading
import time
import traceback
from collections import deque
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional

import httpx
import psutil

from ops_monitor.lib.config import LoggingConfig
from ops_monitor.lib.distributed_tracing import get_correlation_id, has_correlation_id
from ops_monitor.lib.timeutils import filename_timestamp, utc_now
from ops_monitor.models.log_entry import LogCategory, LogEntry, LogLevel
from ops_monitor.models.metric_record import MetricCategory

logger = logging.getLogger(__name__)
console_logger = logging.getLogger('ops_monitor.console')

_CONSOLE_LEVELS = {
    LogLevel.ERROR: logging.ERROR,
    LogLevel.WARN: logging.WARNING,
    LogLevel.INFO: logging.INFO,
    LogLevel.DEBUG: logging.DEBUG,
}

_LIFTED_KEYS = ('correlation_id', 'user_id', 'session_id', 'request_id')

SHIP_BATCH_SIZE = 100


def generate_log_correlation_id() -> str:
    """Correlation id for entries logged outside a request: corr_<epoch-ms>_<9 chars>."""
    suffix = ''.join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f'corr_{int(time.time() * 1000)}_{suffix}'


def parse_level(level: LogLevel | str) -> LogLevel:
    if isinstance(level, LogLevel):
        return level
    normalized = level.upper()
    if normalized == 'WARNING':
        normalized = 'WARN'
    return LogLevel(normalized)


def format_entry(entry: LogEntry) -> str:
    """Single-line console rendering of an entry."""
    line = (
        f'[{entry.timestamp.isoformat()}] [{entry.level.value:<5}] '
        f'[{entry.category.value.upper():<12}] [{entry.correlation_id[:8]}] {entry.message}'
    )
    if entry.metadata:
        line += f' | {json.dumps(entry.metadata, default=str, separators=(",", ":"))}'
    return line


class CentralizedLogger:
    """Per-category buffered log writer with rotation and retention."""

    def __init__(
        self,
        config: LoggingConfig,
        registry=None,
        clock: Callable[[], datetime] = utc_now,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the logger. Nothing touches the disk until `initialize()`.

        Args:
            config: Logging settings
            registry: Optional MetricsRegistry for flush statistics
            clock: Source of the current UTC time
            transport: Optional httpx transport for remote shipping (tests)
        """
        self.config = config
        self.directory = Path(config.directory)
        self.threshold = parse_level(config.log_level)
        self.registry = registry
        self._clock = clock
        self._transport = transport
        self._buffers: Dict[LogCategory, List[LogEntry]] = {category: [] for category in LogCategory}
        self._recent: Deque[LogEntry] = deque(maxlen=1000)
        self._unshipped: Deque[LogEntry] = deque(maxlen=10 * SHIP_BATCH_SIZE)
        self._lock = threading.RLock()
        self._initialized = False
        self._started = time.time()
        self._hostname = socket.gethostname()
        self._process = psutil.Process()
        self._stats = {
            'entries_logged': 0,
            'entries_written': 0,
            'flush_failures': 0,
            'rotations': 0,
            'shipped_batches': 0,
        }

    @property
    def initialized(self) -> bool:
        return self._initialized

    def initialize(self) -> None:
        """Create the log directory and start accepting buffered entries."""
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error(f'Cannot create log directory {self.directory}: {e}')
            return
        self._initialized = True
        self.log_application('INFO', 'Centralized logging initialized', {'directory': str(self.directory)})

    def start(self, scheduler) -> None:
        """Register flush, rotation, cleanup and shipping jobs.

        Args:
            scheduler: JobScheduler driving periodic work
        """
        if not self._initialized:
            self.initialize()
        scheduler.add_interval_job('logging.flush', self.flush_all, self.config.flush_interval)
        scheduler.add_interval_job('logging.rotation', self.check_all_rotations, 24 * 3600)
        scheduler.add_interval_job('logging.cleanup', self.clean_all_log_files, 24 * 3600)
        if self.config.remote_endpoint:
            scheduler.add_interval_job('logging.ship', self.ship_logs_to_remote, self.config.remote_ship_interval)

    # ------------------------------------------------------------------
    # Core logging
    # ------------------------------------------------------------------

    def log(
        self,
        category: LogCategory | str,
        level: LogLevel | str,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[LogEntry]:
        """Build and buffer an entry.

        Args:
            category: One of the fixed log categories
            level: ERROR, WARN, INFO or DEBUG
            message: Log message
            metadata: Extra context; correlation_id/user_id/session_id/request_id
                keys are lifted onto the entry

        Returns:
            The entry, or None when the level is filtered out

        Raises:
            ValueError: For an unknown category or level
        """
        category = LogCategory(category)
        level = parse_level(level)
        if level.verbosity > self.threshold.verbosity:
            return None

        entry = self._build_entry(category, level, message, metadata or {})

        if not self._initialized:
            self._echo(entry)
            return entry

        flush_needed = False
        with self._lock:
            buffer = self._buffers[category]
            buffer.append(entry)
            self._stats['entries_logged'] += 1
            flush_needed = len(buffer) >= self.config.buffer_size

        if self.config.console_output:
            self._echo(entry)
        if flush_needed:
            self.flush(category)
        return entry

    def _build_entry(
        self, category: LogCategory, level: LogLevel, message: str, metadata: Dict[str, Any]
    ) -> LogEntry:
        metadata = dict(metadata)
        lifted = {key: metadata.pop(key, None) for key in _LIFTED_KEYS}

        correlation_id = lifted['correlation_id']
        if not correlation_id:
            correlation_id = get_correlation_id() if has_correlation_id() else generate_log_correlation_id()

        return LogEntry(
            timestamp=self._clock(),
            level=level,
            category=category,
            message=message,
            metadata=metadata,
            correlation_id=correlation_id,
            user_id=lifted['user_id'],
            session_id=lifted['session_id'],
            request_id=lifted['request_id'],
            process=self._process_snapshot(),
        )

    def _process_snapshot(self) -> Dict[str, Any]:
        snapshot = {
            'pid': os.getpid(),
            'hostname': self._hostname,
            'python_version': platform.python_version(),
            'uptime': round(time.time() - self._started, 1),
            'environment': self.config.environment,
        }
        try:
            snapshot['memory_rss'] = self._process.memory_info().rss
        except psutil.Error:
            pass
        return snapshot

    def _echo(self, entry: LogEntry) -> None:
        console_logger.log(_CONSOLE_LEVELS[entry.level], format_entry(entry))

    # ------------------------------------------------------------------
    # Flush, rotation, retention
    # ------------------------------------------------------------------

    def log_file(self, category: LogCategory | str) -> Path:
        return self.directory / f'{LogCategory(category).value}.log'

    def flush(self, category: LogCategory | str) -> int:
        """Append a category's buffered entries to its file.

        An empty buffer is a no-op: no write and no rotation check.

        Returns:
            Number of entries written
        """
        category = LogCategory(category)
        with self._lock:
            entries = self._buffers[category]
            if not entries:
                return 0
            self._buffers[category] = []

            started = time.perf_counter()
            payload = ''.join(entry.model_dump_json() + '\n' for entry in entries)
            path = self.log_file(category)
            try:
                with open(path, 'a', encoding='utf-8') as f:
                    f.write(payload)
            except OSError as e:
                self._stats['flush_failures'] += 1
                logger.error(f'Failed to write {len(entries)} {category.value} log entries to {path}: {e}')
                for entry in entries:
                    self._echo(entry)
                return 0

            self._stats['entries_written'] += len(entries)
            self._recent.extend(entries)
            if self.config.remote_endpoint:
                self._unshipped.extend(entries)

        if self.registry is not None:
            self.registry.record(MetricCategory.LOGGING, {
                'category': category.value,
                'entries': len(entries),
                'bytes': len(payload),
                'duration': round((time.perf_counter() - started) * 1000, 3),
            })

        self.check_rotation(category)
        return len(entries)

    def flush_all(self) -> int:
        written = 0
        for category in LogCategory:
            try:
                written += self.flush(category)
            except Exception as e:
                logger.error(f'Unexpected error flushing {category.value} logs: {e}', exc_info=True)
        return written

    def check_rotation(self, category: LogCategory | str) -> bool:
        """Rotate the category's file when it reached the size limit.

        Returns:
            True when a rotation happened
        """
        path = self.log_file(category)
        try:
            size = path.stat().st_size
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.error(f'Cannot stat log file {path}: {e}')
            return False

        if size < self.config.max_file_size:
            return False
        return self.rotate(category) is not None

    def check_all_rotations(self) -> None:
        for category in LogCategory:
            self.check_rotation(category)

    def rotate(self, category: LogCategory | str) -> Optional[Path]:
        """Rename the current file with a timestamp suffix, compress it and prune old files.

        Returns:
            Path of the rotated (possibly compressed) file, or None on failure
        """
        category = LogCategory(category)
        current = self.log_file(category)
        rotated = self.directory / f'{category.value}-{filename_timestamp(self._clock())}.log'
        with self._lock:
            try:
                os.replace(current, rotated)
            except OSError as e:
                logger.error(f'Failed to rotate {current}: {e}')
                return None

        if self.config.enable_compression:
            compressed = self.compress_file(rotated)
            if compressed is not None:
                rotated = compressed

        self._stats['rotations'] += 1
        self.log_application('INFO', f'Log rotated for category: {category.value}', {'file': rotated.name})
        self.clean_old_log_files(category)
        return rotated

    def compress_file(self, path: Path) -> Optional[Path]:
        """Gzip a file in place, removing the original.

        Returns:
            Path of the .gz file, or None when compression failed
        """
        target = path.with_name(path.name + '.gz')
        try:
            with open(path, 'rb') as source, gzip.open(target, 'wb', compresslevel=self.config.compression_level) as sink:
                shutil.copyfileobj(source, sink)
            path.unlink()
        except OSError as e:
            logger.error(f'Failed to compress log file {path}: {e}')
            return None
        return target

    def rotated_files(self, category: LogCategory | str) -> List[Path]:
        """Rotated files of a category, newest first."""
        category = LogCategory(category)
        try:
            files = [
                path for path in self.directory.glob(f'{category.value}-*')
                if path.name.endswith('.log') or path.name.endswith('.log.gz')
            ]
        except OSError as e:
            logger.error(f'Cannot list log directory {self.directory}: {e}')
            return []
        return sorted(files, key=lambda path: path.stat().st_mtime, reverse=True)

    def clean_old_log_files(self, category: LogCategory | str) -> List[str]:
        """Delete rotated files beyond `max_files`, oldest first.

        Returns:
            Names of deleted files
        """
        deleted = []
        for path in self.rotated_files(category)[self.config.max_files:]:
            try:
                path.unlink()
            except OSError as e:
                logger.error(f'Failed to delete old log file {path}: {e}')
                continue
            deleted.append(path.name)
            self.log_application('INFO', f'Deleted old log file: {path.name}')
        return deleted

    def clean_all_log_files(self) -> List[str]:
        deleted = []
        for category in LogCategory:
            deleted.extend(self.clean_old_log_files(category))
        return deleted

    # ------------------------------------------------------------------
    # Convenience wrappers
    # ------------------------------------------------------------------

    def log_application(self, level: LogLevel | str, message: str, metadata: Optional[Dict[str, Any]] = None):
        return self.log(LogCategory.APPLICATION, level, message, metadata)

    def log_error(self, message: str, error: Optional[BaseException] = None, metadata: Optional[Dict[str, Any]] = None):
        """Log an error with its type, message, code and traceback."""
        error_metadata = dict(metadata or {})
        if error is not None:
            error_metadata['error'] = {
                'name': type(error).__name__,
                'message': str(error),
                'code': getattr(error, 'code', None) or getattr(error, 'errno', None),
                'traceback': ''.join(traceback.format_exception(type(error), error, error.__traceback__)),
            }
        return self.log(LogCategory.ERROR, LogLevel.ERROR, message, error_metadata)

    def log_access(
        self,
        method: str,
        url: str,
        status_code: int,
        response_time_ms: float,
        user_agent: Optional[str] = None,
        ip: Optional[str] = None,
        content_length: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ):
        access_metadata = {
            **(metadata or {}),
            'http': {
                'method': method,
                'url': url,
                'status_code': status_code,
                'user_agent': user_agent,
                'ip': ip,
                'content_length': content_length,
                'response_time_ms': round(response_time_ms, 2),
            },
        }
        return self.log(LogCategory.ACCESS, LogLevel.INFO, f'{method} {url}', access_metadata)

    def log_security(self, event: str, severity: LogLevel | str = LogLevel.WARN, metadata: Optional[Dict[str, Any]] = None):
        level = parse_level(severity)
        security_metadata = {
            **(metadata or {}),
            'security': {
                'event': event,
                'severity': level.value,
                'timestamp': self._clock().isoformat(),
                'source': (metadata or {}).get('source', 'application'),
            },
        }
        return self.log(LogCategory.SECURITY, level, f'Security event: {event}', security_metadata)

    def log_performance(self, metric: str, value: float, unit: str, metadata: Optional[Dict[str, Any]] = None):
        performance_metadata = {
            **(metadata or {}),
            'performance': {'metric': metric, 'value': value, 'unit': unit},
        }
        return self.log(LogCategory.PERFORMANCE, LogLevel.INFO, f'Performance: {metric} = {value}{unit}', performance_metadata)

    def log_audit(self, action: str, actor: str, target: str, result: str, metadata: Optional[Dict[str, Any]] = None):
        audit_metadata = {
            **(metadata or {}),
            'audit': {'action': action, 'actor': actor, 'target': target, 'result': result},
        }
        return self.log(LogCategory.AUDIT, LogLevel.INFO, f'Audit: {actor} {action} {target} - {result}', audit_metadata)

    def log_debug(self, message: str, metadata: Optional[Dict[str, Any]] = None):
        # Debug entries are only kept outside production
        if self.config.environment == 'production':
            return None
        return self.log(LogCategory.DEBUG, LogLevel.DEBUG, message, metadata)

    def log_business_event(self, event: str, details: Optional[Dict[str, Any]] = None):
        return self.log_application('INFO', f'Business event: {event}', {
            'business_event': event,
            'details': details or {},
            'kind': 'business',
        })

    def log_user_action(self, user_id: str, action: str, details: Optional[Dict[str, Any]] = None):
        details = details or {}
        return self.log_audit(action, user_id, details.get('target', 'system'), 'success', {
            'user_action': action,
            'details': details,
            'kind': 'user_action',
            'user_id': user_id,
        })

    def log_database_operation(self, operation: str, table: str, duration_ms: float, metadata: Optional[Dict[str, Any]] = None):
        return self.log_performance(f'db_{operation}_{table}', duration_ms, 'ms', {
            'database': {'operation': operation, 'table': table, 'duration_ms': duration_ms},
            **(metadata or {}),
        })

    def log_external_api(
        self,
        service: str,
        endpoint: str,
        method: str,
        status_code: int,
        duration_ms: float,
        metadata: Optional[Dict[str, Any]] = None,
    ):
        level = LogLevel.WARN if status_code >= 400 else LogLevel.INFO
        return self.log(LogCategory.APPLICATION, level, f'External API: {method} {service}{endpoint}', {
            'external_api': {
                'service': service,
                'endpoint': endpoint,
                'method': method,
                'status_code': status_code,
                'duration_ms': duration_ms,
            },
            **(metadata or {}),
        })

    # ------------------------------------------------------------------
    # Reading and shipping
    # ------------------------------------------------------------------

    def get_recent_logs(self, limit: int = 100, category: Optional[LogCategory | str] = None) -> List[Dict[str, Any]]:
        """Most recent entries across buffers and recently flushed batches, oldest first."""
        wanted = LogCategory(category) if category else None
        with self._lock:
            entries = list(self._recent)
            for buffered in self._buffers.values():
                entries.extend(buffered)
        if wanted is not None:
            entries = [entry for entry in entries if entry.category == wanted]
        entries.sort(key=lambda entry: entry.timestamp)
        return [entry.model_dump(mode='json') for entry in entries[-limit:]]

    def search_logs(
        self,
        query: Optional[str] = None,
        category: Optional[LogCategory | str] = None,
        level: Optional[LogLevel | str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 1000,
    ) -> List[Dict[str, Any]]:
        """Search the current log files and unflushed buffers.

        Args:
            query: Case-insensitive substring matched against the whole entry
            category: Restrict to one category
            level: Restrict to one level
            start: Earliest timestamp (inclusive)
            end: Latest timestamp (inclusive)
            limit: Maximum number of results

        Returns:
            Matching entries as dictionaries
        """
        categories = [LogCategory(category)] if category else list(LogCategory)
        wanted_level = parse_level(level).value if level else None
        needle = query.lower() if query else None
        results: List[Dict[str, Any]] = []

        for current in categories:
            for line in self._iter_category_lines(current):
                if len(results) >= limit:
                    return results
                if needle and needle not in line.lower():
                    continue
                try:
                    entry = json.loads(line)
                except ValueError:
                    continue
                if wanted_level and entry.get('level') != wanted_level:
                    continue
                if start or end:
                    try:
                        timestamp = datetime.fromisoformat(entry['timestamp'].replace('Z', '+00:00'))
                    except (KeyError, ValueError):
                        continue
                    if start and timestamp < start:
                        continue
                    if end and timestamp > end:
                        continue
                results.append(entry)
        return results

    def _iter_category_lines(self, category: LogCategory):
        path = self.log_file(category)
        try:
            with open(path, encoding='utf-8') as f:
                for line in f:
                    if line.strip():
                        yield line.strip()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error(f'Cannot read log file {path}: {e}')
        with self._lock:
            buffered = list(self._buffers[category])
        for entry in buffered:
            yield entry.model_dump_json()

    async def ship_logs_to_remote(self) -> bool:
        """Post flushed entries not yet shipped to the remote log endpoint.

        Buffers are flushed first. At most SHIP_BATCH_SIZE entries go per call,
        oldest first; a failed post keeps them queued for the next attempt.

        Returns:
            True when a batch was accepted
        """
        if not self.config.remote_endpoint:
            return False
        self.flush_all()
        with self._lock:
            batch = list(itertools.islice(self._unshipped, SHIP_BATCH_SIZE))
        if not batch:
            return False

        payload = {
            'service': 'lion-football-academy',
            'environment': self.config.environment,
            'hostname': self._hostname,
            'timestamp': self._clock().isoformat(),
            'logs': [entry.model_dump(mode='json') for entry in batch],
        }
        headers = {'Content-Type': 'application/json'}
        if self.config.remote_token:
            headers['Authorization'] = f'Bearer {self.config.remote_token}'

        try:
            async with httpx.AsyncClient(timeout=10.0, transport=self._transport) as client:
                response = await client.post(self.config.remote_endpoint, json=payload, headers=headers)
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f'Failed to ship logs to {self.config.remote_endpoint}: {e}')
            return False

        shipped = {id(entry) for entry in batch}
        with self._lock:
            while self._unshipped and id(self._unshipped[0]) in shipped:
                self._unshipped.popleft()
        self._stats['shipped_batches'] += 1
        return True

    def get_logging_stats(self) -> Dict[str, Any]:
        """Buffer sizes, current file sizes, counters and config snapshot."""
        files = {}
        for category in LogCategory:
            path = self.log_file(category)
            try:
                stat = path.stat()
                files[category.value] = {
                    'size': stat.st_size,
                    'modified': datetime.fromtimestamp(stat.st_mtime).astimezone().isoformat(),
                    'rotated_files': len(self.rotated_files(category)),
                }
            except OSError:
                files[category.value] = {'size': 0, 'modified': None, 'rotated_files': 0}

        with self._lock:
            buffer_sizes = {category.value: len(buffer) for category, buffer in self._buffers.items()}

        return {
            'initialized': self._initialized,
            'directory': str(self.directory),
            'level': self.threshold.value,
            'buffer_sizes': buffer_sizes,
            'files': files,
            'stats': dict(self._stats),
            'config': self.config.model_dump(exclude={'remote_token'}),
        }

    def shutdown(self) -> None:
        """Flush every buffer; called on application shutdown."""
        self.log_application('INFO', 'Centralized logging shutting down')
        self.flush_all()
