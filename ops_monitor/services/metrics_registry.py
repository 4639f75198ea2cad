"""In-memory metric buffers shared by the monitoring services.

Each category holds at most `max_records` snapshots, oldest evicted first.
All access goes through one lock so request handlers and scheduled samplers
can record concurrently.
"""

import logging
import threading
from collections import deque
from datetime import datetime, timedelta
from typing import Any, Callable, Deque, Dict, List, Optional

from ops_monitor.lib.timeutils import utc_now
from ops_monitor.models.metric_record import MetricCategory, MetricRecord, MetricSummary

logger = logging.getLogger(__name__)

DEFAULT_MAX_RECORDS = 1000


def _category_name(category: MetricCategory | str) -> str:
    return category.value if isinstance(category, MetricCategory) else category


def percentile(data: List[float], p: float) -> float:
    """Nearest-rank percentile.

    Args:
        data: Numeric values
        p: Percentile (0.0 to 1.0)

    Returns:
        Percentile value, 0.0 for empty input
    """
    if not data:
        return 0.0
    sorted_data = sorted(data)
    index = int(len(sorted_data) * p)
    return sorted_data[min(index, len(sorted_data) - 1)]


class MetricsRegistry:
    """Bounded time-series buffers per metric category."""

    def __init__(self, max_records: int = DEFAULT_MAX_RECORDS, clock: Callable[[], datetime] = utc_now):
        """Initialize the registry.

        Args:
            max_records: Cap per category
            clock: Source of the current UTC time
        """
        self.max_records = max_records
        self._clock = clock
        self._buffers: Dict[str, Deque[MetricRecord]] = {}
        self._lock = threading.Lock()

    def record(self, category: MetricCategory | str, fields: Optional[Dict[str, Any]] = None) -> MetricRecord:
        """Append a snapshot stamped with the current time.

        Args:
            category: Target bucket
            fields: Category-specific values

        Returns:
            The stored record
        """
        name = _category_name(category)
        record = MetricRecord(timestamp=self._clock(), category=name, data=dict(fields or {}))
        with self._lock:
            buffer = self._buffers.get(name)
            if buffer is None:
                buffer = self._buffers[name] = deque(maxlen=self.max_records)
            buffer.append(record)
        return record

    def query(self, category: MetricCategory | str, since: Optional[timedelta] = None) -> List[MetricRecord]:
        """Records newer than `now - since`, oldest first.

        Args:
            category: Bucket to read
            since: Lookback window; None returns the whole buffer

        Returns:
            A copy of the matching records
        """
        name = _category_name(category)
        with self._lock:
            records = list(self._buffers.get(name, ()))
        if since is None:
            return records
        cutoff = self._clock() - since
        return [record for record in records if record.timestamp > cutoff]

    def latest(self, category: MetricCategory | str) -> Optional[MetricRecord]:
        name = _category_name(category)
        with self._lock:
            buffer = self._buffers.get(name)
            return buffer[-1] if buffer else None

    def count(self, category: MetricCategory | str) -> int:
        with self._lock:
            return len(self._buffers.get(_category_name(category), ()))

    def categories(self) -> List[str]:
        with self._lock:
            return list(self._buffers)

    def summarize(
        self,
        category: MetricCategory | str,
        since: Optional[timedelta] = None,
        value_field: str = 'duration',
        error_field: str = 'is_error',
        slow_field: str = 'is_slow',
    ) -> MetricSummary:
        """Aggregate a window of records.

        Args:
            category: Bucket to read
            since: Lookback window
            value_field: Numeric field averaged for mean/max/p95
            error_field: Boolean field counted for the error rate
            slow_field: Boolean field counted for the slow rate

        Returns:
            MetricSummary with rates in percent; zeroed for an empty window
        """
        records = self.query(category, since)
        if not records:
            return MetricSummary()

        values = [
            float(record.get(value_field))
            for record in records
            if isinstance(record.get(value_field), (int, float)) and not isinstance(record.get(value_field), bool)
        ]
        error_count = sum(1 for record in records if record.get(error_field))
        slow_count = sum(1 for record in records if record.get(slow_field))
        total = len(records)

        return MetricSummary(
            count=total,
            mean=round(sum(values) / len(values), 2) if values else 0.0,
            max=max(values) if values else 0.0,
            p95=percentile(values, 0.95),
            error_rate=round(error_count / total * 100, 2),
            slow_rate=round(slow_count / total * 100, 2),
            error_count=error_count,
            slow_count=slow_count,
        )

    def sweep(self, max_age: timedelta) -> int:
        """Drop records older than `max_age` in every category.

        Returns:
            Number of records removed
        """
        cutoff = self._clock() - max_age
        removed = 0
        with self._lock:
            for name, buffer in self._buffers.items():
                kept = [record for record in buffer if record.timestamp >= cutoff]
                removed += len(buffer) - len(kept)
                self._buffers[name] = deque(kept, maxlen=self.max_records)
        if removed:
            logger.debug(f'Swept {removed} metric records older than {max_age}')
        return removed

    def clear(self) -> None:
        with self._lock:
            self._buffers.clear()
