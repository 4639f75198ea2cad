"""Metric record models.

Snapshots kept by MetricsRegistry, one bounded buffer per category.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class MetricCategory(str, Enum):
    """Metric buckets held by the registry."""
    SYSTEM = 'system'
    APPLICATION = 'application'
    API_REQUESTS = 'api_requests'
    DATABASE_QUERIES = 'database_queries'
    EXTERNAL_APIS = 'external_apis'
    SYSTEM_STATUS = 'system_status'
    LOGGING = 'logging'


class MetricRecord(BaseModel):
    """Immutable metric snapshot.

    Attributes:
        timestamp: When the record was taken (UTC)
        category: Bucket the record belongs to
        data: Category-specific values (duration, status_code, is_error, ...)
    """

    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(..., description='Record time (UTC)')
    category: str = Field(..., min_length=1, description='Metric category')
    data: dict[str, Any] = Field(default_factory=dict, description='Recorded values')

    def get(self, name: str, default: Any = None) -> Any:
        return self.data.get(name, default)

    def __getitem__(self, name: str) -> Any:
        return self.data[name]


class MetricSummary(BaseModel):
    """Aggregate over a window of records.

    Rates are percentages (0-100). Every field is zero for an empty window.
    """

    count: int = 0
    mean: float = 0.0
    max: float = 0.0
    p95: float = 0.0
    error_rate: float = 0.0
    slow_rate: float = 0.0
    error_count: int = 0
    slow_count: int = 0
