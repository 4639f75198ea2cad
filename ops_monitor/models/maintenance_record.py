"""Maintenance run model."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class MaintenanceStatus(str, Enum):
    COMPLETED = 'completed'
    FAILED = 'failed'


class MaintenanceRecord(BaseModel):
    """One maintenance job run, kept in a bounded history."""

    id: str
    type: str
    status: MaintenanceStatus
    start_time: datetime
    end_time: datetime
    duration_seconds: float = Field(default=0.0, ge=0)
    summary: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
