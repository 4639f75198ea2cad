"""Log entry models for CentralizedLogger."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class LogLevel(str, Enum):
    """Levels ordered from least to most verbose."""
    ERROR = 'ERROR'
    WARN = 'WARN'
    INFO = 'INFO'
    DEBUG = 'DEBUG'

    @property
    def verbosity(self) -> int:
        return LOG_LEVEL_ORDER[self]


LOG_LEVEL_ORDER = {
    LogLevel.ERROR: 0,
    LogLevel.WARN: 1,
    LogLevel.INFO: 2,
    LogLevel.DEBUG: 3,
}


class LogCategory(str, Enum):
    APPLICATION = 'application'
    ERROR = 'error'
    ACCESS = 'access'
    SECURITY = 'security'
    PERFORMANCE = 'performance'
    AUDIT = 'audit'
    DEBUG = 'debug'


class LogEntry(BaseModel):
    """Structured log record written as one JSON line."""

    timestamp: datetime
    level: LogLevel
    category: LogCategory
    message: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    correlation_id: str
    user_id: str | None = None
    session_id: str | None = None
    request_id: str | None = None
    process: dict[str, Any] = Field(default_factory=dict)
