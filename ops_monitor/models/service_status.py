"""Uptime models: monitored targets, their runtime state and incidents."""

from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ServiceType(str, Enum):
    HTTP = 'http'
    INTERNAL = 'internal'


class ServiceState(str, Enum):
    UP = 'up'
    DOWN = 'down'
    UNKNOWN = 'unknown'


class IncidentStatus(str, Enum):
    OPEN = 'open'
    RESOLVED = 'resolved'


class SystemState(str, Enum):
    OPERATIONAL = 'operational'
    DEGRADED_PERFORMANCE = 'degraded_performance'
    PARTIAL_OUTAGE = 'partial_outage'
    MAJOR_OUTAGE = 'major_outage'


class CheckOutcome(BaseModel):
    """What an internal check function returns."""

    status: ServiceState
    error: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)


CheckFunction = Callable[[], Union[CheckOutcome, dict, Awaitable[Union[CheckOutcome, dict]]]]


class ServiceCheckTarget(BaseModel):
    """A monitored endpoint or internal probe.

    HTTP targets need `url`; internal targets need `check`, a sync or async
    callable returning a CheckOutcome (or an equivalent dict).
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    type: ServiceType = ServiceType.HTTP
    url: str | None = None
    method: str = 'GET'
    expected_status: int = 200
    timeout: float | None = Field(default=None, gt=0, description='Seconds; defaults to the monitor timeout')
    headers: dict[str, str] = Field(default_factory=dict)
    body: Any = None
    check: CheckFunction | None = Field(default=None, exclude=True)
    critical: bool = True
    enabled: bool = True

    @model_validator(mode='after')
    def check_mechanism(self) -> 'ServiceCheckTarget':
        if self.type == ServiceType.HTTP and not self.url:
            raise ValueError(f'HTTP service {self.id!r} requires a url')
        if self.type == ServiceType.INTERNAL and self.check is None:
            raise ValueError(f'internal service {self.id!r} requires a check function')
        return self


class CheckResult(BaseModel):
    """Outcome of one probe, kept in the per-service history."""

    service_id: str
    timestamp: datetime
    status: ServiceState
    response_time_ms: float = 0.0
    status_code: int | None = None
    error: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)


class Incident(BaseModel):
    """Outage record opened after repeated failures."""

    id: str
    service_id: str
    service_name: str
    severity: str
    start_time: datetime
    end_time: datetime | None = None
    status: IncidentStatus = IncidentStatus.OPEN
    description: str
    details: dict[str, Any] = Field(default_factory=dict)

    @property
    def duration_seconds(self) -> float | None:
        if self.end_time is None:
            return None
        return (self.end_time - self.start_time).total_seconds()


class ServiceStatus(BaseModel):
    """Runtime state of a ServiceCheckTarget."""

    service_id: str
    status: ServiceState = ServiceState.UNKNOWN
    last_check: datetime | None = None
    last_success: datetime | None = None
    last_failure: datetime | None = None
    consecutive_failures: int = 0
    consecutive_successes: int = 0
    uptime: float = 100.0
    response_time_ms: float = 0.0
    last_error: str | None = None
    incident: Incident | None = None
