"""Backup artifact model."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class BackupType(str, Enum):
    DAILY = 'daily'
    WEEKLY = 'weekly'
    MONTHLY = 'monthly'
    MANUAL = 'manual'
    FULL = 'full'
    PRE_CHANGE = 'pre_change'


class BackupRecord(BaseModel):
    """A backup file on disk.

    Attributes:
        name: File name
        path: Absolute path
        size: Size in bytes
        type: Retention tier parsed from the file name
        created: Creation time
        modified: Last modification time, used for retention
        remote_key: Object key when uploaded to S3
    """

    name: str
    path: str
    size: int = Field(default=0, ge=0)
    type: BackupType
    created: datetime
    modified: datetime
    remote_key: str | None = None
