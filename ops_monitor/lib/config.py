"""Environment configuration for the monitoring core.

Each component receives an explicit config object. `MonitoringConfig.from_env()`
builds the full tree from environment variables; invalid values surface as
`ConfigurationError` instead of being silently defaulted.
"""

import os
from typing import Any, Dict, List, Literal, Optional

from cryptography.fernet import Fernet
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError

from ops_monitor.lib.scheduler import cron_trigger


class ConfigurationError(ValueError):
    """Raised when a required setting is missing or a value is invalid."""


def _env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name)
    if value is None or value.strip() == '':
        return default
    return value.strip()


def _env_bool(name: str, default: bool) -> bool:
    value = _env_str(name)
    if value is None:
        return default
    return value.lower() in ('1', 'true', 'yes', 'on')


def _env_number(name: str, default: float, cast=float):
    value = _env_str(name)
    if value is None:
        return default
    try:
        return cast(value)
    except ValueError as e:
        raise ConfigurationError(f'{name} must be a number, got {value!r}') from e


def _env_list(name: str) -> List[str]:
    value = _env_str(name)
    if not value:
        return []
    return [item.strip() for item in value.split(',') if item.strip()]


def validate_cron(expression: str) -> str:
    """Check a five-field crontab expression.

    Raises:
        ValueError: If APScheduler cannot parse the expression
    """
    cron_trigger(expression)
    return expression


class ConfigModel(BaseModel):
    """Base class that reports validation failures as ConfigurationError."""

    @classmethod
    def build(cls, **values: Any):
        """Validate values into a config instance.

        Raises:
            ConfigurationError: With a readable list of invalid fields
        """
        try:
            return cls(**values)
        except ValidationError as e:
            problems = '; '.join(
                f"{'.'.join(str(part) for part in err['loc']) or cls.__name__}: {err['msg']}"
                for err in e.errors()
            )
            raise ConfigurationError(f'Invalid {cls.__name__}: {problems}') from e


# ============================================================================
# Logging
# ============================================================================


class LoggingConfig(ConfigModel):
    """CentralizedLogger settings."""

    log_level: Literal['ERROR', 'WARN', 'INFO', 'DEBUG'] = 'INFO'
    directory: str = 'logs'
    max_file_size: int = Field(default=50 * 1024 * 1024, gt=0)
    max_files: int = Field(default=10, ge=1)
    buffer_size: int = Field(default=1000, ge=1)
    flush_interval: float = Field(default=5.0, gt=0)
    enable_compression: bool = True
    compression_level: int = Field(default=6, ge=1, le=9)
    environment: str = 'development'
    remote_endpoint: Optional[str] = None
    remote_token: Optional[str] = None
    remote_ship_interval: float = Field(default=60.0, gt=0)

    @field_validator('log_level', mode='before')
    @classmethod
    def normalize_level(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.upper()
            if value == 'WARNING':
                return 'WARN'
        return value

    @property
    def console_output(self) -> bool:
        return self.environment != 'production'

    @classmethod
    def from_env(cls) -> 'LoggingConfig':
        return cls.build(
            log_level=_env_str('LOG_LEVEL', 'INFO'),
            directory=_env_str('LOG_DIRECTORY', 'logs'),
            max_file_size=_env_number('LOG_MAX_FILE_SIZE', 50 * 1024 * 1024, int),
            max_files=_env_number('LOG_MAX_FILES', 10, int),
            buffer_size=_env_number('LOG_BUFFER_SIZE', 1000, int),
            flush_interval=_env_number('LOG_FLUSH_INTERVAL', 5.0),
            enable_compression=_env_bool('LOG_COMPRESSION', True),
            compression_level=_env_number('LOG_COMPRESSION_LEVEL', 6, int),
            environment=_env_str('ENVIRONMENT', 'development'),
            remote_endpoint=_env_str('LOG_REMOTE_ENDPOINT'),
            remote_token=_env_str('LOG_REMOTE_TOKEN'),
        )


# ============================================================================
# Performance and alert thresholds
# ============================================================================


class AlertThresholds(ConfigModel):
    """Warning/critical pairs evaluated after each performance sample.

    Rates and memory are fractions (0.05 == 5%), response times milliseconds.
    """

    error_rate_warning: float = Field(default=0.05, ge=0, le=1)
    error_rate_critical: float = Field(default=0.10, ge=0, le=1)
    response_time_warning: float = Field(default=1000, gt=0)
    response_time_critical: float = Field(default=3000, gt=0)
    memory_warning: float = Field(default=0.80, ge=0, le=1)
    memory_critical: float = Field(default=0.90, ge=0, le=1)
    db_connections_warning: int = Field(default=80, ge=0)
    db_connections_critical: int = Field(default=95, ge=0)

    @model_validator(mode='after')
    def check_pairs(self) -> 'AlertThresholds':
        pairs = (
            ('error_rate', self.error_rate_warning, self.error_rate_critical),
            ('response_time', self.response_time_warning, self.response_time_critical),
            ('memory', self.memory_warning, self.memory_critical),
            ('db_connections', self.db_connections_warning, self.db_connections_critical),
        )
        for name, warning, critical in pairs:
            if warning > critical:
                raise ValueError(f'{name} warning threshold exceeds critical threshold')
        return self

    @classmethod
    def from_env(cls) -> 'AlertThresholds':
        return cls.build(
            error_rate_warning=_env_number('ALERT_ERROR_RATE_WARNING', 0.05),
            error_rate_critical=_env_number('ALERT_ERROR_RATE_CRITICAL', 0.10),
            response_time_warning=_env_number('ALERT_RESPONSE_TIME_WARNING', 1000),
            response_time_critical=_env_number('ALERT_RESPONSE_TIME_CRITICAL', 3000),
            memory_warning=_env_number('ALERT_MEMORY_WARNING', 0.80),
            memory_critical=_env_number('ALERT_MEMORY_CRITICAL', 0.90),
            db_connections_warning=_env_number('ALERT_DB_CONNECTIONS_WARNING', 80, int),
            db_connections_critical=_env_number('ALERT_DB_CONNECTIONS_CRITICAL', 95, int),
        )


class PerformanceConfig(ConfigModel):
    """PerformanceMonitor settings. Durations in milliseconds, intervals in seconds."""

    api_response_slow_ms: float = 1000
    database_query_slow_ms: float = 500
    database_query_alert_ms: float = 10000
    external_api_slow_ms: float = 2000
    slow_request_alert_ms: float = 5000
    high_active_handles: int = 1000
    system_sample_interval: float = Field(default=30, gt=0)
    application_sample_interval: float = Field(default=60, gt=0)
    retention_hours: float = Field(default=24, gt=0)
    health_alert_window_minutes: float = Field(default=15, gt=0)
    thresholds: AlertThresholds = Field(default_factory=AlertThresholds)

    @classmethod
    def from_env(cls) -> 'PerformanceConfig':
        return cls.build(thresholds=AlertThresholds.from_env())


# ============================================================================
# Alerting
# ============================================================================


class AlertChannelConfig(ConfigModel):
    """Destinations for alert delivery. A channel is enabled when its settings are present."""

    slack_webhook_url: Optional[str] = None
    slack_channel: str = '#alerts'
    discord_webhook_url: Optional[str] = None
    webhook_url: Optional[str] = None
    pagerduty_routing_key: Optional[str] = None
    email_to: List[str] = Field(default_factory=list)
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_user: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_from: str = 'alerts@lionfootballacademy.com'
    smtp_use_tls: bool = True
    twilio_account_sid: Optional[str] = None
    twilio_auth_token: Optional[str] = None
    twilio_from_number: Optional[str] = None
    sms_to: List[str] = Field(default_factory=list)

    def enabled_channels(self) -> List[str]:
        """Names of channels with complete destination settings."""
        enabled = []
        if self.slack_webhook_url:
            enabled.append('slack')
        if self.discord_webhook_url:
            enabled.append('discord')
        if self.webhook_url:
            enabled.append('webhook')
        if self.smtp_host and self.email_to:
            enabled.append('email')
        if self.twilio_account_sid and self.twilio_auth_token and self.twilio_from_number and self.sms_to:
            enabled.append('sms')
        if self.pagerduty_routing_key:
            enabled.append('pagerduty')
        return enabled

    @classmethod
    def from_env(cls) -> 'AlertChannelConfig':
        return cls.build(
            slack_webhook_url=_env_str('SLACK_WEBHOOK_URL'),
            slack_channel=_env_str('SLACK_CHANNEL', '#alerts'),
            discord_webhook_url=_env_str('DISCORD_WEBHOOK_URL'),
            webhook_url=_env_str('ALERT_WEBHOOK_URL'),
            pagerduty_routing_key=_env_str('PAGERDUTY_ROUTING_KEY'),
            email_to=_env_list('ALERT_EMAIL_TO'),
            smtp_host=_env_str('SMTP_HOST'),
            smtp_port=_env_number('SMTP_PORT', 587, int),
            smtp_user=_env_str('SMTP_USER'),
            smtp_password=_env_str('SMTP_PASSWORD'),
            smtp_from=_env_str('SMTP_FROM', 'alerts@lionfootballacademy.com'),
            smtp_use_tls=_env_bool('SMTP_USE_TLS', True),
            twilio_account_sid=_env_str('TWILIO_ACCOUNT_SID'),
            twilio_auth_token=_env_str('TWILIO_AUTH_TOKEN'),
            twilio_from_number=_env_str('TWILIO_FROM_NUMBER'),
            sms_to=_env_list('ALERT_SMS_TO'),
        )


class AlertingConfig(ConfigModel):
    """AlertingService settings. Durations in seconds."""

    channels: AlertChannelConfig = Field(default_factory=AlertChannelConfig)
    max_alerts_per_hour: int = Field(default=50, ge=1)
    suppression_duration: float = Field(default=300.0, gt=0)
    history_limit: int = Field(default=1000, ge=1)
    cleanup_max_age_hours: float = Field(default=24, gt=0)
    system_health_check_interval: float = Field(default=60, gt=0)
    uptime_check_interval: float = Field(default=120, gt=0)
    low_uptime_threshold: float = Field(default=99.0, ge=0, le=100)
    service_name: str = 'lion-football-academy'
    environment: str = 'development'

    @classmethod
    def from_env(cls) -> 'AlertingConfig':
        return cls.build(
            channels=AlertChannelConfig.from_env(),
            max_alerts_per_hour=_env_number('ALERT_MAX_PER_HOUR', 50, int),
            suppression_duration=_env_number('ALERT_SUPPRESSION_DURATION', 300.0),
            environment=_env_str('ENVIRONMENT', 'development'),
        )


# ============================================================================
# Uptime
# ============================================================================


class UptimeConfig(ConfigModel):
    """UptimeMonitor settings. Intervals in seconds."""

    check_interval: float = Field(default=60, gt=0)
    timeout: float = Field(default=10, gt=0)
    retry_attempts: int = Field(default=3, ge=1)
    retry_delay: float = Field(default=5, ge=0)
    incident_threshold: int = Field(default=3, ge=1)
    recovery_threshold: int = Field(default=2, ge=1)
    degraded_response_time_ms: float = Field(default=5000, gt=0)
    history_retention_hours: float = Field(default=48, gt=0)
    backend_url: Optional[str] = None
    frontend_url: Optional[str] = None

    @classmethod
    def from_env(cls) -> 'UptimeConfig':
        return cls.build(
            check_interval=_env_number('UPTIME_CHECK_INTERVAL', 60),
            timeout=_env_number('UPTIME_TIMEOUT', 10),
            retry_attempts=_env_number('UPTIME_RETRY_ATTEMPTS', 3, int),
            retry_delay=_env_number('UPTIME_RETRY_DELAY', 5),
            incident_threshold=_env_number('UPTIME_INCIDENT_THRESHOLD', 3, int),
            recovery_threshold=_env_number('UPTIME_RECOVERY_THRESHOLD', 2, int),
            degraded_response_time_ms=_env_number('UPTIME_DEGRADED_RESPONSE_TIME', 5000),
            backend_url=_env_str('BACKEND_URL'),
            frontend_url=_env_str('FRONTEND_URL'),
        )


# ============================================================================
# Database, backup and maintenance
# ============================================================================

SUPPORTED_DATABASES = ('sqlite', 'postgresql', 'mysql')


class DatabaseConfig(ConfigModel):
    """Connection settings of the academy database."""

    url: str = 'sqlite:///./academy.db'

    @field_validator('url')
    @classmethod
    def check_url(cls, value: str) -> str:
        try:
            parsed = make_url(value)
        except ArgumentError as e:
            raise ValueError(f'cannot parse database url: {e}') from e
        if parsed.get_backend_name() not in SUPPORTED_DATABASES:
            raise ValueError(f'unsupported database type {parsed.get_backend_name()!r}')
        if not parsed.database:
            raise ValueError('database name is required')
        return value

    @property
    def type(self) -> str:
        return make_url(self.url).get_backend_name()

    @property
    def name(self) -> str:
        database = make_url(self.url).database or ''
        if self.type == 'sqlite':
            return os.path.splitext(os.path.basename(database))[0] or 'sqlite'
        return database

    @property
    def path(self) -> Optional[str]:
        """Filesystem path of a sqlite database."""
        return make_url(self.url).database if self.type == 'sqlite' else None

    @property
    def host(self) -> Optional[str]:
        return make_url(self.url).host

    @property
    def port(self) -> Optional[int]:
        return make_url(self.url).port

    @property
    def user(self) -> Optional[str]:
        return make_url(self.url).username

    @property
    def password(self) -> Optional[str]:
        return make_url(self.url).password

    @classmethod
    def from_env(cls) -> 'DatabaseConfig':
        return cls.build(url=_env_str('DATABASE_URL', 'sqlite:///./academy.db'))


class BackupConfig(ConfigModel):
    """BackupScheduler settings."""

    directory: str = 'backups'
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    schedules: Dict[str, str] = Field(
        default_factory=lambda: {
            'daily': '0 2 * * *',
            'weekly': '0 3 * * 0',
            'monthly': '0 4 1 * *',
        }
    )
    cleanup_schedule: str = '0 1 * * *'
    retention_daily_days: int = Field(default=7, ge=1)
    retention_weekly_weeks: int = Field(default=4, ge=1)
    retention_monthly_months: int = Field(default=12, ge=1)
    compression: bool = True
    compression_level: int = Field(default=6, ge=1, le=9)
    encryption_key: Optional[str] = None
    s3_bucket: Optional[str] = None
    aws_region: str = 'us-east-1'
    include_paths: List[str] = Field(default_factory=list)
    log_directory: Optional[str] = 'logs'
    command_timeout: float = Field(default=3600, gt=0)

    @field_validator('schedules')
    @classmethod
    def check_schedules(cls, value: Dict[str, str]) -> Dict[str, str]:
        for backup_type, expression in value.items():
            if backup_type not in ('daily', 'weekly', 'monthly'):
                raise ValueError(f'unknown backup schedule {backup_type!r}')
            validate_cron(expression)
        return value

    @field_validator('cleanup_schedule')
    @classmethod
    def check_cleanup_schedule(cls, value: str) -> str:
        return validate_cron(value)

    @field_validator('encryption_key')
    @classmethod
    def check_encryption_key(cls, value: Optional[str]) -> Optional[str]:
        if value:
            # Fernet rejects keys that are not 32 url-safe base64 bytes
            Fernet(value.encode())
        return value

    @property
    def encryption_enabled(self) -> bool:
        return bool(self.encryption_key)

    @property
    def cloud_enabled(self) -> bool:
        return bool(self.s3_bucket)

    @classmethod
    def from_env(cls) -> 'BackupConfig':
        return cls.build(
            directory=_env_str('BACKUP_DIRECTORY', 'backups'),
            database=DatabaseConfig.from_env(),
            schedules={
                'daily': _env_str('BACKUP_DAILY_SCHEDULE', '0 2 * * *'),
                'weekly': _env_str('BACKUP_WEEKLY_SCHEDULE', '0 3 * * 0'),
                'monthly': _env_str('BACKUP_MONTHLY_SCHEDULE', '0 4 1 * *'),
            },
            cleanup_schedule=_env_str('BACKUP_CLEANUP_SCHEDULE', '0 1 * * *'),
            retention_daily_days=_env_number('BACKUP_RETENTION_DAILY', 7, int),
            retention_weekly_weeks=_env_number('BACKUP_RETENTION_WEEKLY', 4, int),
            retention_monthly_months=_env_number('BACKUP_RETENTION_MONTHLY', 12, int),
            compression=_env_bool('BACKUP_COMPRESSION', True),
            encryption_key=_env_str('BACKUP_ENCRYPTION_KEY'),
            s3_bucket=_env_str('BACKUP_S3_BUCKET'),
            aws_region=_env_str('AWS_REGION', 'us-east-1'),
            include_paths=_env_list('BACKUP_INCLUDE_PATHS'),
            log_directory=_env_str('LOG_DIRECTORY', 'logs'),
        )


MAINTENANCE_JOBS = (
    'security_updates',
    'performance_optimization',
    'database_maintenance',
    'dependency_updates',
    'ssl_renewal',
    'log_cleanup',
    'system_cleanup',
)

DEFAULT_MAINTENANCE_SCHEDULES = {
    'security_updates': '0 3 * * 1',
    'performance_optimization': '0 4 * * 0',
    'database_maintenance': '0 2 * * 0',
    'dependency_updates': '0 5 1 * *',
    'ssl_renewal': '0 6 1 * *',
    'log_cleanup': '0 1 * * *',
    'system_cleanup': '0 7 * * 0',
}


class MaintenanceConfig(ConfigModel):
    """MaintenanceScheduler settings."""

    schedules: Dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_MAINTENANCE_SCHEDULES))
    auto_approval: Literal['patch', 'minor', 'major'] = 'minor'
    test_command: str = 'pytest -q'
    rollback_enabled: bool = True
    notifications_enabled: bool = True
    ssl_domains: List[str] = Field(default_factory=list)
    ssl_renew_command: Optional[str] = None
    ssl_expiry_warning_days: int = Field(default=30, ge=1)
    temp_directories: List[str] = Field(default_factory=list)
    temp_file_max_age_days: int = Field(default=7, ge=1)
    command_timeout: float = Field(default=600, gt=0)
    window_start_hour: int = Field(default=2, ge=0, le=23)
    window_end_hour: int = Field(default=6, ge=0, le=23)

    @field_validator('schedules')
    @classmethod
    def check_schedules(cls, value: Dict[str, str]) -> Dict[str, str]:
        for job, expression in value.items():
            if job not in MAINTENANCE_JOBS:
                raise ValueError(f'unknown maintenance job {job!r}')
            validate_cron(expression)
        return value

    @classmethod
    def from_env(cls) -> 'MaintenanceConfig':
        schedules = {
            job: _env_str(f'MAINTENANCE_{job.upper()}_SCHEDULE', default)
            for job, default in DEFAULT_MAINTENANCE_SCHEDULES.items()
        }
        return cls.build(
            schedules=schedules,
            auto_approval=_env_str('MAINTENANCE_AUTO_APPROVAL', 'minor'),
            test_command=_env_str('MAINTENANCE_TEST_COMMAND', 'pytest -q'),
            rollback_enabled=_env_bool('MAINTENANCE_ROLLBACK', True),
            notifications_enabled=_env_bool('MAINTENANCE_NOTIFICATIONS', True),
            ssl_domains=_env_list('MAINTENANCE_SSL_DOMAINS'),
            ssl_renew_command=_env_str('MAINTENANCE_SSL_RENEW_COMMAND'),
            temp_directories=_env_list('MAINTENANCE_TEMP_DIRECTORIES'),
        )


# ============================================================================
# Aggregate
# ============================================================================


DEFAULT_CORS_ORIGINS = ('http://localhost:3000', 'http://127.0.0.1:3000')


class MonitoringConfig(ConfigModel):
    """Configuration of the whole monitoring stack."""

    environment: str = 'development'
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    performance: PerformanceConfig = Field(default_factory=PerformanceConfig)
    alerting: AlertingConfig = Field(default_factory=AlertingConfig)
    uptime: UptimeConfig = Field(default_factory=UptimeConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    backup: BackupConfig = Field(default_factory=BackupConfig)
    maintenance: MaintenanceConfig = Field(default_factory=MaintenanceConfig)
    scheduler_timezone: str = 'UTC'
    cors_origins: List[str] = Field(default_factory=lambda: list(DEFAULT_CORS_ORIGINS))

    @classmethod
    def from_env(cls) -> 'MonitoringConfig':
        """Build the configuration tree from environment variables.

        Raises:
            ConfigurationError: If any section is invalid
        """
        return cls.build(
            environment=_env_str('ENVIRONMENT', 'development'),
            logging=LoggingConfig.from_env(),
            performance=PerformanceConfig.from_env(),
            alerting=AlertingConfig.from_env(),
            uptime=UptimeConfig.from_env(),
            database=DatabaseConfig.from_env(),
            backup=BackupConfig.from_env(),
            maintenance=MaintenanceConfig.from_env(),
            scheduler_timezone=_env_str('SCHEDULER_TIMEZONE', 'UTC'),
            cors_origins=_env_list('CORS_ORIGINS') or list(DEFAULT_CORS_ORIGINS),
        )
