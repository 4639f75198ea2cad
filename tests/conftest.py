"""Shared test fixtures and utilities for all tests.

This conftest.py provides reusable fixtures that can be used across
unit, contract, and integration tests: a controllable clock, recording
alert channels, per-test configuration rooted in tmp_path and a fully
wired monitoring stack behind a FastAPI TestClient.
"""

import sys
from pathlib import Path

# CRITICAL: Ensure the correct project root is first in sys.path
# This prevents importing from other projects with similar module names
project_root = str(Path(__file__).parent.parent.absolute())
if project_root not in sys.path:
    sys.path.insert(0, project_root)
elif sys.path[0] != project_root:
    sys.path.remove(project_root)
    sys.path.insert(0, project_root)

import pytest
from fastapi.testclient import TestClient

from ops_monitor.lib.config import (
    AlertingConfig,
    BackupConfig,
    DatabaseConfig,
    LoggingConfig,
    MonitoringConfig,
    UptimeConfig,
)
from ops_monitor.services.alerting_service import AlertingService
from ops_monitor.services.metrics_registry import MetricsRegistry

from tests.fakes import FakeClock, FakeMonotonic, RecordingChannel


# ============================================================================
# Time Fixtures
# ============================================================================

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def monotonic():
    return FakeMonotonic()


# ============================================================================
# Alerting Fixtures
# ============================================================================

@pytest.fixture
def channels():
    """One recording channel per supported destination."""
    return {
        'slack': RecordingChannel('slack'),
        'discord': RecordingChannel('discord'),
        'webhook': RecordingChannel('webhook'),
        'email': RecordingChannel('email'),
        'sms': RecordingChannel('sms', critical_only=True),
        'pagerduty': RecordingChannel('pagerduty'),
    }


@pytest.fixture
def alerting(channels, clock, monotonic):
    """AlertingService with recording channels and controllable clocks."""
    return AlertingService(AlertingConfig(), channels, clock=clock, monotonic=monotonic)


@pytest.fixture
def registry(clock):
    return MetricsRegistry(clock=clock)


# ============================================================================
# Configuration Fixtures
# ============================================================================

@pytest.fixture
def logging_config(tmp_path):
    return LoggingConfig(directory=str(tmp_path / 'logs'), environment='test', buffer_size=10)


@pytest.fixture
def sqlite_config(tmp_path):
    return DatabaseConfig(url=f"sqlite:///{tmp_path / 'academy.db'}")


@pytest.fixture
def backup_config(tmp_path, sqlite_config):
    return BackupConfig(
        directory=str(tmp_path / 'backups'),
        database=sqlite_config,
        log_directory=str(tmp_path / 'logs'),
    )


@pytest.fixture
def monitoring_config(tmp_path, logging_config, sqlite_config, backup_config):
    """Complete configuration with every path inside tmp_path and no remote services."""
    return MonitoringConfig(
        environment='development',
        logging=logging_config,
        database=sqlite_config,
        backup=backup_config,
        uptime=UptimeConfig(retry_delay=0),
    )


# ============================================================================
# FastAPI Application Fixtures
# ============================================================================

@pytest.fixture
def stack(monitoring_config, channels):
    """Wired monitoring stack on a temporary sqlite database."""
    from ops_monitor.services.monitoring_stack import build_monitoring_stack

    return build_monitoring_stack(monitoring_config, channels=channels)


@pytest.fixture
def app(stack):
    """Monitoring API bound to the test stack, periodic jobs disabled."""
    from ops_monitor.app import create_app

    return create_app(stack=stack, run_jobs=False)


@pytest.fixture
def client(app):
    """Test client running the app lifespan; server errors become 500 responses."""
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client
