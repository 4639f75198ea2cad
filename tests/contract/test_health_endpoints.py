"""Contract tests for the health and metrics surface.

Each endpoint is exercised through the FastAPI TestClient against a stack
wired to a temporary sqlite database with periodic jobs disabled.
"""

import asyncio
import re

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine

from ops_monitor.app import create_app
from ops_monitor.services.monitoring_stack import build_monitoring_stack

UUID_PATTERN = re.compile(r'^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$')


@pytest.fixture
def broken_db_client(monitoring_config, channels, tmp_path):
    """Client whose database lives in a directory that does not exist."""
    engine = create_engine(f"sqlite:///{tmp_path / 'missing' / 'academy.db'}")
    stack = build_monitoring_stack(monitoring_config, channels=channels, engine=engine)
    with TestClient(create_app(stack=stack, run_jobs=False), raise_server_exceptions=False) as client:
        yield client


# ============================================================================
# Basic probes
# ============================================================================

class TestProbes:

    def test_basic_health(self, client):
        response = client.get('/health')

        assert response.status_code == 200
        body = response.json()
        assert body['status'] == 'healthy'
        assert {'uptime', 'uptime_formatted', 'memory'} <= set(body)

    def test_liveness(self, client):
        response = client.get('/health/live')

        assert response.status_code == 200
        assert response.json()['status'] == 'alive'

    def test_readiness(self, client):
        response = client.get('/health/ready')

        assert response.status_code == 200
        body = response.json()
        assert body['status'] == 'ready'
        assert body['checks'] == [
            {'name': 'database', 'status': 'pass'},
            {'name': 'performance', 'status': 'pass'},
        ]

    def test_database_health(self, client):
        response = client.get('/health/database')

        assert response.status_code == 200
        assert response.json()['status'] == 'healthy'

    def test_unreachable_database(self, broken_db_client):
        database = broken_db_client.get('/health/database')
        ready = broken_db_client.get('/health/ready')

        assert database.status_code == 503
        assert database.json()['error'] == 'Database connection failed'
        assert ready.status_code == 503
        assert ready.json()['status'] == 'not_ready'


# ============================================================================
# Detailed status
# ============================================================================

class TestDetailedHealth:

    def test_detailed_health_sections(self, client):
        response = client.get('/health/detailed')

        assert response.status_code == 200
        body = response.json()
        assert body['status'] == 'healthy'
        assert set(body['services']) == {'performance', 'uptime', 'backup', 'logging', 'database', 'alerting'}
        assert body['services']['database']['status'] == 'healthy'

    def test_critical_alert_makes_detailed_health_unavailable(self, client, stack):
        asyncio.run(stack.alerting.trigger_alert('system_major_outage', 'critical'))

        response = client.get('/health/detailed')

        assert response.status_code == 503
        assert response.json()['status'] == 'critical'

    def test_performance_summary_timeframe(self, client):
        client.get('/api/does-not-exist')

        response = client.get('/health/performance', params={'timeframe': '15m'})

        assert response.status_code == 200
        body = response.json()
        assert body['summary']['timeframe'] == '15m'
        assert body['summary']['api']['count'] == 1
        assert set(body) == {'health', 'summary', 'queries'}

    def test_malformed_timeframe_uses_default(self, client):
        response = client.get('/health/performance', params={'timeframe': 'forever'})

        assert response.json()['summary']['timeframe'] == '1h'

    def test_uptime_status(self, client):
        response = client.get('/health/uptime')

        body = response.json()
        assert body['system']['status'] == 'operational'
        assert [service['id'] for service in body['services']] == ['database']
        assert body['incidents'] == []

    def test_backup_status(self, client):
        response = client.get('/health/backup')

        body = response.json()
        assert response.status_code == 200
        assert body['backups'] == []
        assert body['config']['database'] == {'type': 'sqlite', 'name': 'academy'}

    def test_logging_status(self, client):
        response = client.get('/health/logging')

        body = response.json()
        assert body['initialized'] is True
        assert body['config']['environment'] == 'test'


# ============================================================================
# Correlation ids, metrics and errors
# ============================================================================

class TestRequestHandling:

    def test_correlation_id_generated(self, client):
        response = client.get('/health/live')

        assert UUID_PATTERN.match(response.headers['X-Correlation-ID'])

    def test_correlation_id_preserved(self, client):
        response = client.get('/health/live', headers={'X-Correlation-ID': 'req-123'})

        assert response.headers['X-Correlation-ID'] == 'req-123'

    def test_health_requests_are_not_recorded(self, client, stack):
        client.get('/health')
        client.get('/health/live')

        assert stack.request_monitor.get_metrics()['requests'] == 0

    def test_metrics_endpoint(self, client):
        client.get('/api/players')

        response = client.get('/metrics')

        assert response.status_code == 200
        assert response.headers['content-type'].startswith('text/plain')
        assert 'ops_request_duration_seconds' in response.text

    def test_unhandled_error_returns_generic_500(self, app, client, stack):
        @app.get('/api/explode')
        async def explode():
            raise RuntimeError('scoreboard offline')

        response = client.get('/api/explode', headers={'X-Correlation-ID': 'req-500'})

        assert response.status_code == 500
        assert response.json() == {
            'error': 'Internal server error',
            'correlation_id': 'req-500',
            'message': 'scoreboard offline',
        }
        assert stack.request_monitor.get_metrics()['errors'] == 1

    def test_error_message_hidden_outside_development(self, monitoring_config, channels):
        config = monitoring_config.model_copy(update={'environment': 'production'})
        app = create_app(stack=build_monitoring_stack(config, channels=channels), run_jobs=False)

        @app.get('/api/explode')
        async def explode():
            raise RuntimeError('scoreboard offline')

        with TestClient(app, raise_server_exceptions=False) as client:
            response = client.get('/api/explode')

        assert response.status_code == 500
        assert 'message' not in response.json()
