"""
Unit tests for PerformanceMonitor.

Covers health status reduction, threshold alerts, query tracking,
summaries and the export formats.
"""

from unittest.mock import Mock

import pytest

from ops_monitor.lib.config import AlertThresholds, PerformanceConfig
from ops_monitor.models.metric_record import MetricCategory
from ops_monitor.services.performance_monitor import PerformanceMonitor, determine_health_status


@pytest.fixture
def monitor(registry, alerting, clock):
    return PerformanceMonitor(PerformanceConfig(), registry, alerting=alerting, clock=clock, process=Mock())


def record_requests(monitor, total, errors, duration):
    for i in range(total):
        monitor.track_api_request('GET', '/api/players', duration, 500 if i < errors else 200)


def system_sample(memory_percent=40.0, active_handles=50):
    return {
        'memory_rss': 1024,
        'memory_vms': 2048,
        'memory_percent': memory_percent,
        'cpu_percent': 3.5,
        'active_handles': active_handles,
        'threads': 8,
        'uptime': 10.0,
    }


# ============================================================================
# Health status
# ============================================================================

class TestHealthStatus:

    def test_error_rate_above_warning_is_degraded(self):
        assert determine_health_status(6.0, 500.0, 0.0, False, AlertThresholds()) == 'degraded'

    def test_slow_response_time_is_degraded(self):
        assert determine_health_status(0.0, 1500.0, 0.0, False, AlertThresholds()) == 'degraded'

    def test_many_slow_requests_is_warning(self):
        assert determine_health_status(0.0, 200.0, 15.0, False, AlertThresholds()) == 'warning'

    def test_recent_critical_alert_wins(self):
        assert determine_health_status(0.0, 10.0, 0.0, True, AlertThresholds()) == 'critical'

    def test_quiet_system_is_healthy(self):
        assert determine_health_status(0.0, 10.0, 0.0, False, AlertThresholds()) == 'healthy'

    def test_health_status_uses_recent_requests(self, monitor):
        record_requests(monitor, total=100, errors=6, duration=500.0)

        health = monitor.get_health_status()

        assert health['status'] == 'degraded'
        assert health['metrics']['request_count'] == 100
        assert health['metrics']['error_rate'] == 6.0

    def test_requests_outside_window_are_ignored(self, monitor, clock):
        record_requests(monitor, total=10, errors=10, duration=50.0)
        clock.advance(minutes=6)

        assert monitor.get_health_status()['status'] == 'healthy'

    @pytest.mark.asyncio
    async def test_active_critical_alert_makes_status_critical(self, monitor, alerting):
        await alerting.trigger_alert('system_major_outage', 'critical')

        health = monitor.get_health_status()

        assert health['status'] == 'critical'
        assert health['alerts'] == {'active': 1, 'recent_critical': True}


# ============================================================================
# Threshold alerts
# ============================================================================

class TestThresholds:

    @pytest.mark.asyncio
    async def test_memory_warning_and_critical(self, monitor, alerting):
        await monitor.check_system_thresholds(system_sample(memory_percent=85.0))
        await monitor.check_system_thresholds(system_sample(memory_percent=95.0))

        keys = sorted(alert.key for alert in alerting.get_active_alerts())
        assert keys == ['high_memory_usage_critical', 'high_memory_usage_warning']

    @pytest.mark.asyncio
    async def test_high_handle_count(self, monitor, alerting):
        await monitor.check_system_thresholds(system_sample(active_handles=1500))

        assert [alert.alert_id for alert in alerting.get_active_alerts()] == ['high_active_handles']

    @pytest.mark.asyncio
    async def test_normal_sample_raises_nothing(self, monitor, alerting):
        await monitor.check_system_thresholds(system_sample())

        assert alerting.get_active_alerts() == []

    @pytest.mark.asyncio
    async def test_application_sample_checks_error_rate(self, monitor, alerting, registry):
        record_requests(monitor, total=10, errors=2, duration=100.0)

        sample = await monitor.collect_application_metrics()

        assert sample['error_rate'] == 20.0
        assert registry.latest(MetricCategory.APPLICATION)['request_count'] == 10
        assert [alert.key for alert in alerting.get_active_alerts()] == ['high_error_rate_critical']

    @pytest.mark.asyncio
    async def test_application_sample_checks_response_time(self, monitor, alerting):
        record_requests(monitor, total=5, errors=0, duration=1200.0)

        await monitor.collect_application_metrics()

        assert [alert.key for alert in alerting.get_active_alerts()] == ['slow_response_time_warning']

    @pytest.mark.asyncio
    async def test_alerting_failure_does_not_propagate(self, registry, clock):
        alerting = Mock()
        alerting.trigger_alert.side_effect = RuntimeError('channels down')
        monitor = PerformanceMonitor(PerformanceConfig(), registry, alerting=alerting, clock=clock, process=Mock())

        await monitor.check_system_thresholds(system_sample(memory_percent=99.0))

        assert monitor.recent_alerts[-1]['alert_id'] == 'high_memory_usage'


# ============================================================================
# Database queries
# ============================================================================

class TestQueries:

    def test_query_text_is_truncated_and_params_counted(self, monitor):
        record = monitor.track_database_query('SELECT ' + 'x' * 500, ('a', 'b'), 12.0)

        assert len(record['query']) == 200
        assert record['param_count'] == 2
        assert record['is_slow'] is False

    def test_slow_queries_are_sorted_by_duration(self, monitor):
        monitor.track_database_query('SELECT 1', None, 600.0)
        monitor.track_database_query('SELECT 2', None, 900.0)
        monitor.track_database_query('SELECT 3', None, 10.0)

        slow = monitor.get_slow_queries()

        assert [query['query'] for query in slow] == ['SELECT 2', 'SELECT 1']
        assert monitor.get_query_metrics()['slow_queries'] == 2

    @pytest.mark.asyncio
    async def test_very_slow_query_raises_alert(self, monitor, alerting, channels):
        monitor.track_database_query('SELECT * FROM players', None, 12000.0)
        await alerting.drain_background()

        assert [alert.alert_id for alert in alerting.get_active_alerts()] == ['slow_database_query']
        assert channels['slack'].delivered[0].data['query'] == 'SELECT * FROM players'


# ============================================================================
# Summaries and exports
# ============================================================================

class TestReporting:

    def test_summary_groups_endpoints(self, monitor):
        monitor.track_api_request('GET', '/api/players', 100.0, 200)
        monitor.track_api_request('GET', '/api/players', 300.0, 200)
        monitor.track_api_request('POST', '/api/teams', 50.0, 201)

        summary = monitor.get_performance_summary('1h')

        assert summary['api']['count'] == 3
        assert summary['api']['endpoints'][0] == {
            'endpoint': 'GET /api/players',
            'count': 2,
            'average_response_time': 200.0,
        }

    def test_malformed_timeframe_falls_back_to_one_hour(self, monitor):
        assert monitor.get_performance_summary('yesterday')['timeframe'] == '1h'
        assert monitor.get_performance_summary('15m')['timeframe'] == '15m'

    def test_prometheus_export(self, monitor, registry):
        monitor.track_api_request('GET', '/', 20.0, 200)
        registry.record(MetricCategory.SYSTEM, system_sample(memory_percent=42.0))

        text = monitor.export_metrics('prometheus')

        assert 'lfa_api_requests_total 1.0' in text
        assert 'lfa_memory_usage_percent 42.0' in text

    def test_json_export(self, monitor):
        exported = monitor.export_metrics('json')

        assert set(exported) == {'timestamp', 'summary', 'health'}

    def test_unknown_export_format(self, monitor):
        with pytest.raises(ValueError):
            monitor.export_metrics('xml')

    def test_cleanup_drops_expired_records(self, monitor, clock):
        monitor.track_api_request('GET', '/', 20.0, 200)
        clock.advance(hours=25)

        assert monitor.clean_old_metrics() == 1

    def test_start_and_stop_manage_jobs(self, monitor):
        scheduler = Mock()

        monitor.start(scheduler)
        monitor.stop(scheduler)

        assert scheduler.add_interval_job.call_count == 3
        assert scheduler.remove_job.call_count == 3
        assert monitor.is_collecting is False
