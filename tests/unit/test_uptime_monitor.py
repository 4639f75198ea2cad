"""
Unit tests for UptimeMonitor.

Covers the incident state machine, uptime percentages, HTTP retries,
internal checks and system status aggregation.
"""

from unittest.mock import Mock

import httpx
import pytest

from ops_monitor.lib.config import ConfigurationError, UptimeConfig
from ops_monitor.models.metric_record import MetricCategory
from ops_monitor.models.service_status import (
    CheckOutcome,
    CheckResult,
    IncidentStatus,
    ServiceCheckTarget,
    ServiceState,
    ServiceType,
)
from ops_monitor.services.uptime_monitor import UptimeMonitor, default_targets


@pytest.fixture
def uptime(registry, alerting, clock):
    return UptimeMonitor(UptimeConfig(retry_delay=0), registry=registry, alerting=alerting, clock=clock)


def internal_target(service_id='scheduler', critical=True, check=None):
    return ServiceCheckTarget(
        id=service_id,
        name=service_id.title(),
        type=ServiceType.INTERNAL,
        check=check or (lambda: CheckOutcome(status=ServiceState.UP)),
        critical=critical,
    )


def result(service_id, state, clock, error=None):
    return CheckResult(service_id=service_id, timestamp=clock(), status=state, response_time_ms=10.0, error=error)


async def feed(uptime, service_id, states, clock):
    for state in states:
        clock.advance(minutes=1)
        await uptime.apply_check_result(service_id, result(service_id, state, clock, error='timeout'))


# ============================================================================
# Registration
# ============================================================================

class TestRegistration:

    def test_add_service_from_dict(self, uptime):
        target = uptime.add_service({'id': 'frontend', 'name': 'Frontend', 'url': 'http://frontend.local'})

        assert target.type == ServiceType.HTTP
        assert uptime.get_service_status('frontend')['status']['status'] == 'unknown'

    def test_http_target_without_url_is_rejected(self, uptime):
        with pytest.raises(ConfigurationError):
            uptime.add_service({'id': 'frontend', 'name': 'Frontend'})

    def test_internal_target_without_check_is_rejected(self, uptime):
        with pytest.raises(ConfigurationError):
            uptime.add_service({'id': 'queue', 'name': 'Queue', 'type': 'internal'})

    def test_remove_service(self, uptime):
        uptime.add_service(internal_target())

        assert uptime.remove_service('scheduler') is True
        assert uptime.remove_service('scheduler') is False
        assert uptime.get_service_status('scheduler') is None

    def test_default_targets_follow_config(self):
        config = UptimeConfig(backend_url='http://api.local/', frontend_url='http://app.local')

        targets = default_targets(config, engine=Mock())

        assert [target.id for target in targets] == ['backend_health', 'frontend', 'database']
        assert targets[0].url == 'http://api.local/health'
        assert targets[1].critical is False


# ============================================================================
# Incident state machine
# ============================================================================

class TestIncidents:

    @pytest.mark.asyncio
    async def test_incident_opens_after_threshold_failures(self, uptime, alerting, clock):
        uptime.add_service(internal_target())

        await feed(uptime, 'scheduler', [ServiceState.DOWN] * 2, clock)
        assert uptime.incidents == []

        await feed(uptime, 'scheduler', [ServiceState.DOWN], clock)

        assert len(uptime.incidents) == 1
        assert uptime.incidents[0].severity == 'critical'
        assert [alert.key for alert in alerting.get_active_alerts()] == ['service_down_scheduler_critical']

    @pytest.mark.asyncio
    async def test_further_failures_do_not_open_more_incidents(self, uptime, clock):
        uptime.add_service(internal_target())

        await feed(uptime, 'scheduler', [ServiceState.DOWN] * 6, clock)

        assert len(uptime.incidents) == 1

    @pytest.mark.asyncio
    async def test_service_stays_down_until_recovery_threshold(self, uptime, clock):
        uptime.add_service(internal_target())
        await feed(uptime, 'scheduler', [ServiceState.DOWN] * 3, clock)

        status = await uptime.apply_check_result('scheduler', result('scheduler', ServiceState.UP, clock))

        assert status.status == ServiceState.DOWN
        assert status.incident is not None

    @pytest.mark.asyncio
    async def test_incident_resolves_after_recovery_threshold(self, uptime, alerting, clock):
        uptime.add_service(internal_target())
        await feed(uptime, 'scheduler', [ServiceState.DOWN] * 3, clock)

        await feed(uptime, 'scheduler', [ServiceState.UP] * 2, clock)

        incident = uptime.incidents[0]
        assert incident.status == IncidentStatus.RESOLVED
        assert incident.duration_seconds == 120.0
        assert uptime.statuses['scheduler'].status == ServiceState.UP
        assert [alert.key for alert in alerting.get_active_alerts()] == ['service_recovered_scheduler_info']

    @pytest.mark.asyncio
    async def test_non_critical_service_opens_warning_incident(self, uptime, alerting, clock):
        uptime.add_service(internal_target('newsletter', critical=False))

        await feed(uptime, 'newsletter', [ServiceState.DOWN] * 3, clock)

        assert uptime.incidents[0].severity == 'warning'

    @pytest.mark.asyncio
    async def test_incident_changes_are_audited(self, registry, clock):
        audit_log = Mock()
        uptime = UptimeMonitor(UptimeConfig(), registry=registry, audit_log=audit_log, clock=clock)
        uptime.add_service(internal_target())

        await feed(uptime, 'scheduler', [ServiceState.DOWN] * 3 + [ServiceState.UP] * 2, clock)

        actions = [call.args[0] for call in audit_log.log_audit.call_args_list]
        assert actions == ['incident_opened', 'incident_resolved']


# ============================================================================
# Uptime and aggregation
# ============================================================================

class TestUptime:

    @pytest.mark.asyncio
    async def test_uptime_is_share_of_up_results(self, uptime, clock):
        uptime.add_service(internal_target())

        await feed(uptime, 'scheduler', [ServiceState.UP] * 4 + [ServiceState.DOWN], clock)

        assert uptime.calculate_uptime('scheduler') == 80.0
        assert uptime.statuses['scheduler'].uptime == 80.0

    def test_uptime_without_history_is_full(self, uptime):
        assert uptime.calculate_uptime('missing') == 100.0

    @pytest.mark.asyncio
    async def test_system_status_levels(self, uptime, clock):
        uptime.add_service(internal_target('database', critical=True))
        uptime.add_service(internal_target('frontend', critical=False))
        assert uptime.get_system_status()['status'] == 'operational'

        await feed(uptime, 'frontend', [ServiceState.DOWN], clock)
        assert uptime.get_system_status()['status'] == 'partial_outage'

        await feed(uptime, 'database', [ServiceState.DOWN], clock)
        status = uptime.get_system_status()
        assert status['status'] == 'major_outage'
        assert status['services'] == {'total': 2, 'up': 0, 'down': 2, 'unknown': 0}

    @pytest.mark.asyncio
    async def test_slow_services_degrade_performance(self, uptime, clock):
        uptime.add_service(internal_target())
        slow = CheckResult(service_id='scheduler', timestamp=clock(), status=ServiceState.UP, response_time_ms=6000.0)

        await uptime.apply_check_result('scheduler', slow)

        assert uptime.get_system_status()['status'] == 'degraded_performance'

    @pytest.mark.asyncio
    async def test_cleanup_drops_old_results(self, uptime, clock):
        uptime.add_service(internal_target())
        await feed(uptime, 'scheduler', [ServiceState.DOWN], clock)
        clock.advance(hours=49)
        await feed(uptime, 'scheduler', [ServiceState.UP], clock)

        assert uptime.cleanup_history() == 1
        assert uptime.calculate_uptime('scheduler') == 100.0


# ============================================================================
# Probes
# ============================================================================

class TestProbes:

    @pytest.mark.asyncio
    async def test_sync_and_async_internal_checks(self, uptime, registry):
        async def async_check():
            return {'status': 'up', 'details': {'queue_depth': 3}}

        uptime.add_service(internal_target('sync'))
        uptime.add_service(internal_target('async', check=async_check))

        status = await uptime.check_all_services()

        assert status['services']['up'] == 2
        assert uptime.get_service_status('async')['history'][0]['details'] == {'queue_depth': 3}
        assert registry.latest(MetricCategory.SYSTEM_STATUS)['status'] == 'operational'

    @pytest.mark.asyncio
    async def test_raising_internal_check_counts_as_down(self, uptime):
        def broken():
            raise RuntimeError('connection refused')

        uptime.add_service(internal_target(check=broken))

        checked = await uptime.check_service('scheduler')

        assert checked.status == ServiceState.DOWN
        assert checked.error == 'connection refused'

    @pytest.mark.asyncio
    async def test_http_check_retries_before_reporting_down(self, clock):
        calls = []
        delays = []

        def handler(request):
            calls.append(request)
            return httpx.Response(503)

        async def fake_sleep(seconds):
            delays.append(seconds)

        uptime = UptimeMonitor(
            UptimeConfig(retry_attempts=3, retry_delay=5),
            transport=httpx.MockTransport(handler),
            sleep=fake_sleep,
            clock=clock,
        )
        uptime.add_service({'id': 'backend_health', 'name': 'Backend API', 'url': 'http://api.local/health'})

        checked = await uptime.check_service('backend_health')

        assert len(calls) == 3
        assert delays == [5, 5]
        assert checked.status == ServiceState.DOWN
        assert checked.status_code == 503
        assert checked.error == 'Unexpected status code: 503'

    @pytest.mark.asyncio
    async def test_http_check_succeeds_on_retry(self, clock):
        responses = iter([httpx.Response(500), httpx.Response(200)])

        async def no_sleep(seconds):
            return None

        uptime = UptimeMonitor(
            UptimeConfig(),
            transport=httpx.MockTransport(lambda request: next(responses)),
            sleep=no_sleep,
            clock=clock,
        )
        uptime.add_service({'id': 'frontend', 'name': 'Frontend', 'url': 'http://app.local'})

        checked = await uptime.check_service('frontend')

        assert checked.status == ServiceState.UP
        assert checked.details == {'attempts': 2}

    @pytest.mark.asyncio
    async def test_connection_errors_are_reported(self, clock):
        def handler(request):
            raise httpx.ConnectError('connection refused', request=request)

        async def no_sleep(seconds):
            return None

        uptime = UptimeMonitor(
            UptimeConfig(retry_attempts=1),
            transport=httpx.MockTransport(handler),
            sleep=no_sleep,
            clock=clock,
        )
        uptime.add_service({'id': 'frontend', 'name': 'Frontend', 'url': 'http://app.local'})

        checked = await uptime.check_service('frontend')

        assert checked.status == ServiceState.DOWN
        assert checked.error == 'connection refused'
        assert checked.status_code is None
