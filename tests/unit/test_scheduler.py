"""
Unit tests for the job scheduler wrapper and cron helpers.
"""

from datetime import datetime, timezone

import pytest

from ops_monitor.lib.scheduler import JobScheduler, cron_trigger, next_cron_time


async def noop():
    return None


class TestJobScheduler:

    def test_jobs_can_be_added_replaced_and_removed(self):
        scheduler = JobScheduler()

        scheduler.add_interval_job('uptime.check', noop, 60)
        scheduler.add_interval_job('uptime.check', noop, 30)
        scheduler.add_cron_job('backup.daily', noop, '0 2 * * *')

        assert sorted(scheduler.get_job_ids()) == ['backup.daily', 'uptime.check']
        assert scheduler.remove_job('backup.daily') is True
        assert scheduler.remove_job('backup.daily') is False

    def test_invalid_cron_expression(self):
        with pytest.raises(ValueError):
            JobScheduler().add_cron_job('backup.daily', noop, 'at two')

    def test_unknown_job_has_no_next_run(self):
        assert JobScheduler().next_run_time('missing') is None

    @pytest.mark.asyncio
    async def test_start_and_shutdown(self):
        scheduler = JobScheduler()
        scheduler.add_interval_job('performance.system', noop, 30)

        scheduler.start()
        assert scheduler.running is True
        assert scheduler.next_run_time('performance.system') is not None

        scheduler.shutdown()
        assert scheduler.running is False


class TestNextCronTime:

    def test_daily_schedule(self):
        now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

        assert next_cron_time('0 2 * * *', now) == datetime(2024, 5, 2, 2, 0, tzinfo=timezone.utc)

    def test_weekly_schedule_fires_on_sunday(self):
        now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

        assert next_cron_time('0 3 * * 0', now).weekday() == 6

    def test_seven_is_also_sunday(self):
        now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

        assert next_cron_time('0 3 * * 7', now) == datetime(2024, 5, 5, 3, 0, tzinfo=timezone.utc)

    def test_monthly_schedule(self):
        now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

        assert next_cron_time('0 4 1 * *', now) == datetime(2024, 6, 1, 4, 0, tzinfo=timezone.utc)


class TestCronTrigger:

    def test_weekday_range_counts_from_sunday(self):
        now = datetime(2024, 5, 4, 12, 0, tzinfo=timezone.utc)  # Saturday

        fire = cron_trigger('0 9 * * 1-5').get_next_fire_time(None, now)

        assert fire == datetime(2024, 5, 6, 9, 0, tzinfo=timezone.utc)

    def test_names_pass_through(self):
        now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

        assert cron_trigger('0 3 * * sun').get_next_fire_time(None, now).weekday() == 6

    @pytest.mark.parametrize('expression', ['0 3 * *', '0 3 * * 8'])
    def test_invalid_expressions(self, expression):
        with pytest.raises(ValueError):
            cron_trigger(expression)
