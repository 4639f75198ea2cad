"""APScheduler wrapper shared by every periodic component."""

import logging
import re
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional

from apscheduler.job import Job
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)


_WEEKDAY_NAMES = ('sun', 'mon', 'tue', 'wed', 'thu', 'fri', 'sat')


def _crontab_weekdays(field: str) -> str:
    """Rewrite a numeric crontab day-of-week field as weekday names.

    Crontab counts from Sunday (0 or 7) while APScheduler counts from Monday.
    """
    if field == '*' or not re.fullmatch(r'[\d,\-/*]+', field):
        return field
    days = set()
    for part in field.split(','):
        base, _, step = part.partition('/')
        if base == '*':
            first, last = 0, 6
        else:
            start, _, end = base.partition('-')
            first = int(start)
            last = int(end) if end else (6 if step else first)
        days.update(range(first, last + 1, int(step or 1)))
    if not days or max(days) > 7:
        raise ValueError(f'Invalid day of week field: {field!r}')
    return ','.join(_WEEKDAY_NAMES[day] for day in sorted({day % 7 for day in days}))


def cron_trigger(expression: str, tz: str = 'UTC') -> CronTrigger:
    """Build a CronTrigger from a five-field crontab expression.

    Raises:
        ValueError: If the expression cannot be parsed
    """
    fields = expression.split()
    if len(fields) != 5:
        raise ValueError(f'Wrong number of fields in {expression!r}; expected 5')
    minute, hour, day, month, day_of_week = fields
    return CronTrigger(
        minute=minute,
        hour=hour,
        day=day,
        month=month,
        day_of_week=_crontab_weekdays(day_of_week),
        timezone=tz,
    )


def next_cron_time(expression: str, now: Optional[datetime] = None, tz: str = 'UTC') -> Optional[datetime]:
    """Next fire time of a crontab expression, without a running scheduler.

    Args:
        expression: Five-field crontab expression
        now: Reference time (defaults to the current time)
        tz: Timezone the expression is evaluated in

    Returns:
        The next fire time, or None when the expression never fires again
    """
    trigger = cron_trigger(expression, tz)
    return trigger.get_next_fire_time(None, now or datetime.now(timezone.utc))


class JobScheduler:
    """Owns the asyncio scheduler that drives samplers, probes and cron jobs.

    Jobs run on the event loop. `coalesce` folds missed runs into one and
    `max_instances=1` keeps a slow job from overlapping its next tick.
    """

    def __init__(self, tz: str = 'UTC', scheduler: Optional[AsyncIOScheduler] = None):
        self.timezone = tz
        self.scheduler = scheduler or AsyncIOScheduler(
            timezone=tz,
            job_defaults={
                'coalesce': True,
                'max_instances': 1,
                'misfire_grace_time': 300,
            },
        )

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def start(self) -> None:
        """Start the scheduler. Must be called with a running event loop."""
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info('Scheduler started')

    def shutdown(self, wait: bool = False) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
            logger.info('Scheduler shut down')

    def add_interval_job(
        self,
        job_id: str,
        func: Callable[..., Any],
        seconds: float,
        run_immediately: bool = False,
    ) -> Job:
        """Register (or replace) a job that fires every `seconds`.

        Args:
            job_id: Unique job id
            func: Callable or coroutine function to run
            seconds: Interval length
            run_immediately: Fire once as soon as the scheduler starts

        Returns:
            The APScheduler job
        """
        kwargs = {}
        if run_immediately:
            kwargs['next_run_time'] = datetime.now(timezone.utc)
        job = self.scheduler.add_job(
            func,
            trigger=IntervalTrigger(seconds=seconds, timezone=self.timezone),
            id=job_id,
            name=job_id,
            replace_existing=True,
            **kwargs,
        )
        logger.debug(f'Added interval job {job_id} every {seconds}s')
        return job

    def add_cron_job(self, job_id: str, func: Callable[..., Any], expression: str) -> Job:
        """Register (or replace) a job driven by a crontab expression.

        Raises:
            ValueError: If the expression is not a valid crontab
        """
        job = self.scheduler.add_job(
            func,
            trigger=cron_trigger(expression, self.timezone),
            id=job_id,
            name=job_id,
            replace_existing=True,
        )
        logger.debug(f'Added cron job {job_id} ({expression})')
        return job

    def remove_job(self, job_id: str) -> bool:
        """Remove a job; returns False when it was not registered."""
        try:
            self.scheduler.remove_job(job_id)
        except JobLookupError:
            return False
        logger.debug(f'Removed job {job_id}')
        return True

    def get_job_ids(self) -> List[str]:
        return [job.id for job in self.scheduler.get_jobs()]

    def next_run_time(self, job_id: str) -> Optional[datetime]:
        job = self.scheduler.get_job(job_id)
        if job is None:
            return None
        # Jobs added before start() have no computed run time yet
        return getattr(job, 'next_run_time', None)
