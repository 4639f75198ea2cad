"""Time helpers shared by the monitoring services."""

import re
from datetime import datetime, timedelta, timezone

_TIMEFRAME_PATTERN = re.compile(r'^(\d+)([mhd])$')
_TIMEFRAME_UNITS = {'m': 'minutes', 'h': 'hours', 'd': 'days'}


def utc_now() -> datetime:
  return datetime.now(timezone.utc)


def parse_timeframe(timeframe: str | None, default: timedelta = timedelta(hours=1)) -> timedelta:
  """Parse a lookback window such as '15m', '1h' or '7d'.

  Args:
      timeframe: Window string; anything that does not match falls back to the default
      default: Window used for missing or malformed input

  Returns:
      The window as a timedelta
  """
  match = _TIMEFRAME_PATTERN.match(timeframe or '')
  if not match or int(match.group(1)) == 0:
    return default
  value, unit = match.groups()
  return timedelta(**{_TIMEFRAME_UNITS[unit]: int(value)})


def format_duration(seconds: float) -> str:
  """Human readable duration: '45s', '3m 12s', '2h 5m', '1d 3h'."""
  seconds = int(max(seconds, 0))
  days, remainder = divmod(seconds, 86400)
  hours, remainder = divmod(remainder, 3600)
  minutes, secs = divmod(remainder, 60)
  if days:
    return f'{days}d {hours}h'
  if hours:
    return f'{hours}h {minutes}m'
  if minutes:
    return f'{minutes}m {secs}s'
  return f'{secs}s'


def format_uptime(seconds: float) -> str:
  """Process uptime as 'Xd Yh Zm'."""
  seconds = int(max(seconds, 0))
  days, remainder = divmod(seconds, 86400)
  hours, remainder = divmod(remainder, 3600)
  minutes = remainder // 60
  return f'{days}d {hours}h {minutes}m'


def filename_timestamp(moment: datetime | None = None) -> str:
  """ISO 8601 timestamp safe for file names (':' and '.' replaced by '-')."""
  moment = moment or utc_now()
  return moment.strftime('%Y-%m-%dT%H-%M-%S-%f')[:-3] + 'Z'
