"""Correlation IDs for requests and background jobs.

Stores the active correlation id in a ContextVar so it follows the request
(or scheduled job) through every await.
"""

import contextvars
from contextlib import contextmanager
from typing import Iterator
from uuid import uuid4

DEFAULT_CORRELATION_ID = 'no-request-id'

correlation_id: contextvars.ContextVar[str] = contextvars.ContextVar(
  'correlation_id', default=DEFAULT_CORRELATION_ID
)


def get_correlation_id() -> str:
  """Return the correlation id of the current context.

  Returns:
      The active id, or 'no-request-id' outside a request or job
  """
  return correlation_id.get()


def has_correlation_id() -> bool:
  """Whether a real correlation id is set in the current context."""
  return correlation_id.get() != DEFAULT_CORRELATION_ID


def set_correlation_id(value: str) -> contextvars.Token:
  """Set the correlation id for the current context.

  Args:
      value: Id taken from the X-Correlation-ID header or generated

  Returns:
      Token usable with reset_correlation_id to restore the previous value
  """
  return correlation_id.set(value)


def generate_correlation_id(prefix: str | None = None) -> str:
  """Generate a new correlation id and make it current.

  Args:
      prefix: Optional prefix, e.g. the name of a scheduled job

  Returns:
      The generated id
  """
  value = str(uuid4())
  if prefix:
    value = f'{prefix}-{value}'
  set_correlation_id(value)
  return value


def reset_correlation_id(token: contextvars.Token | None = None) -> None:
  """Restore the previous correlation id, or the default when no token is given."""
  if token is not None:
    correlation_id.reset(token)
  else:
    correlation_id.set(DEFAULT_CORRELATION_ID)


@contextmanager
def correlation_scope(prefix: str) -> Iterator[str]:
  """Run a block of background work under its own correlation id.

  Usage:
      with correlation_scope('backup.daily'):
          await scheduler.perform_database_backup('daily')
  """
  token = correlation_id.set(f'{prefix}-{uuid4()}')
  try:
    yield correlation_id.get()
  finally:
    correlation_id.reset(token)
