"""
FastAPI middleware feeding the inbound recording API.

Every request outside the health and metrics surface is timed and handed to
RequestMonitor.record_request. Recording failures never affect the response.
"""

import logging
import time

from fastapi import Request

from ops_monitor.lib.metrics import record_request_duration

logger = logging.getLogger(__name__)

EXCLUDED_PATHS = ('/metrics', '/ping')
EXCLUDED_PREFIXES = ('/health',)


def is_excluded(path: str) -> bool:
  return path in EXCLUDED_PATHS or any(path.startswith(prefix) for prefix in EXCLUDED_PREFIXES)


async def metrics_collection_middleware(request: Request, call_next):
  """
  Time the request and record it through the monitoring stack.

  Requests that raise are recorded as 500 before the exception continues to
  the application's exception handler.

  Args:
      request: FastAPI request object
      call_next: Next middleware or endpoint in chain

  Returns:
      Response from the endpoint
  """
  stack = getattr(request.app.state, 'monitoring', None)
  endpoint = request.url.path
  if stack is None or is_excluded(endpoint):
    return await call_next(request)

  monitor = stack.request_monitor
  monitor.request_started()
  start_time = time.time()
  status_code = 500
  try:
    response = await call_next(request)
    status_code = response.status_code
    return response
  finally:
    duration_seconds = time.time() - start_time
    try:
      record_request_duration(
        endpoint=endpoint,
        method=request.method,
        status=status_code,
        duration_seconds=duration_seconds,
      )
      monitor.record_request(
        request.method,
        endpoint,
        duration_seconds * 1000,
        status_code,
        user_id=getattr(request.state, 'user_id', None),
        user_agent=request.headers.get('user-agent'),
        ip=request.client.host if request.client else None,
      )
    except Exception as e:
      logger.error(f'Failed to record request metrics for {request.method} {endpoint}: {e}')
