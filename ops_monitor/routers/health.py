"""Health endpoints.

Status codes reflect severity: 200 for healthy or degraded, 503 for critical
or not ready. Bodies never carry stack traces.
"""

import asyncio
import logging

from fastapi import APIRouter, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from ops_monitor.lib.database import check_database_connection
from ops_monitor.lib.timeutils import utc_now

logger = logging.getLogger(__name__)

router = APIRouter(prefix='/health', tags=['health'])


def get_stack(request: Request):
  return request.app.state.monitoring


def _unavailable(message: str) -> JSONResponse:
  return JSONResponse(
    status_code=503,
    content={'status': 'error', 'error': message, 'timestamp': utc_now().isoformat()},
  )


@router.get('')
async def basic_health(request: Request):
  """Liveness summary for load balancers: status, uptime and memory."""
  return get_stack(request).request_monitor.get_basic_health()


@router.get('/detailed')
async def detailed_health(request: Request):
  """Performance, uptime, backup, logging and database status in one payload.

  Returns 503 when the performance status is critical.
  """
  stack = get_stack(request)
  try:
    performance = stack.performance.get_health_status()
    database = await asyncio.to_thread(check_database_connection, stack.engine)
    content = {
      'status': performance['status'],
      'timestamp': utc_now().isoformat(),
      'uptime': stack.request_monitor.get_basic_health()['uptime'],
      'metrics': stack.request_monitor.get_metrics(),
      'services': {
        'performance': performance,
        'uptime': stack.uptime.get_system_status(),
        'backup': stack.backup.get_service_status(),
        'logging': stack.centralized_logger.get_logging_stats(),
        'database': database,
        'alerting': stack.alerting.get_alerting_status(),
      },
    }
  except Exception as e:
    logger.error(f'Detailed health check failed: {e}', exc_info=True)
    return _unavailable('Health check failed')

  status_code = 503 if performance['status'] == 'critical' else 200
  return JSONResponse(status_code=status_code, content=jsonable_encoder(content))


@router.get('/database')
async def database_health(request: Request):
  """Database connectivity and latency."""
  result = await asyncio.to_thread(check_database_connection, get_stack(request).engine)
  status_code = 200 if result['status'] == 'healthy' else 503
  if result['error']:
    result = {**result, 'error': 'Database connection failed'}
  return JSONResponse(status_code=status_code, content={**result, 'timestamp': utc_now().isoformat()})


@router.get('/ready')
async def readiness(request: Request):
  """Readiness probe: fails when the database is unreachable or performance is critical."""
  stack = get_stack(request)
  database = await asyncio.to_thread(check_database_connection, stack.engine)
  performance = stack.performance.get_health_status()

  checks = [
    {'name': 'database', 'status': 'pass' if database['status'] == 'healthy' else 'fail'},
    {'name': 'performance', 'status': 'fail' if performance['status'] == 'critical' else 'pass'},
  ]
  failing = [check for check in checks if check['status'] == 'fail']
  if failing:
    return JSONResponse(
      status_code=503,
      content={'status': 'not_ready', 'timestamp': utc_now().isoformat(), 'checks': checks},
    )
  return {'status': 'ready', 'timestamp': utc_now().isoformat(), 'checks': checks}


@router.get('/live')
async def liveness(request: Request):
  """Liveness probe, always 200 while the process serves requests."""
  return {
    'status': 'alive',
    'timestamp': utc_now().isoformat(),
    'uptime': get_stack(request).request_monitor.get_basic_health()['uptime'],
  }


@router.get('/performance')
async def performance_summary(request: Request, timeframe: str = Query('1h', description='Lookback window, e.g. 15m, 1h, 7d')):
  """Performance summary for a lookback window; malformed windows mean 1h."""
  stack = get_stack(request)
  try:
    content = {
      'health': stack.performance.get_health_status(),
      'summary': stack.performance.get_performance_summary(timeframe),
      'queries': stack.performance.get_query_metrics(),
    }
  except Exception as e:
    logger.error(f'Performance summary failed: {e}', exc_info=True)
    return _unavailable('Performance summary unavailable')
  return jsonable_encoder(content)


@router.get('/uptime')
async def uptime_status(request: Request):
  stack = get_stack(request)
  return jsonable_encoder({
    'system': stack.uptime.get_system_status(),
    'services': stack.uptime.get_all_services_status(),
    'incidents': stack.uptime.get_recent_incidents(),
  })


@router.get('/backup')
async def backup_status(request: Request):
  stack = get_stack(request)
  try:
    backups = await asyncio.to_thread(stack.backup.list_backups)
  except OSError as e:
    logger.error(f'Listing backups failed: {e}')
    return _unavailable('Backup status unavailable')
  return jsonable_encoder({
    **stack.backup.get_service_status(),
    'backups': backups[:10],
  })


@router.get('/logging')
async def logging_status(request: Request):
  return jsonable_encoder(get_stack(request).centralized_logger.get_logging_stats())
