"""FastAPI application exposing the monitoring core."""

import os
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from ops_monitor.lib.config import MonitoringConfig
from ops_monitor.lib.distributed_tracing import reset_correlation_id, set_correlation_id
from ops_monitor.lib.metrics_middleware import metrics_collection_middleware
from ops_monitor.lib.structured_logger import StructuredLogger, log_request
from ops_monitor.routers import router
from ops_monitor.services.monitoring_stack import MonitoringStack, build_monitoring_stack

logger = StructuredLogger(__name__)


# Load environment variables from .env.local if it exists
def load_env_file(filepath: str) -> None:
  """Load environment variables from a file, keeping values already set."""
  if Path(filepath).exists():
    with open(filepath) as f:
      for line in f:
        line = line.strip()
        if line and not line.startswith('#'):
          key, _, value = line.partition('=')
          if key and value:
            os.environ.setdefault(key.strip(), value.strip())


def create_app(
  config: Optional[MonitoringConfig] = None,
  stack: Optional[MonitoringStack] = None,
  run_jobs: bool = True,
) -> FastAPI:
  """Build the monitoring API.

  Args:
      config: Monitoring configuration; read from the environment when omitted
      stack: Pre-wired stack (tests); built from the config at startup when omitted
      run_jobs: Start the periodic jobs of the stack

  Returns:
      Configured FastAPI application

  Raises:
      ConfigurationError: If the environment holds an invalid setting
  """
  if stack is not None:
    config = stack.config
  elif config is None:
    config = MonitoringConfig.from_env()

  @asynccontextmanager
  async def lifespan(app: FastAPI):
    """Start the monitoring stack and stop it on shutdown."""
    monitoring = stack or build_monitoring_stack(config)
    monitoring.start(run_jobs=run_jobs)
    app.state.monitoring = monitoring
    logger.log_event('monitoring.started', context={'environment': config.environment, 'jobs': run_jobs})
    try:
      yield
    finally:
      await monitoring.stop()
      logger.log_event('monitoring.stopped')

  app = FastAPI(
    title='Lion Football Academy Monitoring API',
    description='Health, uptime, backup and logging status of the academy platform',
    version='0.1.0',
    lifespan=lifespan,
  )

  app.add_middleware(
    CORSMiddleware,
    allow_origins=config.cors_origins,
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*'],
  )

  # Registered first so it runs inside the correlation id middleware
  app.middleware('http')(metrics_collection_middleware)

  @app.middleware('http')
  async def add_correlation_id(request: Request, call_next):
    """Inject the correlation ID into the request context.

    - Extracts X-Correlation-ID header or generates new UUID
    - Sets correlation ID in context for logging
    - Adds X-Correlation-ID to response headers
    - Logs request with timing
    """
    correlation_id = request.headers.get('X-Correlation-ID') or str(uuid4())
    token = set_correlation_id(correlation_id)
    request.state.correlation_id = correlation_id

    start_time = time.time()
    try:
      response = await call_next(request)
      response.headers['X-Correlation-ID'] = correlation_id

      if request.url.path not in ('/health', '/metrics'):
        log_request(
          endpoint=request.url.path,
          method=request.method,
          status_code=response.status_code,
          duration_ms=(time.time() - start_time) * 1000,
          user_id=getattr(request.state, 'user_id', None),
        )
      return response
    finally:
      reset_correlation_id(token)

  @app.get('/metrics')
  async def metrics_root():
    """Prometheus metrics endpoint for monitoring systems."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

  # ============================================================================
  # EXCEPTION HANDLERS
  # ============================================================================

  @app.exception_handler(Exception)
  async def unhandled_exception_handler(request: Request, exc: Exception):
    """Record unhandled errors and answer with a generic 500.

    The error message is included only in development.
    """
    correlation_id = getattr(request.state, 'correlation_id', None)
    monitoring = getattr(request.app.state, 'monitoring', None)
    if monitoring is not None:
      monitoring.request_monitor.record_error(exc, {
        'path': request.url.path,
        'method': request.method,
        'status_code': 500,
        'correlation_id': correlation_id,
      })
    else:
      logger.error(f'Unhandled error on {request.method} {request.url.path}: {exc}')

    content = {'error': 'Internal server error', 'correlation_id': correlation_id}
    if config.environment == 'development':
      content['message'] = str(exc)
    return JSONResponse(status_code=500, content=content)

  app.include_router(router)

  return app


# Load .env files
load_env_file('.env')
load_env_file('.env.local')

app = create_app()
