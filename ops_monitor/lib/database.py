"""Academy Database Connection Module

Provides the SQLAlchemy engine used by health probes, database maintenance
and backup verification. The academy's own tables are owned elsewhere; this
module only needs connectivity.
"""

import logging
import time
from typing import Any, Dict, List

from sqlalchemy import Engine, create_engine, inspect, text
from sqlalchemy.pool import QueuePool

from ops_monitor.lib.config import DatabaseConfig

logger = logging.getLogger(__name__)


def create_database_engine(
    config: DatabaseConfig,
    pool_size: int = 5,
    max_overflow: int = 5,
    pool_pre_ping: bool = True,
) -> Engine:
    """Create a SQLAlchemy engine for the academy database.

    Server databases get a QueuePool; sqlite uses SQLAlchemy's default pool.

    Args:
        config: Database connection settings
        pool_size: Number of connections to maintain in pool
        max_overflow: Maximum overflow connections beyond pool_size
        pool_pre_ping: Test connections before use to detect stale connections

    Returns:
        Configured SQLAlchemy engine
    """
    if config.type == 'sqlite':
        return create_engine(config.url)

    return create_engine(
        config.url,
        poolclass=QueuePool,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=pool_pre_ping,
        pool_recycle=3600,
    )


def check_database_connection(engine: Engine) -> Dict[str, Any]:
    """Run `SELECT 1` and report the outcome.

    Never raises; connection failures are returned as an unhealthy result.

    Returns:
        Dictionary with status ('healthy'|'unhealthy'), response_time_ms and error
    """
    start = time.perf_counter()
    try:
        with engine.connect() as conn:
            conn.execute(text('SELECT 1'))
    except Exception as e:
        logger.warning(f'Database connectivity check failed: {e}')
        return {
            'status': 'unhealthy',
            'response_time_ms': round((time.perf_counter() - start) * 1000, 2),
            'error': str(e),
        }

    return {
        'status': 'healthy',
        'response_time_ms': round((time.perf_counter() - start) * 1000, 2),
        'error': None,
    }


def list_tables(engine: Engine) -> List[str]:
    return inspect(engine).get_table_names()


def run_maintenance_statements(engine: Engine) -> List[str]:
    """Run the dialect's vacuum/analyze statements.

    Returns:
        The statements that were executed

    Raises:
        Exception: Any database error, left for the maintenance job to record
    """
    dialect = engine.dialect.name
    if dialect == 'sqlite':
        statements = ['VACUUM', 'ANALYZE']
    elif dialect == 'postgresql':
        statements = ['VACUUM ANALYZE']
    elif dialect == 'mysql':
        statements = [f'OPTIMIZE TABLE `{table}`' for table in list_tables(engine)]
    else:
        statements = []

    # VACUUM cannot run inside a transaction block
    with engine.connect().execution_options(isolation_level='AUTOCOMMIT') as conn:
        for statement in statements:
            conn.execute(text(statement))
            logger.info(f'Executed maintenance statement: {statement}')
    return statements
