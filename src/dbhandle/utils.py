"""Low-level connection utilities with no internal dependencies.

These utilities work with any connection type (SQLAlchemy pooled
connections, raw DBAPI connections, wrappers exposing a ``dialect``)
and import nothing from other dbhandle modules, making them safe to
import without circular dependency concerns.
"""
import logging
from typing import Any

logger = logging.getLogger(__name__)


def get_dialect_name(obj: Any) -> str:
    """Get dialect name for a database connection or engine.
    """
    if hasattr(obj, 'dialect'):
        dialect = obj.dialect
        if isinstance(dialect, str):
            return dialect.lower()
        return str(dialect.name).lower()

    if hasattr(obj, 'engine') and hasattr(obj.engine, 'dialect'):
        return str(obj.engine.dialect.name).lower()

    if hasattr(obj, 'driver_connection') and obj.driver_connection is not obj:
        return get_dialect_name(obj.driver_connection)

    if hasattr(obj, 'dbapi_connection') and obj.dbapi_connection is not obj:
        return get_dialect_name(obj.dbapi_connection)

    type_name = f'{type(obj).__module__}.{type(obj).__name__}'
    if 'psycopg' in type_name:
        return 'postgresql'
    if 'sqlite3' in type_name:
        return 'sqlite'

    raise AttributeError(f'Cannot determine dialect for {type(obj)}')


def get_raw_connection(connection: Any) -> Any:
    """Extract the raw DBAPI connection from a wrapper."""
    raw_conn = connection
    while hasattr(raw_conn, 'driver_connection') and raw_conn.driver_connection is not raw_conn:
        raw_conn = raw_conn.driver_connection
    return raw_conn


def close_quietly(resource: Any, what: str = 'resource') -> None:
    """Close a cursor or connection, logging instead of raising on failure.
    """
    if resource is None:
        return
    try:
        resource.close()
    except Exception as e:
        logger.debug(f'Could not close {what}: {e}')
