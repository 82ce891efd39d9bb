"""
SQLite-specific strategy implementation.

This module implements the DialectStrategy interface for the standard
library sqlite3 driver. It handles SQLite's peculiarities such as:
- qmark placeholders
- explicit BEGIN/COMMIT with the driver's implicit transactions disabled
- only two isolation behaviors (SERIALIZABLE, or READ UNCOMMITTED via PRAGMA)
- cancellation through Connection.interrupt()
- RETURNING from SQLite 3.35 on
"""
import datetime
import decimal
import json
import logging
import sqlite3
from typing import TYPE_CHECKING, Any

import dateutil.parser
import sqlalchemy as sa
from dbhandle.strategy.base import DialectStrategy, TransactionIsolationLevel
from dbhandle.strategy.base import register_strategy
from sqlalchemy.pool import StaticPool

if TYPE_CHECKING:
    from dbhandle.options import DatabaseOptions

logger = logging.getLogger(__name__)


def adapt_date_iso(val: datetime.date) -> str:
    """Adapt date to ISO 8601 date."""
    return val.isoformat()


def adapt_datetime_iso(val: datetime.datetime) -> str:
    """Adapt datetime to ISO 8601 datetime."""
    return val.isoformat()


def adapt_decimal(val: decimal.Decimal) -> str:
    return str(val)


def convert_date(val: bytes) -> datetime.date:
    """Convert ISO 8601 date string to date object."""
    return dateutil.parser.isoparse(val.decode()).date()


def convert_datetime(val: bytes) -> datetime.datetime:
    """Convert ISO 8601 datetime string to datetime object."""
    return dateutil.parser.isoparse(val.decode())


@register_strategy('sqlite')
class SQLiteStrategy(DialectStrategy):
    """SQLite-specific operations.
    """

    paramstyle = 'qmark'

    @property
    def dialect_name(self) -> str:
        """Return the dialect identifier for SQLite."""
        return 'sqlite'

    def build_connection_url(self, options: 'DatabaseOptions') -> sa.URL:
        """Build the SQLAlchemy connection URL for SQLite."""
        return sa.URL.create(drivername='sqlite', database=options.database)

    def get_engine_kwargs(self, options: 'DatabaseOptions') -> dict[str, Any]:
        """Return SQLAlchemy create_engine kwargs for SQLite.

        An in-memory database lives as long as its connection, so every
        handle shares one connection through a StaticPool.
        """
        kwargs: dict[str, Any] = {
            'connect_args': {
                'detect_types': sqlite3.PARSE_DECLTYPES | sqlite3.PARSE_COLNAMES,
                'isolation_level': None,
            }
        }
        if options.database == ':memory:':
            kwargs['connect_args']['check_same_thread'] = False
            kwargs['poolclass'] = StaticPool
        return kwargs

    def configure_connection(self, conn: Any) -> None:
        """Disable the driver's implicit transactions and register converters.

        Transactions are started explicitly by the transaction handler, so
        the sqlite3 module must not open them on its own before DML.
        """
        raw_conn = self.raw(conn)
        if getattr(raw_conn, 'isolation_level', None) is not None:
            raw_conn.isolation_level = None
        sqlite3.register_adapter(datetime.date, adapt_date_iso)
        sqlite3.register_adapter(datetime.datetime, adapt_datetime_iso)
        sqlite3.register_adapter(decimal.Decimal, adapt_decimal)
        sqlite3.register_converter('date', convert_date)
        sqlite3.register_converter('datetime', convert_datetime)

    def adapt_value(self, value: Any) -> Any:
        """SQLite has no native JSON binding; dicts and lists go in as JSON text."""
        if isinstance(value, (dict, list)):
            return json.dumps(value)
        return value

    def get_isolation_level(self, conn: Any) -> TransactionIsolationLevel:
        read_uncommitted = self._select_scalar_raw(conn, 'PRAGMA read_uncommitted')
        if read_uncommitted:
            return TransactionIsolationLevel.READ_UNCOMMITTED
        return TransactionIsolationLevel.SERIALIZABLE

    def set_isolation_level(self, conn: Any, level: TransactionIsolationLevel) -> None:
        if level is TransactionIsolationLevel.UNKNOWN:
            return
        enabled = 1 if level is TransactionIsolationLevel.READ_UNCOMMITTED else 0
        self._execute_raw(conn, f'PRAGMA read_uncommitted = {enabled}')
        logger.debug(f'SQLite isolation set to {level.value}')

    def cancel(self, conn: Any) -> None:
        raw_conn = self.raw(conn)
        if hasattr(raw_conn, 'interrupt'):
            raw_conn.interrupt()

    @property
    def supports_returning(self) -> bool:
        return sqlite3.sqlite_version_info >= (3, 35, 0)
