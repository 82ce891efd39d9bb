"""
PostgreSQL-specific strategy implementation.

This module implements the DialectStrategy interface for psycopg (v3).
It handles PostgreSQL's specifics such as:
- format (%s) placeholders, with literal percent signs escaped
- autocommit connections with explicit BEGIN/COMMIT
- session-level default isolation level
- server-side cancellation through Connection.cancel()
- RETURNING for generated keys
"""
import logging
from typing import TYPE_CHECKING, Any

import sqlalchemy as sa
from dbhandle.strategy.base import DialectStrategy, TransactionIsolationLevel
from dbhandle.strategy.base import register_strategy

if TYPE_CHECKING:
    from dbhandle.options import DatabaseOptions

logger = logging.getLogger(__name__)


@register_strategy('postgresql')
class PostgresStrategy(DialectStrategy):
    """PostgreSQL-specific operations.
    """

    paramstyle = 'format'

    @property
    def dialect_name(self) -> str:
        """Return the dialect identifier for PostgreSQL."""
        return 'postgresql'

    def build_connection_url(self, options: 'DatabaseOptions') -> sa.URL:
        """Build the SQLAlchemy connection URL for PostgreSQL."""
        query = {'application_name': options.appname}
        if options.timeout:
            query['connect_timeout'] = str(options.timeout)

        return sa.URL.create(
            drivername='postgresql+psycopg',
            username=options.username,
            password=options.password,
            host=options.hostname,
            port=options.port or None,
            database=options.database,
            query=query
        )

    def configure_connection(self, conn: Any) -> None:
        """Run in autocommit so BEGIN/COMMIT are issued explicitly."""
        raw_conn = self.raw(conn)
        if hasattr(raw_conn, 'autocommit') and not raw_conn.autocommit:
            raw_conn.autocommit = True

    def get_isolation_level(self, conn: Any) -> TransactionIsolationLevel:
        value = self._select_scalar_raw(conn, 'SHOW default_transaction_isolation')
        return TransactionIsolationLevel.parse(value)

    def set_isolation_level(self, conn: Any, level: TransactionIsolationLevel) -> None:
        if level is TransactionIsolationLevel.UNKNOWN:
            return
        self._execute_raw(
            conn, f'SET SESSION CHARACTERISTICS AS TRANSACTION ISOLATION LEVEL {level.value}')
        logger.debug(f'PostgreSQL isolation set to {level.value}')

    def cancel(self, conn: Any) -> None:
        raw_conn = self.raw(conn)
        if hasattr(raw_conn, 'cancel'):
            raw_conn.cancel()

    @property
    def supports_returning(self) -> bool:
        return True

    @classmethod
    def validate_options(cls, options: 'DatabaseOptions') -> None:
        if not options.hostname or not options.database:
            raise ValueError('postgresql requires hostname and database')
