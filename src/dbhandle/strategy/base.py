"""
Base strategy interface for dialect-specific driver behavior.

Defines the abstract base class that all dialect strategies inherit from.
A strategy encapsulates what differs between DB-API drivers (native
placeholder syntax, transaction and savepoint statements, isolation
levels, cancellation, RETURNING support) while handles, statements and
transaction handlers stay driver-agnostic.
"""
from abc import ABC, abstractmethod
from contextlib import contextmanager
from enum import Enum
from typing import TYPE_CHECKING, Any

from dbhandle.exceptions import StatementError
from dbhandle.utils import get_raw_connection

if TYPE_CHECKING:
    from dbhandle.options import DatabaseOptions

# Registry of dialect name -> strategy class
# Defined here to avoid circular imports (concrete strategies import from base)
_STRATEGY_REGISTRY: dict[str, type['DialectStrategy']] = {}


def register_strategy(dialect: str):
    """Decorator to register a strategy class for a dialect.

    Usage:
        @register_strategy('postgresql')
        class PostgresStrategy(DialectStrategy):
            ...
    """
    def decorator(cls: type['DialectStrategy']) -> type['DialectStrategy']:
        _STRATEGY_REGISTRY[dialect] = cls
        return cls
    return decorator


class TransactionIsolationLevel(Enum):
    """Transaction isolation levels understood by the strategies."""
    READ_UNCOMMITTED = 'READ UNCOMMITTED'
    READ_COMMITTED = 'READ COMMITTED'
    REPEATABLE_READ = 'REPEATABLE READ'
    SERIALIZABLE = 'SERIALIZABLE'
    UNKNOWN = 'UNKNOWN'

    @classmethod
    def parse(cls, value: 'str | TransactionIsolationLevel | None') -> 'TransactionIsolationLevel':
        if value is None:
            return cls.UNKNOWN
        if isinstance(value, cls):
            return value
        normalized = str(value).replace('_', ' ').strip().upper()
        for level in cls:
            if level.value == normalized:
                return level
        return cls.UNKNOWN


class DialectStrategy(ABC):
    """Base class for dialect-specific driver operations.
    """

    paramstyle: str = 'qmark'

    @property
    @abstractmethod
    def dialect_name(self) -> str:
        """Return the dialect identifier."""

    @contextmanager
    def _cursor(self, conn: Any, sql: str, params: tuple | None = None):
        """Context manager for raw cursor lifecycle.

        Handles cursor creation, SQL execution, and cleanup. Runs on the
        driver connection so control statements never count against the
        statement cursors of a handle.
        """
        cursor = self.raw(conn).cursor()
        try:
            cursor.execute(sql, params or ())
            yield cursor
        finally:
            cursor.close()

    def _execute_raw(self, conn: Any, sql: str, params: tuple | None = None) -> int:
        """Execute SQL outside the statement pipeline and return the rowcount.

        Used for transaction control and connection configuration.
        """
        with self._cursor(conn, sql, params) as cursor:
            return cursor.rowcount

    def _select_scalar_raw(self, conn: Any, sql: str, params: tuple | None = None) -> Any:
        with self._cursor(conn, sql, params) as cursor:
            row = cursor.fetchone()
            return row[0] if row else None

    def placeholder(self, index: int) -> str:
        """Native placeholder for the zero-based parameter position."""
        if self.paramstyle == 'qmark':
            return '?'
        if self.paramstyle == 'format':
            return '%s'
        if self.paramstyle == 'numeric':
            return f':{index + 1}'
        raise ValueError(f'Unsupported paramstyle: {self.paramstyle}')

    def escape_text(self, text: str) -> str:
        """Escape literal SQL text for the driver's parameter syntax."""
        if self.paramstyle == 'format':
            return text.replace('%', '%%')
        return text

    def configure_connection(self, conn: Any) -> None:
        """Prepare a freshly opened connection for explicit transaction control.
        """

    def adapt_value(self, value: Any) -> Any:
        """Last-chance conversion of a bound value for this driver."""
        return value

    def begin(self, conn: Any) -> None:
        self._execute_raw(conn, 'BEGIN')

    def commit(self, conn: Any) -> None:
        self._execute_raw(conn, 'COMMIT')

    def rollback(self, conn: Any) -> None:
        self._execute_raw(conn, 'ROLLBACK')

    def savepoint(self, conn: Any, name: str) -> None:
        self._execute_raw(conn, f'SAVEPOINT {self.quote_identifier(name)}')

    def rollback_to_savepoint(self, conn: Any, name: str) -> None:
        self._execute_raw(conn, f'ROLLBACK TO SAVEPOINT {self.quote_identifier(name)}')

    def release_savepoint(self, conn: Any, name: str) -> None:
        self._execute_raw(conn, f'RELEASE SAVEPOINT {self.quote_identifier(name)}')

    @abstractmethod
    def get_isolation_level(self, conn: Any) -> TransactionIsolationLevel:
        """Return the isolation level new transactions will use.
        """

    @abstractmethod
    def set_isolation_level(self, conn: Any, level: TransactionIsolationLevel) -> None:
        """Set the isolation level for subsequent transactions.
        """

    @abstractmethod
    def cancel(self, conn: Any) -> None:
        """Cancel the statement currently running on the connection.

        Called from a different thread than the one running the statement.
        Best effort: drivers without cancellation support do nothing.
        """

    @property
    def supports_returning(self) -> bool:
        return False

    def returning_sql(self, sql: str, columns: tuple[str, ...]) -> str:
        """Append a RETURNING clause for generated keys."""
        if not self.supports_returning:
            raise StatementError(f'{self.dialect_name} does not support RETURNING', sql)
        cols = ', '.join(self.quote_identifier(c) for c in columns) if columns else '*'
        return f'{sql.rstrip().rstrip(";")} RETURNING {cols}'

    def quote_identifier(self, identifier: str) -> str:
        """Quote a savepoint/column identifier, doubling embedded quotes."""
        if not identifier:
            raise ValueError('identifier must not be empty')
        return '"' + identifier.replace('"', '""') + '"'

    def raw(self, conn: Any) -> Any:
        """Return the driver connection underneath pool or test wrappers."""
        return get_raw_connection(conn)

    def build_connection_url(self, options: 'DatabaseOptions') -> Any:
        """Build the SQLAlchemy connection URL for the options.
        """
        raise NotImplementedError

    def get_engine_kwargs(self, options: 'DatabaseOptions') -> dict[str, Any]:
        """Return dialect-specific SQLAlchemy create_engine kwargs."""
        return {}

    @classmethod
    def validate_options(cls, options: 'DatabaseOptions') -> None:
        """Validate dialect-specific options."""
