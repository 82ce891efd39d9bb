"""
Database-specific exception classes.
"""
import re
import sqlite3

import psycopg

RESOURCE_EXHAUSTED_PATTERNS = [
    r'maximum open cursors exceeded',
    r'too many (open )?(cursors|statements|prepared statements|handles)',
    r'ora-01000',
    r'out of memory',
    r'out of shared memory',
    r'insufficient resources',
    r'resource (limit|ceiling)',
]

TIMEOUT_PATTERNS = [
    r'\binterrupted\b',
    r'canceling statement due to (user request|statement timeout)',
    r'query (was )?cancel+ed',
    r'statement timeout',
]

_RESOURCE_EXHAUSTED_REGEX = re.compile('|'.join(RESOURCE_EXHAUSTED_PATTERNS), re.IGNORECASE)
_TIMEOUT_REGEX = re.compile('|'.join(TIMEOUT_PATTERNS), re.IGNORECASE)

# SQLSTATE class 53: insufficient resources
_RESOURCE_SQLSTATE_CLASS = '53'
_CANCELED_SQLSTATE = '57014'


def _sqlstate(exc: BaseException) -> str | None:
    sqlstate = getattr(exc, 'sqlstate', None) or getattr(exc, 'pgcode', None)
    if isinstance(sqlstate, str) and sqlstate:
        return sqlstate.upper()
    return None


def is_resource_exhausted(exc: BaseException) -> bool:
    """Check if a driver exception reports an exhausted resource ceiling.

    Covers open cursor / prepared statement limits and memory pressure
    reported while creating a statement. Retrying such an error does not
    help until other statements on the connection are released.
    """
    if isinstance(exc, psycopg.errors.InsufficientResources):
        return True
    sqlstate = _sqlstate(exc)
    if sqlstate and sqlstate.startswith(_RESOURCE_SQLSTATE_CLASS):
        return True
    return bool(_RESOURCE_EXHAUSTED_REGEX.search(str(exc)))


def is_timeout(exc: BaseException) -> bool:
    """Check if a driver exception is the result of a cancelled operation.
    """
    if isinstance(exc, psycopg.errors.QueryCanceled):
        return True
    if _sqlstate(exc) == _CANCELED_SQLSTATE:
        return True
    return bool(_TIMEOUT_REGEX.search(str(exc)))


def add_suppressed(primary: BaseException, secondary: BaseException) -> BaseException:
    """Attach a secondary error to the error that is being propagated.

    The secondary error never replaces the primary one. It is recorded on
    a ``suppressed`` list and as an exception note so tracebacks show it.
    """
    if secondary is primary:
        return primary
    suppressed = getattr(primary, 'suppressed', None)
    if suppressed is None:
        suppressed = []
        try:
            primary.suppressed = suppressed
        except AttributeError:
            pass
    suppressed.append(secondary)
    primary.add_note(f'suppressed: {type(secondary).__name__}: {secondary}')
    return primary


class DatabaseError(Exception):
    """Base class for all dbhandle errors.
    """

    def __init__(self, *args) -> None:
        super().__init__(*args)
        self.suppressed: list[BaseException] = []


class ConnectionError(DatabaseError):
    """The connection factory failed to produce or open a connection.
    """


class BindingError(DatabaseError):
    """A referenced placeholder has no resolvable value.
    """


class StatementError(DatabaseError):
    """Error raised by the driver while executing a statement.
    """

    def __init__(self, message: str, sql: str | None = None) -> None:
        super().__init__(message)
        self.sql = sql


class ResourceExhausted(StatementError):
    """The driver refused to create a statement because a resource ceiling was hit.
    """


class Timeout(StatementError):
    """A statement exceeded its deadline and was cancelled.
    """


class TransactionStateError(DatabaseError):
    """Transaction operation called in an invalid state.
    """


class NoSuchExtensionError(DatabaseError):
    """No extension factory is registered for the requested type.
    """

    def __init__(self, extension_type: type) -> None:
        name = getattr(extension_type, '__qualname__', repr(extension_type))
        super().__init__(f'Extension not registered: {name}')
        self.extension_type = extension_type


class ValidationError(DatabaseError):
    """Error in input validation or in the shape of a result.
    """


class TypeConversionError(DatabaseError):
    """Error converting types between Python and database.
    """


class CloseError(DatabaseError):
    """Error releasing a handle, statement or connection.
    """


DbConnectionError = (
    psycopg.OperationalError,
    psycopg.InterfaceError,
    sqlite3.OperationalError,
    sqlite3.InterfaceError,
    ConnectionError,
    )

IntegrityError = (
    psycopg.IntegrityError,
    sqlite3.IntegrityError,
    )

OperationalError = (
    psycopg.OperationalError,
    sqlite3.OperationalError,
    )

DriverError = (
    psycopg.Error,
    sqlite3.Error,
    )
