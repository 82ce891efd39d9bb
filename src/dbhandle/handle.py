"""
Handle: one acquired connection with its statement cache and transaction state.

A handle is created by ``Dbi.open()`` and closed exactly once. Closing
releases resources in a fixed order and keeps going when a step fails:

1. cancel a statement still running on the connection
2. close statement contexts that are still open (unconsumed results)
3. roll back a transaction that was left active
4. close the statement cache
5. release the connection through its Cleanable

The first error raised is propagated with the others attached to it.
A transaction left active is rolled back and reported as a
``TransactionStateError`` when ``force_end_transactions`` is set.
"""
import logging
import threading
import time
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, Self, TypeVar

from dbhandle.exceptions import CloseError, DatabaseError, StatementError
from dbhandle.exceptions import TransactionStateError, add_suppressed
from dbhandle.executor import StatementExecutor
from dbhandle.scope import ConstantHandleSupplier
from dbhandle.statement import Batch, PreparedBatch, Query, Update, close_after
from dbhandle.strategy import TransactionIsolationLevel

if TYPE_CHECKING:
    from dbhandle.arguments import Arguments
    from dbhandle.cache import StatementCache
    from dbhandle.connection import Cleanable
    from dbhandle.dbi import Dbi
    from dbhandle.extension import Extensions
    from dbhandle.mapper import ColumnMapper, Mappers, RowMapper
    from dbhandle.options import HandleOptions
    from dbhandle.sql import SqlParser
    from dbhandle.statement import StatementContext
    from dbhandle.strategy import DialectStrategy
    from dbhandle.transaction import TransactionHandler

logger = logging.getLogger(__name__)

__all__ = ['Handle']

T = TypeVar('T')


class Handle:
    """Wraps one DB-API connection.

    Tracks statement count and execution time, owns the statement cache
    and the open statement contexts, and delegates transaction control to
    its transaction handler. Use as a context manager to close it.
    """

    def __init__(self, dbi: 'Dbi', connection: Any, cleanable: 'Cleanable',
                 strategy: 'DialectStrategy', statement_cache: 'StatementCache',
                 transaction_handler: 'TransactionHandler', options: 'HandleOptions',
                 arguments: 'Arguments', mappers: 'Mappers', extensions: 'Extensions',
                 parser: 'SqlParser') -> None:
        self.dbi = dbi
        self.connection = connection
        self.cleanable = cleanable
        self.strategy = strategy
        self.statement_cache = statement_cache
        self.transaction_handler = transaction_handler
        self.options = options
        self.arguments = arguments
        self.mappers = mappers
        self.extensions = extensions
        self.parser = parser
        self.executor = StatementExecutor()
        self._contexts: dict[int, 'StatementContext'] = {}
        self._running: 'StatementContext | None' = None
        self._lock = threading.RLock()
        self._opened = time.time()
        self.closed = False
        self.calls = 0
        self.time = 0.0

    @property
    def dialect(self) -> str:
        return self.strategy.dialect_name

    @property
    def is_closed(self) -> bool:
        return self.closed

    def check_open(self) -> None:
        if self.closed:
            raise StatementError('Handle is closed')

    def addcall(self, elapsed: float) -> None:
        """Track execution statistics
        """
        self.time += elapsed
        self.calls += 1

    # statement bookkeeping

    def register_context(self, ctx: 'StatementContext') -> None:
        with self._lock:
            self._contexts[id(ctx)] = ctx

    def forget_context(self, ctx: 'StatementContext') -> None:
        with self._lock:
            self._contexts.pop(id(ctx), None)

    @property
    def open_contexts(self) -> int:
        with self._lock:
            return len(self._contexts)

    def statement_started(self, ctx: 'StatementContext') -> None:
        self._running = ctx

    def statement_finished(self, ctx: 'StatementContext') -> None:
        if self._running is ctx:
            self._running = None

    # configuration

    def register_row_mapper(self, type_: type, mapper: 'RowMapper') -> Self:
        self.mappers.register_row_mapper(type_, mapper)
        return self

    def register_column_mapper(self, type_: type, mapper: 'ColumnMapper') -> Self:
        self.mappers.register_column_mapper(type_, mapper)
        return self

    def register_argument(self, type_: type, converter: Callable[[Any], Any],
                          exact: bool = False) -> Self:
        self.arguments.register(type_, converter, exact)
        return self

    # statements

    def create_update(self, sql: str) -> Update:
        return Update(self, sql)

    def create_query(self, sql: str) -> Query:
        return Query(self, sql)

    def create_batch(self) -> Batch:
        return Batch(self)

    def prepare_batch(self, sql: str, batch_size: int = 500) -> PreparedBatch:
        return PreparedBatch(self, sql, batch_size)

    @staticmethod
    def _bind_args(statement: Any, args: tuple) -> Any:
        if len(args) == 1 and isinstance(args[0], dict):
            return statement.bind_map(args[0])
        return statement.bind_positional(*args)

    def select(self, sql: str, *args: Any) -> Query:
        """Query with positional arguments, or a single dict of named arguments.

        Examples
            handle.select('select * from something where id = ?', 1).list()
            handle.select('select * from something where id = :id', {'id': 1}).one()
        """
        return self._bind_args(self.create_query(sql), args)

    def execute(self, sql: str, *args: Any) -> int:
        """Execute SQL with the given arguments and return affected row count.
        """
        return self._bind_args(self.create_update(sql), args).execute()

    # transactions

    def begin(self, level: TransactionIsolationLevel | None = None) -> Self:
        self.check_open()
        self.transaction_handler.begin(self, level)
        return self

    def commit(self) -> Self:
        self.transaction_handler.commit(self)
        return self

    def rollback(self) -> Self:
        self.transaction_handler.rollback(self)
        return self

    def savepoint(self, name: str) -> Self:
        self.transaction_handler.savepoint(self, name)
        return self

    def rollback_to_savepoint(self, name: str) -> Self:
        self.transaction_handler.rollback_to_savepoint(self, name)
        return self

    def release_savepoint(self, name: str) -> Self:
        self.transaction_handler.release_savepoint(self, name)
        return self

    def is_in_transaction(self) -> bool:
        return self.transaction_handler.is_in_transaction(self)

    def in_transaction(self, callback: Callable[['Handle'], T],
                       level: TransactionIsolationLevel | None = None) -> T:
        """Run ``callback(handle)`` in a transaction and return its result.

        Joins the active transaction if there is one; otherwise commits on
        success and rolls back when the callback raises.
        """
        self.check_open()
        return self.transaction_handler.in_transaction(self, callback, level)

    def use_transaction(self, callback: Callable[['Handle'], Any],
                        level: TransactionIsolationLevel | None = None) -> None:
        self.in_transaction(callback, level)

    def get_transaction_isolation_level(self) -> TransactionIsolationLevel:
        return self.strategy.get_isolation_level(self.connection)

    def set_transaction_isolation_level(self, level: TransactionIsolationLevel | str) -> Self:
        self.strategy.set_isolation_level(self.connection, TransactionIsolationLevel.parse(level))
        return self

    # extensions

    def attach(self, extension_type: type[T]) -> T:
        """Return an extension instance bound to this handle."""
        factory = self.extensions.find_factory(extension_type)
        return factory.attach(extension_type, ConstantHandleSupplier(self))

    # lifecycle

    def close(self) -> None:
        """Release everything the handle holds. Safe to call more than once."""
        with self._lock:
            if self.closed:
                return
            self.closed = True
            contexts = list(self._contexts.values())

        errors: list[BaseException] = []

        running = self._running
        if running is not None:
            logger.debug('Cancelling statement in flight on close')
            try:
                self.strategy.cancel(self.connection)
            except Exception as e:
                logger.debug(f'Could not cancel running statement: {e}')

        for ctx in reversed(contexts):
            try:
                ctx.close()
            except Exception as e:
                errors.append(e)

        left_open = False
        try:
            left_open = self.transaction_handler.is_in_transaction(self)
            if left_open:
                logger.warning(f'Handle {id(self)} closed with an active transaction, rolling back')
                self.transaction_handler.rollback(self)
        except Exception as e:
            errors.append(e)

        try:
            self.statement_cache.close()
        except Exception as e:
            errors.append(e)

        try:
            self.cleanable.close()
        except Exception as e:
            errors.append(e)

        elapsed = time.time() - self._opened
        logger.debug(f'Handle closed: {self.calls} statements in {self.time:.2f}s '
                     f'(open {elapsed:.2f}s, avg: {self.time/max(1, self.calls):.3f}s per statement)')

        if left_open and self.options.force_end_transactions:
            errors.insert(0, TransactionStateError(
                'Improperly closed handle: a transaction was still active and has been rolled back'))

        if errors:
            primary = errors[0]
            if not isinstance(primary, DatabaseError):
                wrapped = CloseError(f'Error closing handle: {primary}')
                wrapped.__cause__ = primary
                primary = wrapped
            for secondary in errors[1:]:
                add_suppressed(primary, secondary)
            raise primary

    def __enter__(self) -> Self:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        close_after(self, exc_val)

    def __repr__(self) -> str:
        state = 'closed' if self.closed else 'open'
        return f'Handle({self.dialect}, {state}, calls={self.calls})'
