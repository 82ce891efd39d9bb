"""
Transaction handling for handles.

A ``TransactionHandler`` is configured once on a Dbi and specialized for
every handle it opens, so each handle has its own transaction state:

    NONE -> ACTIVE -> COMMITTED | ROLLED_BACK -> (next begin) ACTIVE ...

``in_transaction`` participates in a transaction that is already active
on the handle (no second BEGIN, no early COMMIT), begins and finishes one
otherwise, and always rolls back before a callback error propagates.

Examples
    handle.in_transaction(lambda h: h.execute('delete from ...'))

    handle.begin()
    handle.savepoint('before_cleanup')
    handle.execute('delete from ...')
    handle.rollback_to_savepoint('before_cleanup')
    handle.commit()
"""
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from enum import Enum, auto
from typing import TYPE_CHECKING, Any, TypeVar

from dbhandle.exceptions import TransactionStateError, add_suppressed
from dbhandle.strategy import TransactionIsolationLevel

if TYPE_CHECKING:
    from dbhandle.handle import Handle

logger = logging.getLogger(__name__)

__all__ = [
    'TransactionState',
    'TransactionHandler',
    'LocalTransactionHandler',
]

T = TypeVar('T')


class TransactionState(Enum):
    NONE = auto()
    ACTIVE = auto()
    COMMITTED = auto()
    ROLLED_BACK = auto()


class TransactionHandler(ABC):
    """Transaction protocol a handle delegates to."""

    def specialize(self) -> 'TransactionHandler':
        """Return the instance bound to one new handle."""
        return self

    @abstractmethod
    def begin(self, handle: 'Handle', level: TransactionIsolationLevel | None = None) -> None:
        ...

    @abstractmethod
    def commit(self, handle: 'Handle') -> None:
        ...

    @abstractmethod
    def rollback(self, handle: 'Handle') -> None:
        ...

    @abstractmethod
    def is_in_transaction(self, handle: 'Handle') -> bool:
        ...

    @abstractmethod
    def savepoint(self, handle: 'Handle', name: str) -> None:
        ...

    @abstractmethod
    def rollback_to_savepoint(self, handle: 'Handle', name: str) -> None:
        ...

    @abstractmethod
    def release_savepoint(self, handle: 'Handle', name: str) -> None:
        ...

    @abstractmethod
    def in_transaction(self, handle: 'Handle', callback: Callable[['Handle'], T],
                       level: TransactionIsolationLevel | None = None) -> T:
        ...


class LocalTransactionHandler(TransactionHandler):
    """Transactions driven with explicit BEGIN/COMMIT/ROLLBACK on the handle's connection.

    The isolation level in effect before ``begin(level)`` is restored when
    the transaction ends. Savepoints form a stack: rolling back to one
    discards the savepoints created after it, releasing one discards it
    and everything after it.
    """

    def __init__(self) -> None:
        self.state = TransactionState.NONE
        self.level: TransactionIsolationLevel | None = None
        self._restore_level: TransactionIsolationLevel | None = None
        self._savepoints: list[str] = []

    def specialize(self) -> 'LocalTransactionHandler':
        return type(self)()

    @property
    def savepoints(self) -> list[str]:
        return list(self._savepoints)

    def is_in_transaction(self, handle: 'Handle') -> bool:
        return self.state is TransactionState.ACTIVE

    def _require_active(self, operation: str) -> None:
        if self.state is not TransactionState.ACTIVE:
            raise TransactionStateError(f'Cannot {operation}: no transaction is active')

    def begin(self, handle: 'Handle', level: TransactionIsolationLevel | None = None) -> None:
        if self.state is TransactionState.ACTIVE:
            raise TransactionStateError('Cannot begin: a transaction is already active')

        strategy, conn = handle.strategy, handle.connection
        if level is not None and level is not TransactionIsolationLevel.UNKNOWN:
            current = strategy.get_isolation_level(conn)
            if current is not level:
                strategy.set_isolation_level(conn, level)
                self._restore_level = current
        try:
            strategy.begin(conn)
        except BaseException as e:
            self._restore_isolation(handle, e)
            raise

        self.state = TransactionState.ACTIVE
        self.level = level
        self._savepoints.clear()
        logger.debug(f'Started transaction for handle {id(handle)}'
                     + (f' at {level.value}' if level else ''))

    def commit(self, handle: 'Handle') -> None:
        self._require_active('commit')
        handle.strategy.commit(handle.connection)
        self._end(handle, TransactionState.COMMITTED)
        logger.debug(f'Committed transaction for handle {id(handle)}')

    def rollback(self, handle: 'Handle') -> None:
        self._require_active('rollback')
        try:
            handle.strategy.rollback(handle.connection)
        finally:
            self._end(handle, TransactionState.ROLLED_BACK)
        logger.debug(f'Rolled back transaction for handle {id(handle)}')

    def _end(self, handle: 'Handle', state: TransactionState) -> None:
        self.state = state
        self.level = None
        self._savepoints.clear()
        self._restore_isolation(handle)

    def _restore_isolation(self, handle: 'Handle', primary: BaseException | None = None) -> None:
        level, self._restore_level = self._restore_level, None
        if level is None or level is TransactionIsolationLevel.UNKNOWN:
            return
        try:
            handle.strategy.set_isolation_level(handle.connection, level)
        except Exception as e:
            if primary is None:
                raise
            add_suppressed(primary, e)

    def savepoint(self, handle: 'Handle', name: str) -> None:
        self._require_active(f'create savepoint {name!r}')
        if name in self._savepoints:
            raise TransactionStateError(f'Savepoint {name!r} already exists')
        handle.strategy.savepoint(handle.connection, name)
        self._savepoints.append(name)
        logger.debug(f'Created savepoint {name}')

    def _savepoint_index(self, name: str, operation: str) -> int:
        self._require_active(operation)
        try:
            return self._savepoints.index(name)
        except ValueError:
            raise TransactionStateError(f'Cannot {operation}: no savepoint named {name!r}') from None

    def rollback_to_savepoint(self, handle: 'Handle', name: str) -> None:
        index = self._savepoint_index(name, f'roll back to savepoint {name!r}')
        handle.strategy.rollback_to_savepoint(handle.connection, name)
        del self._savepoints[index + 1:]
        logger.debug(f'Rolled back to savepoint {name}')

    def release_savepoint(self, handle: 'Handle', name: str) -> None:
        index = self._savepoint_index(name, f'release savepoint {name!r}')
        handle.strategy.release_savepoint(handle.connection, name)
        del self._savepoints[index:]
        logger.debug(f'Released savepoint {name}')

    def _check_nested_level(self, handle: 'Handle', level: TransactionIsolationLevel | None) -> None:
        if level is None or level is TransactionIsolationLevel.UNKNOWN:
            return
        active = self.level or handle.strategy.get_isolation_level(handle.connection)
        if active is not level:
            raise TransactionStateError(
                f'Nested transaction requested {level.value} but the active transaction '
                f'runs at {active.value}')

    def in_transaction(self, handle: 'Handle', callback: Callable[['Handle'], T],
                       level: TransactionIsolationLevel | None = None) -> T:
        if self.is_in_transaction(handle):
            self._check_nested_level(handle, level)
            return callback(handle)

        self.begin(handle, level)
        try:
            result = callback(handle)
        except BaseException as e:
            self._rollback_after_error(handle, e)
            raise

        if self.is_in_transaction(handle):
            try:
                self.commit(handle)
            except BaseException as e:
                self._rollback_after_error(handle, e)
                raise
        return result

    def _rollback_after_error(self, handle: 'Handle', error: BaseException) -> None:
        if not self.is_in_transaction(handle):
            return
        logger.warning('Rolling back the current transaction')
        try:
            self.rollback(handle)
        except Exception as rollback_error:
            add_suppressed(error, rollback_error)
