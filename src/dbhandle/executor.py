"""
Statement execution and lazy result iteration.

``StatementExecutor`` runs rendered SQL on a cursor from the handle's
statement cache, arms the query deadline, and turns driver errors into
this package's exceptions. Query results come back as a
``ResultIterator``: single-pass and forward-only, fetching
``fetch_size`` rows per round trip and mapping each row when it is
consumed. The iterator owns nothing itself; its cursor is released
through the statement context, which closes when the iterator is
exhausted, closed explicitly, or the owning handle closes.
"""
import logging
import threading
import time
from collections import deque
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from functools import wraps
from typing import TYPE_CHECKING, Any, Generic, TypeVar

import pandas as pd
from dbhandle.exceptions import DatabaseError, ResourceExhausted, StatementError
from dbhandle.exceptions import Timeout, TypeConversionError, ValidationError
from dbhandle.exceptions import is_resource_exhausted, is_timeout
from dbhandle.types import Column, RowAdapter, columns_from_cursor_description

if TYPE_CHECKING:
    from dbhandle.cache import CompiledStatement
    from dbhandle.statement import StatementContext

logger = logging.getLogger(__name__)

__all__ = [
    'StatementExecutor',
    'ResultIterator',
    'ResultIterable',
    'FetchedRows',
    'dumpsql',
    'dumpsql_many',
]

T = TypeVar('T')
R = TypeVar('R')


def dumpsql(func):
    """Decorator for logging SQL statements and parameters."""
    @wraps(func)
    def wrapper(self, ctx: 'StatementContext', compiled: 'CompiledStatement',
                params: Sequence[Any], *args: Any, **kwargs: Any):
        start = time.time()
        logger.debug(f'SQL:\n{compiled.sql}\nargs: {tuple(params)}')
        try:
            result = func(self, ctx, compiled, params, *args, **kwargs)
            if hasattr(compiled.cursor, 'statusmessage'):
                logger.debug(f'Query result: {compiled.cursor.statusmessage}')
            return result
        except Exception:
            logger.error(f'Error with query:\nSQL:\n{compiled.sql}\nargs: {tuple(params)}')
            raise
        finally:
            elapsed = time.time() - start
            ctx.handle.addcall(elapsed)
            logger.debug(f'Query time: {elapsed:.4f}s')
    return wrapper


def dumpsql_many(func):
    """Decorator for logging executemany operations."""
    @wraps(func)
    def wrapper(self, ctx: 'StatementContext', compiled: 'CompiledStatement',
                seq_of_parameters: Sequence[Sequence[Any]], *args: Any, **kwargs: Any):
        start = time.time()
        logger.debug(f'SQL:\n{compiled.sql}\nparams: {len(seq_of_parameters)} rows')
        try:
            return func(self, ctx, compiled, seq_of_parameters, *args, **kwargs)
        except Exception:
            logger.error(f'Error with executemany:\nSQL:\n{compiled.sql}')
            raise
        finally:
            elapsed = time.time() - start
            ctx.handle.addcall(elapsed)
            logger.debug(f'Executemany time: {elapsed:.4f}s')
    return wrapper


class StatementExecutor:
    """Runs statements against compiled cursors.

    Every driver call goes through ``_guard`` which arms the statement
    deadline and maps driver errors:

    - cancelled by the deadline (or reported as cancelled) -> ``Timeout``
    - a resource ceiling -> ``ResourceExhausted``
    - anything else from the driver -> ``StatementError``
    """

    @contextmanager
    def _guard(self, ctx: 'StatementContext', sql: str):
        timeout = ctx.query_timeout
        fired = threading.Event()
        timer = None
        if timeout:
            def cancel() -> None:
                fired.set()
                logger.warning(f'Statement exceeded {timeout}s, cancelling')
                try:
                    ctx.strategy.cancel(ctx.connection)
                except Exception as e:
                    logger.debug(f'Cancel failed: {e}')
            timer = threading.Timer(timeout, cancel)
            timer.daemon = True
            timer.start()
        ctx.handle.statement_started(ctx)
        try:
            yield
        except DatabaseError:
            raise
        except Exception as e:
            if fired.is_set() or is_timeout(e):
                raise Timeout(f'Statement cancelled: {e}', sql) from e
            if is_resource_exhausted(e):
                raise ResourceExhausted(f'Resource ceiling reached: {e}', sql) from e
            raise StatementError(f'{type(e).__name__}: {e}', sql) from e
        finally:
            if timer is not None:
                timer.cancel()
            ctx.handle.statement_finished(ctx)

    @dumpsql
    def execute(self, ctx: 'StatementContext', compiled: 'CompiledStatement',
                params: Sequence[Any]) -> Any:
        """Execute rendered SQL with driver-ready parameters; return the cursor."""
        with self._guard(ctx, compiled.sql):
            compiled.cursor.execute(compiled.sql, tuple(params))
        compiled.executions += 1
        return compiled.cursor

    @dumpsql_many
    def execute_many(self, ctx: 'StatementContext', compiled: 'CompiledStatement',
                     seq_of_parameters: Sequence[Sequence[Any]], batch_size: int = 500) -> int:
        """Execute one statement for every parameter row, in chunks of ``batch_size``."""
        if not seq_of_parameters:
            logger.warning('executemany called with no parameter sequences')
            return 0

        total_rowcount = 0
        with self._guard(ctx, compiled.sql):
            if len(seq_of_parameters) <= batch_size:
                compiled.cursor.executemany(compiled.sql, seq_of_parameters)
                total_rowcount = compiled.cursor.rowcount
            else:
                logger.debug(f'Batching {len(seq_of_parameters)} rows into chunks of {batch_size}')
                for i in range(0, len(seq_of_parameters), batch_size):
                    chunk = seq_of_parameters[i:i + batch_size]
                    compiled.cursor.executemany(compiled.sql, chunk)
                    total_rowcount += compiled.cursor.rowcount
        compiled.executions += 1
        return total_rowcount

    def update_count(self, cursor: Any) -> int:
        """Rows affected by the last execution; -1 when the driver cannot tell."""
        rowcount = cursor.rowcount
        return -1 if rowcount is None else rowcount

    def fetch(self, ctx: 'StatementContext', cursor: Any, size: int) -> list[Any]:
        with self._guard(ctx, ctx.rendered_sql or ''):
            return cursor.fetchmany(size)

    def results(self, ctx: 'StatementContext', cursor: Any,
                mapper: Callable[[RowAdapter, 'StatementContext'], T]) -> 'ResultIterator[T]':
        """Wrap an executed cursor in a lazy iterator of mapped rows."""
        return ResultIterator(self, ctx, cursor, mapper)


class ResultIterator(Iterator, Generic[T]):
    """Single-pass iterator over the rows of one execution.

    Closing releases the statement context (and with it the cursor).
    Iteration closes automatically on exhaustion and on a mapping error.
    """

    def __init__(self, executor: StatementExecutor, ctx: 'StatementContext',
                 cursor: Any, mapper: Callable[[RowAdapter, 'StatementContext'], T]) -> None:
        self._executor = executor
        self._ctx = ctx
        self._cursor = cursor
        self._mapper = mapper
        self._buffer: deque = deque()
        self._fetch_size = ctx.options.fetch_size
        self.columns: list[Column] = columns_from_cursor_description(cursor)
        self.closed = False
        self.rows_read = 0
        ctx.add_cleanable(self._mark_closed)

    def __iter__(self) -> 'ResultIterator[T]':
        return self

    def __next__(self) -> T:
        if self.closed:
            raise StopIteration
        if not self._buffer:
            try:
                rows = self._executor.fetch(self._ctx, self._cursor, self._fetch_size)
            except BaseException:
                self.close()
                raise
            if not rows:
                self.close()
                raise StopIteration
            self._buffer.extend(rows)
        row = self._buffer.popleft()
        self.rows_read += 1
        try:
            return self._mapper(RowAdapter(row, self.columns), self._ctx)
        except DatabaseError:
            self.close()
            raise
        except Exception as e:
            self.close()
            raise TypeConversionError(f'Could not map row {self.rows_read}: {e}') from e

    def _mark_closed(self) -> None:
        self.closed = True
        self._buffer.clear()

    def close(self) -> None:
        """Release the cursor; no-op once closed."""
        if self.closed:
            return
        self._mark_closed()
        self._ctx.close()

    def __enter__(self) -> 'ResultIterator[T]':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


class FetchedRows(Iterator, Generic[T]):
    """Iterator over rows that were read without keeping a cursor open.

    Behaves like a ``ResultIterator`` for ``ResultIterable``: it has
    columns, can be closed and is single-pass.
    """

    def __init__(self, rows: list[T], columns: list[Column]) -> None:
        self._rows = deque(rows)
        self.columns = columns
        self.closed = False

    def __iter__(self) -> 'FetchedRows[T]':
        return self

    def __next__(self) -> T:
        if self.closed or not self._rows:
            self.close()
            raise StopIteration
        return self._rows.popleft()

    def close(self) -> None:
        self.closed = True
        self._rows.clear()

    def __enter__(self) -> 'FetchedRows[T]':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


class ResultIterable(Generic[T]):
    """Deferred result of a query.

    Nothing runs until a terminal operation (``iterator``, ``list``,
    ``one``, ...) is called. Each terminal operation executes the
    statement once and consumes its rows.
    """

    def __init__(self, supplier: Callable[[], 'ResultIterator | FetchedRows']) -> None:
        self._supplier = supplier
        self._transforms: tuple[Callable[[Any], Any], ...] = ()

    def map(self, func: Callable[[T], R]) -> 'ResultIterable[R]':
        """Transform each mapped row."""
        mapped = ResultIterable(self._supplier)
        mapped._transforms = (*self._transforms, func)
        return mapped

    def iterator(self) -> Iterator[T]:
        it = self._supplier()
        if not self._transforms:
            return it
        return _TransformedIterator(it, self._transforms)

    def __iter__(self) -> Iterator[T]:
        return self.iterator()

    def list(self) -> list[T]:
        with self.iterator() as it:
            return list(it)

    def first(self) -> T:
        """Return the first row.

        Raises
            ValidationError: if there are no rows
        """
        with self.iterator() as it:
            for item in it:
                return item
        raise ValidationError('Expected at least one row, got none')

    def find_first(self) -> T | None:
        with self.iterator() as it:
            for item in it:
                return item
        return None

    def one(self) -> T:
        """Return the only row.

        Raises
            ValidationError: if there are zero or several rows
        """
        with self.iterator() as it:
            items = _at_most_two(it)
        if len(items) != 1:
            raise ValidationError(f'Expected one row, got {"none" if not items else "more than one"}')
        return items[0]

    def find_one(self) -> T | None:
        """Return the only row, or None when there are no rows.

        Raises
            ValidationError: if there are several rows
        """
        with self.iterator() as it:
            items = _at_most_two(it)
        if len(items) > 1:
            raise ValidationError('Expected at most one row, got more than one')
        return items[0] if items else None

    def to_dataframe(self) -> pd.DataFrame:
        """Collect rows into a DataFrame; rows must map to dicts or tuples."""
        with self.iterator() as it:
            rows = list(it)
            names = Column.get_names(it.columns)
        if rows and isinstance(rows[0], dict):
            return pd.DataFrame.from_records(rows, columns=list(rows[0]) or names)
        return pd.DataFrame.from_records(rows, columns=names)


def _at_most_two(it: Iterator[T]) -> list[T]:
    items: list[T] = []
    for item in it:
        items.append(item)
        if len(items) > 1:
            break
    return items


class _TransformedIterator(Iterator):
    """ResultIterator view applying ResultIterable.map transforms."""

    def __init__(self, inner: ResultIterator, transforms: tuple[Callable[[Any], Any], ...]) -> None:
        self._inner = inner
        self._transforms = transforms

    @property
    def columns(self) -> list[Column]:
        return self._inner.columns

    def __iter__(self):
        return self

    def __next__(self):
        item = next(self._inner)
        try:
            for func in self._transforms:
                item = func(item)
        except Exception:
            self._inner.close()
            raise
        return item

    def close(self) -> None:
        self._inner.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
