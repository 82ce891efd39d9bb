"""
Statement caches: where a handle gets its DB-API cursors.

A DB-API cursor is the compiled-statement resource of this package. Each
handle owns exactly one cache, keyed by rendered SQL (native placeholder
syntax), so cursors never cross handle or connection boundaries.

- ``StatementCache`` opens a fresh cursor for every execution and closes
  it when the execution's statement context closes.
- ``CachingStatementCache`` parks released cursors per SQL text and hands
  them out again within the same handle, closing the oldest parked cursor
  when the ceiling is reached; everything is closed when the handle closes.

Both bound the number of live cursors with ``max_open_statements`` and
surface a driver refusal to open another one as ``ResourceExhausted``.
"""
import logging
import threading
from collections import OrderedDict, defaultdict
from typing import TYPE_CHECKING, Any

from dbhandle.exceptions import ResourceExhausted, StatementError
from dbhandle.exceptions import is_resource_exhausted
from dbhandle.utils import close_quietly

if TYPE_CHECKING:
    from dbhandle.options import HandleOptions
    from dbhandle.statement import StatementContext

logger = logging.getLogger(__name__)

__all__ = [
    'CompiledStatement',
    'StatementCache',
    'CachingStatementCache',
    'default_statement_cache_factory',
]


class CompiledStatement:
    """A cursor bound to the SQL it was acquired for."""

    def __init__(self, cursor: Any, sql: str) -> None:
        self.cursor = cursor
        self.sql = sql
        self.closed = False
        self.executions = 0

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        close_quietly(self.cursor, 'cursor')

    def __repr__(self) -> str:
        return f'CompiledStatement(sql={self.sql!r}, executions={self.executions}, closed={self.closed})'


class StatementCache:
    """Per-handle cursor source that never reuses cursors.
    """

    def __init__(self, connection: Any, max_open_statements: int | None = None) -> None:
        self.connection = connection
        self.max_open_statements = max_open_statements
        self._lock = threading.RLock()
        self._in_use: dict[int, CompiledStatement] = {}
        self.closed = False

    @property
    def open_count(self) -> int:
        """Live cursors held by this cache (in use or parked)."""
        with self._lock:
            return len(self._in_use)

    def acquire(self, sql: str, ctx: 'StatementContext') -> CompiledStatement:
        """Return a cursor for ``sql`` and register its release with ``ctx``.

        Raises
            ResourceExhausted: if the live cursor ceiling is reached or the
                driver refuses to open another cursor
        """
        with self._lock:
            if self.closed:
                raise StatementError('Statement cache is closed', sql)
            compiled = self._take(sql)
            if compiled is None:
                self._check_ceiling(sql)
                compiled = CompiledStatement(self._open_cursor(sql), sql)
            self._in_use[id(compiled)] = compiled
        ctx.add_cleanable(lambda: self.release(compiled))
        return compiled

    def _take(self, sql: str) -> CompiledStatement | None:
        return None

    def _check_ceiling(self, sql: str) -> None:
        if self.max_open_statements is not None and self.open_count >= self.max_open_statements:
            raise ResourceExhausted(
                f'Too many open statements on this handle '
                f'({self.open_count} open, limit {self.max_open_statements})', sql)

    def _open_cursor(self, sql: str) -> Any:
        try:
            return self.connection.cursor()
        except Exception as e:
            if is_resource_exhausted(e):
                raise ResourceExhausted(f'Driver refused to open a statement: {e}', sql) from e
            raise StatementError(f'Could not open a statement: {e}', sql) from e

    def release(self, compiled: CompiledStatement) -> None:
        """Return a cursor acquired from this cache; releasing twice is a no-op."""
        with self._lock:
            if self._in_use.pop(id(compiled), None) is None:
                return
        compiled.close()

    def close(self) -> None:
        """Close every cursor still held. Safe to call more than once."""
        with self._lock:
            if self.closed:
                return
            self.closed = True
            remaining = list(self._in_use.values())
            self._in_use.clear()
        for compiled in remaining:
            compiled.close()
        if remaining:
            logger.debug(f'Closed {len(remaining)} statements still in use')


class CachingStatementCache(StatementCache):
    """Per-handle cursor source that reuses cursors for identical SQL.

    Released cursors are parked by SQL text and handed out again. Parked
    cursors count against ``max_open_statements``; at the ceiling the
    oldest parked cursor is closed to make room, so only cursors that are
    actually in use can exhaust it.
    """

    def __init__(self, connection: Any, max_open_statements: int | None = None) -> None:
        super().__init__(connection, max_open_statements)
        self._idle: dict[str, list[CompiledStatement]] = defaultdict(list)
        self._parked: OrderedDict[int, CompiledStatement] = OrderedDict()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    @property
    def open_count(self) -> int:
        with self._lock:
            return len(self._in_use) + len(self._parked)

    @property
    def idle_count(self) -> int:
        with self._lock:
            return len(self._parked)

    def _take(self, sql: str) -> CompiledStatement | None:
        idle = self._idle.get(sql)
        if idle:
            self.hits += 1
            compiled = idle.pop()
            del self._parked[id(compiled)]
            return compiled
        self.misses += 1
        return None

    def _check_ceiling(self, sql: str) -> None:
        if self.max_open_statements is not None:
            while self.open_count >= self.max_open_statements and self._parked:
                self._evict_oldest()
        super()._check_ceiling(sql)

    def _open_cursor(self, sql: str) -> Any:
        while True:
            try:
                return super()._open_cursor(sql)
            except ResourceExhausted:
                if not self._parked:
                    raise
                self._evict_oldest()

    def _evict_oldest(self) -> None:
        _, compiled = self._parked.popitem(last=False)
        idle = self._idle[compiled.sql]
        idle.remove(compiled)
        if not idle:
            del self._idle[compiled.sql]
        self.evictions += 1
        logger.debug(f'Evicting cached statement to stay under the limit: {compiled.sql!r}')
        compiled.close()

    def release(self, compiled: CompiledStatement) -> None:
        with self._lock:
            if self._in_use.pop(id(compiled), None) is None:
                return
            if not self.closed and not compiled.closed:
                self._idle[compiled.sql].append(compiled)
                self._parked[id(compiled)] = compiled
                return
        compiled.close()

    def close(self) -> None:
        with self._lock:
            if self.closed:
                return
            idle = list(self._parked.values())
            self._idle.clear()
            self._parked.clear()
        super().close()
        for compiled in idle:
            compiled.close()
        logger.debug(f'Statement cache closed: {self.hits} hits, {self.misses} misses, '
                     f'{self.evictions} evicted, {len(idle)} cached statements released')


def default_statement_cache_factory(connection: Any, options: 'HandleOptions') -> StatementCache:
    """Build the cache a new handle uses, per its options."""
    cls = CachingStatementCache if options.cache_statements else StatementCache
    return cls(connection, options.max_open_statements)
