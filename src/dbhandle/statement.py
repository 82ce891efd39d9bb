"""
Statements built from a handle.

Every statement collects bindings, defined attributes and customizers,
and creates a fresh ``StatementContext`` for each execution. The context
holds everything one execution acquires (its cursor and, for queries,
its result iterator) and releases it exactly once, when the execution
finishes, the caller closes the results, or the handle closes.

Execution pipeline:

    SQL template -> defines (<name>) -> parse (cached) -> resolve arguments
    -> render native placeholders -> acquire cursor -> execute

Examples
    handle.create_update('insert into something (id, name) values (:id, :name)') \\
        .bind('id', 1).bind('name', 'Brian').execute()

    handle.create_query('select name from something where id = :id') \\
        .bind('id', 1).map_to(str).one()

    handle.prepare_batch('insert into something (id, name) values (:id, :name)') \\
        .add({'id': 1, 'name': 'Eric'}).add({'id': 2, 'name': 'Brian'}).execute()
"""
import logging
import re
from collections.abc import Callable, Iterable, Mapping, Sequence
from typing import TYPE_CHECKING, Any, Self, TypeVar

import pandas as pd
from dbhandle.arguments import Binding, FieldArguments, ListArgument
from dbhandle.arguments import MapArguments, MethodArguments
from dbhandle.arguments import NamedArgumentFinder, PropertyArguments
from dbhandle.exceptions import BindingError, StatementError, ValidationError
from dbhandle.exceptions import add_suppressed
from dbhandle.executor import FetchedRows, ResultIterable, ResultIterator
from dbhandle.mapper import RowMapper, dict_row_mapper, tuple_row_mapper
from dbhandle.types import Column

if TYPE_CHECKING:
    from dbhandle.arguments import Arguments
    from dbhandle.handle import Handle
    from dbhandle.mapper import Mappers
    from dbhandle.options import HandleOptions
    from dbhandle.sql import ParsedSql
    from dbhandle.strategy import DialectStrategy

logger = logging.getLogger(__name__)

__all__ = [
    'StatementContext',
    'SqlStatement',
    'Update',
    'Query',
    'Batch',
    'PreparedBatch',
]

T = TypeVar('T')

_DEFINE = re.compile(r'<(\w+)>')


def render_defines(sql: str, attributes: Mapping[str, Any]) -> str:
    """Substitute ``<name>`` with defined attributes; unknown names stay as written.

    >>> render_defines('select * from <table>', {'table': 'users'})
    'select * from users'
    """
    if not attributes:
        return sql
    return _DEFINE.sub(lambda m: str(attributes[m.group(1)]) if m.group(1) in attributes
                       else m.group(0), sql)


class StatementContext:
    """Everything one execution of a statement needs and holds.

    Never shared between executions. Cleanables run last-in first-out on
    ``close()``; errors are aggregated onto the first one raised.
    """

    def __init__(self, handle: 'Handle', raw_sql: str, binding: Binding,
                 attributes: dict[str, Any], options: 'HandleOptions') -> None:
        self.handle = handle
        self.raw_sql = raw_sql
        self.binding = binding
        self.attributes = attributes
        self.options = options
        self.parsed: 'ParsedSql | None' = None
        self.rendered_sql: str | None = None
        self.params: list[Any] = []
        self._cleanables: list[Callable[[], None]] = []
        self.closed = False

    @property
    def strategy(self) -> 'DialectStrategy':
        return self.handle.strategy

    @property
    def connection(self) -> Any:
        return self.handle.connection

    @property
    def arguments(self) -> 'Arguments':
        return self.handle.arguments

    @property
    def mappers(self) -> 'Mappers':
        return self.handle.mappers

    @property
    def query_timeout(self) -> float | None:
        return self.options.query_timeout

    def add_cleanable(self, cleanable: Callable[[], None]) -> None:
        if self.closed:
            raise ValidationError('Statement context is already closed')
        self._cleanables.append(cleanable)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        primary: BaseException | None = None
        while self._cleanables:
            cleanable = self._cleanables.pop()
            try:
                cleanable()
            except Exception as e:
                if primary is None:
                    primary = e
                else:
                    add_suppressed(primary, e)
        self.handle.forget_context(self)
        if primary is not None:
            raise primary

    def __enter__(self) -> Self:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        close_after(self, exc_val)

    def __repr__(self) -> str:
        return f'StatementContext(sql={self.raw_sql!r}, closed={self.closed})'


def close_after(resource: Any, error: BaseException | None) -> None:
    """Close ``resource``; if ``error`` is propagating, attach a close failure to it."""
    if error is None:
        resource.close()
        return
    try:
        resource.close()
    except Exception as close_error:
        add_suppressed(error, close_error)


class SqlStatement:
    """Base for statements that bind arguments.

    Bindings are copied into each execution's context, so a statement
    can be executed again with changed or additional bindings.
    """

    def __init__(self, handle: 'Handle', sql: str) -> None:
        handle.check_open()
        self.handle = handle
        self.sql = sql
        self.binding = Binding()
        self.options = handle.options.copy()
        self.attributes: dict[str, Any] = dict(self.options.attributes)
        self._customizers: list[Callable[[StatementContext], None]] = []
        self._contexts: list[StatementContext] = []

    def bind(self, key: str | int, value: Any) -> Self:
        """Bind a value by name (``:name``) or zero-based position (``?``)."""
        if isinstance(key, int):
            self.binding.add_positional(key, value)
        else:
            self.binding.add_named(key, value)
        return self

    def bind_positional(self, *values: Any) -> Self:
        for position, value in enumerate(values):
            self.binding.add_positional(position, value)
        return self

    def bind_list(self, name: str, values: Iterable[Any]) -> Self:
        """Bind a collection to ``:name``, expanded to one placeholder per element."""
        self.binding.add_list(name, list(values))
        return self

    def bind_map(self, mapping: Mapping[str, Any], prefix: str | None = None) -> Self:
        self.binding.add_named_argument_finder(MapArguments(prefix, mapping))
        return self

    def bind_properties(self, obj: Any, prefix: str | None = None) -> Self:
        """Bind attributes and properties of ``obj`` (``:name`` or ``:prefix.name``)."""
        self.binding.add_named_argument_finder(PropertyArguments(prefix, obj))
        return self

    def bind_fields(self, obj: Any, prefix: str | None = None) -> Self:
        self.binding.add_named_argument_finder(FieldArguments(prefix, obj))
        return self

    def bind_methods(self, obj: Any, prefix: str | None = None) -> Self:
        """Bind the results of zero-argument methods of ``obj``."""
        self.binding.add_named_argument_finder(MethodArguments(prefix, obj))
        return self

    def bind_named_argument_finder(self, finder: NamedArgumentFinder) -> Self:
        self.binding.add_named_argument_finder(finder)
        return self

    def define(self, key: str, value: Any) -> Self:
        """Set an attribute; ``<key>`` in the SQL text is replaced with it."""
        self.attributes[key] = value
        return self

    def set_query_timeout(self, seconds: float | None) -> Self:
        if seconds is not None and seconds <= 0:
            raise ValueError('query timeout must be positive or None')
        self.options.query_timeout = seconds
        return self

    def add_customizer(self, customizer: Callable[[StatementContext], None]) -> Self:
        """Run ``customizer(ctx)`` after rendering, right before each execution."""
        self._customizers.append(customizer)
        return self

    def _create_context(self) -> StatementContext:
        self.handle.check_open()
        ctx = StatementContext(self.handle, self.sql, self.binding.copy(),
                               dict(self.attributes), self.options.copy())
        self.handle.register_context(ctx)
        self._contexts = [c for c in self._contexts if not c.closed]
        self._contexts.append(ctx)
        return ctx

    def _render(self, ctx: StatementContext, returning: tuple[str, ...] | None = None) -> None:
        ctx.parsed = self.handle.parser.parse(render_defines(ctx.raw_sql, ctx.attributes))
        arguments = ctx.binding.resolve(ctx.parsed.parameters, ctx)
        list_sizes = {p.name: a.size for p, a in zip(ctx.parsed.parameters, arguments)
                      if isinstance(a, ListArgument)}
        rendered = ctx.parsed.render(ctx.strategy, list_sizes)
        if returning is not None:
            rendered = ctx.strategy.returning_sql(rendered, returning)
        ctx.rendered_sql = rendered
        ctx.params = []
        for argument in arguments:
            argument.apply(ctx.params)

    def _customize(self, ctx: StatementContext) -> None:
        for customizer in self._customizers:
            customizer(ctx)

    def _execute(self, returning: tuple[str, ...] | None = None) -> tuple[StatementContext, Any]:
        ctx = self._create_context()
        try:
            self._render(ctx, returning)
            self._customize(ctx)
            compiled = self.handle.statement_cache.acquire(ctx.rendered_sql, ctx)
            cursor = self.handle.executor.execute(ctx, compiled, ctx.params)
        except BaseException as e:
            close_after(ctx, e)
            raise
        return ctx, cursor

    def close(self) -> None:
        """Close any execution of this statement whose results are still open."""
        contexts, self._contexts = self._contexts, []
        primary: BaseException | None = None
        for ctx in contexts:
            try:
                ctx.close()
            except Exception as e:
                if primary is None:
                    primary = e
                else:
                    add_suppressed(primary, e)
        if primary is not None:
            raise primary

    def __enter__(self) -> Self:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        close_after(self, exc_val)

    def __repr__(self) -> str:
        return f'{type(self).__name__}({self.sql!r}, binding={self.binding!r})'


class Update(SqlStatement):
    """Insert, update, delete and DDL statements."""

    def execute(self) -> int:
        """Execute and return the number of affected rows."""
        ctx, cursor = self._execute()
        try:
            count = self.handle.executor.update_count(cursor)
        except BaseException as e:
            close_after(ctx, e)
            raise
        ctx.close()
        return count

    def execute_and_return_generated_keys(self, *columns: str) -> ResultIterable[dict[str, Any]]:
        """Execute and expose the generated keys of the affected rows.

        The statement runs immediately; the returned rows can be read once.
        With RETURNING support the named columns (every column when none
        are named) of all affected rows are returned. Otherwise the driver's
        ``lastrowid`` is returned as one row, under the single requested
        column name (``id`` when none is named).

        Raises
            StatementError: if several columns are requested from a driver
                without RETURNING support
        """
        if self.handle.strategy.supports_returning:
            ctx, cursor = self._execute(returning=tuple(columns))
            try:
                iterator = self.handle.executor.results(ctx, cursor, dict_row_mapper)
            except BaseException as e:
                close_after(ctx, e)
                raise
        else:
            iterator = self._last_row_id(columns)
        consumed = False

        def supplier() -> ResultIterator | FetchedRows:
            nonlocal consumed
            if consumed:
                raise ValidationError('Generated keys were already read')
            consumed = True
            return iterator
        return ResultIterable(supplier)

    def _last_row_id(self, columns: tuple[str, ...]) -> FetchedRows:
        if len(columns) > 1:
            raise StatementError(f'{self.handle.dialect} cannot return {len(columns)} generated '
                                 f'columns without RETURNING', self.sql)
        name = columns[0] if columns else 'id'
        ctx, cursor = self._execute()
        try:
            count = self.handle.executor.update_count(cursor)
            row_id = getattr(cursor, 'lastrowid', None)
        except BaseException as e:
            close_after(ctx, e)
            raise
        ctx.close()
        rows = [{name: row_id}] if count != 0 and row_id is not None else []
        return FetchedRows(rows, [Column(name)])


class Query(SqlStatement):
    """Statements returning rows.

    Mapping methods return a ``ResultIterable``: nothing runs until one of
    its terminal operations is called. The shortcuts ``list``, ``one``,
    ``first``, ``find_one``, ``find_first`` and ``iterator`` map rows to
    dicts.
    """

    def set_fetch_size(self, fetch_size: int) -> Self:
        if fetch_size < 1:
            raise ValueError('fetch_size must be positive')
        self.options.fetch_size = fetch_size
        return self

    def map(self, mapper: RowMapper) -> ResultIterable:
        """Map rows with ``mapper(row, ctx)``."""
        return ResultIterable(lambda: self._iterate(mapper))

    def map_to(self, type_: type[T]) -> ResultIterable[T]:
        """Map rows to ``type_`` with the registered or inferred mapper."""
        return self.map(self.handle.mappers.find_row_mapper(type_))

    def map_to_bean(self, cls: type[T]) -> ResultIterable[T]:
        return self.map(self.handle.mappers.bean_mapper(cls))

    def map_to_dict(self) -> ResultIterable[dict[str, Any]]:
        return self.map(dict_row_mapper)

    def _iterate(self, mapper: RowMapper) -> ResultIterator:
        ctx, cursor = self._execute()
        try:
            return self.handle.executor.results(ctx, cursor, mapper)
        except BaseException as e:
            close_after(ctx, e)
            raise

    def iterator(self) -> ResultIterator[dict[str, Any]]:
        return self.map_to_dict().iterator()

    def list(self) -> list[dict[str, Any]]:
        return self.map_to_dict().list()

    def one(self) -> dict[str, Any]:
        return self.map_to_dict().one()

    def first(self) -> dict[str, Any]:
        return self.map_to_dict().first()

    def find_one(self) -> dict[str, Any] | None:
        return self.map_to_dict().find_one()

    def find_first(self) -> dict[str, Any] | None:
        return self.map_to_dict().find_first()

    def to_dataframe(self) -> pd.DataFrame:
        """Collect all rows into a DataFrame named after the result columns."""
        return self.map(tuple_row_mapper).to_dataframe()


class Batch:
    """Several SQL statements without parameters, executed in order.
    """

    def __init__(self, handle: 'Handle') -> None:
        handle.check_open()
        self.handle = handle
        self.parts: list[str] = []
        self.options = handle.options.copy()
        self.attributes: dict[str, Any] = dict(self.options.attributes)

    def add(self, sql: str) -> Self:
        self.parts.append(sql)
        return self

    def define(self, key: str, value: Any) -> Self:
        self.attributes[key] = value
        return self

    def execute(self) -> list[int]:
        """Execute every part; return the update count of each."""
        if not self.parts:
            return []
        self.handle.check_open()
        ctx = StatementContext(self.handle, ';\n'.join(self.parts), Binding(),
                               dict(self.attributes), self.options.copy())
        self.handle.register_context(ctx)
        counts: list[int] = []
        try:
            for sql in self.parts:
                parsed = self.handle.parser.parse(render_defines(sql, ctx.attributes))
                if parsed.parameters:
                    raise BindingError(f'Batch statements take no parameters, use prepare_batch: {sql}')
                ctx.parsed = parsed
                ctx.rendered_sql = parsed.render(ctx.strategy)
                compiled = self.handle.statement_cache.acquire(ctx.rendered_sql, ctx)
                cursor = self.handle.executor.execute(ctx, compiled, ())
                counts.append(self.handle.executor.update_count(cursor))
                self.handle.statement_cache.release(compiled)
        except BaseException as e:
            close_after(ctx, e)
            raise
        ctx.close()
        return counts

    def __repr__(self) -> str:
        return f'Batch({len(self.parts)} statements)'


class PreparedBatch(SqlStatement):
    """One statement executed for many sets of bindings.

    Bind values, then ``add()`` to record them as one row of the batch;
    ``add(mapping)`` binds and records in one call. Rows are sent with
    ``executemany`` in chunks of ``batch_size``.
    """

    def __init__(self, handle: 'Handle', sql: str, batch_size: int = 500) -> None:
        super().__init__(handle, sql)
        self.batch_size = batch_size
        self._rows: list[Binding] = []

    def add(self, values: Mapping[str, Any] | Sequence[Any] | None = None) -> Self:
        """Record the current bindings as one row and start a new one."""
        if isinstance(values, Mapping):
            self.bind_map(values)
        elif values is not None:
            self.bind_positional(*values)
        self._rows.append(self.binding)
        self.binding = Binding()
        return self

    def size(self) -> int:
        return len(self._rows)

    def execute(self) -> int:
        """Execute every recorded row; return the total update count.
        """
        if not self.binding.is_empty():
            self.add()
        if not self._rows:
            return 0
        rows, self._rows = self._rows, []

        ctx = self._create_context()
        try:
            parsed = self.handle.parser.parse(render_defines(ctx.raw_sql, ctx.attributes))
            ctx.parsed = parsed
            groups: list[tuple[str, list[list[Any]]]] = []
            for binding in rows:
                ctx.binding = binding
                arguments = binding.resolve(parsed.parameters, ctx)
                list_sizes = {p.name: a.size for p, a in zip(parsed.parameters, arguments)
                              if isinstance(a, ListArgument)}
                rendered = parsed.render(ctx.strategy, list_sizes)
                params: list[Any] = []
                for argument in arguments:
                    argument.apply(params)
                if groups and groups[-1][0] == rendered:
                    groups[-1][1].append(params)
                else:
                    groups.append((rendered, [params]))
            self._customize(ctx)
            total = 0
            for rendered, seq_of_parameters in groups:
                ctx.rendered_sql = rendered
                compiled = self.handle.statement_cache.acquire(rendered, ctx)
                total += self.handle.executor.execute_many(ctx, compiled, seq_of_parameters,
                                                           self.batch_size)
                self.handle.statement_cache.release(compiled)
        except BaseException as e:
            close_after(ctx, e)
            raise
        ctx.close()
        return total
