"""
Extensions: typed objects that run their work on a handle.

An extension type is registered with a factory that ``accepts`` it and
can ``attach`` an instance to a handle supplier. ``SqlObject`` subclasses
are the built-in kind: methods decorated with ``sql_update``,
``sql_query`` or ``sql_batch`` become statements when the class is
defined, and plain methods can use ``self.handle`` directly.

Examples
    class Something(SqlObject):

        @sql_update('insert into something (id, name) values (:id, :name)')
        def insert(self, id: int, name: str) -> int: ...

        @sql_query('select name from something where id = :id')
        def find_name(self, id: int) -> str | None: ...

    dbi.install_plugin(SqlObjectPlugin())
    dbi.on_demand(Something).insert(1, 'Brian')
"""
import collections.abc
import dataclasses
import functools
import inspect
import logging
import threading
import types
import typing
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator, Mapping
from typing import TYPE_CHECKING, Any

import pandas as pd
from dbhandle.exceptions import BindingError, NoSuchExtensionError
from dbhandle.executor import ResultIterable

if TYPE_CHECKING:
    from dbhandle.dbi import Dbi
    from dbhandle.handle import Handle
    from dbhandle.scope import HandleSupplier
    from dbhandle.statement import SqlStatement

logger = logging.getLogger(__name__)

__all__ = [
    'ExtensionFactory',
    'SqlObjectFactory',
    'TypeExtensionFactory',
    'Extensions',
    'SqlObject',
    'sql_update',
    'sql_query',
    'sql_batch',
    'on_demand',
]


class ExtensionFactory(ABC):
    """Creates extension instances bound to a handle supplier."""

    @abstractmethod
    def accepts(self, extension_type: type) -> bool:
        ...

    @abstractmethod
    def attach(self, extension_type: type, handle_supplier: 'HandleSupplier') -> Any:
        ...


class TypeExtensionFactory(ExtensionFactory):
    """Factory for one extension type built by a callable."""

    def __init__(self, extension_type: type,
                 create: Callable[['HandleSupplier'], Any] | None = None) -> None:
        self.extension_type = extension_type
        self.create = create or extension_type

    def accepts(self, extension_type: type) -> bool:
        return extension_type is self.extension_type

    def attach(self, extension_type: type, handle_supplier: 'HandleSupplier') -> Any:
        return self.create(handle_supplier)


class SqlObjectFactory(ExtensionFactory):
    """Accepts every ``SqlObject`` subclass."""

    def accepts(self, extension_type: type) -> bool:
        return isinstance(extension_type, type) and issubclass(extension_type, SqlObject)

    def attach(self, extension_type: type, handle_supplier: 'HandleSupplier') -> Any:
        return extension_type(handle_supplier)


class Extensions:
    """Registry of extension factories; the most recently registered wins."""

    def __init__(self) -> None:
        self._factories: list[ExtensionFactory] = []
        self._lock = threading.Lock()

    def register(self, factory: ExtensionFactory) -> 'Extensions':
        with self._lock:
            self._factories.insert(0, factory)
        return self

    def find_factory(self, extension_type: type) -> ExtensionFactory:
        """Raises NoSuchExtensionError if no factory accepts the type."""
        with self._lock:
            factories = list(self._factories)
        for factory in factories:
            if factory.accepts(extension_type):
                return factory
        raise NoSuchExtensionError(extension_type)

    def has(self, extension_type: type) -> bool:
        try:
            self.find_factory(extension_type)
        except NoSuchExtensionError:
            return False
        return True


class SqlObject:
    """Base class for SQL objects.

    Instances hold a handle supplier; the handle is only obtained when a
    method first needs it.
    """

    def __init__(self, handle_supplier: 'HandleSupplier') -> None:
        self._handle_supplier = handle_supplier

    @property
    def handle(self) -> 'Handle':
        return self._handle_supplier.get_handle()


def _is_structured(value: Any) -> bool:
    return isinstance(value, Mapping) or (
        dataclasses.is_dataclass(value) and not isinstance(value, type))


def _bind_value(statement: 'SqlStatement', name: str, position: int, value: Any) -> None:
    if isinstance(value, list | tuple | set | frozenset):
        statement.bind_list(name, value)
    elif isinstance(value, Mapping):
        statement.bind_map(value, prefix=name)
    elif _is_structured(value):
        statement.bind_properties(value, prefix=name)
    else:
        statement.bind(name, value)
    statement.bind(position, value)


def _call_arguments(signature: inspect.Signature, args: tuple, kwargs: dict) -> list[tuple[str, Any]]:
    bound = signature.bind(*args, **kwargs)
    bound.apply_defaults()
    return list(bound.arguments.items())[1:]


def _bind_call(statement: 'SqlStatement', signature: inspect.Signature,
               args: tuple, kwargs: dict) -> None:
    for position, (name, value) in enumerate(_call_arguments(signature, args, kwargs)):
        _bind_value(statement, name, position, value)


def sql_update(sql: str, *, generated_keys: str | tuple[str, ...] | None = None):
    """Make a method execute ``sql`` with its arguments bound by name and position.

    Lists, tuples and sets are bound with ``bind_list``; mappings and
    dataclasses are bound with the argument name as prefix (``:s.id``).

    Returns the update count, or with ``generated_keys`` the generated
    value (one column) or dict of values (several columns) of the first
    affected row.
    """
    keys = (generated_keys,) if isinstance(generated_keys, str) else generated_keys

    def decorator(func: Callable) -> Callable:
        signature = inspect.signature(func)

        @functools.wraps(func)
        def wrapper(self: SqlObject, *args: Any, **kwargs: Any) -> Any:
            statement = self.handle.create_update(sql)
            _bind_call(statement, signature, (self, *args), kwargs)
            if keys is None:
                return statement.execute()
            row = statement.execute_and_return_generated_keys(*keys).find_first()
            if row is None or len(keys) != 1:
                return row
            return row[keys[0]] if keys[0] in row else next(iter(row.values()))
        wrapper.__sql__ = sql
        return wrapper
    return decorator


def _return_plan(func: Callable, map_to: type | None) -> tuple[str, type]:
    """Decide the terminal operation and element type from the return annotation.

    ``list[X]`` -> list, ``Iterator[X]`` -> iterator, ``ResultIterable[X]`` ->
    iterable, ``X | None`` -> find_one, ``pd.DataFrame`` -> dataframe,
    any other ``X`` -> one; no annotation -> list of dicts.
    """
    try:
        hint = typing.get_type_hints(func).get('return')
    except Exception:
        hint = None
    origin = typing.get_origin(hint)
    args = [a for a in typing.get_args(hint) if a is not type(None)]
    element = args[0] if args else dict

    if hint is None or hint is type(None):
        kind, element = 'list', dict
    elif hint is pd.DataFrame:
        kind = 'dataframe'
    elif origin in (list, collections.abc.Sequence):
        kind = 'list'
    elif origin in (collections.abc.Iterator, collections.abc.Iterable, collections.abc.Generator):
        kind = 'iterator'
    elif hint is ResultIterable or origin is ResultIterable:
        kind = 'iterable'
    elif origin in (typing.Union, types.UnionType) and type(None) in typing.get_args(hint):
        kind = 'find_one'
    else:
        kind, element = 'one', hint
    if map_to is not None:
        element = map_to
    return kind, element


def sql_query(sql: str, *, map_to: type | None = None):
    """Make a method run a query; the return annotation picks the result shape.
    """
    def decorator(func: Callable) -> Callable:
        signature = inspect.signature(func)
        plan: list[tuple[str, type]] = []

        @functools.wraps(func)
        def wrapper(self: SqlObject, *args: Any, **kwargs: Any) -> Any:
            if not plan:
                plan.append(_return_plan(func, map_to))
            kind, element = plan[0]
            query = self.handle.create_query(sql)
            _bind_call(query, signature, (self, *args), kwargs)
            if kind == 'dataframe':
                return query.to_dataframe()
            results = query.map_to(element)
            if kind == 'list':
                return results.list()
            if kind == 'iterator':
                return results.iterator()
            if kind == 'iterable':
                return results
            if kind == 'find_one':
                return results.find_one()
            return results.one()
        wrapper.__sql__ = sql
        return wrapper
    return decorator


def sql_batch(sql: str, *, batch_size: int = 500):
    """Make a method execute ``sql`` once per element of its list arguments.

    Arguments given as lists or tuples are iterated in step; other
    arguments are repeated for every row. Returns the total update count.
    """
    def decorator(func: Callable) -> Callable:
        signature = inspect.signature(func)

        @functools.wraps(func)
        def wrapper(self: SqlObject, *args: Any, **kwargs: Any) -> int:
            arguments = _call_arguments(signature, (self, *args), kwargs)
            sizes = {len(v) for _, v in arguments if isinstance(v, (list, tuple))}
            if len(sizes) > 1:
                raise BindingError(f'Batch arguments have different lengths: {sorted(sizes)}')
            rows = sizes.pop() if sizes else 1
            batch = self.handle.prepare_batch(sql, batch_size)
            for i in range(rows):
                for position, (name, value) in enumerate(arguments):
                    item = value[i] if isinstance(value, (list, tuple)) else value
                    _bind_value(batch, name, position, item)
                batch.add()
            return batch.execute()
        wrapper.__sql__ = sql
        return wrapper
    return decorator


def _materialize(result: Any) -> Any:
    """Read lazy results while the handle is still open."""
    if isinstance(result, ResultIterable):
        return result.list()
    if isinstance(result, Iterator):
        return list(result)
    return result


@functools.cache
def _on_demand_class(extension_type: type) -> type:
    """Build (once per type) a class whose public methods each run in their own unit of work.
    """
    namespace: dict[str, Any] = {}

    def make_method(name: str, original: Callable) -> Callable:
        @functools.wraps(original)
        def method(self, *args: Any, **kwargs: Any) -> Any:
            return self._dbi.with_extension(
                extension_type, lambda ext: _materialize(getattr(ext, name)(*args, **kwargs)))
        return method

    for name, member in inspect.getmembers(extension_type, callable):
        if name.startswith('_') or isinstance(member, type):
            continue
        namespace[name] = make_method(name, member)

    def __init__(self, dbi: 'Dbi') -> None:
        self._dbi = dbi

    def __repr__(self) -> str:
        return f'<on-demand {extension_type.__qualname__}>'

    namespace['__init__'] = __init__
    namespace['__repr__'] = __repr__
    namespace['handle'] = property(lambda self: _no_handle(extension_type))
    bases = (extension_type,) if isinstance(extension_type, type) else ()
    return type(f'OnDemand{extension_type.__name__}', bases, namespace)


def _no_handle(extension_type: type) -> Any:
    raise BindingError(f'On-demand {extension_type.__qualname__} has no handle outside a method call')


def on_demand(dbi: 'Dbi', extension_type: type) -> Any:
    """Return an object whose every public method opens, uses and closes a handle.

    Raises
        NoSuchExtensionError: immediately, if the type is not registered
    """
    dbi.extensions.find_factory(extension_type)
    return _on_demand_class(extension_type)(dbi)
