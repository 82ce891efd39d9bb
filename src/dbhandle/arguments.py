"""
Argument binding: from caller-supplied values to driver parameters.

Two layers take part in every execution:

1. ``Binding`` collects what the caller bound on a statement: values by
   position, values by name, and named-argument finders (mappings or
   objects whose attributes, fields or zero-argument methods supply
   values). Names are resolved at execution time, explicit binds first,
   then finders in the order they were added; the first match wins.

2. ``Arguments`` turns a raw value into an immutable ``Argument`` through
   an ordered chain of type-specific converters (registered converters,
   enums, NumPy/pandas/PyArrow scalars, driver-specific adaptation).

Nested names such as ``my.nested.id`` are resolved one segment at a time.
A ``None`` in the middle of a path is an error unless the segment is
marked nullable in the SQL (``:my.nested?.id``), in which case the whole
parameter binds as SQL NULL.
"""
import inspect
import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol

from dbhandle.exceptions import BindingError
from dbhandle.options import EnumStrategy
from dbhandle.sql import PathSegment, split_path
from dbhandle.types import TypeConverter

if TYPE_CHECKING:
    from dbhandle.sql import ParsedParameter
    from dbhandle.statement import StatementContext

logger = logging.getLogger(__name__)

__all__ = [
    'Argument',
    'ListArgument',
    'Arguments',
    'NamedArgumentFinder',
    'MapArguments',
    'PropertyArguments',
    'FieldArguments',
    'MethodArguments',
    'Binding',
]

_MISSING = object()


@dataclass(frozen=True, slots=True)
class Argument:
    """A resolved value ready to be applied at a parameter position."""
    value: Any

    @property
    def size(self) -> int:
        return 1

    def apply(self, params: list[Any]) -> None:
        """Append this argument to the driver parameter list."""
        params.append(self.value)


@dataclass(frozen=True, slots=True)
class ListArgument:
    """A sequence of resolved values expanded into consecutive positions."""
    values: tuple[Any, ...]

    @property
    def size(self) -> int:
        return len(self.values)

    def apply(self, params: list[Any]) -> None:
        params.extend(self.values)


NULL = Argument(None)


class Arguments:
    """Ordered chain of converters producing driver-ready arguments.

    Converters registered for an exact type win over converters registered
    for a base class; among base-class converters the most recently
    registered is tried first.
    """

    def __init__(self) -> None:
        self._exact: dict[type, Callable[[Any], Any]] = {}
        self._by_base: list[tuple[type, Callable[[Any], Any]]] = []

    def register(self, type_: type, converter: Callable[[Any], Any],
                 exact: bool = False) -> 'Arguments':
        """Register a converter from values of ``type_`` to driver values.
        """
        if exact:
            self._exact[type_] = converter
        else:
            self._by_base.insert(0, (type_, converter))
        return self

    def copy(self) -> 'Arguments':
        clone = Arguments()
        clone._exact = dict(self._exact)
        clone._by_base = list(self._by_base)
        return clone

    def convert(self, value: Any, ctx: 'StatementContext') -> Any:
        """Run a single raw value through the converter chain."""
        if value is None:
            return None

        converter = self._exact.get(type(value))
        if converter is None:
            for base, candidate in self._by_base:
                if isinstance(value, base):
                    converter = candidate
                    break
        if converter is not None:
            value = converter(value)
            if value is None:
                return None

        if isinstance(value, Enum):
            if ctx.options.enum_strategy is EnumStrategy.BY_ORDINAL:
                return list(type(value)).index(value)
            return value.name

        value = TypeConverter.convert_value(value)
        return ctx.strategy.adapt_value(value)

    def find_for(self, value: Any, ctx: 'StatementContext') -> Argument | ListArgument:
        """Build the Argument for a raw value."""
        if isinstance(value, Argument | ListArgument):
            return value
        if value is None:
            return NULL
        return Argument(self.convert(value, ctx))

    def find_for_list(self, values: Sequence[Any], ctx: 'StatementContext') -> ListArgument:
        return ListArgument(tuple(self.convert(v, ctx) for v in values))


class NamedArgumentFinder(Protocol):
    """Given a name and a context, optionally produce an Argument."""

    def find(self, name: str, ctx: 'StatementContext') -> Argument | None:
        ...

    def names(self) -> list[str]:
        ...


class _PathArguments:
    """Shared nested-path resolution for the finder variants.

    Subclasses implement ``_get(obj, name)`` returning the value or
    ``_MISSING``; the same accessor is used at every level of the path.
    """

    kind = 'object'

    def __init__(self, prefix: str | None, obj: Any) -> None:
        self.prefix = prefix or None
        self.obj = obj
        self._prefix_path = tuple(p for p in (prefix or '').split('.') if p)

    def _get(self, obj: Any, name: str) -> Any:
        raise NotImplementedError

    def _strip_prefix(self, path: tuple[PathSegment, ...]) -> tuple[PathSegment, ...] | None:
        n = len(self._prefix_path)
        if not n:
            return path
        if len(path) <= n or tuple(s.name for s in path[:n]) != self._prefix_path:
            return None
        return path[n:]

    def find(self, name: str, ctx: 'StatementContext') -> Argument | None:
        path = split_path(name)
        rest = self._strip_prefix(path)
        if rest is None:
            return None

        value = self.obj
        # the prefix itself may be marked nullable: :my?.id
        parent = path[len(self._prefix_path) - 1] if self._prefix_path else None
        for segment in rest:
            if value is None:
                if parent is not None and parent.nullable:
                    return NULL
                raise BindingError(
                    f"Cannot resolve '{name}': '{parent.name if parent else self.prefix}' "
                    f'is None (mark it nullable with a ? suffix to bind NULL)')
            value = self._get(value, segment.name)
            if value is _MISSING:
                return None
            parent = segment
        return ctx.arguments.find_for(value, ctx)

    def names(self) -> list[str]:
        names = self._names()
        if self.prefix:
            return [f'{self.prefix}.{n}' for n in names]
        return names

    def _names(self) -> list[str]:
        return []

    def __repr__(self) -> str:
        return f'{type(self).__name__}(prefix={self.prefix!r}, {self.kind}={self.obj!r})'


class MapArguments(_PathArguments):
    """Resolve names as keys of a mapping.

    A key containing dots is matched as a whole before the name is
    treated as a path into nested mappings or objects.
    """

    kind = 'map'

    def __init__(self, prefix: str | None, mapping: Mapping[str, Any]) -> None:
        super().__init__(prefix, mapping)

    def find(self, name: str, ctx: 'StatementContext') -> Argument | None:
        if not self.prefix and '?' not in name and isinstance(self.obj, Mapping) and name in self.obj:
            return ctx.arguments.find_for(self.obj[name], ctx)
        return super().find(name, ctx)

    def _get(self, obj: Any, name: str) -> Any:
        if isinstance(obj, Mapping):
            return obj.get(name, _MISSING)
        return _public_attribute(obj, name)

    def _names(self) -> list[str]:
        return list(self.obj) if isinstance(self.obj, Mapping) else []


class PropertyArguments(_PathArguments):
    """Resolve names as attributes or properties of an object."""

    kind = 'bean'

    def _get(self, obj: Any, name: str) -> Any:
        if isinstance(obj, Mapping):
            return obj.get(name, _MISSING)
        value = _public_attribute(obj, name)
        if inspect.ismethod(value) or inspect.isbuiltin(value):
            return _MISSING
        return value

    def _names(self) -> list[str]:
        return [n for n in dir(self.obj)
                if not n.startswith('_') and not callable(getattr(self.obj, n, None))]


class FieldArguments(_PathArguments):
    """Resolve names as instance fields (``__dict__`` or ``__slots__``)."""

    kind = 'fields'

    def _get(self, obj: Any, name: str) -> Any:
        if name.startswith('_'):
            return _MISSING
        fields = getattr(obj, '__dict__', None)
        if fields is not None and name in fields:
            return fields[name]
        for cls in type(obj).__mro__:
            if name in getattr(cls, '__slots__', ()):
                return getattr(obj, name, _MISSING)
        return _MISSING

    def _names(self) -> list[str]:
        return [n for n in getattr(self.obj, '__dict__', {}) if not n.startswith('_')]


class MethodArguments(_PathArguments):
    """Resolve names by calling zero-argument methods of an object."""

    kind = 'methods'

    def _get(self, obj: Any, name: str) -> Any:
        method = _public_attribute(obj, name)
        if method is _MISSING or not callable(method):
            return _MISSING
        try:
            signature = inspect.signature(method)
        except (TypeError, ValueError):
            return _MISSING
        required = [p for p in signature.parameters.values()
                    if p.default is p.empty
                    and p.kind not in (p.VAR_POSITIONAL, p.VAR_KEYWORD)]
        if required:
            return _MISSING
        return method()

    def _names(self) -> list[str]:
        return [n for n in dir(self.obj)
                if not n.startswith('_') and callable(getattr(self.obj, n, None))]


def _public_attribute(obj: Any, name: str) -> Any:
    if name.startswith('_'):
        return _MISSING
    try:
        return getattr(obj, name)
    except AttributeError:
        return _MISSING


class Binding:
    """Values and finders bound on one statement.

    Holds raw values; conversion to ``Argument`` happens at execution
    time so finders and converters added later still apply.
    """

    def __init__(self) -> None:
        self._positional: dict[int, Any] = {}
        self._named: dict[str, Any] = {}
        self._lists: dict[str, tuple[Any, ...]] = {}
        self._finders: list[NamedArgumentFinder] = []

    def add_positional(self, position: int, value: Any) -> None:
        if position < 0:
            raise IndexError(f'Positional parameter index must be >= 0, got {position}')
        self._positional[position] = value

    def add_named(self, name: str, value: Any) -> None:
        self._named[name] = value

    def add_list(self, name: str, values: Sequence[Any]) -> None:
        self._lists[name] = tuple(values)

    def add_named_argument_finder(self, finder: NamedArgumentFinder) -> None:
        self._finders.append(finder)

    @property
    def finders(self) -> list[NamedArgumentFinder]:
        return list(self._finders)

    def list_sizes(self) -> dict[str, int]:
        return {name: len(values) for name, values in self._lists.items()}

    def is_empty(self) -> bool:
        return not (self._positional or self._named or self._lists or self._finders)

    def clear(self) -> None:
        self._positional.clear()
        self._named.clear()
        self._lists.clear()
        self._finders.clear()

    def copy(self) -> 'Binding':
        clone = Binding()
        clone._positional = dict(self._positional)
        clone._named = dict(self._named)
        clone._lists = dict(self._lists)
        clone._finders = list(self._finders)
        return clone

    def find_for_position(self, position: int, ctx: 'StatementContext') -> Argument | None:
        if position not in self._positional:
            return None
        return ctx.arguments.find_for(self._positional[position], ctx)

    def find_for_name(self, param: 'ParsedParameter', ctx: 'StatementContext') -> Argument | ListArgument | None:
        """Resolve a named placeholder: explicit binds first, then finders in order."""
        if param.name in self._lists:
            return ctx.arguments.find_for_list(self._lists[param.name], ctx)
        if param.name in self._named:
            return ctx.arguments.find_for(self._named[param.name], ctx)
        for finder in self._finders:
            argument = finder.find(param.raw_name, ctx)
            if argument is not None:
                return argument
        return None

    def resolve(self, params: Sequence['ParsedParameter'], ctx: 'StatementContext') -> list[Argument | ListArgument]:
        """Resolve every placeholder of a parsed statement, in order.

        Raises
            BindingError: if any placeholder has no value
        """
        resolved: list[Argument | ListArgument] = []
        for param in params:
            if param.positional:
                argument = self.find_for_position(param.index, ctx)
                if argument is None:
                    raise BindingError(
                        f'Missing positional parameter {param.index} in statement: {ctx.raw_sql}')
            else:
                argument = self.find_for_name(param, ctx)
                if argument is None:
                    raise BindingError(
                        f"Missing named parameter '{param.name}' in statement: {ctx.raw_sql} "
                        f'(bound: {self.describe()})')
            resolved.append(argument)
        return resolved

    def describe(self) -> str:
        parts = [f'{i}={v!r}' for i, v in sorted(self._positional.items())]
        parts += [f'{k}={v!r}' for k, v in self._named.items()]
        parts += [f'{k}=<list[{len(v)}]>' for k, v in self._lists.items()]
        parts += [repr(f) for f in self._finders]
        return '{' + ', '.join(parts) + '}'

    def __repr__(self) -> str:
        return f'Binding{self.describe()}'
