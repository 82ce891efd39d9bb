"""
Row and column mapping.

A row mapper turns one result row into a value; a column mapper turns
one column value into a value. ``Mappers`` is the registry a Dbi owns
(each handle gets a copy) and picks a mapper for a requested type:

1. a row mapper registered for the exact type
2. ``dict``: column name to value
3. a column mapper (registered, enum, or builtin scalar) applied to the
   first column
4. a bean mapper: dataclasses get constructor keywords, other classes are
   instantiated without arguments and receive attributes
"""
import dataclasses
import datetime
import decimal
import logging
import typing
import uuid
from collections.abc import Callable
from enum import Enum
from typing import TYPE_CHECKING, Any

import dateutil.parser
from dbhandle.exceptions import TypeConversionError
from dbhandle.options import EnumStrategy
from dbhandle.types import RowAdapter

if TYPE_CHECKING:
    from dbhandle.statement import StatementContext

logger = logging.getLogger(__name__)

__all__ = [
    'RowMapper',
    'ColumnMapper',
    'Mappers',
    'BeanMapper',
    'SingleColumnMapper',
    'dict_row_mapper',
    'tuple_row_mapper',
    'enum_column_mapper',
]

RowMapper = Callable[[RowAdapter, 'StatementContext'], Any]
ColumnMapper = Callable[[Any, 'StatementContext'], Any]


def dict_row_mapper(row: RowAdapter, ctx: 'StatementContext') -> dict[str, Any]:
    return row.to_dict()


def tuple_row_mapper(row: RowAdapter, ctx: 'StatementContext') -> tuple:
    return tuple(row.row)


def _to_date(value: Any) -> datetime.date:
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, datetime.date):
        return value
    return dateutil.parser.isoparse(str(value)).date()


def _to_datetime(value: Any) -> datetime.datetime:
    if isinstance(value, datetime.datetime):
        return value
    if isinstance(value, datetime.date):
        return datetime.datetime.combine(value, datetime.time())
    return dateutil.parser.isoparse(str(value))


def _to_time(value: Any) -> datetime.time:
    if isinstance(value, datetime.time):
        return value
    return datetime.time.fromisoformat(str(value))


def _to_bytes(value: Any) -> bytes:
    if isinstance(value, str):
        return value.encode()
    return bytes(value)


def _to_uuid(value: Any) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    if isinstance(value, bytes):
        return uuid.UUID(bytes=value)
    return uuid.UUID(str(value))


_BUILTIN_CONVERTERS: dict[type, Callable[[Any], Any]] = {
    int: int,
    float: float,
    str: str,
    bool: bool,
    bytes: _to_bytes,
    decimal.Decimal: lambda v: decimal.Decimal(str(v)),
    datetime.date: _to_date,
    datetime.datetime: _to_datetime,
    datetime.time: _to_time,
    uuid.UUID: _to_uuid,
}


def _null_safe(convert: Callable[[Any], Any]) -> ColumnMapper:
    def mapper(value: Any, ctx: 'StatementContext') -> Any:
        if value is None:
            return None
        return convert(value)
    return mapper


def enum_column_mapper(enum_type: type[Enum]) -> ColumnMapper:
    """Map a column to an enum member, by name or ordinal per the handle options.

    Names match exactly first, then case-insensitively.
    """
    members = list(enum_type)

    def by_name(value: Any) -> Enum:
        name = str(value)
        member = enum_type.__members__.get(name)
        if member is not None:
            return member
        for candidate, member in enum_type.__members__.items():
            if candidate.lower() == name.lower():
                return member
        raise TypeConversionError(f'{value!r} is not a member name of {enum_type.__name__}')

    def by_ordinal(value: Any) -> Enum:
        try:
            return members[int(value)]
        except (IndexError, ValueError) as e:
            raise TypeConversionError(f'{value!r} is not an ordinal of {enum_type.__name__}') from e

    def mapper(value: Any, ctx: 'StatementContext') -> Enum | None:
        if value is None:
            return None
        if isinstance(value, enum_type):
            return value
        if ctx.options.enum_strategy is EnumStrategy.BY_ORDINAL:
            return by_ordinal(value)
        return by_name(value)

    return mapper


class SingleColumnMapper:
    """Row mapper applying a column mapper to one column (default: first)."""

    def __init__(self, column_mapper: ColumnMapper, column: str | int = 0) -> None:
        self.column_mapper = column_mapper
        self.column = column

    def __call__(self, row: RowAdapter, ctx: 'StatementContext') -> Any:
        return self.column_mapper(row.get_value(self.column), ctx)


def _normalize(name: str) -> str:
    return name.replace('_', '').lower()


class BeanMapper:
    """Map columns onto a class by name.

    Column names match attribute names ignoring case and underscores, so
    ``first_name`` and ``FIRSTNAME`` both fill ``first_name``. Columns
    without a matching attribute are ignored. Values are converted with
    the column mapper for the annotated attribute type where one exists.
    """

    def __init__(self, cls: type, mappers: 'Mappers') -> None:
        self.cls = cls
        self.mappers = mappers
        self.is_dataclass = dataclasses.is_dataclass(cls)
        try:
            hints = typing.get_type_hints(cls)
        except Exception:
            hints = dict(getattr(cls, '__annotations__', {}))
        if self.is_dataclass:
            names = [f.name for f in dataclasses.fields(cls) if f.init]
        else:
            names = list(hints)
        self._attrs = {_normalize(n): n for n in names}
        self._types = {n: _unwrap_optional(hints.get(n)) for n in names}

    def __call__(self, row: RowAdapter, ctx: 'StatementContext') -> Any:
        values: dict[str, Any] = {}
        for column, value in row.to_dict().items():
            attr = self._attrs.get(_normalize(column))
            if attr is None:
                if self.is_dataclass:
                    continue
                attr = column
            values[attr] = self._convert(attr, value, ctx)
        if self.is_dataclass:
            try:
                return self.cls(**values)
            except TypeError as e:
                raise TypeConversionError(f'Cannot build {self.cls.__name__} from columns '
                                          f'{list(values)}: {e}') from e
        bean = self.cls()
        for attr, value in values.items():
            setattr(bean, attr, value)
        return bean

    def _convert(self, attr: str, value: Any, ctx: 'StatementContext') -> Any:
        target = self._types.get(attr)
        if target is None or value is None or isinstance(value, target):
            return value
        mapper = self.mappers.find_column_mapper(target)
        if mapper is None:
            return value
        return mapper(value, ctx)


def _unwrap_optional(hint: Any) -> type | None:
    """``X | None`` -> ``X``; anything that is not a plain class -> None."""
    if hint is None:
        return None
    args = typing.get_args(hint)
    if args:
        concrete = [a for a in args if a is not type(None)]
        if len(concrete) == 1 and isinstance(concrete[0], type):
            return concrete[0]
        return None
    return hint if isinstance(hint, type) else None


class Mappers:
    """Registry of row and column mappers."""

    def __init__(self) -> None:
        self._row_mappers: dict[type, RowMapper] = {}
        self._column_mappers: dict[type, ColumnMapper] = {}
        self._beans: dict[type, BeanMapper] = {}

    def register_row_mapper(self, type_: type, mapper: RowMapper) -> 'Mappers':
        self._row_mappers[type_] = mapper
        return self

    def register_column_mapper(self, type_: type, mapper: ColumnMapper) -> 'Mappers':
        self._column_mappers[type_] = mapper
        self._beans.clear()
        return self

    def copy(self) -> 'Mappers':
        clone = Mappers()
        clone._row_mappers = dict(self._row_mappers)
        clone._column_mappers = dict(self._column_mappers)
        return clone

    def find_column_mapper(self, type_: type) -> ColumnMapper | None:
        if type_ in self._column_mappers:
            return self._column_mappers[type_]
        if isinstance(type_, type) and issubclass(type_, Enum):
            return enum_column_mapper(type_)
        convert = _BUILTIN_CONVERTERS.get(type_)
        if convert is not None:
            return _null_safe(convert)
        return None

    def find_row_mapper(self, type_: type) -> RowMapper:
        """Pick the row mapper for ``type_``.

        Raises
            TypeConversionError: if nothing can map rows to the type
        """
        if type_ in self._row_mappers:
            return self._row_mappers[type_]
        if type_ is dict:
            return dict_row_mapper
        if type_ is tuple:
            return tuple_row_mapper
        column_mapper = self.find_column_mapper(type_)
        if column_mapper is not None:
            return SingleColumnMapper(column_mapper)
        return self.bean_mapper(type_)

    def bean_mapper(self, type_: type) -> BeanMapper:
        if not isinstance(type_, type):
            raise TypeConversionError(f'No mapper registered for {type_!r}')
        mapper = self._beans.get(type_)
        if mapper is None:
            mapper = self._beans[type_] = BeanMapper(type_, self)
        return mapper
