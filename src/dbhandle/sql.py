"""
SQL template parsing with a single-pass tokenizer.

Statements are written with colon-prefixed named placeholders or
positional question marks:

    insert into something (id, name) values (:id, :name)
    insert into something (id, name) values (?, ?)
    insert into something (id, name) values (0, :my.nested?.name)

A template is tokenized once, and placeholders inside string literals,
quoted identifiers, comments and PostgreSQL ``::`` casts are left alone.
Rendering turns the template into the driver's native parameter syntax
(``?`` for sqlite3, ``%s`` for psycopg) and expands list-bound names into
one placeholder per element:

    SQL template → Tokenize → ParsedSql (cached) → Render (per execution)

Parsed templates are kept in a ``cachetools`` LRU cache owned by each
``SqlParser``.
"""
import logging
import re
import threading
from dataclasses import dataclass
from enum import Enum, auto
from typing import TYPE_CHECKING

import cachetools
from dbhandle.exceptions import BindingError

if TYPE_CHECKING:
    from dbhandle.strategy import DialectStrategy

logger = logging.getLogger(__name__)

__all__ = [
    'ParsedParameter',
    'ParsedSql',
    'PathSegment',
    'SqlParser',
    'parse_sql',
    'split_path',
]


class TokenType(Enum):
    """Token types identified during SQL parsing."""
    SQL_TEXT = auto()
    LITERAL = auto()            # strings, quoted identifiers, comments, casts
    NAMED_PH = auto()           # :name, :a.b?.c
    POSITIONAL_PH = auto()      # ?


@dataclass(frozen=True, slots=True)
class PathSegment:
    """One dotted segment of a named placeholder."""
    name: str
    nullable: bool = False


@dataclass(frozen=True, slots=True)
class ParsedParameter:
    """A placeholder in a parsed template.

    ``name`` is the full dotted name with nullable markers removed
    (``my.nested.name``); ``raw_name`` keeps them (``my.nested?.name``).
    Positional placeholders have ``name`` None and use ``index``.
    """
    index: int
    name: str | None = None
    raw_name: str | None = None
    path: tuple[PathSegment, ...] = ()

    @property
    def positional(self) -> bool:
        return self.name is None


@dataclass(frozen=True, slots=True)
class ParsedSql:
    """Tokenized SQL: literal text chunks interleaved with parameters."""
    sql: str
    chunks: tuple['str | ParsedParameter', ...]
    parameters: tuple[ParsedParameter, ...]

    @property
    def positional(self) -> bool:
        return bool(self.parameters) and self.parameters[0].positional

    @property
    def names(self) -> list[str]:
        """Distinct placeholder names, in order of first appearance."""
        seen: dict[str, None] = {}
        for p in self.parameters:
            if p.name is not None:
                seen.setdefault(p.name)
        return list(seen)

    def render(self, strategy: 'DialectStrategy',
               list_sizes: dict[str, int] | None = None) -> str:
        """Render the template in the driver's native parameter syntax.

        Args:
            strategy: Dialect strategy providing the placeholder syntax
            list_sizes: For names bound with bind_list, the number of elements

        Returns
            SQL text ready for cursor.execute()
        """
        list_sizes = list_sizes or {}
        out: list[str] = []
        position = 0
        for chunk in self.chunks:
            if isinstance(chunk, str):
                out.append(strategy.escape_text(chunk))
                continue
            size = list_sizes.get(chunk.name) if chunk.name is not None else None
            if size is None:
                out.append(strategy.placeholder(position))
                position += 1
                continue
            if size == 0:
                raise BindingError(f'Empty list bound to :{chunk.name}')
            marks = []
            for _ in range(size):
                marks.append(strategy.placeholder(position))
                position += 1
            out.append(', '.join(marks))
        return ''.join(out)


# Master tokenization pattern - captures all token types in one scan
_TOKENIZE = re.compile(r"""
    (?P<string>'(?:[^']|'')*')
    |(?P<quoted>"(?:[^"]|"")*")
    |(?P<line_comment>--[^\n]*)
    |(?P<block_comment>/\*.*?\*/)
    |(?P<cast>::)
    |(?P<named>:(?P<pname>[A-Za-z_]\w*\??(?:\.[A-Za-z_]\w*\??)*))
    |(?P<qmark>\?)
""", re.VERBOSE | re.DOTALL)


def split_path(raw_name: str) -> tuple[PathSegment, ...]:
    """Split ``a.b?.c`` into path segments, recording nullable markers.

    >>> split_path('my.nested?.name')
    (PathSegment(name='my', nullable=False), PathSegment(name='nested', nullable=True), PathSegment(name='name', nullable=False))
    """
    segments = []
    for part in raw_name.split('.'):
        nullable = part.endswith('?')
        segments.append(PathSegment(part.rstrip('?'), nullable))
    return tuple(segments)


def parse_sql(sql: str) -> ParsedSql:
    """Parse SQL into literal chunks and placeholders in a single pass.

    Raises
        BindingError: if named and positional placeholders are mixed
    """
    chunks: list[str | ParsedParameter] = []
    parameters: list[ParsedParameter] = []
    text: list[str] = []
    last_end = 0

    def flush() -> None:
        if text:
            chunks.append(''.join(text))
            text.clear()

    for match in _TOKENIZE.finditer(sql):
        start, end = match.span()
        if start > last_end:
            text.append(sql[last_end:start])
        last_end = end

        if match.group('named'):
            raw_name = match.group('pname')
            path = split_path(raw_name)
            param = ParsedParameter(
                index=len(parameters),
                name='.'.join(seg.name for seg in path),
                raw_name=raw_name,
                path=path,
            )
        elif match.group('qmark'):
            param = ParsedParameter(index=len(parameters))
        else:
            text.append(match.group(0))
            continue

        flush()
        chunks.append(param)
        parameters.append(param)

    if last_end < len(sql):
        text.append(sql[last_end:])
    flush()

    kinds = {p.positional for p in parameters}
    if len(kinds) > 1:
        raise BindingError(f'Cannot mix named and positional parameters in SQL: {sql}')

    return ParsedSql(sql=sql, chunks=tuple(chunks), parameters=tuple(parameters))


class SqlParser:
    """Parses SQL templates, caching results in an LRU cache.

    Thread-safe: the cache is shared by every handle of one Dbi.
    """

    def __init__(self, maxsize: int = 1000) -> None:
        self._cache: cachetools.LRUCache = cachetools.LRUCache(maxsize=maxsize)
        self._lock = threading.RLock()

    def parse(self, sql: str) -> ParsedSql:
        with self._lock:
            parsed = self._cache.get(sql)
        if parsed is not None:
            return parsed
        parsed = parse_sql(sql)
        with self._lock:
            self._cache[sql] = parsed
        logger.debug(f'Parsed SQL template with {len(parsed.parameters)} parameters')
        return parsed

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    @property
    def currsize(self) -> int:
        with self._lock:
            return self._cache.currsize
