from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from dbhandle.strategy import get_available_dialects, get_strategy_class
from dbhandle.strategy import is_supported_dialect

__all__ = [
    'DatabaseOptions',
    'HandleOptions',
    'EnumStrategy',
]


class EnumStrategy(Enum):
    """How enum values are bound to and mapped from columns."""
    BY_NAME = 'name'
    BY_ORDINAL = 'ordinal'


@dataclass
class DatabaseOptions:
    """Options

    supported driver names: `postgresql`, `sqlite`

    Connection pooling options:
    - use_pool: Whether to use connection pooling (default: False)
    - pool_max_connections: Maximum connections in pool (default: 5)
    - pool_max_idle_time: Maximum seconds a connection can be idle (default: 300)
    - pool_wait_timeout: Maximum seconds to wait for a connection (default: 30)
    """
    drivername: str = 'postgresql'
    hostname: str | None = None
    username: str | None = None
    password: str | None = None
    database: str | None = None
    port: int = 0
    timeout: int = 0
    appname: str | None = None
    # Connection pooling parameters
    use_pool: bool = False
    pool_max_connections: int = 5
    pool_max_idle_time: int = 300
    pool_wait_timeout: int = 30

    def __post_init__(self):
        if not is_supported_dialect(self.drivername):
            available = get_available_dialects()
            raise ValueError(f'drivername must be one of: {available}')
        if self.drivername == 'sqlite' and not self.database:
            raise ValueError('sqlite requires a database path (or ":memory:")')
        self.appname = self.appname or 'dbhandle'
        strategy_cls = get_strategy_class(self.drivername)
        strategy_cls.validate_options(self)

    @classmethod
    def from_dict(cls, options: dict[str, Any], **kw: Any) -> 'DatabaseOptions':
        """Build options from a mapping, keyword arguments override mapping keys.
        """
        return cls(**{**options, **kw})


@dataclass
class HandleOptions:
    """Per-Dbi statement and handle settings.

    Every handle works on its own copy, so changing options on a handle
    never leaks into other handles.

    - cache_statements: keep cursors alive for reuse within a handle
    - max_open_statements: ceiling on live cursors per handle (None: unbounded)
    - fetch_size: rows fetched per driver round trip
    - query_timeout: seconds before a running statement is cancelled
    - enum_strategy: bind and map enums by name or by ordinal
    - force_end_transactions: raise when a handle closes mid-transaction
    - template_cache_size: parsed SQL templates kept in the LRU cache
    """
    cache_statements: bool = False
    max_open_statements: int | None = None
    fetch_size: int = 5000
    query_timeout: float | None = None
    enum_strategy: EnumStrategy = EnumStrategy.BY_NAME
    force_end_transactions: bool = True
    template_cache_size: int = 1000
    attributes: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.fetch_size < 1:
            raise ValueError('fetch_size must be positive')
        if self.max_open_statements is not None and self.max_open_statements < 1:
            raise ValueError('max_open_statements must be positive or None')
        if self.query_timeout is not None and self.query_timeout <= 0:
            raise ValueError('query_timeout must be positive or None')
        if not isinstance(self.enum_strategy, EnumStrategy):
            self.enum_strategy = EnumStrategy(self.enum_strategy)

    def copy(self) -> 'HandleOptions':
        """Return an independent copy (attributes dict included)."""
        return replace(self, attributes=dict(self.attributes))
