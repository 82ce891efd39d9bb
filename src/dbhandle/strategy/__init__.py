"""
Dialect strategy factory for driver-specific operations.
"""
from functools import lru_cache
from typing import Any

from dbhandle.strategy.base import _STRATEGY_REGISTRY
from dbhandle.strategy.base import DialectStrategy as DialectStrategy
from dbhandle.strategy.base import TransactionIsolationLevel as TransactionIsolationLevel
from dbhandle.strategy.base import register_strategy as register_strategy
from dbhandle.strategy.postgres import PostgresStrategy as PostgresStrategy
from dbhandle.strategy.sqlite import SQLiteStrategy as SQLiteStrategy
from dbhandle.utils import get_dialect_name


def _validate_dialect(dialect: str) -> None:
    """Raise ValueError if dialect is not registered."""
    if dialect not in _STRATEGY_REGISTRY:
        available = list(_STRATEGY_REGISTRY.keys())
        raise ValueError(f'Unsupported dialect: {dialect}. Available: {available}')


@lru_cache(maxsize=8)
def _get_strategy(dialect: str) -> DialectStrategy:
    """Get cached strategy instance for a dialect."""
    _validate_dialect(dialect)
    return _STRATEGY_REGISTRY[dialect]()


def get_strategy(dialect: str) -> DialectStrategy:
    """Get strategy instance for a dialect name.
    """
    return _get_strategy(dialect)


def get_db_strategy(conn: Any) -> DialectStrategy:
    """Get dialect strategy for the connection."""
    dialect = get_dialect_name(conn)
    return _get_strategy(dialect)


def get_available_dialects() -> list[str]:
    """Return list of registered dialect names."""
    return list(_STRATEGY_REGISTRY.keys())


def is_supported_dialect(dialect: str) -> bool:
    """Check if a dialect is supported."""
    return dialect in _STRATEGY_REGISTRY


def get_strategy_class(dialect: str) -> type['DialectStrategy']:
    """Get the strategy class for a dialect without instantiating."""
    _validate_dialect(dialect)
    return _STRATEGY_REGISTRY[dialect]
