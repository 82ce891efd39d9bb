"""
Connection factories and engine management.

This module provides:
1. ``ConnectionFactory``: the source of physical DB-API connections for a Dbi
2. ``Cleanable``: a single-use release callback returned for each connection
3. Factories over a connect callable, a single externally-owned connection,
   and a SQLAlchemy engine pool
4. Engine creation and management through a thread-safe registry that is
   disposed at interpreter exit

A factory decides how its connections are disposed of: connections made
by a connect callable are closed, pooled connections go back to the pool,
and a connection owned by the caller is left alone.
"""
import atexit
import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

import sqlalchemy as sa
from dbhandle.options import DatabaseOptions
from dbhandle.strategy import get_strategy
from sqlalchemy.engine import Engine
from sqlalchemy.pool import NullPool

__all__ = [
    'Cleanable',
    'ConnectionFactory',
    'DbapiConnectionFactory',
    'SingleConnectionFactory',
    'EngineConnectionFactory',
    'create_url_from_options',
    'get_engine_for_options',
    'get_engine_for_url',
    'dispose_all_engines',
]

logger = logging.getLogger(__name__)

_engine_registry: dict[str, Engine] = {}
_engine_registry_lock = threading.RLock()


class Cleanable:
    """Release callback that runs at most once.

    Calling ``close()`` a second time is a no-op, so the owner may call
    it from several teardown paths without double-releasing.
    """

    def __init__(self, release: Callable[[], None] | None = None,
                 description: str = 'resource') -> None:
        self._release = release
        self._lock = threading.Lock()
        self.description = description
        self.closed = False

    def close(self) -> None:
        with self._lock:
            if self.closed:
                return
            self.closed = True
        if self._release is not None:
            self._release()
            logger.debug(f'Released {self.description}')

    __call__ = close

    def __repr__(self) -> str:
        return f'Cleanable({self.description!r}, closed={self.closed})'


class ConnectionFactory(ABC):
    """Source of DB-API connections.
    """

    @abstractmethod
    def open_connection(self) -> Any:
        """Open a new connection, or raise."""

    def get_cleanable_for(self, connection: Any) -> Cleanable:
        """Return the release callback for a connection this factory opened.

        Default behavior closes the connection.
        """
        return Cleanable(connection.close, f'connection {id(connection)}')


class DbapiConnectionFactory(ConnectionFactory):
    """Opens connections with a DB-API ``connect`` callable.

    Examples
        factory = DbapiConnectionFactory(sqlite3.connect, 'app.db', isolation_level=None)
        factory = DbapiConnectionFactory(psycopg.connect, conninfo, autocommit=True)
    """

    def __init__(self, connect: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        self.connect = connect
        self.args = args
        self.kwargs = kwargs

    def open_connection(self) -> Any:
        return self.connect(*self.args, **self.kwargs)

    def __repr__(self) -> str:
        name = getattr(self.connect, '__qualname__', repr(self.connect))
        return f'DbapiConnectionFactory({name})'


class SingleConnectionFactory(ConnectionFactory):
    """Hands out one connection owned by the caller; cleanup never closes it.
    """

    def __init__(self, connection: Any) -> None:
        self.connection = connection

    def open_connection(self) -> Any:
        return self.connection

    def get_cleanable_for(self, connection: Any) -> Cleanable:
        return Cleanable(None, f'borrowed connection {id(connection)}')


class EngineConnectionFactory(ConnectionFactory):
    """Borrows raw DB-API connections from a SQLAlchemy engine pool.

    The pool's connection proxy exposes the driver connection through
    ``driver_connection``; closing the proxy returns the connection to
    the pool (or closes it under ``NullPool``).
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def open_connection(self) -> Any:
        return self.engine.raw_connection()

    def get_cleanable_for(self, connection: Any) -> Cleanable:
        return Cleanable(connection.close, f'pooled connection {id(connection)}')

    @property
    def is_pooled(self) -> bool:
        """Check if this factory is using SQLAlchemy's connection pooling
        """
        return not isinstance(self.engine.pool, NullPool)

    def __repr__(self) -> str:
        return f'EngineConnectionFactory({self.engine.url!r})'


def create_url_from_options(options: DatabaseOptions) -> sa.URL:
    """Convert DatabaseOptions to SQLAlchemy URL.
    """
    return get_strategy(options.drivername).build_connection_url(options)


def get_engine_for_options(options: DatabaseOptions,
                           engine_factory: Callable[..., Engine] = sa.create_engine,
                           **kwargs: Any) -> Engine:
    """Get or create a SQLAlchemy engine for the given options.

    Engines are cached by options so every Dbi over the same database
    shares one pool.
    """
    key = f'{options!s}_{sorted(kwargs.items())}'

    with _engine_registry_lock:
        if key in _engine_registry:
            logger.debug(f'Using existing engine for {options.drivername}')
            return _engine_registry[key]

        strategy = get_strategy(options.drivername)
        url = strategy.build_connection_url(options)

        engine_kwargs: dict[str, Any] = {'echo': False}
        engine_kwargs.update(strategy.get_engine_kwargs(options))

        if 'poolclass' in engine_kwargs:
            logger.debug(f'Using {engine_kwargs["poolclass"].__name__} for {options.drivername}')
        elif not options.use_pool:
            engine_kwargs['poolclass'] = NullPool
        else:
            engine_kwargs['pool_size'] = options.pool_max_connections
            engine_kwargs['pool_recycle'] = options.pool_max_idle_time
            engine_kwargs['pool_timeout'] = options.pool_wait_timeout
            engine_kwargs['max_overflow'] = 10
            engine_kwargs['pool_pre_ping'] = True
            engine_kwargs['pool_reset_on_return'] = 'rollback'

        engine_kwargs.update(kwargs)

        engine = engine_factory(url, **engine_kwargs)

        _engine_registry[key] = engine
        logger.debug(f'Created new engine for {options.drivername}')

        return engine


def get_engine_for_url(url: str | sa.URL, **kwargs: Any) -> Engine:
    """Get or create a registry engine for a SQLAlchemy URL.

    Shares the registry with ``get_engine_for_options`` so the engine is
    disposed with the others.
    """
    url = sa.make_url(url)
    key = f'{url.render_as_string(hide_password=False)}_{sorted(kwargs.items())}'

    with _engine_registry_lock:
        if key in _engine_registry:
            logger.debug(f'Using existing engine for {url.drivername}')
            return _engine_registry[key]
        engine = sa.create_engine(url, **kwargs)
        _engine_registry[key] = engine
        logger.debug(f'Created new engine for {url.drivername}')
        return engine


def dispose_all_engines() -> None:
    """Dispose all engines in the registry.
    """
    with _engine_registry_lock:
        for engine in _engine_registry.values():
            engine.dispose()
        _engine_registry.clear()
        logger.debug('All database engines disposed')


atexit.register(dispose_all_engines)
