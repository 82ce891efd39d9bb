"""
Dbi: the entry point that turns a connection source into handles.

This module provides:
1. ``Dbi``: configuration shared by every handle (options, argument
   converters, mappers, extensions, plugins, transaction handler,
   statement cache factory, handle scope) and the unit-of-work helpers
2. ``connect()``: open a handle straight from ``DatabaseOptions``

Examples
    dbi = Dbi.create(sqlite3.connect(':memory:', isolation_level=None))
    with dbi.open() as handle:
        handle.execute('create table something (id integer primary key, name text)')

    dbi = Dbi.from_options(DatabaseOptions(drivername='sqlite', database='app.db'))
    names = dbi.with_handle(lambda h: h.select('select name from something').map_to(str).list())
"""
import logging
import time
from collections.abc import Callable, Iterable
from typing import Any, Self, TypeVar

import sqlalchemy as sa
from dbhandle.arguments import Arguments
from dbhandle.cache import StatementCache, default_statement_cache_factory
from dbhandle.connection import ConnectionFactory, DbapiConnectionFactory
from dbhandle.connection import EngineConnectionFactory, SingleConnectionFactory
from dbhandle.connection import get_engine_for_options, get_engine_for_url
from dbhandle.exceptions import ConnectionError, DatabaseError
from dbhandle.extension import Extensions, ExtensionFactory, TypeExtensionFactory
from dbhandle.extension import on_demand
from dbhandle.handle import Handle
from dbhandle.mapper import ColumnMapper, Mappers, RowMapper
from dbhandle.options import DatabaseOptions, HandleOptions
from dbhandle.plugin import Plugin
from dbhandle.scope import ConstantHandleSupplier, HandleScope, LazyHandleSupplier
from dbhandle.scope import ThreadHandleScope
from dbhandle.sql import SqlParser
from dbhandle.statement import close_after
from dbhandle.strategy import TransactionIsolationLevel, get_db_strategy
from dbhandle.transaction import LocalTransactionHandler, TransactionHandler
from sqlalchemy.engine import Engine

__all__ = ['Dbi', 'connect']

logger = logging.getLogger(__name__)

T = TypeVar('T')

StatementCacheFactory = Callable[[Any, HandleOptions], StatementCache]


class Dbi:
    """Shared configuration and the source of handles.

    Every handle gets its own copy of the options, argument converters and
    mappers, so per-handle changes never leak into other handles.
    """

    def __init__(self, connection_factory: ConnectionFactory,
                 options: HandleOptions | None = None,
                 plugins: Iterable[Plugin] = ()) -> None:
        self.connection_factory = connection_factory
        self.options = options.copy() if options is not None else HandleOptions()
        self.arguments = Arguments()
        self.mappers = Mappers()
        self.extensions = Extensions()
        self.parser = SqlParser(self.options.template_cache_size)
        self._transaction_handler: TransactionHandler = LocalTransactionHandler()
        self._statement_cache_factory: StatementCacheFactory = default_statement_cache_factory
        self._handle_scope: HandleScope = ThreadHandleScope()
        self._callback_decorator: Callable[[Callable], Callable] | None = None
        self._plugins: list[Plugin] = []
        for plugin in plugins:
            self.install_plugin(plugin)

    @classmethod
    def create(cls, source: Any, options: HandleOptions | None = None,
               plugins: Iterable[Plugin] = ()) -> Self:
        """Build a Dbi from any connection source.

        ``source`` may be a ConnectionFactory, a SQLAlchemy Engine, a
        DatabaseOptions, a SQLAlchemy URL (string or object), an open DB-API
        connection (used as is and never closed), or a zero-argument callable
        returning a new connection.
        """
        if isinstance(source, ConnectionFactory):
            factory = source
        elif isinstance(source, Engine):
            factory = EngineConnectionFactory(source)
        elif isinstance(source, DatabaseOptions):
            factory = EngineConnectionFactory(get_engine_for_options(source))
        elif isinstance(source, str | sa.URL):
            factory = EngineConnectionFactory(get_engine_for_url(source))
        elif hasattr(source, 'cursor'):
            factory = SingleConnectionFactory(source)
        elif callable(source):
            factory = DbapiConnectionFactory(source)
        else:
            raise TypeError(f'Cannot create a Dbi from {type(source).__name__}')
        return cls(factory, options, plugins)

    @classmethod
    def from_options(cls, db_options: DatabaseOptions, options: HandleOptions | None = None,
                     plugins: Iterable[Plugin] = (), **engine_kwargs: Any) -> Self:
        """Build a Dbi over the registry engine for ``db_options``."""
        engine = get_engine_for_options(db_options, **engine_kwargs)
        return cls(EngineConnectionFactory(engine), options, plugins)

    # configuration

    def install_plugin(self, plugin: Plugin) -> Self:
        plugin.customize_dbi(self)
        self._plugins.append(plugin)
        logger.debug(f'Installed plugin {type(plugin).__name__}')
        return self

    @property
    def plugins(self) -> list[Plugin]:
        return list(self._plugins)

    def set_transaction_handler(self, handler: TransactionHandler) -> Self:
        self._transaction_handler = handler
        return self

    def set_statement_cache_factory(self, factory: StatementCacheFactory) -> Self:
        """Use ``factory(connection, options)`` to build each handle's statement cache."""
        self._statement_cache_factory = factory
        return self

    def set_handle_scope(self, scope: HandleScope) -> Self:
        self._handle_scope = scope
        return self

    @property
    def handle_scope(self) -> HandleScope:
        return self._handle_scope

    def set_handle_callback_decorator(self, decorator: Callable[[Callable], Callable] | None) -> Self:
        """Wrap every callback passed to ``with_handle`` (and the helpers built on it)."""
        self._callback_decorator = decorator
        return self

    def register_row_mapper(self, type_: type, mapper: RowMapper) -> Self:
        self.mappers.register_row_mapper(type_, mapper)
        return self

    def register_column_mapper(self, type_: type, mapper: ColumnMapper) -> Self:
        self.mappers.register_column_mapper(type_, mapper)
        return self

    def register_argument(self, type_: type, converter: Callable[[Any], Any],
                          exact: bool = False) -> Self:
        self.arguments.register(type_, converter, exact)
        return self

    def register_extension(self, extension: type | ExtensionFactory,
                           create: Callable[..., Any] | None = None) -> Self:
        """Register an extension factory, or a type built by ``create(handle_supplier)``."""
        if isinstance(extension, ExtensionFactory):
            self.extensions.register(extension)
        else:
            self.extensions.register(TypeExtensionFactory(extension, create))
        return self

    # handles

    def open(self) -> Handle:
        """Open a new handle; the caller must close it.

        Raises
            ConnectionError: if the connection factory fails or returns None
        """
        start = time.time()
        try:
            connection = self.connection_factory.open_connection()
        except DatabaseError:
            raise
        except Exception as e:
            raise ConnectionError(f'Could not open a connection: {e}') from e
        if connection is None:
            raise ConnectionError(f'{self.connection_factory!r} returned no connection')

        cleanable = None
        cache = None
        handle = None
        try:
            cleanable = self.connection_factory.get_cleanable_for(connection)
            for plugin in self._plugins:
                connection = plugin.customize_connection(connection)
            strategy = get_db_strategy(connection)
            strategy.configure_connection(connection)
            options = self.options.copy()
            cache = self._statement_cache_factory(connection, options)
            handle = Handle(self, connection, cleanable, strategy, cache,
                            self._transaction_handler.specialize(), options,
                            self.arguments.copy(), self.mappers.copy(), self.extensions,
                            self.parser)
            for plugin in self._plugins:
                handle = plugin.customize_handle(handle)
        except BaseException as e:
            logger.debug(f'Handle setup failed, releasing connection: {e}')
            if handle is not None:
                close_after(handle, e)
            else:
                if cache is not None:
                    close_after(cache, e)
                if cleanable is not None:
                    close_after(cleanable, e)
                else:
                    close_after(connection, e)
            raise

        logger.debug(f'Opened handle {id(handle)} ({handle.dialect}) in {time.time() - start:.3f}s')
        return handle

    def _decorate(self, callback: Callable[[Handle], T]) -> Callable[[Handle], T]:
        if self._callback_decorator is None:
            return callback
        return self._callback_decorator(callback)

    def with_handle(self, callback: Callable[[Handle], T]) -> T:
        """Run ``callback(handle)`` and return its result.

        Reuses the handle already in scope for this thread of control;
        otherwise opens one, puts it in scope, and closes it afterwards
        even when the callback raises.
        """
        callback = self._decorate(callback)
        supplier = self._handle_scope.get()
        if supplier is not None:
            return callback(supplier.get_handle())

        handle = self.open()
        self._handle_scope.set(ConstantHandleSupplier(handle))
        try:
            with handle:
                return callback(handle)
        finally:
            self._handle_scope.clear()

    def use_handle(self, callback: Callable[[Handle], Any]) -> None:
        self.with_handle(callback)

    def in_transaction(self, callback: Callable[[Handle], T],
                       level: TransactionIsolationLevel | None = None) -> T:
        """Run ``callback(handle)`` in a transaction on a scoped or new handle."""
        return self.with_handle(lambda handle: handle.in_transaction(callback, level))

    def use_transaction(self, callback: Callable[[Handle], Any],
                        level: TransactionIsolationLevel | None = None) -> None:
        self.in_transaction(callback, level)

    def with_extension(self, extension_type: type[T], callback: Callable[[T], Any]) -> Any:
        """Run ``callback(extension)``; a handle is opened only if the extension uses one.

        Raises
            NoSuchExtensionError: before anything is opened, if the type is
                not registered
        """
        factory = self.extensions.find_factory(extension_type)
        supplier = self._handle_scope.get()
        if supplier is not None:
            return callback(factory.attach(extension_type, supplier))

        lazy = LazyHandleSupplier(self)
        self._handle_scope.set(lazy)
        try:
            with _closing(lazy):
                return callback(factory.attach(extension_type, lazy))
        finally:
            self._handle_scope.clear()

    def use_extension(self, extension_type: type[T], callback: Callable[[T], Any]) -> None:
        self.with_extension(extension_type, callback)

    def on_demand(self, extension_type: type[T]) -> T:
        """Return an extension whose every method call is its own unit of work."""
        return on_demand(self, extension_type)

    def __repr__(self) -> str:
        return f'Dbi({self.connection_factory!r})'


class _closing:
    """Context manager closing a resource, attaching close errors to a propagating one."""

    def __init__(self, resource: Any) -> None:
        self.resource = resource

    def __enter__(self) -> Any:
        return self.resource

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        close_after(self.resource, exc_val)


def connect(options: DatabaseOptions | dict, handle_options: HandleOptions | None = None,
            plugins: Iterable[Plugin] = (), **kw: Any) -> Handle:
    """Open a handle for the given database options.

    Examples
        with connect({'drivername': 'sqlite', 'database': ':memory:'}) as handle:
            handle.execute('create table something (id integer, name text)')
    """
    if isinstance(options, dict):
        options = DatabaseOptions.from_dict(options, **kw)
    elif kw:
        options = DatabaseOptions.from_dict(vars(options), **kw)
    return Dbi.from_options(options, handle_options, plugins).open()
