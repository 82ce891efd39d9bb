"""
Handle, statement and transaction toolkit over DB-API connections.

A ``Dbi`` turns a connection source into handles. A handle owns one
connection, its statement cache and its transaction state:

    dbi = Dbi.create('sqlite:///app.db')
    with dbi.open() as handle:
        handle.execute('insert into something (id, name) values (?, ?)', 1, 'Brian')
        name = handle.select('select name from something where id = :id', {'id': 1}).map_to(str).one()

Units of work open and close handles for you:

    dbi.use_transaction(lambda h: h.execute('delete from something'))
"""
__version__ = '0.1.0'

from dbhandle.arguments import Argument, Arguments, Binding, FieldArguments
from dbhandle.arguments import ListArgument, MapArguments, MethodArguments
from dbhandle.arguments import PropertyArguments
from dbhandle.cache import CachingStatementCache, StatementCache
from dbhandle.connection import Cleanable, ConnectionFactory, DbapiConnectionFactory
from dbhandle.connection import EngineConnectionFactory, SingleConnectionFactory
from dbhandle.dbi import Dbi, connect
from dbhandle.exceptions import BindingError, CloseError, ConnectionError
from dbhandle.exceptions import DatabaseError, DbConnectionError, IntegrityError
from dbhandle.exceptions import NoSuchExtensionError, OperationalError
from dbhandle.exceptions import ResourceExhausted, StatementError, Timeout
from dbhandle.exceptions import TransactionStateError, TypeConversionError
from dbhandle.exceptions import ValidationError
from dbhandle.executor import ResultIterable, ResultIterator
from dbhandle.extension import ExtensionFactory, SqlObject, on_demand, sql_batch
from dbhandle.extension import sql_query, sql_update
from dbhandle.handle import Handle
from dbhandle.mapper import BeanMapper, Mappers
from dbhandle.options import DatabaseOptions, EnumStrategy, HandleOptions
from dbhandle.plugin import EnumByOrdinalPlugin, Plugin, SessionSettingsPlugin
from dbhandle.plugin import SqlObjectPlugin
from dbhandle.scope import ContextHandleScope, ThreadHandleScope
from dbhandle.statement import Batch, PreparedBatch, Query, SqlStatement
from dbhandle.statement import StatementContext, Update
from dbhandle.strategy import TransactionIsolationLevel
from dbhandle.transaction import LocalTransactionHandler, TransactionHandler
from dbhandle.transaction import TransactionState
from dbhandle.types import Column
