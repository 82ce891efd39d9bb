"""
Units of work on a Dbi: handle scopes, callbacks, extensions and plugins.
"""
import asyncio
import sqlite3
import threading

import dbhandle as db
import pytest
from dbhandle import SqlObject, sql_query, sql_update


class SomethingDao(SqlObject):

    @sql_update('insert into something (id, name) values (:id, :name)')
    def insert(self, id: int, name: str) -> int: ...

    @sql_query('select name from something where id = :id')
    def find_name(self, id: int) -> str | None: ...

    @sql_query('select name from something order by id')
    def names(self) -> list[str]: ...

    def insert_and_fail(self, id: int, name: str) -> None:
        self.insert(id, name)
        raise RuntimeError('method failed')


class Counter:
    """Hand-written extension registered with a factory callable."""

    def __init__(self, handle_supplier):
        self.handle_supplier = handle_supplier

    def count(self):
        return self.handle_supplier.get_handle() \
            .select('select count(*) from something').map_to(int).one()

    def constant(self):
        return 42


@pytest.fixture
def sql_dbi(dbi):
    dbi.install_plugin(db.SqlObjectPlugin())
    return dbi


class TestWithHandle:
    """Handle reuse within one thread of control."""

    def test_opens_and_closes_one_connection(self, dbi, counting_factory):
        opened = counting_factory.opened
        assert dbi.with_handle(lambda h: h.select('select 1').map_to(int).one()) == 1
        assert counting_factory.opened == opened + 1
        assert counting_factory.closed == counting_factory.opened

    def test_nested_calls_share_one_connection(self, dbi, counting_factory):
        opened = counting_factory.opened

        def outer(handle):
            inner = dbi.with_handle(lambda h: h)
            assert inner is handle
            return dbi.with_handle(lambda h: dbi.with_handle(lambda h2: h2 is handle))

        assert dbi.with_handle(outer) is True
        assert counting_factory.opened == opened + 1

    def test_closes_when_callback_raises(self, dbi, counting_factory):
        def fail(handle):
            raise ValueError('boom')
        with pytest.raises(ValueError):
            dbi.use_handle(fail)
        assert counting_factory.closed == counting_factory.opened
        assert dbi.handle_scope.get() is None

    def test_use_transaction_inside_with_handle(self, dbi, counting_factory):
        opened = counting_factory.opened

        def work(handle):
            dbi.use_transaction(lambda h: h.execute("insert into something (id, name) values (1, 'Eric')"))
            return handle.select('select count(*) from something').map_to(int).one()

        assert dbi.with_handle(work) == 1
        assert counting_factory.opened == opened + 1

    def test_threads_get_their_own_handles(self, dbi):
        barrier = threading.Barrier(2)
        handles = []

        def work():
            def callback(handle):
                barrier.wait()
                handles.append(handle)
            dbi.use_handle(callback)

        threads = [threading.Thread(target=work) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(handles) == 2
        assert handles[0] is not handles[1]

    def test_context_scope_shares_within_a_task(self, dbi, counting_factory):
        dbi.set_handle_scope(db.ContextHandleScope())
        opened = counting_factory.opened

        async def task():
            await asyncio.sleep(0)
            return dbi.with_handle(lambda h: dbi.with_handle(lambda h2: h2 is h))

        async def main():
            return await asyncio.gather(task(), task())

        assert asyncio.run(main()) == [True, True]
        assert counting_factory.opened == opened + 2
        assert dbi.handle_scope.get() is None

    def test_callback_decorator_wraps_callbacks(self, dbi):
        calls = []

        def decorator(callback):
            def wrapper(handle):
                calls.append('before')
                return callback(handle)
            return wrapper
        dbi.set_handle_callback_decorator(decorator)
        assert dbi.with_handle(lambda h: 'done') == 'done'
        dbi.in_transaction(lambda h: None)
        assert calls == ['before', 'before']


class TestOnDemand:
    """On-demand extensions open one handle per method call."""

    def test_each_call_opens_and_closes_a_handle(self, sql_dbi, counting_factory):
        dao = sql_dbi.on_demand(SomethingDao)
        opened = counting_factory.opened
        assert dao.insert(1, 'Brian') == 1
        assert dao.find_name(1) == 'Brian'
        assert counting_factory.opened == opened + 2
        assert counting_factory.closed == counting_factory.opened

    def test_handle_is_closed_when_method_raises(self, sql_dbi, counting_factory):
        dao = sql_dbi.on_demand(SomethingDao)
        opened = counting_factory.opened
        with pytest.raises(RuntimeError, match='method failed'):
            dao.insert_and_fail(1, 'Brian')
        assert counting_factory.opened == opened + 1
        assert counting_factory.closed == counting_factory.opened

    def test_calls_inside_with_handle_share_it(self, sql_dbi, counting_factory):
        dao = sql_dbi.on_demand(SomethingDao)
        opened = counting_factory.opened

        def work(handle):
            dao.insert(1, 'Eric')
            dao.insert(2, 'Brian')
            return dao.names()

        assert sql_dbi.with_handle(work) == ['Eric', 'Brian']
        assert counting_factory.opened == opened + 1

    def test_unregistered_type_raises_immediately(self, dbi, counting_factory):
        opened = counting_factory.opened
        with pytest.raises(db.NoSuchExtensionError):
            dbi.on_demand(SomethingDao)
        assert counting_factory.opened == opened

    def test_no_handle_outside_method(self, sql_dbi):
        dao = sql_dbi.on_demand(SomethingDao)
        with pytest.raises(db.BindingError):
            dao.handle


class TestExtensions:
    """Registered extensions and with_extension."""

    def test_with_extension_opens_only_when_needed(self, dbi, counting_factory):
        dbi.register_extension(Counter)
        opened = counting_factory.opened
        assert dbi.with_extension(Counter, lambda c: c.constant()) == 42
        assert counting_factory.opened == opened
        assert dbi.with_extension(Counter, lambda c: c.count()) == 0
        assert counting_factory.opened == opened + 1
        assert counting_factory.closed == counting_factory.opened

    def test_register_with_factory_callable(self, dbi):
        created = []

        def create(supplier):
            created.append(supplier)
            return Counter(supplier)
        dbi.register_extension(Counter, create)
        dbi.use_extension(Counter, lambda c: c.count())
        assert len(created) == 1

    def test_attach_to_open_handle(self, sql_dbi, handle):
        dao = handle.attach(SomethingDao)
        dao.insert(1, 'Eric')
        assert dao.handle is handle
        assert handle.select('select count(*) from something').map_to(int).one() == 1

    def test_unknown_extension(self, dbi):
        with pytest.raises(db.NoSuchExtensionError):
            dbi.with_extension(Counter, lambda c: None)


class TestPlugins:
    """Plugins run in installation order at each stage."""

    def test_hook_order(self, dbi):
        events = []

        class Recorder(db.Plugin):
            def __init__(self, name):
                self.name = name

            def customize_dbi(self, dbi):
                events.append(('dbi', self.name))

            def customize_connection(self, connection):
                events.append(('connection', self.name))
                return connection

            def customize_handle(self, handle):
                events.append(('handle', self.name))
                return handle

        dbi.install_plugin(Recorder('a')).install_plugin(Recorder('b'))
        dbi.use_handle(lambda h: None)
        assert events == [
            ('dbi', 'a'), ('dbi', 'b'),
            ('connection', 'a'), ('connection', 'b'),
            ('handle', 'a'), ('handle', 'b'),
        ]
        assert [type(p) for p in dbi.plugins] == [Recorder, Recorder]

    def test_session_settings(self, dbi):
        dbi.install_plugin(db.SessionSettingsPlugin('PRAGMA foreign_keys = ON'))
        assert dbi.with_handle(lambda h: h.select('PRAGMA foreign_keys').map_to(int).one()) == 1

    def test_plugins_passed_at_construction(self, counting_factory):
        dbi = db.Dbi(counting_factory, plugins=[db.SqlObjectPlugin()])
        assert dbi.extensions.has(SomethingDao)


def test_create_from_connection_does_not_close_it():
    """A Dbi over an existing connection leaves it open"""
    connection = sqlite3.connect(':memory:', isolation_level=None)
    dbi = db.Dbi.create(connection)
    dbi.use_handle(lambda h: h.execute('create table something (id integer, name text)'))
    dbi.use_handle(lambda h: h.execute("insert into something values (1, 'Eric')"))
    assert connection.execute('select name from something').fetchone() == ('Eric',)
    connection.close()


def test_create_from_url():
    """A Dbi over a SQLAlchemy URL"""
    dbi = db.Dbi.create('sqlite://')
    assert dbi.with_handle(lambda h: h.select('select 1 as one').one()) == {'one': 1}
