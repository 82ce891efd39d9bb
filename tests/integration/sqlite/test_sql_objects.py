"""
Batches and SqlObject extensions against SQLite.
"""
import dataclasses
from collections.abc import Iterator

import dbhandle as db
import pandas as pd
import pytest
from dbhandle import ResultIterable, SqlObject, sql_batch, sql_query, sql_update


@dataclasses.dataclass
class Something:
    id: int
    name: str


class SomethingDao(SqlObject):

    @sql_update('insert into something (name) values (:name)', generated_keys='id')
    def insert(self, name: str) -> int: ...

    @sql_update('insert into something (id, name) values (:s.id, :s.name)')
    def insert_bean(self, s: Something) -> int: ...

    @sql_update('update something set name = ? where id = ?')
    def rename(self, name: str, id: int) -> int: ...

    @sql_batch('insert into something (id, name) values (:id, :name)', batch_size=2)
    def insert_all(self, id: list[int], name: list[str]) -> int: ...

    @sql_batch('insert into something (id, name) values (:id, :name)')
    def insert_same_name(self, id: list[int], name: str) -> int: ...

    @sql_query('select id, name from something where id = :id')
    def find(self, id: int) -> Something | None: ...

    @sql_query('select id, name from something where id = :id')
    def get(self, id: int) -> Something: ...

    @sql_query('select id, name from something order by id')
    def list_all(self) -> list[Something]: ...

    @sql_query('select id, name from something order by id')
    def iterate(self) -> Iterator[Something]: ...

    @sql_query('select id, name from something order by id')
    def deferred(self) -> ResultIterable[Something]: ...

    @sql_query('select id, name from something order by id')
    def rows(self): ...

    @sql_query('select id, name from something order by id')
    def frame(self) -> pd.DataFrame: ...

    @sql_query('select name from something where id in (:ids) order by id', map_to=str)
    def names_in(self, ids: list[int]) -> list[str]: ...

    def count(self) -> int:
        return self.handle.select('select count(*) from something').map_to(int).one()


@pytest.fixture
def dao(dbi):
    dbi.install_plugin(db.SqlObjectPlugin())
    return dbi.on_demand(SomethingDao)


@pytest.fixture
def filled(dao):
    dao.insert_all([1, 2, 3], ['Eric', 'Brian', 'Keith'])
    return dao


class TestBatch:
    """Batch and PreparedBatch on a handle."""

    def test_batch_returns_counts(self, handle):
        counts = handle.create_batch() \
            .add("insert into something (id, name) values (1, 'Eric')") \
            .add("insert into something (id, name) values (2, 'Brian')") \
            .add("update something set name = 'Keith'") \
            .execute()
        assert counts == [1, 1, 2]

    def test_batch_rejects_parameters(self, handle):
        batch = handle.create_batch().add('insert into something (id, name) values (:id, :name)')
        with pytest.raises(db.BindingError, match='prepare_batch'):
            batch.execute()
        assert handle.open_contexts == 0

    def test_empty_batch(self, handle):
        assert handle.create_batch().execute() == []

    def test_prepared_batch_with_binds(self, handle):
        batch = handle.prepare_batch('insert into something (id, name) values (:id, :name)')
        for i, name in enumerate(['Eric', 'Brian', 'Keith']):
            batch.bind('id', i).bind('name', name).add()
        assert batch.size() == 3
        assert batch.execute() == 3
        assert batch.size() == 0
        assert handle.select('select count(*) from something').map_to(int).one() == 3

    def test_prepared_batch_in_chunks(self, handle):
        batch = handle.prepare_batch('insert into something (id, name) values (?, ?)', batch_size=2)
        for i in range(5):
            batch.add((i, f'name{i}'))
        assert batch.execute() == 5

    def test_prepared_batch_executes_trailing_binding(self, handle):
        batch = handle.prepare_batch('insert into something (id, name) values (:id, :name)')
        batch.add({'id': 1, 'name': 'Eric'}).bind('id', 2).bind('name', 'Brian')
        assert batch.execute() == 2

    def test_failed_batch_rolls_back_with_transaction(self, handle):
        batch = handle.prepare_batch('insert into something (id, name) values (:id, :name)')
        batch.add({'id': 1, 'name': 'Eric'}).add({'id': 1, 'name': 'Brian'})
        with pytest.raises(db.StatementError, match='UNIQUE'):
            handle.in_transaction(lambda h: batch.execute())
        assert handle.select('select count(*) from something').map_to(int).one() == 0


class TestSqlObject:
    """Decorated methods and result shapes."""

    def test_insert_returns_generated_key(self, dao):
        assert dao.insert('Eric') == 1
        assert dao.insert('Brian') == 2

    def test_insert_bean_with_prefix(self, dao):
        assert dao.insert_bean(Something(5, 'Keith')) == 1
        assert dao.get(5) == Something(5, 'Keith')

    def test_positional_parameters(self, filled):
        assert filled.rename('Graham', 2) == 1
        assert filled.get(2).name == 'Graham'

    def test_batch_totals(self, filled):
        assert filled.count() == 3
        assert filled.insert_same_name([4, 5], 'Terry') == 2
        assert [s.name for s in filled.list_all()][-2:] == ['Terry', 'Terry']

    def test_batch_length_mismatch(self, dao):
        with pytest.raises(db.BindingError, match='different lengths'):
            dao.insert_all([1, 2], ['Eric'])

    def test_find_returns_none_when_missing(self, filled):
        assert filled.find(1) == Something(1, 'Eric')
        assert filled.find(99) is None

    def test_get_requires_a_row(self, filled):
        with pytest.raises(db.ValidationError):
            filled.get(99)

    def test_result_shapes(self, filled):
        expected = [Something(1, 'Eric'), Something(2, 'Brian'), Something(3, 'Keith')]
        assert filled.list_all() == expected
        assert filled.iterate() == expected
        assert filled.deferred() == expected
        assert filled.rows()[0] == {'id': 1, 'name': 'Eric'}
        assert filled.frame()['name'].tolist() == ['Eric', 'Brian', 'Keith']

    def test_list_argument_expands(self, filled):
        assert filled.names_in([1, 3]) == ['Eric', 'Keith']

    def test_lazy_results_on_attached_handle(self, dbi, handle):
        dbi.install_plugin(db.SqlObjectPlugin())
        dao = handle.attach(SomethingDao)
        dao.insert_all([1, 2], ['Eric', 'Brian'])
        results = dao.deferred()
        assert isinstance(results, ResultIterable)
        with dao.iterate() as it:
            assert next(it) == Something(1, 'Eric')
        assert handle.open_contexts == 0
        assert results.list()[1] == Something(2, 'Brian')

    def test_decorated_methods_keep_sql(self):
        assert SomethingDao.get.__sql__ == 'select id, name from something where id = :id'
