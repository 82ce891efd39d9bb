"""
Statements on a SQLite handle: binding, querying and result shapes.
"""
import dataclasses
import types

import dbhandle as db
import pytest
from dbhandle.arguments import MapArguments


@dataclasses.dataclass
class Something:
    id: int
    name: str


def test_insert_and_select_by_name(handle):
    """Bind :id and :name, execute, then read the row back"""
    count = handle.create_update('insert into something (id, name) values (:id, :name)') \
        .bind('id', 1) \
        .bind('name', 'Brian') \
        .execute()
    assert count == 1

    name = handle.create_query('select name from something where id = :id') \
        .bind('id', 1) \
        .map_to(str) \
        .one()
    assert name == 'Brian'


def test_insert_and_select_by_position(handle):
    """Positional ? parameters bind in order"""
    assert handle.execute('insert into something (id, name) values (?, ?)', 1, 'Brian') == 1
    row = handle.select('select id, name from something where id = ?', 1).one()
    assert row == {'id': 1, 'name': 'Brian'}


def test_select_with_dict_arguments(handle):
    """A single dict argument binds named parameters"""
    handle.execute('insert into something (id, name) values (:id, :name)', {'id': 7, 'name': 'Eric'})
    assert handle.select('select name from something where id = :id', {'id': 7}).map_to(str).one() == 'Eric'


def test_nullable_nested_path_binds_null(handle):
    """A None intermediate on a ?-marked path binds SQL NULL"""
    handle.create_update('insert into something (id, name) values (:id, :my.nested?.name)') \
        .bind('id', 1) \
        .bind_map({'my': {'nested': None}}) \
        .execute()
    row = handle.select('select name from something where id = 1').one()
    assert row['name'] is None


def test_nested_path_without_marker_raises(handle):
    """A None intermediate on an unmarked path is a binding error"""
    update = handle.create_update('insert into something (id, name) values (:id, :my.nested.name)') \
        .bind('id', 1) \
        .bind_map({'my': {'nested': None}})
    with pytest.raises(db.BindingError, match='nested'):
        update.execute()
    assert handle.open_contexts == 0


def test_nested_path_resolves_through_objects(handle):
    """Nested paths walk mappings and attributes alike"""
    my = {'nested': types.SimpleNamespace(name='Keith')}
    handle.create_update('insert into something (id, name) values (:id, :my.nested.name)') \
        .bind('id', 1).bind_map({'my': my}).execute()
    assert handle.select('select name from something').map_to(str).one() == 'Keith'


def test_missing_parameter_raises_binding_error(handle):
    """An unbound placeholder fails at execution time"""
    update = handle.create_update('insert into something (id, name) values (:id, :name)').bind('id', 1)
    with pytest.raises(db.BindingError, match="'name'"):
        update.execute()


def test_first_registered_finder_wins(handle):
    """The same name found by two finders resolves to the first one added"""
    handle.create_update('insert into something (id, name) values (:id, :name)') \
        .bind_map({'id': 1, 'name': 'first'}) \
        .bind_properties(Something(2, 'second')) \
        .execute()
    assert handle.select('select id, name from something').list() == [{'id': 1, 'name': 'first'}]


def test_explicit_bind_wins_over_finder(handle):
    """Values bound by name take precedence over any finder"""
    handle.create_update('insert into something (id, name) values (:id, :name)') \
        .bind_named_argument_finder(MapArguments(None, {'id': 1, 'name': 'map'})) \
        .bind('name', 'explicit') \
        .execute()
    assert handle.select('select name from something').map_to(str).one() == 'explicit'


class TestObjectBinding:
    """Binding values from objects."""

    def test_bind_properties_with_prefix(self, handle):
        handle.create_update('insert into something (id, name) values (:s.id, :s.name)') \
            .bind_properties(Something(1, 'Eric'), prefix='s').execute()
        assert handle.select('select name from something where id = 1').map_to(str).one() == 'Eric'

    def test_bind_fields(self, handle):
        class Fields:
            def __init__(self):
                self.id = 2
                self.name = 'Brian'
        handle.create_update('insert into something (id, name) values (:id, :name)') \
            .bind_fields(Fields()).execute()
        assert handle.select('select name from something where id = 2').map_to(str).one() == 'Brian'

    def test_bind_methods(self, handle):
        class Methods:
            def id(self):
                return 3

            def name(self):
                return 'Keith'
        handle.create_update('insert into something (id, name) values (:id, :name)') \
            .bind_methods(Methods()).execute()
        assert handle.select('select name from something where id = 3').map_to(str).one() == 'Keith'


class TestResults:
    """Query result shapes."""

    def test_list_of_dicts(self, seeded):
        rows = seeded.select('select id, name from something order by id').list()
        assert [r['name'] for r in rows] == ['Eric', 'Brian', 'Keith']

    def test_map_to_dataclass(self, seeded):
        rows = seeded.create_query('select id, name from something order by id').map_to(Something).list()
        assert rows[1] == Something(2, 'Brian')

    def test_custom_row_mapper_and_transform(self, seeded):
        names = seeded.create_query('select name from something order by id') \
            .map(lambda row, ctx: row.get_value('name')) \
            .map(str.upper) \
            .list()
        assert names == ['ERIC', 'BRIAN', 'KEITH']

    def test_first_and_find_first(self, seeded):
        query = seeded.create_query('select id from something order by id')
        assert query.map_to(int).first() == 1
        empty = seeded.create_query('select id from something where id > 10')
        assert empty.map_to(int).find_first() is None
        with pytest.raises(db.ValidationError):
            empty.map_to(int).first()

    def test_one_requires_exactly_one_row(self, seeded):
        with pytest.raises(db.ValidationError, match='more than one'):
            seeded.select('select id from something').one()
        with pytest.raises(db.ValidationError, match='none'):
            seeded.select('select id from something where id = 99').one()

    def test_find_one(self, seeded):
        assert seeded.select('select id from something where id = 99').find_one() is None
        assert seeded.select('select id from something where id = 1').find_one() == {'id': 1}
        with pytest.raises(db.ValidationError):
            seeded.select('select id from something').find_one()

    def test_iterator_fetches_in_chunks(self, seeded):
        query = seeded.create_query('select id from something order by id').set_fetch_size(1)
        with query.map_to(int).iterator() as it:
            assert next(it) == 1
            assert seeded.open_contexts == 1
            assert list(it) == [2, 3]
        assert seeded.open_contexts == 0

    def test_results_are_lazy(self, seeded, counting_factory):
        connection = counting_factory.connections[-1]
        before = connection.cursors_opened
        results = seeded.create_query('select id from something').map_to(int)
        assert connection.cursors_opened == before
        assert sorted(results.list()) == [1, 2, 3]
        assert connection.cursors_opened == before + 1

    def test_to_dataframe(self, seeded):
        df = seeded.create_query('select id, name from something order by id').to_dataframe()
        assert list(df.columns) == ['id', 'name']
        assert df['name'].tolist() == ['Eric', 'Brian', 'Keith']

    def test_mapping_error_closes_results(self, seeded):
        def broken(row, ctx):
            raise RuntimeError('cannot map')
        with pytest.raises(db.TypeConversionError):
            seeded.create_query('select id from something').map(broken).list()
        assert seeded.open_contexts == 0


class TestTemplates:
    """Defines, list expansion and customizers."""

    def test_bind_list_expands_in_clause(self, seeded):
        names = seeded.create_query('select name from something where id in (:ids) order by id') \
            .bind_list('ids', [1, 3]) \
            .map_to(str) \
            .list()
        assert names == ['Eric', 'Keith']

    def test_empty_list_raises(self, seeded):
        query = seeded.create_query('select name from something where id in (:ids)').bind_list('ids', [])
        with pytest.raises(db.BindingError):
            query.list()

    def test_define_substitutes_identifiers(self, seeded):
        count = seeded.create_query('select count(*) from <table>').define('table', 'something')
        assert count.map_to(int).one() == 3

    def test_option_attributes_are_default_defines(self, dbi):
        dbi.options.attributes['table'] = 'something'
        with dbi.open() as handle:
            handle.execute("insert into <table> (id, name) values (1, 'Eric')")
            assert handle.create_query('select count(*) from <table>').map_to(int).one() == 1

    def test_customizer_sees_rendered_sql(self, seeded):
        seen = []
        seeded.create_query('select name from something where id = :id') \
            .bind('id', 1) \
            .add_customizer(lambda ctx: seen.append((ctx.rendered_sql, ctx.params))) \
            .list()
        assert seen == [('select name from something where id = ?', [1])]


def test_generated_keys(handle):
    """RETURNING rows come back as dicts and can be read once"""
    keys = handle.create_update("insert into something (name) values ('Eric')") \
        .execute_and_return_generated_keys('id')
    assert keys.one() == {'id': 1}
    with pytest.raises(db.ValidationError):
        keys.list()


class TestGeneratedKeysWithoutReturning:
    """Drivers without RETURNING report the inserted row id."""

    @pytest.fixture(autouse=True)
    def no_returning(self, mocker):
        mocker.patch.object(db.strategy.SQLiteStrategy, 'supports_returning',
                            new_callable=mocker.PropertyMock, return_value=False)

    def test_last_row_id_under_requested_column(self, handle):
        handle.execute("insert into something (id, name) values (7, 'Eric')")
        keys = handle.create_update("insert into something (name) values ('Brian')") \
            .execute_and_return_generated_keys('id')
        assert keys.one() == {'id': 8}
        assert handle.open_contexts == 0
        with pytest.raises(db.ValidationError):
            keys.one()

    def test_default_column_name(self, handle):
        keys = handle.create_update("insert into something (name) values ('Eric')") \
            .execute_and_return_generated_keys()
        assert keys.list() == [{'id': 1}]

    def test_no_row_affected(self, handle):
        keys = handle.create_update("update something set name = 'Keith' where id = 99") \
            .execute_and_return_generated_keys('id')
        assert keys.find_one() is None

    def test_several_columns_are_refused(self, handle):
        with pytest.raises(db.StatementError, match='without RETURNING'):
            handle.create_update("insert into something (name) values ('Eric')") \
                .execute_and_return_generated_keys('id', 'name')
        assert handle.select('select count(*) from something').map_to(int).one() == 0

    def test_sql_objects_get_the_key(self, dbi):
        class Dao(db.SqlObject):
            @db.sql_update('insert into something (name) values (:name)', generated_keys='id')
            def insert(self, name: str) -> int: ...

        dbi.install_plugin(db.SqlObjectPlugin())
        assert dbi.on_demand(Dao).insert('Eric') == 1


def test_statement_error_keeps_driver_error(handle):
    """Driver failures surface as StatementError with the SQL"""
    with pytest.raises(db.StatementError) as excinfo:
        handle.execute('insert into nothing (id) values (1)')
    assert 'no such table' in str(excinfo.value)
    assert excinfo.value.sql == 'insert into nothing (id) values (1)'
    assert excinfo.value.__cause__ is not None


def test_handle_counts_statements(handle):
    """Handles track statement count and time"""
    calls = handle.calls
    handle.execute("insert into something (id, name) values (1, 'Eric')")
    handle.select('select * from something').list()
    assert handle.calls == calls + 2


def test_closed_handle_rejects_statements(handle):
    """A closed handle cannot create statements"""
    handle.close()
    with pytest.raises(db.StatementError, match='closed'):
        handle.create_query('select 1')


def test_close_twice_is_a_noop(dbi, counting_factory):
    """Closing a handle twice releases its connection once"""
    handle = dbi.open()
    handle.close()
    handle.close()
    assert handle.is_closed
    assert counting_factory.connections[-1].closed


def test_close_releases_open_results(dbi, counting_factory):
    """Closing a handle closes cursors of unconsumed results"""
    handle = dbi.open()
    handle.execute("insert into something (id, name) values (1, 'Eric')")
    it = handle.select('select * from something').iterator()
    connection = counting_factory.connections[-1]
    assert connection.live == 1
    handle.close()
    assert connection.live == 0
    assert it.closed


def test_connect_with_options(sqlite_handle):
    """connect() opens a handle from a DatabaseOptions mapping"""
    rows = sqlite_handle.select('select name, value from test_table order by value').list()
    assert rows[0] == {'name': 'Alice', 'value': 10}
    assert sqlite_handle.dialect == 'sqlite'
