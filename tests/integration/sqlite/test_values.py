"""
Value binding and mapping round trips through SQLite.
"""
import dataclasses
import datetime
import decimal
import enum

import dbhandle as db
import numpy as np
import pandas as pd
import pytest


class Color(enum.Enum):
    RED = 'r'
    GREEN = 'g'
    BLUE = 'b'


@dataclasses.dataclass
class Typed:
    int_value: int
    decimal_value: decimal.Decimal
    date_value: datetime.date
    datetime_value: datetime.datetime
    bytes_value: bytes
    null_value: str | None


@pytest.fixture
def typed_handle(sqlite_handle):
    sqlite_handle.execute("""
    CREATE TABLE typed (
        int_value INTEGER,
        big_int INTEGER,
        bool_true BOOLEAN,
        float_value REAL,
        decimal_value TEXT,
        text_value TEXT,
        date_value DATE,
        datetime_value DATETIME,
        bytes_value BLOB,
        null_value TEXT
    )
    """)
    return sqlite_handle


def insert_values(handle, values):
    columns = ', '.join(values)
    params = ', '.join(f':{name}' for name in values)
    return handle.create_update(f'insert into typed ({columns}) values ({params})') \
        .bind_map(values) \
        .execute()


def test_value_round_trip(typed_handle, value_dict):
    """Test each major type survives insert and select"""
    assert insert_values(typed_handle, value_dict) == 1
    row = typed_handle.select('select * from typed').one()

    assert row['int_value'] == 42
    assert row['big_int'] == value_dict['big_int']
    assert bool(row['bool_true']) is True
    assert row['float_value'] == pytest.approx(3.25)
    assert decimal.Decimal(row['decimal_value']) == value_dict['decimal_value']
    assert row['text_value'] == value_dict['text_value']
    assert row['date_value'] == datetime.date(2023, 5, 15)
    assert row['datetime_value'] == datetime.datetime(2023, 5, 15, 14, 30, 45)
    assert row['bytes_value'] == value_dict['bytes_value']
    assert row['null_value'] is None


def test_map_to_dataclass_converts_columns(typed_handle, value_dict):
    """Test that a dataclass gets values converted to its annotated types"""
    insert_values(typed_handle, value_dict)
    typed = typed_handle.create_query('select * from typed').map_to(Typed).one()
    assert typed == Typed(
        int_value=42,
        decimal_value=decimal.Decimal('9876.54'),
        date_value=datetime.date(2023, 5, 15),
        datetime_value=datetime.datetime(2023, 5, 15, 14, 30, 45),
        bytes_value=b'\x00\x01binary',
        null_value=None,
    )


def test_data_library_scalars_are_converted(handle, numeric_value_dict):
    """Test NumPy, pandas and PyArrow scalars reach the driver as Python values"""
    for name, (value, expected) in numeric_value_dict.items():
        seen = []
        handle.create_update('insert into something (name) values (:value)') \
            .bind('value', value) \
            .add_customizer(lambda ctx: seen.extend(ctx.params)) \
            .execute()
        assert seen == [expected], name
        assert type(seen[0]) is type(expected), name


def test_dataframe_round_trip(handle):
    """Test rows built from NumPy values come back as a DataFrame"""
    ids = np.arange(1, 4, dtype=np.int64)
    names = np.array(['Eric', 'Brian', 'Keith'])
    batch = handle.prepare_batch('insert into something (id, name) values (:id, :name)')
    for id_, name in zip(ids, names):
        batch.add({'id': id_, 'name': name})
    assert batch.execute() == 3

    df = handle.create_query('select id, name from something order by id').to_dataframe()
    expected = pd.DataFrame({'id': [1, 2, 3], 'name': ['Eric', 'Brian', 'Keith']})
    pd.testing.assert_frame_equal(df, expected)


def test_json_values_bind_as_text(handle):
    """Test dicts and lists are stored as JSON text on SQLite"""
    handle.execute('insert into something (id, name) values (?, ?)', 1, {'a': [1, 2]})
    assert handle.select('select name from something').map_to(str).one() == '{"a": [1, 2]}'


def test_registered_argument_converter(dbi):
    """Test a converter registered on the Dbi applies to every handle"""
    class Name:
        def __init__(self, first, last):
            self.first, self.last = first, last

    dbi.register_argument(Name, lambda n: f'{n.first} {n.last}')
    with dbi.open() as handle:
        handle.execute('insert into something (id, name) values (?, ?)', 1, Name('Brian', 'Cohen'))
        assert handle.select('select name from something').map_to(str).one() == 'Brian Cohen'


class TestEnums:
    """Enum binding and mapping by name and by ordinal."""

    def test_by_name(self, handle):
        handle.execute('insert into something (id, name) values (?, ?)', 1, Color.GREEN)
        assert handle.select('select name from something').map_to(str).one() == 'GREEN'
        assert handle.select('select name from something').map_to(Color).one() is Color.GREEN

    def test_by_ordinal_plugin(self, dbi):
        dbi.install_plugin(db.EnumByOrdinalPlugin())
        with dbi.open() as handle:
            handle.execute('insert into something (id, name) values (?, ?)', 1, Color.BLUE)
            assert handle.select('select name from something').map_to(int).one() == 2
            assert handle.select('select name from something').map_to(Color).one() is Color.BLUE

    def test_unknown_name_raises(self, handle):
        handle.execute("insert into something (id, name) values (1, 'PURPLE')")
        with pytest.raises(db.TypeConversionError):
            handle.select('select name from something').map_to(Color).one()
