"""
Fixtures for SQLite integration tests.
"""
import dbhandle as db
import pytest
from tests.fixtures.sqlite import CountingConnectionFactory


@pytest.fixture
def limited_factory(db_path, dbi):
    """Factory over the ``dbi`` database whose connections allow two live cursors."""
    return CountingConnectionFactory(db_path, max_cursors=2)


@pytest.fixture
def limited_dbi(limited_factory):
    return db.Dbi(limited_factory)


@pytest.fixture
def seeded(handle):
    """``handle`` with three rows in ``something``."""
    handle.prepare_batch('insert into something (id, name) values (:id, :name)') \
        .add({'id': 1, 'name': 'Eric'}) \
        .add({'id': 2, 'name': 'Brian'}) \
        .add({'id': 3, 'name': 'Keith'}) \
        .execute()
    return handle
