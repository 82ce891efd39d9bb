import dbhandle as db
import pytest
from dbhandle import TransactionIsolationLevel


def count_rows(dbi):
    return dbi.with_handle(lambda h: h.select('select count(*) from something').map_to(int).one())


def test_in_transaction_commits(dbi):
    """Test that a successful callback is committed"""
    result = dbi.in_transaction(
        lambda h: h.execute("insert into something (id, name) values (1, 'Eric')"))
    assert result == 1
    assert count_rows(dbi) == 1


def test_failed_callback_is_rolled_back(dbi):
    """Test that a row inserted before the callback raises is not visible afterwards"""
    def work(handle):
        handle.execute("insert into something (id, name) values (1, 'Eric')")
        raise ValueError('boom')

    with pytest.raises(ValueError, match='boom'):
        dbi.in_transaction(work)
    assert count_rows(dbi) == 0


def test_handle_transaction_commit_and_rollback(handle):
    """Test explicit begin/commit/rollback on one handle"""
    handle.begin()
    handle.execute("insert into something (id, name) values (1, 'Eric')")
    handle.commit()
    handle.begin()
    handle.execute("insert into something (id, name) values (2, 'Brian')")
    handle.rollback()
    assert handle.select('select name from something').map_to(str).list() == ['Eric']


def test_nested_in_transaction_joins_outer(dbi):
    """Test that an inner in_transaction participates in the outer transaction"""
    def inner(handle):
        handle.execute("insert into something (id, name) values (2, 'Brian')")

    def outer(handle):
        handle.execute("insert into something (id, name) values (1, 'Eric')")
        handle.in_transaction(inner)
        assert handle.is_in_transaction()
        raise RuntimeError('outer failed')

    with pytest.raises(RuntimeError):
        dbi.in_transaction(outer)
    assert count_rows(dbi) == 0


def test_uncommitted_data_is_invisible_to_other_handles(dbi):
    """Test that another connection does not see rows before commit"""
    with dbi.open() as writer, dbi.open() as reader:
        writer.begin()
        writer.execute("insert into something (id, name) values (1, 'Eric')")
        assert reader.select('select count(*) from something').map_to(int).one() == 0
        writer.commit()
        assert reader.select('select count(*) from something').map_to(int).one() == 1


class TestSavepoints:
    """Savepoints on a real connection."""

    def test_rollback_to_savepoint_keeps_earlier_work(self, handle):
        handle.begin()
        handle.execute("insert into something (id, name) values (1, 'Eric')")
        handle.savepoint('first')
        handle.execute("insert into something (id, name) values (2, 'Brian')")
        handle.savepoint('second')
        handle.execute("insert into something (id, name) values (3, 'Keith')")
        handle.rollback_to_savepoint('first')
        assert handle.transaction_handler.savepoints == ['first']
        handle.commit()
        assert handle.select('select id from something').map_to(int).list() == [1]

    def test_release_savepoint_keeps_work(self, handle):
        handle.begin()
        handle.savepoint('first')
        handle.execute("insert into something (id, name) values (1, 'Eric')")
        handle.release_savepoint('first')
        with pytest.raises(db.TransactionStateError):
            handle.rollback_to_savepoint('first')
        handle.commit()
        assert handle.select('select count(*) from something').map_to(int).one() == 1

    def test_savepoint_outside_transaction_raises(self, handle):
        with pytest.raises(db.TransactionStateError):
            handle.savepoint('nope')


class TestIsolation:
    """Isolation level handling for SQLite."""

    def test_default_level(self, handle):
        assert handle.get_transaction_isolation_level() is TransactionIsolationLevel.SERIALIZABLE

    def test_level_is_restored_after_transaction(self, handle):
        def check(h):
            assert h.get_transaction_isolation_level() is TransactionIsolationLevel.READ_UNCOMMITTED
            return h.select('pragma read_uncommitted').map_to(int).one()

        assert handle.in_transaction(check, TransactionIsolationLevel.READ_UNCOMMITTED) == 1
        assert handle.get_transaction_isolation_level() is TransactionIsolationLevel.SERIALIZABLE

    def test_nested_level_mismatch_raises(self, dbi):
        def outer(handle):
            handle.in_transaction(lambda h: None, TransactionIsolationLevel.READ_UNCOMMITTED)

        with pytest.raises(db.TransactionStateError, match='READ UNCOMMITTED'):
            dbi.in_transaction(outer)

    def test_set_level_by_name(self, handle):
        handle.set_transaction_isolation_level('read_uncommitted')
        assert handle.get_transaction_isolation_level() is TransactionIsolationLevel.READ_UNCOMMITTED


class TestImproperClose:
    """Closing a handle with a transaction still open."""

    def test_close_rolls_back_and_raises(self, dbi):
        handle = dbi.open()
        handle.begin()
        handle.execute("insert into something (id, name) values (1, 'Eric')")
        with pytest.raises(db.TransactionStateError, match='Improperly closed'):
            handle.close()
        assert handle.is_closed
        assert count_rows(dbi) == 0

    def test_close_without_force_only_rolls_back(self, dbi):
        dbi.options.force_end_transactions = False
        handle = dbi.open()
        handle.begin()
        handle.execute("insert into something (id, name) values (1, 'Eric')")
        handle.close()
        assert count_rows(dbi) == 0

    def test_with_block_error_is_kept(self, dbi):
        with pytest.raises(KeyError) as excinfo, dbi.open() as handle:
            handle.begin()
            raise KeyError('inside')
        assert isinstance(excinfo.value.suppressed[0], db.TransactionStateError)
