"""
Integration tests for isolation, atomicity and recovery behavior.

These exercise several components together through the SandboxDB facade,
including concurrent sessions on worker threads.
"""

import pytest
import time
from concurrent.futures import ThreadPoolExecutor

from txsandbox.catalog import Column
from txsandbox.config import EngineConfig
from txsandbox.database import SandboxDB
from txsandbox.errors import (
    DeadlockVictimError,
    ErrorKind,
    LockTimeoutError,
    TransactionStateError,
    UpdateConflictError,
)
from txsandbox.models.lock import KeyRange
from txsandbox.models.transaction import IsolationLevel

TABLE = "HR.EMP_Details"


def wait_until(condition, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.01)
    return False


# Test fixtures
@pytest.fixture
def db():
    """Database whose blocking waits give up after two seconds."""
    database = SandboxDB(EngineConfig(lock_timeout=2.0))
    database.create_table(
        TABLE,
        [
            Column("EmployeeID", int, nullable=False),
            Column("DepartmentID", int),
            Column("Salary", (int, float)),
        ],
    )
    return database


@pytest.fixture
def rows(db):
    """Five committed employees; row 5 earns 100."""
    txn_id = db.begin_transaction()
    ids = [
        db.insert(txn_id, TABLE, {"EmployeeID": 1, "DepartmentID": 1, "Salary": 500}),
        db.insert(txn_id, TABLE, {"EmployeeID": 2, "DepartmentID": 1, "Salary": 400}),
        db.insert(txn_id, TABLE, {"EmployeeID": 3, "DepartmentID": 2, "Salary": 300}),
        db.insert(txn_id, TABLE, {"EmployeeID": 4, "DepartmentID": 2, "Salary": 200}),
        db.insert(txn_id, TABLE, {"EmployeeID": 5, "DepartmentID": 3, "Salary": 100}),
    ]
    db.commit_transaction(txn_id)
    return ids


def salary(db, row_id, txn_id=None):
    return db.get(TABLE, row_id, txn_id=txn_id)["Salary"]


class TestAtomicity:
    """All-or-nothing behavior of rollback and savepoints."""

    def test_rollback_restores_store_exactly(self, db, rows):
        """Test that a rolled-back transaction leaves no trace in the store."""
        before = db.store.dump()
        txn_id = db.begin_transaction()
        db.update(txn_id, TABLE, rows[0], {"Salary": 1})
        db.delete(txn_id, TABLE, rows[1])
        db.insert(txn_id, TABLE, {"EmployeeID": 6, "DepartmentID": 1, "Salary": 50})

        db.rollback_transaction(txn_id)

        assert db.store.dump() == before
        assert db.lock_manager.get_lock_count() == 0

    def test_savepoint_scoping(self, db, rows):
        """Test that writes before the savepoint survive and later ones do not."""
        txn_id = db.begin_transaction()
        db.update(txn_id, TABLE, rows[0], {"Salary": 510})
        db.save_transaction(txn_id, "AfterFirst")
        db.update(txn_id, TABLE, rows[1], {"Salary": 410})
        inserted = db.insert(txn_id, TABLE, {"EmployeeID": 6, "DepartmentID": 1, "Salary": 50})

        db.rollback_transaction(txn_id, "AfterFirst")
        db.commit_transaction(txn_id)

        assert salary(db, rows[0]) == 510
        assert salary(db, rows[1]) == 400
        assert db.get(TABLE, inserted) is None

    def test_rollback_is_idempotent(self, db, rows):
        """Test that rolling back an aborted transaction changes nothing."""
        txn_id = db.begin_transaction()
        db.update(txn_id, TABLE, rows[0], {"Salary": 1})
        db.rollback_transaction(txn_id)
        after_first = db.store.dump()

        assert db.rollback_transaction(txn_id) is False
        assert db.store.dump() == after_first

    def test_snapshot_savepoint_end_to_end(self, db, rows):
        """Test the 100 -> 150 -> SAVE -> 200 -> ROLLBACK TO SAVE -> COMMIT flow."""
        row = rows[4]
        txn_id = db.begin_transaction(IsolationLevel.SNAPSHOT)
        db.update(txn_id, TABLE, row, {"Salary": 150})
        db.save_transaction(txn_id, "S1")
        db.update(txn_id, TABLE, row, {"Salary": 200})
        db.rollback_transaction(txn_id, "S1")
        assert db.commit_transaction(txn_id)

        assert salary(db, row) == 150


class TestIsolation:
    """Anomalies each isolation level does and does not allow."""

    def test_read_uncommitted_sees_dirty_write(self, db, rows):
        writer = db.begin_transaction()
        db.update(writer, TABLE, rows[0], {"Salary": 999})

        reader = db.begin_transaction(IsolationLevel.READ_UNCOMMITTED)
        assert salary(db, rows[0], reader) == 999

        db.rollback_transaction(writer)
        assert salary(db, rows[0], reader) == 500

    def test_read_committed_sees_fresh_commits(self, db, rows):
        """Test that READ COMMITTED observes commits between its statements."""
        reader = db.begin_transaction(IsolationLevel.READ_COMMITTED)
        assert salary(db, rows[0], reader) == 500

        writer = db.begin_transaction()
        db.update(writer, TABLE, rows[0], {"Salary": 550})
        db.commit_transaction(writer)

        assert salary(db, rows[0], reader) == 550

    def test_repeatable_read_blocks_writer_until_end(self, db, rows):
        """Test that a REPEATABLE READ reader keeps its value stable."""
        reader = db.begin_transaction(IsolationLevel.REPEATABLE_READ)
        assert salary(db, rows[0], reader) == 500

        writer = db.begin_transaction()
        with ThreadPoolExecutor(max_workers=1) as executor:
            future = executor.submit(db.update, writer, TABLE, rows[0], {"Salary": 550})
            assert wait_until(lambda: writer in db.lock_manager.waiting_transactions())

            assert salary(db, rows[0], reader) == 500
            db.commit_transaction(reader)

            assert future.result(timeout=2) is True
        db.commit_transaction(writer)
        assert salary(db, rows[0]) == 550

    def test_repeatable_read_writer_times_out(self, db, rows):
        """Test LOCK_TIMEOUT against a reader's held shared lock."""
        reader = db.begin_transaction(IsolationLevel.REPEATABLE_READ)
        salary(db, rows[0], reader)

        writer = db.begin_transaction(lock_timeout=0.1)
        with pytest.raises(LockTimeoutError):
            db.update(writer, TABLE, rows[0], {"Salary": 550})

        assert db.is_transaction_active(writer)
        assert salary(db, rows[0], reader) == 500

    def test_snapshot_ignores_later_commits(self, db, rows):
        """Test that SNAPSHOT reads stay at the transaction's start."""
        reader = db.begin_transaction(IsolationLevel.SNAPSHOT)

        writer = db.begin_transaction()
        db.update(writer, TABLE, rows[0], {"Salary": 550})
        db.insert(writer, TABLE, {"EmployeeID": 6, "DepartmentID": 1, "Salary": 10})
        db.commit_transaction(writer)

        assert salary(db, rows[0], reader) == 500
        assert len(db.select(TABLE, txn_id=reader)) == 5

    def test_snapshot_update_conflict(self, db, rows):
        """Test that two SNAPSHOT writers to one row cannot both commit."""
        first = db.begin_transaction(IsolationLevel.SNAPSHOT)
        second = db.begin_transaction(IsolationLevel.SNAPSHOT)
        assert salary(db, rows[0], first) == salary(db, rows[0], second) == 500

        db.update(first, TABLE, rows[0], {"Salary": 600})
        db.update(second, TABLE, rows[0], {"Salary": 700})

        with pytest.raises(UpdateConflictError) as exc_info:
            db.commit_transaction(second)

        assert exc_info.value.kind is ErrorKind.UPDATE_CONFLICT
        assert db.xact_state(second) == 0
        assert db.commit_transaction(first)
        assert salary(db, rows[0]) == 600

    @pytest.mark.parametrize("holder_commits_first", [False, True])
    def test_snapshot_write_past_locking_writer_fails(self, db, rows, holder_commits_first):
        """Test that a SNAPSHOT write cannot overwrite a READ COMMITTED writer's update."""
        holder = db.begin_transaction(IsolationLevel.READ_COMMITTED)
        db.update(holder, TABLE, rows[0], {"Salary": 600})
        snapshot = db.begin_transaction(IsolationLevel.SNAPSHOT)
        assert db.update(snapshot, TABLE, rows[0], {"DepartmentID": 7})

        if holder_commits_first:
            assert db.commit_transaction(holder)
        with pytest.raises(UpdateConflictError):
            db.commit_transaction(snapshot)
        if not holder_commits_first:
            assert db.commit_transaction(holder)

        row = db.get(TABLE, rows[0])
        assert row["Salary"] == 600
        assert row["DepartmentID"] == 1

    def test_snapshot_insert_into_serializable_range_fails(self, db, rows):
        """Test that a SNAPSHOT insert cannot put a phantom into a locked range."""
        department_one = KeyRange(TABLE, "DepartmentID", 1, 1)
        reader = db.begin_transaction(IsolationLevel.SERIALIZABLE)
        first_read = db.select(TABLE, department_one, txn_id=reader)
        assert len(first_read) == 2

        snapshot = db.begin_transaction(IsolationLevel.SNAPSHOT)
        db.insert(snapshot, TABLE, {"EmployeeID": 6, "DepartmentID": 1, "Salary": 50})
        with pytest.raises(UpdateConflictError) as exc_info:
            db.commit_transaction(snapshot)

        assert exc_info.value.details["transactions"] == [reader]
        assert db.select(TABLE, department_one, txn_id=reader) == first_read
        assert db.commit_transaction(reader)
        assert len(db.select(TABLE, department_one)) == 2

    @pytest.mark.parametrize(
        "level", [IsolationLevel.REPEATABLE_READ, IsolationLevel.SERIALIZABLE]
    )
    def test_write_to_scanned_row_keeps_concurrent_commit(self, db, rows, level):
        """Test that a row the reader scanned but did not return is written from its latest value."""
        reader = db.begin_transaction(level)
        assert len(db.select(TABLE, KeyRange(TABLE, "DepartmentID", 1, 1), txn_id=reader)) == 2

        writer = db.begin_transaction(lock_timeout=0.1)
        db.update(writer, TABLE, rows[2], {"Salary": 999})
        assert db.commit_transaction(writer)

        db.update(reader, TABLE, rows[2], {"DepartmentID": 3})
        assert db.commit_transaction(reader)

        row = db.get(TABLE, rows[2])
        assert row["Salary"] == 999
        assert row["DepartmentID"] == 3

    def test_snapshot_writers_on_different_rows_both_commit(self, db, rows):
        first = db.begin_transaction(IsolationLevel.SNAPSHOT)
        second = db.begin_transaction(IsolationLevel.SNAPSHOT)
        db.update(first, TABLE, rows[0], {"Salary": 600})
        db.update(second, TABLE, rows[1], {"Salary": 700})

        assert db.commit_transaction(first)
        assert db.commit_transaction(second)

    def test_serializable_blocks_phantom_insert(self, db, rows):
        """Test that an insert into a locked range waits for the reader to finish."""
        department_one = KeyRange(TABLE, "DepartmentID", 1, 1)
        reader = db.begin_transaction(IsolationLevel.SERIALIZABLE)
        first_read = db.select(TABLE, department_one, txn_id=reader)

        writer = db.begin_transaction()
        with ThreadPoolExecutor(max_workers=1) as executor:
            future = executor.submit(
                db.insert, writer, TABLE, {"EmployeeID": 6, "DepartmentID": 1, "Salary": 50}
            )
            assert wait_until(lambda: writer in db.lock_manager.waiting_transactions())
            assert not future.done()

            second_read = db.select(TABLE, department_one, txn_id=reader)
            assert second_read == first_read
            db.commit_transaction(reader)

            new_row = future.result(timeout=2)
        db.commit_transaction(writer)

        assert db.get(TABLE, new_row)["DepartmentID"] == 1
        assert len(db.select(TABLE, department_one)) == 3

    def test_serializable_allows_insert_outside_range(self, db, rows):
        """Test that inserts outside the locked range proceed."""
        reader = db.begin_transaction(IsolationLevel.SERIALIZABLE)
        db.select(TABLE, KeyRange(TABLE, "DepartmentID", 1, 1), txn_id=reader)

        writer = db.begin_transaction(lock_timeout=0.1)
        db.insert(writer, TABLE, {"EmployeeID": 6, "DepartmentID": 3, "Salary": 50})
        assert db.commit_transaction(writer)
        db.commit_transaction(reader)

    def test_serializable_blocks_update_moving_into_range(self, db, rows):
        """Test that an update whose new image enters the range is blocked."""
        reader = db.begin_transaction(IsolationLevel.SERIALIZABLE)
        db.select(TABLE, KeyRange(TABLE, "DepartmentID", 1, 1), txn_id=reader)

        writer = db.begin_transaction(lock_timeout=0.1)
        with pytest.raises(LockTimeoutError):
            db.update(writer, TABLE, rows[4], {"DepartmentID": 1})

        db.commit_transaction(reader)
        db.update(writer, TABLE, rows[4], {"DepartmentID": 1})
        assert db.commit_transaction(writer)


class TestDeadlocks:
    """Deadlock detection through the statement layer."""

    def test_deadlock_victim_is_rolled_back(self, db, rows):
        """Test that the younger transaction is chosen and its writes undone."""
        older = db.begin_transaction()
        younger = db.begin_transaction()
        db.update(older, TABLE, rows[0], {"Salary": 501})
        db.update(younger, TABLE, rows[1], {"Salary": 401})

        with ThreadPoolExecutor(max_workers=1) as executor:
            future = executor.submit(db.update, older, TABLE, rows[1], {"Salary": 402})
            assert wait_until(lambda: older in db.lock_manager.waiting_transactions())

            with pytest.raises(DeadlockVictimError) as exc_info:
                db.update(younger, TABLE, rows[0], {"Salary": 502})

            assert future.result(timeout=2) is True

        assert exc_info.value.kind is ErrorKind.DEADLOCK_VICTIM
        assert db.xact_state(younger) == 0
        assert db.rollback_transaction(younger) is False
        db.commit_transaction(older)

        assert salary(db, rows[0]) == 501
        assert salary(db, rows[1]) == 402
        assert db.get_system_status()["deadlocks_detected"] == 1
        assert db.executor.stats["deadlock_victims"] == 1

    def test_concurrent_transfers_preserve_total(self, db, rows):
        """Test that REPEATABLE READ transfers under contention never lose money."""
        total = sum(row["Salary"] for row in db.select(TABLE))

        def transfer(source, target):
            txn_id = db.begin_transaction(IsolationLevel.REPEATABLE_READ)
            try:
                amount = 10
                source_salary = salary(db, source, txn_id)
                target_salary = salary(db, target, txn_id)
                db.update(txn_id, TABLE, source, {"Salary": source_salary - amount})
                db.update(txn_id, TABLE, target, {"Salary": target_salary + amount})
                return db.commit_transaction(txn_id)
            except (DeadlockVictimError, LockTimeoutError):
                db.rollback_transaction(txn_id)
                return False

        pairs = [(rows[i % 5], rows[(i + 1) % 5]) for i in range(20)]
        with ThreadPoolExecutor(max_workers=4) as executor:
            results = list(executor.map(lambda pair: transfer(*pair), pairs))

        assert any(results)
        assert sum(row["Salary"] for row in db.select(TABLE)) == total
        assert db.transaction_manager.get_active_transaction_count() == 0
        assert db.lock_manager.get_lock_count() == 0


class TestCancellation:
    """Cancelling a transaction from another session."""

    def test_cancel_wakes_blocked_transaction(self, db, rows):
        """Test that a blocked transaction fails at once when it is cancelled."""
        holder = db.begin_transaction()
        db.update(holder, TABLE, rows[0], {"Salary": 1})
        waiter = db.begin_transaction(lock_timeout=None)

        with ThreadPoolExecutor(max_workers=1) as executor:
            future = executor.submit(db.update, waiter, TABLE, rows[0], {"Salary": 2})
            assert wait_until(lambda: waiter in db.lock_manager.waiting_transactions())

            assert db.cancel_transaction(waiter)

            with pytest.raises(TransactionStateError, match="cancelled while waiting"):
                future.result(timeout=2)

        assert db.xact_state(waiter) == 0
        assert db.lock_manager.locks_held(waiter) == []
        assert db.lock_manager.waiting_transactions() == {}
        assert db.commit_transaction(holder)
        assert salary(db, rows[0]) == 1
