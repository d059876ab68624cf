"""Unit tests for RowStore and VersionChainManager."""

import pytest

from txsandbox.models.row import RowVersion
from txsandbox.models.transaction import IsolationLevel, Transaction
from txsandbox.row_store import RowStore
from txsandbox.version_chain import VersionChainManager

TABLE = "HR.EMP_Details"


# Test fixtures
@pytest.fixture
def store():
    """Provide a fresh RowStore instance for testing."""
    return RowStore()


@pytest.fixture
def versions(store):
    return VersionChainManager(store)


def make_txn(txn_id, level=IsolationLevel.READ_COMMITTED, start_seq=0):
    return Transaction(txn_id=txn_id, isolation_level=level, start_seq=start_seq, timestamp=0.0)


def write(store, row_id, txn_id, payload, tombstone=False):
    version = RowVersion(
        version_id=store.new_version_id(),
        row_id=row_id,
        creator_txn_id=txn_id,
        payload=None if tombstone else payload,
        deleter_txn_id=txn_id if tombstone else None,
    )
    store.append_version(row_id, version)
    return version


@pytest.fixture
def committed_row(store, versions):
    """A row whose first version was committed at sequence 1."""
    row_id = store.new_row_id(TABLE)
    versions.commit_version(write(store, row_id, 1, {"Salary": 100}), 1)
    return row_id


class TestRowStore:
    """Tests for row and version bookkeeping."""

    def test_row_ids_are_unique_and_ordered(self, store):
        """Test that new rows get increasing ids per table."""
        first = store.new_row_id(TABLE)
        second = store.new_row_id(TABLE)
        other = store.new_row_id("HR.Departments")

        assert first < second < other
        assert store.row_ids(TABLE) == [first, second]
        assert store.table_ids() == ["HR.Departments", TABLE]

    def test_append_to_unknown_row_raises(self, store):
        """Test that versions can only be added to allocated rows."""
        with pytest.raises(KeyError):
            store.append_version(99, RowVersion(1, 99, 1, {}))

    def test_removing_last_version_forgets_row(self, store):
        """Test that an inserted row vanishes when its only version is removed."""
        row_id = store.new_row_id(TABLE)
        version = write(store, row_id, 1, {"Salary": 1})

        store.remove_version(row_id, version)

        assert store.get_row(row_id) is None
        assert store.row_ids(TABLE) == []
        assert store.get_version_chain(row_id) == []

    def test_discard_row_if_empty_keeps_rows_with_versions(self, store):
        empty = store.new_row_id(TABLE)
        used = store.new_row_id(TABLE)
        write(store, used, 1, {"Salary": 1})

        store.discard_row_if_empty(empty)
        store.discard_row_if_empty(used)

        assert store.row_ids(TABLE) == [used]

    def test_dump_copies_chains(self, store, committed_row):
        """Test that dump returns plain data detached from the store."""
        dumped = store.dump()

        assert dumped[committed_row][0]["payload"] == {"Salary": 100}
        assert dumped[committed_row][0]["begin_seq"] == 1
        dumped[committed_row][0]["payload"]["Salary"] = 0
        assert store.get_version_chain(committed_row)[0].payload == {"Salary": 100}


class TestVisibility:
    """Tests for per-isolation-level version visibility."""

    def test_writer_sees_own_in_flight_version(self, store, versions, committed_row):
        """Test that a transaction reads its own uncommitted write."""
        writer = make_txn(2)
        write(store, committed_row, 2, {"Salary": 150})

        assert versions.visible_version(committed_row, writer).payload == {"Salary": 150}

    def test_read_committed_skips_uncommitted(self, store, versions, committed_row):
        """Test that READ COMMITTED never returns a dirty version."""
        write(store, committed_row, 2, {"Salary": 150})

        reader = make_txn(3)
        assert versions.visible_version(committed_row, reader).payload == {"Salary": 100}

    def test_read_uncommitted_sees_dirty_version(self, store, versions, committed_row):
        """Test that READ UNCOMMITTED returns the newest in-flight write."""
        write(store, committed_row, 2, {"Salary": 150})

        reader = make_txn(3, IsolationLevel.READ_UNCOMMITTED)
        assert versions.visible_version(committed_row, reader).payload == {"Salary": 150}

    def test_uncommitted_insert_invisible_to_others(self, store, versions):
        """Test that a row with only an in-flight version does not exist for others."""
        row_id = store.new_row_id(TABLE)
        write(store, row_id, 2, {"Salary": 1})

        assert versions.visible_version(row_id, make_txn(3)) is None
        assert versions.visible_version(row_id, make_txn(4, IsolationLevel.SNAPSHOT)) is None

    def test_commit_closes_previous_version(self, store, versions, committed_row):
        """Test that committing stamps begin_seq and ends the superseded version."""
        newer = write(store, committed_row, 2, {"Salary": 150})
        versions.commit_version(newer, 2)

        older = store.get_version_chain(committed_row)[0]
        assert older.end_seq == 2
        assert newer.begin_seq == 2
        assert newer.is_current
        assert versions.current_version(committed_row) is newer

    def test_snapshot_reads_as_of_start(self, store, versions, committed_row):
        """Test that SNAPSHOT keeps seeing the version current when it began."""
        snapshot = make_txn(3, IsolationLevel.SNAPSHOT, start_seq=1)
        versions.commit_version(write(store, committed_row, 2, {"Salary": 150}), 2)

        assert versions.visible_version(committed_row, snapshot).payload == {"Salary": 100}
        assert versions.visible_version(committed_row, make_txn(4)).payload == {"Salary": 150}

    def test_repeatable_read_pins_first_read(self, store, versions, committed_row):
        """Test that REPEATABLE READ returns the version it first observed."""
        reader = make_txn(3, IsolationLevel.REPEATABLE_READ, start_seq=0)
        first = versions.visible_version(committed_row, reader)

        versions.commit_version(write(store, committed_row, 2, {"Salary": 150}), 2)

        assert versions.visible_version(committed_row, reader) is first
        assert reader.pinned_versions[committed_row] == first.version_id

    def test_read_without_pin_leaves_row_unpinned(self, store, versions, committed_row):
        """Test that a scan can look at a row without fixing its version."""
        reader = make_txn(3, IsolationLevel.SERIALIZABLE)
        assert versions.visible_version(committed_row, reader, pin=False).payload == {"Salary": 100}
        assert reader.pinned_versions == {}

        versions.commit_version(write(store, committed_row, 2, {"Salary": 150}), 2)

        assert versions.visible_version(committed_row, reader).payload == {"Salary": 150}

    def test_latest_version_ignores_pin(self, store, versions, committed_row):
        """Test that a writer builds on the current committed version, not its pinned read."""
        reader = make_txn(3, IsolationLevel.REPEATABLE_READ)
        versions.visible_version(committed_row, reader)
        versions.commit_version(write(store, committed_row, 2, {"Salary": 150}), 2)

        assert versions.visible_version(committed_row, reader).payload == {"Salary": 100}
        assert versions.latest_version(committed_row, reader).payload == {"Salary": 150}

        write(store, committed_row, 3, {"Salary": 175})
        assert versions.latest_version(committed_row, reader).payload == {"Salary": 175}

    def test_pin_skips_in_flight_versions(self, store, versions, committed_row):
        reader = make_txn(2, IsolationLevel.REPEATABLE_READ)
        own = write(store, committed_row, 2, {"Salary": 150})

        versions.pin(reader, own)

        assert reader.pinned_versions == {}

    def test_tombstone_reads_as_missing(self, store, versions, committed_row):
        """Test that a committed delete hides the row."""
        versions.commit_version(write(store, committed_row, 2, None, tombstone=True), 2)

        assert versions.visible_version(committed_row, make_txn(3)) is None
        assert versions.current_version(committed_row).is_tombstone


class TestDiscardAndConflicts:
    """Tests for undoing in-flight versions and conflict checks."""

    def test_discard_uncommitted_removes_only_own_versions(self, store, versions, committed_row):
        """Test that rollback removes exactly the transaction's in-flight writes."""
        write(store, committed_row, 2, {"Salary": 150})
        write(store, committed_row, 3, {"Salary": 175})
        inserted = store.new_row_id(TABLE)
        write(store, inserted, 2, {"Salary": 5})

        assert versions.discard_uncommitted(2) == 2

        chain = store.get_version_chain(committed_row)
        assert [v.creator_txn_id for v in chain] == [1, 3]
        assert store.get_row(inserted) is None

    def test_discard_versions_leaves_committed_alone(self, store, versions, committed_row):
        committed = store.get_version_chain(committed_row)[0]
        assert versions.discard_versions([committed]) == 0
        assert store.get_version_chain(committed_row) == [committed]

    def test_write_conflict_after_snapshot_start(self, store, versions, committed_row):
        """Test detection of a commit newer than the snapshot."""
        snapshot = make_txn(3, IsolationLevel.SNAPSHOT, start_seq=1)
        assert not versions.has_write_conflict(committed_row, snapshot)

        versions.commit_version(write(store, committed_row, 2, {"Salary": 150}), 2)
        assert versions.has_write_conflict(committed_row, snapshot)
