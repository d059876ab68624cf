"""Version visibility and version stamping."""

import logging
from typing import Iterable, List, Optional
from .models.row import RowVersion
from .models.transaction import IsolationLevel, Transaction
from .row_store import RowStore

logger = logging.getLogger(__name__)


class VersionChainManager:
    """Decides which version of a row a transaction sees."""

    def __init__(self, store: RowStore):
        self.store = store

    def visible_version(self, row_id: int, txn: Transaction, pin: bool = True) -> Optional[RowVersion]:
        """
        Version of ``row_id`` visible to ``txn``, or None.

        A transaction always reads its own newest in-flight write. Otherwise:
        READ UNCOMMITTED reads the newest version of any writer, READ
        COMMITTED the current committed one, SNAPSHOT the one current at
        ``txn.start_seq``, and REPEATABLE READ / SERIALIZABLE the one current
        at the first read of the row, which is then pinned unless ``pin`` is
        False. Tombstones read as None.
        """
        chain = self.store.get_version_chain(row_id)
        if not chain:
            return None

        own = self._own_in_flight(chain, txn.txn_id)
        if own is not None:
            return self._live(own)

        level = txn.isolation_level
        if level is IsolationLevel.READ_UNCOMMITTED:
            dirty = [v for v in chain if not v.is_committed]
            if dirty:
                return self._live(dirty[-1])
            return self._live(self._current(chain))

        if level is IsolationLevel.SNAPSHOT:
            return self._live(self._as_of(chain, txn.start_seq))

        if level.pins_reads:
            pinned_id = txn.pinned_versions.get(row_id)
            if pinned_id is not None:
                for version in chain:
                    if version.version_id == pinned_id:
                        return self._live(version)
            current = self._current(chain)
            if pin and current is not None:
                self.pin(txn, current)
            return self._live(current)

        return self._live(self._current(chain))

    def latest_version(self, row_id: int, txn: Transaction) -> Optional[RowVersion]:
        """Own newest in-flight write, else the current committed version."""
        chain = self.store.get_version_chain(row_id)
        if not chain:
            return None
        own = self._own_in_flight(chain, txn.txn_id)
        if own is not None:
            return self._live(own)
        return self._live(self._current(chain))

    def pin(self, txn: Transaction, version: RowVersion) -> None:
        """Make ``version`` what later REPEATABLE READ / SERIALIZABLE reads of its row return."""
        if not version.is_committed:
            return
        txn.pinned_versions[version.row_id] = version.version_id
        logger.debug(
            f"Transaction {txn.txn_id} pinned row {version.row_id} at version {version.version_id}"
        )

    def commit_version(self, version: RowVersion, seq: int) -> None:
        """Stamp ``version`` as committed at ``seq`` and close the version it supersedes."""
        chain = self.store.get_version_chain(version.row_id)
        for other in chain:
            if other is not version and other.is_current:
                other.end_seq = seq
        version.begin_seq = seq

    def discard_uncommitted(self, txn_id: int) -> int:
        """Remove every in-flight version written by ``txn_id``."""
        doomed = []
        for row_id in list(self.store.rows):
            for version in self.store.get_version_chain(row_id):
                if version.creator_txn_id == txn_id and not version.is_committed:
                    doomed.append(version)
        return self.discard_versions(doomed)

    def discard_versions(self, versions: Iterable[RowVersion]) -> int:
        """Remove the given in-flight versions; committed versions are left alone."""
        count = 0
        for version in versions:
            if version.is_committed:
                continue
            self.store.remove_version(version.row_id, version)
            count += 1
        return count

    def has_write_conflict(self, row_id: int, txn: Transaction) -> bool:
        """True if another transaction committed a version of the row after ``txn`` began."""
        for version in self.store.get_version_chain(row_id):
            if (
                version.is_committed
                and version.creator_txn_id != txn.txn_id
                and version.begin_seq > txn.start_seq
            ):
                return True
        return False

    def current_version(self, row_id: int) -> Optional[RowVersion]:
        """Latest committed version, tombstone included."""
        return self._current(self.store.get_version_chain(row_id))

    @staticmethod
    def _own_in_flight(chain: List[RowVersion], txn_id: int) -> Optional[RowVersion]:
        for version in reversed(chain):
            if version.creator_txn_id == txn_id and not version.is_committed:
                return version
        return None

    @staticmethod
    def _current(chain: List[RowVersion]) -> Optional[RowVersion]:
        for version in reversed(chain):
            if version.is_current:
                return version
        return None

    @staticmethod
    def _as_of(chain: List[RowVersion], seq: int) -> Optional[RowVersion]:
        best = None
        for version in chain:
            if not version.is_committed or version.begin_seq > seq:
                continue
            if version.end_seq is not None and version.end_seq <= seq:
                continue
            if best is None or version.begin_seq > best.begin_seq:
                best = version
        return best

    @staticmethod
    def _live(version: Optional[RowVersion]) -> Optional[RowVersion]:
        if version is None or version.is_tombstone:
            return None
        return version
