"""Transaction lifecycle: begin, savepoint, commit and rollback."""

import logging
import threading
import time
from typing import Any, Dict, Iterable, List, Optional
from .config import EngineConfig
from .errors import (
    TransactionDoomedError,
    TransactionStateError,
    UpdateConflictError,
)
from .lock_manager import LockManager
from .models.row import RowVersion
from .models.transaction import IsolationLevel, Transaction, TransactionState
from .row_store import RowStore
from .savepoint_manager import SavepointManager
from .version_chain import VersionChainManager

logger = logging.getLogger(__name__)

# Sentinel: take the value from EngineConfig (None is a valid lock timeout).
USE_CONFIG = object()


class TransactionManager:
    """
    Owns transaction state and the global commit sequence.

    All mutation of the row store and the lock table goes through here or
    through the statement executor while holding ``self.lock``. Blocking lock
    waits happen outside that latch.
    """

    def __init__(
        self,
        store: Optional[RowStore] = None,
        lock_manager: Optional[LockManager] = None,
        config: Optional[EngineConfig] = None,
    ):
        self.store = store or RowStore()
        self.versions = VersionChainManager(self.store)
        self.lock_manager = lock_manager or LockManager()
        self.savepoint_manager = SavepointManager()
        self.config = config or EngineConfig()

        self.active_transactions: Dict[int, Transaction] = {}
        self.transaction_counter = 0
        self.commit_sequence = 0
        self.lock = threading.RLock()

        self.transaction_stats = {
            "total_transactions": 0,
            "committed_transactions": 0,
            "aborted_transactions": 0,
            "update_conflicts": 0,
        }

    def begin(
        self,
        isolation_level: Optional[IsolationLevel] = None,
        name: Optional[str] = None,
        lock_timeout: Any = USE_CONFIG,
        abort_on_error: Optional[bool] = None,
    ) -> Transaction:
        """
        Start a transaction, snapshotting the commit sequence into ``start_seq``.

        ``lock_timeout`` and ``abort_on_error`` default to the engine config;
        sessions pass their own ``SET LOCK_TIMEOUT`` / ``SET XACT_ABORT`` values.
        """
        level = isolation_level or self.config.default_isolation_level
        if lock_timeout is USE_CONFIG:
            lock_timeout = self.config.lock_timeout
        if abort_on_error is None:
            abort_on_error = self.config.abort_on_error
        if level is IsolationLevel.SNAPSHOT and not self.config.allow_snapshot_isolation:
            raise TransactionStateError(
                "Snapshot isolation transaction failed: ALLOW_SNAPSHOT_ISOLATION is OFF"
            )

        with self.lock:
            self.transaction_counter += 1
            txn = Transaction(
                txn_id=self.transaction_counter,
                isolation_level=level,
                start_seq=self.commit_sequence,
                timestamp=time.time(),
                name=name,
                lock_timeout=lock_timeout,
                abort_on_error=abort_on_error,
            )
            self.active_transactions[txn.txn_id] = txn
            self.transaction_stats["total_transactions"] += 1

        logger.info(
            f"Transaction {txn.txn_id} started ({level.value}, start_seq={txn.start_seq}"
            + (f", name={name})" if name else ")")
        )
        return txn

    def begin_nested(self, txn: Transaction, name: Optional[str] = None) -> int:
        """Nested BEGIN: bumps the nesting counter, no new transaction."""
        with self.lock:
            self.ensure_usable(txn)
            txn.nesting_level += 1
            logger.debug(
                f"Transaction {txn.txn_id} nesting level {txn.nesting_level}"
                + (f" ({name})" if name else "")
            )
            return txn.nesting_level

    def savepoint(self, txn: Transaction, name: str):
        with self.lock:
            self.ensure_usable(txn)
            return self.savepoint_manager.create_savepoint(
                txn, name, self.lock_manager.mark(txn.txn_id)
            )

    def commit(self, txn: Transaction) -> bool:
        """
        Commit, or just leave one nesting level.

        Returns:
            bool: True if the transaction became durable, False if only the
            nesting counter was decremented.

        Raises:
            UpdateConflictError: SNAPSHOT write-write conflict, or a lock the
                transaction went past is held by a live or later-committed
                transaction. The transaction has already been rolled back.
            TransactionDoomedError: transaction is uncommittable.
            TransactionStateError: transaction is not active.
        """
        with self.lock:
            self.ensure_usable(txn)

            if txn.nesting_level > 1:
                txn.nesting_level -= 1
                logger.debug(f"Transaction {txn.txn_id} inner commit, nesting level {txn.nesting_level}")
                return False

            if txn.isolation_level is IsolationLevel.SNAPSHOT:
                conflicting = [
                    row_id for row_id in self._written_row_ids(txn)
                    if self.versions.has_write_conflict(row_id, txn)
                ]
                holders = sorted({
                    holder.txn_id for holder in txn.conflicts
                    if self._conflict_stands(txn, holder)
                })
                if conflicting or holders:
                    self.transaction_stats["update_conflicts"] += 1
                    logger.warning(
                        f"Transaction {txn.txn_id} update conflict on rows {conflicting}, "
                        f"with transactions {holders}"
                    )
                    self.rollback(txn)
                    raise UpdateConflictError(
                        f"Snapshot isolation transaction {txn.txn_id} aborted due to update "
                        f"conflict on rows {conflicting} with transactions {holders}",
                        txn_id=txn.txn_id,
                        details={"rows": conflicting, "transactions": holders},
                    )

            self.commit_sequence += 1
            seq = self.commit_sequence
            final_versions = self._final_versions(txn)
            superseded = [v for v in txn.write_log if v not in final_versions]
            self.versions.discard_versions(superseded)
            for version in final_versions:
                self.versions.commit_version(version, seq)

            self.lock_manager.release_all(txn.txn_id)
            txn.state = TransactionState.COMMITTED
            txn.commit_seq = seq
            txn.nesting_level = 0
            txn.write_log = []
            txn.savepoints = []
            txn.conflicts = []
            del self.active_transactions[txn.txn_id]
            self.transaction_stats["committed_transactions"] += 1

        logger.info(
            f"Transaction {txn.txn_id} committed at seq {seq} ({len(final_versions)} rows)"
        )
        return True

    def rollback(self, txn: Transaction, savepoint: Optional[str] = None) -> bool:
        """
        Full rollback, or rollback to a named savepoint.

        Rolling back a finished transaction does nothing and returns False.
        Rolling back to a savepoint keeps the transaction ACTIVE and is not
        allowed once it is uncommittable.
        """
        with self.lock:
            if txn.is_finished:
                logger.info(f"Transaction {txn.txn_id} already {txn.state.value}, nothing to roll back")
                return False

            if savepoint is not None:
                if txn.state is TransactionState.UNCOMMITTABLE:
                    raise TransactionDoomedError(
                        f"Transaction {txn.txn_id} is uncommittable and can only be fully rolled back",
                        txn_id=txn.txn_id,
                    )
                return self._rollback_to_savepoint(txn, savepoint)

            discarded = self.versions.discard_uncommitted(txn.txn_id)
            released = self.lock_manager.release_all(txn.txn_id)
            txn.state = TransactionState.ABORTED
            txn.nesting_level = 0
            txn.write_log = []
            txn.savepoints = []
            txn.conflicts = []
            self.active_transactions.pop(txn.txn_id, None)
            self.transaction_stats["aborted_transactions"] += 1

        logger.info(
            f"Transaction {txn.txn_id} rolled back ({discarded} versions discarded, {released} locks released)"
        )
        return True

    def doom(self, txn: Transaction) -> None:
        """Move an active transaction to UNCOMMITTABLE; only rollback is legal afterwards."""
        with self.lock:
            if txn.state is TransactionState.ACTIVE:
                txn.state = TransactionState.UNCOMMITTABLE
                logger.warning(f"Transaction {txn.txn_id} is now uncommittable")

    def cancel(self, txn: Transaction) -> bool:
        """External cancellation: immediate full rollback."""
        logger.info(f"Cancelling transaction {txn.txn_id}")
        return self.rollback(txn)

    def xact_state(self, txn: Optional[Transaction]) -> int:
        """``XACT_STATE()``: 1 committable, -1 uncommittable, 0 no transaction."""
        if txn is None:
            return 0
        if txn.state is TransactionState.ACTIVE:
            return 1
        if txn.state is TransactionState.UNCOMMITTABLE:
            return -1
        return 0

    def ensure_usable(self, txn: Transaction) -> None:
        """Raise unless ``txn`` may run statements."""
        if txn.state is TransactionState.UNCOMMITTABLE:
            raise TransactionDoomedError(
                f"Transaction {txn.txn_id} is doomed; only ROLLBACK is allowed",
                txn_id=txn.txn_id,
            )
        if txn.state is not TransactionState.ACTIVE:
            raise TransactionStateError(
                f"Transaction {txn.txn_id} is not in active state", txn_id=txn.txn_id
            )

    def record_write(self, txn: Transaction, version: RowVersion) -> None:
        """Append an in-flight version to the store and to the transaction's write log."""
        self.store.append_version(version.row_id, version)
        txn.write_log.append(version)

    def record_conflicts(self, txn: Transaction, holder_ids: Iterable[int]) -> None:
        """Remember active lock holders a SNAPSHOT write went past without waiting."""
        for holder_id in holder_ids:
            holder = self.active_transactions.get(holder_id)
            if holder is not None and all(h.txn_id != holder_id for h in txn.conflicts):
                txn.conflicts.append(holder)

    def get_transaction(self, txn_id: int) -> Optional[Transaction]:
        return self.active_transactions.get(txn_id)

    def get_active_transaction_ids(self) -> List[int]:
        return list(self.active_transactions.keys())

    def get_active_transaction_count(self) -> int:
        return len(self.active_transactions)

    def _rollback_to_savepoint(self, txn: Transaction, name: str) -> bool:
        sp = self.savepoint_manager.get_savepoint(txn, name)
        undone = txn.write_log[sp.write_mark:]
        self.versions.discard_versions(undone)
        del txn.write_log[sp.write_mark:]
        del txn.conflicts[sp.conflict_mark:]
        released = self.lock_manager.release_since(txn.txn_id, sp.lock_mark)
        self.savepoint_manager.discard_after(txn, sp)
        logger.info(
            f"Transaction {txn.txn_id} rolled back to savepoint {name} "
            f"({len(undone)} writes undone, {released} lock acquisitions undone)"
        )
        return True

    @staticmethod
    def _conflict_stands(txn: Transaction, holder: Transaction) -> bool:
        if not holder.is_finished:
            return True
        return holder.state is TransactionState.COMMITTED and holder.commit_seq > txn.start_seq

    @staticmethod
    def _written_row_ids(txn: Transaction) -> List[int]:
        seen = []
        for version in txn.write_log:
            if version.row_id not in seen:
                seen.append(version.row_id)
        return seen

    @staticmethod
    def _final_versions(txn: Transaction) -> List[RowVersion]:
        """Last version written per row, in first-write order."""
        latest: Dict[int, RowVersion] = {}
        for version in txn.write_log:
            latest[version.row_id] = version
        return list(latest.values())
