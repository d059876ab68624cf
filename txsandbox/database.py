"""Main database class: the host-facing surface of the transaction sandbox."""

import logging
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
from .catalog import Column, SchemaCatalog, TableSchema
from .config import EngineConfig
from .errors import TransactionStateError
from .hr_operations import HROperations
from .lock_manager import LockManager
from .models.transaction import IsolationLevel, Transaction
from .row_store import RowStore
from .statement_executor import OrderBy, Predicate, StatementExecutor
from .transaction_manager import USE_CONFIG, TransactionManager

logger = logging.getLogger(__name__)


class SandboxDB:
    """
    In-memory stand-in for the HRSystem database used by the tutorials.

    Transactions are addressed by integer id; each client thread is one
    session. Statements raise :class:`~txsandbox.errors.SandboxError`
    subclasses; callers wrap them in their own rollback discipline.
    """

    def __init__(self, config: Optional[EngineConfig] = None, catalog=None):
        self.config = config or EngineConfig()
        self.catalog = catalog if catalog is not None else SchemaCatalog()

        # Component managers
        self.store = RowStore()
        self.lock_manager = LockManager()
        self.transaction_manager = TransactionManager(self.store, self.lock_manager, self.config)
        self.executor = StatementExecutor(self.transaction_manager, self.catalog)

        self.hr = HROperations(self)

    def create_table(
        self,
        table_id: str,
        columns: List[Column],
        checks: Optional[Dict[str, Callable[[Dict[str, Any]], bool]]] = None,
    ) -> TableSchema:
        """Register a table with the built-in catalog."""
        return self.catalog.create_table(table_id, columns, checks)

    # ---------- transaction control ----------

    def begin_transaction(
        self,
        isolation_level: Optional[IsolationLevel] = None,
        name: Optional[str] = None,
        lock_timeout: Any = USE_CONFIG,
        abort_on_error: Optional[bool] = None,
    ) -> int:
        """Begin a new transaction and return its id."""
        txn = self.transaction_manager.begin(
            isolation_level, name=name, lock_timeout=lock_timeout, abort_on_error=abort_on_error
        )
        return txn.txn_id

    def nest_transaction(self, txn_id: int, name: Optional[str] = None) -> int:
        """Nested BEGIN TRANSACTION; returns the new nesting level."""
        return self.transaction_manager.begin_nested(self._require(txn_id), name)

    def save_transaction(self, txn_id: int, name: str) -> None:
        """SAVE TRANSACTION ``name``."""
        self.transaction_manager.savepoint(self._require(txn_id), name)

    def commit_transaction(self, txn_id: int) -> bool:
        """
        COMMIT TRANSACTION.

        Returns True when the transaction became durable, False when only an
        inner nesting level was closed. Raises on update conflicts.
        """
        return self.transaction_manager.commit(self._require(txn_id))

    def rollback_transaction(self, txn_id: int, savepoint: Optional[str] = None) -> bool:
        """ROLLBACK TRANSACTION [savepoint]. False if the transaction is already over."""
        txn = self.transaction_manager.get_transaction(txn_id)
        if txn is None:
            logger.info(f"Transaction {txn_id} not found for rollback")
            return False
        return self.transaction_manager.rollback(txn, savepoint)

    def cancel_transaction(self, txn_id: int) -> bool:
        """Cancel from outside the owning session (immediate full rollback)."""
        txn = self.transaction_manager.get_transaction(txn_id)
        if txn is None:
            return False
        return self.transaction_manager.cancel(txn)

    def xact_state(self, txn_id: Optional[int]) -> int:
        """XACT_STATE(): 1, -1, or 0 when there is no open transaction."""
        if txn_id is None:
            return 0
        return self.transaction_manager.xact_state(self.transaction_manager.get_transaction(txn_id))

    def trancount(self, txn_id: Optional[int]) -> int:
        """@@TRANCOUNT for the session owning ``txn_id``."""
        txn = self.transaction_manager.get_transaction(txn_id) if txn_id is not None else None
        return txn.nesting_level if txn is not None else 0

    def is_transaction_active(self, txn_id: int) -> bool:
        return self.xact_state(txn_id) == 1

    # ---------- statements ----------

    def insert(self, txn_id: int, table_id: str, payload: Dict[str, Any]) -> int:
        return self.executor.insert(self._require(txn_id), table_id, payload)

    def update(self, txn_id: int, table_id: str, row_id: int, changes: Dict[str, Any]) -> bool:
        return self.executor.update(self._require(txn_id), table_id, row_id, changes)

    def put(self, txn_id: int, table_id: str, row_id: int, payload: Dict[str, Any]) -> bool:
        """Replace a row's whole payload."""
        return self.executor.write(self._require(txn_id), table_id, row_id, payload)

    def delete(self, txn_id: int, table_id: str, row_id: int) -> bool:
        return self.executor.delete(self._require(txn_id), table_id, row_id)

    def select(
        self, table_id: str, predicate: Predicate = None, txn_id: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """Range read; outside a transaction it runs in its own autocommit transaction."""
        return self._run(txn_id, lambda txn: self.executor.read(txn, table_id, predicate))

    def get(self, table_id: str, row_id: int, txn_id: Optional[int] = None) -> Optional[Dict[str, Any]]:
        return self._run(txn_id, lambda txn: self.executor.get(txn, table_id, row_id))

    def aggregate(
        self,
        table_id: str,
        aggregates: Dict[str, Tuple[str, Optional[str]]],
        group_by: Sequence[str] = (),
        predicate: Predicate = None,
        txn_id: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        return self._run(
            txn_id,
            lambda txn: self.executor.aggregate(txn, table_id, aggregates, group_by, predicate),
        )

    def window(
        self,
        table_id: str,
        function: str,
        output: str,
        partition_by: Sequence[str] = (),
        order_by: OrderBy = (),
        predicate: Predicate = None,
        argument: Any = None,
        txn_id: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        return self._run(
            txn_id,
            lambda txn: self.executor.window(
                txn, table_id, function, output, partition_by, order_by, predicate, argument
            ),
        )

    # ---------- status ----------

    def get_system_status(self) -> Dict[str, Any]:
        """Get current system status."""
        with self.transaction_manager.lock:
            tables = {}
            for table_id in self.store.table_ids():
                committed = [self.transaction_manager.versions.current_version(r) for r in self.store.row_ids(table_id)]
                tables[table_id] = sum(1 for v in committed if v is not None and not v.is_tombstone)
            return {
                "tables": tables,
                "commit_sequence": self.transaction_manager.commit_sequence,
                "active_transactions": self.transaction_manager.get_active_transaction_count(),
                "locks_held": self.lock_manager.get_lock_count(),
                "deadlocks_detected": self.lock_manager.deadlocks_detected,
                "transaction_stats": dict(self.transaction_manager.transaction_stats),
                "statement_stats": dict(self.executor.stats),
            }

    def print_status(self) -> None:
        """Print current system status."""
        status = self.get_system_status()
        stats = status["transaction_stats"]
        print("\n=== SANDBOX STATUS ===")
        for table_id, count in status["tables"].items():
            print(f"Table {table_id}: {count} rows")
        print(f"Commit sequence: {status['commit_sequence']}")
        print(f"Active transactions: {status['active_transactions']}")
        print(f"Locks held: {status['locks_held']}")
        print(
            f"Committed: {stats['committed_transactions']} | "
            f"Aborted: {stats['aborted_transactions']} | "
            f"Update conflicts: {stats['update_conflicts']} | "
            f"Deadlocks: {status['deadlocks_detected']}"
        )
        print("======================\n")

    # ---------- helpers ----------

    def _require(self, txn_id: int) -> Transaction:
        txn = self.transaction_manager.get_transaction(txn_id)
        if txn is None:
            raise TransactionStateError(f"Transaction {txn_id} not found or not active", txn_id=txn_id)
        return txn

    def _run(self, txn_id: Optional[int], statement: Callable[[Transaction], Any]) -> Any:
        if txn_id is not None:
            return statement(self._require(txn_id))

        txn = self.transaction_manager.begin()
        try:
            result = statement(txn)
        except Exception:
            self.transaction_manager.rollback(txn)
            raise
        self.transaction_manager.commit(txn)
        return result
