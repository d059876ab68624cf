"""Client sessions: per-connection settings and nested transaction control."""

import logging
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple
from .errors import TransactionStateError
from .models.transaction import IsolationLevel
from .statement_executor import OrderBy, Predicate
from .transaction_manager import USE_CONFIG

logger = logging.getLogger(__name__)


class Session:
    """
    One client connection to a :class:`~txsandbox.database.SandboxDB`.

    Mirrors the T-SQL session model the tutorials use: ``SET TRANSACTION
    ISOLATION LEVEL``, ``SET LOCK_TIMEOUT`` and ``SET XACT_ABORT`` apply to
    the session, BEGIN inside an open transaction only raises
    ``@@TRANCOUNT``, and statements outside a transaction autocommit.
    A session is meant to be driven from a single thread.
    """

    def __init__(
        self,
        db,
        isolation_level: Optional[IsolationLevel] = None,
        lock_timeout: Any = USE_CONFIG,
        xact_abort: Optional[bool] = None,
    ):
        self.db = db
        self.isolation_level = isolation_level or db.config.default_isolation_level
        self.lock_timeout = db.config.lock_timeout if lock_timeout is USE_CONFIG else lock_timeout
        self.xact_abort = db.config.abort_on_error if xact_abort is None else xact_abort
        self._txn_id: Optional[int] = None

    # ---------- SET options ----------

    def set_transaction_isolation_level(self, level: IsolationLevel) -> None:
        """Applies to transactions begun after the call."""
        self.isolation_level = level

    def set_lock_timeout(self, seconds: Optional[float]) -> None:
        if seconds is not None and seconds < 0:
            raise ValueError("Lock timeout must be None (wait forever) or >= 0")
        self.lock_timeout = seconds
        txn = self._current()
        if txn is not None:
            txn.lock_timeout = seconds

    def set_xact_abort(self, on: bool) -> None:
        self.xact_abort = on
        txn = self._current()
        if txn is not None:
            txn.abort_on_error = on

    # ---------- state ----------

    @property
    def txn_id(self) -> Optional[int]:
        """Id of the open transaction, if any."""
        self._current()
        return self._txn_id

    @property
    def trancount(self) -> int:
        return self.db.trancount(self.txn_id)

    @property
    def xact_state(self) -> int:
        return self.db.xact_state(self.txn_id)

    # ---------- transaction control ----------

    def begin(self, name: Optional[str] = None) -> int:
        """BEGIN TRANSACTION; returns @@TRANCOUNT afterwards."""
        if self.txn_id is not None:
            return self.db.nest_transaction(self._txn_id, name)
        self._txn_id = self.db.begin_transaction(
            self.isolation_level,
            name=name,
            lock_timeout=self.lock_timeout,
            abort_on_error=self.xact_abort,
        )
        return 1

    def save(self, name: str) -> None:
        self.db.save_transaction(self._require_open("SAVE TRANSACTION"), name)

    def commit(self) -> bool:
        """COMMIT TRANSACTION; True once the outermost level commits."""
        txn_id = self._require_open("COMMIT TRANSACTION")
        try:
            durable = self.db.commit_transaction(txn_id)
        finally:
            self._current()
        return durable

    def rollback(self, savepoint: Optional[str] = None) -> bool:
        """ROLLBACK TRANSACTION [savepoint]."""
        txn_id = self._require_open("ROLLBACK TRANSACTION")
        result = self.db.rollback_transaction(txn_id, savepoint)
        self._current()
        return result

    @contextmanager
    def transaction(self, name: Optional[str] = None) -> Iterator["Session"]:
        """
        BEGIN TRY / BEGIN TRANSACTION ... COMMIT / END TRY
        BEGIN CATCH / IF XACT_STATE() <> 0 ROLLBACK / THROW / END CATCH
        """
        self.begin(name)
        try:
            yield self
        except Exception:
            if self.xact_state != 0:
                self.rollback()
            raise
        self.commit()

    # ---------- statements ----------

    def insert(self, table_id: str, payload: Dict[str, Any]) -> int:
        return self._run(lambda txn_id: self.db.insert(txn_id, table_id, payload))

    def update(self, table_id: str, row_id: int, changes: Dict[str, Any]) -> bool:
        return self._run(lambda txn_id: self.db.update(txn_id, table_id, row_id, changes))

    def put(self, table_id: str, row_id: int, payload: Dict[str, Any]) -> bool:
        return self._run(lambda txn_id: self.db.put(txn_id, table_id, row_id, payload))

    def delete(self, table_id: str, row_id: int) -> bool:
        return self._run(lambda txn_id: self.db.delete(txn_id, table_id, row_id))

    def select(self, table_id: str, predicate: Predicate = None) -> List[Dict[str, Any]]:
        return self._run(lambda txn_id: self.db.select(table_id, predicate, txn_id=txn_id))

    def get(self, table_id: str, row_id: int) -> Optional[Dict[str, Any]]:
        return self._run(lambda txn_id: self.db.get(table_id, row_id, txn_id=txn_id))

    def aggregate(
        self,
        table_id: str,
        aggregates: Dict[str, Tuple[str, Optional[str]]],
        group_by: Sequence[str] = (),
        predicate: Predicate = None,
    ) -> List[Dict[str, Any]]:
        return self._run(
            lambda txn_id: self.db.aggregate(table_id, aggregates, group_by, predicate, txn_id=txn_id)
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
    ) -> List[Dict[str, Any]]:
        return self._run(
            lambda txn_id: self.db.window(
                table_id, function, output, partition_by, order_by, predicate, argument, txn_id=txn_id
            )
        )

    # ---------- helpers ----------

    def _current(self):
        """Open transaction object; forgets ids the engine has already ended."""
        if self._txn_id is None:
            return None
        txn = self.db.transaction_manager.get_transaction(self._txn_id)
        if txn is None:
            logger.debug(f"Session transaction {self._txn_id} has ended")
            self._txn_id = None
        return txn

    def _require_open(self, statement: str) -> int:
        if self.txn_id is None:
            raise TransactionStateError(
                f"The {statement} request has no corresponding BEGIN TRANSACTION"
            )
        return self._txn_id

    def _run(self, statement: Callable[[int], Any]) -> Any:
        if self.txn_id is not None:
            try:
                return statement(self._txn_id)
            finally:
                self._current()

        txn_id = self.db.begin_transaction(
            self.isolation_level, lock_timeout=self.lock_timeout, abort_on_error=self.xact_abort
        )
        try:
            result = statement(txn_id)
        except Exception:
            self.db.rollback_transaction(txn_id)
            raise
        self.db.commit_transaction(txn_id)
        return result
