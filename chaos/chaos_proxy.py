from typing import Any, Callable, Dict, List, Optional
from txsandbox.database import SandboxDB
from txsandbox.models.transaction import IsolationLevel
from .chaos_config import ChaosConfig


class ChaosProxy:
    """
    Wraps a SandboxDB and runs every call through a ChaosConfig first.

    Only the host-facing calls the chaos runner uses are wrapped; rollback is
    passed through untouched so a failed transaction can always be cleaned up.
    """

    def __init__(self, db: SandboxDB, config: ChaosConfig):
        self.db = db
        self.chaos = config

    def _with_chaos(self, operation: Callable, *args, context: str, **kwargs) -> Any:
        self.chaos.maybe_fail(context)
        self.chaos.maybe_delay(context)
        return operation(*args, **kwargs)

    def begin_transaction(self, isolation_level: Optional[IsolationLevel] = None, **kwargs) -> int:
        return self._with_chaos(
            self.db.begin_transaction, isolation_level, context="begin_transaction", **kwargs
        )

    def select(self, table_id: str, predicate=None, txn_id: Optional[int] = None) -> List[Dict[str, Any]]:
        return self._with_chaos(self.db.select, table_id, predicate, txn_id=txn_id, context="select")

    def get(self, table_id: str, row_id: int, txn_id: Optional[int] = None) -> Optional[Dict[str, Any]]:
        return self._with_chaos(self.db.get, table_id, row_id, txn_id=txn_id, context="get")

    def insert(self, txn_id: int, table_id: str, payload: Dict[str, Any]) -> int:
        return self._with_chaos(self.db.insert, txn_id, table_id, payload, context="insert")

    def update(self, txn_id: int, table_id: str, row_id: int, changes: Dict[str, Any]) -> bool:
        return self._with_chaos(self.db.update, txn_id, table_id, row_id, changes, context="update")

    def delete(self, txn_id: int, table_id: str, row_id: int) -> bool:
        return self._with_chaos(self.db.delete, txn_id, table_id, row_id, context="delete")

    def save_transaction(self, txn_id: int, name: str) -> None:
        return self._with_chaos(self.db.save_transaction, txn_id, name, context="save_transaction")

    def commit_transaction(self, txn_id: int) -> bool:
        return self._with_chaos(self.db.commit_transaction, txn_id, context="commit_transaction")

    def rollback_transaction(self, txn_id: int, savepoint: Optional[str] = None) -> bool:
        return self.db.rollback_transaction(txn_id, savepoint)

    def print_status(self):
        return self.db.print_status()

    def print_chaos_metrics(self):
        return self.chaos.print_metrics()
