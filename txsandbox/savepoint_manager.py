"""Savepoint management for partial rollback."""

import logging
import time
from typing import List
from .models.savepoint import Savepoint
from .models.transaction import Transaction

logger = logging.getLogger(__name__)


class SavepointManager:
    """Creates and resolves named savepoints inside a transaction."""

    def create_savepoint(self, txn: Transaction, name: str, lock_mark: int) -> Savepoint:
        """Record the current write-log length and lock-log mark under ``name``."""
        if not name:
            raise ValueError("Savepoint name must not be empty")

        savepoint = Savepoint(
            name=name,
            write_mark=len(txn.write_log),
            lock_mark=lock_mark,
            timestamp=time.time(),
            conflict_mark=len(txn.conflicts),
        )
        txn.savepoints.append(savepoint)

        logger.info(
            f"Savepoint {name} created in transaction {txn.txn_id} "
            f"(writes={savepoint.write_mark}, locks={savepoint.lock_mark})"
        )
        return savepoint

    def get_savepoint(self, txn: Transaction, name: str) -> Savepoint:
        """Most recent savepoint called ``name``; names may repeat."""
        for savepoint in reversed(txn.savepoints):
            if savepoint.name == name:
                return savepoint
        raise ValueError(f"Savepoint {name} not found in transaction {txn.txn_id}")

    def discard_after(self, txn: Transaction, savepoint: Savepoint) -> List[Savepoint]:
        """Forget savepoints created after ``savepoint``; it stays usable."""
        index = next(i for i, sp in enumerate(txn.savepoints) if sp is savepoint)
        dropped = txn.savepoints[index + 1:]
        del txn.savepoints[index + 1:]
        return dropped

    def get_savepoint_names(self, txn: Transaction) -> List[str]:
        return [sp.name for sp in txn.savepoints]
