"""Executes single statements against a transaction's view of the data."""

import logging
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union
from .errors import (
    ConstraintViolationError,
    DeadlockVictimError,
    LockTimeoutError,
    TransactionStateError,
)
from .models.lock import InsertKey, KeyRange, LockMode, LockResult, RowResource
from .models.row import RowVersion
from .models.transaction import IsolationLevel, Transaction
from .transaction_manager import TransactionManager

logger = logging.getLogger(__name__)

# Key under which result rows carry their row id.
ROW_ID = "_row_id"

Predicate = Optional[Union[KeyRange, Callable[[Dict[str, Any]], bool]]]
OrderBy = Sequence[Union[str, Tuple[str, str]]]

AGGREGATE_FUNCTIONS = ("COUNT", "SUM", "AVG", "MIN", "MAX")
WINDOW_FUNCTIONS = ("ROW_NUMBER", "RANK", "DENSE_RANK", "NTILE", "SUM", "LAG", "LEAD")


class StatementExecutor:
    """
    Point reads, range reads, writes, aggregates and window queries.

    Locking per isolation level:
    - READ UNCOMMITTED, SNAPSHOT: no read locks.
    - READ COMMITTED: shared row locks released at the end of the statement.
    - REPEATABLE READ: shared locks on returned rows held to the end.
    - SERIALIZABLE: as REPEATABLE READ plus a range lock on the predicate.
    Writers take exclusive row locks and an insert intent that collides with
    range locks. SNAPSHOT writers never wait; a lock they cannot take is
    remembered and fails their commit unless its holder rolled back.
    """

    def __init__(self, transaction_manager: TransactionManager, catalog=None):
        self.tm = transaction_manager
        self.catalog = catalog
        self.store = transaction_manager.store
        self.versions = transaction_manager.versions
        self.lock_manager = transaction_manager.lock_manager

        self.stats = {
            "reads": 0,
            "writes": 0,
            "deletes": 0,
            "lock_timeouts": 0,
            "deadlock_victims": 0,
        }

    # ---------- reads ----------

    def read(self, txn: Transaction, table_id: str, predicate: Predicate = None) -> List[Dict[str, Any]]:
        """
        Rows of ``table_id`` visible to ``txn`` that satisfy ``predicate``.

        A :class:`KeyRange` predicate is also the range locked under
        SERIALIZABLE; any other callable locks the whole table range.
        """
        self._ensure_usable(txn)
        if txn.isolation_level is IsolationLevel.SERIALIZABLE:
            key_range = predicate if isinstance(predicate, KeyRange) else KeyRange(table_id)
            self._lock(txn, key_range, LockMode.RANGE)

        rows = self._read_rows(txn, table_id, self.store.row_ids(table_id), predicate)
        self.stats["reads"] += 1
        logger.debug(f"Transaction {txn.txn_id} read {len(rows)} rows from {table_id}")
        return rows

    def get(self, txn: Transaction, table_id: str, row_id: int) -> Optional[Dict[str, Any]]:
        """Point read by row id."""
        self._ensure_usable(txn)
        rows = self._read_rows(txn, table_id, [row_id], None)
        self.stats["reads"] += 1
        return rows[0] if rows else None

    def _read_rows(
        self, txn: Transaction, table_id: str, row_ids: Sequence[int], predicate: Predicate
    ) -> List[Dict[str, Any]]:
        level = txn.isolation_level
        takes_locks = level.holds_read_locks or level is IsolationLevel.READ_COMMITTED
        rows = []
        for row_id in row_ids:
            row = self.store.get_row(row_id)
            if row is None or row.table_id != table_id:
                continue

            resource = RowResource(table_id, row_id)
            newly_locked = False
            if takes_locks:
                newly_locked = self.lock_manager.holds(resource, txn.txn_id) is None
                self._lock(txn, resource, LockMode.SHARED)

            with self.tm.lock:
                version = self.versions.visible_version(row_id, txn, pin=False)
                returned = version is not None and (predicate is None or predicate(version.payload))
                if returned and level.pins_reads:
                    self.versions.pin(txn, version)

            if newly_locked and (level is IsolationLevel.READ_COMMITTED or not returned):
                self.lock_manager.release(resource, txn.txn_id)
            if returned:
                rows.append(self._materialize(version))
        return rows

    # ---------- writes ----------

    def write(self, txn: Transaction, table_id: str, row_id: int, new_payload: Dict[str, Any]) -> bool:
        """
        Replace the payload of an existing row.

        Returns:
            bool: True if a new version was written, False if the row is not
            visible to ``txn`` (zero rows affected).
        """
        return self._write_row(txn, table_id, row_id, lambda current: dict(new_payload))

    def update(self, txn: Transaction, table_id: str, row_id: int, changes: Dict[str, Any]) -> bool:
        """Merge ``changes`` into the visible payload of a row."""

        def merge(current: Dict[str, Any]) -> Dict[str, Any]:
            merged = dict(current)
            merged.update(changes)
            return merged

        return self._write_row(txn, table_id, row_id, merge)

    def insert(self, txn: Transaction, table_id: str, payload: Dict[str, Any]) -> int:
        """Insert a new row and return its row id."""
        self._ensure_usable(txn)
        payload = dict(payload)
        self._validate(txn, table_id, payload)

        version_id = self.store.new_version_id()
        self._lock(txn, InsertKey(table_id, version_id, payload), LockMode.EXCLUSIVE, blocking=self._blocks(txn))

        row_id = self.store.new_row_id(table_id)
        try:
            self._lock(txn, RowResource(table_id, row_id), LockMode.EXCLUSIVE, blocking=self._blocks(txn))
            with self.tm.lock:
                self.tm.ensure_usable(txn)
                self.tm.record_write(
                    txn,
                    RowVersion(
                        version_id=version_id,
                        row_id=row_id,
                        creator_txn_id=txn.txn_id,
                        payload=payload,
                    ),
                )
        finally:
            self.store.discard_row_if_empty(row_id)

        self.stats["writes"] += 1
        logger.debug(f"Transaction {txn.txn_id} inserted row {row_id} into {table_id}")
        return row_id

    def delete(self, txn: Transaction, table_id: str, row_id: int) -> bool:
        """Delete a row by appending a tombstone version. False if the row is not visible."""
        self._ensure_usable(txn)
        self._lock(txn, RowResource(table_id, row_id), LockMode.EXCLUSIVE, blocking=self._blocks(txn))

        with self.tm.lock:
            self.tm.ensure_usable(txn)
            if self._write_base(txn, table_id, row_id) is None:
                return False
            self.tm.record_write(
                txn,
                RowVersion(
                    version_id=self.store.new_version_id(),
                    row_id=row_id,
                    creator_txn_id=txn.txn_id,
                    payload=None,
                    deleter_txn_id=txn.txn_id,
                ),
            )

        self.stats["deletes"] += 1
        logger.debug(f"Transaction {txn.txn_id} deleted row {row_id} from {table_id}")
        return True

    def _write_row(
        self,
        txn: Transaction,
        table_id: str,
        row_id: int,
        build: Callable[[Dict[str, Any]], Dict[str, Any]],
    ) -> bool:
        self._ensure_usable(txn)
        blocking = self._blocks(txn)

        # Take the insert intent for the new image before the row lock so a
        # range reader holding shared row locks cannot deadlock against us.
        with self.tm.lock:
            before = self._write_base(txn, table_id, row_id)
        intent = None
        if before is not None:
            intent = build(before.payload)
            self._lock(txn, InsertKey(table_id, self.store.new_version_id(), intent), LockMode.EXCLUSIVE, blocking=blocking)

        self._lock(txn, RowResource(table_id, row_id), LockMode.EXCLUSIVE, blocking=blocking)

        with self.tm.lock:
            self.tm.ensure_usable(txn)
            current = self._write_base(txn, table_id, row_id)
            if current is None:
                return False
            payload = build(current.payload)
            if txn.isolation_level.pins_reads:
                self.versions.pin(txn, current)
        if payload != intent:
            self._lock(txn, InsertKey(table_id, self.store.new_version_id(), payload), LockMode.EXCLUSIVE, blocking=blocking)

        self._validate(txn, table_id, payload)

        with self.tm.lock:
            self.tm.ensure_usable(txn)
            self.tm.record_write(
                txn,
                RowVersion(
                    version_id=self.store.new_version_id(),
                    row_id=row_id,
                    creator_txn_id=txn.txn_id,
                    payload=payload,
                ),
            )

        self.stats["writes"] += 1
        logger.debug(f"Transaction {txn.txn_id} wrote row {row_id} of {table_id}")
        return True

    # ---------- analytical queries ----------

    def aggregate(
        self,
        txn: Transaction,
        table_id: str,
        aggregates: Dict[str, Tuple[str, Optional[str]]],
        group_by: Sequence[str] = (),
        predicate: Predicate = None,
    ) -> List[Dict[str, Any]]:
        """
        GROUP BY query.

        Args:
            aggregates: output name -> (function, column). ``("COUNT", None)``
                is ``COUNT(*)``. Functions: COUNT, SUM, AVG, MIN, MAX; NULLs
                are ignored as in SQL.
            group_by: grouping columns; groups come out in first-seen order.

        Without ``group_by`` exactly one row is returned, even for no input.
        """
        for output, (function, _column) in aggregates.items():
            if function.upper() not in AGGREGATE_FUNCTIONS:
                raise ValueError(f"Unsupported aggregate {function} for {output}")

        rows = self.read(txn, table_id, predicate)
        groups: Dict[Tuple, List[Dict[str, Any]]] = {}
        for row in rows:
            groups.setdefault(tuple(row.get(c) for c in group_by), []).append(row)
        if not group_by and not groups:
            groups[()] = []

        results = []
        for key, members in groups.items():
            result = dict(zip(group_by, key))
            for output, (function, column) in aggregates.items():
                result[output] = _aggregate(function.upper(), column, members)
            results.append(result)
        return results

    def window(
        self,
        txn: Transaction,
        table_id: str,
        function: str,
        output: str,
        partition_by: Sequence[str] = (),
        order_by: OrderBy = (),
        predicate: Predicate = None,
        argument: Any = None,
    ) -> List[Dict[str, Any]]:
        """
        Window function over PARTITION BY / ORDER BY.

        ``function`` is one of ROW_NUMBER, RANK, DENSE_RANK, NTILE (``argument``
        is the bucket count), SUM (running total of column ``argument``), LAG
        and LEAD (column ``argument``, offset 1). ``order_by`` items are column
        names or ``(column, "DESC")``. Rows come back grouped by partition in
        window order, each with ``output`` added.
        """
        function = function.upper()
        if function not in WINDOW_FUNCTIONS:
            raise ValueError(f"Unsupported window function {function}")
        if function == "NTILE" and (not isinstance(argument, int) or argument < 1):
            raise ValueError("NTILE requires a positive bucket count")
        if function in ("SUM", "LAG", "LEAD") and argument is None:
            raise ValueError(f"{function} requires a column argument")

        rows = self.read(txn, table_id, predicate)
        order = _normalize_order(order_by)

        partitions: Dict[Tuple, List[Dict[str, Any]]] = {}
        for row in rows:
            partitions.setdefault(tuple(row.get(c) for c in partition_by), []).append(row)

        results = []
        for members in partitions.values():
            ordered = _sort_rows(members, order)
            for row, value in zip(ordered, _window_values(function, ordered, order, argument)):
                out = dict(row)
                out[output] = value
                results.append(out)
        return results

    # ---------- helpers ----------

    def _ensure_usable(self, txn: Transaction) -> None:
        with self.tm.lock:
            self.tm.ensure_usable(txn)

    @staticmethod
    def _blocks(txn: Transaction) -> bool:
        return txn.isolation_level is not IsolationLevel.SNAPSHOT

    def _write_base(self, txn: Transaction, table_id: str, row_id: int) -> Optional[RowVersion]:
        """
        Version a write to ``row_id`` replaces.

        SNAPSHOT writes build on the snapshot; conflicts are settled at
        commit. Every other level writes under an exclusive lock and builds
        on the latest committed state, not on a pinned read.
        """
        row = self.store.get_row(row_id)
        if row is None or row.table_id != table_id:
            return None
        if txn.isolation_level is IsolationLevel.SNAPSHOT:
            return self.versions.visible_version(row_id, txn)
        return self.versions.latest_version(row_id, txn)

    def _lock(self, txn: Transaction, resource: Any, mode: LockMode, blocking: bool = True) -> LockResult:
        result = self.lock_manager.acquire(
            resource, mode, txn.txn_id, blocking=blocking, timeout=txn.lock_timeout
        )

        if result is LockResult.DEADLOCK:
            self.stats["deadlock_victims"] += 1
            self.tm.rollback(txn)
            raise DeadlockVictimError(
                f"Transaction {txn.txn_id} was deadlocked on lock resources with another "
                f"process and has been chosen as the deadlock victim",
                txn_id=txn.txn_id,
            )
        if result is LockResult.TIMEOUT:
            self.stats["lock_timeouts"] += 1
            raise LockTimeoutError(
                f"Lock request time out period exceeded for {mode.value} on {resource}",
                txn_id=txn.txn_id,
                details={"resource": resource, "mode": mode.value},
            )
        if result is LockResult.CONFLICT:
            holders = self.lock_manager.conflicting_holders(resource, mode, txn.txn_id)
            with self.tm.lock:
                self.tm.record_conflicts(txn, holders)
            logger.debug(
                f"Transaction {txn.txn_id} skipped {mode.value} on {resource} held by "
                f"{sorted(holders)}; conflict checked at commit"
            )
            return result
        if result is LockResult.CANCELLED:
            raise TransactionStateError(
                f"Transaction {txn.txn_id} was cancelled while waiting for {mode.value} on {resource}",
                txn_id=txn.txn_id,
            )

        with self.tm.lock:
            if txn.is_finished:
                # Cancelled between the grant and this check.
                self.lock_manager.release_all(txn.txn_id)
                raise TransactionStateError(
                    f"Transaction {txn.txn_id} ended while waiting for a lock", txn_id=txn.txn_id
                )
        return result

    def _validate(self, txn: Transaction, table_id: str, payload: Dict[str, Any]) -> None:
        if self.catalog is None:
            return
        try:
            self.catalog.validate(table_id, payload)
        except ConstraintViolationError as e:
            e.txn_id = txn.txn_id
            if txn.abort_on_error:
                self.tm.doom(txn)
            logger.info(f"Transaction {txn.txn_id}: {e}")
            raise

    @staticmethod
    def _materialize(version: RowVersion) -> Dict[str, Any]:
        row = dict(version.payload)
        row[ROW_ID] = version.row_id
        return row


def _aggregate(function: str, column: Optional[str], rows: List[Dict[str, Any]]) -> Any:
    if function == "COUNT" and column is None:
        return len(rows)
    values = [row.get(column) for row in rows if row.get(column) is not None]
    if function == "COUNT":
        return len(values)
    if not values:
        return None
    if function == "SUM":
        return sum(values)
    if function == "AVG":
        return sum(values) / len(values)
    if function == "MIN":
        return min(values)
    return max(values)


def _normalize_order(order_by: OrderBy) -> List[Tuple[str, bool]]:
    order = []
    for item in order_by:
        if isinstance(item, str):
            order.append((item, False))
        else:
            column, direction = item
            order.append((column, direction.upper() == "DESC"))
    return order


def _sort_rows(rows: List[Dict[str, Any]], order: List[Tuple[str, bool]]) -> List[Dict[str, Any]]:
    ordered = list(rows)
    # NULLs sort first ascending, as in SQL Server.
    for column, descending in reversed(order):
        ordered.sort(
            key=lambda r: (r.get(column) is not None, r.get(column) if r.get(column) is not None else 0),
            reverse=descending,
        )
    return ordered


def _window_values(
    function: str, rows: List[Dict[str, Any]], order: List[Tuple[str, bool]], argument: Any
) -> List[Any]:
    def peer_key(row):
        return tuple(row.get(column) for column, _ in order)

    count = len(rows)
    if function == "ROW_NUMBER":
        return list(range(1, count + 1))

    if function in ("RANK", "DENSE_RANK"):
        values = []
        rank = dense = 0
        previous = object()
        for position, row in enumerate(rows, start=1):
            key = peer_key(row)
            if key != previous:
                rank = position
                dense += 1
                previous = key
            values.append(rank if function == "RANK" else dense)
        return values

    if function == "NTILE":
        buckets = min(argument, count) if count else argument
        size, larger = divmod(count, buckets) if count else (0, 0)
        values = []
        for bucket in range(1, buckets + 1):
            values.extend([bucket] * (size + (1 if bucket <= larger else 0)))
        return values

    if function == "SUM":
        # Default frame is RANGE UNBOUNDED PRECEDING: peers share the total.
        values = [None] * count
        running = None
        i = 0
        while i < count:
            j = i
            while j < count and peer_key(rows[j]) == peer_key(rows[i]):
                value = rows[j].get(argument)
                if value is not None:
                    running = value if running is None else running + value
                j += 1
            for k in range(i, j):
                values[k] = running
            i = j
        return values

    offset = -1 if function == "LAG" else 1
    return [
        rows[i + offset].get(argument) if 0 <= i + offset < count else None
        for i in range(count)
    ]
