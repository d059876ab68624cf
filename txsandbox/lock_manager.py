"""Lock manager with blocking waits and wait-for graph deadlock detection."""

import logging
import threading
import time
from typing import Any, Dict, List, Optional, Set
from .models.lock import Lock, LockGrant, LockMode, LockResult

logger = logging.getLogger(__name__)


class WaitForGraph:
    """Directed graph of blocked transactions, keyed by txn id."""

    def __init__(self):
        self.edges: Dict[int, Set[int]] = {}

    def set_waits(self, waiter: int, blockers: Set[int]) -> None:
        self.edges[waiter] = set(blockers)

    def clear_waiter(self, waiter: int) -> None:
        self.edges.pop(waiter, None)

    def remove_transaction(self, txn_id: int) -> None:
        self.edges.pop(txn_id, None)
        for blockers in self.edges.values():
            blockers.discard(txn_id)

    def find_cycle(self, start: int) -> Optional[List[int]]:
        """Cycle through ``start`` found by DFS, as a list of txn ids."""
        path: List[int] = []
        on_path: Set[int] = set()
        visited: Set[int] = set()

        def dfs(node: int) -> Optional[List[int]]:
            if node in on_path:
                return path[path.index(node):]
            if node in visited:
                return None
            visited.add(node)
            on_path.add(node)
            path.append(node)
            for neighbor in sorted(self.edges.get(node, ())):
                cycle = dfs(neighbor)
                if cycle and start in cycle:
                    return cycle
            path.pop()
            on_path.discard(node)
            return None

        return dfs(start)


class LockManager:
    """
    Grants, refuses and queues lock requests.

    SHARED is compatible with SHARED only; EXCLUSIVE and RANGE are compatible
    with nothing. Two requests collide when their resources overlap, so a
    range lock also blocks inserts whose payload falls inside the range.
    """

    def __init__(self):
        # table_id -> resource -> holder txn id -> Lock
        self.locks: Dict[str, Dict[Any, Dict[int, Lock]]] = {}
        # txn id -> acquisitions in order, for savepoint release
        self.grants: Dict[int, List[LockGrant]] = {}
        self.wait_for = WaitForGraph()
        self.deadlocks_detected = 0
        self._victims: Set[int] = set()
        # Waiters whose transaction was rolled back from another thread.
        self._cancelled: Set[int] = set()
        self._condition = threading.Condition(threading.RLock())

    def acquire(
        self,
        resource: Any,
        mode: LockMode,
        txn_id: int,
        blocking: bool = True,
        timeout: Optional[float] = None,
    ) -> LockResult:
        """
        Request ``mode`` on ``resource`` for ``txn_id``.

        Args:
            resource: RowResource, KeyRange or InsertKey.
            mode: Requested lock mode.
            txn_id: Requesting transaction.
            blocking: When False an incompatible lock yields CONFLICT at once.
            timeout: Seconds to wait when blocking; None waits forever.

        Returns:
            LockResult: GRANTED, CONFLICT, TIMEOUT, DEADLOCK or CANCELLED.
            DEADLOCK means the caller was chosen as the victim of a wait-for
            cycle; CANCELLED that its locks were released while it waited.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._condition:
            held = self._held(resource, txn_id)
            if held is not None and held.mode.covers(mode):
                return LockResult.GRANTED

            try:
                while True:
                    if txn_id in self._cancelled:
                        self._cancelled.discard(txn_id)
                        logger.info(
                            f"Transaction {txn_id} cancelled while waiting for {mode.value} on {resource}"
                        )
                        return LockResult.CANCELLED

                    if txn_id in self._victims:
                        self._victims.discard(txn_id)
                        return LockResult.DEADLOCK

                    blockers = self._blockers(resource, mode, txn_id)
                    if not blockers:
                        self._grant(resource, mode, txn_id, held)
                        return LockResult.GRANTED

                    if not blocking:
                        return LockResult.CONFLICT

                    self.wait_for.set_waits(txn_id, blockers)
                    cycle = self.wait_for.find_cycle(txn_id)
                    if cycle:
                        victim = max(cycle)
                        if victim not in self._victims:
                            self.deadlocks_detected += 1
                            logger.warning(
                                f"Deadlock detected: {' -> '.join(str(t) for t in cycle + [cycle[0]])}; "
                                f"victim is transaction {victim}"
                            )
                        if victim == txn_id:
                            return LockResult.DEADLOCK
                        self._victims.add(victim)
                        self._condition.notify_all()

                    if deadline is None:
                        logger.debug(f"Transaction {txn_id} waiting for {mode.value} on {resource}")
                        self._condition.wait()
                        continue
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        logger.info(
                            f"Transaction {txn_id} timed out waiting for {mode.value} on {resource}"
                        )
                        return LockResult.TIMEOUT
                    self._condition.wait(timeout=remaining)
            finally:
                self.wait_for.clear_waiter(txn_id)

    def release(self, resource: Any, txn_id: int) -> bool:
        """Release one resource held by a transaction (statement-scoped locks)."""
        with self._condition:
            holders = self.locks.get(resource.table_id, {}).get(resource)
            if not holders or txn_id not in holders:
                return False
            self._drop(resource, txn_id)
            log = self.grants.get(txn_id, [])
            self.grants[txn_id] = [g for g in log if g.resource != resource]
            self._condition.notify_all()
            return True

    def release_all(self, txn_id: int) -> int:
        """Release every lock held by ``txn_id``; returns how many were held."""
        with self._condition:
            released = 0
            for table_locks in self.locks.values():
                for resource in list(table_locks):
                    if txn_id in table_locks[resource]:
                        released += 1
                        self._drop(resource, txn_id)
            self.grants.pop(txn_id, None)
            self._victims.discard(txn_id)
            if txn_id in self.wait_for.edges:
                self._cancelled.add(txn_id)
            self.wait_for.remove_transaction(txn_id)
            self._condition.notify_all()
            return released

    def mark(self, txn_id: int) -> int:
        """Current length of the acquisition log, recorded by savepoints."""
        with self._condition:
            return len(self.grants.get(txn_id, []))

    def release_since(self, txn_id: int, mark: int) -> int:
        """Undo acquisitions made after ``mark``; earlier locks stay as they were."""
        with self._condition:
            log = self.grants.get(txn_id, [])
            undone = log[mark:]
            for grant in reversed(undone):
                if grant.previous_mode is None:
                    self._drop(grant.resource, txn_id)
                else:
                    lock = self._held(grant.resource, txn_id)
                    if lock is not None:
                        lock.mode = grant.previous_mode
            self.grants[txn_id] = log[:mark]
            if undone:
                self._condition.notify_all()
            return len(undone)

    def holds(self, resource: Any, txn_id: int) -> Optional[LockMode]:
        with self._condition:
            lock = self._held(resource, txn_id)
            return lock.mode if lock is not None else None

    def locks_held(self, txn_id: int) -> List[Lock]:
        with self._condition:
            return [
                holders[txn_id]
                for table_locks in self.locks.values()
                for holders in table_locks.values()
                if txn_id in holders
            ]

    def conflicting_holders(self, resource: Any, mode: LockMode, txn_id: int) -> Set[int]:
        """Transactions whose locks keep ``txn_id`` from taking ``mode`` on ``resource``."""
        with self._condition:
            return self._blockers(resource, mode, txn_id)

    def waiting_transactions(self) -> Dict[int, Set[int]]:
        """Snapshot of the wait-for graph: waiter -> blockers."""
        with self._condition:
            return {waiter: set(blockers) for waiter, blockers in self.wait_for.edges.items()}

    def get_lock_count(self) -> int:
        with self._condition:
            return sum(
                len(holders)
                for table_locks in self.locks.values()
                for holders in table_locks.values()
            )

    def _held(self, resource: Any, txn_id: int) -> Optional[Lock]:
        return self.locks.get(resource.table_id, {}).get(resource, {}).get(txn_id)

    def _blockers(self, resource: Any, mode: LockMode, txn_id: int) -> Set[int]:
        blockers = set()
        for held_resource, holders in self.locks.get(resource.table_id, {}).items():
            if not resource.overlaps(held_resource):
                continue
            for holder, lock in holders.items():
                if holder != txn_id and not mode.compatible_with(lock.mode):
                    blockers.add(holder)
        return blockers

    def _grant(self, resource: Any, mode: LockMode, txn_id: int, held: Optional[Lock]) -> None:
        previous = held.mode if held is not None else None
        if held is not None:
            held.mode = mode
        else:
            table_locks = self.locks.setdefault(resource.table_id, {})
            table_locks.setdefault(resource, {})[txn_id] = Lock(
                resource=resource,
                mode=mode,
                holder_txn_id=txn_id,
                acquired_at=time.time(),
            )
        self.grants.setdefault(txn_id, []).append(
            LockGrant(resource=resource, mode=mode, previous_mode=previous)
        )

    def _drop(self, resource: Any, txn_id: int) -> None:
        table_locks = self.locks.get(resource.table_id, {})
        holders = table_locks.get(resource)
        if holders is None:
            return
        holders.pop(txn_id, None)
        if not holders:
            del table_locks[resource]
