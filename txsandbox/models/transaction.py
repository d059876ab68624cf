"""Transaction-related data models and enums."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional
from .row import RowVersion
from .savepoint import Savepoint


class IsolationLevel(Enum):
    """Isolation levels understood by the sandbox."""

    READ_UNCOMMITTED = "READ UNCOMMITTED"
    READ_COMMITTED = "READ COMMITTED"
    REPEATABLE_READ = "REPEATABLE READ"
    SNAPSHOT = "SNAPSHOT"
    SERIALIZABLE = "SERIALIZABLE"

    @property
    def holds_read_locks(self) -> bool:
        return self in (IsolationLevel.REPEATABLE_READ, IsolationLevel.SERIALIZABLE)

    @property
    def pins_reads(self) -> bool:
        return self in (IsolationLevel.REPEATABLE_READ, IsolationLevel.SERIALIZABLE)


class TransactionState(Enum):
    """Enumeration of possible transaction states."""

    ACTIVE = "active"
    UNCOMMITTABLE = "uncommittable"
    COMMITTED = "committed"
    ABORTED = "aborted"


@dataclass
class Transaction:
    """A unit of work running under one isolation level."""

    txn_id: int
    isolation_level: IsolationLevel
    start_seq: int
    timestamp: float
    state: TransactionState = TransactionState.ACTIVE
    name: Optional[str] = None
    nesting_level: int = 1
    lock_timeout: Optional[float] = None
    abort_on_error: bool = False
    # In-flight versions in write order; savepoints record offsets into it.
    write_log: List[RowVersion] = field(default_factory=list)
    savepoints: List[Savepoint] = field(default_factory=list)
    # row_id -> version_id first observed (REPEATABLE READ / SERIALIZABLE)
    pinned_versions: Dict[int, int] = field(default_factory=dict)
    # Lock holders a SNAPSHOT write could not wait for; checked at commit.
    conflicts: List["Transaction"] = field(default_factory=list, repr=False, compare=False)
    commit_seq: Optional[int] = None

    @property
    def is_finished(self) -> bool:
        return self.state in (TransactionState.COMMITTED, TransactionState.ABORTED)
