"""Lock resources, modes and grant results."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class LockMode(Enum):
    """Lock modes. SHARED is compatible with SHARED only."""

    SHARED = "S"
    EXCLUSIVE = "X"
    RANGE = "RANGE"

    def compatible_with(self, other: "LockMode") -> bool:
        return self is LockMode.SHARED and other is LockMode.SHARED

    def covers(self, other: "LockMode") -> bool:
        """True when holding ``self`` already satisfies a request for ``other``."""
        if other is LockMode.SHARED:
            return True
        return self is not LockMode.SHARED


class LockResult(Enum):
    """Outcome of a lock request."""

    GRANTED = "granted"
    CONFLICT = "conflict"
    TIMEOUT = "timeout"
    DEADLOCK = "deadlock"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class RowResource:
    """A single row."""

    table_id: str
    row_id: int

    def overlaps(self, other) -> bool:
        if isinstance(other, KeyRange):
            return other.overlaps(self)
        return self == other


@dataclass(frozen=True)
class KeyRange:
    """
    Closed key range over one column of a table.

    ``column=None`` covers the whole table, as does a missing bound on
    either side.
    """

    table_id: str
    column: Optional[str] = None
    low: Any = None
    high: Any = None

    def contains(self, payload: Optional[Dict[str, Any]]) -> bool:
        if payload is None:
            return False
        if self.column is None:
            return True
        if self.column not in payload:
            return False
        value = payload[self.column]
        if value is None:
            return False
        if self.low is not None and value < self.low:
            return False
        if self.high is not None and value > self.high:
            return False
        return True

    def __call__(self, payload: Dict[str, Any]) -> bool:
        return self.contains(payload)

    def overlaps(self, other) -> bool:
        if other.table_id != self.table_id:
            return False
        if isinstance(other, InsertKey):
            return self.contains(other.payload)
        if isinstance(other, KeyRange):
            if self.column is None or other.column is None:
                return True
            if self.column != other.column:
                # Different columns can describe the same rows.
                return True
            if self.high is not None and other.low is not None and self.high < other.low:
                return False
            if other.high is not None and self.low is not None and other.high < self.low:
                return False
            return True
        return False


@dataclass(frozen=True)
class InsertKey:
    """Intent to place ``payload`` into a table; collides only with key ranges."""

    table_id: str
    version_id: int
    payload: Dict[str, Any] = field(compare=False, hash=False)

    def overlaps(self, other) -> bool:
        if isinstance(other, KeyRange):
            return other.overlaps(self)
        return False


@dataclass
class Lock:
    """A granted lock."""

    resource: Any
    mode: LockMode
    holder_txn_id: int
    acquired_at: float


@dataclass
class LockGrant:
    """Entry in a transaction's lock acquisition log."""

    resource: Any
    mode: LockMode
    previous_mode: Optional[LockMode]
