"""Row and row version data models."""

from dataclasses import dataclass, field
from typing import Dict, Any, List, Optional


@dataclass
class RowVersion:
    """One committed or in-flight state of a row."""

    version_id: int
    row_id: int
    creator_txn_id: int
    payload: Optional[Dict[str, Any]]
    deleter_txn_id: Optional[int] = None
    begin_seq: Optional[int] = None
    end_seq: Optional[int] = None

    @property
    def is_committed(self) -> bool:
        return self.begin_seq is not None

    @property
    def is_current(self) -> bool:
        """Committed and not superseded."""
        return self.begin_seq is not None and self.end_seq is None

    @property
    def is_tombstone(self) -> bool:
        return self.deleter_txn_id is not None


@dataclass
class Row:
    """A logical record owning its version chain (oldest first)."""

    row_id: int
    table_id: str
    versions: List[RowVersion] = field(default_factory=list)
