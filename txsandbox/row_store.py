"""In-memory store of rows and their version chains."""

import itertools
import threading
from typing import Any, Dict, List
from .models.row import Row, RowVersion


class RowStore:
    """Authoritative set of rows, keyed by a synthetic row id."""

    def __init__(self):
        self.rows: Dict[int, Row] = {}
        self.tables: Dict[str, List[int]] = {}
        self.row_counter = 0
        self._version_ids = itertools.count(1)
        self.lock = threading.RLock()

    def new_row_id(self, table_id: str) -> int:
        """Allocate a fresh row id. Ids are never reused."""
        with self.lock:
            self.row_counter += 1
            row_id = self.row_counter
            self.rows[row_id] = Row(row_id=row_id, table_id=table_id)
            self.tables.setdefault(table_id, []).append(row_id)
            return row_id

    def new_version_id(self) -> int:
        return next(self._version_ids)

    def get_row(self, row_id: int):
        return self.rows.get(row_id)

    def get_version_chain(self, row_id: int) -> List[RowVersion]:
        """Versions of a row, oldest first. Empty for an unknown id."""
        row = self.rows.get(row_id)
        if row is None:
            return []
        return row.versions

    def append_version(self, row_id: int, version: RowVersion) -> None:
        with self.lock:
            row = self.rows.get(row_id)
            if row is None:
                raise KeyError(f"Row {row_id} does not exist")
            row.versions.append(version)

    def remove_version(self, row_id: int, version: RowVersion) -> None:
        """Drop an in-flight version; a row left without versions is forgotten."""
        with self.lock:
            row = self.rows.get(row_id)
            if row is None:
                return
            row.versions = [v for v in row.versions if v is not version]
            if not row.versions:
                del self.rows[row_id]
                self.tables[row.table_id].remove(row_id)

    def discard_row_if_empty(self, row_id: int) -> None:
        """Forget a freshly allocated row that never received a version."""
        with self.lock:
            row = self.rows.get(row_id)
            if row is not None and not row.versions:
                del self.rows[row_id]
                self.tables[row.table_id].remove(row_id)

    def row_ids(self, table_id: str) -> List[int]:
        """Row ids of a table in insertion order."""
        with self.lock:
            return list(self.tables.get(table_id, []))

    def table_ids(self) -> List[str]:
        return sorted(self.tables)

    def dump(self) -> Dict[int, List[Dict[str, Any]]]:
        """Plain-data copy of every chain, for comparisons and reports."""
        with self.lock:
            return {
                row_id: [
                    {
                        "version_id": v.version_id,
                        "creator_txn_id": v.creator_txn_id,
                        "deleter_txn_id": v.deleter_txn_id,
                        "begin_seq": v.begin_seq,
                        "end_seq": v.end_seq,
                        "payload": dict(v.payload) if v.payload is not None else None,
                    }
                    for v in row.versions
                ]
                for row_id, row in self.rows.items()
                if row.versions
            }
