"""Savepoint data model for partial rollback."""

from dataclasses import dataclass


@dataclass
class Savepoint:
    """Named marker inside a transaction's write, lock and conflict logs."""

    name: str
    write_mark: int
    lock_mark: int
    timestamp: float
    conflict_mark: int = 0
