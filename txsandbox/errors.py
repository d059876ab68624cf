"""Exception hierarchy surfaced by the sandbox engine."""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(Enum):
    """Error kinds a caller is expected to branch on."""

    LOCK_TIMEOUT = "LOCK_TIMEOUT"
    DEADLOCK_VICTIM = "DEADLOCK_VICTIM"
    UPDATE_CONFLICT = "UPDATE_CONFLICT"
    CONSTRAINT_VIOLATION = "CONSTRAINT_VIOLATION"
    TRANSACTION_DOOMED = "TRANSACTION_DOOMED"


class SandboxError(Exception):
    """Base class for engine errors carrying an :class:`ErrorKind`."""

    kind: Optional[ErrorKind] = None

    def __init__(self, message: str, txn_id: Optional[int] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.txn_id = txn_id
        self.details = details or {}

    def __str__(self):
        if self.kind is None:
            return self.message
        return f"{self.kind.value}: {self.message}"


class LockTimeoutError(SandboxError):
    """A blocking lock request waited longer than the configured timeout."""

    kind = ErrorKind.LOCK_TIMEOUT


class DeadlockVictimError(SandboxError):
    """Transaction was chosen to break a wait-for cycle and has been rolled back."""

    kind = ErrorKind.DEADLOCK_VICTIM


class UpdateConflictError(SandboxError):
    """A SNAPSHOT commit lost a write-write race and has been rolled back."""

    kind = ErrorKind.UPDATE_CONFLICT


class ConstraintViolationError(SandboxError):
    """Payload rejected by the catalog."""

    kind = ErrorKind.CONSTRAINT_VIOLATION

    def __init__(self, message: str, table_id: Optional[str] = None, txn_id: Optional[int] = None):
        super().__init__(message, txn_id=txn_id, details={"table_id": table_id})
        self.table_id = table_id


class TransactionDoomedError(SandboxError):
    """Operation other than rollback attempted on an uncommittable transaction."""

    kind = ErrorKind.TRANSACTION_DOOMED


class TransactionStateError(SandboxError, ValueError):
    """Unknown transaction, or an operation illegal in its current state."""
