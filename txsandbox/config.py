"""Engine configuration."""

from dataclasses import dataclass
from typing import Optional
from .models.transaction import IsolationLevel


@dataclass
class EngineConfig:
    """
    Settings shared by every session of a :class:`~txsandbox.database.SandboxDB`.

    Args:
        default_isolation_level: Level used when a transaction does not ask
            for one. READ COMMITTED, as on a fresh SQL Server database.
        lock_timeout: Seconds a blocking lock request may wait. ``None``
            waits forever (``SET LOCK_TIMEOUT -1``), ``0`` fails at once.
        abort_on_error: When True a constraint violation dooms the
            transaction (``SET XACT_ABORT ON``).
        allow_snapshot_isolation: Mirrors ``ALLOW_SNAPSHOT_ISOLATION``;
            beginning a SNAPSHOT transaction fails while it is off.
    """

    default_isolation_level: IsolationLevel = IsolationLevel.READ_COMMITTED
    lock_timeout: Optional[float] = None
    abort_on_error: bool = False
    allow_snapshot_isolation: bool = True

    def __post_init__(self):
        if self.lock_timeout is not None and self.lock_timeout < 0:
            raise ValueError(f"lock_timeout must be None or >= 0, got {self.lock_timeout}")
