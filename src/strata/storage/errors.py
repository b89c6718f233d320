"""Exception hierarchy for storage providers, pools and transactions."""

from __future__ import annotations


class StorageError(RuntimeError):
    """Base class for persistence-layer errors."""


class ConnectivityError(StorageError):
    """Raised when a connection cannot be opened or acquired."""


class PoolExhaustedError(ConnectivityError):
    """Raised when no pooled connection became available within the connection timeout."""


class StatementError(StorageError):
    """Raised when the backend rejects a statement.

    Carries the statement text and the driver's own message so callers and logs
    can show both.
    """

    def __init__(self, statement: str, driver_message: str, *, operation: str = "query") -> None:
        self.statement = statement
        self.driver_message = driver_message
        self.operation = operation
        super().__init__(f"{operation} failed: {driver_message} [statement: {statement}]")


class StorageBusyError(StatementError):
    """Raised when bounded busy/lock retries are exhausted."""


class UnsupportedOperationError(StorageError):
    """Raised when a provider does not support the requested capability."""


class TransactionError(StorageError):
    """Raised when a transaction fails to commit; the transaction has been rolled back."""


class TransactionStateError(TransactionError):
    """Raised when a transaction is used outside its staging state."""


class BackupError(StorageError):
    """Raised when provider data cannot be snapshotted or restored."""


__all__ = [
    "BackupError",
    "ConnectivityError",
    "PoolExhaustedError",
    "StatementError",
    "StorageBusyError",
    "StorageError",
    "TransactionError",
    "TransactionStateError",
    "UnsupportedOperationError",
]
