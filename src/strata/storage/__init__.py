"""Storage providers, connection pool, query builder and transactions.

Driver-specific providers (``strata.storage.sqlite``, ``strata.storage.mysql``) are
imported on demand so that importing this package does not load database drivers.
"""

from strata.storage.document import DocumentProvider, decode_key, encode_key
from strata.storage.errors import (
    BackupError,
    ConnectivityError,
    PoolExhaustedError,
    StatementError,
    StorageBusyError,
    StorageError,
    TransactionError,
    TransactionStateError,
    UnsupportedOperationError,
)
from strata.storage.factory import open_document_provider, open_provider
from strata.storage.pool import ConnectionPool, PooledConnection, PoolStats
from strata.storage.provider import Row, SQLParams, StorageProvider
from strata.storage.query_builder import QueryBuilder
from strata.storage.transaction import (
    Transaction,
    TransactionConnection,
    TransactionResult,
    TransactionState,
)

__all__ = [
    "BackupError",
    "ConnectionPool",
    "ConnectivityError",
    "DocumentProvider",
    "PoolExhaustedError",
    "PoolStats",
    "PooledConnection",
    "QueryBuilder",
    "Row",
    "SQLParams",
    "StatementError",
    "StorageBusyError",
    "StorageError",
    "StorageProvider",
    "Transaction",
    "TransactionConnection",
    "TransactionError",
    "TransactionResult",
    "TransactionState",
    "TransactionStateError",
    "UnsupportedOperationError",
    "decode_key",
    "encode_key",
    "open_document_provider",
    "open_provider",
]
