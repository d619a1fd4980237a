"""
Storage Errors

Startup failures (PoolInitError, SchemaInitError) are fatal: the process
should not serve without a ready database. ConnectionUnavailable is the
only error callers are expected to handle and retry.
"""


class StorageError(Exception):
    """Base class for all storage layer errors"""


class PoolInitError(StorageError):
    """Connection pool could not open its initial connections"""


class SchemaInitError(StorageError):
    """A schema statement failed for a reason other than 'already exists'"""


class ConnectionUnavailable(StorageError):
    """No connection could be leased (pool exhausted, closed or unreachable)"""
