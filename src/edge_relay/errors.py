"""
Custom exceptions for the edge relay.

Sink failures are mapped onto a small hierarchy so pipeline components can log
and count them without knowing which driver raised them.
"""


class RelayError(Exception):
    """Base error for the edge relay."""

    pass


class ConnectError(RelayError):
    """A sink could not be reached at startup. Fatal."""

    pass


class PublishError(RelayError):
    """A single publish to the pub/sub sink failed."""

    pass


class StorageError(RelayError):
    """Base persistence error."""

    pass


class StorageUnavailable(StorageError):
    """Connection lost or server unavailable."""

    pass


class StorageTimeout(StorageError):
    """Statement or pool acquisition timed out."""

    pass


class ConstraintViolation(StorageError):
    """Database constraint violations (not null, check, unique...)."""

    pass


class QueueClosedError(RelayError):
    """Raised by BoundedQueue.get once the queue is closed and drained."""

    pass


def map_db_error(e: Exception) -> StorageError:
    import psycopg
    import psycopg.errors as E
    import psycopg_pool

    if isinstance(e, StorageError):
        return e
    if isinstance(e, (E.QueryCanceled, psycopg_pool.PoolTimeout, TimeoutError)):
        return StorageTimeout(str(e))
    if isinstance(e, (E.UniqueViolation, E.CheckViolation, E.NotNullViolation)):
        return ConstraintViolation(str(e))
    if isinstance(e, (psycopg.OperationalError, psycopg_pool.PoolClosed)):
        return StorageUnavailable(str(e))
    return StorageError(str(e))
