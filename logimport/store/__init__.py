from ..config import StoreConfig
from .base import LogStore, SerializationConflict, WriteResult
from .cache import DimensionCache


def create_store(config: StoreConfig) -> LogStore:
    """
    Build the backend selected by ``config.driver`` without connecting.

    :param config: Store settings.
    :return: Unopened store.
    """
    if config.driver == "sqlite":
        from .sqlite import SQLiteLogStore

        return SQLiteLogStore(config)

    from .postgres import PostgresLogStore

    return PostgresLogStore(config)


def open_store(config: StoreConfig) -> LogStore:
    """Build, open and ping the configured store."""
    store = create_store(config)
    store.open()
    try:
        store.ping()
    except Exception:
        store.close()
        raise
    return store


__all__ = [
    "DimensionCache",
    "LogStore",
    "SerializationConflict",
    "WriteResult",
    "create_store",
    "open_store",
]
