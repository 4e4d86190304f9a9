import threading
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator

FILE = "file"
IP = "ip"
URI = "uri"
REFERRER = "referrer"

DIMENSIONS = (FILE, IP, URI, REFERRER)


class DimensionCache:
    """
    In-memory natural key -> identity maps for the store's dimensions.

    Each dimension has its own lock. Callers hold it across the cache check,
    the backing-store query and the insert-on-miss, so two threads never both
    decide to create the same value. The cache belongs to one store instance
    and is dropped when that store is closed or cleared.
    """

    def __init__(self) -> None:
        self._values: Dict[str, Dict[str, Any]] = {d: {} for d in DIMENSIONS}
        self._locks: Dict[str, threading.Lock] = {d: threading.Lock() for d in DIMENSIONS}

    @contextmanager
    def locked(self, dimension: str) -> Iterator[Dict[str, Any]]:
        """Hold the dimension's lock and expose its mapping."""
        with self._locks[dimension]:
            yield self._values[dimension]

    def get_or_load(self, dimension: str, key: str, loader: Callable[[str], Any]) -> Any:
        """
        Return the cached identity for ``key``, calling ``loader`` on a miss.

        :param dimension: One of ``DIMENSIONS``.
        :param key: Natural key (the raw string value).
        :param loader: Resolves the key against the backing store.
        :return: Identity of the dimension row.
        """
        with self.locked(dimension) as values:
            if key in values:
                return values[key]
            identity = loader(key)
            values[key] = identity
            return identity

    def sizes(self) -> Dict[str, int]:
        return {d: len(values) for d, values in self._values.items()}

    def clear(self) -> None:
        for dimension in DIMENSIONS:
            with self.locked(dimension) as values:
                values.clear()
