import logging
import threading
from collections import OrderedDict
from typing import Any, Callable, Generic, Hashable, Iterator, Optional, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

_MISSING = object()


class BoundedCache(Generic[K, V]):
    """Insertion-ordered cache that evicts its oldest entry once full.

    Lookups do not refresh an entry's position, so eviction order is the order in
    which keys were first inserted. ``on_evict`` is called with each evicted key and
    value after the entry is gone. All mutation happens under a lock so the size
    bound holds even with threads sharing one instance.
    """

    def __init__(
        self,
        max_entries: int,
        name: str = "cache",
        on_evict: Optional[Callable[[K, V], None]] = None,
    ) -> None:
        """Initialize with a positive capacity."""
        if max_entries <= 0:
            raise ValueError(f"{name} capacity must be positive, got {max_entries}")
        self._max_entries = max_entries
        self._name = name
        self._on_evict = on_evict
        self._entries: "OrderedDict[K, V]" = OrderedDict()
        self._lock = threading.RLock()
        self._logger = logging.getLogger(__name__)

    @property
    def max_entries(self) -> int:
        """Return the configured capacity."""
        return self._max_entries

    def get(self, key: K, default: Any = None) -> Any:
        """Return the cached value, or ``default`` when absent."""
        with self._lock:
            return self._entries.get(key, default)

    def set(self, key: K, value: V) -> None:
        """Insert or overwrite an entry, evicting the oldest first if at capacity."""
        evicted = []
        with self._lock:
            if key in self._entries:
                self._entries[key] = value
                return
            while len(self._entries) >= self._max_entries:
                evicted.append(self._entries.popitem(last=False))
            self._entries[key] = value
        for old_key, old_value in evicted:
            self._logger.debug("%s_evict key=%s", self._name, old_key)
            if self._on_evict is not None:
                self._on_evict(old_key, old_value)

    def add(self, key: K) -> None:
        """Set-style insert for caches that only track membership."""
        self.set(key, True)  # type: ignore[arg-type]

    def pop(self, key: K, default: Any = None) -> Any:
        """Remove an entry without triggering ``on_evict``."""
        with self._lock:
            return self._entries.pop(key, default)

    def discard_where(self, predicate: Callable[[K], bool]) -> int:
        """Remove every key matching ``predicate`` and return how many were removed."""
        with self._lock:
            doomed = [key for key in self._entries if predicate(key)]
            for key in doomed:
                del self._entries[key]
        return len(doomed)

    def clear(self) -> int:
        """Drop all entries and return the number dropped."""
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        return count

    def keys(self) -> list:
        """Snapshot of keys, oldest first."""
        with self._lock:
            return list(self._entries.keys())

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __iter__(self) -> Iterator[K]:
        return iter(self.keys())

    def lookup(self, key: K) -> Any:
        """Return the value or the module sentinel ``MISSING`` when absent."""
        return self.get(key, _MISSING)


MISSING = _MISSING
