import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Optional, Protocol

from periods import (
    adjacent_months,
    month_key,
    split_key,
    year_key,
)
from schemas import Transaction


logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 10
DEFAULT_TTL_SECS = 60 * 60


@dataclass
class CacheEntry:
    data: Any
    timestamp: float
    access_count: int
    last_accessed: float


class CacheProvider(Protocol):
    def get(self, key: str) -> Optional[Any]: ...

    def set(self, key: str, data: Any) -> None: ...

    def invalidate(self, key: str) -> None: ...


class TransactionCache:
    def __init__(
        self,
        capacity: int = DEFAULT_CAPACITY,
        ttl_secs: float = DEFAULT_TTL_SECS,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.capacity = capacity
        self.ttl_secs = ttl_secs
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def _expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.timestamp > self.ttl_secs

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        now = self._clock()
        if self._expired(entry, now):
            del self._entries[key]
            return None
        entry.access_count += 1
        entry.last_accessed = now
        return entry.data

    def peek(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None or self._expired(entry, self._clock()):
            return None
        return entry.data

    def has(self, key: str) -> bool:
        entry = self._entries.get(key)
        if entry is None:
            return False
        if self._expired(entry, self._clock()):
            del self._entries[key]
            return False
        return True

    def set(self, key: str, data: Any) -> None:
        self._cleanup()
        if len(self._entries) >= self.capacity and key not in self._entries:
            self._evict_lru()
        now = self._clock()
        self._entries[key] = CacheEntry(
            data=data, timestamp=now, access_count=1, last_accessed=now
        )

    def restore(self, key: str, data: Any, timestamp: float) -> None:
        """Re-insert an entry keeping its original write time (used on warm start)."""
        if self._clock() - timestamp > self.ttl_secs:
            return
        self.set(key, data)
        self._entries[key].timestamp = timestamp

    def replace(self, key: str, data: Any) -> bool:
        entry = self._entries.get(key)
        if entry is None:
            return False
        if self._expired(entry, self._clock()):
            del self._entries[key]
            return False
        entry.data = data
        return True

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def invalidate(self, key: str) -> None:
        self.delete(key)

    def invalidate_matching(self, predicate: Callable[[str], bool]) -> list[str]:
        removed = [key for key in self._entries if predicate(key)]
        for key in removed:
            del self._entries[key]
        return removed

    def clear(self) -> None:
        self._entries.clear()

    def clear_month(self, year: int, month: int) -> None:
        self.delete(month_key(year, month))

    def clear_year(self, year: int) -> None:
        self.delete(year_key(year))
        self.delete(split_key(year))

    def clear_related(self, year: int, month: int) -> None:
        years: set[int] = set()
        for y, m in adjacent_months(year, month):
            self.clear_month(y, m)
            years.add(y)
        for y in sorted(years):
            self.clear_year(y)

    def keys(self) -> list[str]:
        return list(self._entries)

    def entries(self) -> Iterator[tuple[str, CacheEntry]]:
        now = self._clock()
        for key, entry in list(self._entries.items()):
            if not self._expired(entry, now):
                yield key, entry

    def find(self, transaction_id: str) -> Optional[tuple[str, Transaction]]:
        for key, entry in self.entries():
            if not isinstance(entry.data, list):
                continue
            for txn in entry.data:
                if txn.id == transaction_id:
                    return key, txn
        return None

    def status(self) -> dict[str, object]:
        return {
            "size": len(self._entries),
            "max_size": self.capacity,
            "entries": list(self._entries),
        }

    def _cleanup(self) -> None:
        now = self._clock()
        for key in [k for k, e in self._entries.items() if self._expired(e, now)]:
            del self._entries[key]

    def _evict_lru(self) -> None:
        if not self._entries:
            return
        oldest_key = min(self._entries, key=lambda k: self._entries[k].last_accessed)
        logger.debug(f"cache_evict: key={oldest_key}")
        del self._entries[oldest_key]


Listener = Callable[[str], None]


class CacheBindings:
    """Key subscriptions layered over a single CacheProvider.

    Readers, optimistic writers and invalidation all go through the same
    provider, so "is this key cached" has exactly one answer. Listeners are
    told which key changed and re-read it through the provider.
    """

    def __init__(self, provider: CacheProvider) -> None:
        self.provider = provider
        self._listeners: dict[str, list[Listener]] = {}
        self._global_listeners: list[Listener] = []

    def subscribe(self, key: str, listener: Listener) -> Callable[[], None]:
        self._listeners.setdefault(key, []).append(listener)

        def unsubscribe() -> None:
            listeners = self._listeners.get(key, [])
            if listener in listeners:
                listeners.remove(listener)

        return unsubscribe

    def subscribe_all(self, listener: Listener) -> Callable[[], None]:
        self._global_listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._global_listeners:
                self._global_listeners.remove(listener)

        return unsubscribe

    def get(self, key: str) -> Optional[Any]:
        return self.provider.get(key)

    def set(self, key: str, data: Any) -> None:
        self.provider.set(key, data)
        self.notify(key)

    def invalidate(self, key: str) -> None:
        self.provider.invalidate(key)
        self.notify(key)

    def revalidate(self, key: str) -> None:
        self.invalidate(key)

    def notify(self, key: str) -> None:
        for listener in [*self._listeners.get(key, []), *self._global_listeners]:
            try:
                listener(key)
            except Exception:
                logger.exception(f"cache_listener_failed: key={key}")
