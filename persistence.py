import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Protocol
from urllib.parse import quote, unquote

from pydantic import ValidationError

from cache import TransactionCache
from periods import MONTH_PREFIX, SINGLE_PREFIX
from schemas import PersistedCache, PersistedEntry, Transaction


logger = logging.getLogger(__name__)

CACHE_STORAGE_KEY = "ledger-transaction-cache"
CACHE_VERSION = "1.0"
CACHE_EXPIRY_SECS = 24 * 60 * 60
MONTH_ENTRY_MAX_AGE_SECS = 6 * 60 * 60
OTHER_ENTRY_MAX_AGE_SECS = 2 * 60 * 60

PERSISTED_PREFIXES = (MONTH_PREFIX, SINGLE_PREFIX)


class KeyValueStorage(Protocol):
    def get_item(self, key: str) -> Optional[str]: ...

    def set_item(self, key: str, value: str) -> None: ...

    def remove_item(self, key: str) -> None: ...

    def keys(self) -> list[str]: ...


@dataclass(frozen=True)
class StorageEvent:
    key: str
    old_value: Optional[str]
    new_value: Optional[str]


class MemoryStorage:
    def __init__(self) -> None:
        self._items: dict[str, str] = {}
        self._listeners: list[Callable[[StorageEvent], None]] = []

    def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        old = self._items.get(key)
        self._items[key] = value
        self._emit(StorageEvent(key, old, value))

    def remove_item(self, key: str) -> None:
        old = self._items.pop(key, None)
        if old is not None:
            self._emit(StorageEvent(key, old, None))

    def keys(self) -> list[str]:
        return list(self._items)

    def add_listener(self, listener: Callable[[StorageEvent], None]) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[StorageEvent], None]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit(self, event: StorageEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception(f"storage_listener_failed: key={event.key}")


class FileStorage:
    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.directory / f"{quote(key, safe='')}.json"

    def get_item(self, key: str) -> Optional[str]:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def set_item(self, key: str, value: str) -> None:
        path = self._path(key)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(value, encoding="utf-8")
        tmp.replace(path)

    def remove_item(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)

    def keys(self) -> list[str]:
        return [unquote(p.stem) for p in self.directory.glob("*.json")]


def _max_entry_age(key: str) -> float:
    if key.startswith(MONTH_PREFIX):
        return MONTH_ENTRY_MAX_AGE_SECS
    return OTHER_ENTRY_MAX_AGE_SECS


class DurableCacheStore:
    def __init__(
        self,
        storage: KeyValueStorage,
        *,
        storage_key: str = CACHE_STORAGE_KEY,
        version: str = CACHE_VERSION,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.storage = storage
        self.storage_key = storage_key
        self.version = version
        self._clock = clock

    def save(self, cache: TransactionCache) -> None:
        try:
            data = {
                key: PersistedEntry(data=entry.data, timestamp=entry.timestamp)
                for key, entry in cache.entries()
                if key.startswith(PERSISTED_PREFIXES)
            }
            record = PersistedCache(
                version=self.version, timestamp=self._clock(), data=data
            )
            self.storage.set_item(self.storage_key, record.model_dump_json())
        except Exception as exc:
            logger.warning(f"cache_save_failed: error={exc}")
            return
        logger.debug(f"cache_saved: entries={len(data)}")

    def load(self) -> Optional[dict[str, tuple[list[Transaction], float]]]:
        try:
            raw = self.storage.get_item(self.storage_key)
            if raw is None:
                return None
            record = PersistedCache.model_validate_json(raw)
        except (ValidationError, ValueError, OSError) as exc:
            logger.warning(f"cache_load_failed: error={exc}")
            self.clear()
            return None

        now = self._clock()
        if record.version != self.version:
            logger.info(
                f"cache_version_mismatch: stored={record.version} running={self.version}"
            )
            self.clear()
            return None
        if now - record.timestamp > CACHE_EXPIRY_SECS:
            logger.info("cache_expired: wiping durable cache")
            self.clear()
            return None

        restored: dict[str, tuple[list[Transaction], float]] = {}
        for key, entry in record.data.items():
            if now - entry.timestamp < _max_entry_age(key) and entry.data:
                restored[key] = (entry.data, entry.timestamp)
        return restored

    def clear(self) -> None:
        try:
            self.storage.remove_item(self.storage_key)
        except OSError as exc:
            logger.warning(f"cache_clear_failed: error={exc}")

    def info(self) -> Optional[dict[str, object]]:
        raw = self.storage.get_item(self.storage_key)
        if raw is None:
            return None
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            return None
        timestamp = float(payload.get("timestamp", 0))
        return {
            "version": payload.get("version"),
            "timestamp": timestamp,
            "age": self._clock() - timestamp,
            "size": len(raw.encode("utf-8")),
            "entries": len(payload.get("data", {})),
        }
