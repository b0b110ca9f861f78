import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from pydantic import ValidationError

from cache import CacheBindings, TransactionCache
from periods import (
    OVERALL_TOTALS_KEY,
    is_range_key,
    month_key_for,
    single_key,
    split_key,
    year_key,
)
from persistence import MemoryStorage, StorageEvent
from remote import RealtimeChannel, RemoteStore
from scheduler import SchedulerHost
from schemas import ChangeEvent, ChangeRecord, SyncMessage


logger = logging.getLogger(__name__)

SYNC_MARKER_PREFIX = "sync_"
MARKER_TTL_SECS = 1.0
MAX_RECONNECT_ATTEMPTS = 5
RECONNECT_DELAY_SECS = 1.0
SYNC_INTERVAL_SECS = 30.0
INITIAL_LOOKBACK_SECS = 24 * 60 * 60
POLL_JOB_ID = "background_sync"


@dataclass
class SyncItem:
    key: str
    data: Any
    queued_at: float


SyncHandler = Callable[[SyncItem], Awaitable[None]]


class ReconciliationBus:
    """Turns queued, cross-tab, pushed and polled change signals into invalidation."""

    def __init__(
        self,
        bindings: CacheBindings,
        cache: TransactionCache,
        store: RemoteStore,
        user_id: str,
        *,
        aggregate_cache: Optional[TransactionCache] = None,
        shared_storage: Optional[MemoryStorage] = None,
        host: Optional[SchedulerHost] = None,
        channel: Optional[RealtimeChannel] = None,
        tab_id: Optional[str] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        sync_interval_secs: float = SYNC_INTERVAL_SECS,
        max_reconnect_attempts: int = MAX_RECONNECT_ATTEMPTS,
    ) -> None:
        self.bindings = bindings
        self.cache = cache
        self.store = store
        self.user_id = user_id
        self.aggregate_cache = aggregate_cache
        self.shared_storage = shared_storage
        self.host = host
        self.channel = channel
        self.tab_id = tab_id or uuid.uuid4().hex[:12]
        self._clock = clock
        self._sleep = sleep
        self.sync_interval_secs = sync_interval_secs
        self.max_reconnect_attempts = max_reconnect_attempts

        self.online = True
        self.realtime_connected = False
        self.last_sync_time: Optional[float] = None
        self._queue: list[SyncItem] = []
        self._processing = False
        self._reconnect_attempts = 0
        self._reconnect_task: Optional[asyncio.Task] = None

        if self.shared_storage is not None:
            self.shared_storage.add_listener(self._on_storage_event)

    @property
    def queue(self) -> list[SyncItem]:
        return list(self._queue)

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    # Connectivity and the local queue

    async def set_online(self, online: bool) -> None:
        was_online, self.online = self.online, online
        logger.info(f"connectivity_changed: online={online}")
        if online and not was_online:
            await self.process_sync_queue()

    def queue_offline_sync(self, key: str, data: Any) -> None:
        self._queue = [item for item in self._queue if item.key != key]
        self._queue.append(SyncItem(key=key, data=data, queued_at=self._clock()))

    async def process_sync_queue(self, handler: Optional[SyncHandler] = None) -> int:
        if not self.online or self._processing or not self._queue:
            return 0
        handler = handler or self._apply_queued
        self._processing = True
        processed = 0
        pending, self._queue = self._queue, []
        try:
            for item in pending:
                try:
                    await handler(item)
                    processed += 1
                except Exception as exc:
                    logger.warning(f"sync_item_failed: key={item.key} error={exc}")
                    self.queue_offline_sync(item.key, item.data)
        finally:
            self._processing = False
        logger.info(f"sync_queue_drained: processed={processed} requeued={len(self._queue)}")
        return processed

    async def _apply_queued(self, item: SyncItem) -> None:
        self.bindings.set(item.key, item.data)

    # Cross-tab broadcast

    def broadcast(self, event: ChangeEvent) -> None:
        if self.shared_storage is None:
            return
        now = self._clock()
        marker = f"{SYNC_MARKER_PREFIX}{self.tab_id}_{int(now * 1000)}"
        message = SyncMessage(origin=self.tab_id, payload=event, timestamp=now)
        self.shared_storage.set_item(marker, message.model_dump_json())
        if self.host is None:
            self.shared_storage.remove_item(marker)
            return
        storage = self.shared_storage
        self.host.schedule_once(
            f"marker:{marker}", MARKER_TTL_SECS, lambda: storage.remove_item(marker)
        )

    def _on_storage_event(self, event: StorageEvent) -> None:
        if not event.key.startswith(SYNC_MARKER_PREFIX) or event.new_value is None:
            return
        try:
            message = SyncMessage.model_validate_json(event.new_value)
        except ValidationError as exc:
            logger.warning(f"sync_message_invalid: key={event.key} error={exc}")
            return
        if message.origin == self.tab_id:
            return
        logger.debug(f"sync_message_received: origin={message.origin}")
        self.apply_change(message.payload)

    # Server push

    async def connect_realtime(self) -> bool:
        if self.channel is None:
            return False
        while True:
            try:
                await self.channel.subscribe(
                    self.handle_realtime_update, self._on_channel_error
                )
            except Exception as exc:
                if not await self._backoff(str(exc)):
                    return False
                continue
            self._reconnect_attempts = 0
            self.realtime_connected = True
            logger.info(f"realtime_subscribed: tab={self.tab_id}")
            return True

    async def _backoff(self, reason: str) -> bool:
        if self._reconnect_attempts >= self.max_reconnect_attempts:
            logger.error(
                f"realtime_gave_up: attempts={self._reconnect_attempts} reason={reason}"
            )
            return False
        self._reconnect_attempts += 1
        delay = self._reconnect_attempts * RECONNECT_DELAY_SECS
        logger.warning(
            f"realtime_retry: attempt={self._reconnect_attempts} delay={delay} reason={reason}"
        )
        await self._sleep(delay)
        return True

    def _on_channel_error(self, reason: str) -> None:
        self.realtime_connected = False
        self._reconnect_task = asyncio.get_running_loop().create_task(
            self._reconnect(reason)
        )

    async def _reconnect(self, reason: str) -> None:
        if await self._backoff(reason):
            await self.connect_realtime()

    def handle_realtime_update(self, event: ChangeEvent) -> None:
        self.apply_change(event)
        self.broadcast(event)
        self.last_sync_time = self._clock()

    # Polling

    def start_polling(self) -> None:
        if self.host is None:
            return
        self.host.schedule_interval(
            POLL_JOB_ID, self.sync_interval_secs, self.background_sync
        )

    async def background_sync(self) -> int:
        if not self.online:
            return 0
        now = self._clock()
        if (
            self.last_sync_time is not None
            and now - self.last_sync_time < self.sync_interval_secs
        ):
            return 0

        since_ts = self.last_sync_time or now - INITIAL_LOOKBACK_SECS
        since = datetime.fromtimestamp(since_ts, timezone.utc).replace(tzinfo=None)
        try:
            rows = await self.store.updated_since(self.user_id, since)
        except Exception as exc:
            logger.warning(f"background_sync_failed: error={exc}")
            return 0

        self.last_sync_time = now
        for row in rows:
            self.apply_change(
                ChangeEvent(
                    event_type="UPDATE", new=ChangeRecord(id=row.id, date=row.date)
                )
            )
        if rows:
            logger.info(f"background_sync: changed={len(rows)}")
        return len(rows)

    # Shared invalidation

    def affected_keys(self, event: ChangeEvent) -> list[str]:
        keys: list[str] = []
        for record in (event.new, event.old):
            if record is None:
                continue
            when = record.date
            if when is None:
                found = self.cache.find(record.id)
                when = found[1].date if found else None
            if when is not None:
                keys += [month_key_for(when), year_key(when.year), split_key(when.year)]
            keys.append(single_key(record.id))
        return list(dict.fromkeys(keys))

    def apply_change(self, event: ChangeEvent) -> list[str]:
        keys = self.affected_keys(event)
        for key in keys:
            self.bindings.invalidate(key)
        for key in self.cache.invalidate_matching(is_range_key):
            self.bindings.notify(key)
        if self.aggregate_cache is not None:
            self.aggregate_cache.clear()
        self.bindings.revalidate(OVERALL_TOTALS_KEY)
        logger.debug(f"change_applied: type={event.event_type} keys={keys}")
        return keys

    def announce_local_change(self, event: ChangeEvent) -> None:
        self.broadcast(event)

    async def close(self) -> None:
        if self.host is not None:
            self.host.cancel(POLL_JOB_ID)
        if self.shared_storage is not None:
            self.shared_storage.remove_listener(self._on_storage_event)
        if self._reconnect_task is not None and not self._reconnect_task.done():
            self._reconnect_task.cancel()
        if self.channel is not None and self.realtime_connected:
            await self.channel.unsubscribe()
        self.realtime_connected = False
