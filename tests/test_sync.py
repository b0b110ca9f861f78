import asyncio
from datetime import datetime

from cache import CacheBindings, TransactionCache
from persistence import MemoryStorage
from schemas import ChangeEvent, ChangeRecord
from sync import POLL_JOB_ID, ReconciliationBus

from conftest import FakeClock, ManualHost, MemoryStore, make_txn

MARCH = "transactions-2024-3"


class FlakyChannel:
    def __init__(self, failures: int = 0) -> None:
        self.failures = failures
        self.attempts = 0
        self.on_change = None
        self.on_error = None
        self.unsubscribed = False

    async def subscribe(self, on_change, on_error) -> None:
        self.attempts += 1
        if self.failures:
            self.failures -= 1
            raise RuntimeError("CHANNEL_ERROR")
        self.on_change = on_change
        self.on_error = on_error

    async def unsubscribe(self) -> None:
        self.unsubscribed = True


def _bus(cache=None, store=None, **kwargs) -> ReconciliationBus:
    cache = cache if cache is not None else TransactionCache()
    kwargs.setdefault("clock", FakeClock())
    return ReconciliationBus(
        CacheBindings(cache), cache, store or MemoryStore(), "u1", **kwargs
    )


def _event(txn_id: str = "t1", when=datetime(2024, 3, 15)) -> ChangeEvent:
    return ChangeEvent(event_type="UPDATE", new=ChangeRecord(id=txn_id, date=when))


def test_queue_keeps_latest_item_per_key() -> None:
    bus = _bus()

    bus.queue_offline_sync("k", 1)
    bus.queue_offline_sync("j", 2)
    bus.queue_offline_sync("k", 3)

    assert [(item.key, item.data) for item in bus.queue] == [("j", 2), ("k", 3)]


def test_queue_drains_when_connectivity_returns() -> None:
    cache = TransactionCache()
    bus = _bus(cache)

    async def scenario():
        await bus.set_online(False)
        bus.queue_offline_sync(MARCH, [make_txn()])
        assert await bus.process_sync_queue() == 0
        await bus.set_online(True)

    asyncio.run(scenario())

    assert bus.queue == []
    assert [r.id for r in cache.get(MARCH)] == ["t1"]


def test_failed_queue_items_are_requeued() -> None:
    bus = _bus()
    handled = []

    async def handler(item) -> None:
        if item.key == "bad":
            raise RuntimeError("boom")
        handled.append(item.key)

    bus.queue_offline_sync("bad", 1)
    bus.queue_offline_sync("good", 2)

    processed = asyncio.run(bus.process_sync_queue(handler))

    assert processed == 1
    assert handled == ["good"]
    assert [item.key for item in bus.queue] == ["bad"]


def test_broadcast_reaches_other_tabs_only() -> None:
    storage = MemoryStorage()
    host = ManualHost()
    mine, theirs = TransactionCache(), TransactionCache()
    mine.set(MARCH, [make_txn()])
    theirs.set(MARCH, [make_txn()])
    sender = _bus(mine, shared_storage=storage, host=host, tab_id="a")
    _bus(theirs, shared_storage=storage, tab_id="b")

    sender.broadcast(_event())

    assert mine.has(MARCH)
    assert not theirs.has(MARCH)
    assert storage.keys() == ["sync_a_1700000000000"]
    assert host.jobs["marker:sync_a_1700000000000"][:2] == ("once", 1.0)

    host.fire("marker:sync_a_1700000000000")

    assert storage.keys() == []


def test_broadcast_without_host_removes_marker_immediately() -> None:
    storage = MemoryStorage()
    bus = _bus(shared_storage=storage, tab_id="a")

    bus.broadcast(_event())

    assert storage.keys() == []


def test_malformed_marker_is_ignored() -> None:
    storage = MemoryStorage()
    cache = TransactionCache()
    cache.set(MARCH, [make_txn()])
    _bus(cache, shared_storage=storage, tab_id="b")

    storage.set_item("sync_x_1", "not json")

    assert cache.has(MARCH)


def test_realtime_update_invalidates_and_rebroadcasts() -> None:
    storage = MemoryStorage()
    clock = FakeClock()
    cache = TransactionCache(clock=clock)
    aggregates = TransactionCache()
    for key in (MARCH, "transactions-2024-4", "balance-transactions-all-false"):
        cache.set(key, [make_txn()])
    aggregates.set("starting-balance-1y-false", 3.0)
    other = TransactionCache()
    other.set(MARCH, [make_txn()])
    bus = _bus(
        cache, shared_storage=storage, aggregate_cache=aggregates, tab_id="a", clock=clock
    )
    _bus(other, shared_storage=storage, tab_id="b")

    bus.handle_realtime_update(_event())

    assert cache.keys() == ["transactions-2024-4"]
    assert len(aggregates) == 0
    assert not other.has(MARCH)
    assert bus.last_sync_time == clock.now


def test_delete_without_date_resolves_month_from_cache() -> None:
    cache = TransactionCache()
    cache.set(MARCH, [make_txn("t1")])
    bus = _bus(cache)

    keys = bus.affected_keys(ChangeEvent(event_type="DELETE", old=ChangeRecord(id="t1")))

    assert keys == [
        MARCH,
        "year-transactions-2024",
        "split-transactions-2024",
        "transaction-t1",
    ]


def test_cross_year_update_touches_both_years() -> None:
    bus = _bus()
    event = ChangeEvent(
        event_type="UPDATE",
        new=ChangeRecord(id="t1", date=datetime(2025, 1, 2)),
        old=ChangeRecord(id="t1", date=datetime(2024, 12, 30)),
    )

    keys = bus.apply_change(event)

    assert keys == [
        "transactions-2025-1",
        "year-transactions-2025",
        "split-transactions-2025",
        "transaction-t1",
        "transactions-2024-12",
        "year-transactions-2024",
        "split-transactions-2024",
    ]


def test_reconnect_backs_off_linearly_and_gives_up() -> None:
    delays: list[float] = []

    async def fake_sleep(secs: float) -> None:
        delays.append(secs)

    channel = FlakyChannel(failures=10)
    bus = _bus(channel=channel, sleep=fake_sleep)

    connected = asyncio.run(bus.connect_realtime())

    assert not connected
    assert delays == [1.0, 2.0, 3.0, 4.0, 5.0]
    assert channel.attempts == 6
    assert not bus.realtime_connected


def test_reconnect_succeeds_and_resets_attempts() -> None:
    delays: list[float] = []

    async def fake_sleep(secs: float) -> None:
        delays.append(secs)

    channel = FlakyChannel(failures=2)
    bus = _bus(channel=channel, sleep=fake_sleep)

    assert asyncio.run(bus.connect_realtime())
    assert delays == [1.0, 2.0]
    assert bus.reconnect_attempts == 0
    assert bus.realtime_connected


def test_channel_error_triggers_reconnect() -> None:
    delays: list[float] = []

    async def fake_sleep(secs: float) -> None:
        delays.append(secs)

    channel = FlakyChannel()
    bus = _bus(channel=channel, sleep=fake_sleep)

    async def scenario():
        await bus.connect_realtime()
        channel.on_error("CLOSED")
        assert not bus.realtime_connected
        await bus._reconnect_task

    asyncio.run(scenario())

    assert delays == [1.0]
    assert channel.attempts == 2
    assert bus.realtime_connected


def test_background_sync_is_gated_by_interval_and_connectivity() -> None:
    clock = FakeClock()
    cache = TransactionCache(clock=clock)
    cache.set(MARCH, [make_txn()])
    store = MemoryStore()
    store.updated = [make_txn("t1")]
    bus = _bus(cache, store, clock=clock)

    assert asyncio.run(bus.background_sync()) == 1
    assert not cache.has(MARCH)
    assert bus.last_sync_time == clock.now

    clock.advance(10)
    assert asyncio.run(bus.background_sync()) == 0

    clock.advance(20)
    assert asyncio.run(bus.background_sync()) == 1

    bus.online = False
    clock.advance(60)
    assert asyncio.run(bus.background_sync()) == 0


def test_background_sync_failure_is_logged_not_raised() -> None:
    store = MemoryStore()
    store.fail_queries = True
    bus = _bus(store=store)

    assert asyncio.run(bus.background_sync()) == 0
    assert bus.last_sync_time is None


def test_polling_registers_on_host_and_close_cancels() -> None:
    host = ManualHost()
    channel = FlakyChannel()
    bus = _bus(host=host, channel=channel)

    bus.start_polling()
    assert host.jobs[POLL_JOB_ID][:2] == ("interval", 30.0)

    async def scenario():
        await bus.connect_realtime()
        await bus.close()

    asyncio.run(scenario())

    assert POLL_JOB_ID not in host.jobs
    assert channel.unsubscribed
    assert not bus.realtime_connected
