import asyncio
from datetime import date, datetime

import pytest

from cache import TransactionCache
from fetcher import FetchCoordinator, TransactionLoader
from periods import TimeRange, category_key
from remote import RemoteStoreError

from conftest import MemoryStore, make_txn


def test_concurrent_fetches_share_one_load() -> None:
    cache = TransactionCache()
    calls: list[str] = []
    gate = asyncio.Event()

    async def loader(key: str):
        calls.append(key)
        await gate.wait()
        return [key]

    coordinator = FetchCoordinator(cache, loader)

    async def scenario():
        first = asyncio.ensure_future(coordinator.fetch("transactions-2024-1"))
        second = asyncio.ensure_future(coordinator.fetch("transactions-2024-1"))
        await asyncio.sleep(0)
        assert coordinator.in_flight == ["transactions-2024-1"]
        gate.set()
        return await asyncio.gather(first, second)

    results = asyncio.run(scenario())

    assert calls == ["transactions-2024-1"]
    assert results == [["transactions-2024-1"], ["transactions-2024-1"]]
    assert coordinator.in_flight == []
    assert cache.get("transactions-2024-1") == ["transactions-2024-1"]


def test_cache_hit_skips_loader() -> None:
    cache = TransactionCache()
    cache.set("k", [1])

    async def loader(key: str):
        raise AssertionError("loader should not run")

    assert asyncio.run(FetchCoordinator(cache, loader).fetch("k")) == [1]


def test_failed_load_clears_registry_and_is_not_cached() -> None:
    cache = TransactionCache()

    async def loader(key: str):
        raise RemoteStoreError("down")

    coordinator = FetchCoordinator(cache, loader)
    with pytest.raises(RemoteStoreError):
        asyncio.run(coordinator.fetch("k"))

    assert coordinator.in_flight == []
    assert not cache.has("k")


def _loader(store: MemoryStore) -> TransactionLoader:
    return TransactionLoader(store, "u1", today=lambda: date(2024, 6, 15), batch_size=2)


def test_month_key_loads_single_page_newest_first() -> None:
    store = MemoryStore(
        [
            make_txn("a", date=datetime(2024, 3, 1)),
            make_txn("b", date=datetime(2024, 3, 31, 23, 59)),
            make_txn("c", date=datetime(2024, 4, 1)),
        ]
    )

    rows = asyncio.run(_loader(store).load("transactions-2024-3"))

    assert [r.id for r in rows] == ["b", "a"]
    assert len(store.queries) == 1
    assert store.queries[0].limit == 2


def test_year_key_pages_until_short_page() -> None:
    store = MemoryStore([make_txn(f"t{i}", date=datetime(2024, 1, i + 1)) for i in range(5)])

    rows = asyncio.run(_loader(store).load("year-transactions-2024"))

    assert len(rows) == 5
    assert [q.offset for q in store.queries] == [0, 2, 4]


def test_split_key_loads_only_split_sources() -> None:
    store = MemoryStore(
        [
            make_txn("plain", date=datetime(2024, 2, 1)),
            make_txn("split", date=datetime(2024, 2, 1), split_across_year=True),
            make_txn("old", date=datetime(2023, 2, 1), split_across_year=True),
        ]
    )

    rows = asyncio.run(_loader(store).load("split-transactions-2024"))

    assert [r.id for r in rows] == ["split"]


def test_balance_key_queries_ascending_from_cutoff() -> None:
    store = MemoryStore(
        [
            make_txn("old", date=datetime(2024, 5, 1)),
            make_txn("new", date=datetime(2024, 6, 1)),
            make_txn("newer", date=datetime(2024, 6, 10)),
        ]
    )

    rows = asyncio.run(_loader(store).load("balance-transactions-1m-false"))

    assert [r.id for r in rows] == ["new", "newer"]
    assert store.queries[0].start == datetime(2024, 5, 16)
    assert store.queries[0].ascending


def test_category_key_applies_category_filters() -> None:
    store = MemoryStore(
        [
            make_txn("a", main_category="Home Office", sub_category="Desk"),
            make_txn("b", main_category="Home Office", sub_category="Chair"),
            make_txn("c", main_category="Food"),
        ]
    )

    desk = asyncio.run(_loader(store).load("category-transactions-Home Office-Desk-all"))
    everything = asyncio.run(_loader(store).load("category-transactions-Home Office-all-all"))

    assert [r.id for r in desk] == ["a"]
    assert sorted(r.id for r in everything) == ["a", "b"]


def test_category_key_with_dashed_sub_category_filters_exactly() -> None:
    store = MemoryStore(
        [
            make_txn("a", main_category="Food", sub_category="Fast-Food"),
            make_txn("b", main_category="Food", sub_category="Groceries"),
        ]
    )

    rows = asyncio.run(
        _loader(store).load(category_key("Food", "Fast-Food", TimeRange.all))
    )

    assert [r.id for r in rows] == ["a"]
    assert store.queries[0].main_category == "Food"
    assert store.queries[0].sub_category == "Fast-Food"


def test_unknown_key_is_rejected() -> None:
    with pytest.raises(ValueError):
        asyncio.run(_loader(MemoryStore()).load("nonsense"))
