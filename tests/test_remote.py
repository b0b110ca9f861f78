import asyncio
from datetime import date, datetime
from typing import Any

import pytest

from models import TransactionType
from remote import (
    RemoteStoreError,
    TransactionQuery,
    fetch_all_batches,
    insert_in_batches,
    query_all,
)


def _payload(**overrides: Any) -> dict[str, Any]:
    values: dict[str, Any] = {
        "user_id": "u1",
        "amount": 10.0,
        "currency": "EUR",
        "eur_amount": 10.0,
        "exchange_rate": 1.0,
        "type": TransactionType.expense,
        "main_category": "Food",
        "sub_category": "Groceries",
        "title": "Market",
        "date": datetime(2024, 3, 15, 12, 0),
    }
    values.update(overrides)
    return values


def test_insert_returns_confirmed_row_and_publishes(sql_store, change_feed) -> None:
    events = []

    async def scenario():
        await change_feed.subscribe(events.append, lambda reason: None)
        return await sql_store.insert_transaction(_payload(id="ignored", bogus=1))

    txn = asyncio.run(scenario())

    assert txn.id != "ignored"
    assert txn.created_at is not None
    assert [e.event_type for e in events] == ["INSERT"]
    assert events[0].new.id == txn.id


def test_query_filters_and_orders_newest_first(sql_store) -> None:
    async def scenario():
        await sql_store.insert_transaction(_payload(date=datetime(2024, 3, 1)))
        await sql_store.insert_transaction(_payload(date=datetime(2024, 3, 20)))
        await sql_store.insert_transaction(_payload(date=datetime(2024, 4, 2)))
        await sql_store.insert_transaction(
            _payload(date=datetime(2024, 3, 5), split_across_year=True, main_category="Rent")
        )
        await sql_store.insert_transaction(_payload(user_id="other", date=datetime(2024, 3, 6)))
        march = await sql_store.query_transactions(
            TransactionQuery(
                user_id="u1",
                start=datetime(2024, 3, 1),
                end=datetime(2024, 3, 31, 23, 59),
            )
        )
        splits = await sql_store.query_transactions(
            TransactionQuery(user_id="u1", split_across_year=True)
        )
        rent = await sql_store.query_transactions(
            TransactionQuery(user_id="u1", main_category="Rent", ascending=True)
        )
        return march, splits, rent

    march, splits, rent = asyncio.run(scenario())

    assert [t.date.day for t in march] == [20, 5, 1]
    assert len(splits) == 1 and splits[0].split_across_year
    assert [t.main_category for t in rent] == ["Rent"]


def test_update_and_delete_emit_old_and_new(sql_store, change_feed) -> None:
    events = []

    async def scenario():
        await change_feed.subscribe(events.append, lambda reason: None)
        txn = await sql_store.insert_transaction(_payload())
        updated = await sql_store.update_transaction(
            txn.id, {"date": datetime(2024, 5, 1), "title": "Moved"}
        )
        await sql_store.delete_transaction(txn.id)
        return txn, updated

    txn, updated = asyncio.run(scenario())

    assert updated.title == "Moved"
    assert [e.event_type for e in events] == ["INSERT", "UPDATE", "DELETE"]
    assert events[1].old.date == datetime(2024, 3, 15, 12, 0)
    assert events[1].new.date == datetime(2024, 5, 1)
    assert events[2].old.id == txn.id


def test_missing_rows_raise_store_error(sql_store) -> None:
    with pytest.raises(RemoteStoreError):
        asyncio.run(sql_store.update_transaction("nope", {"title": "x"}))
    with pytest.raises(RemoteStoreError):
        asyncio.run(sql_store.delete_transaction("nope"))
    assert asyncio.run(sql_store.get_transaction("nope")) is None


def test_balance_before_date_and_totals(sql_store) -> None:
    async def scenario():
        await sql_store.insert_transaction(
            _payload(type=TransactionType.income, amount=500.0, eur_amount=500.0, date=datetime(2024, 1, 1))
        )
        await sql_store.insert_transaction(_payload(amount=120.5, eur_amount=120.5, date=datetime(2024, 1, 15)))
        await sql_store.insert_transaction(
            _payload(amount=70.0, eur_amount=70.0, date=datetime(2024, 1, 20), hide_from_totals=True)
        )
        await sql_store.insert_transaction(
            _payload(amount=1.0, currency="USD", eur_amount=None, date=datetime(2024, 1, 21))
        )
        await sql_store.insert_transaction(_payload(amount=9.0, eur_amount=9.0, date=datetime(2024, 2, 1)))
        visible = await sql_store.balance_before_date("u1", date(2024, 2, 1), False)
        hidden = await sql_store.balance_before_date("u1", date(2024, 2, 1), True)
        totals = await sql_store.overall_totals("u1")
        return visible, hidden, totals

    visible, hidden, totals = asyncio.run(scenario())

    assert visible == 379.5
    assert hidden == 309.5
    assert totals.income == 500.0
    assert totals.expenses == 129.5
    assert totals.balance == 370.5
    assert totals.transaction_count == 3


def test_updated_since_returns_recent_rows(sql_store) -> None:
    async def scenario():
        await sql_store.insert_transaction(_payload())
        return await sql_store.updated_since("u1", datetime(2000, 1, 1))

    assert len(asyncio.run(scenario())) == 1


def test_fetch_all_batches_stops_on_short_page() -> None:
    calls: list[tuple[int, int]] = []

    async def page(offset: int, limit: int) -> list[int]:
        calls.append((offset, limit))
        return list(range(offset, min(offset + limit, 25)))

    rows = asyncio.run(fetch_all_batches(page, batch_size=10))

    assert rows == list(range(25))
    assert calls == [(0, 10), (10, 10), (20, 10)]


def test_query_all_pages_through_store(sql_store) -> None:
    async def scenario():
        for day in range(1, 8):
            await sql_store.insert_transaction(_payload(date=datetime(2024, 3, day)))
        return await query_all(sql_store, TransactionQuery(user_id="u1", ascending=True), batch_size=3)

    rows = asyncio.run(scenario())

    assert [t.date.day for t in rows] == [1, 2, 3, 4, 5, 6, 7]


class FlakyStore:
    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.batches: list[int] = []

    async def insert_many(self, rows):
        if self.failures:
            self.failures -= 1
            raise RemoteStoreError("503 Service Unavailable")
        self.batches.append(len(rows))
        return len(rows)


def test_insert_in_batches_retries_with_backoff() -> None:
    store = FlakyStore(failures=2)
    delays: list[float] = []

    async def fake_sleep(secs: float) -> None:
        delays.append(secs)

    result = asyncio.run(
        insert_in_batches(store, [_payload() for _ in range(250)], sleep=fake_sleep)
    )

    assert result.success
    assert result.imported == 250
    assert store.batches == [100, 100, 50]
    assert delays == [1.0, 2.0]


def test_insert_in_batches_reports_exhausted_batches() -> None:
    store = FlakyStore(failures=4)
    delays: list[float] = []

    async def fake_sleep(secs: float) -> None:
        delays.append(secs)

    result = asyncio.run(
        insert_in_batches(store, [_payload() for _ in range(150)], sleep=fake_sleep)
    )

    assert delays == [1.0, 2.0, 4.0]
    assert result.skipped == 100
    assert result.imported == 50
    assert result.errors == ["Batch 1: 503 Service Unavailable (failed after 3 retries)"]


def test_insert_in_batches_rejects_empty_input() -> None:
    result = asyncio.run(insert_in_batches(FlakyStore(0), []))

    assert not result.success
    assert result.errors == ["No valid transactions to import"]
