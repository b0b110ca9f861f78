import os
import tempfile
from datetime import date, datetime
from typing import Any, Callable, Optional

os.environ.setdefault("LEDGER_DATA_DIR", tempfile.mkdtemp(prefix="ledger-tests-"))

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from database import Base, build_session_factory
from models import TransactionType
from remote import (
    InProcessChangeFeed,
    RemoteStoreError,
    SqlTransactionStore,
    TransactionQuery,
)
from schemas import OverallTotals, Transaction


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, secs: float) -> None:
        self.now += secs


class ManualHost:
    def __init__(self) -> None:
        self.jobs: dict[str, tuple[str, float, Callable[[], Any]]] = {}
        self.cancelled: list[str] = []

    def schedule_once(self, job_id: str, delay_secs: float, func: Callable[[], Any]) -> None:
        self.jobs[job_id] = ("once", delay_secs, func)

    def schedule_interval(
        self, job_id: str, interval_secs: float, func: Callable[[], Any]
    ) -> None:
        self.jobs[job_id] = ("interval", interval_secs, func)

    def cancel(self, job_id: str) -> None:
        self.cancelled.append(job_id)
        self.jobs.pop(job_id, None)

    def fire(self, job_id: str) -> Any:
        kind, _, func = self.jobs[job_id]
        if kind == "once":
            del self.jobs[job_id]
        return func()


def make_txn(txn_id: str = "t1", **overrides: Any) -> Transaction:
    values: dict[str, Any] = {
        "id": txn_id,
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
        "created_at": datetime(2024, 3, 15, 12, 0),
    }
    values.update(overrides)
    return Transaction(**values)


class MemoryStore:
    """In-memory stand-in for the remote store with failure injection."""

    def __init__(self, rows: Optional[list[Transaction]] = None) -> None:
        self.rows: dict[str, Transaction] = {r.id: r for r in rows or []}
        self.queries: list[TransactionQuery] = []
        self.fail_writes = False
        self.fail_queries = False
        self.balance = 0.0
        self.balance_calls: list[tuple[str, date, bool]] = []
        self.updated: list[Transaction] = []
        self._next_id = 1

    async def query_transactions(self, query: TransactionQuery) -> list[Transaction]:
        self.queries.append(query)
        if self.fail_queries:
            raise RemoteStoreError("query failed")
        rows = [r for r in self.rows.values() if r.user_id == query.user_id]
        if query.start is not None:
            rows = [r for r in rows if r.date >= query.start]
        if query.end is not None:
            rows = [r for r in rows if r.date <= query.end]
        if query.main_category is not None:
            rows = [r for r in rows if r.main_category == query.main_category]
        if query.sub_category is not None:
            rows = [r for r in rows if r.sub_category == query.sub_category]
        if query.split_across_year is not None:
            rows = [r for r in rows if r.split_across_year == query.split_across_year]
        rows.sort(key=lambda r: r.date, reverse=not query.ascending)
        return rows[query.offset : query.offset + query.limit]

    async def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        return self.rows.get(transaction_id)

    async def balance_before_date(
        self, user_id: str, on_date: date, include_hidden: bool
    ) -> float:
        self.balance_calls.append((user_id, on_date, include_hidden))
        return self.balance

    async def insert_transaction(self, payload: dict[str, Any]) -> Transaction:
        if self.fail_writes:
            raise RemoteStoreError("insert failed")
        txn = Transaction(
            id=f"srv-{self._next_id}",
            created_at=datetime(2024, 1, 1),
            **{k: v for k, v in payload.items() if k != "id"},
        )
        self._next_id += 1
        self.rows[txn.id] = txn
        return txn

    async def insert_many(self, rows: list[dict[str, Any]]) -> int:
        for row in rows:
            await self.insert_transaction(row)
        return len(rows)

    async def update_transaction(
        self, transaction_id: str, changes: dict[str, Any]
    ) -> Transaction:
        if self.fail_writes:
            raise RemoteStoreError("update failed")
        current = self.rows.get(transaction_id)
        if current is None:
            raise RemoteStoreError("Transaction not found")
        txn = current.model_copy(update=changes)
        self.rows[transaction_id] = txn
        return txn

    async def delete_transaction(self, transaction_id: str) -> None:
        if self.fail_writes:
            raise RemoteStoreError("delete failed")
        self.rows.pop(transaction_id, None)

    async def updated_since(self, user_id: str, since: datetime) -> list[Transaction]:
        if self.fail_queries:
            raise RemoteStoreError("poll failed")
        return list(self.updated)

    async def overall_totals(self, user_id: str) -> OverallTotals:
        return OverallTotals(
            income=0.0, expenses=0.0, balance=0.0, transaction_count=len(self.rows),
            as_of=date(2024, 1, 1),
        )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def host() -> ManualHost:
    return ManualHost()


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return build_session_factory(engine)


@pytest.fixture
def change_feed() -> InProcessChangeFeed:
    return InProcessChangeFeed()


@pytest.fixture
def sql_store(session_factory, change_feed) -> SqlTransactionStore:
    return SqlTransactionStore(session_factory, change_feed=change_feed)
