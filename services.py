from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import date, datetime, time as dt_time
from typing import Any, Callable, Optional, Sequence, Union

from aggregation import (
    BalanceStats,
    CategoryStats,
    CategoryTotal,
    calculate_balance_history,
    calculate_category_history,
    category_breakdown,
)
from cache import CacheBindings, TransactionCache
from config import Settings, get_settings
from fetcher import FetchCoordinator, TransactionLoader
from fx_rates import FxRateService
from models import TransactionType
from mutations import MutationCoordinator, sort_newest_first
from periods import (
    OVERALL_TOTALS_KEY,
    TimeRange,
    balance_key,
    category_key,
    local_today,
    month_key,
    parse_period_key,
    range_start,
    single_key,
    split_key,
    starting_balance_key,
    year_key,
)
from persistence import (
    PERSISTED_PREFIXES,
    DurableCacheStore,
    FileStorage,
    KeyValueStorage,
    MemoryStorage,
)
from remote import ImportResult, RealtimeChannel, RemoteStore, insert_in_batches
from scheduler import ApschedulerHost, PersistenceScheduler, SchedulerHost
from schemas import (
    OverallTotals,
    Transaction,
    TransactionIn,
    TransactionPatch,
    naive_local,
)
from splits import (
    display_eur_amount,
    expand_for_month,
    expand_for_year,
    expand_range,
    expected_split_amount_eur,
    is_split_instance_id,
)
from sync import ReconciliationBus


logger = logging.getLogger(__name__)

AGGREGATE_CAPACITY = 32
AGGREGATE_TTL_SECS = 60.0


@dataclass
class MonthSummary:
    year: int
    month: int
    income: float
    expenses: float
    balance: float
    transaction_count: int
    expected_split_eur: float


class TransactionEngine:
    """Owns every cache, coordinator and timer for one user session."""

    def __init__(
        self,
        store: RemoteStore,
        *,
        settings: Optional[Settings] = None,
        user_id: Optional[str] = None,
        storage: Optional[KeyValueStorage] = None,
        shared_storage: Optional[MemoryStorage] = None,
        host: Optional[SchedulerHost] = None,
        channel: Optional[RealtimeChannel] = None,
        fx: Optional[FxRateService] = None,
        clock: Callable[[], float] = time.time,
        today: Callable[[], date] = local_today,
    ) -> None:
        self.settings = settings or get_settings()
        self.store = store
        self.user_id = user_id or self.settings.user_id
        self.fx = fx
        self._clock = clock
        self._today = today

        self.cache = TransactionCache(
            self.settings.cache_capacity, self.settings.cache_ttl_secs, clock=clock
        )
        self.aggregate_cache = TransactionCache(
            AGGREGATE_CAPACITY, AGGREGATE_TTL_SECS, clock=clock
        )
        self.bindings = CacheBindings(self.cache)
        self.loader = TransactionLoader(store, self.user_id, today=today)
        self.fetcher = FetchCoordinator(self.bindings, self.loader)
        self.aggregate_fetcher = FetchCoordinator(
            self.aggregate_cache, self._load_aggregate
        )

        self._owns_host = host is None
        self.host = host or ApschedulerHost()
        self.durable_store = DurableCacheStore(
            storage or FileStorage(self.settings.data_dir / "cache"), clock=clock
        )
        self.persistence = PersistenceScheduler(
            self.cache,
            self.durable_store,
            self.host,
            debounce_secs=self.settings.save_debounce_secs,
            periodic_secs=self.settings.periodic_save_secs,
        )
        self.bus = ReconciliationBus(
            self.bindings,
            self.cache,
            store,
            self.user_id,
            aggregate_cache=self.aggregate_cache,
            shared_storage=shared_storage,
            host=self.host,
            channel=channel,
            clock=clock,
            sync_interval_secs=self.settings.sync_interval_secs,
        )
        self.mutations = MutationCoordinator(
            self.cache,
            self.bindings,
            store,
            self.user_id,
            converter=fx.convert_to_eur if fx is not None else None,
            aggregate_cache=self.aggregate_cache,
            announcer=self.bus,
            clock=clock,
        )
        self.bindings.subscribe_all(self._on_cache_change)

    async def start(self) -> None:
        restored = self.durable_store.load() or {}
        for key, (rows, timestamp) in restored.items():
            self.cache.restore(key, rows, timestamp)
        if self._owns_host and isinstance(self.host, ApschedulerHost):
            self.host.start()
        self.persistence.start()
        self.bus.start_polling()
        await self.bus.connect_realtime()
        logger.info(f"engine_started: user={self.user_id} restored={len(restored)}")

    async def shutdown(self) -> None:
        await self.bus.close()
        self.persistence.shutdown()
        if self._owns_host and isinstance(self.host, ApschedulerHost):
            self.host.stop()
        logger.info(f"engine_stopped: user={self.user_id}")

    def _on_cache_change(self, key: str) -> None:
        if key.startswith(PERSISTED_PREFIXES):
            self.persistence.request_save()

    async def _load_aggregate(self, key: str) -> Any:
        if key == OVERALL_TOTALS_KEY:
            return await self.store.overall_totals(self.user_id)
        period = parse_period_key(key)
        if period.kind != "starting-balance":
            raise ValueError(f"Not an aggregate key: {key}")
        cutoff = range_start(period.time_range, self._today())
        if cutoff is None:
            return 0.0
        return await self.store.balance_before_date(
            self.user_id, cutoff, period.include_hidden
        )

    def _now(self, now: Optional[datetime] = None) -> datetime:
        if now is not None:
            return naive_local(now)
        return datetime.fromtimestamp(self._clock())

    # Views

    async def month_transactions(
        self, year: int, month: int, now: Optional[datetime] = None
    ) -> list[Transaction]:
        rows, sources = await asyncio.gather(
            self.fetcher.fetch(month_key(year, month)),
            self.fetcher.fetch(split_key(year)),
        )
        expanded = expand_for_month(rows, sources, year, month, self._now(now))
        return sort_newest_first(expanded)

    async def year_transactions(
        self, year: int, now: Optional[datetime] = None
    ) -> list[Transaction]:
        rows = await self.fetcher.fetch(year_key(year))
        return sort_newest_first(expand_for_year(rows, year, self._now(now)))

    async def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        found = self.cache.find(transaction_id)
        if found is not None:
            return found[1]
        rows = await self.fetcher.fetch(single_key(transaction_id))
        return rows[0] if rows else None

    async def month_summary(
        self, year: int, month: int, now: Optional[datetime] = None
    ) -> MonthSummary:
        rows = await self.month_transactions(year, month, now)
        sources = await self.fetcher.fetch(split_key(year))
        income = expenses = 0.0
        count = 0
        for txn in rows:
            eur = display_eur_amount(txn)
            if txn.hide_from_totals or eur is None:
                continue
            count += 1
            if txn.type == TransactionType.income:
                income += abs(eur)
            else:
                expenses += abs(eur)
        return MonthSummary(
            year=year,
            month=month,
            income=round(income, 2),
            expenses=round(expenses, 2),
            balance=round(income - expenses, 2),
            transaction_count=count,
            expected_split_eur=round(expected_split_amount_eur(sources, rows), 2),
        )

    async def starting_balance(
        self, time_range: Union[TimeRange, str], include_hidden: bool = False
    ) -> float:
        return await self.aggregate_fetcher.fetch(
            starting_balance_key(TimeRange(time_range), include_hidden)
        )

    def _within_range(
        self, rows: Sequence[Transaction], time_range: TimeRange, now: datetime
    ) -> list[Transaction]:
        cutoff = range_start(time_range, self._today())
        lower = datetime.combine(cutoff, dt_time.min) if cutoff else None
        return [
            t
            for t in rows
            if (lower is None or t.date >= lower) and t.date <= now
        ]

    async def balance_history(
        self,
        time_range: Union[TimeRange, str],
        include_hidden: bool = False,
        now: Optional[datetime] = None,
    ) -> BalanceStats:
        time_range = TimeRange(time_range)
        now = self._now(now)
        rows, start = await asyncio.gather(
            self.fetcher.fetch(balance_key(time_range, include_hidden)),
            self.starting_balance(time_range, include_hidden),
        )
        stream = self._within_range(expand_range(rows, now), time_range, now)
        return calculate_balance_history(stream, time_range, start, include_hidden)

    async def category_history(
        self,
        time_range: Union[TimeRange, str],
        category: str,
        sub_category: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> CategoryStats:
        time_range = TimeRange(time_range)
        now = self._now(now)
        rows = await self.fetcher.fetch(category_key(category, sub_category, time_range))
        stream = self._within_range(expand_range(rows, now), time_range, now)
        return calculate_category_history(stream, time_range, self._today())

    async def month_breakdown(
        self, year: int, month: int, now: Optional[datetime] = None
    ) -> list[CategoryTotal]:
        return category_breakdown(await self.month_transactions(year, month, now))

    async def overall_totals(self) -> OverallTotals:
        return await self.aggregate_fetcher.fetch(OVERALL_TOTALS_KEY)

    # Mutations

    async def add_transaction(self, data: TransactionIn) -> Transaction:
        return await self.mutations.add(data)

    async def update_transaction(
        self, transaction_id: str, changes: TransactionPatch
    ) -> Transaction:
        if is_split_instance_id(transaction_id):
            raise ValueError("Split instalments are read-only")
        previous = await self.get_transaction(transaction_id)
        if previous is None:
            raise ValueError("Transaction not found")
        return await self.mutations.update(transaction_id, changes, previous)

    async def delete_transaction(self, transaction_id: str) -> None:
        if is_split_instance_id(transaction_id):
            raise ValueError("Split instalments are read-only")
        previous = await self.get_transaction(transaction_id)
        if previous is None:
            raise ValueError("Transaction not found")
        await self.mutations.delete(previous)

    async def import_transactions(self, items: Sequence[TransactionIn]) -> ImportResult:
        rows = [dict(item.model_dump(), user_id=self.user_id) for item in items]
        if self.fx is not None:
            conversions = await self.fx.batch_convert_to_eur(
                [(r["amount"], r["currency"], r["date"].date()) for r in rows]
            )
            for row, result in zip(rows, conversions):
                if result is not None:
                    row.update(
                        eur_amount=result.eur_amount,
                        exchange_rate=result.exchange_rate,
                        rate_date=result.rate_date,
                    )
        else:
            for row in rows:
                if row["currency"].upper() == "EUR":
                    row.update(
                        eur_amount=row["amount"],
                        exchange_rate=1.0,
                        rate_date=row["date"].date(),
                    )
        result = await insert_in_batches(self.store, rows)
        if result.imported:
            self.cache.clear()
            self.aggregate_cache.clear()
            self.bindings.revalidate(OVERALL_TOTALS_KEY)
            self.persistence.request_save()
        return result

    def cache_status(self) -> dict[str, object]:
        return {
            "memory": self.cache.status(),
            "durable": self.durable_store.info(),
            "pending_save": self.persistence.pending,
            "online": self.bus.online,
            "realtime_connected": self.bus.realtime_connected,
        }
