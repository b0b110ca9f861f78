import asyncio
import logging
from datetime import date, datetime, time
from typing import Any, Awaitable, Callable, Optional

from cache import CacheProvider
from periods import (
    PeriodKey,
    TimeRange,
    local_today,
    month_bounds,
    parse_period_key,
    range_start,
    year_bounds,
)
from remote import PAGE_SIZE, RemoteStore, TransactionQuery, query_all
from schemas import Transaction


logger = logging.getLogger(__name__)

Loader = Callable[[str], Awaitable[Any]]


class FetchCoordinator:
    """Serves keys from the cache and shares one in-flight load per missing key."""

    def __init__(self, cache: CacheProvider, loader: Loader) -> None:
        self.cache = cache
        self.loader = loader
        self._in_flight: dict[str, asyncio.Future] = {}

    @property
    def in_flight(self) -> list[str]:
        return list(self._in_flight)

    async def fetch(self, key: str) -> Any:
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug(f"fetch_cache_hit: key={key}")
            return cached

        task = self._in_flight.get(key)
        if task is not None:
            logger.debug(f"fetch_joined_in_flight: key={key}")
            return await task

        task = asyncio.ensure_future(self.loader(key))
        self._in_flight[key] = task
        try:
            data = await task
            self.cache.set(key, data)
            return data
        finally:
            if self._in_flight.get(key) is task:
                del self._in_flight[key]


class TransactionLoader:
    def __init__(
        self,
        store: RemoteStore,
        user_id: str,
        *,
        today: Callable[[], date] = local_today,
        batch_size: int = PAGE_SIZE,
    ) -> None:
        self.store = store
        self.user_id = user_id
        self._today = today
        self.batch_size = batch_size

    async def __call__(self, key: str) -> list[Transaction]:
        return await self.load(key)

    async def load(self, key: str) -> list[Transaction]:
        period = parse_period_key(key)
        if period.kind == "month":
            return await self._load_month(period)
        if period.kind == "year":
            return await self._load_year(period)
        if period.kind == "split":
            return await self._load_split_sources(period)
        if period.kind == "balance":
            return await self._load_balance_range(period)
        if period.kind == "category":
            return await self._load_category_range(period)
        if period.kind == "single":
            txn = await self.store.get_transaction(period.transaction_id)
            return [txn] if txn is not None else []
        raise ValueError(f"No loader for period key: {key}")

    async def _load_month(self, period: PeriodKey) -> list[Transaction]:
        start, end = month_bounds(period.year, period.month)
        rows = await self.store.query_transactions(
            TransactionQuery(
                user_id=self.user_id, start=start, end=end, limit=self.batch_size
            )
        )
        logger.info(f"month_loaded: key={period.key} rows={len(rows)}")
        return rows

    async def _load_year(self, period: PeriodKey) -> list[Transaction]:
        start, end = year_bounds(period.year)
        rows = await query_all(
            self.store,
            TransactionQuery(user_id=self.user_id, start=start, end=end),
            self.batch_size,
        )
        logger.info(f"year_loaded: key={period.key} rows={len(rows)}")
        return rows

    async def _load_split_sources(self, period: PeriodKey) -> list[Transaction]:
        start, end = year_bounds(period.year)
        return await query_all(
            self.store,
            TransactionQuery(
                user_id=self.user_id, start=start, end=end, split_across_year=True
            ),
            self.batch_size,
        )

    def _range_start(self, time_range: Optional[TimeRange]) -> Optional[datetime]:
        cutoff = range_start(time_range or TimeRange.all, self._today())
        if cutoff is None:
            return None
        return datetime.combine(cutoff, time.min)

    async def _load_balance_range(self, period: PeriodKey) -> list[Transaction]:
        rows = await query_all(
            self.store,
            TransactionQuery(
                user_id=self.user_id,
                start=self._range_start(period.time_range),
                ascending=True,
            ),
            self.batch_size,
        )
        logger.info(f"range_loaded: key={period.key} rows={len(rows)}")
        return rows

    async def _load_category_range(self, period: PeriodKey) -> list[Transaction]:
        rows = await query_all(
            self.store,
            TransactionQuery(
                user_id=self.user_id,
                start=self._range_start(period.time_range),
                main_category=period.category,
                sub_category=period.sub_category,
                ascending=True,
            ),
            self.batch_size,
        )
        logger.info(f"range_loaded: key={period.key} rows={len(rows)}")
        return rows
