import logging
import time
from datetime import date, datetime, timezone
from typing import Any, Awaitable, Callable, Iterable, Optional, Protocol, Union

from cache import CacheBindings, TransactionCache
from fx_rates import ConversionResult
from periods import (
    OVERALL_TOTALS_KEY,
    is_range_key,
    month_key_for,
    single_key,
    split_key,
    year_key,
)
from remote import RemoteStore
from schemas import (
    ChangeEvent,
    ChangeRecord,
    Transaction,
    TransactionIn,
    TransactionPatch,
    naive_local,
)
from splits import is_split_instance_id


logger = logging.getLogger(__name__)

Converter = Callable[[float, str, date], Awaitable[Optional[ConversionResult]]]

_FX_FIELDS = ("amount", "currency", "date")


class ChangeAnnouncer(Protocol):
    def announce_local_change(self, event: ChangeEvent) -> None: ...


def sort_newest_first(rows: Iterable[Transaction]) -> list[Transaction]:
    def sort_key(txn: Transaction) -> tuple[datetime, datetime]:
        return txn.date, txn.created_at or datetime.min

    return sorted(rows, key=sort_key, reverse=True)


class MutationCoordinator:
    def __init__(
        self,
        cache: TransactionCache,
        bindings: CacheBindings,
        store: RemoteStore,
        user_id: str,
        *,
        converter: Optional[Converter] = None,
        aggregate_cache: Optional[TransactionCache] = None,
        announcer: Optional[ChangeAnnouncer] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cache = cache
        self.bindings = bindings
        self.store = store
        self.user_id = user_id
        self.converter = converter
        self.aggregate_cache = aggregate_cache
        self.announcer = announcer
        self._clock = clock
        self._last_temp_millis = 0

    async def add(self, data: Union[TransactionIn, dict[str, Any]]) -> Transaction:
        payload = (
            data.model_dump() if isinstance(data, TransactionIn) else dict(data)
        )
        payload["user_id"] = self.user_id
        payload.update(self._normalize_eur_sync(payload))

        temp_id = self._next_temp_id()
        stamp = datetime.fromtimestamp(self._clock(), timezone.utc).replace(tzinfo=None)
        optimistic = Transaction(
            id=temp_id, created_at=stamp, updated_at=stamp, **payload
        )
        payload["date"] = optimistic.date
        key = month_key_for(optimistic.date)
        self._upsert(key, optimistic)

        try:
            if payload.get("eur_amount") is None:
                payload.update(await self._convert(payload))
            confirmed = await self.store.insert_transaction(payload)
        except Exception as exc:
            self._remove(key, temp_id)
            logger.warning(f"add_rolled_back: temp_id={temp_id} error={exc}")
            raise

        self._swap(key, temp_id, confirmed)
        self._after_commit(
            {confirmed.date.year},
            ChangeEvent(
                event_type="INSERT",
                new=ChangeRecord(id=confirmed.id, date=confirmed.date),
            ),
        )
        logger.info(f"transaction_added: id={confirmed.id} key={key}")
        return confirmed

    async def update(
        self,
        transaction_id: str,
        changes: Union[TransactionPatch, dict[str, Any]],
        previous: Optional[Transaction] = None,
    ) -> Transaction:
        if is_split_instance_id(transaction_id):
            raise ValueError("Split instalments are read-only")
        updates = (
            changes.model_dump(exclude_unset=True)
            if isinstance(changes, TransactionPatch)
            else dict(changes)
        )
        if updates.get("date") is not None:
            updates["date"] = naive_local(updates["date"])
        if previous is None:
            found = self.cache.find(transaction_id)
            if found is None:
                raise ValueError("Transaction not found")
            previous = found[1]

        merged = previous.model_copy(update=updates)
        needs_fx = any(
            name in updates and updates[name] != getattr(previous, name)
            for name in _FX_FIELDS
        )
        if needs_fx:
            fx = self._normalize_eur_sync(merged.model_dump())
            updates.update(fx)
            merged = merged.model_copy(update=fx)

        old_key = month_key_for(previous.date)
        new_key = month_key_for(merged.date)
        if old_key != new_key:
            self._remove(old_key, transaction_id)
        self._upsert(new_key, merged)
        self._replace_single(merged)

        try:
            if needs_fx and merged.currency != "EUR":
                updates.update(await self._convert(merged.model_dump()))
            confirmed = await self.store.update_transaction(transaction_id, updates)
        except Exception as exc:
            self._revert_update(old_key, new_key, previous)
            logger.warning(f"update_rolled_back: id={transaction_id} error={exc}")
            raise

        self._upsert(new_key, confirmed)
        self._replace_single(confirmed)
        self._after_commit(
            {previous.date.year, confirmed.date.year},
            ChangeEvent(
                event_type="UPDATE",
                new=ChangeRecord(id=confirmed.id, date=confirmed.date),
                old=ChangeRecord(id=previous.id, date=previous.date),
            ),
        )
        logger.info(
            f"transaction_updated: id={transaction_id} from={old_key} to={new_key}"
        )
        return confirmed

    async def delete(self, transaction: Union[Transaction, str]) -> None:
        if isinstance(transaction, str):
            if is_split_instance_id(transaction):
                raise ValueError("Split instalments are read-only")
            found = self.cache.find(transaction)
            if found is None:
                raise ValueError("Transaction not found")
            transaction = found[1]
        if is_split_instance_id(transaction.id) or transaction.split_is_read_only:
            raise ValueError("Split instalments are read-only")

        key = month_key_for(transaction.date)
        single = single_key(transaction.id)
        self._remove(key, transaction.id)
        had_single = self.cache.has(single)
        if had_single:
            self.cache.delete(single)
            self.bindings.notify(single)

        try:
            await self.store.delete_transaction(transaction.id)
        except Exception as exc:
            self._upsert(key, transaction)
            if had_single and not self.cache.has(single):
                self.cache.set(single, [transaction])
                self.bindings.notify(single)
            logger.warning(f"delete_rolled_back: id={transaction.id} error={exc}")
            raise

        self._after_commit(
            {transaction.date.year},
            ChangeEvent(
                event_type="DELETE",
                old=ChangeRecord(id=transaction.id, date=transaction.date),
            ),
        )
        logger.info(f"transaction_deleted: id={transaction.id} key={key}")

    def _normalize_eur_sync(self, payload: dict[str, Any]) -> dict[str, Any]:
        if (payload.get("currency") or "EUR").upper() != "EUR":
            return {"eur_amount": None, "exchange_rate": None, "rate_date": None}
        when = payload["date"]
        return {
            "eur_amount": payload["amount"],
            "exchange_rate": 1.0,
            "rate_date": when.date() if isinstance(when, datetime) else when,
        }

    async def _convert(self, payload: dict[str, Any]) -> dict[str, Any]:
        if self.converter is None:
            return {}
        when = payload["date"]
        on_date = when.date() if isinstance(when, datetime) else when
        try:
            result = await self.converter(payload["amount"], payload["currency"], on_date)
        except Exception as exc:
            logger.warning(
                f"eur_conversion_failed: currency={payload['currency']} date={on_date} error={exc}"
            )
            return {}
        if result is None:
            logger.info(
                f"eur_conversion_pending: currency={payload['currency']} date={on_date}"
            )
            return {}
        return {
            "eur_amount": result.eur_amount,
            "exchange_rate": result.exchange_rate,
            "rate_date": result.rate_date,
        }

    def _next_temp_id(self) -> str:
        millis = max(int(self._clock() * 1000), self._last_temp_millis + 1)
        self._last_temp_millis = millis
        return f"temp-{millis}"

    def _revert_update(self, old_key: str, new_key: str, previous: Transaction) -> None:
        # Only this row is put back; rows written by other mutations stay.
        if old_key != new_key:
            self._remove(new_key, previous.id)
        self._upsert(old_key, previous)
        self._replace_single(previous)

    def _write(self, key: str, rows: list[Transaction]) -> None:
        if self.cache.replace(key, rows):
            self.bindings.notify(key)

    def _upsert(self, key: str, txn: Transaction) -> None:
        rows = self.cache.peek(key)
        if rows is None:
            return
        self._write(key, sort_newest_first([*(r for r in rows if r.id != txn.id), txn]))

    def _swap(self, key: str, old_id: str, txn: Transaction) -> None:
        rows = self.cache.peek(key)
        if rows is None:
            return
        kept = [r for r in rows if r.id not in (old_id, txn.id)]
        self._write(key, sort_newest_first([*kept, txn]))

    def _remove(self, key: str, transaction_id: str) -> None:
        rows = self.cache.peek(key)
        if rows is None:
            return
        self._write(key, [r for r in rows if r.id != transaction_id])

    def _replace_single(self, txn: Transaction) -> None:
        key = single_key(txn.id)
        if self.cache.peek(key) is not None:
            self._write(key, [txn])

    def _after_commit(self, years: set[int], event: ChangeEvent) -> None:
        for year in sorted(years):
            self.bindings.invalidate(year_key(year))
            self.bindings.invalidate(split_key(year))
        for key in self.cache.invalidate_matching(is_range_key):
            self.bindings.notify(key)
        if self.aggregate_cache is not None:
            self.aggregate_cache.clear()
        self.bindings.revalidate(OVERALL_TOTALS_KEY)
        if self.announcer is not None:
            self.announcer.announce_local_change(event)
