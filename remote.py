import asyncio
import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import date, datetime, time
from typing import Any, Awaitable, Callable, Optional, Protocol

from sqlalchemy import case, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from database import session_scope
from models import TransactionRecord, TransactionType
from periods import local_today
from schemas import ChangeEvent, ChangeRecord, OverallTotals, Transaction


logger = logging.getLogger(__name__)

PAGE_SIZE = 1000
IMPORT_BATCH_SIZE = 100
IMPORT_MAX_RETRIES = 3

_WRITABLE_FIELDS = {
    "user_id",
    "amount",
    "currency",
    "eur_amount",
    "exchange_rate",
    "rate_date",
    "type",
    "main_category",
    "sub_category",
    "title",
    "date",
    "is_money_transfer",
    "hide_from_totals",
    "split_across_year",
}


class RemoteStoreError(RuntimeError):
    pass


@dataclass(frozen=True)
class TransactionQuery:
    user_id: str
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    main_category: Optional[str] = None
    sub_category: Optional[str] = None
    split_across_year: Optional[bool] = None
    ascending: bool = False
    offset: int = 0
    limit: int = PAGE_SIZE


@dataclass
class ImportResult:
    success: bool = False
    imported: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)


class RemoteStore(Protocol):
    async def query_transactions(self, query: TransactionQuery) -> list[Transaction]: ...

    async def get_transaction(self, transaction_id: str) -> Optional[Transaction]: ...

    async def balance_before_date(
        self, user_id: str, on_date: date, include_hidden: bool
    ) -> float: ...

    async def insert_transaction(self, payload: dict[str, Any]) -> Transaction: ...

    async def insert_many(self, rows: list[dict[str, Any]]) -> int: ...

    async def update_transaction(
        self, transaction_id: str, changes: dict[str, Any]
    ) -> Transaction: ...

    async def delete_transaction(self, transaction_id: str) -> None: ...

    async def updated_since(
        self, user_id: str, since: datetime
    ) -> list[Transaction]: ...

    async def overall_totals(self, user_id: str) -> OverallTotals: ...


ChangeListener = Callable[[ChangeEvent], None]
StatusListener = Callable[[str], None]


class RealtimeChannel(Protocol):
    async def subscribe(
        self, on_change: ChangeListener, on_error: StatusListener
    ) -> None: ...

    async def unsubscribe(self) -> None: ...


class InProcessChangeFeed:
    """Pushes row-level change notifications to subscribers in this process."""

    def __init__(self) -> None:
        self._subscribers: list[tuple[ChangeListener, StatusListener]] = []

    async def subscribe(
        self, on_change: ChangeListener, on_error: StatusListener
    ) -> None:
        self._subscribers.append((on_change, on_error))

    async def unsubscribe(self) -> None:
        self._subscribers.clear()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, event: ChangeEvent) -> None:
        for on_change, _ in list(self._subscribers):
            on_change(event)

    def fail(self, reason: str) -> None:
        subscribers, self._subscribers = self._subscribers, []
        for _, on_error in subscribers:
            on_error(reason)


def _to_change_record(txn: Transaction) -> ChangeRecord:
    return ChangeRecord(id=txn.id, date=txn.date)


class SqlTransactionStore:
    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        change_feed: Optional[InProcessChangeFeed] = None,
    ) -> None:
        self.session_factory = session_factory
        self.change_feed = change_feed

    def _publish(self, event: ChangeEvent) -> None:
        if self.change_feed is not None:
            self.change_feed.publish(event)

    async def query_transactions(self, query: TransactionQuery) -> list[Transaction]:
        stmt = select(TransactionRecord).where(
            TransactionRecord.user_id == query.user_id
        )
        if query.start is not None:
            stmt = stmt.where(TransactionRecord.date >= query.start)
        if query.end is not None:
            stmt = stmt.where(TransactionRecord.date <= query.end)
        if query.main_category is not None:
            stmt = stmt.where(TransactionRecord.main_category == query.main_category)
        if query.sub_category is not None:
            stmt = stmt.where(TransactionRecord.sub_category == query.sub_category)
        if query.split_across_year is not None:
            stmt = stmt.where(
                TransactionRecord.split_across_year.is_(query.split_across_year)
            )
        if query.ascending:
            stmt = stmt.order_by(
                TransactionRecord.date.asc(), TransactionRecord.created_at.asc()
            )
        else:
            stmt = stmt.order_by(
                TransactionRecord.date.desc(), TransactionRecord.created_at.desc()
            )
        stmt = stmt.offset(query.offset).limit(query.limit)
        try:
            with session_scope(self.session_factory) as session:
                rows = session.scalars(stmt).all()
                return [Transaction.model_validate(row) for row in rows]
        except SQLAlchemyError as exc:
            raise RemoteStoreError(f"Transaction query failed: {exc}") from exc

    async def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        try:
            with session_scope(self.session_factory) as session:
                record = session.get(TransactionRecord, transaction_id)
                return Transaction.model_validate(record) if record else None
        except SQLAlchemyError as exc:
            raise RemoteStoreError(f"Transaction lookup failed: {exc}") from exc

    async def balance_before_date(
        self, user_id: str, on_date: date, include_hidden: bool
    ) -> float:
        signed = case(
            (
                TransactionRecord.type == TransactionType.income,
                TransactionRecord.eur_amount,
            ),
            else_=-TransactionRecord.eur_amount,
        )
        stmt = select(func.coalesce(func.sum(signed), 0)).where(
            TransactionRecord.user_id == user_id,
            TransactionRecord.date < datetime.combine(on_date, time.min),
            TransactionRecord.eur_amount.isnot(None),
        )
        if not include_hidden:
            stmt = stmt.where(TransactionRecord.hide_from_totals.is_(False))
        try:
            with session_scope(self.session_factory) as session:
                value = session.execute(stmt).scalar_one()
        except SQLAlchemyError as exc:
            raise RemoteStoreError(f"Balance lookup failed: {exc}") from exc
        return round(float(value or 0), 2)

    async def insert_transaction(self, payload: dict[str, Any]) -> Transaction:
        values = {k: v for k, v in payload.items() if k in _WRITABLE_FIELDS}
        record = TransactionRecord(id=str(uuid.uuid4()), **values)
        try:
            with session_scope(self.session_factory) as session:
                session.add(record)
                session.flush()
                confirmed = Transaction.model_validate(record)
        except SQLAlchemyError as exc:
            raise RemoteStoreError(f"Transaction insert failed: {exc}") from exc
        self._publish(
            ChangeEvent(event_type="INSERT", new=_to_change_record(confirmed))
        )
        return confirmed

    async def insert_many(self, rows: list[dict[str, Any]]) -> int:
        records = [
            TransactionRecord(
                id=str(uuid.uuid4()),
                **{k: v for k, v in row.items() if k in _WRITABLE_FIELDS},
            )
            for row in rows
        ]
        try:
            with session_scope(self.session_factory) as session:
                session.add_all(records)
        except SQLAlchemyError as exc:
            raise RemoteStoreError(f"Batch insert failed: {exc}") from exc
        return len(records)

    async def update_transaction(
        self, transaction_id: str, changes: dict[str, Any]
    ) -> Transaction:
        try:
            with session_scope(self.session_factory) as session:
                record = session.get(TransactionRecord, transaction_id)
                if record is None:
                    raise RemoteStoreError(f"Transaction not found: {transaction_id}")
                old = ChangeRecord(id=record.id, date=record.date)
                for name, value in changes.items():
                    if name in _WRITABLE_FIELDS:
                        setattr(record, name, value)
                session.flush()
                confirmed = Transaction.model_validate(record)
        except SQLAlchemyError as exc:
            raise RemoteStoreError(f"Transaction update failed: {exc}") from exc
        self._publish(
            ChangeEvent(
                event_type="UPDATE", new=_to_change_record(confirmed), old=old
            )
        )
        return confirmed

    async def delete_transaction(self, transaction_id: str) -> None:
        try:
            with session_scope(self.session_factory) as session:
                record = session.get(TransactionRecord, transaction_id)
                if record is None:
                    raise RemoteStoreError(f"Transaction not found: {transaction_id}")
                old = ChangeRecord(id=record.id, date=record.date)
                session.delete(record)
        except SQLAlchemyError as exc:
            raise RemoteStoreError(f"Transaction delete failed: {exc}") from exc
        self._publish(ChangeEvent(event_type="DELETE", old=old))

    async def updated_since(self, user_id: str, since: datetime) -> list[Transaction]:
        stmt = (
            select(TransactionRecord)
            .where(
                TransactionRecord.user_id == user_id,
                TransactionRecord.updated_at >= since,
            )
            .order_by(TransactionRecord.updated_at.desc())
        )
        try:
            with session_scope(self.session_factory) as session:
                rows = session.scalars(stmt).all()
                return [Transaction.model_validate(row) for row in rows]
        except SQLAlchemyError as exc:
            raise RemoteStoreError(f"Change query failed: {exc}") from exc

    async def overall_totals(self, user_id: str) -> OverallTotals:
        income = func.coalesce(
            func.sum(
                case(
                    (
                        TransactionRecord.type == TransactionType.income,
                        TransactionRecord.eur_amount,
                    ),
                    else_=0,
                )
            ),
            0,
        )
        expenses = func.coalesce(
            func.sum(
                case(
                    (
                        TransactionRecord.type == TransactionType.expense,
                        TransactionRecord.eur_amount,
                    ),
                    else_=0,
                )
            ),
            0,
        )
        stmt = select(income, expenses, func.count(TransactionRecord.id)).where(
            TransactionRecord.user_id == user_id,
            TransactionRecord.hide_from_totals.is_(False),
            TransactionRecord.eur_amount.isnot(None),
        )
        try:
            with session_scope(self.session_factory) as session:
                row = session.execute(stmt).one()
        except SQLAlchemyError as exc:
            raise RemoteStoreError(f"Totals query failed: {exc}") from exc
        total_income = round(float(row[0] or 0), 2)
        total_expenses = round(float(row[1] or 0), 2)
        return OverallTotals(
            income=total_income,
            expenses=total_expenses,
            balance=round(total_income - total_expenses, 2),
            transaction_count=int(row[2] or 0),
            as_of=local_today(),
        )


async def fetch_all_batches(
    query_page: Callable[[int, int], Awaitable[list[Transaction]]],
    batch_size: int = PAGE_SIZE,
) -> list[Transaction]:
    offset = 0
    rows: list[Transaction] = []
    while True:
        page = await query_page(offset, batch_size)
        if not page:
            break
        rows.extend(page)
        if len(page) < batch_size:
            break
        offset += batch_size
    return rows


async def query_all(
    store: RemoteStore, query: TransactionQuery, batch_size: int = PAGE_SIZE
) -> list[Transaction]:
    async def page(offset: int, limit: int) -> list[Transaction]:
        return await store.query_transactions(
            replace(query, offset=offset, limit=limit)
        )

    return await fetch_all_batches(page, batch_size)


async def insert_in_batches(
    store: RemoteStore,
    rows: list[dict[str, Any]],
    *,
    batch_size: int = IMPORT_BATCH_SIZE,
    max_retries: int = IMPORT_MAX_RETRIES,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> ImportResult:
    result = ImportResult()
    if not rows:
        result.errors.append("No valid transactions to import")
        return result

    for start in range(0, len(rows), batch_size):
        batch = rows[start : start + batch_size]
        batch_number = start // batch_size + 1
        attempt = 0
        while True:
            try:
                result.imported += await store.insert_many(batch)
                break
            except Exception as exc:
                attempt += 1
                logger.warning(
                    f"import_batch_failed: batch={batch_number} attempt={attempt} error={exc}"
                )
                if attempt > max_retries:
                    result.errors.append(
                        f"Batch {batch_number}: {exc} (failed after {max_retries} retries)"
                    )
                    result.skipped += len(batch)
                    break
                await sleep(min(1.0 * 2 ** (attempt - 1), 5.0))

    result.success = result.imported > 0
    logger.info(
        f"import_complete: imported={result.imported} skipped={result.skipped}"
    )
    return result
