from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Iterable, Optional, Sequence

from models import TransactionType
from periods import TimeRange, local_today
from schemas import Transaction
from splits import display_eur_amount, minor_units_to_amount, round_to_minor_units


@dataclass
class BalanceDataPoint:
    date: date
    balance: float
    income: float
    expense: float
    transaction_count: int


@dataclass
class BalanceStats:
    start_balance: float
    current_balance: float
    change_amount: float
    change_percent: float
    data_points: list[BalanceDataPoint] = field(default_factory=list)


@dataclass
class CategoryDataPoint:
    date: date
    amount: float
    transaction_count: int


@dataclass
class CategoryStats:
    total_amount: float
    total_transactions: int
    data_points: list[CategoryDataPoint] = field(default_factory=list)


@dataclass
class CategoryTotal:
    main_category: str
    sub_category: Optional[str]
    amount: float
    transaction_count: int


def _cents(value: float) -> int:
    return round_to_minor_units(value, 2)


def _eur(cents: int) -> float:
    return minor_units_to_amount(cents, 2)


def _last_day_of_month(value: date) -> date:
    if value.month == 12:
        return date(value.year, 12, 31)
    return date(value.year, value.month + 1, 1) - timedelta(days=1)


def balance_bucket(value: date, time_range: TimeRange) -> date:
    time_range = TimeRange(time_range)
    if time_range == TimeRange.five_years:
        return value - timedelta(days=value.weekday())
    if time_range == TimeRange.all:
        return _last_day_of_month(value)
    return value


def category_bucket(value: date, time_range: TimeRange) -> date:
    time_range = TimeRange(time_range)
    if time_range == TimeRange.one_month:
        return value
    if time_range == TimeRange.one_year:
        return value.replace(day=1)
    return date(value.year, 1, 1)


def _counts_towards_balance(txn: Transaction, include_hidden: bool) -> bool:
    if txn.hide_from_totals and not include_hidden:
        return False
    return display_eur_amount(txn) is not None


def calculate_balance_history(
    transactions: Iterable[Transaction],
    time_range: TimeRange,
    starting_balance: float,
    include_hidden: bool = False,
) -> BalanceStats:
    """Single forward pass over an ascending stream, bucketed by range granularity."""
    start_cents = 0 if TimeRange(time_range) == TimeRange.all else _cents(starting_balance)
    running = start_cents
    buckets: dict[date, list[int]] = {}

    for txn in transactions:
        if not _counts_towards_balance(txn, include_hidden):
            continue
        amount = abs(_cents(display_eur_amount(txn)))
        bucket = buckets.setdefault(
            balance_bucket(txn.date.date(), time_range), [0, 0, 0, 0]
        )
        if txn.type == TransactionType.income:
            running += amount
            bucket[1] += amount
        else:
            running -= amount
            bucket[2] += amount
        bucket[0] = running
        bucket[3] += 1

    points = [
        BalanceDataPoint(
            date=key,
            balance=_eur(values[0]),
            income=_eur(values[1]),
            expense=_eur(values[2]),
            transaction_count=values[3],
        )
        for key, values in sorted(buckets.items())
    ]
    change = running - start_cents
    percent = (change / abs(start_cents) * 100) if start_cents else 0.0
    return BalanceStats(
        start_balance=_eur(start_cents),
        current_balance=_eur(running),
        change_amount=_eur(change),
        change_percent=round(percent, 2),
        data_points=points,
    )


def _seed_category_buckets(
    time_range: TimeRange, today: date, first: Optional[date]
) -> list[date]:
    time_range = TimeRange(time_range)
    if time_range == TimeRange.one_month:
        return [today - timedelta(days=offset) for offset in range(30, -1, -1)]
    if time_range == TimeRange.one_year:
        keys = []
        year, month = today.year - 1, today.month + 1
        for _ in range(12):
            if month > 12:
                year, month = year + 1, 1
            keys.append(date(year, month, 1))
            month += 1
        return keys
    if time_range == TimeRange.five_years:
        return [date(y, 1, 1) for y in range(today.year - 4, today.year + 1)]
    if first is None:
        return []
    return [date(y, 1, 1) for y in range(first.year, today.year + 1)]


def _counts_towards_category(txn: Transaction) -> bool:
    if txn.hide_from_totals or txn.is_money_transfer:
        return False
    return display_eur_amount(txn) is not None


def calculate_category_history(
    transactions: Sequence[Transaction],
    time_range: TimeRange,
    today: Optional[date] = None,
) -> CategoryStats:
    today = today or local_today()
    included = [t for t in transactions if _counts_towards_category(t)]
    first = min((t.date.date() for t in included), default=None)

    buckets: dict[date, list[int]] = {
        key: [0, 0] for key in _seed_category_buckets(time_range, today, first)
    }
    total = 0
    for txn in included:
        amount = abs(_cents(display_eur_amount(txn)))
        bucket = buckets.setdefault(
            category_bucket(txn.date.date(), time_range), [0, 0]
        )
        bucket[0] += amount
        bucket[1] += 1
        total += amount

    return CategoryStats(
        total_amount=_eur(total),
        total_transactions=len(included),
        data_points=[
            CategoryDataPoint(date=key, amount=_eur(values[0]), transaction_count=values[1])
            for key, values in sorted(buckets.items())
        ],
    )


def category_breakdown(transactions: Iterable[Transaction]) -> list[CategoryTotal]:
    totals: dict[tuple[str, Optional[str]], list[int]] = defaultdict(lambda: [0, 0])
    for txn in transactions:
        if not _counts_towards_category(txn):
            continue
        slot = totals[(txn.main_category, txn.sub_category)]
        slot[0] += abs(_cents(display_eur_amount(txn)))
        slot[1] += 1
    rows = [
        CategoryTotal(
            main_category=main,
            sub_category=sub,
            amount=_eur(values[0]),
            transaction_count=values[1],
        )
        for (main, sub), values in totals.items()
    ]
    rows.sort(key=lambda row: (-row.amount, row.main_category, row.sub_category or ""))
    return rows
