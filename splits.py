from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Optional, Sequence

from schemas import Transaction


SPLIT_PARTS = 12
SPLIT_ID_MARKER = "::split::"

_ZERO_DECIMAL_CURRENCIES = {
    "BIF", "CLP", "DJF", "GNF", "ISK", "JPY", "KMF", "KRW", "PYG",
    "RWF", "UGX", "UYI", "VND", "VUV", "XAF", "XOF", "XPF",
}
_THREE_DECIMAL_CURRENCIES = {"BHD", "IQD", "JOD", "KWD", "LYD", "OMR", "TND"}


def currency_fraction_digits(currency: Optional[str]) -> int:
    code = (currency or "").upper()
    if code in _ZERO_DECIMAL_CURRENCIES:
        return 0
    if code in _THREE_DECIMAL_CURRENCIES:
        return 3
    return 2


def round_to_minor_units(amount: float, fraction_digits: int = 2) -> int:
    # Half-up on the magnitude, so -0.005 rounds to -1 cent like 0.005 rounds to 1.
    factor = Decimal(10) ** max(0, fraction_digits)
    magnitude = (abs(Decimal(str(amount))) * factor).quantize(
        Decimal("1"), rounding=ROUND_HALF_UP
    )
    return int(magnitude) if amount >= 0 else -int(magnitude)


def minor_units_to_amount(minor_units: int, fraction_digits: int = 2) -> float:
    return float(Decimal(minor_units) / (Decimal(10) ** max(0, fraction_digits)))


def split_minor_units(total: float, fraction_digits: int = 2) -> tuple[int, int]:
    """Return (regular, january) instalments in minor units.

    January absorbs the rounding remainder so the twelve parts add back up to
    the rounded total exactly.
    """
    total_minor = round_to_minor_units(total, fraction_digits)
    regular = round_to_minor_units(total / SPLIT_PARTS, fraction_digits)
    return regular, total_minor - regular * (SPLIT_PARTS - 1)


def split_amount_for_month(total: float, month: int, fraction_digits: int = 2) -> float:
    regular, january = split_minor_units(total, fraction_digits)
    return minor_units_to_amount(january if month == 1 else regular, fraction_digits)


def split_optional_amount_for_month(
    total: Optional[float], month: int, fraction_digits: int = 2
) -> Optional[float]:
    if total is None:
        return None
    return split_amount_for_month(total, month, fraction_digits)


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = datetime(year + 1, 1, 1)
    else:
        next_month = datetime(year, month + 1, 1)
    return (next_month - datetime(year, month, 1)).days


def split_instance_date(base: datetime, year: int, month: int) -> datetime:
    day = min(base.day, days_in_month(year, month))
    return base.replace(year=year, month=month, day=day)


def is_split_instance_id(transaction_id: str) -> bool:
    return SPLIT_ID_MARKER in transaction_id


def split_instance_id(source_id: str, year: int, month: int) -> str:
    return f"{source_id}{SPLIT_ID_MARKER}{year}-{month:02d}"


def display_amount(txn: Transaction) -> float:
    if txn.split_display_amount is not None:
        return txn.split_display_amount
    return txn.amount


def display_eur_amount(txn: Transaction) -> Optional[float]:
    if txn.split_display_eur_amount is not None:
        return txn.split_display_eur_amount
    return txn.eur_amount


def expected_split_amount_eur(
    all_split_sources: Sequence[Transaction],
    visible: Sequence[Transaction],
) -> float:
    """EUR total of split sources that are not already part of ``visible``."""
    visible_ids = {t.id for t in visible if t.split_across_year}
    total = 0.0
    for txn in all_split_sources:
        if txn.id in visible_ids:
            continue
        eur = display_eur_amount(txn)
        if eur is None:
            if txn.currency != "EUR":
                continue
            eur = display_amount(txn)
        total += abs(eur)
    return total


def _compare_time(value: datetime, now: datetime) -> tuple[datetime, datetime]:
    # Aware and naive datetimes cannot be compared; drop tzinfo on the aware side.
    if (value.tzinfo is None) != (now.tzinfo is None):
        return value.replace(tzinfo=None), now.replace(tzinfo=None)
    return value, now


def _instalment(
    source: Transaction, year: int, month: int, now: datetime
) -> Optional[Transaction]:
    instance_date = split_instance_date(source.date, year, month)
    lhs, rhs = _compare_time(instance_date, now)
    if lhs > rhs:
        return None

    amount = split_amount_for_month(
        source.amount, month, currency_fraction_digits(source.currency)
    )
    eur_amount = split_optional_amount_for_month(source.eur_amount, month, 2)

    if source.date.month == month:
        return source.model_copy(
            update={
                "split_is_read_only": False,
                "split_source_transaction_id": None,
                "split_display_amount": amount,
                "split_display_eur_amount": eur_amount,
            }
        )

    return source.model_copy(
        update={
            "id": split_instance_id(source.id, year, month),
            "amount": amount,
            "eur_amount": eur_amount,
            "date": instance_date,
            "split_is_read_only": True,
            "split_source_transaction_id": source.id,
            "split_display_amount": amount,
            "split_display_eur_amount": eur_amount,
        }
    )


def _sources_for_year(
    sources: Iterable[Transaction], year: int
) -> list[Transaction]:
    return [t for t in sources if t.split_across_year and t.date.year == year]


def expand_for_month(
    month_transactions: Sequence[Transaction],
    split_sources: Sequence[Transaction],
    year: int,
    month: int,
    now: Optional[datetime] = None,
) -> list[Transaction]:
    now = now or datetime.now()
    regular = [t for t in month_transactions if not t.split_across_year]
    instalments = []
    for source in _sources_for_year(split_sources, year):
        instalment = _instalment(source, year, month, now)
        if instalment is not None:
            instalments.append(instalment)
    return regular + instalments


def expand_for_year(
    year_transactions: Sequence[Transaction],
    year: int,
    now: Optional[datetime] = None,
) -> list[Transaction]:
    now = now or datetime.now()
    regular = [t for t in year_transactions if not t.split_across_year]
    instalments = []
    for source in _sources_for_year(year_transactions, year):
        for month in range(1, SPLIT_PARTS + 1):
            instalment = _instalment(source, year, month, now)
            if instalment is not None:
                instalments.append(instalment)
    return regular + instalments


def expand_range(
    transactions: Sequence[Transaction], now: Optional[datetime] = None
) -> list[Transaction]:
    """Expand split sources of every year present in an ascending range list."""
    now = now or datetime.now()
    years = sorted({t.date.year for t in transactions if t.split_across_year})
    expanded = [t for t in transactions if not t.split_across_year]
    for year in years:
        for source in _sources_for_year(transactions, year):
            for month in range(1, SPLIT_PARTS + 1):
                instalment = _instalment(source, year, month, now)
                if instalment is not None:
                    expanded.append(instalment)
    expanded.sort(key=lambda t: t.date)
    return expanded
