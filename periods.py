import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Optional
from urllib.parse import unquote
from zoneinfo import ZoneInfo

from config import get_settings


MONTH_PREFIX = "transactions-"
YEAR_PREFIX = "year-transactions-"
SPLIT_PREFIX = "split-transactions-"
BALANCE_PREFIX = "balance-transactions-"
CATEGORY_PREFIX = "category-transactions-"
STARTING_BALANCE_PREFIX = "starting-balance-"
SINGLE_PREFIX = "transaction-"
OVERALL_TOTALS_KEY = "/api/overall-totals"

RANGE_PREFIXES = (BALANCE_PREFIX, CATEGORY_PREFIX, STARTING_BALANCE_PREFIX)

_MONTH_RE = re.compile(r"^transactions-(\d{4})-(\d{1,2})$")
_YEAR_RE = re.compile(r"^(year|split)-transactions-(\d{4})$")
_BALANCE_RE = re.compile(r"^balance-transactions-(1m|1y|5y|all)-(true|false)$")
_CATEGORY_RE = re.compile(r"^category-transactions-(.+)-(1m|1y|5y|all)$")
_STARTING_BALANCE_RE = re.compile(r"^starting-balance-(1m|1y|5y|all)-(true|false)$")


class TimeRange(str, Enum):
    one_month = "1m"
    one_year = "1y"
    five_years = "5y"
    all = "all"


_RANGE_DAYS = {
    TimeRange.one_month: 30,
    TimeRange.one_year: 365,
    TimeRange.five_years: 5 * 365,
}


@dataclass(frozen=True)
class Period:
    slug: str
    start: Optional[date]
    end: date


@dataclass(frozen=True)
class PeriodKey:
    kind: str
    key: str
    year: Optional[int] = None
    month: Optional[int] = None
    time_range: Optional[TimeRange] = None
    include_hidden: bool = False
    category: Optional[str] = None
    sub_category: Optional[str] = None
    transaction_id: Optional[str] = None


def local_today() -> date:
    """Today in the configured ledger timezone."""
    return datetime.now(ZoneInfo(get_settings().timezone)).date()


def _flag(value: bool) -> str:
    return "true" if value else "false"


def month_key(year: int, month: int) -> str:
    return f"{MONTH_PREFIX}{year}-{month}"


def month_key_for(value: datetime) -> str:
    return month_key(value.year, value.month)


def year_key(year: int) -> str:
    return f"{YEAR_PREFIX}{year}"


def split_key(year: int) -> str:
    return f"{SPLIT_PREFIX}{year}"


def single_key(transaction_id: str) -> str:
    return f"{SINGLE_PREFIX}{transaction_id}"


def balance_key(time_range: TimeRange, include_hidden: bool) -> str:
    return f"{BALANCE_PREFIX}{TimeRange(time_range).value}-{_flag(include_hidden)}"


def _escape_segment(value: str) -> str:
    return value.replace("%", "%25").replace("-", "%2D")


def category_key(
    category: str, sub_category: Optional[str], time_range: TimeRange
) -> str:
    sub = _escape_segment(sub_category) if sub_category else "all"
    return (
        f"{CATEGORY_PREFIX}{_escape_segment(category)}-{sub}-"
        f"{TimeRange(time_range).value}"
    )


def starting_balance_key(time_range: TimeRange, include_hidden: bool) -> str:
    return (
        f"{STARTING_BALANCE_PREFIX}{TimeRange(time_range).value}-"
        f"{_flag(include_hidden)}"
    )


def is_range_key(key: str) -> bool:
    return key.startswith(RANGE_PREFIXES)


def adjacent_months(year: int, month: int) -> list[tuple[int, int]]:
    prev_month = (year - 1, 12) if month == 1 else (year, month - 1)
    next_month = (year + 1, 1) if month == 12 else (year, month + 1)
    return [prev_month, (year, month), next_month]


def month_bounds(year: int, month: int) -> tuple[datetime, datetime]:
    start = datetime(year, month, 1)
    if month == 12:
        next_month = datetime(year + 1, 1, 1)
    else:
        next_month = datetime(year, month + 1, 1)
    return start, next_month - timedelta(microseconds=1)


def year_bounds(year: int) -> tuple[datetime, datetime]:
    return datetime(year, 1, 1), datetime(year + 1, 1, 1) - timedelta(microseconds=1)


def range_start(time_range: TimeRange, today: date) -> Optional[date]:
    time_range = TimeRange(time_range)
    if time_range == TimeRange.all:
        return None
    return today - timedelta(days=_RANGE_DAYS[time_range])


def resolve_time_range(time_range: str, *, today: Optional[date] = None) -> Period:
    today = today or local_today()
    try:
        parsed = TimeRange(time_range)
    except ValueError as exc:
        raise ValueError(f"Unsupported time range: {time_range}") from exc
    return Period(parsed.value, range_start(parsed, today), today)


def parse_period_key(key: str) -> PeriodKey:
    match = _MONTH_RE.match(key)
    if match:
        year, month = int(match.group(1)), int(match.group(2))
        if not 1 <= month <= 12:
            raise ValueError(f"Invalid month in period key: {key}")
        return PeriodKey("month", key, year=year, month=month)

    match = _YEAR_RE.match(key)
    if match:
        return PeriodKey(match.group(1), key, year=int(match.group(2)))

    match = _BALANCE_RE.match(key) or _STARTING_BALANCE_RE.match(key)
    if match:
        return PeriodKey(
            "balance" if key.startswith(BALANCE_PREFIX) else "starting-balance",
            key,
            time_range=TimeRange(match.group(1)),
            include_hidden=match.group(2) == "true",
        )

    match = _CATEGORY_RE.match(key)
    if match:
        # Dashes inside either segment are escaped as %2D.
        scope, _, sub_category = match.group(1).rpartition("-")
        if not scope:
            raise ValueError(f"Invalid category period key: {key}")
        return PeriodKey(
            "category",
            key,
            time_range=TimeRange(match.group(2)),
            category=unquote(scope),
            sub_category=None if sub_category == "all" else unquote(sub_category),
        )

    if key.startswith(SINGLE_PREFIX) and len(key) > len(SINGLE_PREFIX):
        return PeriodKey("single", key, transaction_id=key[len(SINGLE_PREFIX) :])

    raise ValueError(f"Unrecognised period key: {key}")
